import pytest

from qqbridge.core.errors import MalformedIDError
from qqbridge.core.identity import (
    UID,
    ChatType,
    MessageKey,
    PortalKey,
    UIDKind,
    classify_chat_type,
    is_fake_message_id,
    make_fake_message_id,
    make_message_id,
    parse_message_id,
    private_portal_key,
)


def test_uid_text_form_round_trips() -> None:
    for uid in (UID.user("10001"), UID.group(987654)):
        assert UID.parse(str(uid)) == uid
    assert str(UID.user("10001")) == "10001\x01u"
    assert UID.group("5").kind is UIDKind.GROUP


def test_uid_rejects_reserved_separators_and_unknown_kinds() -> None:
    with pytest.raises(MalformedIDError):
        UID.user("")
    with pytest.raises(MalformedIDError):
        UID.user("1\x022")
    with pytest.raises(MalformedIDError):
        UID.parse("10001")
    with pytest.raises(MalformedIDError):
        UID.parse("10001\x01x")


def test_group_portal_key_ignores_receiver() -> None:
    key = PortalKey.of(UID.group("42"), UID.user("10001"))
    assert key.receiver == key.uid
    assert str(key) == str(UID.group("42"))
    assert PortalKey.parse(str(key)) == key
    assert key.is_group and not key.is_private


def test_private_portal_key_round_trips_with_receiver() -> None:
    key = PortalKey.of(UID.user("20002"), UID.user("10001"))
    assert str(key) == "20002\x01u\x0210001\x01u"
    assert PortalKey.parse(str(key)) == key


def test_private_portal_key_depends_on_direction() -> None:
    incoming = private_portal_key(sender="20002", target="10001", self_uin="10001")
    outgoing = private_portal_key(sender="10001", target="20002", self_uin="10001")
    assert incoming == outgoing == PortalKey.of(UID.user("20002"), UID.user("10001"))


def test_message_key_variants() -> None:
    full = MessageKey.of(17, 99)
    assert MessageKey.parse(str(full)) == full
    assert (full.int_seq, full.int_id) == (17, 99)

    partial = MessageKey.partial(17)
    assert partial.id == "" and partial.int_id is None

    fake = MessageKey.fake("mute-1")
    assert fake.is_fake and fake.id == "FAKE::mute-1"
    assert not fake.is_pending

    pending = MessageKey.pending("$event")
    assert pending.is_pending and pending.int_seq is None


@pytest.mark.parametrize(
    ("chat", "remote"),
    [("10001", "55"), ("g42", "1\x0299"), ("room", "a:b")],
)
def test_message_id_round_trip(chat: str, remote: str) -> None:
    assert parse_message_id(make_message_id(chat, remote)) == (chat, remote)


def test_message_id_rejects_separator_and_reserved_chat() -> None:
    with pytest.raises(MalformedIDError):
        make_message_id("a:b", "1")
    with pytest.raises(MalformedIDError):
        make_message_id("fake", "1")
    with pytest.raises(MalformedIDError):
        make_message_id("10001", "")


def test_fake_message_ids_cannot_be_parsed() -> None:
    message_id = make_fake_message_id("10001", "notice")
    assert is_fake_message_id(message_id)
    assert message_id == "fake:10001:notice"
    with pytest.raises(MalformedIDError):
        parse_message_id(message_id)


def test_classify_chat_type() -> None:
    assert classify_chat_type("friend") is ChatType.PRIVATE
    assert classify_chat_type(" Group ") is ChatType.GROUP
    assert classify_chat_type("temp") is ChatType.TEMP
    with pytest.raises(MalformedIDError):
        classify_chat_type("guild")
