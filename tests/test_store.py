import sqlite3
from datetime import UTC, datetime
from pathlib import Path

import pytest

from qqbridge.bridge.dedup import DuplicateTracker, RecentlyHandled
from qqbridge.core.identity import UID, MessageKey, PortalKey
from qqbridge.core.models import (
    MessageErrorKind,
    MessageKind,
    MessageRecord,
    NameQuality,
    PortalRecord,
    PuppetRecord,
    UserRecord,
)
from qqbridge.storage.bridge_store import BridgeStore

ME = UID.user("10001")
FRIEND = UID.user("20002")
GROUP = UID.group("30003")


def _store(tmp_path: Path) -> BridgeStore:
    return BridgeStore(tmp_path / "db" / "bridge.db")


def _portal(store: BridgeStore, key: PortalKey) -> PortalKey:
    store.insert_portal(PortalRecord(key=key))
    return key


def _message(chat: PortalKey, seq: int, ts_ms: int, *, internal_id: int = 1, sent: bool = True) -> MessageRecord:
    return MessageRecord(
        chat=chat,
        key=MessageKey.of(seq, internal_id),
        mxid=f"$ev-{seq}-{ts_ms}",
        sender=FRIEND,
        timestamp=ts_ms,
        sent=sent,
        content=f"message {seq}",
    )


def test_portal_crud_and_lookups(tmp_path: Path) -> None:
    store = _store(tmp_path)
    private = PortalKey.of(FRIEND, ME)
    group = PortalKey.of(GROUP, ME)
    store.insert_portal(PortalRecord(key=private))
    store.insert_portal(PortalRecord(key=group, name="Group"))

    record = store.get_portal(private)
    assert record is not None and record.mxid is None

    synced = datetime(2024, 5, 1, tzinfo=UTC)
    record.mxid = "!dm:test"
    record.name_set = True
    record.last_sync = synced
    store.update_portal(record)

    by_mxid = store.get_portal_by_mxid("!dm:test")
    assert by_mxid is not None
    assert by_mxid.key == private
    assert by_mxid.name_set is True
    assert by_mxid.last_sync == synced

    assert [r.key for r in store.find_private_chats(ME)] == [private]
    assert [r.key for r in store.get_portals_by_uid(GROUP)] == [group]
    assert len(store.get_all_portals()) == 2

    store.delete_portal(private)
    assert store.get_portal(private) is None
    assert store.get_portal_by_mxid("!dm:test") is None


def test_deleting_a_portal_drops_its_messages(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(FRIEND, ME))
    store.insert_message(_message(chat, 5, 1_000_000))
    store.delete_portal(chat)
    assert store.get_messages(chat) == []


def test_puppet_save_is_an_upsert(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = PuppetRecord(uid=FRIEND, displayname="Alice", name_quality=NameQuality.NAME)
    store.save_puppet(record)
    record.displayname = "Ally"
    record.name_quality = NameQuality.REMARK
    record.custom_mxid = "@alice:test"
    store.save_puppet(record)

    loaded = store.get_puppet(FRIEND)
    assert loaded is not None
    assert loaded.displayname == "Ally"
    assert loaded.name_quality is NameQuality.REMARK
    assert store.get_puppet_by_custom_mxid("@alice:test") == loaded
    assert [p.uid for p in store.get_puppets_with_custom_mxid()] == [FRIEND]


def test_user_uin_binds_to_one_matrix_account(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.save_user(UserRecord(mxid="@alice:test", uin="10001"))
    store.save_user(UserRecord(mxid="@idle:test"))

    assert store.get_user_by_uin("10001") == UserRecord(mxid="@alice:test", uin="10001")
    assert [u.mxid for u in store.get_all_users()] == ["@alice:test"]
    with pytest.raises(sqlite3.IntegrityError):
        store.save_user(UserRecord(mxid="@bob:test", uin="10001"))


def test_reply_lookup_prefers_exact_second_then_window(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(GROUP, ME))
    store.insert_message(_message(chat, 5, 1_004_000, internal_id=1))
    store.insert_message(_message(chat, 5, 1_000_500, internal_id=2))

    exact = store.get_by_reply(chat, 5, 1000, window_seconds=10)
    assert exact is not None and exact.key.id == "2"

    store.delete_message(chat, MessageKey.of(5, 2))
    windowed = store.get_by_reply(chat, 5, 1000, window_seconds=10)
    assert windowed is not None and windowed.key.id == "1"

    assert store.get_by_reply(chat, 5, 1000, window_seconds=0) is None
    assert store.get_by_reply(chat, 5, 1000, window_seconds=3) is None
    assert store.get_by_reply(chat, 6, 1004, window_seconds=10) is None


def test_reply_lookup_never_matches_fake_records(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(GROUP, ME))
    fake = MessageRecord(
        chat=chat,
        key=MessageKey("5", "FAKE::notice"),
        mxid="$fake",
        sender=FRIEND,
        timestamp=1_000_000,
        sent=True,
        kind=MessageKind.FAKE,
    )
    store.insert_message(fake)
    assert store.get_by_reply(chat, 5, 1000, window_seconds=10) is None


def test_pending_key_is_rewritten_on_finish(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(FRIEND, ME))
    tracker = DuplicateTracker(store, chat)

    record = tracker.begin(MessageKey.pending("$out"), sender=ME, timestamp=1, mxid="$out")
    assert store.get_message(chat, MessageKey.pending("$out")) is not None

    tracker.finish(record, mxid="$out", new_key=MessageKey.of(77, 8), timestamp=2000)
    assert store.get_message(chat, MessageKey.pending("$out")) is None
    delivered = store.get_message_by_mxid("$out")
    assert delivered is not None
    assert delivered.key == MessageKey.of(77, 8)
    assert delivered.sent and delivered.timestamp == 2000


def test_duplicate_tracker_checks_both_layers(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(GROUP, ME))
    key = MessageKey.of(9, 90)

    first = DuplicateTracker(store, chat)
    assert not first.is_handled(key)
    record = first.begin(key, sender=FRIEND, timestamp=1000)
    assert not first.is_handled(key)
    first.finish(record, mxid="$delivered", error=MessageErrorKind.MEDIA_NOT_FOUND)
    assert first.is_handled(key)
    assert first.recent.contains(str(key), MessageErrorKind.MEDIA_NOT_FOUND)

    # A fresh tracker has an empty ring buffer and must fall back to the table.
    restarted = DuplicateTracker(store, chat)
    assert len(restarted.recent) == 0
    assert restarted.is_handled(key)


def test_unsent_record_is_delivered_again(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(GROUP, ME))
    key = MessageKey.of(3, 30)
    tracker = DuplicateTracker(store, chat)
    first = tracker.begin(key, sender=FRIEND, timestamp=1000, content="hello")

    retry = DuplicateTracker(store, chat)
    assert not retry.is_handled(key)
    again = retry.begin(key, sender=FRIEND, timestamp=1000)
    assert again.key == first.key and again.content == "hello"


def test_unsent_fake_record_is_reused_and_delivered_again(tmp_path: Path) -> None:
    store = _store(tmp_path)
    chat = _portal(store, PortalKey.of(GROUP, ME))
    tracker = DuplicateTracker(store, chat)
    first = tracker.begin(MessageKey.fake("mute:1"), sender=FRIEND, timestamp=1000, kind=MessageKind.FAKE)

    # Fake keys get a fresh random sequence each time; the id alone identifies the notice.
    retry = DuplicateTracker(store, chat)
    assert not retry.is_fake_handled(MessageKey.fake("mute:1"))
    again = retry.begin(MessageKey.fake("mute:1"), sender=FRIEND, timestamp=1000, kind=MessageKind.FAKE)
    assert again.key == first.key

    retry.finish(again, mxid="$notice")
    assert DuplicateTracker(store, chat).is_fake_handled(MessageKey.fake("mute:1"))


def test_recently_handled_is_bounded() -> None:
    recent = RecentlyHandled(size=3)
    for i in range(5):
        recent.add(f"k{i}")
    assert len(recent) == 3
    assert not recent.contains("k0")
    assert recent.contains("k4")
    assert not recent.contains("k4", MessageErrorKind.DECRYPTION_FAILED)
