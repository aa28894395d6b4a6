from typing import Any

import pytest

from qqbridge.convert.formatting import parse_matrix_html, render_markdown, strip_reply_fallback
from qqbridge.convert.from_matrix import (
    MatrixToQQConverter,
    build_location_card,
    build_reply_element,
    parse_geo_uri,
)
from qqbridge.convert.from_qq import PROXY_TOO_LARGE, QQToMatrixConverter, render_service
from qqbridge.core.elements import (
    AtElement,
    ImageElement,
    LightAppElement,
    MatrixEvent,
    ReplyElement,
    ServiceElement,
    TextElement,
    VoiceElement,
)
from qqbridge.core.errors import (
    GeoURIError,
    MatrixForbiddenError,
    MediaDownloadError,
    MediaTooLargeError,
    UnsupportedMessageTypeError,
)
from qqbridge.core.identity import UID, MessageKey, PortalKey
from qqbridge.core.models import ChatTarget, GroupMember, MessageErrorKind, MessageRecord
from qqbridge.media.crypto import encrypt_media
from tests.fakes import PNG_1X1, FakeCodec, FakeQQClient

BOB_MXID = "@qq_20002:test"


class Harness:
    """Callbacks for QQToMatrixConverter backed by dicts."""

    def __init__(self) -> None:
        self.downloads: dict[str, bytes] = {}
        self.uploads: list[tuple[bytes, str, str | None]] = []
        self.upload_error: Exception | None = None
        self.names = {"20002": (BOB_MXID, "Bob")}
        self.reply_target: str | None = None

    async def download(self, url: str) -> bytes:
        try:
            return self.downloads[url]
        except KeyError:
            raise MediaDownloadError(f"missing {url}") from None

    async def upload(self, data: bytes, mime: str, filename: str | None) -> dict[str, Any]:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((data, mime, filename))
        return {"url": f"mxc://test/up{len(self.uploads)}"}

    async def resolve_mention(self, uin: str) -> tuple[str, str] | None:
        return self.names.get(uin)

    async def resolve_reply(self, reply: ReplyElement) -> str | None:
        return self.reply_target

    def converter(self, **kwargs: Any) -> QQToMatrixConverter:
        return QQToMatrixConverter(
            download=self.download,
            upload=self.upload,
            codec=FakeCodec(),
            resolve_mention=self.resolve_mention,
            resolve_reply=self.resolve_reply,
            **kwargs,
        )


# ── QQ → Matrix ──────────────────────────────────────────────────────


async def test_text_with_mention_gets_pill_and_mentions() -> None:
    h = Harness()
    result = await h.converter().convert([TextElement(content="hi "), AtElement(target="20002", display="@Bob")])
    assert result is not None
    content = result.content
    assert content["msgtype"] == "m.text"
    assert content["body"] == "hi @Bob"
    assert content["formatted_body"] == f'hi <a href="https://matrix.to/#/{BOB_MXID}">Bob</a>'
    assert content["m.mentions"] == {"user_ids": [BOB_MXID]}


async def test_mention_all_sets_room_mention() -> None:
    h = Harness()
    result = await h.converter().convert([AtElement(target="0", display="@全体成员"), TextElement(content=" meeting")])
    assert result is not None
    assert result.content["m.mentions"] == {"room": True}
    assert result.content["formatted_body"].startswith("@room")


async def test_single_image_is_sent_natively() -> None:
    h = Harness()
    h.downloads["https://qq/img"] = PNG_1X1
    result = await h.converter().convert([ImageElement(url="https://qq/img")])
    assert result is not None
    content = result.content
    assert content["msgtype"] == "m.image"
    assert content["url"] == "mxc://test/up1"
    assert content["info"] == {"mimetype": "image/png", "size": len(PNG_1X1), "w": 1, "h": 1}


async def test_single_image_inline_when_native_disabled() -> None:
    h = Harness()
    h.downloads["https://qq/img"] = PNG_1X1
    result = await h.converter(native_single_image=False).convert([ImageElement(url="https://qq/img")])
    assert result is not None
    assert result.content["msgtype"] == "m.text"
    assert result.content["body"] == "![image/png](mxc://test/up1)"
    assert 'src="mxc://test/up1"' in result.content["formatted_body"]


async def test_inline_image_failure_leaves_placeholder() -> None:
    h = Harness()
    result = await h.converter().convert([TextElement(content="look "), ImageElement(url="https://qq/gone")])
    assert result is not None
    assert result.content["body"] == "look [图片]"
    assert result.error is MessageErrorKind.NONE


async def test_voice_is_transcoded_to_ogg() -> None:
    h = Harness()
    h.downloads["https://qq/voice"] = b"#!SILK_V3data"
    result = await h.converter().convert([VoiceElement(url="https://qq/voice", name="hello.amr")])
    assert result is not None
    assert result.content["msgtype"] == "m.audio"
    assert result.content["body"] == "hello.ogg"
    data, mime, filename = h.uploads[0]
    assert data == b"OggS#!SILK_V3data"
    assert (mime, filename) == ("audio/ogg", "hello.ogg")


async def test_download_failure_becomes_notice() -> None:
    h = Harness()
    result = await h.converter().convert([ImageElement(url="https://qq/missing")])
    assert result is not None
    assert result.content == {"msgtype": "m.notice", "body": "Failed to bridge media: failed to download image from QQ"}
    assert result.error is MessageErrorKind.MEDIA_NOT_FOUND


@pytest.mark.parametrize(
    ("error", "reason"),
    [
        (MediaTooLargeError("too big"), "homeserver rejected too large file"),
        (MediaTooLargeError("too big", code=PROXY_TOO_LARGE), "proxy rejected too large file"),
        (MatrixForbiddenError("ghost may not upload"), "failed to upload media: ghost may not upload"),
    ],
)
async def test_upload_rejections_become_notices(error: Exception, reason: str) -> None:
    h = Harness()
    h.downloads["https://qq/img"] = PNG_1X1
    h.upload_error = error
    result = await h.converter().convert([ImageElement(url="https://qq/img")])
    assert result is not None
    assert result.content["body"] == f"Failed to bridge media: {reason}"
    assert result.error is MessageErrorKind.MEDIA_NOT_FOUND


async def test_inline_image_upload_refusal_leaves_placeholder() -> None:
    h = Harness()
    h.downloads["https://qq/img"] = PNG_1X1
    h.upload_error = MatrixForbiddenError("ghost may not upload")
    result = await h.converter().convert([TextElement(content="look "), ImageElement(url="https://qq/img")])
    assert result is not None
    assert result.content["body"] == "look [图片]"


async def test_location_card_becomes_location_event() -> None:
    h = Harness()
    result = await h.converter().convert([build_location_card(31.23, 121.47)])
    assert result is not None
    assert result.content["msgtype"] == "m.location"
    assert result.content["geo_uri"] == "geo:31.23000,121.47000"


async def test_linked_reply_drops_quoted_author_mention() -> None:
    h = Harness()
    h.reply_target = "$quoted"
    reply = ReplyElement(reply_seq=5, time=1000, sender="20002")
    result = await h.converter().convert(
        [reply, AtElement(target="20002", display="@Bob"), TextElement(content=" yes")]
    )
    assert result is not None
    assert result.content["body"] == "yes"
    assert result.content["m.relates_to"] == {"m.in_reply_to": {"event_id": "$quoted"}}


async def test_unlinked_reply_prefixes_author_name() -> None:
    h = Harness()
    reply = ReplyElement(reply_seq=5, time=1000, sender="20002")
    result = await h.converter().convert([reply, TextElement(content="yes")])
    assert result is not None
    assert result.content["body"] == "@Bob yes"
    assert "m.relates_to" not in result.content


async def test_empty_message_converts_to_nothing() -> None:
    assert await Harness().converter().convert([]) is None


def test_render_service_reads_xml_title_and_summary() -> None:
    xml = "<msg><item><title>Shared</title><summary>A link</summary></item></msg>"
    assert render_service(ServiceElement(service_id=1, content=xml)) == "Shared\nA link"
    assert render_service(ServiceElement(service_id=1, content="<broken")) == "[Card]"


# ── Matrix → QQ ──────────────────────────────────────────────────────


def test_parse_geo_uri() -> None:
    assert parse_geo_uri("geo:1.5,-2.25;u=10") == (1.5, -2.25)
    for bad in ("1,2", "geo:1", "geo:a,2", "geo: 1,2", "geo:1,2,3"):
        with pytest.raises(GeoURIError):
            parse_geo_uri(bad)


def test_parse_matrix_html_resolves_pills_in_order() -> None:
    resolve = {"@qq_20002:test": "20002"}.get
    parsed = parse_matrix_html(f'<p>hi <a href="https://matrix.to/#/{BOB_MXID}">Bob</a>!</p>', resolve)
    assert parsed == [TextElement(content="hi "), AtElement(target="20002", display="@20002"), TextElement(content="!")]

    unresolved = parse_matrix_html('<a href="https://matrix.to/#/@alice:test">Alice</a> hey', resolve)
    assert unresolved == [TextElement(content="Alice hey")]


def test_parse_matrix_html_skips_reply_fallback_and_numbers_lists() -> None:
    parsed = parse_matrix_html(
        "<mx-reply><blockquote>quoted</blockquote></mx-reply><ol><li>one</li><li>two</li></ol>", lambda _: None
    )
    assert parsed == [TextElement(content="1. one\n2. two")]


def test_strip_reply_fallback() -> None:
    assert strip_reply_fallback("> <@a:test> hi\n> more\n\nreply") == "reply"
    assert strip_reply_fallback("plain") == "plain"


def test_render_markdown() -> None:
    assert render_markdown("plain words") is None
    assert render_markdown("**bold**") == "<p><strong>bold</strong></p>"
    assert render_markdown("<script>alert(1)</script>") is None


def test_render_markdown_keeps_mxc_image_sources_only() -> None:
    formatted = render_markdown("![image/png](mxc://test/up1)")
    assert formatted is not None
    assert 'src="mxc://test/up1"' in formatted
    assert 'alt="image/png"' in formatted

    external = render_markdown("![x](https://elsewhere.example/x.png)")
    assert external is not None
    assert "elsewhere.example" not in external


def _matrix_converter(client: FakeQQClient, media: dict[str, bytes], *, max_file_size: int = 1024) -> MatrixToQQConverter:
    async def download(mxc: str) -> bytes:
        return media[mxc]

    return MatrixToQQConverter(
        client=client,
        codec=FakeCodec(),
        download_media=download,
        resolve_uin={BOB_MXID: "20002"}.get,
        max_file_size=max_file_size,
    )


def _event(content: dict[str, Any], event_type: str = "m.room.message") -> MatrixEvent:
    return MatrixEvent(event_id="$e", room_id="!r:test", sender="@alice:test", type=event_type, content=content)


GROUP_TARGET = ChatTarget(is_group=True, uin="30003")
PRIVATE_TARGET = ChatTarget(is_group=False, uin="20002")


async def test_emote_gets_me_prefix() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {})
    elems = await converter.convert(_event({"msgtype": "m.emote", "body": "waves"}), PRIVATE_TARGET)
    assert elems == [TextElement(content="/me "), TextElement(content="waves")]


async def test_html_mention_uses_group_card_name() -> None:
    client = FakeQQClient("10001")
    client.add_group("30003", "Group", [GroupMember(uin="20002", nickname="bob", card_name="Bobby")])
    converter = _matrix_converter(client, {})
    content = {
        "msgtype": "m.text",
        "body": "Bob: hi",
        "format": "org.matrix.custom.html",
        "formatted_body": f'<a href="https://matrix.to/#/{BOB_MXID}">Bob</a>: hi',
    }
    elems = await converter.convert(_event(content), GROUP_TARGET)
    assert elems == [AtElement(target="20002", display="@Bobby"), TextElement(content=": hi")]


async def test_file_is_uploaded_with_safe_name() -> None:
    client = FakeQQClient("10001")
    converter = _matrix_converter(client, {"mxc://test/f": b"report"})
    elems = await converter.convert(
        _event({"msgtype": "m.file", "body": "q3/report:final.txt", "url": "mxc://test/f"}), GROUP_TARGET
    )
    assert elems == []
    assert client.files == [(GROUP_TARGET, "q3_report_final.txt", b"report")]


async def test_encrypted_image_is_decrypted_before_upload() -> None:
    ciphertext, file_info = encrypt_media(PNG_1X1)
    converter = _matrix_converter(FakeQQClient("10001"), {"mxc://test/enc": ciphertext})
    content = {"msgtype": "m.image", "body": "a.png", "file": {"url": "mxc://test/enc", **file_info}}
    elems = await converter.convert(_event(content), PRIVATE_TARGET)
    assert elems == [ImageElement(url=f"qq://image/{len(PNG_1X1)}", image_id="img", size=len(PNG_1X1))]


async def test_voice_is_transcoded_to_silk() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {"mxc://test/a": b"OggSaudio"})
    elems = await converter.convert(
        _event({"msgtype": "m.audio", "body": "a.ogg", "url": "mxc://test/a"}), PRIVATE_TARGET
    )
    assert elems == [VoiceElement(url="qq://voice", name="voice.silk", size=len(b"#!SILK_V3OggSaudio"))]


async def test_sticker_is_sent_as_image() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {"mxc://test/s": PNG_1X1})
    elems = await converter.convert(_event({"body": "sticker", "url": "mxc://test/s"}, "m.sticker"), GROUP_TARGET)
    assert isinstance(elems[0], ImageElement)


async def test_location_with_reply_appends_reply_last() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {})
    reply = ReplyElement(reply_seq=5, time=1000, sender="20002", group_id="30003")
    elems = await converter.convert(
        _event({"msgtype": "m.location", "body": "here", "geo_uri": "geo:10,20"}), GROUP_TARGET, reply=reply
    )
    assert isinstance(elems[0], LightAppElement)
    assert elems[0].meta()["lat"] == "10.00000"
    assert elems[-1] == reply


async def test_declared_size_over_limit_is_rejected() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {"mxc://test/big": b"x"}, max_file_size=10)
    content = {"msgtype": "m.video", "body": "v.mp4", "url": "mxc://test/big", "info": {"size": 11}}
    with pytest.raises(MediaTooLargeError):
        await converter.convert(_event(content), PRIVATE_TARGET)


async def test_unknown_msgtype_is_unsupported() -> None:
    converter = _matrix_converter(FakeQQClient("10001"), {})
    with pytest.raises(UnsupportedMessageTypeError):
        await converter.convert(_event({"msgtype": "m.poll", "body": "?"}), PRIVATE_TARGET)


def test_build_reply_element_addresses_private_replies() -> None:
    me, friend = UID.user("10001"), UID.user("20002")
    chat = PortalKey.of(friend, me)
    theirs = MessageRecord(
        chat=chat, key=MessageKey.of(70000, 9), mxid="$a", sender=friend, timestamp=1_000_500, content="hey"
    )
    reply = build_reply_element(theirs, is_private=True, portal_uin="20002", self_uin="10001")
    assert reply is not None
    assert reply.reply_seq == 70000 & 0xFFFF
    assert (reply.time, reply.sender, reply.group_id) == (1000, "20002", "10001")
    assert reply.elements == (TextElement(content="hey"),)

    mine = MessageRecord(chat=chat, key=MessageKey.of(8, 1), mxid="$b", sender=me, timestamp=2000)
    own_reply = build_reply_element(mine, is_private=True, portal_uin="20002", self_uin="10001")
    assert own_reply is not None and own_reply.group_id == "20002"

    pending = MessageRecord(chat=chat, key=MessageKey.pending("$c"), mxid="$c", sender=me, timestamp=0)
    assert build_reply_element(pending, is_private=True, portal_uin="20002", self_uin="10001") is None


def test_build_reply_element_keeps_group_sequence() -> None:
    group = UID.group("30003")
    record = MessageRecord(
        chat=PortalKey.of(group, UID.user("10001")),
        key=MessageKey.of(70000, 9),
        mxid="$a",
        sender=UID.user("20002"),
        timestamp=5000,
    )
    reply = build_reply_element(record, is_private=False, portal_uin="30003", self_uin="10001")
    assert reply is not None
    assert (reply.reply_seq, reply.group_id) == (70000, "30003")
