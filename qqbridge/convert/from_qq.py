"""QQ message elements → Matrix event content."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from qqbridge.convert.formatting import MATRIX_HTML_FORMAT, mention_html, render_markdown, text_to_html
from qqbridge.core.elements import (
    AtElement,
    FaceElement,
    FileElement,
    ForwardElement,
    ImageElement,
    LightAppElement,
    MessageElement,
    OfflineFileEvent,
    ReplyElement,
    ServiceElement,
    TextElement,
    VideoElement,
    VoiceElement,
)
from qqbridge.core.errors import BridgeError, MediaTooLargeError
from qqbridge.core.models import MessageErrorKind
from qqbridge.core.ports import VoiceCodec
from qqbridge.media.mime import image_dimensions, sniff_mime

EVENT_MESSAGE = "m.room.message"
LOCATION_VIEW = "LocationShare"
IMAGE_PLACEHOLDER = "[图片]"
PROXY_TOO_LARGE = "proxy_too_large"

# (data, mimetype, filename) -> {"url": mxc} or {"file": encrypted file object}
Uploader = Callable[[bytes, str, str | None], Awaitable[dict[str, Any]]]
# uin -> (mxid, display name), None when the user cannot be resolved
MentionResolver = Callable[[str], Awaitable[tuple[str, str] | None]]
# reply marker -> Matrix event ID of the stored target, None when unknown
ReplyResolver = Callable[[ReplyElement], Awaitable[str | None]]


@dataclass(slots=True)
class ConvertedMessage:
    content: dict[str, Any]
    event_type: str = EVENT_MESSAGE
    error: MessageErrorKind = MessageErrorKind.NONE


@dataclass(frozen=True, slots=True)
class LocationInfo:
    name: str
    address: str
    latitude: float
    longitude: float


@dataclass(slots=True)
class _Piece:
    text: str
    html: str | None = None
    rich: bool = False
    mention: str | None = None


@dataclass(slots=True)
class _Summary:
    pieces: list[_Piece] = field(default_factory=list)
    mentioned: list[str] = field(default_factory=list)
    room_mention: bool = False
    rich: bool = False

    @property
    def has_mentions(self) -> bool:
        return bool(self.mentioned) or self.room_mention

    @property
    def body(self) -> str:
        return "".join(p.text for p in self.pieces)


def _first(meta: dict[str, Any], key: str) -> str:
    value = meta.get(key)
    return "" if value is None else str(value)


def render_light_app(elem: LightAppElement) -> str:
    """Markdown rendering of a mini-app card."""
    meta = elem.meta()
    title = _first(meta, "title")
    desc = _first(meta, "desc")
    if url := _first(meta, "qqdocurl"):
        return f"{desc}\n\nvia [{title}]({url})"
    if jump_url := _first(meta, "jumpUrl"):
        tag = _first(meta, "tag")
        return f"**{title}**\n\n{desc}\n\nvia [{tag}]({jump_url})"
    return elem.content


def render_service(elem: ServiceElement) -> str:
    """Title and summary of an XML card; a JSON payload is treated as a light app."""
    content = elem.content.strip()
    if content.startswith("{"):
        return render_light_app(LightAppElement(content=content))
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return "[Card]"
    title = root.findtext(".//title") or ""
    summary = root.findtext(".//summary") or ""
    text = "\n".join(part.strip() for part in (title, summary) if part and part.strip())
    return text or "[Card]"


def parse_location_card(elem: LightAppElement) -> LocationInfo | None:
    """Extract the location of a ``LocationShare`` card, or None when coordinates are missing."""
    meta = elem.meta()
    try:
        latitude = float(meta["lat"])
        longitude = float(meta["lng"])
    except (KeyError, TypeError, ValueError):
        return None
    return LocationInfo(
        name=_first(meta, "name"),
        address=_first(meta, "address"),
        latitude=latitude,
        longitude=longitude,
    )


def location_content(location: LocationInfo) -> dict[str, Any]:
    lat, lng = location.latitude, location.longitude
    url = f"https://maps.google.com/?q={lat:.5f},{lng:.5f}"
    name = location.name or f"{lat:.5f}, {lng:.5f}"
    return {
        "msgtype": "m.location",
        "body": f"Location: {name}\n{location.address}\n{url}",
        "format": MATRIX_HTML_FORMAT,
        "formatted_body": f"Location: <a href='{url}'>{name}</a><br>{location.address}",
        "geo_uri": f"geo:{lat:.5f},{lng:.5f}",
    }


def media_failure(reason: str) -> ConvertedMessage:
    return ConvertedMessage(
        content={"msgtype": "m.notice", "body": f"Failed to bridge media: {reason}"},
        error=MessageErrorKind.MEDIA_NOT_FOUND,
    )


def set_reply(content: dict[str, Any], event_id: str) -> None:
    relates = content.setdefault("m.relates_to", {})
    relates["m.in_reply_to"] = {"event_id": event_id}


class QQToMatrixConverter:
    """Converts one QQ message into exactly one Matrix event.

    Media failures never raise: they turn the event into an ``m.notice``
    describing what went wrong.
    """

    def __init__(
        self,
        *,
        download: Callable[[str], Awaitable[bytes]],
        upload: Uploader,
        codec: VoiceCodec,
        resolve_mention: MentionResolver,
        resolve_reply: ReplyResolver,
        native_single_image: bool = True,
    ) -> None:
        self.download = download
        self.upload = upload
        self.codec = codec
        self.resolve_mention = resolve_mention
        self.resolve_reply = resolve_reply
        self.native_single_image = native_single_image

    async def convert(self, elements: tuple[MessageElement, ...] | list[MessageElement]) -> ConvertedMessage | None:
        """Return the Matrix event for ``elements``, or None when nothing is renderable."""
        reply = next((e for e in elements if isinstance(e, ReplyElement)), None)
        body_elems = [e for e in elements if not isinstance(e, ReplyElement)]
        reply_event_id: str | None = None
        if reply is not None:
            try:
                reply_event_id = await self.resolve_reply(reply)
            except Exception:
                logger.opt(exception=True).warning("Reply lookup for seq {} failed", reply.reply_seq)
        if reply is not None and reply_event_id is not None:
            body_elems = self._drop_reply_mention(body_elems, reply.sender)
        single = len(body_elems) == 1

        converted: ConvertedMessage | None = None
        summary = _Summary()
        for elem in body_elems:
            match elem:
                case TextElement():
                    summary.pieces.append(_Piece(elem.content))
                case FaceElement():
                    summary.pieces.append(_Piece(f"/{elem.name}" if elem.name else f"/[Face{elem.face_id}]"))
                case AtElement():
                    summary.pieces.append(await self._mention_piece(elem, summary))
                case ImageElement():
                    if single and self.native_single_image:
                        converted = await self._convert_image(elem)
                    else:
                        summary.pieces.append(_Piece(await self._render_inline_image(elem), rich=True))
                        summary.rich = True
                case VideoElement():
                    if single:
                        converted = await self._convert_media("video", elem.url, elem.name)
                    else:
                        summary.pieces.append(_Piece("[Video]"))
                case VoiceElement():
                    if single:
                        converted = await self._convert_voice(elem)
                    else:
                        summary.pieces.append(_Piece("[Voice]"))
                case FileElement():
                    if single:
                        converted = await self._convert_media("file", elem.url, elem.name)
                    else:
                        summary.pieces.append(_Piece(f"[File: {elem.name}]" if elem.name else "[File]"))
                case LightAppElement():
                    location = parse_location_card(elem) if elem.view == LOCATION_VIEW else None
                    if location is not None:
                        converted = ConvertedMessage(content=location_content(location))
                    else:
                        summary.pieces.append(_Piece(render_light_app(elem), rich=True))
                        summary.rich = True
                case ServiceElement():
                    summary.pieces.append(_Piece(render_service(elem)))
                case ForwardElement():
                    summary.pieces.append(_Piece(f"[Forward: {elem.res_id}]"))

        if summary.pieces:
            if reply is not None and reply_event_id is None:
                await self._prefix_unlinked_reply(summary, reply, body_elems)
            converted = self._text_message(summary)
        elif converted is None and reply is not None and reply_event_id is None:
            await self._prefix_unlinked_reply(summary, reply, body_elems)
            converted = self._text_message(summary)

        if converted is None:
            return None
        if reply_event_id is not None:
            set_reply(converted.content, reply_event_id)
        return converted

    async def convert_offline_file(self, event: OfflineFileEvent) -> ConvertedMessage:
        return await self._convert_media("file", event.download_url, event.file_name)

    # ── Text ─────────────────────────────────────────────────────────

    @staticmethod
    def _drop_reply_mention(elems: list[MessageElement], reply_sender: str) -> list[MessageElement]:
        """QQ prefixes replies with a mention of the quoted author; a linked reply makes it redundant."""
        if not elems or not isinstance(elems[0], AtElement) or elems[0].target != reply_sender:
            return elems
        rest = list(elems[1:])
        if rest and isinstance(rest[0], TextElement):
            stripped = rest[0].content.removeprefix(" ")
            rest[0] = TextElement(content=stripped)
            if not stripped:
                rest.pop(0)
        return rest

    async def _prefix_unlinked_reply(
        self, summary: _Summary, reply: ReplyElement, body_elems: list[MessageElement]
    ) -> None:
        if body_elems and isinstance(body_elems[0], AtElement) and body_elems[0].target == reply.sender:
            # The mention QQ added for the quoted author stays, but as plain text.
            first = summary.pieces[0]
            summary.pieces[0] = _Piece(first.text)
            if first.mention:
                summary.mentioned.remove(first.mention)
            return
        resolved = await self._safe_resolve(reply.sender)
        name = resolved[1] if resolved else reply.sender
        summary.pieces.insert(0, _Piece(f"@{name} "))

    async def _safe_resolve(self, uin: str) -> tuple[str, str] | None:
        try:
            return await self.resolve_mention(uin)
        except Exception:
            logger.opt(exception=True).debug("Mention lookup for {} failed", uin)
            return None

    async def _mention_piece(self, elem: AtElement, summary: _Summary) -> _Piece:
        display = elem.display or f"@{elem.target}"
        if elem.is_all:
            summary.room_mention = True
            return _Piece(display, html="@room")
        resolved = await self._safe_resolve(elem.target)
        if resolved is None:
            return _Piece(display)
        mxid, name = resolved
        summary.mentioned.append(mxid)
        return _Piece(display, html=mention_html(mxid, name or display), mention=mxid)

    @staticmethod
    def _text_message(summary: _Summary) -> ConvertedMessage:
        body = summary.body
        content: dict[str, Any] = {"msgtype": "m.text", "body": body}
        if summary.has_mentions:
            parts: list[str] = []
            for piece in summary.pieces:
                if piece.html is not None:
                    parts.append(piece.html)
                elif piece.rich:
                    parts.append(render_markdown(piece.text) or text_to_html(piece.text))
                else:
                    parts.append(text_to_html(piece.text))
            content["format"] = MATRIX_HTML_FORMAT
            content["formatted_body"] = "".join(parts)
            mentions: dict[str, Any] = {}
            if summary.mentioned:
                mentions["user_ids"] = list(dict.fromkeys(summary.mentioned))
            if summary.room_mention:
                mentions["room"] = True
            content["m.mentions"] = mentions
        elif summary.rich and (formatted := render_markdown(body)):
            content["format"] = MATRIX_HTML_FORMAT
            content["formatted_body"] = formatted
        return ConvertedMessage(content=content)

    # ── Media ────────────────────────────────────────────────────────

    async def _render_inline_image(self, elem: ImageElement) -> str:
        try:
            data = await self.download(elem.url)
            mime = sniff_mime(data)
            uploaded = await self.upload(data, mime, None)
        except BridgeError as e:
            logger.warning("Failed to bridge inline image {}: {}", elem.url, e)
            return IMAGE_PLACEHOLDER
        mxc = uploaded.get("url") or uploaded.get("file", {}).get("url", "")
        return f"![{mime}]({mxc})"

    async def _convert_image(self, elem: ImageElement) -> ConvertedMessage:
        return await self._convert_media("image", elem.url, "")

    async def _convert_voice(self, elem: VoiceElement) -> ConvertedMessage:
        try:
            silk = await self.download(elem.url)
        except BridgeError as e:
            logger.warning("Failed to download voice {}: {}", elem.url, e)
            return media_failure("failed to download voice from QQ")
        try:
            ogg = await self.codec.silk_to_ogg(silk)
        except BridgeError as e:
            logger.warning("Voice transcode failed: {}", e)
            return media_failure("failed to convert silk audio to ogg format")
        name = elem.name.rsplit(".", 1)[0] + ".ogg" if elem.name else "voice.ogg"
        return await self._upload_native("m.audio", ogg, "audio/ogg", name)

    async def _convert_media(self, kind: str, url: str, name: str) -> ConvertedMessage:
        try:
            data = await self.download(url)
        except BridgeError as e:
            logger.warning("Failed to download {} {}: {}", kind, url, e)
            return media_failure(f"failed to download {kind} from QQ")
        mime = sniff_mime(data, name or None)
        msgtype = {"image": "m.image", "video": "m.video"}.get(kind, "m.file")
        return await self._upload_native(msgtype, data, mime, name or None)

    async def _upload_native(self, msgtype: str, data: bytes, mime: str, filename: str | None) -> ConvertedMessage:
        info: dict[str, Any] = {"mimetype": mime, "size": len(data)}
        if mime.startswith("image/"):
            width, height = image_dimensions(data)
            if width and height:
                info["w"], info["h"] = width, height
        try:
            uploaded = await self.upload(data, mime, filename)
        except MediaTooLargeError as e:
            if e.code == PROXY_TOO_LARGE:
                return media_failure("proxy rejected too large file")
            return media_failure("homeserver rejected too large file")
        except BridgeError as e:
            logger.warning("Failed to upload {}: {}", mime, e)
            return media_failure(f"failed to upload media: {e}")
        content: dict[str, Any] = {"msgtype": msgtype, "body": filename or mime, "info": info, **uploaded}
        if filename:
            content["filename"] = filename
        return ConvertedMessage(content=content)
