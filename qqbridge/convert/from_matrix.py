"""Matrix events → QQ message elements."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from qqbridge.convert.formatting import MATRIX_HTML_FORMAT, parse_matrix_html, strip_reply_fallback
from qqbridge.core.elements import (
    AtElement,
    LightAppElement,
    MatrixEvent,
    MessageElement,
    ReplyElement,
    TextElement,
)
from qqbridge.core.errors import (
    GeoURIError,
    MediaDownloadError,
    MediaError,
    MediaTooLargeError,
    UnsupportedMessageTypeError,
)
from qqbridge.core.models import ChatTarget, MessageRecord
from qqbridge.core.ports import QQClient, VoiceCodec
from qqbridge.media.crypto import decrypt_media
from qqbridge.media.mime import placeholder_jpeg
from qqbridge.utils.helpers import safe_filename

EVENT_STICKER = "m.sticker"
EMOTE_PREFIX = "/me "
_UINT16 = 0xFFFF


def parse_geo_uri(uri: str) -> tuple[float, float]:
    """Parse ``geo:lat,lng[;params]`` into ``(lat, lng)``."""
    if not uri.startswith("geo:"):
        raise GeoURIError("uri doesn't have geo: prefix")
    coordinates = uri.removeprefix("geo:").split(";", 1)[0]
    parts = coordinates.split(",")
    if len(parts) != 2:
        raise GeoURIError("didn't find exactly two numbers separated by a comma")
    latitude = _parse_coordinate(parts[0], "latitude")
    longitude = _parse_coordinate(parts[1], "longitude")
    return latitude, longitude


def _parse_coordinate(text: str, label: str) -> float:
    if not text or text != text.strip():
        raise GeoURIError(f"{label} is not a number: {text!r}")
    try:
        return float(text)
    except ValueError as e:
        raise GeoURIError(f"{label} is not a number: {e}") from e


def build_location_card(latitude: float, longitude: float) -> LightAppElement:
    """The ``com.tencent.map`` light app QQ clients render as a location share."""
    payload = {
        "app": "com.tencent.map",
        "desc": "地图",
        "view": "LocationShare",
        "ver": "0.0.0.1",
        "prompt": "[应用]地图",
        "from": 1,
        "meta": {
            "Location.Search": {
                "id": "12250896297164027526",
                "name": "Location Share",
                "address": f"Latitude: {latitude:.5f} Longitude: {longitude:.5f}",
                "lat": f"{latitude:.5f}",
                "lng": f"{longitude:.5f}",
                "from": "plusPanel",
            }
        },
        "config": {"forward": 1, "autosize": 1, "type": "card"},
    }
    return LightAppElement(content=json.dumps(payload, ensure_ascii=False))


def build_reply_element(
    record: MessageRecord, *, is_private: bool, portal_uin: str, self_uin: str
) -> ReplyElement | None:
    """Address a QQ reply to ``record``; None when its sequence is not numeric.

    QQ private replies carry a 16-bit sequence and name the *other* side of
    the conversation as group id.
    """
    seq = record.key.int_seq
    if seq is None:
        return None
    if is_private:
        seq &= _UINT16
        group_id = portal_uin if record.sender.value == self_uin else self_uin
    else:
        group_id = portal_uin
    return ReplyElement(
        reply_seq=seq,
        time=record.timestamp // 1000,
        sender=record.sender.value,
        group_id=group_id,
        elements=(TextElement(content=record.content),),
    )


async def render_qq_mention(client: QQClient, target: ChatTarget, uin: str) -> AtElement:
    """Mention with the freshest display name QQ knows for ``uin`` in this chat."""
    try:
        if target.is_group:
            member = await client.fetch_member_info(target.uin, uin)
            if member is not None:
                return AtElement(target=uin, display="@" + member.display_name)
        else:
            info = await client.fetch_user_info(uin)
            if info is not None and info.nickname:
                return AtElement(target=uin, display="@" + info.nickname)
    except Exception:
        logger.opt(exception=True).debug("Failed to look up QQ name of {}", uin)
    return AtElement(target=uin, display=f"@{uin}")


class MatrixToQQConverter:
    """Builds the QQ element list for one Matrix message.

    Media steps raise ``MediaError`` subclasses and abort the whole send.
    Files are uploaded through the QQ file API and yield no elements.
    """

    def __init__(
        self,
        *,
        client: QQClient,
        codec: VoiceCodec,
        download_media: Callable[[str], Awaitable[bytes]],
        resolve_uin: Callable[[str], str | None],
        max_file_size: int,
    ) -> None:
        self.client = client
        self.codec = codec
        self.download_media = download_media
        self.resolve_uin = resolve_uin
        self.max_file_size = max_file_size

    async def convert(
        self,
        event: MatrixEvent,
        target: ChatTarget,
        *,
        reply: ReplyElement | None = None,
        reply_mention: AtElement | None = None,
    ) -> list[MessageElement]:
        content = event.content
        msgtype = "m.image" if event.type == EVENT_STICKER else event.msgtype
        elems: list[MessageElement] = []

        match msgtype:
            case "m.text" | "m.emote":
                if reply_mention is not None:
                    elems.append(reply_mention)
                if msgtype == "m.emote":
                    elems.append(TextElement(content=EMOTE_PREFIX))
                elems.extend(await self._convert_text(content, target))
            case "m.image":
                _, data = await self._fetch(content)
                elems.append(await self.client.upload_image(target, data))
            case "m.video":
                _, data = await self._fetch(content)
                thumbnail = await self._fetch_thumbnail(content)
                elems.append(await self.client.upload_video(target, data, thumbnail))
            case "m.audio":
                _, data = await self._fetch(content)
                silk = await self.codec.ogg_to_silk(data)
                elems.append(await self.client.upload_voice(target, silk))
            case "m.file":
                name, data = await self._fetch(content)
                await self.client.upload_file(target, safe_filename(name), data)
                return []
            case "m.location":
                latitude, longitude = parse_geo_uri(str(content.get("geo_uri") or ""))
                elems.append(build_location_card(latitude, longitude))
            case _:
                raise UnsupportedMessageTypeError(msgtype)

        if reply is not None:
            elems.append(reply)
        return elems

    async def _convert_text(self, content: dict[str, Any], target: ChatTarget) -> list[MessageElement]:
        formatted = content.get("formatted_body")
        if content.get("format") == MATRIX_HTML_FORMAT and isinstance(formatted, str):
            parsed = parse_matrix_html(formatted, self.resolve_uin)
            result: list[MessageElement] = []
            for elem in parsed:
                if isinstance(elem, AtElement):
                    result.append(await render_qq_mention(self.client, target, elem.target))
                else:
                    result.append(elem)
            return result
        body = strip_reply_fallback(str(content.get("body") or ""))
        return [TextElement(content=body)]

    async def _fetch(self, content: dict[str, Any]) -> tuple[str, bytes]:
        body = str(content.get("body") or "")
        filename = str(content.get("filename") or "") or body or "file"

        file_info = content.get("file") if isinstance(content.get("file"), dict) else None
        mxc = str((file_info or {}).get("url") or content.get("url") or "")
        if not mxc.startswith("mxc://"):
            raise MediaDownloadError(f"invalid content uri: {mxc!r}")

        declared = content.get("info", {}).get("size") if isinstance(content.get("info"), dict) else None
        if isinstance(declared, int) and declared > self.max_file_size:
            raise MediaTooLargeError(f"{filename} is {declared} bytes, limit is {self.max_file_size}")

        try:
            data = await self.download_media(mxc)
        except MediaError:
            raise
        except Exception as e:
            raise MediaDownloadError(f"failed to download {mxc}: {e}") from e
        if file_info is not None:
            data = decrypt_media(data, file_info)
        if len(data) > self.max_file_size:
            raise MediaTooLargeError(f"{filename} is {len(data)} bytes, limit is {self.max_file_size}")
        return filename, data

    async def _fetch_thumbnail(self, content: dict[str, Any]) -> bytes:
        info = content.get("info") if isinstance(content.get("info"), dict) else {}
        thumb_file = info.get("thumbnail_file")
        thumb_url = info.get("thumbnail_url")
        if not thumb_file and not thumb_url:
            return placeholder_jpeg()
        thumb_content: dict[str, Any] = {"body": "thumbnail.jpg"}
        if isinstance(thumb_file, dict):
            thumb_content["file"] = thumb_file
        else:
            thumb_content["url"] = thumb_url
        try:
            _, data = await self._fetch(thumb_content)
        except MediaError as e:
            logger.debug("Video thumbnail unavailable, using placeholder: {}", e)
            return placeholder_jpeg()
        return data
