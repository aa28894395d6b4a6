"""QQ message element variants and inbound message/event shapes.

The element set is closed: converters match on ``MessageElement`` exhaustively
so a new variant fails type checking until every direction handles it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, TypeAlias

from qqbridge.core.identity import ChatType, MessageKey

AT_ALL_TARGET = "0"


@dataclass(frozen=True, slots=True, kw_only=True)
class TextElement:
    content: str


@dataclass(frozen=True, slots=True, kw_only=True)
class FaceElement:
    face_id: int
    name: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class AtElement:
    target: str
    display: str = ""

    @property
    def is_all(self) -> bool:
        return self.target == AT_ALL_TARGET


@dataclass(frozen=True, slots=True, kw_only=True)
class ImageElement:
    url: str = ""
    image_id: str = ""
    size: int = 0
    width: int = 0
    height: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class VideoElement:
    url: str = ""
    name: str = ""
    size: int = 0
    thumb_url: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class VoiceElement:
    url: str = ""
    name: str = ""
    size: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class FileElement:
    url: str = ""
    name: str = ""
    size: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class ReplyElement:
    reply_seq: int
    time: int
    sender: str
    group_id: str = ""
    elements: tuple[MessageElement, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class LightAppElement:
    """JSON mini-app card; location shares are one flavour of it."""

    content: str

    def payload(self) -> dict[str, Any]:
        try:
            data = json.loads(self.content)
        except (TypeError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    @property
    def view(self) -> str:
        return str(self.payload().get("view") or "")

    def meta(self) -> dict[str, Any]:
        """Return the single entry under ``meta``, whatever its key is."""
        meta = self.payload().get("meta")
        if isinstance(meta, dict):
            for value in meta.values():
                if isinstance(value, dict):
                    return value
        return {}


@dataclass(frozen=True, slots=True, kw_only=True)
class ServiceElement:
    """XML rich card (multi-message previews, shared links)."""

    service_id: int
    content: str


@dataclass(frozen=True, slots=True, kw_only=True)
class ForwardElement:
    res_id: str


MessageElement: TypeAlias = (
    TextElement
    | FaceElement
    | AtElement
    | ImageElement
    | VideoElement
    | VoiceElement
    | FileElement
    | ReplyElement
    | LightAppElement
    | ServiceElement
    | ForwardElement
)

_ROOM_WORTHY = (
    TextElement,
    FaceElement,
    AtElement,
    ImageElement,
    VideoElement,
    FileElement,
    VoiceElement,
    ReplyElement,
    LightAppElement,
)


def contains_supported_element(elements: tuple[MessageElement, ...] | list[MessageElement]) -> bool:
    """True when a message carries conversational content worth a room."""
    return any(isinstance(elem, _ROOM_WORTHY) for elem in elements)


def to_readable_string(elements: tuple[MessageElement, ...] | list[MessageElement]) -> str:
    """Flatten elements into the text snapshot stored with message records."""
    parts: list[str] = []
    for elem in elements:
        match elem:
            case TextElement():
                parts.append(elem.content)
            case FaceElement():
                parts.append(f"/{elem.name}" if elem.name else f"/[Face{elem.face_id}]")
            case AtElement():
                parts.append(elem.display or f"@{elem.target}")
            case ImageElement():
                parts.append("[Image]")
            case VoiceElement():
                parts.append("[Voice]")
            case VideoElement():
                parts.append("[Video]")
            case FileElement():
                parts.append("[File]")
            case ForwardElement():
                parts.append(f"[Forward: {elem.res_id}]")
            case LightAppElement():
                meta = elem.meta()
                parts.append(str(meta.get("title") or elem.payload().get("prompt") or "[App]"))
            case ServiceElement():
                parts.append("[Card]")
            case ReplyElement():
                continue
    return "".join(parts)


# ── Inbound QQ events ────────────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class QQMessage:
    """One chat message delivered by a QQ callback.

    ``target`` is the private-chat peer or the group code. Temp-session
    messages carry no internal id and are keyed by sequence only.
    """

    chat_type: ChatType
    seq: int
    internal_id: int | None = None
    time: int = 0
    sender: str
    sender_name: str = ""
    target: str
    elements: tuple[MessageElement, ...] = ()

    @property
    def key(self) -> MessageKey:
        if self.internal_id is None:
            return MessageKey.partial(self.seq)
        return MessageKey.of(self.seq, self.internal_id)


@dataclass(frozen=True, slots=True, kw_only=True)
class OfflineFileEvent:
    sender: str
    file_name: str
    file_size: int
    download_url: str
    time: int = 0


@dataclass(frozen=True, slots=True, kw_only=True)
class FriendRecallEvent:
    friend_uin: str
    message_seq: int
    time: int


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupRecallEvent:
    group_code: str
    author_uin: str
    operator_uin: str
    message_seq: int
    time: int


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupJoinEvent:
    """The local account joined (or was invited into) a group."""

    group_code: str
    group_name: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupLeaveEvent:
    """The local account left or was removed from a group."""

    group_code: str
    operator_uin: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class MemberJoinEvent:
    group_code: str
    member_uin: str


@dataclass(frozen=True, slots=True, kw_only=True)
class MemberLeaveEvent:
    group_code: str
    member_uin: str
    operator_uin: str | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class MemberCardUpdatedEvent:
    group_code: str
    member_uin: str
    card_name: str


@dataclass(frozen=True, slots=True, kw_only=True)
class MemberPermissionChangedEvent:
    group_code: str
    member_uin: str
    is_admin: bool


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupMuteEvent:
    """Mute change; ``target_uin == "0"`` mutes the whole group."""

    group_code: str
    operator_uin: str
    target_uin: str
    duration: int
    time: int = 0


ChatEvent: TypeAlias = (
    FriendRecallEvent
    | GroupRecallEvent
    | GroupJoinEvent
    | GroupLeaveEvent
    | MemberJoinEvent
    | MemberLeaveEvent
    | MemberCardUpdatedEvent
    | MemberPermissionChangedEvent
    | GroupMuteEvent
)

QQEvent: TypeAlias = QQMessage | OfflineFileEvent | ChatEvent


# ── Inbound Matrix events ────────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class MatrixEvent:
    """Matrix room event routed into a portal."""

    event_id: str
    room_id: str
    sender: str
    type: str
    content: dict[str, Any] = field(default_factory=dict)
    redacts: str | None = None
    timestamp: int = 0

    @property
    def msgtype(self) -> str:
        return str(self.content.get("msgtype") or "")

    @property
    def reply_to(self) -> str | None:
        relates = self.content.get("m.relates_to")
        if not isinstance(relates, dict):
            return None
        in_reply_to = relates.get("m.in_reply_to")
        if isinstance(in_reply_to, dict):
            event_id = in_reply_to.get("event_id")
            return str(event_id) if event_id else None
        return None
