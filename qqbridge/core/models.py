"""Persistent records and value objects exchanged with the QQ client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum, StrEnum

from qqbridge.core.identity import UID, MessageKey, PortalKey


class NameQuality(IntEnum):
    """Confidence of a display name source; higher never gets overwritten by lower."""

    NONE = 0
    UIN = 1
    NAME = 2
    REMARK = 3


class MessageKind(StrEnum):
    NORMAL = "message"
    FAKE = "fake"


class MessageErrorKind(StrEnum):
    NONE = ""
    DECRYPTION_FAILED = "decryption_failed"
    MEDIA_NOT_FOUND = "media_not_found"


class MemberPermission(StrEnum):
    MEMBER = "member"
    ADMIN = "admin"
    OWNER = "owner"


@dataclass(slots=True, kw_only=True)
class PortalRecord:
    key: PortalKey
    mxid: str | None = None
    name: str = ""
    name_set: bool = False
    topic: str = ""
    topic_set: bool = False
    avatar: str = ""
    avatar_url: str = ""
    avatar_set: bool = False
    encrypted: bool = False
    last_sync: datetime | None = None
    first_event_id: str = ""


@dataclass(slots=True, kw_only=True)
class PuppetRecord:
    uid: UID
    displayname: str = ""
    name_quality: NameQuality = NameQuality.NONE
    name_set: bool = False
    avatar: str = ""
    avatar_url: str = ""
    avatar_set: bool = False
    last_sync: datetime | None = None
    custom_mxid: str | None = None


@dataclass(slots=True, kw_only=True)
class MessageRecord:
    chat: PortalKey
    key: MessageKey
    mxid: str | None
    sender: UID
    timestamp: int
    sent: bool = False
    kind: MessageKind = MessageKind.NORMAL
    error: MessageErrorKind = MessageErrorKind.NONE
    content: str = ""

    @property
    def is_fake(self) -> bool:
        return self.kind is MessageKind.FAKE or self.key.is_fake


@dataclass(slots=True, kw_only=True)
class UserRecord:
    mxid: str
    uin: str | None = None
    management_room: str | None = None


# ── QQ client value objects ──────────────────────────────────────────


@dataclass(frozen=True, slots=True, kw_only=True)
class ContactInfo:
    uin: str
    name: str = ""
    remark: str = ""


@dataclass(frozen=True, slots=True, kw_only=True)
class UserInfo:
    uin: str
    nickname: str = ""
    remark: str = ""
    is_friend: bool = False

    def to_contact(self) -> ContactInfo:
        return ContactInfo(uin=self.uin, name=self.nickname, remark=self.remark)


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupMember:
    uin: str
    nickname: str = ""
    card_name: str = ""
    permission: MemberPermission = MemberPermission.MEMBER

    @property
    def display_name(self) -> str:
        return self.card_name or self.nickname or self.uin


@dataclass(frozen=True, slots=True, kw_only=True)
class GroupInfo:
    code: str
    name: str = ""
    memo: str = ""
    members: tuple[GroupMember, ...] = field(default_factory=tuple)


@dataclass(frozen=True, slots=True, kw_only=True)
class SendReceipt:
    """Acknowledgement for one message sent to QQ."""

    seq: int
    internal_id: int
    timestamp: int

    @property
    def key(self) -> MessageKey:
        return MessageKey.of(self.seq, self.internal_id)


@dataclass(frozen=True, slots=True, kw_only=True)
class ChatTarget:
    """Destination used when uploading media to QQ."""

    is_group: bool
    uin: str
