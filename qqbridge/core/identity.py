"""Identity codec between QQ numeric identifiers and bridge-side keys.

Everything here is pure: no I/O, no clocks except the random discriminator used
for synthetic message keys.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import StrEnum

from qqbridge.core.errors import MalformedIDError

UID_SEPARATOR = "\x01"
KEY_SEPARATOR = "\x02"
MESSAGE_ID_SEPARATOR = ":"
FAKE_MESSAGE_PREFIX = "fake"
FAKE_KEY_PREFIX = "FAKE::"
PENDING_KEY_PREFIX = "PENDING::"

_RESERVED = (UID_SEPARATOR, KEY_SEPARATOR)


class UIDKind(StrEnum):
    USER = "u"
    GROUP = "g"


class ChatType(StrEnum):
    PRIVATE = "private"
    GROUP = "group"
    TEMP = "temp"


_SURFACES: dict[str, ChatType] = {
    "private": ChatType.PRIVATE,
    "friend": ChatType.PRIVATE,
    "group": ChatType.GROUP,
    "temp": ChatType.TEMP,
}


def classify_chat_type(surface: str) -> ChatType:
    """Map the QQ callback surface that produced an event to its chat type.

    The chat type cannot be derived from an identifier alone: a uin may be a
    friend in one callback and a temp-session peer in another.
    """
    try:
        return _SURFACES[surface.strip().lower()]
    except KeyError:
        raise MalformedIDError(f"unknown QQ event surface: {surface!r}") from None


def _check_field(name: str, value: str) -> str:
    if not value:
        raise MalformedIDError(f"{name} must not be empty")
    for sep in _RESERVED:
        if sep in value:
            raise MalformedIDError(f"{name} contains a reserved separator: {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class UID:
    """Tagged QQ identifier; a uin is either a user or a group code."""

    value: str
    kind: UIDKind

    def __post_init__(self) -> None:
        _check_field("uid", self.value)

    @classmethod
    def user(cls, value: str | int) -> UID:
        return cls(str(value), UIDKind.USER)

    @classmethod
    def group(cls, value: str | int) -> UID:
        return cls(str(value), UIDKind.GROUP)

    @classmethod
    def parse(cls, text: str) -> UID:
        value, sep, kind = text.rpartition(UID_SEPARATOR)
        if not sep:
            raise MalformedIDError(f"not a serialized UID: {text!r}")
        try:
            return cls(value, UIDKind(kind))
        except ValueError:
            raise MalformedIDError(f"unknown UID kind in {text!r}") from None

    @property
    def is_user(self) -> bool:
        return self.kind is UIDKind.USER

    @property
    def is_group(self) -> bool:
        return self.kind is UIDKind.GROUP

    @property
    def int_value(self) -> int:
        try:
            return int(self.value)
        except ValueError:
            return 0

    def __str__(self) -> str:
        return f"{self.value}{UID_SEPARATOR}{self.kind.value}"


@dataclass(frozen=True, slots=True)
class PortalKey:
    """Chat identity plus the local account that owns a private mapping."""

    uid: UID
    receiver: UID

    @classmethod
    def of(cls, uid: UID, receiver: UID) -> PortalKey:
        # Groups are shared across local accounts.
        if uid.is_group:
            return cls(uid, uid)
        return cls(uid, receiver)

    @classmethod
    def parse(cls, text: str) -> PortalKey:
        uid_text, sep, receiver_text = text.partition(KEY_SEPARATOR)
        uid = UID.parse(uid_text)
        if not sep:
            return cls(uid, uid)
        return cls.of(uid, UID.parse(receiver_text))

    @property
    def is_private(self) -> bool:
        return self.uid.is_user

    @property
    def is_group(self) -> bool:
        return self.uid.is_group

    def __str__(self) -> str:
        if self.receiver == self.uid:
            return str(self.uid)
        return f"{self.uid}{KEY_SEPARATOR}{self.receiver}"


def private_portal_key(sender: str, target: str, self_uin: str) -> PortalKey:
    """Key for a private message as seen by the local account ``self_uin``."""
    if sender == self_uin:
        return PortalKey.of(UID.user(target), UID.user(sender))
    return PortalKey.of(UID.user(sender), UID.user(target))


@dataclass(frozen=True, slots=True)
class MessageKey:
    """Composite QQ message identity: sequence number plus internal id."""

    seq: str
    id: str = ""

    @classmethod
    def of(cls, seq: int, internal_id: int) -> MessageKey:
        return cls(str(seq), str(internal_id))

    @classmethod
    def partial(cls, seq: int) -> MessageKey:
        return cls(str(seq))

    @classmethod
    def fake(cls, discriminator: str) -> MessageKey:
        return cls(str(random.randrange(10_000_000_000)), FAKE_KEY_PREFIX + discriminator)

    @classmethod
    def pending(cls, event_id: str) -> MessageKey:
        return cls("", PENDING_KEY_PREFIX + event_id)

    @classmethod
    def parse(cls, text: str) -> MessageKey:
        seq, _, internal_id = text.partition(KEY_SEPARATOR)
        return cls(seq, internal_id)

    @property
    def is_fake(self) -> bool:
        return self.id.startswith(FAKE_KEY_PREFIX)

    @property
    def is_pending(self) -> bool:
        return self.id.startswith(PENDING_KEY_PREFIX)

    @property
    def int_seq(self) -> int | None:
        try:
            return int(self.seq)
        except ValueError:
            return None

    @property
    def int_id(self) -> int | None:
        try:
            return int(self.id)
        except ValueError:
            return None

    def __str__(self) -> str:
        return f"{self.seq}{KEY_SEPARATOR}{self.id}"


# ── Opaque message IDs ───────────────────────────────────────────────


def make_message_id(chat_id: str, remote_id: str | int) -> str:
    """Join a chat id and a QQ sequence/id into one opaque message id."""
    chat = str(chat_id)
    if not chat or MESSAGE_ID_SEPARATOR in chat:
        raise MalformedIDError(f"chat id cannot be used in a message id: {chat!r}")
    if chat == FAKE_MESSAGE_PREFIX:
        raise MalformedIDError("chat id collides with the synthetic message prefix")
    remote = str(remote_id)
    if not remote:
        raise MalformedIDError("remote message id must not be empty")
    return f"{chat}{MESSAGE_ID_SEPARATOR}{remote}"


def make_fake_message_id(chat_id: str, discriminator: str) -> str:
    """Message id for bridge-generated notices that have no QQ counterpart."""
    chat = str(chat_id)
    if not chat or MESSAGE_ID_SEPARATOR in chat:
        raise MalformedIDError(f"chat id cannot be used in a message id: {chat!r}")
    return f"{FAKE_MESSAGE_PREFIX}{MESSAGE_ID_SEPARATOR}{chat}{MESSAGE_ID_SEPARATOR}{discriminator}"


def is_fake_message_id(message_id: str) -> bool:
    return message_id.startswith(FAKE_MESSAGE_PREFIX + MESSAGE_ID_SEPARATOR)


def parse_message_id(message_id: str) -> tuple[str, str]:
    """Split an id built by ``make_message_id`` back into ``(chat, remote_id)``."""
    if is_fake_message_id(message_id):
        raise MalformedIDError(f"synthetic message id has no QQ counterpart: {message_id!r}")
    chat, sep, remote = message_id.partition(MESSAGE_ID_SEPARATOR)
    if not sep or not chat or not remote:
        raise MalformedIDError(f"invalid message id: {message_id!r}")
    return chat, remote
