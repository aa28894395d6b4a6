"""Portal: one QQ chat bound to one Matrix room."""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from loguru import logger

from qqbridge.bridge.dedup import DuplicateTracker
from qqbridge.convert.from_matrix import MatrixToQQConverter, build_reply_element, render_qq_mention
from qqbridge.convert.from_qq import ConvertedMessage, QQToMatrixConverter, Uploader, set_reply
from qqbridge.core.elements import (
    AtElement,
    ChatEvent,
    FriendRecallEvent,
    GroupJoinEvent,
    GroupLeaveEvent,
    GroupMuteEvent,
    GroupRecallEvent,
    MatrixEvent,
    MemberCardUpdatedEvent,
    MemberJoinEvent,
    MemberLeaveEvent,
    MemberPermissionChangedEvent,
    OfflineFileEvent,
    QQMessage,
    ReplyElement,
    contains_supported_element,
    to_readable_string,
)
from qqbridge.core.errors import BridgeError, DifferentUserError, MatrixForbiddenError, UserNotLoggedInError
from qqbridge.core.identity import UID, MessageKey, PortalKey
from qqbridge.core.models import (
    ChatTarget,
    ContactInfo,
    GroupInfo,
    GroupMember,
    MemberPermission,
    MessageErrorKind,
    MessageKind,
    PortalRecord,
)
from qqbridge.core.ports import MatrixIntent, QQClient
from qqbridge.media.avatar import download_avatar, md5_hex
from qqbridge.media.crypto import encrypt_media, encrypted_file_content
from qqbridge.media.mime import sniff_mime
from qqbridge.utils.helpers import now_ms, truncate_string, utc_now

if TYPE_CHECKING:
    from qqbridge.bridge.bridge import QQBridge
    from qqbridge.bridge.puppet import Puppet
    from qqbridge.bridge.user import User

PRIVATE_CHAT_TOPIC = "QQ private chat"
PORTAL_CREATION_DUMMY_EVENT = "net.qqbridge.dummy.portal_created"
EXTRA_USER_KICK_REASON = "User had left this QQ chat"
RESYNC_AFTER = timedelta(hours=24)

EVENT_MESSAGE = "m.room.message"
EVENT_REDACTION = "m.room.redaction"
EVENT_REACTION = "m.reaction"
EVENT_MEMBER = "m.room.member"
STATE_POWER_LEVELS = "m.room.power_levels"
STATE_ROOM_NAME = "m.room.name"
STATE_ROOM_AVATAR = "m.room.avatar"
STATE_TOPIC = "m.room.topic"
STATE_ENCRYPTION = "m.room.encryption"
STATE_BRIDGE = "m.bridge"
STATE_HALF_SHOT_BRIDGE = "uk.half-shot.bridge"

OWNER_LEVEL = 95
ADMIN_LEVEL = 50
MUTE_ALL_TARGET = "0"


class PortalState(StrEnum):
    UNBOUND = "unbound"
    ROOM_PENDING = "room_pending"
    BOUND = "bound"
    DELETED = "deleted"


@dataclass(slots=True, kw_only=True)
class FakeMessage:
    """Bridge-generated notice with no QQ message behind it."""

    sender: UID
    text: str
    id: str
    time: int
    important: bool = False


@dataclass(slots=True)
class PortalMessage:
    """One queued QQ item: a chat message, a bridge notice or a chat event such as a recall."""

    source: User
    message: QQMessage | OfflineFileEvent | None = None
    fake: FakeMessage | None = None
    event: ChatEvent | None = None


@dataclass(slots=True)
class PortalMatrixMessage:
    user: User
    event: MatrixEvent


def _ensure_user_level(levels: dict[str, Any], user_id: str, level: int) -> bool:
    users = levels.setdefault("users", {})
    if users.get(user_id, levels.get("users_default", 0)) == level:
        return False
    if level == levels.get("users_default", 0):
        users.pop(user_id, None)
    else:
        users[user_id] = level
    return True


def _ensure_event_level(levels: dict[str, Any], event_type: str, level: int) -> bool:
    events = levels.setdefault("events", {})
    if events.get(event_type) == level:
        return False
    events[event_type] = level
    return True


def _apply_power_level_fixes(levels: dict[str, Any]) -> bool:
    changed = _ensure_event_level(levels, EVENT_REACTION, 0)
    return _ensure_event_level(levels, EVENT_REDACTION, 0) or changed


class Portal:
    """Serializes all traffic of one chat through a single worker task.

    QQ events and Matrix events arrive on two bounded queues. The worker takes
    whichever is ready, so each direction keeps its own order while one slow
    item never runs concurrently with another of the same chat.
    """

    def __init__(self, bridge: QQBridge, record: PortalRecord) -> None:
        self.bridge = bridge
        self.record = record
        buffer = bridge.config.bridge.portal_message_buffer
        self._qq_messages: asyncio.Queue[PortalMessage] = asyncio.Queue(maxsize=buffer)
        self._matrix_messages: asyncio.Queue[PortalMatrixMessage] = asyncio.Queue(maxsize=buffer)
        self.room_create_lock = asyncio.Lock()
        self._avatar_lock = asyncio.Lock()
        self._worker: asyncio.Task | None = None
        self._deleted = False
        self._closing = asyncio.Event()
        self.dedup = DuplicateTracker(bridge.store, record.key)

    def __repr__(self) -> str:
        return f"Portal({self.key}, {self.mxid or 'no room'})"

    @property
    def key(self) -> PortalKey:
        return self.record.key

    @property
    def mxid(self) -> str | None:
        return self.record.mxid

    @property
    def is_private(self) -> bool:
        return self.key.is_private

    @property
    def is_group(self) -> bool:
        return self.key.is_group

    @property
    def state(self) -> PortalState:
        if self._deleted:
            return PortalState.DELETED
        if self.record.mxid:
            return PortalState.BOUND
        if self.room_create_lock.locked():
            return PortalState.ROOM_PENDING
        return PortalState.UNBOUND

    def main_intent(self) -> MatrixIntent:
        if self.is_private:
            puppet = self.bridge.get_puppet_by_uid(self.key.uid)
            if puppet is not None:
                return puppet.default_intent()
        return self.bridge.bot

    def save(self) -> None:
        if self._deleted:
            return
        if self.bridge.store.get_portal(self.key) is None:
            self.bridge.store.insert_portal(self.record)
        else:
            self.bridge.store.update_portal(self.record)

    def _chat_target(self) -> ChatTarget:
        return ChatTarget(is_group=self.is_group, uin=self.key.uid.value)

    def _setter_intent(self, setter: UID | None) -> MatrixIntent:
        if setter is not None:
            puppet = self.bridge.get_puppet_by_uid(setter)
            if puppet is not None:
                return puppet.intent_for(self)
        return self.main_intent()

    # ── Worker ───────────────────────────────────────────────────────

    def start(self) -> None:
        if self._deleted:
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run(), name=f"portal-{self.key.uid.value}")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None

    async def enqueue_qq(self, item: PortalMessage) -> None:
        """Queue a QQ event; waits while the buffer is full."""
        if self._deleted:
            await self.bridge.get_portal_by_key(self.key).enqueue_qq(item)
            return
        self.start()
        await self._qq_messages.put(item)

    async def enqueue_matrix(self, item: PortalMatrixMessage) -> None:
        if self._deleted:
            portal = self.bridge.get_portal_by_mxid(item.event.room_id)
            if portal is not None:
                await portal.enqueue_matrix(item)
            else:
                logger.debug("Dropping {} for deleted portal {}", item.event.event_id, self.key)
            return
        self.start()
        await self._matrix_messages.put(item)

    async def _run(self) -> None:
        # Deletion only wakes an idle worker; an item in flight always runs to completion.
        closing = asyncio.create_task(self._closing.wait())
        try:
            while not self._deleted:
                qq_get = asyncio.create_task(self._qq_messages.get())
                matrix_get = asyncio.create_task(self._matrix_messages.get())
                try:
                    done, _ = await asyncio.wait(
                        {qq_get, matrix_get, closing}, return_when=asyncio.FIRST_COMPLETED
                    )
                finally:
                    for task in (qq_get, matrix_get):
                        if not task.done():
                            task.cancel()
                if qq_get in done:
                    await self._process(qq_get.result(), self._qq_messages, self._handle_qq_item, self.enqueue_qq)
                if matrix_get in done:
                    await self._process(
                        matrix_get.result(), self._matrix_messages, self._handle_matrix_item, self.enqueue_matrix
                    )
        finally:
            closing.cancel()

    async def _process(
        self,
        item: Any,
        queue: asyncio.Queue,
        handle: Callable[[Any], Awaitable[None]],
        forward: Callable[[Any], Awaitable[None]],
    ) -> None:
        try:
            if self._deleted:
                await forward(item)
            else:
                await handle(item)
        except Exception:
            logger.exception("Portal {} failed to handle queued item", self.key)
        finally:
            queue.task_done()

    async def join(self) -> None:
        """Wait until everything queued so far has been handled."""
        await self._qq_messages.join()
        await self._matrix_messages.join()

    def _drain(self) -> tuple[list[PortalMessage], list[PortalMatrixMessage]]:
        qq_items: list[PortalMessage] = []
        matrix_items: list[PortalMatrixMessage] = []
        while not self._qq_messages.empty():
            qq_items.append(self._qq_messages.get_nowait())
            self._qq_messages.task_done()
        while not self._matrix_messages.empty():
            matrix_items.append(self._matrix_messages.get_nowait())
            self._matrix_messages.task_done()
        return qq_items, matrix_items

    async def _handle_qq_item(self, item: PortalMessage) -> None:
        if item.event is not None:
            await self._handle_qq_event(item.source, item.event)
            return
        if not self.mxid:
            if not self._should_create_room(item):
                logger.debug("Not creating portal room for {}: not a chat message", self.key)
                return
            logger.debug("Creating Matrix room for {} from incoming message", self.key)
            try:
                await self.create_matrix_room(item.source)
            except BridgeError as e:
                logger.error("Failed to create portal room for {}: {}", self.key, e)
                return
            if not self.mxid:
                return

        if item.fake is not None:
            await self.handle_fake_message(item.fake)
        elif item.message is not None:
            await self.handle_qq_message(item.source, item.message)
        else:
            logger.warning("Portal {} got an empty queued message", self.key)

    @staticmethod
    def _should_create_room(item: PortalMessage) -> bool:
        if item.fake is not None or isinstance(item.message, OfflineFileEvent):
            return True
        if isinstance(item.message, QQMessage):
            return contains_supported_element(item.message.elements)
        return False

    async def _handle_qq_event(self, source: User, event: ChatEvent) -> None:
        if isinstance(event, GroupJoinEvent):
            await self.handle_qq_group_join(source, event)
            return
        if not self.mxid:
            logger.debug("Ignoring {} for {}: no portal room", type(event).__name__, self.key)
            return
        match event:
            case FriendRecallEvent():
                await self.handle_qq_revoke(source, event.message_seq, event.time, event.friend_uin)
            case GroupRecallEvent():
                await self.handle_qq_revoke(source, event.message_seq, event.time, event.author_uin)
            case GroupLeaveEvent():
                await self.handle_qq_member_kick(source, event.operator_uin, source.uin or "")
            case MemberJoinEvent():
                await self.handle_qq_member_invite(source, None, event.member_uin)
            case MemberLeaveEvent():
                await self.handle_qq_member_kick(source, event.operator_uin, event.member_uin)
            case MemberCardUpdatedEvent():
                await self.update_room_nickname(GroupMember(uin=event.member_uin, card_name=event.card_name))
            case MemberPermissionChangedEvent():
                await self.change_admin_status([UID.user(event.member_uin)], event.is_admin)
            case GroupMuteEvent():
                await self.handle_qq_mute(event)

    async def _handle_matrix_item(self, item: PortalMatrixMessage) -> None:
        event = item.event
        try:
            match event.type:
                case "m.room.message" | "m.sticker":
                    await self.handle_matrix_message(item.user, event)
                case "m.room.redaction":
                    await self.handle_matrix_redaction(item.user, event)
                case "m.reaction":
                    logger.debug("Ignoring reaction {} in {}", event.event_id, self.key)
                case "m.room.member":
                    if event.content.get("membership") == "leave":
                        await self.handle_matrix_leave(item.user)
                case _:
                    logger.warning("Unsupported event type {} in portal {}", event.type, self.key)
        except BridgeError as e:
            logger.warning("Failed to bridge {} from {} to QQ: {}", event.event_id, event.sender, e)

    # ── QQ → Matrix ──────────────────────────────────────────────────

    async def _message_intent(self, source: User, sender: UID) -> tuple[Puppet, MatrixIntent] | None:
        puppet = self.bridge.get_puppet_by_uid(sender)
        if puppet is None:
            logger.warning("Message in {} has no valid sender ({})", self.key, sender.value)
            return None
        source.enqueue_portal_resync(self)
        source.enqueue_puppet_resync(puppet)
        if source.client is not None:
            await puppet.sync_contact(source.client, reason="handling message")
        return puppet, puppet.intent_for(self)

    def _is_unpuppeted_self(self, puppet: Puppet, intent: MatrixIntent, sender: UID) -> bool:
        """Own messages in a private chat only show up when double puppeting is bound."""
        return self.is_private and sender == self.key.receiver and intent.user_id == puppet.mxid

    def _make_uploader(self, intent: MatrixIntent) -> Uploader:
        async def upload(data: bytes, mime: str, filename: str | None) -> dict[str, Any]:
            if self.record.encrypted:
                ciphertext, file_info = encrypt_media(data)
                mxc = await intent.upload_media(ciphertext, "application/octet-stream", filename)
                return {"file": encrypted_file_content(mxc, file_info)}
            return {"url": await intent.upload_media(data, mime, filename)}

        return upload

    async def _resolve_reply(self, reply: ReplyElement) -> str | None:
        record = self.bridge.store.get_by_reply(
            self.key, reply.reply_seq, reply.time, self.bridge.config.bridge.reply_fallback_window_seconds
        )
        logger.debug("Portal {} reply lookup seq {} at {}: {}", self.key, reply.reply_seq, reply.time, record)
        if record is None or record.is_fake or not record.mxid:
            return None
        return record.mxid

    def qq_converter(self, source: User, intent: MatrixIntent) -> QQToMatrixConverter:
        client = source.require_client()
        return QQToMatrixConverter(
            download=client.download_attachment,
            upload=self._make_uploader(intent),
            codec=self.bridge.codec,
            resolve_mention=self.bridge.resolve_mention,
            resolve_reply=self._resolve_reply,
            native_single_image=self.bridge.config.bridge.native_single_image,
        )

    async def _send_message(
        self, intent: MatrixIntent, content: dict[str, Any], *, event_type: str = EVENT_MESSAGE, timestamp: int | None = None
    ) -> str:
        try:
            await intent.set_typing(self.record.mxid, False)
        except BridgeError:
            logger.opt(exception=True).debug("Failed to clear typing in {}", self.mxid)
        return await intent.send_message(self.record.mxid, content, event_type=event_type, timestamp=timestamp)

    async def handle_qq_message(self, source: User, message: QQMessage | OfflineFileEvent) -> None:
        """Deliver one QQ message (or offline file) to the room at most once."""
        if not self.mxid:
            logger.warning("handle_qq_message called for {} without a room", self.key)
            return

        if isinstance(message, OfflineFileEvent):
            timestamp = message.time * 1000 if message.time else now_ms()
            key = MessageKey.partial(timestamp // 1000)
            sender = UID.user(message.sender)
            content = f"[File: {message.file_name}]"
        else:
            timestamp = message.time * 1000 if message.time else now_ms()
            key = message.key
            sender = UID.user(message.sender)
            content = to_readable_string(message.elements)

        if self.dedup.is_handled(key):
            logger.debug("Not handling {} in {}: message is duplicate", key, self.key)
            self.bridge.telemetry.incr("qq.messages.duplicate")
            return

        resolved = await self._message_intent(source, sender)
        if resolved is None:
            return
        puppet, intent = resolved
        if self._is_unpuppeted_self(puppet, intent, sender):
            logger.debug("Not handling {} in {}: double puppeting is not enabled", key, self.key)
            return

        record = self.dedup.begin(key, sender=sender, timestamp=timestamp, content=content)
        converter = self.qq_converter(source, intent)
        converted: ConvertedMessage | None
        try:
            if isinstance(message, OfflineFileEvent):
                converted = await converter.convert_offline_file(message)
            else:
                converted = await converter.convert(message.elements)
        except BridgeError as e:
            logger.error("Failed to convert {} in {}: {}", key, self.key, e)
            self.dedup.abandon(record)
            return
        if converted is None:
            logger.debug("Nothing to bridge for {} in {}", key, self.key)
            self.dedup.abandon(record)
            return
        if converted.error is MessageErrorKind.MEDIA_NOT_FOUND:
            self.bridge.telemetry.incr("media.failures", labels=(("direction", "qq"),))

        try:
            event_id = await self._send_message(
                intent, converted.content, event_type=converted.event_type, timestamp=timestamp
            )
        except BridgeError as e:
            logger.error("Failed to send {} to Matrix: {}", key, e)
            self.dedup.abandon(record)
            return
        self.dedup.finish(record, mxid=event_id, error=converted.error)
        self.bridge.telemetry.incr("qq.messages.bridged")
        logger.debug("Portal {} handled {} -> {}", self.key, key, event_id)

    async def handle_fake_message(self, message: FakeMessage) -> None:
        key = MessageKey.fake(message.id)
        if self.dedup.is_fake_handled(key):
            logger.debug("Not handling fake message {}: duplicate", message.id)
            return
        puppet = self.bridge.get_puppet_by_uid(message.sender)
        if puppet is None:
            logger.warning("Fake message {} has no valid sender", message.id)
            return
        intent = puppet.intent_for(self)
        if self._is_unpuppeted_self(puppet, intent, message.sender):
            logger.debug("Not handling fake message {}: double puppeting is not enabled", message.id)
            return

        record = self.dedup.begin(
            key, sender=message.sender, timestamp=message.time, content=message.text, kind=MessageKind.FAKE
        )
        content = {"msgtype": "m.text" if message.important else "m.notice", "body": message.text}
        try:
            event_id = await self._send_message(intent, content, timestamp=message.time)
        except BridgeError as e:
            logger.error("Failed to send fake message {} to Matrix: {}", message.id, e)
            self.dedup.abandon(record)
            return
        self.dedup.finish(record, mxid=event_id)

    async def handle_qq_revoke(self, source: User, seq: int, timestamp: int, operator: str) -> None:
        """Redact the Matrix copy of a recalled QQ message."""
        record = self.bridge.store.get_by_reply(
            self.key, seq, timestamp, self.bridge.config.bridge.reply_fallback_window_seconds
        )
        if record is None or record.is_fake or not record.mxid or not self.mxid:
            return
        puppet = self.bridge.get_puppet_by_uid(UID.user(operator))
        intent = puppet.intent_for(self) if puppet is not None else self.main_intent()
        try:
            await intent.redact(self.mxid, record.mxid)
        except MatrixForbiddenError:
            try:
                await self.main_intent().redact(self.mxid, record.mxid)
            except BridgeError as e:
                logger.error("Failed to redact {}: {}", record.key, e)
        except BridgeError as e:
            logger.error("Failed to redact {}: {}", record.key, e)

    async def handle_qq_member_invite(self, source: User, sender: str | None, target: str) -> None:
        if not self.mxid:
            return
        intent = self._setter_intent(UID.user(sender)) if sender else self.main_intent()
        puppet = self.bridge.get_puppet_by_uid(UID.user(target))
        if puppet is None:
            return
        if source.client is not None:
            await puppet.sync_contact(source.client, force_avatar_sync=True, reason="handling QQ invite")
        content: dict[str, Any] = {"membership": "invite", "displayname": puppet.displayname}
        if puppet.avatar_url:
            content["avatar_url"] = puppet.avatar_url
        try:
            await intent.send_state_event(self.mxid, EVENT_MEMBER, content, state_key=puppet.mxid)
        except BridgeError as e:
            logger.warning("Failed to invite {} as {}: {}", puppet.mxid, intent.user_id, e)
            try:
                await self.main_intent().invite_user(self.mxid, puppet.mxid)
            except BridgeError:
                logger.opt(exception=True).debug("Main intent invite of {} failed too", puppet.mxid)
        try:
            await puppet.default_intent().ensure_joined(self.mxid)
        except BridgeError as e:
            logger.error("Failed to ensure {} is joined: {}", puppet.mxid, e)

    async def handle_qq_member_kick(self, source: User, sender: str | None, target: str) -> None:
        puppet = self.bridge.get_puppet_by_uid(UID.user(target))
        if puppet is None or not self.mxid:
            return
        if not sender:
            await self._remove_user(True, None, puppet.mxid, puppet.default_intent())
        else:
            kicker = self._setter_intent(UID.user(sender))
            await self._remove_user(False, kicker, puppet.mxid, puppet.default_intent())

    async def handle_qq_group_join(self, source: User, event: GroupJoinEvent) -> None:
        client = source.require_client()
        group = await self.fetch_group(client)
        if group is None:
            logger.error("Failed to fetch group {} ({})", event.group_name, event.group_code)
            return
        if not self.mxid:
            try:
                await self.create_matrix_room(source, group)
            except BridgeError as e:
                logger.error("Failed to create Matrix room after join notification: {}", e)
        else:
            await self.update_matrix_room(source, group, force_avatar_sync=True)

    async def handle_qq_mute(self, event: GroupMuteEvent) -> None:
        """Whole-group mutes restrict sending; muting one member posts a notice."""
        if event.target_uin == MUTE_ALL_TARGET:
            await self.restrict_message_sending(event.duration > 0)
            return
        target = self.bridge.get_puppet_by_uid(UID.user(event.target_uin))
        name = target.displayname if target is not None and target.displayname else event.target_uin
        if event.duration > 0:
            text = f"{name} was muted for {event.duration} seconds"
        else:
            text = f"{name} was unmuted"
        timestamp = event.time * 1000 if event.time else now_ms()
        fake = FakeMessage(
            sender=UID.user(event.operator_uin),
            text=text,
            id=f"mute:{event.target_uin}:{timestamp}",
            time=timestamp,
        )
        await self.handle_fake_message(fake)

    async def _try_kick(self, user_id: str, intent: MatrixIntent, reason: str = "") -> None:
        try:
            await intent.kick_user(self.mxid, user_id, reason)
        except MatrixForbiddenError:
            await self.main_intent().kick_user(self.mxid, user_id, reason)

    async def _remove_user(
        self, is_same_user: bool, kicker: MatrixIntent | None, target: str, target_intent: MatrixIntent | None
    ) -> None:
        if not is_same_user or target_intent is None:
            try:
                await self._try_kick(target, kicker or self.main_intent())
            except BridgeError as e:
                logger.warning("Failed to kick {} from {}: {}", target, self.mxid, e)
                if target_intent is not None:
                    await self._best_effort(target_intent.leave_room(self.mxid))
        else:
            try:
                await target_intent.leave_room(self.mxid)
            except BridgeError as e:
                logger.warning("Failed to leave portal as {}: {}", target, e)
                await self._best_effort(self.main_intent().kick_user(self.mxid, target))
        await self.cleanup_if_empty()

    @staticmethod
    async def _best_effort(coro: Any) -> None:
        try:
            await coro
        except BridgeError:
            logger.opt(exception=True).debug("Best-effort room operation failed")

    async def update_room_nickname(self, member: GroupMember) -> None:
        """Show a member's group card as their per-room display name."""
        if not member.card_name or not self.mxid:
            return
        puppet = self.bridge.get_puppet_by_uid(UID.user(member.uin))
        if puppet is None:
            return
        nickname, _ = self.bridge.format_displayname(ContactInfo(uin=member.uin, name=member.card_name))
        intent = puppet.default_intent()
        try:
            current = await intent.get_state_event(self.mxid, EVENT_MEMBER, puppet.mxid) or {}
        except BridgeError:
            current = {}
        if current.get("displayname") == nickname:
            return
        content = {**current, "membership": "join", "displayname": nickname}
        if puppet.avatar_url and "avatar_url" not in content:
            content["avatar_url"] = puppet.avatar_url
        try:
            await intent.send_state_event(self.mxid, EVENT_MEMBER, content, state_key=puppet.mxid)
        except BridgeError as e:
            logger.warning("Failed to set room nickname of {} in {}: {}", puppet.mxid, self.mxid, e)

    # ── Matrix → QQ ──────────────────────────────────────────────────

    def _can_bridge_from(self, sender: User) -> QQClient:
        if not sender.is_logged_in():
            raise UserNotLoggedInError()
        if self.is_private and sender.uin != self.key.receiver.value:
            raise DifferentUserError()
        return sender.require_client()

    def matrix_converter(self, client: QQClient) -> MatrixToQQConverter:
        return MatrixToQQConverter(
            client=client,
            codec=self.bridge.codec,
            download_media=self.main_intent().download_media,
            resolve_uin=self.bridge.resolve_uin,
            max_file_size=self.bridge.config.media.max_file_size_bytes,
        )

    async def _reply_target(
        self, sender: User, client: QQClient, event: MatrixEvent
    ) -> tuple[ReplyElement | None, AtElement | None]:
        reply_to = event.reply_to
        if not reply_to:
            return None, None
        record = self.bridge.store.get_message_by_mxid(reply_to)
        if record is None or record.is_fake or record.kind is not MessageKind.NORMAL or not record.sent:
            return None, None
        reply = build_reply_element(
            record, is_private=self.is_private, portal_uin=self.key.uid.value, self_uin=sender.uin or ""
        )
        if reply is not None:
            return reply, None
        return None, await render_qq_mention(client, self._chat_target(), record.sender.value)

    async def handle_matrix_message(self, sender: User, event: MatrixEvent) -> None:
        """Send a Matrix message to QQ; raises the typed error when it cannot be bridged."""
        client = self._can_bridge_from(sender)
        existing = self.bridge.store.get_message_by_mxid(event.event_id)
        if existing is not None and existing.sent:
            logger.debug("Not handling {}: already bridged", event.event_id)
            return

        record = None
        try:
            reply, reply_mention = await self._reply_target(sender, client, event)
            elements = await self.matrix_converter(client).convert(
                event, self._chat_target(), reply=reply, reply_mention=reply_mention
            )
            if not elements:
                # Files are posted by QQ itself and have no message to track.
                self.bridge.telemetry.incr("matrix.messages.bridged")
                return
            record = self.dedup.begin(
                MessageKey.pending(event.event_id),
                sender=sender.uid or UID.user(client.uin),
                timestamp=event.timestamp or now_ms(),
                content=to_readable_string(elements),
                mxid=event.event_id,
            )
            logger.debug("Sending event {} to QQ", event.event_id)
            if self.is_group:
                receipt = await client.send_group_message(self.key.uid.value, elements)
            else:
                receipt = await client.send_private_message(self.key.uid.value, elements)
        except BridgeError as e:
            if record is not None:
                self.dedup.abandon(record)
            self.bridge.telemetry.incr("matrix.messages.failed", labels=(("code", e.code),))
            await self._send_error_notice(event, e)
            raise

        self.dedup.finish(record, mxid=event.event_id, new_key=receipt.key, timestamp=receipt.timestamp * 1000)
        self.bridge.telemetry.incr("matrix.messages.bridged")
        logger.debug("Portal {} sent {} as {}", self.key, event.event_id, receipt.key)

    async def _send_error_notice(self, event: MatrixEvent, error: BridgeError) -> None:
        if not self.bridge.config.bridge.message_error_notices or not self.mxid:
            return
        content: dict[str, Any] = {
            "msgtype": "m.notice",
            "body": f"⚠ Your message was not bridged: {truncate_string(str(error), 300)}",
        }
        set_reply(content, event.event_id)
        try:
            await self.main_intent().send_message(self.mxid, content)
        except BridgeError:
            logger.opt(exception=True).warning("Failed to send error notice for {}", event.event_id)

    async def handle_matrix_redaction(self, sender: User, event: MatrixEvent) -> None:
        """Recall the QQ message behind a redacted Matrix event."""
        if not event.redacts:
            return
        record = self.bridge.store.get_message_by_mxid(event.redacts)
        if record is None or record.is_fake:
            return
        seq, internal_id = record.key.int_seq, record.key.int_id
        if seq is None or internal_id is None:
            logger.debug("Cannot recall {}: QQ key {} is incomplete", event.redacts, record.key)
            return
        client = self._can_bridge_from(sender)
        try:
            if self.is_private:
                if record.sender.value != sender.uin:
                    return
                await client.recall_private_message(self.key.uid.value, record.timestamp // 1000, seq, internal_id)
            else:
                await client.recall_group_message(self.key.uid.value, seq, internal_id)
        except BridgeError as e:
            logger.warning("Failed to recall {} {}: {}", event.redacts, record.key, e)

    async def handle_matrix_leave(self, sender: User) -> None:
        if self.is_private:
            logger.info("{} left private chat portal {}, cleaning up", sender.mxid, self.key)
            await self.delete()
            await self.cleanup(puppets_only=False)
        else:
            await self.cleanup_if_empty()

    # ── Room metadata ────────────────────────────────────────────────

    def base_power_levels(self) -> dict[str, Any]:
        invite = 0 if self.bridge.config.bridge.allow_user_invite else 50
        return {
            "users_default": 0,
            "events_default": 0,
            "redact": 0,
            "state_default": 99,
            "ban": 99,
            "invite": invite,
            "users": {self.main_intent().user_id: 100},
            "events": {
                STATE_ROOM_NAME: 0,
                STATE_ROOM_AVATAR: 0,
                STATE_TOPIC: 0,
                EVENT_REACTION: 0,
                EVENT_REDACTION: 0,
            },
        }

    async def _power_levels(self) -> tuple[dict[str, Any], bool]:
        try:
            levels = await self.main_intent().get_state_event(self.mxid, STATE_POWER_LEVELS)
        except BridgeError:
            levels = None
        if not levels:
            return self.base_power_levels(), True
        return levels, False

    async def _set_power_levels(self, levels: dict[str, Any]) -> str | None:
        try:
            return await self.main_intent().send_state_event(self.mxid, STATE_POWER_LEVELS, levels)
        except BridgeError as e:
            logger.error("Failed to change power levels in {}: {}", self.mxid, e)
            return None

    async def change_admin_status(self, uids: list[UID], set_admin: bool) -> str | None:
        if not self.mxid:
            return None
        levels, _ = await self._power_levels()
        level = ADMIN_LEVEL if set_admin else 0
        changed = _apply_power_level_fixes(levels)
        for uid in uids:
            puppet = self.bridge.get_puppet_by_uid(uid)
            if puppet is not None:
                changed = _ensure_user_level(levels, puppet.mxid, level) or changed
            user = self.bridge.get_user_by_uin(uid.value)
            if user is not None:
                changed = _ensure_user_level(levels, user.mxid, level) or changed
        return await self._set_power_levels(levels) if changed else None

    async def restrict_message_sending(self, restrict: bool) -> str | None:
        if not self.mxid:
            return None
        levels, _ = await self._power_levels()
        level = ADMIN_LEVEL if restrict else 0
        changed = _apply_power_level_fixes(levels)
        if levels.get("events_default", 0) == level and not changed:
            return None
        levels["events_default"] = level
        return await self._set_power_levels(levels)

    async def restrict_metadata_changes(self, restrict: bool) -> str | None:
        if not self.mxid:
            return None
        levels, _ = await self._power_levels()
        level = ADMIN_LEVEL if restrict else 0
        changed = _apply_power_level_fixes(levels)
        for event_type in (STATE_ROOM_NAME, STATE_ROOM_AVATAR, STATE_TOPIC):
            changed = _ensure_event_level(levels, event_type, level) or changed
        return await self._set_power_levels(levels) if changed else None

    def bridge_info_state_key(self) -> str:
        return f"{self.bridge.config.bridge.bridge_info_prefix}://qq/{self.key.uid.value}"

    def bridge_info(self) -> dict[str, Any]:
        appservice = self.bridge.config.appservice
        protocol: dict[str, Any] = {"id": "qq", "displayname": "QQ", "external_url": "https://www.qq.com/"}
        if appservice.bot_avatar:
            protocol["avatar_url"] = appservice.bot_avatar
        channel: dict[str, Any] = {"id": self.key.uid.value, "displayname": self.record.name}
        if self.record.avatar_url:
            channel["avatar_url"] = self.record.avatar_url
        return {
            "bridgebot": self.bridge.bot.user_id,
            "creator": self.main_intent().user_id,
            "protocol": protocol,
            "channel": channel,
        }

    async def update_bridge_info(self) -> None:
        if not self.mxid:
            logger.debug("Not updating bridge info of {}: no Matrix room created", self.key)
            return
        state_key, content = self.bridge_info_state_key(), self.bridge_info()
        for event_type in (STATE_BRIDGE, STATE_HALF_SHOT_BRIDGE):
            try:
                await self.main_intent().send_state_event(self.mxid, event_type, content, state_key=state_key)
            except BridgeError as e:
                logger.warning("Failed to update {} in {}: {}", event_type, self.mxid, e)

    async def _set_state_as(self, setter: UID | None, event_type: str, content: dict[str, Any]) -> None:
        intent = self._setter_intent(setter)
        try:
            await intent.send_state_event(self.mxid, event_type, content)
        except MatrixForbiddenError:
            main = self.main_intent()
            if main.user_id == intent.user_id:
                raise
            await main.send_state_event(self.mxid, event_type, content)

    async def update_avatar(self, user: User, setter: UID | None = None, *, update_info: bool = True) -> bool:
        """Refresh the group avatar from QQ; True when the image changed."""
        async with self._avatar_lock:
            data = await download_avatar(self.bridge.fetcher, self.key.uid)
            if data is None:
                return False
            digest = md5_hex(data)
            if digest == self.record.avatar and (self.record.avatar_set or not self.mxid):
                return False
            try:
                avatar_url = await self.main_intent().upload_media(data, sniff_mime(data))
            except BridgeError as e:
                logger.warning("Failed to upload avatar of {}: {}", self.key, e)
                return False
            self.record.avatar = digest
            self.record.avatar_url = avatar_url
            self.record.avatar_set = False
            if self.mxid:
                try:
                    await self._set_state_as(setter, STATE_ROOM_AVATAR, {"url": avatar_url})
                except BridgeError as e:
                    logger.warning("Failed to set room avatar of {}: {}", self.mxid, e)
                    return True
                self.record.avatar_set = True
            if update_info:
                await self.update_bridge_info()
                self.save()
            return True

    async def apply_avatar(self, avatar: str, avatar_url: str, *, update_info: bool = True) -> bool:
        """Copy an avatar already uploaded elsewhere (a puppet's) onto the room."""
        if self.record.avatar == avatar and self.record.avatar_url == avatar_url and self.record.avatar_set:
            return False
        self.record.avatar = avatar
        self.record.avatar_url = avatar_url
        self.record.avatar_set = False
        if self.mxid and avatar_url:
            try:
                await self.main_intent().send_state_event(self.mxid, STATE_ROOM_AVATAR, {"url": avatar_url})
            except BridgeError as e:
                logger.warning("Failed to set room avatar of {}: {}", self.mxid, e)
            else:
                self.record.avatar_set = True
        if update_info:
            await self.update_bridge_info()
            self.save()
        return True

    async def update_name(self, name: str, setter: UID | None = None, *, update_info: bool = True) -> bool:
        if self.record.name == name and (self.record.name_set or not self.mxid):
            return False
        logger.debug("Updating name of {}: {!r} -> {!r}", self.key, self.record.name, name)
        self.record.name = name
        self.record.name_set = False
        if not self.mxid:
            if update_info:
                self.save()
            return False
        try:
            await self._set_state_as(setter, STATE_ROOM_NAME, {"name": name})
        except BridgeError as e:
            logger.warning("Failed to set room name of {}: {}", self.mxid, e)
            if update_info:
                self.save()
            return False
        self.record.name_set = True
        if update_info:
            await self.update_bridge_info()
            self.save()
        return True

    async def update_topic(self, topic: str, setter: UID | None = None, *, update_info: bool = True) -> bool:
        if self.record.topic == topic and self.record.topic_set:
            return False
        logger.debug("Updating topic of {}: {!r} -> {!r}", self.key, self.record.topic, topic)
        self.record.topic = topic
        self.record.topic_set = False
        if not self.mxid:
            return False
        try:
            await self._set_state_as(setter, STATE_TOPIC, {"topic": topic})
        except BridgeError as e:
            logger.warning("Failed to set room topic of {}: {}", self.mxid, e)
            return False
        self.record.topic_set = True
        if update_info:
            await self.update_bridge_info()
            self.save()
        return True

    async def fetch_group(self, client: QQClient) -> GroupInfo | None:
        """Group info with its full member list, or None when QQ does not know the group."""
        try:
            info = await client.fetch_group_info(self.key.uid.value)
            if info is None:
                return None
            members = await client.fetch_group_members(self.key.uid.value)
        except BridgeError as e:
            logger.warning("Failed to get info of group {}: {}", self.key.uid.value, e)
            return None
        return dataclasses.replace(info, members=tuple(members))

    async def update_metadata(self, user: User, group: GroupInfo | None, *, force_avatar_sync: bool = False) -> bool:
        if self.is_private:
            return False
        if group is None:
            logger.error("No group info to update {}", self.key)
            return False
        await self.sync_participants(user, group, force_avatar_sync=force_avatar_sync)
        update = await self.update_name(group.name, None, update_info=False)
        update = await self.update_topic(group.memo, None, update_info=False) or update
        return update

    async def update_matrix_room(
        self, user: User, group: GroupInfo | None = None, *, force_avatar_sync: bool = False
    ) -> bool:
        if not self.mxid:
            return False
        logger.info("Syncing portal {} for {}", self.key, user.mxid)
        await user.ensure_invited(self.main_intent(), self.mxid, is_direct=self.is_private)

        update = False
        if self.is_group:
            if group is None and user.client is not None:
                group = await self.fetch_group(user.client)
            update = await self.update_metadata(user, group, force_avatar_sync=force_avatar_sync)
            update = await self.update_avatar(user, None, update_info=False) or update
        last_sync = self.record.last_sync
        if update or last_sync is None or last_sync + RESYNC_AFTER < utc_now():
            self.record.last_sync = utc_now()
            self.save()
            await self.update_bridge_info()
        return True

    # ── Participants ─────────────────────────────────────────────────

    async def _sync_participant(
        self, source: User, member: GroupMember, puppet: Puppet, user: User | None, force_avatar_sync: bool
    ) -> None:
        try:
            if source.client is not None:
                await puppet.sync_contact(source.client, force_avatar_sync=force_avatar_sync, reason="group participant")
            await self.update_room_nickname(member)
            if user is not None and user is not source:
                await user.ensure_invited(self.main_intent(), self.mxid, is_direct=False)
            intent = puppet.intent_for(self)
            if user is None or intent.user_id == puppet.mxid:
                try:
                    await intent.ensure_joined(self.mxid)
                except BridgeError as e:
                    logger.warning("Failed to make puppet of {} join {}: {}", member.uin, self.mxid, e)
        except Exception:
            logger.exception("Syncing participant {} of {} failed", member.uin, self.key)

    async def sync_participants(self, source: User, group: GroupInfo, *, force_avatar_sync: bool = False) -> None:
        """Join member ghosts, mirror owner/admin power levels and kick ghosts that left."""
        if not self.mxid:
            return
        levels, changed = await self._power_levels()
        changed = _apply_power_level_fixes(levels) or changed

        participants: set[str] = set()
        pending = []
        for member in group.members:
            uid = UID.user(member.uin)
            participants.add(member.uin)
            puppet = self.bridge.get_puppet_by_uid(uid)
            if puppet is None:
                continue
            user = self.bridge.get_user_by_uin(member.uin)
            job = self._sync_participant(source, member, puppet, user, force_avatar_sync)
            if self.bridge.config.bridge.parallel_member_sync:
                pending.append(asyncio.create_task(job))
            else:
                await job

            expected = 0
            if member.permission is MemberPermission.OWNER:
                expected = OWNER_LEVEL
            elif member.permission is MemberPermission.ADMIN:
                expected = ADMIN_LEVEL
            changed = _ensure_user_level(levels, puppet.mxid, expected) or changed
            if user is not None:
                changed = _ensure_user_level(levels, user.mxid, expected) or changed

        if changed:
            await self._set_power_levels(levels)
        await self._kick_extra_users(participants)
        if pending:
            await asyncio.gather(*pending)
        logger.debug("Participant sync of {} completed", self.key)

    async def _kick_extra_users(self, participants: set[str]) -> None:
        try:
            members = await self.main_intent().get_joined_members(self.mxid)
        except BridgeError as e:
            logger.warning("Failed to get member list of {}: {}", self.mxid, e)
            return
        for member in members:
            uid = self.bridge.parse_puppet_mxid(member)
            if uid is None or uid.value in participants:
                continue
            logger.debug("Kicking {} from {}: no longer in the group", member, self.mxid)
            try:
                await self.main_intent().kick_user(self.mxid, member, EXTRA_USER_KICK_REASON)
            except BridgeError as e:
                logger.warning("Failed to kick {} from {}: {}", member, self.mxid, e)

    # ── Room lifecycle ───────────────────────────────────────────────

    async def create_matrix_room(self, user: User, group: GroupInfo | None = None) -> None:
        """Create the Matrix room once; concurrent callers wait and then see the room."""
        if self.mxid:
            return
        async with self.room_create_lock:
            if self.mxid or self._deleted:
                return
            intent = self.main_intent()
            await intent.ensure_registered()
            logger.info("Creating Matrix room for {}, info source {}", self.key, user.mxid)

            if self.is_private:
                puppet = self.bridge.get_puppet_by_uid(self.key.uid)
                if puppet is not None and user.client is not None:
                    await puppet.sync_contact(user.client, force_avatar_sync=True, reason="creating private chat portal")
                if puppet is not None and self.bridge.config.bridge.private_chat_portal_meta:
                    self.record.name = puppet.displayname
                    self.record.avatar = puppet.record.avatar
                    self.record.avatar_url = puppet.avatar_url
                else:
                    self.record.name = ""
                self.record.topic = PRIVATE_CHAT_TOPIC
            else:
                if (group is None or not group.members) and user.client is not None:
                    group = await self.fetch_group(user.client) or group
                if group is not None:
                    self.record.name = group.name
                    self.record.topic = group.memo
                await self.update_avatar(user, None, update_info=False)

            state_key, info = self.bridge_info_state_key(), self.bridge_info()
            initial_state: list[dict[str, Any]] = [
                {"type": STATE_POWER_LEVELS, "state_key": "", "content": self.base_power_levels()},
                {"type": STATE_BRIDGE, "state_key": state_key, "content": info},
                {"type": STATE_HALF_SHOT_BRIDGE, "state_key": state_key, "content": info},
            ]
            if self.record.avatar_url:
                initial_state.append({"type": STATE_ROOM_AVATAR, "state_key": "", "content": {"url": self.record.avatar_url}})
                self.record.avatar_set = True

            invitees: list[str] = []
            encryption = self.bridge.config.bridge.encryption
            if encryption.default:
                initial_state.append(
                    {"type": STATE_ENCRYPTION, "state_key": "", "content": {"algorithm": "m.megolm.v1.aes-sha2"}}
                )
                self.record.encrypted = True
                if self.is_private:
                    invitees.append(self.bridge.bot.user_id)

            creation_content: dict[str, Any] = {}
            if not self.bridge.config.bridge.federate_rooms:
                creation_content["m.federate"] = False

            room_id = await intent.create_room(
                name=self.record.name,
                topic=self.record.topic,
                is_direct=self.is_private,
                invitees=invitees,
                initial_state=initial_state,
                creation_content=creation_content,
            )
            self.record.name_set = bool(self.record.name)
            self.record.topic_set = bool(self.record.topic)
            self.record.mxid = room_id
            self.bridge.register_portal_mxid(self)
            self.save()
            logger.info("Matrix room {} created for {}", room_id, self.key)

            await user.ensure_invited(intent, room_id, is_direct=self.is_private)
            if group is not None:
                await self.sync_participants(user, group, force_avatar_sync=True)
            if self.is_private and self.record.encrypted:
                try:
                    await self.bridge.bot.ensure_joined(room_id)
                except BridgeError as e:
                    logger.error("Failed to join {} with the bridge bot for encryption: {}", room_id, e)

            try:
                self.record.first_event_id = await intent.send_message(
                    room_id, {}, event_type=PORTAL_CREATION_DUMMY_EVENT
                )
            except BridgeError as e:
                logger.error("Failed to send dummy event to mark creation of {}: {}", room_id, e)
            else:
                self.save()

    async def get_matrix_users(self) -> list[str]:
        """Joined members that are neither ghosts nor the bridge bot."""
        members = await self.main_intent().get_joined_members(self.mxid)
        bot = self.bridge.bot.user_id
        return [m for m in members if m != bot and self.bridge.parse_puppet_mxid(m) is None]

    async def cleanup_if_empty(self) -> None:
        if not self.mxid:
            return
        try:
            users = await self.get_matrix_users()
        except BridgeError as e:
            logger.error("Failed to get Matrix users of {} to check for cleanup: {}", self.mxid, e)
            return
        if not users:
            logger.info("Room {} seems to be empty, cleaning up", self.mxid)
            await self.delete()
            await self.cleanup(puppets_only=False)

    async def cleanup(self, *, puppets_only: bool = False) -> None:
        """Make ghosts leave (and with ``puppets_only`` off, kick real users) then leave as the main intent."""
        if not self.mxid:
            return
        intent = self.main_intent()
        try:
            members = await intent.get_joined_members(self.mxid)
        except BridgeError as e:
            logger.error("Failed to get members of {} for cleanup: {}", self.mxid, e)
            return
        for member in members:
            if member == intent.user_id:
                continue
            puppet = self.bridge.get_puppet_by_mxid(member)
            if puppet is not None:
                try:
                    await puppet.default_intent().leave_room(self.mxid)
                except BridgeError as e:
                    logger.error("Error leaving {} as {} during cleanup: {}", self.mxid, member, e)
            elif not puppets_only:
                try:
                    await intent.kick_user(self.mxid, member, "Deleting portal")
                except BridgeError as e:
                    logger.error("Error kicking {} from {} during cleanup: {}", member, self.mxid, e)
        try:
            await intent.leave_room(self.mxid)
        except BridgeError as e:
            logger.error("Error leaving {} with the main intent: {}", self.mxid, e)

    async def delete(self) -> None:
        """Forget the mapping; anything still queued goes to a fresh portal for the same chat.

        An item the worker is handling right now runs to completion, then the worker exits.
        """
        if self._deleted:
            return
        self.bridge.store.delete_portal(self.key)
        self.bridge.remove_portal(self)
        self._deleted = True
        self._closing.set()
        qq_items, matrix_items = self._drain()
        if qq_items or matrix_items:
            logger.info("Forwarding {} queued items of deleted portal {}", len(qq_items) + len(matrix_items), self.key)
        for item in qq_items:
            await self.enqueue_qq(item)
        for matrix_item in matrix_items:
            await self.enqueue_matrix(matrix_item)
