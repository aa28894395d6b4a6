"""Local Matrix user and the QQ session it is logged in with."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from qqbridge.bridge.portal import PortalMessage
from qqbridge.bridge.resync import ResyncEngine
from qqbridge.core.elements import (
    FriendRecallEvent,
    GroupJoinEvent,
    GroupLeaveEvent,
    GroupMuteEvent,
    GroupRecallEvent,
    MemberCardUpdatedEvent,
    MemberJoinEvent,
    MemberLeaveEvent,
    MemberPermissionChangedEvent,
    OfflineFileEvent,
    QQEvent,
    QQMessage,
)
from qqbridge.core.errors import BridgeError, UserNotLoggedInError
from qqbridge.core.identity import UID, ChatType, PortalKey, private_portal_key
from qqbridge.core.models import UserRecord
from qqbridge.core.ports import MatrixIntent, QQClient

if TYPE_CHECKING:
    from qqbridge.bridge.bridge import QQBridge
    from qqbridge.bridge.portal import Portal
    from qqbridge.bridge.puppet import Puppet

ALREADY_IN_ROOM = "is already in the room"
WILL_AUTO_ACCEPT = "net.qqbridge.will_auto_accept"


class User:
    """A Matrix account that may be logged in to QQ.

    QQ callbacks land on an inbound queue (``receive``); one dispatch task
    routes them to portals in arrival order.
    """

    def __init__(self, bridge: QQBridge, record: UserRecord) -> None:
        self.bridge = bridge
        self.record = record
        self.client: QQClient | None = None
        settings = bridge.config.bridge
        self._events: asyncio.Queue[QQEvent | None] = asyncio.Queue(maxsize=settings.portal_message_buffer)
        self._dispatch_task: asyncio.Task | None = None
        self.resync = ResyncEngine(
            self,
            min_interval=timedelta(seconds=settings.resync_min_interval_seconds),
            interval=timedelta(seconds=settings.resync_interval_seconds),
            jitter=timedelta(seconds=settings.resync_jitter_seconds),
        )

    def __repr__(self) -> str:
        return f"User({self.mxid}, uin={self.uin})"

    @property
    def mxid(self) -> str:
        return self.record.mxid

    @property
    def uin(self) -> str | None:
        return self.record.uin

    @property
    def uid(self) -> UID | None:
        return UID.user(self.record.uin) if self.record.uin else None

    def is_logged_in(self) -> bool:
        return self.client is not None and self.client.is_online()

    def require_client(self) -> QQClient:
        if self.client is None or not self.client.is_online():
            raise UserNotLoggedInError()
        return self.client

    def save(self) -> None:
        self.bridge.store.save_user(self.record)

    def double_puppet(self) -> Puppet | None:
        puppet = self.bridge.get_puppet_by_custom_mxid(self.mxid)
        if puppet is None or puppet.custom_intent() is None:
            return None
        return puppet

    # ── Session ──────────────────────────────────────────────────────

    async def connect(self, client: QQClient) -> None:
        """Attach a logged-in QQ session and start routing its events."""
        if self.client is not None and self.client is not client:
            await self.disconnect()
        previous_uin = self.record.uin
        self.client = client
        self.record.uin = client.uin
        self.save()
        self.bridge.register_user_uin(self, previous_uin)
        if self._dispatch_task is None or self._dispatch_task.done():
            self._dispatch_task = asyncio.create_task(self._dispatch_loop(), name=f"user-{client.uin}")
        self.resync.start()
        logger.info("{} connected to QQ as {}", self.mxid, client.uin)

    async def disconnect(self) -> None:
        """Stop dispatching; an event already being handled runs to completion."""
        if self._dispatch_task is not None:
            await self._events.put(None)
            await self._dispatch_task
            self._dispatch_task = None
        await self.resync.stop()
        self.client = None
        logger.info("{} disconnected from QQ", self.mxid)

    async def logout(self) -> None:
        await self.disconnect()
        self.bridge.unregister_user_uin(self)
        self.record.uin = None
        self.save()

    async def receive(self, event: QQEvent) -> None:
        """Entry point for QQ client callbacks."""
        await self._events.put(event)

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event is None:
                    return
                await self.handle_event(event)
            except Exception:
                logger.exception("Failed to handle {} for {}", type(event).__name__, self.mxid)
            finally:
                self._events.task_done()

    async def join(self) -> None:
        """Wait until every received event has been dispatched."""
        await self._events.join()

    # ── Routing ──────────────────────────────────────────────────────

    def _portal(self, uid: UID) -> Portal:
        return self.bridge.get_portal_by_key(PortalKey.of(uid, UID.user(self.uin or "")))

    async def handle_event(self, event: QQEvent) -> None:
        match event:
            case QQMessage():
                await self._handle_message(event)
            case OfflineFileEvent():
                await self._portal(UID.user(event.sender)).enqueue_qq(PortalMessage(self, event))
            case FriendRecallEvent():
                await self._portal(UID.user(event.friend_uin)).enqueue_qq(PortalMessage(self, event=event))
            case (
                GroupRecallEvent()
                | GroupJoinEvent()
                | GroupLeaveEvent()
                | MemberJoinEvent()
                | MemberLeaveEvent()
                | MemberCardUpdatedEvent()
                | MemberPermissionChangedEvent()
                | GroupMuteEvent()
            ):
                await self._portal(UID.group(event.group_code)).enqueue_qq(PortalMessage(self, event=event))

    async def _handle_message(self, message: QQMessage) -> None:
        self_uin = self.uin or ""
        match message.chat_type:
            case ChatType.PRIVATE:
                key = private_portal_key(message.sender, message.target, self_uin)
            case ChatType.GROUP:
                key = PortalKey.of(UID.group(message.target), UID.user(self_uin))
            case ChatType.TEMP:
                key = PortalKey.of(UID.user(message.sender), UID.user(self_uin))
        await self.bridge.get_portal_by_key(key).enqueue_qq(PortalMessage(self, message))

    # ── Sync ─────────────────────────────────────────────────────────

    def enqueue_puppet_resync(self, puppet: Puppet) -> bool:
        return self.resync.enqueue_puppet(puppet)

    def enqueue_portal_resync(self, portal: Portal) -> bool:
        return self.resync.enqueue_portal(portal)

    async def ensure_invited(self, intent: MatrixIntent, room_id: str, *, is_direct: bool) -> bool:
        """Invite this user into ``room_id`` and auto-join through double puppeting when bound."""
        extra: dict[str, Any] = {}
        if is_direct:
            extra["is_direct"] = True
        custom = self.double_puppet()
        if custom is not None:
            extra[WILL_AUTO_ACCEPT] = True

        ok = False
        try:
            await intent.invite_user(room_id, self.mxid, extra or None)
            ok = True
        except BridgeError as e:
            if ALREADY_IN_ROOM in str(e):
                return True
            logger.warning("Failed to invite {} to {}: {}", self.mxid, room_id, e)

        if custom is not None:
            custom_intent = custom.custom_intent()
            try:
                await custom_intent.ensure_joined(room_id)
                ok = True
            except BridgeError as e:
                logger.warning("Failed to auto-join {} as {}: {}", room_id, self.mxid, e)
                ok = False
        return ok

    async def resync_contacts(self, *, force_avatar_sync: bool = False) -> int:
        client = self.require_client()
        friends = await client.list_friends()
        synced = 0
        for friend in friends:
            puppet = self.bridge.get_puppet_by_uid(UID.user(friend.uin))
            if puppet is None:
                logger.warning("No puppet for friend {} while syncing contacts", friend.uin)
                continue
            await puppet.sync(friend.to_contact(), force_avatar_sync=force_avatar_sync, force_portal_sync=True)
            synced += 1
        return synced

    async def resync_groups(self, *, create_portals: bool = False) -> int:
        client = self.require_client()
        groups = await client.list_groups()
        for group in groups:
            portal = self._portal(UID.group(group.code))
            if not portal.mxid:
                if create_portals:
                    await portal.create_matrix_room(self, group)
            else:
                await portal.update_matrix_room(self, None, force_avatar_sync=True)
        return len(groups)

    async def start_pm(self, uid: UID, reason: str = "") -> tuple[Portal, Puppet, bool]:
        """Open (or re-invite into) the private chat with ``uid``; the flag tells whether a room was created."""
        logger.debug("Starting PM with {} from {}", uid.value, reason or "unknown")
        client = self.require_client()
        puppet = self.bridge.get_puppet_by_uid(uid)
        if puppet is None:
            raise BridgeError(f"{uid.value} is not a QQ user")
        await puppet.sync_contact(client, force_avatar_sync=True, reason=reason)
        portal = self._portal(uid)
        if portal.mxid:
            if await self.ensure_invited(portal.main_intent(), portal.mxid, is_direct=True):
                return portal, puppet, False
            logger.warning("Could not invite {} to {}, creating a new portal", self.mxid, portal.mxid)
            self.bridge.unregister_portal_mxid(portal)
            portal.record.mxid = None
        await portal.create_matrix_room(self)
        return portal, puppet, True
