"""Ghost users standing in for QQ accounts on Matrix."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from loguru import logger

from qqbridge.core.errors import BridgeError
from qqbridge.core.identity import UID
from qqbridge.core.models import ContactInfo, PuppetRecord
from qqbridge.core.ports import MatrixIntent, QQClient
from qqbridge.media.avatar import download_avatar, md5_hex
from qqbridge.media.mime import sniff_mime
from qqbridge.utils.helpers import utc_now

if TYPE_CHECKING:
    from qqbridge.bridge.bridge import QQBridge
    from qqbridge.bridge.portal import Portal

RESYNC_AFTER = timedelta(hours=24)
UNAUTHORIZED_AVATAR = "unauthorized"


class Puppet:
    """One QQ user mirrored as a Matrix ghost, optionally bound to a real Matrix account.

    Name and avatar changes propagate to the user's private chat portals when
    ``bridge.private_chat_portal_meta`` is on. That propagation runs as a
    background task because it needs each portal's creation lock, which may
    already be held by the caller.
    """

    def __init__(self, bridge: QQBridge, record: PuppetRecord) -> None:
        self.bridge = bridge
        self.record = record
        self.mxid = bridge.format_puppet_mxid(record.uid)
        self._sync_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Puppet({self.uid.value})"

    @property
    def uid(self) -> UID:
        return self.record.uid

    @property
    def displayname(self) -> str:
        return self.record.displayname

    @property
    def avatar_url(self) -> str:
        return self.record.avatar_url

    @property
    def custom_mxid(self) -> str | None:
        return self.record.custom_mxid

    def default_intent(self) -> MatrixIntent:
        return self.bridge.appservice.intent(self.mxid)

    def custom_intent(self) -> MatrixIntent | None:
        if not self.record.custom_mxid:
            return None
        return self.bridge.appservice.intent(self.record.custom_mxid)

    def intent_for(self, portal: Portal) -> MatrixIntent:
        """Double-puppet intent, except in the user's own private chat where the ghost speaks."""
        custom = self.custom_intent()
        if custom is None or portal.key.uid == self.uid:
            return self.default_intent()
        return custom

    def set_custom_mxid(self, mxid: str | None) -> None:
        """Bind (or with None, unbind) double puppeting to a Matrix account."""
        previous = self.record.custom_mxid
        self.record.custom_mxid = mxid
        self.save()
        self.bridge.rebind_custom_puppet(self, previous)
        logger.info("Double puppeting for {} {}", self.uid.value, f"bound to {mxid}" if mxid else "removed")

    def save(self) -> None:
        self.bridge.store.save_puppet(self.record)

    # ── Profile ──────────────────────────────────────────────────────

    async def update_name(self, contact: ContactInfo, *, force_portal_sync: bool = False) -> bool:
        """Apply the templated display name unless a better-quality name is already set."""
        name, quality = self.bridge.format_displayname(contact)
        changed = False
        if (self.record.displayname != name or not self.record.name_set) and quality >= self.record.name_quality:
            self.record.displayname = name
            self.record.name_quality = quality
            self.record.name_set = False
            try:
                await self.default_intent().set_displayname(name)
            except BridgeError as e:
                logger.warning("Failed to update display name of {}: {}", self.uid.value, e)
            else:
                self.record.name_set = True
            changed = True
        if changed or force_portal_sync:
            self._spawn_portal_update(self._update_portal_names(), "name")
        return changed

    async def update_avatar(self, *, force_avatar_sync: bool = False, force_portal_sync: bool = False) -> bool:
        """Re-download the QQ avatar and upload it when its md5 changed."""
        changed = False
        if force_avatar_sync:
            changed = await self._refresh_avatar()
        if changed or force_portal_sync:
            self._spawn_portal_update(self._update_portal_avatars(), "avatar")
        return changed

    async def _refresh_avatar(self) -> bool:
        if self.record.avatar == UNAUTHORIZED_AVATAR:
            return False
        data = await download_avatar(self.bridge.fetcher, self.uid)
        if data is None:
            return False
        digest = md5_hex(data)
        if digest == self.record.avatar and self.record.avatar_set:
            return False

        intent = self.default_intent()
        try:
            avatar_url = await intent.upload_media(data, sniff_mime(data))
        except BridgeError as e:
            logger.warning("Failed to upload avatar of {}: {}", self.uid.value, e)
            return False
        self.record.avatar = digest
        self.record.avatar_url = avatar_url
        self.record.avatar_set = False
        try:
            await intent.set_avatar_url(avatar_url)
        except BridgeError as e:
            logger.warning("Failed to set avatar of {}: {}", self.uid.value, e)
        else:
            self.record.avatar_set = True
        return True

    def _spawn_portal_update(self, coro: Coroutine[Any, Any, None], what: str) -> None:
        if not self.bridge.config.bridge.private_chat_portal_meta:
            coro.close()
            return
        self.bridge.spawn(coro, name=f"puppet-{self.uid.value}-portal-{what}")

    async def _update_portal_names(self) -> None:
        for portal in self.bridge.get_portals_by_uid(self.uid):
            async with portal.room_create_lock:
                await portal.update_name(self.record.displayname, None, update_info=True)

    async def _update_portal_avatars(self) -> None:
        for portal in self.bridge.get_portals_by_uid(self.uid):
            async with portal.room_create_lock:
                await portal.apply_avatar(self.record.avatar, self.record.avatar_url, update_info=True)

    # ── Sync ─────────────────────────────────────────────────────────

    async def sync(
        self,
        contact: ContactInfo | None,
        *,
        force_avatar_sync: bool = False,
        force_portal_sync: bool = False,
    ) -> None:
        async with self._sync_lock:
            try:
                await self.default_intent().ensure_registered()
            except BridgeError as e:
                logger.error("Failed to ensure {} is registered: {}", self.mxid, e)

            update = False
            if contact is not None:
                update = await self.update_name(contact, force_portal_sync=force_portal_sync) or update
            if not self.record.avatar or force_avatar_sync or self.bridge.config.bridge.user_avatar_sync:
                update = await self.update_avatar(
                    force_avatar_sync=force_avatar_sync or not self.record.avatar,
                    force_portal_sync=force_portal_sync,
                ) or update
            last_sync = self.record.last_sync
            if update or last_sync is None or last_sync + RESYNC_AFTER < utc_now():
                self.record.last_sync = utc_now()
                self.save()

    async def sync_contact(self, client: QQClient, *, force_avatar_sync: bool = False, reason: str = "") -> None:
        """Look the user up on QQ (friend entry first) and sync name and avatar."""
        try:
            info = await client.fetch_user_info(self.uid.value)
        except Exception:
            logger.opt(exception=True).warning("Failed to fetch QQ info of {} ({})", self.uid.value, reason)
            info = None
        if info is None:
            logger.warning("No contact info for {}, skipping sync ({})", self.uid.value, reason)
            return
        await self.sync(info.to_contact(), force_avatar_sync=force_avatar_sync)
