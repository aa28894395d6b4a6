"""Bridge root: owns the registries and the shared services every portal, puppet and user reaches through."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Coroutine
from typing import Any

from loguru import logger

from qqbridge.adapters.telemetry import InMemoryTelemetry
from qqbridge.bridge.portal import Portal, PortalMatrixMessage
from qqbridge.bridge.puppet import Puppet
from qqbridge.bridge.registry import ShardedRegistry
from qqbridge.bridge.user import User
from qqbridge.config.schema import Config
from qqbridge.core.elements import MatrixEvent
from qqbridge.core.errors import BridgeError
from qqbridge.core.identity import UID, PortalKey
from qqbridge.core.models import ContactInfo, NameQuality, PortalRecord, PuppetRecord, UserRecord
from qqbridge.core.ports import MatrixAppService, MatrixIntent, TelemetryPort, VoiceCodec
from qqbridge.media.fetch import HttpFetcher
from qqbridge.media.transcode import FfmpegVoiceCodec
from qqbridge.storage.bridge_store import BridgeStore


class QQBridge:
    """Looks up (lazily creating) portals, puppets and users and wires them to the stores and ports."""

    def __init__(
        self,
        config: Config,
        store: BridgeStore,
        appservice: MatrixAppService,
        codec: VoiceCodec | None = None,
        *,
        fetcher: HttpFetcher | None = None,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.appservice = appservice
        media = config.media
        self.codec: VoiceCodec = codec or FfmpegVoiceCodec(
            ffmpeg_path=media.ffmpeg_path,
            silk_encoder=media.silk_encoder,
            silk_decoder=media.silk_decoder,
            timeout_seconds=media.timeout_seconds,
        )
        self.fetcher = fetcher or HttpFetcher(
            max_bytes=media.max_file_size_bytes, timeout_seconds=media.avatar_timeout_seconds
        )
        self.telemetry: TelemetryPort = telemetry or InMemoryTelemetry()

        self.portals_by_key: ShardedRegistry[PortalKey, Portal] = ShardedRegistry()
        self.portals_by_mxid: ShardedRegistry[str, Portal] = ShardedRegistry()
        self.puppets: ShardedRegistry[UID, Puppet] = ShardedRegistry()
        self.puppets_by_custom_mxid: ShardedRegistry[str, Puppet] = ShardedRegistry()
        self.users_by_mxid: ShardedRegistry[str, User] = ShardedRegistry()
        self.users_by_uin: ShardedRegistry[str, User] = ShardedRegistry()

        self._background: set[asyncio.Task] = set()
        self._puppet_mxid_re = self._compile_puppet_mxid_re()

    @property
    def bot(self) -> MatrixIntent:
        return self.appservice.intent(self.config.bot_mxid)

    # ── Background tasks ─────────────────────────────────────────────

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        """Run ``coro`` detached; failures are logged, never raised."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Background task {} failed", task.get_name())

    async def drain_background(self) -> None:
        """Wait for every spawned task, including ones spawned while waiting."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ── Portals ──────────────────────────────────────────────────────

    def _load_portal(self, key: PortalKey) -> Portal:
        record = self.store.get_portal(key)
        if record is None:
            record = PortalRecord(key=key)
            self.store.insert_portal(record)
        return Portal(self, record)

    def get_portal_by_key(self, key: PortalKey) -> Portal:
        portal = self.portals_by_key.get_or_create(key, lambda: self._load_portal(key))
        if portal.mxid and portal.mxid not in self.portals_by_mxid:
            self.portals_by_mxid.put(portal.mxid, portal)
        return portal

    def get_portal_by_mxid(self, mxid: str) -> Portal | None:
        portal = self.portals_by_mxid.get(mxid)
        if portal is not None:
            return portal
        record = self.store.get_portal_by_mxid(mxid)
        if record is None:
            return None
        return self.get_portal_by_key(record.key)

    def get_all_portals(self) -> list[Portal]:
        return [self.get_portal_by_key(record.key) for record in self.store.get_all_portals()]

    def get_portals_by_uid(self, uid: UID) -> list[Portal]:
        return [self.get_portal_by_key(record.key) for record in self.store.get_portals_by_uid(uid)]

    def register_portal_mxid(self, portal: Portal) -> None:
        if portal.mxid:
            self.portals_by_mxid.put(portal.mxid, portal)

    def unregister_portal_mxid(self, portal: Portal) -> None:
        if portal.mxid:
            self.portals_by_mxid.pop(portal.mxid, expected=portal)

    def remove_portal(self, portal: Portal) -> None:
        self.portals_by_key.pop(portal.key, expected=portal)
        self.unregister_portal_mxid(portal)

    # ── Puppets ──────────────────────────────────────────────────────

    def _load_puppet(self, uid: UID) -> Puppet:
        record = self.store.get_puppet(uid)
        if record is None:
            record = PuppetRecord(uid=uid)
            self.store.save_puppet(record)
        return Puppet(self, record)

    def get_puppet_by_uid(self, uid: UID) -> Puppet | None:
        if not uid.is_user:
            return None
        puppet = self.puppets.get_or_create(uid, lambda: self._load_puppet(uid))
        if puppet.custom_mxid and puppet.custom_mxid not in self.puppets_by_custom_mxid:
            self.puppets_by_custom_mxid.put(puppet.custom_mxid, puppet)
        return puppet

    def get_puppet_by_mxid(self, mxid: str) -> Puppet | None:
        uid = self.parse_puppet_mxid(mxid)
        return self.get_puppet_by_uid(uid) if uid is not None else None

    def get_puppet_by_custom_mxid(self, mxid: str) -> Puppet | None:
        puppet = self.puppets_by_custom_mxid.get(mxid)
        if puppet is not None:
            return puppet
        record = self.store.get_puppet_by_custom_mxid(mxid)
        if record is None:
            return None
        return self.get_puppet_by_uid(record.uid)

    def rebind_custom_puppet(self, puppet: Puppet, previous: str | None) -> None:
        if previous:
            self.puppets_by_custom_mxid.pop(previous, expected=puppet)
        if puppet.custom_mxid:
            self.puppets_by_custom_mxid.put(puppet.custom_mxid, puppet)

    def format_puppet_mxid(self, uid: UID) -> str:
        localpart = self.config.bridge.username_template.format(uin=uid.value)
        return f"@{localpart}:{self.config.homeserver.domain}"

    def _compile_puppet_mxid_re(self) -> re.Pattern[str]:
        prefix, _, suffix = self.config.bridge.username_template.partition("{uin}")
        domain = re.escape(self.config.homeserver.domain)
        return re.compile(f"^@{re.escape(prefix)}([0-9]+){re.escape(suffix)}:{domain}$")

    def parse_puppet_mxid(self, mxid: str) -> UID | None:
        match = self._puppet_mxid_re.match(mxid)
        if match is None:
            return None
        return UID.user(match.group(1))

    def format_displayname(self, contact: ContactInfo) -> tuple[str, NameQuality]:
        """Render the displayname template; the quality says which source the name came from."""
        if contact.remark:
            display, quality = contact.remark, NameQuality.REMARK
        elif contact.name:
            display, quality = contact.name, NameQuality.NAME
        else:
            display, quality = contact.uin, NameQuality.UIN
        try:
            name = self.config.bridge.displayname_template.format(
                display=display, name=contact.name, remark=contact.remark, uin=contact.uin
            )
        except (KeyError, IndexError, ValueError):
            logger.warning("Invalid displayname template {!r}", self.config.bridge.displayname_template)
            name = display
        return name, quality

    # ── Users ────────────────────────────────────────────────────────

    def _is_bridge_mxid(self, mxid: str) -> bool:
        return mxid == self.config.bot_mxid or self.parse_puppet_mxid(mxid) is not None

    def _load_user(self, mxid: str, create: bool) -> User | None:
        record = self.store.get_user(mxid)
        if record is None:
            if not create:
                return None
            record = UserRecord(mxid=mxid)
            self.store.save_user(record)
        return User(self, record)

    def get_user_by_mxid(self, mxid: str, *, create: bool = True) -> User | None:
        """The local user for ``mxid``; ghosts and the bot never get one."""
        user = self.users_by_mxid.get(mxid)
        if user is not None:
            return user
        if not mxid.startswith("@") or self._is_bridge_mxid(mxid):
            return None
        user = self._load_user(mxid, create)
        if user is None:
            return None
        user = self.users_by_mxid.get_or_create(mxid, lambda: user)
        if user.uin:
            self.users_by_uin.put(user.uin, user)
        return user

    def get_user_by_uin(self, uin: str) -> User | None:
        user = self.users_by_uin.get(uin)
        if user is not None:
            return user
        record = self.store.get_user_by_uin(uin)
        if record is None:
            return None
        return self.get_user_by_mxid(record.mxid, create=False)

    def get_all_users(self) -> list[User]:
        return self.users_by_mxid.values()

    def register_user_uin(self, user: User, previous_uin: str | None) -> None:
        if previous_uin and previous_uin != user.uin:
            self.users_by_uin.pop(previous_uin, expected=user)
        if user.uin:
            self.users_by_uin.put(user.uin, user)

    def unregister_user_uin(self, user: User) -> None:
        if user.uin:
            self.users_by_uin.pop(user.uin, expected=user)

    # ── Lookups used by the converters ───────────────────────────────

    def resolve_uin(self, mxid: str) -> str | None:
        """QQ uin behind a Matrix user ID: a ghost's uin, or the uin a local user is logged in with."""
        uid = self.parse_puppet_mxid(mxid)
        if uid is not None:
            return uid.value
        puppet = self.puppets_by_custom_mxid.get(mxid)
        if puppet is not None:
            return puppet.uid.value
        user = self.users_by_mxid.get(mxid)
        if user is not None:
            return user.uin
        record = self.store.get_user(mxid)
        return record.uin if record is not None else None

    async def resolve_mention(self, uin: str) -> tuple[str, str] | None:
        puppet = self.get_puppet_by_uid(UID.user(uin))
        if puppet is None:
            return None
        name = puppet.displayname or uin
        user = self.get_user_by_uin(uin)
        if user is not None:
            return user.mxid, name
        return puppet.mxid, name

    # ── Matrix ingress ───────────────────────────────────────────────

    async def handle_matrix_event(self, event: MatrixEvent) -> None:
        """Route a room event from the homeserver to its portal queue."""
        if self._is_bridge_mxid(event.sender):
            logger.trace("Ignoring {} from bridge user {}", event.event_id, event.sender)
            return
        portal = self.get_portal_by_mxid(event.room_id)
        if portal is None:
            logger.debug("Ignoring {}: {} is not a portal", event.event_id, event.room_id)
            return
        user = self.get_user_by_mxid(event.sender)
        if user is None:
            return
        await portal.enqueue_matrix(PortalMatrixMessage(user, event))

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        bot = self.bot
        try:
            await bot.ensure_registered()
            await bot.set_displayname(self.config.appservice.bot_displayname)
            if self.config.appservice.bot_avatar:
                await bot.set_avatar_url(self.config.appservice.bot_avatar)
        except BridgeError as e:
            logger.error("Failed to set up bridge bot {}: {}", bot.user_id, e)

        for record in self.store.get_puppets_with_custom_mxid():
            self.get_puppet_by_uid(record.uid)
        for record in self.store.get_all_users():
            self.get_user_by_mxid(record.mxid, create=False)
        logger.info("Bridge started with {} logged-in users", len(self.users_by_uin))

    async def stop(self) -> None:
        for portal in self.portals_by_key.values():
            await portal.stop()
        for user in self.users_by_mxid.values():
            if user.client is not None:
                await user.disconnect()
        await self.drain_background()
        logger.info("Bridge stopped")
