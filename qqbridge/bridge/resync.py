"""Background metadata resync for one logged-in QQ account."""

from __future__ import annotations

import asyncio
import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from qqbridge.core.errors import BridgeError
from qqbridge.utils.helpers import utc_now

if TYPE_CHECKING:
    from qqbridge.bridge.portal import Portal
    from qqbridge.bridge.puppet import Puppet
    from qqbridge.bridge.user import User


@dataclass(slots=True)
class ResyncItem:
    puppet: Puppet | None = None
    portal: Portal | None = None

    @property
    def last_sync(self) -> datetime | None:
        if self.puppet is not None:
            return self.puppet.record.last_sync
        if self.portal is not None:
            return self.portal.record.last_sync
        return None


class ResyncEngine:
    """Coalescing queue of stale puppets and group portals, swept periodically.

    Enqueueing is cheap and idempotent: an item is only added when its last
    sync is older than ``min_interval``, and at most once per target until the
    next sweep takes the whole queue.
    """

    def __init__(
        self,
        user: User,
        *,
        min_interval: timedelta,
        interval: timedelta,
        jitter: timedelta,
    ) -> None:
        self.user = user
        self.min_interval = min_interval
        self.interval = interval
        self.jitter = jitter
        self._queue: dict[str, ResyncItem] = {}
        self._lock = threading.Lock()
        self._task: asyncio.Task | None = None
        self.next_resync: datetime | None = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def _is_recent(self, last_sync: datetime | None) -> bool:
        return last_sync is not None and last_sync + self.min_interval > utc_now()

    def _enqueue(self, key: str, item: ResyncItem) -> bool:
        if self._is_recent(item.last_sync):
            return False
        with self._lock:
            if key in self._queue:
                return False
            self._queue[key] = item
        logger.debug("Enqueued resync for {} (next sweep at {})", key, self.next_resync)
        return True

    def enqueue_puppet(self, puppet: Puppet) -> bool:
        return self._enqueue(f"puppet:{puppet.uid}", ResyncItem(puppet=puppet))

    def enqueue_portal(self, portal: Portal) -> bool:
        if not portal.is_group:
            return False
        return self._enqueue(f"portal:{portal.key}", ResyncItem(portal=portal))

    def first_wake_delay(self) -> float:
        """Seconds until the first sweep: one interval minus a random part of the jitter."""
        return max(0.0, (self.interval - self.jitter * random.random()).total_seconds())

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"resync-{self.user.mxid}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        delay = self.first_wake_delay()
        self.next_resync = utc_now() + timedelta(seconds=delay)
        while True:
            await asyncio.sleep(delay)
            self.next_resync = utc_now() + self.interval
            try:
                await self.sweep()
            except Exception:
                logger.exception("Resync sweep for {} failed", self.user.mxid)
            delay = self.interval.total_seconds()

    async def sweep(self) -> int:
        """Resync everything queued that is still stale; returns the number of targets synced."""
        client = self.user.client
        if client is None or not self.user.is_logged_in():
            return 0
        with self._lock:
            if not self._queue:
                return 0
            queue, self._queue = self._queue, {}

        puppets: list[Puppet] = []
        portals: list[Portal] = []
        for key, item in queue.items():
            if self._is_recent(item.last_sync):
                logger.debug("Not resyncing {}, last sync was {}", key, item.last_sync)
                continue
            if item.puppet is not None:
                puppets.append(item.puppet)
            elif item.portal is not None:
                portals.append(item.portal)

        synced = 0
        for portal in portals:
            group = await portal.fetch_group(client)
            if group is None:
                logger.warning("Failed to get group info for {} to do background sync", portal.key.uid.value)
                continue
            logger.debug("Doing background sync for {}", portal.key.uid.value)
            await portal.update_matrix_room(self.user, group)
            synced += 1

        for puppet in puppets:
            logger.debug("Doing background sync for user {}", puppet.uid.value)
            try:
                info = await client.fetch_user_info(puppet.uid.value)
            except BridgeError as e:
                logger.warning("Failed to get contact info for {} in background sync: {}", puppet.uid.value, e)
                continue
            if info is None:
                logger.warning("No contact info for {} in background sync", puppet.uid.value)
                continue
            await puppet.sync(info.to_contact(), force_avatar_sync=True, force_portal_sync=True)
            synced += 1
        return synced
