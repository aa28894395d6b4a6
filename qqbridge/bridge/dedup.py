"""At-most-once delivery: a recent-message ring buffer backed by the message table."""

from __future__ import annotations

import threading
from collections import deque

from loguru import logger

from qqbridge.core.identity import UID, MessageKey, PortalKey
from qqbridge.core.models import MessageErrorKind, MessageKind, MessageRecord
from qqbridge.storage.bridge_store import BridgeStore

RECENTLY_HANDLED_SIZE = 100


class RecentlyHandled:
    """Fixed-size ring of ``(message key, error)`` pairs most recently delivered."""

    def __init__(self, size: int = RECENTLY_HANDLED_SIZE) -> None:
        self._items: deque[tuple[str, MessageErrorKind]] = deque(maxlen=size)
        self._lock = threading.Lock()

    def add(self, key: str, error: MessageErrorKind = MessageErrorKind.NONE) -> None:
        with self._lock:
            self._items.append((key, error))

    def contains(self, key: str, error: MessageErrorKind | None = None) -> bool:
        with self._lock:
            if error is None:
                return any(item_key == key for item_key, _ in self._items)
            return (key, error) in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class DuplicateTracker:
    """Per-portal duplicate check in front of the persistent message index.

    The ring buffer is only a fast path; a miss always falls through to the
    store. Records are inserted unsent before delivery and marked sent after,
    so an unsent record left by a crash is delivered again instead of being
    treated as a duplicate.
    """

    def __init__(self, store: BridgeStore, chat: PortalKey, recent: RecentlyHandled | None = None) -> None:
        self.store = store
        self.chat = chat
        self.recent = recent or RecentlyHandled()

    def is_handled(self, key: MessageKey) -> bool:
        if self.recent.contains(str(key)):
            return True
        existing = self.store.get_message(self.chat, key)
        return existing is not None and existing.sent

    def is_fake_handled(self, key: MessageKey) -> bool:
        if self.recent.contains(key.id):
            return True
        existing = self.store.get_message_by_remote_id(self.chat, key.id)
        return existing is not None and existing.sent

    def begin(
        self,
        key: MessageKey,
        *,
        sender: UID,
        timestamp: int,
        content: str = "",
        kind: MessageKind = MessageKind.NORMAL,
        mxid: str | None = None,
    ) -> MessageRecord:
        """Return the unsent record for ``key``, inserting it when absent.

        Fake keys are matched by their id alone since their sequence is random.
        """
        if key.is_fake:
            existing = self.store.get_message_by_remote_id(self.chat, key.id)
        else:
            existing = self.store.get_message(self.chat, key)
        if existing is not None:
            if existing.sent:
                logger.warning("begin() on already delivered message {} in {}", key, self.chat)
            return existing
        record = MessageRecord(
            chat=self.chat,
            key=key,
            mxid=mxid,
            sender=sender,
            timestamp=timestamp,
            sent=False,
            kind=kind,
            content=content,
        )
        self.store.insert_message(record)
        return record

    def finish(
        self,
        record: MessageRecord,
        *,
        mxid: str,
        error: MessageErrorKind = MessageErrorKind.NONE,
        new_key: MessageKey | None = None,
        timestamp: int | None = None,
    ) -> MessageRecord:
        """Mark ``record`` delivered; ``new_key`` replaces a pending key with the acknowledged one."""
        old_key = record.key if new_key is not None and new_key != record.key else None
        if new_key is not None:
            record.key = new_key
        if timestamp is not None:
            record.timestamp = timestamp
        record.mxid = mxid
        record.sent = True
        record.error = error
        self.store.update_message(record, old_key=old_key)
        self.recent.add(record.key.id if record.key.is_fake else str(record.key), error)
        return record

    def abandon(self, record: MessageRecord) -> None:
        """Forget a record whose delivery failed."""
        self.store.delete_message(self.chat, record.key)
