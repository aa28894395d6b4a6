"""SQLite persistence for portals, puppets, message mappings and user logins."""

from __future__ import annotations

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from qqbridge.core.identity import UID, UID_SEPARATOR, MessageKey, PortalKey, UIDKind
from qqbridge.core.models import (
    MessageErrorKind,
    MessageKind,
    MessageRecord,
    NameQuality,
    PortalRecord,
    PuppetRecord,
    UserRecord,
)
from qqbridge.utils.helpers import ensure_dir

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS portal (
        uid TEXT NOT NULL,
        receiver TEXT NOT NULL,
        mxid TEXT UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        name_set INTEGER NOT NULL DEFAULT 0,
        topic TEXT NOT NULL DEFAULT '',
        topic_set INTEGER NOT NULL DEFAULT 0,
        avatar TEXT NOT NULL DEFAULT '',
        avatar_url TEXT NOT NULL DEFAULT '',
        avatar_set INTEGER NOT NULL DEFAULT 0,
        encrypted INTEGER NOT NULL DEFAULT 0,
        last_sync TEXT,
        first_event_id TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (uid, receiver)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS puppet (
        uid TEXT PRIMARY KEY,
        displayname TEXT NOT NULL DEFAULT '',
        name_quality INTEGER NOT NULL DEFAULT 0,
        name_set INTEGER NOT NULL DEFAULT 0,
        avatar TEXT NOT NULL DEFAULT '',
        avatar_url TEXT NOT NULL DEFAULT '',
        avatar_set INTEGER NOT NULL DEFAULT 0,
        last_sync TEXT,
        custom_mxid TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        chat_uid TEXT NOT NULL,
        chat_receiver TEXT NOT NULL,
        msg_seq TEXT NOT NULL,
        msg_id TEXT NOT NULL,
        mxid TEXT,
        sender TEXT NOT NULL,
        timestamp INTEGER NOT NULL,
        sent INTEGER NOT NULL DEFAULT 0,
        type TEXT NOT NULL DEFAULT 'message',
        error TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        PRIMARY KEY (chat_uid, chat_receiver, msg_seq, msg_id),
        FOREIGN KEY (chat_uid, chat_receiver) REFERENCES portal(uid, receiver)
            ON DELETE CASCADE ON UPDATE CASCADE
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_message_mxid ON message (mxid)",
    "CREATE INDEX IF NOT EXISTS idx_message_seq ON message (chat_uid, chat_receiver, msg_seq, timestamp)",
    """
    CREATE TABLE IF NOT EXISTS user_login (
        mxid TEXT PRIMARY KEY,
        uin TEXT UNIQUE,
        management_room TEXT
    )
    """,
)

_PORTAL_COLUMNS = (
    "uid, receiver, mxid, name, name_set, topic, topic_set, avatar, avatar_url, "
    "avatar_set, encrypted, last_sync, first_event_id"
)
_PUPPET_COLUMNS = (
    "uid, displayname, name_quality, name_set, avatar, avatar_url, avatar_set, last_sync, custom_mxid"
)
_MESSAGE_COLUMNS = (
    "chat_uid, chat_receiver, msg_seq, msg_id, mxid, sender, timestamp, sent, type, error, content"
)


def _dt_to_text(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _text_to_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


class BridgeStore:
    """SQLite-backed store shared by every portal, puppet and user session.

    Calls are synchronous and serialized by one re-entrant lock, so the store
    can be used from the event loop and from QQ client threads alike.
    """

    def __init__(self, db_path: Path | str) -> None:
        path = Path(db_path)
        if str(path) != ":memory:":
            ensure_dir(path.parent)
        self.db_path = path

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_schema()

    def _create_schema(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Portals ──────────────────────────────────────────────────────

    def get_portal(self, key: PortalKey) -> PortalRecord | None:
        return self._get_portal(
            "WHERE uid = ? AND receiver = ?", (str(key.uid), str(key.receiver))
        )

    def get_portal_by_mxid(self, mxid: str) -> PortalRecord | None:
        if not mxid:
            return None
        return self._get_portal("WHERE mxid = ?", (mxid,))

    def get_all_portals(self) -> list[PortalRecord]:
        return self._list_portals("", ())

    def get_portals_by_uid(self, uid: UID) -> list[PortalRecord]:
        """Every portal for one chat, across all receivers."""
        return self._list_portals("WHERE uid = ?", (str(uid),))

    def find_private_chats(self, receiver: UID) -> list[PortalRecord]:
        """Private portals owned by one local account."""
        return self._list_portals(
            "WHERE receiver = ? AND uid LIKE ?",
            (str(receiver), f"%{UID_SEPARATOR}{UIDKind.USER.value}"),
        )

    def insert_portal(self, record: PortalRecord) -> None:
        with self._lock:
            self._conn.execute(
                f"INSERT INTO portal ({_PORTAL_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._portal_params(record),
            )
            self._conn.commit()

    def update_portal(self, record: PortalRecord) -> None:
        params = self._portal_params(record)
        with self._lock:
            self._conn.execute(
                """
                UPDATE portal SET
                    mxid = ?, name = ?, name_set = ?, topic = ?, topic_set = ?,
                    avatar = ?, avatar_url = ?, avatar_set = ?, encrypted = ?,
                    last_sync = ?, first_event_id = ?
                WHERE uid = ? AND receiver = ?
                """,
                (*params[2:], params[0], params[1]),
            )
            self._conn.commit()

    def delete_portal(self, key: PortalKey) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM portal WHERE uid = ? AND receiver = ?",
                (str(key.uid), str(key.receiver)),
            )
            self._conn.commit()

    @staticmethod
    def _portal_params(record: PortalRecord) -> tuple[Any, ...]:
        return (
            str(record.key.uid),
            str(record.key.receiver),
            record.mxid,
            record.name,
            int(record.name_set),
            record.topic,
            int(record.topic_set),
            record.avatar,
            record.avatar_url,
            int(record.avatar_set),
            int(record.encrypted),
            _dt_to_text(record.last_sync),
            record.first_event_id,
        )

    def _get_portal(self, where: str, params: tuple[Any, ...]) -> PortalRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_PORTAL_COLUMNS} FROM portal {where} LIMIT 1", params
            ).fetchone()
        return self._portal_from_row(row) if row is not None else None

    def _list_portals(self, where: str, params: tuple[Any, ...]) -> list[PortalRecord]:
        with self._lock:
            rows = self._conn.execute(f"SELECT {_PORTAL_COLUMNS} FROM portal {where}", params).fetchall()
        return [self._portal_from_row(row) for row in rows]

    @staticmethod
    def _portal_from_row(row: sqlite3.Row) -> PortalRecord:
        return PortalRecord(
            key=PortalKey.of(UID.parse(row["uid"]), UID.parse(row["receiver"])),
            mxid=row["mxid"],
            name=row["name"],
            name_set=bool(row["name_set"]),
            topic=row["topic"],
            topic_set=bool(row["topic_set"]),
            avatar=row["avatar"],
            avatar_url=row["avatar_url"],
            avatar_set=bool(row["avatar_set"]),
            encrypted=bool(row["encrypted"]),
            last_sync=_text_to_dt(row["last_sync"]),
            first_event_id=row["first_event_id"],
        )

    # ── Puppets ──────────────────────────────────────────────────────

    def get_puppet(self, uid: UID) -> PuppetRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_PUPPET_COLUMNS} FROM puppet WHERE uid = ? LIMIT 1", (str(uid),)
            ).fetchone()
        return self._puppet_from_row(row) if row is not None else None

    def get_puppet_by_custom_mxid(self, mxid: str) -> PuppetRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_PUPPET_COLUMNS} FROM puppet WHERE custom_mxid = ? LIMIT 1", (mxid,)
            ).fetchone()
        return self._puppet_from_row(row) if row is not None else None

    def get_all_puppets(self) -> list[PuppetRecord]:
        with self._lock:
            rows = self._conn.execute(f"SELECT {_PUPPET_COLUMNS} FROM puppet ORDER BY uid").fetchall()
        return [self._puppet_from_row(row) for row in rows]

    def get_puppets_with_custom_mxid(self) -> list[PuppetRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_PUPPET_COLUMNS} FROM puppet WHERE custom_mxid IS NOT NULL AND custom_mxid != ''"
            ).fetchall()
        return [self._puppet_from_row(row) for row in rows]

    def save_puppet(self, record: PuppetRecord) -> None:
        """Insert or update one puppet row."""
        with self._lock:
            self._conn.execute(
                f"""
                INSERT INTO puppet ({_PUPPET_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(uid) DO UPDATE SET
                    displayname = excluded.displayname,
                    name_quality = excluded.name_quality,
                    name_set = excluded.name_set,
                    avatar = excluded.avatar,
                    avatar_url = excluded.avatar_url,
                    avatar_set = excluded.avatar_set,
                    last_sync = excluded.last_sync,
                    custom_mxid = excluded.custom_mxid
                """,
                (
                    str(record.uid),
                    record.displayname,
                    int(record.name_quality),
                    int(record.name_set),
                    record.avatar,
                    record.avatar_url,
                    int(record.avatar_set),
                    _dt_to_text(record.last_sync),
                    record.custom_mxid,
                ),
            )
            self._conn.commit()

    @staticmethod
    def _puppet_from_row(row: sqlite3.Row) -> PuppetRecord:
        return PuppetRecord(
            uid=UID.parse(row["uid"]),
            displayname=row["displayname"],
            name_quality=NameQuality(row["name_quality"]),
            name_set=bool(row["name_set"]),
            avatar=row["avatar"],
            avatar_url=row["avatar_url"],
            avatar_set=bool(row["avatar_set"]),
            last_sync=_text_to_dt(row["last_sync"]),
            custom_mxid=row["custom_mxid"] or None,
        )

    # ── Messages ─────────────────────────────────────────────────────

    def get_message(self, chat: PortalKey, key: MessageKey) -> MessageRecord | None:
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM message
                WHERE chat_uid = ? AND chat_receiver = ? AND msg_seq = ? AND msg_id = ?
                LIMIT 1
                """,
                (str(chat.uid), str(chat.receiver), key.seq, key.id),
            ).fetchone()
        return self._message_from_row(row) if row is not None else None

    def get_message_by_remote_id(self, chat: PortalKey, msg_id: str) -> MessageRecord | None:
        """Lookup ignoring the sequence; fake keys carry a random one."""
        with self._lock:
            row = self._conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM message
                WHERE chat_uid = ? AND chat_receiver = ? AND msg_id = ?
                LIMIT 1
                """,
                (str(chat.uid), str(chat.receiver), msg_id),
            ).fetchone()
        return self._message_from_row(row) if row is not None else None

    def get_message_by_mxid(self, mxid: str) -> MessageRecord | None:
        if not mxid:
            return None
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM message WHERE mxid = ? LIMIT 1", (mxid,)
            ).fetchone()
        return self._message_from_row(row) if row is not None else None

    def get_messages(self, chat: PortalKey) -> list[MessageRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS} FROM message
                WHERE chat_uid = ? AND chat_receiver = ?
                ORDER BY timestamp
                """,
                (str(chat.uid), str(chat.receiver)),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    def get_by_reply(
        self, chat: PortalKey, seq: str | int, ts_seconds: int, window_seconds: int
    ) -> MessageRecord | None:
        """Resolve a reply or recall target by sequence and approximate time.

        The exact second wins. Otherwise the earliest record with the same
        sequence inside ``[ts, ts + window]`` is returned. Fake records never
        match.
        """
        lower = int(ts_seconds) * 1000
        base = f"""
            SELECT {_MESSAGE_COLUMNS} FROM message
            WHERE chat_uid = ? AND chat_receiver = ? AND msg_seq = ?
              AND type != ? AND msg_id NOT LIKE 'FAKE::%'
        """
        params: tuple[Any, ...] = (str(chat.uid), str(chat.receiver), str(seq), MessageKind.FAKE.value)
        with self._lock:
            row = self._conn.execute(
                base + " AND timestamp >= ? AND timestamp < ? ORDER BY timestamp LIMIT 1",
                (*params, lower, lower + 1000),
            ).fetchone()
            if row is None and window_seconds > 0:
                row = self._conn.execute(
                    base + " AND timestamp >= ? AND timestamp < ? ORDER BY timestamp LIMIT 1",
                    (*params, lower, lower + (int(window_seconds) + 1) * 1000),
                ).fetchone()
        return self._message_from_row(row) if row is not None else None

    def insert_message(self, record: MessageRecord) -> None:
        with self._lock:
            self._conn.execute(
                f"INSERT INTO message ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    str(record.chat.uid),
                    str(record.chat.receiver),
                    record.key.seq,
                    record.key.id,
                    record.mxid,
                    str(record.sender),
                    int(record.timestamp),
                    int(record.sent),
                    record.kind.value,
                    record.error.value,
                    record.content,
                ),
            )
            self._conn.commit()

    def update_message(self, record: MessageRecord, *, old_key: MessageKey | None = None) -> None:
        """Persist delivery fields; ``old_key`` rewrites a pending key to the acknowledged one."""
        where_key = old_key or record.key
        with self._lock:
            self._conn.execute(
                """
                UPDATE message SET
                    msg_seq = ?, msg_id = ?, mxid = ?, timestamp = ?, sent = ?,
                    type = ?, error = ?, content = ?
                WHERE chat_uid = ? AND chat_receiver = ? AND msg_seq = ? AND msg_id = ?
                """,
                (
                    record.key.seq,
                    record.key.id,
                    record.mxid,
                    int(record.timestamp),
                    int(record.sent),
                    record.kind.value,
                    record.error.value,
                    record.content,
                    str(record.chat.uid),
                    str(record.chat.receiver),
                    where_key.seq,
                    where_key.id,
                ),
            )
            self._conn.commit()

    def delete_message(self, chat: PortalKey, key: MessageKey) -> None:
        with self._lock:
            self._conn.execute(
                """
                DELETE FROM message
                WHERE chat_uid = ? AND chat_receiver = ? AND msg_seq = ? AND msg_id = ?
                """,
                (str(chat.uid), str(chat.receiver), key.seq, key.id),
            )
            self._conn.commit()

    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> MessageRecord:
        return MessageRecord(
            chat=PortalKey.of(UID.parse(row["chat_uid"]), UID.parse(row["chat_receiver"])),
            key=MessageKey(row["msg_seq"], row["msg_id"]),
            mxid=row["mxid"],
            sender=UID.parse(row["sender"]),
            timestamp=int(row["timestamp"]),
            sent=bool(row["sent"]),
            kind=MessageKind(row["type"]),
            error=MessageErrorKind(row["error"]),
            content=row["content"],
        )

    # ── User logins ──────────────────────────────────────────────────

    def get_user(self, mxid: str) -> UserRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT mxid, uin, management_room FROM user_login WHERE mxid = ? LIMIT 1", (mxid,)
            ).fetchone()
        return UserRecord(**dict(row)) if row is not None else None

    def get_user_by_uin(self, uin: str) -> UserRecord | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT mxid, uin, management_room FROM user_login WHERE uin = ? LIMIT 1", (uin,)
            ).fetchone()
        return UserRecord(**dict(row)) if row is not None else None

    def get_all_users(self) -> list[UserRecord]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT mxid, uin, management_room FROM user_login WHERE uin IS NOT NULL"
            ).fetchall()
        return [UserRecord(**dict(row)) for row in rows]

    def save_user(self, record: UserRecord) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO user_login (mxid, uin, management_room) VALUES (?, ?, ?)
                    ON CONFLICT(mxid) DO UPDATE SET
                        uin = excluded.uin,
                        management_room = excluded.management_room
                    """,
                    (record.mxid, record.uin, record.management_room),
                )
                self._conn.commit()
            except sqlite3.IntegrityError:
                self._conn.rollback()
                logger.warning("QQ account {} is already bound to another Matrix user", record.uin)
                raise
