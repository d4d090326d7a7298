from __future__ import annotations

import secrets
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path

_DEFAULT_DB_PATH = Path.home() / ".promptroom" / "promptroom.db"

# No 0/O or 1/I so codes survive being read aloud.
_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
_CODE_LENGTH = 6
_CODE_ATTEMPTS = 8

GROUP_CHAT_NAME = "Group Chat"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS rooms (
    id           TEXT PRIMARY KEY,
    code         TEXT NOT NULL UNIQUE,
    created_at   TEXT NOT NULL,
    is_active    INTEGER NOT NULL DEFAULT 1,
    host_user_id TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id            TEXT PRIMARY KEY,
    room_id       TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    name          TEXT NOT NULL,
    is_online     INTEGER NOT NULL DEFAULT 0,
    connection_id TEXT,
    is_host       INTEGER NOT NULL DEFAULT 0,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_users_room ON users(room_id);
CREATE INDEX IF NOT EXISTS idx_users_connection ON users(connection_id);

CREATE TABLE IF NOT EXISTS chats (
    id            TEXT PRIMARY KEY,
    room_id       TEXT NOT NULL REFERENCES rooms(id) ON DELETE CASCADE,
    name          TEXT NOT NULL,
    type          TEXT NOT NULL,
    owner_user_id TEXT REFERENCES users(id) ON DELETE CASCADE,
    message_count INTEGER NOT NULL DEFAULT 0,
    token_count   INTEGER NOT NULL DEFAULT 0,
    summary       TEXT,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_chats_room ON chats(room_id);

CREATE TABLE IF NOT EXISTS messages (
    id            TEXT PRIMARY KEY,
    chat_id       TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
    sender_id     TEXT,
    text          TEXT NOT NULL,
    role          TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    input_tokens  INTEGER,
    output_tokens INTEGER,
    model         TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id);
"""

_USER_COLS = "id, room_id, name, is_online, connection_id, is_host, created_at"
_CHAT_COLS = "id, room_id, name, type, owner_user_id, message_count, token_count, summary, created_at"
_MESSAGE_COLS = (
    "m.id, m.chat_id, m.sender_id, m.text, m.role, m.created_at, "
    "m.input_tokens, m.output_tokens, m.model, u.name"
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_room_code() -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_LENGTH))


def _room_row(row: tuple) -> dict:
    return {
        "id": row[0], "code": row[1], "created_at": row[2],
        "is_active": bool(row[3]), "host_user_id": row[4],
    }


def _user_row(row: tuple) -> dict:
    return {
        "id": row[0], "room_id": row[1], "name": row[2], "is_online": bool(row[3]),
        "connection_id": row[4], "is_host": bool(row[5]), "created_at": row[6],
    }


def _chat_row(row: tuple) -> dict:
    return {
        "id": row[0], "room_id": row[1], "name": row[2], "type": row[3],
        "owner_user_id": row[4], "message_count": row[5], "token_count": row[6],
        "summary": row[7], "created_at": row[8],
    }


def _message_row(row: tuple) -> dict:
    return {
        "id": row[0], "chat_id": row[1], "sender_id": row[2], "text": row[3],
        "role": row[4], "created_at": row[5], "input_tokens": row[6],
        "output_tokens": row[7], "model": row[8], "sender_name": row[9],
    }


def individual_chat_name(user_name: str) -> str:
    return f"{user_name}'s Chat"


class RoomStore:
    """Durable rooms, users, chats and messages.

    All methods are blocking; async callers go through ``asyncio.to_thread``.
    Multi-row writes run inside one transaction and roll back as a unit.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_SCHEMA)

    # --- rooms ---

    def create_room_with_host(self, host_name: str) -> dict:
        """Insert a room, its offline host, the group chat and the host's chat."""
        now = _now()
        room_id = uuid.uuid4().hex
        host_id = uuid.uuid4().hex
        with self._lock:
            for attempt in range(_CODE_ATTEMPTS):
                code = generate_room_code()
                try:
                    self._conn.execute(
                        "INSERT INTO rooms (id, code, created_at, is_active, host_user_id) VALUES (?, ?, ?, 1, ?)",
                        (room_id, code, now, host_id),
                    )
                    break
                except sqlite3.IntegrityError:
                    if attempt == _CODE_ATTEMPTS - 1:
                        self._conn.rollback()
                        raise
            try:
                self._conn.execute(
                    f"INSERT INTO users ({_USER_COLS}) VALUES (?, ?, ?, 0, NULL, 1, ?)",
                    (host_id, room_id, host_name, now),
                )
                group = self._insert_chat(room_id, GROUP_CHAT_NAME, "group", None, now)
                own = self._insert_chat(room_id, individual_chat_name(host_name), "individual", host_id, now)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        room = {"id": room_id, "code": code, "created_at": now, "is_active": True, "host_user_id": host_id}
        host = {
            "id": host_id, "room_id": room_id, "name": host_name, "is_online": False,
            "connection_id": None, "is_host": True, "created_at": now,
        }
        return {"room": room, "user": host, "chats": [group, own]}

    def _insert_chat(self, room_id: str, name: str, chat_type: str, owner_id: str | None, now: str) -> dict:
        chat_id = uuid.uuid4().hex
        self._conn.execute(
            f"INSERT INTO chats ({_CHAT_COLS}) VALUES (?, ?, ?, ?, ?, 0, 0, NULL, ?)",
            (chat_id, room_id, name, chat_type, owner_id, now),
        )
        return {
            "id": chat_id, "room_id": room_id, "name": name, "type": chat_type,
            "owner_user_id": owner_id, "message_count": 0, "token_count": 0,
            "summary": None, "created_at": now,
        }

    def get_room(self, room_id: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, code, created_at, is_active, host_user_id FROM rooms WHERE id = ?",
                (room_id,),
            )
            row = cur.fetchone()
        return _room_row(row) if row else None

    def get_room_by_code(self, code: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, code, created_at, is_active, host_user_id FROM rooms WHERE code = ?",
                (code.strip().upper(),),
            )
            row = cur.fetchone()
        return _room_row(row) if row else None

    def list_rooms(self, active_only: bool = False) -> list[dict]:
        query = "SELECT id, code, created_at, is_active, host_user_id FROM rooms"
        if active_only:
            query += " WHERE is_active = 1"
        with self._lock:
            cur = self._conn.execute(query + " ORDER BY created_at DESC")
            return [_room_row(row) for row in cur.fetchall()]

    def close_room(self, room_id: str) -> None:
        """Deactivate a room and take every member offline in one transaction."""
        with self._lock:
            try:
                self._conn.execute("UPDATE rooms SET is_active = 0 WHERE id = ?", (room_id,))
                self._conn.execute(
                    "UPDATE users SET is_online = 0, connection_id = NULL WHERE room_id = ?",
                    (room_id,),
                )
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def delete_room(self, room_id: str) -> bool:
        """Delete a room and everything in it (cascades via FK)."""
        with self._lock:
            cur = self._conn.execute("DELETE FROM rooms WHERE id = ?", (room_id,))
            self._conn.commit()
            return cur.rowcount > 0

    def clear_all(self) -> dict[str, int]:
        """Remove every row, children first. Returns per-table counts."""
        counts: dict[str, int] = {}
        with self._lock:
            try:
                for table in ("messages", "chats", "users", "rooms"):
                    cur = self._conn.execute(f"DELETE FROM {table}")
                    counts[table] = cur.rowcount
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        return counts

    # --- users ---

    def create_user_with_chat(self, room_id: str, name: str, connection_id: str | None) -> dict:
        """Insert an online user together with their individual chat."""
        now = _now()
        user_id = uuid.uuid4().hex
        online = connection_id is not None
        with self._lock:
            try:
                self._conn.execute(
                    f"INSERT INTO users ({_USER_COLS}) VALUES (?, ?, ?, ?, ?, 0, ?)",
                    (user_id, room_id, name, int(online), connection_id, now),
                )
                chat = self._insert_chat(room_id, individual_chat_name(name), "individual", user_id, now)
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
        user = {
            "id": user_id, "room_id": room_id, "name": name, "is_online": online,
            "connection_id": connection_id, "is_host": False, "created_at": now,
        }
        return {"user": user, "chat": chat}

    def get_user(self, user_id: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(f"SELECT {_USER_COLS} FROM users WHERE id = ?", (user_id,))
            row = cur.fetchone()
        return _user_row(row) if row else None

    def find_user_by_name(self, room_id: str, name: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_USER_COLS} FROM users WHERE room_id = ? AND lower(name) = lower(?)",
                (room_id, name.strip()),
            )
            row = cur.fetchone()
        return _user_row(row) if row else None

    def get_users(self, room_id: str) -> list[dict]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_USER_COLS} FROM users WHERE room_id = ? ORDER BY created_at, rowid",
                (room_id,),
            )
            return [_user_row(row) for row in cur.fetchall()]

    def count_online_users(self, room_id: str) -> int:
        with self._lock:
            cur = self._conn.execute(
                "SELECT COUNT(*) FROM users WHERE room_id = ? AND is_online = 1",
                (room_id,),
            )
            return cur.fetchone()[0]

    def set_user_online(self, user_id: str, connection_id: str | None) -> None:
        """Bind a user to a connection, or mark them offline when ``connection_id`` is None."""
        with self._lock:
            self._conn.execute(
                "UPDATE users SET is_online = ?, connection_id = ? WHERE id = ?",
                (int(connection_id is not None), connection_id, user_id),
            )
            self._conn.commit()

    def reset_presence(self) -> int:
        """Mark everyone offline; connections do not survive a restart."""
        with self._lock:
            cur = self._conn.execute(
                "UPDATE users SET is_online = 0, connection_id = NULL WHERE is_online = 1 OR connection_id IS NOT NULL"
            )
            self._conn.commit()
            return cur.rowcount

    def users_for_connection(self, connection_id: str) -> list[dict]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_USER_COLS} FROM users WHERE connection_id = ? AND is_online = 1",
                (connection_id,),
            )
            return [_user_row(row) for row in cur.fetchall()]

    def disconnect_connection(self, connection_id: str) -> list[dict]:
        """Mark every user bound to a connection offline; returns them as they were."""
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_USER_COLS} FROM users WHERE connection_id = ?",
                (connection_id,),
            )
            users = [_user_row(row) for row in cur.fetchall()]
            self._conn.execute(
                "UPDATE users SET is_online = 0, connection_id = NULL WHERE connection_id = ?",
                (connection_id,),
            )
            self._conn.commit()
        return users

    # --- chats ---

    def get_chat(self, chat_id: str) -> dict | None:
        with self._lock:
            cur = self._conn.execute(f"SELECT {_CHAT_COLS} FROM chats WHERE id = ?", (chat_id,))
            row = cur.fetchone()
        return _chat_row(row) if row else None

    def get_chats(self, room_id: str) -> list[dict]:
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_CHAT_COLS} FROM chats WHERE room_id = ? ORDER BY created_at, rowid",
                (room_id,),
            )
            return [_chat_row(row) for row in cur.fetchall()]

    def add_tokens(self, chat_id: str, amount: int) -> int:
        """Atomically add to a chat's token counter and return the new total."""
        with self._lock:
            self._conn.execute(
                "UPDATE chats SET token_count = token_count + ? WHERE id = ?",
                (max(0, int(amount)), chat_id),
            )
            self._conn.commit()
            cur = self._conn.execute("SELECT token_count FROM chats WHERE id = ?", (chat_id,))
            row = cur.fetchone()
        return row[0] if row else 0

    def set_chat_summary(self, chat_id: str, summary: str) -> bool:
        """Write the summary once; later calls leave the first one in place."""
        with self._lock:
            cur = self._conn.execute(
                "UPDATE chats SET summary = ? WHERE id = ? AND summary IS NULL",
                (summary, chat_id),
            )
            self._conn.commit()
            return cur.rowcount > 0

    # --- messages ---

    def add_message(
        self,
        chat_id: str,
        role: str,
        text: str,
        sender_id: str | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        model: str | None = None,
    ) -> dict:
        """Insert a message and bump the chat's message count in one transaction."""
        msg_id = uuid.uuid4().hex
        now = _now()
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO messages (id, chat_id, sender_id, text, role, created_at, "
                    "input_tokens, output_tokens, model) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (msg_id, chat_id, sender_id, text, role, now, input_tokens, output_tokens, model),
                )
                self._conn.execute(
                    "UPDATE chats SET message_count = message_count + 1 WHERE id = ?",
                    (chat_id,),
                )
                cur = self._conn.execute("SELECT message_count FROM chats WHERE id = ?", (chat_id,))
                count_row = cur.fetchone()
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            sender_name = None
            if sender_id:
                cur = self._conn.execute("SELECT name FROM users WHERE id = ?", (sender_id,))
                row = cur.fetchone()
                sender_name = row[0] if row else None
        return {
            "id": msg_id, "chat_id": chat_id, "sender_id": sender_id, "text": text,
            "role": role, "created_at": now, "input_tokens": input_tokens,
            "output_tokens": output_tokens, "model": model, "sender_name": sender_name,
            # Count including this message, read inside the insert's transaction
            "message_count": count_row[0] if count_row else None,
        }

    def get_messages(self, chat_id: str, skip: int = 0, limit: int | None = None) -> list[dict]:
        """Messages in creation order, dropping the first ``skip``.

        With ``limit`` only the most recent ``limit`` of the remainder are returned.
        """
        with self._lock:
            cur = self._conn.execute(
                f"SELECT {_MESSAGE_COLS} FROM messages m LEFT JOIN users u ON u.id = m.sender_id "
                "WHERE m.chat_id = ? ORDER BY m.created_at, m.rowid LIMIT -1 OFFSET ?",
                (chat_id, max(0, skip)),
            )
            rows = [_message_row(row) for row in cur.fetchall()]
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return rows

    def get_room_snapshot(self, room_id: str) -> dict | None:
        """Room, users and chats read under one lock hold, so no write lands in between."""
        with self._lock:
            cur = self._conn.execute(
                "SELECT id, code, created_at, is_active, host_user_id FROM rooms WHERE id = ?",
                (room_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            users = self._conn.execute(
                f"SELECT {_USER_COLS} FROM users WHERE room_id = ? ORDER BY created_at, rowid",
                (room_id,),
            ).fetchall()
            chats = self._conn.execute(
                f"SELECT {_CHAT_COLS} FROM chats WHERE room_id = ? ORDER BY created_at, rowid",
                (room_id,),
            ).fetchall()
        return {
            "room": _room_row(row),
            "users": [_user_row(u) for u in users],
            "chats": [_chat_row(c) for c in chats],
        }
