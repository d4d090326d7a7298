from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

_DEFAULT_DB_PATH = Path.home() / ".promptroom" / "promptroom.db"

DEFAULTS: dict[str, Any] = {
    # Display name of the assistant; "@<name>" in a group chat selects it
    "ai.name": "Claude",
    "responder.model": "gpt-4o-mini",
    "responder.max_tokens": 1024,
    "responder.stream": True,
    "auxiliary.model": "gpt-4o-mini",
    "limits.max_users": 5,
    "limits.chat_messages": 100,
    "limits.chat_tokens": 100000,
    # A chat is summarized once, when its message count reaches the threshold
    "summary.threshold": 51,
    "summary.window": 50,
    "context.recent_messages": 20,
    "context.reference_messages": 10,
    "search.enabled": True,
    "search.results": 3,
    "rooms.close_on_host_leave": True,
    "timeouts.send": 120,
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_UPSERT = "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value"


def check_value(key: str, value: Any) -> str | None:
    """Return an error when ``value`` does not match the type of the key's default."""
    if key not in DEFAULTS:
        return f"Unknown settings key: {key}"
    expected = DEFAULTS[key]
    if isinstance(expected, bool):
        ok = isinstance(value, bool)
    elif isinstance(expected, (int, float)):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0
    else:
        ok = isinstance(value, str) and bool(value.strip())
    if not ok:
        return f"Invalid value for {key}: expected {type(expected).__name__}"
    return None


class SettingsStore:
    """Room limits and model choices, stored as JSON next to the rooms.

    Lookup order: process overrides (CLI flags), stored value, ``DEFAULTS``.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        self._overrides: dict[str, Any] = {}

    def _stored(self) -> dict[str, Any]:
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM settings").fetchall()
        return {key: json.loads(value) for key, value in rows}

    def get(self, key: str, default: Any = ...) -> Any:
        if key in self._overrides:
            return self._overrides[key]
        with self._lock:
            row = self._conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        if row is not None:
            return json.loads(row[0])
        return DEFAULTS.get(key) if default is ... else default

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, updates: dict[str, Any]) -> None:
        with self._lock:
            self._conn.executemany(_UPSERT, [(key, json.dumps(value)) for key, value in updates.items()])
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()

    def get_all(self) -> dict[str, Any]:
        """Defaults merged with stored values; process overrides are not applied."""
        return {**DEFAULTS, **self._stored()}

    def apply_overrides(self, overrides: dict[str, Any]) -> None:
        """Pin process-lifetime values (CLI flags) above anything stored."""
        self._overrides.update({k: v for k, v in overrides.items() if v is not None})

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        return {**self.get_all(), **self._overrides, **(cli_overrides or {})}
