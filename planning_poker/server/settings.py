from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_DEFAULT_DB_PATH = Path.home() / ".planning_poker" / "settings.db"

DEFAULTS: dict[str, Any] = {
    "sessions.max_active": 3,
    "sessions.max_participants": 16,
    "sessions.idle_timeout": 600,
    "sessions.sweep_interval": 30,
    "grace.duration": 300,
    # Seconds before the grace deadline at which a warning is broadcast
    "grace.warning_lead": 60,
    "broadcast.queue_size": 100,
    "broadcast.history_size": 50,
    "reconcile.max_delta": 5,
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class SettingsStore:
    """Tunables only. Session state is never written here."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def _stored(self, key: str | None = None) -> dict[str, Any]:
        query, params = "SELECT key, value FROM settings", ()
        if key is not None:
            query, params = f"{query} WHERE key = ?", (key,)
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return {k: json.loads(v) for k, v in rows}

    def get(self, key: str, default: Any = ...) -> Any:
        stored = self._stored(key)
        if key in stored:
            return stored[key]
        return DEFAULTS.get(key) if default is ... else default

    def get_all(self) -> dict[str, Any]:
        return {**DEFAULTS, **self._stored()}

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, updates: dict[str, Any]) -> None:
        rows = [(key, json.dumps(value)) for key, value in updates.items()]
        with self._lock, self._conn:
            self._conn.executemany("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", rows)

    def delete(self, key: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Stored values over defaults, with CLI flags that were actually given on top."""
        result = self.get_all()
        if cli_overrides:
            result.update({k: v for k, v in cli_overrides.items() if v is not None})
        return result

    def close(self) -> None:
        with self._lock:
            self._conn.close()


@dataclass
class CoordinatorConfig:
    max_sessions: int = DEFAULTS["sessions.max_active"]
    max_participants: int = DEFAULTS["sessions.max_participants"]
    idle_timeout: float = DEFAULTS["sessions.idle_timeout"]
    sweep_interval: float = DEFAULTS["sessions.sweep_interval"]
    grace_duration: float = DEFAULTS["grace.duration"]
    grace_warning_lead: float = DEFAULTS["grace.warning_lead"]
    queue_size: int = DEFAULTS["broadcast.queue_size"]
    history_size: int = DEFAULTS["broadcast.history_size"]
    max_delta: int = DEFAULTS["reconcile.max_delta"]

    def __post_init__(self) -> None:
        for name in ("max_sessions", "max_participants", "idle_timeout", "sweep_interval",
                     "grace_duration", "queue_size", "history_size"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("grace_warning_lead", "max_delta"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative")

    @classmethod
    def from_settings(cls, values: dict[str, Any]) -> CoordinatorConfig:
        merged = dict(DEFAULTS)
        merged.update(values)
        return cls(
            max_sessions=int(merged["sessions.max_active"]),
            max_participants=int(merged["sessions.max_participants"]),
            idle_timeout=float(merged["sessions.idle_timeout"]),
            sweep_interval=float(merged["sessions.sweep_interval"]),
            grace_duration=float(merged["grace.duration"]),
            grace_warning_lead=float(merged["grace.warning_lead"]),
            queue_size=int(merged["broadcast.queue_size"]),
            history_size=int(merged["broadcast.history_size"]),
            max_delta=int(merged["reconcile.max_delta"]),
        )
