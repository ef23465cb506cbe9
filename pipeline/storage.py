"""SQLite storage for provider credentials.

Two lookup tables back the credential resolver:
  - system_ai_config: operator-wide settings keyed by setting_key
    (e.g. "runway_api_key"), shared by every caller.
  - user_api_keys: per-caller keys keyed by (user_id, service).

Uses Python's built-in sqlite3.
"""

from __future__ import annotations

import logging
import sqlite3
import threading

import config

logger = logging.getLogger(__name__)

DB_PATH = config.DB_PATH

# Thread-local connections (sqlite3 objects can't be shared across threads)
_local = threading.local()


def _get_conn() -> sqlite3.Connection:
    """Get a thread-local SQLite connection."""
    if not hasattr(_local, "conn") or _local.conn is None:
        _local.conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
        _local.conn.row_factory = sqlite3.Row
        _local.conn.execute("PRAGMA journal_mode=WAL")
    return _local.conn


def reset_storage_connection_for_tests():
    """Close this thread's connection so the next call reopens DB_PATH."""
    conn = getattr(_local, "conn", None)
    if conn is not None:
        conn.close()
    _local.conn = None


def init_db():
    """Create tables if they don't exist. Call once at startup."""
    conn = _get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS system_ai_config (
            setting_key     TEXT    PRIMARY KEY,
            setting_value   TEXT    NOT NULL DEFAULT '',
            updated_at      TEXT    NOT NULL DEFAULT (datetime('now', 'localtime'))
        );

        CREATE TABLE IF NOT EXISTS user_api_keys (
            user_id         TEXT    NOT NULL,
            service         TEXT    NOT NULL,
            api_key         TEXT    NOT NULL DEFAULT '',
            updated_at      TEXT    NOT NULL DEFAULT (datetime('now', 'localtime')),
            PRIMARY KEY (user_id, service)
        );
    """)
    conn.commit()
    logger.info("Database initialized at %s", DB_PATH)


# ---------------------------------------------------------------------------
# System-wide settings
# ---------------------------------------------------------------------------

def get_system_setting(setting_key: str) -> str | None:
    conn = _get_conn()
    row = conn.execute(
        "SELECT setting_value FROM system_ai_config WHERE setting_key = ?",
        (setting_key,),
    ).fetchone()
    if not row:
        return None
    return row["setting_value"]


def set_system_setting(setting_key: str, setting_value: str):
    conn = _get_conn()
    conn.execute(
        """INSERT INTO system_ai_config (setting_key, setting_value)
           VALUES (?, ?)
           ON CONFLICT(setting_key) DO UPDATE SET
               setting_value = excluded.setting_value,
               updated_at = datetime('now', 'localtime')""",
        (setting_key, setting_value),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Per-caller keys
# ---------------------------------------------------------------------------

def get_user_api_key(user_id: str, service: str) -> str | None:
    conn = _get_conn()
    row = conn.execute(
        "SELECT api_key FROM user_api_keys WHERE user_id = ? AND service = ?",
        (user_id, service),
    ).fetchone()
    if not row:
        return None
    return row["api_key"]


def save_user_api_key(user_id: str, service: str, api_key: str):
    conn = _get_conn()
    conn.execute(
        """INSERT INTO user_api_keys (user_id, service, api_key)
           VALUES (?, ?, ?)
           ON CONFLICT(user_id, service) DO UPDATE SET
               api_key = excluded.api_key,
               updated_at = datetime('now', 'localtime')""",
        (user_id, service, api_key),
    )
    conn.commit()


def delete_user_api_key(user_id: str, service: str) -> bool:
    conn = _get_conn()
    cursor = conn.execute(
        "DELETE FROM user_api_keys WHERE user_id = ? AND service = ?",
        (user_id, service),
    )
    conn.commit()
    return cursor.rowcount > 0


class SqliteSystemConfigStore:
    """System-wide config table as seen by the credential resolver."""

    def get(self, setting_key: str) -> str | None:
        return get_system_setting(setting_key)


class SqliteUserKeyStore:
    """Per-caller key table as seen by the credential resolver."""

    def get(self, caller_id: str, service: str) -> str | None:
        return get_user_api_key(caller_id, service)
