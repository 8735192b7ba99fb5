from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from loguru import logger

from micro_x_chat.errors import IoError, SessionNotFoundError
from micro_x_chat.memory.models import (
    Session,
    dump_metadata,
    message_from_row,
    message_to_row,
    session_from_row,
    session_to_row,
    to_timestamp,
)
from micro_x_chat.messages import Message, utc_now

# Ordered migrations; index i upgrades the schema from version i to i + 1.
_MIGRATIONS: list[str] = [
    """
    CREATE INDEX IF NOT EXISTS idx_messages_session_id ON messages(session_id);
    CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
    CREATE INDEX IF NOT EXISTS idx_sessions_created_at ON sessions(created_at);
    CREATE INDEX IF NOT EXISTS idx_sessions_updated_at ON sessions(updated_at);
    CREATE INDEX IF NOT EXISTS idx_sessions_parent_session_id ON sessions(parent_session_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_role ON messages(role);
    """,
]

SCHEMA_VERSION = len(_MIGRATIONS)

_UPDATABLE_FIELDS = {
    "title",
    "parent_session_id",
    "message_count",
    "total_input_tokens",
    "total_output_tokens",
    "total_cost",
    "metadata",
}


class SessionStore:
    """SQLite persistence for sessions and messages.

    Every call is synchronous and serialized on one connection; async callers
    run these methods on a worker thread.
    """

    def __init__(self, db_path: str, *, foreign_keys: bool = True):
        self._db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._foreign_keys = foreign_keys
        try:
            self._conn = sqlite3.connect(db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._configure_connection()
            self._initialize_schema()
            self._migrate()
        except sqlite3.Error as ex:
            raise IoError(f"Failed to open session database {db_path}: {ex}", cause=ex) from ex

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def foreign_keys_enabled(self) -> bool:
        return self._foreign_keys

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _configure_connection(self) -> None:
        self._conn.execute(f"PRAGMA foreign_keys = {'ON' if self._foreign_keys else 'OFF'}")
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA cache_size = 1000")
        self._conn.execute("PRAGMA temp_store = memory")

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                parent_session_id TEXT NULL REFERENCES sessions(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                message_count INTEGER DEFAULT 0,
                total_input_tokens INTEGER DEFAULT 0,
                total_output_tokens INTEGER DEFAULT 0,
                total_cost REAL DEFAULT 0,
                metadata TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                metadata TEXT NULL
            );

            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );
            """
        )
        row = self._conn.execute("SELECT COUNT(*) AS c FROM schema_version").fetchone()
        if int(row["c"]) == 0:
            self._conn.execute("INSERT INTO schema_version (version) VALUES (0)")
        self._conn.commit()

    def _migrate(self) -> None:
        version = self.schema_version()
        if version > SCHEMA_VERSION:
            logger.info(f"Session database schema version {version} is newer than {SCHEMA_VERSION}; leaving as is")
            return
        for target in range(version + 1, SCHEMA_VERSION + 1):
            logger.info(f"Migrating session database to schema version {target}")
            self._conn.executescript(_MIGRATIONS[target - 1])
            self._conn.execute("UPDATE schema_version SET version = ?", (target,))
            self._conn.commit()

    def schema_version(self) -> int:
        row = self._conn.execute("SELECT MAX(version) AS v FROM schema_version").fetchone()
        return int(row["v"] or 0)

    # Low-level access

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as ex:
                self._conn.rollback()
                raise IoError(str(ex), cause=ex) from ex
            except BaseException:
                self._conn.rollback()
                raise

    def _fetchall(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(query, params).fetchall()
            except sqlite3.Error as ex:
                raise IoError(str(ex), cause=ex) from ex

    def _fetchone(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Row | None:
        rows = self._fetchall(query, params)
        return rows[0] if rows else None

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self.transaction() as conn:
            return conn.execute(query, params).fetchall()

    # Sessions

    def insert_session(self, session: Session) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (
                    id, title, parent_session_id, created_at, updated_at, message_count,
                    total_input_tokens, total_output_tokens, total_cost, metadata
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                session_to_row(session),
            )

    def update_session(self, session_id: str, **fields: Any) -> datetime | None:
        """Partial update: only the given columns change; updated_at is always refreshed.

        ``metadata`` takes a dict (or None to clear). Returns the new updated_at,
        or None if no row matched.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown session fields: {', '.join(sorted(unknown))}")

        now = utc_now()
        assignments = ["updated_at = ?"]
        params: list[Any] = [to_timestamp(now)]
        for name, value in fields.items():
            if name == "metadata":
                value = dump_metadata(value or {})
            assignments.append(f"{name} = ?")
            params.append(value)
        params.append(session_id)

        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
                tuple(params),
            )
            return now if cursor.rowcount > 0 else None

    def get_session(self, session_id: str) -> Session | None:
        row = self._fetchone("SELECT * FROM sessions WHERE id = ? LIMIT 1", (session_id,))
        return session_from_row(row) if row is not None else None

    def list_sessions(self, limit: int | None = None) -> list[Session]:
        query = "SELECT * FROM sessions ORDER BY updated_at DESC, created_at DESC"
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (max(0, limit),)
        return [session_from_row(row) for row in self._fetchall(query, params)]

    def delete_session(self, session_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cursor.rowcount > 0

    def session_exists(self, session_id: str) -> bool:
        return self._fetchone("SELECT 1 FROM sessions WHERE id = ? LIMIT 1", (session_id,)) is not None

    def get_or_create_session(self, session_id: str, title: str) -> Session:
        with self._lock:
            existing = self.get_session(session_id)
            if existing is not None:
                return existing
            session = Session(id=session_id, title=title)
            self.insert_session(session)
            return session

    # Messages

    def insert_message(self, message: Message, session_id: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                message_to_row(message, session_id),
            )

    def append_message(self, message: Message, session_id: str) -> datetime:
        """Bump the session's message_count and insert ``message`` in one transaction.

        Raises ``SessionNotFoundError`` without writing anything if the session is missing.
        """
        now = utc_now()
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE sessions SET message_count = message_count + 1, updated_at = ? WHERE id = ?",
                (to_timestamp(now), session_id),
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(session_id)
            conn.execute(
                """
                INSERT INTO messages (id, session_id, role, content, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                message_to_row(message, session_id),
            )
        return now

    def get_messages(self, session_id: str, limit: int | None = None) -> list[Message]:
        """Messages of a session in timestamp order; with ``limit``, the most recent ones."""
        if limit is None:
            rows = self._fetchall(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY timestamp ASC, rowid ASC",
                (session_id,),
            )
        else:
            rows = self._fetchall(
                """
                SELECT * FROM (
                    SELECT *, rowid AS seq FROM messages WHERE session_id = ?
                    ORDER BY timestamp DESC, rowid DESC LIMIT ?
                )
                ORDER BY timestamp ASC, seq ASC
                """,
                (session_id, max(0, limit)),
            )
        return [message_from_row(row) for row in rows]

    def delete_messages(self, session_id: str) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM messages WHERE session_id = ?", (session_id,)).rowcount

    def count_messages(self, session_id: str) -> int:
        row = self._fetchone("SELECT COUNT(*) AS c FROM messages WHERE session_id = ?", (session_id,))
        return int(row["c"]) if row is not None else 0

    # Maintenance

    def set_foreign_keys(self, enabled: bool) -> None:
        with self._lock:
            self._conn.execute(f"PRAGMA foreign_keys = {'ON' if enabled else 'OFF'}")
            self._foreign_keys = enabled

    def clean_orphaned_messages(self) -> int:
        if self._foreign_keys:
            return 0
        with self.transaction() as conn:
            removed = conn.execute(
                "DELETE FROM messages WHERE session_id NOT IN (SELECT id FROM sessions)"
            ).rowcount
        if removed:
            logger.warning(f"Removed {removed} orphaned message(s)")
        return removed

    def vacuum(self) -> None:
        with self._lock:
            try:
                self._conn.execute("VACUUM")
            except sqlite3.Error as ex:
                raise IoError(str(ex), cause=ex) from ex

    def get_stats(self) -> dict:
        sessions = self._fetchone("SELECT COUNT(*) AS c FROM sessions")
        messages = self._fetchone("SELECT COUNT(*) AS c FROM messages")
        size = self._fetchone(
            "SELECT page_count * page_size AS size FROM pragma_page_count(), pragma_page_size()"
        )
        return {
            "session_count": int(sessions["c"]) if sessions else 0,
            "message_count": int(messages["c"]) if messages else 0,
            "database_size_bytes": int(size["size"]) if size else 0,
            "foreign_keys_enabled": self._foreign_keys,
        }
