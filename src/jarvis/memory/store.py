"""Persistent storage for user profiles, conversation turns and facts."""

import sqlite3
import time
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from .models import ConversationTurn, Fact, Platform, Role, UserProfile


class PersistenceError(Exception):
    """Raised when the underlying storage cannot be read or written."""


class ProfileStore(ABC):
    """Durable mapping from user id to profile, turn log and facts.

    Every mutation is applied as a single atomic unit. Operations on a user
    without a profile raise KeyError; I/O failures raise PersistenceError.
    """

    @abstractmethod
    def init(self) -> None:
        """Prepare the storage. Safe to call more than once."""
        ...

    @abstractmethod
    def get_profile(self, user_id: str) -> UserProfile | None:
        """Get a profile with its facts attached, or None if unknown."""
        ...

    @abstractmethod
    def create_profile(self, user_id: str, platform: Platform) -> UserProfile:
        """Get or create the profile for user_id."""
        ...

    @abstractmethod
    def append_turn(self, user_id: str, role: Role, content: str) -> ConversationTurn:
        """Append a turn, touch last_seen and count user-authored turns."""
        ...

    @abstractmethod
    def list_recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        """Get at most `limit` most recent turns, oldest first."""
        ...

    @abstractmethod
    def trim_turns(self, user_id: str, keep: int) -> int:
        """Drop the oldest turns beyond `keep`. Returns how many were dropped."""
        ...

    @abstractmethod
    def add_fact(self, user_id: str, fact: str, source: str = "auto") -> bool:
        """Add a fact unless the exact text is already stored.

        Returns:
            True if the fact was new.
        """
        ...

    @abstractmethod
    def list_facts(self, user_id: str) -> list[Fact]:
        """Get facts in insertion order."""
        ...

    @abstractmethod
    def trim_facts(self, user_id: str, keep: int) -> int:
        """Drop the oldest facts beyond `keep`. Returns how many were dropped."""
        ...

    @abstractmethod
    def set_summary(self, user_id: str, summary: str) -> None: ...

    @abstractmethod
    def set_name(self, user_id: str, name: str) -> None: ...

    @abstractmethod
    def purge_user(self, user_id: str) -> bool:
        """Delete profile, turns and facts. Returns True if the user existed."""
        ...

    @abstractmethod
    def count_users(self) -> int: ...

    @abstractmethod
    def count_turns(self) -> int: ...

    @abstractmethod
    def count_facts(self) -> int: ...

    def close(self) -> None:
        """Release any held resources."""


class SQLiteStore(ProfileStore):
    """Store backed by a local SQLite database.

    Facts are deduplicated by a UNIQUE(user_id, text) constraint; turns are
    ordered by their autoincrement id.
    """

    def __init__(self, db_path: Path) -> None:
        """Initialize the store with a database path.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection."""
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction, wrapping sqlite errors."""
        try:
            conn = self._get_connection()
            with conn:
                yield conn
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"{action} failed: {e}") from e

    def init(self) -> None:
        """Create the tables if they don't exist."""
        with self._transaction("init") as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS profiles (
                    user_id       TEXT PRIMARY KEY,
                    platform      TEXT NOT NULL,
                    name          TEXT,
                    summary       TEXT NOT NULL DEFAULT '',
                    message_count INTEGER NOT NULL DEFAULT 0,
                    first_seen    REAL NOT NULL,
                    last_seen     REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS turns (
                    id        INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id   TEXT NOT NULL REFERENCES profiles(user_id) ON DELETE CASCADE,
                    role      TEXT NOT NULL,
                    content   TEXT NOT NULL,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS facts (
                    id         INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id    TEXT NOT NULL REFERENCES profiles(user_id) ON DELETE CASCADE,
                    text       TEXT NOT NULL,
                    source     TEXT NOT NULL DEFAULT 'auto',
                    created_at REAL NOT NULL,
                    UNIQUE(user_id, text)
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_turns_user ON turns(user_id, id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_facts_user ON facts(user_id, id)")

    def _require_profile(self, conn: sqlite3.Connection, user_id: str) -> sqlite3.Row:
        row = conn.execute(
            "SELECT * FROM profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise KeyError(user_id)
        return row

    def get_profile(self, user_id: str) -> UserProfile | None:
        with self._transaction("get_profile") as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE user_id = ?", (user_id,)
            ).fetchone()
            if row is None:
                return None
            facts = conn.execute(
                "SELECT text FROM facts WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        profile = self._row_to_profile(row)
        profile.facts = [f["text"] for f in facts]
        return profile

    def create_profile(self, user_id: str, platform: Platform) -> UserProfile:
        now = time.time()
        with self._transaction("create_profile") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO profiles (user_id, platform, first_seen, last_seen)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, Platform(platform).value, now, now),
            )
        profile = self.get_profile(user_id)
        assert profile is not None
        return profile

    def append_turn(self, user_id: str, role: Role, content: str) -> ConversationTurn:
        role = Role(role)
        with self._transaction("append_turn") as conn:
            row = self._require_profile(conn, user_id)
            # Clamp so timestamps never go backwards within a user's log
            timestamp = max(time.time(), row["last_seen"])
            conn.execute(
                "INSERT INTO turns (user_id, role, content, timestamp) VALUES (?, ?, ?, ?)",
                (user_id, role.value, content, timestamp),
            )
            conn.execute(
                """
                UPDATE profiles
                SET last_seen = ?, message_count = message_count + ?
                WHERE user_id = ?
                """,
                (timestamp, 1 if role == Role.USER else 0, user_id),
            )
        return ConversationTurn(
            user_id=user_id, role=role, content=content, timestamp=timestamp
        )

    def list_recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        with self._transaction("list_recent_turns") as conn:
            rows = conn.execute(
                """
                SELECT user_id, role, content, timestamp FROM turns
                WHERE user_id = ? ORDER BY id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_turn(row) for row in reversed(rows)]

    def trim_turns(self, user_id: str, keep: int) -> int:
        return self._trim("turns", user_id, keep)

    def add_fact(self, user_id: str, fact: str, source: str = "auto") -> bool:
        with self._transaction("add_fact") as conn:
            self._require_profile(conn, user_id)
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO facts (user_id, text, source, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (user_id, fact, source, time.time()),
            )
        return cursor.rowcount > 0

    def list_facts(self, user_id: str) -> list[Fact]:
        with self._transaction("list_facts") as conn:
            rows = conn.execute(
                "SELECT text, source, created_at FROM facts WHERE user_id = ? ORDER BY id",
                (user_id,),
            ).fetchall()
        return [
            Fact(text=row["text"], source=row["source"], created_at=row["created_at"])
            for row in rows
        ]

    def trim_facts(self, user_id: str, keep: int) -> int:
        return self._trim("facts", user_id, keep)

    def _trim(self, table: str, user_id: str, keep: int) -> int:
        """Delete rows of `table` for user_id beyond the `keep` newest."""
        with self._transaction(f"trim_{table}") as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM {table}
                WHERE user_id = ? AND id NOT IN (
                    SELECT id FROM {table} WHERE user_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (user_id, user_id, max(keep, 0)),
            )
        return cursor.rowcount

    def set_summary(self, user_id: str, summary: str) -> None:
        self._update_profile("summary", user_id, summary)

    def set_name(self, user_id: str, name: str) -> None:
        self._update_profile("name", user_id, name)

    def _update_profile(self, column: str, user_id: str, value: str) -> None:
        with self._transaction(f"set_{column}") as conn:
            cursor = conn.execute(
                f"UPDATE profiles SET {column} = ? WHERE user_id = ?", (value, user_id)
            )
            if cursor.rowcount == 0:
                raise KeyError(user_id)

    def purge_user(self, user_id: str) -> bool:
        with self._transaction("purge_user") as conn:
            conn.execute("DELETE FROM turns WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM facts WHERE user_id = ?", (user_id,))
            cursor = conn.execute("DELETE FROM profiles WHERE user_id = ?", (user_id,))
        return cursor.rowcount > 0

    def count_users(self) -> int:
        return self._count("profiles")

    def count_turns(self) -> int:
        return self._count("turns")

    def count_facts(self) -> int:
        return self._count("facts")

    def _count(self, table: str) -> int:
        with self._transaction(f"count_{table}") as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _row_to_profile(self, row: sqlite3.Row) -> UserProfile:
        """Convert a database row to a UserProfile (without facts)."""
        return UserProfile(
            user_id=row["user_id"],
            platform=Platform(row["platform"]),
            name=row["name"],
            summary=row["summary"],
            message_count=row["message_count"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
        )

    def _row_to_turn(self, row: sqlite3.Row) -> ConversationTurn:
        """Convert a database row to a ConversationTurn."""
        return ConversationTurn(
            user_id=row["user_id"],
            role=Role(row["role"]),
            content=row["content"],
            timestamp=row["timestamp"],
        )
