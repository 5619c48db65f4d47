"""Flat-file JSON store.

The whole store stays resident in memory and every mutation is written
through to a per-user JSON file using an atomic replace, so a file on disk
is never half-written.
"""

import copy
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable
from urllib.parse import quote

from .models import ConversationTurn, Fact, Platform, Role, UserProfile
from .store import PersistenceError, ProfileStore

logger = logging.getLogger(__name__)

Record = dict[str, Any]


class JSONStore(ProfileStore):
    """Store keeping one JSON document per user under a directory."""

    def __init__(self, data_dir: Path) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory holding the per-user JSON files.
        """
        self.data_dir = data_dir
        self._records: dict[str, Record] = {}
        self._lock = threading.Lock()
        self._loaded = False

    def _user_file(self, user_id: str) -> Path:
        """Get the file path for a user."""
        return self.data_dir / f"{quote(user_id, safe='')}.json"

    def init(self) -> None:
        """Load every user file into memory."""
        with self._lock:
            if self._loaded:
                return
            try:
                self.data_dir.mkdir(parents=True, exist_ok=True)
                paths = sorted(self.data_dir.glob("*.json"))
            except OSError as e:
                raise PersistenceError(f"init failed: {e}") from e

            for path in paths:
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        record = json.load(f)
                    self._records[record["profile"]["user_id"]] = record
                except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning("Skipping unreadable user file %s: %s", path, e)
            self._loaded = True

    def _save(self, user_id: str, record: Record) -> None:
        """Atomic write: write to a temp file, then os.replace."""
        path = self._user_file(user_id)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
        except OSError as e:
            raise PersistenceError(f"write for {user_id} failed: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(record, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise PersistenceError(f"write for {user_id} failed: {e}") from e

    def _mutate(self, user_id: str, change: Callable[[Record], Any]) -> Any:
        """Apply `change` to a copy of the user's record and commit it.

        The in-memory record is replaced only after the file was written.
        """
        with self._lock:
            current = self._records.get(user_id)
            if current is None:
                raise KeyError(user_id)
            updated = copy.deepcopy(current)
            result = change(updated)
            self._save(user_id, updated)
            self._records[user_id] = updated
            return result

    def get_profile(self, user_id: str) -> UserProfile | None:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return None
            profile = UserProfile.from_dict(record["profile"])
            profile.facts = [f["text"] for f in record["facts"]]
            return profile

    def create_profile(self, user_id: str, platform: Platform) -> UserProfile:
        with self._lock:
            if user_id not in self._records:
                now = time.time()
                profile = UserProfile(
                    user_id=user_id,
                    platform=Platform(platform),
                    first_seen=now,
                    last_seen=now,
                )
                record = {"profile": profile.to_dict(), "turns": [], "facts": []}
                self._save(user_id, record)
                self._records[user_id] = record
        profile = self.get_profile(user_id)
        assert profile is not None
        return profile

    def append_turn(self, user_id: str, role: Role, content: str) -> ConversationTurn:
        role = Role(role)

        def change(record: Record) -> ConversationTurn:
            profile = record["profile"]
            timestamp = max(time.time(), profile["last_seen"])
            record["turns"].append(
                {"role": role.value, "content": content, "timestamp": timestamp}
            )
            profile["last_seen"] = timestamp
            if role == Role.USER:
                profile["message_count"] += 1
            return ConversationTurn(
                user_id=user_id, role=role, content=content, timestamp=timestamp
            )

        return self._mutate(user_id, change)

    def list_recent_turns(self, user_id: str, limit: int) -> list[ConversationTurn]:
        if limit <= 0:
            return []
        with self._lock:
            record = self._records.get(user_id)
            turns = record["turns"][-limit:] if record else []
            return [
                ConversationTurn(
                    user_id=user_id,
                    role=Role(t["role"]),
                    content=t["content"],
                    timestamp=t["timestamp"],
                )
                for t in turns
            ]

    def trim_turns(self, user_id: str, keep: int) -> int:
        return self._trim("turns", user_id, keep)

    def add_fact(self, user_id: str, fact: str, source: str = "auto") -> bool:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                raise KeyError(user_id)
            if any(f["text"] == fact for f in record["facts"]):
                return False

        def change(record: Record) -> bool:
            if any(f["text"] == fact for f in record["facts"]):
                return False
            record["facts"].append(
                {"text": fact, "source": source, "created_at": time.time()}
            )
            return True

        return self._mutate(user_id, change)

    def list_facts(self, user_id: str) -> list[Fact]:
        with self._lock:
            record = self._records.get(user_id)
            if record is None:
                return []
            return [
                Fact(text=f["text"], source=f["source"], created_at=f["created_at"])
                for f in record["facts"]
            ]

    def trim_facts(self, user_id: str, keep: int) -> int:
        return self._trim("facts", user_id, keep)

    def _trim(self, key: str, user_id: str, keep: int) -> int:
        keep = max(keep, 0)
        with self._lock:
            record = self._records.get(user_id)
            if record is None or len(record[key]) <= keep:
                return 0

        def change(record: Record) -> int:
            dropped = max(len(record[key]) - keep, 0)
            record[key] = record[key][dropped:]
            return dropped

        return self._mutate(user_id, change)

    def set_summary(self, user_id: str, summary: str) -> None:
        self._mutate(user_id, lambda record: record["profile"].update(summary=summary))

    def set_name(self, user_id: str, name: str) -> None:
        self._mutate(user_id, lambda record: record["profile"].update(name=name))

    def purge_user(self, user_id: str) -> bool:
        with self._lock:
            path = self._user_file(user_id)
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise PersistenceError(f"purge for {user_id} failed: {e}") from e
            return self._records.pop(user_id, None) is not None

    def count_users(self) -> int:
        with self._lock:
            return len(self._records)

    def count_turns(self) -> int:
        with self._lock:
            return sum(len(r["turns"]) for r in self._records.values())

    def count_facts(self) -> int:
        with self._lock:
            return sum(len(r["facts"]) for r in self._records.values())
