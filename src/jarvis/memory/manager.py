"""Memory manager enforcing profile, retention and fact invariants."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .models import ConversationTurn, MemoryStats, Platform, Role, UserProfile
from .store import PersistenceError, ProfileStore

logger = logging.getLogger(__name__)

MAX_FACTS = 50
HISTORY_LIMIT = 20


class MemoryManager:
    """Correctness layer over a ProfileStore.

    Every write path first ensures a profile exists. Persistence failures are
    logged and degrade to empty reads or dropped writes so that a reply is
    never blocked by storage.
    """

    def __init__(
        self,
        store: ProfileStore,
        max_facts: int = MAX_FACTS,
        max_stored_turns: int | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            store: The store for persistence.
            max_facts: Cap on facts kept per user, oldest dropped first.
            max_stored_turns: Optional cap on turns kept on disk per user.
                None keeps the full log.
        """
        self.store = store
        self.max_facts = max_facts
        self.max_stored_turns = max_stored_turns

    def ensure_profile(
        self, user_id: str, platform: Platform, name: str | None = None
    ) -> UserProfile:
        """Get or create the profile, recording the display name when known."""
        try:
            profile = self.store.create_profile(user_id, platform)
            if name and name != profile.name:
                self.store.set_name(user_id, name)
                profile.name = name
            return profile
        except PersistenceError as e:
            logger.warning("Could not load profile for %s: %s", user_id, e)
            return UserProfile(user_id=user_id, platform=Platform(platform), name=name)

    def get_profile(self, user_id: str) -> UserProfile | None:
        try:
            return self.store.get_profile(user_id)
        except PersistenceError as e:
            logger.warning("Could not read profile for %s: %s", user_id, e)
            return None

    def record_turn(
        self,
        user_id: str,
        platform: Platform,
        role: Role,
        content: str,
        create: bool = True,
    ) -> ConversationTurn | None:
        """Append a turn to the user's log.

        Args:
            create: Create the profile if missing. With False, a turn for a
                user without a profile (e.g. purged meanwhile) is dropped.

        Returns:
            The stored turn, or None if it could not be persisted.
        """
        if create:
            self.ensure_profile(user_id, platform)
        try:
            turn = self.store.append_turn(user_id, role, content)
            if self.max_stored_turns is not None:
                self.store.trim_turns(user_id, self.max_stored_turns)
            return turn
        except (PersistenceError, KeyError) as e:
            logger.warning(
                "Could not record %s turn for %s: %s", Role(role).value, user_id, e
            )
            return None

    def recent_turns(
        self, user_id: str, limit: int = HISTORY_LIMIT
    ) -> list[ConversationTurn]:
        """Get at most `limit` most recent turns in chronological order."""
        try:
            turns = self.store.list_recent_turns(user_id, limit)
        except PersistenceError as e:
            logger.warning("Could not read history for %s: %s", user_id, e)
            return []
        turns = sorted(turns, key=lambda t: t.timestamp)
        return turns[-limit:] if limit > 0 else []

    def add_fact(self, user_id: str, fact: str, source: str = "auto") -> bool:
        """Add a fact if new, keeping only the newest `max_facts`.

        Returns:
            True if the fact was inserted.
        """
        fact = fact.strip()
        if not fact:
            return False
        try:
            inserted = self.store.add_fact(user_id, fact, source)
            if inserted:
                self.store.trim_facts(user_id, self.max_facts)
            return inserted
        except (PersistenceError, KeyError) as e:
            logger.warning("Could not add fact for %s: %s", user_id, e)
            return False

    def add_facts(
        self, user_id: str, facts: Iterable[str], source: str = "auto"
    ) -> list[str]:
        """Add several facts in order. Returns the ones that were new."""
        return [fact.strip() for fact in facts if self.add_fact(user_id, fact, source)]

    def set_summary(self, user_id: str, summary: str) -> None:
        try:
            self.store.set_summary(user_id, summary)
        except (PersistenceError, KeyError) as e:
            logger.warning("Could not update summary for %s: %s", user_id, e)

    def set_name(self, user_id: str, name: str) -> None:
        try:
            self.store.set_name(user_id, name)
        except (PersistenceError, KeyError) as e:
            logger.warning("Could not update name for %s: %s", user_id, e)

    def purge_user(self, user_id: str) -> bool:
        """Delete everything stored about a user.

        Returns:
            True if the user existed.
        """
        try:
            return self.store.purge_user(user_id)
        except PersistenceError as e:
            logger.error("Could not purge %s: %s", user_id, e)
            return False

    def stats(self) -> MemoryStats:
        """Aggregate counters, zero where the store cannot be read."""
        try:
            return MemoryStats(
                users=self.store.count_users(),
                turns=self.store.count_turns(),
                facts=self.store.count_facts(),
            )
        except PersistenceError as e:
            logger.warning("Could not read store counters: %s", e)
            return MemoryStats(users=0, turns=0, facts=0)
