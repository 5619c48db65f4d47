"""Fact extraction from conversations using the LLM."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING

from ..background import BackgroundTasks
from ..llm import CompletionService, ServiceError
from .manager import HISTORY_LIMIT, MemoryManager
from .models import ConversationTurn, ExtractionFailure, ExtractionResult

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from ..notify import NotificationSink

logger = logging.getLogger(__name__)

EXTRACTION_INTERVAL = 10
MIN_TURNS_FOR_EXTRACTION = 5
EXTRACTION_MAX_TOKENS = 500

# ```lang ... ``` on one line or several; the closing fence may be missing
CODE_FENCE = re.compile(r"^```[\w-]*\s*(.*?)\s*(?:```)?$", re.DOTALL)

EXTRACTION_PROMPT = """Analyze this conversation and extract durable facts about the user that are worth remembering for future conversations, plus a short summary of the conversation so far.

Return ONLY a JSON object, with no other text:
{{"facts": ["<fact>", ...], "summary": "<summary>"}}

Rules:
- Only stable facts (job, location, projects, preferences, people), not passing moods
- Write each fact as a short third-person sentence, e.g. "Works at the Denver warehouse"
- Do not repeat facts that are already known
- If there are no new facts, return an empty "facts" list

Already known facts:
{known_facts}

Conversation:
{conversation}"""


def should_extract(message_count: int, window_size: int) -> bool:
    """Decide whether an extraction cycle is due.

    Runs on every positive multiple of EXTRACTION_INTERVAL user turns, and
    only when the recent-history window holds enough turns to analyze.
    """
    return (
        message_count != 0
        and message_count % EXTRACTION_INTERVAL == 0
        and window_size >= MIN_TURNS_FOR_EXTRACTION
    )


def format_conversation(turns: Sequence[ConversationTurn]) -> str:
    """Render turns as `role: content` lines."""
    return "\n".join(f"{turn.role.value}: {turn.content}" for turn in turns)


def build_extraction_prompt(
    existing_facts: Sequence[str], turns: Sequence[ConversationTurn]
) -> str:
    known = "\n".join(f"- {fact}" for fact in existing_facts) or "(none)"
    return EXTRACTION_PROMPT.format(
        known_facts=known, conversation=format_conversation(turns)
    )


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code block, if any."""
    match = CODE_FENCE.match(text)
    return match.group(1).strip() if match else text


def parse_extraction(content: str) -> ExtractionResult | ExtractionFailure:
    """Parse the LLM response into facts and summary.

    Never raises: anything that is not a JSON object with a list of string
    facts (and, optionally, a string summary) is reported as a failure.
    """
    text = _strip_code_fence(content.strip())

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        return ExtractionFailure(reason=f"invalid JSON: {e}", raw=content)

    if not isinstance(data, dict):
        return ExtractionFailure(reason="response is not a JSON object", raw=content)

    facts = data.get("facts")
    if not isinstance(facts, list):
        return ExtractionFailure(reason="missing 'facts' list", raw=content)
    if not all(isinstance(fact, str) for fact in facts):
        return ExtractionFailure(reason="'facts' must contain only strings", raw=content)

    summary = data.get("summary", "")
    if summary is None:
        summary = ""
    if not isinstance(summary, str):
        return ExtractionFailure(reason="'summary' must be a string", raw=content)

    return ExtractionResult(facts=facts, summary=summary.strip())


class FactExtractor:
    """Periodically distills recent history into facts and a summary."""

    def __init__(
        self,
        llm: CompletionService,
        memory: MemoryManager,
        notifier: NotificationSink | None = None,
        event_log: JSONLLogger | None = None,
        timeout: float = 60.0,
        background: BackgroundTasks | None = None,
    ) -> None:
        """Initialize the extractor.

        Args:
            llm: The completion service used for the analysis call.
            memory: Manager the results are merged into.
            notifier: Optional sink told about newly learned facts.
            event_log: Optional structured event log.
            timeout: Seconds to wait for the analysis call.
            background: Task set used by schedule().
        """
        self.llm = llm
        self.memory = memory
        self.notifier = notifier
        self.event_log = event_log
        self.timeout = timeout
        self.background = background or BackgroundTasks()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def get_lock(self, user_id: str) -> asyncio.Lock:
        """Get the lock serializing extraction runs for a user."""
        if user_id not in self._locks:
            self._locks[user_id] = asyncio.Lock()
        return self._locks[user_id]

    def _release_lock(self, user_id: str) -> None:
        """Forget the user's lock once no run holds or awaits it."""
        remaining = self._lock_users.get(user_id, 1) - 1
        if remaining > 0:
            self._lock_users[user_id] = remaining
            return
        self._lock_users.pop(user_id, None)
        self._locks.pop(user_id, None)

    def schedule(self, user_id: str) -> asyncio.Task:
        """Run maybe_extract in the background without waiting for it."""
        return self.background.spawn(
            self.maybe_extract(user_id), name=f"extract:{user_id}"
        )

    async def maybe_extract(self, user_id: str) -> list[str]:
        """Run an extraction cycle for the user if one is due.

        Returns:
            Newly added facts; empty when skipped or on any failure.
        """
        lock = self.get_lock(user_id)
        self._lock_users[user_id] = self._lock_users.get(user_id, 0) + 1
        try:
            async with lock:
                added = await self._extract(user_id)
        finally:
            self._release_lock(user_id)

        if added and self.notifier:
            lines = "\n".join(f"• {fact}" for fact in added)
            await self.notifier.notify("facts", f"New facts about {user_id}:\n{lines}")

        return added

    async def _extract(self, user_id: str) -> list[str]:
        profile = self.memory.get_profile(user_id)
        if profile is None:
            return []

        turns = self.memory.recent_turns(user_id, HISTORY_LIMIT)
        if not should_extract(profile.message_count, len(turns)):
            due = should_extract(profile.message_count, MIN_TURNS_FOR_EXTRACTION)
            if due and self.event_log:
                self.event_log.log(
                    "extraction_skipped", user_id=user_id, turns=len(turns)
                )
            return []

        start_time = time.time()
        prompt = build_extraction_prompt(profile.facts, turns)

        try:
            content = await asyncio.wait_for(
                self.llm.complete(
                    None,
                    [{"role": "user", "content": prompt}],
                    EXTRACTION_MAX_TOKENS,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            return self._fail(user_id, f"timed out after {self.timeout}s", start_time)
        except ServiceError as e:
            return self._fail(user_id, str(e), start_time)

        parsed = parse_extraction(content)
        if isinstance(parsed, ExtractionFailure):
            return self._fail(user_id, parsed.reason, start_time)

        added = self.memory.add_facts(user_id, parsed.facts, source="auto")
        if parsed.summary:
            self.memory.set_summary(user_id, parsed.summary)

        duration_ms = (time.time() - start_time) * 1000
        logger.info("Learned %d new fact(s) about %s", len(added), user_id)
        if self.event_log:
            self.event_log.log_extraction(
                user_id, added=len(added), duration_ms=duration_ms
            )
        return added

    def _fail(self, user_id: str, reason: str, start_time: float) -> list[str]:
        logger.warning("Fact extraction for %s aborted: %s", user_id, reason)
        if self.event_log:
            self.event_log.log_extraction(
                user_id,
                error=reason,
                duration_ms=(time.time() - start_time) * 1000,
            )
        return []
