"""Tests for FactExtractor."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, Mock

import pytest

from jarvis.llm import ServiceError
from jarvis.memory import (
    ConversationTurn,
    ExtractionFailure,
    ExtractionResult,
    FactExtractor,
    MemoryManager,
    Platform,
    Role,
    SQLiteStore,
    parse_extraction,
    should_extract,
)
from jarvis.memory.extractor import build_extraction_prompt, format_conversation

DANA_RESULT = '{"facts":["Works at Denver warehouse"],"summary":"Dana manages logistics."}'


@pytest.fixture
def store(tmp_path: Path) -> SQLiteStore:
    store = SQLiteStore(tmp_path / "test_memory.db")
    store.init()
    yield store
    store.close()


@pytest.fixture
def memory(store: SQLiteStore) -> MemoryManager:
    return MemoryManager(store)


@pytest.fixture
def llm() -> AsyncMock:
    """A completion service returning the Dana extraction result."""
    llm = AsyncMock()
    llm.complete = AsyncMock(return_value=DANA_RESULT)
    return llm


@pytest.fixture
def extractor(llm: AsyncMock, memory: MemoryManager) -> FactExtractor:
    return FactExtractor(llm, memory)


def seed_conversation(memory: MemoryManager, user_turns: int) -> None:
    """Record `user_turns` user messages, each followed by a reply."""
    for i in range(user_turns):
        memory.record_turn("u1", Platform.TELEGRAM, Role.USER, f"question {i}")
        memory.record_turn("u1", Platform.TELEGRAM, Role.ASSISTANT, f"answer {i}")


class TestShouldExtract:
    """Tests for the extraction trigger."""

    def test_fires_on_multiples_of_ten(self):
        fired = [n for n in range(1, 31) if should_extract(n, 20)]
        assert fired == [10, 20, 30]

    def test_never_at_zero(self):
        assert should_extract(0, 20) is False

    def test_needs_five_turns(self):
        assert should_extract(10, 4) is False
        assert should_extract(10, 5) is True


class TestParseExtraction:
    """Tests for strict parsing of the extraction response."""

    def test_valid(self):
        result = parse_extraction(DANA_RESULT)
        assert result == ExtractionResult(
            facts=["Works at Denver warehouse"], summary="Dana manages logistics."
        )

    def test_whitespace_trimmed(self):
        result = parse_extraction(f"\n  {DANA_RESULT}  \n")
        assert isinstance(result, ExtractionResult)

    def test_markdown_code_block_stripped(self):
        result = parse_extraction(f"```json\n{DANA_RESULT}\n```")
        assert isinstance(result, ExtractionResult)
        assert result.facts == ["Works at Denver warehouse"]

    @pytest.mark.parametrize(
        "content",
        [
            '```{"facts": ["a"]}```',
            '```json {"facts": ["a"]} ```',
            '```\n{"facts": ["a"]}\n```',
            '```json\n{"facts": ["a"]}',
        ],
    )
    def test_code_fence_variants(self, content: str):
        assert parse_extraction(content) == ExtractionResult(facts=["a"], summary="")

    def test_summary_optional(self):
        result = parse_extraction('{"facts": ["a"]}')
        assert result == ExtractionResult(facts=["a"], summary="")

    @pytest.mark.parametrize(
        "content",
        [
            "Sure! Here are the facts: Dana works in Denver.",
            "",
            "[]",
            '{"summary": "no facts key"}',
            '{"facts": "not a list", "summary": ""}',
            '{"facts": ["ok", 3], "summary": ""}',
            '{"facts": [], "summary": 42}',
        ],
    )
    def test_invalid_is_failure(self, content: str):
        result = parse_extraction(content)
        assert isinstance(result, ExtractionFailure)
        assert result.reason


class TestPrompt:
    def test_format_conversation(self):
        turns = [
            ConversationTurn("u1", Role.USER, "Hi, I'm Dana"),
            ConversationTurn("u1", Role.ASSISTANT, "Hello Dana"),
        ]
        assert format_conversation(turns) == "user: Hi, I'm Dana\nassistant: Hello Dana"

    def test_prompt_lists_known_facts(self):
        prompt = build_extraction_prompt(
            ["Likes tea"], [ConversationTurn("u1", Role.USER, "hello")]
        )
        assert "- Likes tea" in prompt
        assert "user: hello" in prompt
        assert '"facts"' in prompt
        assert '"summary"' in prompt

    def test_prompt_without_facts(self):
        prompt = build_extraction_prompt([], [])
        assert "(none)" in prompt


class TestMaybeExtract:
    """Tests for a full extraction cycle."""

    @pytest.mark.asyncio
    async def test_skipped_when_not_due(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 1)
        assert await extractor.maybe_extract("u1") == []
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_skip_logged_when_window_too_small(
        self, store: SQLiteStore, llm: AsyncMock
    ):
        memory = MemoryManager(store, max_stored_turns=4)
        for i in range(10):
            memory.record_turn("u1", Platform.SMS, Role.USER, f"m{i}")
        event_log = Mock()
        extractor = FactExtractor(llm, memory, event_log=event_log)

        assert await extractor.maybe_extract("u1") == []

        llm.complete.assert_not_called()
        event_log.log.assert_called_once_with("extraction_skipped", user_id="u1", turns=4)

    @pytest.mark.asyncio
    async def test_skipped_for_unknown_user(
        self, extractor: FactExtractor, llm: AsyncMock
    ):
        assert await extractor.maybe_extract("ghost") == []
        llm.complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_runs_at_ten_messages(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        memory.set_summary("u1", "old summary")

        added = await extractor.maybe_extract("u1")

        assert added == ["Works at Denver warehouse"]
        profile = memory.get_profile("u1")
        assert profile.facts == ["Works at Denver warehouse"]
        assert profile.summary == "Dana manages logistics."

    @pytest.mark.asyncio
    async def test_request_shape(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        """No system prompt, one user message with the last 20 turns."""
        seed_conversation(memory, 10)
        memory.add_fact("u1", "Likes tea")

        await extractor.maybe_extract("u1")

        system, messages, max_tokens = llm.complete.call_args.args
        assert system is None
        assert len(messages) == 1
        assert messages[0]["role"] == "user"
        content = messages[0]["content"]
        assert "- Likes tea" in content
        assert "user: question 0" in content
        assert "assistant: answer 9" in content
        assert max_tokens > 0

    @pytest.mark.asyncio
    async def test_idempotent_merge(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        await extractor.maybe_extract("u1")
        second = await extractor.maybe_extract("u1")

        assert second == []
        profile = memory.get_profile("u1")
        assert profile.facts == ["Works at Denver warehouse"]
        assert profile.summary == "Dana manages logistics."

    @pytest.mark.asyncio
    async def test_summary_overwritten_not_appended(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        await extractor.maybe_extract("u1")
        llm.complete.return_value = '{"facts": [], "summary": "Newer summary."}'
        await extractor.maybe_extract("u1")
        assert memory.get_profile("u1").summary == "Newer summary."

    @pytest.mark.asyncio
    async def test_empty_summary_keeps_previous(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        memory.set_summary("u1", "Keep me")
        llm.complete.return_value = '{"facts": ["a"], "summary": ""}'
        await extractor.maybe_extract("u1")
        assert memory.get_profile("u1").summary == "Keep me"

    @pytest.mark.asyncio
    async def test_non_json_changes_nothing(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        memory.set_summary("u1", "old summary")
        llm.complete.return_value = "I'm not sure what you mean."

        assert await extractor.maybe_extract("u1") == []
        profile = memory.get_profile("u1")
        assert profile.facts == []
        assert profile.summary == "old summary"

    @pytest.mark.asyncio
    async def test_partial_output_not_merged(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        llm.complete.return_value = '{"facts": ["good fact", null], "summary": "x"}'
        assert await extractor.maybe_extract("u1") == []
        profile = memory.get_profile("u1")
        assert profile.facts == []
        assert profile.summary == ""

    @pytest.mark.asyncio
    async def test_service_error_changes_nothing(
        self, extractor: FactExtractor, memory: MemoryManager, llm: AsyncMock
    ):
        seed_conversation(memory, 10)
        llm.complete.side_effect = ServiceError("rate limited")
        assert await extractor.maybe_extract("u1") == []
        assert memory.get_profile("u1").facts == []

    @pytest.mark.asyncio
    async def test_timeout(self, memory: MemoryManager):
        async def slow(*args):
            await asyncio.sleep(10)
            return DANA_RESULT

        llm = AsyncMock()
        llm.complete = slow
        extractor = FactExtractor(llm, memory, timeout=0.01)
        seed_conversation(memory, 10)

        assert await extractor.maybe_extract("u1") == []
        assert memory.get_profile("u1").facts == []

    @pytest.mark.asyncio
    async def test_notifies_new_facts(
        self, llm: AsyncMock, memory: MemoryManager
    ):
        notifier = AsyncMock()
        extractor = FactExtractor(llm, memory, notifier=notifier)
        seed_conversation(memory, 10)

        await extractor.maybe_extract("u1")
        await extractor.maybe_extract("u1")

        notifier.notify.assert_awaited_once()
        channel, text = notifier.notify.call_args.args
        assert channel == "facts"
        assert "Works at Denver warehouse" in text

    @pytest.mark.asyncio
    async def test_concurrent_runs_serialized(
        self, memory: MemoryManager
    ):
        """Runs for the same user do not overlap."""
        active = 0
        peak = 0

        async def complete(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return DANA_RESULT

        llm = AsyncMock()
        llm.complete = complete
        extractor = FactExtractor(llm, memory)
        seed_conversation(memory, 10)

        results = await asyncio.gather(
            extractor.maybe_extract("u1"), extractor.maybe_extract("u1")
        )

        assert peak == 1
        assert sorted(results, key=len) == [[], ["Works at Denver warehouse"]]
        assert memory.get_profile("u1").facts == ["Works at Denver warehouse"]
        assert extractor._locks == {}

    @pytest.mark.asyncio
    async def test_locks_released_after_runs(
        self, extractor: FactExtractor, memory: MemoryManager
    ):
        """Per-user locks do not pile up for every user ever seen."""
        for i in range(50):
            memory.record_turn(f"u{i}", Platform.SMS, Role.USER, "hello")
            await extractor.maybe_extract(f"u{i}")
            memory.purge_user(f"u{i}")

        assert extractor._locks == {}


class TestSchedule:
    @pytest.mark.asyncio
    async def test_schedule_runs_in_background(
        self, extractor: FactExtractor, memory: MemoryManager
    ):
        seed_conversation(memory, 10)
        task = extractor.schedule("u1")
        assert await task == ["Works at Denver warehouse"]

    @pytest.mark.asyncio
    async def test_scheduled_errors_are_isolated(self, memory: MemoryManager):
        llm = AsyncMock()
        llm.complete = AsyncMock(side_effect=RuntimeError("boom"))
        extractor = FactExtractor(llm, memory)
        seed_conversation(memory, 10)

        task = extractor.schedule("u1")
        assert await task is None
        assert memory.get_profile("u1").facts == []
