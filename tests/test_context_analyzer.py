# tests/test_context_analyzer.py
"""
Tests for the Context Analyzer

Covers caching, fallback behavior, debounced incremental updates, shift
detection, derived styles and context persistence.
"""

import asyncio
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

from adaptive_chat.context_analyzer import ContextAnalyzer, fallback_context
from adaptive_chat.exceptions import ContextValidationError
from adaptive_chat.models import ConversationContext, Message, ShiftType
from adaptive_chat.storage import InMemoryKeyValueStore


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def user(content: str) -> Message:
    return Message(role="user", content=content)


def assistant(content: str) -> Message:
    return Message(role="assistant", content=content)


class TestAnalyzeContext:
    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 5, 1, 10, 0))

    @pytest.fixture
    def analyzer(self, clock):
        return ContextAnalyzer(clock=clock, debounce_delay=0.01)

    @pytest.mark.asyncio
    async def test_empty_messages_return_fallback(self, analyzer):
        context = await analyzer.analyze_context([])

        assert context.topics == []
        assert context.sentiment == "neutral"
        assert context.user_intent == "unknown"
        assert context.complexity_level == "unknown"
        assert context.expertise_level == "unknown"

    @pytest.mark.asyncio
    async def test_react_help_request(self, analyzer):
        messages = [user("How do I fix this error in my React component? I'm new to this.")]

        context = await analyzer.analyze_context(messages)

        assert "React" in context.topics
        assert "Debugging" in context.topics
        assert context.expertise_level == "beginner"
        assert context.user_intent == "problem_solving"
        assert context.fallback_used is None

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self, analyzer):
        messages = [user("Tell me about python testing")]

        first = await analyzer.analyze_context(messages)
        second = await analyzer.analyze_context(messages)

        assert second is first
        assert analyzer.cache.hits == 1

    @pytest.mark.asyncio
    async def test_cache_expires_after_ttl(self, analyzer, clock):
        messages = [user("Tell me about python testing")]
        first = await analyzer.analyze_context(messages)

        clock.advance(seconds=301)
        second = await analyzer.analyze_context(messages)

        assert second is not first
        assert second.topics == first.topics

    @pytest.mark.asyncio
    async def test_sweep_evicts_expired_entries(self, analyzer, clock):
        await analyzer.analyze_context([user("css question")])
        clock.advance(minutes=6)

        assert analyzer.sweep_cache() == 1
        assert len(analyzer.cache) == 0

    @pytest.mark.asyncio
    async def test_failure_yields_flagged_fallback(self, analyzer):
        with patch.object(analyzer.provider, "analyze", AsyncMock(side_effect=RuntimeError("model down"))):
            context = await analyzer.analyze_context([user("anything")])

        assert context.fallback_used is True
        assert context.error == "analysis_failed"
        assert context.topics == []

    @pytest.mark.asyncio
    async def test_topics_capped_at_five(self, analyzer):
        text = "react javascript typescript css html node python test performance debug api database"

        context = await analyzer.analyze_context([user(text)])

        assert len(context.topics) == 5


class TestIncrementalUpdates:
    @pytest.fixture
    def analyzer(self):
        return ContextAnalyzer(debounce_delay=0.02)

    @pytest.mark.asyncio
    async def test_first_update_analyzes_message(self, analyzer):
        context = await analyzer.update_context_with_new_message("conv1", user("python question"))

        assert "Python" in context.topics
        assert analyzer.get_current_context("conv1") is context

    @pytest.mark.asyncio
    async def test_burst_runs_only_last_update(self, analyzer):
        analyzer.set_current_context("conv1", ConversationContext(topics=["React"]))

        with patch.object(analyzer, "_incremental_update", wraps=analyzer._incremental_update) as spy:
            results = await asyncio.gather(
                analyzer.update_context_with_new_message("conv1", user("css styling")),
                analyzer.update_context_with_new_message("conv1", user("database schema")),
                analyzer.update_context_with_new_message("conv1", user("python code")),
            )

        assert spy.call_count == 1
        assert results[0] is results[1] is results[2]
        assert results[0].topics == ["React", "Python"]

    @pytest.mark.asyncio
    async def test_updates_for_different_conversations_are_independent(self, analyzer):
        first, second = await asyncio.gather(
            analyzer.update_context_with_new_message("conv1", user("react hooks")),
            analyzer.update_context_with_new_message("conv2", user("sql query")),
        )

        assert "React" in first.topics
        assert "Database" in second.topics

    @pytest.mark.asyncio
    async def test_neutral_message_keeps_sentiment(self, analyzer):
        analyzer.set_current_context("conv1", ConversationContext(sentiment="frustrated"))

        updated = await analyzer.update_context_with_new_message("conv1", user("ok, node server"))

        assert updated.sentiment == "frustrated"
        assert "Node.js" in updated.topics

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        analyzer = ContextAnalyzer(max_history=3)
        for i in range(5):
            analyzer.set_current_context("conv1", ConversationContext(topics=[f"t{i}"]))

        history = analyzer.get_context_history("conv1")
        assert [c.topics[0] for c in history] == ["t2", "t3", "t4"]


class TestShiftDetection:
    @pytest.fixture
    def analyzer(self):
        return ContextAnalyzer()

    @pytest.mark.asyncio
    async def test_css_grid_to_flexbox_is_single_pivot(self, analyzer):
        messages = [
            user("Help with CSS grid"),
            assistant("Here's how grid works"),
            user("Actually I think this is flexbox"),
        ]

        shifts = await analyzer.detect_context_shifts(messages)

        assert len(shifts) == 1
        assert shifts[0].shift_type == ShiftType.PIVOT
        assert shifts[0].message_index == 2
        assert shifts[0].to_topic == "Flexbox"
        assert shifts[0].confidence == 0.8

    @pytest.mark.asyncio
    async def test_short_conversation_has_no_shifts(self, analyzer):
        assert await analyzer.detect_context_shifts([user("react"), user("python")]) == []

    @pytest.mark.asyncio
    async def test_expansion_keeps_common_topic(self, analyzer):
        messages = [user("react hooks"), assistant("sure"), user("react with typescript")]

        shifts = await analyzer.detect_context_shifts(messages)

        assert len(shifts) == 1
        assert shifts[0].shift_type == ShiftType.EXPANSION
        assert shifts[0].confidence == 0.6


class TestDerivations:
    @pytest.fixture
    def analyzer(self):
        return ContextAnalyzer()

    def test_beginner_frustrated_style(self, analyzer):
        context = ConversationContext(expertise_level="beginner", sentiment="frustrated", complexity_level="medium")

        style = analyzer.get_adapted_response_style(context)

        assert style.tone == "supportive"
        assert style.explanation_style == "step_by_step"
        assert style.encouragement is True

    def test_expert_high_complexity_style(self, analyzer):
        context = ConversationContext(expertise_level="expert", complexity_level="high")

        style = analyzer.get_adapted_response_style(context)

        assert style.tone == "professional"
        assert style.detail_level == "comprehensive"
        assert style.assumptions == "expert_knowledge"

    def test_insights(self, analyzer):
        context = ConversationContext(
            topics=["React", "CSS", "HTML", "API"], expertise_level="beginner", user_intent="problem_solving"
        )

        insights = analyzer.get_conversation_insights(context)

        assert insights.dominant_topics == ["React", "CSS", "HTML"]
        assert insights.recommended_approach == "educational_explanation"
        assert insights.learning_opportunities == ["React fundamentals", "Component lifecycle", "State management"]

    @pytest.mark.asyncio
    async def test_merge_user_contexts(self, analyzer):
        contexts = [
            ConversationContext(topics=["React", "CSS"], expertise_level="beginner", user_intent="problem_solving"),
            ConversationContext(topics=["React"], expertise_level="intermediate", user_intent="problem_solving"),
            ConversationContext(topics=["React", "API"], expertise_level="expert", complexity_level="high",
                                user_intent="problem_solving"),
        ]

        merged = await analyzer.merge_user_contexts("user1", contexts)

        assert merged.dominant_topics[0] == "React"
        assert merged.expertise_progression.trajectory == "improving"
        assert merged.learning_pattern == "problem_driven"

    @pytest.mark.asyncio
    async def test_merge_of_nothing(self, analyzer):
        merged = await analyzer.merge_user_contexts("user1", [])

        assert merged.dominant_topics == []
        assert merged.expertise_progression.trajectory == "stable"


class TestPersistence:
    @pytest.fixture
    def store(self):
        return InMemoryKeyValueStore()

    @pytest.fixture
    def analyzer(self, store):
        return ContextAnalyzer(store=store)

    @pytest.mark.asyncio
    async def test_persist_and_load(self, analyzer, store):
        context = ConversationContext(topics=["React"], sentiment="positive")

        await analyzer.persist_context("conv1", context)
        loaded = await analyzer.get_persisted_context("conv1")

        assert loaded == context
        raw = await store.get("context_conv1")
        assert raw["id"] == "conv1"
        assert "timestamp" in raw

    @pytest.mark.asyncio
    async def test_absent_context_is_none(self, analyzer):
        assert await analyzer.get_persisted_context("missing") is None

    @pytest.mark.asyncio
    async def test_invalid_context_rejected_before_write(self, analyzer, store):
        existing = ConversationContext(topics=["CSS"])
        await analyzer.persist_context("conv1", existing)

        with pytest.raises(ContextValidationError) as exc_info:
            await analyzer.persist_context("conv1", {"id": "", "complexity_level": "extreme"})

        assert str(exc_info.value) == "Invalid context data"
        assert await analyzer.get_persisted_context("conv1") == existing

    @pytest.mark.asyncio
    async def test_malformed_stored_entry_treated_as_absent(self, analyzer, store):
        await store.set("context_conv1", {"id": "conv1", "context": {"complexity_level": 42}})
        await store.set_raw("context_conv2", "{not json")

        assert await analyzer.get_persisted_context("conv1") is None
        assert await analyzer.get_persisted_context("conv2") is None

    def test_fallback_context_is_valid(self):
        ContextAnalyzer.validate_context(fallback_context())
