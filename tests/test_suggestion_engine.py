# tests/test_suggestion_engine.py
"""
Tests for the Suggestion Engine

Covers generation, fallback behavior, ranking bounds, feedback learning,
batching, cache management and validation.
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

from adaptive_chat.exceptions import SuggestionValidationError
from adaptive_chat.models import (
    BatchSuggestionRequest, ConversationContext, FeedbackRecord, Message, SmartSuggestion,
    SuggestionEffectiveness, SuggestionFeedback, SuggestionMetrics, SuggestionType, UserInteraction
)
from adaptive_chat.ranking import adjusted_confidence, feedback_factor
from adaptive_chat.suggestion_engine import SuggestionEngine


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def user(content: str) -> Message:
    return Message(role="user", content=content)


def suggestion(category: str, confidence: float, content: str = "Try this") -> SmartSuggestion:
    return SmartSuggestion(type=SuggestionType.QUICK_REPLY, content=content, confidence=confidence, category=category)


class TestQuickReplies:
    @pytest.fixture
    def clock(self):
        return FakeClock(datetime(2024, 6, 1, 9, 0))

    @pytest.fixture
    def engine(self, clock):
        return SuggestionEngine(clock=clock, batch_delay=0)

    @pytest.mark.asyncio
    async def test_error_pattern_ranked_first(self, engine):
        replies = await engine.generate_quick_replies([user("I got an error in my react app")], "conv1")

        assert len(replies) == 3
        assert replies[0].content == "Can you share the exact error message?"
        assert [r.adjusted_confidence for r in replies] == sorted(
            (r.adjusted_confidence for r in replies), reverse=True
        )

    @pytest.mark.asyncio
    async def test_cached_within_two_minutes(self, engine, clock):
        messages = [user("thanks for the help")]

        first = await engine.generate_quick_replies(messages, "conv1")
        clock.advance(seconds=60)
        second = await engine.generate_quick_replies(messages, "conv1")

        assert [s.id for s in second] == [s.id for s in first]

    @pytest.mark.asyncio
    async def test_cache_expires(self, engine, clock):
        messages = [user("thanks for the help")]

        first = await engine.generate_quick_replies(messages, "conv1")
        clock.advance(seconds=121)
        second = await engine.generate_quick_replies(messages, "conv1")

        assert [s.id for s in second] != [s.id for s in first]

    @pytest.mark.asyncio
    async def test_no_match_yields_empty_list(self, engine):
        assert await engine.generate_quick_replies([user("hmm")], "conv1") == []

    @pytest.mark.asyncio
    async def test_failure_returns_flagged_fallback(self, engine):
        with patch.object(engine, "_generate_contextual_suggestions", AsyncMock(side_effect=RuntimeError("boom"))):
            replies = await engine.generate_quick_replies([user("help")], "conv1")

        assert [r.confidence for r in replies] == [0.7, 0.6, 0.5]
        assert all(r.is_fallback for r in replies)


class TestGenerators:
    @pytest.fixture
    def engine(self):
        return SuggestionEngine(batch_delay=0)

    @pytest.mark.asyncio
    async def test_action_suggestions(self, engine):
        actions = await engine.generate_action_suggestions([user("can you review my code example?")])

        assert [a.action for a in actions] == ["file_upload", "paste_code"]
        assert all(a.type == SuggestionType.ACTION_SUGGESTION for a in actions)

    @pytest.mark.asyncio
    async def test_action_suggestions_empty_input(self, engine):
        assert await engine.generate_action_suggestions([]) == []

    @pytest.mark.asyncio
    async def test_follow_ups_capped_and_sorted(self, engine):
        follow_ups = await engine.generate_follow_up_suggestions(user("it's not working, there's an error"))

        assert len(follow_ups) == 4
        assert follow_ups[0].content == "What error message do you see?"
        confidences = [f.confidence for f in follow_ups]
        assert confidences == sorted(confidences, reverse=True)

    @pytest.mark.asyncio
    async def test_clarification_for_vague_message(self, engine):
        clarifications = await engine.generate_clarification_suggestions(user("fix it"))

        categories = [c.category for c in clarifications]
        assert categories[:2] == ["reference_clarification", "goal_clarification"]

    @pytest.mark.asyncio
    async def test_clarification_for_specific_message(self, engine):
        message = user("Please configure the webpack build for production deployment")

        assert await engine.generate_clarification_suggestions(message) == []

    @pytest.mark.asyncio
    async def test_adaptive_suggestions_follow_expertise(self, engine):
        beginner = ConversationContext(topics=["React"], expertise_level="beginner", sentiment="confused")
        expert = ConversationContext(topics=["React"], expertise_level="expert")

        beginner_suggestions = await engine.get_adaptive_suggestions(beginner)
        expert_suggestions = await engine.get_adaptive_suggestions(expert)

        assert beginner_suggestions[0].content == "Show me a basic React example"
        assert beginner_suggestions[0].complexity == "simple"
        assert any(s.category == "clarification_request" for s in beginner_suggestions)
        assert expert_suggestions[0].complexity == "advanced"

    @pytest.mark.asyncio
    async def test_personalized_suggestions_boost_preferred(self, engine):
        await engine.learn_from_feedback("user1", [
            FeedbackRecord(suggestion_type="supportive", rating=5, used=True),
        ])
        interactions = [UserInteraction(type="quick_reply_used"), UserInteraction(type="quick_reply_used")]

        personalized = await engine.generate_personalized_suggestions([user("help please")], "user1", interactions)

        supportive = next(s for s in personalized if s.category == "supportive")
        assert supportive.personalization_reason == "user_prefers_category"
        assert supportive.confidence == pytest.approx(0.84)
        assert engine.feedback.preferences("user1")["quick_reply_frequency"] == 2


class TestRanking:
    def test_feedback_factor_baseline(self):
        feedback = [
            SuggestionFeedback(suggestion_id="a", used=True, helpful=True, category="debugging"),
            SuggestionFeedback(suggestion_id="b", used=True, helpful=False, category="debugging"),
        ]

        assert feedback_factor("debugging", feedback) == pytest.approx(0.75)
        assert feedback_factor("other", feedback) == 1.0

    def test_adjusted_confidence_clamped(self):
        assert adjusted_confidence(0.95, "debugging", {"prefer_debugging": True}, []) == 1.0

    def test_ranking_bounds_and_stable_ties(self):
        engine = SuggestionEngine()
        candidates = [suggestion("a", 0.5, "first"), suggestion("b", 0.9), suggestion("c", 0.5, "second")]

        ranked = engine.rank_suggestions_by_relevance(candidates, "user1")

        assert [s.category for s in ranked] == ["b", "a", "c"]
        for s in ranked:
            assert 0 <= s.confidence <= 1
            assert 0 <= s.adjusted_confidence <= 1

    @pytest.mark.asyncio
    async def test_feedback_lowers_unhelpful_category(self):
        engine = SuggestionEngine()
        replies = await engine.generate_quick_replies([user("I need help")], "conv1", user_id="user1")
        clarification = next(r for r in replies if r.category == "clarification")

        await engine.track_suggestion_feedback("user1", clarification.id, used=False, helpful=False)
        ranked = engine.rank_suggestions_by_relevance(replies, "user1")

        reranked = next(r for r in ranked if r.category == "clarification")
        assert reranked.adjusted_confidence == pytest.approx(0.4)
        assert ranked[0].category == "supportive"


class TestFeedbackLearning:
    @pytest.fixture
    def engine(self):
        return SuggestionEngine(feedback_limit=3)

    @pytest.mark.asyncio
    async def test_feedback_log_is_bounded(self, engine):
        for i in range(5):
            await engine.track_suggestion_feedback("user1", f"s{i}", used=True)

        history = engine.feedback.history("user1")
        assert [f.suggestion_id for f in history] == ["s2", "s3", "s4"]

    @pytest.mark.asyncio
    async def test_feedback_counts_and_follow_ups(self, engine):
        await engine.track_suggestion_feedback("user1", "s1", used=True, helpful=True, follow_up_action="copy")
        await engine.track_suggestion_feedback("user1", "s2", used=False, helpful=False)

        prefs = engine.feedback.preferences("user1")
        assert prefs["positive_interactions"] == 1
        assert prefs["negative_interactions"] == 1
        assert prefs["common_follow_up_actions"] == ["copy"]

    @pytest.mark.asyncio
    async def test_follow_up_actions_bounded_like_the_log(self, engine):
        for i in range(5):
            await engine.track_suggestion_feedback("user1", f"s{i}", used=True, follow_up_action=f"action{i}")

        prefs = engine.feedback.preferences("user1")
        assert prefs["common_follow_up_actions"] == ["action2", "action3", "action4"]

    @pytest.mark.asyncio
    async def test_learn_from_feedback_sets_preferences(self, engine):
        prefs = await engine.learn_from_feedback("user1", [
            {"suggestion_type": "debugging", "rating": 5, "used": True},
            {"suggestion_type": "debugging", "rating": 4, "used": True},
            {"suggestion_type": "supportive", "rating": 2, "used": True},
        ])

        assert prefs["prefer_debugging"] is True
        assert prefs["debugging_preference_strength"] == pytest.approx(4.5)
        assert prefs["prefer_supportive"] is False

    @pytest.mark.asyncio
    async def test_improved_suggestions_tagged(self, engine):
        await engine.learn_from_feedback("user1", [FeedbackRecord(suggestion_type="context_gathering", rating=4, used=True)])

        improved = await engine.generate_improved_suggestions("user1", [user("weird error")])

        boosted = next(s for s in improved if s.category == "context_gathering")
        assert boosted.adaptation_reason == "user_feedback_driven"
        assert boosted.confidence == 1.0
        assert improved[0].confidence >= improved[-1].confidence

    @pytest.mark.asyncio
    async def test_effectiveness_per_suggestion(self, engine):
        await engine.track_suggestion_feedback("user1", "s1", used=False, helpful=False, follow_up_action="retry")

        result = await engine.get_suggestion_effectiveness("s1")

        assert isinstance(result, SuggestionEffectiveness)
        assert result.usage_rate == 0
        assert len(result.improvement_suggestions) == 3

    @pytest.mark.asyncio
    async def test_effectiveness_overall_by_category(self):
        engine = SuggestionEngine()
        actions = await engine.generate_action_suggestions([user("see the docs")])
        await engine.track_suggestion_feedback("user1", actions[0].id, used=True, helpful=True)

        metrics = await engine.get_suggestion_effectiveness()

        assert isinstance(metrics, SuggestionMetrics)
        assert metrics.total_generated == 1
        assert metrics.category_performance["documentation"].usage == 1.0


class TestBatching:
    @pytest.mark.asyncio
    async def test_priority_order_and_types(self):
        engine = SuggestionEngine(batch_delay=0)
        requests = [
            BatchSuggestionRequest(messages=[user("review my file")], conversation_id="low",
                                   priority="low", type=SuggestionType.ACTION_SUGGESTION),
            BatchSuggestionRequest(messages=[user("error here")], conversation_id="high",
                                   priority="high", type=SuggestionType.FOLLOW_UP),
            BatchSuggestionRequest(messages=[user("it")], conversation_id="medium",
                                   priority="medium", type=SuggestionType.CLARIFICATION),
        ]

        results = await engine.batch_generate_suggestions(requests)

        assert [r.conversation_id for r in results] == ["high", "medium", "low"]
        assert [r.type for r in results] == [
            SuggestionType.FOLLOW_UP, SuggestionType.CLARIFICATION, SuggestionType.ACTION_SUGGESTION
        ]
        assert all(r.suggestions for r in results)

    @pytest.mark.asyncio
    async def test_pauses_between_items(self):
        engine = SuggestionEngine(batch_delay=0.05)
        requests = [
            BatchSuggestionRequest(messages=[user("hello")], conversation_id=f"c{i}") for i in range(2)
        ]

        with patch("adaptive_chat.suggestion_engine.asyncio.sleep", AsyncMock()) as mock_sleep:
            await engine.batch_generate_suggestions(requests)

        assert mock_sleep.await_count == 2
        mock_sleep.assert_awaited_with(0.05)


class TestCacheManagement:
    @pytest.fixture
    def engine(self):
        return SuggestionEngine()

    def test_set_and_get_cached(self, engine):
        cached = [suggestion("a", 0.5)]
        engine.set_cached_suggestions("key1", cached)

        assert engine.get_cached_suggestions("key1") == cached
        assert engine.get_cached_suggestions("missing") is None

    def test_invalid_suggestion_not_cached(self, engine):
        bad = suggestion("a", 0.5).model_copy(update={"content": "   "})

        with pytest.raises(SuggestionValidationError):
            engine.set_cached_suggestions("key1", [bad])
        assert engine.get_cached_suggestions("key1") is None

    def test_should_invalidate_cache(self, engine):
        old = ConversationContext(topics=["React"])

        assert engine.should_invalidate_cache(old, old.model_copy()) is False
        assert engine.should_invalidate_cache(old, old.model_copy(update={"topics": ["CSS"]})) is True
        assert engine.should_invalidate_cache(old, old.model_copy(update={"expertise_level": "expert"})) is True
        assert engine.should_invalidate_cache(old, old.model_copy(update={"user_intent": "learning"})) is True

    @pytest.mark.asyncio
    async def test_context_change_discards_conversation_cache(self, engine):
        messages = [user("thank you")]
        first = await engine.generate_quick_replies(messages, "conv1")
        old = ConversationContext(topics=["React"])

        changed = engine.handle_context_change("conv1", old, old.model_copy(update={"complexity_level": "high"}))
        second = await engine.generate_quick_replies(messages, "conv1")

        assert changed is True
        assert [s.id for s in second] != [s.id for s in first]


class TestValidation:
    def test_valid_suggestion(self):
        assert SuggestionEngine.validate_suggestion(suggestion("a", 0.5)).is_valid is True

    def test_all_errors_collected(self):
        result = SuggestionEngine.validate_suggestion(
            {"id": "", "content": " ", "confidence": 1.5, "type": "shout"}
        )

        assert result.is_valid is False
        assert result.errors == [
            "Invalid suggestion ID", "Empty content", "Invalid confidence score", "Invalid suggestion type"
        ]

    def test_non_numeric_confidence(self):
        result = SuggestionEngine.validate_suggestion(
            {"id": "x", "content": "ok", "confidence": "high", "type": "follow_up"}
        )

        assert result.errors == ["Invalid confidence score"]
