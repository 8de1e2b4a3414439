"""
Context Analyzer

This module derives a structured conversation context (topics, sentiment,
intent, complexity, expertise) from message history, caches results,
applies debounced incremental updates per conversation, detects topic shifts,
and maps contexts to adaptive response styles.
"""

import logging
from collections import Counter, deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from .cache import CacheSweeper, TTLCache
from .config import settings
from .exceptions import ContextValidationError
from .inference import ContextInferenceProvider, KeywordInferenceProvider
from .models import (
    ContextAnalysisResult, ContextShift, ConversationContext, ConversationInsights,
    ExpertiseProgression, MergedUserContext, Message, ResponseStyle, ShiftType
)
from .scheduling import Debouncer
from .storage import KeyValueStore
from .utils import hash_string

logger = logging.getLogger(__name__)

SHIFT_WINDOW_SIZE = 3
EXPERTISE_RANK = {"beginner": 1, "intermediate": 2, "expert": 3}


def fallback_context() -> ConversationContext:
    """Context used when there is nothing (or nothing reliable) to analyze"""
    return ConversationContext(
        topics=[],
        sentiment="neutral",
        user_intent="unknown",
        complexity_level="unknown",
        expertise_level="unknown",
    )


def context_cache_key(messages: Sequence[Message]) -> str:
    content = "|".join(f"{m.role}:{m.content[:50]}" for m in messages)
    return f"context_{hash_string(content)}"


class ContextAnalyzer:
    """Conversation context derivation with caching and incremental updates"""

    def __init__(self, provider: Optional[ContextInferenceProvider] = None,
                 store: Optional[KeyValueStore] = None,
                 cache_ttl: float = None,
                 debounce_delay: float = None,
                 max_topics: int = None,
                 max_history: int = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.max_topics = max_topics or settings.MAX_TOPICS
        self.max_history = max_history or settings.MAX_CONTEXT_HISTORY
        self.provider = provider or KeywordInferenceProvider(max_topics=self.max_topics)
        self.store = store
        self._clock = clock

        ttl = cache_ttl or settings.CONTEXT_CACHE_TTL
        self._cache: TTLCache[ConversationContext] = TTLCache(
            ttl, clock=clock, timestamp_of=lambda ctx: ctx.last_analyzed, name="context cache"
        )
        self._current_contexts: Dict[str, ConversationContext] = {}
        self._context_history: Dict[str, Deque[ConversationContext]] = {}

        delay = settings.CONTEXT_UPDATE_DEBOUNCE if debounce_delay is None else debounce_delay
        self._debouncer = Debouncer(delay)
        self._sweeper = CacheSweeper(ttl, self.sweep_cache, name="context cache sweep")

        logger.info("Context Analyzer initialized")

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        self._debouncer.cancel_all()
        await self._sweeper.stop()

    def sweep_cache(self) -> int:
        return self._cache.sweep()

    # ----- analysis -----

    async def analyze_context(self, messages: Sequence[Message]) -> ConversationContext:
        """
        Analyze a message history into a conversation context.

        Never raises: a failing analysis yields the fallback context flagged
        with ``error='analysis_failed'`` and ``fallback_used=True``.
        """
        if not messages:
            return fallback_context()

        try:
            cache_key = context_cache_key(messages)
            lookup = self._cache.get(cache_key)
            if lookup.hit:
                logger.debug(f"Context cache hit for {cache_key}")
                return lookup.value

            analysis = await self.provider.analyze(messages)
            context = self._create_context(analysis)
            self._cache.set(cache_key, context)
            return context

        except Exception as e:
            logger.error(f"Context analysis failed: {e}")
            return fallback_context().model_copy(update={"error": "analysis_failed", "fallback_used": True})

    def _create_context(self, analysis: ContextAnalysisResult) -> ConversationContext:
        return ConversationContext(
            topics=analysis.topics[:self.max_topics],
            sentiment=analysis.sentiment,
            user_intent=analysis.user_intent,
            complexity_level=analysis.complexity,
            expertise_level=analysis.expertise_level,
            last_analyzed=self._clock(),
        )

    # ----- per-conversation state -----

    def get_current_context(self, conversation_id: str) -> Optional[ConversationContext]:
        return self._current_contexts.get(conversation_id)

    def set_current_context(self, conversation_id: str, context: ConversationContext) -> None:
        self._current_contexts[conversation_id] = context
        history = self._context_history.setdefault(conversation_id, deque(maxlen=self.max_history))
        history.append(context)

    def get_context_history(self, conversation_id: str) -> List[ConversationContext]:
        return list(self._context_history.get(conversation_id, []))

    async def update_context_with_new_message(self, conversation_id: str, message: Message) -> ConversationContext:
        """
        Debounced incremental update for a conversation.

        Calls arriving within the debounce window replace each other; only the
        last one runs and every caller in the burst receives its result.
        """
        return await self._debouncer.schedule(
            conversation_id, lambda: self._apply_new_message(conversation_id, message)
        )

    def has_pending_update(self, conversation_id: str) -> bool:
        return self._debouncer.pending(conversation_id)

    async def _apply_new_message(self, conversation_id: str, message: Message) -> ConversationContext:
        current = self.get_current_context(conversation_id)
        if current is None:
            context = await self.analyze_context([message])
            self.set_current_context(conversation_id, context)
            return context

        try:
            updated = self._incremental_update(current, message)
        except Exception as e:
            logger.error(f"Failed to update context for conversation {conversation_id}: {e}")
            return current

        self.set_current_context(conversation_id, updated)
        return updated

    def _incremental_update(self, current: ConversationContext, message: Message) -> ConversationContext:
        new_topics = self.provider.extract_topics([message])
        new_sentiment = self.provider.analyze_sentiment([message])

        merged_topics = list(dict.fromkeys([*current.topics, *new_topics]))[:self.max_topics]
        sentiment = new_sentiment if new_sentiment != "neutral" else current.sentiment

        return current.model_copy(update={
            "topics": merged_topics,
            "sentiment": sentiment,
            "last_analyzed": self._clock(),
        })

    # ----- shift detection -----

    async def detect_context_shifts(self, messages: Sequence[Message]) -> List[ContextShift]:
        """Compare each message's topics with the window of up to 3 messages before it"""
        if len(messages) < SHIFT_WINDOW_SIZE:
            return []

        shifts: List[ContextShift] = []
        for index in range(1, len(messages)):
            window = messages[max(0, index - SHIFT_WINDOW_SIZE):index]
            try:
                previous_topics = self.provider.extract_topics(window)
                current_topics = self.provider.extract_topics([messages[index]])
            except Exception as e:
                logger.warning(f"Failed to detect context shift at message {index}: {e}")
                continue

            shift = self._identify_shift(previous_topics, current_topics, index)
            if shift:
                shifts.append(shift)

        return shifts

    def _identify_shift(self, previous: List[str], current: List[str], index: int) -> Optional[ContextShift]:
        common = [topic for topic in previous if topic in current]
        new = [topic for topic in current if topic not in previous]
        if not new:
            return None

        if common:
            shift_type, confidence = ShiftType.EXPANSION, 0.6
        else:
            shift_type, confidence = ShiftType.PIVOT, 0.8

        return ContextShift(
            from_topic=previous[0] if previous else "unknown",
            to_topic=new[0],
            shift_type=shift_type,
            confidence=confidence,
            message_index=index,
            timestamp=self._clock(),
        )

    # ----- derivations -----

    def get_conversation_insights(self, context: ConversationContext) -> ConversationInsights:
        return ConversationInsights(
            dominant_topics=context.topics[:3],
            user_emotional_state=context.sentiment or "neutral",
            recommended_approach=self._recommended_approach(context),
            suggested_tone=self._suggested_tone(context),
            estimated_resolution_complexity=context.complexity_level or "medium",
            learning_opportunities=self._learning_opportunities(context),
        )

    @staticmethod
    def _recommended_approach(context: ConversationContext) -> str:
        if context.sentiment == "frustrated":
            return "step_by_step_guidance"
        if context.expertise_level == "beginner":
            return "educational_explanation"
        if context.user_intent == "problem_solving":
            return "diagnostic_approach"
        return "collaborative_discussion"

    @staticmethod
    def _suggested_tone(context: ConversationContext) -> str:
        if context.sentiment == "frustrated":
            return "supportive"
        if context.expertise_level == "expert":
            return "professional"
        if context.user_intent == "learning":
            return "encouraging"
        return "friendly"

    @staticmethod
    def _learning_opportunities(context: ConversationContext) -> List[str]:
        opportunities = []
        if "React" in context.topics and context.expertise_level == "beginner":
            opportunities += ["React fundamentals", "Component lifecycle", "State management"]
        if context.user_intent == "problem_solving":
            opportunities += ["Debugging techniques", "Error handling", "Testing strategies"]
        return opportunities[:3]

    def get_adapted_response_style(self, context: ConversationContext) -> ResponseStyle:
        """Expertise sets the base style; sentiment, then complexity, override it"""
        style = ResponseStyle()

        if context.expertise_level == "beginner":
            style.tone = "supportive"
            style.detail_level = "comprehensive"
            style.code_examples = "basic"
            style.explanation_style = "step_by_step"
            style.encouragement = True
        elif context.expertise_level == "intermediate":
            style.tone = "collaborative"
            style.detail_level = "balanced"
            style.code_examples = "practical"
            style.explanation_style = "contextual"
        elif context.expertise_level == "expert":
            style.tone = "professional"
            style.detail_level = "concise"
            style.code_examples = "advanced"
            style.explanation_style = "direct"
            style.assumptions = "expert_knowledge"

        if context.sentiment == "frustrated":
            style.tone = "supportive"
            style.explanation_style = "step_by_step"
            style.encouragement = True
        elif context.sentiment == "confused":
            style.detail_level = "comprehensive"
            style.explanation_style = "clarifying"
        elif context.sentiment == "confident":
            style.tone = "collaborative"
            style.detail_level = "concise"

        if context.complexity_level == "high":
            style.detail_level = "comprehensive"
            style.code_examples = "advanced"
        elif context.complexity_level == "low":
            style.explanation_style = "simple"
            style.code_examples = "basic"

        return style

    async def merge_user_contexts(self, user_id: str,
                                  contexts: Sequence[ConversationContext]) -> MergedUserContext:
        """Summarize a user's contexts across conversations"""
        if not contexts:
            return MergedUserContext()

        topic_counts = Counter(topic for context in contexts for topic in context.topics)
        dominant_topics = [topic for topic, _ in topic_counts.most_common(5)]

        levels = [c.expertise_level for c in contexts if c.expertise_level and c.expertise_level != "unknown"]
        progression = ExpertiseProgression()
        if len(levels) >= 2:
            first = EXPERTISE_RANK.get(levels[0], 2)
            last = EXPERTISE_RANK.get(levels[-1], 2)
            progression = ExpertiseProgression(
                from_level=levels[0],
                to_level=levels[-1],
                trajectory="improving" if last > first else "declining" if last < first else "stable",
            )

        intents = [c.user_intent for c in contexts]
        problem_solving = intents.count("problem_solving")
        learning = intents.count("learning")
        if problem_solving > learning * 2:
            learning_pattern = "problem_driven"
        elif learning > problem_solving * 2:
            learning_pattern = "sequential"
        else:
            learning_pattern = "mixed"

        complexity_counts = Counter(
            c.complexity_level for c in contexts if c.complexity_level and c.complexity_level != "unknown"
        )
        preferred_complexity = complexity_counts.most_common(1)[0][0] if complexity_counts else "intermediate"

        logger.debug(f"Merged {len(contexts)} contexts for user {user_id}")
        return MergedUserContext(
            dominant_topics=dominant_topics,
            expertise_progression=progression,
            learning_pattern=learning_pattern,
            preferred_complexity=preferred_complexity,
            communication_style="conversational",
        )

    # ----- persistence -----

    @staticmethod
    def validate_context(context: Union[ConversationContext, Dict[str, Any]]) -> ConversationContext:
        """Re-validate a context before it is written anywhere"""
        payload = context.model_dump() if isinstance(context, ConversationContext) else context
        if not isinstance(payload, dict):
            raise ContextValidationError(errors=["context must be an object"])
        try:
            return ConversationContext.model_validate(payload)
        except ValidationError as e:
            raise ContextValidationError(errors=[err["msg"] for err in e.errors()]) from e

    async def persist_context(self, conversation_id: str,
                              context: Union[ConversationContext, Dict[str, Any]]) -> None:
        if self.store is None:
            raise RuntimeError("No key-value store configured for context persistence")

        try:
            validated = self.validate_context(context)
        except ContextValidationError as e:
            logger.warning(f"Rejected context for conversation {conversation_id}: {e.errors}")
            raise

        await self.store.set(f"context_{conversation_id}", {
            "id": conversation_id,
            "context": validated.model_dump(mode="json"),
            "timestamp": self._clock().isoformat(),
        })

    async def get_persisted_context(self, conversation_id: str) -> Optional[ConversationContext]:
        if self.store is None:
            return None
        try:
            stored = await self.store.get(f"context_{conversation_id}")
        except ValueError as e:
            logger.error(f"Failed to read persisted context for {conversation_id}: {e}")
            return None
        if stored is None:
            return None

        try:
            return self.validate_context(stored.get("context") if isinstance(stored, dict) else None)
        except ContextValidationError as e:
            logger.error(f"Ignoring malformed persisted context for {conversation_id}: {e.errors}")
            return None
