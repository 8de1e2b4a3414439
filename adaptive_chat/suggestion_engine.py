"""
Suggestion Engine

Generates quick replies, actions, follow-ups and clarifications from message
content and conversation context, ranks them with the user's preferences and
feedback, caches results per message window, and learns from feedback.
Generation failures are recovered into a flagged fallback set.
"""

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from .cache import CacheSweeper, TTLCache
from .config import settings
from .exceptions import SuggestionValidationError
from .feedback import FeedbackStore
from .models import (
    BatchSuggestionRequest, BatchSuggestionResult, CategoryPerformance, ConversationContext,
    FeedbackRecord, Message, SmartSuggestion, SuggestionEffectiveness, SuggestionFeedback,
    SuggestionMetrics, SuggestionType, UserInteraction, ValidationResult
)
from .ranking import boost_preferred, rank_suggestions, reweight_by_strength
from .utils import hash_string

logger = logging.getLogger(__name__)

PRIORITY_ORDER = {"high": 3, "medium": 2, "low": 1}
MAX_TRACKED_SUGGESTIONS = 5000


@dataclass
class TemplateSuggestion:
    content: str
    category: str
    confidence: float


@dataclass
class SuggestionTemplate:
    """Substring trigger mapped to a fixed candidate set"""
    id: str
    pattern: str
    suggestions: List[TemplateSuggestion] = field(default_factory=list)


DEFAULT_TEMPLATES = [
    SuggestionTemplate("help-pattern", "help", [
        TemplateSuggestion("What specifically do you need help with?", "clarification", 0.8),
        TemplateSuggestion("I'm here to help! What's the challenge?", "supportive", 0.7),
    ]),
    SuggestionTemplate("error-pattern", "error", [
        TemplateSuggestion("Can you share the exact error message?", "debugging", 0.9),
        TemplateSuggestion("What steps led to this error?", "context_gathering", 0.8),
    ]),
    SuggestionTemplate("thanks-pattern", "thank", [
        TemplateSuggestion("You're welcome! Anything else I can help with?", "polite_continuation", 0.9),
        TemplateSuggestion("Glad I could help!", "acknowledgment", 0.8),
    ]),
]

# (triggers, content, confidence, reason, category, action)
ACTION_RULES = [
    (("file", "code", "review"), "Upload file for review", 0.8,
     "User mentioned file or code", "file_action", "file_upload"),
    (("code", "snippet", "example"), "Share code snippet", 0.7,
     "Code sharing context detected", "code_sharing", "paste_code"),
    (("documentation", "docs", "reference"), "Search documentation", 0.6,
     "Documentation reference detected", "documentation", "search_docs"),
    (("screen", "show", "visual"), "Share screenshot", 0.5,
     "Visual context may be helpful", "visual_aid", "screenshot"),
]

# (triggers, [(content, confidence, reason, category), ...])
FOLLOW_UP_RULES = [
    (("error", "not working", "broken"), [
        ("What error message do you see?", 0.9, "Need specific error information", "error_details"),
        ("Can you check the browser console?", 0.8, "Console may have additional error info", "debugging"),
        ("What were you trying to do when this happened?", 0.7,
         "Understanding the context is important", "context_gathering"),
    ]),
    (("not working", "issue", "problem"), [
        ("Can you be more specific about what's happening?", 0.8,
         "Need more specific information", "clarification"),
        ("What exactly did you expect to happen?", 0.7,
         "Understanding expectations helps diagnosis", "expectation_clarification"),
    ]),
    (("how to", "how do i", "how can i"), [
        ("What's your current approach?", 0.8,
         "Understanding current method helps provide better guidance", "approach_understanding"),
        ("Are there any constraints I should know about?", 0.6,
         "Constraints affect the solution approach", "constraint_identification"),
    ]),
    (("learn", "understand", "explain"), [
        ("What's your current level with this technology?", 0.7,
         "Tailoring explanation to experience level", "experience_assessment"),
        ("Would you prefer a simple overview or detailed explanation?", 0.6,
         "Understanding preferred learning style", "learning_style"),
    ]),
]

AMBIGUOUS_REFERENCES = ("it", "this", "that")
EMOTIONAL_WORDS = ("frustrated", "confused", "stuck")
ALTERNATIVE_WORDS = ("or", "maybe", "might")


def _fallback_quick_replies() -> List[SmartSuggestion]:
    return [
        SmartSuggestion(type=SuggestionType.QUICK_REPLY, content="Can you provide more details?",
                        confidence=0.7, reason="Fallback suggestion", category="clarification",
                        is_fallback=True),
        SmartSuggestion(type=SuggestionType.QUICK_REPLY, content="That's helpful, thank you!",
                        confidence=0.6, reason="Fallback suggestion", category="acknowledgment",
                        is_fallback=True),
        SmartSuggestion(type=SuggestionType.QUICK_REPLY, content="Could you show me an example?",
                        confidence=0.5, reason="Fallback suggestion", category="example_request",
                        is_fallback=True),
    ]


def _by_confidence(suggestions: List[SmartSuggestion]) -> List[SmartSuggestion]:
    return sorted(suggestions, key=lambda s: s.confidence, reverse=True)


def suggestion_cache_key(messages: Sequence[Message], suggestion_type: str) -> str:
    content = "|".join(m.content[:100] for m in messages[-3:])
    return f"{suggestion_type}_{hash_string(content)}"


class SuggestionEngine:
    """Adaptive suggestion generation with caching and feedback-driven ranking"""

    def __init__(self, cache_ttl: float = None,
                 feedback_limit: int = None,
                 batch_delay: float = None,
                 templates: Optional[List[SuggestionTemplate]] = None,
                 clock: Callable[[], datetime] = datetime.now):
        ttl = cache_ttl or settings.SUGGESTION_CACHE_TTL
        self.batch_delay = settings.BATCH_DELAY if batch_delay is None else batch_delay
        self.templates = templates if templates is not None else list(DEFAULT_TEMPLATES)
        self.feedback = FeedbackStore(feedback_limit or settings.FEEDBACK_HISTORY_LIMIT)
        self._clock = clock

        self._cache: TTLCache[List[SmartSuggestion]] = TTLCache(ttl, clock=clock, name="suggestion cache")
        self._conversation_keys: Dict[str, Set[str]] = {}
        self._suggestion_categories: "OrderedDict[str, str]" = OrderedDict()
        self._sweeper = CacheSweeper(ttl, self.sweep_cache, name="suggestion cache sweep")

        logger.info("Suggestion Engine initialized")

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def start(self) -> None:
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()

    def sweep_cache(self) -> int:
        removed = self._cache.sweep()
        live = set(self._cache.keys())
        for conversation_id in list(self._conversation_keys):
            self._conversation_keys[conversation_id] &= live
            if not self._conversation_keys[conversation_id]:
                del self._conversation_keys[conversation_id]
        return removed

    def _remember(self, suggestions: Sequence[SmartSuggestion]) -> None:
        for s in suggestions:
            self._suggestion_categories[s.id] = s.category
            self._suggestion_categories.move_to_end(s.id)
        while len(self._suggestion_categories) > MAX_TRACKED_SUGGESTIONS:
            self._suggestion_categories.popitem(last=False)

    # ----- quick replies -----

    async def generate_quick_replies(self, messages: Sequence[Message], conversation_id: str,
                                     max_suggestions: int = 3,
                                     user_id: Optional[str] = None) -> List[SmartSuggestion]:
        """
        Cached, ranked quick replies for the last message window.

        Ranking uses ``user_id`` when given, otherwise the conversation id.
        """
        try:
            cache_key = suggestion_cache_key(messages, SuggestionType.QUICK_REPLY.value)
            lookup = self._cache.get(cache_key)
            if lookup.hit:
                return lookup.value[:max_suggestions]

            suggestions = await self._generate_contextual_suggestions(messages, SuggestionType.QUICK_REPLY)
            ranked = self.rank_suggestions_by_relevance(suggestions, user_id or conversation_id)
            top = ranked[:max_suggestions]

            self.set_cached_suggestions(cache_key, top, conversation_id=conversation_id)
            return top

        except Exception as e:
            logger.error(f"Failed to generate quick replies: {e}")
            fallback = _fallback_quick_replies()
            self._remember(fallback)
            return fallback

    async def _generate_contextual_suggestions(self, messages: Sequence[Message],
                                               suggestion_type: SuggestionType) -> List[SmartSuggestion]:
        if not messages:
            return []

        content = messages[-1].content.lower()
        suggestions: List[SmartSuggestion] = []

        for template in self.templates:
            if template.pattern in content:
                for candidate in template.suggestions:
                    suggestions.append(SmartSuggestion(
                        type=suggestion_type,
                        content=candidate.content,
                        confidence=candidate.confidence,
                        reason=f"Matched pattern: {template.pattern}",
                        category=candidate.category,
                    ))

        if "react" in content:
            suggestions += [
                SmartSuggestion(type=SuggestionType.QUICK_REPLY, content="Tell me more about React components",
                                confidence=0.8, reason="React context detected", category="topic_exploration"),
                SmartSuggestion(type=SuggestionType.QUICK_REPLY, content="Show me React hooks examples",
                                confidence=0.7, reason="React context detected", category="example_request"),
            ]

        if "javascript" in content or "js" in content:
            suggestions.append(SmartSuggestion(
                type=SuggestionType.QUICK_REPLY, content="Explain JavaScript fundamentals",
                confidence=0.8, reason="JavaScript context detected", category="educational",
            ))

        self._remember(suggestions)
        return suggestions

    # ----- other generators -----

    async def generate_personalized_suggestions(self, messages: Sequence[Message], user_id: str,
                                                interactions: Sequence[UserInteraction] = ()) -> List[SmartSuggestion]:
        try:
            self.feedback.update_from_interactions(user_id, interactions)
            base = await self._generate_contextual_suggestions(messages, SuggestionType.QUICK_REPLY)
            return boost_preferred(base, self.feedback.preferences(user_id))[:5]
        except Exception as e:
            logger.error(f"Failed to generate personalized suggestions: {e}")
            return []

    async def generate_action_suggestions(self, messages: Sequence[Message]) -> List[SmartSuggestion]:
        if not messages:
            return []
        content = messages[-1].content.lower()

        suggestions = [
            SmartSuggestion(type=SuggestionType.ACTION_SUGGESTION, content=text, confidence=confidence,
                            reason=reason, category=category, action=action)
            for triggers, text, confidence, reason, category, action in ACTION_RULES
            if any(trigger in content for trigger in triggers)
        ]
        self._remember(suggestions)
        return _by_confidence(suggestions)[:3]

    async def generate_follow_up_suggestions(self, last_message: Optional[Message]) -> List[SmartSuggestion]:
        if last_message is None:
            return []
        content = last_message.content.lower()

        suggestions = []
        for triggers, candidates in FOLLOW_UP_RULES:
            if any(trigger in content for trigger in triggers):
                suggestions += [
                    SmartSuggestion(type=SuggestionType.FOLLOW_UP, content=text, confidence=confidence,
                                    reason=reason, category=category)
                    for text, confidence, reason, category in candidates
                ]
        self._remember(suggestions)
        return _by_confidence(suggestions)[:4]

    async def generate_clarification_suggestions(self, message: Optional[Message]) -> List[SmartSuggestion]:
        if message is None or not message.content.strip():
            return []
        content = message.content.lower()
        words = set(content.replace("?", " ").replace(",", " ").replace(".", " ").split())

        suggestions = []
        if len(content) < 20 or words & set(AMBIGUOUS_REFERENCES):
            suggestions += [
                SmartSuggestion(type=SuggestionType.CLARIFICATION,
                                content="Can you be more specific about what you're referring to?",
                                confidence=0.9, reason="Message contains ambiguous references",
                                category="reference_clarification", priority="high"),
                SmartSuggestion(type=SuggestionType.CLARIFICATION,
                                content="What specifically are you trying to achieve?",
                                confidence=0.8, reason="Goal clarification needed",
                                category="goal_clarification", priority="high"),
            ]

        if any(word in content for word in EMOTIONAL_WORDS):
            suggestions.append(SmartSuggestion(
                type=SuggestionType.CLARIFICATION, content="What part is causing the most difficulty?",
                confidence=0.8, reason="Identify specific pain point",
                category="problem_identification", priority="high",
            ))

        if words & set(ALTERNATIVE_WORDS):
            suggestions.append(SmartSuggestion(
                type=SuggestionType.CLARIFICATION, content="Which option are you leaning towards?",
                confidence=0.7, reason="Multiple options mentioned",
                category="option_selection", priority="medium",
            ))

        self._remember(suggestions)
        return _by_confidence(suggestions)

    async def get_adaptive_suggestions(self, context: ConversationContext) -> List[SmartSuggestion]:
        if context.expertise_level == "beginner":
            complexity = "simple"
        elif context.expertise_level == "expert":
            complexity = "advanced"
        else:
            complexity = "moderate"

        suggestions = []
        if "React" in context.topics:
            suggestions.append(SmartSuggestion(
                type=SuggestionType.QUICK_REPLY,
                content="Show me a basic React example" if complexity == "simple" else "Explain React best practices",
                confidence=0.8, reason="React topic detected", category="topic_continuation",
                complexity=complexity,
            ))
        if "JavaScript" in context.topics:
            suggestions.append(SmartSuggestion(
                type=SuggestionType.QUICK_REPLY,
                content="What are JavaScript basics?" if complexity == "simple" else "Advanced JavaScript patterns",
                confidence=0.8, reason="JavaScript topic detected", category="topic_continuation",
                complexity=complexity,
            ))

        if context.sentiment == "confused":
            suggestions.append(SmartSuggestion(
                type=SuggestionType.QUICK_REPLY, content="Can you explain that differently?",
                confidence=0.9, reason="User appears confused", category="clarification_request",
                complexity="simple",
            ))
        elif context.sentiment == "frustrated":
            suggestions.append(SmartSuggestion(
                type=SuggestionType.QUICK_REPLY, content="Can we go through this step by step?",
                confidence=0.9, reason="User appears frustrated", category="step_by_step_request",
                complexity="simple",
            ))

        self._remember(suggestions)
        return suggestions[:4]

    # ----- ranking and learning -----

    def rank_suggestions_by_relevance(self, suggestions: Sequence[SmartSuggestion],
                                      user_id: str) -> List[SmartSuggestion]:
        return rank_suggestions(suggestions, self.feedback.preferences(user_id), self.feedback.history(user_id))

    async def track_suggestion_feedback(self, user_id: str, suggestion_id: str, used: bool,
                                        helpful: Optional[bool] = None,
                                        follow_up_action: Optional[str] = None,
                                        rating: Optional[float] = None,
                                        context: Optional[Dict[str, Any]] = None) -> None:
        try:
            feedback = SuggestionFeedback(
                suggestion_id=suggestion_id,
                used=used,
                helpful=helpful,
                follow_up_action=follow_up_action,
                rating=rating,
                context=context or {},
                user_id=user_id,
                category=self._suggestion_categories.get(suggestion_id),
                timestamp=self._clock(),
            )
            self.feedback.record(user_id, feedback)
        except Exception as e:
            logger.error(f"Failed to track suggestion feedback: {e}")

    async def learn_from_feedback(self, user_id: str,
                                  feedback_data: Sequence[Union[FeedbackRecord, Dict[str, Any]]]) -> Dict[str, Any]:
        rows = [row if isinstance(row, FeedbackRecord) else FeedbackRecord(**row) for row in feedback_data]
        return self.feedback.learn(user_id, rows)

    async def generate_improved_suggestions(self, user_id: str,
                                            messages: Sequence[Message]) -> List[SmartSuggestion]:
        try:
            base = await self._generate_contextual_suggestions(messages, SuggestionType.QUICK_REPLY)
            return reweight_by_strength(base, self.feedback.preferences(user_id))
        except Exception as e:
            logger.error(f"Failed to generate improved suggestions: {e}")
            return []

    async def get_suggestion_effectiveness(
            self, suggestion_id: Optional[str] = None) -> Union[SuggestionMetrics, SuggestionEffectiveness]:
        all_feedback = self.feedback.all_feedback()

        if suggestion_id is not None:
            entries = [f for f in all_feedback if f.suggestion_id == suggestion_id]
            if not entries:
                return SuggestionEffectiveness()
            return SuggestionEffectiveness(
                usage_rate=_usage_rate(entries),
                helpfulness_score=_helpfulness(entries),
                improvement_suggestions=_improvement_hints(entries),
            )

        by_category: Dict[str, List[SuggestionFeedback]] = {}
        for f in all_feedback:
            if f.category:
                by_category.setdefault(f.category, []).append(f)

        return SuggestionMetrics(
            total_generated=len(all_feedback),
            total_used=sum(1 for f in all_feedback if f.used),
            usage_rate=_usage_rate(all_feedback),
            helpfulness_score=_helpfulness(all_feedback),
            category_performance={
                category: CategoryPerformance(usage=_usage_rate(entries), helpfulness=_helpfulness(entries))
                for category, entries in by_category.items()
            },
        )

    # ----- batching -----

    async def batch_generate_suggestions(
            self, requests: Sequence[BatchSuggestionRequest]) -> List[BatchSuggestionResult]:
        """Serve requests serially in priority order, pausing between items"""
        ordered = sorted(requests, key=lambda r: PRIORITY_ORDER[r.priority], reverse=True)
        results = []

        for request in ordered:
            await asyncio.sleep(self.batch_delay)
            last_message = request.messages[-1] if request.messages else None

            if request.type == SuggestionType.QUICK_REPLY:
                suggestions = await self.generate_quick_replies(request.messages, request.conversation_id)
            elif request.type == SuggestionType.ACTION_SUGGESTION:
                suggestions = await self.generate_action_suggestions(request.messages)
            elif request.type == SuggestionType.FOLLOW_UP:
                suggestions = await self.generate_follow_up_suggestions(last_message)
            else:
                suggestions = await self.generate_clarification_suggestions(last_message)

            results.append(BatchSuggestionResult(
                conversation_id=request.conversation_id,
                type=request.type,
                suggestions=suggestions,
            ))

        return results

    # ----- cache management -----

    def set_cached_suggestions(self, key: str, suggestions: Sequence[SmartSuggestion],
                               conversation_id: Optional[str] = None) -> None:
        for suggestion in suggestions:
            result = self.validate_suggestion(suggestion)
            if not result.is_valid:
                logger.warning(f"Refusing to cache invalid suggestion: {result.errors}")
                raise SuggestionValidationError(result.errors)

        self._cache.set(key, list(suggestions))
        if conversation_id is not None:
            self._conversation_keys.setdefault(conversation_id, set()).add(key)

    def get_cached_suggestions(self, key: str) -> Optional[List[SmartSuggestion]]:
        lookup = self._cache.get(key)
        return lookup.value if lookup.hit else None

    @staticmethod
    def should_invalidate_cache(old_context: ConversationContext, new_context: ConversationContext) -> bool:
        return (
            old_context.topics != new_context.topics
            or old_context.expertise_level != new_context.expertise_level
            or old_context.complexity_level != new_context.complexity_level
            or old_context.user_intent != new_context.user_intent
        )

    def invalidate_conversation(self, conversation_id: str) -> int:
        keys = self._conversation_keys.pop(conversation_id, set())
        removed = self._cache.invalidate_many(keys)
        if removed:
            logger.debug(f"Invalidated {removed} cached suggestion sets for {conversation_id}")
        return removed

    def handle_context_change(self, conversation_id: str, old_context: Optional[ConversationContext],
                              new_context: ConversationContext) -> bool:
        """Drop the conversation's cached suggestions when its context changed materially"""
        if old_context is None or not self.should_invalidate_cache(old_context, new_context):
            return False
        self.invalidate_conversation(conversation_id)
        return True

    # ----- validation -----

    @staticmethod
    def validate_suggestion(suggestion: Union[SmartSuggestion, Dict[str, Any]]) -> ValidationResult:
        data = suggestion.model_dump() if isinstance(suggestion, SmartSuggestion) else dict(suggestion)
        errors = []

        suggestion_id = data.get("id")
        if not isinstance(suggestion_id, str) or not suggestion_id:
            errors.append("Invalid suggestion ID")

        content = data.get("content")
        if not isinstance(content, str) or not content.strip():
            errors.append("Empty content")

        confidence = data.get("confidence")
        if isinstance(confidence, bool) or not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
            errors.append("Invalid confidence score")

        suggestion_type = data.get("type")
        valid_types = {t.value for t in SuggestionType}
        if isinstance(suggestion_type, SuggestionType):
            suggestion_type = suggestion_type.value
        if suggestion_type not in valid_types:
            errors.append("Invalid suggestion type")

        return ValidationResult(is_valid=not errors, errors=errors)

    def delete_user_data(self, user_id: str) -> None:
        self.feedback.delete_user(user_id)


def _usage_rate(entries: Sequence[SuggestionFeedback]) -> float:
    return sum(1 for f in entries if f.used) / len(entries) if entries else 0.0


def _helpfulness(entries: Sequence[SuggestionFeedback]) -> float:
    rated = [f for f in entries if f.helpful is not None]
    return sum(1 for f in rated if f.helpful) / len(rated) if rated else 0.0


def _improvement_hints(entries: Sequence[SuggestionFeedback]) -> List[str]:
    hints = []
    if _usage_rate(entries) < 0.3:
        hints.append("Consider making suggestions more relevant to user context")

    rated = [f for f in entries if f.helpful is not None]
    if rated and _helpfulness(rated) < 0.5:
        hints.append("Focus on providing more actionable suggestions")

    follow_ups = list(dict.fromkeys(f.follow_up_action for f in entries if f.follow_up_action))
    if follow_ups:
        hints.append(f"Consider incorporating common follow-up actions: {', '.join(follow_ups)}")

    return hints[:3]
