# adaptive_chat/models.py
"""
Data models for the behavior, context, suggestion and session layer
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Literal
from pydantic import BaseModel, Field, field_validator
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


ComplexityLevel = Literal["low", "medium", "high", "unknown"]
ExpertiseLevel = Literal["beginner", "intermediate", "expert", "unknown"]
Priority = Literal["high", "medium", "low"]
DeviceType = Literal["desktop", "mobile", "tablet"]


class PatternType(str, Enum):
    """Kinds of mined behavior patterns"""
    COMMUNICATION_STYLE = "communication_style"
    FEATURE_USAGE = "feature_usage"
    TEMPORAL_PATTERN = "temporal_pattern"
    PREFERENCE_PATTERN = "preference_pattern"


class SuggestionType(str, Enum):
    """Kinds of suggestions offered to the user"""
    QUICK_REPLY = "quick_reply"
    ACTION_SUGGESTION = "action_suggestion"
    FOLLOW_UP = "follow_up"
    CLARIFICATION = "clarification"


class ShiftType(str, Enum):
    PIVOT = "pivot"
    EXPANSION = "expansion"
    CLARIFICATION = "clarification"
    PROGRESSION = "progression"


class Message(BaseModel):
    """Individual message in a conversation"""
    id: str = Field(default_factory=_new_id)
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_user(self) -> bool:
        return self.role == "user"


# ----- Behavior tracking -----

class PrivacySettings(BaseModel):
    """Per-user consent configuration gating behavior tracking"""
    data_collection: bool = False
    analytics: bool = False
    personalization: bool = True
    anonymize_data: bool = True
    retention_period: Optional[int] = None  # days
    consent_date: Optional[datetime] = None


class UserInteraction(BaseModel):
    """A single stored interaction event"""
    id: str = Field(default_factory=_new_id)
    type: str
    timestamp: datetime = Field(default_factory=datetime.now)
    data: Dict[str, Any] = Field(default_factory=dict)
    anonymized_user_id: Optional[str] = None

    model_config = {"frozen": True}


class UserBehaviorPattern(BaseModel):
    """A labeled summary mined from a user's interactions"""
    id: str = Field(default_factory=_new_id)
    type: PatternType
    pattern: str
    confidence: float = Field(ge=0.0, le=1.0)
    data: Dict[str, Any] = Field(default_factory=dict)
    last_updated: datetime = Field(default_factory=datetime.now)


class ConsentStatus(BaseModel):
    data_collection: bool
    analytics: bool
    personalization: bool
    consent_date: Optional[datetime] = None


# ----- Conversation context -----

class ConversationContext(BaseModel):
    """Structured summary derived from a message history"""
    id: str = Field(default_factory=_new_id)
    topics: List[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    user_intent: str = "general_assistance"
    complexity_level: ComplexityLevel = "medium"
    expertise_level: ExpertiseLevel = "intermediate"
    last_analyzed: datetime = Field(default_factory=datetime.now)
    error: Optional[str] = None
    fallback_used: Optional[bool] = None
    is_fallback: Optional[bool] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        if not v or not v.strip():
            raise ValueError("context id must not be empty")
        return v

    @field_validator("topics")
    @classmethod
    def dedupe_topics(cls, v):
        # ordered set: keep first occurrence
        return list(dict.fromkeys(v))


class ContextAnalysisResult(BaseModel):
    """Raw output of a context inference provider"""
    topics: List[str] = Field(default_factory=list)
    sentiment: str = "neutral"
    complexity: ComplexityLevel = "medium"
    expertise_level: ExpertiseLevel = "intermediate"
    conversation_flow: str = "initial"
    key_entities: List[str] = Field(default_factory=list)
    user_intent: str = "general_assistance"
    confidence: float = 0.85


class ContextShift(BaseModel):
    from_topic: str
    to_topic: str
    shift_type: ShiftType
    confidence: float
    message_index: int
    timestamp: datetime = Field(default_factory=datetime.now)


class ConversationInsights(BaseModel):
    dominant_topics: List[str]
    user_emotional_state: str
    recommended_approach: str
    suggested_tone: str
    estimated_resolution_complexity: str
    learning_opportunities: List[str] = Field(default_factory=list)


class ResponseStyle(BaseModel):
    tone: str = "neutral"
    detail_level: str = "medium"
    code_examples: str = "moderate"
    explanation_style: str = "balanced"
    encouragement: bool = False
    assumptions: str = "none"


class ExpertiseProgression(BaseModel):
    from_level: str = "unknown"
    to_level: str = "unknown"
    trajectory: Literal["improving", "stable", "declining"] = "stable"


class MergedUserContext(BaseModel):
    dominant_topics: List[str] = Field(default_factory=list)
    expertise_progression: ExpertiseProgression = Field(default_factory=ExpertiseProgression)
    learning_pattern: Literal["sequential", "exploratory", "problem_driven", "mixed"] = "mixed"
    preferred_complexity: str = "intermediate"
    communication_style: Literal["direct", "conversational", "detailed", "minimal"] = "conversational"


# ----- Suggestions -----

class SmartSuggestion(BaseModel):
    """A candidate reply, action, follow-up or clarification"""
    id: str = Field(default_factory=_new_id)
    type: SuggestionType
    content: str
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    category: str = "general"
    action: Optional[str] = None
    complexity: Optional[str] = None
    priority: Optional[Priority] = None
    is_fallback: Optional[bool] = None
    personalization_reason: Optional[str] = None
    adaptation_reason: Optional[str] = None
    adjusted_confidence: Optional[float] = None


class SuggestionFeedback(BaseModel):
    """Usage/helpfulness signal for a suggestion"""
    suggestion_id: str
    used: bool
    helpful: Optional[bool] = None
    follow_up_action: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)
    user_id: Optional[str] = None
    category: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=1.0, le=5.0)
    context: Dict[str, Any] = Field(default_factory=dict)

    @property
    def effective_rating(self) -> float:
        if self.rating is not None:
            return self.rating
        if self.helpful is True:
            return 5.0
        if self.helpful is False:
            return 1.0
        return 3.0


class FeedbackRecord(BaseModel):
    """One row of explicit feedback history used for learning"""
    suggestion_type: str
    rating: float
    used: bool


class BatchSuggestionRequest(BaseModel):
    messages: List[Message]
    conversation_id: str
    priority: Priority = "medium"
    type: SuggestionType = SuggestionType.QUICK_REPLY


class BatchSuggestionResult(BaseModel):
    conversation_id: str
    type: SuggestionType
    suggestions: List[SmartSuggestion] = Field(default_factory=list)


class CategoryPerformance(BaseModel):
    usage: float = 0.0
    helpfulness: float = 0.0


class SuggestionMetrics(BaseModel):
    total_generated: int = 0
    total_used: int = 0
    usage_rate: float = 0.0
    helpfulness_score: float = 0.0
    category_performance: Dict[str, CategoryPerformance] = Field(default_factory=dict)


class SuggestionEffectiveness(BaseModel):
    usage_rate: float = 0.0
    helpfulness_score: float = 0.0
    improvement_suggestions: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)


# ----- Sessions -----

class UserPreferences(BaseModel):
    theme: Literal["light", "dark", "system"] = "system"
    language: str = "en"
    notifications: bool = True
    accessibility_mode: bool = False
    font_size: Literal["small", "medium", "large", "extra-large"] = "medium"
    high_contrast: bool = False
    reduced_motion: bool = False
    conversation_style: Literal["casual", "formal", "technical"] = "casual"
    custom_settings: Dict[str, Any] = Field(default_factory=dict)


class SessionPersonalizations(BaseModel):
    theme: str = "system"
    adaptive_settings: Dict[str, Any] = Field(default_factory=dict)
    learned_preferences: Dict[str, Any] = Field(default_factory=dict)


class SessionMetadata(BaseModel):
    device_type: DeviceType = "desktop"
    device_types: List[DeviceType] = Field(default_factory=list)
    browser: str = "Unknown"
    user_agent: str = ""
    timezone: str = "UTC"
    language: str = "en"


class UserSession(BaseModel):
    """A bounded period of user activity"""
    id: str = Field(default_factory=_new_id)
    user_id: str
    start_time: datetime = Field(default_factory=datetime.now)
    last_activity: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    is_active: bool = True
    session_duration: float = 0.0  # seconds
    interaction_count: int = 0
    preferences: UserPreferences = Field(default_factory=UserPreferences)
    personalizations: SessionPersonalizations = Field(default_factory=SessionPersonalizations)
    metadata: SessionMetadata = Field(default_factory=SessionMetadata)
    conversation_contexts: Dict[str, ConversationContext] = Field(default_factory=dict)
    behavior_patterns: List[UserBehaviorPattern] = Field(default_factory=list)


class SessionMetrics(BaseModel):
    average_session_duration: float = 0.0
    total_sessions: int = 0
    active_sessions_count: int = 0
    most_active_time_of_day: str = "unknown"
    frequent_device_type: str = "unknown"
    session_consistency: float = 0.0


class SessionInsights(BaseModel):
    usage_patterns: Dict[str, Any]
    device_preferences: Dict[str, Any]
    engagement_metrics: Dict[str, Any]
    temporal_patterns: Dict[str, Any]
