"""
Context inference providers

``ContextInferenceProvider`` is the seam between context caching/shift
detection and whatever derives topics, sentiment and intent from text.
``KeywordInferenceProvider`` is the deterministic lexicon-based stand-in.
"""

import re
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

from .models import ContextAnalysisResult, Message

# Order matters: topics are reported in table order.
TOPIC_KEYWORDS: Dict[str, List[str]] = {
    "React": ["react", "jsx", "component", "hook", "props"],
    "JavaScript": ["javascript", "js ", "function", "variable", "array", "closure"],
    "TypeScript": ["typescript", "interface", "generic"],
    "CSS": ["css", "stylesheet", "styling", "animation", "selector"],
    "CSS Grid": ["grid"],
    "Flexbox": ["flexbox", "flex-direction", "justify-content"],
    "HTML": ["html", "element", "attribute", "markup"],
    "Node.js": ["node", "npm", "express", "server"],
    "Python": ["python", "django", "flask", "pip "],
    "Testing": ["test", "unit", "integration", "jest", "pytest"],
    "Performance": ["performance", "optimization", "speed", "memory"],
    "Debugging": ["debug", "error", "bug", "console", "troubleshoot"],
    "API": ["api", "rest", "graphql", "fetch", "endpoint"],
    "Database": ["database", "sql", "query", "schema"],
}

POSITIVE_WORDS = ["great", "awesome", "perfect", "excellent", "love", "amazing", "fantastic", "thanks"]
NEGATIVE_WORDS = ["terrible", "awful", "hate", "frustrated", "confused", "difficult", "stuck", "annoying"]
QUESTION_WORDS = ["how", "what", "why", "when", "where", "help"]

TECHNICAL_TERMS = [
    "async", "await", "promise", "callback", "closure", "prototype", "constructor",
    "recursion", "middleware", "concurrency",
]

BEGINNER_PHRASES = ["how do i", "what is", "i'm new", "beginner", "basic", "simple"]
EXPERT_PHRASES = ["optimize", "performance", "architecture", "scalability", "best practices", "advanced"]

# First matching family wins.
INTENT_KEYWORDS: List = [
    ("learning", ["learn", "understand"]),
    ("problem_solving", ["fix", "debug", "error"]),
    ("implementation", ["build", "create", "implement"]),
    ("optimization", ["optimize", "improve"]),
    ("code_review", ["review", "feedback"]),
]

ENTITY_PATTERNS = [
    re.compile(r"\b[A-Z][a-zA-Z]+Component\b"),
    re.compile(r"\buse[A-Z][a-zA-Z]+\b"),
    re.compile(r"\b[a-zA-Z]+\(\)"),
    re.compile(r"\b[A-Z_]{2,}\b"),
]


def _joined(messages: Sequence[Message], user_only: bool = False) -> str:
    selected = [m for m in messages if m.is_user] if user_only else list(messages)
    return " ".join(m.content for m in selected).lower()


def _count_present(text: str, lexicon: Sequence[str]) -> int:
    return sum(1 for word in lexicon if word in text)


class ContextInferenceProvider(ABC):
    """Derives a raw analysis result from a message window"""

    @abstractmethod
    async def analyze(self, messages: Sequence[Message]) -> ContextAnalysisResult:
        ...

    @abstractmethod
    def extract_topics(self, messages: Sequence[Message]) -> List[str]:
        ...

    @abstractmethod
    def analyze_sentiment(self, messages: Sequence[Message]) -> str:
        ...


class KeywordInferenceProvider(ContextInferenceProvider):
    """Keyword and lexicon heuristics"""

    def __init__(self, max_topics: int = 5, topic_keywords: Dict[str, List[str]] = None):
        self.max_topics = max_topics
        self.topic_keywords = topic_keywords or TOPIC_KEYWORDS

    async def analyze(self, messages: Sequence[Message]) -> ContextAnalysisResult:
        return ContextAnalysisResult(
            topics=self.extract_topics(messages),
            sentiment=self.analyze_sentiment(messages),
            complexity=self.analyze_complexity(messages),
            expertise_level=self.infer_expertise_level(messages),
            conversation_flow=self.analyze_conversation_flow(messages),
            key_entities=self.extract_key_entities(messages),
            user_intent=self.infer_user_intent(messages),
            confidence=0.85,
        )

    def extract_topics(self, messages: Sequence[Message]) -> List[str]:
        # trailing space lets short keywords like "js " match at the end of text
        text = _joined(messages) + " "
        topics = [
            topic for topic, keywords in self.topic_keywords.items()
            if any(keyword in text for keyword in keywords)
        ]
        return topics[:self.max_topics]

    def analyze_sentiment(self, messages: Sequence[Message]) -> str:
        text = _joined(messages, user_only=True)
        positive = _count_present(text, POSITIVE_WORDS)
        negative = _count_present(text, NEGATIVE_WORDS)
        questions = _count_present(text, QUESTION_WORDS)

        if negative > positive:
            return "frustrated"
        if questions > 2:
            return "seeking_help"
        if positive > 0:
            return "positive"
        return "neutral"

    def analyze_complexity(self, messages: Sequence[Message]) -> str:
        text = " ".join(m.content for m in messages)
        words = text.split()
        avg_word_length = sum(len(w) for w in words) / len(words) if words else 0.0
        technical = _count_present(text.lower(), TECHNICAL_TERMS)

        if avg_word_length > 6 or technical >= 4:
            return "high"
        if avg_word_length > 4 or technical >= 2:
            return "medium"
        return "low"

    def infer_expertise_level(self, messages: Sequence[Message]) -> str:
        text = _joined(messages, user_only=True)
        beginner = _count_present(text, BEGINNER_PHRASES)
        expert = _count_present(text, EXPERT_PHRASES)

        if expert > beginner:
            return "expert"
        if beginner > expert:
            return "beginner"
        return "intermediate"

    def infer_user_intent(self, messages: Sequence[Message]) -> str:
        text = _joined(messages, user_only=True)
        for intent, keywords in INTENT_KEYWORDS:
            if any(keyword in text for keyword in keywords):
                return intent
        return "general_assistance"

    def extract_key_entities(self, messages: Sequence[Message]) -> List[str]:
        text = " ".join(m.content for m in messages)
        entities: List[str] = []
        for pattern in ENTITY_PATTERNS:
            entities.extend(pattern.findall(text)[:3])
        return list(dict.fromkeys(entities))[:5]

    def analyze_conversation_flow(self, messages: Sequence[Message]) -> str:
        if len(messages) < 2:
            return "initial"
        user_messages = [m for m in messages if m.is_user]
        if user_messages:
            avg_length = sum(len(m.content) for m in user_messages) / len(user_messages)
            if avg_length > 200:
                return "detailed_discussion"
        if len(messages) > 10:
            return "extended_conversation"
        if any("?" in m.content for m in user_messages):
            return "q_and_a"
        return "problem_solving"
