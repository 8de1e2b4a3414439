"""
Confidence reweighting for suggestion ranking.

Pure functions only: preference maps and feedback history are passed in,
never looked up here.
"""

from typing import Any, Dict, List, Sequence

from .models import SmartSuggestion, SuggestionFeedback
from .utils import clamp

PREFERENCE_BOOST = 1.2


def feedback_factor(category: str, feedback: Sequence[SuggestionFeedback]) -> float:
    """0.5 baseline, weighted toward the observed helpfulness of a category"""
    rated = [f for f in feedback if f.category == category and f.helpful is not None]
    if not rated:
        return 1.0
    positive_rate = sum(1 for f in rated if f.helpful) / len(rated)
    return 0.5 + positive_rate * 0.5


def adjusted_confidence(confidence: float, category: str,
                        preferences: Dict[str, Any],
                        feedback: Sequence[SuggestionFeedback]) -> float:
    adjusted = confidence
    if preferences.get(f"prefer_{category}"):
        adjusted *= PREFERENCE_BOOST
    adjusted *= feedback_factor(category, feedback)
    return clamp(adjusted)


def rank_suggestions(suggestions: Sequence[SmartSuggestion],
                     preferences: Dict[str, Any],
                     feedback: Sequence[SuggestionFeedback]) -> List[SmartSuggestion]:
    """Annotate with ``adjusted_confidence`` and sort descending; ties keep input order"""
    ranked = [
        s.model_copy(update={
            "adjusted_confidence": adjusted_confidence(s.confidence, s.category, preferences, feedback)
        })
        for s in suggestions
    ]
    return sorted(ranked, key=lambda s: s.adjusted_confidence, reverse=True)


def boost_preferred(suggestions: Sequence[SmartSuggestion],
                    preferences: Dict[str, Any]) -> List[SmartSuggestion]:
    """Boost categories the user prefers, tagging why"""
    boosted = []
    for s in suggestions:
        if preferences.get(f"prefer_{s.category}"):
            s = s.model_copy(update={
                "confidence": clamp(s.confidence * PREFERENCE_BOOST),
                "personalization_reason": "user_prefers_category",
            })
        boosted.append(s)
    return boosted


def reweight_by_strength(suggestions: Sequence[SmartSuggestion],
                         preferences: Dict[str, Any]) -> List[SmartSuggestion]:
    """Scale preferred categories by ``1 + preference strength`` and re-sort"""
    reweighted = []
    for s in suggestions:
        if preferences.get(f"prefer_{s.category}"):
            strength = preferences.get(f"{s.category}_preference_strength", 0.5)
            s = s.model_copy(update={
                "confidence": clamp(s.confidence * (1 + strength)),
                "adaptation_reason": "user_feedback_driven",
            })
        reweighted.append(s)
    return sorted(reweighted, key=lambda s: s.confidence, reverse=True)
