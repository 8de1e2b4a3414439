"""
Suggestion feedback storage and preference learning

Keeps a bounded per-user feedback log and the preference map derived from it.
Ranking reads both through the engine; nothing here ranks.
"""

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Iterable, List, Sequence

from .models import FeedbackRecord, SuggestionFeedback, UserInteraction

logger = logging.getLogger(__name__)


@dataclass
class _TypeAggregate:
    total_rating: float = 0.0
    count: int = 0
    used: int = 0

    def add(self, rating: float, used: bool) -> None:
        self.total_rating += rating
        self.count += 1
        if used:
            self.used += 1

    @property
    def average_rating(self) -> float:
        return self.total_rating / self.count if self.count else 0.0

    @property
    def usage_rate(self) -> float:
        return self.used / self.count if self.count else 0.0


def aggregate_preferences(rows: Iterable[FeedbackRecord]) -> Dict[str, Any]:
    """
    Aggregate feedback rows into ``prefer_<type>`` flags and strengths.

    A type is preferred when its average rating is above 3 and it was used
    more than half the time.
    """
    aggregates: Dict[str, _TypeAggregate] = defaultdict(_TypeAggregate)
    for row in rows:
        aggregates[row.suggestion_type].add(row.rating, row.used)

    preferences: Dict[str, Any] = {}
    for suggestion_type, agg in aggregates.items():
        preferences[f"prefer_{suggestion_type}"] = agg.average_rating > 3 and agg.usage_rate > 0.5
        preferences[f"{suggestion_type}_preference_strength"] = agg.average_rating * agg.usage_rate
    return preferences


class FeedbackStore:
    """Per-user feedback log plus learned preference map"""

    def __init__(self, history_limit: int = 100):
        self.history_limit = history_limit
        self._feedback: Dict[str, Deque[SuggestionFeedback]] = {}
        self._preferences: Dict[str, Dict[str, Any]] = {}

    def history(self, user_id: str) -> List[SuggestionFeedback]:
        return list(self._feedback.get(user_id, []))

    def all_feedback(self) -> List[SuggestionFeedback]:
        return [f for log in self._feedback.values() for f in log]

    def preferences(self, user_id: str) -> Dict[str, Any]:
        return dict(self._preferences.get(user_id, {}))

    def _prefs(self, user_id: str) -> Dict[str, Any]:
        return self._preferences.setdefault(user_id, {})

    def record(self, user_id: str, feedback: SuggestionFeedback) -> None:
        log = self._feedback.setdefault(user_id, deque(maxlen=self.history_limit))
        log.append(feedback)

        prefs = self._prefs(user_id)
        if feedback.helpful is True:
            prefs["positive_interactions"] = prefs.get("positive_interactions", 0) + 1
        elif feedback.helpful is False:
            prefs["negative_interactions"] = prefs.get("negative_interactions", 0) + 1

        if feedback.follow_up_action:
            actions = prefs.setdefault("common_follow_up_actions", [])
            actions.append(feedback.follow_up_action)
            del actions[:-self.history_limit]

        # re-derive category preferences from the whole retained log
        rows = [
            FeedbackRecord(suggestion_type=f.category, rating=f.effective_rating, used=f.used)
            for f in log if f.category
        ]
        prefs.update(aggregate_preferences(rows))

    def learn(self, user_id: str, rows: Sequence[FeedbackRecord]) -> Dict[str, Any]:
        prefs = self._prefs(user_id)
        prefs.update(aggregate_preferences(rows))
        logger.debug(f"Learned preferences for {user_id} from {len(rows)} feedback rows")
        return dict(prefs)

    def update_from_interactions(self, user_id: str, interactions: Sequence[UserInteraction]) -> None:
        prefs = self._prefs(user_id)

        quick_replies = [i for i in interactions if i.type == "quick_reply_used"]
        if quick_replies:
            prefs["prefers_quick_replies"] = True
            prefs["quick_reply_frequency"] = len(quick_replies)

        for interaction in interactions:
            if interaction.type == "feature_usage" and interaction.data.get("feature"):
                prefs[f"uses_{interaction.data['feature']}"] = True

    def delete_user(self, user_id: str) -> None:
        self._feedback.pop(user_id, None)
        self._preferences.pop(user_id, None)
