"""
Behavior Tracker

This module records consented, anonymized user interaction events and mines
them into behavior patterns (communication style, feature usage, temporal
activity and preferences). Consent is checked at call time; nothing is stored
for a user whose data collection consent is off.
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import numpy as np

from .cache import CacheSweeper
from .config import settings
from .models import (
    ConsentStatus, PatternType, PrivacySettings, UserBehaviorPattern, UserInteraction
)
from .exceptions import StoreError
from .storage import KeyValueStore
from .utils import anonymized_id, hash_string, naive_local

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ("userId", "email", "name", "ip", "content", "message")
SNAPSHOT_KEY = "user_behavior_analytics"


@dataclass
class BehaviorAnalytics:
    """Per-user tracking state"""
    user_id: str
    anonymized_user_id: str
    privacy_settings: PrivacySettings
    interactions: Deque[UserInteraction]
    patterns: List[UserBehaviorPattern] = field(default_factory=list)
    stored_count: int = 0


def anonymize_interaction_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """Hash string-valued sensitive fields and drop the non-string ones"""
    anonymized = dict(data)
    for key in SENSITIVE_KEYS:
        if key not in anonymized:
            continue
        value = anonymized[key]
        if isinstance(value, str) and value:
            anonymized[key] = hash_string(value)
        else:
            del anonymized[key]
    return anonymized


class BehaviorTracker:
    """Consent-gated interaction telemetry and behavior pattern mining"""

    def __init__(self, store: Optional[KeyValueStore] = None,
                 max_interactions: int = None,
                 mining_interval: int = None,
                 min_interactions: int = None,
                 retention_days: int = None,
                 sweep_interval: float = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.max_interactions = max_interactions or settings.MAX_INTERACTIONS_PER_USER
        self.mining_interval = mining_interval or settings.PATTERN_MINING_INTERVAL
        self.min_interactions = min_interactions or settings.MIN_INTERACTIONS_FOR_ANALYSIS
        self.retention_days = retention_days or settings.ANALYTICS_RETENTION_DAYS
        self._clock = clock
        self._analytics: Dict[str, BehaviorAnalytics] = {}
        self._sweeper = CacheSweeper(
            sweep_interval or settings.RETENTION_SWEEP_INTERVAL,
            self.cleanup_old_data,
            name="behavior retention sweep",
        )
        logger.info("Behavior Tracker initialized")

    async def start(self) -> None:
        """Load the stored snapshot and start the retention sweep"""
        if self.store is not None:
            await self.load_snapshot()
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
        if self.store is not None:
            await self.save_snapshot()

    # ----- tracking -----

    def _default_privacy_settings(self) -> PrivacySettings:
        return PrivacySettings(retention_period=self.retention_days)

    def _get_or_create_analytics(self, user_id: str,
                                 privacy_settings: Optional[PrivacySettings] = None) -> BehaviorAnalytics:
        analytics = self._analytics.get(user_id)
        if analytics is None:
            analytics = BehaviorAnalytics(
                user_id=user_id,
                anonymized_user_id=anonymized_id(user_id),
                privacy_settings=privacy_settings or self._default_privacy_settings(),
                interactions=deque(maxlen=self.max_interactions),
            )
            self._analytics[user_id] = analytics
        return analytics

    async def track_interaction(self, user_id: str,
                                interaction: Union[Dict[str, Any], UserInteraction],
                                privacy_settings: Optional[PrivacySettings] = None) -> Optional[UserInteraction]:
        """
        Store an interaction if consent allows.

        Args:
            user_id: The user the interaction belongs to
            interaction: ``{type, timestamp?, data}`` or a ``UserInteraction``
            privacy_settings: Consent in force for this call; stored for the user when given

        Returns:
            The stored interaction, or None when data collection is off
        """
        if privacy_settings is not None and not privacy_settings.data_collection:
            logger.debug(f"Data collection disabled for {user_id}; interaction skipped")
            return None

        analytics = self._analytics.get(user_id)
        if analytics is None and privacy_settings is None:
            logger.debug(f"No consent recorded for {user_id}; interaction skipped")
            return None
        analytics = self._get_or_create_analytics(user_id, privacy_settings)
        if privacy_settings is not None:
            analytics.privacy_settings = privacy_settings

        if not analytics.privacy_settings.data_collection:
            logger.debug(f"Data collection disabled for {user_id}; interaction skipped")
            return None

        stored = self._process_interaction(interaction, analytics)
        # deque(maxlen) evicts the oldest interaction first
        analytics.interactions.append(stored)
        analytics.stored_count += 1

        if analytics.stored_count % self.mining_interval == 0:
            await self.analyze_user_behavior(user_id)

        await self._save_if_configured()
        return stored

    def _process_interaction(self, interaction: Union[Dict[str, Any], UserInteraction],
                             analytics: BehaviorAnalytics) -> UserInteraction:
        if isinstance(interaction, UserInteraction):
            payload = interaction.model_dump()
        else:
            payload = dict(interaction)
        payload.pop("id", None)
        payload["anonymized_user_id"] = analytics.anonymized_user_id
        payload.setdefault("timestamp", self._clock())
        data = dict(payload.get("data") or {})
        if analytics.privacy_settings.anonymize_data:
            data = anonymize_interaction_data(data)
        payload["data"] = data
        stored = UserInteraction.model_validate(payload)
        return stored.model_copy(update={"timestamp": naive_local(stored.timestamp)})

    def get_interactions(self, user_id: str) -> List[UserInteraction]:
        analytics = self._analytics.get(user_id)
        return list(analytics.interactions) if analytics else []

    # ----- pattern mining -----

    async def analyze_user_behavior(self, user_id: str) -> List[UserBehaviorPattern]:
        """Recompute (and replace) the user's behavior patterns"""
        analytics = self._analytics.get(user_id)
        if analytics is None or len(analytics.interactions) < self.min_interactions:
            return []

        interactions = list(analytics.interactions)
        candidates = [
            self._analyze_communication_patterns(interactions),
            self._analyze_feature_usage(interactions),
            self._analyze_temporal_patterns(interactions),
            self._analyze_preference_patterns(interactions),
        ]
        patterns = [pattern for pattern in candidates if pattern is not None]

        analytics.patterns = patterns
        logger.info(f"Mined {len(patterns)} behavior patterns for user {user_id}")
        return patterns

    def _analyze_communication_patterns(self, interactions: List[UserInteraction]) -> Optional[UserBehaviorPattern]:
        messages = [i for i in interactions if i.type == "message_sent"]
        if len(messages) < 3:
            return None

        lengths = np.array([float(i.data.get("messageLength") or 0) for i in messages])
        response_times = [i.data["responseTime"] for i in messages
                          if isinstance(i.data.get("responseTime"), (int, float))]
        avg_length = float(lengths.mean())
        avg_response_time = float(np.mean(response_times)) if response_times else 0.0
        detailed = avg_length >= 100

        return UserBehaviorPattern(
            type=PatternType.COMMUNICATION_STYLE,
            pattern="detailed" if detailed else "concise",
            confidence=0.8,
            data={
                "averageMessageLength": avg_length,
                "averageResponseTime": avg_response_time,
                "preferredStyle": "verbose" if detailed else "brief",
            },
            last_updated=self._clock(),
        )

    def _analyze_feature_usage(self, interactions: List[UserInteraction]) -> Optional[UserBehaviorPattern]:
        usage = Counter(i.data["feature"] for i in interactions
                        if isinstance(i.data.get("feature"), str) and i.data["feature"])
        if not usage:
            return None

        return UserBehaviorPattern(
            type=PatternType.FEATURE_USAGE,
            pattern="frequent_features",
            confidence=0.9,
            data={
                "mostUsedFeatures": [feature for feature, _ in usage.most_common(3)],
                "featureUsageCount": dict(usage),
            },
            last_updated=self._clock(),
        )

    def _analyze_temporal_patterns(self, interactions: List[UserInteraction]) -> Optional[UserBehaviorPattern]:
        if len(interactions) < self.min_interactions:
            return None

        hour_counts = np.bincount([i.timestamp.hour for i in interactions], minlength=24)
        peak_hour = int(np.argmax(hour_counts))
        if peak_hour >= 22 or peak_hour <= 6:
            user_type = "night_owl"
        elif 5 <= peak_hour <= 9:
            user_type = "early_bird"
        else:
            user_type = "regular"

        return UserBehaviorPattern(
            type=PatternType.TEMPORAL_PATTERN,
            pattern=user_type,
            confidence=0.7,
            data={
                "peakActivityHour": peak_hour,
                "activityDistribution": hour_counts.tolist(),
                "userType": user_type,
            },
            last_updated=self._clock(),
        )

    def _analyze_preference_patterns(self, interactions: List[UserInteraction]) -> Optional[UserBehaviorPattern]:
        votes = {"theme": Counter(), "language": Counter(), "responseStyle": Counter()}
        for interaction in interactions:
            for key, counter in votes.items():
                value = interaction.data.get(key)
                if value:
                    counter[value] += 1

        top = {key: (counter.most_common(1)[0][0] if counter else None) for key, counter in votes.items()}
        if not any(top.values()):
            return None

        return UserBehaviorPattern(
            type=PatternType.PREFERENCE_PATTERN,
            pattern="user_preferences",
            confidence=0.85,
            data={
                "preferredTheme": top["theme"],
                "preferredLanguage": top["language"],
                "preferredResponseStyle": top["responseStyle"],
            },
            last_updated=self._clock(),
        )

    def get_behavior_patterns(self, user_id: str) -> List[UserBehaviorPattern]:
        """Patterns for the user, only if analytics consent is on"""
        analytics = self._analytics.get(user_id)
        if analytics is None or not analytics.privacy_settings.analytics:
            return []
        return list(analytics.patterns)

    # ----- consent -----

    def update_privacy_settings(self, user_id: str, **changes: Any) -> PrivacySettings:
        analytics = self._get_or_create_analytics(user_id)
        analytics.privacy_settings = analytics.privacy_settings.model_copy(update=changes)

        if not analytics.privacy_settings.data_collection:
            analytics.interactions.clear()
            analytics.patterns = []
            analytics.stored_count = 0
            logger.info(f"Data collection revoked for {user_id}; interactions and patterns cleared")

        return analytics.privacy_settings

    def update_consent(self, user_id: str, data_collection: bool, analytics: bool,
                       personalization: bool) -> PrivacySettings:
        return self.update_privacy_settings(
            user_id,
            data_collection=data_collection,
            analytics=analytics,
            personalization=personalization,
            anonymize_data=True,
            consent_date=self._clock(),
            retention_period=self.retention_days,
        )

    def get_consent_status(self, user_id: str) -> ConsentStatus:
        analytics = self._analytics.get(user_id)
        if analytics is None:
            return ConsentStatus(data_collection=False, analytics=False, personalization=True)
        prefs = analytics.privacy_settings
        return ConsentStatus(
            data_collection=prefs.data_collection,
            analytics=prefs.analytics,
            personalization=prefs.personalization,
            consent_date=prefs.consent_date,
        )

    def get_anonymized_interactions(self, user_id: str) -> List[UserInteraction]:
        analytics = self._analytics.get(user_id)
        if analytics is None or not analytics.privacy_settings.anonymize_data:
            return []
        return [
            interaction.model_copy(update={"data": anonymize_interaction_data(interaction.data)})
            for interaction in analytics.interactions
        ]

    # ----- compliance -----

    def export_user_data(self, user_id: str) -> Optional[Dict[str, Any]]:
        analytics = self._analytics.get(user_id)
        if analytics is None:
            return None
        return {
            "interactions": [i.model_dump(mode="json") for i in analytics.interactions],
            "patterns": [p.model_dump(mode="json") for p in analytics.patterns],
            "privacy_settings": analytics.privacy_settings.model_dump(mode="json"),
        }

    async def delete_user_data(self, user_id: str) -> bool:
        existed = self._analytics.pop(user_id, None) is not None
        await self._save_if_configured()
        if existed:
            logger.info(f"Deleted behavior data for {user_id}")
        return existed

    async def cleanup_old_data(self, now: Optional[datetime] = None) -> int:
        """Drop interactions and patterns older than each user's retention period"""
        now = naive_local(now or self._clock())
        removed_users = []

        for user_id, analytics in list(self._analytics.items()):
            days = analytics.privacy_settings.retention_period or self.retention_days
            cutoff = now - timedelta(days=days)
            try:
                kept = [i for i in analytics.interactions if naive_local(i.timestamp) > cutoff]
                patterns = [p for p in analytics.patterns if naive_local(p.last_updated) > cutoff]
            except (AttributeError, TypeError, ValueError) as e:
                logger.error(f"Retention sweep skipped user {user_id}: {e}")
                continue
            analytics.interactions = deque(kept, maxlen=self.max_interactions)
            analytics.patterns = patterns

            if not analytics.interactions and not analytics.patterns:
                del self._analytics[user_id]
                removed_users.append(user_id)

        if removed_users:
            logger.debug(f"Retention sweep removed {len(removed_users)} users")
        await self._save_if_configured()
        return len(removed_users)

    def has_user(self, user_id: str) -> bool:
        return user_id in self._analytics

    # ----- persistence -----

    async def _save_if_configured(self) -> None:
        if self.store is None:
            return
        try:
            await self.save_snapshot()
        except StoreError as e:
            logger.error(f"Failed to save behavior analytics: {e}")

    async def save_snapshot(self) -> None:
        if self.store is None:
            return
        snapshot = {}
        for user_id, analytics in self._analytics.items():
            snapshot[user_id] = {
                "anonymized_user_id": analytics.anonymized_user_id,
                "stored_count": analytics.stored_count,
                **self.export_user_data(user_id),
            }
        await self.store.set(SNAPSHOT_KEY, snapshot)

    async def load_snapshot(self) -> int:
        """Restore per-user state from the store; malformed users are skipped"""
        if self.store is None:
            return 0
        data = await self.store.get(SNAPSHOT_KEY)
        if not isinstance(data, dict):
            return 0

        loaded = 0
        for user_id, entry in data.items():
            try:
                analytics = BehaviorAnalytics(
                    user_id=user_id,
                    anonymized_user_id=entry.get("anonymized_user_id") or anonymized_id(user_id),
                    privacy_settings=PrivacySettings.model_validate(entry["privacy_settings"]),
                    interactions=deque(
                        (UserInteraction.model_validate(i) for i in entry.get("interactions", [])),
                        maxlen=self.max_interactions,
                    ),
                    patterns=[UserBehaviorPattern.model_validate(p) for p in entry.get("patterns", [])],
                    stored_count=int(entry.get("stored_count", 0)),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed behavior snapshot for {user_id}: {e}")
                continue
            self._analytics[user_id] = analytics
            loaded += 1

        logger.info(f"Loaded behavior data for {loaded} users")
        return loaded
