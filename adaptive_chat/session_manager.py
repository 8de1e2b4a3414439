"""
Session Manager

Session lifecycle per user: one active session at a time, a bounded history
of ended sessions, inactivity timeout, resume from history, cross-device
merge, metrics and insights, compliance export/erasure and backups.
"""

import asyncio
import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

import numpy as np
from pydantic import ValidationError

from .behavior_tracker import BehaviorTracker
from .cache import CacheSweeper
from .config import settings
from .context_analyzer import ContextAnalyzer
from .exceptions import SessionError, StoreError
from .models import (
    ConversationContext, Message, PatternType, SessionInsights, SessionMetadata, SessionMetrics,
    SessionPersonalizations, UserBehaviorPattern, UserPreferences, UserSession
)
from .scheduling import KeyedTimer
from .storage import KeyValueStore
from .utils import format_hour

logger = logging.getLogger(__name__)

STORAGE_KEY = "user_sessions"
BACKUP_KEY = "session_backups"
BACKUP_VERSION = "1.0.0"
CONSISTENCY_BASELINE = timedelta(days=7).total_seconds()

MOBILE_AGENTS = re.compile(r"mobile|android|iphone|ipod|blackberry|iemobile")
TABLET_AGENTS = re.compile(r"tablet|ipad")


def detect_device_type(user_agent: str) -> str:
    agent = (user_agent or "").lower()
    if MOBILE_AGENTS.search(agent):
        return "mobile"
    if TABLET_AGENTS.search(agent):
        return "tablet"
    return "desktop"


def detect_browser(user_agent: str) -> str:
    agent = (user_agent or "").lower()
    if "edg" in agent:
        return "Edge"
    if "chrome" in agent:
        return "Chrome"
    if "firefox" in agent:
        return "Firefox"
    if "safari" in agent:
        return "Safari"
    return "Unknown"


def session_device_types(session: UserSession) -> List[str]:
    return list(dict.fromkeys([*session.metadata.device_types, session.metadata.device_type]))


def longest_streak(sessions: Sequence[UserSession]) -> int:
    """Longest run of consecutive calendar days with at least one session start"""
    days = sorted({s.start_time.date() for s in sessions})
    if not days:
        return 0
    longest = current = 1
    for previous, day in zip(days, days[1:]):
        if (day - previous).days == 1:
            current += 1
            longest = max(longest, current)
        else:
            current = 1
    return longest


def session_frequency(sessions: Sequence[UserSession]) -> float:
    """Sessions per day across the span of session start times"""
    if len(sessions) < 2:
        return 0.0
    starts = sorted(s.start_time for s in sessions)
    days = (starts[-1] - starts[0]).total_seconds() / 86400
    return len(sessions) / days if days > 0 else 0.0


class SessionManager:
    """Per-user session lifecycle and cross-device continuity"""

    def __init__(self, store: Optional[KeyValueStore] = None,
                 tracker: Optional[BehaviorTracker] = None,
                 analyzer: Optional[ContextAnalyzer] = None,
                 session_timeout: float = None,
                 sweep_interval: float = None,
                 max_history: int = None,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store
        self.tracker = tracker
        self.analyzer = analyzer
        self.session_timeout = session_timeout or settings.SESSION_TIMEOUT
        self.max_history = max_history or settings.MAX_SESSION_HISTORY
        self._clock = clock

        self._active_sessions: Dict[str, UserSession] = {}
        self._session_history: Dict[str, List[UserSession]] = {}
        self._errors: Dict[str, str] = {}
        self._timers = KeyedTimer()
        self._background_tasks: Set[asyncio.Task] = set()
        self._sweeper = CacheSweeper(
            sweep_interval or settings.SESSION_SWEEP_INTERVAL,
            self.cleanup_inactive_sessions,
            name="session inactivity sweep",
        )

        logger.info("Session Manager initialized")

    async def start(self) -> None:
        if self.store is not None:
            await self.load_snapshot()
        await self._sweeper.start()

    async def stop(self) -> None:
        await self._sweeper.stop()
        self._timers.cancel_all()
        for task in list(self._background_tasks):
            task.cancel()
        await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks.clear()
        await self._persist()

    # ----- errors -----

    def get_session_error(self, user_id: str) -> Optional[str]:
        return self._errors.get(user_id)

    def _record_error(self, user_id: str, operation: str, error: Exception) -> None:
        message = f"{operation} failed: {error}"
        self._errors[user_id] = message
        logger.error(f"Session error for {user_id}: {message}")

    def _clear_error(self, user_id: str) -> None:
        self._errors.pop(user_id, None)

    # ----- lifecycle -----

    async def create_session(self, user_id: str,
                             initial_preferences: Optional[Union[UserPreferences, Dict[str, Any]]] = None,
                             user_agent: str = "",
                             timezone: str = "UTC",
                             language: str = "en") -> Optional[UserSession]:
        """
        Start a new active session for the user.

        An existing active session is ended and moved to history first.
        Returns None and records the error when the session cannot be created.
        """
        try:
            session = self._build_session(user_id, initial_preferences, user_agent, timezone, language)
        except (ValidationError, SessionError) as e:
            self._record_error(user_id, "create_session", e)
            return None

        await self.end_active_session(user_id)
        self._active_sessions[user_id] = session
        self._arm_inactivity_timer(user_id, session.id)
        self._clear_error(user_id)
        await self._persist()

        logger.info(f"Created session {session.id} for user {user_id}")
        return session

    def _build_session(self, user_id: str,
                       initial_preferences: Optional[Union[UserPreferences, Dict[str, Any]]],
                       user_agent: str, timezone: str, language: str) -> UserSession:
        if not user_id:
            raise SessionError("user id is required")

        if isinstance(initial_preferences, UserPreferences):
            preferences = initial_preferences.model_copy(deep=True)
        else:
            preferences = UserPreferences.model_validate(initial_preferences or {})

        now = self._clock()
        device_type = detect_device_type(user_agent)
        return UserSession(
            user_id=user_id,
            start_time=now,
            last_activity=now,
            preferences=preferences,
            personalizations=SessionPersonalizations(theme=preferences.theme),
            metadata=SessionMetadata(
                device_type=device_type,
                device_types=[device_type],
                browser=detect_browser(user_agent),
                user_agent=user_agent,
                timezone=timezone,
                language=language,
            ),
        )

    def _is_timed_out(self, session: UserSession, now: datetime) -> bool:
        return (now - session.last_activity).total_seconds() > self.session_timeout

    async def get_active_session(self, user_id: str) -> Optional[UserSession]:
        """The user's active session; a session idle past the timeout is ended here"""
        session = self._active_sessions.get(user_id)
        if session is None:
            return None
        if self._is_timed_out(session, self._clock()):
            logger.info(f"Session {session.id} for {user_id} timed out")
            await self.end_session(user_id)
            return None
        return session

    def _arm_inactivity_timer(self, user_id: str, session_id: str, delay: Optional[float] = None) -> None:
        def _expire():
            task = asyncio.ensure_future(self._expire_session(user_id, session_id))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)

        self._timers.schedule(user_id, self.session_timeout if delay is None else delay, _expire)

    def _arm_restored_timer(self, user_id: str, session: UserSession) -> None:
        """Arm a loaded session's timer for whatever is left of its idle allowance"""
        idle = (self._clock() - session.last_activity).total_seconds()
        self._arm_inactivity_timer(user_id, session.id, max(0.0, self.session_timeout - idle))

    async def _expire_session(self, user_id: str, session_id: str) -> None:
        session = self._active_sessions.get(user_id)
        if session is not None and session.id == session_id:
            logger.info(f"Session {session_id} for {user_id} ended after inactivity")
            await self.end_session(user_id)

    async def update_session_activity(self, user_id: str,
                                      interaction_type: Optional[str] = None) -> Optional[UserSession]:
        session = await self.get_active_session(user_id)
        if session is None:
            return None

        session.last_activity = self._clock()
        session.session_duration = (session.last_activity - session.start_time).total_seconds()
        session.interaction_count += 1
        self._arm_inactivity_timer(user_id, session.id)

        if interaction_type:
            logger.debug(f"Session {session.id} activity: {interaction_type}")
        await self._persist()
        return session

    async def update_session_preferences(self, user_id: str,
                                         preferences: Dict[str, Any]) -> Optional[UserSession]:
        session = await self.get_active_session(user_id)
        if session is None:
            return None
        session.preferences = UserPreferences.model_validate({**session.preferences.model_dump(), **preferences})
        return await self.update_session_activity(user_id, "preference_update")

    async def add_conversation_context(self, user_id: str, conversation_id: str,
                                       context: ConversationContext) -> Optional[UserSession]:
        session = await self.get_active_session(user_id)
        if session is None:
            return None
        session.conversation_contexts[conversation_id] = context
        return await self.update_session_activity(user_id, "conversation_context")

    @staticmethod
    def _put_pattern(session: UserSession, pattern: UserBehaviorPattern) -> None:
        for index, existing in enumerate(session.behavior_patterns):
            if existing.type == pattern.type:
                session.behavior_patterns[index] = pattern
                return
        session.behavior_patterns.append(pattern)

    async def add_behavior_pattern(self, user_id: str, pattern: UserBehaviorPattern) -> Optional[UserSession]:
        """Store a pattern on the active session, replacing any of the same type"""
        session = await self.get_active_session(user_id)
        if session is None:
            return None
        self._put_pattern(session, pattern)
        return await self.update_session_activity(user_id, "behavior_pattern")

    async def update_personalizations(self, user_id: str,
                                      personalizations: Dict[str, Any]) -> Optional[UserSession]:
        session = await self.get_active_session(user_id)
        if session is None:
            return None
        session.personalizations = SessionPersonalizations.model_validate(
            {**session.personalizations.model_dump(), **personalizations}
        )
        return await self.update_session_activity(user_id, "personalization_update")

    # ----- composition with tracker and analyzer -----

    async def sync_behavior_patterns(self, user_id: str) -> List[UserBehaviorPattern]:
        """Copy the tracker's consented patterns into the active session"""
        if self.tracker is None:
            return []
        session = await self.get_active_session(user_id)
        if session is None:
            return []

        patterns = self.tracker.get_behavior_patterns(user_id)
        if not patterns:
            return []

        for pattern in patterns:
            self._put_pattern(session, pattern)
            if pattern.type == PatternType.PREFERENCE_PATTERN:
                learned = {key: value for key, value in pattern.data.items() if value is not None}
                session.personalizations.learned_preferences.update(learned)
                if learned.get("preferredTheme"):
                    session.personalizations.theme = learned["preferredTheme"]

        await self.update_session_activity(user_id, "behavior_sync")
        return patterns

    async def analyze_conversation(self, user_id: str, conversation_id: str,
                                   messages: Sequence[Message]) -> Optional[ConversationContext]:
        if self.analyzer is None:
            return None
        context = await self.analyzer.analyze_context(messages)
        self.analyzer.set_current_context(conversation_id, context)
        await self.add_conversation_context(user_id, conversation_id, context)
        return context

    # ----- ending and history -----

    async def end_active_session(self, user_id: str) -> Optional[UserSession]:
        if user_id not in self._active_sessions:
            return None
        return await self.end_session(user_id)

    async def end_session(self, user_id: str) -> Optional[UserSession]:
        """End the active session and move it to the bounded history"""
        session = self._active_sessions.pop(user_id, None)
        if session is None:
            return None
        self._timers.cancel(user_id)

        session.end_time = self._clock()
        session.is_active = False
        session.session_duration = max(0.0, (session.end_time - session.start_time).total_seconds())

        history = self._session_history.setdefault(user_id, [])
        history.append(session)
        if len(history) > self.max_history:
            del history[:len(history) - self.max_history]

        await self._persist()
        return session

    def get_session_history(self, user_id: str, limit: Optional[int] = None) -> List[UserSession]:
        history = self._session_history.get(user_id, [])
        return list(history[-limit:]) if limit else list(history)

    async def resume_session(self, user_id: str, session_id: str) -> Optional[UserSession]:
        """Start a new active session carrying over a historical session's state"""
        previous = next((s for s in self._session_history.get(user_id, []) if s.id == session_id), None)
        if previous is None:
            self._record_error(user_id, "resume_session", SessionError(f"session {session_id} not found"))
            return None

        resumed = await self.create_session(
            user_id,
            previous.preferences,
            user_agent=previous.metadata.user_agent,
            timezone=previous.metadata.timezone,
            language=previous.metadata.language,
        )
        if resumed is None:
            return None

        resumed.conversation_contexts = dict(previous.conversation_contexts)
        resumed.behavior_patterns = list(previous.behavior_patterns)
        resumed.personalizations = previous.personalizations.model_copy(deep=True)
        await self._persist()

        logger.info(f"Resumed session {session_id} as {resumed.id} for {user_id}")
        return resumed

    async def merge_sessions(self, user_id: str, sessions: Sequence[UserSession]) -> Optional[UserSession]:
        """
        Merge sessions from other devices into the user's active session.

        Preferences come from the most recently active input (ties go to the
        higher interaction count, then input order). Interaction counts are
        summed and device types unioned.
        """
        if not sessions:
            self._record_error(user_id, "merge_sessions", SessionError("no sessions to merge"))
            return None

        try:
            latest = max(sessions, key=lambda s: (s.last_activity, s.interaction_count))

            current = await self.get_active_session(user_id)
            if current is None:
                current = await self.create_session(user_id, latest.preferences)
                if current is None:
                    return None
                current.metadata.device_type = latest.metadata.device_type
                current.metadata.device_types = [latest.metadata.device_type]

            input_ids = {s.id for s in sessions}
            merged_count = sum(s.interaction_count for s in sessions)
            if current.id not in input_ids:
                merged_count += current.interaction_count

            device_types = session_device_types(current)
            for session in sessions:
                device_types += session_device_types(session)

            contexts = dict(current.conversation_contexts)
            for session in sessions:
                for conversation_id, context in session.conversation_contexts.items():
                    existing = contexts.get(conversation_id)
                    if existing is None or context.last_analyzed > existing.last_analyzed:
                        contexts[conversation_id] = context

            patterns = {p.type: p for p in current.behavior_patterns}
            for session in sessions:
                for pattern in session.behavior_patterns:
                    existing = patterns.get(pattern.type)
                    if existing is None or pattern.last_updated > existing.last_updated:
                        patterns[pattern.type] = pattern

            personalizations = current.personalizations.model_dump()
            for session in sessions:
                for key, value in session.personalizations.model_dump().items():
                    if isinstance(value, dict):
                        personalizations[key] = {**personalizations.get(key, {}), **value}
                    else:
                        personalizations[key] = value

            current.preferences = latest.preferences.model_copy(deep=True)
            current.interaction_count = merged_count
            current.metadata.device_types = list(dict.fromkeys(device_types))
            current.conversation_contexts = contexts
            current.behavior_patterns = list(patterns.values())
            current.personalizations = SessionPersonalizations.model_validate(personalizations)
            current.last_activity = max(current.last_activity, latest.last_activity)

        except (ValidationError, ValueError, TypeError) as e:
            self._record_error(user_id, "merge_sessions", e)
            return None

        self._active_sessions[user_id] = current
        self._arm_inactivity_timer(user_id, current.id)
        self._clear_error(user_id)
        await self._persist()

        logger.info(f"Merged {len(sessions)} sessions into {current.id} for {user_id}")
        return current

    # ----- metrics -----

    def _all_sessions(self, user_id: str) -> List[UserSession]:
        sessions = list(self._session_history.get(user_id, []))
        active = self._active_sessions.get(user_id)
        if active is not None:
            sessions.append(active)
        return sessions

    def get_session_metrics(self, user_id: str) -> SessionMetrics:
        sessions = self._all_sessions(user_id)
        if not sessions:
            return SessionMetrics()

        durations = np.array([s.session_duration for s in sessions])
        hour_counts = np.bincount([s.start_time.hour for s in sessions], minlength=24)
        devices = Counter(s.metadata.device_type for s in sessions)

        gaps = []
        for previous, session in zip(sessions, sessions[1:]):
            previous_end = previous.end_time or previous.last_activity
            gaps.append((session.start_time - previous_end).total_seconds())
        average_gap = float(np.mean(gaps)) if gaps else 0.0
        consistency = max(0.0, 1 - average_gap / CONSISTENCY_BASELINE) if average_gap > 0 else 1.0

        return SessionMetrics(
            average_session_duration=float(durations.mean()),
            total_sessions=len(sessions),
            active_sessions_count=1 if user_id in self._active_sessions else 0,
            most_active_time_of_day=format_hour(int(np.argmax(hour_counts))),
            frequent_device_type=devices.most_common(1)[0][0],
            session_consistency=consistency,
        )

    def get_session_insights(self, user_id: str) -> Optional[SessionInsights]:
        sessions = self._all_sessions(user_id)
        if not sessions:
            return None

        metrics = self.get_session_metrics(user_id)
        now = self._clock()
        device_types = {device for s in sessions for device in session_device_types(s)}
        recent = [s for s in sessions if now - s.last_activity < timedelta(days=7)]

        return SessionInsights(
            usage_patterns={
                "most_productive_time": metrics.most_active_time_of_day,
                "average_session_length": round(metrics.average_session_duration / 60),
                "session_consistency": metrics.session_consistency,
            },
            device_preferences={
                "primary_device": metrics.frequent_device_type,
                "cross_device_usage": len(device_types) > 1,
            },
            engagement_metrics={
                "total_sessions": metrics.total_sessions,
                "active_session_time": sum(s.session_duration for s in sessions),
                "average_interactions_per_session": sum(s.interaction_count for s in sessions) / len(sessions),
            },
            temporal_patterns={
                "session_frequency": session_frequency(sessions),
                "longest_streak": longest_streak(sessions),
                "recent_activity": len(recent),
            },
        )

    # ----- compliance -----

    def export_session_data(self, user_id: str) -> Dict[str, Any]:
        active = self._active_sessions.get(user_id)
        return {
            "active_sessions": [active.model_dump(mode="json")] if active else [],
            "session_history": [s.model_dump(mode="json") for s in self._session_history.get(user_id, [])],
            "export_date": self._clock().isoformat(),
        }

    async def import_session_data(self, user_id: str, data: Dict[str, Any]) -> bool:
        """Load exported session data for a user; malformed input changes nothing"""
        try:
            active = [UserSession.model_validate(s) for s in data.get("active_sessions", [])]
            history = [UserSession.model_validate(s) for s in data.get("session_history", [])]
        except (AttributeError, TypeError, ValidationError) as e:
            logger.error(f"Rejected session import for {user_id}: {e}")
            return False

        if any(s.user_id != user_id for s in [*active, *history]):
            logger.error(f"Rejected session import for {user_id}: sessions belong to another user")
            return False

        if history:
            merged = self._session_history.get(user_id, []) + history
            self._session_history[user_id] = merged[-self.max_history:]
        if active:
            latest = max(active, key=lambda s: s.last_activity)
            self._active_sessions[user_id] = latest
            self._arm_restored_timer(user_id, latest)

        await self._persist()
        return True

    async def delete_user_sessions(self, user_id: str) -> bool:
        had_active = self._active_sessions.pop(user_id, None) is not None
        had_history = self._session_history.pop(user_id, None) is not None
        self._timers.cancel(user_id)
        self._errors.pop(user_id, None)
        await self._persist()
        if had_active or had_history:
            logger.info(f"Deleted session data for {user_id}")
        return had_active or had_history

    def has_session_data(self, user_id: str) -> bool:
        return user_id in self._active_sessions or user_id in self._session_history

    def get_all_active_sessions(self) -> List[UserSession]:
        return list(self._active_sessions.values())

    async def cleanup_inactive_sessions(self, now: Optional[datetime] = None) -> int:
        """End every active session idle past the timeout"""
        now = now or self._clock()
        expired = [user_id for user_id, s in self._active_sessions.items() if self._is_timed_out(s, now)]
        for user_id in expired:
            await self.end_session(user_id)
        if expired:
            logger.debug(f"Inactivity sweep ended {len(expired)} sessions")
        return len(expired)

    # ----- persistence -----

    def _snapshot(self) -> Dict[str, Any]:
        return {
            "active_sessions": {
                user_id: session.model_dump(mode="json") for user_id, session in self._active_sessions.items()
            },
            "session_history": {
                user_id: [s.model_dump(mode="json") for s in sessions]
                for user_id, sessions in self._session_history.items()
            },
        }

    async def _persist(self) -> None:
        if self.store is None:
            return
        try:
            await self.save_snapshot()
        except StoreError as e:
            logger.error(f"Failed to save sessions: {e}")

    async def save_snapshot(self) -> None:
        if self.store is not None:
            await self.store.set(STORAGE_KEY, self._snapshot())

    async def load_snapshot(self) -> int:
        """Restore sessions from the store; malformed sessions are skipped"""
        if self.store is None:
            return 0
        data = await self.store.get(STORAGE_KEY)
        if not isinstance(data, dict):
            return 0

        loaded = 0
        for user_id, session_data in (data.get("active_sessions") or {}).items():
            try:
                session = UserSession.model_validate(session_data)
                self._active_sessions[user_id] = session
                self._arm_restored_timer(user_id, session)
                loaded += 1
            except ValidationError as e:
                logger.warning(f"Skipping malformed active session for {user_id}: {e}")

        for user_id, sessions in (data.get("session_history") or {}).items():
            restored = []
            for session_data in sessions or []:
                try:
                    restored.append(UserSession.model_validate(session_data))
                except ValidationError as e:
                    logger.warning(f"Skipping malformed session for {user_id}: {e}")
            if restored:
                self._session_history[user_id] = restored[-self.max_history:]
                loaded += len(restored)

        logger.info(f"Loaded {loaded} sessions")
        return loaded

    async def create_backup(self) -> Optional[Dict[str, Any]]:
        if self.store is None:
            return None
        sessions = [s.model_dump(mode="json") for s in self._active_sessions.values()]
        for history in self._session_history.values():
            sessions += [s.model_dump(mode="json") for s in history]

        backup = {
            "sessions": sessions,
            "created_at": self._clock().isoformat(),
            "version": BACKUP_VERSION,
        }
        try:
            await self.store.set(BACKUP_KEY, backup)
        except StoreError as e:
            logger.error(f"Failed to create session backup: {e}")
            return None
        logger.info(f"Created session backup with {len(sessions)} sessions")
        return backup

    async def restore_from_backup(self) -> bool:
        """Replace per-user state for every user found in the stored backup"""
        if self.store is None:
            return False
        try:
            backup = await self.store.get(BACKUP_KEY)
            if not isinstance(backup, dict):
                return False
            sessions = [UserSession.model_validate(s) for s in backup.get("sessions", [])]
        except (StoreError, ValueError) as e:
            logger.error(f"Failed to restore session backup: {e}")
            return False

        by_user: Dict[str, List[UserSession]] = {}
        for session in sessions:
            by_user.setdefault(session.user_id, []).append(session)

        for user_id, user_sessions in by_user.items():
            active = [s for s in user_sessions if s.is_active]
            history = [s for s in user_sessions if not s.is_active]
            if active:
                latest = max(active, key=lambda s: s.last_activity)
                self._active_sessions[user_id] = latest
                self._arm_restored_timer(user_id, latest)
            if history:
                self._session_history[user_id] = history[-self.max_history:]

        await self._persist()
        logger.info(f"Restored {len(sessions)} sessions from backup")
        return True
