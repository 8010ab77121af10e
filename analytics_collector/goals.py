"""
Goal matching and conversion recording.

Goals are a closed union (PageviewGoal | EventGoal | DurationGoal). A
conversion is recorded at most once per (site, session, goal). The
ConversionTracker answers repeats from memory; otherwise a conditional put
of a `CONVERTED#` marker in the table decides, so the guarantee holds across
cold starts, containers and tracker eviction.
"""

import logging
import re
import uuid
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional

from .cache import ConversionTracker, TTLCache
from .errors import StorageError
from .models import Conversion, DurationGoal, EventGoal, Goal, MatchType, PageviewGoal
from .storage import AnalyticsStore

logger = logging.getLogger(__name__)


class GoalContext(NamedTuple):
    path: str
    event_name: Optional[str] = None
    session_duration_minutes: Optional[float] = None


class ConversionMetadata(NamedTuple):
    referrer_source: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None


def match_pattern(pattern: str, value: Optional[str], match_type: MatchType) -> bool:
    if not pattern or not value:
        return False

    if match_type == MatchType.EXACT:
        return value == pattern
    if match_type == MatchType.CONTAINS:
        return pattern in value
    if match_type == MatchType.REGEX:
        try:
            return re.search(pattern, value) is not None
        except re.error as e:
            logger.warning(f"Invalid goal regex {pattern!r}: {e}")
            return False
    raise ValueError(f"Unsupported match type: {match_type}")


def match_goal(goal: Goal, context: GoalContext) -> bool:
    """True when an active goal is satisfied by the context."""
    if not goal.is_active:
        return False

    if isinstance(goal, PageviewGoal):
        return match_pattern(goal.pattern, context.path, goal.match_type)
    if isinstance(goal, EventGoal):
        if not context.event_name:
            return False
        return match_pattern(goal.pattern, context.event_name, goal.match_type)
    if isinstance(goal, DurationGoal):
        if context.session_duration_minutes is None:
            return False
        return context.session_duration_minutes >= goal.duration_minutes
    raise TypeError(f"Unsupported goal: {type(goal).__name__}")


def calculate_conversion_rate(conversions: int, total_visitors: int) -> float:
    """Conversion rate as a percentage; 0 when there were no visitors."""
    if total_visitors <= 0:
        return 0.0
    return conversions / total_visitors * 100


class GoalEngine:
    def __init__(
        self,
        store: AnalyticsStore,
        cache: TTLCache[list],
        tracker: ConversionTracker,
        clock: Callable[[], datetime],
    ):
        self.store = store
        self.cache = cache
        self.tracker = tracker
        self.clock = clock

    def get_goals_for_site(self, site_id: str) -> List[Goal]:
        """Active goals for a site, cached for the goal cache TTL."""
        goals = self.cache.get(site_id)
        if goals is not None:
            return goals

        try:
            goals = [goal for goal in self.store.list_goals(site_id) if goal.is_active]
        except StorageError as e:
            logger.error(f"Failed to load goals for {site_id}: {e}")
            return []

        self.cache.set(site_id, goals)
        return goals

    def invalidate(self, site_id: str) -> None:
        self.cache.delete(site_id)

    def _release(self, site_id: str, session_id: str, goal_id: str) -> None:
        try:
            self.store.release_conversion(site_id, session_id, goal_id)
        except StorageError as e:
            logger.error(f"Conversion marker left behind for goal {goal_id} session {session_id}: {e}")

    def check_and_record_conversions(
        self,
        site_id: str,
        visitor_id: str,
        session_id: str,
        context: GoalContext,
        metadata: ConversionMetadata,
        ttl_seconds: Optional[int] = None,
    ) -> List[Conversion]:
        """
        Record one Conversion for every matching goal not yet converted in this session.

        Returns the conversions written. A failed write is logged and the goal
        stays unconverted so a later event in the session can retry it.
        """
        goals = self.get_goals_for_site(site_id)
        if not goals:
            return []

        recorded = []
        for goal in goals:
            if self.tracker.has_converted(site_id, session_id, goal.id):
                continue
            if not match_goal(goal, context):
                continue

            try:
                if not self.store.claim_conversion(site_id, session_id, goal.id, ttl_seconds):
                    self.tracker.mark_converted(site_id, session_id, goal.id)
                    continue
            except StorageError as e:
                logger.warning(f"Failed to check conversion for goal {goal.id} session {session_id}: {e}")
                continue

            conversion = Conversion(
                id=str(uuid.uuid4()),
                site_id=site_id,
                goal_id=goal.id,
                visitor_id=visitor_id,
                session_id=session_id,
                value=goal.value,
                path=context.path,
                referrer_source=metadata.referrer_source,
                utm_source=metadata.utm_source,
                utm_medium=metadata.utm_medium,
                utm_campaign=metadata.utm_campaign,
                timestamp=self.clock(),
            )
            try:
                self.store.put_conversion(conversion, ttl_seconds)
            except StorageError as e:
                logger.warning(f"Failed to record conversion for goal {goal.id} session {session_id}: {e}")
                self._release(site_id, session_id, goal.id)
                continue

            self.tracker.mark_converted(site_id, session_id, goal.id)
            recorded.append(conversion)
            logger.info(f"Conversion recorded: {goal.name} for session {session_id}")

        return recorded
