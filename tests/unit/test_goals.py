"""Unit tests for goal matching and conversion recording."""

import logging

import pytest

from analytics_collector.cache import ConversionTracker, TTLCache
from analytics_collector.errors import StorageError
from analytics_collector.goals import (
    ConversionMetadata,
    GoalContext,
    GoalEngine,
    calculate_conversion_rate,
    match_goal,
    match_pattern,
)
from analytics_collector.models import DurationGoal, EventGoal, MatchType, PageviewGoal, goal_adapter
from analytics_collector.storage import AnalyticsStore


def _pageview_goal(pattern="/thank-you", match_type=MatchType.EXACT, **kwargs):
    return PageviewGoal(id="g1", site_id="site-1", name="Signup", pattern=pattern, match_type=match_type, **kwargs)


class TestMatchPattern:
    @pytest.mark.unit
    def test_match_modes(self):
        """Test exact, contains and regex matching."""
        assert match_pattern("/thank-you", "/thank-you", MatchType.EXACT)
        assert not match_pattern("/thank-you", "/thank-you/", MatchType.EXACT)
        assert match_pattern("checkout", "/shop/checkout/done", MatchType.CONTAINS)
        assert match_pattern(r"^/blog/\d+$", "/blog/42", MatchType.REGEX)
        assert not match_pattern(r"^/blog/\d+$", "/blog/new", MatchType.REGEX)

    @pytest.mark.unit
    def test_invalid_regex_is_non_match(self, caplog):
        """Test a broken regex is logged and never raised."""
        with caplog.at_level(logging.WARNING):
            assert match_pattern("([unclosed", "/anything", MatchType.REGEX) is False

        assert "Invalid goal regex" in caplog.text

    @pytest.mark.unit
    def test_empty_value_never_matches(self):
        assert not match_pattern("/x", "", MatchType.CONTAINS)
        assert not match_pattern("/x", None, MatchType.EXACT)


class TestMatchGoal:
    @pytest.mark.unit
    def test_pageview_goal(self):
        assert match_goal(_pageview_goal(), GoalContext(path="/thank-you"))
        assert not match_goal(_pageview_goal(), GoalContext(path="/home"))

    @pytest.mark.unit
    def test_inactive_goal_never_matches(self):
        """Test inactive goals are ignored."""
        assert not match_goal(_pageview_goal(is_active=False), GoalContext(path="/thank-you"))

    @pytest.mark.unit
    def test_event_goal_needs_event_name(self):
        """Test event goals match the event name, not the path."""
        goal = EventGoal(id="g2", site_id="site-1", name="Download", pattern="download", match_type="contains")

        assert match_goal(goal, GoalContext(path="/", event_name="pdf_download"))
        assert not match_goal(goal, GoalContext(path="/download"))

    @pytest.mark.unit
    def test_duration_goal_threshold(self):
        """Test duration goals fire at or above the threshold only when duration is known."""
        goal = DurationGoal(id="g3", site_id="site-1", name="Engaged", duration_minutes=2)

        assert match_goal(goal, GoalContext(path="/", session_duration_minutes=2))
        assert not match_goal(goal, GoalContext(path="/", session_duration_minutes=1.5))
        assert not match_goal(goal, GoalContext(path="/"))

    @pytest.mark.unit
    def test_goal_union_from_wire_shape(self):
        """Test the goal union picks the right type from camelCase input."""
        goal = goal_adapter.validate_python(
            {"id": "g4", "siteId": "s", "name": "Stay", "type": "duration", "durationMinutes": 5}
        )

        assert isinstance(goal, DurationGoal)
        assert goal.duration_minutes == 5

    @pytest.mark.unit
    def test_conversion_rate(self):
        assert calculate_conversion_rate(5, 200) == 2.5
        assert calculate_conversion_rate(3, 0) == 0


class TestGoalEngine:
    @pytest.fixture
    def engine(self, mock_dynamodb, clock):
        _, table = mock_dynamodb
        epoch = lambda: clock().timestamp()  # noqa: E731
        store = AnalyticsStore(table, now=epoch)
        return GoalEngine(store, TTLCache(300, clock=epoch), ConversionTracker(), clock)

    @pytest.mark.unit
    def test_records_one_conversion_per_session(self, engine):
        """Test the same trigger twice in one session converts once."""
        engine.store.put_goal(_pageview_goal())
        context = GoalContext(path="/thank-you")

        first = engine.check_and_record_conversions("site-1", "v1", "sess-2", context, ConversionMetadata())
        second = engine.check_and_record_conversions("site-1", "v1", "sess-2", context, ConversionMetadata())

        assert len(first) == 1
        assert second == []
        assert len(engine.store.list_conversions("site-1", "g1")) == 1

    @pytest.mark.unit
    def test_new_session_converts_again(self, engine):
        """Test idempotence is per session, not per visitor."""
        engine.store.put_goal(_pageview_goal())
        context = GoalContext(path="/thank-you")

        engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())
        engine.check_and_record_conversions("site-1", "v1", "sess-b", context, ConversionMetadata())

        assert len(engine.store.list_conversions("site-1", "g1")) == 2

    @pytest.mark.unit
    def test_conversion_carries_attribution(self, engine):
        """Test conversions record goal value and attribution fields."""
        engine.store.put_goal(_pageview_goal(value=49.5))

        [conversion] = engine.check_and_record_conversions(
            "site-1",
            "v1",
            "sess-1",
            GoalContext(path="/thank-you"),
            ConversionMetadata(referrer_source="google", utm_campaign="spring"),
        )

        assert conversion.value == 49.5
        assert conversion.referrer_source == "google"
        assert conversion.utm_campaign == "spring"

    @pytest.mark.unit
    def test_goals_are_cached_until_invalidated(self, engine):
        """Test new goals are picked up only after the cache is invalidated."""
        assert engine.get_goals_for_site("site-1") == []

        engine.store.put_goal(_pageview_goal())
        assert engine.get_goals_for_site("site-1") == []

        engine.invalidate("site-1")
        assert [g.id for g in engine.get_goals_for_site("site-1")] == ["g1"]

    @pytest.mark.unit
    def test_inactive_goals_are_not_loaded(self, engine):
        engine.store.put_goal(_pageview_goal(is_active=False))

        assert engine.get_goals_for_site("site-1") == []

    @pytest.mark.unit
    def test_evicted_session_does_not_convert_again(self, engine):
        """Test a session pushed out of the tracker is still converted only once."""
        engine.tracker = ConversionTracker(max_sessions=1)
        engine.store.put_goal(_pageview_goal())
        context = GoalContext(path="/thank-you")

        engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())
        engine.check_and_record_conversions("site-1", "v2", "sess-b", context, ConversionMetadata())
        again = engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())

        assert again == []
        sessions = sorted(c.session_id for c in engine.store.list_conversions("site-1", "g1"))
        assert sessions == ["sess-a", "sess-b"]

    @pytest.mark.unit
    def test_fresh_engine_does_not_convert_again(self, engine, clock):
        """Test a new container with an empty tracker sees conversions already stored."""
        engine.store.put_goal(_pageview_goal())
        context = GoalContext(path="/thank-you")
        engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())

        cold = GoalEngine(engine.store, TTLCache(300, clock=lambda: 0.0), ConversionTracker(), clock)
        again = cold.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())

        assert again == []
        assert len(engine.store.list_conversions("site-1", "g1")) == 1
        assert cold.tracker.has_converted("site-1", "sess-a", "g1")

    @pytest.mark.unit
    def test_failed_write_can_be_retried(self, engine, monkeypatch):
        """Test a conversion that failed to write is recorded by a later event in the session."""
        engine.store.put_goal(_pageview_goal())
        context = GoalContext(path="/thank-you")
        put_conversion = engine.store.put_conversion

        def failing_put(conversion, ttl_seconds=None):
            raise StorageError("put_item", {"pk": "SITE#site-1"}, RuntimeError("throttled"))

        monkeypatch.setattr(engine.store, "put_conversion", failing_put)
        assert engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata()) == []

        monkeypatch.setattr(engine.store, "put_conversion", put_conversion)
        retried = engine.check_and_record_conversions("site-1", "v1", "sess-a", context, ConversionMetadata())

        assert len(retried) == 1
        assert len(engine.store.list_conversions("site-1", "g1")) == 1
