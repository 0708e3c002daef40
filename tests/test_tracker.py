"""Tests for the session state machine."""

import itertools
import threading
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from tabtime.db import ObjectStore
from tabtime.environment import WINDOW_ID_NONE, InMemoryBrowser, TabLookupError
from tabtime.models import SessionState, Tab
from tabtime.tracker import SessionTracker, split_interval_by_local_day

UTC = ZoneInfo("UTC")
DAY = "2024-01-01"


def to_ms(dt: datetime) -> int:
    return round(dt.timestamp() * 1000)


class FakeClock:
    """Manually advanced clock returning epoch milliseconds."""

    def __init__(self, now: datetime) -> None:
        self.now_ms = to_ms(now)

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


def make_tracker(
    start: datetime = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc),
    browser: InMemoryBrowser | None = None,
) -> tuple[SessionTracker, InMemoryBrowser, FakeClock]:
    """Tracker over an in-memory store, browser and clock, in UTC."""
    browser = browser or InMemoryBrowser()
    clock = FakeClock(start)
    tracker = SessionTracker(ObjectStore.open_in_memory(), browser, clock=clock, tz=UTC)
    return tracker, browser, clock


def start_tracking(tracker: SessionTracker, browser: InMemoryBrowser, url: str = "https://a.com/") -> None:
    """Focused window 10 with active tab 1 showing ``url``, then process start."""
    browser.open_tab(1, 10, url)
    browser.focus_window(10)
    tracker.on_start()


class TestSplitIntervalByLocalDay:
    """Tests for cutting intervals at local midnight."""

    def test_same_day_is_single_chunk(self):
        start = to_ms(datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))
        assert split_interval_by_local_day(start, start + 5000, UTC) == [(DAY, 5000)]

    def test_crosses_local_midnight(self):
        tz = ZoneInfo("America/New_York")
        start = to_ms(datetime(2026, 1, 1, 23, 50, tzinfo=tz))
        end = to_ms(datetime(2026, 1, 2, 0, 10, tzinfo=tz))
        assert split_interval_by_local_day(start, end, tz) == [("2026-01-01", 600_000), ("2026-01-02", 600_000)]

    def test_multi_day_span_credits_every_day(self):
        start = to_ms(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
        end = to_ms(datetime(2024, 1, 3, 6, 0, tzinfo=timezone.utc))
        hour = 3_600_000
        assert split_interval_by_local_day(start, end, UTC) == [
            ("2024-01-01", 12 * hour),
            ("2024-01-02", 24 * hour),
            ("2024-01-03", 6 * hour),
        ]

    def test_ends_exactly_at_midnight(self):
        start = to_ms(datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc))
        end = to_ms(datetime(2024, 1, 2, 0, 0, tzinfo=timezone.utc))
        assert split_interval_by_local_day(start, end, UTC) == [("2024-01-01", 3_600_000)]

    def test_empty_or_inverted_interval(self):
        assert split_interval_by_local_day(1000, 1000, UTC) == []
        assert split_interval_by_local_day(2000, 1000, UTC) == []


class TestStart:
    """Tests for process start."""

    def test_opens_session_for_focused_active_tab(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser, "https://a.com/page#intro")

        state = tracker.state
        assert state.active_tab_id == 1
        assert state.active_window_id == 10
        assert state.active_url == "https://a.com/page"
        assert state.started_at == clock.now_ms
        assert state.window_focused is True

    def test_clears_stale_timer_without_recording(self):
        tracker, browser, clock = make_tracker()
        tracker.states.set_state(
            SessionState(active_tab_id=5, active_url="https://stale.com/", started_at=clock.now_ms - 60_000)
        )

        tracker.on_start()

        assert tracker.state == SessionState()
        assert tracker.times.list_day_keys() == []

    def test_untrackable_active_tab_is_not_timed(self):
        tracker, browser, _ = make_tracker()
        start_tracking(tracker, browser, "chrome://settings")

        state = tracker.state
        assert state.active_tab_id == 1
        assert state.active_url is None
        assert state.started_at is None


class TestCloseSession:
    """Tests for committing elapsed time."""

    def test_same_day_commit(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(5000)

        assert tracker.close_session("test") == 5000
        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 5000}
        state = tracker.state
        assert state.started_at is None
        assert state.active_url == "https://a.com/"
        assert state.active_tab_id == 1

    def test_nothing_running_is_noop(self):
        tracker, _, _ = make_tracker()
        assert tracker.close_session("test") == 0
        assert tracker.state == SessionState()

    def test_splits_at_midnight(self):
        tracker, browser, clock = make_tracker(datetime(2024, 1, 1, 23, 59, 58, tzinfo=timezone.utc))
        start_tracking(tracker, browser)
        clock.advance(4000)

        assert tracker.close_session("test") == 4000
        assert tracker.times.get_bucket("2024-01-01") == {"https://a.com/": 2000}
        assert tracker.times.get_bucket("2024-01-02") == {"https://a.com/": 2000}

    def test_clock_going_backwards_records_nothing(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(-1000)

        assert tracker.close_session("test") == 0
        assert tracker.times.list_day_keys() == []
        assert tracker.state.started_at is None

    def test_zero_length_session_records_nothing(self):
        tracker, browser, _ = make_tracker()
        start_tracking(tracker, browser)

        assert tracker.close_session("test") == 0
        assert tracker.times.list_day_keys() == []

    def test_close_prunes_old_days(self):
        tracker, browser, clock = make_tracker()
        tracker.times.add_time("2023-11-01", "https://old.com/", 1000)
        start_tracking(tracker, browser)
        clock.advance(1000)

        tracker.close_session("test")

        assert tracker.times.list_day_keys() == [DAY]


class TestOpenIfEligible:
    """Tests for starting a session."""

    def test_requires_focus(self):
        tracker, _, _ = make_tracker()
        assert tracker.open_if_eligible(Tab(id=1, window_id=10, url="https://a.com/"), False, 10) is False
        assert tracker.state.started_at is None

    def test_requires_tab_with_url(self):
        tracker, _, _ = make_tracker()
        assert tracker.open_if_eligible(None, True, 10) is False
        assert tracker.open_if_eligible(Tab(id=1, window_id=10), True, 10) is False
        assert tracker.open_if_eligible(Tab(id=-1, window_id=10, url="https://a.com/"), True, 10) is False

    def test_rejects_untrackable_and_unparseable(self):
        tracker, _, _ = make_tracker()
        assert tracker.open_if_eligible(Tab(id=1, url="about:blank"), True, 10) is False
        assert tracker.open_if_eligible(Tab(id=1, url="https://"), True, 10) is False
        assert tracker.state.started_at is None

    def test_window_id_falls_back_to_tab_then_state(self):
        tracker, _, _ = make_tracker()
        tracker.open_if_eligible(Tab(id=1, window_id=20, url="https://a.com/"), True)
        assert tracker.state.active_window_id == 20

        tracker.states.set_state(SessionState(active_window_id=30))
        tracker.open_if_eligible(Tab(id=2, url="https://b.com/"), True)
        assert tracker.state.active_window_id == 30


class TestTabActivated:
    """Tests for switching tabs."""

    def test_switch_commits_old_and_opens_new(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(3000)

        browser.open_tab(2, 10, "https://b.com/")
        tracker.on_tab_activated(2, 10)
        clock.advance(2000)
        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 3000, "https://b.com/": 2000}

    def test_activation_in_unfocused_window_does_not_time(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(1000)
        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        browser.open_tab(2, 10, "https://b.com/")
        tracker.on_tab_activated(2, 10)
        clock.advance(5000)
        tracker.close_session("test")

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 1000}
        assert tracker.state.started_at is None

    def test_activation_of_vanished_tab_stops_timing(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(1000)

        tracker.on_tab_activated(99, 10)

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 1000}
        assert tracker.state.started_at is None


class TestTabUpdated:
    """Tests for navigation."""

    def test_navigation_in_tracked_tab_transitions(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(4000)

        tab = browser.navigate(1, "https://a.com/?page=2")
        tracker.on_tab_updated(1, "https://a.com/?page=2", tab)
        clock.advance(1000)
        tracker.close_session("test")

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 4000, "https://a.com/?page=2": 1000}

    def test_fragment_navigation_keeps_same_url(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(4000)

        browser.navigate(1, "https://a.com/#later")
        tracker.on_tab_updated(1, "https://a.com/#later")
        clock.advance(1000)
        tracker.close_session("test")

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 5000}

    def test_untracked_tab_is_ignored(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        browser.open_tab(2, 20, "https://b.com/", active=True)
        before = tracker.state

        clock.advance(1000)
        tracker.on_tab_updated(2, "https://c.com/")

        assert tracker.state == before

    def test_missing_url_is_ignored(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        before = tracker.state
        tracker.on_tab_updated(1, None)
        assert tracker.state == before

    def test_unfocused_update_only_remembers_url(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(1000)
        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        tracker.on_tab_updated(1, "https://a.com/next#frag")
        state = tracker.state
        assert state.active_url == "https://a.com/next"
        assert state.started_at is None

        tracker.on_tab_updated(1, "chrome://newtab")
        assert tracker.state.active_url is None
        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 1000}


class TestWindowFocusChanged:
    """Tests for focus changes."""

    def test_blur_commits_and_pauses(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(5000)

        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 5000}
        state = tracker.state
        assert state.window_focused is False
        assert state.active_window_id is None
        assert state.started_at is None
        assert state.active_tab_id == 1

    def test_none_is_treated_as_blur(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(500)
        tracker.on_window_focus_changed(None)
        assert tracker.state.window_focused is False
        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 500}

    def test_refocus_resumes_active_tab(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(1000)
        tracker.on_window_focus_changed(WINDOW_ID_NONE)
        clock.advance(60_000)

        browser.focus_window(10)
        tracker.on_window_focus_changed(10)
        clock.advance(2000)
        tracker.close_session("test")

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 3000}

    def test_switch_between_windows(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        browser.open_tab(3, 20, "https://c.com/")
        clock.advance(1500)

        browser.focus_window(20)
        tracker.on_window_focus_changed(20)

        state = tracker.state
        assert state.active_tab_id == 3
        assert state.active_window_id == 20
        assert state.active_url == "https://c.com/"
        assert state.started_at == clock.now_ms
        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 1500}

    def test_focus_window_without_trackable_tab(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        browser.open_tab(3, 20, "edge://settings")
        clock.advance(1000)

        tracker.on_window_focus_changed(20)

        state = tracker.state
        assert state.window_focused is True
        assert state.active_window_id == 20
        assert state.started_at is None

    def test_lookup_failure_counts_as_no_tab(self):
        class VanishingBrowser(InMemoryBrowser):
            def query_active_tab(self, window_id):
                raise TabLookupError(f"window {window_id} closed")

        tracker, browser, clock = make_tracker(browser=VanishingBrowser())
        start_tracking(tracker, browser)
        clock.advance(1000)

        tracker.on_window_focus_changed(20)

        assert tracker.state.started_at is None
        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 1000}


class TestTabRemoved:
    """Tests for closing tabs."""

    def test_removing_tracked_tab_commits_and_clears(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        clock.advance(2500)

        browser.close_tab(1)
        tracker.on_tab_removed(1)

        assert tracker.times.get_bucket(DAY) == {"https://a.com/": 2500}
        state = tracker.state
        assert state.active_tab_id is None
        assert state.active_url is None
        assert state.started_at is None
        assert state.window_focused is True

    def test_removing_other_tab_is_noop(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        before = tracker.state

        clock.advance(2500)
        tracker.on_tab_removed(42)

        assert tracker.state == before
        assert tracker.times.list_day_keys() == []


class TestAccounting:
    """Whole-sequence properties."""

    def test_recorded_time_never_exceeds_focused_time(self):
        tracker, browser, clock = make_tracker()
        start_tracking(tracker, browser)
        browser.open_tab(2, 10, "https://b.com/")
        focused_ms = 0

        for tab_id in [2, 1, 2, 1]:
            clock.advance(1000)
            focused_ms += 1000
            browser.activate(tab_id, 10)
            tracker.on_tab_activated(tab_id, 10)

        clock.advance(700)
        focused_ms += 700
        tracker.on_window_focus_changed(WINDOW_ID_NONE)
        clock.advance(10_000)
        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        bucket = tracker.times.get_bucket(DAY)
        assert sum(bucket.values()) == focused_ms
        assert bucket == {"https://a.com/": 2700, "https://b.com/": 2000}

    def test_live_totals_include_running_session(self):
        tracker, browser, clock = make_tracker()
        tracker.times.add_time(DAY, "https://a.com/", 1000)
        start_tracking(tracker, browser)
        clock.advance(4000)

        assert tracker.get_totals_for_day(DAY) == {"https://a.com/": 1000}
        assert tracker.get_totals_for_day(DAY, include_live=True) == {"https://a.com/": 5000}
        assert tracker.get_totals_for_day("2024-01-02", include_live=True) == {}
        assert tracker.state.started_at is not None


class TestConcurrentHandlers:
    """Handlers called from several threads still see one session at a time."""

    def test_threaded_tab_switches_commit_every_session_once(self):
        class TickingClock:
            """Advances one second on every read."""

            def __init__(self, start: datetime) -> None:
                self._ticks = itertools.count(to_ms(start), 1000)

            def __call__(self) -> int:
                return next(self._ticks)

        browser = InMemoryBrowser()
        tracker = SessionTracker(
            ObjectStore.open_in_memory(),
            browser,
            clock=TickingClock(datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)),
            tz=UTC,
        )
        browser.open_tab(2, 10, "https://b.com/")
        start_tracking(tracker, browser)

        def worker(tab_id: int):
            for _ in range(50):
                tracker.on_tab_activated(tab_id, 10)

        threads = [threading.Thread(target=worker, args=(tab_id,)) for tab_id in (1, 2, 1, 2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        tracker.on_window_focus_changed(WINDOW_ID_NONE)

        # 200 switches plus the final blur each close exactly one one-second session
        bucket = tracker.times.get_bucket(DAY)
        assert sum(bucket.values()) == 201 * 1000
        assert set(bucket) <= {"https://a.com/", "https://b.com/"}
        assert tracker.state.started_at is None
