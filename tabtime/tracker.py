"""Session state machine: when timing starts and stops, and which day gets the time."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import date, timedelta, tzinfo

from tabtime.db import RETAIN_DAYS, ObjectStore, StateStore, TimeStore, day_key_for, day_start_ms, epoch_ms
from tabtime.environment import WINDOW_ID_NONE, BrowserEnvironment
from tabtime.models import SessionState, Tab, Window
from tabtime.urls import is_trackable_url, normalize_url, trackable_url

logger = logging.getLogger(__name__)


def split_interval_by_local_day(
    start_ms: int,
    end_ms: int,
    tz: tzinfo | None = None,
) -> list[tuple[str, int]]:
    """Cut [start_ms, end_ms) at each local midnight.

    Returns (day_key, ms) chunks in chronological order. Chunks sum to
    ``end_ms - start_ms``; an empty or inverted interval yields no chunks.
    """
    if end_ms <= start_ms:
        return []

    segments: list[tuple[str, int]] = []
    cursor = start_ms

    while cursor < end_ms:
        day_key = day_key_for(cursor, tz)
        next_day = (date.fromisoformat(day_key) + timedelta(days=1)).isoformat()
        next_midnight = day_start_ms(next_day, tz)
        if next_midnight <= cursor:
            next_midnight = end_ms

        chunk_end = min(end_ms, next_midnight)
        if chunk_end > cursor:
            segments.append((day_key, chunk_end - cursor))

        cursor = chunk_end

    return segments


class SessionTracker:
    """Turns browser events into committed per-day URL time.

    At most one session is open at a time. Every public method runs under one
    re-entrant lock, so each event's read-modify-write of the session record
    completes before the next event is handled.
    """

    def __init__(
        self,
        objects: ObjectStore,
        environment: BrowserEnvironment,
        *,
        clock: Callable[[], int] = epoch_ms,
        tz: tzinfo | None = None,
        retain_days: int = RETAIN_DAYS,
    ) -> None:
        self.times = TimeStore(objects, tz=tz)
        self.states = StateStore(objects)
        self.environment = environment
        self.clock = clock
        self.tz = tz
        self.retain_days = retain_days
        self._lock = threading.RLock()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self.states.get_state()

    # Environment lookups: a tab or window that vanished counts as absent.

    def _get_tab(self, tab_id: int) -> Tab | None:
        try:
            return self.environment.get_tab(tab_id)
        except LookupError:
            logger.debug("Tab %s vanished before lookup", tab_id)
            return None

    def _active_tab(self, window_id: int) -> Tab | None:
        try:
            return self.environment.query_active_tab(window_id)
        except LookupError:
            logger.debug("Window %s vanished before lookup", window_id)
            return None

    def _focused_window(self) -> Window | None:
        try:
            return self.environment.get_focused_window()
        except LookupError:
            logger.debug("Focused window vanished before lookup")
            return None

    def close_session(self, reason: str = "unknown") -> int:
        """Commit the running session's elapsed time and stop its timer.

        Time is split at local midnights so each day gets only its own share.
        Returns the milliseconds committed.
        """
        with self._lock:
            state = self.states.get_state()
            if state.started_at is None or not state.active_url:
                return 0

            end = self.clock()
            start = state.started_at
            if end <= start:
                logger.warning("Discarding session for %s: clock went backwards (%s -> %s)", state.active_url, start, end)
                self.states.set_state(state.model_copy(update={"started_at": None}))
                return 0

            committed = 0
            for day_key, ms in split_interval_by_local_day(start, end, self.tz):
                self.times.add_time(day_key, state.active_url, ms)
                committed += ms

            self.times.cleanup_old_days(self.retain_days, now_ms=end)

            self.states.set_state(state.model_copy(update={"started_at": None}))
            logger.info("Session closed: url=%s reason=%s tracked=%sms", state.active_url, reason, committed)
            return committed

    def open_if_eligible(self, tab: Tab | None, window_focused: bool, window_id: int | None = None) -> bool:
        """Start timing ``tab`` when its window is focused and its URL is trackable."""
        with self._lock:
            if not window_focused:
                return False
            if tab is None or tab.id < 0:
                return False
            if not tab.url or not is_trackable_url(tab.url):
                return False
            normalized = normalize_url(tab.url)
            if normalized is None:
                logger.debug("Not tracking unparseable URL %r", tab.url)
                return False

            state = self.states.get_state()
            if window_id is None:
                window_id = tab.window_id if tab.window_id is not None else state.active_window_id

            self.states.set_state(
                SessionState(
                    active_tab_id=tab.id,
                    active_window_id=window_id,
                    active_url=normalized,
                    started_at=self.clock(),
                    window_focused=True,
                )
            )
            logger.info("Session opened: url=%s tab=%s window=%s", normalized, tab.id, window_id)
            return True

    def transition_to(
        self,
        tab: Tab | None,
        window_focused: bool,
        window_id: int | None = None,
        reason: str = "unknown",
    ) -> bool:
        """Close whatever is running, then open a session for ``tab`` if eligible."""
        with self._lock:
            self.close_session(reason)
            return self.open_if_eligible(tab, window_focused, window_id)

    def on_start(self) -> None:
        """Reset from the focused window so no timer survives a restart."""
        with self._lock:
            self.times.cleanup_old_days(self.retain_days, now_ms=self.clock())

            window = self._focused_window()
            focused = bool(window and window.focused)
            tab = window.active_tab() if window else None

            self.states.set_state(
                SessionState(
                    active_tab_id=tab.id if tab else None,
                    active_window_id=window.id if window else None,
                    active_url=trackable_url(tab.url) if tab else None,
                    started_at=None,
                    window_focused=focused,
                )
            )

            if focused and tab is not None:
                self.open_if_eligible(tab, True, window.id)

    def on_tab_activated(self, tab_id: int, window_id: int) -> None:
        with self._lock:
            state = self.states.get_state()
            focused = state.window_focused and window_id == state.active_window_id
            tab = self._get_tab(tab_id)
            self.transition_to(tab, focused, window_id, "tab_activated")

    def on_tab_updated(self, tab_id: int, url: str | None = None, tab: Tab | None = None) -> None:
        """Handle navigation in a tab.

        Only the tracked tab matters. While its window is unfocused the new URL
        is remembered without starting a timer; otherwise the old URL's session
        is closed and the new URL's opened.
        """
        if not url:
            return
        with self._lock:
            state = self.states.get_state()
            if tab_id != state.active_tab_id:
                logger.debug("Ignoring URL change in untracked tab %s", tab_id)
                return

            if not state.window_focused:
                self.states.set_state(state.model_copy(update={"active_url": trackable_url(url)}))
                return

            if tab is None:
                tab = self._get_tab(tab_id)
            window_id = tab.window_id if tab else None
            self.transition_to(tab, True, window_id, "url_updated")

    def on_window_focus_changed(self, window_id: int | None) -> None:
        with self._lock:
            if window_id is None or window_id == WINDOW_ID_NONE:
                self.close_session("window_blur")
                state = self.states.get_state()
                self.states.set_state(
                    state.model_copy(update={"window_focused": False, "active_window_id": None, "started_at": None})
                )
                return

            tab = self._active_tab(window_id)
            self.close_session("window_focus_switch")
            state = self.states.get_state()
            self.states.set_state(
                state.model_copy(update={"window_focused": True, "active_window_id": window_id, "started_at": None})
            )
            self.open_if_eligible(tab, True, window_id)

    def on_tab_removed(self, tab_id: int) -> None:
        with self._lock:
            state = self.states.get_state()
            if tab_id != state.active_tab_id:
                return

            self.close_session("tab_closed")
            state = self.states.get_state()
            self.states.set_state(
                state.model_copy(update={"active_tab_id": None, "active_url": None, "started_at": None})
            )

    def get_totals_for_day(self, day_key: str, *, include_live: bool = False) -> dict[str, int]:
        """Committed totals for a day, optionally plus the running session's uncommitted share."""
        with self._lock:
            totals = self.times.get_bucket(day_key)
            if not include_live:
                return totals

            state = self.states.get_state()
            if not state.running:
                return totals

            for segment_day, ms in split_interval_by_local_day(state.started_at, self.clock(), self.tz):
                if segment_day != day_key:
                    continue
                totals[state.active_url] = totals.get(state.active_url, 0) + ms
            return totals
