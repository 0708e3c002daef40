"""Replay a recorded browser event log through the tracker."""

from __future__ import annotations

import logging
from datetime import datetime, tzinfo

from tabtime.db import RETAIN_DAYS, ObjectStore
from tabtime.environment import InMemoryBrowser, TabLookupError
from tabtime.models import ReplayEvent
from tabtime.tracker import SessionTracker

logger = logging.getLogger(__name__)


def to_epoch_ms(timestamp: datetime, tz: tzinfo | None = None) -> int:
    """Epoch milliseconds for a datetime.

    Naive values are wall-clock time in ``tz``, or in the system timezone when
    ``tz`` is None.
    """
    if timestamp.tzinfo is None and tz is not None:
        timestamp = timestamp.replace(tzinfo=tz)
    return round(timestamp.timestamp() * 1000)


class ReplayClock:
    """Clock that reports the timestamp of the event being replayed."""

    def __init__(self, now_ms: int = 0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms


class Replayer:
    """Applies replay events to an in-memory browser and the tracker, in order."""

    def __init__(self, objects: ObjectStore, *, tz: tzinfo | None = None, retain_days: int = RETAIN_DAYS) -> None:
        self.browser = InMemoryBrowser()
        self.clock = ReplayClock()
        self.tracker = SessionTracker(
            objects,
            self.browser,
            clock=self.clock,
            tz=tz,
            retain_days=retain_days,
        )

    def apply(self, event: ReplayEvent) -> None:
        """Update the browser model for ``event``, then deliver it to the tracker.

        Raises:
            ValueError: If the event lacks the fields its type requires.
        """
        self.clock.now_ms = to_epoch_ms(event.timestamp, self.tracker.tz)

        if event.type == "start":
            if event.window_id is not None:
                if event.tab_id is not None:
                    self.browser.activate(event.tab_id, event.window_id, event.url)
                self.browser.focus_window(event.window_id)
            self.tracker.on_start()

        elif event.type == "tab_activated":
            if event.tab_id is None or event.window_id is None:
                raise ValueError("tab_activated requires tab_id and window_id")
            self.browser.activate(event.tab_id, event.window_id, event.url)
            self.tracker.on_tab_activated(event.tab_id, event.window_id)

        elif event.type == "tab_updated":
            if event.tab_id is None or not event.url:
                raise ValueError("tab_updated requires tab_id and url")
            try:
                tab = self.browser.navigate(event.tab_id, event.url)
            except TabLookupError:
                logger.debug("URL change for unknown tab %s", event.tab_id)
                return
            self.tracker.on_tab_updated(event.tab_id, event.url, tab.model_copy())

        elif event.type == "window_focus_changed":
            self.browser.focus_window(event.window_id)
            self.tracker.on_window_focus_changed(event.window_id)

        elif event.type == "tab_removed":
            if event.tab_id is None:
                raise ValueError("tab_removed requires tab_id")
            self.browser.close_tab(event.tab_id)
            self.tracker.on_tab_removed(event.tab_id)

        else:
            raise ValueError(f"Unknown event type: {event.type}")
