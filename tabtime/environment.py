"""The browser capability the tracker consumes, plus an in-memory implementation."""

from __future__ import annotations

from typing import Protocol

from tabtime.models import Tab, Window

# Window id reported when no browser window has focus
WINDOW_ID_NONE = -1


class TabLookupError(LookupError):
    """Raised when a tab or window disappeared before it could be looked up."""


class BrowserEnvironment(Protocol):
    def get_tab(self, tab_id: int) -> Tab | None: ...

    def query_active_tab(self, window_id: int) -> Tab | None: ...

    def get_focused_window(self) -> Window | None: ...


class InMemoryBrowser:
    """Browser model kept in memory.

    Used to replay recorded event logs and to drive the tracker in tests.
    Mutators only update this model; delivering the matching event to the
    tracker is the caller's job.
    """

    def __init__(self) -> None:
        self.tabs: dict[int, Tab] = {}
        self.focused_window_id: int | None = None

    def _window_tabs(self, window_id: int) -> list[Tab]:
        return [tab for tab in self.tabs.values() if tab.window_id == window_id]

    def open_tab(self, tab_id: int, window_id: int, url: str | None = None, *, active: bool = True) -> Tab:
        if active:
            for other in self._window_tabs(window_id):
                other.active = False
        tab = Tab(id=tab_id, window_id=window_id, url=url, active=active)
        self.tabs[tab_id] = tab
        return tab

    def activate(self, tab_id: int, window_id: int, url: str | None = None) -> Tab:
        tab = self.tabs.get(tab_id)
        if tab is None or tab.window_id != window_id:
            # Unknown tab, or one moved from another window
            if url is None and tab is not None:
                url = tab.url
            return self.open_tab(tab_id, window_id, url)
        for other in self._window_tabs(window_id):
            other.active = other.id == tab_id
        if url is not None:
            tab.url = url
        return tab

    def navigate(self, tab_id: int, url: str) -> Tab:
        tab = self.tabs.get(tab_id)
        if tab is None:
            raise TabLookupError(f"No tab with id {tab_id}")
        tab.url = url
        return tab

    def close_tab(self, tab_id: int) -> None:
        self.tabs.pop(tab_id, None)

    def focus_window(self, window_id: int | None) -> None:
        if window_id is None or window_id == WINDOW_ID_NONE:
            self.focused_window_id = None
        else:
            self.focused_window_id = window_id

    def get_tab(self, tab_id: int) -> Tab | None:
        tab = self.tabs.get(tab_id)
        return tab.model_copy() if tab else None

    def query_active_tab(self, window_id: int) -> Tab | None:
        for tab in self._window_tabs(window_id):
            if tab.active:
                return tab.model_copy()
        return None

    def get_focused_window(self) -> Window | None:
        if self.focused_window_id is None:
            return None
        tabs = [tab.model_copy() for tab in self._window_tabs(self.focused_window_id)]
        return Window(id=self.focused_window_id, focused=True, tabs=tabs)
