"""Pydantic models for browser metadata, session state and replay events."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class Tab(BaseModel):
    """A browser tab as reported by the event source."""

    id: int
    window_id: int | None = None
    url: str | None = None
    active: bool = False


class Window(BaseModel):
    """A browser window and its tabs."""

    id: int
    focused: bool = False
    tabs: list[Tab] = Field(default_factory=list)

    def active_tab(self) -> Tab | None:
        return next((tab for tab in self.tabs if tab.active), None)


class SessionState(BaseModel):
    """The single in-flight session record.

    ``started_at`` is set only while time is accruing for ``active_url``.
    When it is None the target is tracked but paused. Persisted with the
    camelCase field names.
    """

    model_config = ConfigDict(populate_by_name=True)

    active_tab_id: int | None = Field(default=None, alias="activeTabId")
    active_window_id: int | None = Field(default=None, alias="activeWindowId")
    active_url: str | None = Field(default=None, alias="activeUrl")
    started_at: int | None = Field(default=None, alias="startedAt")
    window_focused: bool = Field(default=False, alias="windowFocused")

    @property
    def running(self) -> bool:
        return self.started_at is not None and bool(self.active_url)

    def to_storage(self) -> dict[str, object]:
        return self.model_dump(by_alias=True)


EventType = Literal[
    "start",
    "tab_activated",
    "tab_updated",
    "window_focus_changed",
    "tab_removed",
]


class ReplayEvent(BaseModel):
    """One line of a replay log.

    Which optional fields are meaningful depends on ``type``: ``tab_activated``
    uses tab_id/window_id (and url when the tab is new), ``tab_updated`` uses
    tab_id/url, ``window_focus_changed`` uses window_id (null or -1 for none),
    ``tab_removed`` uses tab_id and ``start`` may seed a focused tab.
    """

    type: EventType
    timestamp: datetime
    tab_id: int | None = None
    window_id: int | None = None
    url: str | None = None
