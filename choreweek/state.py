from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from .storage import KeyValueStore
from .time_utils import get_now, parse_datetime, week_start


VIEW_MODES = ("calendar", "chores", "history")


class StateStore:
    """Access to the small UI state blob (displayed week and view)."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def get(self) -> dict[str, Any]:
        state = self.kv.get("state")
        return state if isinstance(state, dict) else {}

    def update(self, updates: Mapping[str, Any]) -> dict[str, Any]:
        state = {**self.get(), **updates, "lastUpdated": get_now().isoformat()}
        self.kv.set("state", state)
        return state

    def current_week_start(self) -> datetime:
        value = self.get().get("currentWeekStart")
        if isinstance(value, str):
            try:
                return week_start(parse_datetime(value))
            except ValueError:
                pass
        return week_start(get_now())

    def set_current_week_start(self, dt: datetime) -> datetime:
        start = week_start(dt)
        self.update({"currentWeekStart": start.isoformat()})
        return start

    def view_mode(self) -> str:
        mode = self.get().get("viewMode")
        return mode if mode in VIEW_MODES else "calendar"

    def set_view_mode(self, mode: str) -> None:
        if mode in VIEW_MODES and mode != self.view_mode():
            self.update({"viewMode": mode})
