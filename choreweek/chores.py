from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Set, Tuple

from sqlmodel import Field, SQLModel

from .recurrence import RecurrenceRule
from .storage import CollectionStore, new_id
from .time_utils import get_now, parse_datetime


class Chore(SQLModel):
    """A chore that is due once."""

    id: str
    title: str
    description: str = ""
    assigned_to: Optional[str] = None
    due_date: datetime
    is_recurring: bool = False
    recurrence_rule: Optional[RecurrenceRule] = None
    created_at: datetime = Field(default_factory=get_now)


class RecurringChore(SQLModel):
    """A chore whose due dates come from ``recurrence_rule``."""

    id: str
    title: str
    description: str = ""
    assigned_to: Optional[str] = None
    recurrence_rule: RecurrenceRule
    created_at: datetime = Field(default_factory=get_now)


class Completion(SQLModel):
    id: str
    chore_id: str
    chore_title: str = ""
    completed_by: Optional[str] = None
    completed_at: datetime = Field(default_factory=get_now)
    due_date: Optional[datetime] = None
    notes: str = ""


class ChoreStore(CollectionStore[Chore]):
    collection = "chores"
    model = Chore

    def add(
        self,
        title: str,
        due_date: datetime,
        description: str = "",
        assigned_to: Optional[str] = None,
    ) -> Optional[Chore]:
        chore = Chore(
            id=new_id(),
            title=title,
            description=description or "",
            assigned_to=assigned_to or None,
            due_date=due_date,
        )
        return self._append(chore)


class RecurringChoreStore(CollectionStore[RecurringChore]):
    collection = "recurring"
    model = RecurringChore

    def add(
        self,
        title: str,
        recurrence_rule: RecurrenceRule,
        description: str = "",
        assigned_to: Optional[str] = None,
    ) -> Optional[RecurringChore]:
        chore = RecurringChore(
            id=new_id(),
            title=title,
            description=description or "",
            assigned_to=assigned_to or None,
            recurrence_rule=recurrence_rule,
        )
        return self._append(chore)


def _as_datetime(value: datetime | str | None) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return parse_datetime(value)
    except ValueError:
        return None


class CompletionStore(CollectionStore[Completion]):
    """Append-only record of finished chores and chore occurrences.

    A chore instance is identified by ``(chore_id, due_date)``; due dates
    are compared as instants.
    """

    collection = "completions"
    model = Completion

    def add(
        self,
        chore_id: str,
        due_date: datetime | str | None,
        chore_title: str = "",
        completed_by: Optional[str] = None,
        notes: str = "",
        completed_at: Optional[datetime] = None,
    ) -> Optional[Completion]:
        completion = Completion(
            id=new_id(),
            chore_id=chore_id,
            chore_title=chore_title,
            completed_by=completed_by or None,
            completed_at=completed_at or get_now(),
            due_date=_as_datetime(due_date),
            notes=notes or "",
        )
        return self._append(completion)

    def completed_keys(self) -> Set[Tuple[str, Optional[datetime]]]:
        return {(c.chore_id, c.due_date) for c in self.list()}

    def is_completed(self, chore_id: str, due_date: datetime | str | None) -> bool:
        return self.get_for_chore(chore_id, due_date) is not None

    def get_for_chore(
        self, chore_id: str, due_date: datetime | str | None
    ) -> Optional[Completion]:
        due = _as_datetime(due_date)
        for completion in self.list():
            if completion.chore_id == chore_id and completion.due_date == due:
                return completion
        return None

    def history(self) -> List[Completion]:
        """Return all completions, most recently completed first."""
        return sorted(self.list(), key=lambda c: c.completed_at, reverse=True)
