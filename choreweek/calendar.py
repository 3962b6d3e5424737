from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlmodel import SQLModel

from .chores import Chore, ChoreStore, CompletionStore, RecurringChore, RecurringChoreStore
from .recurrence import RecurrenceRule, get_occurrences
from .time_utils import ensure_tz, get_now, week_start as week_start_of


HOUR_START = 6
HOUR_END = 22
DAYS_PER_WEEK = 7

STATUS_FILTERS = ("completed", "pending", "overdue")


class ChoreOccurrence(SQLModel):
    """A recurring chore placed on one of its due dates.

    Occurrences are computed for each query and never stored.
    """

    id: str
    original_id: str
    instance_id: str
    title: str
    description: str = ""
    assigned_to: Optional[str] = None
    recurrence_rule: RecurrenceRule
    due_date: datetime
    is_instance: bool = True
    is_recurring: bool = True


CalendarEntry = Union[Chore, ChoreOccurrence]


def effective_id(item: CalendarEntry) -> str:
    """Return the id completions of ``item`` are recorded against."""
    return item.original_id if isinstance(item, ChoreOccurrence) else item.id


def occurrences_for(
    chore: RecurringChore, start: datetime, end: datetime
) -> List[ChoreOccurrence]:
    occurrences = []
    for due in get_occurrences(chore.recurrence_rule, start, end):
        occurrences.append(
            ChoreOccurrence(
                id=chore.id,
                original_id=chore.id,
                instance_id=f"{chore.id}-{due.isoformat()}",
                title=chore.title,
                description=chore.description,
                assigned_to=chore.assigned_to,
                recurrence_rule=chore.recurrence_rule,
                due_date=due,
            )
        )
    return occurrences


def expand_for_week(
    recurring_chores: Iterable[RecurringChore], week_start: datetime
) -> List[ChoreOccurrence]:
    """Project every recurring chore onto the seven days from ``week_start``."""
    last_day = week_start + timedelta(days=DAYS_PER_WEEK - 1)
    expanded: List[ChoreOccurrence] = []
    for chore in recurring_chores:
        expanded.extend(occurrences_for(chore, week_start, last_day))
    return expanded


def one_time_for_week(chores: Iterable[Chore], week_start: datetime) -> List[Chore]:
    week_end = week_start + timedelta(days=DAYS_PER_WEEK)
    return [c for c in chores if week_start <= c.due_date < week_end]


@dataclass
class ChoreItem:
    """A chore or occurrence with its derived status."""

    entry: CalendarEntry
    completed: bool
    overdue: bool

    @property
    def chore_id(self) -> str:
        return effective_id(self.entry)

    @property
    def is_recurring(self) -> bool:
        return isinstance(self.entry, ChoreOccurrence)

    @property
    def due_date(self) -> datetime:
        return self.entry.due_date

    @property
    def status(self) -> str:
        if self.completed:
            return "Completed"
        if self.overdue:
            return "Overdue"
        return "Pending"


@dataclass
class WeekDay:
    date: date
    is_today: bool
    slots: Dict[int, List[ChoreItem]] = field(default_factory=dict)
    other_times: List[ChoreItem] = field(default_factory=list)

    @property
    def day_name(self) -> str:
        return self.date.strftime("%a")

    @property
    def date_str(self) -> str:
        return self.date.isoformat()


@dataclass
class WeekView:
    start: datetime
    days: List[WeekDay]
    hours: List[int]

    @property
    def end(self) -> datetime:
        return self.start + timedelta(days=DAYS_PER_WEEK - 1)


class ChoreAggregator:
    """Merge one-time chores and recurring occurrences with their status."""

    def __init__(
        self,
        chore_store: ChoreStore,
        recurring_store: RecurringChoreStore,
        completion_store: CompletionStore,
    ):
        self.chore_store = chore_store
        self.recurring_store = recurring_store
        self.completion_store = completion_store

    def expand_for_week(self, week_start: datetime) -> List[ChoreOccurrence]:
        return expand_for_week(self.recurring_store.list(), week_start)

    def entries_for_week(self, week_start: datetime) -> List[CalendarEntry]:
        week_start = ensure_tz(week_start)
        return [
            *one_time_for_week(self.chore_store.list(), week_start),
            *self.expand_for_week(week_start),
        ]

    def annotate(
        self,
        entries: Iterable[CalendarEntry],
        now: Optional[datetime] = None,
        completed_keys: Optional[Set[Tuple[str, Optional[datetime]]]] = None,
    ) -> List[ChoreItem]:
        if now is None:
            now = get_now()
        if completed_keys is None:
            completed_keys = self.completion_store.completed_keys()
        items = []
        for entry in entries:
            completed = (effective_id(entry), entry.due_date) in completed_keys
            overdue = not completed and entry.due_date < now
            items.append(ChoreItem(entry=entry, completed=completed, overdue=overdue))
        return items

    def items_for_week(
        self, week_start: datetime, now: Optional[datetime] = None
    ) -> List[ChoreItem]:
        return self.annotate(self.entries_for_week(week_start), now)

    def week_view(self, week_start: datetime, now: Optional[datetime] = None) -> WeekView:
        if now is None:
            now = get_now()
        week_start = week_start_of(week_start)
        hours = list(range(HOUR_START, HOUR_END))
        days = []
        for offset in range(DAYS_PER_WEEK):
            day = (week_start + timedelta(days=offset)).date()
            days.append(
                WeekDay(date=day, is_today=day == now.date(), slots={h: [] for h in hours})
            )
        by_date = {d.date: d for d in days}
        items = sorted(self.items_for_week(week_start, now), key=lambda i: i.due_date)
        for item in items:
            due = ensure_tz(item.due_date)
            day = by_date.get(due.date())
            if day is None:
                continue
            if due.hour in day.slots:
                day.slots[due.hour].append(item)
            else:
                day.other_times.append(item)
        return WeekView(start=week_start, days=days, hours=hours)

    def chore_list(
        self,
        assignee: Optional[str] = None,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ChoreItem]:
        """All one-time chores and this week's occurrences, soonest first."""
        if now is None:
            now = get_now()
        entries: List[CalendarEntry] = [
            *self.chore_store.list(),
            *self.expand_for_week(week_start_of(now)),
        ]
        entries.sort(key=lambda e: e.due_date)
        if assignee:
            entries = [e for e in entries if e.assigned_to == assignee]
        items = self.annotate(entries, now)
        if status == "completed":
            items = [i for i in items if i.completed]
        elif status == "pending":
            items = [i for i in items if not i.completed and not i.overdue]
        elif status == "overdue":
            items = [i for i in items if i.overdue]
        return items
