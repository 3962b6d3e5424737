import sys
from pathlib import Path
from datetime import datetime
from zoneinfo import ZoneInfo

# Ensure project root on path
sys.path.append(str(Path(__file__).resolve().parents[1]))

from choreweek.chores import ChoreStore, CompletionStore, RecurringChoreStore
from choreweek.recurrence import create_rule
from choreweek.state import StateStore
from choreweek.team import DEFAULT_COLOR, FALLBACK_COLOR, TeamStore, lighten_color


UTC = ZoneInfo("UTC")
DUE = datetime(2025, 1, 8, 9, 0, tzinfo=UTC)


def test_team_member_defaults(kv_store):
    team = TeamStore(kv_store)
    member = team.add("Ann")
    assert member.color == DEFAULT_COLOR
    assert team.get(member.id).name == "Ann"
    assert team.get(member.id).created_at.tzinfo is not None


def test_team_update_merges_and_keeps_id(kv_store):
    team = TeamStore(kv_store)
    member = team.add("Ann", "#123456")

    updated = team.update(member.id, {"name": "Anne", "id": "other"})

    assert updated.id == member.id
    assert updated.name == "Anne"
    assert updated.color == "#123456"
    assert team.get(member.id).name == "Anne"


def test_update_unknown_id_returns_none(kv_store):
    team = TeamStore(kv_store)
    team.add("Ann")
    assert team.update("missing", {"name": "X"}) is None
    assert [m.name for m in team.list()] == ["Ann"]


def test_delete(kv_store):
    team = TeamStore(kv_store)
    ann = team.add("Ann")
    bob = team.add("Bob")

    assert team.delete(ann.id)
    assert not team.delete(ann.id)
    assert [m.id for m in team.list()] == [bob.id]


def test_member_name_and_color_lookups(kv_store):
    team = TeamStore(kv_store)
    ann = team.add("Ann", "#AA0000")

    assert team.member_name(ann.id) == "Ann"
    assert team.member_name(None) == "Unassigned"
    assert team.member_name("gone") == "Unknown"
    assert team.member_color(ann.id) == "#AA0000"
    assert team.member_color("gone") == FALLBACK_COLOR


def test_deleting_member_keeps_chore_assignment(kv_store):
    team = TeamStore(kv_store)
    chores = ChoreStore(kv_store)
    ann = team.add("Ann")
    chore = chores.add("Dishes", DUE, assigned_to=ann.id)

    team.delete(ann.id)

    assert chores.get(chore.id).assigned_to == ann.id
    assert team.member_name(ann.id) == "Unknown"


def test_lighten_color():
    assert lighten_color("#000000", 0.5) == "#808080"
    assert lighten_color("#ffffff", 0.3) == "#ffffff"
    assert lighten_color("bad", 0) == "#999999"


def test_chore_round_trip(kv_store):
    chores = ChoreStore(kv_store)
    chore = chores.add("Dishes", DUE, "Use **soap**")

    stored = chores.get(chore.id)

    assert stored.title == "Dishes"
    assert stored.due_date == DUE
    assert stored.is_recurring is False
    assert stored.assigned_to is None


def test_recurring_chore_keeps_rule(kv_store):
    recurring = RecurringChoreStore(kv_store)
    rule = create_rule("biweekly", "09:00", DUE)
    chore = recurring.add("Bins", rule)

    stored = recurring.get(chore.id)

    assert stored.recurrence_rule.cron == "0 9 * * 3"
    assert stored.recurrence_rule.interval == 2


def test_completion_lookup_by_instant(kv_store):
    completions = CompletionStore(kv_store)
    completions.add("c1", "2025-01-08T09:00:00.000Z", chore_title="Dishes")

    assert completions.is_completed("c1", DUE)
    assert completions.is_completed("c1", DUE.astimezone(ZoneInfo("America/New_York")))
    assert not completions.is_completed("c1", datetime(2025, 1, 9, 9, 0, tzinfo=UTC))
    assert not completions.is_completed("c2", DUE)
    assert ("c1", DUE) in completions.completed_keys()


def test_history_newest_first(kv_store):
    completions = CompletionStore(kv_store)
    completions.add("a", DUE, completed_at=datetime(2025, 1, 8, 10, 0, tzinfo=UTC))
    completions.add("b", DUE, completed_at=datetime(2025, 1, 9, 10, 0, tzinfo=UTC))
    completions.add("c", DUE, completed_at=datetime(2025, 1, 7, 10, 0, tzinfo=UTC))

    assert [c.chore_id for c in completions.history()] == ["b", "a", "c"]


def test_state_week_navigation(kv_store):
    state = StateStore(kv_store)

    start = state.set_current_week_start(datetime(2025, 1, 9, 15, 0, tzinfo=UTC))

    assert start == datetime(2025, 1, 6, tzinfo=UTC)
    assert state.current_week_start() == start
    assert "lastUpdated" in state.get()


def test_state_view_mode(kv_store):
    state = StateStore(kv_store)
    assert state.view_mode() == "calendar"
    state.set_view_mode("history")
    assert state.view_mode() == "history"
    state.set_view_mode("bogus")
    assert state.view_mode() == "history"
