from datetime import date, datetime, timedelta
from pathlib import Path
import json
import logging
import os
import posixpath

from cron_descriptor import get_description
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jinja2 import pass_context
from markdown import markdown as md
from markupsafe import Markup
from sqlmodel import create_engine
from starlette.datastructures import UploadFile
from starlette.middleware.sessions import SessionMiddleware
import bleach

from .calendar import STATUS_FILTERS, ChoreAggregator
from .chores import ChoreStore, CompletionStore, RecurringChoreStore
from .recurrence import (
    PRESETS,
    CronExpression,
    RecurrencePreset,
    create_rule,
    preview_occurrences,
)
from .state import StateStore
from .storage import KeyValueStore, export_filename, init_db
from .team import DEFAULT_COLOR, TeamStore, is_valid_color, lighten_color
from .time_utils import get_now, parse_datetime, week_start


DEFAULT_RECURRENCE_TIME = "09:00"
PREVIEW_COUNT = 3

db_path = os.getenv("CHOREWEEK_DB", "choreweek.db")
engine = create_engine(
    f"sqlite:///{db_path}",
    connect_args={"check_same_thread": False},
)
init_db(engine)
kv_store = KeyValueStore(engine)
kv_store.init()
team_store = TeamStore(kv_store)
chore_store = ChoreStore(kv_store)
recurring_store = RecurringChoreStore(kv_store)
completion_store = CompletionStore(kv_store)
state_store = StateStore(kv_store)
aggregator = ChoreAggregator(chore_store, recurring_store, completion_store)

app = FastAPI()

logger = logging.getLogger(__name__)

BASE_PATH = Path(__file__).resolve().parent
templates = Jinja2Templates(directory=str(BASE_PATH / "templates"))
templates.env.globals["member_name"] = team_store.member_name
templates.env.globals["member_color"] = team_store.member_color
templates.env.globals["PRESETS"] = PRESETS
templates.env.globals["STATUS_FILTERS"] = STATUS_FILTERS
templates.env.filters["lighten"] = lighten_color


def _make_relative(current_path: str, target_path: str) -> str:
    """Return ``target_path`` relative to ``current_path``."""
    cur_dir = current_path if current_path.endswith("/") else current_path.rsplit("/", 1)[0] + "/"
    rel_path = posixpath.relpath(target_path, start=cur_dir)
    if rel_path == ".":
        # ``posixpath.relpath`` collapses ``/chores/new`` relative to
        # ``/chores/new/`` to ``.``; use the absolute path so forms post to
        # the intended endpoint.
        return target_path
    if not rel_path.startswith("."):
        rel_path = "./" + rel_path
    return rel_path


def relative_url_for(request: Request, name: str, /, **path_params: str) -> str:
    target = str(request.app.url_path_for(name, **path_params))
    return _make_relative(request.url.path, target)


@pass_context
def _jinja_url_for(context, name: str, /, **path_params: str) -> str:  # type: ignore[override]
    request: Request = context["request"]
    return relative_url_for(request, name, **path_params)


templates.env.globals["url_for"] = _jinja_url_for


def format_datetime(dt: datetime | None, include_day: bool = False) -> str:
    if not dt:
        return ""
    fmt = "%Y-%m-%d %H:%M"
    if include_day:
        fmt = "%A " + fmt
    return dt.strftime(fmt)


templates.env.filters["format_datetime"] = format_datetime


def format_time(dt: datetime | None) -> str:
    """Format ``dt`` as a 12 hour clock time such as ``9:30 AM``."""
    if not dt:
        return ""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d} {'AM' if dt.hour < 12 else 'PM'}"


templates.env.filters["format_time"] = format_time


def format_hour(hour: int) -> str:
    if hour == 0:
        return "12 AM"
    if hour == 12:
        return "12 PM"
    if hour < 12:
        return f"{hour} AM"
    return f"{hour - 12} PM"


templates.env.filters["format_hour"] = format_hour


def format_local_input(dt: datetime | None) -> str:
    """Format ``dt`` for a ``datetime-local`` form input."""
    if not dt:
        return ""
    return dt.strftime("%Y-%m-%dT%H:%M")


templates.env.filters["format_local_input"] = format_local_input


ALLOWED_TAGS = list(bleach.sanitizer.ALLOWED_TAGS) + [
    "p",
    "pre",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "br",
    "hr",
]
ALLOWED_ATTRIBUTES = {
    **bleach.sanitizer.ALLOWED_ATTRIBUTES,
    "a": ["href", "title", "rel"],
}


def render_markdown(text: str) -> Markup:
    if not text:
        return Markup("")
    html = md(text)
    sanitized = bleach.clean(html, tags=ALLOWED_TAGS, attributes=ALLOWED_ATTRIBUTES, strip=True)
    return Markup(sanitized)


templates.env.filters["markdown"] = render_markdown
app.mount("/static", StaticFiles(directory=str(BASE_PATH / "static")), name="static")


def flash(request: Request, message: str, kind: str = "info") -> None:
    """Queue a toast notification for the next rendered page."""
    request.session.setdefault("flash", []).append([kind, message])


def _collect_store_notices(request: Request) -> None:
    for notice in kv_store.pop_notices():
        flash(request, notice, "error")


def _redirect(request: Request, name: str, /, **path_params: str) -> RedirectResponse:
    _collect_store_notices(request)
    return RedirectResponse(url=relative_url_for(request, name, **path_params), status_code=303)


def _render(request: Request, template: str, context: dict | None = None, status_code: int = 200):
    _collect_store_notices(request)
    ctx = dict(context or {})
    ctx["flashes"] = request.session.pop("flash", [])
    return templates.TemplateResponse(request, template, ctx, status_code=status_code)


def _parse_due(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_datetime(value)
    except ValueError:
        return None


def _parse_week(value: str) -> datetime:
    try:
        return week_start(date.fromisoformat(value))
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid week")


session_secret = os.getenv("CHOREWEEK_SECRET_KEY")
if not session_secret:
    raise RuntimeError("CHOREWEEK_SECRET_KEY environment variable is not set")
app.add_middleware(SessionMiddleware, secret_key=session_secret)


@app.get("/", response_class=HTMLResponse)
async def index(request: Request, week: str | None = None):
    now = get_now()
    if week:
        start = state_store.set_current_week_start(_parse_week(week))
    else:
        start = state_store.current_week_start()
    state_store.set_view_mode("calendar")
    view = aggregator.week_view(start, now)
    return _render(
        request,
        "index.html",
        {
            "week": view,
            "prev_week": (start - timedelta(days=7)).date().isoformat(),
            "next_week": (start + timedelta(days=7)).date().isoformat(),
            "now": now,
        },
    )


@app.post("/week/prev")
async def previous_week(request: Request):
    start = state_store.current_week_start()
    state_store.set_current_week_start(start - timedelta(days=7))
    return _redirect(request, "index")


@app.post("/week/next")
async def next_week(request: Request):
    start = state_store.current_week_start()
    state_store.set_current_week_start(start + timedelta(days=7))
    return _redirect(request, "index")


@app.post("/week/today")
async def this_week(request: Request):
    state_store.set_current_week_start(get_now())
    return _redirect(request, "index")


@app.get("/chores", response_class=HTMLResponse)
async def list_chores(request: Request, assignee: str | None = None, status: str | None = None):
    if status and status not in STATUS_FILTERS:
        raise HTTPException(status_code=400, detail="Invalid status filter")
    state_store.set_view_mode("chores")
    items = aggregator.chore_list(assignee=assignee or None, status=status or None, now=get_now())
    return _render(
        request,
        "chores.html",
        {
            "items": items,
            "members": team_store.list(),
            "assignee": assignee or "",
            "status": status or "",
        },
    )


@app.get("/history", response_class=HTMLResponse)
async def history(request: Request):
    state_store.set_view_mode("history")
    return _render(request, "history.html", {"completions": completion_store.history()})


@app.get("/team", response_class=HTMLResponse)
async def list_team(request: Request):
    return _render(
        request,
        "team.html",
        {"members": team_store.list(), "default_color": DEFAULT_COLOR},
    )


def _member_form_values(form) -> tuple[str, str]:
    name = (form.get("name") or "").strip()
    color = (form.get("color") or DEFAULT_COLOR).strip()
    return name, color


@app.post("/team/new")
async def create_member(request: Request):
    form = await request.form()
    name, color = _member_form_values(form)
    if not name:
        flash(request, "Please enter a name", "error")
        return _redirect(request, "list_team")
    if not is_valid_color(color):
        flash(request, "Please choose a valid color", "error")
        return _redirect(request, "list_team")
    if team_store.add(name, color):
        flash(request, "Team member added", "success")
    return _redirect(request, "list_team")


@app.get("/team/{member_id}/edit", response_class=HTMLResponse)
async def edit_member(request: Request, member_id: str):
    member = team_store.get(member_id)
    if not member:
        raise HTTPException(status_code=404)
    return _render(request, "member_form.html", {"member": member})


@app.post("/team/{member_id}/edit")
async def update_member(request: Request, member_id: str):
    if not team_store.get(member_id):
        raise HTTPException(status_code=404)
    form = await request.form()
    name, color = _member_form_values(form)
    if not name:
        flash(request, "Please enter a name", "error")
        return _redirect(request, "edit_member", member_id=member_id)
    if not is_valid_color(color):
        flash(request, "Please choose a valid color", "error")
        return _redirect(request, "edit_member", member_id=member_id)
    if team_store.update(member_id, {"name": name, "color": color}):
        flash(request, "Team member updated", "success")
    return _redirect(request, "list_team")


@app.post("/team/{member_id}/delete")
async def delete_member(request: Request, member_id: str):
    if not team_store.delete(member_id):
        raise HTTPException(status_code=404)
    flash(request, "Team member removed", "success")
    return _redirect(request, "list_team")


def _recurrence_fields(form) -> tuple[str, str, str | None]:
    preset = form.get("recurrence_preset") or RecurrencePreset.Weekly.value
    time = form.get("recurrence_time") or DEFAULT_RECURRENCE_TIME
    custom_cron = (form.get("custom_cron") or "").strip() or None
    return preset, time, custom_cron


@app.get("/chores/new", response_class=HTMLResponse)
async def new_chore(request: Request, due: str | None = None):
    due_date = _parse_due(due)
    if due_date is None:
        due_date = get_now().replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return _render(
        request,
        "chore_form.html",
        {
            "chore": None,
            "is_recurring": False,
            "due_date": due_date,
            "members": team_store.list(),
            "preset": RecurrencePreset.Weekly.value,
            "recurrence_time": DEFAULT_RECURRENCE_TIME,
            "custom_cron": "",
        },
    )


def _save_chore(request: Request, form, chore_id: str | None, was_recurring: bool) -> bool:
    """Create or update a chore from submitted form data.

    Switching between one-time and recurring replaces the stored chore with
    a new one in the other collection.
    """
    title = (form.get("title") or "").strip()
    description = (form.get("description") or "").strip()
    assigned_to = form.get("assigned_to") or None
    is_recurring = form.get("is_recurring") in ("on", "1", "true")
    due_date = _parse_due(form.get("due_date"))

    if not title:
        flash(request, "Please enter a title", "error")
        return False

    if is_recurring:
        preset, time, custom_cron = _recurrence_fields(form)
        rule = create_rule(preset, time, due_date or get_now(), custom_cron, formatter=get_description)
        fields = {
            "title": title,
            "description": description,
            "assigned_to": assigned_to,
            "recurrence_rule": rule,
        }
        if chore_id and was_recurring:
            if recurring_store.update(chore_id, fields):
                flash(request, "Recurring chore updated", "success")
        elif chore_id:
            chore_store.delete(chore_id)
            if recurring_store.add(title, rule, description, assigned_to):
                flash(request, "Chore converted to recurring", "success")
        elif recurring_store.add(title, rule, description, assigned_to):
            flash(request, "Recurring chore added", "success")
        return True

    if due_date is None:
        flash(request, "Please select a due date", "error")
        return False
    if chore_id and was_recurring:
        recurring_store.delete(chore_id)
        if chore_store.add(title, due_date, description, assigned_to):
            flash(request, "Chore converted to one-time", "success")
    elif chore_id:
        fields = {
            "title": title,
            "description": description,
            "assigned_to": assigned_to,
            "due_date": due_date,
        }
        if chore_store.update(chore_id, fields):
            flash(request, "Chore updated", "success")
    elif chore_store.add(title, due_date, description, assigned_to):
        flash(request, "Chore added", "success")
    return True


@app.post("/chores/new")
async def create_chore(request: Request):
    form = await request.form()
    if not _save_chore(request, form, None, False):
        return _redirect(request, "new_chore")
    return _redirect(request, "index")


def _lookup(chore_id: str, recurring: bool):
    store = recurring_store if recurring else chore_store
    chore = store.get(chore_id)
    if not chore:
        raise HTTPException(status_code=404)
    return chore


@app.get("/chores/{chore_id}", response_class=HTMLResponse)
async def view_chore(request: Request, chore_id: str, recurring: bool = False, due: str | None = None):
    chore = _lookup(chore_id, recurring)
    if recurring:
        due_date = _parse_due(due)
        if due_date is None:
            raise HTTPException(status_code=400, detail="due required for recurring chores")
    else:
        due_date = chore.due_date
    now = get_now()
    completion = completion_store.get_for_chore(chore_id, due_date)
    overdue = completion is None and due_date < now
    return _render(
        request,
        "chore_detail.html",
        {
            "chore": chore,
            "is_recurring": recurring,
            "due_date": due_date,
            "completion": completion,
            "overdue": overdue,
            "members": team_store.list(),
        },
    )


@app.get("/chores/{chore_id}/edit", response_class=HTMLResponse)
async def edit_chore(request: Request, chore_id: str, recurring: bool = False):
    chore = _lookup(chore_id, recurring)
    preset = RecurrencePreset.Weekly.value
    recurrence_time = DEFAULT_RECURRENCE_TIME
    custom_cron = ""
    due_date = None
    if recurring:
        rule = chore.recurrence_rule
        preset = rule.preset or RecurrencePreset.Custom.value
        expr = CronExpression.parse(rule.cron)
        time_of_day = expr.time_of_day() if expr else None
        if time_of_day:
            recurrence_time = f"{time_of_day[0]:02d}:{time_of_day[1]:02d}"
        if preset == RecurrencePreset.Custom:
            custom_cron = rule.cron or ""
    else:
        due_date = chore.due_date
    return _render(
        request,
        "chore_form.html",
        {
            "chore": chore,
            "is_recurring": recurring,
            "due_date": due_date,
            "members": team_store.list(),
            "preset": preset,
            "recurrence_time": recurrence_time,
            "custom_cron": custom_cron,
        },
    )


@app.post("/chores/{chore_id}/edit")
async def update_chore(request: Request, chore_id: str):
    form = await request.form()
    was_recurring = form.get("was_recurring") == "1"
    _lookup(chore_id, was_recurring)
    if not _save_chore(request, form, chore_id, was_recurring):
        response = _redirect(request, "edit_chore", chore_id=chore_id)
        if was_recurring:
            response.headers["location"] += "?recurring=1"
        return response
    return _redirect(request, "index")


@app.post("/chores/{chore_id}/delete")
async def delete_chore(request: Request, chore_id: str):
    form = await request.form()
    recurring = form.get("recurring") == "1"
    store = recurring_store if recurring else chore_store
    if not store.delete(chore_id):
        raise HTTPException(status_code=404)
    flash(request, "Chore deleted", "success")
    return _redirect(request, "index")


@app.post("/chores/{chore_id}/complete")
async def complete_chore(request: Request, chore_id: str):
    form = await request.form()
    recurring = form.get("recurring") == "1"
    chore = _lookup(chore_id, recurring)
    due_date = _parse_due(form.get("due")) if recurring else chore.due_date
    if due_date is None:
        raise HTTPException(status_code=400, detail="due required for recurring chores")
    if completion_store.is_completed(chore_id, due_date):
        flash(request, "Chore already completed", "info")
        return _redirect(request, "index")
    completed_by = form.get("completed_by") or chore.assigned_to
    if completion_store.add(
        chore_id,
        due_date,
        chore_title=chore.title,
        completed_by=completed_by,
        notes=(form.get("notes") or "").strip(),
    ):
        flash(request, "Chore marked complete", "success")
    return _redirect(request, "index")


@app.get("/recurrence/preview")
async def recurrence_preview(
    preset: str = RecurrencePreset.Weekly.value,
    time: str = DEFAULT_RECURRENCE_TIME,
    reference: str | None = None,
    custom_cron: str | None = None,
):
    now = get_now()
    reference_date = _parse_due(reference) or now
    rule = create_rule(preset, time, reference_date, custom_cron, formatter=get_description)
    upcoming = preview_occurrences(rule, PREVIEW_COUNT, now=now)
    return JSONResponse(
        {
            "cron": rule.cron,
            "human_readable": rule.human_readable,
            "interval": rule.interval,
            "next": [dt.isoformat() for dt in upcoming],
            "next_labels": [f"{dt:%a %b} {dt.day}" for dt in upcoming],
        }
    )


@app.get("/export")
async def export_data(request: Request):
    now = get_now()
    data = kv_store.export_data(now)
    logger.info("Exported data")
    return Response(
        content=json.dumps(data, indent=2),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{export_filename(now)}"'},
    )


@app.post("/import")
async def import_data(request: Request):
    form = await request.form()
    upload = form.get("file")
    if not isinstance(upload, UploadFile):
        flash(request, "Invalid file format", "error")
        return _redirect(request, "index")
    raw = await upload.read()
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("Import error: %s", exc)
        flash(request, "Invalid file format", "error")
        return _redirect(request, "index")
    if not isinstance(data, dict):
        flash(request, "Invalid file format", "error")
        return _redirect(request, "index")
    if kv_store.import_data(data):
        flash(request, "Data imported successfully", "success")
    else:
        flash(request, "Failed to import data", "error")
    return _redirect(request, "index")


@app.post("/clear")
async def clear_data(request: Request):
    kv_store.clear_all()
    flash(request, "All data cleared", "success")
    return _redirect(request, "index")


