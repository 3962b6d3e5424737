from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Generic, List, Mapping, Optional, Type, TypeVar
from uuid import uuid4
import logging

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from pydantic import ValidationError
from sqlalchemy import JSON, Column, text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel

from .time_utils import ensure_tz, get_now, week_start


logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=SQLModel)

STORAGE_KEYS = {
    "team": "chores_app_team",
    "chores": "chores_app_chores",
    "recurring": "chores_app_recurring",
    "completions": "chores_app_completions",
    "state": "chores_app_state",
}

COLLECTIONS = ("team", "chores", "recurring", "completions")

# Export document key for each collection.
EXPORT_KEYS = {
    "team": "team_members",
    "chores": "chores",
    "recurring": "recurring_chores",
    "completions": "completions",
}

VERSION = "1.0"

STORAGE_FULL = "Storage is full. Please export and clear some data."
STORAGE_UNAVAILABLE = "Could not access storage. Your last change may not have been saved."


class KeyValue(SQLModel, table=True):
    key: str = Field(primary_key=True)
    value: Any = Field(default=None, sa_column=Column(JSON))


class KeyValueStore:
    """Whole-document access to the named collections.

    Every write replaces the stored document.  Failures are logged and
    queued in :attr:`notices` for the user rather than raised.
    """

    def __init__(self, engine):
        self.engine = engine
        self.notices: List[str] = []

    def _report(self, exc: SQLAlchemyError) -> None:
        if isinstance(exc, OperationalError) and "full" in str(exc).lower():
            self.notices.append(STORAGE_FULL)
        else:
            self.notices.append(STORAGE_UNAVAILABLE)

    def pop_notices(self) -> List[str]:
        notices, self.notices = self.notices, []
        return notices

    def get(self, name: str) -> Any:
        key = STORAGE_KEYS[name]
        try:
            with Session(self.engine) as session:
                row = session.get(KeyValue, key)
                return row.value if row else None
        except SQLAlchemyError as exc:
            logger.error("Error reading %s from storage: %s", name, exc)
            self._report(exc)
            return None

    def set(self, name: str, value: Any) -> bool:
        key = STORAGE_KEYS[name]
        try:
            with Session(self.engine) as session:
                row = session.get(KeyValue, key)
                if row:
                    row.value = value
                else:
                    row = KeyValue(key=key, value=value)
                session.add(row)
                session.commit()
            return True
        except SQLAlchemyError as exc:
            logger.error("Error writing %s to storage: %s", name, exc)
            self._report(exc)
            return False

    def remove(self, name: str) -> None:
        key = STORAGE_KEYS[name]
        try:
            with Session(self.engine) as session:
                row = session.get(KeyValue, key)
                if row:
                    session.delete(row)
                    session.commit()
        except SQLAlchemyError as exc:
            logger.error("Error removing %s from storage: %s", name, exc)
            self._report(exc)

    def init(self, now: Optional[datetime] = None) -> None:
        """Seed empty collections and the default state if absent."""
        for name in COLLECTIONS:
            if self.get(name) is None:
                self.set(name, [])
        if self.get("state") is None:
            if now is None:
                now = get_now()
            self.set(
                "state",
                {
                    "currentWeekStart": week_start(now).isoformat(),
                    "viewMode": "calendar",
                    "lastUpdated": now.isoformat(),
                },
            )

    def export_data(self, now: Optional[datetime] = None) -> dict:
        if now is None:
            now = get_now()
        data: dict[str, Any] = {"version": VERSION, "exported_at": now.isoformat()}
        for name, export_key in EXPORT_KEYS.items():
            data[export_key] = self.get(name) or []
        return data

    def import_data(self, data: Any) -> bool:
        """Replace each collection present in ``data``.

        Collections missing from ``data`` are left untouched.  Nothing is
        written unless every present collection is a list.
        """
        if not isinstance(data, dict):
            logger.warning("Import rejected: expected an object, got %s", type(data).__name__)
            return False
        updates = {
            name: data[export_key]
            for name, export_key in EXPORT_KEYS.items()
            if export_key in data
        }
        for name, value in updates.items():
            if not isinstance(value, list):
                logger.warning("Import rejected: %s is not a list", EXPORT_KEYS[name])
                return False
        ok = True
        for name, value in updates.items():
            ok = self.set(name, value) and ok
        logger.info("Imported collections: %s", ", ".join(updates) or "none")
        return ok

    def clear_all(self) -> None:
        for name in STORAGE_KEYS:
            self.remove(name)
        self.init()


class CollectionStore(Generic[RecordT]):
    """Typed CRUD over one collection of :class:`KeyValueStore`.

    Operations read the whole collection, change it and write it back.
    Records that fail validation (for example from an imported file) are
    kept in storage but skipped when reading.
    """

    collection: str
    model: Type[RecordT]

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    def _raw(self) -> List[dict]:
        raw = self.kv.get(self.collection)
        return raw if isinstance(raw, list) else []

    def _validate(self, raw: Any) -> Optional[RecordT]:
        try:
            record = self.model.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Skipping malformed %s record: %s", self.collection, exc)
            return None
        for name, value in dict(record).items():
            if isinstance(value, datetime):
                setattr(record, name, ensure_tz(value))
        return record

    def list(self) -> List[RecordT]:
        records = (self._validate(raw) for raw in self._raw())
        return [r for r in records if r is not None]

    def get(self, record_id: str) -> Optional[RecordT]:
        for raw in self._raw():
            if isinstance(raw, dict) and raw.get("id") == record_id:
                return self._validate(raw)
        return None

    def _append(self, record: RecordT) -> Optional[RecordT]:
        raw = self._raw()
        raw.append(record.model_dump(mode="json"))
        if not self.kv.set(self.collection, raw):
            return None
        return record

    def update(self, record_id: str, updates: Mapping[str, Any]) -> Optional[RecordT]:
        """Merge ``updates`` into the record and return the new record."""
        raw = self._raw()
        for index, item in enumerate(raw):
            if isinstance(item, dict) and item.get("id") == record_id:
                break
        else:
            return None
        current = self._validate(item)
        if current is None:
            return None
        changes = {k: v for k, v in updates.items() if k != "id"}
        try:
            record = self.model.model_validate({**current.model_dump(), **changes})
        except ValidationError as exc:
            logger.warning("Rejected update to %s %s: %s", self.collection, record_id, exc)
            return None
        raw[index] = record.model_dump(mode="json")
        if not self.kv.set(self.collection, raw):
            return None
        return self._validate(raw[index])

    def delete(self, record_id: str) -> bool:
        raw = self._raw()
        kept = [r for r in raw if not (isinstance(r, dict) and r.get("id") == record_id)]
        if len(kept) == len(raw):
            return False
        return self.kv.set(self.collection, kept)


def new_id() -> str:
    return str(uuid4())


def export_filename(now: Optional[datetime] = None) -> str:
    if now is None:
        now = get_now()
    return f"chores-backup-{now:%Y-%m-%d}.json"


def init_db(engine) -> None:
    """Create tables on first run and verify the schema revision."""

    db_path = Path(engine.url.database)
    first_run = not db_path.exists()

    cfg = Config(str(Path(__file__).resolve().parent.parent / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", str(engine.url))
    cfg.attributes["configure_logger"] = False
    if first_run:
        SQLModel.metadata.create_all(engine)
        command.stamp(cfg, "head")

    script = ScriptDirectory.from_config(cfg)
    head = script.get_current_head()
    with engine.connect() as conn:
        try:
            row = conn.execute(text("SELECT version_num FROM alembic_version")).first()
        except OperationalError as exc:
            raise RuntimeError(
                "Database schema is missing Alembic version information. "
                "Run 'alembic upgrade head' before starting the server."
            ) from exc
    if not row or row[0] != head:
        raise RuntimeError(
            "Database schema is out of date. Run 'alembic upgrade head' "
            "before starting the server."
        )
