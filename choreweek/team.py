from __future__ import annotations

from datetime import datetime
from typing import Optional
import re

from sqlmodel import Field, SQLModel

from .storage import CollectionStore, new_id
from .time_utils import get_now


DEFAULT_COLOR = "#4A90D9"
FALLBACK_COLOR = "#999999"
UNASSIGNED = "Unassigned"
UNKNOWN = "Unknown"

COLOR_RE = re.compile(r"^#[0-9A-Fa-f]{6}$")


def is_valid_color(color: str) -> bool:
    return bool(COLOR_RE.fullmatch(color))


class TeamMember(SQLModel):
    """A person chores can be assigned to."""

    id: str
    name: str
    color: str = DEFAULT_COLOR
    created_at: datetime = Field(default_factory=get_now)


class TeamStore(CollectionStore[TeamMember]):
    """CRUD helper for :class:`TeamMember` objects."""

    collection = "team"
    model = TeamMember

    def add(self, name: str, color: Optional[str] = None) -> Optional[TeamMember]:
        member = TeamMember(id=new_id(), name=name, color=color or DEFAULT_COLOR)
        return self._append(member)

    def member_name(self, member_id: Optional[str]) -> str:
        """Return the display name for ``member_id``.

        Chores keep member ids after the member is deleted, so a miss is
        expected and shown as ``Unknown``.
        """
        if not member_id:
            return UNASSIGNED
        member = self.get(member_id)
        return member.name if member else UNKNOWN

    def member_color(self, member_id: Optional[str]) -> str:
        if not member_id:
            return FALLBACK_COLOR
        member = self.get(member_id)
        return member.color if member else FALLBACK_COLOR


def lighten_color(hex_color: str, factor: float) -> str:
    """Blend ``hex_color`` towards white by ``factor`` (0..1)."""
    value = hex_color.lstrip("#")
    if not re.fullmatch(r"[0-9A-Fa-f]{6}", value):
        value = FALLBACK_COLOR.lstrip("#")
    channels = [int(value[i:i + 2], 16) for i in (0, 2, 4)]
    lightened = [round(c + (255 - c) * factor) for c in channels]
    return "#" + "".join(f"{c:02x}" for c in lightened)
