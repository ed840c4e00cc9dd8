"""
Domain models.

Records are transient: produced by the CRM fetcher, consumed by the
preservation merge, discarded after the write. Annotations are the
human-authored part of a store row, keyed by record ID.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

__all__ = [
    "NEUTRAL_BACKGROUND",
    "NEUTRAL_FONT",
    "Flag",
    "Record",
    "Annotation",
    "Row",
    "NoteEntry",
    "parse_record_id",
]


# Colour used when a cell carries no explicit styling
NEUTRAL_BACKGROUND = "FFFFFF"
NEUTRAL_FONT = "000000"

_RECORD_ID_RE = re.compile(r"^\d+$")


class Flag(str, Enum):
    """Priority flag a group lead puts on a deal row."""

    HOT = "🟢"
    COLD = "🔴"
    ATTENTION = "🟡"
    NONE = ""

    @property
    def label(self) -> str:
        """Cell text for this flag, e.g. '🟢 Hot'."""
        if self is Flag.NONE:
            return ""
        return f"{self.value} {self.name.title()}"

    @classmethod
    def choices(cls) -> list[str]:
        """Drop-down options for the flag column."""
        return [f.label for f in cls if f is not Flag.NONE]

    @classmethod
    def parse(cls, value: Any) -> "Flag":
        """
        Parse a flag from cell text.

        Accepts the emoji, the name ('hot', 'Attention') or the
        'emoji name' label. Unknown text parses to NONE.
        """
        if value is None:
            return cls.NONE
        text = str(value).strip()
        if not text:
            return cls.NONE

        for flag in cls:
            if flag is cls.NONE:
                continue
            if text.startswith(flag.value):
                return flag
            if text.lower() == flag.name.lower() or text.lower() == flag.label.lower():
                return flag

        logger.warning("Unrecognised flag value %r, treating as no flag", text[:30])
        return cls.NONE


def parse_record_id(value: Any) -> str | None:
    """
    Normalise a cell value to a record ID.

    Record IDs are digit strings. Excel may hand them back as int or
    int-valued float. Anything else (placeholders, section labels,
    blanks) is not an ID.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value >= 0 else None
    if isinstance(value, float):
        if value.is_integer() and value >= 0:
            return str(int(value))
        return None

    text = str(value).strip()
    if _RECORD_ID_RE.match(text):
        return text
    return None


@dataclass
class Record:
    """
    A CRM deal as fetched for one cycle.

    Attributes:
        id: Stable CRM record ID (the only merge/propagation key)
        owner_id: CRM owner ID the record was fetched for
        owner_name: Display name of the owner (aggregate "Owner" column)
        stage: Stage ID as returned by the CRM
        properties: Normalised scalar properties (str, float, date or "")
        created_at: Creation date, if the CRM reported one
        updated_at: Last-modified timestamp, if the CRM reported one
    """

    id: str
    owner_id: str = ""
    owner_name: str = ""
    stage: str = ""
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: date | None = None
    updated_at: datetime | None = None

    def get(self, name: str, default: Any = "") -> Any:
        """Return a normalised property value."""
        value = self.properties.get(name, default)
        return default if value is None else value


@dataclass
class Annotation:
    """
    Human-authored data attached to a record ID inside one store.

    Attributes:
        notes: Free-text note slots keyed by layout column key
        flag: Priority flag
        backgrounds: Per-cell background colours for the row (RRGGBB)
        fonts: Per-cell font colours for the row (RRGGBB)
    """

    notes: dict[str, str] = field(default_factory=dict)
    flag: Flag = Flag.NONE
    backgrounds: list[str] = field(default_factory=list)
    fonts: list[str] = field(default_factory=list)


@dataclass
class Row:
    """A merged store row ready to be written."""

    record_id: str
    values: list[Any]
    backgrounds: list[str]
    fonts: list[str]
    link: str | None = None


@dataclass(frozen=True)
class NoteEntry:
    """A note read from an entity store for propagation."""

    record_id: str
    text: str
    display_name: str = ""
    owner_name: str = ""
