"""
Workbook store adapter.

A store is one .xlsx file; each dataset lives in its own tab. This
module owns opening, snapshotting, tab replacement and saving. Column
positions are always discovered from the header row, never assumed.
"""

from __future__ import annotations

import logging
from zipfile import BadZipFile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.worksheet.worksheet import Worksheet

from pipelinesync.domain.errors import StoreError, StoreWriteError
from pipelinesync.infrastructure.excel.colors import cell_background, cell_font_color

logger = logging.getLogger(__name__)


def normalize_header(value: Any) -> str:
    """Header text as used for lookups: trimmed and case-folded."""
    if value is None:
        return ""
    return " ".join(str(value).split()).casefold()


def header_map(ws: Worksheet, header_row: int = 1) -> dict[str, int]:
    """
    Build a header -> 0-based column index map from a worksheet.

    The first occurrence of a duplicated header wins.
    """
    mapping: dict[str, int] = {}
    for idx, cell in enumerate(ws[header_row]):
        key = normalize_header(cell.value)
        if key and key not in mapping:
            mapping[key] = idx
    return mapping


@dataclass
class SnapshotRow:
    """One body row of a tab: values plus per-cell colours, in file order."""

    row_number: int
    values: list[Any]
    backgrounds: list[str]
    fonts: list[str]

    def value(self, idx: int | None) -> Any:
        if idx is None or idx >= len(self.values):
            return None
        return self.values[idx]


@dataclass
class TabSnapshot:
    """Full in-memory copy of a tab's header and body."""

    title: str
    headers: dict[str, int] = field(default_factory=dict)
    rows: list[SnapshotRow] = field(default_factory=list)

    def index_of(self, header: str) -> int | None:
        return self.headers.get(normalize_header(header))


class WorkbookStore:
    """
    One workbook file.

    Args:
        path: Location of the .xlsx file
        label: Human-readable name used in logs (owner or group name)
    """

    def __init__(self, path: Path | str, label: str = ""):
        self.path = Path(path)
        self.label = label or self.path.stem

    def __repr__(self) -> str:
        return f"WorkbookStore({self.label!r}, {str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.exists()

    def open(self, create: bool = False) -> Workbook:
        """
        Load the workbook.

        Args:
            create: Return a new, empty workbook when the file is missing

        Raises:
            StoreError: If the file is missing (and not created) or unreadable
        """
        if not self.path.exists():
            if not create:
                raise StoreError(f"Store not found: {self.path}")
            logger.info("Creating new store %s at %s", self.label, self.path)
            wb = Workbook()
            # Drop the default sheet; tabs are added by name
            wb.remove(wb.active)
            return wb

        try:
            return load_workbook(self.path)
        except PermissionError as e:
            raise StoreError(
                f"Cannot read '{self.path.name}' - permission denied or file locked"
            ) from e
        except (InvalidFileException, BadZipFile, OSError, KeyError, ValueError) as e:
            raise StoreError(f"Cannot open store {self.path}: {e}") from e

    def save(self, wb: Workbook) -> None:
        """
        Save the workbook.

        Raises:
            StoreWriteError: If the file is open elsewhere or unwritable
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            wb.save(self.path)
        except PermissionError as e:
            logger.error(
                "Cannot write to '%s' - file is open! Close Excel and retry.",
                self.path.name,
            )
            raise StoreWriteError(f"Cannot write to '{self.path.name}' - file is open") from e
        except OSError as e:
            raise StoreWriteError(f"Failed to save {self.path}: {e}") from e
        logger.debug("Saved %s", self.path)

    def read_tab(self, title: str) -> TabSnapshot | None:
        """
        Snapshot a tab's header and body with colours.

        Returns:
            The snapshot, or None when the workbook or tab does not exist
        """
        if not self.path.exists():
            logger.debug("Store %s has no file yet", self.label)
            return None

        wb = self.open()
        try:
            if title not in wb.sheetnames:
                logger.debug("Store %s has no tab %r yet", self.label, title)
                return None
            return snapshot_worksheet(wb[title])
        finally:
            wb.close()

    @staticmethod
    def replace_tab(wb: Workbook, title: str) -> Worksheet:
        """
        Recreate a tab in place, empty.

        The new tab takes the old tab's position, so body, merges,
        conditional formats and validations are all cleared.
        """
        if title in wb.sheetnames:
            old = wb[title]
            position = wb.index(old)
            wb.remove(old)
            return wb.create_sheet(title, position)
        return wb.create_sheet(title)


def snapshot_worksheet(ws: Worksheet) -> TabSnapshot:
    """Read a worksheet into a TabSnapshot."""
    headers = header_map(ws)
    snapshot = TabSnapshot(title=ws.title, headers=headers)
    if not headers:
        return snapshot

    width = max(headers.values()) + 1
    for row in ws.iter_rows(min_row=2, max_col=width):
        values = [cell.value for cell in row]
        if all(v is None or (isinstance(v, str) and not v.strip()) for v in values):
            continue
        snapshot.rows.append(
            SnapshotRow(
                row_number=row[0].row,
                values=values,
                backgrounds=[cell_background(cell) for cell in row],
                fonts=[cell_font_color(cell) for cell in row],
            )
        )
    return snapshot
