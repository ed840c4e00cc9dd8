"""
Entity and aggregate store writers, plus in-place tab edits.

Writers replace a tab's body wholesale from merged rows. The in-place
helpers touch only annotation cells on rows matched by record ID and
are used by cross-store propagation and quick operations.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from pipelinesync.domain.layouts import AGGREGATE_PIPELINE, ENTITY_PIPELINE, StoreLayout
from pipelinesync.domain.models import (
    NEUTRAL_BACKGROUND,
    NEUTRAL_FONT,
    Flag,
    Row,
    parse_record_id,
)
from pipelinesync.infrastructure.excel.colors import (
    apply_background,
    apply_font_color,
    cell_background,
    cell_font_color,
    fit_colors,
)
from pipelinesync.infrastructure.excel.conditional_styles import (
    apply_blank_highlight,
    apply_score_gradient,
)
from pipelinesync.infrastructure.excel.styles import (
    DATE_FORMAT,
    SCORE_FORMAT,
    Alignments,
    Fonts,
    add_autofilter,
    add_dropdown_validation,
    apply_header_row,
    freeze_panes,
    rule_end_row,
)
from pipelinesync.infrastructure.excel.workbook_store import (
    WorkbookStore,
    header_map,
    normalize_header,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "No matching records"


# ============================================================================
# Full-replace writers
# ============================================================================


class StoreTabWriter:
    """Writes merged rows into one tab of a store, replacing its body."""

    layout: StoreLayout = ENTITY_PIPELINE

    def write(self, store: WorkbookStore, tab: str, rows: list[Row]) -> int:
        """
        Replace ``tab`` with ``rows`` and save the store.

        Returns:
            Number of data rows written

        Raises:
            StoreError: If the existing workbook cannot be opened
            StoreWriteError: If the workbook cannot be saved
        """
        rows = self.prepare(rows)
        wb = store.open(create=True)
        try:
            ws = store.replace_tab(wb, tab)
            self.render(ws, rows)
            store.save(wb)
        finally:
            wb.close()
        logger.info("Wrote %d row(s) to %s [%s]", len(rows), store.label, tab)
        return len(rows)

    def prepare(self, rows: list[Row]) -> list[Row]:
        return rows

    def render(self, ws: Worksheet, rows: list[Row]) -> None:
        layout = self.layout
        apply_header_row(ws, layout)
        freeze_panes(ws, row=2, col=layout.frozen_columns + 1)

        if rows:
            for row_idx, row in enumerate(rows, start=2):
                self._write_row(ws, row_idx, row)
        else:
            self._write_placeholder(ws)

        end_row = rule_end_row(len(rows))
        for col in layout.score_columns:
            letter = get_column_letter(layout.index_of(col.key) + 1)
            apply_score_gradient(ws, letter, end_row)

        flag_col = layout.flag_column
        if flag_col is not None:
            letter = get_column_letter(layout.index_of(flag_col.key) + 1)
            add_dropdown_validation(ws, letter, Flag.choices(), end_row=end_row)

        add_autofilter(ws, layout, last_row=len(rows) + 1)

    def _write_row(self, ws: Worksheet, row_idx: int, row: Row) -> None:
        backgrounds = fit_colors(row.backgrounds, self.layout.width, NEUTRAL_BACKGROUND)
        fonts = fit_colors(row.fonts, self.layout.width, NEUTRAL_FONT)

        for col_idx, col in enumerate(self.layout.columns):
            value = row.values[col_idx] if col_idx < len(row.values) else None
            cell = ws.cell(row=row_idx, column=col_idx + 1, value=_cell_value(value))
            cell.font = Fonts.DATA

            if col.kind == "date":
                cell.number_format = DATE_FORMAT
                cell.alignment = Alignments.CENTER
            elif col.kind == "number":
                cell.number_format = SCORE_FORMAT
                cell.alignment = Alignments.CENTER
            elif col.kind == "note":
                cell.alignment = Alignments.LEFT_WRAP
            elif col.kind == "flag":
                cell.alignment = Alignments.CENTER
            elif col.kind == "link" and row.link:
                cell.hyperlink = row.link
                # Theme-coloured built-in style, so it reads back as neutral
                cell.style = "Hyperlink"

            if backgrounds[col_idx] != NEUTRAL_BACKGROUND:
                apply_background(cell, backgrounds[col_idx])
            if fonts[col_idx] != NEUTRAL_FONT:
                apply_font_color(cell, fonts[col_idx])

    def _write_placeholder(self, ws: Worksheet) -> None:
        cell = ws.cell(row=2, column=1, value=PLACEHOLDER_TEXT)
        cell.font = Fonts.PLACEHOLDER
        cell.alignment = Alignments.CENTER
        ws.merge_cells(start_row=2, start_column=1, end_row=2, end_column=self.layout.width)


class EntityStoreWriter(StoreTabWriter):
    """Per-owner store tab."""

    layout = ENTITY_PIPELINE


class AggregateStoreWriter(StoreTabWriter):
    """
    Per-group store tab.

    Adds the blank next-activity highlight and enforces the row cap.
    """

    layout = AGGREGATE_PIPELINE

    def __init__(self, max_rows: int = 200):
        self.max_rows = max_rows

    def prepare(self, rows: list[Row]) -> list[Row]:
        return cap_rows(rows, self.layout, self.max_rows)

    def render(self, ws: Worksheet, rows: list[Row]) -> None:
        super().render(ws, rows)
        layout = self.layout
        next_idx = layout.index_of("next_activity")
        if next_idx is not None:
            apply_blank_highlight(
                ws,
                get_column_letter(next_idx + 1),
                rule_end_row(len(rows)),
                key_column=get_column_letter(layout.id_index + 1),
            )


def _cell_value(value: Any) -> Any:
    if isinstance(value, Flag):
        return value.label or None
    if value == "" or value is None:
        return None
    return value


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return None


def cap_rows(rows: list[Row], layout: StoreLayout, max_rows: int) -> list[Row]:
    """
    Keep at most ``max_rows`` rows, dropping the least urgent.

    Priority: rows with a scheduled next activity first (latest first),
    then rows without one by most recent last activity. Input order is
    kept when no cap applies.
    """
    if len(rows) <= max_rows:
        return rows

    next_idx = layout.index_of("next_activity")
    last_idx = layout.index_of("last_activity")

    def priority(row: Row) -> tuple[bool, date, date]:
        nxt = _as_date(row.values[next_idx]) if next_idx is not None else None
        last = _as_date(row.values[last_idx]) if last_idx is not None else None
        if nxt is not None:
            return (True, nxt, date.min)
        return (False, date.min, last or date.min)

    ranked = sorted(rows, key=priority, reverse=True)
    logger.warning(
        "Aggregate has %d rows; keeping the %d highest-priority", len(rows), max_rows
    )
    return ranked[:max_rows]


# ============================================================================
# In-place annotation edits
# ============================================================================


@dataclass
class AnnotationUpdate:
    """Flag and colours to overwrite on one row, colours in layout order."""

    flag: Flag
    backgrounds: list[str]
    fonts: list[str]


def _locate(ws: Worksheet, layout: StoreLayout) -> tuple[int | None, dict[str, int | None]]:
    """
    Find the ID column and every layout column in the tab by header.

    Returns:
        (ID column index, {layout key: 0-based file column or None})
    """
    headers = header_map(ws)
    positions = {
        col.key: headers.get(normalize_header(col.header))
        for col in layout.columns
    }
    return positions.get(layout.id_column.key), positions


def _iter_id_rows(ws: Worksheet, id_col: int):
    for row_idx in range(2, ws.max_row + 1):
        record_id = parse_record_id(ws.cell(row=row_idx, column=id_col + 1).value)
        if record_id is not None:
            yield row_idx, record_id


def update_notes(
    store: WorkbookStore,
    tab: str,
    layout: StoreLayout,
    notes: dict[str, str],
    note_key: str = "notes",
) -> int:
    """
    Overwrite a note column on rows whose record ID is in ``notes``.

    Returns:
        Number of cells whose value changed (the store is saved only
        when this is non-zero)
    """
    wb = store.open()
    try:
        if tab not in wb.sheetnames:
            logger.warning("Store %s has no tab %r; nothing to update", store.label, tab)
            return 0
        ws = wb[tab]
        id_col, positions = _locate(ws, layout)
        note_col = positions.get(note_key)
        if id_col is None or note_col is None:
            logger.warning("Store %s [%s] lacks ID or note column", store.label, tab)
            return 0

        changed = 0
        for row_idx, record_id in _iter_id_rows(ws, id_col):
            if record_id not in notes:
                continue
            cell = ws.cell(row=row_idx, column=note_col + 1)
            new_value = notes[record_id] or None
            if (cell.value or None) != new_value:
                cell.value = new_value
                changed += 1

        if changed:
            store.save(wb)
        return changed
    finally:
        wb.close()


def update_annotations(
    store: WorkbookStore,
    tab: str,
    layout: StoreLayout,
    updates: dict[str, AnnotationUpdate],
) -> int:
    """
    Overwrite flag and per-cell colours on rows matched by record ID.

    Colours are given in ``layout`` order and mapped onto the tab's
    actual columns by header; columns missing from the tab are skipped.

    Returns:
        Number of rows changed (the store is saved only when non-zero)
    """
    wb = store.open()
    try:
        if tab not in wb.sheetnames:
            logger.warning("Store %s has no tab %r; nothing to update", store.label, tab)
            return 0
        ws = wb[tab]
        id_col, positions = _locate(ws, layout)
        if id_col is None:
            logger.warning("Store %s [%s] has no ID column", store.label, tab)
            return 0
        flag_key = layout.flag_column.key if layout.flag_column else None

        changed_rows = 0
        for row_idx, record_id in _iter_id_rows(ws, id_col):
            update = updates.get(record_id)
            if update is None:
                continue
            if _apply_update(ws, row_idx, layout, positions, flag_key, update):
                changed_rows += 1

        if changed_rows:
            store.save(wb)
        return changed_rows
    finally:
        wb.close()


def _apply_update(
    ws: Worksheet,
    row_idx: int,
    layout: StoreLayout,
    positions: dict[str, int | None],
    flag_key: str | None,
    update: AnnotationUpdate,
) -> bool:
    changed = False
    backgrounds = fit_colors(update.backgrounds, layout.width, NEUTRAL_BACKGROUND)
    fonts = fit_colors(update.fonts, layout.width, NEUTRAL_FONT)

    for layout_idx, col in enumerate(layout.columns):
        file_col = positions.get(col.key)
        if file_col is None:
            continue
        cell = ws.cell(row=row_idx, column=file_col + 1)

        if col.key == flag_key:
            new_value = update.flag.label or None
            if Flag.parse(cell.value) is not update.flag:
                cell.value = new_value
                changed = True

        if cell_background(cell) != backgrounds[layout_idx]:
            apply_background(cell, backgrounds[layout_idx])
            changed = True
        if cell_font_color(cell) != fonts[layout_idx]:
            apply_font_color(cell, fonts[layout_idx])
            changed = True
    return changed
