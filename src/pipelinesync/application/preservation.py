"""
Annotation preservation merge.

Capture snapshots the human-authored part of a store tab (notes, flag,
per-cell colours) keyed by record ID. Merge rebuilds the tab's rows from
freshly fetched records and re-attaches captured annotations by ID.
Annotations whose record is no longer fetched are dropped.

Merging is idempotent: capture -> merge -> write -> capture -> merge
with the same records yields the same rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from pipelinesync.domain.layouts import StoreLayout
from pipelinesync.domain.models import (
    NEUTRAL_BACKGROUND,
    NEUTRAL_FONT,
    Annotation,
    Flag,
    Record,
    Row,
    parse_record_id,
)
from pipelinesync.infrastructure.excel.colors import fit_colors
from pipelinesync.infrastructure.excel.workbook_store import TabSnapshot, WorkbookStore

logger = logging.getLogger(__name__)


@dataclass
class Capture:
    """
    Annotations captured from one store tab.

    Attributes:
        annotations: Record ID -> annotation (colours in layout order)
        names: Record ID -> display name, for the name-matching fallback
        skipped: Body rows ignored because they had no parseable ID
    """

    annotations: dict[str, Annotation] = field(default_factory=dict)
    names: dict[str, str] = field(default_factory=dict)
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.annotations)

    def get(self, record_id: str) -> Annotation | None:
        return self.annotations.get(record_id)


@dataclass
class MergeResult:
    rows: list[Row]
    orphaned: int = 0


def capture(store: WorkbookStore, tab: str, layout: StoreLayout) -> Capture:
    """
    Snapshot annotations from a store tab.

    A missing workbook or tab yields an empty capture.
    """
    snapshot = store.read_tab(tab)
    if snapshot is None:
        return Capture()
    captured = capture_snapshot(snapshot, layout)
    logger.debug(
        "Captured %d annotation(s) from %s [%s], skipped %d row(s)",
        len(captured),
        store.label,
        tab,
        captured.skipped,
    )
    return captured


def capture_snapshot(snapshot: TabSnapshot, layout: StoreLayout) -> Capture:
    """
    Extract annotations from a tab snapshot.

    Every layout column is located by header, so columns the user moved
    or a layout change shifted are still read correctly. Columns missing
    from the tab read as empty / neutral.
    """
    result = Capture()
    id_idx = snapshot.index_of(layout.id_column.header)
    if id_idx is None:
        if snapshot.rows:
            logger.warning(
                "Tab %r has no %r column; annotations cannot be matched",
                snapshot.title,
                layout.id_column.header,
            )
        return result

    positions = [snapshot.index_of(col.header) for col in layout.columns]
    flag_col = layout.flag_column
    flag_idx = snapshot.index_of(flag_col.header) if flag_col else None
    name_idx = snapshot.index_of(layout.column("deal_name").header) if "deal_name" in layout.keys else None

    for row in snapshot.rows:
        record_id = parse_record_id(row.value(id_idx))
        if record_id is None:
            result.skipped += 1
            continue
        if record_id in result.annotations:
            logger.warning("Duplicate record %s in %r; keeping the first row", record_id, snapshot.title)
            continue

        notes = {}
        for col in layout.note_columns:
            value = row.value(snapshot.index_of(col.header))
            notes[col.key] = "" if value is None else str(value)

        result.annotations[record_id] = Annotation(
            notes=notes,
            flag=Flag.parse(row.value(flag_idx)) if flag_idx is not None else Flag.NONE,
            backgrounds=[
                row.backgrounds[pos] if pos is not None and pos < len(row.backgrounds) else NEUTRAL_BACKGROUND
                for pos in positions
            ],
            fonts=[
                row.fonts[pos] if pos is not None and pos < len(row.fonts) else NEUTRAL_FONT
                for pos in positions
            ],
        )
        if name_idx is not None:
            name = row.value(name_idx)
            if name is not None and str(name).strip():
                result.names[record_id] = str(name).strip()

    return result


def record_values(
    record: Record,
    layout: StoreLayout,
    stage_labels: dict[str, str] | None = None,
) -> list[Any]:
    """Values of the record-derived columns, annotation slots left empty."""
    stage_labels = stage_labels or {}
    values: list[Any] = []
    for col in layout.columns:
        if col.family == "id":
            values.append(record.id)
        elif col.family == "owner":
            values.append(record.owner_name)
        elif col.kind == "stage":
            values.append(stage_labels.get(record.stage, record.stage))
        elif col.prop:
            values.append(record.get(col.prop))
        elif col.kind == "flag":
            values.append(Flag.NONE)
        else:
            values.append("")
    return values


def merge(
    records: list[Record],
    captured: Capture,
    layout: StoreLayout,
    stage_labels: dict[str, str] | None = None,
    link_for: Callable[[str], str | None] | None = None,
) -> MergeResult:
    """
    Build one row per record, in input order, re-attaching annotations.

    Args:
        records: Freshly fetched records
        captured: Annotations captured from the same tab before the write
        layout: Target layout
        stage_labels: Stage ID -> display name
        link_for: Builds the deal-name hyperlink for a record ID

    Returns:
        Rows plus the number of orphaned (dropped) annotations
    """
    flag_col = layout.flag_column
    flag_idx = layout.index_of(flag_col.key) if flag_col else None
    note_positions = [(col.key, layout.index_of(col.key)) for col in layout.note_columns]

    rows: list[Row] = []
    seen: set[str] = set()
    for record in records:
        values = record_values(record, layout, stage_labels)
        annotation = captured.get(record.id)
        seen.add(record.id)

        if annotation is not None:
            for key, idx in note_positions:
                values[idx] = annotation.notes.get(key, "")
            if flag_idx is not None:
                values[flag_idx] = annotation.flag
            backgrounds = fit_colors(annotation.backgrounds, layout.width, NEUTRAL_BACKGROUND)
            fonts = fit_colors(annotation.fonts, layout.width, NEUTRAL_FONT)
        else:
            backgrounds = [NEUTRAL_BACKGROUND] * layout.width
            fonts = [NEUTRAL_FONT] * layout.width

        rows.append(
            Row(
                record_id=record.id,
                values=values,
                backgrounds=backgrounds,
                fonts=fonts,
                link=link_for(record.id) if link_for else None,
            )
        )

    orphaned = sum(1 for record_id in captured.annotations if record_id not in seen)
    if orphaned:
        logger.info("Dropped %d orphaned annotation(s)", orphaned)
    return MergeResult(rows=rows, orphaned=orphaned)
