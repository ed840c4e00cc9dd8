"""
Cross-store propagation.

Two one-way flows, both keyed strictly by record ID:

- Notes:  entity stores -> their group's aggregate store
- Flags and per-cell colours: aggregate store -> member entity stores

The aggregate-only "Lead Note" slot never propagates. Unmatched IDs
and drifted colour arrays are counted, not fatal. A failing entity
store is logged and skipped; the propagation carries on.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field

from pipelinesync.domain.config import Directory, GroupConfig, OwnerConfig
from pipelinesync.domain.layouts import AGGREGATE_PIPELINE, ENTITY_PIPELINE, StoreLayout
from pipelinesync.domain.models import NEUTRAL_BACKGROUND, NEUTRAL_FONT, NoteEntry, Row
from pipelinesync.application.preservation import capture
from pipelinesync.application.results import UnitResult
from pipelinesync.infrastructure.excel.colors import project_colors
from pipelinesync.infrastructure.excel.stores import (
    AnnotationUpdate,
    update_annotations,
    update_notes,
)
from pipelinesync.infrastructure.excel.workbook_store import WorkbookStore

logger = logging.getLogger(__name__)

NOTE_KEY = "notes"


@dataclass
class NoteCollection:
    """Entity notes gathered for one group."""

    notes: dict[str, NoteEntry] = field(default_factory=dict)
    failures: list[str] = field(default_factory=list)


@dataclass
class ApplyStats:
    matched: int = 0
    name_matched: int = 0
    unmatched: int = 0


def entity_store(owner: OwnerConfig) -> WorkbookStore:
    return WorkbookStore(owner.store_path, owner.name)


def aggregate_store(group: GroupConfig) -> WorkbookStore:
    return WorkbookStore(group.store_path, group.name)


# ============================================================================
# Notes: entity -> aggregate
# ============================================================================


def notes_from_rows(rows: list[Row], owner_name: str, layout: StoreLayout = ENTITY_PIPELINE) -> dict[str, NoteEntry]:
    """Note entries for rows just merged for an entity store."""
    note_idx = layout.index_of(NOTE_KEY)
    name_idx = layout.index_of("deal_name")
    entries: dict[str, NoteEntry] = {}
    for row in rows:
        text = row.values[note_idx] if note_idx is not None else ""
        name = row.values[name_idx] if name_idx is not None else ""
        entries[row.record_id] = NoteEntry(
            record_id=row.record_id,
            text="" if text is None else str(text),
            display_name="" if name is None else str(name),
            owner_name=owner_name,
        )
    return entries


def collect_entity_notes(owners: list[OwnerConfig], tab: str) -> NoteCollection:
    """
    Read the note slot of every member entity store.

    A store that cannot be read is recorded in ``failures`` and skipped.
    """
    collection = NoteCollection()
    for owner in owners:
        try:
            captured = capture(entity_store(owner), tab, ENTITY_PIPELINE)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("Failed to read notes from %s", owner.name)
            collection.failures.append(f"{owner.name}: {e}")
            continue

        for record_id, annotation in captured.annotations.items():
            if record_id in collection.notes:
                logger.warning(
                    "Record %s appears in more than one entity store; keeping %s",
                    record_id,
                    collection.notes[record_id].owner_name,
                )
                continue
            collection.notes[record_id] = NoteEntry(
                record_id=record_id,
                text=annotation.notes.get(NOTE_KEY, ""),
                display_name=captured.names.get(record_id, ""),
                owner_name=owner.name,
            )
    return collection


def _unique_by_name(items: list[tuple[str, str]]) -> dict[str, str]:
    """Map display name -> key for names that occur exactly once."""
    counts = Counter(name.casefold() for name, _ in items if name)
    return {name.casefold(): key for name, key in items if name and counts[name.casefold()] == 1}


def match_by_name(
    unmatched_rows: list[tuple[str, str]],
    unmatched_notes: list[tuple[str, str]],
) -> dict[str, str]:
    """
    Deprecated name-based fallback.

    Args:
        unmatched_rows: (display name, row key) for rows with no ID match
        unmatched_notes: (display name, note record ID) for notes with no ID match

    Returns:
        Row key -> note record ID, only for names unique on both sides
    """
    rows_by_name = _unique_by_name(unmatched_rows)
    notes_by_name = _unique_by_name(unmatched_notes)
    pairs: dict[str, str] = {}
    for name, row_key in rows_by_name.items():
        if name in notes_by_name:
            logger.warning(
                "Matched note to row by deal name %r; name matching is deprecated "
                "and will be removed",
                name,
            )
            pairs[row_key] = notes_by_name[name]
    return pairs


def apply_notes(
    rows: list[Row],
    notes: dict[str, NoteEntry],
    layout: StoreLayout = AGGREGATE_PIPELINE,
    allow_name_matching: bool = False,
) -> ApplyStats:
    """
    Copy entity notes into aggregate rows in memory, by record ID.

    Entity notes overwrite the aggregate note slot, empty ones included.
    """
    stats = ApplyStats()
    note_idx = layout.index_of(NOTE_KEY)
    if note_idx is None:
        return stats

    row_ids = {row.record_id for row in rows}
    for row in rows:
        entry = notes.get(row.record_id)
        if entry is not None:
            row.values[note_idx] = entry.text
            stats.matched += 1

    if allow_name_matching:
        name_idx = layout.index_of("deal_name")
        by_key = {row.record_id: row for row in rows}
        pairs = match_by_name(
            [(str(row.values[name_idx] or ""), row.record_id) for row in rows if row.record_id not in notes],
            [(e.display_name, e.record_id) for e in notes.values() if e.record_id not in row_ids],
        )
        for row_key, note_id in pairs.items():
            by_key[row_key].values[note_idx] = notes[note_id].text
            stats.name_matched += 1

    stats.unmatched = len([rid for rid in notes if rid not in row_ids]) - stats.name_matched
    return stats


def push_notes_up(
    group: GroupConfig,
    directory: Directory,
    tab: str,
    owners: list[OwnerConfig] | None = None,
    allow_name_matching: bool = False,
) -> UnitResult:
    """
    Write entity notes into the group's aggregate store in place.

    Args:
        group: Target group
        directory: Owner/group directory
        tab: Entity tab the notes are read from
        owners: Limit to these members (default: every member)
        allow_name_matching: Enable the deprecated name fallback
    """
    start = time.perf_counter()
    members = owners if owners is not None else directory.members(group)
    collection = collect_entity_notes(members, tab)
    notes = {rid: entry.text for rid, entry in collection.notes.items()}

    store = aggregate_store(group)
    if allow_name_matching and store.exists():
        captured = capture(store, group.sheet_name, AGGREGATE_PIPELINE)
        unmatched_rows = [
            (name, rid) for rid, name in captured.names.items() if rid not in collection.notes
        ]
        unmatched_notes = [
            (e.display_name, e.record_id)
            for e in collection.notes.values()
            if e.record_id not in captured.annotations
        ]
        for row_id, note_id in match_by_name(unmatched_rows, unmatched_notes).items():
            notes[row_id] = collection.notes[note_id].text

    updated = 0
    error = "; ".join(collection.failures) or None
    if store.exists():
        updated = update_notes(store, group.sheet_name, AGGREGATE_PIPELINE, notes, NOTE_KEY)
    else:
        logger.warning("Aggregate store for %s does not exist yet", group.name)

    logger.info("Pushed %d note change(s) up to %s", updated, group.name)
    return UnitResult(
        unit=group.name,
        kind="notes_up",
        success=not collection.failures,
        error=error,
        record_count=updated,
        duration_ms=int((time.perf_counter() - start) * 1000),
    )


# ============================================================================
# Flags and colours: aggregate -> entity
# ============================================================================


def flag_updates(group: GroupConfig) -> dict[str, AnnotationUpdate]:
    """
    Read flags and colours from the aggregate store, re-indexed to the
    entity layout.
    """
    captured = capture(aggregate_store(group), group.sheet_name, AGGREGATE_PIPELINE)
    updates: dict[str, AnnotationUpdate] = {}
    drifted = 0
    for record_id, annotation in captured.annotations.items():
        if len(annotation.backgrounds) != AGGREGATE_PIPELINE.width:
            drifted += 1
        updates[record_id] = AnnotationUpdate(
            flag=annotation.flag,
            backgrounds=project_colors(
                annotation.backgrounds, AGGREGATE_PIPELINE, ENTITY_PIPELINE, NEUTRAL_BACKGROUND
            ),
            fonts=project_colors(
                annotation.fonts, AGGREGATE_PIPELINE, ENTITY_PIPELINE, NEUTRAL_FONT
            ),
        )
    if drifted:
        logger.warning("%d colour row(s) in %s had drifted width", drifted, group.name)
    return updates


def push_flags_down(
    group: GroupConfig,
    directory: Directory,
    tab: str,
    owners: list[OwnerConfig] | None = None,
) -> UnitResult:
    """
    Overwrite flag and colours on matching rows of every member entity
    store from the group's aggregate store.
    """
    start = time.perf_counter()
    updates = flag_updates(group)
    members = owners if owners is not None else directory.members(group)

    updated = 0
    failures: list[str] = []
    for owner in members:
        store = entity_store(owner)
        if not store.exists():
            logger.debug("No entity store for %s yet", owner.name)
            continue
        try:
            updated += update_annotations(store, tab, ENTITY_PIPELINE, updates)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("Failed to push flags down to %s", owner.name)
            failures.append(f"{owner.name}: {e}")

    logger.info("Pushed flags down from %s: %d row(s) changed", group.name, updated)
    return UnitResult(
        unit=group.name,
        kind="flags_down",
        success=not failures,
        error="; ".join(failures) or None,
        record_count=updated,
        duration_ms=int((time.perf_counter() - start) * 1000),
    )
