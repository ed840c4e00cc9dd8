"""
Store Layout Registry.

SINGLE SOURCE OF TRUTH for the column layout of every store tab.
Readers, writers and propagation all locate columns through these
definitions, so a layout change never needs a second edit elsewhere.

Column families:
    id          Hidden record ID column (the merge key)
    owner       Owner display name (aggregate only)
    record      CRM record fields, fully replaced on refresh
    score       Numeric score fields, gradient-shaded
    annotation  Human-authored fields, preserved across refresh
"""

from __future__ import annotations

from dataclasses import dataclass

__all__ = [
    "ColumnSpec",
    "StoreLayout",
    "ENTITY_PIPELINE",
    "AGGREGATE_PIPELINE",
    "FETCH_PROPERTIES",
]


@dataclass(frozen=True, slots=True)
class ColumnSpec:
    """
    Definition of one store column.

    Attributes:
        key: Stable internal name, shared between layouts
        header: Header text written in row 1
        family: id | owner | record | score | annotation
        kind: text | number | date | link | stage | note | flag
        prop: CRM property feeding the column (record/score families)
        width: Column width in characters
        hidden: Column is hidden in the workbook
    """

    key: str
    header: str
    family: str
    kind: str = "text"
    prop: str | None = None
    width: int = 14
    hidden: bool = False


@dataclass(frozen=True)
class StoreLayout:
    """Ordered column definitions for one kind of store tab."""

    name: str
    columns: tuple[ColumnSpec, ...]
    frozen_columns: int = 2

    @property
    def width(self) -> int:
        return len(self.columns)

    @property
    def keys(self) -> list[str]:
        return [c.key for c in self.columns]

    @property
    def headers(self) -> list[str]:
        return [c.header for c in self.columns]

    def index_of(self, key: str) -> int | None:
        """0-based position of a column key, or None if absent."""
        for idx, col in enumerate(self.columns):
            if col.key == key:
                return idx
        return None

    def column(self, key: str) -> ColumnSpec:
        for col in self.columns:
            if col.key == key:
                return col
        raise KeyError(f"Layout {self.name!r} has no column {key!r}")

    def columns_in(self, family: str) -> list[ColumnSpec]:
        return [c for c in self.columns if c.family == family]

    @property
    def id_column(self) -> ColumnSpec:
        return self.columns_in("id")[0]

    @property
    def id_index(self) -> int:
        return self.index_of(self.id_column.key)

    @property
    def note_columns(self) -> list[ColumnSpec]:
        return [c for c in self.columns if c.kind == "note"]

    @property
    def flag_column(self) -> ColumnSpec | None:
        for col in self.columns:
            if col.kind == "flag":
                return col
        return None

    @property
    def score_columns(self) -> list[ColumnSpec]:
        return self.columns_in("score")

    @property
    def properties(self) -> list[str]:
        """CRM properties this layout needs, in column order."""
        return [c.prop for c in self.columns if c.prop]

    @property
    def property_kinds(self) -> dict[str, str]:
        """CRM property name to column kind, for value normalisation."""
        return {c.prop: c.kind for c in self.columns if c.prop}

    def projection_onto(self, target: "StoreLayout") -> list[int | None]:
        """
        Map every target column to its position in this layout.

        Entry i is the index in this layout of the column with the
        same key as target column i, or None when this layout has no
        such column. Used to re-index per-cell colours between the
        aggregate and entity layouts.
        """
        positions = {key: idx for idx, key in enumerate(self.keys)}
        return [positions.get(col.key) for col in target.columns]


# ═══════════════════════════════════════════════════════════════════════════
# Shared column definitions
# ═══════════════════════════════════════════════════════════════════════════

_ID = ColumnSpec("deal_id", "Deal ID", "id", width=12, hidden=True)
_OWNER = ColumnSpec("owner", "Owner", "owner", width=18)

_RECORD_FIELDS = (
    ColumnSpec("deal_name", "Deal Name", "record", "link", prop="dealname", width=32),
    ColumnSpec("stage", "Stage", "record", "stage", prop="dealstage", width=20),
    ColumnSpec(
        "last_activity", "Last Activity", "record", "date",
        prop="notes_last_updated", width=13,
    ),
    ColumnSpec(
        "next_activity", "Next Activity", "record", "date",
        prop="notes_next_activity_date", width=13,
    ),
    ColumnSpec(
        "why_not_today", "Why Not Purchase Today", "record",
        prop="why_not_purchase_today_", width=36,
    ),
    ColumnSpec("close_date", "Close Date", "record", "date", prop="closedate", width=12),
)

_SCORE_FIELDS = (
    ColumnSpec(
        "call_quality", "Call Quality Score", "score", "number",
        prop="call_quality_score", width=11,
    ),
    ColumnSpec(
        "questioning", "Questioning", "score", "number",
        prop="s_discovery_a_questioning_technique__details", width=11,
    ),
    ColumnSpec(
        "building_value", "Building Value", "score", "number",
        prop="s_building_value_a_tailoring_features_and_benefits__details", width=11,
    ),
    ColumnSpec(
        "funding_options", "Funding Options", "score", "number",
        prop="s_funding_options__a_identifying_funding_needs__details", width=11,
    ),
    ColumnSpec(
        "objections", "Addressing Objections", "score", "number",
        prop="s_addressing_objections_a_identifying_and_addressing_objections_and_obstacles__details",
        width=11,
    ),
    ColumnSpec(
        "closing", "Closing the Deal", "score", "number",
        prop="s_closing_the_deal__a_assuming_the_sale__details", width=11,
    ),
    ColumnSpec(
        "referral", "Ask for Referral", "score", "number",
        prop="s_closing_the_deal__a_ask_for_referral__details", width=11,
    ),
)

_NOTES = ColumnSpec("notes", "Notes", "annotation", "note", width=40)
_FLAG = ColumnSpec("priority", "Priority", "annotation", "flag", width=14)
_LEAD_NOTE = ColumnSpec("lead_note", "Lead Note", "annotation", "note", width=32)


# ═══════════════════════════════════════════════════════════════════════════
# LAYOUT REGISTRY
# ═══════════════════════════════════════════════════════════════════════════

ENTITY_PIPELINE = StoreLayout(
    name="entity_pipeline",
    columns=(_ID, *_RECORD_FIELDS, *_SCORE_FIELDS, _NOTES, _FLAG),
    frozen_columns=2,
)

# One extra leading Owner column, plus an aggregate-only note slot that
# never propagates
AGGREGATE_PIPELINE = StoreLayout(
    name="aggregate_pipeline",
    columns=(_OWNER, _ID, *_RECORD_FIELDS, *_SCORE_FIELDS, _NOTES, _FLAG, _LEAD_NOTE),
    frozen_columns=3,
)

# Properties requested from the CRM on every fetch
FETCH_PROPERTIES: tuple[str, ...] = (
    "hubspot_owner_id",
    "createdate",
    "hs_lastmodifieddate",
    "hs_deal_stage_probability",
    *ENTITY_PIPELINE.properties,
)
