"""
Tests for notes-up and flags-down propagation between real stores.
"""

import pytest

from pipelinesync.application.preservation import Capture, merge
from pipelinesync.application.propagation import (
    aggregate_store,
    apply_notes,
    collect_entity_notes,
    entity_store,
    match_by_name,
    push_flags_down,
    push_notes_up,
)
from pipelinesync.domain.layouts import AGGREGATE_PIPELINE, ENTITY_PIPELINE
from pipelinesync.domain.models import NoteEntry
from pipelinesync.infrastructure.excel.stores import AggregateStoreWriter, EntityStoreWriter

TAB = "Pipeline Review"
TEAM = "Team Pipeline"


@pytest.fixture
def stores(directory, make_record):
    """Alex holds deals 1 and 2, Sam holds 3; the East aggregate holds all three."""
    alex, sam = directory.owners
    alex_records = [make_record("1", "Acme"), make_record("2", "Globex")]
    sam_records = [make_record("3", "Initech", owner_name="Sam Chen")]

    writer = EntityStoreWriter()
    writer.write(entity_store(alex), TAB, merge(alex_records, Capture(), ENTITY_PIPELINE).rows)
    writer.write(entity_store(sam), TAB, merge(sam_records, Capture(), ENTITY_PIPELINE).rows)

    group = directory.group("East")
    rows = merge(alex_records + sam_records, Capture(), AGGREGATE_PIPELINE).rows
    AggregateStoreWriter().write(aggregate_store(group), TEAM, rows)
    return group, alex, sam


class TestNotesUp:
    def test_entity_notes_overwrite_aggregate(self, directory, stores, xl):
        group, alex, sam = stores
        xl.edit(alex.store_path, TAB, "1", "Notes", value="Send contract")
        xl.edit(sam.store_path, TAB, "3", "Notes", value="Waiting on budget")
        xl.edit(group.store_path, TEAM, "2", "Notes", value="stale aggregate note")

        unit = push_notes_up(group, directory, TAB)

        assert unit.success
        assert unit.record_count == 3
        assert xl.value(group.store_path, TEAM, "1", "Notes") == "Send contract"
        assert xl.value(group.store_path, TEAM, "3", "Notes") == "Waiting on budget"
        # An empty entity note clears the aggregate slot
        assert xl.value(group.store_path, TEAM, "2", "Notes") is None

    def test_lead_note_is_untouched(self, directory, stores, xl):
        group, alex, _ = stores
        xl.edit(group.store_path, TEAM, "1", "Lead Note", value="Escalate")
        xl.edit(alex.store_path, TAB, "1", "Notes", value="Owner note")

        push_notes_up(group, directory, TAB)

        assert xl.value(group.store_path, TEAM, "1", "Lead Note") == "Escalate"

    def test_limited_to_one_owner(self, directory, stores, xl):
        group, alex, sam = stores
        xl.edit(alex.store_path, TAB, "1", "Notes", value="from alex")
        xl.edit(sam.store_path, TAB, "3", "Notes", value="from sam")

        push_notes_up(group, directory, TAB, owners=[alex])

        assert xl.value(group.store_path, TEAM, "1", "Notes") == "from alex"
        assert xl.value(group.store_path, TEAM, "3", "Notes") is None

    def test_unreadable_entity_store_is_recorded(self, directory, stores):
        group, alex, _ = stores
        alex.store_path.write_text("corrupt")

        unit = push_notes_up(group, directory, TAB)

        assert not unit.success
        assert "Alex Rivera" in unit.error

    def test_collect_keeps_first_owner_for_duplicates(self, directory, stores, xl):
        _, alex, sam = stores
        xl.edit(alex.store_path, TAB, "1", "Notes", value="alex copy")
        collection = collect_entity_notes([alex, sam, alex], TAB)
        assert collection.notes["1"].text == "alex copy"
        assert collection.notes["1"].owner_name == "Alex Rivera"
        assert collection.notes["1"].display_name == "Acme"


class TestApplyNotes:
    def rows(self, make_record, *pairs):
        return merge([make_record(rid, name) for rid, name in pairs], Capture(), AGGREGATE_PIPELINE).rows

    def test_match_by_id(self, make_record):
        rows = self.rows(make_record, ("1", "Acme"), ("2", "Globex"))
        stats = apply_notes(rows, {"2": NoteEntry("2", "hi", "Globex")})

        note_idx = AGGREGATE_PIPELINE.index_of("notes")
        assert rows[1].values[note_idx] == "hi"
        assert rows[0].values[note_idx] == ""
        assert (stats.matched, stats.name_matched, stats.unmatched) == (1, 0, 0)

    def test_name_matching_off_by_default(self, make_record):
        rows = self.rows(make_record, ("10", "Acme"))
        stats = apply_notes(rows, {"99": NoteEntry("99", "hi", "Acme")})

        assert rows[0].values[AGGREGATE_PIPELINE.index_of("notes")] == ""
        assert stats.unmatched == 1

    def test_name_matching_fallback(self, make_record, caplog):
        rows = self.rows(make_record, ("10", "Acme"))
        stats = apply_notes(rows, {"99": NoteEntry("99", "hi", "acme")}, allow_name_matching=True)

        assert rows[0].values[AGGREGATE_PIPELINE.index_of("notes")] == "hi"
        assert (stats.name_matched, stats.unmatched) == (1, 0)
        assert "deprecated" in caplog.text

    def test_ambiguous_names_never_match(self):
        pairs = match_by_name(
            [("Acme", "10"), ("Acme", "11")],
            [("Acme", "99")],
        )
        assert pairs == {}


class TestFlagsDown:
    def test_flags_and_colours_reindexed(self, directory, stores, xl):
        group, alex, sam = stores
        xl.edit(group.store_path, TEAM, "3", "Priority", value="🟢 Hot")
        xl.edit(group.store_path, TEAM, "3", "Stage", fill="D9EAD3")
        xl.edit(group.store_path, TEAM, "3", "Owner", fill="FF0000")

        unit = push_flags_down(group, directory, TAB)

        assert unit.success
        assert unit.record_count == 1
        assert xl.value(sam.store_path, TAB, "3", "Priority") == "🟢 Hot"
        assert xl.fill(sam.store_path, TAB, "3", "Stage") == "D9EAD3"
        assert xl.fill(sam.store_path, TAB, "3", "Deal Name") is None
        assert xl.value(alex.store_path, TAB, "1", "Priority") is None

    def test_cleared_aggregate_clears_entity(self, directory, stores, xl):
        group, alex, _ = stores
        xl.edit(alex.store_path, TAB, "2", "Priority", value="🔴 Cold", row_fill="F4CCCC")

        push_flags_down(group, directory, TAB)

        assert xl.value(alex.store_path, TAB, "2", "Priority") is None
        assert xl.fill(alex.store_path, TAB, "2", "Stage") is None

    def test_second_push_changes_nothing(self, directory, stores, xl):
        group, _, _ = stores
        xl.edit(group.store_path, TEAM, "1", "Priority", value="🟡 Attention", row_fill="FFF2CC")

        assert push_flags_down(group, directory, TAB).record_count == 1
        assert push_flags_down(group, directory, TAB).record_count == 0

    def test_missing_entity_store_is_skipped(self, directory, stores):
        group, alex, _ = stores
        alex.store_path.unlink()

        unit = push_flags_down(group, directory, TAB)

        assert unit.success

    def test_broken_entity_store_is_recorded(self, directory, stores):
        group, alex, _ = stores
        alex.store_path.write_text("corrupt")

        unit = push_flags_down(group, directory, TAB)

        assert not unit.success
        assert "Alex Rivera" in unit.error
