"""
End-to-end tests of the full sync cycle against the fake CRM and real
workbooks in tmp_path.
"""

import time
from types import SimpleNamespace

import pytest
from openpyxl import load_workbook

from pipelinesync.application import sync_cycle as sync_cycle_module
from pipelinesync.application.results import RunStatus
from pipelinesync.application.sync_cycle import SyncCycle
from pipelinesync.domain.errors import ExecutionCeilingExceeded, StoreWriteError
from pipelinesync.infrastructure.excel.workbook_store import WorkbookStore
from pipelinesync.infrastructure.lock import CycleLock

TAB = "Pipeline Review"
TEAM = "Team Pipeline"


@pytest.fixture
def crm(fake_crm):
    fake_crm.add(
        "1",
        fake_crm.deal("101", "Acme", "1", next_activity="2026-10-20"),
        fake_crm.deal("102", "Globex", "1", score="4.5"),
    )
    fake_crm.add("2", fake_crm.deal("201", "Initech", "2"))
    return fake_crm


@pytest.fixture
def cycle(settings, directory, crm):
    return SyncCycle(settings, directory, lambda: crm.client(settings))


class TestFullCycle:
    def test_first_cycle_builds_every_store(self, cycle, directory, xl):
        summary = cycle.run()

        assert summary.status is RunStatus.COMPLETED
        assert [(u.unit, u.kind) for u in summary.units] == [
            ("Alex Rivera [Pipeline Review]", "refresh"),
            ("Sam Chen [Pipeline Review]", "refresh"),
            ("East", "aggregate"),
            ("East", "flags_down"),
        ]
        alex, sam = directory.owners
        group = directory.group("East")
        assert xl.ids(alex.store_path, TAB) == ["101", "102"]
        assert xl.ids(sam.store_path, TAB) == ["201"]
        assert xl.ids(group.store_path, TEAM) == ["101", "102", "201"]
        assert xl.value(group.store_path, TEAM, "201", "Owner") == "Sam Chen"
        assert xl.value(alex.store_path, TAB, "101", "Stage") == "Partnership Proposal"

    def test_record_links(self, cycle, directory):
        cycle.run()

        alex = directory.owners[0]
        ws = load_workbook(alex.store_path)[TAB]
        assert ws["B2"].value == "Acme"
        assert ws["B2"].hyperlink.target == "https://app.hubspot.com/contacts/999/record/0-3/101"

    def test_annotations_round_trip(self, cycle, directory, xl):
        alex, sam = directory.owners
        group = directory.group("East")
        cycle.run()

        xl.edit(alex.store_path, TAB, "101", "Notes", value="Call Tuesday")
        xl.edit(group.store_path, TEAM, "201", "Priority", value="🟢 Hot", row_fill="D9EAD3")
        xl.edit(group.store_path, TEAM, "102", "Lead Note", value="Check pricing")

        summary = cycle.run()

        assert summary.status is RunStatus.COMPLETED
        # Notes up
        assert xl.value(group.store_path, TEAM, "101", "Notes") == "Call Tuesday"
        assert xl.value(alex.store_path, TAB, "101", "Notes") == "Call Tuesday"
        # Aggregate annotations preserved
        assert xl.value(group.store_path, TEAM, "201", "Priority") == "🟢 Hot"
        assert xl.fill(group.store_path, TEAM, "201", "Stage") == "D9EAD3"
        assert xl.value(group.store_path, TEAM, "102", "Lead Note") == "Check pricing"
        # Flags down
        assert xl.value(sam.store_path, TAB, "201", "Priority") == "🟢 Hot"
        assert xl.fill(sam.store_path, TAB, "201", "Stage") == "D9EAD3"
        assert xl.fill(alex.store_path, TAB, "101", "Stage") is None

    def test_cycle_is_stable(self, cycle, directory, xl):
        alex = directory.owners[0]
        cycle.run()
        xl.edit(alex.store_path, TAB, "102", "Notes", value="keep")
        cycle.run()
        third = cycle.run()

        assert all(u.orphaned == 0 for u in third.units)
        assert xl.value(alex.store_path, TAB, "102", "Notes") == "keep"

    def test_closed_deal_is_orphaned(self, cycle, crm, directory, xl):
        alex = directory.owners[0]
        cycle.run()
        xl.edit(alex.store_path, TAB, "102", "Notes", value="lost")
        crm.deals["1"] = [d for d in crm.deals["1"] if d["id"] != "102"]

        summary = cycle.run()

        assert summary.units[0].orphaned == 1
        assert xl.ids(alex.store_path, TAB) == ["101"]


class TestFailureIsolation:
    def test_failed_owner_skips_group_but_flags_still_flow(self, cycle, crm, directory, xl):
        alex, sam = directory.owners
        group = directory.group("East")
        cycle.run()
        xl.edit(group.store_path, TEAM, "101", "Priority", value="🔴 Cold")
        crm.fail_owners.add("2")

        summary = cycle.run()

        assert summary.status is RunStatus.COMPLETED_WITH_ERRORS
        by_kind = {(u.unit, u.kind): u for u in summary.units}
        assert not by_kind[("Sam Chen [Pipeline Review]", "refresh")].success
        assert "500" in by_kind[("Sam Chen [Pipeline Review]", "refresh")].error
        aggregate = by_kind[("East", "aggregate")]
        assert aggregate.skipped and aggregate.success
        assert summary.skipped_count == 1
        assert summary.failure_count == 1
        # Last good aggregate kept, and its flag still reaches Alex
        assert xl.ids(group.store_path, TEAM) == ["101", "102", "201"]
        assert xl.value(alex.store_path, TAB, "101", "Priority") == "🔴 Cold"
        # Sam's previous store is untouched
        assert xl.ids(sam.store_path, TAB) == ["201"]

    def test_owner_lookup_outage_keeps_that_owners_store(self, cycle, crm, directory, xl):
        sam = directory.owners[1]
        cycle.run()
        xl.edit(sam.store_path, TAB, "201", "Notes", value="call back Tuesday", fill="D9EAD3")
        sam.crm_owner_id = None
        crm.owners_status = 503

        summary = cycle.run()

        assert summary.status is RunStatus.COMPLETED_WITH_ERRORS
        by_kind = {(u.unit, u.kind): u for u in summary.units}
        assert not by_kind[("Sam Chen [Pipeline Review]", "refresh")].success
        assert "503" in by_kind[("Sam Chen [Pipeline Review]", "refresh")].error
        assert by_kind[("Alex Rivera [Pipeline Review]", "refresh")].success
        assert xl.ids(sam.store_path, TAB) == ["201"]
        assert xl.value(sam.store_path, TAB, "201", "Notes") == "call back Tuesday"
        assert xl.fill(sam.store_path, TAB, "201", "Notes") == "D9EAD3"

    def test_locked_store_fails_only_that_owner(self, cycle, directory, monkeypatch):
        sam = directory.owners[1]
        original = WorkbookStore.save

        def save(self, wb):
            if self.path == sam.store_path:
                raise StoreWriteError("file is open")
            original(self, wb)

        monkeypatch.setattr(WorkbookStore, "save", save)
        summary = cycle.run()

        failed = [u.unit for u in summary.units if not u.success]
        assert failed == ["Sam Chen [Pipeline Review]"]


class TestLocking:
    def test_busy_when_lock_held(self, cycle, settings, crm):
        holder = CycleLock(settings.lock.path)
        assert holder.acquire()
        try:
            summary = cycle.run()
        finally:
            holder.release()

        assert summary.status is RunStatus.BUSY
        assert summary.units == []
        assert crm.requests == []

    def test_lock_released_after_run(self, cycle, settings):
        cycle.run()
        assert not settings.lock.path.exists()

    def test_ceiling_aborts_and_releases_lock(self, cycle, settings, monkeypatch):
        ticks = iter([0.0, 5000.0, 5000.0, 5000.0])
        fake_time = SimpleNamespace(monotonic=lambda: next(ticks), perf_counter=time.perf_counter)
        monkeypatch.setattr(sync_cycle_module, "time", fake_time)

        with pytest.raises(ExecutionCeilingExceeded):
            cycle.run()
        assert not settings.lock.path.exists()
