"""
Full sync cycle.

Orchestrates one scheduled run under the global lock:

    Phase 1: Refresh every owner's entity store (per dataset)
    Phase 2: Rebuild every group's aggregate store
    Phase 3: Push flags and colours down to entity stores

Each owner/dataset refresh and each group step is an isolated unit: a
failure is logged, recorded and the cycle moves on.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from pipelinesync.domain.config import DatasetConfig, Directory, GroupConfig, OwnerConfig, SyncSettings
from pipelinesync.domain.errors import ExecutionCeilingExceeded
from pipelinesync.domain.layouts import AGGREGATE_PIPELINE, ENTITY_PIPELINE
from pipelinesync.domain.models import NoteEntry, Record
from pipelinesync.application.preservation import capture, merge
from pipelinesync.application.propagation import (
    aggregate_store,
    apply_notes,
    entity_store,
    notes_from_rows,
    push_flags_down,
)
from pipelinesync.application.results import CycleSummary, RunStatus, UnitResult
from pipelinesync.infrastructure.crm.client import CrmClient
from pipelinesync.infrastructure.excel.stores import AggregateStoreWriter, EntityStoreWriter
from pipelinesync.infrastructure.lock import CycleLock

logger = logging.getLogger(__name__)


class SyncCycle:
    """
    One full refresh-and-propagate run.

    Args:
        settings: Engine settings
        directory: Owner/group directory (indexed once, read-only)
        client_factory: Builds a fresh CRM client for the run
        lock: Global mutation lock (default: from settings)
    """

    def __init__(
        self,
        settings: SyncSettings,
        directory: Directory,
        client_factory: Callable[[], CrmClient],
        lock: CycleLock | None = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.client_factory = client_factory
        self.lock = lock or CycleLock(settings.lock.path, settings.lock.stale_after_seconds)
        self.entity_writer = EntityStoreWriter()
        self.aggregate_writer = AggregateStoreWriter(settings.aggregate_max_rows)
        self._started = 0.0

    def run(self) -> CycleSummary:
        """
        Run the cycle.

        Returns:
            Summary with one UnitResult per unit, or status BUSY when
            another run holds the lock

        Raises:
            ExecutionCeilingExceeded: If the run outlives max_runtime_seconds
        """
        started_at = datetime.now()
        self._started = time.monotonic()

        with self.lock.held(self.settings.lock.cycle_timeout_seconds) as acquired:
            if not acquired:
                logger.warning("Another sync is in progress; skipping this cycle")
                return CycleSummary(status=RunStatus.BUSY, started_at=started_at)

            logger.info("=" * 50)
            logger.info(
                "Sync cycle started: %d owner(s), %d group(s)",
                len(self.directory.owners),
                len(self.directory.groups),
            )
            units = self._run_locked()

        summary = CycleSummary(
            status=RunStatus.COMPLETED
            if all(u.success for u in units)
            else RunStatus.COMPLETED_WITH_ERRORS,
            units=units,
            started_at=started_at,
            duration_seconds=round(time.monotonic() - self._started, 3),
        )
        logger.info(
            "Sync cycle finished in %.1fs: %d ok, %d failed, %d skipped",
            summary.duration_seconds,
            summary.success_count,
            summary.failure_count,
            summary.skipped_count,
        )
        return summary

    def _run_locked(self) -> list[UnitResult]:
        units: list[UnitResult] = []
        failed_owners: set[str] = set()
        records_by_owner: dict[str, list[Record]] = {}
        notes_by_owner: dict[str, dict[str, NoteEntry]] = {}
        primary = self.settings.primary_dataset

        client = self.client_factory()
        try:
            # Phase 1: entity stores
            for owner in self.directory.owners:
                for dataset in self.settings.datasets:
                    self._check_ceiling()
                    unit, records, notes = self._refresh_owner(client, owner, dataset)
                    units.append(unit)
                    if not unit.success:
                        failed_owners.add(owner.email.lower())
                    elif dataset is primary:
                        records_by_owner[owner.email.lower()] = records
                        notes_by_owner[owner.email.lower()] = notes

            units.extend(
                self._run_groups(client, failed_owners, records_by_owner, notes_by_owner)
            )
        finally:
            client.close()

        return units

    def _run_groups(
        self,
        client: CrmClient,
        failed_owners: set[str],
        records_by_owner: dict[str, list[Record]],
        notes_by_owner: dict[str, dict[str, NoteEntry]],
    ) -> list[UnitResult]:
        units: list[UnitResult] = []
        primary = self.settings.primary_dataset
        # Phase 2 + 3: aggregate stores, then flags down
        for group in self.directory.groups:
            self._check_ceiling()
            members = self.directory.members(group)
            failed = [m.name for m in members if m.email.lower() in failed_owners]
            if failed:
                logger.warning(
                    "Skipping aggregate rebuild for %s: fetch failed for %s",
                    group.name,
                    ", ".join(failed),
                )
                units.append(
                    UnitResult(
                        unit=group.name,
                        kind="aggregate",
                        success=True,
                        skipped=True,
                        error=f"member refresh failed: {', '.join(failed)}",
                    )
                )
            else:
                units.append(
                    self._rebuild_aggregate(
                        client, group, members, records_by_owner, notes_by_owner
                    )
                )

            self._check_ceiling()
            units.append(self._flags_down(group, primary))

        return units

    def _check_ceiling(self) -> None:
        elapsed = time.monotonic() - self._started
        if elapsed > self.settings.max_runtime_seconds:
            logger.critical(
                "Execution ceiling of %.0fs exceeded after %.0fs; aborting run",
                self.settings.max_runtime_seconds,
                elapsed,
            )
            raise ExecutionCeilingExceeded(
                f"Run exceeded {self.settings.max_runtime_seconds:.0f}s ceiling"
            )

    def _refresh_owner(
        self,
        client: CrmClient,
        owner: OwnerConfig,
        dataset: DatasetConfig,
    ) -> tuple[UnitResult, list[Record], dict[str, NoteEntry]]:
        start = time.perf_counter()
        unit_name = f"{owner.name} [{dataset.name}]"
        logger.info("Refreshing %s", unit_name)
        try:
            records = client.fetch(owner, dataset)
            store = entity_store(owner)
            captured = capture(store, dataset.name, ENTITY_PIPELINE)
            result = merge(
                records,
                captured,
                ENTITY_PIPELINE,
                self.settings.stage_labels,
                link_for=client.record_url,
            )
            written = self.entity_writer.write(store, dataset.name, result.rows)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("Refresh failed for %s", unit_name)
            return (
                UnitResult(
                    unit=unit_name,
                    kind="refresh",
                    success=False,
                    error=str(e),
                    duration_ms=int((time.perf_counter() - start) * 1000),
                ),
                [],
                {},
            )

        unit = UnitResult(
            unit=unit_name,
            kind="refresh",
            success=True,
            record_count=written,
            orphaned=result.orphaned,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info("Refreshed %s: %d row(s) in %dms", unit_name, written, unit.duration_ms)
        return unit, records, notes_from_rows(result.rows, owner.name)

    def _rebuild_aggregate(
        self,
        client: CrmClient,
        group: GroupConfig,
        members: list[OwnerConfig],
        records_by_owner: dict[str, list[Record]],
        notes_by_owner: dict[str, dict[str, NoteEntry]],
    ) -> UnitResult:
        start = time.perf_counter()
        logger.info("Rebuilding aggregate for %s", group.name)
        try:
            records: list[Record] = []
            notes: dict[str, NoteEntry] = {}
            for member in members:
                key = member.email.lower()
                records.extend(records_by_owner.get(key, []))
                for record_id, entry in notes_by_owner.get(key, {}).items():
                    notes.setdefault(record_id, entry)

            store = aggregate_store(group)
            captured = capture(store, group.sheet_name, AGGREGATE_PIPELINE)
            result = merge(
                records,
                captured,
                AGGREGATE_PIPELINE,
                self.settings.stage_labels,
                link_for=client.record_url,
            )
            stats = apply_notes(
                result.rows,
                notes,
                AGGREGATE_PIPELINE,
                allow_name_matching=self.settings.allow_name_matching,
            )
            written = self.aggregate_writer.write(store, group.sheet_name, result.rows)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("Aggregate rebuild failed for %s", group.name)
            return UnitResult(
                unit=group.name,
                kind="aggregate",
                success=False,
                error=str(e),
                duration_ms=int((time.perf_counter() - start) * 1000),
            )

        logger.info(
            "Rebuilt %s: %d row(s), %d note(s) matched, %d unmatched",
            group.name,
            written,
            stats.matched + stats.name_matched,
            stats.unmatched,
        )
        return UnitResult(
            unit=group.name,
            kind="aggregate",
            success=True,
            record_count=written,
            orphaned=result.orphaned,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def _flags_down(self, group: GroupConfig, dataset: DatasetConfig) -> UnitResult:
        try:
            return push_flags_down(group, self.directory, dataset.name)
        except Exception as e:  # pylint: disable=broad-except
            logger.exception("Flag propagation failed for %s", group.name)
            return UnitResult(unit=group.name, kind="flags_down", success=False, error=str(e))
