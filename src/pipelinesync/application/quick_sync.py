"""
Interactive quick operations.

Small propagations a user triggers on demand, outside the scheduled
cycle. Each takes the global lock with a short wait and reports BUSY
rather than queueing when a cycle (or another quick operation) holds it.
"""

from __future__ import annotations

import logging

from pipelinesync.domain.config import Directory, GroupConfig, OwnerConfig, SyncSettings
from pipelinesync.domain.errors import ConfigurationError
from pipelinesync.domain.layouts import AGGREGATE_PIPELINE
from pipelinesync.domain.models import NEUTRAL_BACKGROUND, NEUTRAL_FONT, Flag, parse_record_id
from pipelinesync.application.preservation import capture
from pipelinesync.application.propagation import aggregate_store, push_flags_down, push_notes_up
from pipelinesync.application.results import QuickSyncResult, RunStatus
from pipelinesync.infrastructure.excel.stores import AnnotationUpdate, update_annotations
from pipelinesync.infrastructure.excel.styles import FLAG_ROW_COLORS
from pipelinesync.infrastructure.lock import CycleLock

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A sync is already running. Try again in a moment."


class QuickSync:
    """
    Quick operations on one group or owner.

    Args:
        settings: Engine settings
        directory: Owner/group directory
        lock: Global mutation lock (default: from settings)
    """

    def __init__(
        self,
        settings: SyncSettings,
        directory: Directory,
        lock: CycleLock | None = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.lock = lock or CycleLock(settings.lock.path, settings.lock.stale_after_seconds)

    @property
    def _tab(self) -> str:
        return self.settings.primary_dataset.name

    def _denied(self, actor: str | None) -> QuickSyncResult | None:
        if actor is not None and not self.directory.is_allowed(actor):
            logger.warning("Quick operation refused for %s (not on the allowlist)", actor)
            return QuickSyncResult(status=RunStatus.DENIED, message=f"{actor} is not allowed")
        return None

    def _resolve_target(self, target: str) -> tuple[GroupConfig, list[OwnerConfig]]:
        """A target is a group name or an owner e-mail address."""
        if "@" in target:
            owner = self.directory.owner_by_email(target)
            return self.directory.group_of(owner), [owner]
        group = self.directory.group(target)
        return group, self.directory.members(group)

    def push_notes(self, target: str, actor: str | None = None) -> QuickSyncResult:
        """
        Push entity notes up into the aggregate store.

        Args:
            target: Group name, or an owner's e-mail to push only that owner
            actor: E-mail of the requesting user, checked against the allowlist
        """
        denied = self._denied(actor)
        if denied:
            return denied
        group, owners = self._resolve_target(target)

        with self.lock.held(self.settings.lock.quick_timeout_seconds) as acquired:
            if not acquired:
                return QuickSyncResult(status=RunStatus.BUSY, message=BUSY_MESSAGE)
            unit = push_notes_up(
                group,
                self.directory,
                self._tab,
                owners=owners,
                allow_name_matching=self.settings.allow_name_matching,
            )

        return QuickSyncResult(
            status=RunStatus.COMPLETED if unit.success else RunStatus.COMPLETED_WITH_ERRORS,
            updated=unit.record_count,
            stores_touched=1 if unit.record_count else 0,
            failures=[unit.error] if unit.error else [],
            message=f"Updated {unit.record_count} note(s) in {group.name}",
        )

    def sync_highlights(self, group_name: str, actor: str | None = None) -> QuickSyncResult:
        """Push flags and colours from the aggregate down to entity stores."""
        denied = self._denied(actor)
        if denied:
            return denied
        group = self.directory.group(group_name)

        with self.lock.held(self.settings.lock.quick_timeout_seconds) as acquired:
            if not acquired:
                return QuickSyncResult(status=RunStatus.BUSY, message=BUSY_MESSAGE)
            unit = push_flags_down(group, self.directory, self._tab)

        return QuickSyncResult(
            status=RunStatus.COMPLETED if unit.success else RunStatus.COMPLETED_WITH_ERRORS,
            updated=unit.record_count,
            failures=[unit.error] if unit.error else [],
            message=f"Synced highlights for {unit.record_count} row(s) from {group.name}",
        )

    def set_flag(
        self,
        group_name: str,
        record_id: str,
        flag: Flag,
        actor: str | None = None,
    ) -> QuickSyncResult:
        """
        Flag one aggregate row, colour it, and push it down.

        The whole row takes the flag's colour; Flag.NONE clears the row.
        """
        denied = self._denied(actor)
        if denied:
            return denied
        group = self.directory.group(group_name)
        normalized = parse_record_id(record_id)
        if normalized is None:
            raise ConfigurationError(f"Not a record ID: {record_id!r}")

        with self.lock.held(self.settings.lock.quick_timeout_seconds) as acquired:
            if not acquired:
                return QuickSyncResult(status=RunStatus.BUSY, message=BUSY_MESSAGE)

            store = aggregate_store(group)
            captured = capture(store, group.sheet_name, AGGREGATE_PIPELINE)
            if normalized not in captured.annotations:
                return QuickSyncResult(
                    status=RunStatus.COMPLETED_WITH_ERRORS,
                    failures=[f"record {normalized} not found"],
                    message=f"Record {normalized} is not in {group.name}",
                )

            color = FLAG_ROW_COLORS.get(flag, NEUTRAL_BACKGROUND)
            current = captured.annotations[normalized]
            update = AnnotationUpdate(
                flag=flag,
                backgrounds=[color] * AGGREGATE_PIPELINE.width,
                fonts=current.fonts or [NEUTRAL_FONT] * AGGREGATE_PIPELINE.width,
            )
            changed = update_annotations(
                store, group.sheet_name, AGGREGATE_PIPELINE, {normalized: update}
            )
            logger.info("Set %s on %s in %s", flag.name, normalized, group.name)
            unit = push_flags_down(group, self.directory, self._tab)

        return QuickSyncResult(
            status=RunStatus.COMPLETED if unit.success else RunStatus.COMPLETED_WITH_ERRORS,
            updated=changed + unit.record_count,
            stores_touched=(1 if changed else 0) + (1 if unit.record_count else 0),
            failures=[unit.error] if unit.error else [],
            message=f"Flagged {normalized} as {flag.name.title()}",
        )
