"""
Run result models.

Every owner refresh, group rebuild and propagation is one unit; a
cycle is summarised from its units.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    """Outcome of a cycle or quick operation."""

    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    BUSY = "busy"
    DENIED = "denied"


class UnitResult(BaseModel):
    """Result of one unit of work inside a run."""

    unit: str = Field(..., description="Owner, group or store the unit worked on")
    kind: str = Field(..., description="refresh | aggregate | flags_down | notes_up")
    success: bool = Field(..., description="Whether the unit completed")
    skipped: bool = Field(False, description="Unit deliberately not run")
    error: Optional[str] = Field(None, description="Error details if failed or skipped")
    record_count: int = Field(0, description="Rows written or updated")
    orphaned: int = Field(0, description="Annotations dropped because their record left the fetch")
    duration_ms: int = Field(0, description="Time taken")


class CycleSummary(BaseModel):
    """Summary of a full sync cycle."""

    status: RunStatus
    units: list[UnitResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.now)
    duration_seconds: float = 0.0

    @property
    def success_count(self) -> int:
        return sum(1 for u in self.units if u.success and not u.skipped)

    @property
    def failure_count(self) -> int:
        return sum(1 for u in self.units if not u.success)

    @property
    def skipped_count(self) -> int:
        return sum(1 for u in self.units if u.skipped)


class QuickSyncResult(BaseModel):
    """Result of an interactive quick operation."""

    status: RunStatus
    updated: int = Field(0, description="Cells or rows changed")
    stores_touched: int = Field(0, description="Stores saved")
    failures: list[str] = Field(default_factory=list)
    message: str = ""
