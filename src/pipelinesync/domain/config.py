"""
Configuration domain models.

Settings and the owner/group directory are validated with pydantic.
The directory is read-only input to the engine; `DirectoryConfig.build()`
turns it into a `Directory` with prebuilt lookup indexes so a cycle
never scans lists per lookup.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from pipelinesync.domain.errors import ConfigurationError

__all__ = [
    "DEFAULT_STAGE_LABELS",
    "FilterSpec",
    "DatasetConfig",
    "CrmSettings",
    "LockSettings",
    "SyncSettings",
    "OwnerConfig",
    "GroupConfig",
    "DirectoryConfig",
    "Directory",
]


# CRM stage IDs to display names
DEFAULT_STAGE_LABELS: dict[str, str] = {
    "90284257": "Create Curiosity",
    "90284258": "Needs Analysis",
    "90284259": "Demonstrating Value",
    "90284260": "Partnership Proposal",
    "90284261": "Negotiation",
    "90284262": "Partnership Confirmed",
}

FILTER_OPERATORS = ("EQ", "NEQ", "GT", "GTE", "LT", "LTE", "IN", "NOT_IN")

# Slack between the run ceiling and the age at which a lock counts as stale
LOCK_STALE_MARGIN_SECONDS = 300.0


class FilterSpec(BaseModel):
    """An extra CRM filter, ANDed with the built-in ones."""

    property: str = Field(..., description="CRM property name")
    operator: str = Field(..., description="CRM filter operator")
    value: Optional[Any] = Field(None, description="Single comparison value")
    values: Optional[list[Any]] = Field(None, description="Values for IN / NOT_IN")

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v: str) -> str:
        v = v.strip().upper()
        if v not in FILTER_OPERATORS:
            raise ValueError(f"operator must be one of {', '.join(FILTER_OPERATORS)}")
        return v

    @model_validator(mode="after")
    def check_value_shape(self) -> "FilterSpec":
        if self.operator in ("IN", "NOT_IN"):
            if not self.values:
                raise ValueError(f"{self.operator} filter on {self.property} needs 'values'")
        elif self.value is None:
            raise ValueError(f"{self.operator} filter on {self.property} needs 'value'")
        return self


class DatasetConfig(BaseModel):
    """One sub-dataset (tab) of an entity store."""

    name: str = Field("Pipeline Review", description="Tab name in the entity workbook")
    stages: list[str] = Field(
        default_factory=lambda: ["90284260", "90284261", "90284259"],
        description="Stage IDs included in the fetch",
    )
    lookback_days: int = Field(120, ge=1, description="Creation-date rolling window")
    lost_status_property: str = "closed_status"
    lost_status_value: Optional[str] = "Closed lost (please specify the reason)"
    extra_filters: list[FilterSpec] = Field(default_factory=list)
    aggregate: bool = Field(True, description="Feeds the group aggregate store")


class CrmSettings(BaseModel):
    """CRM connection settings."""

    base_url: str = "https://api.hubapi.com"
    token_env: str = Field("CRM_ACCESS_TOKEN", description="Environment variable holding the token")
    secrets_file: Optional[Path] = Field(None, description="Optional JSON secrets file")
    page_size: int = Field(100, ge=1, le=200)
    max_results: int = Field(10_000, ge=1, description="Safety cap per fetch")
    timeout_seconds: float = Field(30.0, gt=0)
    portal_id: str = ""
    record_url_template: str = "https://app.hubspot.com/contacts/{portal_id}/record/0-3/{record_id}"


class LockSettings(BaseModel):
    """Global mutation lock settings."""

    path: Path = Path(".pipelinesync.lock")
    cycle_timeout_seconds: float = Field(30.0, ge=0)
    quick_timeout_seconds: float = Field(5.0, ge=0)
    stale_after_seconds: float = Field(3600.0, gt=0)


class SyncSettings(BaseModel):
    """Top-level engine settings (settings.json)."""

    model_config = ConfigDict(extra="ignore")

    crm: CrmSettings = Field(default_factory=CrmSettings)
    lock: LockSettings = Field(default_factory=LockSettings)
    timezone: str = "America/New_York"
    stage_labels: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_STAGE_LABELS))
    datasets: list[DatasetConfig] = Field(default_factory=lambda: [DatasetConfig()])
    aggregate_max_rows: int = Field(200, ge=1)
    max_runtime_seconds: float = Field(1800.0, gt=0, description="Execution ceiling per run")
    allow_name_matching: bool = Field(
        False, description="Deprecated: match notes by deal name when the ID is unmatched"
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {v!r}") from e
        return v

    @field_validator("datasets")
    @classmethod
    def validate_datasets(cls, v: list[DatasetConfig]) -> list[DatasetConfig]:
        if not v:
            raise ValueError("at least one dataset is required")
        names = [d.name for d in v]
        if len(set(names)) != len(names):
            raise ValueError(f"dataset names must be unique: {names}")
        if sum(1 for d in v if d.aggregate) > 1:
            raise ValueError("only one dataset can feed the aggregate store")
        return v

    @model_validator(mode="after")
    def check_lock_outlives_run(self) -> "SyncSettings":
        # A live run must never look stale to another process
        minimum = self.max_runtime_seconds + LOCK_STALE_MARGIN_SECONDS
        if self.lock.stale_after_seconds < minimum:
            raise ValueError(
                f"lock.stale_after_seconds ({self.lock.stale_after_seconds:.0f}) must be at least "
                f"max_runtime_seconds + {LOCK_STALE_MARGIN_SECONDS:.0f} ({minimum:.0f})"
            )
        return self

    @property
    def primary_dataset(self) -> DatasetConfig:
        """Dataset shared with the aggregate store and used for propagation."""
        for dataset in self.datasets:
            if dataset.aggregate:
                return dataset
        return self.datasets[0]


class OwnerConfig(BaseModel):
    """A record owner and the location of their entity store."""

    name: str
    email: str
    crm_owner_id: Optional[str] = None
    group: Optional[str] = None
    store_path: Path
    enabled: bool = True

    @field_validator("crm_owner_id", mode="before")
    @classmethod
    def coerce_owner_id(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip()


class GroupConfig(BaseModel):
    """A group and the location of its aggregate store."""

    name: str
    store_path: Path
    sheet_name: str = "Team Pipeline"
    lead: Optional[str] = None
    lead_email: Optional[str] = None


class DirectoryConfig(BaseModel):
    """Raw directory as loaded from directory.json."""

    owners: list[OwnerConfig] = Field(default_factory=list)
    groups: list[GroupConfig] = Field(default_factory=list)
    allowlist: list[str] = Field(default_factory=list)

    def build(self) -> "Directory":
        return Directory(self.owners, self.groups, self.allowlist)


class Directory:
    """
    Indexed, read-only view of owners and groups.

    Indexes are built once at construction. Group names and e-mail
    addresses are matched case-insensitively.
    """

    def __init__(
        self,
        owners: list[OwnerConfig],
        groups: list[GroupConfig],
        allowlist: list[str] | None = None,
    ) -> None:
        self.owners = [o for o in owners if o.enabled]
        self.groups = list(groups)
        self._allowlist = {e.strip().lower() for e in (allowlist or []) if e.strip()}

        self._by_email = {o.email.lower(): o for o in self.owners}
        self._groups = {g.name.lower(): g for g in self.groups}
        self._members: dict[str, list[OwnerConfig]] = {}
        for owner in self.owners:
            if owner.group:
                self._members.setdefault(owner.group.lower(), []).append(owner)

    def owner_by_email(self, email: str) -> OwnerConfig:
        try:
            return self._by_email[email.strip().lower()]
        except KeyError:
            raise ConfigurationError(f"No owner configured for {email!r}") from None

    def group(self, name: str) -> GroupConfig:
        try:
            return self._groups[name.strip().lower()]
        except KeyError:
            raise ConfigurationError(f"No group configured named {name!r}") from None

    def group_of(self, owner: OwnerConfig) -> GroupConfig:
        if not owner.group:
            raise ConfigurationError(f"Owner {owner.name!r} has no group configured")
        return self.group(owner.group)

    def members(self, group: GroupConfig | str) -> list[OwnerConfig]:
        name = group if isinstance(group, str) else group.name
        return list(self._members.get(name.strip().lower(), []))

    def is_allowed(self, email: str | None) -> bool:
        """
        Check whether an actor may run interactive commands.

        An empty allowlist allows everyone. Configured owners and group
        leads are always allowed.
        """
        if not self._allowlist:
            return True
        if not email:
            return False
        key = email.strip().lower()
        if key in self._allowlist or key in self._by_email:
            return True
        return any((g.lead_email or "").lower() == key for g in self.groups)
