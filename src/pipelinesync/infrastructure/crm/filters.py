"""
CRM search filter construction.

All filters go into a single filter group, so the CRM ANDs them.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from pipelinesync.domain.config import DatasetConfig, FilterSpec

OWNER_PROPERTY = "hubspot_owner_id"
STAGE_PROPERTY = "dealstage"
CREATED_PROPERTY = "createdate"


def lookback_start_ms(days: int, now: datetime | None = None) -> int:
    """Epoch milliseconds for ``days`` before ``now``."""
    now = now or datetime.now(timezone.utc)
    return int((now - timedelta(days=days)).timestamp() * 1000)


def _filter(prop: str, operator: str, value: Any = None, values: list[Any] | None = None) -> dict:
    item: dict[str, Any] = {"propertyName": prop, "operator": operator}
    if values is not None:
        item["values"] = [str(v) for v in values]
    else:
        item["value"] = str(value)
    return item


def spec_to_filter(spec: FilterSpec) -> dict:
    """Convert a configured extra filter into the CRM wire shape."""
    if spec.operator in ("IN", "NOT_IN"):
        return _filter(spec.property, spec.operator, values=spec.values)
    return _filter(spec.property, spec.operator, spec.value)


def build_filter_group(
    owner_id: str,
    dataset: DatasetConfig,
    now: datetime | None = None,
) -> dict:
    """
    Build the filter group for one owner's fetch.

    Includes the owner match, the stage set, the creation-date window,
    the terminal lost-status exclusion and any configured extras.
    """
    filters = [_filter(OWNER_PROPERTY, "EQ", owner_id)]

    if dataset.stages:
        filters.append(_filter(STAGE_PROPERTY, "IN", values=dataset.stages))

    filters.append(
        _filter(CREATED_PROPERTY, "GTE", lookback_start_ms(dataset.lookback_days, now))
    )

    if dataset.lost_status_value:
        filters.append(_filter(dataset.lost_status_property, "NEQ", dataset.lost_status_value))

    filters.extend(spec_to_filter(spec) for spec in dataset.extra_filters)
    return {"filters": filters}
