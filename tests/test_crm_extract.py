"""Tests for CRM value extraction and filter construction."""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from pipelinesync.domain.config import DatasetConfig, FilterSpec
from pipelinesync.infrastructure.crm.extract import (
    extract_date,
    extract_datetime,
    extract_number,
    extract_text,
    normalise_properties,
)
from pipelinesync.infrastructure.crm.filters import build_filter_group, lookback_start_ms

NY = ZoneInfo("America/New_York")


class TestExtractDate:
    def test_plain_date_passes_through(self):
        assert extract_date("2024-01-15", NY) == date(2024, 1, 15)

    def test_epoch_ms_in_timezone(self):
        # 2024-01-15 03:00 UTC is still the 14th in New York
        assert extract_date("1705287600000", NY) == date(2024, 1, 14)
        assert extract_date("1705287600000") == date(2024, 1, 15)

    def test_epoch_out_of_range(self):
        assert extract_date("0", NY) == ""
        assert extract_date("5000000000000", NY) == ""
        assert extract_date("123", NY) == ""

    def test_iso_datetime_with_z(self):
        assert extract_date("2024-01-15T03:00:00Z", NY) == date(2024, 1, 14)
        assert extract_date("2024-01-15T03:00:00.000Z", NY) == date(2024, 1, 14)

    @pytest.mark.parametrize("value", [None, "", "   ", "not a date", "2024-13-45", True])
    def test_garbage_is_empty(self, value):
        assert extract_date(value, NY) == ""


class TestExtractOthers:
    def test_number(self):
        assert extract_number("3.5") == 3.5
        assert extract_number("1,200") == 1200.0
        assert extract_number(4) == 4.0
        assert extract_number("abc") == ""
        assert extract_number(None) == ""
        assert extract_number("nan") == ""

    def test_text(self):
        assert extract_text(None) == ""
        assert extract_text("  Acme ") == "Acme"
        assert extract_text(42) == "42"

    def test_datetime(self):
        parsed = extract_datetime("2024-01-15T03:00:00Z", NY)
        assert parsed.tzinfo is not None
        assert parsed.hour == 22
        assert extract_datetime("", NY) is None

    def test_normalise_properties(self):
        kinds = {"closedate": "date", "call_quality_score": "number", "dealname": "link"}
        result = normalise_properties(
            {"closedate": "2024-02-01", "call_quality_score": "x", "extra": None},
            kinds,
            NY,
        )
        assert result == {
            "closedate": date(2024, 2, 1),
            "call_quality_score": "",
            "dealname": "",
            "extra": "",
        }


class TestFilters:
    NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def test_lookback(self):
        assert lookback_start_ms(120, self.NOW) == 1_756_857_600_000

    def test_default_group(self):
        group = build_filter_group("42", DatasetConfig(), self.NOW)
        filters = {f["propertyName"]: f for f in group["filters"]}

        assert filters["hubspot_owner_id"] == {
            "propertyName": "hubspot_owner_id",
            "operator": "EQ",
            "value": "42",
        }
        assert filters["dealstage"]["operator"] == "IN"
        assert filters["dealstage"]["values"] == ["90284260", "90284261", "90284259"]
        assert filters["createdate"] == {
            "propertyName": "createdate",
            "operator": "GTE",
            "value": "1756857600000",
        }
        assert filters["closed_status"]["operator"] == "NEQ"
        assert filters["closed_status"]["value"] == "Closed lost (please specify the reason)"

    def test_extra_threshold_filters(self):
        dataset = DatasetConfig(
            extra_filters=[
                FilterSpec(property="call_quality_score", operator="gte", value=4),
                FilterSpec(property="pipeline", operator="IN", values=["default", 7]),
            ]
        )
        group = build_filter_group("42", dataset, self.NOW)
        assert group["filters"][-2] == {
            "propertyName": "call_quality_score",
            "operator": "GTE",
            "value": "4",
        }
        assert group["filters"][-1]["values"] == ["default", "7"]

    def test_no_lost_status_filter_when_disabled(self):
        group = build_filter_group("42", DatasetConfig(lost_status_value=None), self.NOW)
        assert all(f["propertyName"] != "closed_status" for f in group["filters"])

    def test_filter_spec_validation(self):
        with pytest.raises(ValueError):
            FilterSpec(property="x", operator="LIKE", value=1)
        with pytest.raises(ValueError):
            FilterSpec(property="x", operator="IN")
