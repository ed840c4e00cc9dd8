"""
Shared fixtures: a temporary directory of owners and groups, settings
pointing every file into tmp_path, a fake CRM behind httpx.MockTransport,
and small workbook helpers.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
from openpyxl import load_workbook
from openpyxl.styles import PatternFill

from pipelinesync.domain.config import (
    CrmSettings,
    Directory,
    GroupConfig,
    LockSettings,
    OwnerConfig,
    SyncSettings,
)
from pipelinesync.domain.layouts import ENTITY_PIPELINE
from pipelinesync.domain.models import Record, parse_record_id
from pipelinesync.infrastructure.credentials import TokenStore
from pipelinesync.infrastructure.crm.client import CrmClient

TOKEN_ENV = "CRM_ACCESS_TOKEN"


@pytest.fixture(autouse=True)
def crm_token(monkeypatch):
    monkeypatch.setenv(TOKEN_ENV, "test-token")


@pytest.fixture
def settings(tmp_path) -> SyncSettings:
    return SyncSettings(
        crm=CrmSettings(portal_id="999"),
        lock=LockSettings(
            path=tmp_path / "sync.lock",
            cycle_timeout_seconds=0,
            quick_timeout_seconds=0,
        ),
    )


@pytest.fixture
def directory(tmp_path) -> Directory:
    owners = [
        OwnerConfig(
            name="Alex Rivera",
            email="alex@example.com",
            crm_owner_id="1",
            group="East",
            store_path=tmp_path / "owners" / "alex.xlsx",
        ),
        OwnerConfig(
            name="Sam Chen",
            email="sam@example.com",
            crm_owner_id="2",
            group="East",
            store_path=tmp_path / "owners" / "sam.xlsx",
        ),
    ]
    groups = [
        GroupConfig(
            name="East",
            store_path=tmp_path / "groups" / "east.xlsx",
            lead="Jordan Blake",
            lead_email="jordan@example.com",
        )
    ]
    return Directory(owners, groups)


@pytest.fixture
def make_record():
    """Build a Record with normalised properties."""

    def _make(
        record_id: str,
        name: str = "Deal",
        owner_name: str = "Alex Rivera",
        stage: str = "90284260",
        next_activity: Any = "",
        last_activity: Any = "",
        score: Any = "",
    ) -> Record:
        props: dict[str, Any] = {prop: "" for prop in ENTITY_PIPELINE.property_kinds}
        props.update(
            {
                "dealname": name,
                "dealstage": stage,
                "notes_next_activity_date": next_activity,
                "notes_last_updated": last_activity,
                "call_quality_score": score,
            }
        )
        return Record(id=record_id, owner_id="1", owner_name=owner_name, stage=stage, properties=props)

    return _make


class FakeCrm:
    """In-memory CRM speaking the deal search and owners endpoints."""

    def __init__(self) -> None:
        self.deals: dict[str, list[dict]] = {}
        self.owners: list[dict] = []
        self.fail_owners: set[str] = set()
        self.owners_status = 200
        self.requests: list[httpx.Request] = []

    @staticmethod
    def deal(
        record_id: str,
        name: str,
        owner_id: str,
        stage: str = "90284260",
        next_activity: str | None = None,
        last_activity: str | None = None,
        score: str | None = None,
    ) -> dict:
        return {
            "id": record_id,
            "properties": {
                "dealname": name,
                "dealstage": stage,
                "hubspot_owner_id": owner_id,
                "createdate": "2026-09-01T12:00:00Z",
                "notes_next_activity_date": next_activity,
                "notes_last_updated": last_activity,
                "call_quality_score": score,
            },
        }

    def add(self, owner_id: str, *deals: dict) -> None:
        self.deals.setdefault(owner_id, []).extend(deals)

    def search_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/search")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/crm/v3/owners":
            if self.owners_status != 200:
                return httpx.Response(self.owners_status, text="owners unavailable")
            return httpx.Response(200, json={"results": self.owners})

        body = json.loads(request.content)
        filters = body["filterGroups"][0]["filters"] if body["filterGroups"] else []
        owner_id = next(
            (f["value"] for f in filters if f["propertyName"] == "hubspot_owner_id"), None
        )
        if owner_id in self.fail_owners:
            return httpx.Response(500, text="internal error")

        deals = self.deals.get(owner_id, []) if owner_id else [d for v in self.deals.values() for d in v]
        start = int(body.get("after", 0))
        limit = body["limit"]
        page = deals[start : start + limit]
        payload: dict[str, Any] = {"total": len(deals), "results": page}
        if start + limit < len(deals):
            payload["paging"] = {"next": {"after": str(start + limit)}}
        return httpx.Response(200, json=payload)

    def client(self, settings: SyncSettings) -> CrmClient:
        return CrmClient(
            settings.crm,
            TokenStore(settings.crm.token_env),
            settings.timezone,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def fake_crm() -> FakeCrm:
    return FakeCrm()


class WorkbookHelper:
    """Read and edit store tabs the way a user would in Excel."""

    @staticmethod
    def _locate(ws, record_id: str, header: str) -> tuple[int, int]:
        headers = {str(c.value).strip(): c.column for c in ws[1] if c.value is not None}
        col = headers[header]
        id_col = headers["Deal ID"]
        for row in range(2, ws.max_row + 1):
            if parse_record_id(ws.cell(row=row, column=id_col).value) == record_id:
                return row, col
        raise KeyError(f"record {record_id} not in {ws.title}")

    def value(self, path: Path, tab: str, record_id: str, header: str) -> Any:
        wb = load_workbook(path)
        try:
            row, col = self._locate(wb[tab], record_id, header)
            return wb[tab].cell(row=row, column=col).value
        finally:
            wb.close()

    def fill(self, path: Path, tab: str, record_id: str, header: str) -> str | None:
        wb = load_workbook(path)
        try:
            row, col = self._locate(wb[tab], record_id, header)
            cell = wb[tab].cell(row=row, column=col)
            return cell.fill.fgColor.rgb[-6:] if cell.fill.fill_type else None
        finally:
            wb.close()

    def edit(
        self,
        path: Path,
        tab: str,
        record_id: str,
        header: str,
        value: Any = None,
        fill: str | None = None,
        row_fill: str | None = None,
    ) -> None:
        wb = load_workbook(path)
        ws = wb[tab]
        row, col = self._locate(ws, record_id, header)
        if value is not None:
            ws.cell(row=row, column=col).value = value
        if fill:
            ws.cell(row=row, column=col).fill = PatternFill(fill_type="solid", start_color=fill)
        if row_fill:
            for c in range(1, ws.max_column + 1):
                ws.cell(row=row, column=c).fill = PatternFill(fill_type="solid", start_color=row_fill)
        wb.save(path)
        wb.close()

    def ids(self, path: Path, tab: str) -> list[str]:
        wb = load_workbook(path)
        try:
            ws = wb[tab]
            headers = {str(c.value).strip(): c.column for c in ws[1] if c.value is not None}
            id_col = headers["Deal ID"]
            ids = [
                parse_record_id(ws.cell(row=r, column=id_col).value)
                for r in range(2, ws.max_row + 1)
            ]
            return [i for i in ids if i]
        finally:
            wb.close()


@pytest.fixture
def xl() -> WorkbookHelper:
    return WorkbookHelper()
