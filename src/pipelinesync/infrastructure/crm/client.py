"""
CRM v3 HTTP client.

Fetches one owner's deals for a dataset, following search pagination up
to a safety cap. Non-success responses raise CrmApiError and are never
retried: the next scheduled cycle is the retry.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Iterable
from zoneinfo import ZoneInfo

import httpx

from pipelinesync.domain.config import CrmSettings, DatasetConfig, OwnerConfig
from pipelinesync.domain.errors import CrmApiError
from pipelinesync.domain.layouts import ENTITY_PIPELINE, FETCH_PROPERTIES
from pipelinesync.domain.models import Record
from pipelinesync.infrastructure.credentials import TokenStore
from pipelinesync.infrastructure.crm.extract import (
    extract_date,
    extract_datetime,
    extract_text,
    normalise_properties,
)
from pipelinesync.infrastructure.crm.filters import (
    CREATED_PROPERTY,
    OWNER_PROPERTY,
    STAGE_PROPERTY,
    build_filter_group,
)

logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 2000


class CrmClient:
    """
    Synchronous client for the CRM deal search and owners endpoints.

    The owner e-mail index is fetched at most once per client instance;
    create one client per cycle.

    Args:
        settings: CRM connection settings
        tokens: Source of the bearer token, read on every request
        timezone: Timezone CRM dates are expressed in
        transport: Optional httpx transport (tests use MockTransport)
    """

    SEARCH_PATH = "/crm/v3/objects/deals/search"
    OWNERS_PATH = "/crm/v3/owners"

    def __init__(
        self,
        settings: CrmSettings,
        tokens: TokenStore,
        timezone: str = "America/New_York",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._tokens = tokens
        self._tz = ZoneInfo(timezone)
        self._http = httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
        )
        self._owner_index: dict[str, str] | None = None

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "CrmClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        token = self._tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token.get_secret_value()}",
            "Content-Type": "application/json",
        }
        try:
            response = self._http.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise CrmApiError(0, str(e), path) from e

        if not response.is_success:
            body = response.text[:MAX_ERROR_BODY]
            logger.error("CRM %s %s failed: %d %s", method, path, response.status_code, body[:200])
            raise CrmApiError(response.status_code, body, str(response.url))

        try:
            return response.json()
        except ValueError as e:
            raise CrmApiError(response.status_code, response.text[:MAX_ERROR_BODY], path) from e

    # ------------------------------------------------------------------
    # Owners
    # ------------------------------------------------------------------

    def _load_owner_index(self) -> dict[str, str]:
        index: dict[str, str] = {}
        after: str | None = None
        while True:
            params: dict[str, Any] = {"limit": 100, "archived": "false"}
            if after:
                params["after"] = after
            data = self._request("GET", self.OWNERS_PATH, params=params)
            for item in data.get("results", []):
                email = extract_text(item.get("email")).lower()
                if email and item.get("id") is not None:
                    index.setdefault(email, str(item["id"]))
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
        logger.debug("Indexed %d CRM owners", len(index))
        return index

    def resolve_owner_id(self, owner: OwnerConfig) -> str | None:
        """
        Resolve the CRM owner ID for a directory owner.

        The configured ID wins. Otherwise the owner is looked up by
        e-mail (case-insensitive) in the CRM owners list; an address that
        is not listed yields None.

        Raises:
            CrmApiError: If the owners list cannot be read. The caller's
                unit fails and its stores keep their current rows.
        """
        if owner.crm_owner_id:
            return owner.crm_owner_id

        logger.warning(
            "Owner %s has no configured CRM owner ID; resolving by e-mail", owner.name
        )
        if self._owner_index is None:
            self._owner_index = self._load_owner_index()
        return self._owner_index.get(owner.email.strip().lower())

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, filter_group: dict, properties: Iterable[str]) -> list[dict]:
        """
        Run a deal search, following pagination up to the safety cap.

        Returns:
            Raw result objects, at most ``max_results`` of them
        """
        cap = self.settings.max_results
        payload: dict[str, Any] = {
            "filterGroups": [filter_group],
            "properties": list(properties),
            "sorts": [{"propertyName": CREATED_PROPERTY, "direction": "DESCENDING"}],
            "limit": min(self.settings.page_size, cap),
        }

        results: list[dict] = []
        pages = 0
        while True:
            data = self._request("POST", self.SEARCH_PATH, json=payload)
            pages += 1
            results.extend(data.get("results", []))
            after = ((data.get("paging") or {}).get("next") or {}).get("after")
            if not after:
                break
            if len(results) >= cap:
                logger.warning("Search hit the %d-result safety cap; truncating", cap)
                break
            payload["after"] = after

        logger.debug("Search returned %d result(s) in %d page(s)", len(results), pages)
        return results[:cap]

    def fetch(
        self,
        owner: OwnerConfig,
        dataset: DatasetConfig,
        properties: Iterable[str] = FETCH_PROPERTIES,
        now: datetime | None = None,
    ) -> list[Record]:
        """
        Fetch one owner's records for a dataset.

        Returns an empty list (with a warning) when the owner cannot be
        resolved to a CRM owner ID.

        Raises:
            CrmApiError: On a non-success response or transport failure
            ConfigurationError: If no access token is configured
        """
        start = time.perf_counter()
        owner_id = self.resolve_owner_id(owner)
        if not owner_id:
            logger.warning("Could not resolve CRM owner for %s <%s>", owner.name, owner.email)
            return []

        group = build_filter_group(owner_id, dataset, now)
        raw_results = self.search(group, properties)
        records: list[Record] = []
        for raw in raw_results:
            if not extract_text(raw.get("id")):
                logger.warning(
                    "Skipping search result without an id for %s (deal %r)",
                    owner.name,
                    (raw.get("properties") or {}).get("dealname"),
                )
                continue
            records.append(self._to_record(raw, owner, owner_id))

        logger.info(
            "Fetched %d record(s) for %s [%s] in %.2fs",
            len(records),
            owner.name,
            dataset.name,
            time.perf_counter() - start,
        )
        return records

    def _to_record(self, raw: dict, owner: OwnerConfig, owner_id: str) -> Record:
        raw_props = raw.get("properties") or {}
        created = extract_date(raw_props.get(CREATED_PROPERTY), self._tz)
        return Record(
            id=extract_text(raw.get("id")),
            owner_id=extract_text(raw_props.get(OWNER_PROPERTY)) or owner_id,
            owner_name=owner.name,
            stage=extract_text(raw_props.get(STAGE_PROPERTY)),
            properties=normalise_properties(raw_props, ENTITY_PIPELINE.property_kinds, self._tz),
            created_at=created or None,
            updated_at=extract_datetime(raw_props.get("hs_lastmodifieddate"), self._tz),
        )

    def record_url(self, record_id: str) -> str | None:
        """Deep link to a record in the CRM UI, or None without a portal ID."""
        if not self.settings.portal_id or not record_id:
            return None
        return self.settings.record_url_template.format(
            portal_id=self.settings.portal_id, record_id=record_id
        )

    def check_connection(self) -> int:
        """
        Run a one-row search to verify the token and endpoint.

        Returns:
            Total number of deals the CRM reports
        """
        data = self._request(
            "POST",
            self.SEARCH_PATH,
            json={"filterGroups": [], "properties": ["dealname"], "limit": 1},
        )
        total = int(data.get("total", len(data.get("results", []))))
        logger.info("CRM connection OK (%d deals visible)", total)
        return total
