"""CRM record source: search filters, value extraction and the HTTP client."""

from pipelinesync.infrastructure.crm.client import CrmClient
from pipelinesync.infrastructure.crm.filters import build_filter_group

__all__ = ["CrmClient", "build_filter_group"]
