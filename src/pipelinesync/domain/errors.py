"""
Error types for PipelineSync.

Each type marks a failure category so the orchestrator can decide
whether a unit fails alone or the whole run aborts.
"""

from __future__ import annotations


class PipelineSyncError(Exception):
    """Base class for all PipelineSync errors."""


class ConfigurationError(PipelineSyncError):
    """Missing credential, missing directory entry, or invalid config file."""


class CrmApiError(PipelineSyncError):
    """Non-success response (or transport failure) from the CRM API.

    A status of 0 means the request never got a response.
    """

    def __init__(self, status: int, body: str = "", url: str = "") -> None:
        self.status = status
        self.body = body
        self.url = url
        super().__init__(f"CRM API error: {status}")


class StoreError(PipelineSyncError):
    """A workbook store could not be read."""


class StoreWriteError(StoreError):
    """A workbook store could not be saved (usually open in Excel)."""


class ExecutionCeilingExceeded(PipelineSyncError):
    """The run passed its configured execution-time ceiling."""
