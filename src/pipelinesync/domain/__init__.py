"""Domain layer: records, annotations, layouts, configuration models."""

from pipelinesync.domain.errors import (
    ConfigurationError,
    CrmApiError,
    ExecutionCeilingExceeded,
    PipelineSyncError,
    StoreError,
    StoreWriteError,
)
from pipelinesync.domain.models import (
    Annotation,
    Flag,
    NoteEntry,
    Record,
    Row,
    parse_record_id,
)

__all__ = [
    "Annotation",
    "ConfigurationError",
    "CrmApiError",
    "ExecutionCeilingExceeded",
    "Flag",
    "NoteEntry",
    "PipelineSyncError",
    "Record",
    "Row",
    "StoreError",
    "StoreWriteError",
    "parse_record_id",
]
