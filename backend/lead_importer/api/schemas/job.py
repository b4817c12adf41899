"""Import job request and response payloads."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from lead_importer.services.import_types import (
    AssignmentConfig,
    ColumnMapping,
    DuplicateConfig,
)


class ImportJobStatus(BaseModel):
    id: str
    status: str = Field(..., description="pending|queued|parsing|ready|importing|completed|failed|cancelled")
    file_name: str
    file_type: str
    created_by: str
    progress: float | None = Field(None, description="0-1 range for UI progress bars")
    message: str | None = None
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    processed_rows: int = 0
    current_chunk: int = 0
    checkpoint: dict[str, Any] | None = None
    column_mapping: dict[str, Any] | None = None
    assignment_config: dict[str, Any] | None = None
    duplicate_config: dict[str, Any] | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    meta: dict[str, Any] | None = None


class MappingUpdate(BaseModel):
    mappings: list[ColumnMapping]
    sheet_name: str | None = None
    delimiter: str | None = Field(None, min_length=1, max_length=1)
    encoding: str = "utf-8-sig"


class ImportOptionsUpdate(BaseModel):
    assignment: AssignmentConfig | None = None
    duplicates: DuplicateConfig | None = None
    default_status: str | None = None
    default_source: str | None = None
