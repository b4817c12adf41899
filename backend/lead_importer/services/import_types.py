"""Typed configuration and message payloads shared by the import pipeline."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PARSING = "parsing"
    READY = "ready"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
)
CANCELLABLE_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.QUEUED.value,
    JobStatus.PARSING.value,
    JobStatus.READY.value,
    JobStatus.IMPORTING.value,
)


class RowStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    IMPORTED = "imported"
    SKIPPED = "skipped"


FileType = Literal["csv", "xlsx"]


class ColumnMapping(BaseModel):
    """One source column and the lead field it feeds (None when unmapped)."""

    model_config = ConfigDict(frozen=True)

    source_column: str
    source_index: int = Field(..., ge=0)
    target_field: str | None = None
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    is_manual: bool = False


class ColumnMappingConfig(BaseModel):
    """Frozen mapping plus file-level read options."""

    model_config = ConfigDict(frozen=True)

    mappings: tuple[ColumnMapping, ...] = ()
    sheet_name: str | None = None
    delimiter: str | None = Field(None, min_length=1, max_length=1)
    encoding: str = "utf-8-sig"
    has_header: bool = True

    def field_for_index(self) -> dict[int, str]:
        return {
            mapping.source_index: mapping.target_field
            for mapping in self.mappings
            if mapping.target_field
        }


class AssignmentConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: Literal["none", "single", "round_robin", "by_column"] = "none"
    single_user_id: str | None = None
    round_robin_user_ids: tuple[str, ...] = ()
    assignment_column: str | None = None
    user_map: dict[str, str] = Field(default_factory=dict)
    fallback_user_id: str | None = None

    @model_validator(mode="after")
    def check_mode_payload(self) -> "AssignmentConfig":
        if self.mode == "single" and not self.single_user_id:
            raise ValueError("single assignment requires single_user_id")
        if self.mode == "round_robin" and not self.round_robin_user_ids:
            raise ValueError("round_robin assignment requires at least one user id")
        if self.mode == "by_column":
            if not self.assignment_column:
                raise ValueError("by_column assignment requires assignment_column")
            if not self.fallback_user_id:
                raise ValueError("by_column assignment requires fallback_user_id")
        return self


DedupeField = Literal["email", "phone", "external_id"]


class DuplicateConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: Literal["skip", "update", "create"] = "skip"
    check_fields: tuple[DedupeField, ...] = ("email",)
    check_database: bool = True
    check_within_file: bool = True


class Checkpoint(BaseModel):
    """Last durable parse position of a job."""

    chunk_number: int = 0
    last_row_number: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    timestamp: datetime | None = None


class ParseMessage(BaseModel):
    """Queue payload that triggers (or resumes) the parse phase."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1)
    start_chunk: int | None = Field(None, alias="startChunk", ge=0)


class CommitMessage(BaseModel):
    """Queue payload that triggers (or resumes) the commit phase."""

    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId", min_length=1)
    assignment: AssignmentConfig = Field(default_factory=AssignmentConfig)
    duplicates: DuplicateConfig = Field(default_factory=DuplicateConfig)
    default_status: str = Field("new", alias="defaultStatus")
    default_source: str | None = Field(None, alias="defaultSource")
