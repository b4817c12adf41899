"""Track lead import jobs: lifecycle status, frozen configuration, counters."""

import uuid

from sqlalchemy import Column, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from lead_importer.db.base import Base, JSONType


class ImportJob(Base):
    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_by = Column(String(64), nullable=False, index=True)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(8), nullable=False, default="csv")
    storage_path = Column(Text, nullable=False)
    file_hash = Column(String(64), index=True)
    file_size = Column(Integer)
    status = Column(String(32), nullable=False, default="pending", index=True)

    column_mapping = Column(JSONType)
    assignment_config = Column(JSONType)
    duplicate_config = Column(JSONType)
    default_status = Column(String(32))
    default_source = Column(String(255))

    total_rows = Column(Integer, nullable=False, default=0)
    valid_rows = Column(Integer, nullable=False, default=0)
    invalid_rows = Column(Integer, nullable=False, default=0)
    imported_rows = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    current_chunk = Column(Integer, nullable=False, default=0)
    checkpoint = Column(JSONType)

    error_message = Column(Text)
    meta = Column(JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    rows = relationship(
        "ImportRow",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
