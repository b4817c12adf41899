"""One parsed data line of an import file."""

from sqlalchemy import Column, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from lead_importer.db.base import Base, JSONType


class ImportRow(Base):
    __tablename__ = "import_rows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    import_job_id = Column(
        String(36),
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number = Column(Integer, nullable=False)
    chunk_number = Column(Integer, nullable=False, default=0)
    status = Column(String(16), nullable=False)
    raw_data = Column(JSONType, nullable=False)
    normalized_data = Column(JSONType)
    validation_errors = Column(JSONType)
    lead_id = Column(String(36))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    job = relationship("ImportJob", back_populates="rows")

    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_rows_job_row"),
        Index("ix_import_rows_job_status_row", "import_job_id", "status", "row_number"),
    )
