"""SQLAlchemy models for the lead record store and its audit trail."""

import uuid

from sqlalchemy import Column, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from lead_importer.db.base import Base, JSONType


class Lead(Base):
    __tablename__ = "leads"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    external_id = Column(String(255), index=True)
    first_name = Column(String(255))
    last_name = Column(String(255))
    email = Column(String(320), index=True)
    phone = Column(String(64), index=True)
    company = Column(String(255))
    job_title = Column(String(255))
    address = Column(Text)
    city = Column(String(255))
    postal_code = Column(String(32))
    country = Column(String(128))
    status = Column(String(32), nullable=False, default="new")
    status_label = Column(String(64))
    source = Column(String(255))
    notes = Column(Text)
    assigned_to = Column(String(64), index=True)
    created_by = Column(String(64))
    import_job_id = Column(String(36), index=True)
    deleted_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class LeadHistory(Base):
    __tablename__ = "lead_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(
        String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type = Column(String(32), nullable=False)
    actor_id = Column(String(64))
    meta = Column("metadata", JSONType)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
