"""Database models package."""
from lead_importer.db.models.import_job import ImportJob
from lead_importer.db.models.import_row import ImportRow
from lead_importer.db.models.lead import Lead, LeadHistory

__all__ = ["ImportJob", "ImportRow", "Lead", "LeadHistory"]
