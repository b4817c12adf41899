"""Turn normalized import rows into lead store records."""

from __future__ import annotations

import logging
from typing import Any

from lead_importer.core.config import get_settings

logger = logging.getLogger(__name__)

STATUS_LABELS = {
    "new": "Nouveau",
    "contacted": "Contacté",
    "qualified": "Qualifié",
    "proposal": "Proposition envoyée",
    "negotiation": "Négociation",
    "won": "Gagné",
    "lost": "Perdu",
    "no_answer_1": "Pas de réponse 1",
    "no_answer_2": "Pas de réponse 2",
    "wrong_number": "Faux numéro",
    "not_interested": "Pas intéressé",
    "callback": "Rappeler",
    "rdv": "RDV",
    "deposit": "Dépôt",
    "relance": "Relance",
    "mail": "Mail",
}

STATUS_ALIASES = {
    "not_interess": "not_interested",
    "not_interesse": "not_interested",
    "non_interesse": "not_interested",
    "non_intéressé": "not_interested",
    "not_interessé": "not_interested",
    "not_interessée": "not_interested",
    "pas_interesse": "not_interested",
    "pas_intéressé": "not_interested",
    "pas_interessé": "not_interested",
    "uninterested": "not_interested",
    "no_answer": "no_answer_1",
    "no_answer1": "no_answer_1",
    "not_answered": "no_answer_1",
    "nouveau": "new",
    "contacte": "contacted",
    "contacté": "contacted",
    "rappeler": "callback",
}

LEAD_FIELDS = (
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "notes",
)


def normalize_status(raw_status: str | None, fallback: str) -> tuple[str, bool]:
    """Map a free-text status onto the allowed set.

    Returns the status and whether the fallback had to be used for a
    non-empty value.
    """
    if not raw_status or not raw_status.strip():
        return fallback, False
    key = raw_status.strip().lower().replace(" ", "_").replace("-", "_")
    while "__" in key:
        key = key.replace("__", "_")
    mapped = STATUS_ALIASES.get(key, key)
    if mapped in STATUS_LABELS:
        return mapped, False
    logger.warning(f"Unknown lead status {raw_status!r}, falling back to {fallback!r}")
    return fallback, True


def build_lead_data(
    data: dict[str, Any],
    *,
    default_status: str,
    default_source: str | None,
    assigned_to: str | None,
    import_job_id: str,
    created_by: str | None = None,
) -> tuple[dict[str, Any], bool]:
    """Return lead column values for one row plus the status-fallback flag."""
    status, fell_back = normalize_status(data.get("status"), default_status)
    values: dict[str, Any] = {field: data.get(field) or None for field in LEAD_FIELDS}
    values["country"] = values["country"] or get_settings().default_country
    values.update(
        status=status,
        status_label=STATUS_LABELS.get(status, status),
        source=data.get("source") or default_source,
        assigned_to=assigned_to,
        import_job_id=import_job_id,
        created_by=created_by,
    )
    return values, fell_back


def update_values(data: dict[str, Any]) -> dict[str, Any]:
    """Columns an update-strategy duplicate may overwrite: non-empty fields only."""
    values = {field: data[field] for field in LEAD_FIELDS if data.get(field)}
    if data.get("status"):
        status, fell_back = normalize_status(data["status"], "")
        if status and not fell_back:
            values["status"] = status
            values["status_label"] = STATUS_LABELS[status]
    if data.get("source"):
        values["source"] = data["source"]
    return values
