"""Duplicate detection against the lead store and within the imported file."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from lead_importer.core.config import get_settings
from lead_importer.db.models.lead import Lead
from lead_importer.services.import_types import DuplicateConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupeResult:
    is_duplicate: bool
    field: str | None = None
    value: str | None = None
    record_id: str | None = None
    in_store: bool = False


NOT_DUPLICATE = DedupeResult(is_duplicate=False)


def dedupe_value(value: Any) -> str:
    """Comparison form of a field value: trimmed and lower-cased, matching SQL ``lower(trim())``."""
    if value is None:
        return ""
    return str(value).strip().lower()


def dedupe_key(field: str, value: Any) -> str | None:
    normalized = dedupe_value(value)
    return f"{field}:{normalized}" if normalized else None


def build_store_index(
    db: Session, config: DuplicateConfig, page_size: int | None = None
) -> dict[str, str]:
    """Load ``field:value -> lead id`` for every live lead.

    Pages through the table on the primary key so each query stays an
    index range scan however large the store is.
    """
    index: dict[str, str] = {}
    if not config.check_database or not config.check_fields:
        return index

    page_size = page_size or get_settings().dedupe_preload_page_size
    started = time.monotonic()
    for field in config.check_fields:
        column = getattr(Lead, field)
        cursor: str | None = None
        loaded = 0
        while True:
            query = (
                select(Lead.id, column)
                .where(column.is_not(None), Lead.deleted_at.is_(None))
                .order_by(Lead.id)
                .limit(page_size)
            )
            if cursor is not None:
                query = query.where(Lead.id > cursor)
            page = db.execute(query).all()
            if not page:
                break
            for lead_id, value in page:
                key = dedupe_key(field, value)
                if key:
                    index.setdefault(key, lead_id)
            loaded += len(page)
            cursor = page[-1][0]
            if len(page) < page_size:
                break
        logger.info(f"Dedupe index loaded {loaded} {field} values")

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(f"Dedupe index built with {len(index)} keys in {elapsed_ms}ms")
    return index


def check_duplicate(
    row: dict[str, Any],
    fields: Sequence[str],
    store_index: dict[str, str],
    file_keys: set[str],
) -> DedupeResult:
    """First matching field wins; the store is consulted before the file."""
    for field in fields:
        key = dedupe_key(field, row.get(field))
        if key is None:
            continue
        if key in store_index:
            return DedupeResult(
                is_duplicate=True,
                field=field,
                value=dedupe_value(row.get(field)),
                record_id=store_index[key],
                in_store=True,
            )
        if key in file_keys:
            return DedupeResult(
                is_duplicate=True, field=field, value=dedupe_value(row.get(field))
            )
    return NOT_DUPLICATE


def add_keys(row: dict[str, Any], fields: Iterable[str], file_keys: set[str]) -> None:
    for field in fields:
        key = dedupe_key(field, row.get(field))
        if key:
            file_keys.add(key)


def find_existing_record_ids(
    db: Session,
    duplicates: Iterable[tuple[str, str]],
    batch_size: int | None = None,
) -> dict[str, str]:
    """Resolve ``(field, value)`` pairs to lead ids, one query per field per batch."""
    batch_size = batch_size or get_settings().update_lookup_batch_size
    by_field: dict[str, list[str]] = defaultdict(list)
    for field, value in duplicates:
        normalized = dedupe_value(value)
        if normalized and normalized not in by_field[field]:
            by_field[field].append(normalized)

    resolved: dict[str, str] = {}
    for field, values in by_field.items():
        column = getattr(Lead, field)
        for start in range(0, len(values), batch_size):
            batch = values[start : start + batch_size]
            rows = db.execute(
                select(Lead.id, column)
                .where(
                    func.lower(func.trim(column)).in_(batch),
                    Lead.deleted_at.is_(None),
                )
                .order_by(Lead.id)
            ).all()
            for lead_id, value in rows:
                key = dedupe_key(field, value)
                if key:
                    resolved.setdefault(key, lead_id)
    return resolved
