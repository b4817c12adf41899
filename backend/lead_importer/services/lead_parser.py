"""Streaming parse of uploaded lead files into numbered, validated rows."""

from __future__ import annotations

import csv
import io
import itertools
import logging
import time
import zipfile
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, BinaryIO

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from lead_importer.core.config import get_settings
from lead_importer.services.import_types import ColumnMappingConfig, FileType
from lead_importer.services.lead_normalizer import normalize_row
from lead_importer.utils.lead_validator import validate_row

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = (",", ";", "\t", "|")


class LeadFileParseError(ValueError):
    """The file cannot be read as a delimited text or workbook file."""


@dataclass
class ParsedRow:
    row_number: int
    chunk_number: int
    raw_data: dict[str, str]
    normalized_data: dict[str, str]
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class ParseStats:
    total_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    processing_time_ms: int = 0


def detect_delimiter(line: str) -> str:
    """Pick the most frequent candidate delimiter in the header line."""
    counts = {delimiter: line.count(delimiter) for delimiter in CANDIDATE_DELIMITERS}
    best = max(CANDIDATE_DELIMITERS, key=lambda delimiter: counts[delimiter])
    return best if counts[best] > 0 else ","


def _cell_to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _is_blank(cells: list[str]) -> bool:
    return all(not cell.strip() for cell in cells)


def _iter_csv_records(stream: BinaryIO, config: ColumnMappingConfig) -> Iterator[list[str]]:
    handle = io.TextIOWrapper(stream, encoding=config.encoding, newline="")
    try:
        first_line = handle.readline()
    except UnicodeDecodeError as exc:
        raise LeadFileParseError(f"File encoding error: {exc}") from exc
    if not first_line:
        return
    delimiter = config.delimiter or detect_delimiter(first_line)
    reader = csv.reader(
        itertools.chain([first_line], handle), delimiter=delimiter, strict=True
    )
    try:
        for record in reader:
            yield record
    except csv.Error as exc:
        raise LeadFileParseError(f"CSV parse error at line {reader.line_num}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise LeadFileParseError(f"File encoding error: {exc}") from exc


def _iter_xlsx_records(stream: BinaryIO, config: ColumnMappingConfig) -> Iterator[list[str]]:
    try:
        workbook = load_workbook(io.BytesIO(stream.read()), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise LeadFileParseError(f"Unreadable workbook: {exc}") from exc
    try:
        if config.sheet_name:
            if config.sheet_name not in workbook.sheetnames:
                raise LeadFileParseError(f"Sheet not found: {config.sheet_name}")
            sheet = workbook[config.sheet_name]
        else:
            sheet = workbook[workbook.sheetnames[0]]
        for values in sheet.iter_rows(values_only=True):
            yield [_cell_to_text(value) for value in values]
    finally:
        workbook.close()


def iter_records(
    stream: BinaryIO, file_type: FileType, config: ColumnMappingConfig
) -> Iterator[list[str]]:
    """Yield non-blank records (header first) for either supported file type."""
    if file_type == "xlsx":
        records: Iterable[list[str]] = _iter_xlsx_records(stream, config)
    elif file_type == "csv":
        records = _iter_csv_records(stream, config)
    else:
        raise LeadFileParseError(f"Unsupported file type: {file_type}")
    for record in records:
        if not _is_blank(record):
            yield record


def clean_headers(raw_headers: list[str]) -> list[str]:
    """Trim header names, naming blank ones and suffixing repeats."""
    headers: list[str] = []
    seen: dict[str, int] = {}
    for index, header in enumerate(raw_headers):
        name = header.strip() or f"column_{index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 1
        headers.append(name)
    return headers


def read_headers(
    stream: BinaryIO,
    file_type: FileType,
    config: ColumnMappingConfig | None = None,
    sample_size: int = 5,
) -> tuple[list[str], list[list[str]]]:
    """Return the header row and the first few data rows for auto-mapping."""
    config = config or ColumnMappingConfig()
    records = iter_records(stream, file_type, config)
    try:
        headers = clean_headers(next(records))
    except StopIteration:
        raise LeadFileParseError("File is empty") from None
    sample = list(itertools.islice(records, sample_size))
    return headers, sample


def parse_record(
    cells: list[str],
    headers: list[str],
    field_map: dict[int, str],
    row_number: int,
    chunk_number: int,
) -> ParsedRow:
    raw_data: dict[str, str] = {}
    for index, value in enumerate(cells):
        key = headers[index] if index < len(headers) else f"column_{index + 1}"
        raw_data[key] = value
    mapped = {
        target: cells[index] for index, target in field_map.items() if index < len(cells)
    }
    normalized = normalize_row(mapped)
    return ParsedRow(
        row_number=row_number,
        chunk_number=chunk_number,
        raw_data=raw_data,
        normalized_data=normalized,
        errors=validate_row(normalized),
    )


def iter_row_batches(
    stream: BinaryIO,
    file_type: FileType,
    config: ColumnMappingConfig,
    *,
    start_row: int = 1,
    chunk_size: int | None = None,
) -> Iterator[list[ParsedRow]]:
    """Yield rows from ``start_row`` on, one list per chunk.

    Row numbers count non-blank data lines from 1; a row belongs to chunk
    ``(row_number - 1) // chunk_size`` whatever row the run started from,
    so a resumed run re-forms the same chunk boundaries.
    """
    chunk_size = chunk_size or get_settings().parse_chunk_size
    records = iter_records(stream, file_type, config)
    try:
        headers = clean_headers(next(records))
    except StopIteration:
        return
    field_map = config.field_for_index()

    batch: list[ParsedRow] = []
    for row_number, cells in enumerate(records, start=1):
        if row_number < start_row:
            continue
        chunk_number = (row_number - 1) // chunk_size
        if batch and batch[0].chunk_number != chunk_number:
            yield batch
            batch = []
        batch.append(parse_record(cells, headers, field_map, row_number, chunk_number))
    if batch:
        yield batch


def stream_parse_file(
    stream: BinaryIO,
    file_type: FileType,
    config: ColumnMappingConfig,
    on_chunk: Callable[[list[ParsedRow]], None],
    *,
    start_row: int = 1,
    chunk_size: int | None = None,
) -> ParseStats:
    """Drive ``on_chunk`` over every batch, returning stats for this run.

    ``total_rows`` is the last row number seen; valid/invalid counts only
    cover rows handed to ``on_chunk``.
    """
    started = time.monotonic()
    stats = ParseStats(total_rows=max(start_row - 1, 0))
    for batch in iter_row_batches(
        stream, file_type, config, start_row=start_row, chunk_size=chunk_size
    ):
        on_chunk(batch)
        valid = sum(1 for row in batch if row.is_valid)
        stats.valid_rows += valid
        stats.invalid_rows += len(batch) - valid
        stats.total_rows = batch[-1].row_number
        logger.debug(
            f"Parsed chunk {batch[0].chunk_number}: rows "
            f"{batch[0].row_number}-{batch[-1].row_number}"
        )
    stats.processing_time_ms = int((time.monotonic() - started) * 1000)
    return stats
