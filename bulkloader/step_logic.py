import csv
from collections.abc import Iterable, Mapping, Sequence
from datetime import UTC, datetime
import json
from pathlib import Path
import sys
from typing import TextIO

from bulkloader.errors import RecordValidationError
from bulkloader.mapper import MappingTable, map_record
from bulkloader.schemas import InvalidRecord, MappedResource, OutcomeLedger, SourceRecord
from bulkloader.validation import Validator, validate


def remove_duplicate_keys(record: Mapping[str, str] | Iterable[tuple[str, str]]) -> dict[str, str]:
    """Drop repeated CSV headings, keeping the first column of each name.

    Headings are stripped of whitespace and byte order marks before
    comparison, so ``"\\ufefffoo"`` and ``"foo"`` count as the same heading.
    """
    pairs = record.items() if isinstance(record, Mapping) else record
    deduplicated: dict[str, str] = {}
    for key, value in pairs:
        clean_key = key.replace("\ufeff", "").strip()
        if clean_key not in deduplicated:
            deduplicated[clean_key] = value
    return deduplicated


def read_csv_rows(stream: TextIO) -> list[dict[str, str]]:
    reader = csv.reader(stream)
    headings = next(reader, None)
    if headings is None:
        return []

    rows: list[dict[str, str]] = []
    for values in reader:
        if not any(value.strip() for value in values):
            continue
        # Pair positionally; building a dict first would keep the last duplicate column.
        padded = values + [""] * (len(headings) - len(values))
        rows.append(remove_duplicate_keys(zip(headings, padded)))
    return rows


def load_csv_rows(input_path: Path) -> list[dict[str, str]]:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")

    with input_path.open("r", encoding="utf-8-sig", newline="") as infile:
        return read_csv_rows(infile)


def classify_records(
    rows: Sequence[Mapping[str, str]],
    input_schema: Mapping[str, object],
    validator: Validator = validate,
) -> tuple[list[SourceRecord], list[InvalidRecord]]:
    valid: list[SourceRecord] = []
    invalid: list[InvalidRecord] = []

    for index, row in enumerate(rows):
        try:
            violations = validator(input_schema, row)
        except RecordValidationError as exc:
            violations = exc.violations or [str(exc)]
        if violations:
            reason = f"Record {index}: " + "; ".join(violations)
            invalid.append(InvalidRecord(index, dict(row), reason))
            continue
        valid.append(SourceRecord(index, dict(row)))

    return valid, invalid


def map_records(records: Sequence[SourceRecord], mapping: MappingTable, identity_field: str = "name") -> list[MappedResource]:
    return [MappedResource(record.ordinal, map_record(record.record, mapping, identity_field)) for record in records]


def console_progress(label: str, processed: int, total: int, stream: TextIO | None = None) -> None:
    out = stream or sys.stdout
    percent = round(processed * 100 / total) if total else 100
    out.write(f"\r{label}: {processed}/{total} ({percent}%)")
    if processed >= total:
        out.write("\n")
    out.flush()


def render_stats(
    data_path: str,
    ledger: OutcomeLedger | None,
    invalid_records: Sequence[InvalidRecord],
    errors: Sequence[str] = (),
    loaded_at: datetime | None = None,
) -> str:
    timestamp = (loaded_at or datetime.now(UTC)).isoformat()
    success = ledger.success_count if ledger else 0
    failed = (ledger.failure_count if ledger else 0) + len(invalid_records)
    messages = [invalid.reason for invalid in invalid_records]
    if ledger:
        messages.extend(ledger.failure_messages)
    messages.extend(errors)

    output = f"Loaded {data_path} on {timestamp}\n"
    output += f"\nOK: {success}\n\nFailed: {failed}\n"
    if messages:
        output += "\nErrors:"
        for message in messages:
            output += f"\n{message}"
        output += "\n"
    return output


def write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def write_jsonl(path: Path, rows: list[dict[str, object]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        for row in rows:
            outfile.write(json.dumps(row, sort_keys=True))
            outfile.write("\n")


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True)
        outfile.write("\n")
