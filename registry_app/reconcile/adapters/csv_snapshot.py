"""CSV adapter for bulk person snapshots.

Validates the header row against the snapshot contract, streams rows through the
contract's normalizers and validators, and only hands a snapshot to the diff
engine once the whole file is known to be well-formed.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from typing import IO, Iterator, Sequence

from registry_app.reconcile.contracts import (
    FieldSpec,
    get_forbidden_headers,
    get_snapshot_alias_map,
    get_snapshot_field_specs,
    get_snapshot_required_headers,
    normalize_header,
)
from registry_app.reconcile.diff import SnapshotRow
from registry_app.reconcile.errors import SnapshotValidationError, ValidationError


class CSVAdapterError(ValidationError):
    """Base exception for CSV adapter failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when the CSV header row does not meet contract requirements."""

    def __init__(
        self,
        *,
        missing: Sequence[str] | None = None,
        unexpected: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
        forbidden: Sequence[str] | None = None,
    ) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if forbidden:
            details.append(
                "Columns managed by community submissions cannot be bulk uploaded: "
                + ", ".join(sorted(forbidden))
                + "."
            )
        if unexpected:
            details.append("Unexpected columns present: " + ", ".join(sorted(unexpected)) + ".")
        if duplicates:
            details.append(
                "Duplicate canonical columns detected: "
                + ", ".join(sorted(duplicates))
                + ". Ensure each canonical field appears only once."
            )

        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(
            message,
            missing=sorted(missing or ()),
            unexpected=sorted(unexpected or ()),
            duplicates=sorted(duplicates or ()),
            forbidden=sorted(forbidden or ()),
        )
        self.missing = tuple(missing or ())
        self.unexpected = tuple(unexpected or ())
        self.duplicates = tuple(duplicates or ())
        self.forbidden = tuple(forbidden or ())


class SnapshotTooLargeError(CSVAdapterError):
    def __init__(self, max_rows: int) -> None:
        super().__init__(
            f"Snapshot exceeds the maximum of {max_rows:,} rows. Split the file or raise REGISTRY_MAX_BATCH_ROWS.",
            max_rows=max_rows,
        )


@dataclass(frozen=True)
class HeaderValidationResult:
    raw_headers: tuple[str, ...]
    canonical_headers: tuple[str, ...]


@dataclass(frozen=True)
class SnapshotCSVRow:
    """A parsed CSV row with canonical values and any validation errors."""

    sequence_number: int
    source_line: int
    raw: dict[str, object | None]
    normalized: dict[str, object | None]
    errors: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class SnapshotCSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0
    rows_invalid: int = 0
    error_samples: list[dict] = field(default_factory=list)


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _validate_headers(raw_headers: Sequence[str]) -> HeaderValidationResult:
    sanitized_headers = tuple(_sanitize_header(header) for header in raw_headers)
    alias_map = get_snapshot_alias_map()
    forbidden_tokens = get_forbidden_headers()
    required_headers = set(get_snapshot_required_headers())
    duplicates: list[str] = []
    unexpected: list[str] = []
    forbidden: list[str] = []
    seen: set[str] = set()
    canonical_headers: list[str] = []

    for header in sanitized_headers:
        normalized_header = normalize_header(header)
        if normalized_header in forbidden_tokens:
            forbidden.append(header)
            continue
        canonical = alias_map.get(normalized_header)
        if canonical is None:
            unexpected.append(header)
            continue
        if canonical in seen:
            duplicates.append(canonical)
        else:
            seen.add(canonical)
        canonical_headers.append(canonical)

    missing = sorted(required_headers - seen)
    if missing or unexpected or duplicates or forbidden:
        raise CSVHeaderError(missing=missing, unexpected=unexpected, duplicates=duplicates, forbidden=forbidden)

    return HeaderValidationResult(raw_headers=sanitized_headers, canonical_headers=tuple(canonical_headers))


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


class SnapshotCSVAdapter:
    """CSV reader that enforces the bulk snapshot contract."""

    def __init__(
        self,
        file_obj: IO[str],
        *,
        max_rows: int | None = None,
        max_reported_errors: int = 50,
        skip_blank_rows: bool = True,
    ) -> None:
        self._file_obj = file_obj
        self.max_rows = max_rows
        self.max_reported_errors = max_reported_errors
        self.skip_blank_rows = skip_blank_rows
        self._header_result: HeaderValidationResult | None = None
        self.statistics = SnapshotCSVStatistics()
        self._field_specs = {spec.name: spec for spec in get_snapshot_field_specs()}

    @property
    def header(self) -> HeaderValidationResult | None:
        return self._header_result

    @property
    def managed_fields(self) -> tuple[str, ...]:
        """Person fields present in this file; absent optional columns are left untouched."""

        if self._header_result is None:
            return ()
        return tuple(name for name in self._header_result.canonical_headers if name != "external_id")

    def _prepare_reader(self) -> csv.DictReader:
        self._file_obj.seek(0)
        reader = csv.DictReader(self._file_obj)
        if reader.fieldnames is None:
            raise CSVHeaderError(missing=get_snapshot_required_headers())

        header_result = _validate_headers(reader.fieldnames)
        reader.fieldnames = list(header_result.canonical_headers)
        self._header_result = header_result
        return reader

    def iter_rows(self) -> Iterator[SnapshotCSVRow]:
        reader = self._prepare_reader()
        for sequence_number, raw_row in enumerate(reader, start=1):
            overflow = raw_row.pop(None, None)
            row_copy = {key: value for key, value in raw_row.items()}

            if self.skip_blank_rows and not overflow and _row_is_blank(row_copy):
                self.statistics.rows_skipped_blank += 1
                continue

            self.statistics.rows_processed += 1
            if self.max_rows is not None and self.statistics.rows_processed > self.max_rows:
                raise SnapshotTooLargeError(self.max_rows)

            normalized = self._apply_normalizers(row_copy)
            errors = self._collect_errors(normalized)
            if overflow:
                errors.append(f"row has {len(overflow)} more value(s) than the header")
            if errors:
                self.statistics.rows_invalid += 1

            yield SnapshotCSVRow(
                sequence_number=sequence_number,
                source_line=reader.line_num,
                raw=row_copy,
                normalized=normalized,
                errors=tuple(errors),
            )

    def read_snapshot(self) -> list[SnapshotRow]:
        """
        Parse the whole file, returning snapshot rows only if every row is valid.

        Raises:
            CSVHeaderError: header row violates the contract.
            SnapshotTooLargeError: more rows than ``max_rows``.
            SnapshotValidationError: one or more rows are malformed.
        """

        rows: list[SnapshotRow] = []
        reported: list[dict] = []
        truncated = False
        for row in self.iter_rows():
            if not row.is_valid:
                for message in row.errors:
                    if len(reported) >= self.max_reported_errors:
                        truncated = True
                        break
                    reported.append(
                        {
                            "line": row.source_line,
                            "external_id": row.normalized.get("external_id"),
                            "message": message,
                        }
                    )
                continue
            fields = {key: value for key, value in row.normalized.items() if key != "external_id"}
            rows.append(
                SnapshotRow(
                    external_id=str(row.normalized["external_id"]),
                    fields=fields,
                    source_line=row.source_line,
                )
            )

        self.statistics.error_samples = reported
        if reported:
            raise SnapshotValidationError(reported, truncated=truncated)
        return rows

    def _apply_normalizers(self, row: dict[str, object | None]) -> dict[str, object | None]:
        normalized: dict[str, object | None] = {}
        for key, value in row.items():
            spec: FieldSpec | None = self._field_specs.get(key)
            if spec is None or spec.normalizer is None:
                normalized[key] = value
            else:
                normalized[key] = spec.normalizer(value)
        return normalized

    def _collect_errors(self, normalized: dict[str, object | None]) -> list[str]:
        errors: list[str] = []
        for key, value in normalized.items():
            spec = self._field_specs.get(key)
            if spec is None or spec.validator is None:
                continue
            message = spec.validator(value)
            if message:
                errors.append(f"{key}: {message}")
        return errors
