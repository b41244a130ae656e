"""Snapshot input adapters."""

from __future__ import annotations

from .csv_snapshot import (
    CSVAdapterError,
    CSVHeaderError,
    HeaderValidationResult,
    SnapshotCSVAdapter,
    SnapshotCSVRow,
    SnapshotCSVStatistics,
    SnapshotTooLargeError,
)

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "HeaderValidationResult",
    "SnapshotCSVAdapter",
    "SnapshotCSVRow",
    "SnapshotCSVStatistics",
    "SnapshotTooLargeError",
]
