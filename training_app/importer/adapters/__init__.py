"""Row sources turning uploaded exports into ``ImportRow`` sequences."""

from __future__ import annotations

from .csv_rows import (
    CSVAdapterError,
    CSVHeaderError,
    CSVRowError,
    CSVStatistics,
    TrainingSessionCSVAdapter,
)

__all__ = [
    "CSVAdapterError",
    "CSVHeaderError",
    "CSVRowError",
    "CSVStatistics",
    "TrainingSessionCSVAdapter",
]
