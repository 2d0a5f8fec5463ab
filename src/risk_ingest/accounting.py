# src/risk_ingest/accounting.py
from typing import List

from .models import BatchSummary

MAX_ERRORS = 10


class BatchAccountant:
    """Per-row outcome tally for one batch. Counts are exact; the error list is capped."""

    def __init__(self, total: int, max_errors: int = MAX_ERRORS):
        self.total = total
        self.max_errors = max_errors
        self.success = 0
        self.failed = 0
        self._errors: List[str] = []
        self._progress = 0

    def record_success(self) -> None:
        self.success += 1

    def record_failure(self, message: str) -> None:
        self.failed += 1
        if len(self._errors) < self.max_errors:
            self._errors.append(message)

    @property
    def progress(self) -> int:
        # 100 is reserved for the completed job
        if self.total:
            pct = min(99, int(self.success * 100 / self.total))
            self._progress = max(self._progress, pct)
        return self._progress

    def summary(self) -> BatchSummary:
        return BatchSummary(
            recordsProcessed=self.success + self.failed,
            recordsSuccess=self.success,
            recordsFailed=self.failed,
            errors=tuple(self._errors),
        )
