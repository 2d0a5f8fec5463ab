# src/risk_ingest/errors.py
from typing import Optional


class IngestError(Exception):
    """Base for every error raised by the ingestion pipeline."""


class ParseError(IngestError):
    """The file could not be tokenized. Aborts the batch before any row runs."""


class RowValidationError(IngestError):
    """A single row is unusable. Recorded and skipped."""


class ScorerUnavailable(IngestError):
    """Inference call failed or timed out. Triggers fallback scoring."""


class StoreWriteError(IngestError):
    """Upsert of a single row failed. Recorded as a row failure."""


class QueueUnavailable(IngestError):
    """Queue backend cannot take the job. Triggers the synchronous path."""


class JobRetryExhausted(IngestError):
    def __init__(self, job_id: str, attempts: int, cause: Optional[BaseException] = None):
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"job {job_id} failed after {attempts} attempts: {cause}")
