# src/risk_ingest/pipeline.py
import os
from typing import Awaitable, Callable, Optional

from .accounting import BatchAccountant
from .errors import ParseError, RowValidationError, StoreWriteError
from .loader import PatientStore
from .logger import get_logger
from .models import RECORD_SPECS, BatchSummary, PatientRecord, RawRow, RecordType
from .parser import parse_rows
from .quality import build_record, identity_of, prepare_row
from .scorer import RiskScorer

logger = get_logger(__name__)

ProgressCallback = Callable[[int], Awaitable[None]]


def read_artifact(path: str) -> str:
    try:
        with open(path, encoding="utf-8-sig", newline="") as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise ParseError(f"file is not valid UTF-8: {e}") from e


def remove_artifact(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not delete upload", extra={"path": path, "reason": str(e)})


async def resolve_row(record_type: RecordType, row: RawRow, scorer: RiskScorer) -> PatientRecord:
    spec = RECORD_SPECS[record_type]
    fields = prepare_row(spec, row)
    result = await scorer.resolve(record_type, row)
    return build_record(spec, fields, result.score, result.level)


async def process_batch(
    path: str,
    record_type: RecordType,
    scorer: RiskScorer,
    store: PatientStore,
    on_progress: Optional[ProgressCallback] = None,
) -> BatchSummary:
    """
    Parse, score and upsert every row of the file at ``path``.

    The whole file is tokenized before the first write, so a ParseError leaves
    the store untouched. After that, row failures are tallied and skipped.
    Rows run one at a time in file order.
    """
    spec = RECORD_SPECS[record_type]
    rows = list(parse_rows(read_artifact(path), record_type))
    accountant = BatchAccountant(total=len(rows))

    for row in rows:
        ident = identity_of(spec, row)
        try:
            record = await resolve_row(record_type, row, scorer)
            await store.create_or_update(record)
        except RowValidationError as e:
            accountant.record_failure(str(e))
        except StoreWriteError as e:
            accountant.record_failure(f"Error processing {spec.label} {ident}: {e}")
        except Exception as e:
            logger.warning(
                "row failed", exc_info=True,
                extra={"record_type": record_type.value, "record_id": ident},
            )
            accountant.record_failure(f"Error processing {spec.label} {ident}: {e}")
        else:
            accountant.record_success()

        if on_progress is not None:
            await on_progress(accountant.progress)

    summary = accountant.summary()
    logger.info(
        "batch processed",
        extra={
            "record_type": record_type.value,
            "records_processed": summary.recordsProcessed,
            "records_success": summary.recordsSuccess,
            "records_failed": summary.recordsFailed,
        },
    )
    return summary
