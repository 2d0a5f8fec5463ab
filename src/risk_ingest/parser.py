# src/risk_ingest/parser.py
import csv
import io
from typing import Iterator, List

from .errors import ParseError
from .logger import get_logger
from .models import RECORD_SPECS, RawRow, RecordType

logger = get_logger(__name__)


def normalize_header(header: str) -> str:
    """'  Risk Score ' -> 'risk_score'"""
    return (header or "").strip().lower().replace(" ", "_")


def detect_delimiter(header_line: str) -> str:
    if ";" in header_line and "," not in header_line:
        return ";"
    return ","


def parse_rows(text: str, record_type: RecordType) -> Iterator[RawRow]:
    """
    Lazily yield rows of ``text`` keyed by normalized header.

    Rows are projected onto the columns known for ``record_type``; anything
    else in the file is dropped. Blank lines are skipped. Raises ParseError if
    the header is missing or a line cannot be tokenized.
    """
    spec = RECORD_SPECS[record_type]
    if text.startswith("\ufeff"):
        text = text[1:]

    first = next((line for line in text.splitlines() if line.strip()), None)
    if first is None:
        raise ParseError("file is empty")

    reader = csv.reader(io.StringIO(text), delimiter=detect_delimiter(first), strict=True)
    # blank rows are dropped after tokenizing so quoted fields keep their newlines
    rows = (cells for cells in reader if any(c.strip() for c in cells))
    try:
        first_row = next(rows, None)
        if first_row is None:
            raise ParseError("file is empty")
        header: List[str] = [normalize_header(h) for h in first_row]
        known = [h for h in header if h in spec.columns]
        if not known:
            raise ParseError(f"header has no {record_type.value} columns")
        dropped = [h for h in header if h and h not in spec.columns]
        if dropped:
            logger.debug("dropping unknown columns", extra={"columns": dropped})

        for cells in rows:
            if len(cells) > len(header):
                raise ParseError(
                    f"line {reader.line_num}: {len(cells)} fields, header has {len(header)}"
                )
            row: RawRow = {}
            for name, value in zip(header, cells):
                if name in spec.columns:
                    row[name] = value.strip()
            yield row
    except csv.Error as e:
        raise ParseError(f"line {reader.line_num}: {e}") from e
