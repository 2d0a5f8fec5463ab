# src/risk_ingest/quality.py
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .errors import RowValidationError
from .models import MODEL_FOR, PatientRecord, RawRow, RecordSpec, RecordType


def identity_of(spec: RecordSpec, row: RawRow) -> str:
    return (row.get(spec.id_column) or "").strip() or "unknown"


def check_required(spec: RecordSpec, row: RawRow) -> None:
    missing = [c for c in spec.required if not (row.get(c) or "").strip()]
    if missing:
        raise RowValidationError(
            f"Missing required fields for {spec.label} {identity_of(spec, row)}"
        )


def split_risk_factors(value: Optional[str]) -> List[str]:
    """'anemia, diabetes ,' -> ['anemia', 'diabetes']; order is kept."""
    return [f.strip() for f in (value or "").split(",") if f.strip()]


def to_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    try:
        return int(float(value))
    except (ValueError, OverflowError):
        return None


def to_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


def parse_ts(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO8601 strings (including trailing Z) into timezone-aware datetime."""
    if not s:
        return None
    try:
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        ts = datetime.fromisoformat(s)
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def features_for(spec: RecordSpec, row: RawRow) -> Dict[str, Any]:
    """The minimal fields the scorer needs for this record type."""
    factors = split_risk_factors(row.get("risk_factors"))
    if spec.record_type is RecordType.maternal:
        return {"age": to_int(row.get("age")), "riskFactors": factors}
    return {
        "birthWeight": to_float(row.get("birth_weight")),
        "gestationWeeks": to_int(row.get("gestation_weeks")),
        "riskFactors": factors,
    }


def has_explicit_risk(row: RawRow) -> bool:
    return bool((row.get("risk_score") or "").strip()) and bool((row.get("risk_level") or "").strip())


def prepare_row(spec: RecordSpec, row: RawRow) -> Dict[str, Any]:
    """
    Validate a raw row and coerce it into keyword arguments for the record
    model, minus riskScore/riskLevel which the scorer resolves.
    """
    check_required(spec, row)
    ident = identity_of(spec, row)

    factors = split_risk_factors(row.get("risk_factors"))
    if not factors:
        raise RowValidationError(f"Missing required fields for {spec.label} {ident}")

    fields: Dict[str, Any] = {
        spec.id_field: ident,
        "name": row["name"],
        "riskFactors": factors,
        "lastUpdated": parse_ts(row.get("last_updated")) or datetime.now(timezone.utc),
    }
    if spec.record_type is RecordType.maternal:
        age = to_int(row.get("age"))
        if age is None:
            raise RowValidationError(f"Invalid age for {spec.label} {ident}: {row.get('age')!r}")
        fields["age"] = age
    else:
        if (row.get("birth_weight") or "").strip():
            weight = to_float(row.get("birth_weight"))
            if weight is None:
                raise RowValidationError(f"Invalid birth weight for {spec.label} {ident}")
            fields["birthWeight"] = weight
        if (row.get("gestation_weeks") or "").strip():
            weeks = to_int(row.get("gestation_weeks"))
            if weeks is None:
                raise RowValidationError(f"Invalid gestation weeks for {spec.label} {ident}")
            fields["gestationWeeks"] = weeks
    return fields


def build_record(spec: RecordSpec, fields: Dict[str, Any], score: int, level: str) -> PatientRecord:
    model = MODEL_FOR[spec.record_type]
    try:
        return model(**fields, riskScore=score, riskLevel=level)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise RowValidationError(
            f"Invalid {spec.label} {fields.get(spec.id_field, 'unknown')}: {problems}"
        ) from e
