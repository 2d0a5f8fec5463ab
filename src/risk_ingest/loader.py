# src/risk_ingest/loader.py
import asyncio
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol

from asyncpg import Pool

from .errors import StoreWriteError
from .models import (
    MaternalPatient, PatientFilter, PatientRecord, PediatricPatient, RecordType,
)

CREATE_MATERNAL = """
CREATE TABLE IF NOT EXISTS maternal_patient(
  patient_id    text PRIMARY KEY,
  name          text NOT NULL,
  age           integer NOT NULL,
  risk_score    integer NOT NULL CHECK (risk_score BETWEEN 0 AND 100),
  risk_level    text NOT NULL,
  risk_factors  text[] NOT NULL,
  last_updated  timestamptz NOT NULL
);
"""

CREATE_PEDIATRIC = """
CREATE TABLE IF NOT EXISTS pediatric_patient(
  child_id         text PRIMARY KEY,
  name             text NOT NULL,
  birth_weight     double precision,
  gestation_weeks  integer,
  risk_score       integer NOT NULL CHECK (risk_score BETWEEN 0 AND 100),
  risk_level       text NOT NULL,
  risk_factors     text[] NOT NULL,
  last_updated     timestamptz NOT NULL
);
"""

UPSERT_MATERNAL = """
INSERT INTO maternal_patient(patient_id, name, age, risk_score, risk_level, risk_factors, last_updated)
VALUES($1,$2,$3,$4,$5,$6,$7)
ON CONFLICT (patient_id) DO UPDATE SET
  name=EXCLUDED.name, age=EXCLUDED.age, risk_score=EXCLUDED.risk_score,
  risk_level=EXCLUDED.risk_level, risk_factors=EXCLUDED.risk_factors,
  last_updated=EXCLUDED.last_updated
RETURNING (xmax = 0) AS created;
"""

UPSERT_PEDIATRIC = """
INSERT INTO pediatric_patient(child_id, name, birth_weight, gestation_weeks, risk_score, risk_level, risk_factors, last_updated)
VALUES($1,$2,$3,$4,$5,$6,$7,$8)
ON CONFLICT (child_id) DO UPDATE SET
  name=EXCLUDED.name, birth_weight=EXCLUDED.birth_weight, gestation_weeks=EXCLUDED.gestation_weeks,
  risk_score=EXCLUDED.risk_score, risk_level=EXCLUDED.risk_level,
  risk_factors=EXCLUDED.risk_factors, last_updated=EXCLUDED.last_updated
RETURNING (xmax = 0) AS created;
"""

TABLES = {
    RecordType.maternal: ("maternal_patient", "patient_id"),
    RecordType.pediatric: ("pediatric_patient", "child_id"),
}


class PatientStore(Protocol):
    async def create_or_update(self, record: PatientRecord) -> bool: ...
    async def get_by_id(self, record_type: RecordType, record_id: str) -> Optional[PatientRecord]: ...
    async def list(self, record_type: RecordType, flt: Optional[PatientFilter] = None) -> List[PatientRecord]: ...
    async def delete(self, record_type: RecordType, record_id: str) -> bool: ...


def matches(record: PatientRecord, flt: Optional[PatientFilter]) -> bool:
    if flt is None:
        return True
    if flt.riskLevel and record.riskLevel != flt.riskLevel:
        return False
    if flt.dateFrom and record.lastUpdated < flt.dateFrom:
        return False
    if flt.dateTo and record.lastUpdated > flt.dateTo:
        return False
    if flt.search:
        needle = flt.search.lower()
        if needle not in record.name.lower() and needle not in record.identity.lower():
            return False
    return True


class InMemoryPatientStore:
    """Dict-backed store; writes to one identity are serialized by a per-key lock."""

    def __init__(self):
        self._records: Dict[RecordType, Dict[str, PatientRecord]] = {t: {} for t in RecordType}
        self._locks: Dict[Any, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def create_or_update(self, record: PatientRecord) -> bool:
        key = (record.record_type, record.identity)
        async with self._locks[key]:
            bucket = self._records[record.record_type]
            created = record.identity not in bucket
            bucket[record.identity] = record.model_copy(deep=True)
            return created

    async def get_by_id(self, record_type: RecordType, record_id: str) -> Optional[PatientRecord]:
        rec = self._records[record_type].get(record_id)
        return rec.model_copy(deep=True) if rec else None

    async def list(self, record_type: RecordType, flt: Optional[PatientFilter] = None) -> List[PatientRecord]:
        bucket = self._records[record_type]
        return [bucket[k].model_copy(deep=True) for k in sorted(bucket) if matches(bucket[k], flt)]

    async def delete(self, record_type: RecordType, record_id: str) -> bool:
        async with self._locks[(record_type, record_id)]:
            return self._records[record_type].pop(record_id, None) is not None


class PostgresPatientStore:
    def __init__(self, pool: Pool):
        self.pool = pool

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(CREATE_MATERNAL)
            await conn.execute(CREATE_PEDIATRIC)

    async def create_or_update(self, record: PatientRecord) -> bool:
        if isinstance(record, MaternalPatient):
            sql = UPSERT_MATERNAL
            args = (record.patientId, record.name, record.age)
        else:
            sql = UPSERT_PEDIATRIC
            args = (record.childId, record.name, record.birthWeight, record.gestationWeeks)
        args += (record.riskScore, record.riskLevel.value, record.riskFactors, record.lastUpdated)
        try:
            async with self.pool.acquire() as conn:
                return bool(await conn.fetchval(sql, *args))
        except Exception as e:
            raise StoreWriteError(str(e)) from e

    async def get_by_id(self, record_type: RecordType, record_id: str) -> Optional[PatientRecord]:
        table, key = TABLES[record_type]
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f"SELECT * FROM {table} WHERE {key}=$1", record_id)
        return _from_row(record_type, row) if row else None

    async def list(self, record_type: RecordType, flt: Optional[PatientFilter] = None) -> List[PatientRecord]:
        table, key = TABLES[record_type]
        where: List[str] = []
        args: List[Any] = []
        if flt is not None:
            if flt.riskLevel:
                args.append(flt.riskLevel.value)
                where.append(f"risk_level=${len(args)}")
            if flt.dateFrom:
                args.append(flt.dateFrom)
                where.append(f"last_updated >= ${len(args)}")
            if flt.dateTo:
                args.append(flt.dateTo)
                where.append(f"last_updated <= ${len(args)}")
            if flt.search:
                args.append(f"%{flt.search}%")
                where.append(f"(name ILIKE ${len(args)} OR {key} ILIKE ${len(args)})")
        sql = f"SELECT * FROM {table}"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += f" ORDER BY {key}"
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(sql, *args)
        return [_from_row(record_type, r) for r in rows]

    async def delete(self, record_type: RecordType, record_id: str) -> bool:
        table, key = TABLES[record_type]
        try:
            async with self.pool.acquire() as conn:
                status = await conn.execute(f"DELETE FROM {table} WHERE {key}=$1", record_id)
        except Exception as e:
            raise StoreWriteError(str(e)) from e
        return status.endswith(" 1")


def _from_row(record_type: RecordType, row) -> PatientRecord:
    common = dict(
        name=row["name"],
        riskScore=row["risk_score"],
        riskLevel=row["risk_level"],
        riskFactors=list(row["risk_factors"]),
        lastUpdated=row["last_updated"],
    )
    if record_type is RecordType.maternal:
        return MaternalPatient(patientId=row["patient_id"], age=row["age"], **common)
    return PediatricPatient(
        childId=row["child_id"],
        birthWeight=row["birth_weight"],
        gestationWeeks=row["gestation_weeks"],
        **common,
    )
