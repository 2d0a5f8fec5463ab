# src/risk_ingest/models.py
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

RawRow = Dict[str, str]


class RecordType(str, Enum):
    maternal = "maternal"
    pediatric = "pediatric"


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"


class JobState(str, Enum):
    queued = "queued"
    active = "active"
    completed = "completed"
    failed = "failed"
    stalled = "stalled"


TERMINAL_STATES = {JobState.completed, JobState.failed}


@dataclass(frozen=True)
class RecordSpec:
    record_type: RecordType
    id_column: str
    id_field: str
    label: str                      # used in row error messages
    required: Tuple[str, ...]
    columns: Tuple[str, ...]        # every column we keep from the file


RECORD_SPECS: Dict[RecordType, RecordSpec] = {
    RecordType.maternal: RecordSpec(
        record_type=RecordType.maternal,
        id_column="patient_id",
        id_field="patientId",
        label="patient",
        required=("patient_id", "name", "age", "risk_factors"),
        columns=("patient_id", "name", "age", "risk_score", "risk_level", "risk_factors", "last_updated"),
    ),
    RecordType.pediatric: RecordSpec(
        record_type=RecordType.pediatric,
        id_column="child_id",
        id_field="childId",
        label="child",
        required=("child_id", "name", "risk_factors"),
        columns=(
            "child_id", "name", "birth_weight", "gestation_weeks",
            "risk_score", "risk_level", "risk_factors", "last_updated",
        ),
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PatientBase(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    riskScore: int = Field(ge=0, le=100)
    riskLevel: RiskLevel
    riskFactors: List[str] = Field(min_length=1)
    lastUpdated: datetime = Field(default_factory=_utcnow)

    @field_validator("name")
    @classmethod
    def strip_name(cls, v): return v.strip()

    @field_validator("riskLevel", mode="before")
    @classmethod
    def lower_level(cls, v): return v.strip().lower() if isinstance(v, str) else v


class MaternalPatient(_PatientBase):
    patientId: str = Field(min_length=1)
    age: int = Field(ge=0, le=150)

    @property
    def record_type(self) -> RecordType:
        return RecordType.maternal

    @property
    def identity(self) -> str:
        return self.patientId


class PediatricPatient(_PatientBase):
    childId: str = Field(min_length=1)
    birthWeight: Optional[float] = Field(default=None, ge=0, le=10)
    gestationWeeks: Optional[int] = Field(default=None, ge=20, le=45)

    @property
    def record_type(self) -> RecordType:
        return RecordType.pediatric

    @property
    def identity(self) -> str:
        return self.childId


PatientRecord = Union[MaternalPatient, PediatricPatient]

MODEL_FOR: Dict[RecordType, type] = {
    RecordType.maternal: MaternalPatient,
    RecordType.pediatric: PediatricPatient,
}


class PatientFilter(BaseModel):
    riskLevel: Optional[RiskLevel] = None
    dateFrom: Optional[datetime] = None
    dateTo: Optional[datetime] = None
    search: Optional[str] = None

    @field_validator("dateFrom", "dateTo")
    @classmethod
    def assume_utc(cls, v): return v.replace(tzinfo=timezone.utc) if v is not None and v.tzinfo is None else v

    def cache_fragment(self) -> str:
        return self.model_dump_json(exclude_none=True)


class BatchSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    recordsProcessed: int = 0
    recordsSuccess: int = 0
    recordsFailed: int = 0
    errors: Tuple[str, ...] = ()


class Job(BaseModel):
    jobId: str
    recordType: RecordType
    filePath: str
    filename: Optional[str] = None
    state: JobState = JobState.queued
    progress: int = Field(default=0, ge=0, le=100)
    attempts: int = 0
    stalledCount: int = 0
    result: Optional[BatchSummary] = None
    error: Optional[str] = None
    createdAt: datetime = Field(default_factory=_utcnow)
    updatedAt: datetime = Field(default_factory=_utcnow)
    heartbeatAt: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def touch(self) -> None:
        self.updatedAt = _utcnow()


class JobStatus(BaseModel):
    jobId: str
    status: JobState
    progress: int = 0
    attempts: int = 0
    message: Optional[str] = None
    result: Optional[BatchSummary] = None
