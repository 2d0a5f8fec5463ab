"""
Risk scoring for ingested rows.

Explicit score/level in the file always wins. Otherwise the external
inference service is asked; when it is unreachable, slow or returns garbage
we fall back to a deterministic heuristic so a batch never waits on it.
Every result carries its source (explicit, model, fallback).
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import Settings
from .errors import ScorerUnavailable
from .logger import get_logger
from .models import RECORD_SPECS, RawRow, RecordType, RiskLevel
from .quality import features_for, has_explicit_risk, identity_of, to_int

logger = get_logger(__name__)

SOURCE_EXPLICIT = "explicit"
SOURCE_MODEL = "model"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class ScoreResult:
    score: Optional[int]
    level: str
    source: str


class Prediction(BaseModel):
    riskScore: int = Field(ge=0, le=100)
    riskLevel: RiskLevel


def level_for_score(score: int) -> RiskLevel:
    if score >= 75:
        return RiskLevel.critical
    if score >= 50:
        return RiskLevel.high
    if score >= 25:
        return RiskLevel.medium
    return RiskLevel.low


def fallback_score(record_type: RecordType, features: Dict[str, Any]) -> ScoreResult:
    score = 10 + 12 * len(features.get("riskFactors") or [])

    if record_type is RecordType.maternal:
        age = features.get("age")
        if age is not None:
            if age < 18 or age >= 35:
                score += 15
            if age >= 40:
                score += 10
    else:
        weight = features.get("birthWeight")
        weeks = features.get("gestationWeeks")
        if weight is not None:
            if weight < 2.5:
                score += 20
            if weight < 1.5:
                score += 15
        if weeks is not None:
            if weeks < 37:
                score += 15
            if weeks < 32:
                score += 10

    score = max(0, min(100, score))
    return ScoreResult(score=score, level=level_for_score(score).value, source=SOURCE_FALLBACK)


class RiskScorer:
    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "RiskScorer":
        return cls(settings.inference_url, settings.inference_api_key, settings.inference_timeout)

    async def predict(self, record_type: RecordType, features: Dict[str, Any]) -> Prediction:
        if not self.url:
            raise ScorerUnavailable("no inference url configured")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        body = {"type": record_type.value, "features": features}
        try:
            if self._client is not None:
                resp = await self._client.post(self.url, json=body, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=body, headers=headers)
            resp.raise_for_status()
            return Prediction.model_validate(resp.json())
        except httpx.TimeoutException as e:
            raise ScorerUnavailable(f"inference timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ScorerUnavailable(f"inference request failed: {e}") from e
        except (ValidationError, ValueError) as e:
            raise ScorerUnavailable(f"inference returned an invalid body: {e}") from e

    async def resolve(self, record_type: RecordType, row: RawRow) -> ScoreResult:
        if has_explicit_risk(row):
            return ScoreResult(
                score=to_int(row.get("risk_score")),
                level=row["risk_level"].strip().lower(),
                source=SOURCE_EXPLICIT,
            )

        spec = RECORD_SPECS[record_type]
        features = features_for(spec, row)
        try:
            pred = await self.predict(record_type, features)
        except ScorerUnavailable as e:
            result = fallback_score(record_type, features)
            logger.warning(
                "scorer unavailable, using fallback score",
                extra={
                    "record_type": record_type.value,
                    "record_id": identity_of(spec, row),
                    "score_source": SOURCE_FALLBACK,
                    "risk_score": result.score,
                    "risk_level": result.level,
                    "reason": str(e),
                },
            )
            return result

        logger.debug(
            "model score resolved",
            extra={
                "record_type": record_type.value,
                "record_id": identity_of(spec, row),
                "score_source": SOURCE_MODEL,
                "risk_score": pred.riskScore,
                "risk_level": pred.riskLevel.value,
            },
        )
        return ScoreResult(score=pred.riskScore, level=pred.riskLevel.value, source=SOURCE_MODEL)
