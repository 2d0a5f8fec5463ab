# src/risk_ingest/main.py
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional
import asyncio, os

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import __version__
from .cache import DASHBOARD_STATS, invalidate_record, patient_key, patients_page_key
from .config import Settings, get_settings
from .errors import ParseError, RowValidationError, StoreWriteError
from .logger import get_logger, setup_logging
from .models import (
    RECORD_SPECS, Job, JobStatus, PatientFilter, RawRow, RecordType, RiskLevel,
)
from .quality import build_record, prepare_row
from .services import Services, build_services
from .uploads import UploadRejected, save_upload

logger = get_logger(__name__)


class PatientWrite(BaseModel):
    patientId: Optional[str] = None
    childId: Optional[str] = None
    name: str
    age: Optional[int] = None
    birthWeight: Optional[float] = None
    gestationWeeks: Optional[int] = None
    riskScore: Optional[int] = None
    riskLevel: Optional[RiskLevel] = None
    riskFactors: List[str]
    lastUpdated: Optional[datetime] = None

    def to_raw_row(self) -> RawRow:
        """Same shape the CSV parser produces, so both write paths share validation and scoring."""
        def s(v): return "" if v is None else str(v)
        return {
            "patient_id": s(self.patientId),
            "child_id": s(self.childId),
            "name": self.name,
            "age": s(self.age),
            "birth_weight": s(self.birthWeight),
            "gestation_weeks": s(self.gestationWeeks),
            "risk_score": s(self.riskScore),
            "risk_level": self.riskLevel.value if self.riskLevel else "",
            "risk_factors": ",".join(self.riskFactors),
            "last_updated": self.lastUpdated.isoformat() if self.lastUpdated else "",
        }


def _error(settings: Settings, status: int, message: str, exc: Exception) -> JSONResponse:
    body: Dict[str, Any] = {"detail": message}
    if not settings.is_production:
        body["error"] = str(exc)
    return JSONResponse(status_code=status, content=body)


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(settings: Optional[Settings] = None, **overrides) -> FastAPI:
    """
    Build the app. ``overrides`` (store, scorer, cache, queue) replace the
    collaborators build_services() would otherwise pick from the settings.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level, settings.log_format)
        os.makedirs(settings.upload_dir, exist_ok=True)
        services = await build_services(settings, **overrides)
        app.state.services = services
        stop = asyncio.Event()
        tasks = []
        if services.queue.is_available and settings.worker_concurrency > 0:
            tasks = services.orchestrator.start_workers(stop, settings.worker_concurrency)
        try:
            yield
        finally:
            stop.set()
            for t in tasks:
                t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await services.close()

    app = FastAPI(title="Patient Risk Ingest Service", version=__version__, lifespan=lifespan)
    app.state.settings = settings

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "risk-ingest"}

    @app.get("/health/detailed")
    async def health_detailed(svc: Services = Depends(get_services)):
        checks: Dict[str, Dict[str, Any]] = {"server": {"status": "ok"}}
        if svc.queue.is_available:
            ok = await svc.queue.backend.ping()
            checks["queue"] = {"status": "ok" if ok else "error", "backend": svc.queue.backend.name}
        else:
            checks["queue"] = {"status": "disabled", "mode": "synchronous"}
        checks["cache"] = {"status": "ok" if svc.cache.available else "disabled"}
        checks["uploads"] = {"status": "ok" if os.access(settings.upload_dir, os.W_OK) else "error"}
        healthy = all(c["status"] in ("ok", "disabled") for c in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "degraded", "environment": settings.app_env, "checks": checks},
        )

    @app.get("/health/ready")
    async def health_ready(svc: Services = Depends(get_services)):
        ready = await svc.cache.ping()
        if svc.queue.is_available:
            ready = ready and await svc.queue.backend.ping()
        if not ready:
            logger.warning("readiness check failed", extra={"queue": repr(svc.queue)})
            return JSONResponse(status_code=503, content={"status": "not ready"})
        return {"status": "ready"}

    @app.get("/health/live")
    async def health_live():
        return {"status": "alive"}

    # ---- ingestion ----------------------------------------------------------

    @app.post("/patients/{record_type}/upload")
    async def upload_patients(record_type: RecordType, file: UploadFile = File(...),
                              svc: Services = Depends(get_services)):
        try:
            path = await save_upload(file, settings)
        except UploadRejected as e:
            raise HTTPException(status_code=400, detail=str(e))

        try:
            result = await svc.orchestrator.submit(path, record_type, file.filename)
        except ParseError as e:
            logger.warning("upload could not be parsed", extra={"upload": file.filename, "reason": str(e)})
            return _error(settings, 400, "Could not parse CSV file", e)
        except Exception as e:
            logger.exception("error processing upload", extra={"upload": file.filename})
            return _error(settings, 500, "Error processing upload", e)

        if result.queued:
            return {"success": True, "message": "File uploaded and queued for processing", "jobId": result.job_id}
        return {"success": True, **result.summary.model_dump()}

    @app.get("/jobs/{job_id}/status", response_model=JobStatus)
    async def get_job_status(job_id: str, svc: Services = Depends(get_services)):
        job = await svc.orchestrator.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return JobStatus(
            jobId=job.jobId,
            status=job.state,
            progress=job.progress,
            attempts=job.attempts,
            message=job.error,
            result=job.result,
        )

    @app.get("/jobs/{job_id}", response_model=Job)
    async def get_job_details(job_id: str, svc: Services = Depends(get_services)):
        job = await svc.orchestrator.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job

    # ---- read side ----------------------------------------------------------

    @app.get("/patients/{record_type}")
    async def list_patients(
        record_type: RecordType,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=100),
        riskLevel: Optional[RiskLevel] = None,
        dateFrom: Optional[datetime] = None,
        dateTo: Optional[datetime] = None,
        search: Optional[str] = None,
        svc: Services = Depends(get_services),
    ):
        flt = PatientFilter(riskLevel=riskLevel, dateFrom=dateFrom, dateTo=dateTo, search=search)
        key = patients_page_key(record_type, page, limit, flt)
        cached = await svc.cache.get(key)
        if cached is not None:
            return cached

        records = await svc.store.list(record_type, flt)
        total = len(records)
        start = (page - 1) * limit
        body = jsonable_encoder({
            "data": records[start:start + limit],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": (total + limit - 1) // limit,
            },
        })
        await svc.cache.set(key, body, settings.list_cache_ttl)
        return body

    @app.get("/patients/{record_type}/{record_id}")
    async def get_patient(record_type: RecordType, record_id: str, svc: Services = Depends(get_services)):
        key = patient_key(record_type, record_id)
        cached = await svc.cache.get(key)
        if cached is not None:
            return cached
        record = await svc.store.get_by_id(record_type, record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Patient not found")
        body = jsonable_encoder(record)
        await svc.cache.set(key, body, settings.list_cache_ttl)
        return body

    @app.put("/patients/{record_type}")
    async def put_patient(record_type: RecordType, payload: PatientWrite, svc: Services = Depends(get_services)):
        spec = RECORD_SPECS[record_type]
        raw = payload.to_raw_row()
        try:
            fields = prepare_row(spec, raw)
            # keep factors exactly as sent; the raw row joins them with commas
            fields["riskFactors"] = [f.strip() for f in payload.riskFactors if f.strip()]
            result = await svc.scorer.resolve(record_type, raw)
            record = build_record(spec, fields, result.score, result.level)
            created = await svc.store.create_or_update(record)
        except RowValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except StoreWriteError as e:
            return _error(settings, 500, "Error saving patient", e)
        await invalidate_record(svc.cache, record_type)
        return JSONResponse(status_code=201 if created else 200, content=jsonable_encoder(record))

    @app.delete("/patients/{record_type}/{record_id}")
    async def delete_patient(record_type: RecordType, record_id: str, svc: Services = Depends(get_services)):
        try:
            deleted = await svc.store.delete(record_type, record_id)
        except StoreWriteError as e:
            return _error(settings, 500, "Error deleting patient", e)
        if not deleted:
            raise HTTPException(status_code=404, detail="Patient not found")
        await invalidate_record(svc.cache, record_type)
        return {"success": True}

    @app.get("/dashboard/stats")
    async def dashboard_stats(svc: Services = Depends(get_services)):
        cached = await svc.cache.get(DASHBOARD_STATS)
        if cached is not None:
            return cached
        stats: Dict[str, Any] = {}
        high_risk = 0
        for record_type in RecordType:
            records = await svc.store.list(record_type)
            by_level = {level.value: 0 for level in RiskLevel}
            for r in records:
                by_level[r.riskLevel.value] += 1
            high_risk += by_level["high"] + by_level["critical"]
            stats[record_type.value] = {"total": len(records), "byRiskLevel": by_level}
        stats["highRiskTotal"] = high_risk
        await svc.cache.set(DASHBOARD_STATS, stats, settings.list_cache_ttl)
        return stats

    return app


app = create_app()
