"""HTTP surface over the engine.

Run with ``uvicorn --factory baseline_engine.api:create_app``.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from baseline_engine import engine
from baseline_engine.errors import (
    BaselineEngineError,
    MalformedInputError,
    ResetNotConfirmedError,
    TransactionConflictError,
    UnknownHostError,
)
from baseline_engine.settings import resolve_settings
from baseline_engine.storage import init_db

APP_TITLE = "Scan Baseline Engine"
RETRY_AFTER_SECONDS = 5


class ReportIn(BaseModel):
    filename: str
    scan_name: str | None = None
    scan_date: str
    source_identity: str | None = None
    source_kind: str | None = None
    benchmark: str | None = None
    coverage: list[str] | None = None


class BatchIn(BaseModel):
    report: ReportIn
    hosts: list[dict[str, Any]] = Field(default_factory=list)
    findings: list[Any] | None = None
    vulnerabilities: list[Any] | None = None
    package_id: int | None = None
    system_id: int | None = None


class RowErrorOut(BaseModel):
    row_index: int
    field: str | None = None
    reason: str


class ImportOut(BaseModel):
    accepted: bool
    duplicate: bool
    report_id: int
    inserted: int
    updated: int = Field(description="Matched findings whose attributes changed without a state transition")
    unchanged: int
    resolved: int = Field(description="Findings resolved by a passing row or by absence from the batch")
    regressed: int = Field(description="Resolved findings detected again; not included in updated")
    skipped: int
    duplicates: int
    errors: list[RowErrorOut]


class SnapshotOut(BaseModel):
    scope_type: str
    scope_id: int
    version: int
    computed_at: str
    severity_counts: dict[str, int]
    open_total: int
    compliance_applicable: int
    compliance_passing: int
    compliance_percent: float | None = None
    control_status: dict[str, str]


class ResetIn(BaseModel):
    package_id: int | None = None
    confirm: str


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime_seconds: float
    database: bool


def _error_body(exc: BaselineEngineError) -> dict[str, Any]:
    body: dict[str, Any] = {"detail": str(exc), "retryable": exc.retryable}
    if isinstance(exc, MalformedInputError) and exc.field:
        body["field"] = exc.field
    return body


def create_app(settings: dict[str, Any] | None = None) -> FastAPI:
    settings = settings or resolve_settings(None)
    db_path = settings["paths"]["db_path"]
    init_db(db_path)
    started = time.time()

    app = FastAPI(title=APP_TITLE)

    @app.exception_handler(BaselineEngineError)
    async def engine_error_handler(_request, exc: BaselineEngineError) -> JSONResponse:
        if isinstance(exc, (MalformedInputError, UnknownHostError)):
            return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_body(exc))
        if isinstance(exc, ResetNotConfirmedError):
            return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=_error_body(exc))
        if isinstance(exc, TransactionConflictError):
            return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=_error_body(exc))
        if exc.retryable:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content=_error_body(exc),
                headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            )
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_body(exc))

    @app.post("/api/imports", response_model=ImportOut)
    def submit_import(batch: BatchIn) -> dict[str, Any]:
        payload = batch.model_dump()
        payload["report"] = {key: value for key, value in payload["report"].items() if value is not None}
        return engine.submit_batch(db_path, payload, settings=settings).to_dict()

    @app.get("/api/findings")
    def list_findings(
        package_id: int | None = None,
        system_id: int | None = None,
        severity: str | None = None,
        state: str | None = None,
        benchmark: str | None = None,
        kind: str | None = Query(default=None, pattern="^(vulnerability|compliance)$"),
        limit: int | None = Query(default=None, ge=1),
        offset: int = Query(default=0, ge=0),
    ) -> dict[str, Any]:
        return engine.get_findings(
            db_path,
            package_id=package_id,
            system_id=system_id,
            severity=severity,
            state=state,
            benchmark=benchmark,
            kind=kind,
            limit=limit,
            offset=offset,
            settings=settings,
        )

    @app.get("/api/baseline", response_model=SnapshotOut)
    def baseline(package_id: int | None = None, system_id: int | None = None) -> dict[str, Any]:
        snapshot = engine.get_baseline_snapshot(db_path, package_id=package_id, system_id=system_id, settings=settings)
        return snapshot.to_dict()

    @app.get("/api/reports/{report_id}")
    def report(report_id: int) -> dict[str, Any]:
        entry = engine.get_report(db_path, report_id, settings=settings)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Report not found")
        return entry

    @app.post("/api/admin/reset-baseline")
    def admin_reset(request: ResetIn) -> dict[str, Any]:
        return engine.reset_baseline(db_path, package_id=request.package_id, confirm=request.confirm, settings=settings)

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        database = engine.check_database(db_path, settings=settings)
        return HealthResponse(
            status="healthy" if database else "degraded",
            timestamp=datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            uptime_seconds=round(time.time() - started, 2),
            database=database,
        )

    return app
