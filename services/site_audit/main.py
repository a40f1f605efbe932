from datetime import datetime, timezone
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from config.logging_config import get_logger, setup_logging
from services.site_audit.config import settings
from services.site_audit.crawler.extract import normalize_url
from services.site_audit.db import repository
from services.site_audit.db.session import get_session, init_db
from services.site_audit.enums import AuditStatus
from services.site_audit.errors import AuditNotFound, PersistenceError
from services.site_audit.schemas.audit import (
    AuditAccepted,
    AuditRequest,
    AuditStatusResponse,
    CheckResultResponse,
    DismissalRequest,
)
from services.site_audit.tasks import enqueue_batch

logger = get_logger(__name__)

app = FastAPI(title="Site Audit Service", version="0.1.0")

# a finalizing audit cannot be stopped, it is already past crawling
STOPPABLE = [AuditStatus.PENDING, AuditStatus.CRAWLING, AuditStatus.BATCH_COMPLETE]


@app.on_event("startup")
async def _startup() -> None:
    setup_logging("site_audit")
    await init_db()


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "service": "site_audit", "ts": datetime.now(timezone.utc).isoformat()}


@app.post("/audits", response_model=AuditAccepted, status_code=202)
async def start_audit(payload: AuditRequest) -> AuditAccepted:
    url = normalize_url(str(payload.url))
    async with get_session() as session:
        audit = await repository.create_audit(session, url, tenant_id=payload.tenant_id)

    enqueue_batch(audit.id, url)
    logger.info("Audit queued", extra={"audit_id": audit.id, "url": url, "tenant_id": payload.tenant_id})
    return AuditAccepted(audit_id=audit.id, status=audit.status)


@app.get("/audits/{audit_id}", response_model=AuditStatusResponse)
async def get_audit_status(audit_id: str) -> AuditStatusResponse:
    async with get_session() as session:
        audit = await repository.require_audit(session, audit_id)
        return AuditStatusResponse.model_validate(audit)


@app.get("/audits/{audit_id}/checks", response_model=list[CheckResultResponse])
async def get_audit_checks(audit_id: str) -> list[CheckResultResponse]:
    async with get_session() as session:
        await repository.require_audit(session, audit_id)
        checks = await repository.list_checks(session, audit_id)
        return [CheckResultResponse.model_validate(c) for c in checks]


@app.post("/audits/{audit_id}/stop", response_model=AuditAccepted, status_code=202)
async def stop_audit(audit_id: str) -> AuditAccepted:
    async with get_session() as session:
        audit = await repository.require_audit(session, audit_id)
        previous = AuditStatus(audit.status)
        if previous == AuditStatus.STOP_REQUESTED:
            return AuditAccepted(audit_id=audit_id, status=previous.value)
        if not await repository.transition_status(session, audit_id, STOPPABLE, AuditStatus.STOP_REQUESTED):
            current = await repository.require_audit(session, audit_id)
            raise HTTPException(status_code=409, detail=f"audit_is_{current.status}")

    # no worker holds the audit, so one has to pick up the stop request
    if previous in (AuditStatus.PENDING, AuditStatus.BATCH_COMPLETE):
        enqueue_batch(audit_id, audit.url)
    logger.info("Audit stop requested", extra={"audit_id": audit_id, "previous_status": previous.value})
    return AuditAccepted(audit_id=audit_id, status=AuditStatus.STOP_REQUESTED.value)


@app.post("/audits/{audit_id}/continue", response_model=AuditAccepted, status_code=202)
async def continue_audit(audit_id: str) -> AuditAccepted:
    async with get_session() as session:
        audit = await repository.require_audit(session, audit_id)
    if audit.status != AuditStatus.BATCH_COMPLETE.value:
        raise HTTPException(status_code=409, detail=f"audit_is_{audit.status}")

    enqueue_batch(audit_id, audit.url)
    return AuditAccepted(audit_id=audit_id, status=audit.status)


@app.post("/dismissals", status_code=201)
async def dismiss_check(payload: DismissalRequest) -> dict:
    async with get_session() as session:
        created = await repository.add_dismissal(
            session, payload.tenant_id, payload.check_name, normalize_url(payload.url), payload.dismissed_by
        )
    return {"created": created}


@app.exception_handler(AuditNotFound)
async def audit_not_found_handler(_, exc: AuditNotFound):
    return JSONResponse(status_code=404, content={"detail": "audit_not_found"})


@app.exception_handler(PersistenceError)
async def persistence_error_handler(_, exc: PersistenceError):
    logger.error("Database write failed", extra={"error": str(exc)})
    return JSONResponse(status_code=503, content={"detail": "storage_unavailable"})


@app.exception_handler(ValueError)
async def value_error_handler(_, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("services.site_audit.main:app", host="0.0.0.0", port=settings.port, reload=False)
