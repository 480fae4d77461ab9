from datetime import timedelta
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from podping_ingest.core.config import Settings, get_settings
from podping_ingest.core.security import get_operator_principal
from podping_ingest.jobs.cleanup import purge_completed_older_than
from podping_ingest.jobs.intake import intake_feed
from podping_ingest.jobs.lease_reaper import reap_stale_claims, should_reap
from podping_ingest.schemas.captures import (
    CaptureEventOut,
    CaptureIntakeOut,
    CaptureIntakeRequest,
    CaptureOut,
    CaptureStatus,
    CleanupOut,
    CleanupRequest,
    ReapOut,
    ReapRequest,
    TriggerReason,
)
from podping_ingest.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _require(principal, scope: str) -> None:
    try:
        principal.require_scopes({scope})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


def _capture_out(row: dict[str, Any], settings: Settings) -> CaptureOut:
    stale = should_reap(row, stale_after_seconds=settings.stale_claim_timeout_seconds)
    return CaptureOut(**row, stale_claim=stale)


@router.get("", response_model=list[CaptureOut])
async def list_captures(
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    capture_status: CaptureStatus | None = Query(default=None, alias="status"),
    trigger_reason: TriggerReason | None = Query(default=None),
    source_url: str | None = Query(default=None, max_length=2048),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CaptureOut]:
    _require(principal, "ingest:read")

    try:
        rows = await repository.list_captures(
            status=capture_status,
            trigger_reason=trigger_reason,
            source_url=source_url,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return [_capture_out(row, settings) for row in rows]


@router.post("", response_model=CaptureIntakeOut, status_code=status.HTTP_202_ACCEPTED)
async def create_capture(
    payload: CaptureIntakeRequest,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> CaptureIntakeOut:
    _require(principal, "ingest:write")

    try:
        result = await intake_feed(repository, payload.feed_url, "manual", actor=principal.subject)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return CaptureIntakeOut(capture_id=result.capture_id, source_url=result.source_url, coalesced=result.coalesced)


@router.post("/cleanup", response_model=CleanupOut)
async def cleanup_captures(
    payload: CleanupRequest,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> CleanupOut:
    _require(principal, "ingest:write")

    retention_days = payload.retention_days
    if retention_days is None:
        retention_days = settings.capture_retention_days
    retention = timedelta(days=retention_days)
    try:
        purged = await purge_completed_older_than(
            repository,
            retention,
            payload.batch_size or settings.cleanup_batch_size,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return CleanupOut(purged=purged, retention_seconds=int(retention.total_seconds()))


@router.post("/reap-stale", response_model=ReapOut)
async def reap_stale_captures(
    payload: ReapRequest,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> ReapOut:
    _require(principal, "ingest:write")

    stale_after_seconds = payload.stale_after_seconds
    if stale_after_seconds is None:
        stale_after_seconds = settings.stale_claim_timeout_seconds
    try:
        reaped = await reap_stale_claims(
            repository,
            stale_after_seconds=stale_after_seconds,
            limit=payload.limit or settings.reaper_batch_size,
            actor=principal.subject,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return ReapOut(reaped=reaped)


@router.get("/{capture_id}", response_model=CaptureOut)
async def get_capture(
    capture_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> CaptureOut:
    _require(principal, "ingest:read")

    try:
        row = await repository.get_capture(capture_id=capture_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return _capture_out(row, settings)


@router.get("/{capture_id}/events", response_model=list[CaptureEventOut])
async def list_capture_events(
    capture_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[CaptureEventOut]:
    _require(principal, "ingest:read")

    try:
        rows = await repository.list_capture_events(capture_id=capture_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [CaptureEventOut(**row) for row in rows]


@router.post("/{capture_id}/retry", response_model=CaptureOut)
async def retry_capture(
    capture_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> CaptureOut:
    _require(principal, "ingest:write")

    try:
        row = await repository.retry_capture(capture_id=capture_id, actor=principal.subject)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc

    return _capture_out(row, settings)
