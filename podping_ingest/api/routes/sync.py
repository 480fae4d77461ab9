from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from podping_ingest.core.security import get_operator_principal
from podping_ingest.jobs.cursor import blocks_behind
from podping_ingest.schemas.sync import SyncResetRequest, SyncStatusOut, TriggerCounterOut
from podping_ingest.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


def _status_out(
    state: dict[str, Any] | None, counts: dict[str, int], counters: dict[str, dict[str, int]]
) -> SyncStatusOut:
    trigger_counters = {reason: TriggerCounterOut(**values) for reason, values in counters.items()}
    if state is None:
        return SyncStatusOut(initialized=False, capture_counts=counts, trigger_counters=trigger_counters)

    fields = {key: value for key, value in state.items() if key in SyncStatusOut.model_fields}
    return SyncStatusOut(
        **fields,
        initialized=state.get("last_parsed_block") is not None,
        blocks_behind=blocks_behind(state.get("last_known_head_block"), state.get("last_parsed_block")),
        capture_counts=counts,
        trigger_counters=trigger_counters,
    )


@router.get("/status", response_model=SyncStatusOut)
async def sync_status(
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SyncStatusOut:
    try:
        principal.require_scopes({"ingest:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        state = await repository.get_sync_state()
        counts = await repository.count_captures_by_status()
        counters = await repository.get_trigger_counters()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return _status_out(state, counts, counters)


@router.post("/reset", response_model=SyncStatusOut)
async def reset_sync(
    payload: SyncResetRequest,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> SyncStatusOut:
    try:
        principal.require_scopes({"ingest:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        state = await repository.reset_sync_state(start_block=payload.start_block)
        counts = await repository.count_captures_by_status()
        counters = await repository.get_trigger_counters()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return _status_out(state, counts, counters)
