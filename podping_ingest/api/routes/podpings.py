from fastapi import APIRouter, Depends, HTTPException, Query, status

from podping_ingest.core.security import get_operator_principal
from podping_ingest.core.urls import normalize_feed_url
from podping_ingest.schemas.podpings import PodpingOut, PodpingReason
from podping_ingest.services.repository import (
    RepositoryUnavailableError,
    RepositoryValidationError,
    get_repository,
)

router = APIRouter()


@router.get("", response_model=list[PodpingOut])
async def list_podpings(
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    reason: PodpingReason | None = Query(default=None),
    feed_url: str | None = Query(default=None, max_length=2048),
    block: int | None = Query(default=None, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[PodpingOut]:
    """Podpings seen on the ledger, newest block first, including skipped ones."""
    try:
        principal.require_scopes({"ingest:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if feed_url:
        try:
            feed_url = normalize_feed_url(feed_url)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        rows = await repository.list_podpings(
            reason=reason,
            feed_url=feed_url,
            block_number=block,
            limit=limit,
            offset=offset,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    return [PodpingOut(**row) for row in rows]
