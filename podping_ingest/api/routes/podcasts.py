from fastapi import APIRouter, Depends, HTTPException, Query, status

from podping_ingest.core.security import get_operator_principal
from podping_ingest.schemas.podcasts import EpisodeOut, PodcastOut
from podping_ingest.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    get_repository,
)

router = APIRouter()


@router.get("/{podcast_id}", response_model=PodcastOut)
async def get_podcast(
    podcast_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
) -> PodcastOut:
    try:
        principal.require_scopes({"ingest:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        row = await repository.get_podcast(podcast_id=podcast_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return PodcastOut(**row)


@router.get("/{podcast_id}/episodes", response_model=list[EpisodeOut])
async def list_episodes(
    podcast_id: str,
    principal=Depends(get_operator_principal),
    repository=Depends(get_repository),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[EpisodeOut]:
    try:
        principal.require_scopes({"ingest:read"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await repository.list_episodes(podcast_id=podcast_id, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

    return [EpisodeOut(**row) for row in rows]
