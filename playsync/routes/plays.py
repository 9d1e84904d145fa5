from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from playsync.database import get_db
from playsync.routes.catalog import get_pool
from playsync.schemas.plays import BGGCredential, PlayCreate, PlayRead, PlayStats, PlayUpdate, SyncStatusRead
from playsync.services.bgg.errors import PlayValidationError
from playsync.services.dedup import DeduplicationResolver
from playsync.services.plays import PlayService
from playsync.tasks.jobs import SyncUserPlaysJob, WorkerPool

router = APIRouter(prefix="/plays", tags=["Plays"])


def get_play_service(db: AsyncSession = Depends(get_db), pool: WorkerPool = Depends(get_pool)) -> PlayService:
    return PlayService(db, dispatch=pool.enqueue)


@router.get("", response_model=List[PlayRead])
async def list_plays(
    user_id: Optional[int] = Query(None),
    group_id: Optional[int] = Query(None),
    include_excluded: bool = Query(False, description="Also return plays hidden as duplicates"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    service: PlayService = Depends(get_play_service),
):
    return await service.list_plays(user_id, group_id, include_excluded, limit, offset)


@router.post("", response_model=PlayRead, status_code=201)
async def create_play(
    body: PlayCreate,
    creator_id: int = Query(...),
    service: PlayService = Depends(get_play_service),
):
    try:
        return await service.create_play(creator_id, body)
    except PlayValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.patch("/{play_id}", response_model=PlayRead)
async def update_play(play_id: int, body: PlayUpdate, service: PlayService = Depends(get_play_service)):
    try:
        return await service.update_play(play_id, body)
    except LookupError:
        raise HTTPException(status_code=404, detail="Play not found")
    except PlayValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.delete("/{play_id}", status_code=204)
async def delete_play(play_id: int, service: PlayService = Depends(get_play_service)):
    try:
        await service.delete_play(play_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Play not found")


@router.post("/sync/{user_id}", status_code=202)
async def sync_user_plays(
    user_id: int,
    min_date: Optional[date] = Query(None),
    max_date: Optional[date] = Query(None),
    pool: WorkerPool = Depends(get_pool),
):
    """Queue an inbound sync of the user's BGG plays (default: last PLAYS_SYNC_DAYS days)."""
    queued = await pool.enqueue(SyncUserPlaysJob(user_id, min_date, max_date))
    return {"queued": queued}


@router.post("/{play_id}/submit", status_code=202)
async def submit_play(
    play_id: int,
    credential: Optional[BGGCredential] = None,
    service: PlayService = Depends(get_play_service),
):
    """Queue (re-)submission of a play to BGG."""
    try:
        play = await service.request_submission(play_id, credential)
    except LookupError:
        raise HTTPException(status_code=404, detail="Play not found")
    return {"play_id": play.id, "submit_status": play.submit_status}


@router.get("/{play_id}/sync-status", response_model=SyncStatusRead)
async def play_sync_status(play_id: int, service: PlayService = Depends(get_play_service)):
    try:
        return await service.get_sync_status(play_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="Play not found")


@router.get("/stats/users/{user_id}", response_model=PlayStats)
async def user_stats(user_id: int, service: PlayService = Depends(get_play_service)):
    """Plays played and won, duplicates not counted."""
    return await service.get_user_stats(user_id)


@router.get("/stats/groups/{group_id}", response_model=PlayStats)
async def group_stats(group_id: int, service: PlayService = Depends(get_play_service)):
    return await service.get_group_stats(group_id)


@router.post("/dedup/rebuild")
async def rebuild_dedup(
    group_id: Optional[int] = Query(None),
    board_game_id: Optional[int] = Query(None),
    played_on: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Recompute leading/excluded plays for the given scope (everything when no filter)."""
    return await DeduplicationResolver().rebuild(db, group_id, board_game_id, played_on)
