from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from playsync.database import get_db
from playsync.models.board_game import BoardGame
from playsync.schemas.plays import CatalogSyncStatusRead
from playsync.services.catalog_sync import clean_bgg_ids
from playsync.tasks.jobs import WorkerPool
from playsync.tasks.scheduler import enqueue_catalog_batches, refresh_stale_catalog

router = APIRouter(prefix="/catalog", tags=["Catalog"])


class CatalogSyncRequest(BaseModel):
    bgg_ids: List[str] = Field(min_length=1)


def get_pool(request: Request) -> WorkerPool:
    return request.app.state.pool


@router.post("/sync", status_code=202)
async def sync_catalog(body: CatalogSyncRequest, pool: WorkerPool = Depends(get_pool)):
    """Queue catalog sync jobs for the given BGG ids."""
    ids = clean_bgg_ids(body.bgg_ids)
    queued = await enqueue_catalog_batches(pool, ids)
    return {"requested": len(ids), "queued_jobs": queued}


@router.post("/refresh-stale", status_code=202)
async def refresh_stale(pool: WorkerPool = Depends(get_pool)):
    """Queue a refresh of never-synced and outdated games."""
    return {"queued_jobs": await refresh_stale_catalog(pool)}


@router.get("/{board_game_id}/sync-status", response_model=CatalogSyncStatusRead)
async def catalog_sync_status(board_game_id: int, db: AsyncSession = Depends(get_db)):
    game = await db.get(BoardGame, board_game_id)
    if game is None:
        raise HTTPException(status_code=404, detail="Board game not found")
    return CatalogSyncStatusRead(
        board_game_id=game.id,
        bgg_id=game.bgg_id,
        status=game.bgg_sync_status,
        synced_at=game.bgg_synced_at,
        error=game.bgg_sync_error,
    )
