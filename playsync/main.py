# playsync/main.py

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from playsync.database import create_tables, get_db
from playsync.models.board_game import BoardGame
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay
from playsync.routes.catalog import router as catalog_router
from playsync.routes.plays import router as plays_router
from playsync.tasks.jobs import WorkerPool, build_context
from playsync.tasks.scheduler import setup_scheduler
from playsync.utils.logging import log_info

app = FastAPI(title="playsync")


# Tables, worker pool and scheduler
@app.on_event("startup")
async def startup_event():
    await create_tables()
    app.state.pool = WorkerPool(build_context())
    await app.state.pool.start()
    app.state.scheduler = setup_scheduler(app.state.pool)
    log_info("✅ Application started, worker pool and scheduler initialized.")


@app.on_event("shutdown")
async def shutdown_event():
    app.state.scheduler.shutdown(wait=False)
    await app.state.pool.shutdown()
    await app.state.pool.context.catalog.client.aclose()


app.include_router(catalog_router)
app.include_router(plays_router)


# Health + summary
@app.get("/")
async def read_root(db: AsyncSession = Depends(get_db)):
    games = (await db.execute(select(func.count(BoardGame.id)))).scalar_one()
    plays = (await db.execute(select(func.count(BoardGamePlay.id)))).scalar_one()
    excluded = (
        await db.execute(select(func.count(BoardGamePlay.id)).where(BoardGamePlay.is_excluded.is_(True)))
    ).scalar_one()
    failed_submissions = (
        await db.execute(select(func.count(BoardGamePlay.id)).where(BoardGamePlay.submit_status == SyncStatus.FAILED))
    ).scalar_one()

    return {
        "message": "playsync is running!",
        "status": "ok",
        "board_games_count": games,
        "plays_count": plays,
        "excluded_plays_count": excluded,
        "failed_submissions_count": failed_submissions,
    }


@app.exception_handler(404)
async def not_found_handler(request: Request, exc):
    detail = getattr(exc, "detail", None) or "Resource not found"
    return JSONResponse(status_code=404, content={"error": detail, "status": "fail"})
