from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from playsync.config import settings
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay
from playsync.models.user import User
from playsync.tasks.jobs import SubmitPlayJob, SyncCatalogBatchJob, SyncUserPlaysJob, WorkerPool
from playsync.utils.logging import log_info


async def enqueue_catalog_batches(pool: WorkerPool, bgg_ids) -> int:
    """One job per BGG_MAX_IDS_PER_REQUEST ids."""
    ids = list(bgg_ids)
    size = settings.BGG_MAX_IDS_PER_REQUEST
    queued = 0
    for start in range(0, len(ids), size):
        if await pool.enqueue(SyncCatalogBatchJob(ids[start:start + size])):
            queued += 1
    return queued


async def refresh_stale_catalog(pool: WorkerPool) -> int:
    ids = await pool.context.catalog.select_stale_bgg_ids()
    queued = await enqueue_catalog_batches(pool, ids)
    log_info(f"🔄 Stale catalog refresh: {len(ids)} game(s) in {queued} batch job(s)")
    return queued


async def sync_all_user_plays(pool: WorkerPool) -> int:
    async with pool.context.session_factory() as session:
        res = await session.execute(select(User.id).where(User.bgg_username.isnot(None)).order_by(User.id))
        user_ids = list(res.scalars().all())

    queued = 0
    for user_id in user_ids:
        if await pool.enqueue(SyncUserPlaysJob(user_id)):
            queued += 1
    log_info(f"📅 Play sync queued for {queued} user(s)")
    return queued


async def submit_pending_plays(pool: WorkerPool) -> int:
    async with pool.context.session_factory() as session:
        res = await session.execute(
            select(BoardGamePlay.id).where(
                BoardGamePlay.request_outbound_sync.is_(True),
                BoardGamePlay.submit_status == SyncStatus.PENDING,
            )
        )
        play_ids = list(res.scalars().all())

    queued = 0
    for play_id in play_ids:
        if await pool.enqueue(SubmitPlayJob(play_id)):
            queued += 1
    if queued:
        log_info(f"📤 Queued {queued} pending play submission(s)")
    return queued


def setup_scheduler(pool: WorkerPool) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        refresh_stale_catalog,
        IntervalTrigger(hours=settings.CATALOG_REFRESH_HOURS),
        args=[pool],
        id="refresh_stale_catalog_job",
        replace_existing=True,
    )
    scheduler.add_job(
        sync_all_user_plays,
        IntervalTrigger(hours=settings.PLAYS_SYNC_HOURS),
        args=[pool],
        id="sync_user_plays_job",
        replace_existing=True,
    )
    scheduler.add_job(
        submit_pending_plays,
        IntervalTrigger(minutes=settings.PENDING_SUBMISSION_MINUTES),
        args=[pool],
        id="submit_pending_plays_job",
        replace_existing=True,
    )
    scheduler.start()
    log_info(
        f"Scheduler started: catalog every {settings.CATALOG_REFRESH_HOURS}h, "
        f"plays every {settings.PLAYS_SYNC_HOURS}h, submissions every {settings.PENDING_SUBMISSION_MINUTES}min"
    )
    return scheduler
