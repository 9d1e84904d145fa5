from typing import Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playsync.config import settings
from playsync.database import AsyncSessionLocal
from playsync.models.board_game import BoardGame
from playsync.models.enums import SyncStatus
from playsync.schemas.bgg import BGGGameData
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.errors import BGGError, MalformedResponse, PermanentClientError, truncate_error
from playsync.services.bgg.parsers import parse_game_item
from playsync.utils.convert import to_text
from playsync.utils.dates import months_ago, utcnow
from playsync.utils.logging import log_error, log_info, log_success, log_warning
from playsync.utils.model_helpers import apply_model_fields

UNKNOWN_GAME_NAME = "Unknown Game"


def clean_bgg_ids(bgg_ids: Iterable) -> List[str]:
    """Strip, drop non-numeric ids and dedupe while keeping the original order."""
    seen = set()
    cleaned: List[str] = []
    for raw in bgg_ids:
        value = str(raw).strip() if raw is not None else ""
        if not value.isdigit() or value in seen:
            continue
        seen.add(value)
        cleaned.append(value)
    return cleaned


class CatalogSyncPipeline:
    """BGG /thing -> board_games, upserted by bgg_id with per-record status."""

    def __init__(self, client: BGGApiClient, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self.client = client
        self.session_factory = session_factory

    async def sync_by_bgg_ids(self, bgg_ids: Iterable) -> Dict[str, int]:
        ids = clean_bgg_ids(bgg_ids)
        summary = {"requested": len(ids), "synced": 0, "failed": 0}
        if not ids:
            return summary

        log_info(f"🎲 Catalog sync: {len(ids)} game(s)")
        first_error: Optional[BGGError] = None
        batch_size = settings.BGG_MAX_IDS_PER_REQUEST

        async with self.session_factory() as session:
            await self._mark_pending(session, ids)

            for start in range(0, len(ids), batch_size):
                batch = ids[start:start + batch_size]
                try:
                    items = await self.client.fetch_games(batch)
                except BGGError as e:
                    log_error(f"Catalog batch {batch[0]}..{batch[-1]} failed: {e}")
                    await self._mark_failed(session, batch, e)
                    await session.commit()
                    summary["failed"] += len(batch)
                    first_error = first_error or e
                    continue

                synced, failed = await self._apply_batch(session, batch, items)
                await session.commit()
                summary["synced"] += synced
                summary["failed"] += failed

        if first_error is not None:
            raise first_error

        log_success(f"✅ Catalog sync done: {summary}")
        return summary

    async def sync_single(self, bgg_id) -> BoardGame:
        ids = clean_bgg_ids([bgg_id])
        if not ids:
            raise PermanentClientError(f"invalid BGG id: {bgg_id!r}")

        await self.sync_by_bgg_ids(ids)
        async with self.session_factory() as session:
            game = await self._get_by_bgg_id(session, ids[0])
        if game is None or game.bgg_sync_status != SyncStatus.SYNCED:
            raise PermanentClientError(
                f"BGG game {ids[0]} could not be synced: {game.bgg_sync_error if game else 'not found'}"
            )
        return game

    async def select_stale_bgg_ids(self, months: Optional[int] = None, limit: Optional[int] = None) -> List[str]:
        """bgg ids that were never synced or were last synced more than `months` ago."""
        months = settings.BGG_CATALOG_STALE_MONTHS if months is None else months
        cutoff = months_ago(months)

        stmt = (
            select(BoardGame.bgg_id)
            .where(
                BoardGame.bgg_id.isnot(None),
                (BoardGame.bgg_synced_at.is_(None)) | (BoardGame.bgg_synced_at < cutoff),
            )
            .order_by(BoardGame.bgg_synced_at.isnot(None), BoardGame.bgg_synced_at, BoardGame.id)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()

        stale = clean_bgg_ids(rows)
        return stale[:limit] if limit else stale

    # ------------------
    # internals
    # ------------------

    async def _get_by_bgg_id(self, session: AsyncSession, bgg_id: str) -> Optional[BoardGame]:
        res = await session.execute(select(BoardGame).where(BoardGame.bgg_id == bgg_id))
        return res.scalar_one_or_none()

    async def _rows_by_bgg_id(self, session: AsyncSession, ids: List[str]) -> Dict[str, BoardGame]:
        res = await session.execute(select(BoardGame).where(BoardGame.bgg_id.in_(ids)))
        return {game.bgg_id: game for game in res.scalars().all()}

    async def _mark_pending(self, session: AsyncSession, ids: List[str]) -> None:
        for game in (await self._rows_by_bgg_id(session, ids)).values():
            game.bgg_sync_status = SyncStatus.PENDING
        await session.commit()

    async def _mark_failed(self, session: AsyncSession, ids: List[str], error: BaseException) -> None:
        existing = await self._rows_by_bgg_id(session, ids)
        message = truncate_error(error)
        for bgg_id in ids:
            game = existing.get(bgg_id)
            if game is None:
                game = BoardGame(bgg_id=bgg_id, name=UNKNOWN_GAME_NAME)
                session.add(game)
            game.bgg_sync_status = SyncStatus.FAILED
            game.bgg_sync_error = message

    async def _upsert_game(self, session: AsyncSession, game: Optional[BoardGame], data: BGGGameData) -> BoardGame:
        fields = data.model_dump()
        if game is None:
            game = BoardGame(**fields)
            session.add(game)
        else:
            apply_model_fields(game, fields)
        game.bgg_synced_at = utcnow()
        game.bgg_sync_status = SyncStatus.SYNCED
        game.bgg_sync_error = None
        return game

    async def _apply_batch(self, session: AsyncSession, batch: List[str], items) -> tuple:
        existing = await self._rows_by_bgg_id(session, batch)
        requested = set(batch)
        parsed: Dict[str, BGGGameData] = {}
        failures: Dict[str, MalformedResponse] = {}

        for item in items:
            item_id = to_text(item.attrib.get("id"))
            try:
                data = parse_game_item(item)
            except MalformedResponse as e:
                log_warning(f"⚠️ Skipping malformed game record {item_id}: {e}")
                if item_id in requested:
                    failures[item_id] = e
                continue
            if data.bgg_id in requested:
                parsed[data.bgg_id] = data

        synced = failed = 0
        for bgg_id in batch:
            if bgg_id in parsed:
                await self._upsert_game(session, existing.get(bgg_id), parsed[bgg_id])
                synced += 1
                continue
            error = failures.get(bgg_id) or MalformedResponse(f"game {bgg_id} not returned by BGG")
            await self._mark_failed(session, [bgg_id], error)
            failed += 1

        log_info(f"Catalog batch {batch[0]}..{batch[-1]}: {synced} synced, {failed} failed")
        return synced, failed
