from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from playsync.config import settings
from playsync.database import AsyncSessionLocal
from playsync.models.board_game import BoardGame
from playsync.models.enums import PlaySource, SyncStatus
from playsync.models.play import BoardGamePlay, BoardGamePlayPlayer
from playsync.models.user import User
from playsync.schemas.bgg import BGGPlayData, BGGPlayerData, MappedPlayer
from playsync.schemas.identity import ExternalUsername, GuestName, UserIdentity
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.errors import BGGError, MalformedResponse, truncate_error
from playsync.services.bgg.parsers import parse_play_element, validate_play
from playsync.services.catalog_sync import CatalogSyncPipeline
from playsync.services.dedup import DeduplicationResolver, GroupingKey
from playsync.utils.convert import to_text
from playsync.utils.dates import default_sync_window, utcnow
from playsync.utils.logging import log_error, log_info, log_success, log_warning
from playsync.utils.model_helpers import apply_model_fields


def map_player(player: BGGPlayerData, local_users: Dict[str, int]) -> MappedPlayer:
    if player.username:
        user_id = local_users.get(player.username.casefold())
        identity = UserIdentity(user_id=user_id) if user_id is not None else ExternalUsername(username=player.username)
    else:
        identity = GuestName(name=player.name or "Unknown")
    return MappedPlayer(
        identity=identity,
        score=player.score,
        is_winner=player.is_winner,
        is_new_player=player.is_new_player,
        position=player.position,
    )


def _snapshot(player: MappedPlayer) -> tuple:
    return (player.identity, player.score, player.is_winner, player.is_new_player, player.position)


class PlayInboundSyncPipeline:
    """
    BGG /plays for one user -> board_game_plays.

    Order inside one run: upsert every fetched play, then reconcile plays
    that disappeared from BGG, then resolve duplicates for every touched play.
    """

    def __init__(
        self,
        client: BGGApiClient,
        catalog: Optional[CatalogSyncPipeline] = None,
        resolver: Optional[DeduplicationResolver] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.catalog = catalog or CatalogSyncPipeline(client, session_factory)
        self.resolver = resolver or DeduplicationResolver()

    async def sync_user_plays(
        self,
        user_id: int,
        min_date: Optional[date] = None,
        max_date: Optional[date] = None,
    ) -> Set[str]:
        if min_date is None or max_date is None:
            default_min, default_max = default_sync_window(settings.PLAYS_SYNC_DAYS)
            min_date = min_date or default_min
            max_date = max_date or default_max

        async with self.session_factory() as session:
            user = await session.get(User, user_id)
            if user is None:
                log_warning(f"Play sync: user {user_id} not found, skipping")
                return set()
            if not user.bgg_username:
                log_info(f"Play sync: user {user_id} has no BGG username, skipping")
                return set()

            log_info(f"📅 Syncing BGG plays for {user.bgg_username} ({min_date} – {max_date})")

            try:
                elements = await self.client.fetch_plays(user.bgg_username, min_date, max_date)
            except BGGError as e:
                log_error(f"Play sync for {user.bgg_username} failed: {e}")
                await self._mark_fetch_failed(session, user, min_date, max_date, e)
                await session.commit()
                raise

            present: Set[str] = set()
            records: List[BGGPlayData] = []
            for element in elements:
                if not validate_play(element):
                    continue
                try:
                    records.append(parse_play_element(element))
                except MalformedResponse as e:
                    log_warning(f"⚠️ Skipping malformed play {element.attrib.get('id')}: {e}")
                    play_id = to_text(element.attrib.get("id"))
                    if play_id:
                        present.add(play_id)
            present.update(record.bgg_play_id for record in records)

            await session.commit()
            games = await self._ensure_games(session, {record.bgg_game_id for record in records})
            local_users = await self._local_users(session, self._usernames(records))

            touched: List[Tuple[BoardGamePlay, Optional[GroupingKey]]] = []
            for record in records:
                game = games.get(record.bgg_game_id)
                if game is None:
                    log_warning(f"⚠️ Play {record.bgg_play_id}: game {record.bgg_game_id} unavailable, skipping")
                    continue
                if game.is_expansion:
                    log_warning(f"⚠️ Play {record.bgg_play_id}: game {record.bgg_game_id} is an expansion, skipping")
                    continue
                touched.append(await self._upsert_play(session, user, game, record, local_users))
            await session.commit()

            removed = await self._reconcile_deletions(session, user, present, min_date, max_date)

            for play, previous_key in touched:
                if previous_key is None:
                    await self.resolver.resolve(session, play)
                else:
                    await self.resolver.reresolve(session, play, previous_key)

        processed = {play.bgg_play_id for play, _ in touched}
        log_success(
            f"✅ Play sync for {user.bgg_username}: {len(processed)} upserted, {removed} removed, "
            f"{len(elements) - len(records)} skipped"
        )
        return processed

    # ------------------
    # internals
    # ------------------

    @staticmethod
    def _usernames(records: Iterable[BGGPlayData]) -> Set[str]:
        return {p.username.casefold() for record in records for p in record.players if p.username}

    async def _local_users(self, session: AsyncSession, usernames: Set[str]) -> Dict[str, int]:
        if not usernames:
            return {}
        rows = await session.execute(
            select(User.id, User.bgg_username).where(func.lower(User.bgg_username).in_(usernames))
        )
        return {name.casefold(): user_id for user_id, name in rows.all()}

    async def _games_by_bgg_id(self, session: AsyncSession, bgg_ids: Set[str]) -> Dict[str, BoardGame]:
        if not bgg_ids:
            return {}
        res = await session.execute(select(BoardGame).where(BoardGame.bgg_id.in_(bgg_ids)))
        return {game.bgg_id: game for game in res.scalars().all()}

    async def _ensure_games(self, session: AsyncSession, bgg_ids: Set[str]) -> Dict[str, BoardGame]:
        games = await self._games_by_bgg_id(session, bgg_ids)
        missing = sorted(bgg_ids - set(games))
        if not missing:
            return games

        log_info(f"🎲 Play sync: fetching {len(missing)} unknown game(s) first")
        try:
            await self.catalog.sync_by_bgg_ids(missing)
        except BGGError as e:
            log_warning(f"Catalog sync for play import partially failed: {e}")

        res = await session.execute(
            select(BoardGame)
            .where(BoardGame.bgg_id.in_(missing), BoardGame.bgg_sync_status == SyncStatus.SYNCED)
            .execution_options(populate_existing=True)
        )
        games.update({game.bgg_id: game for game in res.scalars().all()})
        return games

    async def _upsert_play(
        self,
        session: AsyncSession,
        user: User,
        game: BoardGame,
        record: BGGPlayData,
        local_users: Dict[str, int],
    ) -> Tuple[BoardGamePlay, Optional[GroupingKey]]:
        """Returns the play and, for an existing play whose graph position may have moved, its old key."""
        res = await session.execute(select(BoardGamePlay).where(BoardGamePlay.bgg_play_id == record.bgg_play_id))
        play = res.scalar_one_or_none()

        fields = {
            "board_game_id": game.id,
            "played_at": record.played_at,
            "location": record.location,
            "comment": record.comment,
            "game_length_minutes": record.game_length_minutes,
        }
        players = [map_player(p, local_users) for p in record.players]
        previous_key: Optional[GroupingKey] = None

        if play is None:
            play = BoardGamePlay(
                **fields,
                group_id=user.default_group_id,
                created_by_user_id=user.id,
                source=PlaySource.EXTERNAL,
                bgg_play_id=record.bgg_play_id,
                participants=[
                    BoardGamePlayPlayer.for_identity(
                        p.identity,
                        score=p.score,
                        is_winner=p.is_winner,
                        is_new_player=p.is_new_player,
                        position=p.position,
                    )
                    for p in players
                ],
            )
            session.add(play)
        else:
            old_key = play.dedup_key
            apply_model_fields(play, fields)
            participants_changed = [p.snapshot() for p in play.participants] != [_snapshot(p) for p in players]
            if participants_changed:
                play.participants = [
                    BoardGamePlayPlayer.for_identity(
                        p.identity,
                        score=p.score,
                        is_winner=p.is_winner,
                        is_new_player=p.is_new_player,
                        position=p.position,
                    )
                    for p in players
                ]
            if participants_changed or play.dedup_key != old_key:
                previous_key = old_key

        play.bgg_synced_at = utcnow()
        play.bgg_sync_status = SyncStatus.SYNCED
        play.bgg_sync_error = None
        await session.flush()
        return play, previous_key

    async def _reconcile_deletions(
        self,
        session: AsyncSession,
        user: User,
        present: Set[str],
        min_date: date,
        max_date: date,
    ) -> int:
        """Imported plays in range that BGG no longer lists are deleted through the resolver."""
        res = await session.execute(
            select(BoardGamePlay).where(
                BoardGamePlay.created_by_user_id == user.id,
                BoardGamePlay.source == PlaySource.EXTERNAL,
                BoardGamePlay.bgg_play_id.isnot(None),
                BoardGamePlay.played_at >= min_date,
                BoardGamePlay.played_at <= max_date,
                BoardGamePlay.bgg_play_id.notin_(present),
            )
        )
        stale = list(res.scalars().all())
        for play in stale:
            log_info(f"🗑️ Play {play.bgg_play_id} no longer on BGG, removing local play #{play.id}")
            await self.resolver.remove(session, play)
        return len(stale)

    async def _mark_fetch_failed(
        self,
        session: AsyncSession,
        user: User,
        min_date: date,
        max_date: date,
        error: BaseException,
    ) -> None:
        res = await session.execute(
            select(BoardGamePlay).where(
                BoardGamePlay.created_by_user_id == user.id,
                BoardGamePlay.source == PlaySource.EXTERNAL,
                BoardGamePlay.played_at >= min_date,
                BoardGamePlay.played_at <= max_date,
                BoardGamePlay.bgg_sync_status.is_(None) | (BoardGamePlay.bgg_sync_status == SyncStatus.PENDING),
            )
        )
        message = truncate_error(error)
        for play in res.scalars().all():
            play.bgg_sync_status = SyncStatus.FAILED
            play.bgg_sync_error = message
