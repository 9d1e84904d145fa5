from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from playsync.models.board_game import BoardGame
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay, BoardGamePlayPlayer
from playsync.models.user import User
from playsync.schemas.identity import ExternalUsername, ParticipantIdentity, UserIdentity, identity_key
from playsync.schemas.plays import (
    MAX_PLAYERS_PER_PLAY,
    BGGCredential,
    PlayCreate,
    PlayerCreate,
    PlayStats,
    PlayUpdate,
    SyncStatusRead,
)
from playsync.services.bgg.credentials import CredentialCipher
from playsync.services.bgg.errors import PlayValidationError
from playsync.services.dedup import DeduplicationResolver
from playsync.tasks.jobs import Job, SubmitPlayJob
from playsync.utils.logging import log_info

Dispatch = Callable[[Job], Awaitable[object]]


class PlayService:
    """Create/update/delete plays and read them back; every graph change goes through the resolver."""

    def __init__(
        self,
        session: AsyncSession,
        resolver: Optional[DeduplicationResolver] = None,
        dispatch: Optional[Dispatch] = None,
        cipher: Optional[CredentialCipher] = None,
    ) -> None:
        self.session = session
        self.resolver = resolver or DeduplicationResolver()
        self.dispatch = dispatch
        self.cipher = cipher if cipher is not None else CredentialCipher.from_settings()

    # ------------------
    # validation helpers
    # ------------------

    async def _base_game(self, board_game_id: int) -> BoardGame:
        game = await self.session.get(BoardGame, board_game_id)
        if game is None:
            raise PlayValidationError(f"board game #{board_game_id} does not exist")
        if game.is_expansion:
            raise PlayValidationError("board game must not be an expansion, use the base game instead")
        return game

    async def _expansions(self, expansion_ids: Sequence[int]) -> List[BoardGame]:
        ids = list(dict.fromkeys(expansion_ids))
        if not ids:
            return []
        res = await self.session.execute(select(BoardGame).where(BoardGame.id.in_(ids)))
        found = {game.id: game for game in res.scalars().all()}
        missing = [i for i in ids if i not in found]
        if missing:
            raise PlayValidationError(f"expansions do not exist: {missing}")
        not_expansions = [i for i in ids if not found[i].is_expansion]
        if not_expansions:
            raise PlayValidationError(f"not expansions: {not_expansions}")
        return [found[i] for i in ids]

    @staticmethod
    def _check_player_count(players: Sequence[PlayerCreate]) -> None:
        if not 1 <= len(players) <= MAX_PLAYERS_PER_PLAY:
            raise PlayValidationError(f"a play needs between 1 and {MAX_PLAYERS_PER_PLAY} players")

    async def _is_first_play(
        self, board_game_id: int, identity: ParticipantIdentity, exclude_play_id: Optional[int] = None
    ) -> bool:
        """True when no leading play of this game already has this participant."""
        if isinstance(identity, UserIdentity):
            clause = BoardGamePlayPlayer.user_id == identity.user_id
        elif isinstance(identity, ExternalUsername):
            clause = func.lower(BoardGamePlayPlayer.bgg_username) == identity.username.lower()
        else:
            clause = func.lower(BoardGamePlayPlayer.guest_name) == identity.name.lower()

        stmt = (
            select(func.count(BoardGamePlayPlayer.id))
            .join(BoardGamePlay, BoardGamePlay.id == BoardGamePlayPlayer.board_game_play_id)
            .where(BoardGamePlay.board_game_id == board_game_id, BoardGamePlay.is_excluded.is_(False), clause)
        )
        if exclude_play_id is not None:
            stmt = stmt.where(BoardGamePlay.id != exclude_play_id)
        return (await self.session.execute(stmt)).scalar_one() == 0

    async def _build_participants(
        self, board_game_id: int, players: Sequence[PlayerCreate], exclude_play_id: Optional[int] = None
    ) -> List[BoardGamePlayPlayer]:
        participants = []
        for player in players:
            participants.append(
                BoardGamePlayPlayer.for_identity(
                    player.identity,
                    score=player.score,
                    is_winner=player.is_winner,
                    position=player.position,
                    is_new_player=await self._is_first_play(board_game_id, player.identity, exclude_play_id),
                )
            )
        return participants

    async def _get_play(self, play_id: int) -> BoardGamePlay:
        play = await self.session.get(BoardGamePlay, play_id)
        if play is None:
            raise LookupError(f"play #{play_id} not found")
        return play

    # ------------------
    # commands
    # ------------------

    async def create_play(self, creator_id: int, data: PlayCreate) -> BoardGamePlay:
        creator = await self.session.get(User, creator_id)
        if creator is None:
            raise PlayValidationError(f"user #{creator_id} does not exist")
        game = await self._base_game(data.board_game_id)
        expansions = await self._expansions(data.expansion_ids)
        self._check_player_count(data.players)

        play = BoardGamePlay(
            board_game_id=game.id,
            group_id=None if data.personal else (data.group_id or creator.default_group_id),
            created_by_user_id=creator.id,
            played_at=data.played_at,
            location=data.location or "Unknown",
            comment=data.comment,
            game_length_minutes=data.game_length_minutes,
            expansions=expansions,
            participants=await self._build_participants(game.id, data.players),
        )

        one_time_credential: Optional[BGGCredential] = None
        if data.sync_to_bgg:
            play.request_outbound_sync = True
            play.submit_status = SyncStatus.PENDING
            if data.bgg_credential is not None:
                if self.cipher is not None:
                    play.outbound_bgg_username = data.bgg_credential.username
                    play.outbound_bgg_password_encrypted = self.cipher.encrypt(data.bgg_credential.password)
                else:
                    one_time_credential = data.bgg_credential

        self.session.add(play)
        await self.resolver.resolve(self.session, play)
        log_info(f"🎲 Play #{play.id} created ({'excluded' if play.is_excluded else 'leading'})")

        if play.request_outbound_sync:
            await self._dispatch(SubmitPlayJob(play.id, one_time_credential))
        return play

    async def update_play(self, play_id: int, data: PlayUpdate) -> BoardGamePlay:
        play = await self._get_play(play_id)
        previous_key = play.dedup_key
        previous_identities = sorted(identity_key(p.identity) for p in play.participants)

        changes = data.model_dump(exclude_unset=True, exclude={"players", "expansion_ids"})
        for field_name, value in changes.items():
            if value is None and field_name in ("played_at", "location"):
                continue
            setattr(play, field_name, value)

        if data.expansion_ids is not None:
            play.expansions = await self._expansions(data.expansion_ids)

        if data.players is not None:
            self._check_player_count(data.players)
            play.participants = await self._build_participants(play.board_game_id, data.players, play.id)

        identities_changed = sorted(identity_key(p.identity) for p in play.participants) != previous_identities
        if identities_changed or play.dedup_key != previous_key:
            await self.resolver.reresolve(self.session, play, previous_key)
        else:
            await self.session.commit()

        if play.request_outbound_sync:
            play.submit_status = SyncStatus.PENDING
            play.outbound_revision = (play.outbound_revision or 0) + 1
            await self.session.commit()
            await self._dispatch(SubmitPlayJob(play.id))
        return play

    async def delete_play(self, play_id: int) -> None:
        play = await self._get_play(play_id)
        await self.resolver.remove(self.session, play)
        log_info(f"🗑️ Play #{play_id} deleted")

    async def request_submission(self, play_id: int, credential: Optional[BGGCredential] = None) -> BoardGamePlay:
        """Manual (re-)trigger of the outbound submission; a new job with a fresh attempt budget."""
        play = await self._get_play(play_id)
        play.request_outbound_sync = True
        play.submit_status = SyncStatus.PENDING
        play.submit_error = None
        play.outbound_revision = (play.outbound_revision or 0) + 1
        await self.session.commit()
        await self._dispatch(SubmitPlayJob(play.id, credential))
        return play

    async def _dispatch(self, job: Job) -> None:
        if self.dispatch is None:
            log_info(f"No job dispatcher configured, {job!r} left for the pending-submission sweep")
            return
        await self.dispatch(job)

    # ------------------
    # queries
    # ------------------

    async def list_plays(
        self,
        user_id: Optional[int] = None,
        group_id: Optional[int] = None,
        include_excluded: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> List[BoardGamePlay]:
        stmt = select(BoardGamePlay)
        if not include_excluded:
            stmt = stmt.where(BoardGamePlay.is_excluded.is_(False))
        if user_id is not None:
            stmt = stmt.where(
                or_(
                    BoardGamePlay.created_by_user_id == user_id,
                    BoardGamePlay.participants.any(BoardGamePlayPlayer.user_id == user_id),
                )
            )
        if group_id is not None:
            stmt = stmt.where(BoardGamePlay.group_id == group_id)
        stmt = stmt.order_by(BoardGamePlay.played_at.desc(), BoardGamePlay.id.desc()).limit(limit).offset(offset)
        return list((await self.session.execute(stmt)).scalars().all())

    @staticmethod
    def _stats(rows) -> PlayStats:
        plays: Dict[int, int] = {}
        wins = 0
        for play_id, board_game_id, is_winner in rows:
            plays[play_id] = board_game_id
            wins += 1 if is_winner else 0
        by_game: Dict[int, int] = {}
        for board_game_id in plays.values():
            by_game[board_game_id] = by_game.get(board_game_id, 0) + 1
        return PlayStats(plays=len(plays), wins=wins, games=len(by_game), by_game=by_game)

    async def get_user_stats(self, user_id: int) -> PlayStats:
        """Plays played and won by a user, leading plays only."""
        rows = await self.session.execute(
            select(BoardGamePlay.id, BoardGamePlay.board_game_id, BoardGamePlayPlayer.is_winner)
            .join(BoardGamePlayPlayer, BoardGamePlayPlayer.board_game_play_id == BoardGamePlay.id)
            .where(BoardGamePlayPlayer.user_id == user_id, BoardGamePlay.is_excluded.is_(False))
        )
        return self._stats(rows.all())

    async def get_group_stats(self, group_id: int) -> PlayStats:
        """Plays logged in a group (leading only); wins counts winning seats."""
        rows = await self.session.execute(
            select(BoardGamePlay.id, BoardGamePlay.board_game_id, BoardGamePlayPlayer.is_winner)
            .outerjoin(BoardGamePlayPlayer, BoardGamePlayPlayer.board_game_play_id == BoardGamePlay.id)
            .where(BoardGamePlay.group_id == group_id, BoardGamePlay.is_excluded.is_(False))
        )
        return self._stats(rows.all())

    async def get_sync_status(self, play_id: int) -> SyncStatusRead:
        play = await self._get_play(play_id)
        return SyncStatusRead(
            play_id=play.id,
            inbound_status=play.bgg_sync_status,
            inbound_synced_at=play.bgg_synced_at,
            inbound_error=play.bgg_sync_error,
            outbound_requested=play.request_outbound_sync,
            outbound_status=play.submit_status,
            outbound_submitted_at=play.submitted_at,
            outbound_error=play.submit_error,
            bgg_play_id=play.bgg_play_id,
        )
