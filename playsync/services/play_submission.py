from typing import Dict, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from playsync.database import AsyncSessionLocal
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay, BoardGamePlayPlayer
from playsync.schemas.identity import ExternalUsername, UserIdentity
from playsync.schemas.plays import BGGCredential
from playsync.services.bgg.auth_session import BGGAuthSessionManager
from playsync.services.bgg.client import BGGApiClient
from playsync.services.bgg.credentials import CredentialCipher, ResolvedCredential, resolve_credentials
from playsync.services.bgg.errors import (
    AuthenticationFailed,
    BGGError,
    MissingExternalMapping,
    PermanentClientError,
    StalePlaySubmission,
    classify_submission_error,
)
from playsync.utils.dates import utcnow
from playsync.utils.logging import log_error, log_info, log_success


def _format_score(score: Optional[float]) -> str:
    return "" if score is None else f"{score:g}"


def _player_names(player: BoardGamePlayPlayer) -> tuple:
    """(username, name) as geekplay.php expects them."""
    identity = player.identity
    if isinstance(identity, UserIdentity):
        user = player.user
        if user is not None and user.bgg_username:
            return user.bgg_username, ""
        return "", user.name if user is not None else f"User {identity.user_id}"
    if isinstance(identity, ExternalUsername):
        return identity.username, ""
    return "", identity.name


def build_play_payload(play: BoardGamePlay, bgg_play_id: Optional[str] = None) -> Dict[str, str]:
    comments = play.comment or ""
    if play.expansions:
        expansions = "Expansions: " + ", ".join(expansion.name for expansion in play.expansions)
        comments = f"{comments}\n\n{expansions}" if comments else expansions

    payload = {
        "ajax": "1",
        "action": "save",
        "objecttype": "thing",
        "objectid": play.board_game.bgg_id or "",
        "playdate": play.played_at.isoformat(),
        "location": play.location or "",
        "quantity": "1",
        "length": str(play.game_length_minutes or ""),
        "comments": comments,
    }
    if bgg_play_id:
        payload["playid"] = bgg_play_id

    for index, player in enumerate(play.participants):
        username, name = _player_names(player)
        payload[f"players[{index}][username]"] = username
        payload[f"players[{index}][name]"] = name
        payload[f"players[{index}][score]"] = _format_score(player.score)
        payload[f"players[{index}][new]"] = "1" if player.is_new_player else "0"
        payload[f"players[{index}][win]"] = "1" if player.is_winner else "0"
        if player.position is not None:
            payload[f"players[{index}][position]"] = str(player.position)
    return payload


class PlayOutboundSubmissionPipeline:
    """Local play -> geekplay.php, under the best available BGG credential."""

    def __init__(
        self,
        client: BGGApiClient,
        sessions: Optional[BGGAuthSessionManager] = None,
        cipher: Optional[CredentialCipher] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ) -> None:
        self.client = client
        self.sessions = sessions or BGGAuthSessionManager(client)
        self.cipher = cipher if cipher is not None else CredentialCipher.from_settings()
        self.session_factory = session_factory

    async def submit(self, play_id: int, credential: Optional[BGGCredential] = None) -> Optional[str]:
        async with self.session_factory() as session:
            play = await session.get(BoardGamePlay, play_id)
            if play is None:
                log_info(f"Submission: play #{play_id} no longer exists, nothing to do")
                return None
            if not play.request_outbound_sync:
                log_info(f"Submission: play #{play_id} no longer requests BGG sync, nothing to do")
                return None

            try:
                if play.board_game is None or not play.board_game.bgg_id:
                    raise MissingExternalMapping(f"board game #{play.board_game_id} has no BGG id")

                revision = play.outbound_revision
                resolved = resolve_credentials(play, credential, self.cipher)
                log_info(f"📤 Submitting play #{play.id} to BGG as {resolved.username} ({resolved.source})")
                bgg_play_id = await self._submit_with_session(resolved, build_play_payload(play, play.bgg_play_id))

                res = await session.execute(
                    select(BoardGamePlay.id).where(
                        BoardGamePlay.bgg_play_id == bgg_play_id, BoardGamePlay.id != play.id
                    )
                )
                other = res.scalar_one_or_none()
                if other is not None:
                    raise PermanentClientError(f"BGG play {bgg_play_id} is already linked to play #{other}")
            except BGGError as e:
                play.submit_status = SyncStatus.FAILED
                play.submit_error = classify_submission_error(e)
                await session.commit()
                log_error(f"Submission of play #{play.id} failed: {play.submit_error}")
                raise

            res = await session.execute(
                update(BoardGamePlay)
                .where(BoardGamePlay.id == play.id, BoardGamePlay.outbound_revision == revision)
                .values(
                    bgg_play_id=bgg_play_id,
                    submit_status=SyncStatus.SYNCED,
                    submitted_at=utcnow(),
                    submit_error=None,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                # edited mid-flight: keep the BGG id so the retry updates the same play, stay PENDING
                await session.execute(
                    update(BoardGamePlay)
                    .where(BoardGamePlay.id == play.id)
                    .values(bgg_play_id=bgg_play_id)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                raise StalePlaySubmission(f"play #{play.id} changed while BGG play {bgg_play_id} was being saved")
            await session.commit()

        log_success(f"✅ Play #{play_id} stored on BGG as {bgg_play_id}")
        return bgg_play_id

    async def _submit_with_session(self, credential: ResolvedCredential, payload: Dict[str, str]) -> str:
        cookies = await self.sessions.ensure_session(credential.username, credential.password)
        try:
            return await self.client.submit_play(cookies, payload)
        except AuthenticationFailed:
            # cached session expired on BGG's side; log in again once
            await self.sessions.invalidate(credential.username)
            cookies = await self.sessions.ensure_session(credential.username, credential.password)
            return await self.client.submit_play(cookies, payload)
