"""
Tests for PlayOutboundSubmissionPipeline and credential resolution.
"""
from datetime import date
from types import SimpleNamespace

import httpx
import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from playsync.config import settings
from playsync.models.enums import SyncStatus
from playsync.models.play import BoardGamePlay
from playsync.models.user import User
from playsync.schemas.plays import BGGCredential, PlayUpdate
from playsync.services.bgg.auth_session import BGGAuthSessionManager
from playsync.services.bgg.credentials import CredentialCipher, resolve_credentials
from playsync.services.bgg.errors import (
    AuthenticationFailed,
    MissingCredentials,
    MissingExternalMapping,
    PermanentClientError,
    RetryExhausted,
    StalePlaySubmission,
)
from playsync.services.bgg.session_store import InMemorySessionStore
from playsync.services.play_submission import PlayOutboundSubmissionPipeline
from playsync.services.plays import PlayService
from playsync.tasks.jobs import SubmitPlayJob, WorkerPool, build_context

from factories import bgg_seat, guest_seat, play_create, user_seat

PLAYED = date(2025, 1, 10)


@pytest.fixture
def cipher():
    return CredentialCipher(Fernet.generate_key().decode())


@pytest_asyncio.fixture
async def world(factory, cipher):
    group = await factory.group()
    alice = await factory.user(
        "Alice",
        bgg_username="alice",
        group=group,
        sync_plays_to_bgg=True,
        bgg_password_encrypted=cipher.encrypt("alice-pw"),
    )
    bob = await factory.user("Bob", group=group)
    game = await factory.game("Catan", bgg_id="13")
    seafarers = await factory.game("Seafarers", bgg_id="926", is_expansion=True)
    return SimpleNamespace(group=group, alice=alice, bob=bob, game=game, seafarers=seafarers)


@pytest.fixture
def pipeline(bgg_client, cipher, session_factory):
    sessions = BGGAuthSessionManager(bgg_client, store=InMemorySessionStore())
    return PlayOutboundSubmissionPipeline(bgg_client, sessions=sessions, cipher=cipher, session_factory=session_factory)


@pytest_asyncio.fixture
async def play(session, resolver, cipher, world):
    service = PlayService(session, resolver=resolver, cipher=cipher)
    return await service.create_play(
        world.alice.id,
        play_create(
            world.game,
            PLAYED,
            [
                user_seat(world.alice, score=12.5, is_winner=True, position=1),
                user_seat(world.bob, score=9),
                guest_seat("Carol"),
                bgg_seat("zed"),
            ],
            group=world.group,
            comment="Great game",
            location="Home",
            game_length_minutes=90,
            expansion_ids=[world.seafarers.id],
            sync_to_bgg=True,
        ),
    )


@pytest.mark.asyncio
async def test_submission_stores_playid(pipeline, play, fake_bgg, reload):
    playid = await pipeline.submit(play.id)

    assert playid == "90001"
    stored = await reload(BoardGamePlay, play.id)
    assert stored.bgg_play_id == "90001"
    assert stored.submit_status == SyncStatus.SYNCED
    assert stored.submitted_at is not None
    assert stored.submit_error is None
    assert fake_bgg.logins == [{"username": "alice", "password": "alice-pw"}]


@pytest.mark.asyncio
async def test_payload_shape(pipeline, play, fake_bgg):
    await pipeline.submit(play.id)

    form = fake_bgg.submissions[0]
    assert form["action"] == "save" and form["ajax"] == "1"
    assert form["objecttype"] == "thing"
    assert form["objectid"] == "13"
    assert form["playdate"] == "2025-01-10"
    assert form["quantity"] == "1"
    assert form["length"] == "90"
    assert form["location"] == "Home"
    assert form["comments"] == "Great game\n\nExpansions: Seafarers"
    assert "playid" not in form

    assert form["players[0][username]"] == "alice"
    assert form["players[0][score]"] == "12.5"
    assert form["players[0][win]"] == "1"
    assert form["players[0][position]"] == "1"
    # local user without a BGG account goes by name
    assert (form["players[1][username]"], form["players[1][name]"]) == ("", "Bob")
    assert form["players[1][score]"] == "9"
    assert form["players[2][name]"] == "Carol"
    assert form["players[3][username]"] == "zed"


@pytest.mark.asyncio
async def test_resubmission_updates_the_same_bgg_play(pipeline, play, fake_bgg):
    await pipeline.submit(play.id)
    await pipeline.submit(play.id)

    assert fake_bgg.submissions[1]["playid"] == "90001"
    # cached session reused
    assert len(fake_bgg.logins) == 1


@pytest.mark.asyncio
async def test_nothing_to_do(pipeline, factory, world, fake_bgg):
    plain = await factory.raw_play(world.game, world.alice, PLAYED, [])

    assert await pipeline.submit(plain.id) is None
    assert await pipeline.submit(424242) is None
    assert fake_bgg.requests == []


@pytest.mark.asyncio
async def test_missing_bgg_id_is_terminal(pipeline, factory, world, reload, fake_bgg):
    local_game = await factory.game("Homebrew")
    play = await factory.raw_play(local_game, world.alice, PLAYED, [], request_outbound_sync=True)

    with pytest.raises(MissingExternalMapping):
        await pipeline.submit(play.id)

    play = await reload(BoardGamePlay, play.id)
    assert play.submit_status == SyncStatus.FAILED
    assert play.submit_error.startswith("submission: MissingExternalMapping")
    assert fake_bgg.requests == []


@pytest.mark.asyncio
async def test_one_time_credential_wins(pipeline, play, fake_bgg):
    await pipeline.submit(play.id, BGGCredential(username="guest-account", password="pw"))
    assert fake_bgg.logins == [{"username": "guest-account", "password": "pw"}]


@pytest.mark.asyncio
async def test_expired_session_logs_in_again_once(pipeline, play, fake_bgg):
    rejected = []

    def geekplay(request):
        if not rejected:
            rejected.append(request)
            return httpx.Response(401)
        return fake_bgg._submit(request)

    fake_bgg.overrides["/geekplay.php"] = geekplay

    assert await pipeline.submit(play.id) == "90001"
    assert len(fake_bgg.logins) == 2


@pytest.mark.asyncio
async def test_playid_linked_to_another_play_is_rejected(pipeline, play, factory, world, reload):
    await factory.raw_play(world.game, world.bob, date(2024, 5, 1), [], bgg_play_id="90001")

    with pytest.raises(PermanentClientError):
        await pipeline.submit(play.id)

    play = await reload(BoardGamePlay, play.id)
    assert play.bgg_play_id is None
    assert play.submit_error.startswith("submission:")


@pytest.mark.asyncio
async def test_network_failures_are_classified(pipeline, play, fake_bgg, reload):
    fake_bgg.overrides["/geekplay.php"] = lambda request: httpx.Response(503)

    with pytest.raises(RetryExhausted):
        await pipeline.submit(play.id)

    assert (await reload(BoardGamePlay, play.id)).submit_error.startswith("network: RetryExhausted")


@pytest.mark.asyncio
async def test_auth_always_failing_gives_up_after_five_attempts(
    pipeline, play, fake_bgg, bgg_client, session_factory, resolver, clock, reload
):
    fake_bgg.valid_passwords = {"alice": "something-else"}
    context = build_context(bgg_client, session_factory, resolver)
    context.submission = pipeline
    pool = WorkerPool(context, sleep=clock.sleep)
    job = SubmitPlayJob(play.id)

    await pool.run_until_complete(job)

    assert job.state == "failed"
    assert job.attempts == 5
    assert isinstance(job.last_error, AuthenticationFailed)
    assert not job.should_retry(job.last_error)
    assert pool.failed_jobs == [job]
    assert len(fake_bgg.logins) == 5
    assert clock.sleeps == [3.0] * 4
    assert fake_bgg.calls("/geekplay.php") == []

    stored = await reload(BoardGamePlay, play.id)
    assert stored.submit_status == SyncStatus.FAILED
    assert stored.submit_error.startswith("authentication: AuthenticationFailed")


@pytest.mark.asyncio
async def test_missing_mapping_is_not_retried_by_the_job(
    pipeline, factory, world, bgg_client, session_factory, resolver, clock
):
    local_game = await factory.game("Homebrew")
    play = await factory.raw_play(local_game, world.alice, PLAYED, [], request_outbound_sync=True)
    context = build_context(bgg_client, session_factory, resolver)
    context.submission = pipeline
    job = SubmitPlayJob(play.id)

    await WorkerPool(context, sleep=clock.sleep).run_until_complete(job)

    assert job.attempts == 1
    assert job.state == "failed"
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_edit_during_submission_is_resubmitted(
    pipeline, play, fake_bgg, session, bgg_client, session_factory, resolver, clock, reload
):
    async def edit_then_save(request):
        if len(fake_bgg.submissions) == 0:
            await PlayService(session, resolver=resolver).update_play(play.id, PlayUpdate(location="Cafe"))
        return fake_bgg._submit(request)

    fake_bgg.overrides["/geekplay.php"] = edit_then_save
    context = build_context(bgg_client, session_factory, resolver)
    context.submission = pipeline
    job = SubmitPlayJob(play.id)

    await WorkerPool(context, sleep=clock.sleep).run_until_complete(job)

    assert job.state == "succeeded"
    assert job.attempts == 2
    assert isinstance(job.last_error, StalePlaySubmission)
    assert [form["location"] for form in fake_bgg.submissions] == ["Home", "Cafe"]
    assert fake_bgg.submissions[1]["playid"] == "90001"
    stored = await reload(BoardGamePlay, play.id)
    assert stored.bgg_play_id == "90001"
    assert stored.submit_status == SyncStatus.SYNCED
    assert stored.location == "Cafe"


# ------------------
# credential resolution
# ------------------


def _stored_play(cipher, user_flag=True, play_cred=True, user_cred=True):
    play = BoardGamePlay(id=1)
    if play_cred:
        play.outbound_bgg_username = "play-account"
        play.outbound_bgg_password_encrypted = cipher.encrypt("play-pw")
    play.creator = User(
        id=7,
        name="Alice",
        bgg_username="alice" if user_cred else None,
        bgg_password_encrypted=cipher.encrypt("alice-pw") if user_cred else None,
        sync_plays_to_bgg=user_flag,
    )
    return play


def test_explicit_credential_comes_first(cipher):
    resolved = resolve_credentials(_stored_play(cipher), BGGCredential(username="x", password="y"), cipher)
    assert (resolved.username, resolved.source) == ("x", "explicit")


def test_play_credential_before_user_by_default(cipher):
    resolved = resolve_credentials(_stored_play(cipher), None, cipher)
    assert (resolved.username, resolved.password, resolved.source) == ("play-account", "play-pw", "play")


def test_user_precedence_can_be_configured(cipher):
    resolved = resolve_credentials(_stored_play(cipher), None, cipher, precedence="user")
    assert (resolved.username, resolved.password, resolved.source) == ("alice", "alice-pw", "user")


def test_user_credential_requires_opt_in(cipher):
    resolved = resolve_credentials(_stored_play(cipher, user_flag=False), None, cipher, precedence="user")
    assert resolved.source == "play"


def test_generic_credential_is_the_last_resort(cipher, monkeypatch):
    play = _stored_play(cipher, play_cred=False, user_cred=False)
    with pytest.raises(MissingCredentials):
        resolve_credentials(play, None, cipher)

    monkeypatch.setattr(settings, "BGG_GENERIC_USERNAME", "service")
    monkeypatch.setattr(settings, "BGG_GENERIC_PASSWORD", "service-pw")
    resolved = resolve_credentials(play, None, cipher)
    assert (resolved.username, resolved.source) == ("service", "generic")


def test_stored_credentials_need_the_key(cipher):
    play = _stored_play(cipher)
    with pytest.raises(MissingCredentials):
        resolve_credentials(play, None, None)
    with pytest.raises(MissingCredentials):
        resolve_credentials(play, None, CredentialCipher(Fernet.generate_key().decode()))


def test_resolved_credential_repr_hides_password(cipher):
    resolved = resolve_credentials(_stored_play(cipher), None, cipher)
    assert "play-pw" not in repr(resolved)
