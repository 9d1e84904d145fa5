"""
Tests for BGGApiClient: retry state machine, batching, paging, login and play submission.
"""
from datetime import date

import httpx
import pytest

from playsync.services.bgg.errors import (
    AuthenticationFailed,
    MalformedResponse,
    PermanentClientError,
    RateLimited,
    RetryExhausted,
    TransientNetworkError,
)

from bgg_fakes import play_xml, thing_xml, things_xml


def sequence(*responses):
    """Handler answering with the given responses in order (the last one repeats)."""
    calls = []

    def handler(request):
        calls.append(request)
        response = responses[min(len(calls), len(responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    handler.calls = calls
    return handler


OK_THING = httpx.Response(200, text=things_xml(thing_xml("13", "Catan")))


@pytest.mark.asyncio
async def test_202_is_retried_after_fixed_delay(make_client, clock):
    handler = sequence(httpx.Response(202, text="<message>queued</message>"), OK_THING)
    client = make_client(handler)

    items = await client.fetch_games(["13"])

    assert [item.attrib["id"] for item in items] == ["13"]
    assert len(handler.calls) == 2
    assert clock.sleeps == [3.0]


@pytest.mark.asyncio
async def test_5xx_uses_exponential_backoff(make_client, clock):
    handler = sequence(httpx.Response(500), httpx.Response(503), OK_THING)
    client = make_client(handler)

    await client.fetch_games(["13"])

    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_transport_errors_are_transient(make_client, clock):
    handler = sequence(httpx.ConnectError("connection refused"), OK_THING)
    client = make_client(handler)

    items = await client.fetch_games(["13"])

    assert len(items) == 1
    assert clock.sleeps == [2.0]


@pytest.mark.asyncio
async def test_429_honours_retry_after(make_client, clock):
    handler = sequence(httpx.Response(429, headers={"Retry-After": "7"}), OK_THING)
    client = make_client(handler)

    await client.fetch_games(["13"])

    # the gate was deferred by the same amount, so no second wait there
    assert clock.sleeps == [7.0]


@pytest.mark.asyncio
async def test_429_without_retry_after_backs_off(make_client, clock):
    handler = sequence(httpx.Response(429), OK_THING)
    client = make_client(handler)

    await client.fetch_games(["13"])

    assert clock.sleeps == [2.0]


@pytest.mark.asyncio
async def test_retry_exhausted_after_max_attempts(make_client, clock):
    handler = sequence(httpx.Response(500))
    client = make_client(handler)

    with pytest.raises(RetryExhausted) as exc_info:
        await client.fetch_games(["13"])

    assert exc_info.value.attempts == 5
    assert isinstance(exc_info.value.__cause__, TransientNetworkError)
    assert len(handler.calls) == 5
    assert clock.sleeps == [2.0, 4.0, 8.0, 16.0]


@pytest.mark.asyncio
async def test_retry_exhausted_on_429_chains_rate_limited(make_client):
    client = make_client(sequence(httpx.Response(429, headers={"Retry-After": "1"})), max_attempts=2)

    with pytest.raises(RetryExhausted) as exc_info:
        await client.fetch_games(["13"])
    assert isinstance(exc_info.value.__cause__, RateLimited)


def test_backoff_is_capped(make_client):
    client = make_client(sequence(OK_THING))
    assert client.backoff_seconds(1) == 2
    assert client.backoff_seconds(10) == 60.0


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 403])
async def test_auth_errors_are_not_retried(make_client, clock, status):
    handler = sequence(httpx.Response(status))
    client = make_client(handler)

    with pytest.raises(AuthenticationFailed):
        await client.fetch_plays("alice", date(2025, 1, 1), date(2025, 1, 31))
    assert len(handler.calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_other_4xx_is_permanent(make_client):
    handler = sequence(httpx.Response(404, text="nope"))
    client = make_client(handler)

    with pytest.raises(PermanentClientError) as exc_info:
        await client.fetch_games(["13"])
    assert exc_info.value.status_code == 404
    assert len(handler.calls) == 1


@pytest.mark.asyncio
async def test_unparsable_xml_is_malformed(make_client):
    handler = sequence(httpx.Response(200, text="<items><item id='1'>"))
    client = make_client(handler)

    with pytest.raises(MalformedResponse):
        await client.fetch_games(["1"])
    assert len(handler.calls) == 1


@pytest.mark.asyncio
async def test_error_document_is_permanent(make_client):
    body = "<errors><error><message>Invalid username specified</message></error></errors>"
    client = make_client(sequence(httpx.Response(200, text=body)))

    with pytest.raises(PermanentClientError, match="Invalid username"):
        await client.fetch_plays("nobody", date(2025, 1, 1), date(2025, 1, 31))


@pytest.mark.asyncio
async def test_fetch_games_chunks_ids(make_client, fake_bgg):
    ids = [str(i) for i in range(1, 46)]
    for bgg_id in ids:
        fake_bgg.games[bgg_id] = thing_xml(bgg_id, f"Game {bgg_id}")
    client = make_client(fake_bgg.handler)

    items = await client.fetch_games(ids)

    assert len(items) == 45
    requested = [request.url.params["id"].split(",") for request in fake_bgg.calls("/thing")]
    assert [len(chunk) for chunk in requested] == [20, 20, 5]
    assert requested[0][0] == "1" and requested[-1][-1] == "45"
    assert fake_bgg.calls("/thing")[0].url.params["stats"] == "1"


@pytest.mark.asyncio
async def test_each_request_passes_the_gate(make_client, fake_bgg, clock):
    for bgg_id in map(str, range(1, 46)):
        fake_bgg.games[bgg_id] = thing_xml(bgg_id)
    client = make_client(fake_bgg.handler, min_interval=2.0)

    await client.fetch_games([str(i) for i in range(1, 46)])

    assert clock.sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_fetch_plays_reads_every_page(make_client, fake_bgg):
    fake_bgg.plays["alice"] = [play_xml(i, "13", "2025-01-05") for i in range(1, 104)]
    client = make_client(fake_bgg.handler)

    plays = await client.fetch_plays("alice", date(2025, 1, 1), date(2025, 1, 31))

    assert len(plays) == 103
    calls = fake_bgg.calls("/plays")
    assert [request.url.params["page"] for request in calls] == ["1", "2"]
    assert calls[0].url.params["mindate"] == "2025-01-01"
    assert calls[0].url.params["maxdate"] == "2025-01-31"


@pytest.mark.asyncio
async def test_login_returns_session_cookies(make_client, fake_bgg):
    client = make_client(fake_bgg.handler)

    cookies = await client.login("alice", "secret")

    assert cookies["SessionID"] == "session-1"
    assert cookies["bggusername"] == "alice"
    assert fake_bgg.logins == [{"username": "alice", "password": "secret"}]


@pytest.mark.asyncio
async def test_login_without_session_cookie_fails(make_client):
    client = make_client(sequence(httpx.Response(204)))

    with pytest.raises(AuthenticationFailed, match="SessionID"):
        await client.login("alice", "secret")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 401])
async def test_login_rejected(make_client, status):
    client = make_client(sequence(httpx.Response(status, text="bad credentials")))

    with pytest.raises(AuthenticationFailed):
        await client.login("alice", "wrong")


@pytest.mark.asyncio
async def test_submit_play_sends_form_with_cookies(make_client, fake_bgg):
    client = make_client(fake_bgg.handler)

    playid = await client.submit_play({"SessionID": "abc", "bggusername": "alice"}, {"objectid": "13", "quantity": "1"})

    assert playid == "90001"
    request = fake_bgg.calls("/geekplay.php")[0]
    assert request.headers["cookie"] == "SessionID=abc; bggusername=alice"
    assert fake_bgg.submissions == [{"objectid": "13", "quantity": "1"}]


@pytest.mark.asyncio
async def test_submit_play_error_field_is_permanent(make_client):
    client = make_client(sequence(httpx.Response(200, json={"error": "You must login to save plays"})))

    with pytest.raises(PermanentClientError, match="must login"):
        await client.submit_play({"SessionID": "abc"}, {})


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(200, text="<html>oops</html>"), httpx.Response(200, json={"numplays": 1})],
)
async def test_submit_play_without_playid_is_malformed(make_client, response):
    client = make_client(sequence(response))

    with pytest.raises(MalformedResponse):
        await client.submit_play({"SessionID": "abc"}, {})
