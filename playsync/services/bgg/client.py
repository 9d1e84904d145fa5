import asyncio
import json
import logging
import random
import xml.etree.ElementTree as ET
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import httpx

from playsync.config import settings
from playsync.services.bgg.errors import (
    AuthenticationFailed,
    MalformedResponse,
    PermanentClientError,
    RateLimited,
    RetryExhausted,
    TransientNetworkError,
)
from playsync.services.bgg.rate_limiter import RateLimiter, get_rate_limiter

logger = logging.getLogger(__name__)

SESSION_COOKIE = "SessionID"


def _default_headers() -> Dict[str, str]:
    headers = {"User-Agent": settings.USER_AGENT}
    if settings.BGG_API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.BGG_API_TOKEN}"
    return headers


def _make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        headers=_default_headers(),
        follow_redirects=True,
        http2=True,
        timeout=httpx.Timeout(settings.BGG_HTTP_TIMEOUT_SECONDS),
    )


def _chunks(values: List[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        return None


def parse_xml(resp: httpx.Response) -> ET.Element:
    try:
        root = ET.fromstring(resp.text)
    except ET.ParseError as e:
        raise MalformedResponse(f"unparsable XML from {resp.request.url}: {e}") from e

    # BGG answers some bad requests with 200 + <errors><error><message>...</message></error></errors>
    if root.tag in ("errors", "error"):
        message = root.findtext(".//message") or (root.text or "").strip() or "unknown error"
        raise PermanentClientError(f"BGG rejected request: {message}", resp.status_code)
    return root


def parse_json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise MalformedResponse(f"non-JSON response from {resp.request.url}: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResponse(f"unexpected JSON payload from {resp.request.url}")
    return data


class BGGApiClient:
    """
    Rate-limited, retrying client for the BGG XML API, login and play submission.

    Retry state machine per call:
    - 202 (queued on BGG side): fixed delay, retry
    - 429: Retry-After if present, else exponential backoff, retry
    - 5xx / timeouts / transport errors: exponential backoff, retry
    - 401/403: AuthenticationFailed, no retry
    - other 4xx: PermanentClientError, no retry
    - unparsable body: MalformedResponse, no retry
    After `max_attempts` the call raises RetryExhausted chained to the last error.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        jitter: Callable[[float, float], float] = random.uniform,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._owns_http = http_client is None
        self._http = http_client or _make_client()
        self._rate_limiter = rate_limiter or get_rate_limiter()
        self._sleep = sleep
        self._jitter = jitter
        self.max_attempts = max_attempts or settings.BGG_MAX_RETRY_ATTEMPTS
        self.base_url = settings.BGG_API_BASE_URL.rstrip("/")

    async def __aenter__(self) -> "BGGApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def backoff_seconds(self, attempt: int) -> float:
        delay = 2 ** attempt + self._jitter(0, 3)
        return min(delay, settings.BGG_EXPONENTIAL_BACKOFF_MAX_SECONDS)

    async def _send(
        self,
        method: str,
        url: str,
        parse: Callable[[httpx.Response], Any],
        ok_statuses: tuple = (200,),
        **kwargs: Any,
    ) -> Any:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            await self._rate_limiter.acquire()

            try:
                resp = await self._http.request(method, url, **kwargs)
            except httpx.HTTPError as e:
                last_error = TransientNetworkError(f"{type(e).__name__}: {e}")
                delay = self.backoff_seconds(attempt)
            else:
                status = resp.status_code
                if status in ok_statuses:
                    return parse(resp)

                if status == 202:
                    last_error = TransientNetworkError("BGG queued the request (202)", status)
                    delay = settings.BGG_RETRY_AFTER_202_SECONDS
                elif status == 429:
                    retry_after = _retry_after(resp)
                    last_error = RateLimited("429 Too Many Requests", retry_after=retry_after)
                    delay = retry_after if retry_after is not None else self.backoff_seconds(attempt)
                    self._rate_limiter.defer(delay)
                elif status >= 500:
                    last_error = TransientNetworkError(f"HTTP {status} from BGG", status)
                    delay = self.backoff_seconds(attempt)
                elif status in (401, 403):
                    raise AuthenticationFailed(f"BGG refused credentials/token: HTTP {status} ({method} {url})")
                else:
                    body_preview = (resp.text or "")[:200]
                    raise PermanentClientError(f"HTTP {status} from BGG ({method} {url}): {body_preview}", status)

            if attempt < self.max_attempts:
                logger.warning(
                    "BGG %s %s failed (%s), retry in %.1fs (attempt %d/%d)",
                    method, url, last_error, delay, attempt, self.max_attempts,
                )
                await self._sleep(delay)

        raise RetryExhausted(
            f"BGG {method} {url} failed after {self.max_attempts} attempts: {last_error}",
            attempts=self.max_attempts,
        ) from last_error

    # ------------------
    # XML API
    # ------------------

    async def fetch_games(self, bgg_ids: List[str]) -> List[ET.Element]:
        """Raw <item> elements for the given ids, in chunks of BGG_MAX_IDS_PER_REQUEST."""
        items: List[ET.Element] = []
        for chunk in _chunks(list(bgg_ids), settings.BGG_MAX_IDS_PER_REQUEST):
            logger.info("Fetching %d game(s) from BGG: %s", len(chunk), ",".join(chunk))
            root = await self._send(
                "GET",
                f"{self.base_url}/thing",
                parse_xml,
                params={"id": ",".join(chunk), "stats": "1", "type": "boardgame,boardgameexpansion"},
            )
            items.extend(root.findall("item"))
        return items

    async def fetch_plays(self, username: str, min_date: date, max_date: date) -> List[ET.Element]:
        """All <play> elements logged by `username` in [min_date, max_date], every page."""
        plays: List[ET.Element] = []
        page = 1
        while True:
            root = await self._send(
                "GET",
                f"{self.base_url}/plays",
                parse_xml,
                params={
                    "username": username,
                    "mindate": min_date.isoformat(),
                    "maxdate": max_date.isoformat(),
                    "type": "thing",
                    "page": str(page),
                },
            )
            batch = root.findall("play")
            plays.extend(batch)
            logger.info("Fetched plays page %d for %s (%d plays)", page, username, len(batch))
            if len(batch) < settings.BGG_PLAYS_PAGE_SIZE:
                break
            page += 1
        return plays

    # ------------------
    # Website endpoints (login + geekplay.php)
    # ------------------

    async def login(self, username: str, password: str) -> Dict[str, str]:
        payload = {"credentials": {"username": username, "password": password}}

        def _cookies(resp: httpx.Response) -> Dict[str, str]:
            cookies = {name: value for name, value in resp.cookies.items()}
            if SESSION_COOKIE not in cookies:
                # Some responses only carry the cookie in raw Set-Cookie headers
                for header in resp.headers.get_list("set-cookie"):
                    pair = header.split(";", 1)[0].strip()
                    if "=" in pair:
                        name, value = pair.split("=", 1)
                        cookies[name.strip()] = value.strip()
            if not cookies.get(SESSION_COOKIE):
                raise AuthenticationFailed("BGG login succeeded but SessionID cookie missing")
            return cookies

        try:
            return await self._send(
                "POST",
                settings.BGG_LOGIN_URL,
                _cookies,
                ok_statuses=(200, 204),
                json=payload,
                headers={"content-type": "application/json", "accept": "application/json"},
            )
        except PermanentClientError as e:
            if e.status_code == 400:
                raise AuthenticationFailed(f"BGG login rejected for {username}: HTTP 400") from e
            raise

    async def submit_play(self, session_cookies: Dict[str, str], payload: Dict[str, str]) -> str:
        """POST a play form to geekplay.php and return the BGG play id."""

        def _playid(resp: httpx.Response) -> str:
            data = parse_json(resp)
            if data.get("error"):
                raise PermanentClientError(f"BGG rejected play: {data['error']}", resp.status_code)
            playid = data.get("playid")
            if playid in (None, ""):
                raise MalformedResponse("BGG play submission did not return a playid")
            return str(playid)

        cookie_header = "; ".join(f"{name}={value}" for name, value in session_cookies.items())
        return await self._send(
            "POST",
            settings.BGG_PLAY_SUBMISSION_URL,
            _playid,
            data=payload,
            headers={
                "Cookie": cookie_header,
                "Referer": settings.BGG_PLAY_SUBMISSION_URL,
                "Accept": "application/json, text/plain, */*",
            },
        )
