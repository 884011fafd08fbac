#!/usr/bin/env python3
"""
Transport cascade: resolve a feed URL to raw document text.

Every way of reaching a URL is a strategy, an async callable taking the
target URL and returning a FetchAttempt. Strategies catch their own
failures. ``first_success`` walks an ordered strategy list and stops at the
first attempt that succeeded; when none did it raises TransportError with
every attempt attached.

Cascades:
    fetch(url)               direct, server proxy, public relays
                             (RSSHub URLs go to fetch_rsshub instead)
    fetch_proxied_first(url) server proxy, direct, public relays
    fetch_rsshub(url)        ranked relay mirrors with retries and
                             feed-shape checks
    fetch_server_side(url)   direct, then the first public relay; used by the
                             same-origin proxy endpoint itself
"""

from asyncio import sleep, TimeoutError as AsyncTimeoutError
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote, urlsplit
import json

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import TransportError
from models import FetchAttempt
from telemetry import trace_span
from utils import format_client_error

logger = get_logger("transport")

FEED_ACCEPT = 'application/rss+xml, application/xml, text/xml, */*'

BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': FEED_ACCEPT,
    'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
    'Accept-Encoding': 'gzip, deflate, br',
    'Upgrade-Insecure-Requests': '1',
    'Sec-Fetch-Dest': 'document',
    'Sec-Fetch-Mode': 'navigate',
    'Sec-Fetch-Site': 'none',
    'Cache-Control': 'max-age=0',
}

# Relay bodies shorter than this are error stubs, not feeds
MIN_RELAY_BODY = 100

# Interstitial markers seen on anti-bot pages; not exhaustive
CHALLENGE_MARKERS = (
    '<title>just a moment...</title>',
    'checking your browser',
    'challenge-platform',
    'cf-chl-',
    'attention required! | cloudflare',
    'ddos-guard',
)

FEED_MARKERS = ('<rss', '<feed', '<rdf:rdf', '<item>', '<item ', '<entry>', '<entry ')
_FEED_ROOTS = ('<rss', '<feed', '<rdf:rdf')


@dataclass
class HttpResponse:
    status: int
    text: str = ""
    content_type: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class HttpClient:
    """Thin wrapper around one aiohttp ClientSession.

    Anything exposing the same ``get`` coroutine can stand in for it, which
    is how tests drive the cascades without a network.
    """

    def __init__(self, session: Optional[ClientSession] = None):
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "HttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    async def get(self, url: str, headers: Optional[Dict[str, str]] = None, timeout: float = 30,
                  method: str = "GET") -> HttpResponse:
        """Perform one request. Network failures propagate as ClientError or TimeoutError."""
        async with self.session.request(
            method,
            url,
            headers=headers or {},
            timeout=ClientTimeout(total=timeout),
            allow_redirects=True,
        ) as response:
            text = "" if method == "HEAD" else await response.text(errors="replace")
            return HttpResponse(
                status=response.status,
                text=text,
                content_type=response.headers.get('Content-Type', ''),
            )

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


Strategy = Callable[[str], Awaitable[FetchAttempt]]


@dataclass
class FetchResult:
    content: str
    strategy: str
    attempts: List[FetchAttempt] = field(default_factory=list)


def looks_like_feed(text: str) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in FEED_MARKERS)


def looks_like_bot_challenge(text: str) -> bool:
    """True for anti-bot interstitials.

    A document that opens with a feed root element is never treated as a
    challenge, even when an article in it mentions one of the markers.
    """
    if not text:
        return False
    head = text.lstrip()[:1024].lower()
    if any(root in head for root in _FEED_ROOTS):
        return False
    lowered = text[:65536].lower()
    return any(marker in lowered for marker in CHALLENGE_MARKERS)


def is_rsshub_url(url: str, extra_hosts: Sequence[str] = ()) -> bool:
    """RSSHub endpoints are recognised by host name."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return False
    if not host:
        return False
    if "rsshub" in host:
        return True
    return any(host == h or host.endswith(f".{h}") for h in extra_hosts)


def _unwrap_relay_body(text: str) -> str:
    """Some relays wrap the upstream body in JSON ({"contents": ...})."""
    stripped = text.lstrip()
    if not stripped.startswith("{"):
        return text
    try:
        payload = json.loads(stripped)
    except ValueError:
        return text
    if isinstance(payload, dict) and isinstance(payload.get("contents"), str):
        return payload["contents"]
    return text


@trace_span(
    "transport.first_success",
    tracer_name="transport",
    attr_from_args=lambda url, strategies: {"transport.url": url, "transport.strategies": len(strategies)},
    attr_from_result=lambda result: {"transport.strategy": result.strategy, "transport.attempts": len(result.attempts)},
)
async def first_success(url: str, strategies: Sequence[Strategy]) -> FetchResult:
    """Run strategies strictly in order and return the first success.

    Raises:
        TransportError: every strategy failed; the message names each one.
    """
    attempts: List[FetchAttempt] = []
    for strategy in strategies:
        attempt = await strategy(url)
        attempts.append(attempt)
        if attempt.ok and attempt.content is not None:
            if len(attempts) > 1:
                logger.info(f"Fetched {url} via {attempt.strategy} after {len(attempts) - 1} failed strategies")
            return FetchResult(content=attempt.content, strategy=attempt.strategy, attempts=attempts)
        logger.info(f"Strategy {attempt.strategy} failed for {url}: {attempt.error}")

    if not attempts:
        raise TransportError(f"No fetch strategies available for {url}", attempts)
    tried = "; ".join(f"{a.strategy}: {a.error}" for a in attempts)
    raise TransportError(f"All {len(attempts)} fetch strategies failed for {url} ({tried})", attempts)


class Transport:
    """Builds and runs the cascades against one HTTP client.

    Settings default to the global config but can be passed explicitly.
    """

    def __init__(self, client, proxy_base_url: Optional[str] = None, user_agents: Optional[List[str]] = None,
                 cors_proxies: Optional[List[Dict[str, str]]] = None,
                 rsshub_mirrors: Optional[List[Dict[str, str]]] = None,
                 rsshub_hosts: Optional[List[str]] = None,
                 http_timeout: Optional[float] = None, rsshub_timeout: Optional[float] = None,
                 rsshub_retries: Optional[int] = None, rsshub_retry_delay: Optional[float] = None,
                 use_config_proxy: bool = True):
        self.client = client
        if proxy_base_url is None and use_config_proxy:
            proxy_base_url = config.PROXY_BASE_URL
        self.proxy_base_url = proxy_base_url.rstrip("/") if proxy_base_url else None
        self.user_agents = list(user_agents if user_agents is not None else config.USER_AGENTS)
        self.cors_proxies = list(cors_proxies if cors_proxies is not None else config.CORS_PROXIES)
        self.rsshub_mirrors = list(rsshub_mirrors if rsshub_mirrors is not None else config.RSSHUB_MIRRORS)
        self.rsshub_hosts = list(rsshub_hosts if rsshub_hosts is not None else config.RSSHUB_HOSTS)
        self.http_timeout = http_timeout if http_timeout is not None else config.HTTP_TIMEOUT
        self.rsshub_timeout = rsshub_timeout if rsshub_timeout is not None else config.RSSHUB_TIMEOUT
        self.rsshub_retries = rsshub_retries if rsshub_retries is not None else config.RSSHUB_RETRIES
        self.rsshub_retry_delay = rsshub_retry_delay if rsshub_retry_delay is not None else config.RSSHUB_RETRY_DELAY

    def is_rsshub(self, url: str) -> bool:
        return is_rsshub_url(url, self.rsshub_hosts)

    # Strategy builders

    async def _request(self, url: str, headers: Dict[str, str], timeout: float):
        """One request; returns (response, error message)."""
        try:
            return await self.client.get(url, headers=headers, timeout=timeout), None
        except AsyncTimeoutError as e:
            return None, format_client_error(e)
        except (ClientError, OSError, ValueError) as e:
            return None, format_client_error(e)

    def direct_strategy(self) -> Strategy:
        """Plain request, retried once per rotated User-Agent."""

        async def direct(url: str) -> FetchAttempt:
            errors: List[str] = []
            blocked = False
            for user_agent in self.user_agents:
                headers = {
                    'User-Agent': user_agent,
                    'Accept': FEED_ACCEPT,
                    'Accept-Language': 'zh-CN,zh;q=0.9,en;q=0.8',
                    'Cache-Control': 'no-cache',
                }
                response, error = await self._request(url, headers, self.http_timeout)
                if response is None:
                    errors.append(error)
                    continue
                if not response.ok:
                    errors.append(f"HTTP {response.status}")
                    continue
                if looks_like_bot_challenge(response.text):
                    blocked = True
                    errors.append("bot challenge page")
                    continue
                return FetchAttempt("direct", url, ok=True, content=response.text)
            return FetchAttempt("direct", url, error=_summarize_errors(errors), blocked=blocked)

        return direct

    def server_proxy_strategy(self) -> Optional[Strategy]:
        """Same-origin proxy endpoint; None when no base URL is configured."""
        if not self.proxy_base_url:
            return None
        base = self.proxy_base_url

        async def server_proxy(url: str) -> FetchAttempt:
            target = f"{base}/api/proxy?url={quote(url, safe='')}"
            response, error = await self._request(target, {'Accept': FEED_ACCEPT}, self.http_timeout)
            return _relay_attempt("server-proxy", target, response, error, min_length=1)

        return server_proxy

    def cors_strategies(self, timeout: Optional[float] = None, limit: Optional[int] = None) -> List[Strategy]:
        """One strategy per public relay mirror, in configured order."""
        strategies: List[Strategy] = []
        for mirror in self.cors_proxies[:limit]:
            strategies.append(self._cors_strategy(mirror["name"], mirror["prefix"], timeout or self.http_timeout))
        return strategies

    def _cors_strategy(self, name: str, prefix: str, timeout: float) -> Strategy:
        label = f"cors:{name}"

        async def cors(url: str) -> FetchAttempt:
            target = f"{prefix}{quote(url, safe='')}"
            response, error = await self._request(target, {'Accept': FEED_ACCEPT}, timeout)
            return _relay_attempt(label, target, response, error, min_length=MIN_RELAY_BODY)

        return cors

    def rsshub_strategy(self) -> Strategy:
        """Ranked relay mirrors, each retried, accepting only feed-shaped bodies."""

        async def rsshub(url: str) -> FetchAttempt:
            errors: List[str] = []
            blocked = False
            for mirror in self.rsshub_mirrors:
                target = mirror["template"].replace("{url}", quote(url, safe=''))
                for attempt in range(1, self.rsshub_retries + 1):
                    logger.debug(f"RSSHub mirror {mirror['name']} attempt {attempt}/{self.rsshub_retries}: {url}")
                    response, error = await self._request(target, BROWSER_HEADERS, self.rsshub_timeout)
                    result = _relay_attempt(f"rsshub:{mirror['name']}", target, response, error,
                                            min_length=MIN_RELAY_BODY, require_feed=True)
                    if result.ok:
                        logger.info(f"RSSHub mirror {mirror['name']} returned {len(result.content)} characters for {url}")
                        return FetchAttempt("rsshub", url, ok=True, content=result.content)
                    blocked = blocked or result.blocked
                    errors.append(f"{mirror['name']}#{attempt}: {result.error}")
                    if attempt < self.rsshub_retries and self.rsshub_retry_delay > 0:
                        await sleep(self.rsshub_retry_delay)
            return FetchAttempt("rsshub", url, error=f"all proxy services failed ({'; '.join(errors)})",
                                blocked=blocked)

        return rsshub

    # Cascades

    def default_strategies(self) -> List[Strategy]:
        strategies: List[Strategy] = [self.direct_strategy()]
        server_proxy = self.server_proxy_strategy()
        if server_proxy is not None:
            strategies.append(server_proxy)
        strategies.extend(self.cors_strategies())
        return strategies

    def proxied_first_strategies(self) -> List[Strategy]:
        strategies: List[Strategy] = []
        server_proxy = self.server_proxy_strategy()
        if server_proxy is not None:
            strategies.append(server_proxy)
        strategies.append(self.direct_strategy())
        strategies.extend(self.cors_strategies())
        return strategies

    async def fetch(self, url: str) -> FetchResult:
        """Fetch with the default cascade; RSSHub URLs use the RSSHub path."""
        if self.is_rsshub(url):
            return await self.fetch_rsshub(url)
        return await first_success(url, self.default_strategies())

    async def fetch_proxied_first(self, url: str) -> FetchResult:
        if self.is_rsshub(url):
            return await self.fetch_rsshub(url)
        return await first_success(url, self.proxied_first_strategies())

    async def fetch_rsshub(self, url: str) -> FetchResult:
        return await first_success(url, [self.rsshub_strategy()])

    async def fetch_server_side(self, url: str) -> FetchResult:
        """Cascade for the proxy endpoint; never routes through the proxy itself."""
        strategies = [self.direct_strategy()]
        strategies.extend(self.cors_strategies(timeout=self.http_timeout + 5, limit=1))
        return await first_success(url, strategies)


def _relay_attempt(strategy: str, target: str, response: Optional[HttpResponse], error: Optional[str],
                   min_length: int = 1, require_feed: bool = False) -> FetchAttempt:
    """Judge a relay response: non-2xx, short, challenge or (optionally) non-feed bodies fail."""
    if response is None:
        return FetchAttempt(strategy, target, error=error)
    if not response.ok:
        return FetchAttempt(strategy, target, error=f"HTTP {response.status}")
    text = _unwrap_relay_body(response.text or "")
    if len(text.strip()) < min_length:
        return FetchAttempt(strategy, target, error=f"response too short ({len(text.strip())} characters)")
    if looks_like_bot_challenge(text):
        return FetchAttempt(strategy, target, error="bot challenge page", blocked=True)
    if require_feed and not looks_like_feed(text):
        return FetchAttempt(strategy, target, error="response is not a feed")
    return FetchAttempt(strategy, target, ok=True, content=text)


def _summarize_errors(errors: List[str]) -> str:
    if not errors:
        return "no attempts made"
    unique: List[str] = []
    for error in errors:
        if error not in unique:
            unique.append(error)
    return ", ".join(unique)
