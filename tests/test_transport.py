import asyncio
import json
from urllib.parse import quote

import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

from errors import TransportError
from helpers import CHALLENGE_PAGE, HTML_PAGE, RSS_FEED, make_transport
from transport import HttpClient, HttpResponse, first_success, is_rsshub_url, looks_like_bot_challenge
from models import FetchAttempt

FEED_URL = "https://example.com/feed"
PROXY_BASE = "http://localhost:8080"
RELAY = {"name": "relay", "prefix": "https://relay.test/raw?url="}


def relay_url(url: str) -> str:
    return f"{RELAY['prefix']}{quote(url, safe='')}"


def proxy_url(url: str) -> str:
    return f"{PROXY_BASE}/api/proxy?url={quote(url, safe='')}"


@pytest.mark.asyncio
async def test_direct_success_short_circuits(fake_client):
    fake_client.ok(FEED_URL, RSS_FEED)
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE, cors_proxies=[RELAY])

    result = await transport.fetch(FEED_URL)

    assert result.strategy == "direct"
    assert result.content == RSS_FEED
    assert fake_client.urls() == [FEED_URL]


@pytest.mark.asyncio
async def test_direct_rotates_user_agents_before_falling_back(fake_client):
    fake_client.route(FEED_URL, HttpResponse(status=403, text="forbidden"))
    fake_client.ok(proxy_url(FEED_URL), RSS_FEED)
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE, cors_proxies=[RELAY],
                               user_agents=["UA-1", "UA-2"])

    result = await transport.fetch(FEED_URL)

    assert result.strategy == "server-proxy"
    assert fake_client.urls() == [FEED_URL, FEED_URL, proxy_url(FEED_URL)]
    agents = [headers.get("User-Agent") for _, url, headers in fake_client.calls if url == FEED_URL]
    assert agents == ["UA-1", "UA-2"]
    assert [a.strategy for a in result.attempts] == ["direct", "server-proxy"]


@pytest.mark.asyncio
async def test_proxied_first_tries_server_proxy_before_direct(fake_client):
    fake_client.ok(FEED_URL, RSS_FEED)
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE, cors_proxies=[RELAY])

    result = await transport.fetch_proxied_first(FEED_URL)

    assert result.strategy == "direct"
    assert fake_client.urls() == [proxy_url(FEED_URL), FEED_URL]


@pytest.mark.asyncio
async def test_server_proxy_skipped_when_not_configured(fake_client):
    fake_client.ok(relay_url(FEED_URL), RSS_FEED)
    transport = make_transport(fake_client, cors_proxies=[RELAY])

    result = await transport.fetch_proxied_first(FEED_URL)

    assert result.strategy == "cors:relay"
    assert fake_client.urls() == [FEED_URL, relay_url(FEED_URL)]


@pytest.mark.asyncio
async def test_exhausted_cascade_lists_every_strategy_once(fake_client):
    second_relay = {"name": "backup", "prefix": "https://backup.test/?"}
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE, cors_proxies=[RELAY, second_relay])

    with pytest.raises(TransportError) as exc_info:
        await transport.fetch(FEED_URL)

    error = exc_info.value
    assert [a.strategy for a in error.attempts] == ["direct", "server-proxy", "cors:relay", "cors:backup"]
    assert all(not a.ok for a in error.attempts)
    for name in ("direct", "server-proxy", "cors:relay", "cors:backup"):
        assert name in str(error)
    assert len(fake_client.calls) == 4


@pytest.mark.asyncio
async def test_challenge_page_fails_direct_and_marks_blocked(fake_client):
    fake_client.ok(FEED_URL, CHALLENGE_PAGE)
    transport = make_transport(fake_client)

    with pytest.raises(TransportError) as exc_info:
        await transport.fetch(FEED_URL)

    assert exc_info.value.blocked
    assert "bot challenge" in exc_info.value.attempts[0].error


@pytest.mark.asyncio
async def test_short_relay_body_is_rejected(fake_client):
    fake_client.ok(relay_url(FEED_URL), "<rss/>")
    transport = make_transport(fake_client, cors_proxies=[RELAY])

    with pytest.raises(TransportError) as exc_info:
        await transport.fetch(FEED_URL)

    relay_attempt = exc_info.value.attempts[-1]
    assert relay_attempt.strategy == "cors:relay"
    assert "too short" in relay_attempt.error


@pytest.mark.asyncio
async def test_timeouts_are_reported(fake_client):
    fake_client.route(FEED_URL, asyncio.TimeoutError())
    transport = make_transport(fake_client)

    with pytest.raises(TransportError) as exc_info:
        await transport.fetch(FEED_URL)

    assert exc_info.value.timed_out
    assert exc_info.value.attempts[0].error == "request timed out"


@pytest.mark.asyncio
async def test_rsshub_urls_use_mirrors_with_retries(fake_client):
    rsshub = "https://rsshub.app/zhihu/hot"
    mirrors = [
        {"name": "first", "template": "https://first.test/raw?url={url}"},
        {"name": "second", "template": "https://second.test/raw?url={url}"},
    ]
    first = f"https://first.test/raw?url={quote(rsshub, safe='')}"
    second = f"https://second.test/raw?url={quote(rsshub, safe='')}"
    fake_client.ok(first, HTML_PAGE)
    fake_client.route(second, HttpResponse(status=502, text="bad gateway"), HttpResponse(status=200, text=RSS_FEED))
    transport = make_transport(fake_client, rsshub_mirrors=mirrors, rsshub_retries=2, cors_proxies=[RELAY])

    result = await transport.fetch(rsshub)

    assert result.strategy == "rsshub"
    assert result.content == RSS_FEED
    assert fake_client.urls() == [first, first, second, second]


@pytest.mark.asyncio
async def test_rsshub_failure_message_names_all_mirrors(fake_client):
    rsshub = "https://rsshub.app/weibo/search/hot"
    transport = make_transport(fake_client, rsshub_retries=2)

    with pytest.raises(TransportError) as exc_info:
        await transport.fetch_rsshub(rsshub)

    assert "all proxy services failed" in str(exc_info.value)
    assert "mirror-a#1" in str(exc_info.value)
    assert "mirror-a#2" in str(exc_info.value)


@pytest.mark.asyncio
async def test_json_wrapped_relay_body_is_unwrapped(fake_client):
    rsshub = "https://rsshub.app/sspai/index"
    mirror = {"name": "get", "template": "https://relay.test/get?url={url}&callback="}
    wrapped = json.dumps({"contents": RSS_FEED, "status": {"http_code": 200}})
    fake_client.ok(f"https://relay.test/get?url={quote(rsshub, safe='')}&callback=", wrapped)
    transport = make_transport(fake_client, rsshub_mirrors=[mirror])

    result = await transport.fetch_rsshub(rsshub)

    assert result.content == RSS_FEED


@pytest.mark.asyncio
async def test_fetch_server_side_never_uses_the_proxy(fake_client):
    fake_client.ok(relay_url(FEED_URL), RSS_FEED)
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE,
                               cors_proxies=[RELAY, {"name": "unused", "prefix": "https://unused.test/?"}])

    result = await transport.fetch_server_side(FEED_URL)

    assert result.strategy == "cors:relay"
    assert fake_client.urls() == [FEED_URL, relay_url(FEED_URL)]


@pytest.mark.asyncio
async def test_first_success_stops_at_first_ok():
    seen = []

    def strategy(name, ok):
        async def run(url):
            seen.append(name)
            return FetchAttempt(name, url, ok=ok, content="body" if ok else None, error=None if ok else "nope")
        return run

    result = await first_success("https://x.test", [strategy("a", False), strategy("b", True), strategy("c", True)])

    assert result.strategy == "b"
    assert seen == ["a", "b"]


def test_bot_challenge_detection():
    assert looks_like_bot_challenge(CHALLENGE_PAGE)
    assert not looks_like_bot_challenge(HTML_PAGE)
    feed_mentioning_marker = RSS_FEED.replace("Another entry", "Checking your browser is annoying")
    assert not looks_like_bot_challenge(feed_mentioning_marker)


def test_rsshub_url_detection():
    assert is_rsshub_url("https://rsshub.app/zhihu/hot")
    assert is_rsshub_url("https://my-rsshub.example.org/route")
    assert is_rsshub_url("https://feeds.example.org/route", ["example.org"])
    assert not is_rsshub_url("https://example.com/rsshub/feed")
    assert not is_rsshub_url("not a url")


@pytest.mark.asyncio
async def test_cascade_falls_through_to_relay_in_order(fake_client):
    fake_client.route(FEED_URL, HttpResponse(status=403, text="forbidden"))
    fake_client.route(proxy_url(FEED_URL), HttpResponse(status=502, text="bad gateway"))
    fake_client.ok(relay_url(FEED_URL), RSS_FEED)
    transport = make_transport(fake_client, proxy_base_url=PROXY_BASE, cors_proxies=[RELAY])

    result = await transport.fetch(FEED_URL)

    assert result.strategy == "cors:relay"
    assert result.content == RSS_FEED
    assert [a.strategy for a in result.attempts] == ["direct", "server-proxy", "cors:relay"]
    assert fake_client.urls() == [FEED_URL, proxy_url(FEED_URL), relay_url(FEED_URL)]


async def _feed_handler(request):
    return web.Response(text=RSS_FEED, content_type="application/rss+xml")


async def _garbled_handler(request):
    return web.Response(body=b"caf\xff feed", content_type="text/plain", charset="utf-8")


@pytest_asyncio.fixture
async def feed_server():
    app = web.Application()
    app.router.add_get("/feed", _feed_handler)
    app.router.add_get("/garbled", _garbled_handler)
    async with TestServer(app) as server:
        yield server


@pytest.mark.asyncio
async def test_http_client_get_head_and_close(feed_server):
    client = HttpClient()

    get = await client.get(str(feed_server.make_url("/feed")), timeout=5)
    head = await client.get(str(feed_server.make_url("/feed")), timeout=5, method="HEAD")
    missing = await client.get(str(feed_server.make_url("/missing")), timeout=5)
    garbled = await client.get(str(feed_server.make_url("/garbled")), timeout=5)
    session = client.session
    await client.close()

    assert get.ok
    assert get.text == RSS_FEED
    assert get.content_type.startswith("application/rss+xml")
    assert head.ok
    assert head.text == ""
    assert missing.status == 404
    assert not missing.ok
    assert garbled.text == "caf\ufffd feed"
    assert session.closed


@pytest.mark.asyncio
async def test_http_client_leaves_injected_session_open(feed_server):
    async with ClientSession() as session:
        client = HttpClient(session)
        response = await client.get(str(feed_server.make_url("/feed")), timeout=5)
        await client.close()

        assert response.ok
        assert not session.closed
