import pytest

from discovery import EMPTY_FEED_WARNING, FEED_PATHS, FeedDiscovery, build_candidates
from helpers import EMPTY_RSS_FEED, HTML_PAGE, RSS_FEED


def test_candidates_start_with_the_input_url():
    candidates = build_candidates("https://example.com/blog/post?id=3")
    assert candidates[0] == "https://example.com/blog/post?id=3"
    assert candidates[1:] == [f"https://example.com{p}" for p in FEED_PATHS]


def test_candidates_do_not_repeat_the_input():
    candidates = build_candidates("https://example.com/feed")
    assert candidates.count("https://example.com/feed") == 1
    assert len(candidates) == len(FEED_PATHS)


@pytest.mark.asyncio
async def test_first_valid_candidate_in_list_order_wins(fake_client, transport_factory):
    # /feed answers slower than /rss but comes first in the candidate list
    fake_client.ok("https://example.com", HTML_PAGE)
    fake_client.ok("https://example.com/feed", RSS_FEED, delay=0.05)
    fake_client.ok("https://example.com/rss", RSS_FEED)
    discovery = FeedDiscovery(transport_factory(), batch_size=6)

    result = await discovery.discover("https://example.com")

    assert result.found
    assert result.url == "https://example.com/feed"
    assert result.metadata.title == "Example Blog"
    assert result.item_count == 2
    assert result.attempted_paths == build_candidates("https://example.com")[:6]


@pytest.mark.asyncio
async def test_later_batches_only_run_when_earlier_ones_fail(fake_client, transport_factory):
    fake_client.ok("https://example.com/feed/", RSS_FEED)
    discovery = FeedDiscovery(transport_factory(), batch_size=3)

    result = await discovery.discover("https://example.com")

    candidates = build_candidates("https://example.com")
    winner_index = candidates.index("https://example.com/feed/")
    assert result.url == "https://example.com/feed/"
    batches_run = winner_index // 3 + 1
    assert result.attempted_paths == candidates[:batches_run * 3]
    assert set(fake_client.urls()) == set(candidates[:batches_run * 3])


@pytest.mark.asyncio
async def test_nothing_found_reports_every_attempt(transport_factory):
    discovery = FeedDiscovery(transport_factory())

    result = await discovery.discover("https://notafeed.example")

    assert not result.found
    assert len(result.attempted_paths) == 13
    assert result.attempted_paths[0] == "https://notafeed.example"


@pytest.mark.asyncio
async def test_empty_feed_is_accepted_with_warning(fake_client, transport_factory):
    fake_client.ok("https://quiet.example/feed", EMPTY_RSS_FEED)
    discovery = FeedDiscovery(transport_factory())

    result = await discovery.discover("https://quiet.example")

    assert result.found
    assert result.url == "https://quiet.example/feed"
    assert result.item_count == 0
    assert result.warning == EMPTY_FEED_WARNING


@pytest.mark.asyncio
async def test_feed_without_title_is_not_a_match(fake_client, transport_factory):
    untitled = RSS_FEED.replace("<title>Example Blog</title>", "")
    fake_client.ok("https://example.com/feed", untitled)
    fake_client.ok("https://example.com/rss", RSS_FEED)
    discovery = FeedDiscovery(transport_factory())

    result = await discovery.discover("https://example.com")

    assert result.url == "https://example.com/rss"
