import time

import pytest
import pytest_asyncio

from errors import StorageError
from models import DatabaseQueue, FeedItem, FetchSummary, FeedMetadata, SourceType, ValidationResult


@pytest_asyncio.fixture
async def db(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    try:
        yield queue
    finally:
        await queue.stop()


def make_item(title, link=None, publish_time=1704067200, source_name="Example", source_id=None):
    return FeedItem(title=title, link=link, publish_time=publish_time, summary="s",
                    source_name=source_name, source_id=source_id)


@pytest.mark.asyncio
async def test_duplicate_links_are_not_stored_twice(db):
    source = await db.execute('create_source', name="Example", type="rss", url="https://example.com/feed")
    items = [make_item("A", "https://example.com/a", source_id=source.id),
             make_item("B", "https://example.com/b", source_id=source.id)]

    assert await db.execute('save_items', items=items) == 2
    retitled = [make_item("A (updated)", "https://example.com/a", publish_time=1704153600)]
    assert await db.execute('save_items', items=retitled) == 0
    assert await db.execute('count_items') == 2


@pytest.mark.asyncio
async def test_same_title_and_time_is_a_duplicate(db):
    first = [make_item("Breaking", None, publish_time=1704067200)]
    again = [make_item("Breaking", "https://other.example/breaking", publish_time=1704067200)]
    later = [make_item("Breaking", None, publish_time=1704070800)]

    assert await db.execute('save_items', items=first) == 1
    assert await db.execute('save_items', items=again) == 0
    assert await db.execute('save_items', items=later) == 1


@pytest.mark.asyncio
async def test_duplicates_within_one_batch(db):
    items = [make_item("A", "https://example.com/a"), make_item("A again", "https://example.com/a")]
    assert await db.execute('save_items', items=items) == 1


@pytest.mark.asyncio
async def test_favicon_is_set_once(db):
    source = await db.execute('create_source', name="Example", type="rss", url="https://example.com/feed")

    first = await db.execute('set_source_favicon', source_id=source.id, favicon_url="https://icons.test/a.ico")
    second = await db.execute('set_source_favicon', source_id=source.id, favicon_url="https://icons.test/b.ico")

    assert first == "https://icons.test/a.ico"
    assert second == "https://icons.test/a.ico"
    stored = await db.execute('get_source', source_id=source.id)
    assert stored.favicon_url == "https://icons.test/a.ico"


@pytest.mark.asyncio
async def test_deleting_a_source_removes_its_items(db):
    keep = await db.execute('create_source', name="Keep", type="rss", url="https://keep.example/feed")
    drop = await db.execute('create_source', name="Drop", type="rss", url="https://drop.example/feed")
    await db.execute('save_items', items=[
        make_item("Kept", "https://keep.example/1", source_name="Keep", source_id=keep.id),
        make_item("Dropped 1", "https://drop.example/1", source_name="Drop", source_id=drop.id),
        make_item("Dropped 2", "https://drop.example/2", source_name="Drop", source_id=drop.id),
    ])

    removed = await db.execute('delete_source', source_id=drop.id)

    assert removed == 2
    assert await db.execute('get_source', source_id=drop.id) is None
    assert await db.execute('count_items') == 1
    assert await db.execute('count_items', source_name="Keep") == 1


@pytest.mark.asyncio
async def test_expire_old_items(db):
    now = int(time.time())
    await db.execute('save_items', items=[
        make_item("Fresh", "https://example.com/fresh", publish_time=now - 3600),
        make_item("Stale", "https://example.com/stale", publish_time=now - 10 * 86400),
    ])

    deleted = await db.execute('expire_old_items', expiration_days=7)

    assert deleted == 1
    assert [item.title for item in await db.execute('list_items')] == ["Fresh"]
    assert await db.execute('expire_old_items', expiration_days=0) == 0


@pytest.mark.asyncio
async def test_source_listing_and_enable_toggle(db):
    rss = await db.execute('create_source', name="Blog", type="rss", url="https://blog.example/feed")
    await db.execute('create_source', name="Zhihu", type="zhihu-hot")
    await db.execute('set_source_enabled', source_id=rss.id, enabled=False)

    enabled = await db.execute('list_enabled_sources')
    assert [s.name for s in enabled] == ["Zhihu"]
    assert enabled[0].type == SourceType.ZHIHU.value
    assert await db.execute('list_sources_by_type', source_type="rss") == []
    all_rss = await db.execute('list_sources_by_type', source_type="rss", enabled_only=False)
    assert [s.name for s in all_rss] == ["Blog"]


@pytest.mark.asyncio
async def test_seeding_only_happens_once(db):
    defaults = [
        {"name": "Blog", "type": "rss", "url": "https://blog.example/feed"},
        {"name": "Weibo", "type": "weibo", "config": {"limit": 10}},
    ]

    assert await db.execute('seed_default_sources', sources=defaults) == 2
    assert await db.execute('seed_default_sources', sources=defaults) == 0
    sources = await db.execute('list_sources')
    assert [s.name for s in sources] == ["Blog", "Weibo"]
    assert sources[1].config == {"limit": 10}


@pytest.mark.asyncio
async def test_invalid_operations_raise_storage_error(db):
    with pytest.raises(StorageError):
        await db.execute('create_source', name="No URL", type="rss")
    with pytest.raises(StorageError):
        await db.execute('create_source', name="Bad", type="gopher", url="gopher://x")
    with pytest.raises(StorageError):
        await db.execute('drop_everything')
    with pytest.raises(StorageError):
        await db.execute('_item_exists', cursor=None, item=None)


@pytest.mark.asyncio
async def test_execute_requires_running_worker(tmp_path):
    queue = DatabaseQueue(str(tmp_path / "idle.db"))
    with pytest.raises(StorageError):
        await queue.execute('count_items')


def test_validation_result_wire_shape():
    result = ValidationResult(
        valid=True,
        url="https://example.com/feed",
        metadata=FeedMetadata(title="Example", description="d", link="https://example.com"),
        attempted_paths=["https://example.com", "https://example.com/feed"],
        is_url_changed=True,
    )
    payload = result.to_dict()
    assert payload["valid"] is True
    assert payload["isUrlChanged"] is True
    assert payload["metadata"] == {"title": "Example", "description": "d", "link": "https://example.com"}
    assert payload["attemptedPaths"] == ["https://example.com", "https://example.com/feed"]
    assert "error" not in payload

    failure = ValidationResult(valid=False, error="nope").to_dict()
    assert failure == {"valid": False, "error": "nope"}


def test_fetch_summary_wire_shape():
    summary = FetchSummary(success=2, failed=1, total_items=7, new_items=5)
    assert summary.to_dict() == {"sourcesSucceeded": 2, "sourcesFailed": 1, "fetchedCount": 7, "newItems": 5}
