import json

import pytest
from aiohttp import ClientConnectionError

from hot_topics import (
    WEIBO_HOT_API,
    ZHIHU_HOT_API,
    WeiboHotFetcher,
    XiaohongshuFetcher,
    ZhihuHotFetcher,
    default_limit_for,
    get_hot_topic_fetcher,
)
from transport import HttpResponse


ZHIHU_PAYLOAD = {
    "data": [
        {
            "detail_text": "1200 万热度",
            "target": {
                "id": 42,
                "title": "如何看待新发布的编程语言？",
                "url": "https://www.zhihu.com/question/42",
                "excerpt": "一门新语言带来的变化",
                "type": "question",
                "created": 1704067200,
                "author": {"name": "匿名用户"},
            },
        },
        {"detail_text": "800 万热度", "target": {"id": 43}},
    ]
}

WEIBO_PAYLOAD = {
    "data": {
        "realtime": [
            {"word": "新品发布会", "num": 2345678, "rank": 1, "category": "科技"},
            {"word": "", "num": 1},
            {"word": "周末天气", "num": 99999, "rank": 2},
        ]
    }
}


@pytest.mark.asyncio
async def test_zhihu_live_items(fake_client):
    fake_client.ok(ZHIHU_HOT_API, json.dumps(ZHIHU_PAYLOAD))

    items = await ZhihuHotFetcher(fake_client).fetch(10)

    assert len(items) == 1
    item = items[0]
    assert item.title == "1200 万热度 • 如何看待新发布的编程语言？"
    assert item.link == "https://www.zhihu.com/question/42"
    assert item.publish_time == 1704067200
    assert "作者: 匿名用户" in item.summary
    assert item.tags == ["知乎", "热榜", "question"]
    assert item.source_type == "zhihu"


@pytest.mark.asyncio
async def test_zhihu_falls_back_to_mock_on_error(fake_client):
    fake_client.route(ZHIHU_HOT_API, HttpResponse(status=401, text="unauthorized"))

    items = await ZhihuHotFetcher(fake_client).fetch(50)

    assert len(items) == 2
    assert all(item.link.startswith("https://www.zhihu.com/question/") for item in items)


@pytest.mark.asyncio
async def test_weibo_live_items(fake_client):
    fake_client.ok(WEIBO_HOT_API, json.dumps(WEIBO_PAYLOAD, ensure_ascii=False))

    items = await WeiboHotFetcher(fake_client).fetch(10)

    assert [item.title for item in items] == ["1 新品发布会 • 2345678", "2 周末天气 • 99999"]
    assert items[0].link == "https://s.weibo.com/weibo?q=%E6%96%B0%E5%93%81%E5%8F%91%E5%B8%83%E4%BC%9A"
    assert items[0].tags == ["微博", "热搜", "科技"]


@pytest.mark.asyncio
async def test_weibo_mock_is_deterministic_and_limited(fake_client):
    fake_client.route(WEIBO_HOT_API, ClientConnectionError("connection reset"))

    first = await WeiboHotFetcher(fake_client).fetch(5)
    second = await WeiboHotFetcher(fake_client).fetch(5)

    assert len(first) == 5
    assert [i.link for i in first] == [i.link for i in second]
    assert [i.summary for i in first] == [i.summary for i in second]


@pytest.mark.asyncio
async def test_weibo_invalid_json_uses_mock(fake_client):
    fake_client.ok(WEIBO_HOT_API, "<html>login required</html>")

    items = await WeiboHotFetcher(fake_client).fetch(50)

    assert len(items) == 10


@pytest.mark.asyncio
async def test_xiaohongshu_mock_by_category(fake_client):
    tech = await XiaohongshuFetcher(fake_client, category="tech", api_url="").fetch(30)
    everything = await XiaohongshuFetcher(fake_client, category="unknown", api_url="").fetch(30)

    assert len(tech) == 3
    assert all("小红书" in item.tags for item in tech)
    assert len(everything) == 12
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_xiaohongshu_configured_endpoint(fake_client):
    api = "https://notes.example/api/hot"
    payload = {"data": [{"title": "好物分享", "summary": "推荐清单", "author": "小明", "likes": 321, "tags": ["生活"],
                         "url": "https://www.xiaohongshu.com/explore/1"}]}
    fake_client.ok(f"{api}?category=ai&limit=5", json.dumps(payload, ensure_ascii=False))

    items = await XiaohongshuFetcher(fake_client, category="ai", api_url=api, api_key="secret").fetch(5)

    assert [item.title for item in items] == ["🔥 321 • 好物分享"]
    assert items[0].link == "https://www.xiaohongshu.com/explore/1"
    headers = fake_client.calls[0][2]
    assert headers["Authorization"] == "Bearer secret"


def test_factory_rejects_non_hot_topic_types(fake_client):
    assert isinstance(get_hot_topic_fetcher("weibo", fake_client), WeiboHotFetcher)
    assert get_hot_topic_fetcher("xiaohongshu", fake_client, {"category": "ai"}).category == "ai"
    with pytest.raises(ValueError):
        get_hot_topic_fetcher("rss", fake_client)


def test_default_limits():
    assert default_limit_for("zhihu") > 0
    assert default_limit_for("xiaohongshu") > 0


@pytest.mark.asyncio
async def test_unexpected_payload_shapes_fall_back_to_mock(fake_client):
    fake_client.ok(ZHIHU_HOT_API, json.dumps({"data": [{"target": {"title": "Q", "category": "tech", "author": "someone"}}]}))
    fake_client.ok(WEIBO_HOT_API, json.dumps({"data": ["maintenance"]}))
    api = "https://notes.example/api/hot"
    fake_client.ok(f"{api}?category=all&limit=5", json.dumps({"data": 42}))

    zhihu = await ZhihuHotFetcher(fake_client).fetch(10)
    weibo = await WeiboHotFetcher(fake_client).fetch(10)
    notes = await XiaohongshuFetcher(fake_client, api_url=api).fetch(5)

    assert [item.link for item in zhihu] == [item.link for item in ZhihuHotFetcher(fake_client).mock(10)]
    assert len(weibo) == 10
    assert len(notes) == 5
