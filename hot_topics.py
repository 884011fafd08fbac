#!/usr/bin/env python3
"""
Hot-topic fetchers for Zhihu, Weibo and Xiaohongshu.

Each fetcher exposes ``fetch(limit)`` and owns its fallback: when the live
endpoint fails or yields nothing usable it returns built-in mock items, so
the scheduler always has something to store for these sources.
"""

from asyncio import TimeoutError as AsyncTimeoutError
from time import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote
import json

from aiohttp import ClientError

from config import config, get_logger
from models import FeedItem, SourceType
from utils import format_client_error, truncate_string

logger = get_logger("hot_topics")

BROWSER_UA = 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36'

ZHIHU_HOT_API = 'https://www.zhihu.com/api/v3/feed/topstory/hot-lists/total'
WEIBO_HOT_API = 'https://weibo.com/ajax/side/hotSearch'
WEIBO_SEARCH_URL = 'https://s.weibo.com/weibo?q='
XIAOHONGSHU_SEARCH_URL = 'https://www.xiaohongshu.com/search_result?keyword='

XIAOHONGSHU_CATEGORIES = ('design', 'tech', 'product', 'ai')


class HotTopicFetcher:
    """Shared live-then-mock flow."""

    source_type = ""
    source_name = ""
    default_limit = 50

    def __init__(self, client, timeout: Optional[float] = None):
        self.client = client
        self.timeout = timeout or config.HOT_TOPIC_TIMEOUT

    async def fetch(self, limit: Optional[int] = None) -> List[FeedItem]:
        limit = limit or self.default_limit
        try:
            items = await self.fetch_live(limit)
        except (AsyncTimeoutError, ClientError, OSError, ValueError) as e:
            logger.warning(f"{self.source_name} live fetch failed ({format_client_error(e)}); using mock data")
            return self.mock(limit)
        except (AttributeError, TypeError, KeyError) as e:
            # Payload shape changed upstream
            logger.warning(f"{self.source_name} returned an unexpected payload ({type(e).__name__}: {e}); using mock data")
            return self.mock(limit)
        if not items:
            logger.warning(f"{self.source_name} returned no usable items; using mock data")
            return self.mock(limit)
        logger.info(f"{self.source_name}: fetched {len(items)} live items")
        return items

    async def fetch_live(self, limit: int) -> List[FeedItem]:
        raise NotImplementedError

    def mock(self, limit: int) -> List[FeedItem]:
        raise NotImplementedError

    async def _get_json(self, url: str, headers: Dict[str, str]) -> Any:
        response = await self.client.get(url, headers=headers, timeout=self.timeout)
        if not response.ok:
            raise ValueError(f"HTTP {response.status} from {url}")
        return json.loads(response.text)

    def _item(self, title: str, link: str, summary: str, tags: List[str], publish_time: Optional[int] = None) -> FeedItem:
        return FeedItem(
            title=title,
            link=link,
            publish_time=publish_time or int(time()),
            summary=truncate_string(summary, config.SUMMARY_MAX_LENGTH),
            tags=tags,
            source_name=self.source_name,
            source_type=self.source_type,
        )


class ZhihuHotFetcher(HotTopicFetcher):
    source_type = SourceType.ZHIHU.value
    source_name = "知乎热榜"
    default_limit = 50

    async def fetch_live(self, limit: int) -> List[FeedItem]:
        data = await self._get_json(ZHIHU_HOT_API, {'User-Agent': BROWSER_UA})
        entries = data.get('data') if isinstance(data, dict) else None
        items: List[FeedItem] = []
        for entry in (entries or [])[:limit]:
            target = entry.get('target') if isinstance(entry, dict) else None
            if not isinstance(target, dict) or not target.get('title'):
                continue
            hot_value = entry.get('hot_value') or entry.get('detail_text') or 'N/A'
            target_type = target.get('type') or ''
            if target.get('excerpt'):
                summary = target['excerpt']
            elif target_type:
                summary = f"知乎热榜 • {target_type} • 热度 {hot_value}"
            else:
                summary = f"知乎热榜 • 热度 {hot_value}"
            author = (target.get('author') or {}).get('name') or '知乎'

            tags = ['知乎', '热榜']
            if target_type:
                tags.append(target_type)
            category = (target.get('category') or {}).get('name')
            if category:
                tags.append(category)

            created = target.get('created')
            items.append(self._item(
                title=f"{hot_value} • {target['title']}",
                link=target.get('url') or f"https://www.zhihu.com/question/{target.get('id')}",
                summary=f"{truncate_string(summary, 280)}\n\n作者: {author}",
                tags=tags,
                publish_time=int(created) if isinstance(created, (int, float)) and created > 0 else None,
            ))
        return items

    def mock(self, limit: int) -> List[FeedItem]:
        samples = [
            ("1000000 • 如何评价当前的科技发展趋势？", "知乎热榜 • 话题 • 讨论当前科技领域的热点话题和发展趋势",
             "https://www.zhihu.com/question/123456", ['知乎', '热榜', '科技']),
            ("999999 • 2024年最值得期待的AI产品有哪些？", "知乎热榜 • 话题 • 汇总2024年值得关注的AI产品和创新",
             "https://www.zhihu.com/question/234567", ['知乎', '热榜', 'AI', '产品']),
        ]
        return [self._item(title, link, summary, list(tags)) for title, summary, link, tags in samples[:limit]]


class WeiboHotFetcher(HotTopicFetcher):
    source_type = SourceType.WEIBO.value
    source_name = "微博热搜"
    default_limit = 50

    MOCK_TOPICS = (
        ('今日科技热点', '科技'),
        ('AI技术突破', '科技'),
        ('程序员日常', '职场'),
        ('产品设计趋势', '设计'),
        ('前端开发最佳实践', '技术'),
        ('后端架构设计', '技术'),
        ('云计算发展', '科技'),
        ('数据库优化', '技术'),
        ('网络安全', '安全'),
        ('移动应用开发', '开发'),
    )

    async def fetch_live(self, limit: int) -> List[FeedItem]:
        headers = {
            'User-Agent': BROWSER_UA,
            'Referer': 'https://weibo.com',
            'Accept': 'application/json, text/plain, */*',
        }
        data = await self._get_json(WEIBO_HOT_API, headers)
        realtime = ((data or {}).get('data') or {}).get('realtime') if isinstance(data, dict) else None
        items: List[FeedItem] = []
        for entry in (realtime or [])[:limit]:
            if not isinstance(entry, dict) or not entry.get('word'):
                continue
            word = entry['word']
            hot_value = entry.get('num') or entry.get('hot_value')
            rank = entry.get('rank')
            title = " ".join(str(p) for p in (rank, word) if p not in (None, ''))
            if hot_value:
                title = f"{title} • {hot_value}"
            category = entry.get('category') or ''
            tags = ['微博', '热搜']
            if category:
                tags.append(category)
            summary = category or '微博热搜'
            if hot_value:
                summary = f"{summary} • 热度: {hot_value}"
            items.append(self._item(title, f"{WEIBO_SEARCH_URL}{quote(word)}", summary, tags))
        return items

    def mock(self, limit: int) -> List[FeedItem]:
        items = []
        for index, (word, category) in enumerate(self.MOCK_TOPICS[:limit]):
            heat = 1000000 - index * 87000
            items.append(self._item(
                title=f"{index + 1} {word}",
                link=f"{WEIBO_SEARCH_URL}{quote(word)}",
                summary=f"微博热搜 • {category} • 热度 {heat}",
                tags=['微博', '热搜', category],
            ))
        return items


class XiaohongshuFetcher(HotTopicFetcher):
    """Xiaohongshu has no public API; a compatible third-party endpoint can be configured."""

    source_type = SourceType.XIAOHONGSHU.value
    source_name = "小红书"
    default_limit = 30

    MOCK_NOTES = {
        'design': (
            ('2024年UI设计趋势大揭秘', '盘点今年最流行的设计风格，从新拟态到玻璃态，从暗黑模式到极简主义，带你了解最新设计趋势。',
             '设计小站', '1.2w', ('UI设计', '设计趋势', '2024')),
            ('Figma高阶技巧分享', '5个Figma隐藏技巧，让你的设计效率提升10倍！自动布局、组件变体、原型交互全解析。',
             'Figma大神', '8563', ('Figma', '设计工具', '教程')),
            ('如何设计一个好的产品logo', '从品牌定位到视觉呈现，完整logo设计流程分享。附：10个优秀logo案例分析。',
             '品牌设计笔记', '6532', ('logo设计', '品牌设计', '案例')),
        ),
        'tech': (
            ('AI辅助编程实战经验', '使用Claude、Copilot等AI工具进行开发的最佳实践，提示词技巧和常见问题解决方案。',
             '编程达人', '2.3w', ('AI', '编程', '开发工具')),
            ('Next.js 14新特性详解', 'Server Actions、Turbopack、Partial Prerendering等新特性完整指南，附实战项目案例。',
             '前端技术栈', '1.1w', ('Next.js', 'React', '前端')),
            ('数据库优化实战指南', '从索引优化到查询优化，从分库分表到读写分离，完整的数据库性能优化方案。',
             '后端架构', '7823', ('数据库', '性能优化', '架构')),
        ),
        'product': (
            ('如何写出一份完美的PRD', '从需求分析到功能设计，从用户故事到验收标准，手把手教你写出高质量的PRD文档。',
             '产品经理笔记', '3.5w', ('PRD', '产品文档', '需求')),
            ('用户体验设计的5个核心原则', '以用户为中心的设计思维，从可用性到愉悦感，打造超预期的用户体验。',
             'UX设计说', '1.8w', ('UX', '用户体验', '设计')),
            ('产品经理必会的数据分析方法', 'A/B测试、漏斗分析、用户分层，数据驱动产品决策的完整方法论。',
             '数据产品', '9234', ('数据分析', '产品经理', '增长')),
        ),
        'ai': (
            ('Claude 3.5完全评测', '对比GPT-4、Claude 3.5在代码生成、写作、推理等方面的表现，真实使用体验分享。',
             'AI工具评测', '4.2w', ('Claude', 'AI', 'LLM')),
            ('AI绘画提示词大全', 'Midjourney、Stable Diffusion提示词技巧，从风格描述到参数设置，创作高质量AI绘画。',
             'AI绘画实验室', '2.7w', ('AI绘画', 'Midjourney', '提示词')),
            ('个人AI助理搭建指南', '使用LangChain、向量数据库搭建个人知识库AI助手，让你的信息管理更高效。',
             'AI实践者', '1.5w', ('AI助手', 'LangChain', '知识库')),
        ),
    }

    def __init__(self, client, category: str = 'all', api_url: Optional[str] = None,
                 api_key: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(client, timeout)
        self.category = category if category in XIAOHONGSHU_CATEGORIES else 'all'
        self.api_url = api_url if api_url is not None else config.XIAOHONGSHU_API_URL
        self.api_key = api_key if api_key is not None else config.XIAOHONGSHU_API_KEY

    async def fetch_live(self, limit: int) -> List[FeedItem]:
        if not self.api_url:
            return []
        headers = {'User-Agent': BROWSER_UA, 'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        data = await self._get_json(f"{self.api_url}?category={quote(self.category)}&limit={limit}", headers)
        notes = data.get('data') if isinstance(data, dict) else data
        items: List[FeedItem] = []
        for note in (notes or [])[:limit]:
            if not isinstance(note, dict) or not note.get('title'):
                continue
            items.append(self._note_item(
                note['title'], note.get('summary') or note.get('desc') or '', note.get('author') or '小红书',
                str(note.get('likes') or ''), note.get('tags') or [], note.get('url'),
            ))
        return items

    def mock(self, limit: int) -> List[FeedItem]:
        categories = XIAOHONGSHU_CATEGORIES if self.category == 'all' else (self.category,)
        notes = [note for cat in categories for note in self.MOCK_NOTES[cat]]
        return [self._note_item(*note) for note in notes[:limit]]

    def _note_item(self, title: str, summary: str, author: str, likes: str, tags, url: Optional[str] = None) -> FeedItem:
        heading = f"🔥 {likes} • {title}" if likes else title
        return self._item(
            title=heading,
            link=url or f"{XIAOHONGSHU_SEARCH_URL}{quote(title)}",
            summary=f"{summary}\n\n作者: {author}",
            tags=['小红书', *tags],
        )


def get_hot_topic_fetcher(source_type: str, client, source_config: Optional[Dict[str, Any]] = None) -> HotTopicFetcher:
    """Fetcher instance for a hot-topic source type."""
    source_config = source_config or {}
    if source_type == SourceType.ZHIHU.value:
        return ZhihuHotFetcher(client)
    if source_type == SourceType.WEIBO.value:
        return WeiboHotFetcher(client)
    if source_type == SourceType.XIAOHONGSHU.value:
        return XiaohongshuFetcher(client, category=source_config.get('category', 'all'))
    raise ValueError(f"No hot-topic fetcher for source type '{source_type}'")


def default_limit_for(source_type: str) -> int:
    return {
        SourceType.ZHIHU.value: config.ZHIHU_LIMIT,
        SourceType.WEIBO.value: config.WEIBO_LIMIT,
        SourceType.XIAOHONGSHU.value: config.XIAOHONGSHU_LIMIT,
    }.get(source_type, 50)
