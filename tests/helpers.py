import asyncio
from typing import Dict, List, Optional, Tuple

from transport import HttpResponse, Transport


RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Blog</title>
    <link>https://example.com/</link>
    <description>Posts from an example blog</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <description>&lt;p&gt;Hello &lt;b&gt;world&lt;/b&gt;&lt;/p&gt;</description>
      <pubDate>Mon, 01 Jan 2024 00:00:00 GMT</pubDate>
      <category>news</category>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <description>Another entry</description>
      <pubDate>Tue, 02 Jan 2024 00:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

EMPTY_RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Quiet Blog</title>
    <link>https://quiet.example/</link>
    <description>Nothing published here yet, but the channel is valid</description>
  </channel>
</rss>
"""

HTML_PAGE = """<!DOCTYPE html>
<html><head><title>Example Domain</title></head>
<body><h1>Example Domain</h1><p>This domain is for use in illustrative examples in documents.</p></body>
</html>
"""

CHALLENGE_PAGE = """<!DOCTYPE html>
<html><head><title>Just a moment...</title></head>
<body><div id="challenge-platform">Checking your browser before accessing the site.</div>
<p>This process is automatic. Your browser will redirect to your requested content shortly.</p></body>
</html>
"""


def rss_with_items(count: int, prefix: str = "https://example.com/posts") -> str:
    items = "".join(
        f"<item><title>Post {i}</title><link>{prefix}/{i}</link>"
        f"<description>Body of post {i}</description>"
        f"<pubDate>0{1 + i % 9} Jan 2024 00:00:00 GMT</pubDate></item>"
        for i in range(count)
    )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel>'
        f"<title>Feed with {count} items</title><link>https://example.com/</link>"
        f"<description>Generated feed</description>{items}</channel></rss>"
    )


class FakeHttpClient:
    """Stands in for transport.HttpClient.

    Routes map an exact URL to a response, an exception instance, or a list
    of those consumed one per call (the last one repeats). Unrouted URLs
    answer 404. Every call is recorded as (method, url, headers).
    """

    def __init__(self):
        self.routes: Dict[str, list] = {}
        self.delays: Dict[str, float] = {}
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []

    def route(self, url: str, *responses, delay: float = 0.0) -> None:
        self.routes[url] = list(responses)
        if delay:
            self.delays[url] = delay

    def ok(self, url: str, text: str, status: int = 200, delay: float = 0.0) -> None:
        self.route(url, HttpResponse(status=status, text=text), delay=delay)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [u for m, u, _ in self.calls if method is None or m == method]

    async def get(self, url, headers=None, timeout=30, method="GET"):
        self.calls.append((method, url, dict(headers or {})))
        if url in self.delays:
            await asyncio.sleep(self.delays[url])
        responses = self.routes.get(url)
        if not responses:
            return HttpResponse(status=404, text="not found")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        pass


def make_transport(client, **overrides) -> Transport:
    """Transport with no config-derived relays, so each test states its own."""
    settings = dict(
        proxy_base_url=None,
        use_config_proxy=False,
        user_agents=["TestAgent/1.0"],
        cors_proxies=[],
        rsshub_mirrors=[{"name": "mirror-a", "template": "https://mirror-a.test/raw?url={url}"}],
        rsshub_hosts=[],
        http_timeout=1,
        rsshub_timeout=1,
        rsshub_retries=1,
        rsshub_retry_delay=0,
    )
    settings.update(overrides)
    return Transport(client, **settings)

