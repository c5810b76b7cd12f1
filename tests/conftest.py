import json
import os
from types import SimpleNamespace

os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from config import config
from models import DatabaseQueue
from page_fetcher import PageFetcher


RSS_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/"
     xmlns:prism="http://prismstandard.org/namespaces/basic/2.0/">
  <channel>
    <title>Journal of Testing</title>
    <link>https://journal.example.org</link>
    <description>Latest articles</description>
    <item>
      <title>Retrieval practice in online courses</title>
      <link>https://journal.example.org/article/1</link>
      <guid>https://journal.example.org/article/1</guid>
      <dc:creator>Ana Silva, Bo Chen</dc:creator>
      <prism:doi>10.1234/jot.2024.001</prism:doi>
      <pubDate>Fri, 01 Mar 2024 10:00:00 GMT</pubDate>
      <description>&lt;p&gt;We study how retrieval practice affects long-term retention in large online courses with randomized assignments.&lt;/p&gt;</description>
    </item>
    <item>
      <title>Metacognitive prompts and self-explanation</title>
      <link>https://journal.example.org/article/2</link>
      <guid>https://journal.example.org/article/2</guid>
      <dc:creator>Carla Diaz</dc:creator>
      <prism:doi>10.1234/jot.2024.002</prism:doi>
      <pubDate>Sat, 02 Mar 2024 10:00:00 GMT</pubDate>
      <description>Short.</description>
    </item>
    <item>
      <title>Tutoring dialogues at scale</title>
      <link>https://journal.example.org/article/3</link>
      <guid>tag:journal.example.org,2024:3</guid>
      <pubDate>Sun, 03 Mar 2024 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

# Publisher feed with empty dc/prism elements and metadata in the description
BRACKET_FEED = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Japanese Journal of Testing</title>
    <link>https://jjt.example.jp</link>
    <item>
      <title>Worked examples for novice programmers</title>
      <link>https://jjt.example.jp/article/1</link>
      <description>[ Authors ] Ana Silva, Bo Chen [ DOI ] 10.1234/jjt.2024.1 [ Published ] 2024-03-01 [ Abstract ] We compare worked examples with problem solving practice in introductory programming.</description>
    </item>
    <item>
      <title>Feedback timing in tutoring systems</title>
      <link>https://jjt.example.jp/article/2</link>
      <description>[ Authors ] Carla Diaz [ DOI ] 10.1234/jjt.2024.2 [ Published ] 2024-03-08 [ Abstract ] Feedback timing matters for novices working with intelligent tutoring systems.</description>
    </item>
  </channel>
</rss>
"""

LISTING_HTML = """<html><head><title>Journal of Testing - Latest articles</title>
<script>var tracking = 1;</script><style>.x { color: red }</style></head>
<body>
<nav><a href="/">Home</a></nav>
<ul class="articles">
  <li class="article">
    <h3 class="title"><a href="/article/101">Worked examples for novice programmers</a></h3>
    <span class="authors">Ana Silva, Bo Chen</span>
    <time datetime="2024-03-01">1 March 2024</time>
    <a class="doi" href="https://doi.org/10.1234/jot.101">DOI</a>
  </li>
  <li class="article">
    <h3 class="title"><a href="/article/102">Feedback timing in intelligent tutors</a></h3>
    <span class="authors">Carla Diaz</span>
    <time datetime="2024-02-20">20 February 2024</time>
    <a class="doi" href="https://doi.org/10.1234/jot.102">DOI</a>
  </li>
  <li class="article">
    <h3 class="title"><a href="/article/103">Peer assessment reliability</a></h3>
    <span class="authors">Dan Evans; Eve Fox</span>
    <time>5 February 2024</time>
  </li>
</ul>
<footer>Copyright</footer>
</body></html>
"""

HOME_HTML = """<html><head><title>Journal of Testing</title></head>
<body><h1>Journal of Testing</h1><p>Aims and scope.</p>
<a href="/latest">Latest articles</a></body></html>
"""

LISTING_SELECTORS = {
    "paper_container": "li.article",
    "title": "h3.title",
    "url": "h3.title a",
    "url_attr": "href",
    "authors": "span.authors",
    "date": "time",
    "doi": "a.doi",
    "doi_attr": "href",
}


class SourceSite:
    """Scripted HTTP responses keyed by path, with a hit counter."""

    def __init__(self):
        self.routes = {}
        self.hits = {}
        self.server = None

    def add(self, path, body="", status=200, content_type="text/html", headers=None):
        self.routes[path] = (status, body, content_type, headers or {})

    def redirect(self, path, location, status=302):
        self.routes[path] = (status, "", None, {"Location": location})

    def url(self, path):
        return str(self.server.make_url(path))

    async def handle(self, request):
        path = request.path
        self.hits[path] = self.hits.get(path, 0) + 1
        if path not in self.routes:
            return web.Response(status=404, text="not found")
        status, body, content_type, headers = self.routes[path]
        if content_type is None:
            return web.Response(status=status, headers=headers)
        return web.Response(status=status, text=body, content_type=content_type, headers=headers)


@pytest_asyncio.fixture
async def site():
    source = SourceSite()
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", source.handle)
    source.server = TestServer(app)
    await source.server.start_server()
    yield source
    await source.server.close()


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "DATABASE_PATH", str(tmp_path / "test.db"))
    queue = DatabaseQueue(str(tmp_path / "test.db"))
    await queue.start()
    yield queue
    await queue.stop()


@pytest_asyncio.fixture
async def page_fetcher():
    fetcher = PageFetcher(max_retries=0)
    yield fetcher
    await fetcher.close()


class ScriptedLLM:
    """OpenAI-shaped client that answers with queued replies in order."""

    def __init__(self, replies):
        self.replies = [r if isinstance(r, str) else json.dumps(r) for r in replies]
        self.calls = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    async def _create(self, **kwargs):
        self.calls.append(kwargs)
        if not self.replies:
            raise AssertionError("Unexpected AI call")
        content = self.replies.pop(0)
        message = SimpleNamespace(content=content, refusal=None)
        return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def rss_feed():
    return RSS_FEED


@pytest.fixture
def listing_html():
    return LISTING_HTML


@pytest.fixture
def home_html():
    return HOME_HTML


@pytest.fixture
def listing_selectors():
    return dict(LISTING_SELECTORS)


@pytest.fixture
def bracket_feed():
    return BRACKET_FEED
