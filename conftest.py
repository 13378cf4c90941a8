"""
Shared fixtures: in-memory stand-ins for the database and the fetch pool
"""

import pytest

from crawler_main import CrawlerConfig
from crawler_core import FetchRequest, WebCrawler
from crawler_content import VideoRecord, build_fuzzy_words
from crawler_storage import SearchPage, build_tsquery


class DummyStorage:
    """Video and query store with the same merge rules as PostgresStorage"""

    def __init__(self):
        self.videos = {}
        self.pending_queries = []
        self.recorded_queries = []
        self.incomplete = []
        self.healthy = True
        self.upserts = []

    async def upsert_video(self, record: VideoRecord):
        self.upserts.append(record)
        stored = self.videos.setdefault(record.uri, VideoRecord(uri=record.uri))
        for key, value in record.partial_fields().items():
            setattr(stored, key, value)
        merged = build_fuzzy_words(stored.title, stored.description, stored.author_name)
        if merged:
            stored.fuzzy_words = merged

    async def find_incomplete(self, limit: int = 4):
        return self.incomplete[:limit]

    async def claim_next_query(self):
        if self.pending_queries:
            return self.pending_queries.pop(0)
        return None

    def record_query(self, query: str):
        if query.strip():
            self.recorded_queries.append(query)

    def search_videos(self, term: str, page: int = 0, per_page: int = 10) -> SearchPage:
        tsquery = build_tsquery(term)
        if tsquery is None:
            return SearchPage()
        wanted = set(tsquery.split(' | '))
        rows = []
        for record in self.videos.values():
            tokens = set((record.fuzzy_words or '').split())
            score = len(tokens & wanted)
            if score:
                row = record.partial_fields()
                row.pop('fuzzy_words', None)
                row['score'] = float(score)
                rows.append(row)
        rows.sort(key=lambda row: row['score'], reverse=True)
        start = page * per_page
        return SearchPage(total=len(rows), results=rows[start:start + per_page])

    def count_videos(self) -> int:
        return len(self.videos)

    def ping(self) -> bool:
        return self.healthy


class DummyPool:
    """Records queued fetches and answers direct requests from canned responses"""

    def __init__(self):
        self.requests = []
        self.calls = []
        self.responses = {}
        self.penalties = []
        self.queue_size = 0
        self.session = None

    def queue_request(self, uri, priority=5, headers=None, timeout=None, delay=0.0):
        self.requests.append(FetchRequest(
            priority=priority,
            sequence=len(self.requests),
            uri=uri,
            headers=headers or {},
            timeout=timeout,
            delay=delay,
        ))

    def penalize(self, seconds):
        self.penalties.append(seconds)

    async def request(self, method, uri, **kwargs):
        self.calls.append((method, uri, kwargs))
        response = self.responses.get(uri, (200, ''))
        if isinstance(response, BaseException):
            raise response
        return response

    async def close(self):
        pass

    @property
    def uris(self):
        return [request.uri for request in self.requests]


@pytest.fixture
def config():
    return CrawlerConfig(full_info_gather_timeout_ms=250)


@pytest.fixture
def storage():
    return DummyStorage()


@pytest.fixture
def pool():
    return DummyPool()


@pytest.fixture
def crawler(config, storage, pool):
    return WebCrawler(config, storage, pool=pool, user_agent_supplier=lambda: 'test-agent')
