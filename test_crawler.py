#!/usr/bin/env python3
"""
End-to-end crawl through the real fetch pool with the network stubbed out
"""

import asyncio
import json

import pytest

from crawler_core import FetchPool, FetchResult, WebCrawler
from crawler_content import build_probe_uri, build_video_uri

CHANNEL_URL = 'https://www.youtube.com/channel/UCocean'
FEED_URI = 'https://www.youtube.com/feeds/videos.xml?channel_id=UCocean'

OEMBED = json.dumps({
    'title': 'Deep Sea Fishing Trip',
    'author_name': 'Ocean Life',
    'author_url': CHANNEL_URL,
    'type': 'video',
    'provider_name': 'YouTube',
})

FEED = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns:yt="http://www.youtube.com/xml/schemas/2015" xmlns="http://www.w3.org/2005/Atom">
  <entry><yt:videoId>aaaaaaaaaaa</yt:videoId></entry>
  <entry><yt:videoId>dQw4w9WgXcQ</yt:videoId></entry>
</feed>
"""


@pytest.fixture
def network(monkeypatch):
    """Canned responses keyed by URI, with a log of every request made"""
    responses = {build_probe_uri('dQw4w9WgXcQ'): (200, OEMBED), FEED_URI: (200, FEED)}
    log = []

    async def fake_fetch_once(self, request):
        log.append(('GET', request.uri))
        status, body = responses.get(request.uri, (404, 'Not Found'))
        return FetchResult(uri=request.uri, status=status, body=body)

    async def fake_request(self, method, uri, **kwargs):
        log.append((method, uri))
        return responses.get(uri, (404, 'Not Found'))

    monkeypatch.setattr(FetchPool, '_fetch_once', fake_fetch_once)
    monkeypatch.setattr(FetchPool, 'request', fake_request)
    return log


async def drain(crawler):
    await asyncio.wait_for(crawler.pool.queue.join(), timeout=2)
    await crawler.feed_follower.join()
    await asyncio.wait_for(crawler.pool.queue.join(), timeout=2)


@pytest.mark.asyncio
async def test_probe_to_index_and_channel_feed(config, storage, network):
    config.max_connections = 2
    crawler = WebCrawler(config, storage, user_agent_supplier=lambda: 'test-agent')
    await crawler.initialize()

    try:
        assert await crawler.crawl_video('dQw4w9WgXcQ') is True
        await drain(crawler)
    finally:
        await crawler.cleanup()

    stored = storage.videos[build_video_uri('dQw4w9WgXcQ')]
    assert stored.title == 'Deep Sea Fishing Trip'
    assert stored.author_url == CHANNEL_URL
    assert stored.fuzzy_words.split()[:4] == ['ocean', 'life', 'deep', 'sea']

    # The channel feed is fetched exactly once, and only its new video is probed
    assert network.count(('GET', FEED_URI)) == 1
    assert network.count(('GET', build_probe_uri('aaaaaaaaaaa'))) == 1
    assert network.count(('GET', build_probe_uri('dQw4w9WgXcQ'))) == 1
    assert build_video_uri('aaaaaaaaaaa') in storage.videos

    stats = crawler.stats()
    assert stats['indexedCount'] == 1
    assert stats['failed'] == 0
    assert stats['queueSize'] == 0


@pytest.mark.asyncio
async def test_metadata_gather_disabled_fetches_nothing(config, storage, network):
    config.disable_metadata_gather = True
    crawler = WebCrawler(config, storage, user_agent_supplier=lambda: 'test-agent')
    await crawler.initialize()

    try:
        assert await crawler.crawl_video('dQw4w9WgXcQ') is True
        await drain(crawler)
    finally:
        await crawler.cleanup()

    assert network == []
    assert storage.videos[build_video_uri('dQw4w9WgXcQ')].title is None
