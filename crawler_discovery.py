#!/usr/bin/env python3
"""
Discovery strategies feeding video URIs into the crawler

Each strategy exposes an async ``tick()`` returning the delay in seconds
until its next tick; ``schedule_strategies`` wraps the enabled ones in
staggered PeriodicTask instances.
"""

import asyncio
import logging
import random
from enum import Enum
from typing import Dict, List, Optional, Tuple

import aiohttp

from crawler_main import CrawlerConfig
from crawler_core import PeriodicTask, WebCrawler, build_headers, jittered, random_char
from crawler_content import ContentExtractor

DUCK_URL = 'https://html.duckduckgo.com/html/'
DUCK_ORIGIN = 'html.duckduckgo.com'
SEED_QUERY_PREFIX = 'site:youtube.com/watch?v='

# Per-instance start offsets in seconds, instance 0 starts immediately
DUCK_STAGGER = 10.0
YT_SEARCH_STAGGER = 1.5
UNKNOWN_GATHER_STAGGER = 1.0


class RandomProbe:
    """Feed random video ids into the fetch pool"""

    name = 'random-probe'

    def __init__(self, crawler: WebCrawler, config: CrawlerConfig):
        self.crawler = crawler
        self.config = config

    async def tick(self) -> float:
        self.crawler.check_backpressure()
        accepted = await self.crawler.crawl_video()
        if accepted is None:
            # Queue too deep, check again later
            backoff = self.config.random_probe_backoff_ms
            return jittered(backoff, backoff / 5)
        return self.config.random_probe_delay_ms / 1000


class ScrapeSession:
    """Opaque continuation state of one search-engine query

    Holds the hidden form fields of the last result page and the user agent
    the query was started with. Only DuckDuckGoScraper builds or reads it.
    """

    def __init__(self, params: Dict[str, str], user_agent: str):
        self._params = dict(params)
        self._user_agent = user_agent

    @classmethod
    def seed(cls, user_agent: str) -> 'ScrapeSession':
        return cls({'q': SEED_QUERY_PREFIX + random_char()}, user_agent)

    @classmethod
    def from_page(cls, html: str, user_agent: str) -> Optional['ScrapeSession']:
        fields = ContentExtractor.extract_continuation(html)
        if not fields:
            return None
        return cls(fields, user_agent)

    @property
    def query(self) -> str:
        return self._params.get('q', '')

    @property
    def user_agent(self) -> str:
        return self._user_agent

    def form_data(self) -> Dict[str, str]:
        return dict(self._params)


class ScrapeState(Enum):
    IDLE = 'idle'
    SENDING = 'sending'
    PARSING_RESULTS = 'parsing_results'
    PARSING_CONTINUATION = 'parsing_continuation'
    RATE_LIMITED = 'rate_limited'


class DuckDuckGoScraper:
    """Paginated scrape of DuckDuckGo's HTML results for video URLs"""

    name = 'duck-search'

    def __init__(self, crawler: WebCrawler, config: CrawlerConfig):
        self.crawler = crawler
        self.config = config
        self.session: Optional[ScrapeSession] = None
        self.state = ScrapeState.IDLE

    def _delay(self, rate_limited: bool = False) -> float:
        delay = jittered(self.config.duck_delay_min_ms, self.config.duck_delay_spread_ms)
        if rate_limited:
            delay += self.config.duck_rate_limit_penalty_ms / 1000
        return delay

    async def tick(self) -> float:
        if self.session is None:
            self.session = ScrapeSession.seed(self.crawler.user_agent())

        # Let the queue process, keep the pending page for later
        if self.crawler.check_backpressure():
            return self._delay()

        session = self.session
        self.state = ScrapeState.SENDING
        logging.info(f"Searching DuckDuckGo for: {session.query}")
        try:
            status, html = await self.crawler.pool.request(
                'POST', DUCK_URL,
                headers=build_headers(session.user_agent, DUCK_ORIGIN),
                data=session.form_data(),
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logging.error(f"Unable to reach DuckDuckGo: {e}")
            status, html = None, ''

        if status is None or not 200 <= status < 300:
            if status is not None:
                logging.error(f"DuckDuckGo returned {status}, backing off")
            self.state = ScrapeState.RATE_LIMITED
            self.session = None
            return self._delay(rate_limited=True)

        self.state = ScrapeState.PARSING_RESULTS
        video_ids = ContentExtractor.extract_video_ids(html)
        added = 0
        for video_id in video_ids:
            # Ids surfaced by a search engine are cheap to confirm, highest priority
            if await self.crawler.crawl_video(video_id, priority=0):
                added += 1
        logging.info(f"Added {added} duck videos")

        self.state = ScrapeState.PARSING_CONTINUATION
        next_session = ScrapeSession.from_page(html, session.user_agent)
        if not video_ids or next_session is None:
            logging.info(f"No more results for {session.query}, switching query")
            next_session = None

        self.session = next_session
        self.state = ScrapeState.IDLE
        return self._delay()


class YouTubeSearchDriver:
    """Search the platform for dictionary words, suggestions and user queries"""

    name = 'yt-search'

    def __init__(self, crawler: WebCrawler, storage, config: CrawlerConfig,
                 words: List[str], search_client):
        self.crawler = crawler
        self.storage = storage
        self.config = config
        self.words = words
        self.search_client = search_client
        self._tasks = set()

    def _delay(self) -> float:
        minimum = self.config.youtube_timeout_min_ms
        return jittered(minimum, minimum)

    async def tick(self) -> float:
        delay = self._delay()

        if self.crawler.check_backpressure():
            logging.info("Queue size too large, skipping youtube video search")
            return delay

        query, has_suggested_query = await self.next_query()
        if query:
            await self.search(query, has_suggested_query=has_suggested_query)
        return delay

    async def next_query(self) -> Tuple[Optional[str], bool]:
        """Manual query, else suggested query, else a random dictionary word"""
        suggested = self.crawler.state.suggested_queries
        has_suggested_query = len(suggested) > 0

        if not self.config.disable_manual_query:
            manual_query = await self.storage.claim_next_query()
            if manual_query:
                return manual_query, has_suggested_query

        if has_suggested_query:
            return suggested.pop(), True

        if not self.words:
            return None, False
        return random.choice(self.words), False

    async def search(self, query: str, priority: int = 1, has_suggested_query: bool = False) -> int:
        """Search a query string and add the resulting videos to the crawler"""
        state = self.crawler.state

        # Already searched this recently
        if query in state.recent_queries:
            return 0

        logging.info(f"Searching YouTube for: {query}")

        if (not self.config.disable_suggestions
                and not has_suggested_query
                and not state.suggested_queries):
            task = asyncio.create_task(self.crawl_suggestions(query))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        state.recent_queries.add(query)

        try:
            video_ids = await self.search_client.search(query)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logging.error(f"Unable to crawl search {query}: {e}")
            return 0

        added = 0
        for video_id in video_ids:
            if video_id and await self.crawler.crawl_video(video_id, priority):
                added += 1
        logging.info(f"Added {added} videos with query {query}")
        return added

    async def crawl_suggestions(self, query: str) -> int:
        """Add query suggestions to the suggested list while it is empty"""
        logging.info(f"Crawling suggestions {query}")
        try:
            suggestions = await self.search_client.get_query_suggestions(query)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logging.error(f"Unable to get suggestions: {e}")
            return 0

        suggested = self.crawler.state.suggested_queries
        if suggestions and not suggested:
            for suggestion in suggestions:
                if suggestion not in suggested:
                    suggested.append(suggestion)
        return len(suggested)

    async def join(self):
        """Wait for suggestion crawls already scheduled"""
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self):
        for task in list(self._tasks):
            task.cancel()


class UnknownDetailSweeper:
    """Re-crawl watch pages of known videos that still lack details

    Full watch pages are rate limited much sooner than oEmbed, so requests
    within a batch are staggered.
    """

    name = 'unknown-gather'

    def __init__(self, crawler: WebCrawler, storage, config: CrawlerConfig):
        self.crawler = crawler
        self.storage = storage
        self.config = config

    async def tick(self) -> float:
        gather_ms = self.config.full_info_gather_timeout_ms
        batch_size = self.config.unknown_batch_size
        delay = batch_size * 2 * gather_ms / 1000

        if self.crawler.check_backpressure():
            return delay

        logging.info("Gathering video details for unknown titles/descriptions...")
        videos = await self.storage.find_incomplete(batch_size)

        added = 0
        for i, video in enumerate(videos):
            if self.crawler.submit(video.uri, priority=0, delay=i * gather_ms / 1000):
                added += 1
        logging.info(f"Added {added} full meta urls to crawl")
        return delay


def schedule_strategies(crawler: WebCrawler, storage, config: CrawlerConfig,
                        words: List[str], search_client) -> List[PeriodicTask]:
    """Build periodic tasks for every enabled strategy, staggered per instance"""
    tasks = []
    instance = config.instance_id

    if not config.disable_search:
        if not config.disable_duck_search:
            scraper = DuckDuckGoScraper(crawler, config)
            tasks.append(PeriodicTask(scraper.name, scraper.tick, instance * DUCK_STAGGER))

        if not config.disable_yt_search:
            driver = YouTubeSearchDriver(crawler, storage, config, words, search_client)
            tasks.append(PeriodicTask(driver.name, driver.tick, instance * YT_SEARCH_STAGGER,
                                      on_stop=driver.cancel))

    if not config.disable_random_hash:
        probe = RandomProbe(crawler, config)
        tasks.append(PeriodicTask(probe.name, probe.tick))

    if not config.disable_unknown_gather:
        sweeper = UnknownDetailSweeper(crawler, storage, config)
        tasks.append(PeriodicTask(sweeper.name, sweeper.tick, instance * UNKNOWN_GATHER_STAGGER))

    return tasks
