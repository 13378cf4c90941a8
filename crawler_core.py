#!/usr/bin/env python3
"""
Core crawler implementation: dedup, backpressure and a rate limited fetch pool
"""

import asyncio
import itertools
import logging
import random
import secrets
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

import aiohttp
from fake_useragent import UserAgent

from crawler_main import CrawlerConfig
from crawler_content import (
    ContentExtractor,
    ExtractionResult,
    ResponseKind,
    VideoRecord,
    VIDEO_ID_LENGTH,
    build_feed_uri,
    build_fuzzy_words,
    build_probe_uri,
    channel_id_from_url,
    clean_video_uri,
)

# The platform's url-safe base64 alphabet
BASE_ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_'

# Priority band for random probes, upper bound exclusive
RANDOM_PRIORITY_MIN = 1
RANDOM_PRIORITY_MAX = 3

DEFAULT_PRIORITY = 5

_user_agents = None


def random_char() -> str:
    """Generate a uniformly random id character"""
    return secrets.choice(BASE_ALPHABET)


def random_video_id() -> str:
    """Generate a pseudo-random video id"""
    return ''.join(random_char() for _ in range(VIDEO_ID_LENGTH))


def jittered(base_ms: float, spread_ms: float) -> float:
    """Delay in seconds, uniform in [base, base + spread) milliseconds"""
    return (base_ms + random.random() * spread_ms) / 1000


def random_user_agent() -> str:
    global _user_agents
    if _user_agents is None:
        _user_agents = UserAgent()
    return _user_agents.random


def build_headers(user_agent: str, origin: str = '') -> Dict[str, str]:
    """Browser-like request headers for the given origin"""
    return {
        'content-type': 'application/x-www-form-urlencoded',
        'user-agent': user_agent,
        'authority': origin,
        'cache-control': 'max-age=0',
        'origin': f"https://{origin}",
        'upgrade-insecure-requests': '1',
        'dnt': '1',
        'accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8',
        'sec-fetch-site': 'same-origin',
        'sec-fetch-mode': 'navigate',
        'sec-fetch-user': '?1',
        'sec-fetch-dest': 'document',
        'referer': f"https://{origin}/",
        'accept-language': 'en-GB,en-US;q=0.9,en;q=0.8',
        'sec-gpc': '1',
    }


class URLFrontier:
    """In-memory record of URIs already enqueued or crawled"""

    def __init__(self, max_seen: int):
        self.seen_urls: Set[str] = set()
        self.max_seen = max_seen

    def __contains__(self, uri: str) -> bool:
        return uri in self.seen_urls

    def __len__(self) -> int:
        return len(self.seen_urls)

    def mark_seen(self, uri: str) -> bool:
        """Record a URI, False if it was already present

        Must not await anything: membership check and insert are one step.
        """
        if uri in self.seen_urls:
            return False

        if len(self.seen_urls) >= self.max_seen:
            logging.info(f"Seen-set reached {self.max_seen} entries, clearing")
            self.seen_urls.clear()

        self.seen_urls.add(uri)
        return True

    def reset(self):
        self.seen_urls.clear()


class BackpressureGate:
    """Hysteresis gate over fetch queue depth"""

    def __init__(self, high: int, low: int):
        if low >= high:
            raise ValueError(f"Low water mark {low} must be below high water mark {high}")
        self.high = high
        self.low = low
        self.engaged = False

    def update(self, depth: int) -> bool:
        """Re-evaluate against the current depth and return the gate state"""
        if not self.engaged and depth > self.high:
            self.engaged = True
            logging.info(f"Queue depth {depth} above {self.high}, pausing discovery")
        elif self.engaged and depth <= self.low:
            self.engaged = False
            logging.info(f"Queue depth {depth} drained, resuming discovery")
        return self.engaged


class RecentQueries:
    """Recently searched query strings, cleared wholesale on overflow"""

    def __init__(self, max_size: int):
        self.max_size = max_size
        self.queries: Set[str] = set()

    def __contains__(self, query: str) -> bool:
        return query in self.queries

    def __len__(self) -> int:
        return len(self.queries)

    def add(self, query: str):
        if len(self.queries) >= self.max_size:
            self.queries.clear()
        self.queries.add(query)


class CrawlState:
    """Process-local crawl state shared by the orchestrator and strategies"""

    def __init__(self, config: CrawlerConfig):
        self.frontier = URLFrontier(config.seen_set_max)
        self.backpressure = BackpressureGate(config.backpressure_high, config.backpressure_low)
        self.recent_queries = RecentQueries(config.query_cache_max)
        self.suggested_queries: List[str] = []
        self.url_count_max = config.url_count_max
        self.indexed_count = 0
        self.failed_count = 0
        self._indexed_since_reset = 0

    def note_indexed(self):
        """Count an indexed item, resetting the seen-set every url_count_max items"""
        self.indexed_count += 1
        self._indexed_since_reset += 1
        if self._indexed_since_reset >= self.url_count_max:
            logging.info(f"Indexed {self._indexed_since_reset} items, resetting seen-set")
            self._indexed_since_reset = 0
            self.frontier.reset()


@dataclass(order=True)
class FetchRequest:
    """Queued fetch, ordered by priority then submission order"""
    priority: int
    sequence: int
    uri: str = field(compare=False)
    headers: Dict[str, str] = field(compare=False, default_factory=dict)
    timeout: Optional[float] = field(compare=False, default=None)
    delay: float = field(compare=False, default=0.0)


@dataclass
class FetchResult:
    uri: str
    status: Optional[int] = None
    body: str = ''
    error: Optional[BaseException] = None


class RateGate:
    """Fixed-interval gate between request starts"""

    def __init__(self, interval: float):
        self.interval = interval
        self._next_at = 0.0
        self._lock = asyncio.Lock()

    async def wait(self):
        async with self._lock:
            now = time.monotonic()
            if self._next_at > now:
                await asyncio.sleep(self._next_at - now)
            self._next_at = max(time.monotonic(), self._next_at) + self.interval

    def penalize(self, seconds: float):
        self._next_at = max(self._next_at, time.monotonic()) + seconds


class FetchPool:
    """Priority ordered fetch pool with bounded concurrency and retries"""

    def __init__(self, config: CrawlerConfig, handler: Callable[[FetchResult], Awaitable]):
        self.config = config
        self.handler = handler
        self.queue: asyncio.PriorityQueue = asyncio.PriorityQueue()
        self.rate_gate = RateGate(config.rate_limit_ms / 1000)
        self.session: Optional[aiohttp.ClientSession] = None
        self.in_flight = 0
        self._sequence = itertools.count()
        self._workers: List[asyncio.Task] = []

    @property
    def queue_size(self) -> int:
        """Pending plus in-flight requests"""
        return self.queue.qsize() + self.in_flight

    async def start(self):
        """Create the HTTP session and worker tasks"""
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        connector = aiohttp.TCPConnector(
            limit=max(self.config.max_connections * 2, 10),
            ttl_dns_cache=300,
            use_dns_cache=True,
        )
        self.session = aiohttp.ClientSession(timeout=timeout, connector=connector)
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.config.max_connections)
        ]
        logging.info(f"Fetch pool started with {self.config.max_connections} connections")

    def queue_request(self, uri: str, priority: int = DEFAULT_PRIORITY,
                      headers: Optional[Dict[str, str]] = None,
                      timeout: Optional[float] = None, delay: float = 0.0):
        """Enqueue a fetch without suspending"""
        self.queue.put_nowait(FetchRequest(
            priority=priority,
            sequence=next(self._sequence),
            uri=uri,
            headers=headers or {},
            timeout=timeout,
            delay=delay,
        ))

    def penalize(self, seconds: float):
        self.rate_gate.penalize(seconds)

    async def _worker(self, index: int):
        while True:
            request = await self.queue.get()
            self.in_flight += 1
            try:
                if request.delay > 0:
                    await asyncio.sleep(request.delay)
                result = await self.fetch(request)
                await self.handler(result)
            except Exception as e:
                logging.error(f"Fetch worker {index} failed on {request.uri}: {e}", exc_info=True)
            finally:
                self.in_flight -= 1
                self.queue.task_done()

    async def fetch(self, request: FetchRequest) -> FetchResult:
        """Fetch with a bounded number of retries on transport errors"""
        attempts = self.config.retries + 1
        error = None
        for attempt in range(attempts):
            await self.rate_gate.wait()
            try:
                return await self._fetch_once(request)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                error = e
                logging.debug(f"Attempt {attempt + 1}/{attempts} failed for {request.uri}: {e}")
        return FetchResult(uri=request.uri, error=error)

    async def _fetch_once(self, request: FetchRequest) -> FetchResult:
        kwargs = {'headers': request.headers}
        if request.timeout:
            kwargs['timeout'] = aiohttp.ClientTimeout(total=request.timeout)
        async with self.session.get(request.uri, **kwargs) as response:
            body = await response.text(errors='ignore')
            return FetchResult(uri=request.uri, status=response.status, body=body)

    async def request(self, method: str, uri: str, **kwargs) -> Tuple[int, str]:
        """Direct request outside the priority queue"""
        async with self.session.request(method, uri, **kwargs) as response:
            return response.status, await response.text(errors='ignore')

    async def close(self):
        """Stop workers, abandoning in-flight fetches"""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        if self.session:
            await self.session.close()
            self.session = None


class PeriodicTask:
    """Background job that reschedules itself after each tick until stopped

    ``tick`` returns the delay in seconds before the next tick; ``on_stop``
    runs when the task is stopped, to cancel work the tick spawned.
    """

    def __init__(self, name: str, tick: Callable[[], Awaitable[float]],
                 initial_delay: float = 0.0, error_delay: float = 5.0,
                 on_stop: Optional[Callable[[], None]] = None):
        self.name = name
        self.tick = tick
        self.on_stop = on_stop
        self.initial_delay = initial_delay
        self.error_delay = error_delay
        self.ticks = 0
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self):
        logging.info(f"Starting {self.name} in {self.initial_delay:.1f}s")
        self._task = asyncio.create_task(self._run())

    async def _run(self):
        if await self._wait(self.initial_delay):
            return
        while True:
            try:
                delay = await self.tick()
            except Exception as e:
                logging.error(f"{self.name} tick failed: {e}", exc_info=True)
                delay = self.error_delay
            self.ticks += 1
            if await self._wait(delay):
                return

    async def _wait(self, delay: float) -> bool:
        """Sleep for delay seconds, True if stopped meanwhile"""
        if self._stopped.is_set():
            return True
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=max(delay, 0))
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self, timeout: float = 1.0):
        self._stopped.set()
        if self.on_stop is not None:
            self.on_stop()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout)
        except asyncio.TimeoutError:
            logging.debug(f"{self.name} cancelled mid tick")


class FeedFollower:
    """Crawl the syndication feed of channels found while indexing"""

    def __init__(self, crawler: 'WebCrawler'):
        self.crawler = crawler
        self._tasks: Set[asyncio.Task] = set()

    def follow(self, author_url: Optional[str]) -> bool:
        """Schedule a feed crawl for a channel URL, False if not followed"""
        channel_id = channel_id_from_url(author_url)
        if not channel_id:
            return False

        feed_uri = build_feed_uri(channel_id)
        if not self.crawler.state.frontier.mark_seen(feed_uri):
            return False

        task = asyncio.create_task(self._crawl_feed(feed_uri, channel_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _crawl_feed(self, feed_uri: str, channel_id: str) -> int:
        try:
            status, body = await self.crawler.pool.request(
                'GET', feed_uri, headers={'user-agent': self.crawler.user_agent()}
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logging.warning(f"Unable to fetch channel feed {channel_id}: {e}")
            return 0

        if status != 200:
            logging.warning(f"Channel feed {channel_id} returned {status}")
            return 0

        added = 0
        for video_id in ContentExtractor.extract_feed_video_ids(body):
            if await self.crawler.crawl_video(video_id):
                added += 1
        logging.info(f"Added {added} channel videos for channel: {channel_id}")
        return added

    async def join(self):
        """Wait for feed crawls already scheduled"""
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self):
        for task in list(self._tasks):
            task.cancel()


class WebCrawler:
    """Main crawler: submits URIs, fetches them and indexes the responses"""

    def __init__(self, config: CrawlerConfig, storage, pool: Optional[FetchPool] = None,
                 state: Optional[CrawlState] = None,
                 user_agent_supplier: Optional[Callable[[], str]] = None):
        self.config = config
        self.storage = storage
        self.state = state or CrawlState(config)
        self.pool = pool or FetchPool(config, self.on_crawled)
        self.user_agent = user_agent_supplier or random_user_agent
        self.feed_follower = FeedFollower(self)

    async def initialize(self):
        await self.pool.start()

    def submit(self, uri: str, priority: int = DEFAULT_PRIORITY,
               timeout: Optional[float] = None, delay: float = 0.0) -> bool:
        """Put a URI into the fetch queue and seen-set, False if already seen"""
        if not self.state.frontier.mark_seen(uri):
            return False

        if not self.config.disable_metadata_gather:
            self.pool.queue_request(
                uri,
                priority=priority,
                headers=build_headers(self.user_agent(), 'www.youtube.com'),
                timeout=timeout,
                delay=delay,
            )
        return True

    async def crawl_video(self, video_id: Optional[str] = None, priority: int = 1) -> Optional[bool]:
        """Probe a known video id, or a random one when none is given

        Returns None when a random probe is deferred because the queue is
        too deep; the caller should try again after a backoff.
        """
        if video_id is None:
            if self.state.backpressure.engaged or self.pool.queue_size > self.config.random_probe_soft_cap:
                return None
            # Random priority so some probes still run while searches produce a lot
            return self.submit(
                build_probe_uri(random_video_id()),
                priority=random.randrange(RANDOM_PRIORITY_MIN, RANDOM_PRIORITY_MAX),
            )

        probe_uri = build_probe_uri(video_id)
        if not self.submit(probe_uri, priority=priority):
            return False

        # Save the known uri in case the process exits before the fetch completes
        await self.storage.upsert_video(VideoRecord(uri=clean_video_uri(probe_uri)))
        return True

    async def on_crawled(self, result: FetchResult) -> ExtractionResult:
        """Apply the response policy to one completed fetch"""
        extraction = ContentExtractor.classify_response(result.uri, result.status, result.body, result.error)
        kind = extraction.kind

        if kind in (ResponseKind.TRANSPORT_ERROR, ResponseKind.SERVER_ERROR, ResponseKind.UNEXPECTED):
            self.state.failed_count += 1
            logging.error(f"{extraction.detail} {result.uri}")
        elif kind == ResponseKind.UNAUTHORIZED:
            await self.storage.upsert_video(extraction.record)
        elif kind in (ResponseKind.OEMBED, ResponseKind.WATCH_PAGE):
            await self.index_video(extraction.record)
            self.state.note_indexed()
        elif kind == ResponseKind.MALFORMED:
            logging.warning(f"Unable to parse {result.uri}: {extraction.detail}")
        elif kind == ResponseKind.RATE_LIMITED:
            logging.warning(f"Rate limited: {result.uri}")
            self.pool.penalize(self.config.rate_limited_penalty_ms / 1000)

        return extraction

    async def index_video(self, record: VideoRecord):
        """Fuzzy index, persist and follow the channel of a mapped record"""
        record.fuzzy_words = build_fuzzy_words(record.title, record.description, record.author_name)
        await self.storage.upsert_video(record)

        if (not self.config.disable_channel_crawl
                and record.author_url
                and not self.state.backpressure.engaged):
            self.feed_follower.follow(record.author_url)

    def check_backpressure(self) -> bool:
        """Re-evaluate the backpressure gate against the current queue depth"""
        return self.state.backpressure.update(self.pool.queue_size)

    def stats(self) -> Dict:
        return {
            'total': len(self.state.frontier),
            'queueSize': self.pool.queue_size,
            'indexedCount': self.state.indexed_count,
            'failed': self.state.failed_count,
        }

    async def cleanup(self):
        """Cleanup resources"""
        self.feed_follower.cancel()
        await self.pool.close()
        logging.info(f"Crawler stopped: {self.stats()}")
