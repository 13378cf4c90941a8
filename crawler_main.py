#!/usr/bin/env python3
"""
Video indexer configuration and resource monitoring

Architecture:
- Asyncio/aiohttp fetch pool for non-blocking I/O
- Independent self-rescheduling discovery strategies
- PostgreSQL for video records, query records and full-text search
- Flask endpoint for counters and ranked queries
"""

import os
import random
import time
from dataclasses import dataclass
from typing import Optional

import psutil


# Configuration
@dataclass
class CrawlerConfig:
    """Crawler configuration, kill switches and tuning constants"""
    # Kill switches
    disable_metadata_gather: bool = False
    disable_channel_crawl: bool = False
    disable_suggestions: bool = False
    disable_manual_query: bool = False
    disable_search: bool = False
    disable_duck_search: bool = False
    disable_yt_search: bool = False
    disable_random_hash: bool = False
    disable_unknown_gather: bool = False

    # Fetch pool
    max_connections: int = 1
    rate_limit_ms: int = 0  # Minimum gap between request starts, 0 = off
    request_timeout: float = 5.0
    retries: int = 1
    rate_limited_penalty_ms: int = 1000  # Added to the rate gate on HTTP 429

    # Dedup and backpressure
    seen_set_max: int = 50000
    url_count_max: int = 50000  # Indexed items until seen-set reset
    query_cache_max: int = 20000
    backpressure_high: int = 256
    backpressure_low: int = 4
    random_probe_soft_cap: int = 64

    # Strategy timing (milliseconds)
    random_probe_delay_ms: int = 50
    random_probe_backoff_ms: int = 5000
    youtube_timeout_min_ms: int = 500
    duck_delay_min_ms: int = 20000
    duck_delay_spread_ms: int = 30000
    duck_rate_limit_penalty_ms: int = 60000
    full_info_gather_timeout_ms: Optional[float] = None
    unknown_batch_size: int = 4

    # Cluster mode
    instance_id: int = 0

    # Query API
    port: int = 8080
    bind_ip: str = "0.0.0.0"
    items_per_page: int = 10

    # Storage
    postgres_url: str = os.getenv("DATABASE_URL", "postgresql://localhost/yt_indexer")
    pool_size: int = 3

    # Input/output
    words_path: str = "words.txt"
    output_dir: str = "./output"
    log_level: str = "INFO"

    def __post_init__(self):
        if self.full_info_gather_timeout_ms is None:
            # Spread full-info requests of cluster instances apart
            self.full_info_gather_timeout_ms = 250 + (500 * random.random() * self.instance_id)

    @property
    def listen_port(self) -> int:
        return self.port + self.instance_id


class ResourceMonitor:
    """Monitor process resources for the stats log and health route"""

    def __init__(self, config: CrawlerConfig):
        self.config = config
        self.process = psutil.Process()
        self.start_time = time.time()

    def get_memory_usage_mb(self) -> float:
        """Get current memory usage in MB"""
        return self.process.memory_info().rss / 1024 / 1024

    def get_cpu_percent(self) -> float:
        """Get current CPU usage percentage"""
        return self.process.cpu_percent()

    def get_uptime(self) -> float:
        return time.time() - self.start_time
