#!/usr/bin/env python3
"""
Main application entry point for the video indexer
Runs the crawler, its discovery strategies and the query endpoint
"""

import asyncio
import logging
import os
import signal
import sys
from dataclasses import fields
from pathlib import Path
from typing import List, Optional

import aiofiles
import yaml

from crawler_main import CrawlerConfig, ResourceMonitor
from crawler_core import WebCrawler
from crawler_discovery import schedule_strategies
from crawler_innertube import InnertubeClient
from crawler_storage import PostgresStorage
from health_check import ServerThread, create_app

ENV_MAPPING = {
    'DATABASE_URL': 'postgres_url',
    'LOG_LEVEL': 'log_level',
    'OUTPUT_DIR': 'output_dir',
    'WORDS_PATH': 'words_path',
    'MAX_CONNECTIONS': 'max_connections',
    'RATE_LIMIT': 'rate_limit_ms',
    'YOUTUBE_TIMEOUT_MIN': 'youtube_timeout_min_ms',
    'FULL_INFO_GATHER_TIMEOUT': 'full_info_gather_timeout_ms',
    'PORT': 'port',
    'BIND_IP': 'bind_ip',
    'INSTANCE_ID': 'instance_id',
    'DISABLE_METADATA_GATHER': 'disable_metadata_gather',
    'DISABLE_CHANNEL_CRAWL': 'disable_channel_crawl',
    'DISABLE_SUGGESTIONS': 'disable_suggestions',
    'DISABLE_MANUALQUERY': 'disable_manual_query',
    'DISABLE_SEARCH': 'disable_search',
    'DISABLE_DUCK_SEARCH': 'disable_duck_search',
    'DISABLE_YT_SEARCH': 'disable_yt_search',
    'DISABLE_RANDOMHASH': 'disable_random_hash',
    'DISABLE_UNKNOWN_GATHER': 'disable_unknown_gather',
}

STATS_INTERVAL = 30


def parse_flag(value: str) -> bool:
    return value.strip().lower() not in ('', '0', 'false', 'no')


def load_config(config_path: Optional[str] = None, environ=None) -> CrawlerConfig:
    """Load configuration from file or environment"""
    environ = os.environ if environ is None else environ
    config_data = {}

    # Load from YAML file if provided
    if config_path and Path(config_path).exists():
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}
        logging.info(f"Loaded config from {config_path}")

    # Override with environment variables
    types = {f.name: f.type for f in fields(CrawlerConfig)}
    for env_var, config_key in ENV_MAPPING.items():
        if env_var not in environ:
            continue
        value = environ[env_var]
        field_type = types[config_key]
        if field_type in (bool, 'bool'):
            value = parse_flag(value)
        elif field_type in (int, 'int'):
            value = int(value)
        elif config_key == 'full_info_gather_timeout_ms':
            value = float(value)
        config_data[config_key] = value

    return CrawlerConfig(**config_data)


async def load_words(path: str) -> List[str]:
    """Dictionary words for random searches"""
    if not Path(path).exists():
        logging.warning(f"Words list {path} not found, random searches disabled")
        return []
    async with aiofiles.open(path, 'r', encoding='utf-8') as f:
        content = await f.read()
    return [word.strip() for word in content.split('\n') if word.strip()]


class CrawlerApp:
    """Main crawler application"""

    def __init__(self, config_path: str = None):
        self.config = load_config(config_path)
        self.setup_logging()

        # Initialize components
        self.resource_monitor = ResourceMonitor(self.config)
        self.storage = None
        self.crawler = None
        self.server = None
        self.tasks = []

        # Graceful shutdown handling
        self.shutdown_event = asyncio.Event()
        self._loop = None
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def setup_logging(self):
        """Setup logging configuration"""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        os.makedirs(self.config.output_dir, exist_ok=True)

        logging.basicConfig(
            level=log_level,
            format=f"%(asctime)s - [{self.config.instance_id}] %(name)s - %(levelname)s - %(message)s",
            handlers=[
                logging.StreamHandler(sys.stdout),
                logging.FileHandler(f"{self.config.output_dir}/crawler.log")
            ]
        )

        # Reduce noise from external libraries
        logging.getLogger('aiohttp').setLevel(logging.WARNING)
        logging.getLogger('werkzeug').setLevel(logging.WARNING)

        logging.info("Logging initialized")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        logging.info(f"Received signal {signum}, initiating graceful shutdown...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    async def initialize(self):
        """Initialize all components"""
        logging.info("Initializing crawler components...")

        # Initialize PostgreSQL storage
        try:
            self.storage = PostgresStorage(self.config.postgres_url, pool_size=self.config.pool_size)
            await self.storage.initialize()
            logging.info("PostgreSQL storage initialized")
        except Exception as e:
            logging.error(f"Failed to initialize storage: {e}")
            raise

        # Initialize crawler
        self.crawler = WebCrawler(self.config, self.storage)
        await self.crawler.initialize()
        logging.info("Crawler initialized")

        # Start the stats/query server
        try:
            app = create_app(self.crawler, self.storage, self.config.items_per_page)
            self.server = ServerThread(app, self.config.bind_ip, self.config.listen_port)
            self.server.start()
        except OSError as e:
            logging.error(f"Failed to bind query server: {e}")
            raise

        words = await load_words(self.config.words_path)
        logging.info(f"Loaded {len(words)} dictionary words")

        search_client = InnertubeClient(self.crawler.pool.session, self.crawler.user_agent())
        self.tasks = schedule_strategies(self.crawler, self.storage, self.config, words, search_client)

    async def run(self):
        """Main application loop"""
        logging.info("Starting crawler application...")
        self._loop = asyncio.get_running_loop()

        try:
            await self.initialize()

            memory_mb = self.resource_monitor.get_memory_usage_mb()
            logging.info(f"Initial memory usage: {memory_mb:.1f}MB")

            logging.info("Starting crawling...")
            for task in self.tasks:
                task.start()

            stats_task = asyncio.create_task(self._stats_loop())
            await self.shutdown_event.wait()

            stats_task.cancel()
            try:
                await stats_task
            except asyncio.CancelledError:
                pass

            logging.info("Crawler stopping")

        except Exception as e:
            logging.error(f"Application error: {e}", exc_info=True)
            raise
        finally:
            await self.cleanup()

    async def _stats_loop(self):
        """Periodic stats logging"""
        while not self.shutdown_event.is_set():
            try:
                stats = self.crawler.stats()
                memory_mb = self.resource_monitor.get_memory_usage_mb()
                cpu_pct = self.resource_monitor.get_cpu_percent()
                logging.info(
                    f"Stats: {stats['total']} seen, {stats['queueSize']} queued, "
                    f"{stats['indexedCount']} indexed, {stats['failed']} failed, "
                    f"{memory_mb:.1f}MB RAM, {cpu_pct:.1f}% CPU, "
                    f"{self.resource_monitor.get_uptime():.0f}s runtime"
                )
                await asyncio.sleep(STATS_INTERVAL)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logging.error(f"Stats loop error: {e}")
                await asyncio.sleep(STATS_INTERVAL)

    async def cleanup(self):
        """Cleanup resources"""
        logging.info("Cleaning up resources...")

        for task in self.tasks:
            await task.stop()

        if self.server:
            self.server.shutdown()

        if self.crawler:
            await self.crawler.cleanup()

        if self.storage:
            await self.storage.close()

        logging.info("Cleanup completed")


async def main():
    """Main entry point"""
    config_path = os.getenv('CONFIG_PATH', 'config.yaml')

    app = CrawlerApp(config_path)

    try:
        await app.run()
    except KeyboardInterrupt:
        logging.info("Application interrupted by user")
    except Exception as e:
        logging.error(f"Application failed: {e}", exc_info=True)
        sys.exit(1)


def cli():
    asyncio.run(main())


if __name__ == "__main__":
    cli()
