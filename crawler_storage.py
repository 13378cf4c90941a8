#!/usr/bin/env python3
"""
PostgreSQL storage module for video and query records
Additive upserts, atomic query claims and language-neutral text search
"""

import asyncio
import logging
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool

from crawler_content import VideoRecord, build_fuzzy_words

VIDEO_COLUMNS = (
    'title', 'description', 'author_name', 'author_url', 'length_seconds',
    'view_count', 'category', 'upload_date', 'fuzzy_words',
)

SEARCH_TERM_REGEX = re.compile(r'\w+')


@dataclass
class SearchPage:
    total: int = 0
    results: List[Dict] = field(default_factory=list)


def build_tsquery(term: str) -> Optional[str]:
    """OR query over the normalized words of a search term"""
    words = []
    for word in SEARCH_TERM_REGEX.findall(term.lower()):
        if word not in words:
            words.append(word)
    if not words:
        return None
    return ' | '.join(words)


class PostgresStorage:
    """PostgreSQL storage for crawl results with connection pooling"""

    def __init__(self, connection_string: str, pool_size: int = 3):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._slots = threading.BoundedSemaphore(pool_size)
        self._executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix='storage')

    async def initialize(self):
        """Initialize database tables and connection pool"""
        try:
            self.pool = psycopg2.pool.ThreadedConnectionPool(
                1, self.pool_size, self.connection_string
            )
            logging.info(f"Created PostgreSQL connection pool (size: {self.pool_size})")
        except Exception as e:
            logging.error(f"Failed to create connection pool: {e}")
            raise

        await self._run(self._create_tables)

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    @contextmanager
    def _connection(self):
        with self._slots:
            conn = self.pool.getconn()
            try:
                yield conn
            finally:
                self.pool.putconn(conn)

    def _create_tables(self):
        """Create necessary database tables"""
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS videos (
                            id BIGSERIAL PRIMARY KEY,
                            uri TEXT UNIQUE NOT NULL,
                            title TEXT,
                            description TEXT,
                            author_name TEXT,
                            author_url TEXT,
                            length_seconds INTEGER,
                            view_count BIGINT,
                            category TEXT,
                            upload_date TEXT,
                            fuzzy_words TEXT,
                            fuzzy_tsv TSVECTOR GENERATED ALWAYS AS
                                (to_tsvector('simple', COALESCE(fuzzy_words, ''))) STORED,
                            detail_checked_at TIMESTAMP,
                            created_at TIMESTAMP DEFAULT NOW(),
                            updated_at TIMESTAMP DEFAULT NOW()
                        );
                    """)

                    # Tokens are pre-normalized, so no language specific stemming
                    cur.execute("""
                        CREATE INDEX IF NOT EXISTS idx_videos_fuzzy_tsv
                        ON videos USING GIN(fuzzy_tsv);
                    """)

                    cur.execute("""
                        CREATE INDEX IF NOT EXISTS idx_videos_detail_checked_at
                        ON videos(detail_checked_at NULLS FIRST);
                    """)

                    cur.execute("""
                        CREATE TABLE IF NOT EXISTS queries (
                            id SERIAL PRIMARY KEY,
                            query TEXT UNIQUE NOT NULL,
                            date TIMESTAMP NOT NULL DEFAULT NOW(),
                            crawl_date TIMESTAMP
                        );
                    """)

                    conn.commit()
                    logging.info("Database tables created/verified successfully")

            except Exception as e:
                logging.error(f"Failed to create database tables: {e}")
                conn.rollback()
                raise

    async def upsert_video(self, record: VideoRecord):
        await self._run(self.upsert_video_sync, record)

    def upsert_video_sync(self, record: VideoRecord):
        """Insert or enrich a video, never replacing stored values with empty ones"""
        fields = record.partial_fields()
        values = [fields.get(column) for column in VIDEO_COLUMNS]
        columns = ', '.join(VIDEO_COLUMNS)
        placeholders = ', '.join(['%s'] * (len(VIDEO_COLUMNS) + 1))
        merges = ', '.join(
            f"{column} = COALESCE(EXCLUDED.{column}, videos.{column})" for column in VIDEO_COLUMNS
        )

        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(f"""
                        INSERT INTO videos (uri, {columns})
                        VALUES ({placeholders})
                        ON CONFLICT (uri) DO UPDATE SET
                            {merges},
                            updated_at = NOW()
                        RETURNING title, description, author_name, fuzzy_words
                    """, [record.uri] + values)
                    title, description, author_name, fuzzy_words = cur.fetchone()

                    # Tokens follow the merged row, not just the latest partial write
                    merged_fuzzy = build_fuzzy_words(title, description, author_name)
                    if merged_fuzzy and merged_fuzzy != fuzzy_words:
                        cur.execute(
                            "UPDATE videos SET fuzzy_words = %s WHERE uri = %s",
                            (merged_fuzzy, record.uri),
                        )

                conn.commit()
                logging.debug(f"Stored video {record.uri}")

            except psycopg2.Error as e:
                logging.error(f"Failed to store video {record.uri}: {e}")
                conn.rollback()

    async def find_incomplete(self, limit: int = 4) -> List[VideoRecord]:
        return await self._run(self.find_incomplete_sync, limit)

    def find_incomplete_sync(self, limit: int = 4) -> List[VideoRecord]:
        """Videos with empty title and description, least recently checked first"""
        with self._connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute("""
                        UPDATE videos SET detail_checked_at = NOW()
                        WHERE id IN (
                            SELECT id FROM videos
                            WHERE COALESCE(title, '') = '' AND COALESCE(description, '') = ''
                            ORDER BY detail_checked_at NULLS FIRST
                            LIMIT %s
                            FOR UPDATE SKIP LOCKED
                        )
                        RETURNING uri, title, description, author_name, author_url
                    """, (limit,))
                    rows = cur.fetchall()
                conn.commit()
                return [VideoRecord(**row) for row in rows]

            except psycopg2.Error as e:
                logging.error(f"Failed to find incomplete videos: {e}")
                conn.rollback()
                return []

    async def claim_next_query(self) -> Optional[str]:
        return await self._run(self.claim_next_query_sync)

    def claim_next_query_sync(self) -> Optional[str]:
        """Atomically mark one uncrawled query as crawled and return it"""
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("""
                        UPDATE queries SET crawl_date = NOW()
                        WHERE id = (
                            SELECT id FROM queries
                            WHERE crawl_date IS NULL
                            ORDER BY date
                            LIMIT 1
                            FOR UPDATE SKIP LOCKED
                        )
                        RETURNING query
                    """)
                    row = cur.fetchone()
                conn.commit()
                return row[0] if row else None

            except psycopg2.Error as e:
                logging.error(f"Failed to claim query: {e}")
                conn.rollback()
                return None

    def record_query(self, query: str):
        """Store a searched query string so crawlers can check it out"""
        if not query.strip():
            return

        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute("""
                        INSERT INTO queries (query, date) VALUES (%s, NOW())
                        ON CONFLICT (query) DO UPDATE SET date = NOW()
                    """, (query,))
                conn.commit()
            except psycopg2.Error:
                conn.rollback()
                raise

    def search_videos(self, term: str, page: int = 0, per_page: int = 10) -> SearchPage:
        """Ranked full-text search over the fuzzy tokens"""
        tsquery = build_tsquery(term)
        if tsquery is None:
            return SearchPage()

        with self._connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    cur.execute("""
                        SELECT COUNT(*) AS count FROM videos
                        WHERE fuzzy_tsv @@ to_tsquery('simple', %s)
                    """, (tsquery,))
                    total = cur.fetchone()['count']

                    cur.execute("""
                        SELECT uri, title, description, author_name, author_url,
                               length_seconds, view_count, category, upload_date,
                               ts_rank(fuzzy_tsv, query) AS score
                        FROM videos, to_tsquery('simple', %s) AS query
                        WHERE fuzzy_tsv @@ query
                        ORDER BY score DESC
                        LIMIT %s OFFSET %s
                    """, (tsquery, per_page, per_page * page))
                    results = [dict(row) for row in cur.fetchall()]
                conn.commit()
                return SearchPage(total=total, results=results)

            except psycopg2.Error:
                conn.rollback()
                raise

    def count_videos(self) -> int:
        with self._connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM videos")
                count = cur.fetchone()[0]
            conn.commit()
            return count

    def ping(self) -> bool:
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                conn.commit()
            return True
        except psycopg2.Error as e:
            logging.warning(f"Database ping failed: {e}")
            return False

    async def close(self):
        """Close connection pool"""
        self._executor.shutdown(wait=False)
        if self.pool:
            self.pool.closeall()
            logging.info("Closed PostgreSQL connection pool")
