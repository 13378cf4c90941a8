"""
PostgreSQL integration tests, run against the database in TEST_DATABASE_URL
"""

import os
from concurrent.futures import ThreadPoolExecutor

import pytest

from crawler_content import VideoRecord
from crawler_storage import PostgresStorage, build_tsquery

TEST_DATABASE_URL = os.getenv('TEST_DATABASE_URL')

needs_database = pytest.mark.skipif(not TEST_DATABASE_URL, reason='TEST_DATABASE_URL not set')

URI = 'https://www.youtube.com/watch?v=dQw4w9WgXcQ'


def test_build_tsquery():
    assert build_tsquery('Deep  sea, deep!') == 'deep | sea'
    assert build_tsquery('  ?! ') is None
    assert build_tsquery("o'reilly") == 'o | reilly'


@pytest.fixture
def db():
    return PostgresStorage(TEST_DATABASE_URL, pool_size=4)


async def open_clean(storage):
    await storage.initialize()
    with storage._connection() as conn:
        with conn.cursor() as cur:
            cur.execute("TRUNCATE videos, queries RESTART IDENTITY")
        conn.commit()


@needs_database
@pytest.mark.asyncio
async def test_upsert_is_additive(db):
    await open_clean(db)
    try:
        await db.upsert_video(VideoRecord(uri=URI))
        await db.upsert_video(VideoRecord(uri=URI, title='Deep Sea Fishing', author_name='Ocean Life'))
        await db.upsert_video(VideoRecord(uri=URI, title='', description='Filmed offshore', view_count=12))
        await db.upsert_video(VideoRecord(uri=URI))

        assert db.count_videos() == 1
        page = db.search_videos('fishing')
        assert page.total == 1
        row = page.results[0]
        assert row['title'] == 'Deep Sea Fishing'
        assert row['description'] == 'Filmed offshore'
        assert row['author_name'] == 'Ocean Life'
        assert row['view_count'] == 12

        # Tokens cover every merged field, not only the last write
        assert db.search_videos('offshore').total == 1
        assert db.search_videos('ocean').total == 1
    finally:
        await db.close()


@needs_database
@pytest.mark.asyncio
async def test_find_incomplete_rotates(db):
    await open_clean(db)
    try:
        for i in range(6):
            await db.upsert_video(VideoRecord(uri=f"{URI}{i}"))
        await db.upsert_video(VideoRecord(uri=f"{URI}full", title='Known'))

        first = await db.find_incomplete(4)
        second = await db.find_incomplete(4)

        assert len(first) == 4
        assert all(record.title is None for record in first + second)
        assert f"{URI}full" not in {record.uri for record in first + second}
        assert {record.uri for record in first} | {record.uri for record in second} == {
            f"{URI}{i}" for i in range(6)
        }
    finally:
        await db.close()


@needs_database
@pytest.mark.asyncio
async def test_query_claimed_exactly_once(db):
    await open_clean(db)
    try:
        db.record_query('ocean waves')
        db.record_query('ocean waves')
        db.record_query('   ')

        with ThreadPoolExecutor(max_workers=4) as executor:
            claims = list(executor.map(lambda _: db.claim_next_query_sync(), range(4)))

        assert claims.count('ocean waves') == 1
        assert claims.count(None) == 3
        assert await db.claim_next_query() is None
    finally:
        await db.close()


@needs_database
@pytest.mark.asyncio
async def test_search_paging_and_ping(db):
    await open_clean(db)
    try:
        for i in range(3):
            await db.upsert_video(VideoRecord(uri=f"{URI}{i}", title=f"Ocean clip number{i}"))

        assert db.ping()
        first = db.search_videos('ocean', page=0, per_page=2)
        second = db.search_videos('ocean', page=1, per_page=2)
        assert first.total == 3
        assert len(first.results) == 2
        assert len(second.results) == 1
        assert 'score' in first.results[0]
        assert db.search_videos('???').results == []
    finally:
        await db.close()
