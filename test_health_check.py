import psycopg2
import pytest

from crawler_content import VideoRecord
from health_check import ServerThread, create_app, to_api_record


def add_video(storage, video_id, fuzzy_words, **fields):
    uri = f"https://www.youtube.com/watch?v={video_id}"
    storage.videos[uri] = VideoRecord(uri=uri, fuzzy_words=fuzzy_words, **fields)


@pytest.fixture
def client(crawler, storage):
    add_video(storage, 'aaaaaaaaaaa', 'ocean life deep sea', title='Deep Sea', author_name='Ocean Life',
              view_count=1024)
    add_video(storage, 'bbbbbbbbbbb', 'ocean waves', title='Waves')
    add_video(storage, 'ccccccccccc', 'mountain hike', title='Hike')
    app = create_app(crawler, storage, items_per_page=1)
    app.config['TESTING'] = True
    return app.test_client()


def test_stats(client, crawler):
    crawler.submit('https://www.youtube.com/watch?v=ddddddddddd')
    response = client.get('/')
    assert response.status_code == 200
    assert response.get_json() == {'total': 1, 'queueSize': 0, 'indexedCount': 0, 'failed': 0}


def test_query(client, storage):
    response = client.get('/query', query_string={'q': 'Deep ocean!'})
    data = response.get_json()

    assert response.status_code == 200
    assert data['total'] == 2
    assert data['page'] == 0
    assert isinstance(data['elapsedTime'], int)
    assert data['results'] == [{
        'uri': 'https://www.youtube.com/watch?v=aaaaaaaaaaa',
        'title': 'Deep Sea',
        'authorName': 'Ocean Life',
        'viewCount': 1024,
        'score': 2.0,
    }]
    assert storage.recorded_queries == ['Deep ocean!']


def test_query_second_page(client):
    data = client.get('/query?q=ocean&page=1').get_json()
    assert data['page'] == 1
    assert data['total'] == 2
    assert len(data['results']) == 1


def test_negative_page_is_first_page(client):
    data = client.get('/query?q=ocean&page=-3').get_json()
    assert data['page'] == 0


def test_empty_query(client, storage):
    data = client.get('/query').get_json()
    assert data['results'] == []
    assert data['total'] == 0
    assert storage.recorded_queries == []


def test_query_database_error(client, storage, monkeypatch):
    def broken_search(term, page=0, per_page=10):
        raise psycopg2.OperationalError('connection lost')

    monkeypatch.setattr(storage, 'search_videos', broken_search)
    response = client.get('/query?q=ocean')
    assert response.status_code == 503
    assert storage.recorded_queries == []


def test_health(client, storage):
    response = client.get('/health')
    assert response.status_code == 200
    data = response.get_json()
    assert data['status'] == 'healthy'
    assert data['services']['database'] == {'connected': True, 'videos': 3}

    storage.healthy = False
    response = client.get('/health')
    assert response.status_code == 503
    assert response.get_json()['status'] == 'unhealthy'


def test_health_without_video_count(client, storage, monkeypatch):
    def broken_count():
        raise psycopg2.OperationalError('statement timeout')

    monkeypatch.setattr(storage, 'count_videos', broken_count)
    response = client.get('/health')
    assert response.status_code == 200
    assert response.get_json()['services']['database'] == {'connected': True}

def test_to_api_record_skips_unknown_and_empty():
    row = {'uri': 'u', 'author_url': None, 'fuzzy_words': 'x', 'length_seconds': 30}
    assert to_api_record(row) == {'uri': 'u', 'lengthSeconds': 30}


def test_server_thread_binds_and_stops(crawler, storage):
    server = ServerThread(create_app(crawler, storage), '127.0.0.1', 0)
    assert server.server.port > 0
    server.start()
    server.shutdown()
    server.join(timeout=5)
    assert not server.is_alive()
