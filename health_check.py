#!/usr/bin/env python3
"""
Stats, query and health endpoints for the video indexer
Served from a background thread next to the crawler's event loop
"""

import logging
import threading
import time
from datetime import datetime

import psutil
import psycopg2
from flask import Flask, jsonify, request
from werkzeug.serving import make_server

API_FIELDS = {
    'uri': 'uri',
    'title': 'title',
    'description': 'description',
    'author_name': 'authorName',
    'author_url': 'authorUrl',
    'length_seconds': 'lengthSeconds',
    'view_count': 'viewCount',
    'category': 'category',
    'upload_date': 'uploadDate',
    'score': 'score',
}


def to_api_record(row: dict) -> dict:
    return {API_FIELDS[key]: value for key, value in row.items() if key in API_FIELDS and value is not None}


def get_system_stats():
    """Get system resource statistics"""
    try:
        memory = psutil.virtual_memory()
        return {
            'memory_total_mb': memory.total // 1024 // 1024,
            'memory_used_mb': memory.used // 1024 // 1024,
            'memory_percent': memory.percent,
            'cpu_percent': psutil.cpu_percent(interval=None),
            'timestamp': datetime.now().isoformat()
        }
    except Exception as e:
        return {'error': str(e)}


def create_app(crawler, storage, items_per_page: int = 10) -> Flask:
    app = Flask(__name__)

    @app.route('/')
    def crawler_stats():
        """Operational counters"""
        return jsonify(crawler.stats())

    @app.route('/query')
    def query():
        """Ranked search over indexed videos"""
        search_term = request.args.get('q', '')
        page = request.args.get('page', 0, type=int)
        page = max(page or 0, 0)
        start = time.perf_counter()

        try:
            result = storage.search_videos(search_term, page=page, per_page=items_per_page)
            # Add query to db so crawlers can check it out
            storage.record_query(search_term)
        except psycopg2.Error as e:
            logging.error(f"Query failed for {search_term!r}: {e}")
            return jsonify({'error': 'search unavailable'}), 503

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return jsonify({
            'results': [to_api_record(row) for row in result.results],
            'total': result.total,
            'page': page,
            'elapsedTime': elapsed_ms,
        })

    @app.route('/health')
    def health_check():
        """Basic health check endpoint"""
        db_connected = storage.ping()
        database = {'connected': db_connected}
        if db_connected:
            try:
                database['videos'] = storage.count_videos()
            except psycopg2.Error as e:
                logging.warning(f"Video count failed: {e}")

        return jsonify({
            'status': 'healthy' if db_connected else 'unhealthy',
            'timestamp': datetime.now().isoformat(),
            'services': {
                'database': database,
                'crawler': crawler.stats(),
                'system': get_system_stats(),
            }
        }), 200 if db_connected else 503

    return app


class ServerThread(threading.Thread):
    """Threaded werkzeug server for the Flask app"""

    def __init__(self, app: Flask, host: str, port: int):
        super().__init__(daemon=True, name='http-server')
        # Binds immediately so port errors surface at startup
        self.server = make_server(host, port, app, threaded=True)

    def run(self):
        logging.info(f"Server is now listening on {self.server.host}:{self.server.port}")
        self.server.serve_forever()

    def shutdown(self):
        self.server.shutdown()
