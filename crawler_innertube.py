#!/usr/bin/env python3
"""
Client for the platform's internal search and query suggestion endpoints
"""

import json
from typing import Any, List

import aiohttp

SEARCH_URL = 'https://www.youtube.com/youtubei/v1/search?prettyPrint=false'
SUGGEST_URL = 'https://suggestqueries-clients6.youtube.com/complete/search'

WEB_CLIENT_CONTEXT = {
    'client': {
        'clientName': 'WEB',
        'clientVersion': '2.20240101.00.00',
        'hl': 'en',
        'gl': 'US',
    }
}


def _collect_video_ids(node: Any, video_ids: List[str]):
    """Walk a search response collecting videoRenderer ids in order"""
    if isinstance(node, dict):
        renderer = node.get('videoRenderer')
        if isinstance(renderer, dict):
            video_id = renderer.get('videoId')
            if video_id and video_id not in video_ids:
                video_ids.append(video_id)
        for value in node.values():
            _collect_video_ids(value, video_ids)
    elif isinstance(node, list):
        for value in node:
            _collect_video_ids(value, video_ids)


class InnertubeClient:
    """Search videos and fetch suggestions without the quota-limited API"""

    def __init__(self, session: aiohttp.ClientSession, user_agent: str = None):
        self.session = session
        self.user_agent = user_agent

    def _headers(self) -> dict:
        headers = {'accept-language': 'en-US,en;q=0.9'}
        if self.user_agent:
            headers['user-agent'] = self.user_agent
        return headers

    async def search(self, query: str) -> List[str]:
        """Video ids of the first result page for a query"""
        payload = {'context': WEB_CLIENT_CONTEXT, 'query': query}
        async with self.session.post(SEARCH_URL, json=payload, headers=self._headers()) as response:
            response.raise_for_status()
            data = await response.json(content_type=None)

        video_ids: List[str] = []
        _collect_video_ids(data, video_ids)
        return video_ids

    async def get_query_suggestions(self, query: str) -> List[str]:
        """Autocomplete suggestions for a query"""
        params = {'client': 'firefox', 'ds': 'yt', 'q': query}
        async with self.session.get(SUGGEST_URL, params=params, headers=self._headers()) as response:
            response.raise_for_status()
            text = await response.text(errors='ignore')

        data = json.loads(text)
        if isinstance(data, list) and len(data) > 1 and isinstance(data[1], list):
            return [s for s in data[1] if isinstance(s, str) and s]
        return []
