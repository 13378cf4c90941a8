#!/usr/bin/env python3
"""
Content extraction and parsing utilities
Maps oEmbed JSON, watch pages, search result pages and channel feeds
"""

from bs4 import BeautifulSoup
from dataclasses import dataclass, asdict
from enum import Enum
import json
import logging
import re
from typing import List, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

VIDEO_ID_LENGTH = 11
CHANNEL_URL_PREFIX = 'https://www.youtube.com/channel/'

# Candidate platform URLs anywhere in a page
YT_URL_REGEX = re.compile(r'https?://[^\s"\'<>]*youtu[^\s"\'<>]*')

# Video id inside a platform URL, last occurrence wins
YT_VIDEO_ID_REGEX = re.compile(r'.*(?:youtu\.be/|v/|u/\w/|embed/|watch\?v=)([^#&?]*)')

MICROFORMAT_START = '"microformat":'
MICROFORMAT_END = ',"trackingParams"'
MICROFORMAT_CARDS = ',"cards"'


@dataclass
class VideoRecord:
    """Canonical video record keyed by watch URI"""
    uri: str
    title: Optional[str] = None
    description: Optional[str] = None
    author_name: Optional[str] = None
    author_url: Optional[str] = None
    length_seconds: Optional[int] = None
    view_count: Optional[int] = None
    category: Optional[str] = None
    upload_date: Optional[str] = None
    fuzzy_words: Optional[str] = None

    def partial_fields(self) -> Dict:
        """Fields carrying a value; empty strings count as absent"""
        return {
            key: value for key, value in asdict(self).items()
            if value is not None and value != ''
        }


class ResponseKind(Enum):
    TRANSPORT_ERROR = 'transport_error'
    SERVER_ERROR = 'server_error'
    UNAUTHORIZED = 'unauthorized'
    OEMBED = 'oembed'
    WATCH_PAGE = 'watch_page'
    MALFORMED = 'malformed'
    NOT_FOUND = 'not_found'
    RATE_LIMITED = 'rate_limited'
    UNEXPECTED = 'unexpected'


@dataclass
class ExtractionResult:
    """One classified fetch response"""
    kind: ResponseKind
    record: Optional[VideoRecord] = None
    detail: str = ''


def build_video_uri(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def build_probe_uri(video_id: str) -> str:
    """oEmbed URI used to check a video exists and get basic info"""
    return f"https://www.youtube.com/oembed?url={build_video_uri(video_id)}&format=json"


def clean_video_uri(uri: str) -> str:
    """Strip the oEmbed wrapper back to the watch URI"""
    return uri.replace('https://www.youtube.com/oembed?url=', '').replace('&format=json', '')


def build_feed_uri(channel_id: str) -> str:
    return f"https://www.youtube.com/feeds/videos.xml?channel_id={channel_id}"


def channel_id_from_url(author_url: Optional[str]) -> Optional[str]:
    """Channel id of a /channel/ URL, None for other author URL shapes"""
    if not author_url or not author_url.startswith(CHANNEL_URL_PREFIX):
        return None
    channel_id = author_url[len(CHANNEL_URL_PREFIX):].split('/')[0]
    return channel_id or None


def unwrap_redirect(href: str) -> str:
    """Target of a search-engine redirect link, the href itself otherwise"""
    target = parse_qs(urlparse(href).query).get('uddg')
    return target[0] if target else href


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) else None


def _simple_text(value) -> Optional[str]:
    """Text of a {"simpleText": ...} node"""
    if not isinstance(value, dict):
        return None
    return _text(value.get('simpleText'))


def _parse_int(value) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(str(value), 10)
    except ValueError:
        return None


class ContentExtractor:
    """Classify fetch responses by shape and map them to video records"""

    @staticmethod
    def classify_response(uri: str, status: Optional[int], body: str,
                          error: Optional[BaseException] = None) -> ExtractionResult:
        """Decide the response shape before any field mapping"""
        video_uri = clean_video_uri(uri)

        if error is not None:
            return ExtractionResult(ResponseKind.TRANSPORT_ERROR, detail=f"{type(error).__name__}: {error}")

        if status is not None and status >= 500:
            return ExtractionResult(ResponseKind.SERVER_ERROR, detail=f"Server error: {status}")

        if status == 401 or body == 'Unauthorized':
            # Video exists but is not embeddable, keep the uri only
            return ExtractionResult(ResponseKind.UNAUTHORIZED, record=VideoRecord(uri=video_uri))

        if status == 200:
            if body[:1] == '{':
                return ContentExtractor._extract_oembed(video_uri, body)
            return ContentExtractor._extract_watch_page(video_uri, body)

        if status == 404:
            return ExtractionResult(ResponseKind.NOT_FOUND)

        if status == 429:
            return ExtractionResult(ResponseKind.RATE_LIMITED, detail='Rate limited')

        return ExtractionResult(ResponseKind.UNEXPECTED, detail=f"Unknown status code: {status}")

    @staticmethod
    def _extract_oembed(video_uri: str, body: str) -> ExtractionResult:
        """Map the compact oEmbed JSON object"""
        try:
            data = json.loads(body)
        except ValueError as e:
            return ExtractionResult(ResponseKind.MALFORMED, detail=f"Invalid oEmbed JSON: {e}")

        if not isinstance(data, dict):
            return ExtractionResult(ResponseKind.MALFORMED, detail='oEmbed body is not an object')

        record = VideoRecord(
            uri=video_uri,
            title=_text(data.get('title')),
            author_name=_text(data.get('author_name')),
            author_url=_text(data.get('author_url')),
        )
        return ExtractionResult(ResponseKind.OEMBED, record=record)

    @staticmethod
    def _extract_watch_page(video_uri: str, body: str) -> ExtractionResult:
        """Map the microformat JSON block embedded in a full watch page"""
        start = body.find(MICROFORMAT_START)
        if start == -1:
            return ExtractionResult(ResponseKind.MALFORMED, detail='Cannot find microformat')

        tail = body[start + len(MICROFORMAT_START):]
        end = tail.find(MICROFORMAT_END)
        if end == -1:
            return ExtractionResult(ResponseKind.MALFORMED, detail='Cannot find end of microformat')

        microformat = tail[:end]
        # Some pages carry an extra cards property, filter it out
        cards = microformat.find(MICROFORMAT_CARDS)
        if cards != -1:
            microformat = microformat[:cards]

        try:
            renderer = json.loads(microformat)['playerMicroformatRenderer']
        except (ValueError, KeyError, TypeError) as e:
            return ExtractionResult(ResponseKind.MALFORMED, detail=f"Invalid microformat JSON: {e}")

        if not isinstance(renderer, dict):
            return ExtractionResult(ResponseKind.MALFORMED, detail='Microformat renderer is not an object')

        external_channel_id = _text(renderer.get('externalChannelId'))
        record = VideoRecord(
            uri=video_uri,
            title=_simple_text(renderer.get('title')),
            description=_simple_text(renderer.get('description')),
            author_name=_text(renderer.get('ownerChannelName')),
            author_url=(CHANNEL_URL_PREFIX + external_channel_id) if external_channel_id
            else _text(renderer.get('ownerProfileUrl')),
            length_seconds=_parse_int(renderer.get('lengthSeconds')),
            view_count=_parse_int(renderer.get('viewCount')),
            category=_text(renderer.get('category')),
            upload_date=_text(renderer.get('uploadDate')),
        )
        return ExtractionResult(ResponseKind.WATCH_PAGE, record=record)

    @staticmethod
    def extract_video_ids(html: str) -> List[str]:
        """Extract unique video ids from every platform URL in a page

        Link targets are read first, unwrapping search-engine redirect links,
        then any literal URL left in the page text.
        """
        candidates = []
        try:
            soup = BeautifulSoup(html, 'lxml')
            for link in soup.find_all('a', href=True):
                candidates.append(unwrap_redirect(link['href']))
        except Exception as e:
            logging.warning(f"Result page parsing failed: {e}")
        candidates.extend(match.group(0) for match in YT_URL_REGEX.finditer(html))

        video_ids = []
        for url in candidates:
            if not YT_URL_REGEX.match(url):
                continue
            id_match = YT_VIDEO_ID_REGEX.match(url)
            if not id_match:
                continue
            video_id = id_match.group(1)[:VIDEO_ID_LENGTH]
            if video_id and video_id not in video_ids:
                video_ids.append(video_id)
        return video_ids

    @staticmethod
    def extract_continuation(html: str) -> Optional[Dict[str, str]]:
        """Hidden fields of the next-page form, None on the last page"""
        try:
            soup = BeautifulSoup(html, 'lxml')
        except Exception as e:
            logging.warning(f"Result page parsing failed: {e}")
            return None

        fields = {}
        for field in soup.select("form[action='/html/'] input[type=hidden]"):
            name = field.get('name')
            if name:
                fields[name] = field.get('value', '')

        return fields or None

    @staticmethod
    def extract_feed_video_ids(xml: str) -> List[str]:
        """Video ids listed in a channel's syndication feed"""
        try:
            soup = BeautifulSoup(xml, 'xml')
        except Exception as e:
            logging.warning(f"Feed parsing failed: {e}")
            return []

        video_ids = []
        for entry in soup.find_all('entry'):
            video_id = entry.find('videoId')
            if video_id and video_id.get_text(strip=True):
                video_ids.append(video_id.get_text(strip=True))
        return video_ids


# Utility functions for content processing
PUNCTUATION_REGEX = re.compile(r'[!"#$%&\'()*+,\-./:;<=>?@\[\]^_`{|}~]')

MAX_FUZZY_TOKENS = 64
AUTHOR_MAX_WORDS = 3
TITLE_MAX_WORDS = 4
DESCRIPTION_MAX_WORDS = 8
MAX_NGRAMS = 8
NGRAM_SIZE = 4


def char_ngrams(text: str, n: int = NGRAM_SIZE) -> List[str]:
    return [text[i:i + n] for i in range(len(text) - n + 1)]


def language_filter(text: str, max_words: int = 16,
                    max_ngrams: int = MAX_NGRAMS) -> Tuple[List[str], List[str]]:
    """Importance sampled words and character n-grams of one text field"""
    words = [w for w in text.split() if len(w) > 2][:max_words]
    words = [PUNCTUATION_REGEX.sub('', w.strip().lower()) for w in words]
    words = [w for w in words if w]
    filtered = ' '.join(words)

    ngrams = [g.strip().replace(' ', '') for g in char_ngrams(filtered)]
    ngrams = [g for g in ngrams if len(g) > 2][:max_ngrams]

    return words, ngrams


def build_fuzzy_words(title: Optional[str] = None, description: Optional[str] = None,
                      author_name: Optional[str] = None,
                      max_tokens: int = MAX_FUZZY_TOKENS) -> Optional[str]:
    """Bounded token string indexed as text for fuzzy searches"""
    author_words, _ = language_filter(author_name, AUTHOR_MAX_WORDS, 0) if author_name else ([], [])
    title_words, title_ngrams = language_filter(title, TITLE_MAX_WORDS) if title else ([], [])
    description_words, description_ngrams = (
        language_filter(description, DESCRIPTION_MAX_WORDS) if description else ([], [])
    )

    tokens = author_words + title_words + description_words + title_ngrams + description_ngrams
    tokens = tokens[:max_tokens]
    if not tokens:
        return None
    return ' '.join(tokens)
