import asyncio
import logging
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from errors import UpstreamError
from models import SearchResult, Source

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_PAGES = 5

API_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36',
    'Accept': 'application/json',
}

_YEAR_RE = re.compile(r'\d{4}')
_TAG_RE = re.compile(r'<[^>]+>')
_SPACE_RE = re.compile(r'\s+')


def clean_html_tags(text: Optional[str]) -> str:
    if not text:
        return ''
    cleaned = _TAG_RE.sub('\n', str(text))
    cleaned = re.sub(r'\n+', '\n', cleaned)
    cleaned = cleaned.replace('&nbsp;', ' ')
    return cleaned.strip()


def _is_m3u8(url: str) -> bool:
    # query strings (signed CDN links) are allowed after the .m3u8 path
    parts = urlsplit(url)
    return parts.scheme in ('http', 'https') and bool(parts.netloc) and '.m3u8' in parts.path


def _douban_id(value: Any) -> Optional[int]:
    try:
        douban_id = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return douban_id or None


def parse_play_url(play_url: Optional[str]) -> Tuple[List[str], List[str]]:
    """Pick the play group with the most m3u8 episodes.

    `vod_play_url` holds groups separated by `$$$`; each group lists episodes
    as `title$url` separated by `#`.
    """
    best_urls: List[str] = []
    best_titles: List[str] = []
    if not play_url:
        return best_urls, best_titles
    for group in str(play_url).split('$$$'):
        urls, titles = [], []
        for index, entry in enumerate(group.split('#')):
            title, sep, url = entry.partition('$')
            if not sep:
                title, url = '', title
            url = url.strip()
            if not _is_m3u8(url):
                continue
            urls.append(url)
            titles.append(title.strip() or str(index + 1))
        if len(urls) > len(best_urls):
            best_urls, best_titles = urls, titles
    return best_urls, best_titles


def parse_item(source: Source, item: Dict[str, Any]) -> Optional[SearchResult]:
    episodes, episodes_titles = parse_play_url(item.get('vod_play_url'))
    if not episodes:
        return None
    year_match = _YEAR_RE.search(str(item.get('vod_year') or ''))
    return SearchResult(
        id=str(item['vod_id']),
        title=_SPACE_RE.sub(' ', str(item.get('vod_name') or '').strip()),
        poster=item.get('vod_pic') or '',
        episodes=episodes,
        episodes_titles=episodes_titles,
        source=source.key,
        source_name=source.name,
        year=year_match.group(0) if year_match else 'unknown',
        desc=clean_html_tags(item.get('vod_content')),
        type_name=item.get('type_name') or '',
        douban_id=_douban_id(item.get('vod_douban_id')),
    )


def parse_items(source: Source, items: List[Any]) -> List[SearchResult]:
    results = []
    for item in items:
        try:
            parsed = parse_item(source, item)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.debug('skipping malformed item from %s: %s', source.key, exc)
            continue
        if parsed is not None:
            results.append(parsed)
    return results


async def fetch_page(client: httpx.AsyncClient, source: Source, query: str, page: int = 1,
                     timeout: float = DEFAULT_TIMEOUT) -> Dict[str, Any]:
    params = {'ac': 'videolist', 'wd': query}
    if page > 1:
        params['pg'] = page
    try:
        resp = await client.get(source.api, params=params, headers=API_HEADERS, timeout=timeout)
    except httpx.HTTPError as exc:
        raise UpstreamError(f'{source.key}: {exc.__class__.__name__}')
    if resp.status_code < 200 or resp.status_code >= 300:
        raise UpstreamError(f'{source.key}: HTTP {resp.status_code}')
    try:
        data = resp.json()
    except ValueError:
        raise UpstreamError(f'{source.key}: malformed payload')
    if not isinstance(data, dict) or not isinstance(data.get('list'), list):
        raise UpstreamError(f'{source.key}: payload has no result list')
    return data


async def _fetch_extra_page(client, source, query, page, timeout) -> List[SearchResult]:
    try:
        data = await fetch_page(client, source, query, page, timeout)
    except UpstreamError as exc:
        logger.warning('search page %d failed: %s', page, exc)
        return []
    return parse_items(source, data['list'])


async def search_from_api(client: httpx.AsyncClient, source: Source, query: str,
                          timeout: float = DEFAULT_TIMEOUT,
                          max_pages: int = DEFAULT_MAX_PAGES) -> List[SearchResult]:
    try:
        data = await fetch_page(client, source, query, 1, timeout)
    except UpstreamError as exc:
        logger.warning('search failed: %s', exc)
        return []
    results = parse_items(source, data['list'])

    try:
        page_count = int(data.get('pagecount') or 1)
    except (TypeError, ValueError):
        page_count = 1
    last_page = min(page_count, max(1, max_pages))
    if last_page > 1:
        extra = await asyncio.gather(*[
            _fetch_extra_page(client, source, query, page, timeout)
            for page in range(2, last_page + 1)
        ])
        for page_results in extra:
            results.extend(page_results)
    return results


async def search_exact(client: httpx.AsyncClient, source: Source, query: str,
                       timeout: float = DEFAULT_TIMEOUT,
                       max_pages: int = DEFAULT_MAX_PAGES) -> List[SearchResult]:
    results = await search_from_api(client, source, query, timeout, max_pages)
    return [r for r in results if r.title == query]
