import asyncio
import functools
import logging
from typing import List, Optional, Tuple

import httpx

from downstream import DEFAULT_MAX_PAGES, DEFAULT_TIMEOUT, search_from_api
from models import SearchResult, Source

logger = logging.getLogger(__name__)


async def resolve_filter_adult(storage, username: Optional[str], include_adult: bool = False) -> bool:
    """Decide whether adult sources are excluded for this request.

    Filtering stays on unless the user's stored settings turn it off *and*
    the request explicitly asks for adult content. Lookup failures keep it on.
    """
    user_filter = True
    if username:
        try:
            settings = await storage.get_user_settings(username)
            user_filter = settings is None or settings.filter_adult_content is not False
        except Exception:
            logger.warning('settings lookup failed for %s, keeping adult filter on', username, exc_info=True)
            user_filter = True
    return user_filter or not include_adult


async def search_all(client: httpx.AsyncClient, sources: List[Source], query: str,
                     timeout: float = DEFAULT_TIMEOUT,
                     max_pages: int = DEFAULT_MAX_PAGES) -> List[SearchResult]:
    if not sources:
        return []
    settled = await asyncio.gather(
        *[search_from_api(client, source, query, timeout, max_pages) for source in sources],
        return_exceptions=True,
    )
    results: List[SearchResult] = []
    for source, outcome in zip(sources, settled):
        if isinstance(outcome, BaseException):
            logger.warning('source %s failed: %r', source.key, outcome)
            continue
        results.extend(outcome)
    return results


def _compact(text: str) -> str:
    return (text or '').replace(' ', '')


def aggregation_key(result: SearchResult) -> str:
    kind = 'movie' if len(result.episodes) == 1 else 'tv'
    return f'{_compact(result.title)}-{result.year or "unknown"}-{kind}'


def group_results(results: List[SearchResult], query: str) -> List[Tuple[str, List[SearchResult]]]:
    groups = {}
    for item in results:
        groups.setdefault(aggregation_key(item), []).append(item)

    needle = _compact(query.strip())

    def compare(a, b):
        a_match = needle in _compact(a[1][0].title)
        b_match = needle in _compact(b[1][0].title)
        if a_match != b_match:
            return -1 if a_match else 1
        a_year, b_year = a[1][0].year, b[1][0].year
        if a_year == b_year:
            return (a[0] > b[0]) - (a[0] < b[0])
        if a_year == 'unknown':
            return 1
        if b_year == 'unknown':
            return -1
        return -1 if a_year > b_year else 1

    return sorted(groups.items(), key=functools.cmp_to_key(compare))
