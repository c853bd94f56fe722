"""
HTTP-backed category operations.

An `HttpFeedOperation` is a ready-made `operation(limit)` for the fetch
orchestrator: it GETs `{base_url}/{category}?limit=N` and turns the JSON
payload into ContentItem objects. Anything that goes wrong on the way out
or back in is raised as FetchError.
"""

import asyncio
import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp
from dateutil.parser import isoparse

from scopedrop.models.content import ContentItem
from scopedrop.pipeline.content_aggregator import FetchError


def parse_feed_payload(payload: Any, category: str) -> List[ContentItem]:
    """
    Convert a decoded feed payload into ContentItems.

    Accepts either a bare list of objects or `{"items": [...]}`. Each object
    needs a headline (`headline` or `title`) and a `url`; `published` /
    `published_date` is parsed as ISO-8601 when present.
    """
    if isinstance(payload, dict):
        payload = payload.get('items', payload.get('articles'))
    if not isinstance(payload, list):
        raise FetchError(f"Malformed payload for '{category}': expected a list of items")

    items: List[ContentItem] = []
    for raw in payload:
        if not isinstance(raw, dict):
            raise FetchError(f"Malformed item in '{category}': {raw!r}")
        headline = (raw.get('headline') or raw.get('title') or '').strip()
        url = (raw.get('url') or '').strip()
        if not headline or not url:
            raise FetchError(f"Item in '{category}' is missing a headline or url")

        published = raw.get('published') or raw.get('published_date')
        published_date = None
        if published:
            try:
                published_date = isoparse(published)
            except (ValueError, TypeError) as e:
                raise FetchError(f"Bad published date {published!r} in '{category}'") from e

        item_id = str(raw.get('id') or hashlib.sha1(url.encode('utf-8')).hexdigest()[:16])
        items.append(ContentItem(
            id=item_id,
            headline=headline,
            url=url,
            source=raw.get('source') or 'unknown',
            category=raw.get('category') or category,
            summary_text=raw.get('summary_text') or raw.get('summary') or '',
            published_date=published_date,
            tags=list(raw.get('tags') or []),
        ))
    return items


class HttpFeedOperation:
    """Fetches one category from a JSON feed endpoint."""

    def __init__(
        self,
        base_url: str,
        category: str,
        timeout: float = 30.0,
        params: Optional[Dict[str, str]] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.category = category
        self.timeout = timeout
        self.params = dict(params or {})
        self.session = session
        self.logger = logging.getLogger(__name__)

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.category}"

    async def __call__(self, limit: int) -> List[ContentItem]:
        params = {**self.params, 'limit': str(limit)}
        try:
            if self.session is not None:
                body = await self._get(self.session, params)
            else:
                timeout = aiohttp.ClientTimeout(total=self.timeout)
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    body = await self._get(session, params)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FetchError(f"Request for '{self.category}' failed: {type(e).__name__}: {e}") from e

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise FetchError(f"Invalid JSON from {self.url}") from e

        items = parse_feed_payload(payload, self.category)
        self.logger.debug(f"Feed {self.category}: {len(items)} items")
        return items[:limit]

    async def _get(self, session: aiohttp.ClientSession, params: Dict[str, str]) -> str:
        headers = {"Accept": "application/json"}
        async with session.get(self.url, params=params, headers=headers) as resp:
            if resp.status != 200:
                raise FetchError(f"HTTP {resp.status} for {self.url}")
            return await resp.text()
