import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence

import pytz

from scopedrop.services.cache_service import SingleFlightCache
from scopedrop.utils.logging_config import PerformanceTracker


TopicOperation = Callable[[str, int], Awaitable[Sequence[Any]]]


@dataclass
class ResourceContent:
    """Enriched content derived for a resource topic page"""
    topic: str
    items: List[Any]
    sources: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    generated_at: Optional[datetime] = None


def normalize_topic(topic: str) -> str:
    """'  Growth   Hacking ' -> 'growth-hacking'"""
    return re.sub(r'[^a-z0-9]+', '-', topic.strip().lower()).strip('-')


class ResourceContentService:
    """
    Topic page content, derived once per topic.

    Deriving a topic page fetches the topic's articles and aggregates their
    sources and tags. Concurrent renders of the same topic share one
    derivation through the single-flight cache; a failed derivation raises
    ComputeError to every waiting caller and is retried on the next call.
    """

    KEY_PREFIX = "resource:"

    def __init__(
        self,
        cache: SingleFlightCache,
        operation: TopicOperation,
        limit: int = 12,
        ttl: Optional[float] = None,
    ):
        self.cache = cache
        self.operation = operation
        self.limit = limit
        self.ttl = ttl
        self.logger = logging.getLogger(__name__)

    def cache_key(self, topic: str) -> str:
        return f"{self.KEY_PREFIX}{normalize_topic(topic)}"

    async def get_topic_content(self, topic: str) -> ResourceContent:
        key = self.cache_key(topic)
        return await self.cache.get_or_compute(key, lambda: self._derive(topic), self.ttl)

    def invalidate_topic(self, topic: str) -> bool:
        return self.cache.invalidate(self.cache_key(topic))

    def invalidate_all(self) -> int:
        return self.cache.clear(prefix=self.KEY_PREFIX)

    async def _derive(self, topic: str) -> ResourceContent:
        with PerformanceTracker(f"derive resource content '{topic}'", self.logger):
            items = list(await self.operation(topic, self.limit))[:self.limit]

        source_counts = Counter(getattr(item, 'source', None) for item in items)
        source_counts.pop(None, None)
        tag_counts: Counter = Counter()
        for item in items:
            tag_counts.update(getattr(item, 'tags', None) or [])

        return ResourceContent(
            topic=topic,
            items=items,
            sources=[s for s, _ in source_counts.most_common()],
            tags=[t for t, _ in tag_counts.most_common(10)],
            generated_at=datetime.now(pytz.utc),
        )
