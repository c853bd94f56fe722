"""
Content models for the categorized feeds.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class ContentItem:
    """Represents an article returned by any category feed."""

    id: str
    headline: str
    url: str
    source: str
    category: str
    summary_text: str = ""
    published_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)

    def __hash__(self):
        """Make ContentItem hashable for deduplication."""
        return hash((self.headline, self.url))

    def __eq__(self, other):
        """Equality based on headline and URL."""
        if not isinstance(other, ContentItem):
            return False
        return self.headline == other.headline and self.url == other.url
