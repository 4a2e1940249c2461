from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NewsCategory(str, Enum):
    POLITICS = "Politik"
    BUSINESS = "Wirtschaft"
    TECHNOLOGY = "Technologie"
    SPORTS = "Sport"
    ENTERTAINMENT = "Unterhaltung"
    SCIENCE = "Wissenschaft"
    HEALTH = "Gesundheit"
    WORLD = "Welt"
    GERMANY = "Deutschland"
    OPINION = "Meinung"


class Source(BaseModel):
    """A feed publisher. Configured once, referenced by every article it produced."""
    id: str
    name: str
    url: str
    logo_url: Optional[str] = None
    reliability: int = Field(ge=1, le=5)

    model_config = ConfigDict(frozen=True)


class Article(BaseModel):
    """
    A normalized feed item.

    Translation fields are filled in after the fetch; an article counts as
    translated only when both title_translated and content_translated are set.
    """
    id: str
    title: str
    title_translated: Optional[str] = None
    content: str
    content_translated: Optional[str] = None
    summary: Optional[str] = None
    image_url: Optional[str] = None
    source: Source
    category: NewsCategory
    published_at: datetime
    url: str
    author: Optional[str] = None
    read_time: Optional[int] = None  # minutes

    @field_validator("published_at")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        # Naive timestamps are treated as UTC so orderings never mix naive and aware values
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def is_translated(self) -> bool:
        """Both translated fields present and non-empty. An empty string counts as missing."""
        return bool(self.title_translated and self.content_translated)


def sort_translated_first(articles: Iterable[Article]) -> List[Article]:
    """
    Order articles with fully translated ones first, each group newest first.

    Returns a new list; sorted() is stable so re-applying it never reorders.
    """
    return sorted(
        articles,
        key=lambda a: (not a.is_translated, -a.published_at.timestamp()),
    )


class TranslationResult(BaseModel):
    translated_text: str
    detected_language: Optional[str] = None
    confidence: float = Field(ge=0.0, le=1.0)


class CacheStatus(BaseModel):
    """Cache summary shown to the reader UI."""
    total_articles: int = 0
    source_count: int = 0
    cache_age: str = "Unknown"
    storage_used: str = "0 KB"
    next_fetch_allowed: float = 0.0  # epoch seconds
    next_fetch_in_seconds: float = 0.0


class TranslationStatus(BaseModel):
    service: str
    configured: bool
    request_count: int
    cached_translations: int


class FeedResponse(BaseModel):
    """Shape returned by the feed endpoints: one page of the ordered article list."""
    articles: List[Article]
    total_results: int
    has_more: bool
    page: int
    # True only when every source failed and there was nothing cached to fall back to
    unable_to_load: bool = False
