import hashlib
import logging
import math
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional

import feedparser
import httpx

from newsreader.config import settings
from newsreader.schemas import Article, NewsCategory, Source

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
SUMMARY_MAX_CHARS = 150
ENGLISH_SUMMARY_MAX_CHARS = 120
NO_SUMMARY = "No summary available."

# Seeded so the same article always gets the same placeholder
PLACEHOLDER_IMAGE_URL = "https://picsum.photos/seed/{seed}/400/300"

HTML_ENTITIES = [
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
]


class FeedFetchError(Exception):
    """Upstream feed request failed. status_code is set for HTTP error responses."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def clean_text(text: Optional[str]) -> str:
    """Remove HTML tags and common entities, collapsing whitespace."""
    cleaned = re.sub(r"<[^>]*>", "", text or "")
    for entity, char in HTML_ENTITIES:
        cleaned = cleaned.replace(entity, char)
    return re.sub(r"\s+", " ", cleaned).strip()


def parse_date(value: Any) -> datetime:
    """
    Turn a feed date into a UTC datetime.
    Accepts ISO strings (RSS2JSON's "2024-01-15 10:00:00"), RFC 822 strings and
    feedparser struct_time values. Falls back to the current time.
    """
    if isinstance(value, time.struct_time):
        return datetime(*value[:6], tzinfo=timezone.utc)

    parsed = None
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            try:
                parsed = parsedate_to_datetime(raw)
            except (TypeError, ValueError):
                parsed = None

    if parsed is None:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _summarize(text: str, max_chars: int) -> str:
    sentences = [s.strip() for s in re.split(r"[.!?]+", text) if s.strip()]
    if not sentences:
        return NO_SUMMARY

    summary = ". ".join(sentences[:2])
    if len(summary) > max_chars:
        return summary[:max_chars] + "..."
    return summary + "."


def generate_summary(content: Optional[str]) -> str:
    """First two sentences of the cleaned content, cut at 150 characters."""
    return _summarize(clean_text(content), SUMMARY_MAX_CHARS)


def generate_english_summary(english_content: str) -> str:
    """Summary for translated content: same rule with a 120 character cut."""
    return _summarize(english_content, ENGLISH_SUMMARY_MAX_CHARS)


def calculate_read_time(content: Optional[str]) -> int:
    word_count = len(clean_text(content).split())
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))


def extract_image_url(item: Dict[str, Any], seed: str) -> str:
    """Try the usual places feeds put images, in order, then fall back to a placeholder."""
    enclosure = item.get("enclosure")
    if isinstance(enclosure, dict) and enclosure.get("link") \
            and str(enclosure.get("type") or "").startswith("image"):
        return enclosure["link"]

    if item.get("thumbnail"):
        return item["thumbnail"]

    media = item.get("media:thumbnail")
    if isinstance(media, dict) and media.get("url"):
        return media["url"]

    match = re.search(r'<img[^>]+src="([^"]+)"', item.get("description") or "")
    if match:
        return match.group(1)

    return PLACEHOLDER_IMAGE_URL.format(seed=seed)


def make_article_id(source_id: str, key: str) -> str:
    """Stable id: the same link from the same source always maps to the same article."""
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()[:12]
    return f"{source_id}-{digest}"


def entry_to_item(entry) -> Dict[str, Any]:
    """Map a feedparser entry onto the item shape RSS2JSON returns."""
    # RSS body may be in 'summary' or nested inside 'content'
    description = (
        entry.get("summary")
        or (entry.get("content") or [{}])[0].get("value")
        or ""
    )

    enclosure = next(
        (link for link in entry.get("links", []) if link.get("rel") == "enclosure"),
        None,
    )
    thumbnails = entry.get("media_thumbnail") or []

    return {
        "title": entry.get("title", ""),
        "description": description,
        "link": entry.get("link"),
        "author": entry.get("author"),
        "pubDate": entry.get("published_parsed") or entry.get("updated_parsed"),
        "enclosure": {"link": enclosure.get("href"), "type": enclosure.get("type")} if enclosure else {},
        "thumbnail": thumbnails[0].get("url") if thumbnails else None,
    }


# ---------------------------------------------------------------------------
# Base source: subclass this to add a new source
# ---------------------------------------------------------------------------

class BaseSource(ABC):
    """
    Abstract base class for all news sources.
    To add a new source: subclass this, set source and category, and implement fetch().
    """
    source: Source
    category: NewsCategory

    @property
    def source_id(self) -> str:
        return self.source.id

    @abstractmethod
    async def fetch(self, client: httpx.AsyncClient) -> List[Article]:
        """Fetch articles; must return [] instead of raising."""
        pass


# ---------------------------------------------------------------------------
# RSS source: shared fetch logic for all RSS-based sources
# ---------------------------------------------------------------------------

class RSSSource(BaseSource):
    """
    Reusable RSS fetcher. Subclasses only need to set source, category and rss_url.

    Goes through the RSS2JSON proxy when an API key is configured, otherwise
    downloads the feed itself and parses it with feedparser. Every failure is
    logged and turned into an empty list so other sources are unaffected.
    """
    rss_url: str

    async def fetch(self, client: httpx.AsyncClient) -> List[Article]:
        try:
            if settings.RSS2JSON_API_KEY:
                items = await self._fetch_via_proxy(client)
            else:
                items = await self._fetch_direct(client)
        except FeedFetchError as e:
            self._log_failure(e)
            return []
        except Exception as e:
            logger.error(f"[{self.source_id}] Failed to fetch: {e}")
            return []

        articles = []
        for index, item in enumerate(items[:settings.RSS2JSON_ITEM_COUNT]):
            try:
                articles.append(self.normalize(item, index))
            except ValueError as e:
                logger.warning(f"[{self.source_id}] Skipping malformed item {index}: {e}")

        logger.info(f"[{self.source_id}] Fetched {len(articles)} articles")
        return articles

    def normalize(self, item: Dict[str, Any], index: int) -> Article:
        """Build an Article from one raw feed item."""
        raw_body = item.get("description") or item.get("content") or ""
        link = item.get("link") or item.get("url")
        article_id = make_article_id(self.source_id, link or item.get("title") or str(index))

        return Article(
            id=article_id,
            title=clean_text(item.get("title")) or "Untitled",
            content=clean_text(raw_body),
            summary=generate_summary(raw_body),
            image_url=extract_image_url(item, seed=article_id),
            source=self.source,
            category=self.category,
            published_at=parse_date(item.get("pubDate") or item.get("published")),
            url=link or "#",
            author=item.get("author") or "Unknown",
            read_time=calculate_read_time(raw_body),
        )

    async def _fetch_via_proxy(self, client: httpx.AsyncClient) -> List[Dict[str, Any]]:
        params = {
            "rss_url": self.rss_url,
            "api_key": settings.RSS2JSON_API_KEY,
            "count": str(settings.RSS2JSON_ITEM_COUNT),
        }
        data = (await self._get(client, settings.RSS2JSON_BASE_URL, params=params)).json()

        if isinstance(data, dict) and data.get("status") == "ok" and data.get("items"):
            return data["items"]

        logger.warning(f"[{self.source_id}] Unknown feed response format")
        return []

    async def _fetch_direct(self, client: httpx.AsyncClient) -> List[Dict[str, Any]]:
        response = await self._get(client, self.rss_url)
        feed = feedparser.parse(response.content)

        if feed.bozo and not feed.entries:
            raise FeedFetchError(f"Unparseable feed: {feed.get('bozo_exception')}")
        return [entry_to_item(entry) for entry in feed.entries]

    async def _get(self, client: httpx.AsyncClient, url: str, params=None) -> httpx.Response:
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as e:
            raise FeedFetchError(str(e), status_code=e.response.status_code) from e
        except httpx.HTTPError as e:
            raise FeedFetchError(str(e)) from e

    def _log_failure(self, error: FeedFetchError):
        # Every failure means "no articles this cycle"; the status only changes the message
        if error.status_code == 429:
            logger.warning(f"[{self.source_id}] Rate limited (429)")
        elif error.status_code == 403:
            logger.warning(f"[{self.source_id}] API key issue (403) - check key validity")
        elif error.status_code == 402:
            logger.warning(f"[{self.source_id}] API quota exceeded (402)")
        else:
            logger.error(f"[{self.source_id}] Feed error ({error.status_code or error})")


# ---------------------------------------------------------------------------
# Concrete sources: add new sources here
# ---------------------------------------------------------------------------

class SpiegelSource(RSSSource):
    source = Source(id="spiegel", name="Der Spiegel", url="https://www.spiegel.de", reliability=5)
    category = NewsCategory.POLITICS
    rss_url = "https://www.spiegel.de/schlagzeilen/index.rss"


class FAZSource(RSSSource):
    source = Source(id="faz", name="Frankfurter Allgemeine Zeitung", url="https://www.faz.net", reliability=5)
    category = NewsCategory.POLITICS
    rss_url = "https://www.faz.net/rss/aktuell/"


class ZeitSource(RSSSource):
    source = Source(id="zeit", name="Die Zeit", url="https://www.zeit.de", reliability=5)
    category = NewsCategory.POLITICS
    rss_url = "https://www.zeit.de/news/index"


class TagesschauSource(RSSSource):
    source = Source(id="tagesschau", name="Tagesschau", url="https://www.tagesschau.de", reliability=5)
    category = NewsCategory.POLITICS
    rss_url = "https://www.tagesschau.de/xml/rss2/"


class HandelsblattSource(RSSSource):
    source = Source(id="handelsblatt", name="Handelsblatt", url="https://www.handelsblatt.com", reliability=5)
    category = NewsCategory.BUSINESS
    rss_url = "https://www.handelsblatt.com/contentexport/feed/schlagzeilen"


class HeiseSource(RSSSource):
    source = Source(id="heise", name="Heise Online", url="https://www.heise.de", reliability=4)
    category = NewsCategory.TECHNOLOGY
    rss_url = "https://www.heise.de/rss/heise-atom.xml"


# Registry of active sources: add or remove entries here to enable/disable sources
SOURCES: List[BaseSource] = [
    SpiegelSource(),
    FAZSource(),
    ZeitSource(),
    TagesschauSource(),
    HandelsblattSource(),
    HeiseSource(),
]


def get_sources_by_category(category: NewsCategory, sources: Optional[List[BaseSource]] = None) -> List[BaseSource]:
    return [s for s in (SOURCES if sources is None else sources) if s.category == category]
