import asyncio
import logging
import math
from enum import Enum
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

import httpx

from newsreader.config import settings
from newsreader.fetcher import SOURCES, BaseSource, generate_english_summary
from newsreader.governor import FetchGovernor
from newsreader.notifications import CacheUpdateChannel
from newsreader.schemas import Article, CacheStatus, sort_translated_first
from newsreader.store import MAX_TOTAL_ARTICLES, ArticleStore
from newsreader.translation import TranslationGateway

logger = logging.getLogger(__name__)

# Only the head of a fresh fetch is translated up front; the rest waits for translate_one()
INITIAL_TRANSLATION_COUNT = 15

# Content sent for translation is cut to this many characters
TRANSLATION_CONTENT_LIMIT = 300


class FetchState(str, Enum):
    IDLE = "idle"
    CHECK_CACHE = "check_cache"
    SERVE_CACHED = "serve_cached"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    TRANSLATING = "translating"
    MERGING = "merging"
    CACHED = "cached"
    FAILED = "failed"


def dedupe(articles: Iterable[Article]) -> List[Article]:
    """Drop repeated ids, keeping the first occurrence."""
    seen = set()
    unique = []
    for article in articles:
        if article.id not in seen:
            seen.add(article.id)
            unique.append(article)
    return unique


class FeedResult(NamedTuple):
    """Articles of one fetch call, plus whether that call had nothing at all to show."""
    articles: List[Article]
    unable_to_load: bool = False


class FeedAggregator:
    """
    Decides between cache and network, fans out to every source, translates the
    head of the result and writes everything back to the store per source.

    Nothing here raises to the caller: failures degrade to cached data or to an
    empty list, and the returned FeedResult tells the caller which of the two happened.
    """

    def __init__(
        self,
        store: ArticleStore,
        governor: FetchGovernor,
        translator: TranslationGateway,
        client: httpx.AsyncClient,
        sources: Optional[Sequence[BaseSource]] = None,
        translate_without_api_key: bool = settings.ENABLE_FALLBACK_TRANSLATIONS,
    ):
        self.store = store
        self.governor = governor
        self.translator = translator
        self._client = client
        self.sources = list(SOURCES if sources is None else sources)
        self.translate_without_api_key = translate_without_api_key

        self.state = FetchState.IDLE

    # -----------------------------------------------------------------------
    # Fetching
    # -----------------------------------------------------------------------

    async def fetch_all(self) -> FeedResult:
        """Serve the cache while the fetch window is closed, otherwise refresh from the feeds."""
        self.state = FetchState.CHECK_CACHE
        cached = self.store.get_all()

        if not cached:
            logger.info("No cached articles, fetching fresh news")
            return await self.fetch_fresh()

        if not self.governor.is_fetch_allowed():
            minutes = math.ceil(self.governor.time_until_next_fetch() / 60)
            logger.info(f"Using {len(cached)} cached articles, next fetch allowed in {minutes} minutes")
            self.state = FetchState.SERVE_CACHED
            self.state = FetchState.IDLE
            return FeedResult(cached)

        try:
            fresh = await self.fetch_fresh()
        except Exception as e:
            logger.error(f"Fresh fetch failed, using cache as fallback: {e}")
            fresh = FeedResult([])

        if not fresh.articles:
            logger.info(f"Nothing fresh, serving {len(cached)} cached articles")
            self.state = FetchState.IDLE
            return FeedResult(cached)
        return fresh

    async def fetch_fresh(self) -> FeedResult:
        """Run one full fetch cycle. Falls back to whatever the store still holds."""
        self.governor.record_fetch_attempt()

        try:
            return await self._run_fetch_cycle()
        except Exception as e:
            logger.error(f"Fetch cycle failed: {e}")
            fallback = self.store.get_all()
            self.state = FetchState.IDLE if fallback else FetchState.FAILED
            return FeedResult(fallback, unable_to_load=not fallback)

    async def refresh_all(self) -> FeedResult:
        """Clear every cache and fetch, ignoring both the expiry and the fetch interval."""
        logger.info("Refreshing news: clearing cache and fetching fresh content")
        self.store.clear()
        self.governor.reset()
        result = await self.fetch_fresh()
        logger.info(f"News refreshed: {len(result.articles)} articles loaded")
        return result

    async def _run_fetch_cycle(self) -> FeedResult:
        self.state = FetchState.FETCHING
        logger.info(f"Fetching fresh news from {len(self.sources)} sources")

        results = await asyncio.gather(
            *(source.fetch(self._client) for source in self.sources),
            return_exceptions=True,
        )

        self.state = FetchState.NORMALIZING
        merged: List[Article] = []
        fresh_count = 0
        failed_count = 0

        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                logger.error(f"[{source.source_id}] Fetch raised: {result}")
                result = []

            if result:
                fresh_count += len(result)
                merged.extend(result)
                continue

            # No articles this cycle: fall back to what this source had before
            failed_count += 1
            backfill = self.store.get(source.source_id)
            if backfill:
                logger.info(f"[{source.source_id}] Using {len(backfill)} cached articles")
                merged.extend(backfill)

        if not merged:
            logger.warning(f"No articles available: {failed_count} sources failed and nothing is cached")
            self.state = FetchState.FAILED
            return FeedResult([], unable_to_load=failed_count > 0)

        ordered = sort_translated_first(dedupe(merged))
        if len(ordered) > MAX_TOTAL_ARTICLES:
            logger.warning(f"Trimming {len(ordered)} articles to {MAX_TOTAL_ARTICLES}")
            ordered = ordered[:MAX_TOTAL_ARTICLES]

        self.state = FetchState.TRANSLATING
        await self._translate_batch(ordered)

        self.state = FetchState.MERGING
        ordered = sort_translated_first(ordered)
        self._cache_by_source(ordered)

        self.state = FetchState.CACHED
        logger.info(f"Loaded {fresh_count} fresh articles, {len(ordered)} in total")
        self.state = FetchState.IDLE
        return FeedResult(ordered)

    # -----------------------------------------------------------------------
    # Translation
    # -----------------------------------------------------------------------

    async def translate_one(self, article: Article) -> Article:
        """
        Translate (or retranslate) a single article and update its source's cache entry.
        The article is updated in place and returned; on failure it comes back unchanged.
        """
        label = "retranslation" if article.is_translated else "translation"

        if not self.translator.is_configured():
            logger.info("Translation service not configured")
            return article

        logger.info(f"On-demand {label}: '{article.title[:50]}'")
        if not await self._translate_article(article):
            return article

        self._update_cached_article(article)
        logger.info(f"On-demand {label} complete: '{(article.title_translated or '')[:50]}'")
        return article

    async def _translate_batch(self, articles: List[Article]) -> None:
        if not articles:
            return

        if not (self.translator.is_configured() or self.translate_without_api_key):
            logger.info("Translation not configured, keeping original German articles")
            return

        batch = articles[:INITIAL_TRANSLATION_COUNT]
        logger.info(f"Translating the first {len(batch)} of {len(articles)} articles")

        outcomes = await asyncio.gather(
            *(self._translate_article(article) for article in batch),
            return_exceptions=True,
        )
        succeeded = sum(1 for outcome in outcomes if outcome is True)
        logger.info(f"Translated {succeeded}/{len(batch)} articles")

    async def _translate_article(self, article: Article) -> bool:
        """Translate title and content concurrently. Returns False and leaves the article alone on failure."""
        content = article.content
        if len(content) > TRANSLATION_CONTENT_LIMIT:
            content = content[:TRANSLATION_CONTENT_LIMIT] + "..."

        try:
            title, body = await asyncio.gather(
                self.translator.translate(article.title),
                self.translator.translate(content),
            )
        except Exception as e:
            logger.error(f"Translation failed for '{article.title[:30]}': {e}")
            return False

        article.title_translated = title.translated_text
        article.content_translated = body.translated_text
        article.summary = generate_english_summary(body.translated_text)
        return True

    # -----------------------------------------------------------------------
    # Cache write-back
    # -----------------------------------------------------------------------

    def _cache_by_source(self, articles: List[Article]) -> None:
        """
        One store write per source: this cycle's articles plus whatever the source
        already had cached. A crash halfway leaves some sources on their previous
        entry, which the next cycle overwrites.
        """
        groups: Dict[str, List[Article]] = {}
        for article in articles:
            groups.setdefault(article.source.id, []).append(article)

        for source_id, group in groups.items():
            current_ids = {a.id for a in group}
            previous = [a for a in self.store.get(source_id) if a.id not in current_ids]
            self.store.put(source_id, sort_translated_first(group + previous))

    def _update_cached_article(self, article: Article) -> None:
        source_id = article.source.id
        cached = self.store.get(source_id)

        updated = [article if c.id == article.id else c for c in cached]
        if not any(c.id == article.id for c in cached):
            updated.append(article)

        # Not a fetch: leave the fetch window where the last cycle put it
        self.store.put(source_id, sort_translated_first(updated), stamp_fetch_time=False)
        logger.info(f"[{source_id}] Updated translated article in cache")

    # -----------------------------------------------------------------------
    # Status
    # -----------------------------------------------------------------------

    def find_cached(self, article_id: str) -> Optional[Article]:
        return next((a for a in self.store.get_all() if a.id == article_id), None)

    def cache_status(self) -> CacheStatus:
        status = self.store.status()
        return status.model_copy(update={
            "next_fetch_allowed": self.governor.last_fetch_time() + self.governor.min_interval,
            "next_fetch_in_seconds": self.governor.time_until_next_fetch(),
        })

    def cache_updates(self) -> CacheUpdateChannel[bool]:
        return self.store.updates

    def time_until_next_fetch(self) -> float:
        return self.governor.time_until_next_fetch()
