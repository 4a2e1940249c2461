import json
import logging
import time
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from newsreader.database import Base, make_session_factory
from newsreader.models import CachedSource, CacheMetadataRow
from newsreader.notifications import CacheUpdateChannel
from newsreader.schemas import Article, CacheStatus, sort_translated_first

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Cache limits
# ---------------------------------------------------------------------------

CACHE_DURATION_SECONDS = 15 * 60      # entries older than this are never served
MIN_FETCH_INTERVAL_SECONDS = 5 * 60   # minimum gap between upstream fetch cycles
MAX_ARTICLES_PER_SOURCE = 100
MAX_TOTAL_ARTICLES = 500              # applied by the aggregator after merging

# Bump when the serialized Article shape changes; older rows are dropped on startup
SCHEMA_VERSION = 2

METADATA_KEY = "main"

# A single row that does not decode: bad JSON, a non-list payload, or articles
# pydantic rejects (its ValidationError is a ValueError)
ROW_ERRORS = (ValueError, TypeError)
STORAGE_ERRORS = (SQLAlchemyError,) + ROW_ERRORS


def format_age(seconds: float) -> str:
    minutes = int(seconds // 60)
    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    return f"{minutes // 60}h {minutes % 60}m ago"


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{round(size / 1024)} KB"
    return f"{round(size / (1024 * 1024))} MB"


def _load_items(row: CachedSource) -> List[Any]:
    """Decode the stored article list of one row without validating the articles."""
    items = json.loads(row.articles)
    if not isinstance(items, list):
        raise ValueError(f"expected a list of articles, got {type(items).__name__}")
    return items


class ArticleStore:
    """
    Durable per-source article cache backed by SQLAlchemy.

    Every public method fails soft: storage errors are logged and turned into
    the empty/neutral answer, so a broken database behaves like an empty cache.
    A row that does not decode is skipped and purged on the next read.
    Successful writes are announced on `updates` after they are committed.
    """

    def __init__(self, engine, clock: Callable[[], float] = time.time):
        self._engine = engine
        self._session_factory = make_session_factory(engine)
        self._clock = clock
        self.updates: CacheUpdateChannel[bool] = CacheUpdateChannel(False)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def initialize(self) -> bool:
        """
        Create tables if needed and drop everything written under an older schema.
        Returns False (and keeps running in empty-cache mode) if the database is unusable.
        """
        try:
            Base.metadata.create_all(bind=self._engine)
            with self._session_factory() as db:
                meta = db.get(CacheMetadataRow, METADATA_KEY)
                if meta is not None and meta.schema_version != SCHEMA_VERSION:
                    logger.info(
                        f"Cache schema changed ({meta.schema_version} -> {SCHEMA_VERSION}), "
                        "clearing stored articles"
                    )
                    db.execute(delete(CachedSource))
                    db.execute(delete(CacheMetadataRow))
                    db.commit()
            logger.info("Article cache ready")
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Article cache unavailable, continuing without persistence: {e}")
            return False

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def get(self, source_id: str) -> List[Article]:
        """Return the cached articles for one source, or [] if absent, expired or unreadable."""
        try:
            with self._session_factory() as db:
                row = db.get(CachedSource, source_id)
                if row is None:
                    return []

                if not self._is_live(row, self._clock()):
                    db.delete(row)
                    db.commit()
                    logger.info(f"[{source_id}] Purged expired cache entry")
                    return []

                try:
                    articles = self._deserialize(row)
                except ROW_ERRORS as e:
                    logger.warning(f"[{source_id}] Purging unreadable cache entry: {e}")
                    db.delete(row)
                    db.commit()
                    return []

            logger.debug(f"[{source_id}] Using {len(articles)} cached articles")
            return articles

        except STORAGE_ERRORS as e:
            logger.error(f"[{source_id}] Failed to read cached articles: {e}")
            return []

    def get_all(self) -> List[Article]:
        """Union of every live entry, ordered translated-first."""
        try:
            with self._session_factory() as db:
                live, stale = self._partition_rows(db)

                articles: List[Article] = []
                readable = 0
                for row in live:
                    try:
                        articles.extend(self._deserialize(row))
                        readable += 1
                    except ROW_ERRORS as e:
                        logger.warning(f"[{row.source_id}] Skipping unreadable cache entry: {e}")
                        stale.append(row)

                for row in stale:
                    db.delete(row)
                if stale:
                    db.commit()

            logger.info(f"Retrieved {len(articles)} cached articles from {readable} sources")
            return sort_translated_first(articles)

        except STORAGE_ERRORS as e:
            logger.error(f"Failed to read cached articles: {e}")
            return []

    def status(self) -> CacheStatus:
        """Summary of the live cache; a storage failure yields a zeroed "Unknown" status."""
        now = self._clock()
        try:
            with self._session_factory() as db:
                live, _ = self._partition_rows(db)
                readable = list(self._readable(live))
                meta = db.get(CacheMetadataRow, METADATA_KEY)

                total_articles = sum(len(items) for _, items in readable)
                oldest = min((row.timestamp for row, _ in readable), default=None)
                size = sum(len(row.articles) for row, _ in readable)
                last_fetch = meta.last_fetch_time if meta is not None else 0.0

            return CacheStatus(
                total_articles=total_articles,
                source_count=len(readable),
                cache_age=format_age(now - oldest) if oldest is not None else "No cache",
                storage_used=format_size(size),
                next_fetch_allowed=last_fetch + MIN_FETCH_INTERVAL_SECONDS,
            )

        except STORAGE_ERRORS as e:
            logger.error(f"Failed to compute cache status: {e}")
            return CacheStatus(next_fetch_allowed=now)

    def last_fetch_time(self) -> Optional[float]:
        """Epoch seconds of the last recorded fetch, or None if nothing was ever recorded."""
        try:
            with self._session_factory() as db:
                meta = db.get(CacheMetadataRow, METADATA_KEY)
                return meta.last_fetch_time if meta is not None else None
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to read cache metadata: {e}")
            return None

    def should_fetch(self) -> bool:
        last_fetch = self.last_fetch_time()
        if last_fetch is None:
            return True
        return self._clock() - last_fetch >= MIN_FETCH_INTERVAL_SECONDS

    def time_until_next_fetch(self) -> float:
        """Seconds until should_fetch() turns true again (0 if it already is)."""
        last_fetch = self.last_fetch_time()
        if last_fetch is None:
            return 0.0
        return max(0.0, MIN_FETCH_INTERVAL_SECONDS - (self._clock() - last_fetch))

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def put(self, source_id: str, articles: Iterable[Article], stamp_fetch_time: bool = True) -> bool:
        """
        Replace the entry for a source with (at most MAX_ARTICLES_PER_SOURCE of) the given
        articles. Unless stamp_fetch_time is False, the metadata's last fetch time is set
        to now in the same transaction.
        """
        limited = list(articles)[:MAX_ARTICLES_PER_SOURCE]
        now = self._clock()

        try:
            with self._session_factory() as db:
                # merge() performs an upsert: the previous entry for this source is replaced
                db.merge(CachedSource(
                    source_id=source_id,
                    articles=json.dumps([a.model_dump(mode="json") for a in limited]),
                    timestamp=now,
                    schema_version=SCHEMA_VERSION,
                ))
                db.flush()
                self._write_metadata(db, last_fetch_time=now if stamp_fetch_time else None)
                db.commit()

        except STORAGE_ERRORS as e:
            logger.error(f"[{source_id}] Failed to cache articles: {e}")
            return False

        logger.info(f"[{source_id}] Cached {len(limited)} articles")
        self.updates.emit(True)
        return True

    def touch_last_fetch_time(self, timestamp: float) -> bool:
        """Record a fetch attempt without touching any article entry."""
        try:
            with self._session_factory() as db:
                self._write_metadata(db, last_fetch_time=timestamp)
                db.commit()
            return True
        except STORAGE_ERRORS as e:
            logger.error(f"Failed to update last fetch time: {e}")
            return False

    def clear(self) -> bool:
        """Drop every entry and reset the last fetch time to zero."""
        try:
            with self._session_factory() as db:
                db.execute(delete(CachedSource))
                self._write_metadata(db, last_fetch_time=0.0)
                db.commit()

        except STORAGE_ERRORS as e:
            logger.error(f"Failed to clear article cache: {e}")
            return False

        logger.info("Article cache cleared")
        self.updates.emit(True)
        return True

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    def _is_live(self, row: CachedSource, now: float) -> bool:
        if row.schema_version != SCHEMA_VERSION:
            return False
        return now - row.timestamp <= CACHE_DURATION_SECONDS

    def _partition_rows(self, db: Session) -> Tuple[List[CachedSource], List[CachedSource]]:
        now = self._clock()
        live, expired = [], []
        for row in db.query(CachedSource).all():
            (live if self._is_live(row, now) else expired).append(row)
        return live, expired

    @staticmethod
    def _readable(rows: Iterable[CachedSource]) -> Iterator[Tuple[CachedSource, List[Any]]]:
        for row in rows:
            try:
                yield row, _load_items(row)
            except ROW_ERRORS as e:
                logger.warning(f"[{row.source_id}] Ignoring unreadable cache entry: {e}")

    @staticmethod
    def _deserialize(row: CachedSource) -> List[Article]:
        return [Article.model_validate(item) for item in _load_items(row)]

    def _write_metadata(self, db: Session, last_fetch_time: Optional[float]) -> None:
        """Rewrite the metadata row from the live entries. None keeps the stored last fetch time."""
        if last_fetch_time is None:
            meta = db.get(CacheMetadataRow, METADATA_KEY)
            last_fetch_time = meta.last_fetch_time if meta is not None else 0.0

        live, _ = self._partition_rows(db)
        readable = list(self._readable(live))
        db.merge(CacheMetadataRow(
            key=METADATA_KEY,
            last_fetch_time=last_fetch_time,
            total_articles=sum(len(items) for _, items in readable),
            sources=[row.source_id for row, _ in readable],
            schema_version=SCHEMA_VERSION,
        ))
