"""
Unit tests for the persistent article store: in-memory SQLite, simulated clock.
"""
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError

from newsreader.models import CachedSource, CacheMetadataRow
from newsreader.schemas import Article, NewsCategory, Source
from newsreader.store import (
    CACHE_DURATION_SECONDS,
    MAX_ARTICLES_PER_SOURCE,
    METADATA_KEY,
    MIN_FETCH_INTERVAL_SECONDS,
    SCHEMA_VERSION,
    ArticleStore,
    format_age,
    format_size,
)

SPIEGEL = Source(id="spiegel", name="Der Spiegel", url="https://www.spiegel.de", reliability=5)
HEISE = Source(id="heise", name="Heise Online", url="https://www.heise.de", reliability=4)
BASE_TIME = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_article(i: int = 0, source: Source = SPIEGEL, **kwargs) -> Article:
    defaults = {
        "id": f"{source.id}-{i}",
        "title": f"Artikel {i}",
        "content": "Inhalt",
        "source": source,
        "category": NewsCategory.POLITICS,
        "published_at": BASE_TIME + timedelta(minutes=i),
        "url": f"{source.url}/{i}",
    }
    defaults.update(kwargs)
    return Article(**defaults)


def broken_store(clock) -> ArticleStore:
    """A store whose every session blows up, as if the database file were corrupt."""
    store = ArticleStore(create_engine("sqlite:///:memory:"), clock=clock)
    store._session_factory = MagicMock(side_effect=OperationalError("SELECT", {}, Exception("disk I/O error")))
    return store


def insert_raw_row(engine, source_id: str, payload: str, timestamp: float):
    """Write a cache row with SQL only, skipping every check the store does."""
    with engine.begin() as conn:
        conn.execute(
            text("INSERT INTO cached_sources (source_id, articles, timestamp, schema_version) "
                 "VALUES (:source_id, :payload, :timestamp, :version)"),
            {"source_id": source_id, "payload": payload, "timestamp": timestamp, "version": SCHEMA_VERSION},
        )


# ---------------------------------------------------------------------------
# put / get
# ---------------------------------------------------------------------------

class TestPutAndGet:
    def test_get_returns_what_was_put(self, store):
        articles = [make_article(i) for i in range(3)]
        store.put("spiegel", articles)

        assert store.get("spiegel") == articles

    def test_get_unknown_source_is_empty(self, store):
        assert store.get("nope") == []

    def test_put_truncates_to_max_per_source(self, store):
        articles = [make_article(i) for i in range(MAX_ARTICLES_PER_SOURCE + 20)]
        store.put("spiegel", articles)

        cached = store.get("spiegel")

        assert len(cached) == MAX_ARTICLES_PER_SOURCE
        assert [a.id for a in cached] == [a.id for a in articles[:MAX_ARTICLES_PER_SOURCE]]

    def test_put_keeps_given_order(self, store):
        articles = [make_article(i) for i in (2, 0, 1)]
        store.put("spiegel", articles)

        assert [a.id for a in store.get("spiegel")] == ["spiegel-2", "spiegel-0", "spiegel-1"]

    def test_put_overwrites_previous_entry(self, store):
        store.put("spiegel", [make_article(1), make_article(2)])
        store.put("spiegel", [make_article(3)])

        assert [a.id for a in store.get("spiegel")] == ["spiegel-3"]

    def test_translation_fields_survive_storage(self, store):
        article = make_article(1, title_translated="Article 1", content_translated="Content")
        store.put("spiegel", [article])

        cached = store.get("spiegel")[0]

        assert cached.is_translated
        assert cached.title_translated == "Article 1"


# ---------------------------------------------------------------------------
# Expiry
# ---------------------------------------------------------------------------

class TestExpiry:
    def test_entry_served_until_duration_elapses(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(CACHE_DURATION_SECONDS)

        assert len(store.get("spiegel")) == 1

    def test_expired_entry_is_empty(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(CACHE_DURATION_SECONDS + 1)

        assert store.get("spiegel") == []

    def test_expired_entry_is_purged_on_get(self, store, clock, engine):
        store.put("spiegel", [make_article(1)])
        clock.advance(CACHE_DURATION_SECONDS + 1)
        store.get("spiegel")

        with store._session_factory() as db:
            assert db.get(CachedSource, "spiegel") is None

    def test_status_stops_counting_expired_source(self, store, clock):
        store.put("spiegel", [make_article(1), make_article(2)])
        clock.advance(CACHE_DURATION_SECONDS - 60)
        store.put("heise", [make_article(1, source=HEISE)])
        clock.advance(120)

        status = store.status()

        assert status.source_count == 1
        assert status.total_articles == 1

    def test_get_all_skips_and_purges_expired_entries(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(CACHE_DURATION_SECONDS + 1)
        store.put("heise", [make_article(1, source=HEISE)])

        assert [a.source.id for a in store.get_all()] == ["heise"]
        with store._session_factory() as db:
            assert db.get(CachedSource, "spiegel") is None


# ---------------------------------------------------------------------------
# get_all
# ---------------------------------------------------------------------------

class TestGetAll:
    def test_unions_all_sources(self, store):
        store.put("spiegel", [make_article(1), make_article(2)])
        store.put("heise", [make_article(3, source=HEISE)])

        assert len(store.get_all()) == 3

    def test_orders_translated_first_then_newest(self, store):
        store.put("spiegel", [make_article(1), make_article(5)])
        store.put("heise", [make_article(0, source=HEISE, title_translated="t", content_translated="c")])

        ids = [a.id for a in store.get_all()]

        assert ids == ["heise-0", "spiegel-5", "spiegel-1"]

    def test_empty_store(self, store):
        assert store.get_all() == []

    def test_unreadable_row_is_skipped(self, store):
        store.put("heise", [make_article(1, source=HEISE)])
        with store._session_factory() as db:
            db.add(CachedSource(source_id="spiegel", articles=json.dumps([{"id": "garbage"}]),
                                timestamp=store._clock(), schema_version=SCHEMA_VERSION))
            db.commit()

        assert [a.id for a in store.get_all()] == ["heise-1"]

    def test_storage_failure_returns_empty(self, clock):
        assert broken_store(clock).get_all() == []


# ---------------------------------------------------------------------------
# Corrupt rows
# ---------------------------------------------------------------------------

class TestCorruptRows:
    """Rows written behind the store's back: bad JSON and a JSON value that is not a list."""

    def setup_method(self):
        self.bad_sources = ["tagesschau", "zeit"]

    def corrupt(self, engine, clock):
        insert_raw_row(engine, "tagesschau", "not json{", clock())
        insert_raw_row(engine, "zeit", "5", clock())

    def test_get_all_keeps_readable_rows(self, store, clock, engine):
        store.put("spiegel", [make_article(1)])
        self.corrupt(engine, clock)

        assert [a.id for a in store.get_all()] == ["spiegel-1"]

    def test_get_all_purges_corrupt_rows(self, store, clock, engine):
        store.put("spiegel", [make_article(1)])
        self.corrupt(engine, clock)

        store.get_all()

        with store._session_factory() as db:
            assert [row.source_id for row in db.query(CachedSource).all()] == ["spiegel"]

    def test_get_on_corrupt_row_is_empty_and_purges(self, store, clock, engine):
        self.corrupt(engine, clock)

        for source_id in self.bad_sources:
            assert store.get(source_id) == []
        with store._session_factory() as db:
            assert db.query(CachedSource).count() == 0

    def test_status_counts_only_readable_rows(self, store, clock, engine):
        store.put("spiegel", [make_article(1), make_article(2)])
        self.corrupt(engine, clock)

        status = store.status()

        assert status.source_count == 1
        assert status.total_articles == 2
        assert status.cache_age == "Just now"

    def test_put_still_works_next_to_corrupt_rows(self, store, clock, engine):
        self.corrupt(engine, clock)

        assert store.put("spiegel", [make_article(1)]) is True
        with store._session_factory() as db:
            meta = db.get(CacheMetadataRow, METADATA_KEY)
            assert meta.sources == ["spiegel"]
            assert meta.total_articles == 1


# ---------------------------------------------------------------------------
# Metadata: should_fetch / time_until_next_fetch
# ---------------------------------------------------------------------------

class TestFetchWindow:
    def test_should_fetch_without_metadata(self, store):
        assert store.should_fetch() is True

    def test_should_not_fetch_right_after_put(self, store):
        store.put("spiegel", [make_article(1)])
        assert store.should_fetch() is False

    def test_should_fetch_after_min_interval(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(MIN_FETCH_INTERVAL_SECONDS - 1)
        assert store.should_fetch() is False

        clock.advance(1)
        assert store.should_fetch() is True

    def test_time_until_next_fetch_counts_down(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(60)

        assert store.time_until_next_fetch() == MIN_FETCH_INTERVAL_SECONDS - 60

    def test_time_until_next_fetch_never_negative(self, store, clock):
        store.put("spiegel", [make_article(1)])
        clock.advance(MIN_FETCH_INTERVAL_SECONDS * 3)

        assert store.time_until_next_fetch() == 0

    def test_time_until_next_fetch_without_metadata(self, store):
        assert store.time_until_next_fetch() == 0

    def test_touch_last_fetch_time_closes_window(self, store, clock):
        store.touch_last_fetch_time(clock())
        assert store.should_fetch() is False
        assert store.last_fetch_time() == clock()

    def test_put_without_stamp_keeps_last_fetch_time(self, store, clock):
        store.put("spiegel", [make_article(1)])
        fetched_at = clock()
        clock.advance(200)

        store.put("spiegel", [make_article(1, title_translated="t", content_translated="c")],
                  stamp_fetch_time=False)

        assert store.last_fetch_time() == fetched_at
        assert store.get("spiegel")[0].is_translated

    def test_put_without_stamp_and_no_metadata(self, store):
        store.put("spiegel", [make_article(1)], stamp_fetch_time=False)

        assert store.last_fetch_time() == 0.0
        assert store.should_fetch() is True

    def test_metadata_totals_follow_live_entries(self, store):
        store.put("spiegel", [make_article(1), make_article(2)])
        store.put("heise", [make_article(1, source=HEISE)])

        with store._session_factory() as db:
            meta = db.get(CacheMetadataRow, METADATA_KEY)
            assert meta.total_articles == 3
            assert sorted(meta.sources) == ["heise", "spiegel"]


# ---------------------------------------------------------------------------
# clear
# ---------------------------------------------------------------------------

class TestClear:
    def test_clear_removes_everything(self, store):
        store.put("spiegel", [make_article(1)])
        store.put("heise", [make_article(1, source=HEISE)])

        store.clear()

        assert store.get_all() == []
        assert store.status().total_articles == 0

    def test_clear_resets_last_fetch_time(self, store):
        store.put("spiegel", [make_article(1)])
        store.clear()

        assert store.last_fetch_time() == 0.0
        assert store.should_fetch() is True


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------

class TestStatus:
    def test_empty_cache(self, store):
        status = store.status()

        assert status.total_articles == 0
        assert status.source_count == 0
        assert status.cache_age == "No cache"

    def test_counts_and_age(self, store, clock):
        store.put("spiegel", [make_article(1), make_article(2)])
        clock.advance(3 * 60)

        status = store.status()

        assert status.total_articles == 2
        assert status.source_count == 1
        assert status.cache_age == "3m ago"
        assert status.storage_used.endswith("B")

    def test_next_fetch_allowed(self, store, clock):
        store.put("spiegel", [make_article(1)])
        assert store.status().next_fetch_allowed == clock() + MIN_FETCH_INTERVAL_SECONDS

    def test_storage_failure_gives_unknown_status(self, clock):
        status = broken_store(clock).status()

        assert status.total_articles == 0
        assert status.source_count == 0
        assert status.cache_age == "Unknown"


class TestFormatting:
    def test_format_age(self):
        assert format_age(10) == "Just now"
        assert format_age(5 * 60) == "5m ago"
        assert format_age(125 * 60) == "2h 5m ago"

    def test_format_size(self):
        assert format_size(512) == "512 B"
        assert format_size(4096) == "4 KB"
        assert format_size(3 * 1024 * 1024) == "3 MB"


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class TestUpdates:
    def test_subscriber_gets_initial_value(self, store):
        seen = []
        store.updates.subscribe(seen.append)
        assert seen == [False]

    def test_put_notifies_after_write_is_visible(self, store):
        seen = []
        store.updates.subscribe(lambda _: seen.append(len(store.get("spiegel"))))

        store.put("spiegel", [make_article(1), make_article(2)])

        assert seen == [0, 2]

    def test_clear_notifies(self, store):
        listener = MagicMock()
        store.updates.subscribe(listener)
        store.clear()

        assert listener.call_count == 2

    def test_failed_put_does_not_notify(self, clock):
        store = broken_store(clock)
        listener = MagicMock()
        store.updates.subscribe(listener)

        assert store.put("spiegel", [make_article(1)]) is False
        assert listener.call_count == 1  # only the replayed initial value


# ---------------------------------------------------------------------------
# initialize
# ---------------------------------------------------------------------------

class TestInitialize:
    def test_schema_change_clears_cache(self, engine, clock):
        store = ArticleStore(engine, clock=clock)
        store.initialize()
        store.put("spiegel", [make_article(1)])

        with patch("newsreader.store.SCHEMA_VERSION", SCHEMA_VERSION + 1):
            ArticleStore(engine, clock=clock).initialize()

        with store._session_factory() as db:
            assert db.query(CachedSource).count() == 0
            assert db.get(CacheMetadataRow, METADATA_KEY) is None

    def test_same_schema_keeps_cache(self, engine, clock):
        store = ArticleStore(engine, clock=clock)
        store.initialize()
        store.put("spiegel", [make_article(1)])

        ArticleStore(engine, clock=clock).initialize()

        assert len(store.get("spiegel")) == 1

    def test_broken_database_does_not_raise(self, clock):
        store = ArticleStore(create_engine("sqlite:///:memory:"), clock=clock)
        with patch("newsreader.store.Base.metadata.create_all",
                   side_effect=OperationalError("CREATE", {}, Exception("file is not a database"))):
            assert store.initialize() is False

        assert store.get("spiegel") == []
        assert store.should_fetch() is True
