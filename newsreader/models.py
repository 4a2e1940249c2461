from sqlalchemy import JSON, Column, Float, Integer, String, Text

from newsreader.database import Base


class CachedSource(Base):
    """One cache entry per feed source: the articles-by-source table."""
    __tablename__ = "cached_sources"

    source_id = Column(String, primary_key=True, index=True)  # e.g. "spiegel", "heise"
    articles = Column(Text, nullable=False)                    # JSON-encoded Article list, ordered
    timestamp = Column(Float, nullable=False, index=True)      # write time, epoch seconds
    schema_version = Column(Integer, nullable=False)


class CacheMetadataRow(Base):
    """Process-wide cache bookkeeping: the metadata-by-key table (single "main" row)."""
    __tablename__ = "cache_metadata"

    key = Column(String, primary_key=True)
    last_fetch_time = Column(Float, nullable=False, default=0.0)  # epoch seconds, 0 = never
    total_articles = Column(Integer, nullable=False, default=0)
    sources = Column(JSON, nullable=False, default=list)
    schema_version = Column(Integer, nullable=False)
