from sqlalchemy import Column, String, DateTime

from .base import Base, JSON_TYPE


class InsightCacheORM(Base):
    __tablename__ = "insight_cache"

    cache_key = Column(String, primary_key=True)
    payload = Column(JSON_TYPE, nullable=False)
    # Age is always derived from this, never from a TTL countdown
    computed_at = Column(DateTime, nullable=False)
