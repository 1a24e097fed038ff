from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from persona_engine.models.orm.insight_cache import InsightCacheORM


class InsightCacheRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_entry(self, cache_key: str) -> InsightCacheORM | None:
        return self.db.get(InsightCacheORM, cache_key)

    def upsert_entry(self, cache_key: str, payload, computed_at: datetime) -> InsightCacheORM:
        """
        Last writer wins; each write replaces the whole entry. When another
        writer inserts the key between our lookup and our insert, its row is
        overwritten instead.
        """
        entry = self.db.merge(
            InsightCacheORM(cache_key=cache_key, payload=payload, computed_at=computed_at)
        )
        try:
            self.db.commit()
            return entry
        except IntegrityError:
            self.db.rollback()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to store cache entry {cache_key}: {e}")

        entry = self.get_entry(cache_key)
        if entry is None:
            raise RuntimeError(f"Cache entry {cache_key} conflicted but could not be re-read")
        entry.payload = payload
        entry.computed_at = computed_at
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to store cache entry {cache_key}: {e}")
        return entry
