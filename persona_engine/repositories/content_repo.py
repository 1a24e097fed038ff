from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from persona_engine.models.orm.content import ContentItemORM


class ContentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_catalog(self, section_key: str | None = None) -> list[ContentItemORM]:
        """Content items with their targeting rows, in display order."""
        stmt = select(ContentItemORM).options(selectinload(ContentItemORM.targeting))
        if section_key:
            stmt = stmt.where(ContentItemORM.section_key == section_key)
        stmt = stmt.order_by(ContentItemORM.section_key, ContentItemORM.sort_order, ContentItemORM.content_id)
        return list(self.db.scalars(stmt).all())

    def get_content_item(self, content_id: str) -> ContentItemORM | None:
        return self.db.get(ContentItemORM, content_id)
