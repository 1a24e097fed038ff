from sqlalchemy import Column, String, Boolean, ForeignKey, Integer, Text, PrimaryKeyConstraint
from sqlalchemy.orm import relationship

from .base import Base, JSON_TYPE

# Wildcard value for a targeting row's persona or funnel stage
ALL = "all"


class ContentItemORM(Base):
    __tablename__ = "content_items"

    content_id = Column(String, primary_key=True)
    section_key = Column(String, nullable=False, index=True)
    content_type = Column(String, nullable=False, default="card")

    title = Column(String, nullable=False)
    description = Column(Text)
    image_url = Column(String)
    metadata_json = Column(JSON_TYPE, nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    sort_order = Column(Integer, default=0, nullable=False)

    targeting = relationship(
        "ContentTargetingORM", back_populates="content_item", cascade="all, delete-orphan"
    )


class ContentTargetingORM(Base):
    __tablename__ = "content_targeting"

    content_id = Column(String, ForeignKey("content_items.content_id"), nullable=False)
    persona = Column(String, nullable=False, default=ALL)
    funnel_stage = Column(String, nullable=False, default=ALL)

    __table_args__ = (
        PrimaryKeyConstraint("content_id", "persona", "funnel_stage", name="content_targeting_pk"),
    )

    content_item = relationship("ContentItemORM", back_populates="targeting")
