from sqlalchemy import Column, String, ForeignKey, DateTime, Index
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import Base


class ConversionORM(Base):
    """A goal reached by an enrolled visitor. Duplicates are stored as-is."""

    __tablename__ = "conversions"

    conversion_id = Column(String, primary_key=True)

    visitor_id = Column(String, nullable=False, index=True)
    experiment_key = Column(String, nullable=False)
    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    variant_id = Column(String, ForeignKey("variants.variant_id"), nullable=False)
    goal = Column(String, nullable=False)

    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_conversions_dedup", "experiment_id", "visitor_id", "goal"),
    )

    variant = relationship("VariantORM")
