from sqlalchemy import Column, String, Float, Boolean, ForeignKey, DateTime, Text, Enum, Index, func, text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class ExperimentStatus(enum.Enum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


# --- Experiment Model ---
class ExperimentORM(Base):
    __tablename__ = "experiments"

    # --- Core Identifiers ---
    experiment_id = Column(String, primary_key=True, index=True)
    # Several experiments may share a key over time (or per segment)
    key = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text)

    # --- Lifecycle ---
    status = Column(Enum(ExperimentStatus), default=ExperimentStatus.DRAFT, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    activated_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # --- Targeting ---
    # NULL means "any persona" / "any funnel stage"
    target_persona = Column(String, nullable=True)
    target_funnel_stage = Column(String, nullable=True)

    # --- Analysis ---
    primary_goal = Column(String, nullable=False)

    variants = relationship("VariantORM", back_populates="experiment", order_by="VariantORM.variant_name")

    __table_args__ = (
        Index("ix_experiments_key_status", "key", "status"),
        # One ACTIVE experiment per key and exact targeting; NULL targeting
        # is coalesced so wildcard rows collide too
        Index(
            "uq_experiment_active_targeting",
            key,
            func.coalesce(target_persona, "*"),
            func.coalesce(target_funnel_stage, "*"),
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )


# --- Variant Configuration Model ---
class VariantORM(Base):
    __tablename__ = "variants"

    variant_id = Column(String, primary_key=True)
    variant_name = Column(String, nullable=False)
    traffic_allocation_percent = Column(Float, nullable=False)
    is_control = Column(Boolean, default=False, nullable=False)

    # Content shown to this variant; validity is checked at render time
    content_item_id = Column(String, nullable=True)
    # Presentation overrides merged onto the content (title, ctaText, ...)
    configuration_json = Column(JSON_TYPE, nullable=True)

    experiment_id = Column(String, ForeignKey("experiments.experiment_id"), nullable=False, index=True)

    experiment = relationship("ExperimentORM", back_populates="variants")
