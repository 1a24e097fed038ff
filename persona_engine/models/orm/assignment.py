from sqlalchemy import Column, String, ForeignKey, DateTime, Index, text
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import Base


class AssignmentORM(Base):
    __tablename__ = "assignments"

    assignment_id = Column(String, primary_key=True)

    visitor_id = Column(String, nullable=False, index=True)
    experiment_key = Column(String, nullable=False)
    experiment_id = Column(
        String, ForeignKey("experiments.experiment_id"), nullable=False, index=True
    )
    variant_id = Column(String, ForeignKey("variants.variant_id"), nullable=False)

    # Segment at enrollment time, kept for reporting
    persona = Column(String, nullable=True)
    funnel_stage = Column(String, nullable=True)

    assigned_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    # Set when the experiment is completed; retired rows no longer bind the visitor
    retired_at = Column(DateTime, nullable=True)

    __table_args__ = (
        # At most one live assignment per (visitor, experiment key)
        Index(
            "uq_assignment_live_visitor_key",
            "visitor_id",
            "experiment_key",
            unique=True,
            postgresql_where=text("retired_at IS NULL"),
            sqlite_where=text("retired_at IS NULL"),
        ),
    )

    variant = relationship("VariantORM")

    experiment = relationship("ExperimentORM")
