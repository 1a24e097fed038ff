from sqlalchemy import Column, String, DateTime, Enum, Index
from datetime import datetime
import enum

from .base import Base


class EngagementType(enum.Enum):
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"


class EngagementEventORM(Base):
    """Immutable engagement fact. Rows are inserted, never updated."""

    __tablename__ = "engagement_events"

    event_id = Column(String, primary_key=True)

    # Message or campaign the event belongs to
    subject_id = Column(String, nullable=False, index=True)
    event_type = Column(Enum(EngagementType), nullable=False, index=True)
    recipient_id = Column(String, nullable=False)
    # Recipient persona at send time, used for persona-scoped insights
    persona = Column(String, nullable=True, index=True)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_engagement_subject_recipient", "subject_id", "recipient_id"),
    )
