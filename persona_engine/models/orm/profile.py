from sqlalchemy import Column, String, Boolean, DateTime
from datetime import datetime

from .base import Base


class VisitorProfileORM(Base):
    """Account-scoped persona preference for authenticated visitors."""

    __tablename__ = "visitor_profiles"

    account_id = Column(String, primary_key=True)
    persona = Column(String, nullable=True)
    funnel_stage = Column(String, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SessionSegmentORM(Base):
    """Session-scoped persona choice for anonymous visitors."""

    __tablename__ = "session_segments"

    session_id = Column(String, primary_key=True)
    persona = Column(String, nullable=True)
    invitation_shown = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
