from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class EngagementEventCreateModel(BaseModel):
    subject_id: str = Field(..., description="Message or campaign id.")
    event_type: str = Field(..., pattern="^(sent|opened|clicked)$")
    recipient_id: str
    persona: Optional[str] = None
    # Naive values are taken as UTC
    timestamp: Optional[datetime] = None


class EngagementEventResponseModel(BaseModel):
    event_id: str


class InsightScope(str, Enum):
    GLOBAL = "global"
    CAMPAIGN = "campaign"
    PERSONA = "persona"


class InsightStatus(str, Enum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


class SendTimeWindow(BaseModel):
    day_of_week: int = Field(..., ge=0, le=6, description="0 = Sunday")
    hour_of_day: int = Field(..., ge=0, le=23)
    send_count: int
    open_count: int
    open_rate: int = Field(..., description="Basis points (0-10000).")
    confidence_score: int = Field(..., ge=0, le=100)
    lift_percent: float = Field(..., description="Signed lift vs. the scope baseline.")


class InsightsResult(BaseModel):
    status: InsightStatus
    scope: InsightScope
    scope_id: Optional[str] = None
    baseline_send_count: int
    baseline_open_rate: int = Field(..., description="Basis points.")
    insights: List[SendTimeWindow] = Field(default_factory=list)
    top_windows: List[SendTimeWindow] = Field(default_factory=list)
    # 168 slots, index = day_of_week * 24 + hour_of_day; None where no sends
    heatmap: List[Optional[SendTimeWindow]] = Field(default_factory=list)
    cache_age_hours: float = 0.0


class TimeSeriesMetric(str, Enum):
    SENDS = "sends"
    OPENS = "opens"
    CLICKS = "clicks"


class TimeSeriesInterval(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"


class DataPoint(BaseModel):
    timestamp: datetime
    count: int


class TimeSeriesResult(BaseModel):
    subject_id: str
    metric: TimeSeriesMetric
    interval: TimeSeriesInterval
    # Sparse: buckets without events are omitted and mean zero
    points: List[DataPoint]
    cache_age_hours: float = 0.0
