# services/engagement_service.py
import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from persona_engine.core.settings import config_settings
from persona_engine.models.orm.engagement import EngagementEventORM, EngagementType
from persona_engine.models.schemas.engagement import (
    DataPoint,
    EngagementEventCreateModel,
    EngagementEventResponseModel,
    InsightScope,
    InsightStatus,
    InsightsResult,
    SendTimeWindow,
    TimeSeriesInterval,
    TimeSeriesMetric,
    TimeSeriesResult,
)
from persona_engine.repositories.cache_repo import InsightCacheRepository
from persona_engine.repositories.engagement_repo import EngagementRepository
from persona_engine.services.cache_service import FreshnessCache, SqlCacheStore
from persona_engine.services.stats import confidence_score, lift_percent, to_basis_points

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7
HOURS_PER_DAY = 24
BUCKET_COUNT = DAYS_PER_WEEK * HOURS_PER_DAY
HEADLINE_WINDOWS = 3

METRIC_EVENT_TYPES = {
    TimeSeriesMetric.SENDS: EngagementType.SENT,
    TimeSeriesMetric.OPENS: EngagementType.OPENED,
    TimeSeriesMetric.CLICKS: EngagementType.CLICKED,
}


def to_reference_time(timestamp: datetime, zone: ZoneInfo) -> datetime:
    """Stored timestamps are naive UTC; convert to the reference zone."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(zone)


def to_naive_utc(timestamp: Optional[datetime]) -> Optional[datetime]:
    """Aware values are converted to the naive UTC the event log stores."""
    if timestamp is None or timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(timezone.utc).replace(tzinfo=None)


def bucket_index(timestamp: datetime, zone: ZoneInfo) -> tuple[int, int]:
    """(day_of_week with 0 = Sunday, hour_of_day) in the reference zone."""
    local = to_reference_time(timestamp, zone)
    return (local.weekday() + 1) % DAYS_PER_WEEK, local.hour


def truncate(timestamp: datetime, interval: TimeSeriesInterval, zone: ZoneInfo) -> datetime:
    """Start of the hour, day or Sunday-based week containing the timestamp."""
    local = to_reference_time(timestamp, zone).replace(minute=0, second=0, microsecond=0)
    if interval == TimeSeriesInterval.HOUR:
        return local
    local = local.replace(hour=0)
    if interval == TimeSeriesInterval.DAY:
        return local
    days_since_sunday = (local.weekday() + 1) % DAYS_PER_WEEK
    # Wall-clock arithmetic: stays at local midnight across DST changes
    return local - timedelta(days=days_since_sunday)


def aggregate_send_times(
    events: list[EngagementEventORM],
    zone: ZoneInfo,
    min_baseline_sends: int,
    min_bucket_sends: int,
    saturation_k: float,
) -> dict:
    """
    Buckets sends into 168 day-of-week x hour windows and attributes each
    opened (subject, recipient) pair to the window its send fell in.

    Deterministic for a given event list: recomputing over an unchanged
    log yields identical buckets and ranks.
    """
    send_bucket: dict[tuple[str, str], tuple[int, int]] = {}
    sends: Counter = Counter()
    opened_pairs: set[tuple[str, str]] = set()

    for event in events:
        pair = (event.subject_id, event.recipient_id)
        if event.event_type == EngagementType.SENT:
            bucket = bucket_index(event.timestamp, zone)
            sends[bucket] += 1
            # A re-send counts as a send; opens follow the first one
            send_bucket.setdefault(pair, bucket)
        elif event.event_type == EngagementType.OPENED:
            opened_pairs.add(pair)

    opens: Counter = Counter()
    for pair in opened_pairs:
        bucket = send_bucket.get(pair)
        # Opens with no recorded send cannot be placed and are skipped
        if bucket is not None:
            opens[bucket] += 1

    baseline_sends = sum(sends.values())
    baseline_opens = sum(opens.values())
    baseline_rate = to_basis_points(baseline_opens, baseline_sends)

    windows = []
    for (day, hour), send_count in sends.items():
        open_count = opens[(day, hour)]
        rate = to_basis_points(open_count, send_count)
        windows.append(
            SendTimeWindow(
                day_of_week=day,
                hour_of_day=hour,
                send_count=send_count,
                open_count=open_count,
                open_rate=rate,
                confidence_score=confidence_score(send_count, saturation_k, min_bucket_sends),
                lift_percent=lift_percent(rate, baseline_rate),
            )
        )

    if baseline_sends < min_baseline_sends or not windows:
        result_status = InsightStatus.INSUFFICIENT_DATA
    else:
        result_status = InsightStatus.OK

    windows.sort(key=lambda w: (w.day_of_week, w.hour_of_day))
    ranked = sorted(windows, key=lambda w: (-w.open_rate, -w.send_count, w.day_of_week, w.hour_of_day))

    heatmap: list[Optional[dict]] = [None] * BUCKET_COUNT
    for window in windows:
        heatmap[window.day_of_week * HOURS_PER_DAY + window.hour_of_day] = window.model_dump()

    return {
        "status": result_status.value,
        "baseline_send_count": baseline_sends,
        "baseline_open_rate": baseline_rate,
        "insights": [w.model_dump() for w in windows],
        # No recommendations from a sample too small to trust
        "top_windows": [w.model_dump() for w in ranked[:HEADLINE_WINDOWS]]
        if result_status == InsightStatus.OK
        else [],
        "heatmap": heatmap,
    }


def count_series(
    events: list[EngagementEventORM], interval: TimeSeriesInterval, zone: ZoneInfo
) -> list[dict]:
    counts: Counter = Counter(truncate(event.timestamp, interval, zone) for event in events)
    # JSON-friendly so the result can live in the SQL cache
    return [{"timestamp": ts.isoformat(), "count": counts[ts]} for ts in sorted(counts)]


class EngagementService:
    def __init__(self, db: Session, cache: Optional[FreshnessCache] = None, clock: Callable[[], datetime] = datetime.utcnow):
        self.engagement_repo = EngagementRepository(db)
        self.cache = cache or FreshnessCache(SqlCacheStore(InsightCacheRepository(db)), clock=clock)
        self.zone = ZoneInfo(config_settings.REFERENCE_TIMEZONE)

    def record_event(self, event_data: EngagementEventCreateModel) -> EngagementEventResponseModel:
        try:
            recorded_event = self.engagement_repo.create_event(event_data)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError as e:
            logger.error("Failed to record engagement event for %s: %s", event_data.subject_id, e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Encountered error when recording the engagement event",
            )
        return EngagementEventResponseModel(event_id=recorded_event.event_id)

    def _scope_filters(self, scope: InsightScope, scope_id: Optional[str]) -> dict:
        if scope == InsightScope.GLOBAL:
            return {}
        if not scope_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"scope_id is required for scope '{scope.value}'",
            )
        if scope == InsightScope.CAMPAIGN:
            return {"subject_id": scope_id}
        return {"persona": scope_id}

    def compute_send_time_insights(self, scope: InsightScope, scope_id: Optional[str] = None) -> InsightsResult:
        """
        Send-time recommendations for a scope, served from the cache while
        younger than INSIGHTS_CACHE_TTL_HOURS. Callers must branch on
        status: insufficient_data is a normal outcome, not an error.
        """
        filters = self._scope_filters(scope, scope_id)
        cache_key = f"send-times:{scope.value}:{scope_id or '*'}:{config_settings.REFERENCE_TIMEZONE}"

        def compute() -> dict:
            events = self.engagement_repo.get_events(
                [EngagementType.SENT, EngagementType.OPENED], **filters
            )
            logger.info("Aggregating %d engagement events for %s", len(events), cache_key)
            return aggregate_send_times(
                events,
                self.zone,
                min_baseline_sends=config_settings.MIN_BASELINE_SENDS,
                min_bucket_sends=config_settings.MIN_BUCKET_SENDS,
                saturation_k=config_settings.CONFIDENCE_SATURATION_K,
            )

        cached = self.cache.get_or_compute(cache_key, config_settings.INSIGHTS_CACHE_TTL_HOURS, compute)
        return InsightsResult(
            scope=scope,
            scope_id=scope_id,
            cache_age_hours=cached.age_in_hours,
            **cached.value,
        )

    def compute_time_series(
        self,
        subject_id: str,
        metric: TimeSeriesMetric,
        interval: TimeSeriesInterval,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> TimeSeriesResult:
        """
        Ordered event counts for one subject. Buckets with no events are
        left out; a missing timestamp means a count of zero.
        """
        start_date, end_date = to_naive_utc(start_date), to_naive_utc(end_date)
        cache_key = (
            f"time-series:{subject_id}:{metric.value}:{interval.value}:"
            f"{start_date.isoformat() if start_date else '*'}:{end_date.isoformat() if end_date else '*'}"
        )

        def compute() -> list[dict]:
            events = self.engagement_repo.get_events(
                [METRIC_EVENT_TYPES[metric]],
                subject_id=subject_id,
                start_date=start_date,
                end_date=end_date,
            )
            return count_series(events, interval, self.zone)

        cached = self.cache.get_or_compute(cache_key, config_settings.INSIGHTS_CACHE_TTL_HOURS, compute)
        return TimeSeriesResult(
            subject_id=subject_id,
            metric=metric,
            interval=interval,
            points=[DataPoint(**point) for point in cached.value],
            cache_age_hours=cached.age_in_hours,
        )
