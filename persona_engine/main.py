from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Path, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session
from starlette import status

from persona_engine.core.auth import is_admin_request, require_auth_token
from persona_engine.core.db import get_db, init_db
from persona_engine.core.log_config import configure_logging
from persona_engine.core.settings import config_settings
from persona_engine.models.schemas.content import NavigationTargets, ResolvedContentModel
from persona_engine.models.schemas.engagement import (
    EngagementEventCreateModel,
    EngagementEventResponseModel,
    InsightScope,
    InsightsResult,
    TimeSeriesInterval,
    TimeSeriesMetric,
    TimeSeriesResult,
)
from persona_engine.models.schemas.experiment import (
    AssignmentModel,
    ConversionCreateModel,
    ConversionResponseModel,
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentResultsModel,
)
from persona_engine.models.schemas.segment import (
    AdminPreview,
    FunnelStage,
    Persona,
    Segment,
    SegmentChoiceModel,
    SegmentResolution,
    VisitorContext,
)
from persona_engine.services.engagement_service import EngagementService
from persona_engine.services.experiment_service import ExperimentService
from persona_engine.services.segment_service import SegmentService
from persona_engine.services.visibility_service import VisibilityService, section_for_anchor

configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Persona engine",
    description="Segment resolution, experiment assignment, content visibility and send-time insights.",
    version="0.1.0",
    lifespan=lifespan,
)

# Everything under this router needs an admin bearer token
admin_router = APIRouter(dependencies=[Depends(require_auth_token)])


# --- Request context ---


def get_visitor_context(
    x_session_id: str = Header(..., description="Browser session id."),
    x_account_id: Optional[str] = Header(None, description="Set by the auth layer for signed-in visitors."),
    x_admin_preview_persona: Optional[str] = Header(None),
    x_admin_preview_funnel_stage: Optional[str] = Header(None),
    x_admin_preview_expires_at: Optional[datetime] = Header(None),
    is_admin: bool = Depends(is_admin_request),
) -> VisitorContext:
    """
    Builds the explicit request context. Admin previews are honoured only
    for admin tokens and never outlive ADMIN_PREVIEW_MAX_MINUTES.
    """
    admin_preview = None
    if is_admin and (x_admin_preview_persona or x_admin_preview_funnel_stage):
        latest = datetime.utcnow() + timedelta(minutes=config_settings.ADMIN_PREVIEW_MAX_MINUTES)
        expires_at = latest
        if x_admin_preview_expires_at is not None:
            requested = x_admin_preview_expires_at
            if requested.tzinfo is not None:
                requested = requested.astimezone(timezone.utc).replace(tzinfo=None)
            expires_at = min(requested, latest)
        try:
            admin_preview = AdminPreview(
                persona=x_admin_preview_persona,
                funnel_stage=x_admin_preview_funnel_stage,
                expires_at=expires_at,
            )
        except ValidationError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return VisitorContext(session_id=x_session_id, account_id=x_account_id, admin_preview=admin_preview)


def get_segment(
    persona: Optional[Persona] = Query(None),
    funnel_stage: Optional[FunnelStage] = Query(None),
) -> Segment:
    """Segment passed explicitly by a rendering collaborator."""
    try:
        return Segment(persona=persona, funnel_stage=funnel_stage)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


# --- Segments ---


@app.get("/segment", response_model=SegmentResolution, summary="Resolve the visitor's segment")
def get_segment_resolution(
    context: VisitorContext = Depends(get_visitor_context),
    db: Session = Depends(get_db),
):
    return SegmentService(db).resolve_segment(context)


@app.put("/segment", response_model=SegmentResolution, summary="Commit the visitor's persona choice")
def put_segment_choice(
    choice: SegmentChoiceModel,
    context: VisitorContext = Depends(get_visitor_context),
    db: Session = Depends(get_db),
):
    return SegmentService(db).commit_choice(context, choice.persona)


# --- Experiments ---


@admin_router.post(
    "/experiments",
    response_model=ExperimentResponseModel,
    status_code=status.HTTP_201_CREATED,
)
def post_experiments(experiment_data: ExperimentCreateModel, db: Session = Depends(get_db)):
    return ExperimentService(db).create_experiment(experiment_data)


@admin_router.post("/experiments/{experiment_id}/activate", response_model=ExperimentResponseModel)
def activate_experiment(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).activate_experiment(experiment_id)


@admin_router.post("/experiments/{experiment_id}/complete", response_model=ExperimentResponseModel)
def complete_experiment(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).complete_experiment(experiment_id)


@admin_router.get(
    "/experiments/{experiment_id}/results",
    response_model=ExperimentResultsModel,
    summary="Get statistics for an experiment",
)
def get_experiment_results(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).get_experiment_results(experiment_id)


@app.get(
    "/experiments/{experiment_key}/assignment/{visitor_id}",
    response_model=Optional[AssignmentModel],
    summary="Get or create a visitor's assignment",
)
def get_visitor_variant_assignment(
    experiment_key: str = Path(..., description="Experiment key, e.g. 'hero'."),
    visitor_id: str = Path(..., description="Session or account id."),
    segment: Segment = Depends(get_segment),
    db: Session = Depends(get_db),
):
    """
    Returns the visitor's persistent assignment, creating one if an active
    experiment targets the segment. A null body means the control experience.
    """
    return ExperimentService(db).get_or_assign(visitor_id, experiment_key, segment)


@app.post(
    "/conversions",
    response_model=ConversionResponseModel,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Record a conversion goal",
)
def post_conversions(conversion: ConversionCreateModel, db: Session = Depends(get_db)):
    return ExperimentService(db).record_conversion(
        conversion.visitor_id, conversion.experiment_key, conversion.goal
    )


# --- Content ---


@app.get("/content/visible-sections", response_model=dict[str, bool])
def get_visible_sections(segment: Segment = Depends(get_segment), db: Session = Depends(get_db)):
    return VisibilityService(db).project_visibility(segment)


@app.get("/content/{section_key}/resolved", response_model=ResolvedContentModel)
def get_resolved_content(
    section_key: str,
    visitor_id: str = Query(...),
    experiment_key: Optional[str] = Query(None, description="Defaults to the section key."),
    segment: Segment = Depends(get_segment),
    db: Session = Depends(get_db),
):
    return ExperimentService(db).resolve_content(visitor_id, experiment_key or section_key, segment, section_key)


@app.get("/navigation/targets", response_model=NavigationTargets)
def get_navigation_targets(segment: Segment = Depends(get_segment), db: Session = Depends(get_db)):
    return VisibilityService(db).get_navigation_targets(segment)


@app.get("/navigation/anchors/{anchor}")
def get_anchor_visibility(anchor: str, segment: Segment = Depends(get_segment), db: Session = Depends(get_db)):
    section = section_for_anchor(anchor)
    if section is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown anchor '{anchor}'.")
    visible = VisibilityService(db).project_visibility(segment)
    return {"section": section, "visible": visible.get(section, False)}


# --- Engagement ---


@app.post(
    "/engagement-events",
    response_model=EngagementEventResponseModel,
    status_code=status.HTTP_201_CREATED,
    summary="Record an engagement event",
)
def post_engagement_events(event_data: EngagementEventCreateModel, db: Session = Depends(get_db)):
    return EngagementService(db).record_event(event_data)


@admin_router.get("/email-insights/best-send-times", response_model=InsightsResult)
def get_best_send_times(
    scope: InsightScope = Query(InsightScope.GLOBAL),
    scope_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return EngagementService(db).compute_send_time_insights(scope, scope_id)


@admin_router.get("/email-insights/time-series/{subject_id}", response_model=TimeSeriesResult)
def get_time_series(
    subject_id: str,
    metric: TimeSeriesMetric = Query(TimeSeriesMetric.OPENS),
    interval: TimeSeriesInterval = Query(TimeSeriesInterval.DAY),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    return EngagementService(db).compute_time_series(subject_id, metric, interval, start_date, end_date)


app.include_router(admin_router)


if __name__ == "__main__":
    uvicorn.run("persona_engine.main:app", host="0.0.0.0", port=8000, reload=True)
