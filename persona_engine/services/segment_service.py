# services/segment_service.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from persona_engine.models.schemas.segment import (
    AdminPreview,
    FunnelStage,
    Persona,
    Segment,
    SegmentResolution,
    StoredPreference,
    VisitorContext,
)
from persona_engine.repositories.profile_repo import ProfileRepository

logger = logging.getLogger(__name__)

UNRESOLVED = "unresolved"


def _known(enum_cls, value: Optional[str], owner: str) -> Optional[str]:
    """Stored value if it is a member of enum_cls; anything else reads as absent."""
    if value in (None, "", "null"):
        return None
    try:
        return enum_cls(value).value
    except ValueError:
        logger.warning("Ignoring unknown %s %r stored for %s", enum_cls.__name__, value, owner)
        return None


@dataclass(frozen=True)
class ResolutionInputs:
    """Everything the precedence chain looks at, gathered up front."""

    admin_preview: Optional[AdminPreview]
    stored_preference: Optional[StoredPreference]
    session_choice: Optional[str]
    authenticated: bool
    now: datetime


@dataclass(frozen=True)
class Candidate:
    persona: Optional[str]
    funnel_stage: Optional[str] = None


def _admin_override(inputs: ResolutionInputs) -> Optional[Candidate]:
    if inputs.admin_preview is None:
        return None
    persona = inputs.admin_preview.active_persona(inputs.now)
    if persona is None:
        return None
    return Candidate(persona=persona)


def _account_preference(inputs: ResolutionInputs) -> Optional[Candidate]:
    # Authoritative for signed-in visitors even when nothing is stored yet
    if not inputs.authenticated:
        return None
    preference = inputs.stored_preference or StoredPreference()
    return Candidate(persona=preference.persona, funnel_stage=preference.funnel_stage)


def _session_choice(inputs: ResolutionInputs) -> Optional[Candidate]:
    if inputs.session_choice in (None, "", "null"):
        return None
    return Candidate(persona=inputs.session_choice)


# Evaluated in order; the first resolver returning a candidate wins
RESOLVERS: list[tuple[str, Callable[[ResolutionInputs], Optional[Candidate]]]] = [
    ("admin_override", _admin_override),
    ("account_preference", _account_preference),
    ("session_choice", _session_choice),
]


def resolve(
    admin_preview: Optional[AdminPreview],
    stored_preference: Optional[StoredPreference],
    session_choice: Optional[str],
    authenticated: bool = False,
    invitation_shown: bool = False,
    now: Optional[datetime] = None,
) -> SegmentResolution:
    """
    Pure precedence chain: admin preview, then the account preference for
    authenticated visitors, then the anonymous session choice.

    A resolved persona gets the admin funnel override when one is active,
    otherwise its stored stage, otherwise awareness. An unresolved persona
    never carries a stage.
    """
    inputs = ResolutionInputs(
        admin_preview=admin_preview,
        stored_preference=stored_preference,
        session_choice=session_choice,
        authenticated=authenticated,
        now=now or datetime.utcnow(),
    )

    source, candidate = UNRESOLVED, None
    for name, resolver in RESOLVERS:
        candidate = resolver(inputs)
        if candidate is not None:
            source = name
            break

    if candidate is None or candidate.persona is None:
        segment = Segment()
        show_invitation = not authenticated and not invitation_shown
        return SegmentResolution(segment=segment, source=source, show_invitation=show_invitation)

    funnel_override = admin_preview.active_funnel_stage(inputs.now) if admin_preview else None
    funnel_stage = funnel_override or candidate.funnel_stage or FunnelStage.AWARENESS.value

    return SegmentResolution(
        segment=Segment(persona=candidate.persona, funnel_stage=funnel_stage),
        source=source,
        show_invitation=False,
    )


class SegmentService:
    """Loads the stored inputs for a visitor and runs the precedence chain."""

    def __init__(self, db: Session):
        self.profile_repo = ProfileRepository(db)

    def resolve_segment(self, context: VisitorContext) -> SegmentResolution:
        stored_preference = None
        if context.is_authenticated:
            profile = self.profile_repo.get_profile(context.account_id)
            if profile is not None:
                stored_preference = StoredPreference(
                    persona=_known(Persona, profile.persona, context.account_id),
                    funnel_stage=_known(FunnelStage, profile.funnel_stage, context.account_id),
                )

        session_row = self.profile_repo.get_session(context.session_id)
        session_choice = _known(Persona, session_row.persona, context.session_id) if session_row else None
        invitation_shown = bool(session_row and session_row.invitation_shown)

        resolution = resolve(
            admin_preview=context.admin_preview,
            stored_preference=stored_preference,
            session_choice=session_choice,
            authenticated=context.is_authenticated,
            invitation_shown=invitation_shown,
        )

        if resolution.show_invitation:
            # Once per session; failing to record it only risks a repeat prompt
            try:
                self.profile_repo.mark_invitation_shown(context.session_id)
            except RuntimeError as e:
                logger.warning("Could not record invitation for session %s: %s", context.session_id, e)

        return resolution

    def commit_choice(self, context: VisitorContext, persona: Optional[str]) -> SegmentResolution:
        """
        Persists an explicit persona choice, best effort. The returned
        segment reflects the choice even when the write failed.
        """
        stored_stage = None
        try:
            if context.is_authenticated:
                profile = self.profile_repo.update_account_persona(context.account_id, persona)
                stored_stage = _known(FunnelStage, profile.funnel_stage, context.account_id)
            else:
                self.profile_repo.update_session_persona(context.session_id, persona)
        except RuntimeError as e:
            logger.error("Failed to save persona preference for %s: %s", context.visitor_id, e)

        # Re-run the chain with the new value in place so an active admin
        # preview still takes precedence over the fresh choice.
        if context.is_authenticated:
            return resolve(
                admin_preview=context.admin_preview,
                stored_preference=StoredPreference(persona=persona, funnel_stage=stored_stage),
                session_choice=None,
                authenticated=True,
            )
        return resolve(
            admin_preview=context.admin_preview,
            stored_preference=None,
            session_choice=persona,
            authenticated=False,
            # The visitor just chose; never prompt again this session
            invitation_shown=True,
        )
