import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Persona(str, enum.Enum):
    STUDENT = "student"
    PROVIDER = "provider"
    PARENT = "parent"
    DONOR = "donor"
    VOLUNTEER = "volunteer"


class FunnelStage(str, enum.Enum):
    AWARENESS = "awareness"
    CONSIDERATION = "consideration"
    DECISION = "decision"
    RETENTION = "retention"


# Admin tooling sends this to mean "no override"
NO_OVERRIDE = "none"


class Segment(BaseModel):
    """Resolved (persona, funnel stage) targeting bucket."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    persona: Optional[Persona] = None
    funnel_stage: Optional[FunnelStage] = None

    @model_validator(mode="after")
    def _stage_requires_persona(self):
        if self.persona is None and self.funnel_stage is not None:
            raise ValueError("funnel_stage cannot be set without a persona")
        return self


class AdminPreview(BaseModel):
    """Time-bounded admin preview carried explicitly on a request."""

    persona: Optional[str] = None
    funnel_stage: Optional[str] = None
    expires_at: datetime

    @field_validator("persona")
    @classmethod
    def _known_persona(cls, value):
        if value not in (None, NO_OVERRIDE):
            Persona(value)
        return value

    @field_validator("funnel_stage")
    @classmethod
    def _known_stage(cls, value):
        if value not in (None, NO_OVERRIDE):
            FunnelStage(value)
        return value

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def active_persona(self, now: datetime) -> Optional[str]:
        if not self.is_active(now) or self.persona in (None, NO_OVERRIDE):
            return None
        return self.persona

    def active_funnel_stage(self, now: datetime) -> Optional[str]:
        if not self.is_active(now) or self.funnel_stage in (None, NO_OVERRIDE):
            return None
        return self.funnel_stage


class StoredPreference(BaseModel):
    persona: Optional[Persona] = None
    funnel_stage: Optional[FunnelStage] = None


class VisitorContext(BaseModel):
    """One browsing session, optionally tied to an authenticated account."""

    session_id: str
    account_id: Optional[str] = None
    admin_preview: Optional[AdminPreview] = None

    @property
    def is_authenticated(self) -> bool:
        return self.account_id is not None

    @property
    def visitor_id(self) -> str:
        # Assignments follow the account once the visitor signs in
        return self.account_id or self.session_id


class SegmentResolution(BaseModel):
    segment: Segment
    source: str = Field(..., description="Resolver that matched, or 'unresolved'.")
    show_invitation: bool = False


class SegmentChoiceModel(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    persona: Optional[Persona] = None
