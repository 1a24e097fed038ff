from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict

from .segment import Persona, FunnelStage


class VariantConfig(BaseModel):
    """Configuration for a single variant in an experiment."""

    variant_name: str
    traffic_allocation_percent: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="Percentage of traffic allocated to this variant.",
    )
    content_item_id: Optional[str] = None
    # Presentation overrides: title, description, imageUrl, ctaText, ...
    configuration_json: Optional[Dict] = None
    is_control: Optional[bool] = None


class ExperimentCreateModel(BaseModel):
    key: str = Field(..., description="Page element the experiment applies to, e.g. 'hero'.")
    name: str
    description: Optional[str] = None
    target_persona: Optional[Persona] = Field(None, description="None targets every persona.")
    target_funnel_stage: Optional[FunnelStage] = Field(None, description="None targets every stage.")
    variants: List[VariantConfig] = Field(..., min_length=1)
    primary_goal: str = Field(..., description="Conversion goal reported on, e.g. 'cta_click'.")

    model_config = ConfigDict(use_enum_values=True)


class ExperimentVariantConfigResponseModel(BaseModel):
    variant_id: str
    variant_name: str
    traffic_allocation_percent: float
    is_control: bool = False
    content_item_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class ExperimentResponseModel(BaseModel):
    experiment_id: str
    key: str
    name: str
    description: Optional[str] = None
    status: str = Field(..., description="DRAFT, ACTIVE or COMPLETED")
    target_persona: Optional[str] = None
    target_funnel_stage: Optional[str] = None
    primary_goal: str
    created_at: datetime
    activated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    variants: List[ExperimentVariantConfigResponseModel]


# --- Visitor Assignment ---


class AssignmentModel(BaseModel):
    """Data model for a persistent visitor assignment record."""

    visitor_id: str
    experiment_key: str
    experiment_id: str
    variant_id: str
    persona: Optional[str] = None
    funnel_stage: Optional[str] = None
    assigned_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ConversionCreateModel(BaseModel):
    visitor_id: str
    experiment_key: str
    goal: str = Field(..., description="e.g. 'cta_click', 'donation', 'signup'")


class ConversionResponseModel(BaseModel):
    recorded: bool
    conversion_id: Optional[str] = None


# --- Reporting ---


class VariantResult(BaseModel):
    variant_id: str
    variant_name: str
    is_control: bool
    traffic_allocation_percent: float
    assigned_visitors: int
    converted_visitors: int
    conversion_rate_bp: int = Field(..., description="Unique converters / assigned, in basis points.")
    confidence_vs_control: Optional[float] = Field(
        None, description="Two-proportion z-test confidence (0-100) against the control."
    )


class ExperimentResultsModel(BaseModel):
    experiment_id: str
    key: str
    name: str
    status: str
    primary_goal: str
    days_running: int
    total_assigned_visitors: int
    total_conversions: int
    global_conversion_rate_bp: int
    variants: List[VariantResult]
