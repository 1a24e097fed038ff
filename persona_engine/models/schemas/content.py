from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TargetingAssignment(BaseModel):
    persona: str = "all"
    funnel_stage: str = "all"

    model_config = ConfigDict(from_attributes=True)


class CatalogItem(BaseModel):
    """A content item as seen by the visibility projector."""

    content_id: str
    section_key: str
    is_active: bool
    targeting: List[TargetingAssignment] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class ContentModel(BaseModel):
    content_id: str
    section_key: str
    content_type: str = "card"
    title: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    metadata: Dict = Field(default_factory=dict)


class ResolvedContentModel(BaseModel):
    content: ContentModel
    source: str = Field(..., description="'experiment', 'segment_default' or 'hardcoded_default'")
    variant_id: Optional[str] = None


class NavigationTargets(BaseModel):
    primary: str
    secondary: str
