# services/visibility_service.py
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from persona_engine.defaults import KNOWN_SECTIONS, SECTION_ANCHOR_MAP
from persona_engine.models.orm.content import ALL
from persona_engine.models.schemas.content import CatalogItem, NavigationTargets, TargetingAssignment
from persona_engine.models.schemas.segment import Segment
from persona_engine.repositories.content_repo import ContentRepository

# Preferred navigation targets per persona
PREFERRED_TARGETS = {
    "student": NavigationTargets(primary="lead-magnet", secondary="testimonials"),
    "provider": NavigationTargets(primary="lead-magnet", secondary="impact"),
    "parent": NavigationTargets(primary="lead-magnet", secondary="services"),
    "donor": NavigationTargets(primary="donation", secondary="campaign-impact"),
    "volunteer": NavigationTargets(primary="services", secondary="testimonials"),
}
DEFAULT_TARGETS = NavigationTargets(primary="lead-magnet", secondary="testimonials")

FALLBACK_ORDER = ("services", "lead-magnet", "impact", "testimonials", "donation", "events")


def targeting_matches(assignment: TargetingAssignment, segment: Segment) -> bool:
    """Exact or 'all' on persona, and exact or 'all' on funnel stage."""
    persona_ok = assignment.persona == ALL or assignment.persona == segment.persona
    stage_ok = assignment.funnel_stage == ALL or assignment.funnel_stage == segment.funnel_stage
    return persona_ok and stage_ok


def item_visible(item: CatalogItem, segment: Segment) -> bool:
    # An active item with no targeting rows is hidden
    return item.is_active and any(targeting_matches(t, segment) for t in item.targeting)


def project(segment: Segment, catalog: Iterable[CatalogItem]) -> dict[str, bool]:
    """Section key -> visible, for every known section plus any in the catalog."""
    visibility = {section: False for section in KNOWN_SECTIONS}
    for item in catalog:
        visibility[item.section_key] = visibility.get(item.section_key, False) or item_visible(item, segment)
    return visibility


def navigation_targets(persona: Optional[str], visible_sections: Optional[dict[str, bool]]) -> NavigationTargets:
    preferred = PREFERRED_TARGETS.get(persona or "", DEFAULT_TARGETS)

    # No visibility data yet: trust the preference
    if visible_sections is None:
        return preferred

    def pick(preferred_section: str) -> str:
        if visible_sections.get(preferred_section):
            return preferred_section
        for section in FALLBACK_ORDER:
            if visible_sections.get(section):
                return section
        # Nothing visible; pointing at the preferred key beats pointing nowhere
        return preferred_section

    return NavigationTargets(primary=pick(preferred.primary), secondary=pick(preferred.secondary))


def section_for_anchor(anchor: str) -> Optional[str]:
    if not anchor.startswith("#"):
        anchor = f"#{anchor}"
    return SECTION_ANCHOR_MAP.get(anchor)


class VisibilityService:
    def __init__(self, db: Session):
        self.content_repo = ContentRepository(db)

    def get_catalog(self) -> list[CatalogItem]:
        return [CatalogItem.model_validate(item) for item in self.content_repo.get_catalog()]

    def project_visibility(self, segment: Segment) -> dict[str, bool]:
        return project(segment, self.get_catalog())

    def get_navigation_targets(self, segment: Segment) -> NavigationTargets:
        return navigation_targets(segment.persona, self.project_visibility(segment))
