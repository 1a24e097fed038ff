import pytest

from persona_engine.models.orm.content import ContentItemORM, ContentTargetingORM
from persona_engine.models.schemas.content import CatalogItem, TargetingAssignment
from persona_engine.models.schemas.segment import Segment
from persona_engine.services.visibility_service import (
    FALLBACK_ORDER,
    VisibilityService,
    navigation_targets,
    project,
    section_for_anchor,
)

DONOR = Segment(persona="donor", funnel_stage="consideration")


def item(section, active=True, targeting=()):
    return CatalogItem(
        content_id=f"{section}-{len(targeting)}-{active}",
        section_key=section,
        is_active=active,
        targeting=[TargetingAssignment(persona=p, funnel_stage=f) for p, f in targeting],
    )


class TestProject:
    def test_active_and_targeted_item_makes_section_visible(self):
        visible = project(DONOR, [item("donation", targeting=[("donor", "consideration")])])
        assert visible["donation"] is True

    def test_wildcards_match(self):
        catalog = [
            item("services", targeting=[("all", "all")]),
            item("impact", targeting=[("donor", "all")]),
            item("events", targeting=[("all", "consideration")]),
        ]
        visible = project(DONOR, catalog)
        assert visible["services"] and visible["impact"] and visible["events"]

    def test_inactive_items_never_make_a_section_visible(self):
        visible = project(DONOR, [item("donation", active=False, targeting=[("all", "all"), ("donor", "consideration")])])
        assert visible["donation"] is False

    def test_active_item_without_targeting_is_hidden(self):
        assert project(DONOR, [item("testimonials", targeting=[])])["testimonials"] is False

    def test_other_segment_targeting_is_hidden(self):
        catalog = [item("lead-magnet", targeting=[("student", "all"), ("donor", "retention")])]
        assert project(DONOR, catalog)["lead-magnet"] is False

    def test_one_visible_item_is_enough(self):
        catalog = [
            item("services", active=False, targeting=[("all", "all")]),
            item("services", targeting=[("donor", "consideration")]),
        ]
        assert project(DONOR, catalog)["services"] is True

    def test_known_sections_always_present(self):
        visible = project(DONOR, [item("sponsors", targeting=[("all", "all")])])
        assert visible["campaign-impact"] is False
        assert visible["sponsors"] is True

    def test_unresolved_segment_only_matches_full_wildcards(self):
        catalog = [item("services", targeting=[("all", "all")]), item("impact", targeting=[("donor", "all")])]
        visible = project(Segment(), catalog)
        assert visible["services"] is True
        assert visible["impact"] is False


class TestNavigationTargets:
    def test_preferred_targets_when_visible(self):
        targets = navigation_targets("donor", {"donation": True, "campaign-impact": True})
        assert (targets.primary, targets.secondary) == ("donation", "campaign-impact")

    def test_hidden_preferred_target_falls_back_in_priority_order(self):
        targets = navigation_targets("donor", {"donation": False, "impact": True, "events": True})
        assert targets.primary == "impact"
        assert targets.secondary == "impact"

    @pytest.mark.parametrize("visible_key", FALLBACK_ORDER)
    def test_fallback_always_comes_from_priority_list(self, visible_key):
        visible = {key: key == visible_key for key in FALLBACK_ORDER}
        visible["campaign-impact"] = False
        targets = navigation_targets("donor", visible)
        assert targets.secondary == visible_key

    def test_nothing_visible_keeps_preferred_keys(self):
        targets = navigation_targets("student", {key: False for key in FALLBACK_ORDER})
        assert (targets.primary, targets.secondary) == ("lead-magnet", "testimonials")

    def test_unknown_persona_uses_default_preferences(self):
        targets = navigation_targets(None, None)
        assert (targets.primary, targets.secondary) == ("lead-magnet", "testimonials")


def test_section_for_anchor_resolves_aliases():
    assert section_for_anchor("#donate") == "donation"
    assert section_for_anchor("dashboard") == "student-dashboard"
    assert section_for_anchor("#nowhere") is None


def test_service_projects_from_stored_catalog(db):
    content = ContentItemORM(content_id="gala", section_key="events", title="Spring Gala")
    content.targeting.append(ContentTargetingORM(persona="donor", funnel_stage="all"))
    db.add(content)
    db.add(ContentItemORM(content_id="untargeted", section_key="services", title="Programs"))
    db.commit()

    service = VisibilityService(db)
    visible = service.project_visibility(DONOR)

    assert visible["events"] is True
    assert visible["services"] is False
    assert service.get_navigation_targets(DONOR).primary == "events"
