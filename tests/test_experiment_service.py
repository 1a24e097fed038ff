import logging
from unittest.mock import Mock, patch

import pytest
from fastapi import HTTPException

from persona_engine.models.orm.assignment import AssignmentORM
from persona_engine.models.orm.content import ContentItemORM, ContentTargetingORM
from persona_engine.models.orm.conversion import ConversionORM
from persona_engine.models.schemas.content import ContentModel
from persona_engine.models.schemas.experiment import ExperimentCreateModel, VariantConfig
from persona_engine.models.schemas.segment import Segment
from persona_engine.repositories.assignment_repo import AssignmentRepository
from persona_engine.repositories.conversion_repo import ConversionRepository
from persona_engine.services.experiment_service import ExperimentService, apply_variant_overrides

DONOR = Segment(persona="donor", funnel_stage="awareness")


def fixed_rng(value):
    rng = Mock()
    rng.uniform.return_value = value
    return rng


def variant_named(experiment, name):
    return next(v for v in experiment.variants if v.variant_name == name)


def live_assignments(db, visitor_id):
    return (
        db.query(AssignmentORM)
        .filter(AssignmentORM.visitor_id == visitor_id, AssignmentORM.retired_at.is_(None))
        .all()
    )


class TestLifecycle:
    def test_allocation_must_total_100(self, db):
        with pytest.raises(HTTPException) as exc:
            ExperimentService(db).create_experiment(
                ExperimentCreateModel(
                    key="hero",
                    name="bad",
                    variants=[VariantConfig(variant_name="a", traffic_allocation_percent=60)],
                    primary_goal="cta_click",
                )
            )
        assert exc.value.status_code == 400

    def test_identical_targeting_is_rejected_at_activation(self, db, make_experiment):
        make_experiment(key="hero", name="first", persona="donor")
        second = make_experiment(key="hero", name="second", persona="donor", activate=False)

        with pytest.raises(HTTPException) as exc:
            ExperimentService(db).activate_experiment(second.experiment_id)

        assert exc.value.status_code == 409

    def test_concurrent_identical_activation_is_refused_by_storage(self, db, make_experiment):
        make_experiment(key="hero", name="first")
        second = make_experiment(key="hero", name="second", activate=False)
        service = ExperimentService(db)

        # The other activation commits after our conflict check has run
        with patch.object(service.experiment_repo, "get_active_experiments", return_value=[]):
            with pytest.raises(HTTPException) as exc:
                service.activate_experiment(second.experiment_id)

        assert exc.value.status_code == 409
        assert service.experiment_repo.get_experiment_with_variants(second.experiment_id).status.value == "DRAFT"

    def test_overlapping_but_different_targeting_is_allowed(self, make_experiment):
        make_experiment(key="hero", name="donors", persona="donor")
        everyone = make_experiment(key="hero", name="everyone")
        assert everyone.status == "ACTIVE"

    def test_same_targeting_on_another_key_is_allowed(self, make_experiment):
        make_experiment(key="hero", persona="donor")
        other = make_experiment(key="cta", persona="donor")
        assert other.status == "ACTIVE"

    def test_complete_retires_assignments(self, db, make_experiment):
        experiment = make_experiment()
        service = ExperimentService(db)
        service.get_or_assign("v-1", "hero", DONOR)

        completed = service.complete_experiment(experiment.experiment_id)

        assert completed.status == "COMPLETED"
        assert live_assignments(db, "v-1") == []
        assert service.get_or_assign("v-1", "hero", DONOR) is None

    def test_new_experiment_on_same_key_re_enrolls(self, db, make_experiment, caplog):
        service = ExperimentService(db)
        first = make_experiment(name="spring")
        service.get_or_assign("v-1", "hero", DONOR)
        service.complete_experiment(first.experiment_id)

        second = make_experiment(name="summer")
        with caplog.at_level(logging.INFO):
            assignment = service.get_or_assign("v-1", "hero", DONOR)

        assert assignment.experiment_id == second.experiment_id
        assert "Re-enrolling visitor v-1 on hero" in caplog.text


class TestGetOrAssign:
    def test_no_matching_experiment_means_control(self, db, make_experiment):
        make_experiment(persona="student")
        assert ExperimentService(db).get_or_assign("v-1", "hero", DONOR) is None

    def test_draft_experiments_do_not_serve(self, db, make_experiment):
        make_experiment(activate=False)
        assert ExperimentService(db).get_or_assign("v-1", "hero", DONOR) is None

    def test_assignment_is_stable(self, db, make_experiment):
        make_experiment()
        service = ExperimentService(db)

        first = service.get_or_assign("v-1", "hero", DONOR)
        second = service.get_or_assign("v-1", "hero", DONOR)

        assert first.variant_id == second.variant_id
        assert len(live_assignments(db, "v-1")) == 1

    def test_existing_assignment_survives_segment_change(self, db, make_experiment):
        experiment = make_experiment(persona="donor")
        service = ExperimentService(db)
        first = service.get_or_assign("v-1", "hero", DONOR)

        again = service.get_or_assign("v-1", "hero", Segment(persona="student", funnel_stage="decision"))

        assert again.variant_id == first.variant_id
        assert again.experiment_id == experiment.experiment_id

    def test_most_specific_experiment_wins(self, db, make_experiment):
        make_experiment(name="everyone")
        make_experiment(name="donor-any", persona="donor")
        exact = make_experiment(name="donor-awareness", persona="donor", funnel_stage="awareness")
        make_experiment(name="any-awareness", funnel_stage="awareness")

        assignment = ExperimentService(db).get_or_assign("v-1", "hero", DONOR)

        assert assignment.experiment_id == exact.experiment_id

    def test_persona_targeting_beats_stage_targeting(self, db, make_experiment):
        by_stage = make_experiment(name="any-awareness", funnel_stage="awareness")
        by_persona = make_experiment(name="donor-any", persona="donor")

        for visitor in ("v-1", "v-2", "v-3"):
            assignment = ExperimentService(db).get_or_assign(visitor, "hero", DONOR)
            assert assignment.experiment_id == by_persona.experiment_id
            assert assignment.experiment_id != by_stage.experiment_id

    def test_weighted_draw_follows_allocation(self, db, make_experiment):
        experiment = make_experiment(
            variants=[
                VariantConfig(variant_name="a", traffic_allocation_percent=10, is_control=True),
                VariantConfig(variant_name="b", traffic_allocation_percent=90),
            ]
        )

        low = ExperimentService(db, rng=fixed_rng(5.0)).get_or_assign("v-low", "hero", DONOR)
        high = ExperimentService(db, rng=fixed_rng(50.0)).get_or_assign("v-high", "hero", DONOR)

        assert low.variant_id == variant_named(experiment, "a").variant_id
        assert high.variant_id == variant_named(experiment, "b").variant_id

    def test_concurrent_writer_does_not_overwrite_first_variant(self, db, session_factory, make_experiment):
        experiment = make_experiment()
        control = variant_named(experiment, "control")
        treatment = variant_named(experiment, "treatment")

        # The other tab wins the race and stores the control variant
        other_tab = session_factory()
        AssignmentRepository(other_tab).create_if_absent(
            "v-race", "hero", experiment.experiment_id, control.variant_id
        )
        other_tab.close()

        service = ExperimentService(db, rng=fixed_rng(99.0))
        real_lookup = service.assignment_repo.get_assignment
        calls = {"n": 0}

        def lookup(visitor_id, experiment_key):
            calls["n"] += 1
            # First read happens before the other tab committed
            if calls["n"] == 1:
                return None
            return real_lookup(visitor_id, experiment_key)

        with patch.object(service.assignment_repo, "get_assignment", side_effect=lookup):
            assignment = service.get_or_assign("v-race", "hero", DONOR)

        assert assignment.variant_id == control.variant_id
        assert assignment.variant_id != treatment.variant_id
        assert len(live_assignments(db, "v-race")) == 1

    def test_insert_if_absent_returns_existing_row(self, db, make_experiment):
        experiment = make_experiment()
        repo = AssignmentRepository(db)
        control = variant_named(experiment, "control")
        treatment = variant_named(experiment, "treatment")

        first = repo.create_if_absent("v-1", "hero", experiment.experiment_id, control.variant_id)
        second = repo.create_if_absent("v-1", "hero", experiment.experiment_id, treatment.variant_id)

        assert second.assignment_id == first.assignment_id
        assert second.variant_id == control.variant_id

    def test_persistence_failure_is_surfaced(self, db, make_experiment):
        make_experiment()
        service = ExperimentService(db)

        with patch.object(service.assignment_repo, "create_if_absent", side_effect=RuntimeError("db down")):
            with pytest.raises(HTTPException) as exc:
                service.get_or_assign("v-1", "hero", DONOR)

        assert exc.value.status_code == 503


class TestConversions:
    def test_conversion_is_attributed_to_assigned_variant(self, db, make_experiment):
        make_experiment()
        service = ExperimentService(db)
        assignment = service.get_or_assign("v-1", "hero", DONOR)

        result = service.record_conversion("v-1", "hero", "cta_click")

        assert result.recorded is True
        stored = db.get(ConversionORM, result.conversion_id)
        assert stored.variant_id == assignment.variant_id

    def test_orphan_conversions_are_dropped(self, db, make_experiment, caplog):
        make_experiment()
        service = ExperimentService(db)

        with caplog.at_level(logging.WARNING):
            first = service.record_conversion("stranger", "hero", "cta_click")
            second = service.record_conversion("stranger", "hero", "cta_click")

        assert first.recorded is False and second.recorded is False
        assert db.query(ConversionORM).count() == 0
        assert db.query(AssignmentORM).count() == 0
        assert "no assignment" in caplog.text

    def test_conversion_write_failure_is_surfaced(self, db, make_experiment):
        make_experiment()
        service = ExperimentService(db)
        service.get_or_assign("v-1", "hero", DONOR)

        with patch.object(ConversionRepository, "create_conversion", side_effect=RuntimeError("db down")):
            with pytest.raises(HTTPException) as exc:
                service.record_conversion("v-1", "hero", "cta_click")

        assert exc.value.status_code == 503


class TestResults:
    def test_duplicate_conversions_count_once(self, db, make_experiment):
        experiment = make_experiment(
            variants=[
                VariantConfig(variant_name="control", traffic_allocation_percent=100, is_control=True),
            ]
        )
        service = ExperimentService(db)
        service.get_or_assign("v-1", "hero", DONOR)
        service.get_or_assign("v-2", "hero", DONOR)
        service.record_conversion("v-1", "hero", "cta_click")
        service.record_conversion("v-1", "hero", "cta_click")
        service.record_conversion("v-2", "hero", "newsletter")

        results = service.get_experiment_results(experiment.experiment_id)

        assert results.total_assigned_visitors == 2
        assert results.total_conversions == 1
        assert results.global_conversion_rate_bp == 5000
        assert results.variants[0].converted_visitors == 1
        assert results.variants[0].confidence_vs_control is None

    def test_treatment_reports_confidence_against_control(self, db, make_experiment):
        experiment = make_experiment()
        control = variant_named(experiment, "control")
        treatment = variant_named(experiment, "treatment")
        repo = AssignmentRepository(db)
        for i in range(40):
            variant = control if i % 2 == 0 else treatment
            repo.create_if_absent(f"v-{i}", "hero", experiment.experiment_id, variant.variant_id)

        service = ExperimentService(db)
        for i in range(1, 40, 2):
            service.record_conversion(f"v-{i}", "hero", "cta_click")

        results = service.get_experiment_results(experiment.experiment_id)
        by_name = {v.variant_name: v for v in results.variants}

        assert by_name["control"].conversion_rate_bp == 0
        assert by_name["treatment"].conversion_rate_bp == 10000
        assert by_name["treatment"].confidence_vs_control > 99

    def test_unknown_experiment_is_404(self, db):
        with pytest.raises(HTTPException) as exc:
            ExperimentService(db).get_experiment_results("missing")
        assert exc.value.status_code == 404


def add_content(db, content_id, section_key, persona="all", funnel_stage="all", is_active=True, **kwargs):
    item = ContentItemORM(
        content_id=content_id,
        section_key=section_key,
        title=kwargs.pop("title", content_id),
        is_active=is_active,
        **kwargs,
    )
    item.targeting.append(ContentTargetingORM(persona=persona, funnel_stage=funnel_stage))
    db.add(item)
    db.commit()
    return item


class TestResolveContent:
    def test_experiment_content_wins_when_valid(self, db, make_experiment):
        add_content(db, "hero-b", "hero", persona="student")
        add_content(db, "hero-donor", "hero", persona="donor")
        make_experiment(
            variants=[VariantConfig(variant_name="b", traffic_allocation_percent=100, content_item_id="hero-b")]
        )

        resolved = ExperimentService(db).resolve_content("v-1", "hero", DONOR, "hero")

        assert resolved.source == "experiment"
        assert resolved.content.content_id == "hero-b"

    def test_inactive_experiment_content_falls_back_to_segment_default(self, db, make_experiment):
        add_content(db, "hero-b", "hero", is_active=False)
        add_content(db, "hero-donor", "hero", persona="donor")
        make_experiment(
            variants=[VariantConfig(variant_name="b", traffic_allocation_percent=100, content_item_id="hero-b")]
        )

        resolved = ExperimentService(db).resolve_content("v-1", "hero", DONOR, "hero")

        assert resolved.source == "segment_default"
        assert resolved.content.content_id == "hero-donor"

    def test_missing_everything_falls_back_to_hardcoded_default(self, db, make_experiment):
        make_experiment(
            variants=[VariantConfig(variant_name="b", traffic_allocation_percent=100, content_item_id="deleted")]
        )

        resolved = ExperimentService(db).resolve_content("v-1", "hero", DONOR, "hero")

        assert resolved.source == "hardcoded_default"
        assert resolved.content.title

    def test_unknown_section_still_renders_something(self, db):
        resolved = ExperimentService(db).resolve_content("v-1", "sidebar", Segment(), "sidebar")
        assert resolved.source == "hardcoded_default"
        assert resolved.content.section_key == "sidebar"
        assert resolved.content.title

    def test_assignment_outage_degrades_to_defaults(self, db, make_experiment):
        make_experiment()
        service = ExperimentService(db)

        with patch.object(service.assignment_repo, "create_if_absent", side_effect=RuntimeError("db down")):
            resolved = service.resolve_content("v-1", "hero", DONOR, "hero")

        assert resolved.source == "hardcoded_default"
        assert resolved.variant_id is None

    def test_variant_configuration_overrides_presentation(self, db, make_experiment):
        add_content(db, "hero-donor", "hero", persona="donor", metadata_json={"primaryButton": "Give"})
        make_experiment(
            variants=[
                VariantConfig(
                    variant_name="b",
                    traffic_allocation_percent=100,
                    configuration_json={"title": "Double your impact", "ctaText": "Give today"},
                )
            ]
        )

        resolved = ExperimentService(db).resolve_content("v-1", "hero", DONOR, "hero")

        assert resolved.source == "segment_default"
        assert resolved.content.title == "Double your impact"
        assert resolved.content.metadata["primaryButton"] == "Give today"


def test_apply_variant_overrides_leaves_input_untouched():
    content = ContentModel(content_id="c", section_key="hero", title="Base", metadata={"a": 1})

    merged = apply_variant_overrides(content, {"metadata": {"b": 2}, "imageUrl": "x.png"})

    assert merged.metadata == {"a": 1, "b": 2}
    assert merged.image_url == "x.png"
    assert content.metadata == {"a": 1}
