# services/experiment_service.py

import logging
import random
from datetime import datetime
from typing import List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from persona_engine.defaults import default_content_for
from persona_engine.models.orm.assignment import AssignmentORM
from persona_engine.models.orm.content import ContentItemORM
from persona_engine.models.orm.experiment import ExperimentORM, ExperimentStatus, VariantORM
from persona_engine.models.schemas.content import CatalogItem, ContentModel, ResolvedContentModel
from persona_engine.models.schemas.experiment import (
    AssignmentModel,
    ConversionResponseModel,
    ExperimentCreateModel,
    ExperimentResponseModel,
    ExperimentResultsModel,
    ExperimentVariantConfigResponseModel,
    VariantResult,
)
from persona_engine.models.schemas.segment import Segment
from persona_engine.repositories.assignment_repo import AssignmentRepository
from persona_engine.repositories.content_repo import ContentRepository
from persona_engine.repositories.conversion_repo import ConversionRepository
from persona_engine.repositories.experiment_repo import ExperimentRepository
from persona_engine.services.stats import to_basis_points, two_proportion_confidence
from persona_engine.services.visibility_service import item_visible

logger = logging.getLogger(__name__)

# Variant configuration keys that land in content metadata
_CTA_OVERRIDES = {
    "ctaText": "primaryButton",
    "ctaLink": "primaryButtonLink",
    "secondaryCtaText": "secondaryButton",
    "secondaryCtaLink": "secondaryButtonLink",
    "buttonVariant": "buttonVariant",
}


def targeting_specificity(experiment: ExperimentORM, segment: Segment) -> Optional[int]:
    """
    How precisely an experiment targets a segment, or None if it does not
    match. Persona counts for more than funnel stage.
    """
    if experiment.target_persona is not None and experiment.target_persona != segment.persona:
        return None
    if experiment.target_funnel_stage is not None and experiment.target_funnel_stage != segment.funnel_stage:
        return None
    return (2 if experiment.target_persona else 0) + (1 if experiment.target_funnel_stage else 0)


def select_experiment(experiments: List[ExperimentORM], segment: Segment) -> Optional[ExperimentORM]:
    """
    Most specific matching experiment. Ties go to the earliest activation,
    then the lowest id, so every call picks the same one.
    """
    matches = []
    for experiment in experiments:
        score = targeting_specificity(experiment, segment)
        if score is not None:
            matches.append((-score, experiment.activated_at or datetime.min, experiment.experiment_id, experiment))

    if not matches:
        return None

    matches.sort(key=lambda m: m[:3])
    return matches[0][3]


def apply_variant_overrides(content: ContentModel, configuration: Optional[dict]) -> ContentModel:
    """Applies a variant's presentation overrides on top of selected content."""
    if not configuration:
        return content

    merged = content.model_copy(deep=True)
    if "title" in configuration:
        merged.title = configuration["title"]
    if "description" in configuration:
        merged.description = configuration["description"]
    if "imageUrl" in configuration:
        merged.image_url = configuration["imageUrl"]
    if isinstance(configuration.get("metadata"), dict):
        merged.metadata.update(configuration["metadata"])

    for key, metadata_key in _CTA_OVERRIDES.items():
        if key in configuration:
            merged.metadata[metadata_key] = configuration[key]

    return merged


def content_model_from_orm(item: ContentItemORM) -> ContentModel:
    return ContentModel(
        content_id=item.content_id,
        section_key=item.section_key,
        content_type=item.content_type,
        title=item.title,
        description=item.description,
        image_url=item.image_url,
        metadata=dict(item.metadata_json or {}),
    )


class ExperimentService:
    def __init__(self, db: Session, rng: Optional[random.Random] = None):
        self.assignment_repo = AssignmentRepository(db)
        self.experiment_repo = ExperimentRepository(db)
        self.conversion_repo = ConversionRepository(db)
        self.content_repo = ContentRepository(db)
        self.rng = rng or random.Random()
        self.db = db

    # --- Experiment lifecycle ---

    def _to_response(self, experiment_orm: ExperimentORM) -> ExperimentResponseModel:
        return ExperimentResponseModel(
            experiment_id=experiment_orm.experiment_id,
            key=experiment_orm.key,
            name=experiment_orm.name,
            description=experiment_orm.description,
            status=experiment_orm.status.value,
            target_persona=experiment_orm.target_persona,
            target_funnel_stage=experiment_orm.target_funnel_stage,
            primary_goal=experiment_orm.primary_goal,
            created_at=experiment_orm.created_at,
            activated_at=experiment_orm.activated_at,
            completed_at=experiment_orm.completed_at,
            variants=[
                ExperimentVariantConfigResponseModel.model_validate(variant)
                for variant in experiment_orm.variants
            ],
        )

    def _get_experiment_or_404(self, experiment_id: str) -> ExperimentORM:
        experiment = self.experiment_repo.get_experiment_with_variants(experiment_id)
        if not experiment:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Experiment {experiment_id} not found.",
            )
        return experiment

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentResponseModel:
        """
        Stores a new DRAFT experiment. Drafts never serve traffic, so no
        conflict check happens until activation.
        """
        try:
            experiment_orm = self.experiment_repo.create_experiment(experiment_data)
        except ValueError as e:
            logger.warning("Rejected experiment %s: %s", experiment_data.name, e)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        except RuntimeError as e:
            logger.error("Failed to create experiment %s: %s", experiment_data.name, e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Failed to create experiment: {str(e)}",
            )

        logger.info("Created experiment %s (%s) for key %s", experiment_orm.experiment_id, experiment_orm.name, experiment_orm.key)
        return self._to_response(experiment_orm)

    def activate_experiment(self, experiment_id: str) -> ExperimentResponseModel:
        """
        Puts a DRAFT experiment live. Another ACTIVE experiment on the same
        key with identical targeting is a configuration conflict and the
        activation is refused.
        """
        experiment = self._get_experiment_or_404(experiment_id)
        if experiment.status != ExperimentStatus.DRAFT:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Only DRAFT experiments can be activated; {experiment_id} is {experiment.status.value}.",
            )

        for live in self.experiment_repo.get_active_experiments(experiment.key):
            if (live.target_persona, live.target_funnel_stage) == (
                experiment.target_persona,
                experiment.target_funnel_stage,
            ):
                logger.error(
                    "Activation of %s conflicts with active experiment %s on key %s",
                    experiment_id,
                    live.experiment_id,
                    experiment.key,
                )
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=(
                        f"Experiment {live.experiment_id} is already active for key "
                        f"'{experiment.key}' with the same targeting."
                    ),
                )

        experiment = self._set_status(experiment, ExperimentStatus.ACTIVE)
        logger.info("Activated experiment %s on key %s", experiment_id, experiment.key)
        return self._to_response(experiment)

    def complete_experiment(self, experiment_id: str) -> ExperimentResponseModel:
        """Stops an ACTIVE experiment and releases its visitors' assignments."""
        experiment = self._get_experiment_or_404(experiment_id)
        if experiment.status != ExperimentStatus.ACTIVE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Only ACTIVE experiments can be completed; {experiment_id} is {experiment.status.value}.",
            )

        experiment = self._set_status(experiment, ExperimentStatus.COMPLETED)
        try:
            retired = self.assignment_repo.retire_for_experiment(experiment_id)
        except RuntimeError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

        logger.info("Completed experiment %s; retired %d assignments", experiment_id, retired)
        return self._to_response(experiment)

    def _set_status(self, experiment: ExperimentORM, new_status: ExperimentStatus) -> ExperimentORM:
        try:
            return self.experiment_repo.set_status(experiment, new_status)
        except ValueError as e:
            logger.error("Status change of %s to %s refused: %s", experiment.experiment_id, new_status.value, e)
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        except RuntimeError as e:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    # --- Assignment ---

    def _allocate_variant(self, variants: List[VariantORM]) -> VariantORM:
        """
        Selects a variant based on configured traffic allocation percentages.
        """
        choices = [(v.traffic_allocation_percent, v) for v in sorted(variants, key=lambda x: x.variant_name)]

        total_weight = sum(w for w, v in choices)
        if total_weight <= 0:
            raise ValueError("Experiment has no allocated traffic.")

        r = self.rng.uniform(0, total_weight)

        cumulative_weight = 0
        for weight, variant in choices:
            cumulative_weight += weight
            if r <= cumulative_weight:
                return variant

        # Float rounding can leave r a hair above the last boundary
        return choices[-1][1]

    def get_or_assign(self, visitor_id: str, experiment_key: str, segment: Segment) -> Optional[AssignmentModel]:
        """
        Returns the visitor's variant for an experiment key, assigning one if
        needed.

        1. An existing live assignment is returned as-is, whatever the
           current segment.
        2. Otherwise the most specific ACTIVE experiment matching the segment
           is chosen; none means the control experience (None).
        3. A weighted draw picks the variant and the assignment is written
           insert-if-absent, so concurrent callers all get the first
           writer's variant.
        """
        existing_assignment = self.assignment_repo.get_assignment(visitor_id, experiment_key)
        if existing_assignment:
            logger.debug(
                "Visitor %s already assigned to variant %s on %s",
                visitor_id,
                existing_assignment.variant_id,
                experiment_key,
            )
            return AssignmentModel.model_validate(existing_assignment)

        experiment = select_experiment(self.experiment_repo.get_active_experiments(experiment_key), segment)
        if experiment is None:
            return None

        if self.assignment_repo.has_retired_assignment(visitor_id, experiment_key):
            logger.info("Re-enrolling visitor %s on %s after a completed experiment", visitor_id, experiment_key)

        try:
            assigned_variant = self._allocate_variant(experiment.variants)
        except ValueError as e:
            logger.error("Experiment %s cannot allocate traffic: %s", experiment.experiment_id, e)
            return None

        try:
            new_assignment = self.assignment_repo.create_if_absent(
                visitor_id=visitor_id,
                experiment_key=experiment_key,
                experiment_id=experiment.experiment_id,
                variant_id=assigned_variant.variant_id,
                persona=segment.persona,
                funnel_stage=segment.funnel_stage,
            )
        except RuntimeError as e:
            logger.error("Assignment write failed for visitor %s on %s: %s", visitor_id, experiment_key, e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Could not persist the variant assignment.",
            )

        logger.info(
            "Assigned visitor %s to variant %s of experiment %s",
            visitor_id,
            new_assignment.variant_id,
            new_assignment.experiment_id,
        )
        return AssignmentModel.model_validate(new_assignment)

    # --- Conversions ---

    def record_conversion(self, visitor_id: str, experiment_key: str, goal: str) -> ConversionResponseModel:
        """
        Attributes a goal to the visitor's live assignment. A visitor who was
        never enrolled cannot convert; the event is logged and dropped.
        """
        assignment: Optional[AssignmentORM] = self.assignment_repo.get_assignment(visitor_id, experiment_key)
        if assignment is None:
            logger.warning(
                "Dropping conversion '%s' for visitor %s on %s: no assignment",
                goal,
                visitor_id,
                experiment_key,
            )
            return ConversionResponseModel(recorded=False)

        try:
            conversion = self.conversion_repo.create_conversion(assignment, goal)
        except RuntimeError as e:
            logger.error("Conversion write failed for visitor %s on %s: %s", visitor_id, experiment_key, e)
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Could not persist the conversion.",
            )

        return ConversionResponseModel(recorded=True, conversion_id=conversion.conversion_id)

    # --- Content resolution ---

    def resolve_content(
        self, visitor_id: str, experiment_key: str, segment: Segment, section_key: str
    ) -> ResolvedContentModel:
        """
        Picks the content for a page element, in order:

        1. the content referenced by the visitor's current variant, if that
           content still exists and is active;
        2. the first catalog item for the section visible to the segment;
        3. the hardcoded default for the section.

        Variant presentation overrides are applied to whichever content was
        picked. The result is never empty.
        """
        variant = None
        try:
            assignment = self.get_or_assign(visitor_id, experiment_key, segment)
        except HTTPException as e:
            logger.warning("Serving default content for %s; assignment unavailable: %s", visitor_id, e.detail)
            assignment = None

        if assignment is not None:
            variant = self.experiment_repo.get_variant(assignment.variant_id)

        overrides = variant.configuration_json if variant else None
        variant_id = variant.variant_id if variant else None

        if variant is not None and variant.content_item_id:
            item = self.content_repo.get_content_item(variant.content_item_id)
            if item is not None and item.is_active:
                return ResolvedContentModel(
                    content=apply_variant_overrides(content_model_from_orm(item), overrides),
                    source="experiment",
                    variant_id=variant_id,
                )
            logger.warning(
                "Variant %s points at missing or inactive content %s",
                variant.variant_id,
                variant.content_item_id,
            )

        for item in self.content_repo.get_catalog(section_key):
            if item_visible(CatalogItem.model_validate(item), segment):
                return ResolvedContentModel(
                    content=apply_variant_overrides(content_model_from_orm(item), overrides),
                    source="segment_default",
                    variant_id=variant_id,
                )

        return ResolvedContentModel(
            content=apply_variant_overrides(default_content_for(section_key), overrides),
            source="hardcoded_default",
            variant_id=variant_id,
        )

    # --- Reporting ---

    def get_experiment_results(self, experiment_id: str) -> ExperimentResultsModel:
        """
        Per-variant enrollment and primary-goal conversion. Repeated
        conversions by one visitor count once (the first one written).
        """
        experiment_orm = self._get_experiment_or_404(experiment_id)

        assignments = self.assignment_repo.get_assignments_for_experiment(experiment_id)
        conversions = self.conversion_repo.get_conversions_for_experiment(
            experiment_id, goal=experiment_orm.primary_goal
        )

        assigned_by_variant: dict[str, set[str]] = {v.variant_id: set() for v in experiment_orm.variants}
        for assignment in assignments:
            assigned_by_variant.setdefault(assignment.variant_id, set()).add(assignment.visitor_id)

        # First write wins: later duplicates for a visitor are ignored
        first_conversion: dict[str, str] = {}
        for conversion in conversions:
            first_conversion.setdefault(conversion.visitor_id, conversion.variant_id)

        converted_by_variant: dict[str, set[str]] = {v.variant_id: set() for v in experiment_orm.variants}
        for visitor_id, variant_id in first_conversion.items():
            converted_by_variant.setdefault(variant_id, set()).add(visitor_id)

        control = next((v for v in experiment_orm.variants if v.is_control), None) or (
            experiment_orm.variants[0] if experiment_orm.variants else None
        )

        variant_results = []
        for variant in experiment_orm.variants:
            assigned = len(assigned_by_variant[variant.variant_id])
            converted = len(converted_by_variant[variant.variant_id])
            confidence = None
            if control is not None and variant.variant_id != control.variant_id:
                confidence = two_proportion_confidence(
                    len(converted_by_variant[control.variant_id]),
                    len(assigned_by_variant[control.variant_id]),
                    converted,
                    assigned,
                )
            variant_results.append(
                VariantResult(
                    variant_id=variant.variant_id,
                    variant_name=variant.variant_name,
                    is_control=variant.variant_id == (control.variant_id if control else None),
                    traffic_allocation_percent=variant.traffic_allocation_percent,
                    assigned_visitors=assigned,
                    converted_visitors=converted,
                    conversion_rate_bp=to_basis_points(converted, assigned),
                    confidence_vs_control=confidence,
                )
            )

        started = experiment_orm.activated_at or experiment_orm.created_at
        ended = experiment_orm.completed_at or datetime.utcnow()
        total_assigned = len({a.visitor_id for a in assignments})

        return ExperimentResultsModel(
            experiment_id=experiment_orm.experiment_id,
            key=experiment_orm.key,
            name=experiment_orm.name,
            status=experiment_orm.status.value,
            primary_goal=experiment_orm.primary_goal,
            days_running=max((ended - started).days, 0),
            total_assigned_visitors=total_assigned,
            total_conversions=len(first_conversion),
            global_conversion_rate_bp=to_basis_points(len(first_conversion), total_assigned),
            variants=variant_results,
        )
