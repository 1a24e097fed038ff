import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from persona_engine.models.orm.experiment import ExperimentORM, VariantORM, ExperimentStatus
from persona_engine.models.schemas.experiment import ExperimentCreateModel


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentORM:
        """
        Creates a DRAFT experiment together with its variants in one transaction.

        Raises:
            ValueError: allocation does not total 100% or the name is taken.
            RuntimeError: any other database failure.
        """
        total_allocation = sum(v.traffic_allocation_percent for v in experiment_data.variants)
        if abs(total_allocation - 100.0) > 1e-9:
            raise ValueError(f"Total traffic allocation must be 100%. Got: {total_allocation}%")

        experiment_id = str(uuid.uuid4())
        experiment_data_dict = experiment_data.model_dump(exclude={"variants"})
        experiment_data_dict["experiment_id"] = experiment_id
        experiment_data_dict["status"] = ExperimentStatus.DRAFT

        try:
            db_experiment = ExperimentORM(**experiment_data_dict)
            self.db.add(db_experiment)

            for variant_data in experiment_data.variants:
                variant_dict = variant_data.model_dump()
                variant_dict["variant_id"] = str(uuid.uuid4())
                variant_dict["experiment_id"] = experiment_id
                variant_dict["is_control"] = bool(variant_dict.get("is_control"))
                self.db.add(VariantORM(**variant_dict))

            self.db.commit()
            self.db.refresh(db_experiment)
            return db_experiment

        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Database integrity error (e.g., duplicate name): {e.orig}")

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred during experiment creation: {e}")

    def get_experiment_with_variants(self, experiment_id: str) -> ExperimentORM | None:
        """
        Fetches a single Experiment by experiment_id and eagerly loads all
        associated VariantORM objects in a single query.
        """
        stmt = select(ExperimentORM).where(ExperimentORM.experiment_id == experiment_id)
        stmt = stmt.options(joinedload(ExperimentORM.variants))
        return self.db.scalars(stmt).unique().one_or_none()

    def get_active_experiments(self, key: str) -> list[ExperimentORM]:
        """All ACTIVE experiments for a key, variants loaded."""
        stmt = (
            select(ExperimentORM)
            .where(ExperimentORM.key == key, ExperimentORM.status == ExperimentStatus.ACTIVE)
            .options(joinedload(ExperimentORM.variants))
            .order_by(ExperimentORM.activated_at, ExperimentORM.experiment_id)
        )
        return list(self.db.scalars(stmt).unique().all())

    def get_variant(self, variant_id: str) -> VariantORM | None:
        return self.db.get(VariantORM, variant_id)

    def set_status(self, experiment: ExperimentORM, status: ExperimentStatus) -> ExperimentORM:
        now = datetime.utcnow()
        experiment.status = status
        if status == ExperimentStatus.ACTIVE:
            experiment.activated_at = now
        elif status == ExperimentStatus.COMPLETED:
            experiment.completed_at = now

        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValueError(
                f"Another ACTIVE experiment on key '{experiment.key}' has the same targeting."
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to update experiment status: {e}")

        self.db.refresh(experiment)
        return experiment
