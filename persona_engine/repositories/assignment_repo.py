# repositories/assignment_repo.py
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from persona_engine.models.orm.assignment import AssignmentORM

logger = logging.getLogger(__name__)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, visitor_id: str, experiment_key: str) -> Optional[AssignmentORM]:
        """Retrieves the live assignment for a visitor under an experiment key."""
        stmt = select(AssignmentORM).where(
            AssignmentORM.visitor_id == visitor_id,
            AssignmentORM.experiment_key == experiment_key,
            AssignmentORM.retired_at.is_(None),
        )
        return self.db.scalars(stmt).one_or_none()

    def has_retired_assignment(self, visitor_id: str, experiment_key: str) -> bool:
        stmt = select(AssignmentORM.assignment_id).where(
            AssignmentORM.visitor_id == visitor_id,
            AssignmentORM.experiment_key == experiment_key,
            AssignmentORM.retired_at.is_not(None),
        )
        return self.db.scalars(stmt.limit(1)).first() is not None

    def get_assignments_for_experiment(self, experiment_id: str) -> list[AssignmentORM]:
        """All assignments ever made for an experiment, retired ones included."""
        stmt = select(AssignmentORM).where(AssignmentORM.experiment_id == experiment_id)
        return list(self.db.scalars(stmt).all())

    def create_if_absent(
        self,
        visitor_id: str,
        experiment_key: str,
        experiment_id: str,
        variant_id: str,
        persona: Optional[str] = None,
        funnel_stage: Optional[str] = None,
    ) -> AssignmentORM:
        """
        Inserts an assignment unless a live one already exists and returns
        whichever row won.

        The unique index on live (visitor_id, experiment_key) rows arbitrates
        concurrent inserts: the losing writer gets an IntegrityError, rolls
        back and reads the first writer's row. An existing assignment is never
        overwritten.
        """
        db_assignment = AssignmentORM(
            assignment_id=str(uuid.uuid4()),
            visitor_id=visitor_id,
            experiment_key=experiment_key,
            experiment_id=experiment_id,
            variant_id=variant_id,
            persona=persona,
            funnel_stage=funnel_stage,
            assigned_at=datetime.utcnow(),
        )

        try:
            self.db.add(db_assignment)
            self.db.commit()
            self.db.refresh(db_assignment)
            return db_assignment

        except IntegrityError:
            self.db.rollback()
            existing = self.get_assignment(visitor_id, experiment_key)
            if existing is None:
                raise RuntimeError("Assignment insert conflicted but no live assignment was found")
            logger.info(
                "Concurrent assignment for visitor %s on %s; keeping variant %s",
                visitor_id,
                experiment_key,
                existing.variant_id,
            )
            return existing

        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("Exception occurred creating assignment: %s", e)
            raise RuntimeError("Exception occurred during assignment creation")

    def retire_for_experiment(self, experiment_id: str) -> int:
        """Releases every live assignment of an experiment. Returns the row count."""
        stmt = (
            update(AssignmentORM)
            .where(
                AssignmentORM.experiment_id == experiment_id,
                AssignmentORM.retired_at.is_(None),
            )
            .values(retired_at=datetime.utcnow())
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to retire assignments: {e}")
        return result.rowcount
