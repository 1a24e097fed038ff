import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from persona_engine.models.orm.assignment import AssignmentORM
from persona_engine.models.orm.conversion import ConversionORM


class ConversionRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_conversion(self, assignment: AssignmentORM, goal: str) -> ConversionORM:
        """Stores a conversion attributed to the given assignment."""
        db_conversion = ConversionORM(
            conversion_id=str(uuid.uuid4()),
            visitor_id=assignment.visitor_id,
            experiment_key=assignment.experiment_key,
            experiment_id=assignment.experiment_id,
            variant_id=assignment.variant_id,
            goal=goal,
            occurred_at=datetime.utcnow(),
        )
        try:
            self.db.add(db_conversion)
            self.db.commit()
            self.db.refresh(db_conversion)
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to record conversion: {e}")

        return db_conversion

    def get_conversions_for_experiment(self, experiment_id: str, goal: str | None = None) -> list[ConversionORM]:
        """Conversions in write order, so callers can keep the first per visitor and goal."""
        stmt = select(ConversionORM).where(ConversionORM.experiment_id == experiment_id)
        if goal:
            stmt = stmt.where(ConversionORM.goal == goal)
        stmt = stmt.order_by(ConversionORM.occurred_at, ConversionORM.conversion_id)
        return list(self.db.scalars(stmt).all())

