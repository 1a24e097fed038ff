import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from persona_engine.models.orm.engagement import EngagementEventORM, EngagementType
from persona_engine.models.schemas.engagement import EngagementEventCreateModel


class EngagementRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_event(self, event_data: EngagementEventCreateModel) -> EngagementEventORM:
        """
        Appends an engagement record. Aware timestamps are normalised to
        naive UTC; a missing timestamp means "now".
        """
        timestamp = event_data.timestamp or datetime.utcnow()
        if timestamp.tzinfo is not None:
            timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)

        db_event = EngagementEventORM(
            event_id=str(uuid.uuid4()),
            subject_id=event_data.subject_id,
            event_type=EngagementType(event_data.event_type),
            recipient_id=event_data.recipient_id,
            persona=event_data.persona,
            timestamp=timestamp,
        )
        try:
            self.db.add(db_event)
            self.db.commit()
            self.db.refresh(db_event)

        except IntegrityError as e:
            self.db.rollback()
            raise ValueError(f"Invalid engagement event: {str(e.orig).splitlines()[0]}")

        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"A database error occurred while recording the event: {e}")

        return db_event

    def get_events(
        self,
        event_types: list[EngagementType],
        subject_id: str | None = None,
        persona: str | None = None,
        **kwargs,
    ) -> list[EngagementEventORM]:
        """
        Retrieves engagement events of the given types, applying optional
        filters for subject, persona and time range.
        """
        stmt = select(EngagementEventORM).where(EngagementEventORM.event_type.in_(event_types))

        if subject_id:
            stmt = stmt.where(EngagementEventORM.subject_id == subject_id)

        if persona:
            stmt = stmt.where(EngagementEventORM.persona == persona)

        if start_date := kwargs.get("start_date"):
            stmt = stmt.where(EngagementEventORM.timestamp >= start_date)

        if end_date := kwargs.get("end_date"):
            stmt = stmt.where(EngagementEventORM.timestamp <= end_date)

        stmt = stmt.order_by(EngagementEventORM.timestamp, EngagementEventORM.event_id)
        return list(self.db.scalars(stmt).all())
