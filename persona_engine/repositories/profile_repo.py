from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from persona_engine.models.orm.profile import VisitorProfileORM, SessionSegmentORM


class ProfileRepository:
    """Account-scoped and session-scoped segment storage."""

    def __init__(self, db: Session):
        self.db = db

    def get_profile(self, account_id: str) -> VisitorProfileORM | None:
        return self.db.get(VisitorProfileORM, account_id)

    def get_session(self, session_id: str) -> SessionSegmentORM | None:
        return self.db.get(SessionSegmentORM, session_id)

    def update_account_persona(self, account_id: str, persona: str | None) -> VisitorProfileORM:
        profile = self.get_profile(account_id)
        if profile is None:
            profile = VisitorProfileORM(account_id=account_id)
            self.db.add(profile)
        if profile.persona != persona:
            # A stage belongs to the persona it was recorded for
            profile.funnel_stage = None
        profile.persona = persona
        self._commit("account persona")
        return profile

    def update_session_persona(self, session_id: str, persona: str | None) -> SessionSegmentORM:
        session_row = self._get_or_add_session(session_id)
        session_row.persona = persona
        self._commit("session persona")
        return session_row

    def mark_invitation_shown(self, session_id: str) -> SessionSegmentORM:
        session_row = self._get_or_add_session(session_id)
        session_row.invitation_shown = True
        self._commit("invitation flag")
        return session_row

    def _get_or_add_session(self, session_id: str) -> SessionSegmentORM:
        session_row = self.get_session(session_id)
        if session_row is None:
            session_row = SessionSegmentORM(session_id=session_id, invitation_shown=False)
            self.db.add(session_row)
        return session_row

    def _commit(self, what: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise RuntimeError(f"Failed to persist {what}: {e}")
