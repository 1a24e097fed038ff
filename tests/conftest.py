import os

# Must be set before persona_engine reads its settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TOKENS"] = "test-admin-token"
os.environ["REFERENCE_TIMEZONE"] = "UTC"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from persona_engine.core.db import get_db, init_db
from persona_engine.main import app
from persona_engine.models.schemas.experiment import ExperimentCreateModel, VariantConfig
from persona_engine.services.experiment_service import ExperimentService

ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_experiment(db):
    """Creates (and by default activates) an experiment with two variants."""

    def _make(
        key="hero",
        name=None,
        persona=None,
        funnel_stage=None,
        variants=None,
        activate=True,
        primary_goal="cta_click",
    ):
        variants = variants or [
            VariantConfig(variant_name="control", traffic_allocation_percent=50, is_control=True),
            VariantConfig(variant_name="treatment", traffic_allocation_percent=50),
        ]
        service = ExperimentService(db)
        experiment = service.create_experiment(
            ExperimentCreateModel(
                key=key,
                name=name or f"{key}-{persona or 'any'}-{funnel_stage or 'any'}",
                target_persona=persona,
                target_funnel_stage=funnel_stage,
                variants=variants,
                primary_goal=primary_goal,
            )
        )
        if activate:
            experiment = service.activate_experiment(experiment.experiment_id)
        return experiment

    return _make
