"""Shared fixtures: a throwaway SQLite database and request factories."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.orm import sessionmaker

from payhook.common.db import Base
from payhook.common.events import EventBus
from payhook.services.ingestion import models as ingestion_models  # noqa: F401
from payhook.services.jobs import models as job_models  # noqa: F401
from payhook.services.orchestrator.models import ServiceRequest


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so every session gets its own connection."""

    engine = create_engine(
        f"sqlite:///{tmp_path / 'payhook.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_request(session_factory):
    """Insert a birth-chart request with valid intake fields; overrides win."""

    def _make(**overrides) -> int:
        fields = {
            "request_ref": "REQ1",
            "product_type": "birth_chart",
            "name": "Maria Silva",
            "email": "maria@example.com",
            "birth_date": "1990-05-17",
            "birth_time": "14:30",
            "birth_place": "Recife, PE",
            "birth_place_lat": -8.05,
            "birth_place_lng": -34.9,
            "birth_utc_offset_min": -180,
            "birth_timezone_id": "America/Recife",
        }
        fields.update(overrides)
        with session_factory() as db:
            req = ServiceRequest(**fields)
            db.add(req)
            db.commit()
            return req.request_id

    return _make
