"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any clinic_monitor import,
so the settings module picks them up.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("EVOLUTION_API_URL", "http://evolution.test")
os.environ.setdefault("EVOLUTION_API_KEY", "test-api-key")
os.environ.setdefault("EVOLUTION_INSTANCE", "test-instance")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from clinic_monitor.config import get_settings
get_settings.cache_clear()

from clinic_monitor.schemas import EngineOptions
from clinic_monitor.storage import Base, SessionLocal, engine


@pytest.fixture
def options():
    """Engine options with the default thresholds."""
    return EngineOptions(instance_name="test-instance")


@pytest.fixture
def db_session():
    """Fresh tables for each test, dropped afterwards."""
    from clinic_monitor import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        yield session
    Base.metadata.drop_all(bind=engine)
