# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from mayday.infra.metrics import get_metrics_collector  # noqa: E402
from tests.fakes import FakeCarrier, FakeClock, FakeNotificationRepo  # noqa: E402


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notification_repo():
    return FakeNotificationRepo()


@pytest.fixture
def carrier():
    return FakeCarrier()


@pytest.fixture(autouse=True)
def reset_metrics():
    """Metrics are process-global; start every test from zero."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()
