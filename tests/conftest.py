"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.core.models import (  # noqa: E402
    LearningObjective,
    Lesson,
    ObjectiveCategory,
    Unit,
)
from src.study.retention_engine import SchedulingOptions  # noqa: E402
from src.study.retention_scheduler import RetentionScheduler  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "smoke: Smoke tests for CLI commands")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        # Mark based on test file location
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "smoke" in str(item.fspath):
            item.add_marker(pytest.mark.smoke)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def now():
    """Fixed UTC clock for deterministic schedules."""
    return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def objectives():
    """Three objectives covering knowledge, application and analysis."""
    return [
        LearningObjective(id="obj-1", title="Greetings", category=ObjectiveCategory.KNOWLEDGE),
        LearningObjective(id="obj-2", title="Past tense", category=ObjectiveCategory.APPLICATION),
        LearningObjective(id="obj-3", title="Word order", category=ObjectiveCategory.ANALYSIS),
    ]


@pytest.fixture
def lesson(objectives):
    return Lesson(id="lesson-1", title="Basics", order_index=1, objectives=objectives)


@pytest.fixture
def unit(lesson):
    second = Lesson(
        id="lesson-2",
        title="Conversation",
        order_index=2,
        objectives=[LearningObjective(id="obj-4", title="Small talk")],
    )
    return Unit(id="unit-1", title="Unit 1", lessons=[lesson, second])


@pytest.fixture
def scheduler():
    """Scheduler with default options and an empty card store."""
    return RetentionScheduler(SchedulingOptions())
