"""
Shared pytest configuration for the orchestrator test suite.

Puts the project root on sys.path so ``onboarding`` imports without an
editable install, and exposes the fake collaborators as fixtures.
"""

import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fakes import FakeInstaller, FakeProber, FakeRecommendationSource  # noqa: E402
from onboarding.services.events import InMemoryEventSink  # noqa: E402


@pytest.fixture()
def sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture()
def installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture()
def prober() -> FakeProber:
    return FakeProber()


@pytest.fixture()
def source() -> FakeRecommendationSource:
    return FakeRecommendationSource([])
