"""
Pytest configuration and fixtures for media job worker tests
"""

import pytest

from media_job_worker.core.exceptions import error_registry
from media_job_worker.models.job import JobStatus
from media_job_worker.services.checkpoint_store import InMemoryCheckpointStore
from media_job_worker.services.status_reporter import StatusReporter

from tests.fakes import FakeStage, RecordingSink


@pytest.fixture(autouse=True)
def reset_error_registry():
    error_registry.reset()
    yield
    error_registry.reset()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def reporter(sink):
    return StatusReporter(sink)


@pytest.fixture
def checkpoints():
    return InMemoryCheckpointStore()


@pytest.fixture
def make_stages():
    """Build fetch/transform/publish fakes with the given unit keys."""

    def _make(fetch=("a", "b", "c"), transform=("a",), publish=("a",), **overrides):
        return [
            FakeStage("fetch", JobStatus.FETCHING, list(fetch), **overrides.get("fetch_options", {})),
            FakeStage("transform", JobStatus.TRANSFORMING, list(transform), **overrides.get("transform_options", {})),
            FakeStage("publish", JobStatus.PUBLISHING, list(publish), **overrides.get("publish_options", {"resumable": False})),
        ]

    return _make
