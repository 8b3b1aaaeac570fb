"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest
import pytest_asyncio

from feature_pilot.config.settings import FeaturePilotSettings, PolicyConfig
from feature_pilot.enums import StepStatus
from feature_pilot.models.domain import PlanStep, Session
from feature_pilot.providers.notifier import RecordingNotifier
from feature_pilot.storage.document_store import DocumentStore
from feature_pilot.storage.session_repository import SessionRepository


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Temporary data directory."""
    directory = tmp_path / "data"
    directory.mkdir()
    return directory


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Temporary project checkout."""
    directory = tmp_path / "project"
    directory.mkdir()
    return directory


@pytest.fixture
def store(data_dir: Path) -> DocumentStore:
    """DocumentStore rooted at the temporary data directory."""
    return DocumentStore(data_dir)


@pytest.fixture
def repository(store: DocumentStore) -> SessionRepository:
    """SessionRepository over the temporary store."""
    return SessionRepository(store)


@pytest.fixture
def settings(data_dir: Path) -> FeaturePilotSettings:
    """Settings pointing at the temporary data directory."""
    return FeaturePilotSettings(storage={"data_directory": str(data_dir)})


@pytest.fixture
def policy() -> PolicyConfig:
    """Default policy thresholds."""
    return PolicyConfig()


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Notifier that keeps every event in memory."""
    return RecordingNotifier()


@pytest_asyncio.fixture
async def session(repository: SessionRepository, project_dir: Path) -> Session:
    """A freshly created session."""
    return await repository.create_session(
        str(project_dir),
        "Add CSV export",
        feature_description="Export reports as CSV files",
        acceptance_criteria=["Reports can be downloaded as CSV"],
    )


def make_step(
    step_id: str, status: StepStatus = StepStatus.PENDING, parent_id: str | None = None, **kwargs
) -> PlanStep:
    """Build a plan step with sensible defaults."""
    return PlanStep(
        id=step_id,
        parent_id=parent_id,
        title=kwargs.pop("title", f"Step {step_id}"),
        description=kwargs.pop("description", f"Implement the work described for {step_id}"),
        status=status,
        **kwargs,
    )


@pytest.fixture
def step_factory():
    """Factory for plan steps."""
    return make_step
