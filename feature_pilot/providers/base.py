"""
Abstract base classes for the workflow core's external collaborators.

The core decides; collaborators perform I/O. Each interface here is
implemented once for production use (``claude_cli``, ``git_cli``,
``assessors``, ``notifier``) and replaced by scripted fakes in tests.

Collaborators:
    - AgentRunner: invoke the coding agent and stream its output
    - Notifier: one-way event channel keyed by session
    - HeuristicExtractor: fallback blocker detection in unstructured output
    - DecisionValidator: false-positive filtering of parsed decisions
    - VersionControl: pre-PR staging/push and PR-existence verification
    - AffectedStepsAssessor / TestRequirementAssessor: cheap assessment calls
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal

from feature_pilot.enums import NotificationEvent
from feature_pilot.models.domain import Plan, PlanStep, Session, TestRequirement
from feature_pilot.protocol.types import ParsedDecision

StreamCallback = Callable[[str, bool], Awaitable[None] | None]


# =============================================================================
# Agent runner
# =============================================================================


@dataclass
class AgentRequest:
    """One agent invocation.

    Attributes:
        prompt: Full prompt text
        working_dir: Project checkout the agent works in
        conversation_handle: Conversation to resume, or None to start fresh
        allowed_tools: Capabilities the agent may use
        skip_permissions: Run without interactive permission prompts
        on_stream: Called with ``(chunk, is_final)`` any number of times
            before the invocation resolves
    """

    prompt: str
    working_dir: str
    conversation_handle: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    skip_permissions: bool = False
    on_stream: StreamCallback | None = None


@dataclass
class AgentResult:
    output: str
    conversation_handle: str | None = None
    cost_usd: float = 0.0
    is_error: bool = False
    error: str | None = None


class AgentRunner(ABC):
    """Runs the external coding agent."""

    @abstractmethod
    async def invoke(self, request: AgentRequest) -> AgentResult:
        """Run the agent to completion.

        Raises:
            SpawnError: If the agent could not be started or exited abnormally
        """
        pass


# =============================================================================
# Notifications
# =============================================================================


class Notifier(ABC):
    """Write-only event channel. The core never reads from it."""

    @abstractmethod
    async def notify(
        self,
        project_id: str,
        feature_id: str,
        event: NotificationEvent,
        payload: dict[str, Any],
    ) -> None:
        pass


# =============================================================================
# Fallback extraction and decision filtering
# =============================================================================


class HeuristicExtractor(ABC):
    """Looks for an implicit blocker when the agent emitted no markers."""

    @abstractmethod
    async def extract_blocker(self, output: str, step: PlanStep) -> str | None:
        """Return a description of the blocker, or None when there is none."""
        pass


class NullHeuristicExtractor(HeuristicExtractor):
    """Extractor that never finds a blocker."""

    async def extract_blocker(self, output: str, step: PlanStep) -> str | None:
        return None


@dataclass
class DecisionFilterResult:
    kept: list[ParsedDecision]
    filtered: list[tuple[ParsedDecision, str]] = field(default_factory=list)
    """Dropped decisions with the reason each was dropped."""


class DecisionValidator(ABC):
    """Filters decisions that are false positives (already answered, moot...)."""

    @abstractmethod
    async def filter(self, session: Session, decisions: Sequence[ParsedDecision]) -> DecisionFilterResult:
        pass


class PassThroughDecisionValidator(DecisionValidator):
    """Keeps every decision."""

    async def filter(self, session: Session, decisions: Sequence[ParsedDecision]) -> DecisionFilterResult:
        return DecisionFilterResult(kept=list(decisions))


# =============================================================================
# Version control
# =============================================================================


class VersionControl(ABC):
    """Opaque VCS commands; the core only interprets pass or fail."""

    @abstractmethod
    async def prepare_pull_request(self, session: Session) -> None:
        """Stage, commit and push the feature branch.

        Raises:
            ExternalCommandError: If any command fails
        """
        pass

    @abstractmethod
    async def find_pull_request(self, session: Session) -> str | None:
        """URL of the open pull request for the feature branch, or None."""
        pass


# =============================================================================
# Assessors
# =============================================================================


@dataclass
class AffectedStep:
    step_id: str
    status: Literal["pending", "needs_review"]
    reason: str = ""


@dataclass
class AffectedStepsAssessment:
    affected: list[AffectedStep]
    unaffected: list[str] = field(default_factory=list)
    summary: str = ""


class AffectedStepsAssessor(ABC):
    """Decides which steps a review failure invalidates."""

    @abstractmethod
    async def assess(self, session: Session, plan: Plan, reason: str) -> AffectedStepsAssessment:
        """Never raises; falls back to a conservative assessment."""
        pass


class TestRequirementAssessor(ABC):
    """Decides whether a feature needs tests before a PR is opened."""

    __test__ = False

    @abstractmethod
    async def assess(self, session: Session, plan: Plan) -> TestRequirement:
        """Never raises; falls back to requiring unit tests."""
        pass
