"""
Persisted domain documents for the workflow core.

Each model maps onto one JSON document in the session directory
(``session.json``, ``plan.json``, ``questions.json``, ``status.json`` and
``conversations.json``). The models are deliberately lenient about plan
content: rule enforcement (lengths, placeholders, id references) belongs to
``PlanValidator``, which reports every violation instead of rejecting the
document outright.

Example:
    Building a two-step plan::

        plan = Plan(
            steps=[
                PlanStep(id="step-1", title="Add model", description="..."),
                PlanStep(id="step-2", parent_id="step-1", order_index=1,
                         title="Add endpoint", description="..."),
            ]
        )
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from feature_pilot.enums import (
    QuestionCategory,
    QuestionStage,
    QuestionType,
    RuntimeStatus,
    SessionStatus,
    Stage,
    StepStatus,
)


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


class Document(BaseModel):
    """Base for persisted documents: unknown keys are kept, not dropped."""

    model_config = ConfigDict(extra="allow")


# =============================================================================
# Session
# =============================================================================


class Session(Document):
    """One feature request moving through the stage lifecycle.

    ``status`` follows ``current_stage`` except for the queued, paused and
    failed overrides. ``data_version`` is the optimistic edit version checked
    by ``SessionRepository.update_with_version``.
    """

    id: str
    project_id: str
    feature_id: str
    project_path: str
    title: str
    feature_description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    base_branch: str = "main"
    feature_branch: str | None = None
    current_stage: Stage = Stage.DISCOVERY
    status: SessionStatus = SessionStatus.DISCOVERY

    conversation_handle: str | None = None
    """Agent conversation used by every stage except Implementation."""

    implementation_handle: str | None = None
    """Agent conversation reserved for Stage 3 so steps share context."""

    replanning_count: int = 0
    plan_validation_attempts: int = 0
    pr_url: str | None = None
    data_version: int = 1
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# =============================================================================
# Plan
# =============================================================================


class PlanStep(Document):
    """An atomic implementation unit with at most one parent."""

    id: str
    parent_id: str | None = None
    order_index: int = 0
    title: str = ""
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    content_hash: str | None = None
    complexity: str | None = None
    acceptance_criteria_ids: list[str] = Field(default_factory=list)
    estimated_files: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PlanMeta(Document):
    version: str = "1.0.0"
    session_id: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    is_approved: bool = False
    review_count: int = 0


class StepDependency(Document):
    step_id: str
    depends_on: str
    reason: str | None = None


class ExternalDependency(Document):
    name: str
    type: str = "other"
    version: str | None = None
    reason: str = ""
    required_by: list[str] = Field(default_factory=list)


class PlanDependencies(Document):
    step_dependencies: list[StepDependency] = Field(default_factory=list)
    external_dependencies: list[ExternalDependency] = Field(default_factory=list)


class StepCoverage(Document):
    step_id: str
    test_types: list[str] = Field(default_factory=list)
    coverage_target: float | None = None


class PlanTestCoverage(Document):
    framework: str = ""
    required_test_types: list[str] = Field(default_factory=list)
    step_coverage: list[StepCoverage] = Field(default_factory=list)
    global_coverage_target: float | None = None


class AcceptanceCriterionMapping(Document):
    criterion_id: str
    criterion_text: str
    implementing_step_ids: list[str] = Field(default_factory=list)
    is_fully_covered: bool = False


class PlanAcceptanceMapping(Document):
    mappings: list[AcceptanceCriterionMapping] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)


class TestRequirement(Document):
    """Outcome of the pre-PR test requirement assessment."""

    required: bool = True
    reason: str = ""
    test_types: list[str] = Field(default_factory=list)
    existing_framework: str | None = None
    suggested_coverage: str = ""
    assessed_at: datetime = Field(default_factory=utc_now)
    tests_passing: bool | None = None


class ValidationStatus(Document):
    """Persisted summary of the last full plan validation.

    ``errors`` only contains sections that failed.
    """

    checked_at: datetime = Field(default_factory=utc_now)
    overall: bool = False
    errors: dict[str, list[str]] = Field(default_factory=dict)


class Plan(Document):
    """The versioned decomposition of a feature into steps.

    ``plan_version`` increments on every revision; any revision clears
    ``is_approved``.
    """

    plan_version: int = 0
    is_approved: bool = False
    review_count: int = 0
    plan_file: str | None = None
    steps: list[PlanStep] = Field(default_factory=list)
    meta: PlanMeta | None = None
    dependencies: PlanDependencies | None = None
    test_coverage: PlanTestCoverage | None = None
    acceptance_mapping: PlanAcceptanceMapping | None = None
    test_requirement: TestRequirement | None = None
    validation_status: ValidationStatus | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def get_step(self, step_id: str) -> PlanStep | None:
        """Look up a step by id."""
        return next((step for step in self.steps if step.id == step_id), None)


# =============================================================================
# Questions
# =============================================================================


class QuestionOption(Document):
    value: str
    label: str
    recommended: bool = False


class Question(Document):
    """A decision or blocker raised by the agent and answered by a human.

    Questions sharing one ``asked_at`` form a batch that must be fully
    answered before the workflow resumes.
    """

    id: str
    stage: QuestionStage
    question_type: QuestionType = QuestionType.SINGLE_CHOICE
    question_text: str
    options: list[QuestionOption] = Field(default_factory=list)
    answer: Any | None = None
    is_required: bool = False
    priority: int = 3
    category: QuestionCategory = QuestionCategory.TECHNICAL
    step_id: str | None = None
    file: str | None = None
    line: int | None = None
    asked_at: datetime = Field(default_factory=utc_now)
    answered_at: datetime | None = None

    @property
    def is_answered(self) -> bool:
        return self.answered_at is not None


class QuestionsDocument(Document):
    questions: list[Question] = Field(default_factory=list)


# =============================================================================
# Runtime status and conversation log
# =============================================================================


class RuntimeState(Document):
    """What the agent runtime is doing for a session (``status.json``)."""

    status: RuntimeStatus = RuntimeStatus.IDLE
    current_stage: Stage = Stage.DISCOVERY
    current_step_id: str | None = None
    blocked_step_id: str | None = None
    last_action: str = "session_created"
    last_action_at: datetime = Field(default_factory=utc_now)
    last_output_length: int = 0
    last_error: str | None = None
    spawn_count: int = 0
    recent_calls: list[datetime] = Field(default_factory=list)
    """Start times of invocations inside the rolling one-hour budget window."""


ConversationStatus = Literal["started", "completed", "interrupted"]


class ConversationEntry(Document):
    """One agent invocation, recorded when started and closed when finished."""

    id: str
    stage: Stage
    step_id: str | None = None
    prompt: str
    output: str = ""
    conversation_handle: str | None = None
    cost_usd: float = 0.0
    is_error: bool = False
    status: ConversationStatus = "started"
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    parsed: dict[str, Any] | None = None


class ConversationLog(Document):
    entries: list[ConversationEntry] = Field(default_factory=list)


class DecisionValidationEntry(Document):
    """Outcome of filtering one pass of decisions for false positives."""

    stage: Stage
    total: int
    kept: int
    filtered: list[dict[str, Any]] = Field(default_factory=list)
    recorded_at: datetime = Field(default_factory=utc_now)


class DecisionValidationLog(Document):
    entries: list[DecisionValidationEntry] = Field(default_factory=list)


class ProjectEntry(Document):
    project_id: str
    project_path: str
    feature_ids: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=utc_now)


class ProjectsIndex(Document):
    projects: dict[str, ProjectEntry] = Field(default_factory=dict)
