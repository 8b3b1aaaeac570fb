"""Enumerations shared across the workflow core."""

from enum import Enum, IntEnum


class Stage(IntEnum):
    """Workflow stages, numbered in forward order.

    Stage 7 is the terminal Completed state rather than a working stage.
    """

    DISCOVERY = 1
    PLANNING = 2
    IMPLEMENTATION = 3
    PR_CREATION = 4
    PR_REVIEW = 5
    FINAL_APPROVAL = 6
    COMPLETED = 7


class SessionStatus(str, Enum):
    """Session status as shown to users.

    Stage-derived values follow ``currentStage`` one to one. QUEUED, PAUSED
    and FAILED are overrides set outside the stage lifecycle.
    """

    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    PR_CREATION = "pr_creation"
    PR_REVIEW = "pr_review"
    FINAL_APPROVAL = "final_approval"
    COMPLETED = "completed"
    QUEUED = "queued"
    PAUSED = "paused"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


OVERRIDE_STATUSES = frozenset({SessionStatus.QUEUED, SessionStatus.PAUSED, SessionStatus.FAILED})


class StepStatus(str, Enum):
    """Lifecycle status of a single plan step."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    NEEDS_REVIEW = "needs_review"
    SKIPPED = "skipped"

    def __str__(self) -> str:
        return self.value


class StepComplexity(str, Enum):
    """Effort rating attached to a plan step by the planner."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class QuestionStage(str, Enum):
    """Stage a question originated in."""

    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    REVIEW = "review"

    @classmethod
    def for_stage(cls, stage: int) -> "QuestionStage":
        """Map a stage number to the question stage it produces.

        PR creation and PR review questions are both review questions.
        """
        if stage <= Stage.DISCOVERY:
            return cls.DISCOVERY
        if stage == Stage.PLANNING:
            return cls.PLANNING
        if stage == Stage.IMPLEMENTATION:
            return cls.IMPLEMENTATION
        return cls.REVIEW


class QuestionCategory(str, Enum):
    """Known question categories. Unknown categories normalize to TECHNICAL."""

    SCOPE = "scope"
    APPROACH = "approach"
    TECHNICAL = "technical"
    DESIGN = "design"
    BLOCKER = "blocker"
    CRITICAL = "critical"
    MAJOR = "major"
    SUGGESTION = "suggestion"

    @classmethod
    def normalize(cls, value: str | None) -> "QuestionCategory":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.TECHNICAL


class QuestionType(str, Enum):
    SINGLE_CHOICE = "single_choice"
    MULTI_CHOICE = "multi_choice"
    TEXT = "text"


class RuntimeStatus(str, Enum):
    """What the agent runtime for a session is doing right now."""

    IDLE = "idle"
    RUNNING = "running"
    EXECUTING = "executing"
    WAITING_INPUT = "waiting_input"
    PAUSED = "paused"
    ERROR = "error"

    def __str__(self) -> str:
        return self.value


class NotificationEvent(str, Enum):
    """Events written to the one-way notification channel."""

    STAGE_CHANGED = "stage.changed"
    QUESTIONS_BATCH = "questions.batch"
    QUESTION_ANSWERED = "question.answered"
    PLAN_UPDATED = "plan.updated"
    PLAN_APPROVED = "plan.approved"
    EXECUTION_STATUS = "execution.status"
    AGENT_OUTPUT = "claude.output"
    STEP_STARTED = "step.started"
    STEP_COMPLETED = "step.completed"
    IMPLEMENTATION_PROGRESS = "implementation.progress"

    def __str__(self) -> str:
        return self.value
