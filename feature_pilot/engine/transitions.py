"""
Stage transition table and per-stage transition functions.

Each ``decide_*`` function is pure: given a ``StageSnapshot`` of persisted
state (plus the parsed agent output where the stage is agent-driven) it
returns an ``Outcome`` naming the next stage, if any, and the effects the
dispatcher must apply. Nothing here reads or writes documents, invokes the
agent or sends notifications.

Transition table::

    1 -> 2
    2 -> 1, 3
    3 -> 2, 4
    4 -> 5
    5 -> 2, 6
    6 -> 2, 5, 7
"""

from dataclasses import dataclass, field
from enum import Enum

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.state_verification import is_implementation_complete, is_plan_approved
from feature_pilot.enums import SessionStatus, Stage
from feature_pilot.exceptions import ValidationAttemptsExhausted
from feature_pilot.models.domain import Plan, Question, Session
from feature_pilot.protocol.types import ParsedOutput
from feature_pilot.validation.completion import CompletenessResult

TRANSITIONS: dict[Stage, frozenset[Stage]] = {
    Stage.DISCOVERY: frozenset({Stage.PLANNING}),
    Stage.PLANNING: frozenset({Stage.DISCOVERY, Stage.IMPLEMENTATION}),
    Stage.IMPLEMENTATION: frozenset({Stage.PLANNING, Stage.PR_CREATION}),
    Stage.PR_CREATION: frozenset({Stage.PR_REVIEW}),
    Stage.PR_REVIEW: frozenset({Stage.PLANNING, Stage.FINAL_APPROVAL}),
    Stage.FINAL_APPROVAL: frozenset({Stage.PLANNING, Stage.PR_REVIEW, Stage.COMPLETED}),
}

STAGE_STATUS: dict[Stage, SessionStatus] = {
    Stage.DISCOVERY: SessionStatus.DISCOVERY,
    Stage.PLANNING: SessionStatus.PLANNING,
    Stage.IMPLEMENTATION: SessionStatus.IMPLEMENTING,
    Stage.PR_CREATION: SessionStatus.PR_CREATION,
    Stage.PR_REVIEW: SessionStatus.PR_REVIEW,
    Stage.FINAL_APPROVAL: SessionStatus.FINAL_APPROVAL,
    Stage.COMPLETED: SessionStatus.COMPLETED,
}


def can_transition(current: int, target: int) -> bool:
    """True iff ``target`` is in the transition table row of ``current``."""
    try:
        return Stage(target) in TRANSITIONS.get(Stage(current), frozenset())
    except ValueError:
        return False


def status_for_stage(stage: int) -> SessionStatus:
    return STAGE_STATUS[Stage(stage)]


class FinalAction(str, Enum):
    """User decisions available in Final Approval."""

    MERGE = "merge"
    REQUEST_CHANGES = "request_changes"
    RE_REVIEW = "re_review"


# =============================================================================
# Effects
# =============================================================================


@dataclass(frozen=True)
class SpawnStage:
    """Invoke the agent for a stage (Stage 3 runs the step loop)."""

    stage: Stage
    context: str | None = None


@dataclass(frozen=True)
class AwaitUser:
    """Stop and wait for a human action; ``reason`` is reported as sub-state."""

    reason: str


@dataclass(frozen=True)
class ApprovePlan:
    pass


@dataclass(frozen=True)
class ReopenPlan:
    """Clear plan approval so Planning must approve it again."""

    pass


@dataclass(frozen=True)
class ResetAffectedSteps:
    """Assess which steps a review failure affects and reset only those.

    Also clears approval and bumps the plan version.
    """

    reason: str


@dataclass(frozen=True)
class IncrementValidationAttempts:
    pass


@dataclass(frozen=True)
class RecordPullRequest:
    url: str


@dataclass(frozen=True)
class FailStage:
    """End the current stage in an error state without retrying."""

    message: str


Effect = (
    SpawnStage
    | AwaitUser
    | ApprovePlan
    | ReopenPlan
    | ResetAffectedSteps
    | IncrementValidationAttempts
    | RecordPullRequest
    | FailStage
)


@dataclass
class Outcome:
    """Next stage (None to stay) and the effects to apply, in order.

    The dispatcher performs the stage transition before any effect.
    """

    next_stage: Stage | None = None
    effects: list[Effect] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class StageSnapshot:
    """Persisted state a transition function decides on.

    Attributes:
        session: Session as of the end of the agent pass
        plan: Current plan
        questions: All questions of the session, including this pass's
        new_questions: Unanswered questions raised by this pass after
            false-positive filtering
        completeness: Planning exit gate result (Stage 2 only)
        pull_request_url: URL found by the external PR check (Stage 4 only)
    """

    session: Session
    plan: Plan
    questions: list[Question] = field(default_factory=list)
    new_questions: int = 0
    completeness: CompletenessResult | None = None
    pull_request_url: str | None = None


# =============================================================================
# Transition functions
# =============================================================================


def decide_discovery(snapshot: StageSnapshot, parsed: ParsedOutput) -> Outcome:
    """1 -> 2 once the agent has written a plan file."""
    if parsed.plan_file_path:
        return Outcome(Stage.PLANNING, [SpawnStage(Stage.PLANNING)])
    if snapshot.new_questions:
        return Outcome(effects=[AwaitUser("questions_pending")])
    return Outcome(effects=[AwaitUser("discovery_incomplete")])


def _validation_gate(snapshot: StageSnapshot, policy: PolicyConfig) -> Outcome:
    completeness = snapshot.completeness
    if completeness is None or completeness.complete:
        return Outcome(Stage.IMPLEMENTATION, [ApprovePlan(), SpawnStage(Stage.IMPLEMENTATION)])

    attempts = snapshot.session.plan_validation_attempts
    if attempts >= policy.max_validation_attempts:
        raise ValidationAttemptsExhausted(attempts)

    return Outcome(
        effects=[
            IncrementValidationAttempts(),
            SpawnStage(Stage.PLANNING, completeness.missing_context),
        ]
    )


def decide_planning(snapshot: StageSnapshot, parsed: ParsedOutput, policy: PolicyConfig) -> Outcome:
    """2 -> 3 when the plan is approved and passes the completeness gate.

    Approval holds when this pass emitted ``[PLAN_APPROVED]``, or the plan is
    already flagged approved, or every planning question is answered. A pass
    that leaves newly raised questions unanswered is never approved.

    An incomplete approved plan re-spawns Planning with remediation context
    until ``policy.max_validation_attempts`` is reached; after that the
    transition proceeds anyway with a warning.

    Once ``policy.max_review_iterations`` planning passes have run, the
    transition is forced regardless of approval or pending questions.
    """
    if snapshot.plan.review_count >= policy.max_review_iterations:
        return Outcome(
            Stage.IMPLEMENTATION,
            [ApprovePlan(), SpawnStage(Stage.IMPLEMENTATION)],
            warnings=[
                f"Plan review reached {policy.max_review_iterations} iterations with "
                f"{snapshot.new_questions} new question(s) pending; proceeding to implementation"
            ],
        )

    if snapshot.new_questions:
        return Outcome(effects=[AwaitUser("questions_pending")])

    approved = parsed.plan_approved or is_plan_approved(snapshot.plan, snapshot.questions)
    if not approved:
        return Outcome(effects=[AwaitUser("plan_review")])

    try:
        return _validation_gate(snapshot, policy)
    except ValidationAttemptsExhausted as e:
        return Outcome(
            Stage.IMPLEMENTATION,
            [ApprovePlan(), SpawnStage(Stage.IMPLEMENTATION)],
            warnings=[f"{e.message}; proceeding to implementation"],
        )


def decide_implementation(snapshot: StageSnapshot) -> Outcome:
    """3 -> 4 once every step is done and any required tests pass."""
    if not is_implementation_complete(snapshot.plan.steps):
        return Outcome(effects=[AwaitUser("steps_incomplete")])

    requirement = snapshot.plan.test_requirement
    if requirement is not None and requirement.required and requirement.tests_passing is not True:
        return Outcome(effects=[AwaitUser("tests_not_passing")])

    return Outcome(Stage.PR_CREATION, [SpawnStage(Stage.PR_CREATION)])


def decide_return_to_planning(reason: str) -> Outcome:
    """3 -> 2 after a blocker or an exhausted step, with ``reason`` as context."""
    return Outcome(Stage.PLANNING, [ReopenPlan(), SpawnStage(Stage.PLANNING, reason)])


def decide_pr_creation(snapshot: StageSnapshot) -> Outcome:
    """4 -> 5 only when the external check found the pull request."""
    if snapshot.pull_request_url:
        return Outcome(
            Stage.PR_REVIEW,
            [RecordPullRequest(snapshot.pull_request_url), SpawnStage(Stage.PR_REVIEW)],
        )
    return Outcome(effects=[FailStage("Pull request was not found after PR creation")])


def decide_pr_review(snapshot: StageSnapshot, parsed: ParsedOutput) -> Outcome:
    """5 -> 2 on CI failure or an explicit return; 5 -> 6 on approval."""
    if parsed.ci_failed or parsed.return_to_planning is not None:
        if parsed.return_to_planning is not None and parsed.return_to_planning.reason:
            reason = parsed.return_to_planning.reason
        elif parsed.ci_status is not None and parsed.ci_status.checks:
            reason = f"CI checks failed:\n{parsed.ci_status.checks}"
        else:
            reason = "CI checks failed"
        return Outcome(Stage.PLANNING, [ResetAffectedSteps(reason), SpawnStage(Stage.PLANNING, reason)])

    if parsed.pr_approved:
        return Outcome(Stage.FINAL_APPROVAL, [AwaitUser("final_approval")])

    if snapshot.new_questions:
        return Outcome(effects=[AwaitUser("questions_pending")])
    return Outcome(effects=[AwaitUser("review_pending")])


def decide_final_action(action: FinalAction, feedback: str | None = None) -> Outcome:
    """User-driven exits from Final Approval."""
    if action == FinalAction.MERGE:
        return Outcome(Stage.COMPLETED)
    if action == FinalAction.RE_REVIEW:
        return Outcome(Stage.PR_REVIEW, [SpawnStage(Stage.PR_REVIEW)])

    reason = feedback or "Changes were requested during final approval"
    return Outcome(Stage.PLANNING, [ResetAffectedSteps(reason), SpawnStage(Stage.PLANNING, reason)])
