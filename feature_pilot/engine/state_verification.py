"""
Deterministic checks over persisted session state.

These predicates are the source of truth for control flow; protocol markers
in agent output are secondary signals that callers combine with them.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from feature_pilot.enums import QuestionStage, StepStatus
from feature_pilot.models.domain import Plan, PlanStep, Question

DONE_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


@dataclass
class StepCounts:
    total: int = 0
    completed: int = 0
    pending: int = 0
    in_progress: int = 0
    blocked: int = 0


def is_plan_approved(plan: Plan | None, questions: Sequence[Question]) -> bool:
    """State-derived approval.

    True when the plan flag is set, or when at least one planning question
    exists and every planning question has been answered.
    """
    if plan is not None and plan.is_approved:
        return True

    planning = [question for question in questions if question.stage == QuestionStage.PLANNING]
    return bool(planning) and all(question.is_answered for question in planning)


def _is_ready(step: PlanStep, by_id: dict[str, PlanStep]) -> bool:
    if step.status != StepStatus.PENDING:
        return False
    if step.parent_id is None:
        return True
    parent = by_id.get(step.parent_id)
    return parent is not None and parent.status == StepStatus.COMPLETED


def get_all_ready_steps(steps: Sequence[PlanStep]) -> list[PlanStep]:
    """Pending steps whose parent is absent or completed, in list order."""
    by_id = {step.id: step for step in steps}
    return [step for step in steps if _is_ready(step, by_id)]


def get_next_ready_step(steps: Sequence[PlanStep]) -> PlanStep | None:
    """The earliest ready step in list order, or None."""
    ready = get_all_ready_steps(steps)
    return ready[0] if ready else None


def is_implementation_complete(steps: Sequence[PlanStep]) -> bool:
    """True when there is at least one step and all are completed or skipped."""
    return bool(steps) and all(step.status in DONE_STATUSES for step in steps)


def get_step_counts(steps: Sequence[PlanStep]) -> StepCounts:
    """Tally step statuses; skipped counts as completed, needs_review as blocked."""
    counts = StepCounts(total=len(steps))
    for step in steps:
        if step.status in DONE_STATUSES:
            counts.completed += 1
        elif step.status == StepStatus.IN_PROGRESS:
            counts.in_progress += 1
        elif step.status in (StepStatus.BLOCKED, StepStatus.NEEDS_REVIEW):
            counts.blocked += 1
        else:
            counts.pending += 1
    return counts


def get_unanswered_questions(questions: Sequence[Question], stage: QuestionStage | None = None) -> list[Question]:
    return [q for q in questions if not q.is_answered and (stage is None or q.stage == stage)]


def has_unanswered_questions(questions: Sequence[Question], stage: QuestionStage | None = None) -> bool:
    return bool(get_unanswered_questions(questions, stage))


def get_batch(questions: Sequence[Question], asked_at_of: Question) -> list[Question]:
    """Questions asked together with ``asked_at_of`` (same ``asked_at``)."""
    return [q for q in questions if q.asked_at == asked_at_of.asked_at]


def is_batch_answered(questions: Sequence[Question], member: Question) -> bool:
    return all(q.is_answered for q in get_batch(questions, member))
