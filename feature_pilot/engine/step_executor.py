"""
Stage-3 step execution loop.

``StepExecutionEngine.run`` implements plan steps one at a time, under the
per-session execution lock:

1. Steps left ``needs_review`` or ``in_progress`` by an earlier run go back
   to ``pending``
2. The next ready step is the first pending step, in list order, whose
   parent is absent or completed
3. A step whose stored content hash still matches its title and
   description is marked completed without calling the agent
4. Otherwise the agent implements the step, retrying with the previous
   output as context up to ``policy.max_step_retries`` times
5. A blocker question halts the loop until the user answers it; a
   ``[RETURN_TO_STAGE_2]`` marker, a heuristically detected blocker or an
   exhausted step sends the session back to Planning

The engine reports what happened as a ``StepRunResult``; it never changes
the session stage itself.
"""

import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

import structlog

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.content_hash import compute_step_hash, is_step_content_unchanged
from feature_pilot.engine.execution_lock import ExecutionLock
from feature_pilot.engine.invoker import AgentInvoker
from feature_pilot.engine.result_handler import ResultHandler
from feature_pilot.engine.state_verification import (
    get_next_ready_step,
    get_step_counts,
    is_implementation_complete,
)
from feature_pilot.enums import NotificationEvent, QuestionCategory, RuntimeStatus, Stage, StepStatus
from feature_pilot.exceptions import StepRetryExhausted
from feature_pilot.models.domain import Plan, PlanStep, Question, RuntimeState, Session, utc_now
from feature_pilot.prompts.renderer import PromptRenderer
from feature_pilot.providers.base import HeuristicExtractor, Notifier
from feature_pilot.storage.session_repository import SessionRepository

log = structlog.get_logger(__name__)

OUTPUT_TAIL_LENGTH = 4000


class StepRunStatus(str, Enum):
    ALL_COMPLETE = "all_complete"
    WAITING = "waiting"
    BLOCKED = "blocked"
    RETURN_TO_PLANNING = "return_to_planning"
    ALREADY_RUNNING = "already_running"


@dataclass
class StepRunResult:
    """How a run of the loop ended.

    Attributes:
        status: Why the loop stopped
        step_id: Step involved in a block or a return to Planning
        reason: Context for Planning when ``status`` is RETURN_TO_PLANNING
        completed: Steps completed during this run, in order
        skipped: Steps completed by content hash without calling the agent
    """

    status: StepRunStatus
    step_id: str | None = None
    reason: str | None = None
    completed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class ResumeRequest:
    """Re-enter the loop at a specific step with extra prompt context."""

    step_id: str
    context: str


def _tail(text: str, length: int = OUTPUT_TAIL_LENGTH) -> str:
    return text if len(text) <= length else "..." + text[-length:]


def format_answer(answer: object) -> str:
    return answer if isinstance(answer, str) else json.dumps(answer)


def build_resume_context(questions: Sequence[Question], step_id: str) -> str:
    """Prompt context telling the agent how its blocker questions were answered."""
    answered = [q for q in questions if q.is_answered]
    if not answered:
        return f"Continue implementing step [{step_id}]."

    heading = "The user answered your blocker question:"
    if len(answered) > 1:
        heading = "The user answered your blocker questions:"

    parts = [heading]
    for question in answered:
        parts.append(f"**Q:** {question.question_text}\n**A:** {format_answer(question.answer)}")
    parts.append(f"Continue implementing step [{step_id}].")
    return "\n\n".join(parts)


def resolve_blocked_step(runtime: RuntimeState, questions: Sequence[Question]) -> str | None:
    """Blocked step id from runtime status, else from the first answered blocker."""
    if runtime.blocked_step_id:
        return runtime.blocked_step_id
    return next((q.step_id for q in questions if q.is_answered and q.step_id), None)


class StepExecutionEngine:
    """Runs the Stage-3 loop for one session at a time per key.

    Args:
        repository: Session repository
        invoker: Agent invoker
        renderer: Prompt renderer
        handler: Result handler (blocker questions)
        extractor: Fallback blocker detection for marker-less output
        notifier: Event channel
        lock: Per-session execution lock
        policy: Retry thresholds
    """

    def __init__(
        self,
        repository: SessionRepository,
        invoker: AgentInvoker,
        renderer: PromptRenderer,
        handler: ResultHandler,
        extractor: HeuristicExtractor,
        notifier: Notifier,
        lock: ExecutionLock,
        policy: PolicyConfig,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.renderer = renderer
        self.handler = handler
        self.extractor = extractor
        self.notifier = notifier
        self.lock = lock
        self.policy = policy

    async def run(self, session: Session, resume: ResumeRequest | None = None) -> StepRunResult:
        """Implement ready steps until done, blocked or sent back to Planning.

        A second call while a loop is running for the same session returns
        ALREADY_RUNNING without doing anything.
        """
        async with self.lock.hold(session.project_id, session.feature_id) as acquired:
            if not acquired:
                return StepRunResult(StepRunStatus.ALREADY_RUNNING)

            await self._reset_unfinished_steps(session, keep=resume.step_id if resume else None)
            result = await self._loop(session, resume)
            await self._finish(session, result)
            return result

    async def resume_request(self, session: Session) -> ResumeRequest | None:
        """Build the resume request for a session halted on a blocker.

        Returns:
            None when no blocked step can be identified
        """
        runtime = await self.repository.get_runtime(session.project_id, session.feature_id)
        questions = [
            q
            for q in await self.repository.get_questions(session.project_id, session.feature_id)
            if q.category == QuestionCategory.BLOCKER
        ]
        step_id = resolve_blocked_step(runtime, questions)
        if step_id is None:
            return None

        related = [q for q in questions if q.step_id == step_id and q.is_answered]
        if related:
            latest = max(q.asked_at for q in related)
            related = [q for q in related if q.asked_at == latest]
        return ResumeRequest(step_id=step_id, context=build_resume_context(related, step_id))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self, session: Session, resume: ResumeRequest | None) -> StepRunResult:
        completed: list[str] = []
        skipped: list[str] = []
        forced_step_id = resume.step_id if resume else None
        context = resume.context if resume else None

        while True:
            session = await self.repository.get(session.project_id, session.feature_id)
            plan = await self.repository.get_plan(session.project_id, session.feature_id)

            step = None
            if forced_step_id is not None:
                step = plan.get_step(forced_step_id)
                if step is None:
                    log.warning("resume_step_missing", feature_id=session.feature_id, step_id=forced_step_id)
                    context = None
                forced_step_id = None
            if step is None:
                step = get_next_ready_step(plan.steps)

            if step is None:
                status = StepRunStatus.ALL_COMPLETE if is_implementation_complete(plan.steps) else StepRunStatus.WAITING
                return StepRunResult(status, completed=completed, skipped=skipped)

            if is_step_content_unchanged(step):
                log.info("step_skipped_unchanged", feature_id=session.feature_id, step_id=step.id)
                await self._mark_completed(session, step, summary=step.metadata.get("summary"), skipped=True)
                completed.append(step.id)
                skipped.append(step.id)
                context = None
                continue

            try:
                outcome = await self._execute_step(session, plan, step, context)
            except StepRetryExhausted as e:
                log.warning(
                    "step_retries_exhausted", feature_id=session.feature_id, step_id=e.step_id, attempts=e.attempts
                )
                await self._escalate(session, step, e)
                return StepRunResult(
                    StepRunStatus.RETURN_TO_PLANNING,
                    step_id=step.id,
                    reason=(
                        f"Step {step.id} ({step.title}) was not completed after {e.attempts} attempts "
                        f"and needs review. Revise the step so it can be implemented.\n\n"
                        f"Last output:\n{_tail(e.last_output, 1500)}"
                    ),
                    completed=completed,
                    skipped=skipped,
                )

            context = None
            if outcome is not None:
                outcome.completed = completed
                outcome.skipped = skipped
                return outcome
            completed.append(step.id)

    async def _execute_step(
        self, session: Session, plan: Plan, step: PlanStep, context: str | None
    ) -> StepRunResult | None:
        """Run the attempts for one step.

        Returns:
            None when the step completed, otherwise the result ending the loop

        Raises:
            StepRetryExhausted: If every attempt ended without completion
        """
        await self._set_step_status(session, step.id, StepStatus.IN_PROGRESS)
        await self._notify_step_started(session, plan, step)

        attempts = self.policy.max_step_retries + 1
        attempt_context = context
        last_output = ""

        for attempt in range(1, attempts + 1):
            prompt = self.renderer.step_prompt(session, plan, step, attempt=attempt, context=attempt_context)
            invocation = await self.invoker.invoke(session, Stage.IMPLEMENTATION, prompt, step_id=step.id)
            session = invocation.session
            parsed = invocation.parsed
            output = invocation.result.output

            if step.id in parsed.completed_ids():
                report = next(done for done in reversed(parsed.steps_completed) if done.id == step.id)
                await self._mark_completed(
                    session,
                    step,
                    summary=report.summary,
                    tests_added=report.tests_added,
                    tests_passing=(
                        report.tests_passing if parsed.all_tests_passing is None else parsed.all_tests_passing
                    ),
                )
                return None

            if parsed.decisions:
                await self.handler.save_blocker(session, step.id, parsed.decisions)
                await self._set_step_status(session, step.id, StepStatus.BLOCKED)
                log.info("step_blocked", feature_id=session.feature_id, step_id=step.id)
                return StepRunResult(StepRunStatus.BLOCKED, step_id=step.id)

            if parsed.return_to_planning is not None:
                await self._set_step_status(session, step.id, StepStatus.PENDING)
                return StepRunResult(
                    StepRunStatus.RETURN_TO_PLANNING,
                    step_id=step.id,
                    reason=self._planning_reason(step, parsed.return_to_planning.reason),
                )

            blocker = await self.extractor.extract_blocker(output, step)
            if blocker:
                log.info("implicit_blocker_found", feature_id=session.feature_id, step_id=step.id)
                await self._set_step_status(session, step.id, StepStatus.PENDING)
                return StepRunResult(
                    StepRunStatus.RETURN_TO_PLANNING,
                    step_id=step.id,
                    reason=self._planning_reason(step, blocker),
                )

            last_output = output
            log.warning("step_attempt_incomplete", feature_id=session.feature_id, step_id=step.id, attempt=attempt)
            attempt_context = self._retry_context(step, output, invocation.result.error)

        raise StepRetryExhausted(step.id, attempts, last_output)

    @staticmethod
    def _planning_reason(step: PlanStep, reason: str) -> str:
        return f"Implementation of step {step.id} ({step.title}) is blocked:\n\n{reason}"

    @staticmethod
    def _retry_context(step: PlanStep, output: str, error: str | None) -> str:
        lines = [
            f'The previous attempt ended without reporting [STEP_COMPLETE id="{step.id}"].',
        ]
        if error:
            lines.append(f"It ended with an error: {error}")
        lines.extend(["", "Its output was:", "", _tail(output), "", "Finish the step and report it as complete."])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # State changes
    # ------------------------------------------------------------------

    async def _reset_unfinished_steps(self, session: Session, keep: str | None = None) -> None:
        reset = []
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            for step in plan.steps:
                if step.id != keep and step.status in (StepStatus.NEEDS_REVIEW, StepStatus.IN_PROGRESS):
                    step.status = StepStatus.PENDING
                    reset.append(step.id)
        if reset:
            log.info("unfinished_steps_reset", feature_id=session.feature_id, step_ids=reset)

    async def _set_step_status(self, session: Session, step_id: str, status: StepStatus) -> None:
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            step = plan.get_step(step_id)
            if step is not None:
                step.status = status

    async def _mark_completed(
        self,
        session: Session,
        step: PlanStep,
        summary: str | None = None,
        tests_added: list[str] | None = None,
        tests_passing: bool | None = None,
        skipped: bool = False,
    ) -> None:
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            stored = plan.get_step(step.id)
            if stored is None:
                return
            stored.status = StepStatus.COMPLETED
            stored.content_hash = compute_step_hash(stored)
            if summary:
                stored.metadata["summary"] = summary
            if tests_added:
                stored.metadata["tests_added"] = list(tests_added)
            stored.metadata["completed_at"] = utc_now().isoformat()
            stored.metadata.pop("failure", None)
            stored.metadata.pop("reopened_reason", None)
            if tests_passing is not None and plan.test_requirement is not None:
                plan.test_requirement.tests_passing = tests_passing
            counts = get_step_counts(plan.steps)

        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.STEP_COMPLETED,
            {
                "step_id": step.id,
                "summary": summary,
                "skipped": skipped,
                "completed": counts.completed,
                "total": counts.total,
            },
        )
        log.info("step_completed", feature_id=session.feature_id, step_id=step.id, skipped=skipped)

    async def _escalate(self, session: Session, step: PlanStep, error: StepRetryExhausted) -> None:
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            stored = plan.get_step(step.id)
            if stored is None:
                return
            stored.status = StepStatus.NEEDS_REVIEW
            stored.metadata["failure"] = {
                "attempts": error.attempts,
                "last_output": _tail(error.last_output, 2000),
                "failed_at": utc_now().isoformat(),
            }

    async def _notify_step_started(self, session: Session, plan: Plan, step: PlanStep) -> None:
        counts = get_step_counts(plan.steps)
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.STEP_STARTED,
            {"step_id": step.id, "title": step.title},
        )
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.EXECUTION_STATUS,
            {
                "stage": int(Stage.IMPLEMENTATION),
                "sub_state": "implementing",
                "step_id": step.id,
                "progress": {"completed": counts.completed, "total": counts.total},
            },
        )

    async def _finish(self, session: Session, result: StepRunResult) -> None:
        waiting = result.status in (StepRunStatus.BLOCKED, StepRunStatus.WAITING)
        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.status = RuntimeStatus.WAITING_INPUT if waiting else RuntimeStatus.IDLE
            runtime.current_step_id = None
            runtime.blocked_step_id = result.step_id if result.status == StepRunStatus.BLOCKED else None
            runtime.last_action = f"implementation_{result.status.value}"
            runtime.last_action_at = utc_now()

        log.info(
            "step_loop_finished",
            feature_id=session.feature_id,
            status=result.status.value,
            completed=len(result.completed),
        )

