"""
Workflow dispatcher.

``WorkflowOrchestrator`` runs one stage pass at a time: it builds the
prompt, invokes the agent, persists the result, asks the stage's pure
transition function what happens next and applies the returned
``Outcome``. The stage transition is always applied before the effects,
and effects are applied in order; a ``SpawnStage`` effect starts the next
pass directly, so one call can carry a session across several stages.

Stage-specific behavior:

- Discovery, Planning and PR Review are single agent passes whose
  decisions are filtered for false positives before they become questions
- Implementation assesses the test requirement on entry and then hands
  control to ``StepExecutionEngine``
- PR Creation pushes the branch before the agent pass and confirms the
  pull request through the version-control collaborator afterwards

Example:
    >>> orchestrator = WorkflowOrchestrator(...)
    >>> await orchestrator.advance(project_id, feature_id)
    >>> await orchestrator.answer_questions(project_id, feature_id, {question_id: "use_postgres"})
"""

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.invoker import AgentInvoker, Invocation
from feature_pilot.engine.result_handler import ResultHandler
from feature_pilot.engine.state_verification import (
    get_batch,
    get_unanswered_questions,
    is_batch_answered,
    is_implementation_complete,
)
from feature_pilot.engine.step_executor import ResumeRequest, StepExecutionEngine, StepRunStatus, format_answer
from feature_pilot.engine.transitions import (
    ApprovePlan,
    AwaitUser,
    FailStage,
    FinalAction,
    IncrementValidationAttempts,
    Outcome,
    RecordPullRequest,
    ReopenPlan,
    ResetAffectedSteps,
    SpawnStage,
    StageSnapshot,
    decide_discovery,
    decide_final_action,
    decide_implementation,
    decide_planning,
    decide_pr_creation,
    decide_pr_review,
    decide_return_to_planning,
    status_for_stage,
)
from feature_pilot.enums import (
    OVERRIDE_STATUSES,
    NotificationEvent,
    QuestionCategory,
    QuestionStage,
    RuntimeStatus,
    Stage,
    StepStatus,
)
from feature_pilot.exceptions import ExternalCommandError, StateConflictError, ValidationError
from feature_pilot.models.domain import Plan, Question, Session, utc_now
from feature_pilot.prompts.renderer import PromptRenderer
from feature_pilot.providers.base import (
    AffectedStepsAssessor,
    DecisionValidator,
    Notifier,
    TestRequirementAssessor,
    VersionControl,
)
from feature_pilot.storage.session_repository import SessionRepository
from feature_pilot.validation.completion import PlanCompletionChecker
from feature_pilot.validation.plan_validator import PlanValidator

log = structlog.get_logger(__name__)

AGENT_STAGES = frozenset({Stage.DISCOVERY, Stage.PLANNING, Stage.PR_REVIEW})


def answers_context(questions: Sequence[Question]) -> str | None:
    """Prompt context listing the answers the user just gave."""
    answered = [q for q in questions if q.is_answered]
    if not answered:
        return None
    parts = ["The user answered your questions:"]
    parts.extend(f"**Q:** {q.question_text}\n**A:** {format_answer(q.answer)}" for q in answered)
    return "\n\n".join(parts)


def failing_tests_context(plan: Plan, step_id: str) -> str:
    """Prompt context for re-running a step because required tests fail."""
    step = plan.get_step(step_id)
    requirement = plan.test_requirement
    types = ", ".join(requirement.test_types) if requirement and requirement.test_types else "required"
    return (
        f"Every step is implemented but the {types} tests are not passing. "
        f"Step {step_id} ({step.title if step else step_id}) was reopened so the failures can be fixed.\n\n"
        'Run the test suite, fix what fails and report the step complete with "Tests passing: yes" '
        "once the whole suite passes."
    )


def _last_completed_step(plan: Plan):
    completed = [step for step in reversed(plan.steps) if step.status == StepStatus.COMPLETED]
    if not completed:
        return None
    return max(completed, key=lambda step: str(step.metadata.get("completed_at", "")))


class WorkflowOrchestrator:
    """Drive sessions through the stage lifecycle.

    All collaborators are injected once at construction; nothing here keeps
    per-session state between calls.
    """

    def __init__(
        self,
        repository: SessionRepository,
        invoker: AgentInvoker,
        engine: StepExecutionEngine,
        handler: ResultHandler,
        renderer: PromptRenderer,
        notifier: Notifier,
        decision_validator: DecisionValidator,
        vcs: VersionControl,
        affected_steps_assessor: AffectedStepsAssessor,
        test_requirement_assessor: TestRequirementAssessor,
        validator: PlanValidator,
        completion_checker: PlanCompletionChecker,
        policy: PolicyConfig,
    ) -> None:
        self.repository = repository
        self.invoker = invoker
        self.engine = engine
        self.handler = handler
        self.renderer = renderer
        self.notifier = notifier
        self.decision_validator = decision_validator
        self.vcs = vcs
        self.affected_steps_assessor = affected_steps_assessor
        self.test_requirement_assessor = test_requirement_assessor
        self.validator = validator
        self.completion_checker = completion_checker
        self.policy = policy

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def advance(self, project_id: str, feature_id: str, context: str | None = None) -> Outcome:
        """Run a pass of the session's current stage.

        Raises:
            NotFoundError: If the session does not exist
            StateConflictError: If the session is queued, paused or failed
        """
        session = await self.repository.get(project_id, feature_id)
        if session.status in OVERRIDE_STATUSES:
            raise StateConflictError(f"Session is {session.status}; resume it before advancing")
        return await self.spawn_stage(session, session.current_stage, context)

    async def spawn_stage(self, session: Session, stage: Stage, context: str | None = None) -> Outcome:
        """Run one pass of ``stage`` and apply its outcome."""
        stage = Stage(stage)
        log.info("stage_pass_started", project_id=session.project_id, feature_id=session.feature_id, stage=int(stage))

        if stage == Stage.IMPLEMENTATION:
            return await self._run_implementation(session)
        if stage == Stage.PR_CREATION:
            return await self._run_pr_creation(session, context)
        if stage in AGENT_STAGES:
            return await self._run_agent_stage(session, stage, context)

        outcome = Outcome(effects=[AwaitUser("final_approval")]) if stage == Stage.FINAL_APPROVAL else Outcome()
        await self._apply(session, stage, outcome)
        return outcome

    async def answer_questions(self, project_id: str, feature_id: str, answers: Mapping[str, Any]) -> Outcome | None:
        """Record answers and resume the stage once its question batch is complete.

        Raises:
            ValidationError: If an answer is empty
            NotFoundError: If a question does not exist
        """
        if not answers:
            raise ValidationError("At least one answer is required")
        for question_id, answer in answers.items():
            if answer is None or (isinstance(answer, (str, list)) and not answer):
                raise ValidationError(f"Answer for question {question_id} is empty")

        session = await self.repository.get(project_id, feature_id)
        answered = await self.repository.answer_questions(project_id, feature_id, answers)
        for question, answer in zip(answered, answers.values()):
            await self.notifier.notify(
                project_id,
                feature_id,
                NotificationEvent.QUESTION_ANSWERED,
                {"question_id": question.id, "answer": answer},
            )

        questions = await self.repository.get_questions(project_id, feature_id)
        if not all(is_batch_answered(questions, question) for question in answered):
            log.info("question_batch_incomplete", feature_id=feature_id)
            return None
        if get_unanswered_questions(questions, QuestionStage.for_stage(session.current_stage)):
            log.info("questions_still_pending", feature_id=feature_id)
            return None

        batch = [q for question in answered for q in get_batch(questions, question)]
        return await self._resume(session, list({q.id: q for q in batch}.values()))

    async def final_action(
        self, project_id: str, feature_id: str, action: FinalAction, feedback: str | None = None
    ) -> Outcome:
        """Apply the user's decision in Final Approval.

        Raises:
            StateConflictError: If the session is not in Final Approval
        """
        session = await self.repository.get(project_id, feature_id)
        if session.current_stage != Stage.FINAL_APPROVAL:
            raise StateConflictError(
                "Final actions are only allowed in final approval",
                current=int(session.current_stage),
                target=int(Stage.FINAL_APPROVAL),
            )

        outcome = decide_final_action(FinalAction(action), feedback)
        await self._apply(session, Stage.FINAL_APPROVAL, outcome)
        return outcome

    async def retry_stage(self, project_id: str, feature_id: str) -> Outcome:
        """Clear stuck conversation records and re-run the current stage.

        Raises:
            StateConflictError: If the session is already completed
        """
        session = await self.repository.get(project_id, feature_id)
        if session.current_stage == Stage.COMPLETED:
            raise StateConflictError("Completed sessions cannot be retried")

        await self.handler.interrupt_started(session)
        async with self.repository.runtime_transaction(project_id, feature_id) as runtime:
            runtime.status = RuntimeStatus.IDLE
            runtime.last_error = None
            runtime.last_action = f"stage{int(session.current_stage)}_retry"
            runtime.last_action_at = utc_now()

        if session.status in OVERRIDE_STATUSES:
            session = await self.repository.set_status(project_id, feature_id, status_for_stage(session.current_stage))
        log.info("stage_retry", feature_id=feature_id, stage=int(session.current_stage))

        if session.current_stage == Stage.IMPLEMENTATION:
            resume = await self._answered_blocker(session) or await self._failing_tests_request(session)
            return await self._run_implementation(session, resume)
        return await self.spawn_stage(session, session.current_stage)

    # ------------------------------------------------------------------
    # Stage passes
    # ------------------------------------------------------------------

    async def _run_agent_stage(self, session: Session, stage: Stage, context: str | None) -> Outcome:
        plan = await self.repository.get_plan(session.project_id, session.feature_id)
        prompt = self._prompt(session, plan, stage, context)
        invocation = await self.invoker.invoke(session, stage, prompt)
        session = invocation.session

        if invocation.result.is_error:
            outcome = Outcome(effects=[FailStage(invocation.result.error or "Agent reported an error")])
            await self._apply(session, stage, outcome)
            return outcome

        new_questions = await self._save_decisions(session, stage, invocation)
        if stage in (Stage.DISCOVERY, Stage.PLANNING):
            await self.handler.apply_plan_output(session, invocation.parsed)
        if stage == Stage.PLANNING:
            await self.handler.increment_review_count(session)

        snapshot = await self._snapshot(session, new_questions=len(new_questions))
        if stage == Stage.DISCOVERY:
            outcome = decide_discovery(snapshot, invocation.parsed)
        elif stage == Stage.PLANNING:
            snapshot.completeness = self.completion_checker.check(snapshot.plan)
            outcome = decide_planning(snapshot, invocation.parsed, self.policy)
        else:
            outcome = decide_pr_review(snapshot, invocation.parsed)

        await self._apply(snapshot.session, stage, outcome)
        return outcome

    async def _run_implementation(self, session: Session, resume: ResumeRequest | None = None) -> Outcome:
        plan = await self.repository.get_plan(session.project_id, session.feature_id)
        if plan.test_requirement is None:
            requirement = await self.test_requirement_assessor.assess(session, plan)
            async with self.repository.plan_transaction(session.project_id, session.feature_id) as stored:
                stored.test_requirement = requirement

        result = await self.engine.run(session, resume)
        session = await self.repository.get(session.project_id, session.feature_id)

        if result.status == StepRunStatus.ALREADY_RUNNING:
            return Outcome()
        if result.status == StepRunStatus.ALL_COMPLETE:
            outcome = decide_implementation(await self._snapshot(session))
        elif result.status == StepRunStatus.RETURN_TO_PLANNING:
            outcome = decide_return_to_planning(result.reason or f"Step {result.step_id} needs replanning")
        elif result.status == StepRunStatus.BLOCKED:
            outcome = Outcome(effects=[AwaitUser("blocker_pending")])
        else:
            outcome = Outcome(effects=[AwaitUser("steps_incomplete")])

        await self._apply(session, Stage.IMPLEMENTATION, outcome)
        return outcome

    async def _run_pr_creation(self, session: Session, context: str | None) -> Outcome:
        try:
            await self.vcs.prepare_pull_request(session)
        except ExternalCommandError as e:
            log.error("pre_pr_command_failed", feature_id=session.feature_id, command=e.command, error=e.message)
            outcome = Outcome(effects=[FailStage(f"Preparing the pull request failed: {e}")])
            await self._apply(session, Stage.PR_CREATION, outcome)
            return outcome

        plan = await self.repository.get_plan(session.project_id, session.feature_id)
        invocation = await self.invoker.invoke(
            session, Stage.PR_CREATION, self._prompt(session, plan, Stage.PR_CREATION, context)
        )
        session = invocation.session

        snapshot = await self._snapshot(session)
        snapshot.pull_request_url = await self.vcs.find_pull_request(session)
        outcome = decide_pr_creation(snapshot)
        await self._apply(session, Stage.PR_CREATION, outcome)
        return outcome

    def _prompt(self, session: Session, plan, stage: Stage, context: str | None) -> str:
        if stage == Stage.DISCOVERY:
            return self.renderer.discovery_prompt(session, context)
        if stage == Stage.PLANNING:
            return self.renderer.planning_prompt(
                session, plan, plan.review_count + 1, self.policy.max_review_iterations, context
            )
        if stage == Stage.PR_CREATION:
            return self.renderer.pr_creation_prompt(session, plan, context)
        return self.renderer.pr_review_prompt(session, plan, context)

    async def _save_decisions(self, session: Session, stage: Stage, invocation: Invocation) -> list[Question]:
        decisions = invocation.parsed.decisions
        if not decisions:
            return []
        filtered = await self.decision_validator.filter(session, decisions)
        await self.handler.record_decision_filtering(session, stage, filtered)
        return await self.handler.save_decisions(session, stage, filtered.kept)

    async def _snapshot(self, session: Session, new_questions: int = 0) -> StageSnapshot:
        return StageSnapshot(
            session=await self.repository.get(session.project_id, session.feature_id),
            plan=await self.repository.get_plan(session.project_id, session.feature_id),
            questions=await self.repository.get_questions(session.project_id, session.feature_id),
            new_questions=new_questions,
        )

    async def _resume(self, session: Session, batch: list[Question]) -> Outcome | None:
        stage = session.current_stage
        if stage == Stage.IMPLEMENTATION:
            return await self._run_implementation(session, await self.engine.resume_request(session))
        if stage in AGENT_STAGES:
            return await self.spawn_stage(session, stage, answers_context(batch))
        log.info("answers_recorded_without_resume", feature_id=session.feature_id, stage=int(stage))
        return None

    async def _answered_blocker(self, session: Session) -> ResumeRequest | None:
        questions = await self.repository.get_questions(session.project_id, session.feature_id)
        blockers = [q for q in questions if q.category == QuestionCategory.BLOCKER]
        if not blockers or not all(q.is_answered for q in blockers):
            return None
        return await self.engine.resume_request(session)

    async def _failing_tests_request(self, session: Session) -> ResumeRequest | None:
        """Reopen the most recently completed step when required tests fail.

        Returns:
            None unless every step is done and a required test run is not
            reported as passing
        """
        plan = await self.repository.get_plan(session.project_id, session.feature_id)
        requirement = plan.test_requirement
        if requirement is None or not requirement.required or requirement.tests_passing is True:
            return None
        if not is_implementation_complete(plan.steps):
            return None
        last = _last_completed_step(plan)
        if last is None:
            return None

        async with self.repository.plan_transaction(session.project_id, session.feature_id) as stored:
            step = stored.get_step(last.id)
            step.status = StepStatus.PENDING
            step.content_hash = None
            step.metadata["reopened_reason"] = "tests_not_passing"
            stored.test_requirement.tests_passing = None

        log.info("step_reopened_for_tests", feature_id=session.feature_id, step_id=last.id)
        return ResumeRequest(step_id=last.id, context=failing_tests_context(plan, last.id))

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def _apply(self, session: Session, stage: Stage, outcome: Outcome) -> None:
        project_id, feature_id = session.project_id, session.feature_id

        for warning in outcome.warnings:
            log.warning("transition_warning", feature_id=feature_id, stage=int(stage), warning=warning)

        if outcome.next_stage is not None:
            session = await self.repository.transition_stage(project_id, feature_id, outcome.next_stage)
            if outcome.next_stage == Stage.IMPLEMENTATION:
                session = await self.repository.update(project_id, feature_id, {"plan_validation_attempts": 0})
            elif outcome.next_stage == Stage.PLANNING:
                async with self.repository.plan_transaction(project_id, feature_id) as plan:
                    plan.review_count = 0
                    if plan.meta is not None:
                        plan.meta.review_count = 0
            async with self.repository.runtime_transaction(project_id, feature_id) as runtime:
                runtime.current_stage = session.current_stage
                runtime.blocked_step_id = None
            await self.notifier.notify(
                project_id,
                feature_id,
                NotificationEvent.STAGE_CHANGED,
                {"from_stage": int(stage), "to_stage": int(outcome.next_stage), "status": str(session.status)},
            )

        for effect in outcome.effects:
            if isinstance(effect, SpawnStage):
                session = await self.repository.get(project_id, feature_id)
                await self.spawn_stage(session, effect.stage, effect.context)
            elif isinstance(effect, AwaitUser):
                await self._await_user(session, effect.reason)
            elif isinstance(effect, ApprovePlan):
                await self._approve_plan(session)
            elif isinstance(effect, ReopenPlan):
                async with self.repository.plan_transaction(project_id, feature_id) as plan:
                    plan.is_approved = False
                    if plan.meta is not None:
                        plan.meta.is_approved = False
            elif isinstance(effect, ResetAffectedSteps):
                await self._reset_affected_steps(session, effect.reason)
            elif isinstance(effect, IncrementValidationAttempts):
                session = await self.repository.update(
                    project_id, feature_id, {"plan_validation_attempts": session.plan_validation_attempts + 1}
                )
                log.info("plan_validation_retry", feature_id=feature_id, attempts=session.plan_validation_attempts)
            elif isinstance(effect, RecordPullRequest):
                session = await self.repository.update(project_id, feature_id, {"pr_url": effect.url})
            elif isinstance(effect, FailStage):
                await self._fail_stage(session, stage, effect.message)

    async def _await_user(self, session: Session, reason: str) -> None:
        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.status = RuntimeStatus.WAITING_INPUT
            runtime.last_action = f"awaiting_{reason}"
            runtime.last_action_at = utc_now()
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.EXECUTION_STATUS,
            {"stage": int(session.current_stage), "sub_state": reason},
        )

    async def _approve_plan(self, session: Session) -> None:
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.is_approved = True
            if plan.meta is not None:
                plan.meta.is_approved = True
            plan.validation_status = self.validator.create_validation_status(plan)
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.PLAN_APPROVED,
            {"plan_version": plan.plan_version, "valid": plan.validation_status.overall},
        )
        log.info("plan_approved", feature_id=session.feature_id, plan_version=plan.plan_version)

    async def _reset_affected_steps(self, session: Session, reason: str) -> None:
        plan = await self.repository.get_plan(session.project_id, session.feature_id)
        assessment = await self.affected_steps_assessor.assess(session, plan, reason)

        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            for affected in assessment.affected:
                step = plan.get_step(affected.step_id)
                if step is None:
                    continue
                step.status = StepStatus(affected.status)
                step.content_hash = None
                if affected.reason:
                    step.metadata["reset_reason"] = affected.reason
            plan.is_approved = False
            if plan.meta is not None:
                plan.meta.is_approved = False
            plan.plan_version += 1

        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.PLAN_UPDATED,
            {
                "plan_version": plan.plan_version,
                "reset_step_ids": [affected.step_id for affected in assessment.affected],
                "summary": assessment.summary,
            },
        )
        log.info(
            "affected_steps_reset",
            feature_id=session.feature_id,
            step_ids=[affected.step_id for affected in assessment.affected],
        )

    async def _fail_stage(self, session: Session, stage: Stage, message: str) -> None:
        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.status = RuntimeStatus.ERROR
            runtime.last_error = message
            runtime.last_action = f"stage{int(stage)}_error"
            runtime.last_action_at = utc_now()
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.EXECUTION_STATUS,
            {"stage": int(stage), "sub_state": "error", "error": message},
        )
        log.error("stage_failed", feature_id=session.feature_id, stage=int(stage), error=message)
