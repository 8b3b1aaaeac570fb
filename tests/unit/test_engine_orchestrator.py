"""Tests for feature_pilot.engine.orchestrator."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.execution_lock import ExecutionLock
from feature_pilot.engine.invoker import Invocation
from feature_pilot.engine.orchestrator import WorkflowOrchestrator, answers_context
from feature_pilot.engine.result_handler import ResultHandler
from feature_pilot.engine.step_executor import ResumeRequest, StepExecutionEngine, StepRunResult, StepRunStatus
from feature_pilot.engine.transitions import FinalAction
from feature_pilot.enums import (
    NotificationEvent,
    QuestionStage,
    RuntimeStatus,
    SessionStatus,
    Stage,
    StepStatus,
)
from feature_pilot.exceptions import ExternalCommandError, NotFoundError, StateConflictError, ValidationError
from feature_pilot.models.domain import PlanStep, Question, Session, utc_now
from feature_pilot.models.domain import TestRequirement as Requirement
from feature_pilot.protocol.parser import MarkerProtocolParser
from feature_pilot.providers.base import (
    AffectedStep,
    AffectedStepsAssessment,
    AgentResult,
    DecisionFilterResult,
    PassThroughDecisionValidator,
)
from feature_pilot.providers.notifier import RecordingNotifier
from feature_pilot.storage.session_repository import SessionRepository
from feature_pilot.validation.completion import PlanCompletionChecker
from feature_pilot.validation.plan_validator import PlanValidator

DESCRIPTION = "Write each report row with the csv module and stream the response to the browser."

DECISION = """[DECISION_NEEDED priority="1"]
Which delimiter should the export use?
- Option A: Comma
- Option B: Semicolon
[/DECISION_NEEDED]"""


def _plan_output(description: str = DESCRIPTION, approved: bool = True) -> str:
    text = f'[PLAN_STEP id="1"]\nCreate CSV exporter\n{description}\n[/PLAN_STEP]\n'
    return text + ("\n[PLAN_APPROVED]\n" if approved else "")


class ScriptedInvoker:
    """Agent invoker double returning one scripted output per call."""

    def __init__(self) -> None:
        self.outputs: list[AgentResult] = []
        self.stages: list[Stage] = []
        self.parser = MarkerProtocolParser()

    def script(self, *outputs: str | AgentResult) -> None:
        self.outputs.extend(o if isinstance(o, AgentResult) else AgentResult(output=o) for o in outputs)

    async def invoke(self, session: Session, stage: Stage, prompt: str, step_id: str | None = None) -> Invocation:
        self.stages.append(Stage(stage))
        result = self.outputs.pop(0)
        return Invocation(session=session, result=result, parsed=self.parser.parse(result.output), entry_id="e")


class Harness:
    def __init__(self, repository: SessionRepository, notifier: RecordingNotifier, policy: PolicyConfig) -> None:
        self.repository = repository
        self.notifier = notifier
        self.invoker = ScriptedInvoker()
        self.engine = AsyncMock()
        self.engine.run.return_value = StepRunResult(StepRunStatus.BLOCKED, step_id="1")
        self.engine.resume_request.return_value = None
        self.renderer = MagicMock()
        for name in ("discovery_prompt", "planning_prompt", "pr_creation_prompt", "pr_review_prompt"):
            getattr(self.renderer, name).return_value = f"{name} text"
        self.vcs = AsyncMock()
        self.vcs.find_pull_request.return_value = "https://github.com/acme/app/pull/7"
        self.affected = AsyncMock()
        self.affected.assess.return_value = AffectedStepsAssessment(
            affected=[AffectedStep(step_id="1", status="pending", reason="CI failed")], summary="Step 1 broke CI"
        )
        self.tests = AsyncMock()
        self.tests.assess.return_value = Requirement(required=False)
        validator = PlanValidator()
        self.orchestrator = WorkflowOrchestrator(
            repository=repository,
            invoker=self.invoker,
            engine=self.engine,
            handler=ResultHandler(repository, notifier),
            renderer=self.renderer,
            notifier=notifier,
            decision_validator=PassThroughDecisionValidator(),
            vcs=self.vcs,
            affected_steps_assessor=self.affected,
            test_requirement_assessor=self.tests,
            validator=validator,
            completion_checker=PlanCompletionChecker(validator),
            policy=policy,
        )

    async def move_to(self, session: Session, stage: Stage) -> Session:
        for target in range(int(session.current_stage) + 1, int(stage) + 1):
            session = await self.repository.transition_stage(session.project_id, session.feature_id, target)
        return session

    async def runtime(self, session: Session):
        return await self.repository.get_runtime(session.project_id, session.feature_id)


@pytest.fixture
def harness(repository: SessionRepository, notifier: RecordingNotifier, policy: PolicyConfig) -> Harness:
    return Harness(repository, notifier, policy)


class TestAnswersContext:
    """Tests for answers_context."""

    def test_lists_answered_questions(self):
        """Test only answered questions are listed."""
        questions = [
            Question(id="a", stage=QuestionStage.PLANNING, question_text="Delimiter?", answer="comma",
                     answered_at=utc_now()),
            Question(id="b", stage=QuestionStage.PLANNING, question_text="Encoding?"),
        ]

        context = answers_context(questions)

        assert context == "The user answered your questions:\n\n**Q:** Delimiter?\n**A:** comma"

    def test_nothing_answered(self):
        """Test None when nothing was answered."""
        assert answers_context([]) is None


class TestDiscoveryAndPlanning:
    """Tests for agent-driven stages."""

    @pytest.mark.asyncio
    async def test_discovery_to_planning(self, harness: Harness, session: Session, notifier: RecordingNotifier):
        """Test a plan file moves the session to Planning and runs a planning pass."""
        harness.invoker.script('[PLAN_FILE path="docs/plan.md"]', "Reviewing the plan")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        assert harness.invoker.stages == [Stage.DISCOVERY, Stage.PLANNING]
        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.PLANNING

        changed = notifier.of_type(NotificationEvent.STAGE_CHANGED)
        assert changed[0].payload == {"from_stage": 1, "to_stage": 2, "status": "planning"}

        args = harness.renderer.planning_prompt.call_args.args
        assert args[2:] == (1, 10, None)
        assert (await harness.runtime(session)).last_action == "awaiting_plan_review"

        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert plan.plan_file == "docs/plan.md"
        assert plan.review_count == 1

    @pytest.mark.asyncio
    async def test_discovery_questions_then_answers(self, harness: Harness, session: Session):
        """Test questions pause Discovery and answering them resumes it with the answers."""
        harness.invoker.script(DECISION)

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        runtime = await harness.runtime(session)
        assert runtime.status == RuntimeStatus.WAITING_INPUT
        assert runtime.last_action == "awaiting_questions_pending"
        questions = await harness.repository.get_questions(session.project_id, session.feature_id)
        assert len(questions) == 1

        harness.invoker.script("Still looking around")
        await harness.orchestrator.answer_questions(session.project_id, session.feature_id, {questions[0].id: "comma"})

        assert harness.invoker.stages == [Stage.DISCOVERY, Stage.DISCOVERY]
        context = harness.renderer.discovery_prompt.call_args.args[1]
        assert context.startswith("The user answered your questions:")
        assert "**A:** comma" in context

    @pytest.mark.asyncio
    async def test_partial_batch_does_not_resume(self, harness: Harness, session: Session):
        """Test the stage resumes only when the whole batch is answered."""
        harness.invoker.script(DECISION + "\n" + DECISION)
        await harness.orchestrator.advance(session.project_id, session.feature_id)
        questions = await harness.repository.get_questions(session.project_id, session.feature_id)

        outcome = await harness.orchestrator.answer_questions(
            session.project_id, session.feature_id, {questions[0].id: "comma"}
        )

        assert outcome is None
        assert harness.invoker.stages == [Stage.DISCOVERY]

    @pytest.mark.asyncio
    async def test_unknown_question_stores_nothing(self, harness: Harness, session: Session):
        """Test an unknown id in a set of answers leaves every question unanswered."""
        harness.invoker.script(DECISION)
        await harness.orchestrator.advance(session.project_id, session.feature_id)
        questions = await harness.repository.get_questions(session.project_id, session.feature_id)

        with pytest.raises(NotFoundError):
            await harness.orchestrator.answer_questions(
                session.project_id, session.feature_id, {questions[0].id: "comma", "missing": "x"}
            )

        stored = await harness.repository.get_questions(session.project_id, session.feature_id)
        assert stored[0].is_answered is False
        assert harness.notifier.of_type(NotificationEvent.QUESTION_ANSWERED) == []
        assert harness.invoker.stages == [Stage.DISCOVERY]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answers", [{}, {"q1": ""}, {"q1": []}, {"q1": None}])
    async def test_empty_answers_rejected(self, harness: Harness, session: Session, answers):
        """Test empty answer sets and empty values are rejected."""
        with pytest.raises(ValidationError):
            await harness.orchestrator.answer_questions(session.project_id, session.feature_id, answers)

    @pytest.mark.asyncio
    async def test_planning_approval_enters_implementation(
        self, harness: Harness, session: Session, notifier: RecordingNotifier
    ):
        """Test an approved complete plan is approved, assessed and handed to the step loop."""
        session = await harness.move_to(session, Stage.PLANNING)
        harness.invoker.script(_plan_output())

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.IMPLEMENTATION
        assert stored.plan_validation_attempts == 0

        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert plan.is_approved is True
        assert plan.validation_status is not None
        assert plan.test_requirement.required is False
        assert notifier.of_type(NotificationEvent.PLAN_APPROVED)[0].payload["plan_version"] == 1

        harness.engine.run.assert_awaited_once()
        assert (await harness.runtime(session)).last_action == "awaiting_blocker_pending"

    @pytest.mark.asyncio
    async def test_filtered_decisions_do_not_block_approval(self, harness: Harness, session: Session):
        """Test a pass whose decisions are all false positives is still approved."""
        session = await harness.move_to(session, Stage.PLANNING)
        validator = AsyncMock()
        validator.filter.side_effect = lambda s, decisions: DecisionFilterResult(
            kept=[], filtered=[(d, "already answered") for d in decisions]
        )
        harness.orchestrator.decision_validator = validator
        harness.invoker.script(DECISION + "\n" + _plan_output())

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.IMPLEMENTATION
        assert await harness.repository.get_questions(session.project_id, session.feature_id) == []

    @pytest.mark.asyncio
    async def test_incomplete_plan_is_sent_back(
        self, harness: Harness, session: Session, repository: SessionRepository, notifier: RecordingNotifier
    ):
        """Test an incomplete plan re-runs Planning with remediation, then proceeds at the cap."""
        harness.orchestrator.policy = PolicyConfig(max_validation_attempts=1)
        session = await harness.move_to(session, Stage.PLANNING)
        harness.invoker.script(_plan_output("Too short"), _plan_output("Too short"))

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        assert harness.invoker.stages == [Stage.PLANNING, Stage.PLANNING]
        retry_context = harness.renderer.planning_prompt.call_args_list[1].args[4]
        assert retry_context.startswith("## Plan Incomplete")

        stored = await repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.IMPLEMENTATION
        assert stored.plan_validation_attempts == 0
        assert notifier.of_type(NotificationEvent.PLAN_APPROVED)[0].payload["valid"] is False

    @pytest.mark.asyncio
    async def test_agent_error_fails_stage(self, harness: Harness, session: Session):
        """Test an error result leaves the stage in an error state."""
        harness.invoker.script(AgentResult(output="", is_error=True, error="Agent crashed"))

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        runtime = await harness.runtime(session)
        assert runtime.status == RuntimeStatus.ERROR
        assert runtime.last_error == "Agent crashed"
        assert runtime.last_action == "stage1_error"

    @pytest.mark.asyncio
    async def test_paused_session_not_advanced(self, harness: Harness, session: Session):
        """Test override statuses block advancing."""
        await harness.repository.set_status(session.project_id, session.feature_id, SessionStatus.PAUSED)

        with pytest.raises(StateConflictError):
            await harness.orchestrator.advance(session.project_id, session.feature_id)

    @pytest.mark.asyncio
    async def test_review_cap_ends_planning(
        self, repository: SessionRepository, notifier: RecordingNotifier, session: Session
    ):
        """Test Planning stops raising decisions once the review cap is reached."""
        harness = Harness(repository, notifier, PolicyConfig(max_review_iterations=2))
        session = await harness.move_to(session, Stage.PLANNING)
        harness.invoker.script(_plan_output() + DECISION, _plan_output() + DECISION)

        await harness.orchestrator.advance(session.project_id, session.feature_id)
        assert (await harness.runtime(session)).last_action == "awaiting_questions_pending"

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.IMPLEMENTATION
        plan = await repository.get_plan(session.project_id, session.feature_id)
        assert plan.review_count == 2
        assert plan.is_approved is True
        harness.engine.run.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reentering_planning_resets_review_count(self, harness: Harness, session: Session):
        """Test each return to Planning starts a fresh review cycle."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.review_count = 9
            plan.test_requirement = Requirement(required=False)
        harness.engine.run.return_value = StepRunResult(
            StepRunStatus.RETURN_TO_PLANNING, step_id="1", reason="Step 1 needs review"
        )
        harness.invoker.script("Revising")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert plan.review_count == 1
        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.PLANNING


class TestImplementationAndReview:
    """Tests for Implementation, PR creation, PR review and final approval."""

    async def _complete_steps(self, harness: Harness, session: Session) -> None:
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.steps = [PlanStep(id="1", title="Exporter", description=DESCRIPTION, status=StepStatus.COMPLETED)]
            plan.test_requirement = Requirement(required=False)

    @pytest.mark.asyncio
    async def test_implementation_through_review(self, harness: Harness, session: Session):
        """Test completed steps open a PR, record it and reach final approval."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        await self._complete_steps(harness, session)
        harness.engine.run.return_value = StepRunResult(StepRunStatus.ALL_COMPLETE, completed=["1"])
        harness.invoker.script("PR opened", "Looks good\n[PR_APPROVED]")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        harness.tests.assess.assert_not_called()
        harness.vcs.prepare_pull_request.assert_awaited_once()
        assert harness.invoker.stages == [Stage.PR_CREATION, Stage.PR_REVIEW]

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.FINAL_APPROVAL
        assert stored.pr_url == "https://github.com/acme/app/pull/7"
        assert (await harness.runtime(session)).last_action == "awaiting_final_approval"

    @pytest.mark.asyncio
    async def test_implementation_returns_to_planning(self, harness: Harness, session: Session):
        """Test an exhausted step reopens the plan and runs Planning with the reason."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        harness.engine.run.return_value = StepRunResult(
            StepRunStatus.RETURN_TO_PLANNING, step_id="1", reason="Step 1 needs review"
        )
        harness.invoker.script("Revising")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.PLANNING
        assert stored.replanning_count == 1
        assert harness.renderer.planning_prompt.call_args.args[4] == "Step 1 needs review"

    @pytest.mark.asyncio
    async def test_loop_already_running(self, harness: Harness, session: Session):
        """Test a concurrent loop leaves the session untouched."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        harness.engine.run.return_value = StepRunResult(StepRunStatus.ALREADY_RUNNING)

        outcome = await harness.orchestrator.advance(session.project_id, session.feature_id)

        assert outcome.next_stage is None
        assert outcome.effects == []

    @pytest.mark.asyncio
    async def test_pre_pr_command_failure(self, harness: Harness, session: Session):
        """Test a failed push fails PR creation without invoking the agent."""
        session = await harness.move_to(session, Stage.PR_CREATION)
        harness.vcs.prepare_pull_request.side_effect = ExternalCommandError(
            "git push failed", command="git push", returncode=1
        )

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        assert harness.invoker.stages == []
        runtime = await harness.runtime(session)
        assert runtime.status == RuntimeStatus.ERROR
        assert runtime.last_error.startswith("Preparing the pull request failed")

    @pytest.mark.asyncio
    async def test_pull_request_not_found(self, harness: Harness, session: Session):
        """Test PR creation fails when the pull request cannot be confirmed."""
        session = await harness.move_to(session, Stage.PR_CREATION)
        harness.vcs.find_pull_request.return_value = None
        harness.invoker.script("[PR_CREATED]\nTitle: Add CSV export\n[/PR_CREATED]")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.PR_CREATION
        assert (await harness.runtime(session)).status == RuntimeStatus.ERROR

    @pytest.mark.asyncio
    async def test_ci_failure_resets_affected_steps(
        self, harness: Harness, session: Session, notifier: RecordingNotifier
    ):
        """Test a CI failure resets the assessed steps and returns to Planning."""
        session = await harness.move_to(session, Stage.PR_REVIEW)
        await self._complete_steps(harness, session)
        harness.invoker.script("[CI_FAILED]", "Revising")

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.PLANNING

        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert plan.steps[0].status == StepStatus.PENDING
        assert plan.steps[0].metadata["reset_reason"] == "CI failed"
        assert plan.plan_version == 1

        updated = notifier.of_type(NotificationEvent.PLAN_UPDATED)[0]
        assert updated.payload["reset_step_ids"] == ["1"]
        assert harness.renderer.planning_prompt.call_args.args[4] == "CI checks failed"

    @pytest.mark.asyncio
    async def test_final_action_requires_final_approval(self, harness: Harness, session: Session):
        """Test final actions are refused outside Final Approval."""
        with pytest.raises(StateConflictError):
            await harness.orchestrator.final_action(session.project_id, session.feature_id, FinalAction.MERGE)

    @pytest.mark.asyncio
    async def test_merge_completes(self, harness: Harness, session: Session):
        """Test merging completes the session, which can then no longer be retried."""
        session = await harness.move_to(session, Stage.FINAL_APPROVAL)

        await harness.orchestrator.final_action(session.project_id, session.feature_id, "merge")

        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert (stored.current_stage, stored.status) == (Stage.COMPLETED, SessionStatus.COMPLETED)
        with pytest.raises(StateConflictError):
            await harness.orchestrator.retry_stage(session.project_id, session.feature_id)


class TestRetry:
    """Tests for retry_stage."""

    @pytest.mark.asyncio
    async def test_retry_failed_session(self, harness: Harness, session: Session):
        """Test retry clears the error, restores the derived status and re-runs the stage."""
        pid, fid = session.project_id, session.feature_id
        await harness.repository.set_status(pid, fid, SessionStatus.FAILED)
        entry_id = await harness.orchestrator.handler.start_conversation(session, Stage.DISCOVERY, "prompt")
        harness.invoker.script("Looking around")

        await harness.orchestrator.retry_stage(pid, fid)

        stored = await harness.repository.get(pid, fid)
        assert stored.status == SessionStatus.DISCOVERY
        assert harness.invoker.stages == [Stage.DISCOVERY]
        entries = (await harness.repository.get_conversations(pid, fid)).entries
        assert next(e for e in entries if e.id == entry_id).status == "interrupted"

    @pytest.mark.asyncio
    async def test_retry_implementation_with_answered_blocker(self, harness: Harness, session: Session):
        """Test retrying Implementation resumes at an answered blocker."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.test_requirement = Requirement(required=False)
        resume = ResumeRequest(step_id="1", context="answers")
        harness.engine.resume_request.return_value = resume
        await harness.repository.add_questions(
            session.project_id,
            session.feature_id,
            [
                Question(
                    id="b1",
                    stage=QuestionStage.IMPLEMENTATION,
                    category="blocker",
                    question_text="Key?",
                    step_id="1",
                    answer="env",
                    answered_at=utc_now(),
                )
            ],
        )

        await harness.orchestrator.retry_stage(session.project_id, session.feature_id)

        assert harness.engine.run.await_args.args[1] == resume

    @pytest.mark.asyncio
    async def test_retry_fixes_failing_tests(self, harness: Harness, session: Session):
        """Test a retry after failing required tests re-runs the last step and moves on to review."""
        extractor = AsyncMock()
        extractor.extract_blocker.return_value = None
        harness.orchestrator.engine = StepExecutionEngine(
            harness.repository,
            harness.invoker,
            harness.renderer,
            harness.orchestrator.handler,
            extractor,
            harness.notifier,
            ExecutionLock(),
            PolicyConfig(),
        )
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.steps = [PlanStep(id="1", title="Exporter", description=DESCRIPTION)]
            plan.test_requirement = Requirement(required=True, test_types=["unit"])
        harness.invoker.script(
            '[STEP_COMPLETE id="1"]\nExporter written\nTests passing: no\n[/STEP_COMPLETE]\n[IMPLEMENTATION_COMPLETE]'
        )

        await harness.orchestrator.advance(session.project_id, session.feature_id)

        assert (await harness.runtime(session)).last_action == "awaiting_tests_not_passing"

        harness.invoker.script(
            '[STEP_COMPLETE id="1"]\nFixed the header row\nTests passing: yes\n[/STEP_COMPLETE]',
            "PR opened",
            "Looks good\n[PR_APPROVED]",
        )
        await harness.orchestrator.retry_stage(session.project_id, session.feature_id)

        assert harness.invoker.stages == [
            Stage.IMPLEMENTATION,
            Stage.IMPLEMENTATION,
            Stage.PR_CREATION,
            Stage.PR_REVIEW,
        ]
        retry_context = harness.renderer.step_prompt.call_args_list[1].kwargs["context"]
        assert "unit tests are not passing" in retry_context
        stored = await harness.repository.get(session.project_id, session.feature_id)
        assert stored.current_stage == Stage.FINAL_APPROVAL
        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert plan.test_requirement.tests_passing is True
        assert "reopened_reason" not in plan.steps[0].metadata

    @pytest.mark.asyncio
    async def test_retry_reopens_most_recent_step(self, harness: Harness, session: Session):
        """Test only the most recently completed step is reopened for failing tests."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.steps = [
                PlanStep(id="1", title="Exporter", description=DESCRIPTION, status=StepStatus.COMPLETED,
                         content_hash="abc", metadata={"completed_at": "2026-01-02T00:00:00+00:00"}),
                PlanStep(id="2", title="Download link", description=DESCRIPTION, status=StepStatus.COMPLETED,
                         content_hash="def", metadata={"completed_at": "2026-01-01T00:00:00+00:00"}),
            ]
            plan.test_requirement = Requirement(required=True, tests_passing=False)

        await harness.orchestrator.retry_stage(session.project_id, session.feature_id)

        resume = harness.engine.run.await_args.args[1]
        assert resume.step_id == "1"
        plan = await harness.repository.get_plan(session.project_id, session.feature_id)
        assert [(step.status, step.content_hash) for step in plan.steps] == [
            (StepStatus.PENDING, None),
            (StepStatus.COMPLETED, "def"),
        ]
        assert plan.test_requirement.tests_passing is None

    @pytest.mark.asyncio
    async def test_retry_with_passing_tests_reopens_nothing(self, harness: Harness, session: Session):
        """Test retry leaves completed steps alone when tests are not the problem."""
        session = await harness.move_to(session, Stage.IMPLEMENTATION)
        async with harness.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.steps = [PlanStep(id="1", title="Exporter", description=DESCRIPTION, status=StepStatus.COMPLETED)]
            plan.test_requirement = Requirement(required=True, tests_passing=True)

        await harness.orchestrator.retry_stage(session.project_id, session.feature_id)

        assert harness.engine.run.await_args.args[1] is None
