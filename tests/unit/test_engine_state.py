"""Tests for content hashing, state verification and the execution lock."""

from datetime import timedelta

import pytest

from feature_pilot.engine.content_hash import (
    HASH_LENGTH,
    compute_content_hash,
    compute_step_hash,
    is_step_content_unchanged,
    normalize_whitespace,
)
from feature_pilot.engine.execution_lock import ExecutionLock
from feature_pilot.engine.state_verification import (
    get_all_ready_steps,
    get_batch,
    get_next_ready_step,
    get_step_counts,
    get_unanswered_questions,
    has_unanswered_questions,
    is_batch_answered,
    is_implementation_complete,
    is_plan_approved,
)
from feature_pilot.enums import QuestionStage, StepStatus
from feature_pilot.models.domain import Plan, PlanStep, Question, utc_now


def make_step(step_id: str, status: StepStatus = StepStatus.PENDING, parent_id: str | None = None) -> PlanStep:
    return PlanStep(
        id=step_id,
        parent_id=parent_id,
        title=f"Step {step_id}",
        description=f"Implement the work described for {step_id}",
        status=status,
    )


def _question(qid: str, stage: QuestionStage = QuestionStage.PLANNING, answered: bool = False, **kwargs) -> Question:
    return Question(
        id=qid,
        stage=stage,
        question_text=f"Question {qid}?",
        answer="yes" if answered else None,
        answered_at=utc_now() if answered else None,
        **kwargs,
    )


class TestContentHash:
    """Tests for step content fingerprints."""

    def test_normalize_whitespace(self):
        """Test line endings, blank runs and blank lines collapse."""
        assert normalize_whitespace("  a \t b\r\n\r\n\nc  ") == "a b\nc"
        assert normalize_whitespace(None) == ""

    def test_hash_shape(self):
        """Test the fingerprint is a short hex string."""
        digest = compute_content_hash("Title", "Body")

        assert len(digest) == HASH_LENGTH
        int(digest, 16)

    def test_whitespace_insensitive(self):
        """Test reformatting does not change the hash."""
        assert compute_content_hash("Add  model", "line one\r\n\r\nline two") == compute_content_hash(
            "Add model", "line one\nline two"
        )

    def test_content_sensitive(self):
        """Test title and description both contribute."""
        base = compute_content_hash("Add model", "Body")

        assert compute_content_hash("Add models", "Body") != base
        assert compute_content_hash("Add model", "Body text") != base

    def test_missing_description_equals_empty(self):
        """Test None and empty descriptions hash alike."""
        assert compute_content_hash("Title") == compute_content_hash("Title", "")

    def test_step_unchanged(self):
        """Test the stored hash comparison."""
        step = make_step("1")
        assert is_step_content_unchanged(step) is False

        step.content_hash = compute_step_hash(step)
        assert is_step_content_unchanged(step) is True

        step.description += " and more"
        assert is_step_content_unchanged(step) is False


class TestPlanApproval:
    """Tests for state-derived approval."""

    def test_flag_wins(self):
        """Test an approved plan is approved with no questions."""
        assert is_plan_approved(Plan(is_approved=True), []) is True

    def test_no_plan_no_questions(self):
        """Test nothing to go on means not approved."""
        assert is_plan_approved(None, []) is False
        assert is_plan_approved(Plan(), []) is False

    def test_all_planning_questions_answered(self):
        """Test answering every planning question approves the plan."""
        questions = [_question("q1", answered=True), _question("q2", answered=True)]

        assert is_plan_approved(Plan(), questions) is True

    def test_open_planning_question(self):
        """Test an unanswered planning question blocks approval."""
        questions = [_question("q1", answered=True), _question("q2")]

        assert is_plan_approved(Plan(), questions) is False

    def test_other_stages_ignored(self):
        """Test only planning questions count."""
        questions = [_question("q1", stage=QuestionStage.DISCOVERY, answered=True)]

        assert is_plan_approved(Plan(), questions) is False


class TestStepReadiness:
    """Tests for ready-step selection and completion."""

    def test_ready_steps(self):
        """Test pending steps with no parent or a completed parent are ready."""
        steps = [
            make_step("1", StepStatus.COMPLETED),
            make_step("1.1", parent_id="1"),
            make_step("2"),
            make_step("2.1", parent_id="2"),
            make_step("3", parent_id="missing"),
        ]

        assert [step.id for step in get_all_ready_steps(steps)] == ["1.1", "2"]
        assert get_next_ready_step(steps).id == "1.1"

    def test_skipped_parent_does_not_unblock(self):
        """Test only a completed parent makes children ready."""
        steps = [make_step("1", StepStatus.SKIPPED), make_step("1.1", parent_id="1")]

        assert get_next_ready_step(steps) is None

    def test_implementation_complete(self):
        """Test completion needs steps, all completed or skipped."""
        assert is_implementation_complete([]) is False
        assert is_implementation_complete([make_step("1", StepStatus.COMPLETED), make_step("2", StepStatus.SKIPPED)])
        assert not is_implementation_complete([make_step("1", StepStatus.COMPLETED), make_step("2")])

    def test_step_counts(self):
        """Test status tallies."""
        steps = [
            make_step("1", StepStatus.COMPLETED),
            make_step("2", StepStatus.SKIPPED),
            make_step("3", StepStatus.IN_PROGRESS),
            make_step("4", StepStatus.BLOCKED),
            make_step("5", StepStatus.NEEDS_REVIEW),
            make_step("6"),
        ]

        counts = get_step_counts(steps)

        assert (counts.total, counts.completed, counts.in_progress, counts.blocked, counts.pending) == (6, 2, 1, 2, 1)


class TestQuestionQueries:
    """Tests for question batches and unanswered lookups."""

    def test_unanswered_by_stage(self):
        """Test stage filtering of open questions."""
        questions = [
            _question("q1"),
            _question("q2", stage=QuestionStage.IMPLEMENTATION),
            _question("q3", answered=True),
        ]

        assert [q.id for q in get_unanswered_questions(questions)] == ["q1", "q2"]
        assert [q.id for q in get_unanswered_questions(questions, QuestionStage.IMPLEMENTATION)] == ["q2"]
        assert has_unanswered_questions(questions, QuestionStage.REVIEW) is False

    def test_batches_share_asked_at(self):
        """Test a batch is every question with the same asked_at."""
        asked = utc_now()
        later = asked + timedelta(minutes=5)
        questions = [
            _question("q1", asked_at=asked, answered=True),
            _question("q2", asked_at=asked),
            _question("q3", asked_at=later, answered=True),
        ]

        assert [q.id for q in get_batch(questions, questions[0])] == ["q1", "q2"]
        assert is_batch_answered(questions, questions[0]) is False
        assert is_batch_answered(questions, questions[2]) is True


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class TestExecutionLock:
    """Tests for ExecutionLock."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def lock(self, clock: FakeClock) -> ExecutionLock:
        return ExecutionLock(timeout_seconds=60, clock=clock)

    def test_second_acquire_refused(self, lock: ExecutionLock):
        """Test only one holder per session key."""
        assert lock.try_acquire("p", "f") is not None
        assert lock.try_acquire("p", "f") is None
        assert lock.try_acquire("p", "other") is not None
        assert lock.active_count == 2

    def test_release_frees(self, lock: ExecutionLock):
        """Test release makes the lock available again."""
        token = lock.try_acquire("p", "f")
        lock.release("p", "f", token)

        assert lock.is_locked("p", "f") is False
        assert lock.try_acquire("p", "f") is not None

    def test_stale_takeover(self, lock: ExecutionLock, clock: FakeClock):
        """Test a lock older than the timeout can be taken over."""
        old = lock.try_acquire("p", "f")
        clock.now += 61

        assert lock.is_locked("p", "f") is False
        new = lock.try_acquire("p", "f")
        assert new is not None

        lock.release("p", "f", old)
        assert lock.is_locked("p", "f") is True

    @pytest.mark.asyncio
    async def test_hold(self, lock: ExecutionLock):
        """Test the context manager yields acquisition and always releases."""
        async with lock.hold("p", "f") as acquired:
            assert acquired is True
            async with lock.hold("p", "f") as second:
                assert second is False
            assert lock.is_locked("p", "f") is True

        assert lock.is_locked("p", "f") is False

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self, lock: ExecutionLock):
        """Test an exception inside the block still releases the lock."""
        with pytest.raises(RuntimeError):
            async with lock.hold("p", "f"):
                raise RuntimeError("boom")

        assert lock.is_locked("p", "f") is False
