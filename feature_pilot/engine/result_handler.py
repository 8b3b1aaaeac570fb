"""
Persistence of agent results.

``ResultHandler`` turns one parsed agent pass into document writes: the
conversation log entry, questions raised by decisions and blockers, plan
revisions, and the decision-filtering log. It never decides what happens
next; that is the job of the transition functions.

Plan revisions keep the work already done: a re-emitted step whose title
and description are unchanged keeps its content hash and its completed
status, so it is not implemented again.
"""

import re
import uuid
from collections.abc import Sequence
from datetime import datetime
from pathlib import Path

import aiofiles
import structlog

from feature_pilot.engine.content_hash import compute_step_hash
from feature_pilot.engine.state_verification import DONE_STATUSES
from feature_pilot.enums import (
    NotificationEvent,
    QuestionCategory,
    QuestionStage,
    QuestionType,
    Stage,
    StepStatus,
)
from feature_pilot.models.domain import (
    ConversationEntry,
    DecisionValidationEntry,
    Plan,
    PlanStep,
    Question,
    QuestionOption,
    Session,
    utc_now,
)
from feature_pilot.protocol.parser import MarkerProtocolParser
from feature_pilot.protocol.types import ParsedDecision, ParsedOutput, ParsedPlanStep
from feature_pilot.providers.base import AgentResult, DecisionFilterResult, Notifier
from feature_pilot.storage.session_repository import SessionRepository

log = structlog.get_logger(__name__)

MAX_SINGLE_CHOICE_OPTIONS = 4


def option_value(label: str) -> str:
    """Snake-cased option label used as the stored answer value."""
    value = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
    return value or "option"


def decision_to_question(
    decision: ParsedDecision,
    stage: int,
    asked_at: datetime | None = None,
    step_id: str | None = None,
    category: QuestionCategory | None = None,
    required: bool | None = None,
) -> Question:
    """Build a question from a parsed decision.

    Priority is clamped to 1..3 and, unless ``required`` says otherwise,
    priorities 1 and 2 are required. More than four options make the
    question multiple choice.
    """
    priority = min(max(decision.priority, 1), 3)
    options = [
        QuestionOption(value=option_value(option.label), label=option.label, recommended=option.recommended)
        for option in decision.options
    ]
    return Question(
        id=str(uuid.uuid4()),
        stage=QuestionStage.for_stage(stage),
        question_type=(
            QuestionType.SINGLE_CHOICE if len(options) <= MAX_SINGLE_CHOICE_OPTIONS else QuestionType.MULTI_CHOICE
        ),
        question_text=decision.question_text,
        options=options,
        is_required=priority <= 2 if required is None else required,
        priority=priority,
        category=category or QuestionCategory.normalize(decision.category),
        step_id=step_id,
        file=decision.file,
        line=decision.line,
        asked_at=asked_at or utc_now(),
    )


def _step_status(value: str) -> StepStatus:
    try:
        return StepStatus(value)
    except ValueError:
        return StepStatus.PENDING


class ResultHandler:
    """Write the results of agent passes to the session documents.

    Args:
        repository: Session repository
        notifier: Event channel for question and plan events
        parser: Parser used to read plan steps from a plan file
    """

    def __init__(
        self,
        repository: SessionRepository,
        notifier: Notifier,
        parser: MarkerProtocolParser | None = None,
    ) -> None:
        self.repository = repository
        self.notifier = notifier
        self.parser = parser or MarkerProtocolParser()

    # ------------------------------------------------------------------
    # Conversation log
    # ------------------------------------------------------------------

    async def start_conversation(
        self, session: Session, stage: int, prompt: str, step_id: str | None = None
    ) -> str:
        """Record an invocation as started and return its entry id."""
        entry = ConversationEntry(id=uuid.uuid4().hex, stage=Stage(stage), step_id=step_id, prompt=prompt)
        async with self.repository.conversations_transaction(session.project_id, session.feature_id) as conversations:
            conversations.entries.append(entry)
        return entry.id

    async def complete_conversation(
        self, session: Session, entry_id: str, result: AgentResult, parsed: ParsedOutput
    ) -> None:
        async with self.repository.conversations_transaction(session.project_id, session.feature_id) as conversations:
            entry = next((e for e in conversations.entries if e.id == entry_id), None)
            if entry is None:
                log.warning("conversation_entry_missing", entry_id=entry_id, feature_id=session.feature_id)
                return
            entry.output = result.output
            entry.conversation_handle = result.conversation_handle
            entry.cost_usd = result.cost_usd
            entry.is_error = result.is_error
            entry.status = "completed"
            entry.completed_at = utc_now()
            entry.parsed = parsed.to_dict()

    async def interrupt_started(self, session: Session) -> list[ConversationEntry]:
        """Mark every started-but-never-completed entry as interrupted.

        Returns:
            The entries that were interrupted, oldest first
        """
        interrupted = []
        async with self.repository.conversations_transaction(session.project_id, session.feature_id) as conversations:
            for entry in conversations.entries:
                if entry.status == "started":
                    entry.status = "interrupted"
                    entry.completed_at = utc_now()
                    interrupted.append(entry)
        if interrupted:
            log.info("conversations_interrupted", feature_id=session.feature_id, count=len(interrupted))
        return interrupted

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def record_decision_filtering(self, session: Session, stage: int, result: DecisionFilterResult) -> None:
        total = len(result.kept) + len(result.filtered)
        if not total:
            return
        entry = DecisionValidationEntry(
            stage=Stage(stage),
            total=total,
            kept=len(result.kept),
            filtered=[
                {"question_text": decision.question_text, "reason": reason} for decision, reason in result.filtered
            ],
        )
        await self.repository.append_decision_validation(session.project_id, session.feature_id, entry)
        if result.filtered:
            log.info("decisions_filtered", feature_id=session.feature_id, stage=stage, filtered=len(result.filtered))

    async def save_decisions(
        self,
        session: Session,
        stage: int,
        decisions: Sequence[ParsedDecision],
        step_id: str | None = None,
        category: QuestionCategory | None = None,
        required: bool | None = None,
    ) -> list[Question]:
        """Persist decisions as one question batch sharing a single ``asked_at``."""
        if not decisions:
            return []

        asked_at = utc_now()
        questions = [
            decision_to_question(
                decision, stage, asked_at=asked_at, step_id=step_id, category=category, required=required
            )
            for decision in decisions
        ]
        await self.repository.add_questions(session.project_id, session.feature_id, questions)
        await self.notifier.notify(
            session.project_id,
            session.feature_id,
            NotificationEvent.QUESTIONS_BATCH,
            {"stage": int(stage), "question_ids": [q.id for q in questions], "count": len(questions)},
        )
        log.info("questions_saved", feature_id=session.feature_id, stage=stage, count=len(questions))
        return questions

    async def save_blocker(self, session: Session, step_id: str, decisions: Sequence[ParsedDecision]) -> list[Question]:
        """Persist blocker questions raised while implementing ``step_id``."""
        return await self.save_decisions(
            session,
            Stage.IMPLEMENTATION,
            decisions,
            step_id=step_id,
            category=QuestionCategory.BLOCKER,
            required=True,
        )

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    async def apply_plan_output(self, session: Session, parsed: ParsedOutput) -> Plan | None:
        """Save plan steps, plan sections and the plan file from one pass.

        Steps or sections count as a revision: the plan version increments
        once and approval is cleared. When the output names a plan file but
        carries no [PLAN_STEP] blocks, the steps are read from the plan file.

        Returns:
            The revised plan, or None when the pass held no plan content
        """
        sections = parsed.plan_sections
        if not parsed.plan_steps and not sections.any_present and not parsed.plan_file_path:
            return None

        plan_steps = parsed.plan_steps
        if not plan_steps and parsed.plan_file_path:
            plan_steps = await self._steps_from_plan_file(session, parsed.plan_file_path)

        revised = bool(plan_steps) or sections.any_present
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            if plan_steps:
                plan.steps = self._merge_steps(plan, plan_steps)
            if sections.meta is not None:
                sections.meta.session_id = sections.meta.session_id or session.id
                plan.meta = sections.meta
            if sections.dependencies is not None:
                plan.dependencies = sections.dependencies
            if sections.test_coverage is not None:
                plan.test_coverage = sections.test_coverage
            if sections.acceptance_mapping is not None:
                plan.acceptance_mapping = sections.acceptance_mapping
            if parsed.plan_file_path:
                plan.plan_file = parsed.plan_file_path
            if revised:
                plan.plan_version += 1
                plan.is_approved = False
                if plan.meta is not None:
                    plan.meta.is_approved = False

        if revised:
            await self.notifier.notify(
                session.project_id,
                session.feature_id,
                NotificationEvent.PLAN_UPDATED,
                {"plan_version": plan.plan_version, "step_count": len(plan.steps)},
            )
            log.info("plan_revised", feature_id=session.feature_id, plan_version=plan.plan_version)
        return plan

    async def _steps_from_plan_file(self, session: Session, plan_file: str) -> list[ParsedPlanStep]:
        path = Path(plan_file).expanduser()
        if not path.is_absolute():
            path = Path(session.project_path) / path
        try:
            async with aiofiles.open(path, encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            log.warning("plan_file_unreadable", feature_id=session.feature_id, path=str(path), error=str(e))
            return []
        steps = self.parser.parse_plan_steps(content)
        log.info("plan_steps_read_from_file", feature_id=session.feature_id, path=str(path), count=len(steps))
        return steps

    @staticmethod
    def _merge_steps(plan: Plan, parsed_steps: Sequence[ParsedPlanStep]) -> list[PlanStep]:
        previous = {step.id: step for step in plan.steps}
        steps = []
        for index, parsed in enumerate(parsed_steps):
            step = PlanStep(
                id=parsed.id,
                parent_id=parsed.parent_id,
                order_index=index,
                title=parsed.title,
                description=parsed.description,
                status=_step_status(parsed.status),
                complexity=parsed.complexity,
                acceptance_criteria_ids=list(parsed.acceptance_criteria_ids),
                estimated_files=list(parsed.estimated_files),
            )
            old = previous.get(parsed.id)
            if old is not None:
                step.metadata = dict(old.metadata)
                if old.content_hash and old.content_hash == compute_step_hash(step):
                    step.content_hash = old.content_hash
                    if old.status in DONE_STATUSES:
                        step.status = old.status
            steps.append(step)
        return steps

    async def increment_review_count(self, session: Session) -> int:
        async with self.repository.plan_transaction(session.project_id, session.feature_id) as plan:
            plan.review_count += 1
            if plan.meta is not None:
                plan.meta.review_count = plan.review_count
        return plan.review_count
