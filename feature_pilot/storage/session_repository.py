"""
Session persistence on top of the document store.

The repository owns the session directory layout and the rules that guard
session mutation:

- Identity fields (``id``, ``project_id``, ``feature_id``, ``created_at``)
  and the edit version are never changed by ``update``
- ``transition_stage`` only moves along the stage transition table and
  keeps ``status`` derived from the stage
- ``update_with_version`` is the single optimistic-concurrency path, used
  by external editors that may race with each other

Example:
    >>> repository = SessionRepository(DocumentStore(settings.data_dir))
    >>> session = await repository.create_session("/src/app", "Add CSV export")
    >>> session = await repository.transition_stage(session.project_id, session.feature_id, Stage.PLANNING)
"""

import hashlib
import re
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import structlog

from feature_pilot.engine.transitions import can_transition, status_for_stage
from feature_pilot.enums import OVERRIDE_STATUSES, QuestionStage, SessionStatus, Stage
from feature_pilot.exceptions import NotFoundError, StateConflictError, ValidationError
from feature_pilot.models.domain import (
    ConversationLog,
    DecisionValidationEntry,
    DecisionValidationLog,
    Plan,
    PlanMeta,
    ProjectEntry,
    ProjectsIndex,
    Question,
    QuestionsDocument,
    RuntimeState,
    Session,
    utc_now,
)
from feature_pilot.storage.document_store import DocumentStore

log = structlog.get_logger(__name__)

PROTECTED_FIELDS = frozenset({"id", "project_id", "feature_id", "data_version", "created_at"})
MAX_FEATURE_ID_LENGTH = 64

PROJECTS_INDEX = "projects.json"


def project_id_for(project_path: str | Path) -> str:
    """Stable project id: first 32 hex chars of sha256 over the absolute path."""
    absolute = str(Path(project_path).expanduser().resolve())
    return hashlib.sha256(absolute.encode("utf-8")).hexdigest()[:32]


def slugify(title: str) -> str:
    """Feature id derived from a title, at most 64 characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:MAX_FEATURE_ID_LENGTH].strip("-")
    return slug or "feature"


class SessionRepository:
    """Read and mutate the documents of one feature session.

    Every document lives under ``{project_id}/{feature_id}/`` in the store.
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def session_dir(project_id: str, feature_id: str) -> str:
        return f"{project_id}/{feature_id}"

    def _path(self, project_id: str, feature_id: str, name: str) -> str:
        return f"{self.session_dir(project_id, feature_id)}/{name}"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        project_path: str,
        title: str,
        feature_description: str = "",
        acceptance_criteria: list[str] | None = None,
        base_branch: str = "main",
    ) -> Session:
        """Create a session together with its empty plan and status documents.

        Raises:
            ValidationError: If the title is blank
            StateConflictError: If a session for this feature already exists
        """
        if not title.strip():
            raise ValidationError("Feature title is required")

        project_id = project_id_for(project_path)
        feature_id = slugify(title)
        if await self.store.exists(self._path(project_id, feature_id, "session.json")):
            raise StateConflictError(f"Session already exists: {project_id}/{feature_id}")

        now = utc_now()
        session = Session(
            id=f"{project_id}:{feature_id}",
            project_id=project_id,
            feature_id=feature_id,
            project_path=str(Path(project_path).expanduser().resolve()),
            title=title.strip(),
            feature_description=feature_description,
            acceptance_criteria=acceptance_criteria or [],
            base_branch=base_branch,
            feature_branch=f"feature/{feature_id}",
            created_at=now,
            updated_at=now,
        )
        plan = Plan(meta=PlanMeta(session_id=session.id, created_at=now, updated_at=now), created_at=now)

        await self.store.ensure_dir(self.session_dir(project_id, feature_id))
        await self.store.write(self._path(project_id, feature_id, "session.json"), session)
        await self.store.write(self._path(project_id, feature_id, "plan.json"), plan)
        await self.store.write(self._path(project_id, feature_id, "questions.json"), QuestionsDocument())
        await self.store.write(self._path(project_id, feature_id, "status.json"), RuntimeState(last_action_at=now))
        await self.store.write(self._path(project_id, feature_id, "conversations.json"), ConversationLog())
        await self._register_feature(project_id, session.project_path, feature_id)

        log.info("session_created", project_id=project_id, feature_id=feature_id)
        return session

    async def find(self, project_id: str, feature_id: str) -> Session | None:
        return await self.store.read_typed(self._path(project_id, feature_id, "session.json"), Session)

    async def get(self, project_id: str, feature_id: str) -> Session:
        """Load a session.

        Raises:
            NotFoundError: If the session does not exist
        """
        session = await self.find(project_id, feature_id)
        if session is None:
            raise NotFoundError("session", f"{project_id}/{feature_id}")
        return session

    async def list_sessions(self) -> list[Session]:
        """Every session in the store, ordered by project then feature."""
        sessions = []
        for project_id in await self.store.list_dirs():
            for feature_id in await self.store.list_dirs(project_id):
                session = await self.find(project_id, feature_id)
                if session is not None:
                    sessions.append(session)
        return sessions

    async def update(self, project_id: str, feature_id: str, changes: Mapping[str, Any]) -> Session:
        """Apply a partial update, ignoring immutable fields."""
        ignored = PROTECTED_FIELDS.intersection(changes)
        if ignored:
            log.debug("protected_fields_ignored", fields=sorted(ignored))

        async with self._session_transaction(project_id, feature_id) as session:
            self._apply(session, {key: value for key, value in changes.items() if key not in PROTECTED_FIELDS})
        return session

    async def update_with_version(
        self,
        project_id: str,
        feature_id: str,
        changes: Mapping[str, Any],
        expected_version: int,
    ) -> Session:
        """Apply a partial update only if nobody else edited the session first.

        Raises:
            StateConflictError: If ``data_version`` no longer equals
                ``expected_version``; the session is left unchanged
        """
        async with self._session_transaction(project_id, feature_id) as session:
            if session.data_version != expected_version:
                raise StateConflictError(
                    "Session was modified concurrently", current=session.data_version, target=expected_version
                )
            self._apply(session, {key: value for key, value in changes.items() if key not in PROTECTED_FIELDS})
            session.data_version += 1
        return session

    async def transition_stage(self, project_id: str, feature_id: str, target: int) -> Session:
        """Move a session to another stage along the transition table.

        Moving backwards counts as a replanning. Status is re-derived from
        the new stage, clearing any queued or paused override.

        Raises:
            StateConflictError: If ``target`` is not reachable from the current
                stage; the session is left unchanged
        """
        async with self._session_transaction(project_id, feature_id) as session:
            current = session.current_stage
            if not can_transition(current, target):
                raise StateConflictError("Illegal stage transition", current=int(current), target=int(target))

            if target < current:
                session.replanning_count += 1
            session.current_stage = Stage(target)
            session.status = status_for_stage(session.current_stage)

        log.info("stage_transitioned", project_id=project_id, feature_id=feature_id, from_stage=current, to_stage=target)
        return session

    async def set_status(self, project_id: str, feature_id: str, status: SessionStatus) -> Session:
        """Set a status override (queued, paused or failed) or restore the derived one."""
        async with self._session_transaction(project_id, feature_id) as session:
            if status in OVERRIDE_STATUSES:
                session.status = status
            else:
                session.status = status_for_stage(session.current_stage)
        return session

    @asynccontextmanager
    async def _session_transaction(self, project_id: str, feature_id: str) -> AsyncIterator[Session]:
        path = self._path(project_id, feature_id, "session.json")
        if not await self.store.exists(path):
            raise NotFoundError("session", f"{project_id}/{feature_id}")
        async with self.store.transaction(path, Session) as session:
            yield session
            session.updated_at = utc_now()

    @staticmethod
    def _apply(session: Session, changes: Mapping[str, Any]) -> None:
        merged = session.model_dump()
        merged.update(changes)
        updated = Session.model_validate(merged)
        for name in type(updated).model_fields:
            setattr(session, name, getattr(updated, name))

    # ------------------------------------------------------------------
    # Plan
    # ------------------------------------------------------------------

    async def get_plan(self, project_id: str, feature_id: str) -> Plan:
        plan = await self.store.read_typed(self._path(project_id, feature_id, "plan.json"), Plan)
        if plan is None:
            raise NotFoundError("plan", f"{project_id}/{feature_id}")
        return plan

    async def save_plan(self, project_id: str, feature_id: str, plan: Plan) -> None:
        plan.updated_at = utc_now()
        await self.store.write(self._path(project_id, feature_id, "plan.json"), plan)

    @asynccontextmanager
    async def plan_transaction(self, project_id: str, feature_id: str) -> AsyncIterator[Plan]:
        async with self.store.transaction(self._path(project_id, feature_id, "plan.json"), Plan) as plan:
            yield plan
            plan.updated_at = utc_now()

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    async def get_questions(self, project_id: str, feature_id: str) -> list[Question]:
        document = await self.store.read_typed(
            self._path(project_id, feature_id, "questions.json"), QuestionsDocument
        )
        return list(document.questions) if document else []

    @asynccontextmanager
    async def questions_transaction(self, project_id: str, feature_id: str) -> AsyncIterator[QuestionsDocument]:
        async with self.store.transaction(
            self._path(project_id, feature_id, "questions.json"), QuestionsDocument, default=QuestionsDocument
        ) as document:
            yield document

    async def add_questions(self, project_id: str, feature_id: str, questions: list[Question]) -> None:
        if not questions:
            return
        async with self.questions_transaction(project_id, feature_id) as document:
            document.questions.extend(questions)

    async def answer_question(self, project_id: str, feature_id: str, question_id: str, answer: Any) -> Question:
        """Record an answer.

        Raises:
            NotFoundError: If the question does not exist
        """
        return (await self.answer_questions(project_id, feature_id, {question_id: answer}))[0]

    async def answer_questions(self, project_id: str, feature_id: str, answers: Mapping[str, Any]) -> list[Question]:
        """Record several answers in one write; nothing is stored if any id is unknown.

        Raises:
            NotFoundError: If a question does not exist
        """
        async with self.questions_transaction(project_id, feature_id) as document:
            by_id = {question.id: question for question in document.questions}
            missing = next((question_id for question_id in answers if question_id not in by_id), None)
            if missing is not None:
                raise NotFoundError("question", missing)

            answered_at = utc_now()
            for question_id, answer in answers.items():
                by_id[question_id].answer = answer
                by_id[question_id].answered_at = answered_at
        return [by_id[question_id] for question_id in answers]

    async def get_unanswered(
        self, project_id: str, feature_id: str, stage: QuestionStage | None = None
    ) -> list[Question]:
        return [
            question
            for question in await self.get_questions(project_id, feature_id)
            if not question.is_answered and (stage is None or question.stage == stage)
        ]

    # ------------------------------------------------------------------
    # Runtime status and logs
    # ------------------------------------------------------------------

    async def get_runtime(self, project_id: str, feature_id: str) -> RuntimeState:
        state = await self.store.read_typed(self._path(project_id, feature_id, "status.json"), RuntimeState)
        return state or RuntimeState()

    @asynccontextmanager
    async def runtime_transaction(self, project_id: str, feature_id: str) -> AsyncIterator[RuntimeState]:
        async with self.store.transaction(
            self._path(project_id, feature_id, "status.json"), RuntimeState, default=RuntimeState
        ) as state:
            yield state

    @asynccontextmanager
    async def conversations_transaction(self, project_id: str, feature_id: str) -> AsyncIterator[ConversationLog]:
        async with self.store.transaction(
            self._path(project_id, feature_id, "conversations.json"), ConversationLog, default=ConversationLog
        ) as conversations:
            yield conversations

    async def get_conversations(self, project_id: str, feature_id: str) -> ConversationLog:
        conversations = await self.store.read_typed(
            self._path(project_id, feature_id, "conversations.json"), ConversationLog
        )
        return conversations or ConversationLog()

    async def append_decision_validation(
        self, project_id: str, feature_id: str, entry: DecisionValidationEntry
    ) -> None:
        async with self.store.transaction(
            self._path(project_id, feature_id, "decision-validation.json"),
            DecisionValidationLog,
            default=DecisionValidationLog,
        ) as validation_log:
            validation_log.entries.append(entry)

    # ------------------------------------------------------------------
    # Project index
    # ------------------------------------------------------------------

    async def list_projects(self) -> ProjectsIndex:
        index = await self.store.read_typed(PROJECTS_INDEX, ProjectsIndex)
        return index or ProjectsIndex()

    async def _register_feature(self, project_id: str, project_path: str, feature_id: str) -> None:
        async with self.store.transaction(PROJECTS_INDEX, ProjectsIndex, default=ProjectsIndex) as index:
            entry = index.projects.get(project_id)
            if entry is None:
                entry = ProjectEntry(project_id=project_id, project_path=project_path)
                index.projects[project_id] = entry
            if feature_id not in entry.feature_ids:
                entry.feature_ids.append(feature_id)
            entry.updated_at = utc_now()

        async with self.store.transaction(
            f"{project_id}/index.json",
            ProjectEntry,
            default=lambda: ProjectEntry(project_id=project_id, project_path=project_path),
        ) as project:
            if feature_id not in project.feature_ids:
                project.feature_ids.append(feature_id)
            project.updated_at = utc_now()
