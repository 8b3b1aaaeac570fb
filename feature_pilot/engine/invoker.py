"""
Single agent invocation with its bookkeeping.

``AgentInvoker.invoke`` is the only place the workflow calls the agent
runner. Around the call it:

- Enforces the per-session calls-per-hour budget
- Picks the conversation to resume (Stage 3 has its own)
- Records the conversation entry as started, then completed
- Keeps ``status.json`` current (spawn count, last action, output length)
- Streams output and parsed progress to the notifier
- Stores the conversation handle the agent returned

A ``SpawnError`` leaves the conversation entry in the started state so
that the recovery sweep or an explicit retry can pick the stage up again.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.result_handler import ResultHandler
from feature_pilot.enums import NotificationEvent, RuntimeStatus, Stage
from feature_pilot.exceptions import SpawnError
from feature_pilot.models.domain import Session, utc_now
from feature_pilot.protocol.parser import MarkerProtocolParser
from feature_pilot.protocol.types import ParsedOutput
from feature_pilot.providers.base import AgentRequest, AgentResult, AgentRunner, Notifier
from feature_pilot.storage.session_repository import SessionRepository

log = structlog.get_logger(__name__)

BUDGET_WINDOW = timedelta(hours=1)

STAGE_TOOLS: dict[Stage, list[str]] = {
    Stage.DISCOVERY: ["Read", "Glob", "Grep", "Task"],
    Stage.PLANNING: ["Read", "Glob", "Grep", "Task"],
    Stage.IMPLEMENTATION: ["Read", "Write", "Edit", "Bash", "Glob", "Grep", "Task"],
    Stage.PR_CREATION: ["Read", "Bash(git:*)", "Bash(gh:*)"],
    Stage.PR_REVIEW: ["Read", "Glob", "Grep", "Task", "Bash(git:diff*)", "Bash(gh:pr*)"],
}

SKIP_PERMISSION_STAGES = frozenset({Stage.IMPLEMENTATION})


@dataclass
class Invocation:
    """A finished agent pass."""

    session: Session
    result: AgentResult
    parsed: ParsedOutput
    entry_id: str


class AgentInvoker:
    """Invoke the agent for one stage pass.

    Args:
        repository: Session repository
        runner: Agent runner
        parser: Marker protocol parser
        handler: Result handler used for the conversation log
        notifier: Event channel for streamed output and progress
        policy: Policy thresholds (calls-per-hour budget)
        clock: Current time, injectable for tests
    """

    def __init__(
        self,
        repository: SessionRepository,
        runner: AgentRunner,
        parser: MarkerProtocolParser,
        handler: ResultHandler,
        notifier: Notifier,
        policy: PolicyConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.parser = parser
        self.handler = handler
        self.notifier = notifier
        self.policy = policy
        self._clock = clock

    async def invoke(
        self,
        session: Session,
        stage: Stage,
        prompt: str,
        step_id: str | None = None,
    ) -> Invocation:
        """Run the agent for ``stage`` and persist the outcome.

        Raises:
            SpawnError: If the hourly budget is exhausted or the runner fails
        """
        await self._reserve_call(session, stage, step_id)
        entry_id = await self.handler.start_conversation(session, stage, prompt, step_id)

        handle = session.implementation_handle if stage == Stage.IMPLEMENTATION else session.conversation_handle
        request = AgentRequest(
            prompt=prompt,
            working_dir=session.project_path,
            conversation_handle=handle,
            allowed_tools=list(STAGE_TOOLS.get(stage, [])),
            skip_permissions=stage in SKIP_PERMISSION_STAGES,
            on_stream=self._stream_callback(session, stage, step_id),
        )

        log.info("stage_invocation_started", feature_id=session.feature_id, stage=int(stage), step_id=step_id)
        try:
            result = await self.runner.invoke(request)
        except SpawnError as e:
            await self._record_error(session, stage, e.message)
            raise SpawnError(e.message, stage=int(stage)) from e

        parsed = self.parser.parse(result.output)
        await self.handler.complete_conversation(session, entry_id, result, parsed)

        if result.conversation_handle and result.conversation_handle != handle:
            field = "implementation_handle" if stage == Stage.IMPLEMENTATION else "conversation_handle"
            session = await self.repository.update(
                session.project_id, session.feature_id, {field: result.conversation_handle}
            )

        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.status = RuntimeStatus.IDLE
            runtime.last_action = f"stage{int(stage)}_{'error' if result.is_error else 'complete'}"
            runtime.last_action_at = self._clock()
            runtime.last_output_length = len(result.output)
            runtime.last_error = result.error if result.is_error else None

        log.info(
            "stage_invocation_finished",
            feature_id=session.feature_id,
            stage=int(stage),
            is_error=result.is_error,
            output_length=len(result.output),
        )
        return Invocation(session=session, result=result, parsed=parsed, entry_id=entry_id)

    async def _reserve_call(self, session: Session, stage: Stage, step_id: str | None) -> None:
        now = self._clock()
        exhausted = False
        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.recent_calls = [at for at in runtime.recent_calls if now - at < BUDGET_WINDOW]
            if len(runtime.recent_calls) >= self.policy.max_calls_per_hour:
                exhausted = True
                runtime.status = RuntimeStatus.ERROR
                runtime.last_error = "Hourly agent call budget exhausted"
            else:
                runtime.recent_calls.append(now)
                runtime.status = RuntimeStatus.EXECUTING if stage == Stage.IMPLEMENTATION else RuntimeStatus.RUNNING
                runtime.current_stage = stage
                runtime.current_step_id = step_id
                runtime.spawn_count += 1
                runtime.last_action = f"stage{int(stage)}_started"
                runtime.last_action_at = now
                runtime.last_error = None

        if exhausted:
            log.warning(
                "call_budget_exhausted",
                feature_id=session.feature_id,
                max_calls_per_hour=self.policy.max_calls_per_hour,
            )
            raise SpawnError("Hourly agent call budget exhausted", stage=int(stage))

    async def _record_error(self, session: Session, stage: Stage, message: str) -> None:
        async with self.repository.runtime_transaction(session.project_id, session.feature_id) as runtime:
            runtime.status = RuntimeStatus.ERROR
            runtime.last_action = f"stage{int(stage)}_error"
            runtime.last_action_at = self._clock()
            runtime.last_error = message
        log.error("stage_invocation_failed", feature_id=session.feature_id, stage=int(stage), error=message)

    def _stream_callback(self, session: Session, stage: Stage, step_id: str | None):
        last_progress: list[tuple[str, int, str]] = []

        async def on_stream(chunk: str, is_final: bool) -> None:
            await self.notifier.notify(
                session.project_id,
                session.feature_id,
                NotificationEvent.AGENT_OUTPUT,
                {"stage": int(stage), "step_id": step_id, "chunk": chunk, "is_final": is_final},
            )
            status = self.parser.parse_implementation_status(chunk) if chunk else None
            if status is None:
                return

            key = (status.status, status.progress, status.message)
            if last_progress and last_progress[-1] == key:
                return
            last_progress.append(key)
            await self.notifier.notify(
                session.project_id,
                session.feature_id,
                NotificationEvent.IMPLEMENTATION_PROGRESS,
                {
                    "stage": int(stage),
                    "step_id": status.step_id or step_id,
                    "status": status.status,
                    "files_modified": status.files_modified,
                    "tests_status": status.tests_status,
                    "work_type": status.work_type,
                    "progress": status.progress,
                    "message": status.message,
                },
            )

        return on_stream
