"""
Startup reconciliation sweep.

After a crash or restart some sessions are left mid-stage: their runtime
status says a stage is running, and their conversation log holds an entry
that was started but never completed. The sweep finds those sessions,
marks the stuck entries ``interrupted`` and re-issues the stage through
the supervisor, resuming the persisted agent conversation.

Discovery is never resumed automatically; there is no safe point to pick
it up mid-pass. Completed sessions and sessions with a queued, paused or
failed override are left alone.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from feature_pilot.config.settings import PolicyConfig
from feature_pilot.engine.orchestrator import WorkflowOrchestrator
from feature_pilot.engine.supervisor import TaskSupervisor
from feature_pilot.enums import OVERRIDE_STATUSES, Stage
from feature_pilot.models.domain import Session, utc_now
from feature_pilot.storage.session_repository import SessionRepository

log = structlog.get_logger(__name__)

NON_RESUMABLE_STAGES = frozenset({Stage.DISCOVERY, Stage.COMPLETED})


@dataclass
class RecoveryReport:
    """What one sweep did.

    Attributes:
        resumed: ``project_id/feature_id`` keys of sessions re-issued
        skipped: Keys of sessions that were considered and left alone,
            mapped to the reason
    """

    resumed: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)


class RecoverySweep:
    """Re-issue stages that were interrupted by a restart.

    Args:
        repository: Session repository
        orchestrator: Dispatcher used to re-run stages
        supervisor: Background executor the re-issued stages run on
        policy: Policy thresholds (staleness window)
        clock: Current time, injectable for tests
    """

    def __init__(
        self,
        repository: SessionRepository,
        orchestrator: WorkflowOrchestrator,
        supervisor: TaskSupervisor,
        policy: PolicyConfig,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.orchestrator = orchestrator
        self.supervisor = supervisor
        self.policy = policy
        self._clock = clock

    async def sweep(self) -> RecoveryReport:
        """Scan every session once and resume the stale in-flight ones."""
        report = RecoveryReport()
        threshold = self._clock() - timedelta(minutes=self.policy.staleness_minutes)

        for session in await self.repository.list_sessions():
            key = f"{session.project_id}/{session.feature_id}"
            reason = await self._skip_reason(session, threshold)
            if reason is not None:
                report.skipped[key] = reason
                continue

            await self.orchestrator.handler.interrupt_started(session)
            self.supervisor.spawn(
                self.orchestrator.retry_stage(session.project_id, session.feature_id),
                session.project_id,
                session.feature_id,
            )
            report.resumed.append(key)
            log.info(
                "session_resumed",
                project_id=session.project_id,
                feature_id=session.feature_id,
                stage=int(session.current_stage),
            )

        log.info("recovery_sweep_complete", resumed=len(report.resumed), skipped=len(report.skipped))
        return report

    async def _skip_reason(self, session: Session, threshold: datetime) -> str | None:
        if session.current_stage in NON_RESUMABLE_STAGES:
            return "stage_not_resumable"
        if session.status in OVERRIDE_STATUSES:
            return f"status_{session.status}"

        runtime = await self.repository.get_runtime(session.project_id, session.feature_id)
        if runtime.last_action_at > threshold:
            return "recently_active"

        conversations = await self.repository.get_conversations(session.project_id, session.feature_id)
        if not any(entry.status == "started" for entry in conversations.entries):
            return "no_interrupted_invocation"
        return None
