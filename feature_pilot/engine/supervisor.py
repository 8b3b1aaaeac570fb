"""
Supervised background continuations.

Workflow passes outlive the action that started them. ``TaskSupervisor``
runs each pass as an asyncio task wrapped in an error boundary: anything
that escapes the pass is logged, written to the session's runtime status
as ``error`` and announced on the notifier, and never reaches the event
loop's unhandled-exception path. The session identity is bound to the
task's logging context for the whole pass.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

from feature_pilot.enums import NotificationEvent, RuntimeStatus
from feature_pilot.exceptions import FeaturePilotError
from feature_pilot.models.domain import utc_now
from feature_pilot.providers.base import Notifier
from feature_pilot.storage.session_repository import SessionRepository
from feature_pilot.utils.logging_config import bind_session, clear_session

log = structlog.get_logger(__name__)


class TaskSupervisor:
    """Spawn and track background workflow tasks.

    Args:
        repository: Session repository used to persist failures
        notifier: Event channel for failure notifications
    """

    def __init__(self, repository: SessionRepository, notifier: Notifier) -> None:
        self.repository = repository
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], project_id: str, feature_id: str) -> asyncio.Task:
        """Run ``coro`` in the background for one session.

        Must be called from a running event loop.
        """
        task = asyncio.create_task(self._guarded(coro, project_id, feature_id), name=f"{project_id}/{feature_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.debug("background_task_spawned", project_id=project_id, feature_id=feature_id)
        return task

    async def drain(self) -> None:
        """Wait for every spawned task, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def _guarded(self, coro: Coroutine[Any, Any, Any], project_id: str, feature_id: str) -> Any:
        bind_session(project_id, feature_id)
        try:
            return await coro
        except asyncio.CancelledError:
            log.warning("background_task_cancelled", project_id=project_id, feature_id=feature_id)
            raise
        except Exception as e:
            log.error(
                "background_task_failed",
                project_id=project_id,
                feature_id=feature_id,
                error=str(e),
                exc_info=True,
            )
            await self._record_failure(project_id, feature_id, e)
            return None
        finally:
            clear_session()

    async def _record_failure(self, project_id: str, feature_id: str, error: Exception) -> None:
        message = error.message if isinstance(error, FeaturePilotError) else str(error) or type(error).__name__
        stage = None
        if await self.repository.find(project_id, feature_id) is None:
            # session may have been removed while the task ran
            log.error("failure_not_persisted", project_id=project_id, feature_id=feature_id, error=message)
        else:
            async with self.repository.runtime_transaction(project_id, feature_id) as runtime:
                runtime.status = RuntimeStatus.ERROR
                runtime.last_error = message
                runtime.last_action = f"stage{int(runtime.current_stage)}_error"
                runtime.last_action_at = utc_now()
                stage = int(runtime.current_stage)

        await self.notifier.notify(
            project_id,
            feature_id,
            NotificationEvent.EXECUTION_STATUS,
            {"stage": stage, "sub_state": "error", "error": message},
        )
