"""Dispatch of verified webhook events to the worker."""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..core.models import SessionStatus, utcnow
from ..core.worker import WorkerLoop
from ..sessions.manager import SessionManager

logger = logging.getLogger(__name__)

TASK_ASSIGNED = "task.assigned"
COMMENT_CREATED = "comment.created"
TASK_UPDATED = "task.updated"

# A running session untouched this long is presumed dead
STALE_RUNNING_SESSION = timedelta(minutes=30)


class WebhookEventHandler:
    """Turns tracker events into worker runs, keeping session records honest."""

    def __init__(
        self,
        worker: WorkerLoop,
        sessions: SessionManager,
        stale_after: timedelta = STALE_RUNNING_SESSION,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.worker = worker
        self.sessions = sessions
        self.stale_after = stale_after
        self._clock = clock

    async def handle(self, event: str, payload: Dict[str, Any]) -> None:
        """Entry point for background processing; never raises."""
        try:
            if event == TASK_ASSIGNED:
                await self.on_task_assigned(payload)
            elif event == COMMENT_CREATED:
                await self.on_comment_created(payload)
            elif event == TASK_UPDATED:
                self.on_task_updated(payload)
            else:
                logger.warning(f"⚠️ Unknown event type: {event}")
        except Exception as e:
            # The HTTP response has already been sent
            logger.error(f"❌ Error handling webhook {event}: {e}", exc_info=True)

    @staticmethod
    def _task_id(payload: Dict[str, Any]) -> Optional[str]:
        task = payload.get("task") or {}
        return task.get("id") or payload.get("taskId")

    def _ready_for_run(self, task_id: str) -> bool:
        """Clear dead session records; False while a live run owns the task."""
        session = self.sessions.get_by_task_id(task_id)
        if session is None:
            return True

        if session.status in (SessionStatus.INTERRUPTED.value, SessionStatus.ERROR.value):
            logger.info(f"🔄 Restarting {session.status} session for task {task_id}")
            self.sessions.delete(task_id)
            return True

        if session.status == SessionStatus.RUNNING.value:
            idle = self._clock() - session.updated_at
            if idle > self.stale_after:
                logger.warning(
                    f"⚠️ Session for task {task_id} stuck in running for {int(idle.total_seconds() // 60)} min, resetting"
                )
                self.sessions.delete(task_id)
                return True
            logger.info(f"⏭️ Session for task {task_id} is already running, skipping")
            return False

        return True

    async def on_task_assigned(self, payload: Dict[str, Any]) -> None:
        task_id = self._task_id(payload)
        if not task_id:
            logger.warning("task.assigned payload without a task id")
            return
        logger.info(f"🆕 Task assigned: {(payload.get('task') or {}).get('title', task_id)}")
        if not self._ready_for_run(task_id):
            return
        status = await self.worker.process_task_by_id(task_id)
        logger.info(f"Task {task_id[:8]}: {status.reason}")

    async def on_comment_created(self, payload: Dict[str, Any]) -> None:
        task_id = self._task_id(payload)
        if not task_id:
            logger.warning("comment.created payload without a task id")
            return
        author = (payload.get("comment") or {}).get("author") or {}
        if author.get("isAIAgent"):
            logger.debug(f"Ignoring agent comment on task {task_id}")
            return

        session = self.sessions.get_by_task_id(task_id)
        if session is None:
            logger.info(f"💬 Comment on task {task_id} with no session, treating as new assignment")
            await self.on_task_assigned(payload)
            return

        self.sessions.increment_message_count(task_id)
        if not self._ready_for_run(task_id):
            return
        status = await self.worker.process_task_by_id(task_id)
        logger.info(f"💬 Follow-up on task {task_id[:8]}: {status.reason}")

    def on_task_updated(self, payload: Dict[str, Any]) -> None:
        task = payload.get("task") or {}
        task_id = task.get("id")
        logger.info(f"📝 Task updated: {task_id}")
        if task_id and (task.get("completed") or task.get("isCompleted")):
            if self.sessions.delete(task_id):
                logger.info(f"🧹 Task {task_id} completed, session removed")
