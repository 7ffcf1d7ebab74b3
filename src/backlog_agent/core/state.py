"""In-process orchestrator state: task locks and post-completion cooldowns."""

import logging
import time
from typing import Callable, Dict, Set

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN_SECONDS = 300


class OrchestratorState:
    """Owned by one worker (or webhook server) instance.

    The lock set keeps a task from being dispatched twice concurrently. The
    cooldown map skips tasks that just finished, because the tracker's reads
    are eventually consistent and may not yet show our final comment.
    """

    def __init__(
        self,
        cooldown_seconds: int = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._locked: Set[str] = set()
        self._cooldowns: Dict[str, float] = {}

    def try_acquire(self, task_id: str) -> bool:
        """Lock ``task_id``; False if it's already locked."""
        if task_id in self._locked:
            return False
        self._locked.add(task_id)
        logger.debug(f"🔒 Acquired lock for task {task_id}")
        return True

    def release(self, task_id: str) -> None:
        self._locked.discard(task_id)
        logger.debug(f"🔓 Released lock for task {task_id}")

    def is_locked(self, task_id: str) -> bool:
        return task_id in self._locked

    @property
    def active_tasks(self) -> Set[str]:
        return set(self._locked)

    def start_cooldown(self, task_id: str) -> None:
        self._cooldowns[task_id] = self._clock() + self.cooldown_seconds

    def in_cooldown(self, task_id: str) -> bool:
        until = self._cooldowns.get(task_id)
        if until is None:
            return False
        if self._clock() >= until:
            del self._cooldowns[task_id]
            return False
        return True

    def should_skip(self, task_id: str) -> bool:
        return self.is_locked(task_id) or self.in_cooldown(task_id)
