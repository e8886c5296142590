"""Device-local task id generation."""

import logging
from typing import Callable

from ..store import KeyValueStore
from .models import now_ms
from .normalize import to_ms

logger = logging.getLogger(__name__)

LAST_TASK_ID_KEY = "last_task_id"


class TaskIdGenerator:
    """Produces strictly increasing, millisecond-based task ids.

    The last issued id is persisted so ids keep increasing across restarts,
    within the same millisecond, and when the wall clock steps backwards.
    """

    def __init__(self, store: KeyValueStore, clock: Callable[[], int] = now_ms):
        self._store = store
        self._clock = clock

    @property
    def last_id(self) -> int:
        return to_ms(self._store.get(LAST_TASK_ID_KEY))

    def observe(self, task_id: int) -> None:
        """Raise the floor so future ids exceed an id seen elsewhere."""
        if task_id > self.last_id:
            self._store.set(LAST_TASK_ID_KEY, task_id)

    def next_id(self) -> int:
        """Return a new id greater than every id issued before."""
        task_id = max(self._clock(), self.last_id + 1)
        self._store.set(LAST_TASK_ID_KEY, task_id)
        logger.debug(f"Generated task id {task_id}")
        return task_id
