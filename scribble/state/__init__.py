"""Task list data model.

Provides:
- Task and AppState records with their wire/record serialization
- Liberal normalization of loosely-typed input and task scoring
- Device-local task id generation
- The owned local state object with mutations and migration
"""

from .ids import TaskIdGenerator
from .local import LocalState
from .models import AppState, Task, TaskStatus, now_ms
from .normalize import (
    normalize_task,
    normalize_tombstones,
    state_from_blob,
    state_from_record,
    task_score,
    to_ms,
)

__all__ = [
    "AppState",
    "LocalState",
    "Task",
    "TaskIdGenerator",
    "TaskStatus",
    "normalize_task",
    "normalize_tombstones",
    "now_ms",
    "state_from_blob",
    "state_from_record",
    "task_score",
    "to_ms",
]
