"""Data model for a synchronizable task list."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Current wall clock in integer milliseconds since the epoch."""
    return int(time.time() * 1000)


class TaskStatus(Enum):
    """Completion state of a task."""

    PENDING = "pending"
    COMPLETED = "completed"


@dataclass
class Task:
    """A single task.

    ``task_id`` doubles as the creation time and is immutable.
    ``task_updated_at`` is the last-writer-wins score for the task.
    """

    task_id: int
    text: str
    group: str = ""
    status: TaskStatus = TaskStatus.PENDING
    task_updated_at: int = 0

    @property
    def completed(self) -> bool:
        return self.status is TaskStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire/record representation."""
        return {
            "task_id": self.task_id,
            "task": self.text,
            "group": self.group,
            "status": self.status.value,
            "task_updated_at": self.task_updated_at,
        }


@dataclass
class AppState:
    """The full synchronizable record for one sync identifier."""

    tasks: dict[int, Task] = field(default_factory=dict)
    tombstones: dict[int, int] = field(default_factory=dict)
    selected_group: str = ""
    user_name: str = ""
    updated_at: int = 0

    def sorted_tasks(self) -> list[Task]:
        """Tasks in ascending ``task_id`` order."""
        return [self.tasks[task_id] for task_id in sorted(self.tasks)]

    def _data(self) -> dict[str, Any]:
        return {
            "todos": [task.to_dict() for task in self.sorted_tasks()],
            "deleted_task_ids": {
                str(task_id): deleted_at
                for task_id, deleted_at in sorted(self.tombstones.items())
            },
            "selected_group": self.selected_group,
            "user_name": self.user_name,
        }

    def to_blob(self) -> dict[str, Any]:
        """Serialize as a remote blob: ``{"updatedAt", "data"}``."""
        return {"updatedAt": self.updated_at, "data": self._data()}

    def to_record(self) -> dict[str, Any]:
        """Serialize as the flat local consolidated record."""
        record = self._data()
        record["updatedAt"] = self.updated_at
        return record

    def copy(self) -> "AppState":
        """Shallow copy with independent task and tombstone maps."""
        return AppState(
            tasks=dict(self.tasks),
            tombstones=dict(self.tombstones),
            selected_group=self.selected_group,
            user_name=self.user_name,
            updated_at=self.updated_at,
        )
