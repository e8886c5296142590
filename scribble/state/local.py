"""The device-local task list and its persistence boundary."""

import dataclasses
import logging
from typing import Any, Callable

from ..store import KeyValueStore
from .ids import TaskIdGenerator
from .models import AppState, Task, TaskStatus, now_ms
from .normalize import state_from_record, task_score, to_ms

logger = logging.getLogger(__name__)

STATE_KEY = "state"
DIRTY_KEY = "sync_dirty"

# Flat keys written before the consolidated record existed
LEGACY_KEYS = ("todos", "deleted_task_ids", "selected_group", "user_name", "updatedAt")


class LocalState:
    """Explicitly owned AppState with a single writer per process.

    Every mutation advances ``updated_at``, marks the state dirty and
    persists it. Remote results come in only through ``apply``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ids: TaskIdGenerator | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._clock = clock
        self._ids = ids or TaskIdGenerator(store, clock)
        self._state = AppState()

    @property
    def state(self) -> AppState:
        return self._state

    @property
    def updated_at(self) -> int:
        return self._state.updated_at

    # ==================== Loading & persistence ====================

    def load(self) -> AppState:
        """Load the consolidated record, migrating legacy keys if needed."""
        record = self._store.get(STATE_KEY)
        if record is not None:
            self._state = state_from_record(record, self._clock())
            self._observe_ids()
            return self._state

        if self._migrate_legacy():
            return self._state

        self._state = AppState()
        return self._state

    def _migrate_legacy(self) -> bool:
        legacy = {
            key: self._store.get(key) for key in LEGACY_KEYS
        }
        legacy = {key: value for key, value in legacy.items() if value is not None}
        if not legacy:
            return False

        record: dict[str, Any] = dict(legacy)
        todos = legacy.get("todos")
        if isinstance(todos, list):
            migrated = []
            for todo in todos:
                if isinstance(todo, dict) and not to_ms(todo.get("task_id")):
                    todo = {**todo, "task_id": self._ids.next_id()}
                migrated.append(todo)
            record["todos"] = migrated

        now = self._clock()
        state = state_from_record(record, now)
        if not state.updated_at:
            state.updated_at = now
        self._state = state
        self._observe_ids()
        self.persist()
        self.mark_dirty()

        for key in legacy:
            self._store.delete(key)

        logger.info(
            f"Migrated legacy task list ({len(state.tasks)} tasks) "
            f"to the consolidated record"
        )
        return True

    def _observe_ids(self) -> None:
        if self._state.tasks:
            self._ids.observe(max(self._state.tasks))

    def persist(self) -> None:
        """Write the consolidated record to the store."""
        self._store.set(STATE_KEY, self._state.to_record())

    def apply(self, remote: AppState) -> None:
        """Replace local state with server-confirmed state and persist it.

        Tasks suppressed by the remote's own tombstones are dropped. The
        dirty flag is left untouched.
        """
        from ..sync.merge import apply_tombstones

        state = remote.copy()
        state.tasks = apply_tombstones(state.tasks, state.tombstones, state.updated_at)
        self._state = state
        self._observe_ids()
        self.persist()
        logger.debug(
            f"Applied remote state: {len(state.tasks)} tasks, updated_at={state.updated_at}"
        )

    # ==================== Dirty flag ====================

    @property
    def is_dirty(self) -> bool:
        return bool(self._store.get(DIRTY_KEY, False))

    def mark_dirty(self) -> None:
        self._store.set(DIRTY_KEY, True)

    def clear_dirty(self) -> None:
        self._store.set(DIRTY_KEY, False)

    # ==================== Queries ====================

    def tasks(self, group: str | None = None) -> list[Task]:
        """Tasks in id order, optionally restricted to one group."""
        tasks = self._state.sorted_tasks()
        if group is not None:
            tasks = [task for task in tasks if task.group == group]
        return tasks

    def groups(self) -> list[str]:
        """Distinct non-empty group labels."""
        return sorted({task.group for task in self._state.tasks.values() if task.group})

    def get_task(self, task_id: int) -> Task:
        try:
            return self._state.tasks[task_id]
        except KeyError:
            raise KeyError(f"No task with id {task_id}") from None

    # ==================== Mutations ====================

    def _touch(self, floor: int = 0) -> int:
        timestamp = max(self._clock(), self._state.updated_at + 1, floor)
        self._state.updated_at = timestamp
        return timestamp

    def _commit(self) -> None:
        self.persist()
        self.mark_dirty()

    def _replace_task(self, task: Task, **changes: Any) -> Task:
        timestamp = self._touch(task_score(task, self._state.updated_at) + 1)
        updated = dataclasses.replace(task, task_updated_at=timestamp, **changes)
        self._state.tasks[task.task_id] = updated
        self._commit()
        return updated

    def add_task(self, text: str, group: str = "") -> Task:
        """Create a new pending task."""
        text = text.strip()
        if not text:
            raise ValueError("Task text must not be empty")

        task_id = self._ids.next_id()
        timestamp = self._touch(task_id)
        task = Task(
            task_id=task_id,
            text=text,
            group=group.strip(),
            status=TaskStatus.PENDING,
            task_updated_at=timestamp,
        )
        self._state.tasks[task_id] = task
        self._commit()
        logger.debug(f"Added task {task_id}")
        return task

    def edit_task(self, task_id: int, text: str) -> Task:
        text = text.strip()
        if not text:
            raise ValueError("Task text must not be empty")
        return self._replace_task(self.get_task(task_id), text=text)

    def set_status(self, task_id: int, status: TaskStatus) -> Task:
        return self._replace_task(self.get_task(task_id), status=status)

    def toggle_task(self, task_id: int) -> Task:
        task = self.get_task(task_id)
        status = TaskStatus.PENDING if task.completed else TaskStatus.COMPLETED
        return self._replace_task(task, status=status)

    def set_group(self, task_id: int, group: str) -> Task:
        return self._replace_task(self.get_task(task_id), group=group.strip())

    def delete_task(self, task_id: int) -> None:
        """Remove a task and record a tombstone that outranks its score."""
        task = self.get_task(task_id)
        deleted_at = self._touch(task_score(task, self._state.updated_at))
        del self._state.tasks[task_id]
        self._state.tombstones[task_id] = max(
            self._state.tombstones.get(task_id, 0), deleted_at
        )
        self._commit()
        logger.debug(f"Deleted task {task_id} at {deleted_at}")

    def clear_completed(self) -> int:
        """Delete every completed task. Returns how many were removed."""
        completed = [task for task in self._state.tasks.values() if task.completed]
        if not completed:
            return 0

        floor = max(task_score(task, self._state.updated_at) for task in completed)
        deleted_at = self._touch(floor)
        for task in completed:
            del self._state.tasks[task.task_id]
            self._state.tombstones[task.task_id] = max(
                self._state.tombstones.get(task.task_id, 0), deleted_at
            )
        self._commit()
        return len(completed)

    def rename_group(self, old: str, new: str) -> int:
        """Relabel every task in a group. Returns how many tasks moved."""
        old, new = old.strip(), new.strip()
        members = [task for task in self._state.tasks.values() if task.group == old]
        if not members and self._state.selected_group != old:
            return 0

        floor = max(
            (task_score(task, self._state.updated_at) + 1 for task in members),
            default=0,
        )
        timestamp = self._touch(floor)
        for task in members:
            self._state.tasks[task.task_id] = dataclasses.replace(
                task, group=new, task_updated_at=timestamp
            )
        if self._state.selected_group == old:
            self._state.selected_group = new
        self._commit()
        return len(members)

    def select_group(self, group: str) -> None:
        self._state.selected_group = group
        self._touch()
        self._commit()

    def set_user_name(self, name: str) -> None:
        self._state.user_name = name
        self._touch()
        self._commit()
