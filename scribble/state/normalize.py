"""Scoring and normalization of loosely-typed task records.

Everything here is liberal in what it accepts: the remote store may hold
data written by an older schema, so malformed fields are defaulted and
malformed records are dropped rather than raised.
"""

import logging
import math
from typing import Any

from ..errors import ValidationError
from .models import AppState, Task, TaskStatus

logger = logging.getLogger(__name__)


def to_ms(value: Any) -> int:
    """Coerce a value to a positive millisecond timestamp, or 0 if absent."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value if value > 0 else 0
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return 0
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0
    if not math.isfinite(number) or number <= 0:
        return 0
    return int(number)


def _require_ms(value: Any, name: str) -> int:
    ms = to_ms(value)
    if not ms:
        raise ValidationError(f"{name} is not a positive timestamp: {value!r}")
    return ms


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    # Lone surrogates survive json.loads but cannot be encoded as UTF-8
    return str(value).encode("utf-8", "replace").decode("utf-8")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return _stringify(value).strip()


def _as_metadata(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return _stringify(value)


def coerce_task(record: Any, state_updated_at: int = 0) -> Task:
    """Strictly coerce a record to a Task.

    Args:
        record: Decoded JSON object for one task.
        state_updated_at: ``updated_at`` of the state that owns the record.

    Raises:
        ValidationError: If the record has no usable id or text.
    """
    if not isinstance(record, dict):
        raise ValidationError(f"task record is not an object: {type(record).__name__}")

    task_id = _require_ms(record.get("task_id"), "task_id")

    raw_text = record.get("task")
    if raw_text is None:
        raw_text = record.get("text")
    text = _as_text(raw_text)
    if not text:
        raise ValidationError(f"task {task_id} has empty text")

    status = (
        TaskStatus.COMPLETED
        if record.get("status") == TaskStatus.COMPLETED.value
        else TaskStatus.PENDING
    )

    task_updated_at = (
        to_ms(record.get("task_updated_at")) or to_ms(state_updated_at) or task_id
    )

    return Task(
        task_id=task_id,
        text=text,
        group=_as_text(record.get("group")),
        status=status,
        task_updated_at=task_updated_at,
    )


def normalize_task(record: Any, state_updated_at: int = 0) -> Task | None:
    """Normalize a record to a Task, or None if it must be rejected."""
    try:
        return coerce_task(record, state_updated_at)
    except ValidationError as e:
        logger.debug(f"Dropping task record: {e}")
        return None


def task_score(task: Task, state_updated_at: int = 0) -> int:
    """Last-writer-wins comparison key for a task."""
    return (
        to_ms(task.task_updated_at)
        or to_ms(state_updated_at)
        or to_ms(task.task_id)
        or 0
    )


def normalize_tombstones(value: Any, now: int) -> dict[int, int]:
    """Normalize a tombstone map.

    Accepts either a mapping of id to ``deleted_at`` or a bare list of
    ids, which are treated as deleted at ``now``. Entries with a
    non-positive id or ``deleted_at`` are dropped.
    """
    tombstones: dict[int, int] = {}

    if isinstance(value, (list, tuple)):
        for raw_id in value:
            task_id = to_ms(raw_id)
            if task_id:
                tombstones[task_id] = max(tombstones.get(task_id, 0), now)
        return tombstones

    if isinstance(value, dict):
        for raw_id, raw_deleted_at in value.items():
            task_id = to_ms(raw_id)
            deleted_at = to_ms(raw_deleted_at)
            if task_id and deleted_at:
                tombstones[task_id] = max(tombstones.get(task_id, 0), deleted_at)
        return tombstones

    return tombstones


def collect_tasks(records: Any, state_updated_at: int = 0) -> dict[int, Task]:
    """Normalize a list of records, resolving duplicate ids by score.

    The first record wins on an exact score tie.
    """
    tasks: dict[int, Task] = {}
    if not isinstance(records, (list, tuple)):
        return tasks

    for record in records:
        task = normalize_task(record, state_updated_at)
        if task is None:
            continue
        previous = tasks.get(task.task_id)
        if previous is None or task_score(task, state_updated_at) > task_score(
            previous, state_updated_at
        ):
            tasks[task.task_id] = task

    return tasks


def _state_from_data(data: Any, updated_at: int, now: int) -> AppState:
    if not isinstance(data, dict):
        data = {}

    return AppState(
        tasks=collect_tasks(data.get("todos"), updated_at),
        tombstones=normalize_tombstones(data.get("deleted_task_ids"), now),
        selected_group=_as_metadata(data.get("selected_group")),
        user_name=_as_metadata(data.get("user_name")),
        updated_at=updated_at,
    )


def state_from_blob(blob: Any, now: int) -> AppState:
    """Build an AppState from a remote blob ``{"updatedAt", "data"}``.

    Missing or wrong-typed wrappers yield an empty state.
    """
    if not isinstance(blob, dict):
        return AppState()
    updated_at = to_ms(blob.get("updatedAt"))
    return _state_from_data(blob.get("data"), updated_at, now)


def state_from_record(record: Any, now: int) -> AppState:
    """Build an AppState from the flat local consolidated record."""
    if not isinstance(record, dict):
        return AppState()
    updated_at = to_ms(record.get("updatedAt"))
    return _state_from_data(record, updated_at, now)
