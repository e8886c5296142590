"""Deterministic merge of two task list snapshots.

Tasks are reconciled last-writer-wins by score, deletions are tracked as
tombstones that suppress any copy whose score is not newer than the
deletion, and old tombstones are garbage collected.
"""

import logging
from typing import Any

from ..state.models import AppState, Task
from ..state.normalize import state_from_blob, task_score

logger = logging.getLogger(__name__)

TOMBSTONE_RETENTION_DAYS = 90
TOMBSTONE_RETENTION_MS = TOMBSTONE_RETENTION_DAYS * 24 * 60 * 60 * 1000


def merge_tombstones(a: dict[int, int], b: dict[int, int]) -> dict[int, int]:
    """Union of two tombstone maps keeping the latest deletion per id."""
    merged = dict(a)
    for task_id, deleted_at in b.items():
        merged[task_id] = max(merged.get(task_id, 0), deleted_at)
    return merged


def apply_tombstones(
    tasks: dict[int, Task],
    tombstones: dict[int, int],
    state_updated_at: int = 0,
) -> dict[int, Task]:
    """Drop every task whose tombstone is at least as new as its score."""
    survivors = {}
    for task_id, task in tasks.items():
        deleted_at = tombstones.get(task_id)
        if deleted_at is not None and deleted_at >= task_score(task, state_updated_at):
            continue
        survivors[task_id] = task
    return survivors


def prune_tombstones(tombstones: dict[int, int], now: int) -> dict[int, int]:
    """Remove tombstones older than the retention window."""
    return {
        task_id: deleted_at
        for task_id, deleted_at in tombstones.items()
        if now - deleted_at <= TOMBSTONE_RETENTION_MS
    }


def merge_states(existing: AppState, incoming: AppState, now: int) -> AppState:
    """Merge two normalized snapshots into one converged snapshot.

    Args:
        existing: The copy already held by the merging party.
        incoming: The copy that just arrived.
        now: Current time in ms; floors the result's ``updated_at`` and
            anchors tombstone pruning.

    Returns:
        A new AppState. Inputs are not modified.

    On an exact task score tie the ``existing`` copy is kept. On an
    ``updated_at`` tie the metadata of ``incoming`` is taken.
    """
    tombstones = merge_tombstones(existing.tombstones, incoming.tombstones)

    tasks: dict[int, Task] = {}
    scores: dict[int, int] = {}
    for state in (existing, incoming):
        for task in state.tasks.values():
            score = task_score(task, state.updated_at)
            if task.task_id not in tasks or score > scores[task.task_id]:
                tasks[task.task_id] = task
                scores[task.task_id] = score

    survivors = {
        task_id: task
        for task_id, task in tasks.items()
        if tombstones.get(task_id, 0) < scores[task_id]
    }
    kept_tombstones = prune_tombstones(tombstones, now)

    prefer_incoming = incoming.updated_at >= existing.updated_at
    meta = incoming if prefer_incoming else existing

    logger.debug(
        f"Merged {len(survivors)} tasks "
        f"({len(tasks) - len(survivors)} suppressed by tombstones), "
        f"{len(tombstones) - len(kept_tombstones)} tombstones pruned"
    )

    return AppState(
        tasks={task_id: survivors[task_id] for task_id in sorted(survivors)},
        tombstones=kept_tombstones,
        selected_group=meta.selected_group,
        user_name=meta.user_name,
        updated_at=max(existing.updated_at, incoming.updated_at, now),
    )


def merge_blobs(existing: Any, incoming: Any, now: int) -> dict[str, Any]:
    """Merge two decoded remote blobs of any shape into a wire blob.

    Never raises: unparsable fields are treated as absent.
    """
    merged = merge_states(
        state_from_blob(existing, now),
        state_from_blob(incoming, now),
        now,
    )
    return merged.to_blob()
