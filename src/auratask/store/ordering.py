# src/auratask/store/ordering.py

from __future__ import annotations

"""
Ordering keys for drag-and-drop lists.

Tasks carry a gapped integer `order_index`:
- appending uses max(existing) + gap, so there is room to insert later
- a full reorder re-spaces the given sequence to (position + 1) * gap

Groups use their list position directly (0, 1, 2, ...).
Keys are unique within a (group, completion-status) partition; they do not
need to be contiguous.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from ..core.models import Task, TaskGroup

DEFAULT_GAP = 10000

# Drop target id for the "no group" container.
UNGROUPED = "ungrouped"


def next_order_index(items: Iterable[Task | TaskGroup], gap: int = DEFAULT_GAP) -> int:
    """Key that places a new item after every item in `items`."""
    top = max((int(i.order_index or 0) for i in items), default=0)
    return top + gap


def respace(items: Sequence[Task], gap: int = DEFAULT_GAP) -> list[tuple[str, int]]:
    """(id, key) pairs for the sequence in its given order, keys strictly increasing."""
    return [(item.id, (pos + 1) * gap) for pos, item in enumerate(items)]


def position_keys(groups: Sequence[TaskGroup]) -> list[tuple[str, int]]:
    return [(g.id, pos) for pos, g in enumerate(groups)]


def next_group_index(groups: Sequence[TaskGroup]) -> int:
    if not groups:
        return 0
    return max(g.order_index for g in groups) + 1


def sort_tasks(tasks: Iterable[Task]) -> list[Task]:
    return sorted(tasks, key=lambda t: (t.order_index or 0, t.created_at))


def sort_groups(groups: Iterable[TaskGroup]) -> list[TaskGroup]:
    return sorted(groups, key=lambda g: (g.order_index, g.created_at))


def partition(tasks: Iterable[Task], group_id: str | None, *, completed: bool) -> list[Task]:
    """Tasks of one (group, completion-status) partition in display order."""
    return sort_tasks(t for t in tasks if t.group_id == group_id and t.is_completed == completed)


def move_item(seq: Sequence[Task], old_index: int, new_index: int) -> list[Task]:
    out = list(seq)
    item = out.pop(old_index)
    out.insert(new_index, item)
    return out


class DropKind(str, Enum):
    REORDER = "reorder"
    MOVE = "move"
    MOVE_AND_REORDER = "move_and_reorder"


@dataclass(slots=True, frozen=True)
class DropPlan:
    """
    What a drag-end should do.

    - REORDER: re-space `sequence` inside the task's own group
    - MOVE: reassign to `group_id`, placed at the end of that group
    - MOVE_AND_REORDER: reassign to `group_id`, then re-space `sequence`
      (destination tasks with the dragged task inserted at the drop position)
    """

    kind: DropKind
    task_id: str
    group_id: str | None = None
    sequence: tuple[Task, ...] = ()


def plan_task_drop(
        tasks: Sequence[Task],
        active_id: str,
        over_id: str,
        *,
        over_group_container: bool = False,
) -> DropPlan | None:
    """Translate a drag-end (dragged task, drop target) into a DropPlan. None means no-op."""
    active = next((t for t in tasks if t.id == active_id), None)
    if active is None:
        return None

    if over_group_container:
        target_group = None if over_id == UNGROUPED else over_id
        if target_group == active.group_id:
            return None
        return DropPlan(kind=DropKind.MOVE, task_id=active.id, group_id=target_group)

    over = next((t for t in tasks if t.id == over_id), None)
    if over is None or over.id == active.id:
        return None

    if over.group_id == active.group_id:
        current = partition(tasks, active.group_id, completed=active.is_completed)
        ids = [t.id for t in current]
        if active.id not in ids or over.id not in ids:
            return None
        old_index, new_index = ids.index(active.id), ids.index(over.id)
        if old_index == new_index:
            return None
        return DropPlan(
            kind=DropKind.REORDER,
            task_id=active.id,
            group_id=active.group_id,
            sequence=tuple(move_item(current, old_index, new_index)),
        )

    dest = [t for t in partition(tasks, over.group_id, completed=over.is_completed) if t.id != active.id]
    insert_at = next(i for i, t in enumerate(dest) if t.id == over.id)
    dest.insert(insert_at, active)
    return DropPlan(
        kind=DropKind.MOVE_AND_REORDER,
        task_id=active.id,
        group_id=over.group_id,
        sequence=tuple(dest),
    )
