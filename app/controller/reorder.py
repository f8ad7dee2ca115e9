"""
Drag-to-reorder over the derived view.

The order produced here only lives in the controller cache. Nothing is
written back to the store, so the next applied fetch restores creation
order. While a drag is in progress the controller defers
notification-triggered fetches; on drop the deferred fetch runs first and
the move is computed against the fresh view.
"""

import logging
from typing import Sequence, TypeVar

from cachetools import TTLCache

from app.models import TaskFilter, TaskResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")


def array_move(items: Sequence[T], old_index: int, new_index: int) -> list[T]:
    """Remove the item at ``old_index`` and reinsert it at ``new_index``."""
    out = list(items)
    item = out.pop(old_index)
    out.insert(new_index, item)
    return out


def reorder(view: Sequence[TaskResponse], drag_id: int, drop_id: int | None) -> list[TaskResponse] | None:
    """New ordering of ``view`` after dropping ``drag_id`` onto ``drop_id``.

    Returns None when there is nothing to do: no drop target, dropped on
    itself, or either id no longer in the view.
    """
    if drop_id is None or drag_id == drop_id:
        return None
    ids = [t.id for t in view]
    try:
        old_index = ids.index(drag_id)
        new_index = ids.index(drop_id)
    except ValueError:
        return None
    return array_move(view, old_index, new_index)


def merge_into_cache(cache: Sequence[TaskResponse], reordered: Sequence[TaskResponse]) -> list[TaskResponse]:
    # tasks hidden by the active filter keep their relative order after the view
    shown = {t.id for t in reordered}
    return list(reordered) + [t for t in cache if t.id not in shown]


class DragReorderHandler:
    """
    Tracks the one drag in flight for a controller.

    Start and end arrive as separate requests and may be handled out of
    order. An end for a drag that was never started is remembered for
    ``ended_ttl`` seconds so the late start is ignored instead of
    suspending resync with nobody left to resume it.
    """

    def __init__(self, controller, ended_ttl: float = 10.0):
        self._controller = controller
        self._drag_id: int | None = None
        self._ended_early: TTLCache = TTLCache(maxsize=64, ttl=ended_ttl)

    @property
    def dragging(self) -> int | None:
        return self._drag_id

    def start(self, drag_id: int) -> None:
        if self._ended_early.pop(drag_id, None) is not None:
            logger.debug("Ignoring drag start for already ended task=%s", drag_id)
            return
        self._drag_id = drag_id
        self._controller.suspend_resync()

    def abandon(self) -> None:
        self._drag_id = None

    def _finish(self, drag_id: int | None) -> int | None:
        if drag_id is None:
            drag_id = self._drag_id
        elif self._drag_id != drag_id:
            self._ended_early[drag_id] = True
        self._drag_id = None
        return drag_id

    async def drop(
        self,
        drop_id: int | None,
        task_filter: TaskFilter = TaskFilter.ALL,
        drag_id: int | None = None,
    ) -> bool:
        """Finish the gesture. Returns True when the cache order changed."""
        drag_id = self._finish(drag_id)
        await self._controller.resume_resync()

        if drag_id is None:
            return False
        reordered = reorder(self._controller.view(task_filter), drag_id, drop_id)
        if reordered is None:
            return False
        self._controller.apply_order(reordered)
        logger.debug("Reordered task=%s onto=%s filter=%s", drag_id, drop_id, task_filter.value)
        return True

    async def cancel(self, drag_id: int | None = None) -> None:
        self._finish(drag_id)
        await self._controller.resume_resync()
