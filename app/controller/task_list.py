import asyncio
import contextlib
import logging
from typing import Callable

from pydantic import ValidationError

from app.controller.reorder import DragReorderHandler, merge_into_cache
from app.controller.result import MutationResult
from app.controller.view import derive_view
from app.models import Priority, Session, TaskFilter, TaskResponse
from app.realtime.feed import ALL_EVENTS, ChangeFeed, FeedError, Subscription
from app.store.task_store import StoreError, TaskNotFound, TaskStore

logger = logging.getLogger(__name__)

Listener = Callable[["TaskListController"], None]

STORE_UNAVAILABLE = "Could not reach the task store, please try again"


def _store_failure(e: StoreError) -> MutationResult:
    # driver errors stay in the log
    if isinstance(e, TaskNotFound):
        return MutationResult.failure(e)
    return MutationResult.failure(STORE_UNAVAILABLE)


class Unauthenticated(Exception):
    """No active session; the caller should send the user to the login screen."""


class TaskListController:
    """
    Per-session cache of the user's tasks.

    The store is the source of truth: mutations never touch the cache, they
    rely on the change feed to trigger a full re-fetch. Each fetch carries a
    sequence number and a result is dropped if a later-issued fetch has
    already been applied.
    """

    def __init__(
        self,
        store: TaskStore,
        feed: ChangeFeed,
        *,
        backoff_initial: float = 0.5,
        backoff_max: float = 30.0,
        drag_timeout: float = 10.0,
    ):
        self._store = store
        self._feed = feed
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._drag_timeout = drag_timeout

        self._session: Session | None = None
        self._tasks: list[TaskResponse] = []
        self._issued_seq = 0
        self._applied_seq = 0
        self._listeners: list[Listener] = []

        self._subscription: Subscription | None = None
        self._listener_task: asyncio.Task | None = None
        self._closed = False

        self._resync_suspended = False
        self._resync_pending = False
        self._suspend_deadline: asyncio.TimerHandle | None = None
        self._expiry_task: asyncio.Task | None = None

        self.drag = DragReorderHandler(self, ended_ttl=drag_timeout)

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def tasks(self) -> list[TaskResponse]:
        return list(self._tasks)

    @property
    def subscribed(self) -> bool:
        return self._listener_task is not None and not self._listener_task.done()

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_user(self) -> str:
        if self._session is None:
            raise Unauthenticated("no active session")
        return self._session.user_id

    # re-render listeners

    def add_listener(self, callback: Listener) -> Callable[[], None]:
        self._listeners.append(callback)

        def remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self)
            except Exception:
                logger.exception("Task list listener failed")

    # reads

    async def initialize(self, session: Session | None) -> None:
        if session is None:
            raise Unauthenticated("no active session")
        self._session = session
        await self.fetch()

    async def fetch(self) -> list[TaskResponse]:
        """Replace the cache with the owner's tasks, newest first.

        StoreError propagates; there is no retry here.
        """
        user_id = self._require_user()
        self._issued_seq += 1
        seq = self._issued_seq

        rows = await self._store.select_by_owner(user_id)

        if seq < self._applied_seq:
            logger.debug("Discarding stale fetch seq=%s applied=%s user=%s", seq, self._applied_seq, user_id)
            return self.tasks
        self._applied_seq = seq
        self._tasks = list(rows)
        self._notify()
        return self.tasks

    def view(self, task_filter: TaskFilter = TaskFilter.ALL) -> list[TaskResponse]:
        return derive_view(self._tasks, task_filter)

    # writes

    async def add(self, title: str, priority: Priority | str = Priority.LOW) -> MutationResult:
        user_id = self._require_user()
        title = (title or "").strip()
        if not title:
            return MutationResult.noop()
        try:
            priority = Priority(priority)
        except ValueError:
            return MutationResult.failure(f"Unknown priority {priority!r}")

        try:
            await self._store.insert(title, priority, user_id)
        except ValidationError:
            return MutationResult.failure("Task text must be at most 200 characters")
        except StoreError as e:
            logger.warning("Add failed user=%s: %s", user_id, e)
            return _store_failure(e)
        return MutationResult.success()

    async def toggle_complete(self, task_id: int, current_completed: bool) -> MutationResult:
        user_id = self._require_user()
        try:
            await self._store.update_completed(task_id, user_id, not current_completed)
        except StoreError as e:
            logger.warning("Toggle failed task=%s user=%s: %s", task_id, user_id, e)
            return _store_failure(e)
        return MutationResult.success()

    async def remove(self, task_id: int) -> MutationResult:
        user_id = self._require_user()
        try:
            await self._store.delete(task_id, user_id)
        except StoreError as e:
            logger.warning("Delete failed task=%s user=%s: %s", task_id, user_id, e)
            return _store_failure(e)
        return MutationResult.success()

    # local ordering

    def apply_order(self, reordered: list[TaskResponse]) -> None:
        self._tasks = merge_into_cache(self._tasks, reordered)
        self._notify()

    @property
    def resync_suspended(self) -> bool:
        return self._resync_suspended

    def suspend_resync(self) -> None:
        """Defer notification-triggered fetches for at most ``drag_timeout`` seconds."""
        self._resync_suspended = True
        self._cancel_deadline()
        loop = asyncio.get_running_loop()
        self._suspend_deadline = loop.call_later(self._drag_timeout, self._suspension_expired)

    def _cancel_deadline(self) -> None:
        if self._suspend_deadline is not None:
            self._suspend_deadline.cancel()
            self._suspend_deadline = None

    def _suspension_expired(self) -> None:
        self._suspend_deadline = None
        if self._closed or not self._resync_suspended:
            return
        logger.info(
            "Drag not ended after %.1fs, resuming resync user=%s",
            self._drag_timeout,
            self._session.user_id if self._session else None,
        )
        self.drag.abandon()
        self._expiry_task = asyncio.create_task(self.resume_resync())

    async def resume_resync(self) -> None:
        self._cancel_deadline()
        if not self._resync_suspended:
            return
        self._resync_suspended = False
        if self._resync_pending:
            self._resync_pending = False
            await self._resync()

    # realtime

    async def subscribe_to_changes(self) -> None:
        """Start the notification listener; a second call while live is a no-op."""
        user_id = self._require_user()
        if self._closed:
            raise RuntimeError("controller is closed")
        if self.subscribed:
            return
        try:
            self._subscription = await self._feed.subscribe(user_id, ALL_EVENTS)
            logger.info("Subscribed to changes user=%s", user_id)
        except FeedError as e:
            # the listener keeps retrying with backoff
            logger.warning("Subscribe failed user=%s: %s", user_id, e)
            self._subscription = None
        self._listener_task = asyncio.create_task(self._listen(user_id), name=f"todos-listener:{user_id}")

    async def _resync(self) -> None:
        if self._resync_suspended:
            self._resync_pending = True
            return
        user_id = self._session.user_id if self._session else None
        try:
            await self.fetch()
        except StoreError as e:
            logger.warning("Resync failed user=%s: %s", user_id, e)
        except Exception:
            # keep the listener alive; the next notification retries
            logger.exception("Resync crashed user=%s", user_id)

    async def _listen(self, user_id: str) -> None:
        delay = self._backoff_initial
        while not self._closed:
            sub = self._subscription
            if sub is None:
                try:
                    sub = self._subscription = await self._feed.subscribe(user_id, ALL_EVENTS)
                except FeedError as e:
                    logger.warning("Resubscribe failed user=%s, retry in %.1fs: %s", user_id, delay, e)
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, self._backoff_max)
                    continue
                logger.info("Resubscribed to changes user=%s", user_id)
                # events published while the channel was down are lost
                await self._resync()

            try:
                async for _event in sub:
                    delay = self._backoff_initial
                    await self._resync()
                return
            except FeedError as e:
                logger.warning("Change feed dropped user=%s, resubscribing in %.1fs: %s", user_id, delay, e)
            await sub.close()
            self._subscription = None
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._backoff_max)

    async def unsubscribe(self) -> None:
        """Stop listening for changes. Safe to call any number of times."""
        task, self._listener_task = self._listener_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        sub, self._subscription = self._subscription, None
        if sub is not None:
            await sub.close()
            logger.info("Unsubscribed from changes user=%s", sub.user_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_deadline()
        expiry, self._expiry_task = self._expiry_task, None
        if expiry is not None and not expiry.done() and expiry is not asyncio.current_task():
            expiry.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await expiry
        await self.unsubscribe()
        self._listeners.clear()
