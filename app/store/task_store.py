import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.models import Priority, Task, TaskCreate, TaskResponse
from app.realtime.feed import ChangeEvent, ChangeFeed, ChangeType, FeedError

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Remote task store failure (connection, constraint, permission)."""


class TaskNotFound(StoreError):
    def __init__(self, task_id: int):
        super().__init__(f"Task with id {task_id} not found")
        self.task_id = task_id


class TaskStore:
    """
    Owner-scoped access to the todos table.

    Every query filters on ``user_id`` so a caller can never read or touch
    another user's rows; such rows look exactly like missing ones. Each
    committed write is published on the change feed.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: ChangeFeed):
        self._session_factory = session_factory
        self._feed = feed

    async def select_by_owner(self, user_id: str) -> list[TaskResponse]:
        query = (
            select(Task)
            .where(Task.user_id == user_id)
            .order_by(Task.created_at.desc(), Task.id.desc())
        )
        try:
            async with self._session_factory() as db:
                result = await db.exec(query)
                tasks = result.all()
        except SQLAlchemyError as e:
            raise StoreError(f"select failed: {e}") from e
        return [TaskResponse.model_validate(t) for t in tasks]

    async def insert(self, title: str, priority: Priority, user_id: str) -> TaskResponse:
        data = TaskCreate(title=title, priority=priority)
        task = Task(title=data.title, priority=data.priority, user_id=user_id)
        try:
            async with self._session_factory() as db:
                db.add(task)
                await db.commit()
                await db.refresh(task)
        except SQLAlchemyError as e:
            raise StoreError(f"insert failed: {e}") from e

        logger.info("Inserted task id=%s user=%s priority=%s", task.id, user_id, task.priority.value)
        await self._publish(ChangeType.INSERT, user_id, task.id)
        return TaskResponse.model_validate(task)

    async def update_completed(self, task_id: int, user_id: str, completed: bool) -> TaskResponse:
        try:
            async with self._session_factory() as db:
                task = await self._get_owned(db, task_id, user_id)
                task.completed = completed
                db.add(task)
                await db.commit()
                await db.refresh(task)
        except SQLAlchemyError as e:
            raise StoreError(f"update failed: {e}") from e

        logger.info("Updated task id=%s user=%s completed=%s", task_id, user_id, completed)
        await self._publish(ChangeType.UPDATE, user_id, task_id)
        return TaskResponse.model_validate(task)

    async def delete(self, task_id: int, user_id: str) -> None:
        try:
            async with self._session_factory() as db:
                task = await self._get_owned(db, task_id, user_id)
                await db.delete(task)
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"delete failed: {e}") from e

        logger.info("Deleted task id=%s user=%s", task_id, user_id)
        await self._publish(ChangeType.DELETE, user_id, task_id)

    @staticmethod
    async def _get_owned(db: AsyncSession, task_id: int, user_id: str) -> Task:
        task = await db.get(Task, task_id)
        if task is None or task.user_id != user_id:
            raise TaskNotFound(task_id)
        return task

    async def _publish(self, change: ChangeType, user_id: str, task_id: int | None) -> None:
        # row is already committed; a lost event is healed by the next resync
        try:
            await self._feed.publish(ChangeEvent(type=change, user_id=user_id, task_id=task_id))
        except FeedError as e:
            logger.warning("Change notification lost type=%s task=%s: %s", change.value, task_id, e)
