import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from app.auth.session import AuthEvent, SessionProvider
from app.controller.task_list import TaskListController, Unauthenticated
from app.core.config import Settings
from app.database import create_db_and_tables, create_engine, create_session_factory
from app.models import Session
from app.realtime.feed import ChangeFeed, FeedError, InMemoryChangeFeed, RedisChangeFeed, create_feed
from app.store.task_store import TaskStore

logger = logging.getLogger(__name__)


class ControllerRegistry:
    """
    One TaskListController per live session token.

    A controller is created on first use of a session and torn down when
    that session signs out or expires. Acquiring a different token always
    yields a fresh controller with its own subscription.
    """

    def __init__(self, store: TaskStore, feed: ChangeFeed, settings: Settings):
        self._store = store
        self._feed = feed
        self._settings = settings
        self._controllers: dict[str, TaskListController] = {}
        self._starting: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._controllers)

    def get(self, token: str) -> TaskListController | None:
        return self._controllers.get(token)

    def _new_controller(self) -> TaskListController:
        return TaskListController(
            self._store,
            self._feed,
            backoff_initial=self._settings.realtime_backoff_initial,
            backoff_max=self._settings.realtime_backoff_max,
            drag_timeout=self._settings.drag_timeout_seconds,
        )

    async def acquire(self, session: Session | None) -> TaskListController:
        """Controller for ``session``, started on first use.

        Concurrent first requests for one token share a single start; a
        controller is only handed out once it is fetched and subscribed.
        """
        if session is None:
            raise Unauthenticated("no active session")
        await self.prune_expired()

        controller = self._controllers.get(session.token)
        if controller is not None and not controller.closed:
            return controller

        starting = self._starting.get(session.token)
        if starting is None:
            starting = asyncio.create_task(self._start(session), name=f"todos-start:{session.user_id}")
            self._starting[session.token] = starting
        # a disconnecting client must not cancel the start for everyone else
        return await asyncio.shield(starting)

    async def _start(self, session: Session) -> TaskListController:
        controller = self._new_controller()
        try:
            await controller.initialize(session)
            await controller.subscribe_to_changes()
        except BaseException:
            await controller.close()
            raise
        finally:
            self._starting.pop(session.token, None)
        self._controllers[session.token] = controller
        logger.info("Controller started user=%s live=%d", session.user_id, len(self._controllers))
        return controller

    async def release(self, token: str) -> None:
        starting = self._starting.pop(token, None)
        if starting is not None:
            starting.cancel()
        controller = self._controllers.pop(token, None)
        if controller is not None:
            await controller.close()
            logger.info("Controller released live=%d", len(self._controllers))

    async def prune_expired(self) -> None:
        for token, controller in list(self._controllers.items()):
            if controller.session is not None and controller.session.expired:
                await self.release(token)

    async def on_auth_change(self, event: AuthEvent, session: Session) -> None:
        if event is AuthEvent.SIGNED_OUT:
            await self.release(session.token)

    async def close(self) -> None:
        for starting in list(self._starting.values()):
            starting.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await starting
        for token in list(self._controllers):
            await self.release(token)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    feed: ChangeFeed
    store: TaskStore
    sessions: SessionProvider
    controllers: ControllerRegistry
    _unsubscribers: list = field(default_factory=list)

    @classmethod
    async def create(cls, settings: Settings) -> "AppContext":
        engine = create_engine(settings.database_url, echo=settings.database_echo)
        await create_db_and_tables(engine)
        session_factory = create_session_factory(engine)

        feed = create_feed(settings)
        if isinstance(feed, RedisChangeFeed):
            try:
                await feed.connect()
            except FeedError as e:
                # Degraded mode: notifications stay inside this process
                logger.error("Realtime backend unavailable, using in-process feed: %s", e)
                await feed.close()
                feed = InMemoryChangeFeed(channel_prefix=settings.realtime_channel_prefix)

        store = TaskStore(session_factory, feed)
        sessions = SessionProvider.from_settings(session_factory, settings)
        controllers = ControllerRegistry(store, feed, settings)

        ctx = cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            feed=feed,
            store=store,
            sessions=sessions,
            controllers=controllers,
        )
        ctx._unsubscribers.append(sessions.on_change(controllers.on_auth_change))
        logger.info("Application context ready (realtime=%s)", type(feed).__name__)
        return ctx

    async def aclose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.controllers.close()
        await self.feed.close()
        await self.engine.dispose()
        logger.info("Application context closed")


# FastAPI dependencies


def get_context(request: Request) -> AppContext:
    return request.app.state.context


async def get_session(request: Request, ctx: AppContext = Depends(get_context)) -> Session | None:
    token = request.cookies.get(ctx.settings.session_cookie)
    return await ctx.sessions.get_current_session(token)


async def get_controller(
    session: Session | None = Depends(get_session),
    ctx: AppContext = Depends(get_context),
) -> TaskListController:
    return await ctx.controllers.acquire(session)
