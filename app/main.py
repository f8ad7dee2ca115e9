from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles

from app.context import AppContext
from app.controller.task_list import Unauthenticated
from app.core.config import Settings, get_settings
from app.core.logging import setup_logging
from app.routers import auth, tasks

STATIC_DIR = Path(__file__).parent / "static"


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.context = await AppContext.create(settings)
        try:
            yield
        finally:
            await app.state.context.aclose()

    app = FastAPI(
        title="Todo List",
        description="Personal task list with realtime sync",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")

    # Include routers
    app.include_router(auth.router)
    app.include_router(tasks.router)

    @app.exception_handler(Unauthenticated)
    async def unauthenticated_handler(request: Request, exc: Unauthenticated):
        if "application/json" in request.headers.get("accept", "") or request.url.path.startswith("/tasks/drag"):
            return JSONResponse({"detail": "Not authenticated"}, status_code=status.HTTP_401_UNAUTHORIZED)
        return RedirectResponse("/auth", status_code=status.HTTP_303_SEE_OTHER)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


def build_app() -> FastAPI:
    """Uvicorn factory entry point: ``uvicorn app.main:build_app --factory``."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    return create_app(settings)
