import asyncio
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Form, Request, status
from fastapi.responses import RedirectResponse, StreamingResponse

from app.controller.result import MutationResult
from app.controller.task_list import TaskListController
from app.context import get_controller
from app.models import DragEnd, DragStart, Priority, TaskFilter
from app.templating import templates

router = APIRouter(tags=["tasks"])

SSE_KEEPALIVE_SECONDS = 15


def _back_to_list(task_filter: TaskFilter, result: MutationResult | None = None, priority: Priority | None = None):
    params = {"filter": task_filter.value}
    if priority is not None:
        params["priority"] = priority.value
    if result is not None and not result.ok:
        params["error"] = result.error
    return RedirectResponse(f"/?{urlencode(params)}", status_code=status.HTTP_303_SEE_OTHER)


def _parse_priority(raw: str | None) -> Priority:
    try:
        return Priority(raw)
    except ValueError:
        return Priority.LOW


@router.get("/")
async def task_list_page(
    request: Request,
    filter: str | None = None,
    priority: str | None = None,
    error: str | None = None,
    controller: TaskListController = Depends(get_controller),
):
    """Task list screen"""
    task_filter = TaskFilter.parse(filter)
    return templates.TemplateResponse(
        request,
        "index.html",
        {
            "email": controller.session.email,
            "tasks": controller.view(task_filter),
            "filter": task_filter,
            "selected_priority": _parse_priority(priority),
            "error": error,
        },
    )


@router.get("/tasks/list")
async def task_list_fragment(
    request: Request,
    filter: str | None = None,
    controller: TaskListController = Depends(get_controller),
):
    """Just the <ul>, re-requested by the page on every refresh event"""
    task_filter = TaskFilter.parse(filter)
    return templates.TemplateResponse(
        request,
        "_task_list.html",
        {"tasks": controller.view(task_filter), "filter": task_filter},
    )


@router.post("/tasks")
async def add_task(
    title: str = Form(default=""),
    priority: str = Form(default=Priority.LOW.value),
    filter: str | None = Form(default=None),
    controller: TaskListController = Depends(get_controller),
):
    selected = _parse_priority(priority)
    result = await controller.add(title, selected)
    return _back_to_list(TaskFilter.parse(filter), result, selected)


@router.post("/tasks/{task_id}/toggle")
async def toggle_task(
    task_id: int,
    completed: bool = Form(default=False),
    filter: str | None = Form(default=None),
    controller: TaskListController = Depends(get_controller),
):
    """``completed`` is the state the row showed when it was clicked"""
    result = await controller.toggle_complete(task_id, completed)
    return _back_to_list(TaskFilter.parse(filter), result)


@router.post("/tasks/{task_id}/delete")
async def delete_task(
    task_id: int,
    filter: str | None = Form(default=None),
    controller: TaskListController = Depends(get_controller),
):
    result = await controller.remove(task_id)
    return _back_to_list(TaskFilter.parse(filter), result)


@router.post("/tasks/drag/start", status_code=status.HTTP_204_NO_CONTENT)
async def drag_start(body: DragStart, controller: TaskListController = Depends(get_controller)):
    controller.drag.start(body.drag_id)


@router.post("/tasks/drag/end")
async def drag_end(body: DragEnd, controller: TaskListController = Depends(get_controller)):
    if body.drop_id is None:
        await controller.drag.cancel(body.drag_id)
        return {"reordered": False}
    reordered = await controller.drag.drop(body.drop_id, body.filter, drag_id=body.drag_id)
    return {"reordered": reordered}


@router.get("/tasks/events")
async def task_events(request: Request, controller: TaskListController = Depends(get_controller)):
    """Server-Sent Events: a ``refresh`` event whenever the cached list changes."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def on_change(_controller: TaskListController) -> None:
        # coalesce bursts; one pending refresh is enough
        if queue.empty():
            queue.put_nowait("refresh")

    remove_listener = controller.add_listener(on_change)

    async def event_generator():
        try:
            yield "retry: 3000\n\n"
            while not controller.closed:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event}\ndata: {{}}\n\n"
        finally:
            remove_listener()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )
