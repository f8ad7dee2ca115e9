from pathlib import Path

from fastapi.templating import Jinja2Templates

from app.models import Priority, TaskFilter

TEMPLATES_DIR = Path(__file__).parent / "templates"

BADGE_COLOURS = {
    Priority.HIGH: "badge-red",
    Priority.MEDIUM: "badge-yellow",
    Priority.LOW: "badge-green",
}

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
templates.env.globals["priorities"] = list(Priority)
templates.env.globals["filters"] = list(TaskFilter)
templates.env.filters["badge"] = lambda priority: BADGE_COLOURS[Priority(priority)]
