from pathlib import Path
from typing import Any

from fastapi import Request
from fastapi.responses import HTMLResponse
from fastapi.templating import Jinja2Templates

from portal import __version__

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def create_templates() -> Jinja2Templates:
    return Jinja2Templates(directory=str(TEMPLATES_DIR))


def new_template_data(request: Request) -> dict[str, Any]:
    context = request.app.state.context
    # The session is missing when loading it was what failed.
    session = getattr(request.state, "session", None)
    authenticated = session is not None and session.data.is_authenticated
    return {
        "app_name": context.settings.app_name,
        "version": __version__,
        "profile": session.data.profile if authenticated else None,
    }


def render_page(
    request: Request,
    template: str,
    data: dict[str, Any] | None = None,
    status_code: int = 200,
) -> HTMLResponse:
    page_data = new_template_data(request)
    if data:
        page_data.update(data)
    templates: Jinja2Templates = request.app.state.context.templates
    return templates.TemplateResponse(request, template, page_data, status_code=status_code)
