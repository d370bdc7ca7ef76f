"""Email rendering with jinja2.

Templates live next to this module. A template name with no matching file
falls back to ``base.html``, which renders ``title`` and ``content``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


def render_email(template: str, data: dict[str, Any]) -> str:
    """Render ``template`` (without extension) with ``data``."""
    context = {"year": datetime.now(UTC).year, **data}
    try:
        compiled = _env.get_template(f"{template}.html")
    except TemplateNotFound:
        compiled = _env.get_template("base.html")
    return compiled.render(**context)


__all__ = ["TEMPLATE_DIR", "render_email"]
