"""
Template renderer — Jinja2 over the packaged templates.

Templates live in ``converge/templates/``. An optional override
directory is searched first, so a site can replace any script
(e.g. a customised bootstrap job) without forking the package.

Values interpolated into Groovy source must go through the ``groovy``
filter, which produces a quoted, escaped Groovy string literal.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
)

from converge.adapters.base import Renderer
from converge.core.errors import CollaboratorError

logger = logging.getLogger(__name__)


def groovy_string(value: Any) -> str:
    """Render ``value`` as a single-quoted Groovy string literal."""
    if value is None:
        return "null"
    text = str(value)
    escaped = (
        text.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    return f"'{escaped}'"


def groovy_bool(value: Any) -> str:
    return "true" if value else "false"


class JinjaRenderer(Renderer):
    """Render packaged templates with strict undefined-variable checking."""

    def __init__(self, override_dir: Path | None = None):
        loaders = []
        if override_dir is not None:
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("converge", "templates"))

        self._env = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        self._env.filters["groovy"] = groovy_string
        self._env.filters["groovy_bool"] = groovy_bool

    def render(self, template_id: str, variables: dict[str, Any]) -> bytes:
        try:
            template = self._env.get_template(template_id)
        except TemplateNotFound as e:
            raise CollaboratorError(f"Template not found: {template_id}") from e

        try:
            text = template.render(**variables)
        except TemplateError as e:
            raise CollaboratorError(f"Cannot render {template_id}: {e}") from e

        logger.debug("Rendered %s (%d bytes)", template_id, len(text))
        return text.encode("utf-8")
