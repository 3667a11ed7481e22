"""
Template rendering for generated addon sources (config.cpp, mission.sqm).
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    TemplateSyntaxError,
    UndefinedError,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent.parent / "templates"


class TemplateRenderError(Exception):
    """Exception raised when a template cannot be rendered."""

    def __init__(self, message: str, template: str, field: Optional[str] = None):
        super().__init__(f"Template '{template}': {message}")
        self.template = template
        self.field = field


class RawText(str):
    """A pre-formatted string that is inserted without escaping."""


def escape_config_string(value: str) -> str:
    """Escape a value for use inside a double-quoted config string."""
    return value.replace('"', '""')


def _finalize(value: Any) -> Any:
    if isinstance(value, RawText):
        return value
    return escape_config_string(str(value))


def raw(value: Any) -> RawText:
    """Mark a value for verbatim insertion."""
    return RawText(value)


class TemplateRenderer:
    """Renders jinja2 templates into the class-based config grammar.

    ``{{ value }}`` substitutions are escaped for double-quoted strings,
    ``{{ value | raw }}`` inserts a pre-formatted value as-is. Any reference
    to a missing variable or attribute fails the render.
    """

    def __init__(self, template_dir: Optional[Union[str, Path]] = None):
        """
        Initialize the renderer.

        Args:
            template_dir: Directory containing Jinja2 templates
        """
        if template_dir is None:
            template_dir = DEFAULT_TEMPLATE_DIR

        self.template_dir = Path(template_dir)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            undefined=StrictUndefined,
            finalize=_finalize,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False
        )
        self.env.filters['raw'] = raw

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        """
        Render a template file from the template directory.

        Args:
            template_name: File name of the template, e.g. ``music_config.cpp.j2``
            context: Variables bound in the template

        Returns:
            Rendered text

        Raises:
            TemplateRenderError: If the template is missing, malformed or
                references an unbound variable
        """
        try:
            template = self.env.get_template(template_name)
        except TemplateNotFound:
            raise TemplateRenderError(f"not found in {self.template_dir}", template_name)
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"syntax error on line {e.lineno}: {e.message}", template_name) from e

        return self._render(template, template_name, context)

    def render_string(self, source: str, context: Dict[str, Any], name: str = "<string>") -> str:
        """Render an inline template source."""
        try:
            template = self.env.from_string(source)
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"syntax error on line {e.lineno}: {e.message}", name) from e

        return self._render(template, name, context)

    def _render(self, template, name: str, context: Dict[str, Any]) -> str:
        try:
            content = template.render(**context)
        except UndefinedError as e:
            raise TemplateRenderError(f"missing variable: {e.message}", name, field=e.message) from e
        except TemplateError as e:
            raise TemplateRenderError(str(e), name) from e

        logger.debug(f"Rendered template {name} ({len(content)} chars)")
        return content
