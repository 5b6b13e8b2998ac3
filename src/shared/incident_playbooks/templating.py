"""Jinja2 rendering of action parameters.

String parameters may reference the incident and prior results, e.g.
``"{{ incident.details.source_ip }}"``. Rendering uses a sandboxed
environment so templates cannot reach attributes outside the context.
"""

import logging
from typing import Any, Dict

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

_environment = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)


def render_value(value: Any, context: Dict[str, Any]) -> Any:
    """Render a parameter value; non-template values are returned as-is."""
    if isinstance(value, str) and ("{{" in value or "{%" in value):
        try:
            return _environment.from_string(value).render(**context)
        except TemplateError as e:
            logger.warning(f"Template render error for {value!r}: {e}")
            return value
    if isinstance(value, dict):
        return render_parameters(value, context)
    if isinstance(value, list):
        return [render_value(v, context) for v in value]
    return value


def render_parameters(parameters: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
    """Render Jinja2 templates in action parameters.

    Args:
        parameters: Parameters with possible Jinja2 templates
        context: Template context

    Returns:
        Parameters with rendered values
    """
    return {key: render_value(value, context) for key, value in parameters.items()}
