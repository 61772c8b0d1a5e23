"""Payload rendering and config merging helpers."""

import logging
from typing import Any, Dict, Optional

from jinja2 import Environment, StrictUndefined, TemplateError


logger = logging.getLogger(__name__)

# Payload files must keep their final newline
_environment = Environment(undefined=StrictUndefined, keep_trailing_newline=True)


def render_template(template_str: str, variables: Dict[str, Any], name: Optional[str] = None) -> str:
    """Render inline payload content with the configured variables.

    ``name`` is the destination path, used only in the error log.
    """
    try:
        return _environment.from_string(template_str).render(**variables)
    except TemplateError as e:
        logger.error(f"Cannot render content for {name or '<inline>'}: {e}")
        raise


def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge ``override`` over ``base`` without touching either.

    Mappings merge recursively, anything else replaces. A ``null`` in the
    override drops the key so the model default applies again.
    """
    merged = dict(base)

    for key, value in override.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_dicts(merged[key], value)
        else:
            merged[key] = value

    return merged
