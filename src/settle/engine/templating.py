"""
Settle Templating Engine

Jinja2-based rendering of task parameters against a host's facts.
"""

import json
import os
from typing import Any, Callable, Dict, Mapping, Optional

from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError

from settle.engine.errors import TemplateError


def _filter_bool(value: Any) -> bool:
    """Convert value to boolean."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ('true', 'yes', '1', 'on')
    return bool(value)


CUSTOM_FILTERS: Dict[str, Callable[..., Any]] = {
    'bool': _filter_bool,
    'to_json': lambda x: json.dumps(x, sort_keys=True),
    'basename': lambda p: os.path.basename(str(p)),
    'dirname': lambda p: os.path.dirname(str(p)),
}


class TemplateEngine:
    """
    Jinja2 templating with Ansible-like behavior.

    Undefined variables are errors (StrictUndefined); strings without
    template markers are returned untouched.
    """

    def __init__(self):
        self.env = Environment(
            undefined=StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
        )
        for name, func in CUSTOM_FILTERS.items():
            self.env.filters[name] = func

    def render(self, template_str: Any, variables: Mapping[str, Any]) -> Any:
        """
        Render a template string with variables.

        Raises:
            TemplateError: If template is invalid or variable is undefined
        """
        if not isinstance(template_str, str):
            return template_str

        if '{{' not in template_str and '{%' not in template_str:
            return template_str

        try:
            return self.env.from_string(template_str).render(dict(variables))
        except UndefinedError as e:
            raise TemplateError(f"Undefined variable: {e.message}", template=template_str)
        except TemplateSyntaxError as e:
            raise TemplateError(f"Template syntax error: {e.message}", template=template_str)

    def render_recursive(self, data: Any, variables: Mapping[str, Any]) -> Any:
        """Recursively render templates in dicts and lists."""
        if isinstance(data, str):
            return self.render(data, variables)

        if isinstance(data, dict):
            return {k: self.render_recursive(v, variables) for k, v in data.items()}

        if isinstance(data, list):
            return [self.render_recursive(item, variables) for item in data]

        return data


_engine: Optional[TemplateEngine] = None


def get_template_engine() -> TemplateEngine:
    """Get the singleton template engine instance."""
    global _engine
    if _engine is None:
        _engine = TemplateEngine()
    return _engine


def render_recursive(data: Any, variables: Mapping[str, Any]) -> Any:
    """Convenience function to render templates recursively."""
    return get_template_engine().render_recursive(data, variables)
