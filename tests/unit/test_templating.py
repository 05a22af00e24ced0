"""
Tests for rendering task parameters.
"""

import pytest

from settle.engine.errors import TemplateError
from settle.engine.templating import TemplateEngine, render_recursive


@pytest.fixture
def engine():
    return TemplateEngine()


class TestRender:
    """Test single-value rendering."""

    def test_plain_strings_untouched(self, engine):
        """Test strings without markers are returned as-is."""
        assert engine.render("no {braces here", {}) == "no {braces here"
        assert engine.render(42, {}) == 42

    def test_variables(self, engine):
        """Test facts are substituted."""
        assert engine.render("Hello from {{ inventory_hostname }}\n", {"inventory_hostname": "web1"}) == "Hello from web1\n"

    def test_undefined_is_error(self, engine):
        """Test StrictUndefined turns a missing variable into TemplateError."""
        with pytest.raises(TemplateError, match="Undefined variable") as exc_info:
            engine.render("{{ missing }}", {})
        assert exc_info.value.template == "{{ missing }}"

    def test_syntax_error(self, engine):
        """Test malformed templates raise TemplateError."""
        with pytest.raises(TemplateError, match="Template syntax error"):
            engine.render("{{ oops", {})

    @pytest.mark.parametrize("template,facts,expected", [
        ("{{ flag | bool }}", {"flag": "yes"}, "True"),
        ("{{ flag | bool }}", {"flag": "off"}, "False"),
        ("{{ flag | bool }}", {"flag": 0}, "False"),
        ("{{ data | to_json }}", {"data": {"b": 1, "a": [2]}}, '{"a": [2], "b": 1}'),
        ("{{ path | basename }}", {"path": "/var/www/html/index.html"}, "index.html"),
        ("{{ path | dirname }}", {"path": "/var/www/html/index.html"}, "/var/www/html"),
        ("{{ port | default(80) }}", {}, "80"),
    ])
    def test_filters(self, engine, template, facts, expected):
        """Test the custom filters alongside Jinja2's own."""
        assert engine.render(template, facts) == expected


class TestRenderRecursive:
    """Test rendering nested parameters."""

    def test_nested(self):
        """Test dicts and lists are walked and non-strings kept."""
        params = {
            "name": ["{{ pkg }}", "curl"],
            "opts": {"dest": "/srv/{{ app }}/index.html", "mode": 420},
            "enabled": True,
        }

        rendered = render_recursive(params, {"pkg": "nginx", "app": "site"})

        assert rendered == {
            "name": ["nginx", "curl"],
            "opts": {"dest": "/srv/site/index.html", "mode": 420},
            "enabled": True,
        }
