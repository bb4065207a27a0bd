"""
Tests for the feedback-step template renderer.

These tests verify:
1. Placeholder forms ({{key}}, {{ key }}, {{context.key}}, dotted keys)
2. Literal passthrough of unresolved placeholders
3. Value formatting
4. Template cache re-parsing on content change
"""

from dataclasses import replace

from taskpilot.prompts.renderer import (
    TemplateCache,
    compile_template,
    find_missing_variables,
    format_value,
    render,
    schema_violations,
    validate_template,
)
from taskpilot.runtime.types import FeedbackStep, VariableSchema


class TestRender:
    """Tests for render()."""

    def test_simple_substitution(self):
        assert render("Hello {{name}}", {"name": "Ada"}) == "Hello Ada"

    def test_spaced_and_context_prefixed_placeholders(self):
        """Test that {{ key }} and {{context.key}} resolve like {{key}}."""
        out = render("{{ name }} / {{context.name}} / {{ context.name }}", {"name": "x"})
        assert out == "x / x / x"

    def test_unresolved_placeholder_passes_through(self):
        assert render("Hi {{missing}}!", {}) == "Hi {{missing}}!"
        assert render("Hi {{ context.missing }}", {"other": 1}) == "Hi {{ context.missing }}"

    def test_dotted_key_walks_nested_dicts(self):
        variables = {"user": {"name": "Bo", "team": {"id": 7}}}
        assert render("{{user.name}} in {{context.user.team.id}}", variables) == "Bo in 7"

    def test_flat_dotted_key_wins_over_nested_lookup(self):
        assert render("{{a.b}}", {"a.b": "flat", "a": {"b": "nested"}}) == "flat"

    def test_partial_nested_path_is_unresolved(self):
        assert render("{{user.email}}", {"user": {"name": "Bo"}}) == "{{user.email}}"

    def test_invalid_markers_are_left_alone(self):
        assert render("{{}} and {{ not valid! }}", {"not": 1}) == "{{}} and {{ not valid! }}"

    def test_repeated_placeholder(self):
        assert render("{{x}}-{{x}}", {"x": 1}) == "1-1"

    def test_no_variables(self):
        assert render("plain text", None) == "plain text"


class TestFormatValue:
    """Tests for value formatting."""

    def test_none_renders_empty(self):
        assert render("[{{v}}]", {"v": None}) == "[]"

    def test_list_is_comma_joined(self):
        assert format_value(["a", "b", 3]) == "a, b, 3"

    def test_dict_is_json(self):
        assert format_value({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'

    def test_bool_and_numbers(self):
        assert format_value(True) == "true"
        assert format_value(False) == "false"
        assert format_value(3) == "3"
        assert format_value(2.5) == "2.5"


class TestTemplateInspection:
    """Tests for placeholder discovery and schema checks."""

    def test_placeholders_in_order_without_duplicates(self):
        compiled = compile_template("{{b}} {{a}} {{context.b}}")
        assert compiled.placeholders == ["b", "a"]

    def test_find_missing_variables(self):
        assert find_missing_variables("{{a}} {{b}} {{a}} {{c.d}}", {"a": 1, "c": {"d": 2}}) == ["b"]

    def test_validate_template_reports_undeclared(self):
        schema = VariableSchema(properties={"a": {}, "b": {}})
        assert validate_template("{{a}} {{b.c}} {{context.d}}", schema) == ["d"]

    def test_schema_violations(self):
        schema = VariableSchema(
            properties={"priority": {"type": "string", "enum": ["High", "Low"]}},
            required=["title"],
        )
        violations = schema_violations(schema, {"priority": "Medium"})
        assert len(violations) == 2
        assert schema_violations(schema, {"priority": "High", "title": "x"}) == []


class TestTemplateCache:
    """Tests for the parsed-template cache."""

    def test_reuses_parse_for_same_content(self):
        cache = TemplateCache()
        step = FeedbackStep(id="fs1", name="greet", template_content="Hi {{name}}")

        first = cache.get(step)
        second = cache.get(step)

        assert first is second
        assert cache.render(step, {"name": "Ada"}) == "Hi Ada"

    def test_reparses_when_content_changes(self):
        cache = TemplateCache()
        step = FeedbackStep(id="fs1", name="greet", template_content="Hi {{name}}")
        assert cache.render(step, {"name": "Ada"}) == "Hi Ada"

        edited = replace(step, template_content="Bye {{name}}")
        assert cache.render(edited, {"name": "Ada"}) == "Bye Ada"
        assert len(cache) == 1

    def test_clear(self):
        cache = TemplateCache()
        cache.get(FeedbackStep(id="fs1", name="a", template_content="x"))
        cache.clear()
        assert len(cache) == 0

    def test_compiled_hash_matches_feedback_step(self):
        step = FeedbackStep(id="fs1", name="a", template_content="Hi {{name}}")
        assert TemplateCache().get(step).content_hash == step.content_hash
