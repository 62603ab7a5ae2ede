"""Tests for placeholder rendering."""

from types import SimpleNamespace

from reachout_engine.engine.renderer import (
    contact_to_placeholder_values,
    extract_placeholders,
    render,
)


def _contact(**overrides):
    fields = {
        "first_name": "Ada",
        "last_name": "Lovelace",
        "email": "ada@example.com",
        "phone": "+15551234567",
        "custom_fields": {},
    }
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestRender:
    def test_substitutes_known_placeholders(self):
        result = render("Hi {{first_name}}, call {{phone}}", {"first_name": "Ada", "phone": "555"})
        assert result.text == "Hi Ada, call 555"
        assert result.unresolved == []

    def test_unknown_placeholder_left_verbatim(self):
        result = render("Hi {{first_name}} from {{company}}", {"first_name": "Ada"})
        assert result.text == "Hi Ada from {{company}}"
        assert result.unresolved == ["company"]

    def test_none_value_counts_as_unresolved(self):
        result = render("{{nickname}}", {"nickname": None})
        assert result.text == "{{nickname}}"
        assert result.unresolved == ["nickname"]

    def test_empty_string_value_resolves(self):
        assert render("[{{last_name}}]", {"last_name": ""}).text == "[]"

    def test_values_are_not_rescanned(self):
        """A value containing a token is emitted literally in one pass."""
        result = render("{{a}}", {"a": "{{b}}", "b": "nope"})
        assert result.text == "{{b}}"

    def test_rendering_is_idempotent(self):
        values = {"first_name": "Ada", "city": "London"}
        once = render("{{first_name}} in {{city}} ({{unknown}})", values).text
        assert render(once, values).text == once

    def test_none_text_renders_empty(self):
        assert render(None, {}).text == ""

    def test_extract_placeholders_unique_in_order(self):
        assert extract_placeholders("{{b}} {{a}} {{b}}") == ["b", "a"]


class TestContactValues:
    def test_standard_fields_and_full_name(self):
        values = contact_to_placeholder_values(_contact())
        assert values["first_name"] == "Ada"
        assert values["full_name"] == "Ada Lovelace"
        assert values["email"] == "ada@example.com"

    def test_blank_standard_fields_resolve_to_empty(self):
        values = contact_to_placeholder_values(_contact(last_name=None, phone=None))
        assert values["last_name"] == ""
        assert values["phone"] == ""
        assert values["full_name"] == "Ada"

    def test_custom_fields_exposed_twice(self):
        values = contact_to_placeholder_values(_contact(custom_fields={"company": "Acme", "seats": 12}))
        assert values["company"] == "Acme"
        assert values["custom_company"] == "Acme"
        assert values["seats"] == "12"

    def test_standard_fields_win_name_clash(self):
        values = contact_to_placeholder_values(_contact(custom_fields={"first_name": "Imposter"}))
        assert values["first_name"] == "Ada"
        assert values["custom_first_name"] == "Imposter"

    def test_none_custom_values_are_skipped(self):
        values = contact_to_placeholder_values(_contact(custom_fields={"company": None}))
        assert "company" not in values
