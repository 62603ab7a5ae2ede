"""
Branch condition evaluation for ``conditional_split`` nodes.
"""

from typing import Any, Optional

STANDARD_FIELDS = ("first_name", "last_name", "email", "phone", "status")

_BOOL_WORDS = {"true": True, "yes": True, "false": False, "no": False}


def get_contact_field(contact: Any, field_name: str) -> Any:
    """Standard fields first, then custom fields matched case-insensitively."""
    if field_name in STANDARD_FIELDS:
        return getattr(contact, field_name, None)
    if field_name == "do_not_contact":
        return contact.do_not_contact

    wanted = field_name.lower()
    for key, value in (contact.custom_fields or {}).items():
        if str(key).lower() == wanted:
            return value
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _equals(field_value: Any, compare_value: str) -> bool:
    if isinstance(field_value, bool):
        word = _BOOL_WORDS.get(compare_value.strip().lower())
        return word is not None and word == field_value

    left = _as_number(field_value)
    right = _as_number(compare_value)
    if left is not None and right is not None:
        return left == right

    return _as_text(field_value).strip().lower() == compare_value.strip().lower()


def _compare(field_value: Any, compare_value: str) -> int:
    """Numeric ordering when both sides parse, lexical otherwise."""
    left = _as_number(field_value)
    right = _as_number(compare_value)
    if left is None or right is None:
        left, right = _as_text(field_value).lower(), compare_value.lower()
    return (left > right) - (left < right)


def evaluate_condition(field_value: Any, operator: str, compare_value: Optional[str]) -> bool:
    """Evaluate ``field_value <operator> compare_value``.

    Raises ValueError for an unknown operator; graphs are validated at save
    time so that only happens for rows written around the API.
    """
    compare_value = compare_value or ""

    if operator == "is_empty":
        return _as_text(field_value).strip() == ""
    if operator == "is_not_empty":
        return _as_text(field_value).strip() != ""
    if operator == "equals":
        return _equals(field_value, compare_value)
    if operator == "not_equals":
        return not _equals(field_value, compare_value)
    if operator == "contains":
        return compare_value.lower() in _as_text(field_value).lower()
    if operator == "not_contains":
        return compare_value.lower() not in _as_text(field_value).lower()
    if operator == "greater_than":
        return _compare(field_value, compare_value) > 0
    if operator == "less_than":
        return _compare(field_value, compare_value) < 0

    raise ValueError(f"Unknown comparison operator: {operator}")
