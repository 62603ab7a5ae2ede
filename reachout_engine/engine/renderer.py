"""
Placeholder rendering.

Tokens look like ``{{first_name}}``. Rendering is a single pass, so a
value is never itself re-scanned for tokens within one call. Tokens
without a value are left in place and reported as unresolved.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


@dataclass
class RenderResult:
    text: str
    unresolved: List[str] = field(default_factory=list)


def extract_placeholders(text: str) -> List[str]:
    """Unique placeholder names in order of first appearance."""
    seen: Dict[str, None] = {}
    for match in PLACEHOLDER_PATTERN.finditer(text or ""):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render(text: Optional[str], values: Mapping[str, Any]) -> RenderResult:
    """Substitute ``{{key}}`` tokens from ``values``."""
    unresolved: Dict[str, None] = {}

    def _replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = values.get(key)
        if value is None:
            unresolved.setdefault(key, None)
            return match.group(0)
        return str(value)

    rendered = PLACEHOLDER_PATTERN.sub(_replace, text or "")
    return RenderResult(text=rendered, unresolved=list(unresolved))


def contact_to_placeholder_values(contact: Any) -> Dict[str, str]:
    """Build the placeholder map for a contact.

    Standard fields always resolve (to "" when blank). Custom fields are
    exposed under their own key and as ``custom_<key>``; standard fields win
    on a name clash.
    """
    first = contact.first_name or ""
    last = contact.last_name or ""
    values: Dict[str, str] = {}

    for key, value in (getattr(contact, "custom_fields", None) or {}).items():
        if value is None:
            continue
        name = str(key)
        values[f"custom_{name}"] = str(value)
        values[name] = str(value)

    values.update(
        {
            "first_name": first,
            "last_name": last,
            "full_name": " ".join(part for part in (first, last) if part),
            "email": contact.email or "",
            "phone": contact.phone or "",
        }
    )
    return values
