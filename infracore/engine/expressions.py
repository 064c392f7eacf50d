"""
infracore - Interpolation Expressions

Helpers for ``${...}`` interpolation inside configuration values.

A string consisting of exactly one interpolation evaluates to the referenced
value with its own type; any other string renders every interpolation as
text. Rendering walks nested mappings and lists.
"""

from __future__ import annotations
from typing import Any, Callable, Dict, List
import json
import re

from infracore.models import UNKNOWN, ResourceAddress

INTERPOLATION_RE = re.compile(r"\$\{([^}]*)\}")

Resolver = Callable[[str], Any]


def is_single_interpolation(text: str) -> bool:
    """Check whether a string is exactly one ``${...}`` expression."""
    match = INTERPOLATION_RE.fullmatch(text.strip())
    return match is not None


def to_text(value: Any) -> str:
    """Render a resolved value inside a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def render(value: Any, resolver: Resolver) -> Any:
    """
    Resolve every interpolation in a (possibly nested) value.

    Args:
        value: Literal, string, list or mapping
        resolver: Callable mapping expression text to its value

    Returns:
        New value with interpolations replaced. A string containing an
        unknown value inside surrounding text becomes unknown as a whole.
    """
    if isinstance(value, dict):
        return {key: render(item, resolver) for key, item in value.items()}
    if isinstance(value, list):
        return [render(item, resolver) for item in value]
    if not isinstance(value, str) or "${" not in value:
        return value

    stripped = value.strip()
    if is_single_interpolation(stripped):
        return resolver(stripped[2:-1].strip())

    unknown = False

    def substitute(match: re.Match) -> str:
        nonlocal unknown
        resolved = resolver(match.group(1).strip())
        if resolved == UNKNOWN:
            unknown = True
        return to_text(resolved)

    rendered = INTERPOLATION_RE.sub(substitute, value)
    return UNKNOWN if unknown else rendered


def find_expressions(value: Any) -> List[str]:
    """Collect every interpolation expression in order of appearance."""
    found: List[str] = []

    def walk(item: Any) -> None:
        if isinstance(item, dict):
            for nested in item.values():
                walk(nested)
        elif isinstance(item, list):
            for nested in item:
                walk(nested)
        elif isinstance(item, str):
            for match in INTERPOLATION_RE.finditer(item):
                expression = match.group(1).strip()
                if expression not in found:
                    found.append(expression)

    walk(value)
    return found


def contains_unknown(value: Any) -> bool:
    """Check whether a value (or anything nested in it) is unknown."""
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return value == UNKNOWN


def lookup_path(value: Any, path: List[str]) -> Any:
    """
    Navigate an attribute path through nested mappings and lists.

    Returns None when a segment does not exist.
    """
    current = value
    for segment in path:
        if current == UNKNOWN:
            return UNKNOWN
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            position = int(segment)
            current = current[position] if position < len(current) else None
        else:
            return None
    return current


def resolve_references(
    value: Any,
    known: Dict[str, Dict[str, Any]],
    missing: Any = UNKNOWN,
) -> Any:
    """
    Resolve absolute resource references against known attribute values.

    Args:
        value: Rendered configuration value holding ``${type.name.attr}``
        known: Attributes per resource address
        missing: Value used for references to addresses not in ``known``

    Returns:
        New value with every reference replaced
    """
    def resolver(expression: str) -> Any:
        address, path = ResourceAddress.parse_reference(expression)
        attributes = known.get(str(address))
        if attributes is None:
            return missing
        return lookup_path(attributes, path)

    return render(value, resolver)
