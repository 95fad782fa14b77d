"""Parser for the SCIM filter subset accepted by this server.

Two shapes are understood::

    userName eq "jane@example.com"
    members[value eq "42"]

The first narrows a collection, the second selects a single membership in a
PATCH ``remove`` path. Anything else (other operators, ``and``/``or``,
missing quotes) parses to ``None`` and callers treat that as "match all".
Identity providers send attributes and operators we do not model, and
returning the whole collection keeps them working instead of failing the sync.
"""

import re
from dataclasses import dataclass
from typing import Optional

EQ = "eq"

# Attribute token, then "eq" surrounded by any whitespace.
_EQ_PATTERN = re.compile(r"(?P<attribute>\S+)\s+eq\s+", re.IGNORECASE)


@dataclass(frozen=True)
class FilterClause:
    attribute: str
    value: str
    operator: str = EQ
    # Set for value paths such as members[value eq "1"].
    parent: Optional[str] = None


def _parse_expression(expression: str) -> Optional[FilterClause]:
    match = _EQ_PATTERN.search(expression)
    if match is None:
        return None

    # The literal is whatever sits between the first pair of quotes after "eq".
    remainder = expression[match.end() :]
    start = remainder.find('"')
    end = remainder.find('"', start + 1)
    if start == -1 or end == -1:
        return None

    return FilterClause(attribute=match.group("attribute"), value=remainder[start + 1 : end])


def parse_filter(filter_string: Optional[str]) -> Optional[FilterClause]:
    if not filter_string or not filter_string.strip():
        return None
    text = filter_string.strip()

    bracket = text.find("[")
    if bracket > 0 and text.endswith("]"):
        parent = text[:bracket].strip()
        clause = _parse_expression(text[bracket + 1 : -1])
        if clause is None or not parent:
            return None
        return FilterClause(attribute=clause.attribute, value=clause.value, parent=parent)

    return _parse_expression(text)


def member_value_from_path(path: Optional[str]) -> Optional[str]:
    """Return ``<id>`` for a ``members[value eq "<id>"]`` path."""
    clause = parse_filter(path)
    if clause is None or clause.parent is None:
        return None
    if clause.parent.lower() != "members" or clause.attribute.lower() != "value":
        return None
    return clause.value
