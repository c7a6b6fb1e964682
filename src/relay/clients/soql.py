"""SOQL query construction with literal escaping.

Criteria are plain dicts of ``field -> value``; a value may also be an
``(operator, value)`` tuple for comparisons other than equality, e.g.
``{"StageName": "Prospecting", "Abandoned_Date__c": ("<", cutoff)}``.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime, timezone
from typing import Any

OPERATORS = frozenset({"=", "!=", "<", "<=", ">", ">="})

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")
_ORDER_BY = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*(\s+(ASC|DESC))?$", re.IGNORECASE)


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid SOQL identifier: {name!r}")
    return name


def soql_literal(value: Any) -> str:
    """Render a Python value as a SOQL literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{text}'"


def build_where(criteria: Mapping[str, Any]) -> str:
    clauses = []
    for field, value in criteria.items():
        operator = "="
        if isinstance(value, tuple):
            operator, value = value
            if operator not in OPERATORS:
                raise ValueError(f"Unsupported SOQL operator: {operator!r}")
        clauses.append(f"{_check_identifier(field)} {operator} {soql_literal(value)}")
    return " AND ".join(clauses)


def build_soql(
    sobject: str,
    fields: Iterable[str],
    criteria: Mapping[str, Any] | None = None,
    order_by: str | None = None,
    limit: int | None = None,
) -> str:
    """Build a SELECT statement.

    Args:
        sobject: CRM object API name.
        fields: Field API names to select.
        criteria: Conditions joined with AND.
        order_by: Optional ``"Field [ASC|DESC]"`` clause.
        limit: Optional row limit.

    Returns:
        The SOQL string.
    """
    field_list = ", ".join(_check_identifier(f) for f in fields)
    soql = f"SELECT {field_list} FROM {_check_identifier(sobject)}"
    if criteria:
        soql += f" WHERE {build_where(criteria)}"
    if order_by:
        if not _ORDER_BY.match(order_by.strip()):
            raise ValueError(f"Invalid SOQL ORDER BY clause: {order_by!r}")
        soql += f" ORDER BY {order_by.strip()}"
    if limit is not None:
        soql += f" LIMIT {int(limit)}"
    return soql
