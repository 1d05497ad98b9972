"""
Quarry ORM Grammar
==================

The only place identifiers and operators are spliced into SQL text.

Values never pass through here; they always travel as bound parameters.
The builder renders ``?`` placeholders and each driver translates them
to its own style when the statement is executed.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from quarry.orm.exceptions import InvalidIdentifier, InvalidOperator


_COLUMN_RE = re.compile(r"^[A-Za-z0-9_.]+$")
_TABLE_RE = re.compile(r"^[A-Za-z0-9_]+$")


class Operator(Enum):
    """SQL comparison operators."""

    EQ = "="
    NE = "!="
    NE_ALT = "<>"
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    LIKE = "LIKE"
    NOT_LIKE = "NOT LIKE"
    IN = "IN"
    NOT_IN = "NOT IN"
    IS = "IS"
    IS_NOT = "IS NOT"


class PlaceholderStyle(Enum):
    """Bound-parameter placeholder styles."""

    QMARK = "qmark"      # ?        sqlite
    NUMERIC = "numeric"  # $1, $2   postgresql
    FORMAT = "format"    # %s       mysql


def render_column(name: Any) -> str:
    """Validate a column reference (``col`` or ``table.col``)."""
    if not isinstance(name, str) or not _COLUMN_RE.fullmatch(name):
        raise InvalidIdentifier(name, "column")
    return name


def render_table(name: Any) -> str:
    """Validate a table name. Dots are not allowed."""
    if not isinstance(name, str) or not _TABLE_RE.fullmatch(name):
        raise InvalidIdentifier(name, "table")
    return name


def render_alias(name: Any) -> str:
    """Validate a select alias."""
    if not isinstance(name, str) or not _TABLE_RE.fullmatch(name):
        raise InvalidIdentifier(name, "alias")
    return name


def render_operator(operator: Any) -> Operator:
    """Normalise and validate a comparison operator."""
    if isinstance(operator, Operator):
        return operator
    if not isinstance(operator, str):
        raise InvalidOperator(operator)
    normalized = " ".join(operator.upper().split())
    try:
        return Operator(normalized)
    except ValueError:
        raise InvalidOperator(operator) from None


def render_select_column(column: Any) -> str:
    """
    Validate one select-list entry.

    Accepts ``*``, ``table.*``, a column, or ``column AS alias``.
    """
    if column == "*":
        return column
    if not isinstance(column, str):
        raise InvalidIdentifier(column, "column")
    if column.endswith(".*"):
        return f"{render_table(column[:-2])}.*"

    parts = column.split()
    if len(parts) == 3 and parts[1].upper() == "AS":
        return f"{render_column(parts[0])} AS {render_alias(parts[2])}"
    return render_column(column)


def translate_placeholders(sql: str, style: PlaceholderStyle) -> str:
    """
    Rewrite ``?`` placeholders for a driver.

    Placeholders are numbered in positional order. Question marks inside
    single-quoted literals are left alone. For FORMAT style, literal
    ``%`` characters are doubled so the driver does not read them as
    format markers.
    """
    if style is PlaceholderStyle.QMARK:
        return sql

    result = []
    index = 0
    in_literal = False

    for char in sql:
        if char == "'":
            in_literal = not in_literal
            result.append(char)
        elif char == "?" and not in_literal:
            index += 1
            result.append(f"${index}" if style is PlaceholderStyle.NUMERIC else "%s")
        elif char == "%" and style is PlaceholderStyle.FORMAT:
            result.append("%%")
        else:
            result.append(char)

    return "".join(result)
