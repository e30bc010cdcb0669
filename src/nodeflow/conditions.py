"""Condition evaluation against a single node.

Conditions are evaluated per field class: status fields compare enum
values, numeric fields compare floats, everything else is text. Evaluation
is pure; a pattern that fails to compile makes only its own condition false.
"""

from __future__ import annotations

import logging
import operator
import re
from collections.abc import Callable
from functools import lru_cache

from nodeflow.models import Node, Protocol
from nodeflow.rules import (
    Condition,
    ConditionGroup,
    NumericCondition,
    StatusCondition,
    TextCondition,
)

logger = logging.getLogger(__name__)

# Text field name -> accessor
TEXT_FIELDS: dict[str, Callable[[Node], str]] = {
    "id": lambda node: str(node.id),
    "name": lambda node: node.name,
    "link_name": lambda node: node.original_name,
    "link_address": lambda node: node.server,
    "link_host": lambda node: node.host,
    "link_port": lambda node: node.port,
    "link_country": lambda node: node.country_code,
    "protocol": lambda node: node.protocol.value,
    "source": lambda node: node.source,
    "group": lambda node: node.group,
    "dialer_proxy_name": lambda node: node.dialer_proxy_name,
    "link": lambda node: node.link,
    "tags": lambda node: node.tag_text,
}

NUMERIC_FIELDS: dict[str, Callable[[Node], float]] = {
    "speed": lambda node: node.speed_mbs,
    "delay_time": lambda node: float(node.delay_ms),
}

NUMERIC_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "equals": operator.eq,
    "not_equals": operator.ne,
    "greater_than": operator.gt,
    "less_than": operator.lt,
    "greater_or_equal": operator.ge,
    "less_or_equal": operator.le,
}


@lru_cache(maxsize=512)
def compile_pattern(pattern: str) -> re.Pattern[str] | None:
    """Compile a user supplied pattern, returning None if it is invalid.

    Results are cached per pattern; compiled patterns are immutable and safe
    to share across concurrent evaluations.
    """
    try:
        return re.compile(pattern)
    except re.error as e:
        logger.warning("Invalid regex %r: %s", pattern, e)
        return None


def text_value(node: Node, field: str) -> str:
    """Read a text field from a node. Unknown fields read as empty."""
    accessor = TEXT_FIELDS.get(field)
    return accessor(node) if accessor else ""


def _eval_status(cond: StatusCondition, node: Node) -> bool:
    actual = node.delay_status if cond.field == "delay_status" else node.speed_status
    if cond.operator == "equals":
        return actual is cond.value
    return actual is not cond.value


def _eval_numeric(cond: NumericCondition, node: Node) -> bool:
    compare = NUMERIC_OPERATORS[cond.operator]
    return compare(NUMERIC_FIELDS[cond.field](node), cond.value)


def _text_equals(field: str, actual: str, expected: str) -> bool:
    if field == "protocol":
        # "vmess" and "VMess" name the same protocol
        parsed = Protocol.parse(expected)
        if parsed is not None:
            return parsed.value == actual
    return actual == expected


def _eval_text(cond: TextCondition, node: Node) -> bool:
    actual = text_value(node, cond.field)
    if cond.operator == "equals":
        return _text_equals(cond.field, actual, cond.value)
    if cond.operator == "not_equals":
        return not _text_equals(cond.field, actual, cond.value)
    if cond.operator == "contains":
        return cond.value.lower() in actual.lower()
    if cond.operator == "not_contains":
        return cond.value.lower() not in actual.lower()
    pattern = compile_pattern(cond.value)
    return pattern is not None and pattern.search(actual) is not None


def evaluate_condition(cond: Condition, node: Node) -> bool:
    """Evaluate one atomic condition."""
    if isinstance(cond, StatusCondition):
        return _eval_status(cond, node)
    if isinstance(cond, NumericCondition):
        return _eval_numeric(cond, node)
    return _eval_text(cond, node)


def evaluate(group: ConditionGroup | None, node: Node) -> bool:
    """Evaluate a condition group against a node.

    Args:
        group: Conditions to test. An empty group is true; a missing group
            (None) matches nothing.
        node: Node under test

    Returns:
        True if the node satisfies the group
    """
    if group is None:
        return False
    if not group.conditions:
        return True
    results = (evaluate_condition(cond, node) for cond in group.conditions)
    if group.logic == "or":
        return any(results)
    return all(results)


def select(group: ConditionGroup | None, nodes: list[Node]) -> list[Node]:
    """Nodes matching ``group``, in input order."""
    return [node for node in nodes if evaluate(group, node)]
