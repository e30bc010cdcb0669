"""Whitelist, blacklist and threshold filtering over the node pool.

Each stage keeps input order and is skipped when unconfigured. Within a
stage the blacklist is checked first and always wins.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from nodeflow.conditions import compile_pattern
from nodeflow.models import Node
from nodeflow.rules import (
    DEFAULT_FILTER_ORDER,
    FilterRules,
    FilterStage,
    ListFilter,
    NameFilter,
    NameRule,
    PerformanceThresholds,
)

logger = logging.getLogger(__name__)

StageFn = Callable[[list[Node], FilterRules], list[Node]]


def _list_verdict(values: Iterable[str], rule: ListFilter) -> bool:
    """True if a node with ``values`` passes the list filter."""
    values = set(values)
    if values & rule.blacklist:
        return False
    if rule.whitelist:
        return bool(values & rule.whitelist)
    return True


def _country_stage(nodes: list[Node], rules: FilterRules) -> list[Node]:
    rule = ListFilter(
        whitelist={code.upper() for code in rules.country.whitelist},
        blacklist={code.upper() for code in rules.country.blacklist},
    )
    return [node for node in nodes if _list_verdict([node.country_code], rule)]


def _tag_stage(nodes: list[Node], rules: FilterRules) -> list[Node]:
    return [node for node in nodes if _list_verdict(node.tags, rules.tag)]


def _protocol_matches(node: Node, names: frozenset[str]) -> bool:
    return any(node.protocol.matches(name) for name in names)


def _protocol_stage(nodes: list[Node], rules: FilterRules) -> list[Node]:
    rule = rules.protocol
    kept = []
    for node in nodes:
        if _protocol_matches(node, rule.blacklist):
            continue
        if rule.whitelist and not _protocol_matches(node, rule.whitelist):
            continue
        kept.append(node)
    return kept


def name_rule_matches(rule: NameRule, name: str) -> bool:
    """Test one name rule. Disabled, empty or invalid rules never match."""
    if not rule.active:
        return False
    if rule.match_mode == "regex":
        pattern = compile_pattern(rule.pattern)
        return pattern is not None and pattern.search(name) is not None
    return rule.pattern in name


def _name_verdict(name: str, rules: NameFilter) -> bool:
    if any(name_rule_matches(rule, name) for rule in rules.blacklist):
        return False
    whitelist = [rule for rule in rules.whitelist if rule.active]
    if whitelist:
        return any(name_rule_matches(rule, name) for rule in whitelist)
    return True


def _name_stage(nodes: list[Node], rules: FilterRules) -> list[Node]:
    return [node for node in nodes if _name_verdict(node.original_name, rules.name)]


def _performance_verdict(node: Node, limits: PerformanceThresholds) -> bool:
    if limits.delay_time_max > 0:
        if node.delay_ms > limits.delay_time_max:
            return False
        if limits.require_delay and node.delay_ms <= 0:
            return False
    if limits.min_speed > 0 and node.speed_mbs < limits.min_speed:
        return False
    return True


def _performance_stage(nodes: list[Node], rules: FilterRules) -> list[Node]:
    return [node for node in nodes if _performance_verdict(node, rules.performance)]


STAGES: dict[FilterStage, StageFn] = {
    FilterStage.COUNTRY: _country_stage,
    FilterStage.TAG: _tag_stage,
    FilterStage.PROTOCOL: _protocol_stage,
    FilterStage.NAME: _name_stage,
    FilterStage.PERFORMANCE: _performance_stage,
}


def is_configured(stage: FilterStage, rules: FilterRules) -> bool:
    """Whether a stage has anything to do."""
    if stage is FilterStage.COUNTRY:
        return rules.country.configured
    if stage is FilterStage.TAG:
        return rules.tag.configured
    if stage is FilterStage.PROTOCOL:
        return rules.protocol.configured
    if stage is FilterStage.NAME:
        return rules.name.configured
    return rules.performance.configured


def resolve_order(
    rules: FilterRules,
    default: Sequence[FilterStage] | None = None,
) -> tuple[FilterStage, ...]:
    """Stage order: the rules' own order, else ``default``, else built-in.

    A partial order only moves the stages it names to the front. Stages it
    leaves out still run afterwards, in built-in order.
    """
    if rules.order is not None:
        leading = tuple(rules.order)
    elif default:
        leading = tuple(FilterStage(stage) for stage in default)
    else:
        return DEFAULT_FILTER_ORDER
    return leading + tuple(stage for stage in DEFAULT_FILTER_ORDER if stage not in leading)


def apply(
    pool: Sequence[Node],
    rules: FilterRules,
    order: Sequence[FilterStage] | None = None,
) -> list[Node]:
    """Run the filter stages over ``pool``.

    Args:
        pool: Candidate nodes, in priority order
        rules: Filter configuration
        order: Fallback stage order when the rules do not carry one

    Returns:
        Surviving nodes in their original relative order. An empty result
        is a valid outcome.
    """
    nodes = list(pool)
    for stage in resolve_order(rules, order):
        if not is_configured(stage, rules):
            continue
        before = len(nodes)
        nodes = STAGES[stage](nodes, rules)
        logger.debug("Filter stage %s: %d -> %d nodes", stage.value, before, len(nodes))
    return nodes

