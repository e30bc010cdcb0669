"""Proxy chain resolution.

A chain is a list of hops from the entry (hop 0) to the last hop, plus a
target selecting which nodes egress through the last hop. Resolution turns
that into synthesized proxy groups and a dialer map: node id -> the proxy
identity the node must dial through. Identities are display names for
nodes and group names for groups.

Structural failures raise ChainResolutionError. Nothing is substituted for
a hop that cannot be resolved.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Sequence
from dataclasses import dataclass, field, replace

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from nodeflow.conditions import evaluate
from nodeflow.errors import ChainResolutionError
from nodeflow.models import RenderedNode
from nodeflow.rules import (
    AllTarget,
    ChainHop,
    ChainRule,
    ConditionsTarget,
    CustomGroupHop,
    DynamicNodeHop,
    ProxyChain,
    SpecifiedNodeHop,
    SpecifiedNodeTarget,
    TemplateGroupHop,
    URLTestConfig,
)

logger = logging.getLogger(__name__)


class ProxyGroup(BaseModel):
    """A proxy group synthesized from a custom_group hop."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    type: str = "select"
    proxies: tuple[str, ...] = ()
    url_test_config: URLTestConfig | None = None


@dataclass(frozen=True)
class ResolvedHop:
    """Outcome of one hop.

    Attributes:
        index: Zero-based hop position
        kind: Hop type
        identity: Proxy identity later hops and targets dial through
        is_group: Whether ``identity`` names a group
        node_ids: Nodes serving this hop (members or the chosen node)
        dialer: Identity of the previous hop, empty for the entry
    """

    index: int
    kind: str
    identity: str
    is_group: bool
    node_ids: tuple[int, ...] = ()
    dialer: str = ""


@dataclass
class ChainResolution:
    """Resolved wiring of one chain."""

    hops: list[ResolvedHop] = field(default_factory=list)
    groups: list[ProxyGroup] = field(default_factory=list)
    hop_dialers: dict[int, str] = field(default_factory=dict)
    """Intermediate hop nodes -> previous hop identity"""

    target_dialers: dict[int, str] = field(default_factory=dict)
    """Target nodes -> last hop identity"""

    @property
    def final_dialer(self) -> str:
        return self.hops[-1].identity if self.hops else ""

    @property
    def dialer_map(self) -> dict[int, str]:
        return {**self.target_dialers, **self.hop_dialers}


def select_node(
    matched: Sequence[RenderedNode],
    mode: str,
    rng: random.Random,
) -> RenderedNode:
    """Pick one node out of a non-empty match list.

    ``first`` takes pool order, ``random`` draws from ``rng`` and ``fastest``
    takes the lowest positive delay, ties going to the earlier node. With no
    positive delay among the matches ``fastest`` falls back to the first.
    """
    if mode == "random":
        return rng.choice(list(matched))
    if mode == "fastest":
        measured = [r for r in matched if r.node.delay_ms > 0]
        if measured:
            return min(measured, key=lambda r: r.node.delay_ms)
    return matched[0]


def _match(hop: CustomGroupHop | DynamicNodeHop, nodes: Sequence[RenderedNode]) -> list[RenderedNode]:
    return [r for r in nodes if evaluate(hop.node_conditions, r.node)]


def _resolve_hop(
    index: int,
    hop: ChainHop,
    nodes: Sequence[RenderedNode],
    by_id: dict[int, RenderedNode],
    rng: random.Random,
) -> tuple[ResolvedHop, list[RenderedNode], ProxyGroup | None]:
    if isinstance(hop, TemplateGroupHop):
        name = hop.group_name.strip()
        if not name:
            raise ChainResolutionError("template group name is empty", hop=index)
        return ResolvedHop(index, hop.type, name, True), [], None

    if isinstance(hop, CustomGroupHop):
        name = hop.group_name.strip()
        if not name:
            raise ChainResolutionError("custom group name is empty", hop=index)
        members = _match(hop, nodes)
        if not members:
            raise ChainResolutionError(f"custom group '{name}' matched no nodes", hop=index)
        group = ProxyGroup(
            name=name,
            type=hop.group_type,
            proxies=tuple(r.display_name for r in members),
            url_test_config=hop.url_test_config,
        )
        return ResolvedHop(index, hop.type, name, True), members, group

    if isinstance(hop, DynamicNodeHop):
        matched = _match(hop, nodes)
        if not matched:
            raise ChainResolutionError("dynamic node conditions matched no nodes", hop=index)
        chosen = select_node(matched, hop.select_mode, rng)
        logger.debug("Hop %d: %s pick of %d -> %s", index + 1, hop.select_mode, len(matched), chosen.display_name)
        return ResolvedHop(index, hop.type, chosen.display_name, False), [chosen], None

    if isinstance(hop, SpecifiedNodeHop):
        chosen = by_id.get(hop.node_id)
        if chosen is None:
            raise ChainResolutionError(f"node {hop.node_id} is not in the pool", hop=index)
        return ResolvedHop(index, hop.type, chosen.display_name, False), [chosen], None

    raise ChainResolutionError(f"unknown hop type {type(hop).__name__}", hop=index)


def _target_nodes(
    chain: ProxyChain,
    nodes: Sequence[RenderedNode],
    by_id: dict[int, RenderedNode],
) -> list[RenderedNode]:
    target = chain.target
    if isinstance(target, AllTarget):
        return list(nodes)
    if isinstance(target, SpecifiedNodeTarget):
        chosen = by_id.get(target.node_id)
        if chosen is None:
            raise ChainResolutionError(f"target node {target.node_id} is not in the pool")
        return [chosen]
    if isinstance(target, ConditionsTarget):
        return [r for r in nodes if evaluate(target.conditions, r.node)]
    raise ChainResolutionError(f"unknown target type {type(target).__name__}")


def resolve_chain(
    chain: ProxyChain,
    nodes: Sequence[RenderedNode],
    rng: random.Random | None = None,
) -> ChainResolution:
    """Resolve one chain against the processed node list.

    Hop 0 is the entry and dials directly. Nodes serving a later hop dial
    through the previous hop. Target nodes dial through the last hop,
    except nodes that already serve as a hop of this chain.

    Args:
        chain: Hops and target
        nodes: Final node list (filtered, deduplicated, renamed)
        rng: Random source for ``random`` selection; a fresh unseeded one
            is created when omitted

    Returns:
        ChainResolution; empty for a chain without hops

    Raises:
        ChainResolutionError: On a dangling node reference, an empty custom
            group or dynamic match, or an empty group name
    """
    resolution = ChainResolution()
    if not chain.hops:
        return resolution

    rng = rng or random.Random()
    by_id = {r.id: r for r in nodes}
    hop_node_ids: set[int] = set()
    previous = ""

    for index, hop in enumerate(chain.hops):
        resolved, serving, group = _resolve_hop(index, hop, nodes, by_id, rng)
        resolved = replace(resolved, node_ids=tuple(r.id for r in serving), dialer=previous)
        if previous:
            for r in serving:
                resolution.hop_dialers.setdefault(r.id, previous)
        if group is not None:
            resolution.groups.append(group)
        hop_node_ids.update(r.id for r in serving)
        resolution.hops.append(resolved)
        previous = resolved.identity

    final = resolution.final_dialer
    for r in _target_nodes(chain, nodes, by_id):
        if r.id not in hop_node_ids:
            resolution.target_dialers[r.id] = final

    logger.debug(
        "Resolved chain of %d hops: final=%s, %d targets, %d groups",
        len(resolution.hops),
        final,
        len(resolution.target_dialers),
        len(resolution.groups),
    )
    return resolution


@dataclass
class ChainPlan:
    """Combined wiring of every enabled chain rule of a subscription.

    Attributes:
        groups: Synthesized groups, first definition of a name wins
        dialer_map: Node id -> upstream identity for every wired node
        resolutions: Rule name -> resolution, for rules that resolved
        errors: Failures of rules that did not resolve
    """

    groups: list[ProxyGroup] = field(default_factory=list)
    dialer_map: dict[int, str] = field(default_factory=dict)
    resolutions: dict[str, ChainResolution] = field(default_factory=dict)
    errors: list[ChainResolutionError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def dialer_for(self, node_id: int) -> str:
        return self.dialer_map.get(node_id, "")


def plan_chains(
    rules: Sequence[ChainRule],
    nodes: Sequence[RenderedNode],
    rng: random.Random | None = None,
    *,
    strict: bool = False,
) -> ChainPlan:
    """Resolve every enabled chain rule once and merge the wiring.

    Rules run in ``sort`` order. A node's dialer comes from the first rule
    that uses it as an intermediate hop, else the first rule that targets
    it, else the node's own ``dialer_proxy_name``.

    Args:
        rules: Chain rules of the subscription
        nodes: Final node list
        rng: Random source shared by this invocation's rules
        strict: Raise on the first failing rule instead of collecting it

    Raises:
        ChainResolutionError: If ``strict`` and a rule fails
    """
    plan = ChainPlan()
    rng = rng or random.Random()
    hop_wiring: dict[int, str] = {}
    target_wiring: dict[int, str] = {}
    group_names: set[str] = set()

    enabled = sorted((rule for rule in rules if rule.enabled), key=lambda rule: rule.sort)
    for rule in enabled:
        try:
            resolution = resolve_chain(rule.chain, nodes, rng)
        except ChainResolutionError as e:
            error = e.for_rule(rule.name)
            logger.error("Chain resolution failed: %s", error)
            if strict:
                raise error from e
            plan.errors.append(error)
            continue

        plan.resolutions[rule.name] = resolution
        for group in resolution.groups:
            if group.name not in group_names:
                group_names.add(group.name)
                plan.groups.append(group)
        for node_id, identity in resolution.hop_dialers.items():
            hop_wiring.setdefault(node_id, identity)
        for node_id, identity in resolution.target_dialers.items():
            target_wiring.setdefault(node_id, identity)

    for r in nodes:
        identity = hop_wiring.get(r.id) or target_wiring.get(r.id) or r.node.dialer_proxy_name
        if identity:
            plan.dialer_map[r.id] = identity

    logger.debug(
        "Chain plan: %d rules, %d groups, %d wired nodes, %d errors",
        len(enabled),
        len(plan.groups),
        len(plan.dialer_map),
        len(plan.errors),
    )
    return plan
