"""Context dataclass for pipeline execution.

One Context is built per invocation; nothing in it is shared between runs.
"""

from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from nodeflow.chain import ChainPlan
from nodeflow.models import Node, RenderedNode
from nodeflow.rules import SubscriptionRules


@dataclass
class Context:
    """Typed state carried between pipeline stages.

    Stage outputs start as None. A stage that was skipped leaves its output
    unset, and the next stage reads the latest output that exists.

    Attributes:
        pool: Input nodes, in priority order
        rules: Subscription rule configuration
        rng: Random source for this invocation only
        filtered_nodes: Output of filtering
        unique_nodes: Output of deduplication
        rendered_nodes: Output of renaming
        chain_plan: Output of chain resolution
        metadata: Per-stage counters and notes
    """

    pool: tuple[Node, ...] = ()
    rules: SubscriptionRules = field(default_factory=SubscriptionRules)
    rng: random.Random = field(default_factory=random.Random, repr=False)
    filtered_nodes: list[Node] | None = None
    unique_nodes: list[Node] | None = None
    rendered_nodes: list[RenderedNode] | None = None
    chain_plan: ChainPlan | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        pool: Iterable[Node],
        rules: SubscriptionRules,
        *,
        seed: int | None = None,
        rng: random.Random | None = None,
    ) -> Context:
        """Build a fresh context.

        Args:
            pool: Input nodes
            rules: Rule configuration
            seed: Seed for a new random source; ignored when ``rng`` is given
            rng: Random source to use as is
        """
        return cls(
            pool=tuple(pool),
            rules=rules,
            rng=rng if rng is not None else random.Random(seed),
        )

    @property
    def current_filtered(self) -> list[Node]:
        if self.filtered_nodes is not None:
            return self.filtered_nodes
        return list(self.pool)

    @property
    def current_unique(self) -> list[Node]:
        if self.unique_nodes is not None:
            return self.unique_nodes
        return self.current_filtered

    @property
    def current_rendered(self) -> list[RenderedNode]:
        """Rendered nodes, or the unique nodes under their upstream names."""
        if self.rendered_nodes is not None:
            return self.rendered_nodes
        return [
            RenderedNode(node=node, display_name=node.original_name or node.name, index=index, link=node.link)
            for index, node in enumerate(self.current_unique, start=1)
        ]

    @property
    def current_plan(self) -> ChainPlan:
        """Chain plan, or one that only carries the nodes' own dialers."""
        if self.chain_plan is not None:
            return self.chain_plan
        plan = ChainPlan()
        for r in self.current_rendered:
            if r.node.dialer_proxy_name:
                plan.dialer_map[r.id] = r.node.dialer_proxy_name
        return plan
