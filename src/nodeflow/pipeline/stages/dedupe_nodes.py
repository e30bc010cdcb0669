"""Dedup stage."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from nodeflow.dedup import dedupe
from nodeflow.pipeline.guards import has_dedup_rules
from nodeflow.pipeline.hook import hook

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context

logger = logging.getLogger(__name__)


def dedupe_nodes_guard(ctx: Context) -> bool:
    """Guard: Run when a dedup mode with key fields is configured."""
    return has_dedup_rules(ctx)


@hook(reads=["filtered_nodes", "rules"], writes=["unique_nodes"])
def dedupe_nodes(ctx: Context, params: dict[str, Any]) -> Context:
    """Drop duplicate nodes, keeping the first of each key."""
    nodes = ctx.current_filtered
    ctx.unique_nodes = dedupe(nodes, ctx.rules.dedup)
    ctx.metadata["duplicates"] = len(nodes) - len(ctx.unique_nodes)
    return ctx
