"""Filter stage: whitelist, blacklist and threshold filtering."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from nodeflow import filters
from nodeflow.pipeline.guards import has_filter_rules
from nodeflow.pipeline.hook import hook

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context

logger = logging.getLogger(__name__)


def filter_nodes_guard(ctx: Context) -> bool:
    """Guard: Run when any filter stage is configured."""
    return has_filter_rules(ctx)


@hook(reads=["pool", "rules"], writes=["filtered_nodes"])
def filter_nodes(ctx: Context, params: dict[str, Any]) -> Context:
    """Apply the subscription's filter rules to the pool.

    Args:
        ctx: Pipeline context
        params: May contain 'filter_order' (fallback stage order)

    Returns:
        Context with filtered_nodes set
    """
    ctx.filtered_nodes = filters.apply(ctx.pool, ctx.rules.filters, params.get("filter_order"))
    ctx.metadata["filtered"] = len(ctx.filtered_nodes)
    logger.debug("Filtered %d -> %d nodes", len(ctx.pool), len(ctx.filtered_nodes))
    return ctx
