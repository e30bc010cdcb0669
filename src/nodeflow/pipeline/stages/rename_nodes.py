"""Rename stage: preprocess upstream names and render display names."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from nodeflow.naming import rename
from nodeflow.pipeline.hook import hook

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context

logger = logging.getLogger(__name__)


@hook(reads=["unique_nodes", "rules"], writes=["rendered_nodes"])
def rename_nodes(ctx: Context, params: dict[str, Any]) -> Context:
    """Render display names and assign final 1-based indexes.

    Indexes are assigned here, after filtering and dedup and before chain
    resolution, so ``$Index`` matches the node's final position.

    Args:
        ctx: Pipeline context
        params: Unused

    Returns:
        Context with rendered_nodes set
    """
    rules = ctx.rules
    ctx.rendered_nodes = rename(ctx.current_unique, rules.name_template, rules.preprocess)

    names = [r.display_name for r in ctx.rendered_nodes]
    duplicates = len(names) - len(set(names))
    if duplicates:
        logger.warning("%d rendered names collide; chain wiring by name may be ambiguous", duplicates)
    return ctx
