"""Chain stage: resolve every enabled chain rule into groups and wiring."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from nodeflow.chain import plan_chains
from nodeflow.pipeline.guards import has_chain_rules
from nodeflow.pipeline.hook import hook

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context

logger = logging.getLogger(__name__)


def resolve_chains_guard(ctx: Context) -> bool:
    """Guard: Run when the subscription has enabled chain rules."""
    return has_chain_rules(ctx)


@hook(reads=["rendered_nodes", "rules"], writes=["chain_plan"])
def resolve_chains(ctx: Context, params: dict[str, Any]) -> Context:
    """Resolve chain rules against the final node list.

    Args:
        ctx: Pipeline context
        params: May contain 'strict_chains' (raise on the first failing rule)

    Returns:
        Context with chain_plan set

    Raises:
        ChainResolutionError: If 'strict_chains' is set and a rule fails
    """
    ctx.chain_plan = plan_chains(
        ctx.rules.chain_rules,
        ctx.current_rendered,
        ctx.rng,
        strict=bool(params.get("strict_chains", False)),
    )
    if not ctx.chain_plan.valid:
        ctx.metadata["chain_errors"] = [str(e) for e in ctx.chain_plan.errors]
    return ctx
