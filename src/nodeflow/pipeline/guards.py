"""Shared guard functions for pipeline stages."""

from __future__ import annotations

from typing import TYPE_CHECKING

from nodeflow.filters import is_configured, resolve_order

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context


def has_filter_rules(ctx: Context) -> bool:
    """Check if any filter stage is configured.

    Args:
        ctx: Pipeline context

    Returns:
        True if at least one filter stage would change the pool
    """
    filters = ctx.rules.filters
    return any(is_configured(stage, filters) for stage in resolve_order(filters))


def has_dedup_rules(ctx: Context) -> bool:
    """Check if deduplication is enabled with at least one key field."""
    dedup = ctx.rules.dedup
    if dedup.mode == "common":
        return bool(dedup.common_fields)
    if dedup.mode == "protocol":
        return any(dedup.protocol_rules.values())
    return False


def has_chain_rules(ctx: Context) -> bool:
    """Check if the subscription has enabled chain rules."""
    return bool(ctx.rules.enabled_chain_rules)

