"""Pipeline stages with dependency declarations.

Each stage uses the @hook decorator to declare reads/writes dependencies.
The HookDAG uses these to compute execution order via topological sort.
"""

from nodeflow.pipeline.hook import HookSpec, spec_of
from nodeflow.pipeline.stages.dedupe_nodes import dedupe_nodes
from nodeflow.pipeline.stages.filter_nodes import filter_nodes
from nodeflow.pipeline.stages.rename_nodes import rename_nodes
from nodeflow.pipeline.stages.resolve_chains import resolve_chains

# Keys supplied by, and handed back to, the caller
PIPELINE_INPUTS = frozenset({"pool", "rules"})
PIPELINE_OUTPUTS = frozenset({"chain_plan"})


def default_stages() -> list[HookSpec]:
    """Specs of the built-in stages."""
    return [spec_of(fn) for fn in (filter_nodes, dedupe_nodes, rename_nodes, resolve_chains)]


__all__ = [
    "PIPELINE_INPUTS",
    "PIPELINE_OUTPUTS",
    "default_stages",
    "filter_nodes",
    "dedupe_nodes",
    "rename_nodes",
    "resolve_chains",
]
