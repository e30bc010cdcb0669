"""Stage pipeline for subscription node processing.

Stages declare the context keys they read and write; the execution order
is derived from those declarations.

Formal Model:
    Stage sᵢ = (gᵢ, fᵢ) where:
        gᵢ: Context → Bool    (guard)
        fᵢ: Context → Context (handler)

    apply(s, ctx) = if guard(ctx) then handler(ctx) else ctx
"""

from nodeflow.pipeline.context import Context
from nodeflow.pipeline.dag import HookDAG
from nodeflow.pipeline.executor import PipelineExecutor, PipelineResult
from nodeflow.pipeline.hook import HookSpec, hook
from nodeflow.pipeline.overrides import HookOverride, parse_overrides

__all__ = [
    "Context",
    "HookSpec",
    "hook",
    "HookDAG",
    "PipelineExecutor",
    "PipelineResult",
    "parse_overrides",
    "HookOverride",
]
