"""Stage declarations for the node pipeline.

A stage is a plain function ``(ctx, params) -> ctx``. The @hook decorator
wraps it in a HookSpec recording which Context keys it reads and writes;
HookDAG orders stages from those declarations alone.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nodeflow.pipeline.context import Context


GuardFn = Callable[["Context"], bool]
HandlerFn = Callable[["Context", dict[str, Any]], "Context"]


def always_true(ctx: Context) -> bool:
    """Guard for stages that always run."""
    return True


@dataclass
class HookSpec:
    """One pipeline stage.

    Attributes:
        name: Unique stage identifier, the handler's function name
        handler: Function that transforms context
        guard: Predicate deciding whether the handler runs for a context
        reads: Context keys this stage reads
        writes: Context keys this stage writes
        params: Static parameters handed to the handler on every run
    """

    name: str
    handler: HandlerFn
    guard: GuardFn = always_true
    reads: frozenset[str] = field(default_factory=frozenset)
    writes: frozenset[str] = field(default_factory=frozenset)
    params: dict[str, Any] = field(default_factory=dict)

    def __hash__(self) -> int:
        return hash(self.name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HookSpec):
            return NotImplemented
        return self.name == other.name

    def should_run(self, ctx: Context) -> bool:
        return self.guard(ctx)

    def with_params(self, **params: Any) -> HookSpec:
        """Copy of this spec with ``params`` merged over its own.

        Parameters given as None are left out, so the stage keeps its default.
        """
        merged = dict(self.params)
        merged.update((key, value) for key, value in params.items() if value is not None)
        return replace(self, params=merged)

    def execute(self, ctx: Context) -> Context:
        return self.handler(ctx, dict(self.params))


def spec_of(fn: HandlerFn) -> HookSpec:
    """The HookSpec attached to a function by @hook.

    Raises:
        TypeError: If ``fn`` was not decorated
    """
    spec = getattr(fn, "_hook_spec", None)
    if not isinstance(spec, HookSpec):
        raise TypeError(f"{getattr(fn, '__name__', fn)!r} is not a pipeline stage")
    return spec


def hook(
    *,
    reads: list[str] | None = None,
    writes: list[str] | None = None,
    guard: GuardFn | None = None,
) -> Callable[[HandlerFn], HandlerFn]:
    """Declare a function as a pipeline stage.

    Without an explicit ``guard``, a module-level ``{name}_guard`` function
    defined before the stage is used; failing that the stage always runs.

    Example:
        def dedupe_nodes_guard(ctx: Context) -> bool:
            return ctx.rules.dedup.mode != "none"

        @hook(reads=["filtered_nodes"], writes=["unique_nodes"])
        def dedupe_nodes(ctx: Context, params: dict) -> Context:
            ...
    """

    def decorator(fn: HandlerFn) -> HandlerFn:
        resolved_guard = guard
        if resolved_guard is None:
            module = sys.modules.get(fn.__module__)
            if module:
                resolved_guard = getattr(module, f"{fn.__name__}_guard", None)

        fn._hook_spec = HookSpec(  # type: ignore[attr-defined]
            name=fn.__name__,
            handler=fn,
            guard=resolved_guard or always_true,
            reads=frozenset(reads or []),
            writes=frozenset(writes or []),
        )
        return fn

    return decorator
