"""Pipeline executor with DAG-ordered execution.

Executes stages in dependency-safe order with override support. Each call
to ``run`` works on its own Context, so one executor can serve concurrent
invocations.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from nodeflow.chain import ChainPlan, ProxyGroup
from nodeflow.errors import ChainResolutionError, NodeflowError, PipelineStageError
from nodeflow.models import Node, RenderedNode
from nodeflow.pipeline.context import Context
from nodeflow.pipeline.dag import HookDAG
from nodeflow.pipeline.overrides import HookOverride, OverrideSet, parse_overrides
from nodeflow.pipeline.stages import PIPELINE_INPUTS, PIPELINE_OUTPUTS, default_stages
from nodeflow.rules import SubscriptionRules

if TYPE_CHECKING:
    from nodeflow.config import NodeflowConfig
    from nodeflow.pipeline.hook import HookSpec

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """What the pipeline hands to the output assembler.

    Attributes:
        nodes: Final nodes in output order, with display names
        plan: Chain groups, dialer wiring and chain errors
        metadata: Per-stage counters
    """

    nodes: list[RenderedNode]
    plan: ChainPlan = field(default_factory=ChainPlan)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def groups(self) -> list[ProxyGroup]:
        return self.plan.groups

    @property
    def dialer_map(self) -> dict[int, str]:
        return self.plan.dialer_map

    @property
    def errors(self) -> list[ChainResolutionError]:
        return self.plan.errors

    @property
    def valid(self) -> bool:
        """False when any chain rule failed; the assembler must not drop it silently."""
        return self.plan.valid

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {
                    "id": r.id,
                    "index": r.index,
                    "name": r.display_name,
                    "protocol": r.node.protocol.value,
                    "link": r.link,
                    "dialerProxy": self.plan.dialer_for(r.id),
                }
                for r in self.nodes
            ],
            "groups": [group.model_dump(by_alias=True, exclude_none=True) for group in self.groups],
            "errors": [str(e) for e in self.errors],
            "valid": self.valid,
        }


class PipelineExecutor:
    """Executes stages in DAG-ordered sequence with override support.

    Attributes:
        dag: Stage dependency graph
        default_overrides: Overrides applied to every run
        random_seed: Seed used when a run does not pass its own
    """

    def __init__(
        self,
        hooks: list[HookSpec] | None = None,
        default_overrides: str | None = None,
        random_seed: int | None = None,
    ) -> None:
        """Initialize executor with stages.

        Args:
            hooks: Stage specifications; the built-in stages when omitted
            default_overrides: Override string applied to every run
            random_seed: Seed for runs that pass neither ``seed`` nor ``rng``

        Raises:
            CycleError: If stage dependencies form a cycle
        """
        self.dag = HookDAG(hooks or default_stages(), inputs=PIPELINE_INPUTS, outputs=PIPELINE_OUTPUTS)
        self.random_seed = random_seed
        self.default_overrides = parse_overrides(default_overrides)

        logger.debug("Pipeline execution order: %s", " → ".join(self.dag.execution_order))
        for warning in self.dag.validate():
            logger.warning("DAG validation: %s", warning)
        for name in self.default_overrides.unknown(set(self.dag.execution_order)):
            logger.warning("Override for unknown stage '%s'", name)

    @classmethod
    def from_config(cls, config: NodeflowConfig) -> PipelineExecutor:
        """Build an executor from settings.

        Each setting becomes a static parameter of the one stage that reads it.
        """
        stage_params: dict[str, dict[str, Any]] = {
            "filter_nodes": {"filter_order": config.filter_order},
            "resolve_chains": {"strict_chains": config.strict_chains},
        }
        hooks = [spec.with_params(**stage_params.get(spec.name, {})) for spec in default_stages()]
        return cls(hooks, default_overrides=config.stage_overrides, random_seed=config.random_seed)

    def run(
        self,
        pool: Iterable[Node],
        rules: SubscriptionRules,
        *,
        seed: int | None = None,
        rng: random.Random | None = None,
        overrides: str | None = None,
    ) -> PipelineResult:
        """Run the pipeline for one subscription.

        Args:
            pool: Candidate nodes in priority order
            rules: The subscription's rules
            seed: Seed for this run's random source
            rng: Random source to use instead of a seeded one
            overrides: Per-call override string, e.g. ``"-dedupe_nodes"``

        Returns:
            PipelineResult

        Raises:
            ChainResolutionError: If strict chain checking is on and a chain fails
            PipelineStageError: If a stage fails unexpectedly
        """
        if seed is None:
            seed = self.random_seed
        ctx = Context.create(pool, rules, seed=seed, rng=rng)

        override_set = self.default_overrides
        if overrides:
            override_set = override_set.merged(parse_overrides(overrides))
            for name in override_set.unknown(set(self.dag.execution_order)):
                logger.warning("Override for unknown stage '%s'", name)

        ctx = self.execute(ctx, override_set)
        return PipelineResult(nodes=ctx.current_rendered, plan=ctx.current_plan, metadata=ctx.metadata)

    def execute(self, ctx: Context, overrides: OverrideSet | None = None) -> Context:
        """Execute every stage in order against ``ctx``."""
        overrides = overrides or OverrideSet()
        if overrides.raw:
            logger.debug("Stage overrides: %s", overrides.raw)

        for name in self.dag.execution_order:
            ctx = self._execute_hook(ctx, self.dag.get_hook(name), overrides)
        return ctx

    def _execute_hook(self, ctx: Context, spec: HookSpec, overrides: OverrideSet) -> Context:
        """Execute a single stage.

        Returns:
            Modified context, or ``ctx`` unchanged when the stage is skipped

        Raises:
            NodeflowError: Domain errors propagate unchanged
            PipelineStageError: Wrapping any other exception
        """
        name = spec.name
        override = overrides.get_override(name)

        if override == HookOverride.FORCE_SKIP:
            logger.debug("Stage '%s' skipped (override)", name)
            ctx.metadata.setdefault("skipped", []).append(name)
            return ctx

        try:
            if override != HookOverride.FORCE_RUN and not spec.should_run(ctx):
                logger.debug("Stage '%s' skipped (guard)", name)
                ctx.metadata.setdefault("skipped", []).append(name)
                return ctx

            logger.debug("Executing stage '%s'", name)
            return spec.execute(ctx)
        except NodeflowError:
            raise
        except Exception as e:
            logger.error("Stage '%s' failed: %s: %s", name, type(e).__name__, e)
            raise PipelineStageError(name, e) from e

    def get_execution_order(self) -> list[str]:
        return self.dag.execution_order

    def to_mermaid(self) -> str:
        return self.dag.to_mermaid()

    def to_ascii(self) -> str:
        return self.dag.to_ascii()
