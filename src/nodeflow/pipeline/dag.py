"""Stage ordering from reads/writes declarations.

Uses graphlib.TopologicalSorter: if stage A writes key X and stage B reads
key X, B runs after A.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from graphlib import CycleError, TopologicalSorter
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from nodeflow.pipeline.hook import HookSpec

logger = logging.getLogger(__name__)


class HookDAG:
    """Directed acyclic graph of pipeline stages.

    Keys listed in ``inputs`` are supplied by the caller, and keys in
    ``outputs`` are consumed by the caller; neither is reported as dangling.
    """

    def __init__(
        self,
        hooks: list[HookSpec],
        *,
        inputs: Iterable[str] = (),
        outputs: Iterable[str] = (),
    ) -> None:
        """Build the graph and compute the execution order.

        Raises:
            CycleError: If dependencies form a cycle
        """
        self._hooks: dict[str, HookSpec] = {h.name: h for h in hooks}
        self._inputs = frozenset(inputs)
        self._outputs = frozenset(outputs)
        self._key_writers: dict[str, set[str]] = defaultdict(set)
        self._key_readers: dict[str, set[str]] = defaultdict(set)
        self._execution_order: list[str] = []
        self._parallel_groups: list[set[str]] = []

        for name, spec in self._hooks.items():
            for key in spec.writes:
                self._key_writers[key].add(name)
            for key in spec.reads:
                self._key_readers[key].add(name)
        self._compute_order()

    def _build_dependencies(self) -> dict[str, set[str]]:
        """Map each stage to the stages it depends on."""
        deps: dict[str, set[str]] = {name: set() for name in self._hooks}
        for name, spec in self._hooks.items():
            for key in spec.reads:
                deps[name].update(w for w in self._key_writers.get(key, ()) if w != name)
        return deps

    def _compute_order(self) -> None:
        deps = self._build_dependencies()
        for warning in self._dangling_reads():
            logger.warning("%s", warning)

        try:
            self._execution_order = list(TopologicalSorter(deps).static_order())
        except CycleError as e:
            logger.error("Cycle detected in stage dependencies: %s", e.args[1])
            raise

        sorter = TopologicalSorter(deps)
        sorter.prepare()
        while sorter.is_active():
            ready = set(sorter.get_ready())
            self._parallel_groups.append(ready)
            sorter.done(*ready)

    def _dangling_reads(self) -> list[str]:
        return [
            f"Stage '{name}' reads '{key}' but no stage writes it"
            for name, spec in self._hooks.items()
            for key in sorted(spec.reads)
            if key not in self._key_writers and key not in self._inputs
        ]

    @property
    def execution_order(self) -> list[str]:
        """Stage names in dependency-safe order."""
        return list(self._execution_order)

    @property
    def parallel_groups(self) -> list[set[str]]:
        """Groups of stages with no dependencies among each other."""
        return [set(g) for g in self._parallel_groups]

    def get_hook(self, name: str) -> HookSpec:
        """Get a stage by name.

        Raises:
            KeyError: If no such stage
        """
        return self._hooks[name]

    def get_hooks_in_order(self) -> list[HookSpec]:
        return [self._hooks[name] for name in self._execution_order]

    def get_dependencies(self, name: str) -> set[str]:
        return self._build_dependencies().get(name, set())

    def get_dependents(self, name: str) -> set[str]:
        return {other for other, deps in self._build_dependencies().items() if name in deps}

    def to_mermaid(self) -> str:
        """Mermaid graph definition of the DAG."""
        lines = ["graph TD"]
        deps = self._build_dependencies()
        for name in self._execution_order:
            for dep in sorted(deps[name]):
                lines.append(f"    {dep} --> {name}")
        for name in self._execution_order:
            if not deps[name] and not self.get_dependents(name):
                lines.append(f"    {name}")
        return "\n".join(lines)

    def to_ascii(self) -> str:
        """Boxes per parallel group, top to bottom."""
        rows: list[list[str]] = []
        for group in self._parallel_groups:
            names = sorted(group)
            if len(names) == 1:
                spec = self._hooks[names[0]]
                body = [names[0]]
                if spec.reads:
                    body.append(f"  reads: {', '.join(sorted(spec.reads))}")
                if spec.writes:
                    body.append(f"  writes: {', '.join(sorted(spec.writes))}")
            else:
                body = [f"PARALLEL: {', '.join(names)}"]
            rows.append(body)

        width = max((len(line) for body in rows for line in body), default=0) + 2
        lines: list[str] = []
        for i, body in enumerate(rows):
            if i > 0:
                lines.append("       │")
                lines.append("       ▼")
            lines.append(f"┌{'─' * width}┐")
            lines.extend(f"│ {line:<{width - 1}}│" for line in body)
            lines.append(f"└{'─' * width}┘")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly description of the DAG."""
        deps = self._build_dependencies()
        return {
            "order": self.execution_order,
            "stages": {
                name: {
                    "reads": sorted(self._hooks[name].reads),
                    "writes": sorted(self._hooks[name].writes),
                    "depends_on": sorted(deps[name]),
                }
                for name in self._execution_order
            },
        }

    def validate(self) -> list[str]:
        """Configuration warnings; empty when the DAG is clean."""
        warnings = self._dangling_reads()
        for key, writers in self._key_writers.items():
            if key in self._outputs or self._key_readers.get(key):
                continue
            for writer in sorted(writers):
                warnings.append(f"Stage '{writer}' writes '{key}' but no stage reads it")
        return warnings
