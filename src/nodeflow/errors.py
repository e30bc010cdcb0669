"""Exception hierarchy for nodeflow.

Soft failures (bad regex, unconfigured dedup protocol, empty filter result)
never raise. Everything here is structural and must reach the caller.
"""

from __future__ import annotations


class NodeflowError(Exception):
    """Base class for all nodeflow errors."""


class RuleConfigError(NodeflowError):
    """Persisted rule configuration could not be parsed or validated."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class ChainResolutionError(NodeflowError):
    """A proxy chain could not be resolved against the current node pool.

    Attributes:
        rule: Name of the chain rule (empty for an anonymous chain)
        hop: Zero-based hop index, or None when the target failed
        reason: Human readable cause
    """

    def __init__(self, reason: str, *, hop: int | None = None, rule: str = "") -> None:
        self.reason = reason
        self.hop = hop
        self.rule = rule
        super().__init__(self._format())

    def _format(self) -> str:
        where = "target" if self.hop is None else f"hop {self.hop + 1}"
        prefix = f"chain rule '{self.rule}' " if self.rule else "chain "
        return f"{prefix}{where}: {self.reason}"

    def for_rule(self, rule: str) -> ChainResolutionError:
        """Return a copy attributed to the given chain rule."""
        return ChainResolutionError(self.reason, hop=self.hop, rule=rule)


class PipelineStageError(NodeflowError):
    """A pipeline stage raised an unexpected exception."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"stage '{stage}' failed: {type(cause).__name__}: {cause}")
