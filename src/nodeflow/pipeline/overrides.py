"""Stage override parsing.

Overrides let a caller or the config force stages on or off:
- +stage → Force run (skip guard)
- -stage → Force skip
- No prefix → Normal (guard decides)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class HookOverride(Enum):
    """Override mode for a stage."""

    NORMAL = "normal"  # Guard decides
    FORCE_RUN = "force_run"  # Skip guard, always run
    FORCE_SKIP = "force_skip"  # Skip this stage entirely


@dataclass
class OverrideSet:
    """Parsed override configuration.

    Attributes:
        overrides: Mapping of stage name to override mode
        raw: Original override string for debugging
    """

    overrides: dict[str, HookOverride] = field(default_factory=dict)
    raw: str = ""

    def get_override(self, name: str) -> HookOverride:
        return self.overrides.get(name, HookOverride.NORMAL)

    def should_run(self, name: str, guard_result: bool) -> bool:
        """Combine the override for ``name`` with its guard result."""
        override = self.get_override(name)
        if override == HookOverride.FORCE_RUN:
            return True
        if override == HookOverride.FORCE_SKIP:
            return False
        return guard_result

    def merged(self, other: OverrideSet) -> OverrideSet:
        """Overrides of ``self`` updated by ``other``; ``other`` wins."""
        raw = ",".join(part for part in (self.raw, other.raw) if part)
        return OverrideSet(overrides={**self.overrides, **other.overrides}, raw=raw)

    def unknown(self, known: set[str]) -> list[str]:
        """Overridden names that are not in ``known``."""
        return sorted(name for name in self.overrides if name not in known)


def parse_overrides(value: str | None) -> OverrideSet:
    """Parse a comma-separated override string.

    Args:
        value: e.g. ``"+resolve_chains,-dedupe_nodes"``, or None

    Returns:
        OverrideSet with parsed overrides

    Examples:
        >>> parse_overrides("-dedupe_nodes").get_override("dedupe_nodes")
        <HookOverride.FORCE_SKIP: 'force_skip'>
        >>> parse_overrides(None).overrides
        {}
    """
    if not value:
        return OverrideSet()

    overrides: dict[str, HookOverride] = {}
    value = value.strip()

    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        if part.startswith("+"):
            if part[1:]:
                overrides[part[1:]] = HookOverride.FORCE_RUN
        elif part.startswith("-"):
            if part[1:]:
                overrides[part[1:]] = HookOverride.FORCE_SKIP
        else:
            # No prefix = normal (explicit declaration)
            overrides[part] = HookOverride.NORMAL

    if overrides:
        logger.debug("Parsed stage overrides: %s", overrides)

    return OverrideSet(overrides=overrides, raw=value)
