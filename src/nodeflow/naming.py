"""Node name preprocessing and template rendering."""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from nodeflow.conditions import compile_pattern
from nodeflow.links import rename_link
from nodeflow.models import Node, RenderedNode
from nodeflow.rules import PreprocessRule

logger = logging.getLogger(__name__)

UNKNOWN_COUNTRY = "未知"
UNGROUPED = "未分组"
MANUAL_SOURCE = "手动"
UNKNOWN_FLAG = "🏳️"
NOT_AVAILABLE = "N/A"

# Longer names first so $Tags wins over $Tag and $LinkName over $Name
TOKEN_PATTERN = re.compile(
    r"\$(LinkCountry|LinkName|Protocol|Source|Speed|Delay|Group|Index|Name|Flag|Tags|Tag)"
)

# $1, ${1}, $name, ${name} and $$ in regex replacements
_GROUP_REF = re.compile(r"\$(?:(\$)|\{(\w+)\}|(\w+))")


def _expand_replacement(template: str, match: re.Match[str]) -> str:
    def ref(m: re.Match[str]) -> str:
        if m.group(1):
            return "$"
        name = m.group(2) or m.group(3)
        try:
            value = match.group(int(name) if name.isdigit() else name)
        except IndexError:
            # unknown group reference
            return ""
        return value or ""

    return _GROUP_REF.sub(ref, template)


def preprocess(original_name: str, rules: Sequence[PreprocessRule]) -> str:
    """Apply preprocess rules to an upstream name, in order.

    Disabled rules, rules with an empty pattern and rules whose regex does
    not compile are skipped.

    Args:
        original_name: Name as published upstream
        rules: Ordered rewrite rules

    Returns:
        Rewritten name
    """
    result = original_name
    for rule in rules:
        if not rule.enabled or not rule.pattern:
            continue
        if rule.match_mode == "regex":
            pattern = compile_pattern(rule.pattern)
            if pattern is None:
                continue
            result = pattern.sub(lambda m, repl=rule.replacement: _expand_replacement(repl, m), result)
        else:
            result = result.replace(rule.pattern, rule.replacement)
    return result


def iso_to_flag(code: str) -> str:
    """Flag emoji for a two letter country code. TW renders the CN flag."""
    code = code.strip().upper()
    if len(code) != 2 or not all("A" <= c <= "Z" for c in code):
        return UNKNOWN_FLAG
    if code == "TW":
        code = "CN"
    return "".join(chr(0x1F1E6 + ord(c) - ord("A")) for c in code)


def format_speed(speed: float) -> str:
    return f"{speed:.2f}MB/s" if speed > 0 else NOT_AVAILABLE


def format_delay(delay: int) -> str:
    return f"{delay}ms" if delay > 0 else NOT_AVAILABLE


@dataclass(frozen=True)
class NameContext:
    """Values available to a name template for one node."""

    name: str
    link_name: str
    link_country: str = ""
    speed: float = 0.0
    delay: int = 0
    group: str = ""
    source: str = ""
    protocol: str = ""
    tags: tuple[str, ...] = ()
    index: int = 0

    @classmethod
    def from_node(cls, node: Node, link_name: str, index: int) -> NameContext:
        return cls(
            name=node.name,
            link_name=link_name,
            link_country=node.country_code,
            speed=node.speed_mbs,
            delay=node.delay_ms,
            group=node.group,
            source=node.source,
            protocol=node.protocol.value,
            tags=node.tags,
            index=index,
        )

    def token_values(self) -> dict[str, str]:
        return {
            "LinkCountry": self.link_country or UNKNOWN_COUNTRY,
            "LinkName": self.link_name,
            "Protocol": self.protocol,
            "Source": MANUAL_SOURCE if self.source == "manual" else self.source,
            "Speed": format_speed(self.speed),
            "Delay": format_delay(self.delay),
            "Group": self.group or UNGROUPED,
            "Index": str(self.index),
            "Name": self.name,
            "Flag": iso_to_flag(self.link_country),
            "Tags": "|".join(self.tags),
            "Tag": self.tags[0] if self.tags else "",
        }


def render(template: str, ctx: NameContext) -> str:
    """Render a name template.

    Recognized ``$Token`` sequences are substituted in a single pass, so
    substituted values are never re-expanded. Unknown tokens stay literal.
    An empty template, or one that renders to nothing, yields
    ``ctx.link_name``.
    """
    if not template:
        return ctx.link_name
    values = ctx.token_values()
    result = TOKEN_PATTERN.sub(lambda m: values[m.group(1)], template)
    return result or ctx.link_name


def rename(
    nodes: Sequence[Node],
    template: str,
    preprocess_rules: Sequence[PreprocessRule] = (),
) -> list[RenderedNode]:
    """Preprocess and render every node, assigning 1-based indexes.

    When a template is configured the share link is rewritten to carry the
    rendered name.
    """
    rendered = []
    for index, node in enumerate(nodes, start=1):
        link_name = preprocess(node.original_name, preprocess_rules)
        display = render(template, NameContext.from_node(node, link_name, index))
        if not display:
            display = node.name
        link = rename_link(node.link, display) if template else node.link
        rendered.append(RenderedNode(node=node, display_name=display, index=index, link=link))
    logger.debug("Rendered %d node names", len(rendered))
    return rendered
