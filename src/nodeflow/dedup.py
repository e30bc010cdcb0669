"""Node deduplication by configurable key.

The key is built from named fields, resolved first against the node record
and then against the fields decoded from its share link. The first node
seen with a given key is kept.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from nodeflow.links import parse_link
from nodeflow.models import Node, Protocol
from nodeflow.rules import DeduplicationConfig

logger = logging.getLogger(__name__)

# Normalized spelling (lowercase, no underscores) -> Node attribute
NODE_FIELDS = {
    "id": "id",
    "name": "name",
    "originalname": "original_name",
    "linkname": "original_name",
    "protocol": "protocol",
    "group": "group",
    "source": "source",
    "tags": "tags",
    "countrycode": "country_code",
    "linkcountry": "country_code",
    "delayms": "delay_ms",
    "delaytime": "delay_ms",
    "speedmbs": "speed_mbs",
    "speed": "speed_mbs",
    "link": "link",
    "server": "server",
    "linkaddress": "server",
    "port": "port",
    "linkport": "port",
    "host": "host",
    "linkhost": "host",
    "dialerproxyname": "dialer_proxy_name",
}

KEY_SEPARATOR = "|"


def _normalize(field: str) -> str:
    return field.strip().replace("_", "").lower()


def _node_value(node: Node, field: str) -> str:
    attr = NODE_FIELDS.get(_normalize(field))
    if attr is None:
        return ""
    value = getattr(node, attr)
    if attr == "tags":
        return node.tag_text
    if isinstance(value, Protocol):
        return value.value
    return str(value) if value not in ("", None) else ""


class _LinkFields:
    """Lazily decoded share link fields, cached per link for one dedup pass."""

    def __init__(self) -> None:
        self._cache: dict[str, dict[str, str]] = {}

    def get(self, node: Node, field: str) -> str:
        fields = self._cache.get(node.link)
        if fields is None:
            fields = parse_link(node.link) if node.link else {}
            self._cache[node.link] = fields
        return fields.get(field.strip().lower(), "")


def field_value(node: Node, field: str, links: _LinkFields | None = None) -> str:
    """Resolve a dedup field against a node. Missing values are empty."""
    value = _node_value(node, field)
    if value:
        return value
    return (links or _LinkFields()).get(node, field)


def dedup_key(node: Node, fields: Sequence[str], links: _LinkFields | None = None) -> str:
    """Build the ``field:value|field:value`` key for a node."""
    links = links or _LinkFields()
    return KEY_SEPARATOR.join(f"{field}:{field_value(node, field, links)}" for field in fields)


def _protocol_fields(config: DeduplicationConfig) -> dict[Protocol, tuple[str, ...]]:
    resolved: dict[Protocol, tuple[str, ...]] = {}
    for name, fields in config.protocol_rules.items():
        protocol = Protocol.parse(name)
        if protocol is None:
            logger.warning("Ignoring dedup rule for unknown protocol '%s'", name)
            continue
        if fields and protocol not in resolved:
            resolved[protocol] = tuple(fields)
    return resolved


def dedupe(nodes: Sequence[Node], config: DeduplicationConfig) -> list[Node]:
    """Drop later duplicates of a node according to ``config``.

    Args:
        nodes: Nodes in priority order
        config: Dedup mode and key fields

    Returns:
        Kept nodes in their original order
    """
    if config.mode == "none":
        return list(nodes)

    links = _LinkFields()
    seen: set[str] = set()
    kept: list[Node] = []

    if config.mode == "common":
        if not config.common_fields:
            return list(nodes)
        for node in nodes:
            key = dedup_key(node, config.common_fields, links)
            if key in seen:
                continue
            seen.add(key)
            kept.append(node)
    else:
        per_protocol = _protocol_fields(config)
        for node in nodes:
            fields = per_protocol.get(node.protocol)
            if not fields:
                # protocols without rules pass through
                kept.append(node)
                continue
            key = f"{node.protocol.value}{KEY_SEPARATOR}{dedup_key(node, fields, links)}"
            if key in seen:
                continue
            seen.add(key)
            kept.append(node)

    logger.debug("Dedup (%s): %d -> %d nodes", config.mode, len(nodes), len(kept))
    return kept
