"""Node records consumed and produced by the pipeline."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Scheme and shorthand spellings that map onto a display label
_PROTOCOL_ALIASES = {
    "shadowsocks": "SS",
    "shadowsocksr": "SSR",
    "hy": "Hysteria",
    "hy2": "Hysteria2",
    "wg": "WireGuard",
    "naive": "NaiveProxy",
    "naive+https": "NaiveProxy",
    "socks": "SOCKS5",
    "https": "HTTP",
}


class Protocol(str, Enum):
    """Proxy protocol, valued by its display label."""

    SS = "SS"
    SSR = "SSR"
    VMESS = "VMess"
    VLESS = "VLESS"
    TROJAN = "Trojan"
    HYSTERIA = "Hysteria"
    HYSTERIA2 = "Hysteria2"
    TUIC = "TUIC"
    WIREGUARD = "WireGuard"
    NAIVE = "NaiveProxy"
    ANYTLS = "AnyTLS"
    SOCKS5 = "SOCKS5"
    HTTP = "HTTP"
    OTHER = "Other"

    @classmethod
    def _missing_(cls, value: object) -> Protocol | None:
        if not isinstance(value, str):
            return None
        return cls.parse(value) or cls.OTHER

    @classmethod
    def parse(cls, name: str) -> Protocol | None:
        """Look up a protocol by label or scheme, case-insensitively.

        Returns:
            The matching member, or None when the spelling is unknown
        """
        key = name.strip().lower()
        if not key:
            return None
        for member in cls:
            if member.value.lower() == key:
                return member
        alias = _PROTOCOL_ALIASES.get(key)
        return cls(alias) if alias else None

    @classmethod
    def from_link(cls, link: str) -> Protocol:
        """Infer the protocol from a share link scheme."""
        scheme, sep, _ = link.strip().partition("://")
        if not sep:
            return cls.OTHER
        return cls.parse(scheme) or cls.OTHER

    def matches(self, name: str) -> bool:
        """Case-insensitive comparison against a label or scheme spelling."""
        return Protocol.parse(name) is self


class TestStatus(str, Enum):
    """Outcome of the last latency or speed test."""

    __test__ = False

    UNTESTED = "untested"
    SUCCESS = "success"
    TIMEOUT = "timeout"
    ERROR = "error"

    @classmethod
    def _missing_(cls, value: object) -> TestStatus | None:
        if isinstance(value, str):
            key = value.strip().lower()
            if not key:
                return cls.UNTESTED
            for member in cls:
                if member.value == key:
                    return member
        return None


class Node(BaseModel):
    """One candidate proxy server entry.

    Immutable for the duration of a pipeline run. Persisted JSON uses
    camelCase keys; snake_case names are accepted as well.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: int
    name: str = ""
    """System label (rendered by $Name)"""

    original_name: str = ""
    """Name as published by the upstream source"""

    protocol: Protocol = Protocol.OTHER
    group: str = ""
    source: str = "manual"
    tags: tuple[str, ...] = ()
    country_code: str = ""
    delay_ms: int = 0
    speed_mbs: float = Field(default=0.0, alias="speedMBs")
    delay_status: TestStatus = TestStatus.UNTESTED
    speed_status: TestStatus = TestStatus.UNTESTED

    link: str = ""
    """Opaque share link payload"""

    server: str = ""
    port: str = ""
    host: str = ""

    dialer_proxy_name: str = ""
    """Static upstream configured on the node itself"""

    @model_validator(mode="before")
    @classmethod
    def _infer_protocol(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("protocol") and data.get("link"):
            data = {**data, "protocol": Protocol.from_link(str(data["link"]))}
        return data

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            value = value.split(",")
        seen: list[str] = []
        for item in value:
            tag = str(item).strip()
            if tag and tag not in seen:
                seen.append(tag)
        return tuple(seen)

    @field_validator("country_code", mode="before")
    @classmethod
    def _normalize_country(cls, value: Any) -> Any:
        return str(value or "").strip().upper()

    @field_validator("port", mode="before")
    @classmethod
    def _port_to_text(cls, value: Any) -> Any:
        return "" if value is None else str(value)

    @property
    def tag_text(self) -> str:
        """Tags joined the way the panel stores them."""
        return ",".join(self.tags)


class RenderedNode(BaseModel):
    """A node that survived filtering and deduplication, with its display name.

    Attributes:
        node: Source node (unchanged)
        display_name: Rendered name; also the node's proxy identity
        index: 1-based position in the final list
        link: Share link carrying the display name
    """

    model_config = ConfigDict(frozen=True)

    node: Node
    display_name: str
    index: int
    link: str = ""

    @property
    def id(self) -> int:
        return self.node.id
