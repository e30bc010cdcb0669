"""Persisted rule configuration for one subscription.

Every structured rule is a pydantic model. Heterogeneous shapes are tagged
unions keyed by their discriminator: condition field class, hop ``type``,
target ``type``. JSON keys are camelCase, matching what the panel stores.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from nodeflow.errors import RuleConfigError
from nodeflow.models import TestStatus

logger = logging.getLogger(__name__)

STATUS_FIELDS = frozenset({"delay_status", "speed_status"})
NUMERIC_FIELDS = frozenset({"speed", "delay_time"})

MAX_CHAIN_HOPS = 4


class RuleModel(BaseModel):
    """Base for all rule models: immutable, camelCase on the wire."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


# ========== Conditions ==========


class StatusCondition(RuleModel):
    field: Literal["delay_status", "speed_status"]
    operator: Literal["equals", "not_equals"]
    value: TestStatus


class NumericCondition(RuleModel):
    field: Literal["speed", "delay_time"]
    operator: Literal[
        "equals",
        "not_equals",
        "greater_than",
        "less_than",
        "greater_or_equal",
        "less_or_equal",
    ]
    value: float = 0.0

    @field_validator("value", mode="before")
    @classmethod
    def _blank_is_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0.0
        return value


class TextCondition(RuleModel):
    field: str
    operator: Literal["equals", "not_equals", "contains", "not_contains", "regex"]
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)


def _condition_kind(value: Any) -> str:
    field = value.get("field") if isinstance(value, dict) else getattr(value, "field", "")
    if field in STATUS_FIELDS:
        return "status"
    if field in NUMERIC_FIELDS:
        return "numeric"
    return "text"


Condition = Annotated[
    Union[
        Annotated[StatusCondition, Tag("status")],
        Annotated[NumericCondition, Tag("numeric")],
        Annotated[TextCondition, Tag("text")],
    ],
    Discriminator(_condition_kind),
]


class ConditionGroup(RuleModel):
    """Conditions combined with ``and``/``or``. No conditions means true."""

    logic: Literal["and", "or"] = "and"
    conditions: tuple[Condition, ...] = ()

    @field_validator("logic", mode="before")
    @classmethod
    def _default_and(cls, value: Any) -> str:
        # anything other than "or" combines with AND
        return "or" if str(value or "").strip().lower() == "or" else "and"


# ========== Filters ==========


class FilterStage(str, Enum):
    COUNTRY = "country"
    TAG = "tag"
    PROTOCOL = "protocol"
    NAME = "name"
    PERFORMANCE = "performance"


DEFAULT_FILTER_ORDER: tuple[FilterStage, ...] = (
    FilterStage.COUNTRY,
    FilterStage.TAG,
    FilterStage.PROTOCOL,
    FilterStage.NAME,
    FilterStage.PERFORMANCE,
)


def split_csv(value: Any) -> list[str]:
    """Split a comma-joined persisted list, dropping blanks."""
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(item).strip() for item in value if str(item).strip()]


def validate_filter_order(value: Any) -> tuple[FilterStage, ...] | None:
    """Parse a filter stage order, rejecting duplicates."""
    if value is None:
        return None
    stages = tuple(FilterStage(item) for item in split_csv(value))
    if len(set(stages)) != len(stages):
        raise ValueError(f"duplicate filter stage in order: {[s.value for s in stages]}")
    return stages


class ListFilter(RuleModel):
    """Whitelist/blacklist over a single-valued or set-valued attribute."""

    whitelist: frozenset[str] = frozenset()
    blacklist: frozenset[str] = frozenset()

    @field_validator("whitelist", "blacklist", mode="before")
    @classmethod
    def _from_csv(cls, value: Any) -> frozenset[str]:
        return frozenset(split_csv(value))

    @property
    def configured(self) -> bool:
        return bool(self.whitelist or self.blacklist)


class NameRule(RuleModel):
    match_mode: Literal["text", "regex"] = "text"
    pattern: str = ""
    enabled: bool = True

    @field_validator("match_mode", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> str:
        return "regex" if value == "regex" else "text"

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.pattern)


class NameFilter(RuleModel):
    whitelist: tuple[NameRule, ...] = ()
    blacklist: tuple[NameRule, ...] = ()

    @property
    def configured(self) -> bool:
        return any(rule.active for rule in (*self.whitelist, *self.blacklist))


class PerformanceThresholds(RuleModel):
    delay_time_max: int = 0
    """Maximum delay in ms; 0 disables"""

    min_speed: float = 0.0
    """Minimum speed in MB/s; 0 disables"""

    require_delay: bool = False
    """With a delay limit set, also drop nodes without a positive delay"""

    @property
    def configured(self) -> bool:
        return self.delay_time_max > 0 or self.min_speed > 0


class FilterRules(RuleModel):
    country: ListFilter = Field(default_factory=ListFilter)
    tag: ListFilter = Field(default_factory=ListFilter)
    protocol: ListFilter = Field(default_factory=ListFilter)
    name: NameFilter = Field(default_factory=NameFilter)
    performance: PerformanceThresholds = Field(default_factory=PerformanceThresholds)
    order: tuple[FilterStage, ...] | None = None

    @field_validator("order", mode="before")
    @classmethod
    def _check_order(cls, value: Any) -> tuple[FilterStage, ...] | None:
        return validate_filter_order(value)


# ========== Deduplication and naming ==========


class DeduplicationConfig(RuleModel):
    mode: Literal["none", "common", "protocol"] = "none"
    common_fields: tuple[str, ...] = ()
    protocol_rules: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @field_validator("mode", mode="before")
    @classmethod
    def _unknown_is_none(cls, value: Any) -> str:
        return value if value in ("common", "protocol") else "none"


class PreprocessRule(RuleModel):
    match_mode: Literal["text", "regex"] = "text"
    pattern: str = ""
    replacement: str = ""
    enabled: bool = True

    @field_validator("match_mode", mode="before")
    @classmethod
    def _default_text(cls, value: Any) -> str:
        return "regex" if value == "regex" else "text"


# ========== Proxy chains ==========


class URLTestConfig(RuleModel):
    url: str = ""
    interval: int = 0
    tolerance: int = 0


class _HopBase(RuleModel):
    position: dict[str, Any] | None = None
    """Canvas position kept for the editor; never read by resolution"""


class TemplateGroupHop(_HopBase):
    type: Literal["template_group"] = "template_group"
    group_name: str = ""


class CustomGroupHop(_HopBase):
    type: Literal["custom_group"] = "custom_group"
    group_name: str = ""
    group_type: str = "select"
    url_test_config: URLTestConfig | None = None
    node_conditions: ConditionGroup | None = None

    @field_validator("group_type", mode="before")
    @classmethod
    def _default_select(cls, value: Any) -> str:
        return str(value or "").strip() or "select"


class DynamicNodeHop(_HopBase):
    type: Literal["dynamic_node"] = "dynamic_node"
    node_conditions: ConditionGroup | None = None
    select_mode: Literal["first", "random", "fastest"] = "first"

    @field_validator("select_mode", mode="before")
    @classmethod
    def _default_first(cls, value: Any) -> str:
        return value if value in ("random", "fastest") else "first"


class SpecifiedNodeHop(_HopBase):
    type: Literal["specified_node"] = "specified_node"
    node_id: int = 0


ChainHop = Annotated[
    Union[TemplateGroupHop, CustomGroupHop, DynamicNodeHop, SpecifiedNodeHop],
    Field(discriminator="type"),
]


class _TargetBase(RuleModel):
    end_position: dict[str, Any] | None = None
    """Canvas position of the target node; never read by resolution"""


class AllTarget(_TargetBase):
    type: Literal["all"] = "all"


class SpecifiedNodeTarget(_TargetBase):
    type: Literal["specified_node"] = "specified_node"
    node_id: int = 0


class ConditionsTarget(_TargetBase):
    type: Literal["conditions"] = "conditions"
    conditions: ConditionGroup | None = None


TargetSpec = Annotated[
    Union[AllTarget, SpecifiedNodeTarget, ConditionsTarget],
    Field(discriminator="type"),
]


class ProxyChain(RuleModel):
    """Up to four hops plus the target they feed.

    Only hop 0 may reference a template group; a template hop further down
    the chain is rewritten as a custom group of the same name.
    """

    hops: tuple[ChainHop, ...] = Field(default=(), max_length=MAX_CHAIN_HOPS)
    target: TargetSpec = Field(default_factory=AllTarget)

    @field_validator("target", mode="before")
    @classmethod
    def _blank_target_is_all(cls, value: Any) -> Any:
        if value is None or (isinstance(value, dict) and not value.get("type")):
            extra = value or {}
            return {**extra, "type": "all"}
        return value

    @field_validator("hops", mode="before")
    @classmethod
    def _normalize_template_hops(cls, hops: Any) -> Any:
        # Only the type changes; conditions and group settings are kept
        if not isinstance(hops, (list, tuple)):
            return hops
        normalized = list(hops)
        for index, hop in enumerate(normalized):
            if index == 0:
                continue
            if isinstance(hop, TemplateGroupHop):
                hop = hop.model_dump(by_alias=True)
            if isinstance(hop, Mapping) and hop.get("type") == "template_group":
                logger.warning(
                    "Chain hop %d references template group '%s'; treating it as a custom group",
                    index + 1,
                    hop.get("groupName", hop.get("group_name", "")),
                )
                normalized[index] = {**hop, "type": "custom_group"}
        return normalized


def _decode_json_text(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value.strip() else None
    return value


class ChainRule(RuleModel):
    """A named, orderable chain rule attached to a subscription."""

    id: int = 0
    name: str = ""
    sort: int = 0
    enabled: bool = True
    chain: ProxyChain = Field(default_factory=ProxyChain)

    @model_validator(mode="before")
    @classmethod
    def _from_stored_columns(cls, data: Any) -> Any:
        # stored rows keep the hop list and target as separate JSON columns
        if not isinstance(data, dict) or "chain" in data:
            return data
        if "chainConfig" not in data and "targetConfig" not in data:
            return data
        rest = {k: v for k, v in data.items() if k not in ("chainConfig", "targetConfig")}
        hops = _decode_json_text(data.get("chainConfig")) or []
        target = _decode_json_text(data.get("targetConfig"))
        return {**rest, "chain": {"hops": hops, "target": target}}

    def to_persisted(self) -> dict[str, Any]:
        """Serialize back to the stored column layout, UI metadata included."""
        hops = [hop.model_dump(by_alias=True, exclude_none=True) for hop in self.chain.hops]
        target = self.chain.target.model_dump(by_alias=True, exclude_none=True)
        return {
            "id": self.id,
            "name": self.name,
            "sort": self.sort,
            "enabled": self.enabled,
            "chainConfig": json.dumps(hops, ensure_ascii=False),
            "targetConfig": json.dumps(target, ensure_ascii=False),
        }


# ========== Subscription ==========


class SubscriptionRules(RuleModel):
    """Everything the pipeline needs to shape one subscription."""

    filters: FilterRules = Field(default_factory=FilterRules)
    dedup: DeduplicationConfig = Field(default_factory=DeduplicationConfig)
    preprocess: tuple[PreprocessRule, ...] = ()
    name_template: str = ""
    chain_rules: tuple[ChainRule, ...] = ()

    @property
    def enabled_chain_rules(self) -> list[ChainRule]:
        """Enabled chain rules in ``sort`` order (stable for equal keys)."""
        return sorted((rule for rule in self.chain_rules if rule.enabled), key=lambda rule: rule.sort)

    @classmethod
    def load(cls, data: Mapping[str, Any]) -> SubscriptionRules:
        """Load rules from either the structured or the stored column layout.

        Raises:
            RuleConfigError: If the data does not validate
        """
        if any(key[:1].isupper() for key in data):
            return cls.from_persisted(data)
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise RuleConfigError("subscription", str(e)) from e

    @classmethod
    def from_persisted(cls, record: Mapping[str, Any]) -> SubscriptionRules:
        """Build rules from a stored subscription row.

        Multi-value whitelists and blacklists are comma-joined strings;
        structured rules are JSON text. Malformed or invalid name rules,
        preprocess rules and dedup config are logged and ignored, one column at
        a time. Malformed chain rules raise.

        Args:
            record: Column name to value, e.g. ``{"CountryWhitelist": "HK,JP"}``

        Returns:
            Parsed SubscriptionRules

        Raises:
            RuleConfigError: If a chain rule or a scalar field is invalid
        """
        data: dict[str, Any] = {
            "filters": {
                "country": {
                    "whitelist": record.get("CountryWhitelist"),
                    "blacklist": record.get("CountryBlacklist"),
                },
                "tag": {
                    "whitelist": record.get("TagWhitelist"),
                    "blacklist": record.get("TagBlacklist"),
                },
                "protocol": {
                    "whitelist": record.get("ProtocolWhitelist"),
                    "blacklist": record.get("ProtocolBlacklist"),
                },
                "name": {
                    "whitelist": _soft_json(record, "NodeNameWhitelist", [], list[NameRule]),
                    "blacklist": _soft_json(record, "NodeNameBlacklist", [], list[NameRule]),
                },
                "performance": {
                    "delayTimeMax": record.get("DelayTime") or 0,
                    "minSpeed": record.get("MinSpeed") or 0,
                    "requireDelay": bool(record.get("RequireDelay", False)),
                },
                "order": record.get("FilterOrder"),
            },
            "dedup": _soft_json(record, "DeduplicationRule", {}, DeduplicationConfig),
            "preprocess": _soft_json(record, "NodeNamePreprocess", [], list[PreprocessRule]),
            "nameTemplate": record.get("NodeNameRule") or "",
        }

        chain_rules = []
        for index, row in enumerate(record.get("ChainRules") or []):
            try:
                chain_rules.append(ChainRule.model_validate(row))
            except (ValidationError, ValueError) as e:
                raise RuleConfigError(f"ChainRules[{index}]", str(e)) from e
        data["chainRules"] = chain_rules

        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RuleConfigError("subscription", str(e)) from e


def _soft_json(record: Mapping[str, Any], key: str, default: Any, shape: Any) -> Any:
    """Decode and validate one JSON column, falling back to ``default`` on any error."""
    raw = record.get(key)
    if raw is None or raw == "":
        return default
    value = raw
    if isinstance(raw, str):
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Ignoring malformed %s: %s", key, e)
            return default
    try:
        return TypeAdapter(shape).validate_python(value)
    except ValidationError as e:
        logger.warning("Ignoring %s: %d invalid value(s): %s", key, e.error_count(), e)
        return default
