"""Tests for the filter pipeline."""

import pytest
from pydantic import ValidationError

from nodeflow import filters
from nodeflow.models import Node
from nodeflow.rules import DEFAULT_FILTER_ORDER, FilterRules, FilterStage, NameRule


@pytest.fixture
def pool():
    """A small mixed pool in priority order."""
    return [
        Node(id=1, original_name="香港 01", country_code="HK", tags="premium,iplc", link="vmess://x", delay_ms=80, speed_mbs=20),
        Node(id=2, original_name="日本 02", country_code="jp", tags="standard", link="trojan://pw@jp:443", delay_ms=0),
        Node(id=3, original_name="美国 03 [过期]", country_code="US", tags="premium", link="ss://abc@us:8388", delay_ms=300, speed_mbs=2),
        Node(id=4, original_name="台湾 04", country_code="TW", link="hysteria2://pw@tw:443", delay_ms=150, speed_mbs=8),
    ]


def rules(**data):
    return FilterRules.model_validate(data)


def ids(nodes):
    return [node.id for node in nodes]


class TestListStages:
    """Test country, tag and protocol stages."""

    def test_unconfigured_is_passthrough(self, pool):
        """Test no rules keeps every node in order."""
        assert filters.apply(pool, FilterRules()) == pool

    def test_country_whitelist_from_csv(self, pool):
        """Test comma-joined whitelist, compared case-insensitively."""
        assert ids(filters.apply(pool, rules(country={"whitelist": "HK, jp"}))) == [1, 2]

    def test_country_blacklist(self, pool):
        """Test blacklisted countries are removed."""
        assert ids(filters.apply(pool, rules(country={"blacklist": "US"}))) == [1, 2, 4]

    def test_tag_any_match(self, pool):
        """Test a node passes the tag whitelist with any listed tag."""
        assert ids(filters.apply(pool, rules(tag={"whitelist": "iplc,standard"}))) == [1, 2]

    def test_protocol_whitelist_accepts_schemes(self, pool):
        """Test protocol lists accept labels and scheme spellings."""
        assert ids(filters.apply(pool, rules(protocol={"whitelist": "vmess,hy2"}))) == [1, 4]

    def test_protocol_blacklist(self, pool):
        """Test protocol blacklist removes matching nodes."""
        assert ids(filters.apply(pool, rules(protocol={"blacklist": ["SS", "Trojan"]}))) == [1, 4]

    def test_empty_result_is_valid(self, pool):
        """Test filtering everything out is not an error."""
        assert filters.apply(pool, rules(country={"whitelist": "DE"})) == []


class TestBlacklistPrecedence:
    """Test a node on both lists is always excluded."""

    @pytest.mark.parametrize(
        "config",
        [
            {"country": {"whitelist": "HK,JP", "blacklist": "HK"}},
            {"tag": {"whitelist": "premium", "blacklist": "iplc"}},
            {"protocol": {"whitelist": "VMess,Trojan", "blacklist": "vmess"}},
            {
                "name": {
                    "whitelist": [{"matchMode": "text", "pattern": "香港"}],
                    "blacklist": [{"matchMode": "regex", "pattern": "^香港"}],
                }
            },
        ],
    )
    def test_blacklist_wins(self, pool, config):
        """Test node 1 matches both lists and is dropped."""
        assert 1 not in ids(filters.apply(pool, rules(**config)))


class TestNameStage:
    """Test name rules over the original name."""

    def test_text_blacklist(self, pool):
        """Test substring blacklist."""
        config = {"name": {"blacklist": [{"matchMode": "text", "pattern": "过期"}]}}
        assert ids(filters.apply(pool, rules(**config))) == [1, 2, 4]

    def test_regex_whitelist(self, pool):
        """Test regex whitelist keeps matching names only."""
        config = {"name": {"whitelist": [{"matchMode": "regex", "pattern": r"0[12]$"}]}}
        assert ids(filters.apply(pool, rules(**config))) == [1, 2]

    def test_disabled_whitelist_is_ignored(self, pool):
        """Test a disabled whitelist rule does not restrict the pool."""
        config = {"name": {"whitelist": [{"matchMode": "text", "pattern": "香港", "enabled": False}]}}
        assert filters.apply(pool, rules(**config)) == pool

    def test_invalid_regex_blacklist_is_inert(self, pool):
        """Test an uncompilable blacklist regex never excludes a node."""
        config = {"name": {"blacklist": [{"matchMode": "regex", "pattern": "([bad"}]}}
        assert filters.apply(pool, rules(**config)) == pool

    def test_name_rule_matches(self):
        """Test name_rule_matches on inactive rules."""
        assert not filters.name_rule_matches(NameRule(pattern=""), "anything")
        assert not filters.name_rule_matches(NameRule(pattern="any", enabled=False), "anything")
        assert filters.name_rule_matches(NameRule(pattern="any"), "anything")


class TestPerformanceStage:
    """Test delay and speed thresholds."""

    def test_delay_max(self, pool):
        """Test nodes slower than the limit are dropped; unmeasured pass."""
        assert ids(filters.apply(pool, rules(performance={"delayTimeMax": 200}))) == [1, 2, 4]

    def test_require_delay(self, pool):
        """Test requireDelay also drops nodes without a measurement."""
        config = {"performance": {"delayTimeMax": 200, "requireDelay": True}}
        assert ids(filters.apply(pool, rules(**config))) == [1, 4]

    def test_min_speed(self, pool):
        """Test nodes under the speed floor are dropped."""
        assert ids(filters.apply(pool, rules(performance={"minSpeed": 5}))) == [1, 4]


class TestOrderAndProperties:
    """Test stage order configuration and pipeline properties."""

    def test_default_order(self):
        """Test the built-in stage order."""
        assert filters.resolve_order(FilterRules()) == DEFAULT_FILTER_ORDER

    def test_rules_order_wins_over_default(self):
        """Test the subscription's own order beats the fallback."""
        r = rules(order="performance,country")
        assert filters.resolve_order(r, [FilterStage.TAG]) == (
            FilterStage.PERFORMANCE,
            FilterStage.COUNTRY,
            FilterStage.TAG,
            FilterStage.PROTOCOL,
            FilterStage.NAME,
        )

    def test_fallback_order(self):
        """Test the fallback is used when the rules carry no order."""
        assert filters.resolve_order(FilterRules(), ["tag", "name"]) == (
            FilterStage.TAG,
            FilterStage.NAME,
            FilterStage.COUNTRY,
            FilterStage.PROTOCOL,
            FilterStage.PERFORMANCE,
        )

    def test_partial_order_keeps_omitted_stages(self, pool):
        """Test stages left out of the order still run after the listed ones."""
        r = rules(order=["tag"], country={"whitelist": "DE"})
        assert filters.apply(pool, r) == []

    def test_partial_order_keeps_blacklist(self):
        """Test a country blacklist applies even when the order names only tag."""
        pool = [
            Node(id=1, name="a", original_name="a", country_code="HK"),
            Node(id=2, name="b", original_name="b", country_code="RU"),
        ]
        r = rules(order="tag", country={"blacklist": "RU"})
        assert ids(filters.apply(pool, r)) == [1]
        assert ids(filters.apply(pool, rules(country={"blacklist": "RU"}), ["tag"])) == [1]

    def test_duplicate_stage_rejected(self):
        """Test a repeated stage in the order is invalid."""
        with pytest.raises(ValidationError):
            rules(order="country,country")

    def test_unknown_stage_rejected(self):
        """Test an unknown stage name is invalid."""
        with pytest.raises(ValidationError):
            rules(order="country,speed")

    def test_idempotent(self, pool):
        """Test applying the same rules twice changes nothing."""
        r = rules(
            country={"blacklist": "US"},
            tag={"whitelist": "premium,standard"},
            name={"blacklist": [{"matchMode": "regex", "pattern": "02"}]},
            performance={"delayTimeMax": 200},
        )
        once = filters.apply(pool, r)
        assert filters.apply(once, r) == once
        assert ids(once) == [1]

    def test_input_not_mutated(self, pool):
        """Test the pool list is left as is."""
        before = list(pool)
        filters.apply(pool, rules(country={"whitelist": "HK"}))
        assert pool == before

    def test_is_configured(self):
        """Test is_configured per stage."""
        r = rules(tag={"blacklist": "x"})
        assert filters.is_configured(FilterStage.TAG, r)
        assert not filters.is_configured(FilterStage.COUNTRY, r)
        assert not filters.is_configured(FilterStage.PERFORMANCE, r)
