"""Tests for proxy chain resolution."""

import logging
import random

import pytest
from pydantic import ValidationError

from nodeflow.chain import plan_chains, resolve_chain, select_node
from nodeflow.errors import ChainResolutionError
from nodeflow.models import Node, RenderedNode
from nodeflow.rules import ChainRule, CustomGroupHop, ProxyChain, SpecifiedNodeHop, TemplateGroupHop


def rendered(node_id, name, country="HK", delay=0, dialer=""):
    node = Node(id=node_id, name=name, country_code=country, delay_ms=delay, dialer_proxy_name=dialer)
    return RenderedNode(node=node, display_name=name, index=node_id)


def country_is(code):
    return {"logic": "and", "conditions": [{"field": "link_country", "operator": "equals", "value": code}]}


def chain(hops, target=None):
    return ProxyChain.model_validate({"hops": hops, "target": target})


@pytest.fixture
def nodes():
    """Final node list: two HK entries, two JP relays, two US exits."""
    return [
        rendered(1, "HK-1", "HK", delay=50),
        rendered(2, "HK-2", "HK", delay=30),
        rendered(3, "JP-1", "JP", delay=0),
        rendered(4, "JP-2", "JP", delay=90),
        rendered(5, "US-1", "US"),
        rendered(6, "US-2", "US", dialer="Static Upstream"),
    ]


class TestChainModel:
    """Test chain validation and normalization."""

    def test_template_after_entry_becomes_custom(self, caplog):
        """Test template_group at hop 2 is normalized to custom_group."""
        with caplog.at_level(logging.WARNING):
            c = chain(
                [
                    {"type": "template_group", "groupName": "Entry"},
                    {"type": "template_group", "groupName": "Relay", "position": {"x": 10, "y": 20}},
                ]
            )
        assert c.hops[0].type == "template_group"
        assert isinstance(c.hops[1], CustomGroupHop)
        assert c.hops[1].group_name == "Relay"
        assert c.hops[1].position == {"x": 10, "y": 20}
        assert "treating it as a custom group" in caplog.text

    def test_normalized_hop_keeps_group_settings(self, nodes):
        """Test a rewritten template hop keeps its conditions and group type."""
        c = chain(
            [
                {"type": "specified_node", "nodeId": 1},
                {
                    "type": "template_group",
                    "groupName": "Relay",
                    "groupType": "url-test",
                    "urlTestConfig": {"url": "http://probe.example/204", "interval": 300},
                    "nodeConditions": country_is("JP"),
                },
            ],
            {"type": "specified_node", "nodeId": 5},
        )
        hop = c.hops[1]
        assert isinstance(hop, CustomGroupHop)
        assert hop.group_type == "url-test"
        assert hop.url_test_config.interval == 300
        assert hop.node_conditions is not None

        resolution = resolve_chain(c, nodes)
        assert resolution.groups[0].name == "Relay"
        assert resolution.groups[0].proxies == ("JP-1", "JP-2")
        assert resolution.dialer_map[5] == "Relay"

    def test_template_hop_instance_is_normalized(self):
        """Test model instances are rewritten the same way as raw payloads."""
        c = ProxyChain(hops=[SpecifiedNodeHop(node_id=1), TemplateGroupHop(group_name="Relay")])
        assert isinstance(c.hops[1], CustomGroupHop)
        assert c.hops[1].group_name == "Relay"

    def test_too_many_hops(self):
        """Test more than four hops is rejected."""
        with pytest.raises(ValidationError):
            chain([{"type": "specified_node", "nodeId": i} for i in range(5)])

    def test_missing_target_is_all(self):
        """Test an absent or blank target means all."""
        assert chain([]).target.type == "all"
        assert chain([], {"endPosition": {"x": 1}}).target.type == "all"

    def test_unknown_hop_type_rejected(self):
        """Test hop types are a closed set."""
        with pytest.raises(ValidationError):
            chain([{"type": "teleport"}])

    def test_position_round_trips(self):
        """Test UI positions survive to_persisted."""
        rule = ChainRule.model_validate(
            {
                "id": 1,
                "name": "r",
                "chainConfig": '[{"type": "specified_node", "nodeId": 3, "position": {"x": 5}}]',
                "targetConfig": '{"type": "all", "endPosition": {"x": 9}}',
            }
        )
        persisted = rule.to_persisted()
        assert '"position": {"x": 5}' in persisted["chainConfig"]
        assert '"endPosition": {"x": 9}' in persisted["targetConfig"]
        assert ChainRule.model_validate(persisted) == rule


class TestResolveChain:
    """Test single chain resolution."""

    def test_two_custom_groups_to_specified_target(self, nodes):
        """Test entry, relay and target wiring of a two-group chain."""
        c = chain(
            [
                {"type": "custom_group", "groupName": "Entry", "nodeConditions": country_is("HK")},
                {"type": "custom_group", "groupName": "Relay", "nodeConditions": country_is("JP")},
            ],
            {"type": "specified_node", "nodeId": 5},
        )
        resolution = resolve_chain(c, nodes)

        assert [g.name for g in resolution.groups] == ["Entry", "Relay"]
        assert resolution.groups[0].proxies == ("HK-1", "HK-2")
        assert resolution.groups[0].type == "select"
        dialers = resolution.dialer_map
        assert 1 not in dialers and 2 not in dialers
        assert dialers[3] == "Entry"
        assert dialers[4] == "Entry"
        assert dialers[5] == "Relay"
        assert 6 not in dialers

    def test_template_entry(self, nodes):
        """Test a template group contributes only its identity."""
        c = chain([{"type": "template_group", "groupName": "🚀 Proxy"}])
        resolution = resolve_chain(c, nodes)
        assert resolution.groups == []
        assert set(resolution.dialer_map.values()) == {"🚀 Proxy"}
        assert len(resolution.dialer_map) == len(nodes)

    def test_conditions_target(self, nodes):
        """Test a conditions target wires only matching nodes."""
        c = chain([{"type": "specified_node", "nodeId": 1}], {"type": "conditions", "conditions": country_is("US")})
        assert resolve_chain(c, nodes).dialer_map == {5: "HK-1", 6: "HK-1"}

    def test_all_target_skips_hop_nodes(self, nodes):
        """Test nodes serving as hops are not wired to the last hop."""
        c = chain(
            [
                {"type": "specified_node", "nodeId": 1},
                {"type": "dynamic_node", "nodeConditions": country_is("JP")},
            ]
        )
        dialers = resolve_chain(c, nodes).dialer_map
        assert 1 not in dialers
        assert dialers[3] == "HK-1"
        assert dialers[2] == "JP-1"
        assert dialers[6] == "JP-1"

    def test_empty_chain_is_noop(self, nodes):
        """Test a chain without hops wires nothing."""
        resolution = resolve_chain(chain([], {"type": "all"}), nodes)
        assert resolution.dialer_map == {}
        assert resolution.final_dialer == ""

    def test_url_test_group(self, nodes):
        """Test group type and url-test settings are carried to the group."""
        c = chain(
            [
                {
                    "type": "custom_group",
                    "groupName": "Auto",
                    "groupType": "url-test",
                    "urlTestConfig": {"url": "https://cp.cloudflare.com", "interval": 300, "tolerance": 50},
                    "nodeConditions": country_is("JP"),
                }
            ]
        )
        group = resolve_chain(c, nodes).groups[0]
        assert group.type == "url-test"
        assert group.url_test_config.interval == 300
        assert group.model_dump(by_alias=True)["urlTestConfig"]["tolerance"] == 50


class TestResolutionErrors:
    """Test structural failures."""

    @pytest.mark.parametrize(
        "hops,target,hop",
        [
            ([{"type": "specified_node", "nodeId": 99}], None, 0),
            ([{"type": "template_group", "groupName": "E"}, {"type": "specified_node", "nodeId": 99}], None, 1),
            ([{"type": "custom_group", "groupName": "Empty", "nodeConditions": country_is("DE")}], None, 0),
            ([{"type": "dynamic_node", "nodeConditions": country_is("DE")}], None, 0),
            ([{"type": "custom_group", "groupName": "  ", "nodeConditions": country_is("HK")}], None, 0),
            ([{"type": "template_group", "groupName": ""}], None, 0),
            ([{"type": "custom_group", "groupName": "NoConditions"}], None, 0),
            ([{"type": "specified_node", "nodeId": 1}], {"type": "specified_node", "nodeId": 99}, None),
        ],
    )
    def test_raises(self, nodes, hops, target, hop):
        """Test each structural failure raises with the failing position."""
        with pytest.raises(ChainResolutionError) as exc_info:
            resolve_chain(chain(hops, target), nodes)
        assert exc_info.value.hop == hop

    def test_message_names_hop(self, nodes):
        """Test the error message points at the 1-based hop."""
        with pytest.raises(ChainResolutionError, match=r"hop 1: node 99 is not in the pool"):
            resolve_chain(chain([{"type": "specified_node", "nodeId": 99}]), nodes)


class TestSelectNode:
    """Test dynamic node selection modes."""

    def test_first(self, nodes):
        """Test first takes pool order."""
        assert select_node(nodes, "first", random.Random()).id == 1

    def test_fastest(self, nodes):
        """Test fastest takes the minimum positive delay."""
        assert select_node(nodes, "fastest", random.Random()).id == 2

    def test_fastest_tie_goes_to_earlier(self):
        """Test equal delays resolve to pool order."""
        tied = [rendered(1, "a", delay=40), rendered(2, "b", delay=40)]
        assert select_node(tied, "fastest", random.Random()).id == 1

    def test_fastest_without_delay_data(self):
        """Test fastest falls back to the first match."""
        unmeasured = [rendered(1, "a"), rendered(2, "b")]
        assert select_node(unmeasured, "fastest", random.Random()).id == 1

    def test_random_reproducible(self, nodes):
        """Test the same seed picks the same node."""
        picks = {select_node(nodes, "random", random.Random(42)).id for _ in range(5)}
        assert len(picks) == 1

    def test_random_uses_injected_source(self, nodes):
        """Test random selection draws from the given source only."""
        expected = random.Random(7).choice(nodes)
        assert select_node(nodes, "random", random.Random(7)) == expected


class TestPlanChains:
    """Test combining several chain rules."""

    def rule(self, name, sort, hops, target=None, enabled=True):
        return ChainRule.model_validate(
            {"id": sort, "name": name, "sort": sort, "enabled": enabled, "chain": {"hops": hops, "target": target}}
        )

    def test_hop_wiring_beats_target_wiring(self, nodes):
        """Test a node used as a relay by one rule keeps that wiring."""
        rules = [
            self.rule("exit-all", 1, [{"type": "specified_node", "nodeId": 1}]),
            self.rule(
                "relay",
                2,
                [
                    {"type": "specified_node", "nodeId": 2},
                    {"type": "specified_node", "nodeId": 3},
                ],
                {"type": "specified_node", "nodeId": 5},
            ),
        ]
        plan = plan_chains(rules, nodes)
        assert plan.valid
        assert plan.dialer_for(3) == "HK-2"
        assert plan.dialer_for(4) == "HK-1"
        assert plan.dialer_for(1) == ""

    def test_first_target_rule_wins(self, nodes):
        """Test rules run in sort order and the first target wiring sticks."""
        rules = [
            self.rule("late", 5, [{"type": "specified_node", "nodeId": 2}]),
            self.rule("early", 1, [{"type": "specified_node", "nodeId": 1}]),
        ]
        plan = plan_chains(rules, nodes)
        assert plan.dialer_for(5) == "HK-1"
        assert list(plan.resolutions) == ["early", "late"]

    def test_static_dialer_is_lowest_precedence(self, nodes):
        """Test a node's own dialer applies only when no rule wires it."""
        assert plan_chains([], nodes).dialer_for(6) == "Static Upstream"
        rules = [
            self.rule(
                "us",
                1,
                [{"type": "specified_node", "nodeId": 1}],
                {"type": "conditions", "conditions": country_is("US")},
            )
        ]
        assert plan_chains(rules, nodes).dialer_for(6) == "HK-1"

    def test_disabled_rules_skipped(self, nodes):
        """Test disabled rules do not resolve."""
        rules = [self.rule("off", 1, [{"type": "specified_node", "nodeId": 99}], enabled=False)]
        plan = plan_chains(rules, nodes)
        assert plan.valid
        assert plan.resolutions == {}

    def test_failed_rule_is_reported(self, nodes, caplog):
        """Test a failing rule is collected, and others still resolve."""
        rules = [
            self.rule("broken", 1, [{"type": "specified_node", "nodeId": 99}]),
            self.rule("ok", 2, [{"type": "specified_node", "nodeId": 1}]),
        ]
        with caplog.at_level(logging.ERROR):
            plan = plan_chains(rules, nodes)
        assert not plan.valid
        assert plan.errors[0].rule == "broken"
        assert str(plan.errors[0]) == "chain rule 'broken' hop 1: node 99 is not in the pool"
        assert plan.dialer_for(5) == "HK-1"
        assert "Chain resolution failed" in caplog.text

    def test_strict_raises(self, nodes):
        """Test strict mode raises the first failure."""
        rules = [self.rule("broken", 1, [{"type": "specified_node", "nodeId": 99}])]
        with pytest.raises(ChainResolutionError) as exc_info:
            plan_chains(rules, nodes, strict=True)
        assert exc_info.value.rule == "broken"

    def test_groups_deduplicated_by_name(self, nodes):
        """Test the first definition of a group name wins."""
        rules = [
            self.rule("a", 1, [{"type": "custom_group", "groupName": "G", "nodeConditions": country_is("HK")}]),
            self.rule("b", 2, [{"type": "custom_group", "groupName": "G", "nodeConditions": country_is("JP")}]),
        ]
        plan = plan_chains(rules, nodes)
        assert len(plan.groups) == 1
        assert plan.groups[0].proxies == ("HK-1", "HK-2")

    def test_seeded_random_is_reproducible(self, nodes):
        """Test one seed gives the same plan on every run."""
        rules = [self.rule("r", 1, [{"type": "dynamic_node", "selectMode": "random", "nodeConditions": {}}])]
        first = plan_chains(rules, nodes, random.Random(3)).dialer_map
        second = plan_chains(rules, nodes, random.Random(3)).dialer_map
        assert first == second
