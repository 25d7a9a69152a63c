from __future__ import annotations

import re

import pytest

from fakes import GROUP, OWNER_ID, REGION, FakeProvider, make_node
from salter.cache import RegionCache, ResourceCache
from salter.exceptions import RuleError
from salter.sgroups import (
    compile_rule,
    contains,
    missing_permissions,
    parse_rule,
    reconcile_group,
    sync_security_groups,
)
from salter.types import FirewallGroup, Permission, SourceGroup


@pytest.fixture
def region(cache: ResourceCache) -> RegionCache:
    return cache.get_region(REGION)


class TestParseRule:
    @pytest.mark.parametrize(
        "rule",
        ["tcp:0:100:0.0.0.0/0", "tcp:100:50:0.0.0.0/0", "tcp:1:70000:0.0.0.0/0", "tcp:x:0.0.0.0/0"],
    )
    def test_bad_ports_rejected(self, rule: str):
        with pytest.raises(RuleError, match=re.escape(rule)):
            parse_rule(rule)

    def test_icmp_unknown_type_rejected(self):
        with pytest.raises(RuleError, match="Unknown icmp type: 9"):
            parse_rule("icmp:9:0:0.0.0.0/0")

    def test_icmp_unknown_code_rejected(self):
        with pytest.raises(RuleError, match="Unknown code type: 3"):
            parse_rule("icmp:8:3:0.0.0.0/0")

    def test_unknown_protocol(self):
        with pytest.raises(RuleError, match=r"\(sctp:22:x\): Unknown protocol: sctp"):
            parse_rule("sctp:22:x")

    def test_unknown_format(self):
        with pytest.raises(RuleError, match="Unknown rule format"):
            parse_rule("tcp")

    def test_single_port(self):
        assert parse_rule("tcp:22:0.0.0.0/0") == ("tcp", 22, 22, "0.0.0.0/0")

    def test_port_range(self):
        assert parse_rule("udp:1000:2000:web") == ("udp", 1000, 2000, "web")

    def test_two_fields_is_full_range(self):
        assert parse_rule("tcp:*") == ("tcp", 1, 65535, "*")

    @pytest.mark.parametrize(
        ("token", "expected"),
        [("*", -1), ("echo_reply", 0), ("0", 0), ("echo_request", 8), ("ping", 8), ("8", 8)],
    )
    def test_icmp_types(self, token: str, expected: int):
        assert parse_rule(f"icmp:{token}:-1:10.0.0.0/8") == ("icmp", expected, -1, "10.0.0.0/8")

    def test_icmp_two_fields(self):
        assert parse_rule("icmp:0.0.0.0/0") == ("icmp", -1, -1, "0.0.0.0/0")


class TestCompileRule:
    def test_cidr_source(self, region: RegionCache):
        perms = compile_rule("tcp:22:0.0.0.0/0", region, [])
        assert perms == [Permission("tcp", 22, 22, source_ips=("0.0.0.0/0",))]

    def test_tcp_udp_expands(self, region: RegionCache):
        perms = compile_rule("tcp/udp:53:10.0.0.0/8", region, [])
        assert [p.protocol for p in perms] == ["tcp", "udp"]
        assert all((p.from_port, p.to_port) == (53, 53) for p in perms)

    def test_group_source_is_created(self, region: RegionCache, provider: FakeProvider):
        perms = compile_rule("tcp:4505:4506:minions", region, [])
        assert provider.count("create_security_group") == 1
        assert perms[0].source_groups == (SourceGroup("sg-minions", OWNER_ID, "minions"),)
        assert region.group_exists("minions")

    def test_existing_group_source_not_created(self, region: RegionCache, provider: FakeProvider):
        compile_rule(f"tcp:22:{GROUP}", region, [])
        assert provider.count("create_security_group") == 0

    def test_wildcard_expands_over_configured_groups(self, region: RegionCache):
        perms = compile_rule("tcp:*", region, ["C", "A", "B", "A"])
        assert len(perms) == 3
        assert [p.source_groups[0].name for p in perms] == ["A", "B", "C"]
        assert all((p.protocol, p.from_port, p.to_port) == ("tcp", 1, 65535) for p in perms)

    def test_wildcard_with_tcp_udp(self, region: RegionCache):
        perms = compile_rule("tcp/udp:*", region, ["A", "B"])
        assert [(p.source_groups[0].name, p.protocol) for p in perms] == [
            ("A", "tcp"),
            ("A", "udp"),
            ("B", "tcp"),
            ("B", "udp"),
        ]


class TestMissingPermissions:
    def test_contained_are_dropped(self):
        existing = [Permission("tcp", 22, 22, source_ips=("0.0.0.0/0", "10.0.0.0/8"))]
        wanted = [
            Permission("tcp", 22, 22, source_ips=("10.0.0.0/8",)),
            Permission("tcp", 80, 80, source_ips=("0.0.0.0/0",)),
        ]
        assert missing_permissions(existing, wanted) == [wanted[1]]

    def test_duplicates_collapse(self):
        perm = Permission("tcp", 80, 80, source_ips=("0.0.0.0/0",))
        assert missing_permissions([], [perm, perm]) == [perm]

    def test_contains_any(self):
        perm = Permission("udp", 53, 53, source_ips=("0.0.0.0/0",))
        assert contains([Permission("tcp", 53, 53, source_ips=("0.0.0.0/0",)), perm], perm)
        assert not contains([], perm)


class TestReconcileGroup:
    RULES = ("tcp:22:0.0.0.0/0", "tcp/udp:4505:4506:default", "icmp:ping:-1:10.0.0.0/8")

    def test_applies_missing_in_one_call(self, region: RegionCache, provider: FakeProvider):
        group = region.group(GROUP)
        applied = reconcile_group(provider, region, group, self.RULES, [GROUP])
        assert len(applied) == 4
        assert provider.count("authorize_ingress") == 1

    def test_second_run_is_noop(self, region: RegionCache, provider: FakeProvider):
        reconcile_group(provider, region, region.group(GROUP), self.RULES, [GROUP])
        again = reconcile_group(provider, region, region.group(GROUP), self.RULES, [GROUP])
        assert again == []
        assert provider.count("authorize_ingress") == 1

    def test_noop_against_fresh_provider_state(self, provider: FakeProvider, key_dir):
        cache = ResourceCache(lambda r: provider, key_dir)
        first = cache.get_region(REGION)
        reconcile_group(provider, first, first.group(GROUP), self.RULES, [GROUP])

        fresh = ResourceCache(lambda r: provider, key_dir).get_region(REGION)
        assert reconcile_group(provider, fresh, fresh.group(GROUP), self.RULES, [GROUP]) == []

    def test_existing_rules_respected(self, region: RegionCache, provider: FakeProvider):
        group = FirewallGroup(
            name=GROUP,
            region=REGION,
            group_id="sg-default",
            permissions=(Permission("tcp", 22, 22, source_ips=("0.0.0.0/0",)),),
        )
        applied = reconcile_group(provider, region, group, ["tcp:22:0.0.0.0/0"], [GROUP])
        assert applied == []
        assert provider.count("authorize_ingress") == 0


class TestSyncSecurityGroups:
    def test_each_group_configured_once(self, cache: ResourceCache, provider: FakeProvider):
        nodes = [make_node("web1"), make_node("web2"), make_node("db1", sgroup="db")]
        applied = sync_security_groups(
            nodes,
            cache,
            {GROUP: ["tcp:80:0.0.0.0/0"], "db": ["tcp:5432:default"]},
            ["db", GROUP],
        )
        assert set(applied) == {(REGION, GROUP), (REGION, "db")}
        assert provider.count("authorize_ingress") == 2
        assert provider.count("create_security_group") == 1

    def test_undefined_group_is_only_ensured(self, cache: ResourceCache, provider: FakeProvider):
        applied = sync_security_groups([make_node("x1", sgroup="adhoc")], cache, {}, ["adhoc"])
        assert applied == {(REGION, "adhoc"): []}
        assert provider.count("create_security_group") == 1
        assert provider.count("authorize_ingress") == 0
