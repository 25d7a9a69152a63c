"""Security group rule compiler and reconciler.

Rules are colon-separated strings in one of three forms::

    proto:match
    proto:port:match
    proto:from_port:to_port:match

``proto`` is tcp, udp, icmp, or ``tcp/udp`` (expands to one rule per
protocol). ``match`` is a CIDR, a security group name (created if it does
not exist), or ``*`` for every group used by a configured node. For icmp
the ports are the icmp type and code.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Final

from loguru import logger

from salter.exceptions import RuleError
from salter.provider import Provider
from salter.types import FirewallGroup, Node, Permission

if TYPE_CHECKING:
    from salter.cache import RegionCache, ResourceCache

MIN_PORT: Final = 1
MAX_PORT: Final = 65535
ANY: Final = -1

ICMP_TYPES: Final[dict[str, int]] = {
    "*": ANY,
    "echo_reply": 0,
    "0": 0,
    "echo_request": 8,
    "ping": 8,
    "8": 8,
}
ICMP_CODES: Final[dict[str, int]] = {"*": ANY, "": ANY, "-1": ANY}

PROTOCOLS: Final[dict[str, tuple[str, ...]]] = {
    "tcp": ("tcp",),
    "udp": ("udp",),
    "tcp/udp": ("tcp", "udp"),
    "icmp": ("icmp",),
}


# =============================================================================
# Port Checks
# =============================================================================


def _parse_int(rule: str, label: str, value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise RuleError(rule, f"{label} is not an integer: {value!r}") from None


def _check_ports(rule: str, from_port: str, to_port: str) -> tuple[int, int]:
    if not from_port and not to_port:
        return MIN_PORT, MAX_PORT

    start = _parse_int(rule, "from_port", from_port)
    if start < MIN_PORT:
        raise RuleError(rule, f"from_port is less than {MIN_PORT}: {start}")
    if start > MAX_PORT:
        raise RuleError(rule, f"from_port is larger than {MAX_PORT}: {start}")

    if not to_port:
        return start, start

    end = _parse_int(rule, "to_port", to_port)
    if end < start:
        raise RuleError(rule, f"to_port ({end}) can not be less than from_port ({start})")
    if end > MAX_PORT:
        raise RuleError(rule, f"to_port can not be greater than {MAX_PORT}: {end}")
    return start, end


def _check_icmp(rule: str, icmp_type: str, icmp_code: str) -> tuple[int, int]:
    # Two-field form: every type.
    icmp_type = icmp_type or "*"
    if icmp_type not in ICMP_TYPES:
        raise RuleError(rule, f"Unknown icmp type: {icmp_type}")
    if icmp_code not in ICMP_CODES:
        raise RuleError(rule, f"Unknown code type: {icmp_code}")
    return ICMP_TYPES[icmp_type], ICMP_CODES[icmp_code]


_PORT_CHECKS: Final[dict[str, Callable[[str, str, str], tuple[int, int]]]] = {
    "tcp": _check_ports,
    "udp": _check_ports,
    "tcp/udp": _check_ports,
    "icmp": _check_icmp,
}


# =============================================================================
# Compiler
# =============================================================================


def _is_cidr(value: str) -> bool:
    if "/" not in value:
        return False
    try:
        ipaddress.ip_network(value, strict=False)
    except ValueError:
        return False
    return True


def parse_rule(rule: str) -> tuple[str, int, int, str]:
    """Validate a rule line and return (proto, from_port, to_port, match)."""
    parts = rule.split(":", 3)
    match parts:
        case [proto, target]:
            from_port, to_port = "", ""
        case [proto, from_port, target]:
            to_port = ""
        case [proto, from_port, to_port, target]:
            pass
        case _:
            raise RuleError(rule, "Unknown rule format")

    check = _PORT_CHECKS.get(proto)
    if check is None:
        raise RuleError(rule, f"Unknown protocol: {proto}")

    start, end = check(rule, from_port, to_port)
    if not target:
        raise RuleError(rule, "missing match")
    return proto, start, end, target


def compile_rule(rule: str, region: RegionCache, group_names: Iterable[str]) -> list[Permission]:
    """Expand one rule line into permissions.

    Group matches that do not exist yet are created in the region.
    Output order is sorted match names, then protocol order.
    """
    proto, from_port, to_port, target = parse_rule(rule)
    matches = sorted({name for name in group_names if name}) if target == "*" else [target]

    permissions: list[Permission] = []
    for match in matches:
        if _is_cidr(match):
            sources: dict[str, tuple] = {"source_ips": (match,)}
        else:
            if not region.group_exists(match):
                logger.debug(f"{region.region}: creating security group {match} for rule ({rule})")
            sources = {"source_groups": (region.ensure_group_exists(match).as_source(),)}

        for protocol in PROTOCOLS[proto]:
            permissions.append(Permission(protocol=protocol, from_port=from_port, to_port=to_port, **sources))
    return permissions


# =============================================================================
# Reconciler
# =============================================================================


def contains(existing: Iterable[Permission], perm: Permission) -> bool:
    """True if some existing permission already grants everything ``perm`` asks for."""
    return any(p.covers(perm) for p in existing)


def missing_permissions(existing: Sequence[Permission], wanted: Iterable[Permission]) -> list[Permission]:
    missing: list[Permission] = []
    for perm in wanted:
        if contains(existing, perm) or contains(missing, perm):
            continue
        missing.append(perm)
    return missing


def reconcile_group(
    provider: Provider,
    region: RegionCache,
    group: FirewallGroup,
    rules: Sequence[str],
    group_names: Iterable[str],
) -> list[Permission]:
    """Authorize whatever the rules grant that the group does not already have.

    Returns the permissions that were applied; empty when nothing was missing.
    """
    names = list(group_names)
    wanted = [perm for rule in rules for perm in compile_rule(rule, region, names)]
    missing = missing_permissions(group.permissions, wanted)
    if not missing:
        logger.debug(f"{group.region}-{group.name}: rules up to date")
        return []

    logger.info(f"Adding {len(missing)} missing rule(s) to {group.region}-{group.name}")
    provider.authorize_ingress(group, missing)
    region.update_group(group.with_permissions(missing))
    return missing


def sync_security_groups(
    nodes: Iterable[Node],
    cache: ResourceCache,
    rules: Mapping[str, Sequence[str]],
    group_names: Iterable[str],
) -> dict[tuple[str, str], list[Permission]]:
    """Ensure each target node's group exists and carries its configured rules.

    Each (region, group) pair is configured once even if many nodes share it.
    """
    names = list(group_names)
    applied: dict[tuple[str, str], list[Permission]] = {}
    for node in nodes:
        key = (node.region, node.sgroup)
        if key in applied:
            continue

        region = cache.get_region(node.region)
        group = region.ensure_group_exists(node.sgroup)
        group_rules = rules.get(node.sgroup)
        if group_rules is None:
            logger.debug(f"{node.region}: security group {node.sgroup} is not defined in the config file")
            applied[key] = []
            continue

        applied[key] = reconcile_group(region.provider, region, group, group_rules, names)
    return applied


__all__ = [
    "compile_rule",
    "contains",
    "missing_permissions",
    "parse_rule",
    "reconcile_group",
    "sync_security_groups",
]
