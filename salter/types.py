"""Core data types for salter.

Nodes, instance handles, key identities, and security group permissions.
The node lifecycle state is an explicit tagged variant rather than a
nilable instance handle, so a shell can only ever be attached to a node
whose variant carries a live instance.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING

from salter.constants import InstanceState

if TYPE_CHECKING:
    from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

    from salter.ssh import Shell


# =============================================================================
# Instances
# =============================================================================


@dataclass(frozen=True, slots=True)
class InstanceHandle:
    """Provider-side view of a single instance."""

    instance_id: str
    state: InstanceState
    private_ip: str = ""
    public_ip: str = ""
    dns_name: str = ""

    @property
    def address(self) -> str:
        """Best address for reaching the instance from outside."""
        return self.dns_name or self.public_ip or self.private_ip


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """Everything needed to request a new instance."""

    name: str
    ami: str
    flavor: str
    key_name: str
    security_group_ids: tuple[str, ...]
    user_data: bytes = b""
    zone: str = ""
    block_devices: tuple[tuple[str, str], ...] = ()


# =============================================================================
# Node State
# =============================================================================


@dataclass(frozen=True, slots=True)
class Unknown:
    """No provider query has been made yet."""


@dataclass(frozen=True, slots=True)
class Unstarted:
    """Provider reports no live instance for this node."""


@dataclass(frozen=True, slots=True)
class Pending:
    handle: InstanceHandle


@dataclass(frozen=True, slots=True)
class Running:
    handle: InstanceHandle


@dataclass(frozen=True, slots=True)
class Terminated:
    instance_id: str


@dataclass(frozen=True, slots=True)
class Failed:
    """Instance exists but is in a state it will not recover from."""

    handle: InstanceHandle


type NodeState = Unknown | Unstarted | Pending | Running | Terminated | Failed


def state_for(handle: InstanceHandle) -> NodeState:
    """Map a provider instance state onto the node state variant."""
    match handle.state:
        case InstanceState.PENDING:
            return Pending(handle)
        case InstanceState.RUNNING:
            return Running(handle)
        case InstanceState.TERMINATED | InstanceState.SHUTTING_DOWN:
            return Terminated(handle.instance_id)
        case _:
            return Failed(handle)


# =============================================================================
# Node
# =============================================================================


@dataclass(eq=False)
class Node:
    """A target compute unit from the resolved configuration."""

    name: str
    roles: tuple[str, ...] = ()
    region: str = ""
    zone: str = ""
    flavor: str = ""
    ami: str = ""
    sgroup: str = ""
    key_name: str = ""
    tags: dict[str, str] = field(default_factory=dict)

    state: NodeState = field(default=Unknown(), repr=False)
    shell: Shell | None = field(default=None, repr=False)

    @property
    def instance(self) -> InstanceHandle | None:
        match self.state:
            case Pending(handle) | Running(handle) | Failed(handle):
                return handle
            case _:
                return None

    @property
    def is_running(self) -> bool:
        """True when the instance is live on the provider (running or pending)."""
        return isinstance(self.state, Pending | Running)

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def set_state(self, state: NodeState) -> None:
        """Replace the lifecycle state, dropping a shell bound to another instance."""
        old = self.instance
        self.state = state
        new = self.instance
        if self.shell is not None and (new is None or old is None or new.instance_id != old.instance_id):
            self.close_shell()

    def close_shell(self) -> None:
        if self.shell is not None:
            shell, self.shell = self.shell, None
            shell.close()


# =============================================================================
# Keys
# =============================================================================


@dataclass(frozen=True, slots=True)
class KeyRecord:
    """A key pair known to the provider, with its local private half."""

    name: str
    fingerprint: str
    path: Path | None = None
    private_key: RSAPrivateKey | None = field(default=None, repr=False, compare=False)

    @property
    def usable(self) -> bool:
        return self.private_key is not None


# =============================================================================
# Security Groups
# =============================================================================


@dataclass(frozen=True, slots=True)
class SourceGroup:
    """Reference to a security group as a traffic source.

    Compared by group id only; the name is kept for display.
    """

    group_id: str
    owner_id: str = ""
    name: str = field(default="", compare=False)


@dataclass(frozen=True, slots=True)
class Permission:
    """One ingress rule: protocol, port range, and traffic sources."""

    protocol: str
    from_port: int
    to_port: int
    source_ips: tuple[str, ...] = ()
    source_groups: tuple[SourceGroup, ...] = ()

    def covers(self, other: Permission) -> bool:
        """True if every source of ``other`` is already granted by this permission."""
        if (self.protocol, self.from_port, self.to_port) != (
            other.protocol,
            other.from_port,
            other.to_port,
        ):
            return False
        if not set(other.source_ips) <= set(self.source_ips):
            return False
        ours = {g.group_id for g in self.source_groups}
        return all(g.group_id in ours for g in other.source_groups)


@dataclass(frozen=True, slots=True)
class FirewallGroup:
    """A named provider-side security group."""

    name: str
    region: str
    group_id: str
    owner_id: str = ""
    permissions: tuple[Permission, ...] = ()
    vpc_id: str = ""

    def as_source(self) -> SourceGroup:
        return SourceGroup(group_id=self.group_id, owner_id=self.owner_id, name=self.name)

    def with_permissions(self, extra: Iterable[Permission]) -> FirewallGroup:
        return replace(self, permissions=self.permissions + tuple(extra))


__all__ = [
    "Failed",
    "FirewallGroup",
    "InstanceHandle",
    "InstanceSpec",
    "KeyRecord",
    "Node",
    "NodeState",
    "Pending",
    "Permission",
    "Running",
    "SourceGroup",
    "Terminated",
    "Unknown",
    "Unstarted",
    "state_for",
]
