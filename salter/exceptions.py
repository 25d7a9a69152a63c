"""Exception hierarchy for salter."""

from __future__ import annotations

from collections.abc import Mapping


class SalterError(Exception):
    """Base class for all salter errors."""


class ConfigError(SalterError):
    """The active configuration is missing or inconsistent. Never retried."""


class RuleError(ConfigError):
    """A security group rule line could not be compiled."""

    def __init__(self, rule: str, reason: str) -> None:
        self.rule = rule
        self.reason = reason
        super().__init__(f"({rule}): {reason}")


class AmbiguousStateError(SalterError):
    """More than one live instance matches a single node name."""


class IdentityMismatchError(SalterError):
    """Local key material does not match the provider fingerprint."""

    def __init__(self, name: str, local: str, remote: str, scheme: str) -> None:
        self.name = name
        self.local = local
        self.remote = remote
        super().__init__(f"Mismatched {scheme} fingerprint for {name}: {local} != {remote}")


class NodeNotRunningError(SalterError):
    """Operation requires a live instance but the node has none."""


class LaunchError(SalterError):
    """An instance failed to come up."""


class ShellTimeoutError(SalterError):
    """Remote shell did not become reachable within the retry ceiling."""


class RemoteCommandError(SalterError):
    """A remote command ran but exited non-zero."""

    def __init__(self, command: str, exit_status: int, output: str = "") -> None:
        self.command = command
        self.exit_status = exit_status
        self.output = output
        super().__init__(f"Command failed ({exit_status}): {command}")


class ProviderError(SalterError):
    """A cloud provider call failed."""


class DispatchError(SalterError):
    """One or more nodes failed during a dispatched operation."""

    def __init__(self, failures: Mapping[str, BaseException]) -> None:
        self.failures = dict(failures)
        names = ", ".join(sorted(self.failures))
        super().__init__(f"{len(self.failures)} node(s) failed: {names}")


__all__ = [
    "AmbiguousStateError",
    "ConfigError",
    "DispatchError",
    "IdentityMismatchError",
    "LaunchError",
    "NodeNotRunningError",
    "ProviderError",
    "RemoteCommandError",
    "RuleError",
    "SalterError",
    "ShellTimeoutError",
]
