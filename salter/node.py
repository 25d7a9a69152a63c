"""Per-node lifecycle: discover, start, wait, enroll, terminate.

A node moves through::

    Unknown -> Unstarted -> Pending -> Running -> Terminated
                                   \\-> Failed

Once Running, enrollment continues with the shell becoming reachable,
cloud-init finishing, and the salt identity being distributed. Each step
blocks; polling uses tenacity with a fixed interval.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

import paramiko
from loguru import logger
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from salter.cache import ResourceCache
from salter.constants import (
    BOOT_FINISHED_PROBE,
    EPHEMERAL_DEVICES,
    LIVE_STATES,
    LOOPBACK,
    MASTER_PENDING_DIR,
    MINION_PKI_DIR,
    MINION_RESTART,
    NAME_TAG,
    POLL_INTERVAL,
    SHELL_MAX_ATTEMPTS,
)
from salter.exceptions import (
    AmbiguousStateError,
    ConfigError,
    LaunchError,
    NodeNotRunningError,
    RemoteCommandError,
    ShellTimeoutError,
)
from salter.keys import generate_identity, to_paramiko
from salter.ssh import Shell, SSHConfig, SSHSession
from salter.types import (
    InstanceSpec,
    KeyRecord,
    Node,
    Pending,
    Running,
    Terminated,
    Unstarted,
    state_for,
)


class UserData(Protocol):
    def render(
        self,
        hostname: str,
        roles: Sequence[str],
        controller_address: str,
        is_controller: bool,
    ) -> bytes: ...


type ShellFactory = Callable[[str, str, KeyRecord], Shell]


def open_ssh(host: str, username: str, key: KeyRecord) -> Shell:
    """Default shell factory: a paramiko session authenticated with ``key``."""
    if key.private_key is None:
        raise ConfigError(f"No local private key for {key.name}")
    return SSHSession(SSHConfig(host=host, username=username, pkey=to_paramiko(key.private_key)))


def device_mappings(flavor: str) -> tuple[tuple[str, str], ...]:
    """Ephemeral block devices for instance types that carry instance storage."""
    count = max(0, min(EPHEMERAL_DEVICES.get(flavor, 0), 24))
    return tuple((f"/dev/sd{chr(ord('b') + i)}1", f"ephemeral{i}") for i in range(count))


@dataclass(frozen=True, slots=True)
class LifecycleSettings:
    """Knobs for the lifecycle polling loops."""

    ssh_username: str = "ubuntu"
    poll_interval: float = POLL_INTERVAL
    shell_attempts: int = SHELL_MAX_ATTEMPTS


class _InstancePendingError(Exception):
    """Instance still pending - retry."""


_SHELL_ERRORS = (OSError, EOFError, paramiko.SSHException)


class NodeLifecycle:
    """Drives nodes through their lifecycle against the provider and their shells."""

    def __init__(
        self,
        cache: ResourceCache,
        user_data: UserData,
        settings: LifecycleSettings | None = None,
        shell_factory: ShellFactory = open_ssh,
    ) -> None:
        self.cache = cache
        self.user_data = user_data
        self.settings = settings or LifecycleSettings()
        self._shell_factory = shell_factory
        self._locks: dict[str, threading.Lock] = {}
        self._locks_lock = threading.Lock()

    def _node_lock(self, node: Node) -> threading.Lock:
        with self._locks_lock:
            return self._locks.setdefault(node.name, threading.Lock())

    # =========================================================================
    # Provider state
    # =========================================================================

    def update(self, node: Node) -> None:
        """Refresh the node's state from the provider.

        Raises:
            AmbiguousStateError: More than one live instance carries the node's name.
                The node's state is left untouched.
        """
        provider = self.cache.provider(node.region)
        reservations = provider.describe_instances({
            f"tag:{NAME_TAG}": [node.name],
            "instance-state-name": [str(s) for s in LIVE_STATES],
        })

        if not reservations or not any(reservations):
            node.set_state(Unstarted())
            logger.debug(f"{node.name}: not running")
            return

        if len(reservations) > 1 or len(reservations[0]) > 1:
            raise AmbiguousStateError(
                f"Unexpected number of reservations/instances for {node.name}"
            )

        handle = reservations[0][0]
        node.set_state(state_for(handle))
        logger.debug(f"{node.name}: {handle.instance_id} is {handle.state}")

    def start(self, node: Node, controller_address: str) -> None:
        """Launch an instance for the node. No-op when it is already live."""
        if node.is_running:
            return

        region = self.cache.get_region(node.region)
        if not region.key_exists(node.key_name):
            raise ConfigError(f"{node.name}: key {node.key_name} is not available locally")
        if not region.group_exists(node.sgroup):
            raise ConfigError(f"{node.name}: security group {node.sgroup} is not available")

        user_data = self.user_data.render(
            hostname=node.name,
            roles=node.roles,
            controller_address=controller_address,
            is_controller=controller_address == LOOPBACK,
        )

        spec = InstanceSpec(
            name=node.name,
            ami=node.ami,
            flavor=node.flavor,
            key_name=node.key_name,
            security_group_ids=(region.group(node.sgroup).group_id,),
            user_data=user_data,
            zone=node.zone,
            block_devices=device_mappings(node.flavor),
        )
        handle = region.provider.create_instance(spec)
        node.set_state(state_for(handle))
        logger.info(f"{node.name} ({handle.instance_id}): started")

        self.apply_tags(node)

    def apply_tags(self, node: Node) -> None:
        handle = node.instance
        if handle is None:
            raise NodeNotRunningError(f"{node.name}: node not running")
        tags = {NAME_TAG: node.name, **node.tags}
        self.cache.provider(node.region).create_tags(handle.instance_id, tags)
        logger.debug(f"{node.name}: tagged {handle.instance_id} with {sorted(tags)}")

    def terminate(self, node: Node) -> None:
        if not node.is_running or (handle := node.instance) is None:
            raise NodeNotRunningError(f"{node.name}: node not running")

        self.cache.provider(node.region).terminate_instances([handle.instance_id])
        node.set_state(Terminated(handle.instance_id))
        node.close_shell()
        logger.info(f"{node.name} ({handle.instance_id}): terminated")

    # =========================================================================
    # Shell
    # =========================================================================

    def key_for(self, node: Node) -> KeyRecord:
        region = self.cache.get_region(node.region)
        if not region.key_exists(node.key_name):
            raise ConfigError(f"{node.name}: key {node.key_name} is not available locally")
        return region.key(node.key_name)

    def open_shell(self, node: Node) -> Shell:
        with self._node_lock(node):
            if node.shell is not None:
                return node.shell

            handle = node.instance
            if not isinstance(node.state, Running) or handle is None:
                raise NodeNotRunningError(f"{node.name}: node not running")

            key = self.key_for(node)
            node.shell = self._shell_factory(handle.address, self.settings.ssh_username, key)
            logger.debug(f"{node.name}: shell open to {handle.address}")
            return node.shell

    def close_shell(self, node: Node) -> None:
        with self._node_lock(node):
            node.close_shell()

    def run(self, node: Node, command: str) -> int:
        logger.debug(f"{node.name}: {command}")
        return self.open_shell(node).run(command)

    def run_output(self, node: Node, command: str) -> bytes:
        logger.debug(f"{node.name}: {command}")
        return self.open_shell(node).run_output(command)

    def upload(self, node: Node, path: str, data: bytes) -> None:
        self.open_shell(node).upload(path, data)
        logger.debug(f"{node.name}: uploaded {len(data)} bytes to {path}")

    # =========================================================================
    # Waiting
    # =========================================================================

    def wait_for_running(self, node: Node) -> None:
        """Poll the provider until the instance leaves pending."""

        @retry(
            wait=wait_fixed(self.settings.poll_interval),
            retry=retry_if_exception_type(_InstancePendingError),
            reraise=True,
        )
        def _poll() -> None:
            self.update(node)
            match node.state:
                case Running():
                    return
                case Pending():
                    logger.debug(f"{node.name}: pending")
                    raise _InstancePendingError()
                case other:
                    raise LaunchError(f"{node.name}: unexpected instance state - {other}")

        _poll()
        logger.debug(f"{node.name}: running")

    def wait_for_shell(self, node: Node) -> None:
        """Open the shell, retrying a bounded number of times."""

        @retry(
            stop=stop_after_attempt(self.settings.shell_attempts),
            wait=wait_fixed(self.settings.poll_interval),
            retry=retry_if_exception_type(_SHELL_ERRORS),
        )
        def _connect() -> None:
            self.open_shell(node)

        try:
            _connect()
        except RetryError as e:
            cause = e.last_attempt.exception()
            raise ShellTimeoutError(f"{node.name}: wait for SSH timed out: {cause}") from cause
        logger.debug(f"{node.name}: shell reachable")

    def wait_for_boot_complete(self, node: Node) -> None:
        """Wait for cloud-init to finish. Only a failed probe is retried."""

        @retry(
            wait=wait_fixed(self.settings.poll_interval),
            retry=retry_if_exception_type(RemoteCommandError),
            reraise=True,
        )
        def _probe() -> None:
            self.run(node, BOOT_FINISHED_PROBE)

        _probe()
        logger.debug(f"{node.name}: boot complete")

    def wait_until_ready(self, node: Node) -> None:
        self.wait_for_running(node)
        self.wait_for_shell(node)
        self.wait_for_boot_complete(node)

    # =========================================================================
    # Enrollment
    # =========================================================================

    def distribute_identity(self, node: Node, controller: Node) -> None:
        """Generate a salt identity for ``node`` and have ``controller`` accept it."""
        private_pem, public_pem = generate_identity()

        self.upload(controller, f"{MASTER_PENDING_DIR}/{node.name}", public_pem)
        self.run(controller, f"/usr/bin/sudo /usr/bin/salt-key -y -a {node.name}")

        self.upload(node, f"{MINION_PKI_DIR}/minion.pub", public_pem)
        self.upload(node, f"{MINION_PKI_DIR}/minion.pem", private_pem)
        self.run(node, MINION_RESTART)
        logger.info(f"{node.name}: identity accepted by {controller.name}")

    def describe(self, node: Node) -> str:
        """Log and return a one-line status for a running node."""
        uptime = ""
        try:
            uptime = self.run_output(node, "uptime").decode(errors="replace").strip()
        except Exception as e:
            logger.debug(f"{node.name}: failed to get uptime: {e}")

        handle = node.instance
        address = handle.public_ip if handle else ""
        line = f"{node.name} ({address}): running {uptime}".rstrip()
        logger.info(line)
        return line


__all__ = [
    "LifecycleSettings",
    "NodeLifecycle",
    "ShellFactory",
    "UserData",
    "device_mappings",
    "open_ssh",
]
