"""Salt operations run through the controller node."""

from __future__ import annotations

import json
import shlex
import subprocess
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, Final

from loguru import logger

from salter.constants import SALT_STATE_DIR
from salter.exceptions import ConfigError, NodeNotRunningError, RemoteCommandError, SalterError
from salter.node import NodeLifecycle
from salter.types import KeyRecord, Node

HIGHSTATE_ERROR: Final = "Error while highstating."

SYNC_COMMANDS: Final = (
    "saltutil.sync_all",
    "mine.update",
    "saltutil.refresh_pillar",
)

_SSH_OPTIONS: Final = (
    "-o", "LogLevel=FATAL",
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
)  # fmt: skip


# =============================================================================
# Highstate
# =============================================================================


def _summarize_host(host: str, states: Mapping[str, Any]) -> str:
    errors = 0
    changes = 0
    for state_id, entry in states.items():
        if not isinstance(entry, Mapping):
            raise TypeError(f"state {state_id} is not a mapping")
        if not entry.get("result", False):
            errors += 1
            logger.debug(f"{host}: highstate error in '{state_id}': {entry.get('comment', '')}")
        elif entry.get("changes"):
            changes += len(entry["changes"])
            logger.debug(f"{host}: highstate change '{state_id}': {entry.get('comment', '')}")
    return f"{errors} errors, {changes} changes, {len(states)} states."


def summarize_highstate(raw: str | bytes | Mapping[str, Any]) -> dict[str, str]:
    """Summarize ``state.highstate`` JSON output per host.

    A host whose reply is not a mapping of states (salt returns a list of
    error strings on render failures) is reported as an error.
    """
    hosts = json.loads(raw) if isinstance(raw, str | bytes) else raw
    if not isinstance(hosts, Mapping):
        raise ValueError("highstate output is not a mapping of hosts")

    report: dict[str, str] = {}
    for host in sorted(hosts):
        states = hosts[host]
        if not isinstance(states, Mapping):
            logger.debug(f"Error highstating {host}: {states!r}")
            report[host] = HIGHSTATE_ERROR
            continue
        try:
            report[host] = _summarize_host(host, states)
        except TypeError as e:
            logger.debug(f"Bad highstate reply from {host}: {e}")
            report[host] = HIGHSTATE_ERROR
    return report


def highstate_command(targets: str, timeout: int) -> str:
    return f"sudo salt {shlex.quote(targets)} -t {timeout} --output=json --static state.highstate"


def highstate(controller: Node, lifecycle: NodeLifecycle, targets: str, timeout: int) -> dict[str, str]:
    """Run highstate on ``targets`` from the controller and summarize the result."""
    if not targets:
        raise ConfigError("No salt targets (-s) specified for highstate operation")
    _require_running(controller)

    command = highstate_command(targets, timeout)
    try:
        out = lifecycle.run_output(controller, command)
    except RemoteCommandError as e:
        # salt exits non-zero when any minion fails; the JSON is still usable
        if not e.output.strip().startswith("{"):
            raise
        out = e.output.encode()

    try:
        return summarize_highstate(out)
    except ValueError as e:
        raise SalterError(f"Unparseable highstate output from {controller.name}: {e}") from e


# =============================================================================
# Upload
# =============================================================================


def _require_running(node: Node) -> None:
    if not node.is_running:
        raise NodeNotRunningError(f"{node.name} is not running")


def ssh_options(key: KeyRecord) -> list[str]:
    if key.path is None:
        raise ConfigError(f"No local private key file for {key.name}")
    return ["-i", str(key.path), *_SSH_OPTIONS]


def rsync_command(root: Path, key: KeyRecord, username: str, host: str) -> list[str]:
    ssh = shlex.join(["ssh", *ssh_options(key)])
    return [
        "rsync", "-auvz", "--delete",
        "--rsync-path=sudo rsync",
        "-e", ssh,
        f"{root}/",
        f"{username}@{host}:{SALT_STATE_DIR}",
    ]  # fmt: skip


def upload(
    controller: Node,
    lifecycle: NodeLifecycle,
    root: Path,
    runner: Callable[[Sequence[str]], Any] = lambda argv: subprocess.run(argv, check=True),
) -> None:
    """Push the local salt tree to the controller and resync every minion."""
    _require_running(controller)
    handle = controller.instance
    assert handle is not None

    if not root.is_dir():
        raise ConfigError(f"Salt root {root} is not a directory")

    key = lifecycle.key_for(controller)
    argv = rsync_command(root, key, lifecycle.settings.ssh_username, handle.address)
    logger.info(f"Uploading {root} to {handle.address}:{SALT_STATE_DIR}")
    try:
        runner(argv)
    except (OSError, subprocess.CalledProcessError) as e:
        raise SalterError(f"rsync to {controller.name} failed: {e}") from e

    for function in SYNC_COMMANDS:
        logger.info(f"Running {function}")
        lifecycle.run(controller, f"sudo salt '*' --output=txt {function}")


# =============================================================================
# Hosts and SSH
# =============================================================================


def hosts(nodes: Iterable[Node]) -> list[tuple[str, str]]:
    """(address, name) pairs for nodes that have an instance, sorted by name."""
    entries: list[tuple[str, str]] = []
    for node in sorted(nodes, key=lambda n: n.name):
        handle = node.instance
        if handle is not None:
            entries.append((handle.public_ip or handle.private_ip, node.name))
    return entries


def ssh_command(node: Node, key: KeyRecord, username: str) -> list[str]:
    """argv for an interactive ssh session to a running node."""
    _require_running(node)
    handle = node.instance
    assert handle is not None
    return ["ssh", *ssh_options(key), "-o", "ForwardAgent=yes", "-l", username, handle.address]


def csshx_command(program: str, nodes: Sequence[Node], key: KeyRecord, username: str) -> list[str]:
    """argv for one csshX window per running node, in name order."""
    if not nodes:
        raise ConfigError("You must specify one or more targets")
    if stopped := sorted(n.name for n in nodes if not n.is_running):
        raise NodeNotRunningError(f"Some target nodes are not running: {', '.join(stopped)}")

    ssh_args = shlex.join([*ssh_options(key), "-o", "ForwardAgent=yes"])
    argv = [program, "--ssh_args", ssh_args, "-l", username]
    for node in sorted(nodes, key=lambda n: n.name):
        handle = node.instance
        assert handle is not None
        argv.append(handle.public_ip or handle.address)
    return argv


__all__ = [
    "HIGHSTATE_ERROR",
    "csshx_command",
    "highstate",
    "highstate_command",
    "hosts",
    "rsync_command",
    "ssh_command",
    "summarize_highstate",
    "upload",
]
