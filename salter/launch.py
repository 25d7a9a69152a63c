"""Cluster-level orchestration: launch, teardown, and re-tagging."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from loguru import logger

from salter.constants import CONTROLLER_ROLE, LOOPBACK
from salter.dispatch import DispatchResult, run_all
from salter.exceptions import ConfigError, LaunchError
from salter.node import NodeLifecycle
from salter.types import Node


def find_controller(nodes: Iterable[Node]) -> Node:
    """Return the single node carrying the controller role."""
    controllers = [n for n in nodes if n.has_role(CONTROLLER_ROLE)]
    if not controllers:
        raise ConfigError(f"None of the nodes are associated with a {CONTROLLER_ROLE} role")
    if len(controllers) > 1:
        names = ", ".join(sorted(n.name for n in controllers))
        raise ConfigError(f"Only one node may carry the {CONTROLLER_ROLE} role, found: {names}")
    return controllers[0]


def ensure_controller(controller: Node, lifecycle: NodeLifecycle) -> Node:
    """Bring the controller up and enrolled. Any failure aborts the launch."""
    try:
        lifecycle.update(controller)
        if not controller.is_running:
            lifecycle.start(controller, LOOPBACK)
        lifecycle.wait_until_ready(controller)
        lifecycle.distribute_identity(controller, controller)
        lifecycle.describe(controller)
    except Exception as e:
        raise LaunchError(f"Unable to bring up {controller.name}: {e}") from e

    if controller.instance is None or not controller.instance.private_ip:
        raise LaunchError(f"{controller.name}: no private address after launch")
    return controller


def launch(
    targets: Sequence[Node],
    nodes: Sequence[Node],
    lifecycle: NodeLifecycle,
    concurrency: int,
) -> DispatchResult:
    """Launch the controller, then every other target in parallel.

    ``nodes`` is the full configuration, used to locate the controller
    even when it is not among ``targets``.
    """
    controller = ensure_controller(find_controller(nodes), lifecycle)
    controller_ip = controller.instance.private_ip if controller.instance else ""

    minions = [n for n in targets if n.name != controller.name]
    logger.info(f"Launching {len(minions)} node(s) behind {controller.name} ({controller_ip})")

    def _launch_one(node: Node) -> None:
        lifecycle.update(node)
        lifecycle.start(node, controller_ip)
        lifecycle.wait_until_ready(node)
        lifecycle.distribute_identity(node, controller)
        lifecycle.describe(node)

    return run_all(minions, concurrency, _launch_one)


def teardown(targets: Sequence[Node], lifecycle: NodeLifecycle, concurrency: int) -> DispatchResult:
    """Terminate every target. A target that is not running counts as a failure."""

    def _teardown_one(node: Node) -> None:
        lifecycle.update(node)
        lifecycle.terminate(node)

    return run_all(targets, concurrency, _teardown_one)


def tag(targets: Sequence[Node], lifecycle: NodeLifecycle, concurrency: int) -> DispatchResult:
    """Re-apply configured tags to every running target."""

    def _tag_one(node: Node) -> None:
        lifecycle.update(node)
        if node.is_running:
            lifecycle.apply_tags(node)
        else:
            logger.debug(f"{node.name}: not running, skipping tags")

    return run_all(targets, concurrency, _tag_one)


__all__ = [
    "ensure_controller",
    "find_controller",
    "launch",
    "tag",
    "teardown",
]
