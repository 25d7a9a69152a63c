"""Command-line entry point: ``salter <options> <command>``."""

from __future__ import annotations

import argparse
import os
import shutil
from collections.abc import Callable, Sequence
from dataclasses import asdict

from loguru import logger
from rich.console import Console
from rich.table import Table

from salter import salt
from salter.cache import ResourceCache
from salter.config import Config, UserDataRenderer, init_data_dir, load_config, session_credentials
from salter.constants import DEFAULT_CONFIG_FILE, DEFAULT_PARALLEL
from salter.dispatch import DispatchResult, run_all
from salter.exceptions import ConfigError, SalterError
from salter.launch import find_controller, launch, tag, teardown
from salter.logging import LogConfig, setup_logging
from salter.node import LifecycleSettings, NodeLifecycle
from salter.provider import EC2Provider
from salter.sgroups import sync_security_groups
from salter.types import Node

console = Console()

COMMANDS: dict[str, str] = {
    "launch": "launch instances on EC2",
    "teardown": "terminate instances on EC2",
    "tag": "re-apply configured tags to running instances",
    "sgroups": "create security groups and rules from configuration",
    "hosts": "list live nodes on EC2",
    "highstate": "invoke salt highstate on the salt master",
    "upload": "upload salt states to the salt master",
    "ssh": "open an SSH session to an instance",
    "csshx": "open a series of SSH sessions to instances via csshX",
    "dump": "dump generated node definitions",
}


def _split_targets(value: str) -> list[str]:
    return [t for t in value.split(",") if t]


def build_parser() -> argparse.ArgumentParser:
    epilog = "commands:\n" + "\n".join(f"  {name:<12} {usage}" for name, usage in COMMANDS.items())
    parser = argparse.ArgumentParser(
        prog="salter",
        description="Bootstrap salt clusters on EC2",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE, help="configuration file")
    parser.add_argument("-a", "--all", action="store_true", help="apply operations to all nodes")
    parser.add_argument(
        "-n",
        "--nodes",
        action="extend",
        type=_split_targets,
        default=[],
        help="comma-separated node globs (overrides -a)",
    )
    parser.add_argument(
        "-r",
        "--regex",
        action="extend",
        type=_split_targets,
        default=[],
        help="comma-separated node regexes (overrides -a)",
    )
    parser.add_argument("-s", "--salt-targets", default="", help="targets for salt-related operations")
    parser.add_argument("-p", "--parallel", type=int, default=DEFAULT_PARALLEL, help="concurrent node operations")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug output on the console")
    parser.add_argument("command", choices=list(COMMANDS), metavar="command")
    return parser


# =============================================================================
# Context
# =============================================================================


class _Context:
    """Everything a command needs, built once per invocation."""

    def __init__(self, args: argparse.Namespace, config: Config) -> None:
        self.args = args
        self.config = config
        self.parallel: int = args.parallel
        self.targets = config.select(
            all_nodes=args.all or args.command == "hosts",
            globs=args.nodes,
            regexes=args.regex,
        )

        data_dir = config.data_dir or init_data_dir(*session_credentials())
        vpc_id = config.aws.vpc_id
        self.cache = ResourceCache(lambda region: EC2Provider(region, vpc_id), data_dir)
        self.user_data = UserDataRenderer(config.salt.userdata, config.salt.grains)
        self.lifecycle = NodeLifecycle(
            self.cache,
            self.user_data,
            LifecycleSettings(ssh_username=config.aws.ssh_username),
        )

    @property
    def nodes(self) -> list[Node]:
        return list(self.config.nodes.values())

    def warm_regions(self) -> None:
        """Populate every region cache used by the configuration."""
        by_region: dict[str, Node] = {}
        for node in self.nodes:
            by_region.setdefault(node.region, node)
        if "" in by_region:
            raise ConfigError(f"{by_region[''].name}: no region configured")
        run_all(by_region.values(), self.parallel, lambda n: self.cache.get_region(n.region)).raise_for_failures()

    def controller(self) -> Node:
        node = find_controller(self.nodes)
        self.lifecycle.update(node)
        if not node.is_running:
            raise SalterError(f"{node.name} is not running")
        return node


# =============================================================================
# Commands
# =============================================================================


def _report(result: DispatchResult, verb: str) -> int:
    for name, exc in sorted(result.failures.items()):
        console.print(f"[red]{name}[/red]: not {verb}: {exc}")
    console.print(f"{result.succeeded}/{result.total} node(s) {verb}")
    return 0 if result.ok else 1


def cmd_launch(ctx: _Context) -> int:
    ctx.user_data.load()
    result = launch(ctx.targets, ctx.nodes, ctx.lifecycle, ctx.parallel)
    for node in sorted(ctx.targets, key=lambda n: n.name):
        if node.name not in result.failures and node.instance is not None:
            console.print(f"{node.name} ({node.instance.public_ip}): running")
    return _report(result, "launched")


def cmd_teardown(ctx: _Context) -> int:
    return _report(teardown(ctx.targets, ctx.lifecycle, ctx.parallel), "terminated")


def cmd_tag(ctx: _Context) -> int:
    return _report(tag(ctx.targets, ctx.lifecycle, ctx.parallel), "tagged")


def cmd_sgroups(ctx: _Context) -> int:
    applied = sync_security_groups(ctx.targets, ctx.cache, ctx.config.sgroups, ctx.config.group_names)
    for (region, name), perms in sorted(applied.items()):
        if perms:
            console.print(f"Added {len(perms)} missing rule(s) to {region}-{name}")
        else:
            console.print(f"{region}-{name}: up to date")
    return 0


def cmd_hosts(ctx: _Context) -> int:
    result = run_all(ctx.targets, ctx.parallel, ctx.lifecycle.update)
    for address, name in salt.hosts(ctx.targets):
        console.print(f"{address}\t{name}", highlight=False)
    return 0 if result.ok else 1


def cmd_highstate(ctx: _Context) -> int:
    if not ctx.args.salt_targets:
        raise ConfigError("No salt targets (-s) specified for highstate operation")
    report = salt.highstate(ctx.controller(), ctx.lifecycle, ctx.args.salt_targets, ctx.config.salt.timeout)

    table = Table(show_header=False, box=None)
    for host, summary in report.items():
        table.add_row(f"{host}:", summary)
    console.print(table)
    return 0 if all(s != salt.HIGHSTATE_ERROR for s in report.values()) else 1


def cmd_upload(ctx: _Context) -> int:
    salt.upload(ctx.controller(), ctx.lifecycle, ctx.config.salt.root)
    return 0


def cmd_ssh(ctx: _Context) -> int:
    if len(ctx.targets) != 1:
        raise ConfigError("Only one node may be used with the ssh command")
    node = ctx.targets[0]
    ctx.lifecycle.update(node)
    argv = salt.ssh_command(
        node,
        ctx.lifecycle.key_for(node),
        ctx.config.aws.ssh_username,
    )
    console.print(f"Connecting to {node.name} ({node.instance.instance_id if node.instance else ''})...")
    logger.debug(f"exec: {' '.join(argv)}")
    os.execvp(argv[0], argv)
    return 0


def cmd_csshx(ctx: _Context) -> int:
    program = shutil.which("csshX")
    if program is None:
        raise ConfigError("Unable to find csshX on your path")
    if not ctx.targets:
        raise ConfigError("You must specify one or more targets")

    run_all(ctx.targets, ctx.parallel, ctx.lifecycle.update).raise_for_failures()
    first = min(ctx.targets, key=lambda n: n.name)
    argv = salt.csshx_command(program, ctx.targets, ctx.lifecycle.key_for(first), ctx.config.aws.ssh_username)

    console.print("Connecting to:")
    for node in sorted(ctx.targets, key=lambda n: n.name):
        console.print(f" * {node.name}")
    logger.debug(f"exec: {' '.join(argv)}")
    os.execvp(argv[0], argv)
    return 0


_HANDLERS: dict[str, Callable[[_Context], int]] = {
    "launch": cmd_launch,
    "teardown": cmd_teardown,
    "tag": cmd_tag,
    "sgroups": cmd_sgroups,
    "hosts": cmd_hosts,
    "highstate": cmd_highstate,
    "upload": cmd_upload,
    "ssh": cmd_ssh,
    "csshx": cmd_csshx,
}


def cmd_dump(targets: Sequence[Node]) -> int:
    for node in targets:
        fields = {k: v for k, v in asdict(node).items() if k not in ("state", "shell")}
        console.print(f"{node.name}: {fields}")
    return 0


# =============================================================================
# Main
# =============================================================================


def run(args: argparse.Namespace) -> int:
    if args.parallel < 1:
        raise ConfigError("--parallel must be at least 1")

    config = load_config(args.config)
    if args.command == "dump":
        return cmd_dump(config.select(all_nodes=args.all, globs=args.nodes, regexes=args.regex))

    ctx = _Context(args, config)
    ctx.warm_regions()
    return _HANDLERS[args.command](ctx)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(LogConfig(level="DEBUG" if args.verbose else "WARNING"))

    try:
        return run(args)
    except SalterError as e:
        logger.opt(exception=e).debug(f"{args.command} failed")
        console.print(f"[red]Error:[/red] {e}")
        return 1
    except KeyboardInterrupt:
        console.print("Interrupted")
        return 130


__all__ = [
    "build_parser",
    "main",
    "run",
]
