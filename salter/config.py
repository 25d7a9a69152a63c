"""TOML cluster configuration.

Loads ``salter.cfg``, expands templated node definitions into one node per
instance, and selects targets by glob or regex. Example::

    [aws]
    ami = "ami-0123456789"
    flavor = "t3.small"
    keyname = "salter"
    region = "us-east-1"
    sgroup = "default"
    ssh_username = "ubuntu"

    [nodes.master]
    roles = ["saltmaster"]

    [nodes.web]
    count = 3
    roles = ["web"]

    [nodes.web2]
    flavor = "m5.large"

    [tags.web]
    env = "prod"

    [sgroups.default]
    rules = ["tcp:22:0.0.0.0/0", "tcp/udp:*"]

    [salt]
    root = "salt"
"""

from __future__ import annotations

import fnmatch
import hashlib
import re
import tomllib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import cached_property
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, Template, TemplateError
from loguru import logger

from salter.constants import (
    DEFAULT_CONFIG_FILE,
    DEFAULT_SALT_TIMEOUT,
    DEFAULT_USERDATA_FILE,
    SALTER_DIR,
)
from salter.exceptions import ConfigError
from salter.types import Node

type RawConfig = dict[str, Any]


# =============================================================================
# Sections
# =============================================================================


@dataclass(frozen=True, slots=True)
class AWSDefaults:
    """``[aws]`` section: per-node defaults plus account-wide settings."""

    ami: str = ""
    flavor: str = ""
    keyname: str = ""
    region: str = ""
    sgroup: str = ""
    ssh_username: str = "ubuntu"
    zone: str = ""
    vpc_id: str = ""


@dataclass(frozen=True, slots=True)
class SaltSettings:
    root: Path = Path("salt")
    grains: dict[str, str] = field(default_factory=dict)
    timeout: int = DEFAULT_SALT_TIMEOUT
    userdata: Path = Path(DEFAULT_USERDATA_FILE)


@dataclass(frozen=True, slots=True)
class NodeDefinition:
    """One ``[nodes.<id>]`` table. ``None`` means the field was not set."""

    roles: tuple[str, ...] | None = None
    count: int = 0
    flavor: str | None = None
    region: str | None = None
    zone: str | None = None
    ami: str | None = None
    sgroup: str | None = None
    keyname: str | None = None


def merge_defaults(child: NodeDefinition, parent: NodeDefinition) -> NodeDefinition:
    """Fill every unset field of ``child`` from ``parent``."""
    return NodeDefinition(
        roles=child.roles if child.roles is not None else parent.roles,
        count=0,
        flavor=child.flavor if child.flavor is not None else parent.flavor,
        region=child.region if child.region is not None else parent.region,
        zone=child.zone if child.zone is not None else parent.zone,
        ami=child.ami if child.ami is not None else parent.ami,
        sgroup=child.sgroup if child.sgroup is not None else parent.sgroup,
        keyname=child.keyname if child.keyname is not None else parent.keyname,
    )


def _build_node(name: str, definition: NodeDefinition, aws: AWSDefaults, tags: Mapping[str, str]) -> Node:
    return Node(
        name=name,
        roles=definition.roles or (),
        region=definition.region or aws.region,
        zone=definition.zone or aws.zone,
        flavor=definition.flavor or aws.flavor,
        ami=definition.ami or aws.ami,
        sgroup=definition.sgroup or aws.sgroup,
        key_name=definition.keyname or aws.keyname,
        tags=dict(tags),
    )


# =============================================================================
# Parsing
# =============================================================================


def _table(raw: RawConfig, name: str) -> RawConfig:
    value = raw.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _str_map(raw: Any, where: str) -> dict[str, str]:
    if not isinstance(raw, dict):
        raise ConfigError(f"{where} must be a table")
    return {str(k): str(v) for k, v in raw.items()}


def _parse_definition(node_id: str, raw: Any) -> NodeDefinition:
    if not isinstance(raw, dict):
        raise ConfigError(f"[nodes.{node_id}] must be a table")

    known = {"roles", "count", "flavor", "region", "zone", "ami", "sgroup", "keyname"}
    if unknown := set(raw) - known:
        raise ConfigError(f"[nodes.{node_id}]: unknown field(s) {', '.join(sorted(unknown))}")

    roles = raw.get("roles")
    if roles is not None and (not isinstance(roles, list) or not all(isinstance(r, str) for r in roles)):
        raise ConfigError(f"[nodes.{node_id}].roles must be a list of strings")

    count = raw.get("count", 0)
    if not isinstance(count, int) or count < 0:
        raise ConfigError(f"[nodes.{node_id}].count must be a non-negative integer")

    return NodeDefinition(
        roles=tuple(roles) if roles is not None else None,
        count=count,
        flavor=raw.get("flavor"),
        region=raw.get("region"),
        zone=raw.get("zone"),
        ami=raw.get("ami"),
        sgroup=raw.get("sgroup"),
        keyname=raw.get("keyname"),
    )


def expand_nodes(
    definitions: Mapping[str, NodeDefinition],
    aws: AWSDefaults,
    tags: Mapping[str, Mapping[str, str]],
) -> dict[str, Node]:
    """Expand counted definitions into concrete nodes.

    ``[nodes.web] count = 3`` yields web1..web3. A ``[nodes.web2]`` table
    overrides the fields it sets for that one node. Counted definitions
    win over a same-named standalone definition.
    """
    nodes: dict[str, Node] = {}

    for node_id, parent in definitions.items():
        if parent.count == 0:
            continue
        for i in range(1, parent.count + 1):
            name = f"{node_id}{i}"
            child = definitions.get(name)
            merged = merge_defaults(child, parent) if child is not None else merge_defaults(parent, parent)
            node_tags = tags.get(name, tags.get(node_id, {}))
            nodes[name] = _build_node(name, merged, aws, node_tags)

    for node_id, definition in definitions.items():
        if definition.count != 0 or node_id in nodes:
            continue
        nodes[node_id] = _build_node(node_id, definition, aws, tags.get(node_id, {}))

    return dict(sorted(nodes.items()))


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse {path}: {e}") from e


# =============================================================================
# Config
# =============================================================================


@dataclass(frozen=True, slots=True)
class Config:
    """Resolved configuration with expanded nodes."""

    path: Path
    aws: AWSDefaults
    salt: SaltSettings
    nodes: dict[str, Node]
    sgroups: dict[str, tuple[str, ...]]
    data_dir: Path | None = None

    @property
    def group_names(self) -> list[str]:
        """Every security group used by a configured node."""
        return sorted({n.sgroup for n in self.nodes.values() if n.sgroup})

    @property
    def regions(self) -> list[str]:
        return sorted({n.region for n in self.nodes.values() if n.region})

    def select(
        self,
        *,
        all_nodes: bool = False,
        globs: Sequence[str] = (),
        regexes: Sequence[str] = (),
    ) -> list[Node]:
        """Target nodes: all, or those matching any glob or regex. Sorted by name."""
        if all_nodes and not globs and not regexes:
            return list(self.nodes.values())

        compiled = []
        for pattern in regexes:
            try:
                compiled.append(re.compile(pattern))
            except re.error as e:
                raise ConfigError(f"Invalid target regex {pattern!r}: {e}") from e

        return [
            node
            for name, node in self.nodes.items()
            if any(fnmatch.fnmatchcase(name, g) for g in globs) or any(r.search(name) for r in compiled)
        ]


def parse_config(raw: RawConfig, path: Path) -> Config:
    base = path.parent

    aws_raw = _table(raw, "aws")
    known_aws = set(AWSDefaults.__dataclass_fields__)
    if unknown := set(aws_raw) - known_aws:
        raise ConfigError(f"[aws]: unknown field(s) {', '.join(sorted(unknown))}")
    aws = AWSDefaults(**{k: str(v) for k, v in aws_raw.items()})

    salt_raw = _table(raw, "salt")
    timeout = salt_raw.get("timeout", DEFAULT_SALT_TIMEOUT) or DEFAULT_SALT_TIMEOUT
    if not isinstance(timeout, int) or timeout < 0:
        raise ConfigError("[salt].timeout must be a positive integer")
    salt = SaltSettings(
        root=base / salt_raw.get("root", "salt"),
        grains=_str_map(salt_raw.get("grains", {}), "[salt.grains]"),
        timeout=timeout,
        userdata=base / (salt_raw.get("userdata") or DEFAULT_USERDATA_FILE),
    )

    definitions = {node_id: _parse_definition(node_id, d) for node_id, d in _table(raw, "nodes").items()}
    tags = {node_id: _str_map(t, f"[tags.{node_id}]") for node_id, t in _table(raw, "tags").items()}

    sgroups: dict[str, tuple[str, ...]] = {}
    for name, group in _table(raw, "sgroups").items():
        if not isinstance(group, dict) or not isinstance(group.get("rules", []), list):
            raise ConfigError(f"[sgroups.{name}].rules must be a list of strings")
        sgroups[name] = tuple(str(r) for r in group.get("rules", []))

    data_dir = raw.get("data_dir")
    return Config(
        path=path,
        aws=aws,
        salt=salt,
        nodes=expand_nodes(definitions, aws, tags),
        sgroups=sgroups,
        data_dir=base / data_dir if data_dir else None,
    )


def load_config(path: Path | str = DEFAULT_CONFIG_FILE) -> Config:
    """Load and expand a salter configuration file.

    Raises:
        ConfigError: Missing file, invalid TOML, or malformed sections.
    """
    path = Path(path)
    config = parse_config(_read_toml(path), path)
    logger.debug(f"Loaded {len(config.nodes)} node(s) from {path}")
    return config


# =============================================================================
# Data Directory
# =============================================================================


def credentials_digest(access_key: str, secret_key: str) -> str:
    return hashlib.md5(f"{access_key}{secret_key}".encode()).hexdigest()


def session_credentials() -> tuple[str, str]:
    """Access and secret key of the default boto3 session."""
    import boto3

    credentials = boto3.Session().get_credentials()
    if credentials is None:
        raise ConfigError("No AWS credentials found")
    frozen = credentials.get_frozen_credentials()
    return frozen.access_key, frozen.secret_key


def init_data_dir(access_key: str, secret_key: str, base: Path = SALTER_DIR) -> Path:
    """Per-account directory holding private keys, created with mode 0700."""
    data_dir = base / "data" / credentials_digest(access_key, secret_key)
    data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
    logger.debug(f"Using data dir: {data_dir}")
    return data_dir


# =============================================================================
# User Data
# =============================================================================


class UserDataRenderer:
    """Renders the cloud-init user data template for a node.

    The template is loaded on first use; ``load()`` forces it early.
    """

    def __init__(self, template: Path, grains: Mapping[str, str] | None = None, environment: str = "test") -> None:
        self.path = template
        self.grains = dict(grains or {})
        self.environment = environment
        self._env = Environment(loader=FileSystemLoader(str(template.parent)), autoescape=False)

    @cached_property
    def template(self) -> Template:
        try:
            return self._env.get_template(self.path.name)
        except TemplateError as e:
            raise ConfigError(f"Failed to load user data template {self.path}: {e}") from e

    def load(self) -> None:
        _ = self.template

    def render(
        self,
        hostname: str,
        roles: Iterable[str],
        controller_address: str,
        is_controller: bool,
    ) -> bytes:
        try:
            text = self.template.render(
                hostname=hostname,
                salt_master_ip=controller_address,
                roles=list(roles),
                is_master=is_controller,
                grains=self.grains,
                environment=self.environment,
            )
        except TemplateError as e:
            raise ConfigError(f"Failed to generate user-data for {hostname}: {e}") from e
        return text.encode()


__all__ = [
    "AWSDefaults",
    "Config",
    "NodeDefinition",
    "SaltSettings",
    "UserDataRenderer",
    "credentials_digest",
    "expand_nodes",
    "init_data_dir",
    "load_config",
    "merge_defaults",
    "parse_config",
    "session_credentials",
]
