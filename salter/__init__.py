"""salter - bootstrap Salt clusters on EC2.

Example:

    from salter import EC2Provider, NodeLifecycle, ResourceCache, UserDataRenderer, launch, load_config
    from salter.config import init_data_dir, session_credentials

    config = load_config("salter.cfg")
    key_dir = config.data_dir or init_data_dir(*session_credentials())
    cache = ResourceCache(lambda region: EC2Provider(region), key_dir)
    lifecycle = NodeLifecycle(cache, UserDataRenderer(config.salt.userdata))
    result = launch(config.select(all_nodes=True), list(config.nodes.values()), lifecycle, 10)
"""

from salter.cache import RegionCache, ResourceCache
from salter.config import Config, UserDataRenderer, load_config
from salter.dispatch import DispatchResult, run_all
from salter.exceptions import (
    AmbiguousStateError,
    ConfigError,
    DispatchError,
    IdentityMismatchError,
    LaunchError,
    NodeNotRunningError,
    ProviderError,
    RemoteCommandError,
    RuleError,
    SalterError,
    ShellTimeoutError,
)
from salter.launch import launch, tag, teardown
from salter.logging import LogConfig, setup_logging
from salter.node import LifecycleSettings, NodeLifecycle
from salter.provider import EC2Provider, Provider
from salter.sgroups import compile_rule, missing_permissions, reconcile_group, sync_security_groups
from salter.ssh import Shell, SSHSession
from salter.types import FirewallGroup, InstanceHandle, KeyRecord, Node, Permission, SourceGroup

__version__ = "0.1.0"

__all__ = [
    "AmbiguousStateError",
    "Config",
    "ConfigError",
    "DispatchError",
    "DispatchResult",
    "EC2Provider",
    "FirewallGroup",
    "IdentityMismatchError",
    "InstanceHandle",
    "KeyRecord",
    "LaunchError",
    "LifecycleSettings",
    "LogConfig",
    "Node",
    "NodeLifecycle",
    "NodeNotRunningError",
    "Permission",
    "Provider",
    "ProviderError",
    "RegionCache",
    "RemoteCommandError",
    "ResourceCache",
    "RuleError",
    "SSHSession",
    "SalterError",
    "Shell",
    "ShellTimeoutError",
    "SourceGroup",
    "UserDataRenderer",
    "compile_rule",
    "launch",
    "load_config",
    "missing_permissions",
    "reconcile_group",
    "run_all",
    "setup_logging",
    "sync_security_groups",
    "tag",
    "teardown",
]
