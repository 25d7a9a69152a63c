"""Centralized constants and enums for salter.

All magic strings, remote paths, and timing constants are defined here
to ensure consistency throughout the codebase.
"""

from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Final

# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    PENDING = "pending"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting-down"
    TERMINATED = "terminated"
    STOPPING = "stopping"
    STOPPED = "stopped"


# States accepted by the per-node describe filter; everything else is gone.
LIVE_STATES: Final = (InstanceState.PENDING, InstanceState.RUNNING)


# =============================================================================
# Tags and Roles
# =============================================================================

NAME_TAG: Final = "Name"
CONTROLLER_ROLE: Final = "saltmaster"
LOOPBACK: Final = "127.0.0.1"


# =============================================================================
# Polling
# =============================================================================

POLL_INTERVAL: Final = 5.0
SHELL_MAX_ATTEMPTS: Final = 10
DEFAULT_PARALLEL: Final = 10
SSH_CONNECT_TIMEOUT: Final = 30.0

BOOT_FINISHED_PROBE: Final = "/bin/bash -c 'test -f /var/lib/cloud/instance/boot-finished'"


# =============================================================================
# Salt Paths and Commands
# =============================================================================

MASTER_PENDING_DIR: Final = "/etc/salt/pki/master/minions_pre"
MINION_PKI_DIR: Final = "/etc/salt/pki/minion"
SALT_STATE_DIR: Final = "/srv/salt"
IDENTITY_KEY_BITS: Final = 2048

MINION_RESTART: Final = "/usr/bin/sudo service salt-minion restart"


# =============================================================================
# Local Paths
# =============================================================================

SALTER_DIR: Final = Path.home() / ".salter"
LOG_FILE: Final = SALTER_DIR / "log"
DEFAULT_CONFIG_FILE: Final = "salter.cfg"
DEFAULT_USERDATA_FILE: Final = "bootstrap/user.data"
DEFAULT_SALT_TIMEOUT: Final = 60


# =============================================================================
# Ephemeral Block Devices
# =============================================================================

# Instance-store volumes exposed by older instance families.
EPHEMERAL_DEVICES: Final[dict[str, int]] = {
    "m1.large": 2,
    "m1.xlarge": 4,
    "c1.xlarge": 4,
    "m2.xlarge": 1,
    "m2.2xlarge": 1,
    "m2.4xlarge": 2,
    "hs1.8xlarge": 24,
    "hi1.4xlarge": 2,
    "cr1.8xlarge": 2,
    "cc2.8xlarge": 4,
    "cg1.4xlarge": 2,
}
