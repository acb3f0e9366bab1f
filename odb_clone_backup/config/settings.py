"""Environment configuration for clone-backup runs.

One JSON file describes every environment handled by this utility VM:

    {
      "defaults": {"cvm_host": "10.20.30.50", "retention_count": 2},
      "environments": {
        "prd": {
          "source_volume_group": "epic-prd-data",
          "target_host": "10.20.30.40",
          "lvm_volume_group": "prdvg",
          "mount_point": "/mnt/backup-nfs/prd"
        }
      }
    }

Each environment is merged over ``defaults`` and ``DEFAULT_SETTINGS`` and
frozen into an ``EnvironmentConfig``.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from odb_clone_backup.domain import CloneSource
from odb_clone_backup.exceptions import ConfigError
from odb_clone_backup.guest.freeze import DEFAULT_FREEZE_COMMAND, DEFAULT_THAW_COMMAND
from odb_clone_backup.storage.command_runners import DEFAULT_SSH_OPTIONS
from odb_clone_backup.storage.control_plane import DEFAULT_ACLI_PATH


CONFIG_PATH = Path(
    os.environ.get(
        "ODB_CLONE_BACKUP_CONFIG",
        Path.home() / ".config" / "odb-clone-backup" / "environments.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_RETENTION_COUNT = 2
DEFAULT_TRANSIENT_ATTEMPTS = 3
DEFAULT_TRANSIENT_BASE_DELAY = 1.0
DEFAULT_THAW_ATTEMPTS = 3
DEFAULT_THAW_RETRY_DELAY = 2.0
DEFAULT_DISCOVERY_ATTEMPTS = 5
DEFAULT_DISCOVERY_DELAY = 3.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "target_user": "epicadm",
    "cvm_user": "nutanix",
    "acli_path": DEFAULT_ACLI_PATH,
    "freeze_command": DEFAULT_FREEZE_COMMAND,
    "thaw_command": DEFAULT_THAW_COMMAND,
    "retention_count": DEFAULT_RETENTION_COUNT,
    "use_sudo": True,
    "ssh_options": list(DEFAULT_SSH_OPTIONS),
    "trigger": {"type": "log"},
    "retry": {},
    "timeouts": {},
}

_REQUIRED = ("target_host", "cvm_host", "lvm_volume_group", "mount_point")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry and backoff knobs; defaults match the documented policy."""

    transient_attempts: int = DEFAULT_TRANSIENT_ATTEMPTS
    transient_base_delay: float = DEFAULT_TRANSIENT_BASE_DELAY
    thaw_attempts: int = DEFAULT_THAW_ATTEMPTS
    thaw_retry_delay: float = DEFAULT_THAW_RETRY_DELAY
    discovery_attempts: int = DEFAULT_DISCOVERY_ATTEMPTS
    discovery_delay: float = DEFAULT_DISCOVERY_DELAY

    def __post_init__(self) -> None:
        for name in ("transient_attempts", "thaw_attempts", "discovery_attempts"):
            if getattr(self, name) < 1:
                raise ConfigError(f"retry.{name} must be at least 1")
        for name in ("transient_base_delay", "thaw_retry_delay", "discovery_delay"):
            if getattr(self, name) < 0:
                raise ConfigError(f"retry.{name} must not be negative")

    def transient_delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return self.transient_base_delay * (2 ** (attempt - 1))


@dataclass(frozen=True)
class Timeouts:
    """Per-call timeouts in seconds."""

    read: float = 15.0  # control-plane reads
    write: float = 120.0  # create/clone/attach/detach/delete
    guest: float = 30.0  # freeze/thaw, the database is blocked meanwhile
    local: float = 60.0  # pvscan/lvs/mount on this host


@dataclass(frozen=True)
class EnvironmentConfig:
    """Everything one orchestrator run needs to know about an environment."""

    environment: str
    source: CloneSource
    target_host: str
    cvm_host: str
    lvm_volume_group: str
    mount_point: str
    target_user: str = "epicadm"
    instance: str | None = None
    freeze_command: str = DEFAULT_FREEZE_COMMAND
    thaw_command: str = DEFAULT_THAW_COMMAND
    cvm_user: str = "nutanix"
    acli_path: str = DEFAULT_ACLI_PATH
    mount_host: str | None = None
    mount_host_uuid: str | None = None
    retention_count: int = DEFAULT_RETENTION_COUNT
    use_sudo: bool = True
    ssh_options: tuple[str, ...] = DEFAULT_SSH_OPTIONS
    trigger: Mapping[str, Any] = field(default_factory=lambda: {"type": "log"})
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: Timeouts = field(default_factory=Timeouts)

    def __post_init__(self) -> None:
        if self.retention_count < 1:
            raise ConfigError(
                f"{self.environment}: retention_count must be at least 1"
            )
        if not os.path.isabs(self.mount_point):
            raise ConfigError(
                f"{self.environment}: mount_point must be absolute: {self.mount_point}"
            )


def _build_environment(name: str, values: Mapping[str, Any]) -> EnvironmentConfig:
    missing = [key for key in _REQUIRED if not values.get(key)]
    if missing:
        raise ConfigError(f"{name}: missing required settings: {', '.join(missing)}")
    try:
        source = CloneSource(
            volume_group=values.get("source_volume_group"),
            disk=values.get("source_disk"),
        )
        retry = RetryPolicy(**values.get("retry", {}))
        timeouts = Timeouts(**values.get("timeouts", {}))
        return EnvironmentConfig(
            environment=values.get("environment", name),
            source=source,
            target_host=values["target_host"],
            cvm_host=values["cvm_host"],
            lvm_volume_group=values["lvm_volume_group"],
            mount_point=values["mount_point"],
            target_user=values["target_user"],
            instance=values.get("instance"),
            freeze_command=values["freeze_command"],
            thaw_command=values["thaw_command"],
            cvm_user=values["cvm_user"],
            acli_path=values["acli_path"],
            mount_host=values.get("mount_host"),
            mount_host_uuid=values.get("mount_host_uuid"),
            retention_count=int(values["retention_count"]),
            use_sudo=bool(values["use_sudo"]),
            ssh_options=tuple(values["ssh_options"]),
            trigger=dict(values["trigger"]),
            retry=retry,
            timeouts=timeouts,
        )
    except (TypeError, ValueError) as error:
        raise ConfigError(f"{name}: {error}") from error


def _check_exclusive(environments: Mapping[str, EnvironmentConfig]) -> None:
    """Environments must not share a mount point, LVM VG or clone namespace."""
    for attribute in ("environment", "mount_point", "lvm_volume_group"):
        seen: dict[str, str] = {}
        for name, config in environments.items():
            value = getattr(config, attribute)
            if attribute == "mount_point":
                value = os.path.normpath(value)
            if value in seen:
                raise ConfigError(
                    f"{name} and {seen[value]} share {attribute} {value!r}"
                )
            seen[value] = name


def parse_environments(data: Mapping[str, Any]) -> dict[str, EnvironmentConfig]:
    if not isinstance(data, Mapping):
        raise ConfigError("Configuration root must be a JSON object")
    defaults = data.get("defaults", {})
    raw_environments = data.get("environments")
    if not isinstance(raw_environments, Mapping) or not raw_environments:
        raise ConfigError("Configuration must define at least one environment")

    environments = {}
    for name, overrides in raw_environments.items():
        values = {**DEFAULT_SETTINGS, **defaults, **overrides}
        for nested in ("retry", "timeouts"):
            values[nested] = {
                **DEFAULT_SETTINGS[nested],
                **defaults.get(nested, {}),
                **overrides.get(nested, {}),
            }
        environments[name] = _build_environment(name, values)
    _check_exclusive(environments)
    return environments


def load_environments(path: Path | None = None) -> dict[str, EnvironmentConfig]:
    """Load and validate every environment in the configuration file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    path = Path(path) if path else CONFIG_PATH
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except OSError as error:
        raise ConfigError(f"Cannot read configuration {path}: {error}") from error
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in {path}: {error}") from error
    return parse_environments(data)


def load_environment(name: str, path: Path | None = None) -> EnvironmentConfig:
    environments = load_environments(path)
    try:
        return environments[name]
    except KeyError:
        known = ", ".join(sorted(environments))
        raise ConfigError(f"Unknown environment {name!r} (known: {known})") from None
