"""LVM discovery and filesystem mounting on the utility host.

The clone volume group is hot-added to this VM by the control plane; the
guest then has to rescan physical volumes before LVM sees the cloned
logical volumes. Everything here runs locally through subprocess argument
lists, optionally behind ``sudo -n``.

Functions:
    - refresh_device_metadata(): pvscan --cache
    - resolve_device_path(): Logical volume path of an LVM volume group
    - mount() / unmount() / is_mounted()
    - remove_volume_group_definition(): vgremove for the previous clone
    - local_vm_uuid(): This VM's uuid from DMI
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Callable

import psutil

from odb_clone_backup.domain import OperationOutcome
from odb_clone_backup.exceptions import (
    CommandError,
    DeviceNotFoundError,
    MountOperationError,
)
from odb_clone_backup.logging import LoggerFactory

from .command_runners import command_output, run_command, with_sudo

log = LoggerFactory.for_mount()

_UNSAFE_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")
_VG_MISSING_MARKERS = ("not found", "no volume groups found")


def _validate_device_path(device_path: str) -> None:
    if not isinstance(device_path, str) or not device_path.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device_path}")
    if any(char in device_path for char in _UNSAFE_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device_path}")


def _validate_mount_point(mount_point: str) -> str:
    if not isinstance(mount_point, str) or not os.path.isabs(mount_point):
        raise ValueError(f"Mount point must be an absolute path: {mount_point}")
    normalized = os.path.normpath(mount_point)
    if normalized == "/":
        raise ValueError("Refusing to use / as a mount point")
    return normalized


def _is_missing_volume_group(text: str) -> bool:
    lowered = text.lower()
    return any(marker in lowered for marker in _VG_MISSING_MARKERS)


class MountHost:
    """Device and mount state of the utility VM."""

    def __init__(
        self,
        *,
        use_sudo: bool = False,
        timeout: float = 60.0,
        runner: Callable = run_command,
    ):
        self.use_sudo = use_sudo
        self.timeout = timeout
        self._runner = runner

    def _run(self, command: list[str]):
        return self._runner(with_sudo(command, self.use_sudo), timeout=self.timeout)

    def _run_checked(self, command: list[str]) -> str:
        result = self._run(command)
        if result.returncode != 0:
            raise CommandError(command, result.returncode, command_output(result))
        return result.stdout or ""

    def refresh_device_metadata(self) -> None:
        """Rescan physical volumes so newly attached disks reach LVM."""
        self._run_checked(["pvscan", "--cache"])
        log.debug("Physical volume metadata refreshed")

    def resolve_device_path(self, volume_group: str) -> str:
        """Return the device path of the logical volume in ``volume_group``.

        Raises:
            DeviceNotFoundError: If the volume group or its LV is not visible
        """
        command = [
            "lvs",
            "--reportformat",
            "json",
            "-o",
            "lv_path,lv_name,vg_name",
            volume_group,
        ]
        result = self._run(command)
        if result.returncode != 0:
            raise DeviceNotFoundError(volume_group, command_output(result))
        try:
            report = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as error:
            raise DeviceNotFoundError(
                volume_group, f"unparseable lvs output: {error}"
            ) from error

        paths = sorted(
            lv["lv_path"]
            for section in report.get("report", [])
            for lv in section.get("lv", [])
            if lv.get("vg_name") == volume_group and lv.get("lv_path")
        )
        if not paths:
            raise DeviceNotFoundError(volume_group, "no logical volumes")
        if len(paths) > 1:
            log.warning(
                f"{volume_group} has {len(paths)} logical volumes, using {paths[0]}"
            )
        log.debug(f"Resolved {volume_group} to {paths[0]}")
        return paths[0]

    def is_mounted(self, mount_point: str) -> bool:
        target = os.path.normpath(mount_point)
        return any(
            os.path.normpath(partition.mountpoint) == target
            for partition in psutil.disk_partitions(all=True)
        )

    def mount(self, device_path: str, mount_point: str) -> None:
        """Mount ``device_path`` at ``mount_point``, creating the directory.

        Raises:
            ValueError: If inputs are malformed
            MountOperationError: If mount fails
        """
        _validate_device_path(device_path)
        mount_point = _validate_mount_point(mount_point)
        try:
            Path(mount_point).mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise MountOperationError(
                f"Cannot create mount point {mount_point}: {error}", mount_point
            ) from error
        try:
            self._run_checked(["mount", device_path, mount_point])
        except CommandError as error:
            raise MountOperationError(
                f"Failed to mount {device_path} to {mount_point}: {error.output}",
                mount_point,
            ) from error
        log.info(f"Mounted {device_path} at {mount_point}")

    def unmount(self, mount_point: str) -> OperationOutcome:
        """Unmount ``mount_point``; an unmounted path is left as is."""
        mount_point = _validate_mount_point(mount_point)
        if not self.is_mounted(mount_point):
            log.debug(f"{mount_point} already unmounted")
            return OperationOutcome.ALREADY_ACHIEVED
        try:
            self._run_checked(["umount", mount_point])
        except CommandError as error:
            raise MountOperationError(
                f"Failed to unmount {mount_point}: {error.output}", mount_point
            ) from error
        log.info(f"Unmounted {mount_point}")
        return OperationOutcome.DONE

    def remove_volume_group_definition(self, volume_group: str) -> OperationOutcome:
        """Drop the local LVM volume group of the previous clone."""
        result = self._run(["vgremove", "-y", volume_group])
        if result.returncode == 0:
            log.info(f"Removed LVM volume group {volume_group}")
            return OperationOutcome.DONE
        output = command_output(result)
        if _is_missing_volume_group(output):
            log.debug(f"LVM volume group {volume_group} not present")
            return OperationOutcome.ALREADY_ACHIEVED
        raise MountOperationError(
            f"Failed to remove LVM volume group {volume_group}: {output}", volume_group
        )

    def local_vm_uuid(self) -> str:
        """UUID of this VM as AHV knows it (DMI system uuid)."""
        output = self._run_checked(["dmidecode", "-s", "system-uuid"]).strip()
        if not output:
            raise CommandError(["dmidecode", "-s", "system-uuid"], 0, "empty system uuid")
        return output.splitlines()[-1].strip().lower()
