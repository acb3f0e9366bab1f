"""
Pytest configuration and shared fixtures for odb-clone-backup tests.

The orchestrator is exercised against in-memory fakes of the control plane,
the database host and the utility host. All three append to one shared
journal so tests can assert on call ordering across collaborators.
"""

from __future__ import annotations

from typing import Any, Dict, List
from unittest.mock import Mock

import pytest
from loguru import logger

from odb_clone_backup.config.settings import EnvironmentConfig, RetryPolicy
from odb_clone_backup.domain import CloneSource, OperationOutcome, VolumeGroup
from odb_clone_backup.exceptions import (
    ControlPlaneError,
    DeviceNotFoundError,
    PreconditionError,
    ThawError,
    VolumeGroupExistsError,
)
from odb_clone_backup.orchestrator.lifecycle import CloneLifecycleOrchestrator
from odb_clone_backup.storage.retention import filter_environment

HOST_NAME = "backup-util"
HOST_UUID = "5b1a2c3d-0000-4e5f-8a9b-0c1d2e3f4a5b"
OTHER_VM_UUID = "9f8e7d6c-1111-4b5a-9c8d-7e6f5a4b3c2d"
DEVICE_PATH = "/dev/prdvg/lv_epic"
MOUNT_POINT = "/mnt/backup-nfs/prd"


# ==============================================================================
# In-memory Collaborators
# ==============================================================================


class _FailureQueue:
    """Per-operation queue of exceptions raised by the next calls."""

    def __init__(self) -> None:
        self._pending: Dict[str, List[BaseException]] = {}

    def fail(self, operation: str, *errors: BaseException) -> None:
        self._pending.setdefault(operation, []).extend(errors)

    def check(self, operation: str) -> None:
        pending = self._pending.get(operation)
        if pending:
            raise pending.pop(0)


class FakeControlPlane(_FailureQueue):
    """Volume groups held in a dict, with the acli client's interface."""

    def __init__(self, journal: List[str]) -> None:
        super().__init__()
        self.journal = journal
        self.groups: Dict[str, Dict[str, Any]] = {}
        self.vms = {HOST_NAME: HOST_UUID, "epic-prd-odb": OTHER_VM_UUID}
        self.undeletable: set = set()

    def add_group(self, name: str, attached=(), disk_count: int = 1) -> None:
        self.groups[name] = {"attached": set(attached), "disks": disk_count}

    def _record(self, operation: str, *args: str) -> None:
        self.journal.append(" ".join((operation, *args)))
        self.check(operation)

    def calls(self, operation: str) -> List[str]:
        return [entry for entry in self.journal if entry.split()[0] == operation]

    def list_volume_groups(self, environment: str) -> List[VolumeGroup]:
        self._record("vg.list")
        identifiers = filter_environment(self.groups, environment)
        return [
            VolumeGroup(name=ident.name)
            for ident in sorted(identifiers, key=lambda ident: ident.sort_key)
        ]

    def get_volume_group(self, name: str) -> VolumeGroup:
        self._record("vg.get", name)
        group = self.groups[name]
        return VolumeGroup(
            name=name,
            attached_vm_uuids=tuple(sorted(group["attached"])),
            disk_count=group["disks"],
        )

    def find_vm_name(self, vm_uuid: str) -> str:
        self._record("vm.list")
        for name, uuid in self.vms.items():
            if uuid == vm_uuid:
                return name
        raise ControlPlaneError("vm.list", f"no VM with uuid {vm_uuid}")

    def create_volume_group(self, name: str) -> OperationOutcome:
        self._record("vg.create", name)
        if name in self.groups:
            return OperationOutcome.ALREADY_ACHIEVED
        self.add_group(name, disk_count=0)
        return OperationOutcome.DONE

    def delete_volume_group(self, name: str) -> OperationOutcome:
        self._record("vg.delete", name)
        if name not in self.groups:
            return OperationOutcome.ALREADY_ACHIEVED
        if name not in self.undeletable:
            del self.groups[name]
        return OperationOutcome.DONE

    def clone_volume_group(self, name: str, source_volume_group: str) -> OperationOutcome:
        self._record("vg.clone", name, source_volume_group)
        if name in self.groups:
            raise VolumeGroupExistsError("vg.clone", f"{name} already exists")
        self.add_group(name, disk_count=2)
        return OperationOutcome.DONE

    def clone_disk_into_volume_group(
        self, name: str, source_disk: str, *, verify_empty: bool = False
    ) -> OperationOutcome:
        self._record("vg.disk_create", name, source_disk)
        group = self.groups[name]
        if verify_empty and group["disks"]:
            raise PreconditionError(
                "vg.disk_create", name, "0 disks", f"{group['disks']} disks"
            )
        group["disks"] += 1
        return OperationOutcome.DONE

    def attach_to_host(self, name: str, host: str) -> OperationOutcome:
        self._record("vg.attach_to_vm", name, host)
        attached = self.groups[name]["attached"]
        if self.vms[host] in attached:
            return OperationOutcome.ALREADY_ACHIEVED
        attached.add(self.vms[host])
        return OperationOutcome.DONE

    def detach_from_host(self, name: str, host: str) -> OperationOutcome:
        self._record("vg.detach_from_vm", name, host)
        attached = self.groups[name]["attached"]
        if self.vms[host] not in attached:
            return OperationOutcome.ALREADY_ACHIEVED
        attached.discard(self.vms[host])
        return OperationOutcome.DONE


class FakeGuest:
    """Freeze/thaw endpoint with scripted failures."""

    def __init__(self, journal: List[str]) -> None:
        self.journal = journal
        self.freeze_error: BaseException | None = None
        self.thaw_failures = 0
        self.frozen = False

    def freeze(self) -> OperationOutcome:
        self.journal.append("freeze")
        if self.freeze_error is not None:
            raise self.freeze_error
        self.frozen = True
        return OperationOutcome.DONE

    def thaw(self) -> OperationOutcome:
        self.journal.append("thaw")
        if self.thaw_failures:
            self.thaw_failures -= 1
            raise ThawError("prd", "instthaw: cannot contact instance")
        self.frozen = False
        return OperationOutcome.DONE


class FakeMountHost:
    """Utility host whose LVM view lags behind attach by ``device_delay`` scans."""

    def __init__(self, journal: List[str]) -> None:
        self.journal = journal
        self.device_delay = 0
        self.mounted: set = set()
        self.verify_mounts = True
        self.mount_error: BaseException | None = None

    def refresh_device_metadata(self) -> None:
        self.journal.append("pvscan")

    def resolve_device_path(self, volume_group: str) -> str:
        self.journal.append(f"lvs {volume_group}")
        if self.device_delay:
            self.device_delay -= 1
            raise DeviceNotFoundError(volume_group, "Volume group not found")
        return DEVICE_PATH

    def is_mounted(self, mount_point: str) -> bool:
        return mount_point in self.mounted

    def mount(self, device_path: str, mount_point: str) -> None:
        self.journal.append(f"mount {device_path} {mount_point}")
        if self.mount_error is not None:
            raise self.mount_error
        if self.verify_mounts:
            self.mounted.add(mount_point)

    def unmount(self, mount_point: str) -> OperationOutcome:
        self.journal.append(f"umount {mount_point}")
        if mount_point not in self.mounted:
            return OperationOutcome.ALREADY_ACHIEVED
        self.mounted.discard(mount_point)
        return OperationOutcome.DONE

    def remove_volume_group_definition(self, volume_group: str) -> OperationOutcome:
        self.journal.append(f"vgremove {volume_group}")
        return OperationOutcome.ALREADY_ACHIEVED

    def local_vm_uuid(self) -> str:
        return HOST_UUID


class RecordingTrigger:
    """Backup trigger that remembers every ready event."""

    def __init__(self, error: BaseException | None = None) -> None:
        self.events = []
        self.error = error

    def on_ready(self, event) -> None:
        self.events.append(event)
        if self.error is not None:
            raise self.error


# ==============================================================================
# Configuration Fixtures
# ==============================================================================


@pytest.fixture
def env_config() -> EnvironmentConfig:
    """
    Fixture providing the configuration of a volume-group-sourced environment.

    Returns:
        EnvironmentConfig keeping three clones of ``prd``.
    """
    return EnvironmentConfig(
        environment="prd",
        source=CloneSource(volume_group="epic-prd-data"),
        target_host="10.20.30.40",
        cvm_host="10.20.30.50",
        lvm_volume_group="prdvg",
        mount_point=MOUNT_POINT,
        retention_count=3,
        retry=RetryPolicy(),
    )


@pytest.fixture
def sample_config_data() -> Dict[str, Any]:
    """Fixture providing a two-environment configuration file body."""
    return {
        "defaults": {
            "cvm_host": "10.20.30.50",
            "target_host": "10.20.30.40",
            "retention_count": 2,
        },
        "environments": {
            "prd": {
                "source_volume_group": "epic-prd-data",
                "lvm_volume_group": "prdvg",
                "mount_point": "/mnt/backup-nfs/prd",
            },
            "poc": {
                "source_disk": "58e2606a-055c-40da-9f71-58cf55957936",
                "target_host": "10.20.30.41",
                "lvm_volume_group": "pocvg",
                "mount_point": "/mnt/backup-nfs/poc",
                "retention_count": 1,
            },
        },
    }


# ==============================================================================
# Orchestrator Fixtures
# ==============================================================================


@pytest.fixture
def journal() -> List[str]:
    return []


@pytest.fixture
def control(journal) -> FakeControlPlane:
    return FakeControlPlane(journal)


@pytest.fixture
def guest(journal) -> FakeGuest:
    return FakeGuest(journal)


@pytest.fixture
def mount_host(journal) -> FakeMountHost:
    return FakeMountHost(journal)


@pytest.fixture
def trigger() -> RecordingTrigger:
    return RecordingTrigger()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the orchestrator; nothing actually sleeps."""
    return []


@pytest.fixture
def make_orchestrator(env_config, control, guest, mount_host, trigger, sleeps):
    """
    Factory fixture building an orchestrator wired to the fakes.

    The clock is pinned to 5000 so the new clone is ``5000-copy-<env>``.
    """

    def _make(config: EnvironmentConfig | None = None, **kwargs):
        kwargs.setdefault("trigger", trigger)
        return CloneLifecycleOrchestrator(
            config or env_config,
            control,
            guest,
            mount_host,
            clock=lambda: 5000.7,
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


# ==============================================================================
# Subprocess and Logging Fixtures
# ==============================================================================


@pytest.fixture
def completed():
    """Factory for subprocess results as returned by run_command."""

    def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> Mock:
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    return _completed


@pytest.fixture
def mock_runner(completed) -> Mock:
    """
    Fixture providing a command runner that succeeds with empty output.

    Returns:
        Mock standing in for run_command; configure return_value/side_effect.
    """
    return Mock(return_value=completed())


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)

