"""Nutanix AOS volume group operations via acli on a controller VM.

Every call is ``ssh <cvm_user>@<cvm_host> <acli> <verb> ...``. The client
only translates calls and classifies failures; deciding whether to retry is
left to the caller.

Operations:
    - list_volume_groups(): Clone volume groups of one environment
    - get_volume_group(): Attachments and disk count of a volume group
    - create_volume_group() / delete_volume_group()
    - clone_volume_group(): Clone a whole source volume group
    - clone_disk_into_volume_group(): Clone a single vmdisk into a group
    - attach_to_host() / detach_from_host()
    - find_vm_name(): Map a VM uuid to its AHV name

Failure classification:
    ssh exit 255 or timeout      -> TransientControlPlaneError
    "not found" / kNotFound      -> VolumeGroupNotFoundError
    "already exists" / kExists   -> VolumeGroupExistsError
    anything else                -> ControlPlaneError
"""

from __future__ import annotations

import re
import subprocess
from typing import Callable, Sequence

from odb_clone_backup.domain import OperationOutcome, VolumeGroup
from odb_clone_backup.exceptions import (
    CommandError,
    CommandTimeoutError,
    ControlPlaneError,
    PreconditionError,
    TransientControlPlaneError,
    VolumeGroupExistsError,
    VolumeGroupNotFoundError,
)
from odb_clone_backup.logging import LoggerFactory

from .command_runners import (
    DEFAULT_SSH_OPTIONS,
    SSH_TRANSPORT_FAILURE,
    command_output,
    run_command,
    ssh_command,
)
from .retention import filter_environment

log = LoggerFactory.for_control_plane()

DEFAULT_ACLI_PATH = "/usr/local/nutanix/bin/acli"

NOT_FOUND_PATTERN = re.compile(r"kNotFound|not found|unknown name", re.IGNORECASE)
EXISTS_PATTERN = re.compile(r"kExists|already exists", re.IGNORECASE)
NOT_ATTACHED_PATTERN = re.compile(r"not attached", re.IGNORECASE)
ALREADY_ATTACHED_PATTERN = re.compile(r"already attached", re.IGNORECASE)

_VM_UUID_LINE = re.compile(r'^\s*vm_uuid:\s*"?(?P<uuid>[0-9A-Fa-f-]+)"?', re.MULTILINE)
_UUID_LINE = re.compile(r'^\s*uuid:\s*"?(?P<uuid>[0-9A-Fa-f-]+)"?', re.MULTILINE)
_DISK_BLOCK = re.compile(r"^\s*disk_list\s*\{", re.MULTILINE)

Runner = Callable[..., subprocess.CompletedProcess]


def parse_name_table(output: str) -> list[tuple[str, str]]:
    """Parse ``vg.list`` / ``vm.list`` output into (name, uuid) rows.

    The first line is a column header; names never contain whitespace in
    clone naming, so the last column is the uuid.
    """
    rows = []
    for line in output.splitlines()[1:]:
        words = line.split()
        if len(words) < 2:
            continue
        rows.append((" ".join(words[:-1]), words[-1]))
    return rows


def parse_volume_group(name: str, output: str) -> VolumeGroup:
    """Parse ``vg.get`` output (protobuf text format)."""
    uuid_match = _UUID_LINE.search(output)
    return VolumeGroup(
        name=name,
        uuid=uuid_match.group("uuid") if uuid_match else None,
        attached_vm_uuids=tuple(m.group("uuid") for m in _VM_UUID_LINE.finditer(output)),
        disk_count=len(_DISK_BLOCK.findall(output)),
    )


class StorageControlClient:
    """acli client for volume group lifecycle on one AOS cluster."""

    def __init__(
        self,
        cvm_host: str,
        cvm_user: str = "nutanix",
        *,
        acli_path: str = DEFAULT_ACLI_PATH,
        ssh_options: Sequence[str] = DEFAULT_SSH_OPTIONS,
        read_timeout: float = 15.0,
        write_timeout: float = 120.0,
        runner: Runner = run_command,
    ):
        self.cvm_host = cvm_host
        self.cvm_user = cvm_user
        self.acli_path = acli_path
        self.ssh_options = tuple(ssh_options)
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self._runner = runner

    # ------------------------------------------------------------------
    # transport
    # ------------------------------------------------------------------

    def _run(
        self,
        operation: str,
        *acli_args: str,
        timeout: float,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess:
        command = ssh_command(
            self.cvm_user,
            self.cvm_host,
            [self.acli_path, *acli_args],
            ssh_options=self.ssh_options,
        )
        try:
            result = self._runner(command, input_text=input_text, timeout=timeout)
        except CommandTimeoutError as error:
            raise TransientControlPlaneError(operation, str(error)) from error
        except CommandError as error:
            raise ControlPlaneError(operation, error.output) from error
        if result.returncode == SSH_TRANSPORT_FAILURE:
            raise TransientControlPlaneError(
                operation, command_output(result) or "ssh connection failed"
            )
        return result

    @staticmethod
    def _raise_for(operation: str, result: subprocess.CompletedProcess) -> None:
        text = command_output(result)
        if NOT_FOUND_PATTERN.search(text):
            raise VolumeGroupNotFoundError(operation, text)
        if EXISTS_PATTERN.search(text):
            raise VolumeGroupExistsError(operation, text)
        if result.returncode != 0:
            raise ControlPlaneError(operation, text or f"exit status {result.returncode}")

    def _call(self, operation: str, *acli_args: str, timeout: float, **kwargs) -> str:
        result = self._run(operation, *acli_args, timeout=timeout, **kwargs)
        self._raise_for(operation, result)
        return result.stdout or ""

    # ------------------------------------------------------------------
    # read-only
    # ------------------------------------------------------------------

    def list_volume_groups(self, environment: str) -> list[VolumeGroup]:
        """List clone volume groups belonging to ``environment``."""
        output = self._call("vg.list", "vg.list", timeout=self.read_timeout)
        uuids = dict(parse_name_table(output))
        identifiers = filter_environment(uuids, environment)
        groups = [
            VolumeGroup(name=ident.name, uuid=uuids[ident.name])
            for ident in sorted(identifiers, key=lambda ident: ident.sort_key)
        ]
        log.debug(f"{len(groups)} clone volume groups for {environment}")
        return groups

    def get_volume_group(self, name: str) -> VolumeGroup:
        output = self._call("vg.get", "vg.get", name, timeout=self.read_timeout)
        return parse_volume_group(name, output)

    def find_vm_name(self, vm_uuid: str) -> str:
        """Return the AHV name of the VM with ``vm_uuid``."""
        output = self._call("vm.list", "vm.list", timeout=self.read_timeout)
        wanted = vm_uuid.lower()
        for name, uuid in parse_name_table(output):
            if uuid.lower() == wanted:
                return name
        raise ControlPlaneError("vm.list", f"no VM with uuid {vm_uuid}")

    # ------------------------------------------------------------------
    # mutating
    # ------------------------------------------------------------------

    def create_volume_group(self, name: str) -> OperationOutcome:
        try:
            self._call("vg.create", "vg.create", name, timeout=self.write_timeout)
        except VolumeGroupExistsError:
            log.warning(f"Volume group {name} already exists")
            return OperationOutcome.ALREADY_ACHIEVED
        log.info(f"Created volume group {name}")
        return OperationOutcome.DONE

    def delete_volume_group(self, name: str) -> OperationOutcome:
        """Delete a volume group; a missing group counts as deleted."""
        try:
            # vg.delete asks for confirmation on stdin
            self._call(
                "vg.delete",
                "vg.delete",
                name,
                timeout=self.write_timeout,
                input_text="yes\n",
            )
        except VolumeGroupNotFoundError:
            log.info(f"Volume group {name} already gone")
            return OperationOutcome.ALREADY_ACHIEVED
        log.info(f"Deleted volume group {name}")
        return OperationOutcome.DONE

    def clone_volume_group(self, name: str, source_volume_group: str) -> OperationOutcome:
        """Clone an entire volume group. Not idempotent."""
        self._call(
            "vg.clone",
            "vg.clone",
            name,
            f"clone_from_vg={source_volume_group}",
            timeout=self.write_timeout,
        )
        log.info(f"Cloned volume group {source_volume_group} into {name}")
        return OperationOutcome.DONE

    def clone_disk_into_volume_group(
        self, name: str, source_disk: str, *, verify_empty: bool = False
    ) -> OperationOutcome:
        """Clone a vmdisk into an existing volume group. Not idempotent.

        With ``verify_empty`` the group is inspected first and the clone is
        skipped if it already holds disks from an earlier attempt.

        Raises:
            PreconditionError: If verify_empty is set and the group has disks
        """
        if verify_empty:
            group = self.get_volume_group(name)
            if group.disk_count:
                raise PreconditionError(
                    "vg.disk_create", name, "0 disks", f"{group.disk_count} disks"
                )
        self._call(
            "vg.disk_create",
            "vg.disk_create",
            name,
            f"clone_from_vmdisk={source_disk}",
            timeout=self.write_timeout,
        )
        log.info(f"Cloned vmdisk {source_disk} into {name}")
        return OperationOutcome.DONE

    def attach_to_host(self, name: str, host: str) -> OperationOutcome:
        result = self._run("vg.attach_to_vm", "vg.attach_to_vm", name, host,
                           timeout=self.write_timeout)
        if ALREADY_ATTACHED_PATTERN.search(command_output(result)):
            log.info(f"{name} already attached to {host}")
            return OperationOutcome.ALREADY_ACHIEVED
        self._raise_for("vg.attach_to_vm", result)
        log.info(f"Attached {name} to {host}")
        return OperationOutcome.DONE

    def detach_from_host(self, name: str, host: str) -> OperationOutcome:
        """Detach a volume group; detaching a detached group is a no-op."""
        result = self._run("vg.detach_from_vm", "vg.detach_from_vm", name, host,
                           timeout=self.write_timeout)
        if NOT_ATTACHED_PATTERN.search(command_output(result)):
            log.info(f"{name} not attached to {host}")
            return OperationOutcome.ALREADY_ACHIEVED
        self._raise_for("vg.detach_from_vm", result)
        log.info(f"Detached {name} from {host}")
        return OperationOutcome.DONE
