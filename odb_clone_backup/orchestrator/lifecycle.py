"""Clone lifecycle state machine for one database environment.

A run walks::

    Idle -> Reclaiming -> Freezing -> Cloning -> Thawing
         -> Attaching -> Mounting -> Ready -> Done

and ends in ``Done`` or ``Failed(stage, reason)``. No stage is entered twice
within a run, and a new run always starts from ``Idle``.

Safety rules enforced here rather than in the clients:

- Nothing is created unless reclaim brought the clone count under the
  retention window.
- A failed freeze stops the run before any create/clone/attach call. A
  timed-out freeze is followed by a thaw.
- Once cloning has started, thaw is always attempted, including when the
  clone failed or the run is being cancelled. Thaw is retried a bounded
  number of times and then escalated; the source stays frozen.
- Only list/get/create/attach/detach/delete are retried on transient
  control-plane errors. Clone calls are never retried.
- A clone that fails mount verification stays attached for inspection.
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from odb_clone_backup.backup.triggers import BackupTrigger, LoggingTrigger
from odb_clone_backup.config.settings import EnvironmentConfig
from odb_clone_backup.domain import (
    CloneIdentifier,
    MountState,
    OperationOutcome,
    ReadyEvent,
    RunFailure,
    RunResult,
    Stage,
)
from odb_clone_backup.exceptions import (
    BackupError,
    CommandTimeoutError,
    ControlPlaneError,
    DeviceNotFoundError,
    GuestCommandError,
    MountVerificationError,
    ReclaimError,
    ThawEscalationError,
    TransientControlPlaneError,
)
from odb_clone_backup.guest.freeze import GuestFreezeClient
from odb_clone_backup.logging import EventLogger, LoggerFactory
from odb_clone_backup.storage.control_plane import StorageControlClient
from odb_clone_backup.storage.mount import MountHost
from odb_clone_backup.storage.retention import RetentionPolicy

T = TypeVar("T")


class _RunAborted(Exception):
    """Internal: carries a RunFailure out of a stage."""

    def __init__(self, failure: RunFailure):
        self.failure = failure
        super().__init__(str(failure))


def _operation_of(error: BaseException) -> str | None:
    return getattr(error, "operation", None)


class CloneLifecycleOrchestrator:
    """Runs reclaim/freeze/clone/thaw/attach/mount for one environment.

    Collaborators are injected so tests can substitute in-memory fakes; use
    ``from_config`` for the real acli/ssh/LVM implementations.
    """

    def __init__(
        self,
        config: EnvironmentConfig,
        control: StorageControlClient,
        guest: GuestFreezeClient,
        mount_host: MountHost,
        *,
        trigger: BackupTrigger | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.control = control
        self.guest = guest
        self.mount_host = mount_host
        self.trigger = trigger or LoggingTrigger()
        self.retention = RetentionPolicy(config.retention_count)
        self._clock = clock
        self._sleep = sleep

        self.stage = Stage.IDLE
        self.history: list[Stage] = [Stage.IDLE]
        self.clone_identifier: CloneIdentifier | None = None
        self.mount_state = MountState(mount_point=config.mount_point)
        self._host_name: str | None = config.mount_host
        self._host_uuid: str | None = config.mount_host_uuid
        self._started = False
        self.log = LoggerFactory.for_orchestrator(config.environment)

    @classmethod
    def from_config(
        cls, config: EnvironmentConfig, trigger: BackupTrigger | None = None
    ) -> CloneLifecycleOrchestrator:
        control = StorageControlClient(
            config.cvm_host,
            config.cvm_user,
            acli_path=config.acli_path,
            ssh_options=config.ssh_options,
            read_timeout=config.timeouts.read,
            write_timeout=config.timeouts.write,
        )
        guest = GuestFreezeClient(
            config.environment,
            config.target_host,
            config.target_user,
            instance=config.instance,
            freeze_command=config.freeze_command,
            thaw_command=config.thaw_command,
            ssh_options=config.ssh_options,
            timeout=config.timeouts.guest,
        )
        mount_host = MountHost(use_sudo=config.use_sudo, timeout=config.timeouts.local)
        return cls(config, control, guest, mount_host, trigger=trigger)

    # ------------------------------------------------------------------
    # state bookkeeping
    # ------------------------------------------------------------------

    def _enter(self, stage: Stage) -> None:
        if stage in self.history:
            raise RuntimeError(f"Stage {stage.label} already entered in this run")
        self.stage = stage
        self.history.append(stage)
        EventLogger.log_stage_entered(
            self.log, stage.label, clone=str(self.clone_identifier or "-")
        )

    def _abort(
        self, stage: Stage, reason: str, error: BaseException | None = None
    ) -> _RunAborted:
        failure = RunFailure(
            stage=stage,
            reason=reason,
            operation=_operation_of(error) if error else None,
            detail=str(error) if error else "",
            clone_identifier=str(self.clone_identifier) if self.clone_identifier else None,
        )
        return _RunAborted(failure)

    def _result(self, failure: RunFailure | None = None) -> RunResult:
        identifier = str(self.clone_identifier) if self.clone_identifier else None
        ready = None
        if failure is None:
            ready = ReadyEvent(identifier, self.config.mount_point, self.config.environment)
        return RunResult(
            environment=self.config.environment,
            stage=self.stage,
            clone_identifier=identifier,
            mount_point=self.config.mount_point,
            failure=failure,
            history=tuple(self.history),
            ready_event=ready,
        )

    # ------------------------------------------------------------------
    # retry helpers
    # ------------------------------------------------------------------

    def _remote(self, operation: str, func: Callable[..., T], *args) -> T:
        """Call a retry-safe control-plane operation with exponential backoff."""
        policy = self.config.retry
        for attempt in range(1, policy.transient_attempts):
            try:
                return func(*args)
            except TransientControlPlaneError as error:
                delay = policy.transient_delay(attempt)
                EventLogger.log_retry(
                    self.log, operation, attempt, policy.transient_attempts, delay, str(error)
                )
                self._sleep(delay)
        return func(*args)

    def _thaw(self) -> None:
        """Thaw with bounded retries.

        Raises:
            ThawEscalationError: Every attempt failed; the source is still frozen
        """
        policy = self.config.retry
        last_error: GuestCommandError | None = None
        for attempt in range(1, policy.thaw_attempts + 1):
            try:
                self.guest.thaw()
                return
            except GuestCommandError as error:
                last_error = error
                self.log.error(
                    f"Thaw attempt {attempt}/{policy.thaw_attempts} failed: {error.detail}"
                )
                if attempt < policy.thaw_attempts:
                    self._sleep(policy.thaw_retry_delay)
        EventLogger.log_thaw_escalation(
            self.log, self.config.environment, policy.thaw_attempts, str(last_error)
        )
        raise ThawEscalationError(
            self.config.environment, policy.thaw_attempts, last_error.detail
        )

    def _thaw_after_interrupt(self) -> None:
        """Thaw on the way out of a cancelled freeze window."""
        self.log.warning("Run interrupted inside the freeze window, thawing first")
        if Stage.THAWING not in self.history:
            self._enter(Stage.THAWING)
        try:
            self._thaw()
        except ThawEscalationError:
            # already logged at CRITICAL; the interrupt propagates regardless
            pass

    def _thaw_after_freeze_timeout(self) -> None:
        """Thaw after a freeze that may have quiesced the source before timing out."""
        self.log.warning("Freeze timed out, thawing in case the source is frozen")
        self._enter(Stage.THAWING)
        try:
            self._thaw()
        except ThawEscalationError as error:
            raise self._abort(Stage.THAWING, "escalated", error) from error

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _resolve_host(self) -> tuple[str, str]:
        if self._host_uuid is None:
            self._host_uuid = self.mount_host.local_vm_uuid()
        if self._host_name is None:
            self._host_name = self._remote(
                "vm.list", self.control.find_vm_name, self._host_uuid
            )
        self.log.debug(f"Utility VM is {self._host_name} ({self._host_uuid})")
        return self._host_name, self._host_uuid

    def _reclaim(self) -> None:
        config = self.config
        self._enter(Stage.RECLAIMING)
        try:
            self.mount_host.unmount(config.mount_point)
            self.mount_host.remove_volume_group_definition(config.lvm_volume_group)
            host_name, host_uuid = self._resolve_host()

            groups = self._remote(
                "vg.list", self.control.list_volume_groups, config.environment
            )
            for group in groups:
                detail = self._remote("vg.get", self.control.get_volume_group, group.name)
                if detail.is_attached_to(host_uuid):
                    self._remote(
                        "vg.detach_from_vm",
                        self.control.detach_from_host,
                        group.name,
                        host_name,
                    )
                    self.log.info(f"Detached previous clone {group.name}")

            existing = [group.identifier for group in groups if group.identifier]
            self.log.info(
                f"Current number of clones {len(existing)} for {config.environment}"
            )
            for identifier in self.retention.select_for_eviction(existing):
                self.log.info(f"Removing expired clone {identifier}")
                self._remote("vg.delete", self.control.delete_volume_group, identifier.name)

            remaining = self._remote(
                "vg.list", self.control.list_volume_groups, config.environment
            )
            if not self.retention.is_satisfied(len(remaining)):
                raise ReclaimError(config.environment, len(remaining), self.retention.keep)
        except ReclaimError as error:
            raise self._abort(Stage.RECLAIMING, "retention not satisfied", error) from error
        except BackupError as error:
            raise self._abort(Stage.RECLAIMING, "reclaim failed", error) from error

    def _clone(self, identifier: CloneIdentifier) -> None:
        """Clone inside the freeze window. Keep remote calls to the minimum."""
        source = self.config.source
        name = identifier.name
        if not source.is_single_disk:
            self.control.clone_volume_group(name, source.volume_group)
            return
        outcome = self._remote("vg.create", self.control.create_volume_group, name)
        self.control.clone_disk_into_volume_group(
            name,
            source.disk,
            verify_empty=outcome is OperationOutcome.ALREADY_ACHIEVED,
        )

    def _snapshot(self, identifier: CloneIdentifier) -> None:
        """Freeze, clone, thaw."""
        self._enter(Stage.FREEZING)
        try:
            self.guest.freeze()
        except GuestCommandError as error:
            if isinstance(error.__cause__, CommandTimeoutError):
                self._thaw_after_freeze_timeout()
            raise self._abort(Stage.FREEZING, "freeze failed", error) from error
        except BaseException:
            self._thaw_after_interrupt()
            raise

        self.clone_identifier = identifier
        clone_error: BackupError | None = None
        try:
            self._enter(Stage.CLONING)
            self.log.info(f"Creating new clone {identifier} from {self.config.source.describe()}")
            self._clone(identifier)
        except BackupError as error:
            clone_error = error
            self.log.error(f"Clone {identifier} failed: {error}")
        except BaseException:
            self._thaw_after_interrupt()
            raise

        self._enter(Stage.THAWING)
        try:
            self._thaw()
        except ThawEscalationError as error:
            raise self._abort(Stage.THAWING, "escalated", error) from error
        if clone_error is not None:
            raise self._abort(Stage.CLONING, "clone failed", clone_error)

    def _attach(self, identifier: CloneIdentifier) -> None:
        self._enter(Stage.ATTACHING)
        host_name, _ = self._resolve_host()
        try:
            self._remote(
                "vg.attach_to_vm", self.control.attach_to_host, identifier.name, host_name
            )
        except ControlPlaneError as error:
            raise self._abort(Stage.ATTACHING, "attach failed", error) from error

    def _discover_device(self) -> str:
        """Refresh LVM metadata and resolve the LV until the attach shows up."""
        policy = self.config.retry
        volume_group = self.config.lvm_volume_group
        for attempt in range(1, policy.discovery_attempts):
            self.mount_host.refresh_device_metadata()
            try:
                return self.mount_host.resolve_device_path(volume_group)
            except DeviceNotFoundError as error:
                self.log.debug(
                    f"{volume_group} not visible yet ({error.reason}), "
                    f"retry {attempt}/{policy.discovery_attempts}"
                )
                self._sleep(policy.discovery_delay)
        self.mount_host.refresh_device_metadata()
        return self.mount_host.resolve_device_path(volume_group)

    def _mount(self) -> None:
        self._enter(Stage.MOUNTING)
        mount_point = self.config.mount_point
        try:
            device_path = self._discover_device()
            self.mount_state.device_path = device_path
            self.mount_host.mount(device_path, mount_point)
        except DeviceNotFoundError as error:
            raise self._abort(Stage.MOUNTING, "device not found", error) from error
        except (BackupError, ValueError) as error:
            raise self._abort(Stage.MOUNTING, "mount failed", error) from error

        self.mount_state.mounted = self.mount_host.is_mounted(mount_point)
        if not self.mount_state.mounted:
            # leave the clone attached for inspection
            raise self._abort(
                Stage.MOUNTING,
                "verification failed",
                MountVerificationError(device_path, mount_point),
            )

    def _signal_ready(self) -> None:
        self._enter(Stage.READY)
        event = ReadyEvent(
            clone_identifier=str(self.clone_identifier),
            mount_path=self.config.mount_point,
            environment=self.config.environment,
        )
        EventLogger.log_ready(self.log, event.clone_identifier, event.mount_path)
        try:
            self.trigger.on_ready(event)
        except BackupError as error:
            raise self._abort(Stage.READY, "backup trigger failed", error) from error

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------

    def run(self) -> RunResult:
        """Execute one run.

        Returns a RunResult in ``Done`` or ``Failed``. Exceptions other than
        BackupError (cancellation, bugs) propagate after the source is thawed.
        """
        if self._started:
            raise RuntimeError("Orchestrator instances run once; create a new one")
        self._started = True

        identifier = CloneIdentifier(int(self._clock()), self.config.environment)
        try:
            self._reclaim()
            self._snapshot(identifier)
            self._attach(identifier)
            self._mount()
            self._signal_ready()
        except _RunAborted as aborted:
            failure = aborted.failure
            self.stage = Stage.FAILED
            self.history.append(Stage.FAILED)
            EventLogger.log_run_failed(
                self.log,
                failure.stage.label,
                failure.reason,
                failure.operation,
                failure.detail,
                clone=failure.clone_identifier or "-",
            )
            return self._result(failure)

        self._enter(Stage.DONE)
        return self._result()
