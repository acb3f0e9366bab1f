from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ODB_CLONE_BACKUP_LOG_DIR",
        Path.home() / ".local" / "state" / "odb-clone-backup" / "logs",
    )
)


def _should_log_command_output(record) -> bool:
    """Keep raw command stdout/stderr dumps out of the console unless tracing."""
    tags = record["extra"].get("tags", [])
    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no or (
            record["level"].no >= logger.level("WARNING").no
        )
    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL: Thaw escalation (source database left frozen), page-worthy
    - ERROR/WARNING: Failed stages, retried remote calls
    - SUCCESS/INFO: Stage transitions, clone names, ready events
    - DEBUG: Command lines, parsed control-plane state
    - TRACE: Raw command output

    Log Files:
    - operations.log: INFO+ events (14 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for alerting pipelines (14 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/odb-clone-backup/logs)
    """
    logger.remove()
    logger.configure(
        extra={"job_id": "-", "tags": [], "source": "APP", "environment": "-"}
    )

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <13}</cyan> | "
            "<magenta>{extra[environment]: <5}</magenta> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Operations Log (INFO+)
    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="14 days",
        compression="zip",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <13} | "
            "{extra[environment]: <5} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log (DEBUG+ when debug=True)
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            enqueue=True,
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <13} | "
                "{extra[environment]: <5} | "
                "{extra[job_id]: <20} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="14 days",
        compression="zip",
        enqueue=True,
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
    environment: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Run identifier for tracking one orchestration
        tags: Tags for filtering (e.g., ["clone", "storage"])
        source: Source component (e.g., "orchestrator", "acli", "guest")
        environment: Database environment tag (e.g., "prd")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    if environment is not None:
        extras["environment"] = environment
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, environment: str, **details):
    """
    Context manager for tracking an orchestration run with automatic timing.

    Logs start, completion and failure with duration. Every log emitted
    inside the block carries the same job_id and environment.

    Example:
        with operation_context("backup", "prd", mount_point="/mnt/prd") as log:
            log.debug("Reclaiming expired clones")
    """
    job_id = f"{operation}-{environment}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, environment=environment):
        start_time = time.time()
        log = logger.bind(
            source=operation, job_id=job_id, environment=environment, tags=[operation]
        )
        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.info(
                f"{operation.capitalize()} finished", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} aborted",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating component loggers with automatic context.
    """

    @staticmethod
    def for_orchestrator(environment: str, job_id: str | None = None) -> Logger:
        """Logger for clone-lifecycle runs."""
        if job_id is None:
            job_id = f"backup-{environment}-{uuid.uuid4().hex[:8]}"
        return logger.bind(
            job_id=job_id,
            source="orchestrator",
            environment=environment,
            tags=["orchestrator", "lifecycle"],
        )

    @staticmethod
    def for_control_plane() -> Logger:
        """Logger for acli calls against the storage control plane."""
        return logger.bind(source="acli", tags=["control-plane", "storage"])

    @staticmethod
    def for_guest(environment: str) -> Logger:
        """Logger for freeze/thaw on the database host."""
        return logger.bind(source="guest", environment=environment, tags=["guest"])

    @staticmethod
    def for_mount() -> Logger:
        """Logger for LVM discovery and mount operations on this host."""
        return logger.bind(source="mount", tags=["mount", "lvm"])

    @staticmethod
    def for_trigger(environment: str | None = None) -> Logger:
        """Logger for downstream backup triggers."""
        return logger.bind(
            source="trigger", environment=environment or "-", tags=["trigger"]
        )

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, config)."""
        return logger.bind(source="system", tags=["system"])


class EventLogger:
    """
    Structured event logger using standardized schemas.

    Every event carries an ``event_type`` field so the structured log can be
    filtered by alerting tooling.
    """

    @staticmethod
    def log_stage_entered(log: Logger, stage: str, **extra) -> None:
        """Log a state-machine transition."""
        log.info(f"Entering {stage}", event_type="stage_entered", stage=stage, **extra)

    @staticmethod
    def log_retry(
        log: Logger, operation: str, attempt: int, attempts: int, delay: float, error: str
    ) -> None:
        """Log a retried remote call."""
        log.warning(
            f"{operation} failed (attempt {attempt}/{attempts}), retrying in {delay:g}s",
            event_type="remote_retry",
            operation=operation,
            attempt=attempt,
            error=error,
        )

    @staticmethod
    def log_thaw_escalation(log: Logger, environment: str, attempts: int, error: str) -> None:
        """Log the page-worthy case: source database left frozen."""
        log.critical(
            f"THAW FAILED for {environment} after {attempts} attempts, "
            "source database is still frozen",
            event_type="thaw_escalation",
            attempts=attempts,
            error=error,
        )

    @staticmethod
    def log_run_failed(
        log: Logger, stage: str, reason: str, operation: str | None, detail: str, **extra
    ) -> None:
        """Log a run ending in Failed(stage, reason)."""
        log.error(
            f"Run failed in {stage}: {reason}",
            event_type="run_failed",
            stage=stage,
            reason=reason,
            operation=operation,
            detail=detail,
            **extra,
        )

    @staticmethod
    def log_ready(log: Logger, clone_identifier: str, mount_path: str) -> None:
        """Log the ready event handed to the backup trigger."""
        log.success(
            f"Backup file system {mount_path} is ready ({clone_identifier})",
            event_type="clone_ready",
            clone_identifier=clone_identifier,
            mount_path=mount_path,
        )
