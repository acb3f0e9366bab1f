"""Command line entry point: one orchestration run per named environment."""

from __future__ import annotations

import argparse
import json
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from odb_clone_backup.__version__ import __version__
from odb_clone_backup.backup.triggers import BackupTrigger, build_trigger
from odb_clone_backup.config.settings import EnvironmentConfig, load_environments
from odb_clone_backup.domain import RunResult
from odb_clone_backup.exceptions import BackupError, ConfigError
from odb_clone_backup.logging import LoggerFactory, operation_context, setup_logging
from odb_clone_backup.orchestrator.lifecycle import CloneLifecycleOrchestrator

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="odb-clone-backup",
        description="Clone, mount and hand off an Epic ODB environment for backup",
    )
    parser.add_argument("-c", "--config", type=Path, help="Environment configuration file")
    parser.add_argument(
        "-e",
        "--env",
        dest="environments",
        action="append",
        required=True,
        help="Environment to back up (repeat for several, run concurrently)",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument(
        "--json", action="store_true", help="Print the run report as JSON on stdout"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def run_environment(config: EnvironmentConfig, trigger: BackupTrigger) -> RunResult:
    with operation_context("backup", config.environment, mount_point=config.mount_point):
        orchestrator = CloneLifecycleOrchestrator.from_config(config, trigger=trigger)
        return orchestrator.run()


def _format_report(result: RunResult) -> str:
    if result.succeeded:
        return f"{result.environment}: DONE {result.clone_identifier} at {result.mount_point}"
    failure = result.failure
    line = f"{result.environment}: FAILED in {failure.stage.label}: {failure.reason}"
    if failure.operation:
        line += f" [{failure.operation}]"
    if failure.clone_identifier:
        line += f" clone={failure.clone_identifier}"
    if failure.detail:
        line += f"\n    {failure.detail}"
    return line


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    log = LoggerFactory.for_system()

    try:
        environments = load_environments(args.config)
        selected = []
        for name in dict.fromkeys(args.environments):
            if name not in environments:
                raise ConfigError(
                    f"Unknown environment {name!r} (known: {', '.join(sorted(environments))})"
                )
            selected.append(environments[name])
        triggers = [build_trigger(config.trigger) for config in selected]
    except BackupError as error:
        log.error(f"Configuration error: {error}")
        print(f"configuration error: {error}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    with ThreadPoolExecutor(max_workers=len(selected)) as pool:
        results = list(pool.map(run_environment, selected, triggers))

    if args.json:
        print(json.dumps([result.report() for result in results], indent=2))
    else:
        for result in results:
            print(_format_report(result))

    if all(result.succeeded for result in results):
        return EXIT_OK
    return EXIT_RUN_FAILED


if __name__ == "__main__":
    sys.exit(main())
