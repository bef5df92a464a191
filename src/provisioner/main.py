"""Command-line entry point for Virtualizor server provisioning."""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Optional, Sequence

from provisioner import __version__
from provisioner.errors import (
    AlreadyRunningError,
    CommandError,
    ErrorKind,
    ProvisioningError,
    ValidationError,
)
from provisioner.models.config import Config, build_config
from provisioner.models.status import RunResult, RunStatus, StageEnum
from provisioner.services.boot import RESUME_FLAG, BootPersistenceRegistrar
from provisioner.services.diagnostics import collect_snapshot, log_failure_report
from provisioner.services.executor import StageExecutor
from provisioner.services.lock import LockManager
from provisioner.services.process import ProcessManager
from provisioner.services.reboot import RebootOrchestrator
from provisioner.services.resolver import Resolver
from provisioner.services.state_manager import RebootFlag, StateStore
from provisioner.services.validation import SystemValidator
from provisioner.utils.logging import setup_logger
from provisioner.utils.osinfo import detect_os


def parse_stage(value: str) -> StageEnum:
    try:
        return StageEnum(value)
    except ValueError:
        choices = ", ".join(s.value for s in StageEnum)
        raise argparse.ArgumentTypeError(f"unknown stage '{value}' (choose from {choices})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="virtualizor-server-setup",
        description=(
            "Complete Virtualizor server provisioning: updates, reboots and "
            "monitoring agent installation, with progress kept across reboots."
        ),
        epilog="Stages: " + " -> ".join(s.value for s in StageEnum),
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--status", action="store_true", help="Show current setup status")
    mode.add_argument("--cleanup", action="store_true", help="Clean up state files and services")
    mode.add_argument("--test", action="store_true", help="Report the starting stage without making changes")
    mode.add_argument("--validate", action="store_true", help="Comprehensive system validation")
    mode.add_argument("--quick-status", action="store_true", help="Quick status overview")

    parser.add_argument("--stage", type=parse_stage, help="Start from a specific stage")
    parser.add_argument(
        RESUME_FLAG, dest="resume", action="store_true", help="Resume after reboot (used internally)"
    )
    parser.add_argument("--banner-text", help="Custom banner text")
    parser.add_argument("--zabbix-version", help="Zabbix version to install")
    parser.add_argument("--ssh-host", help="SSH tunnel host")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"received signal {signum}")


class Application:
    """Wires services from a Config and runs one CLI mode."""

    def __init__(self, config: Config, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger("provisioner")
        self.process_manager = ProcessManager(config.command_timeout)
        self.lock_manager = LockManager(config.lock_file)
        self.state_store = StateStore(config.state_file)
        self.reboot_flag = RebootFlag(config.reboot_flag_file)
        self.registrar = BootPersistenceRegistrar(config, self.process_manager)
        self.orchestrator = RebootOrchestrator(
            config, self.reboot_flag, self.registrar, self.process_manager
        )
        self.resolver = Resolver(
            self.state_store, self.reboot_flag, self._agent_active, self.registrar
        )
        self.executor = StageExecutor(
            config,
            self.state_store,
            self.reboot_flag,
            self.registrar,
            self.orchestrator,
            process_manager=self.process_manager,
        )

    async def _agent_active(self) -> bool:
        return await self.process_manager.is_active(self.config.agent_service)

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def show_status(self) -> int:
        state = self.state_store.load()
        if state is None:
            print("No active setup found")
        else:
            print(f"Current Stage: {state.current_stage.value}")
            print(f"Execution Start: {state.execution_start:%Y-%m-%d %H:%M:%S}")
            print(f"Stage Entered: {state.stage_entered_at:%Y-%m-%d %H:%M:%S}")
            print(f"Stage Data: {state.stage_data}")
            print(f"Hostname: {state.host_identity}")
            print(f"PID: {state.pid}")
            print(f"State File: {self.state_store.state_file_path}")
            print(f"Log File: {self.config.log_file}")

        flagged = self.reboot_flag.check()
        if flagged is not None:
            print(f"Reboot Flag: {flagged.value}")
        return 0

    def cleanup(self) -> int:
        self.logger.info("Cleaning up state files and services")
        self.state_store.clear()
        self.reboot_flag.clear()
        try:
            asyncio.run(self.registrar.deregister())
        except CommandError as e:
            self.logger.warning(f"Could not remove boot service: {e}")
        self.logger.info("Cleanup completed")
        return 0

    def test(self, stage: Optional[StageEnum], resume: bool) -> int:
        self.logger.info("Running in test mode - no changes will be made")
        resolution = asyncio.run(self.resolver.resolve(stage, resume))
        self.logger.info(
            f"Would start from stage: {resolution.stage.value} (source: {resolution.source.value})"
        )
        if resolution.consume_flag:
            self.logger.info("Would consume the reboot flag")
        if resolution.deregister_boot:
            self.logger.info("Would remove the boot persistence service")

        try:
            os_info = detect_os(self.config.os_release_file)
        except ValidationError as e:
            self.logger.error(str(e))
            return e.exit_code
        self.logger.info(f"OS detection: {os_info.os_id} {os_info.version} ({os_info.family})")
        self.logger.info("Test mode completed")
        return 0

    def validate(self) -> int:
        validator = SystemValidator(self.config, self.state_store, self.process_manager)
        checks = asyncio.run(validator.validate())

        self.logger.info("=== SYSTEM STATUS VALIDATION ===")
        all_good = True
        for check in checks:
            if check.ok:
                self.logger.info(f"OK    {check.name}: {check.detail}")
            elif check.warning:
                self.logger.warning(f"WARN  {check.name}: {check.detail}")
            else:
                self.logger.error(f"FAIL  {check.name}: {check.detail}")
                all_good = False

        self.logger.info("=== OVERALL STATUS ===")
        if all_good:
            self.logger.info("ALL SYSTEMS OPERATIONAL")
            return 0
        self.logger.warning("SOME ISSUES DETECTED - Check logs above")
        self.logger.info("Troubleshooting steps:")
        for step in validator.troubleshooting_steps():
            self.logger.info(f"   {step}")
        return 1

    def quick_status(self) -> int:
        validator = SystemValidator(self.config, self.state_store, self.process_manager)
        for line in asyncio.run(validator.quick_status()):
            print(line)
        return 0

    def provision(self, stage: Optional[StageEnum], resume: bool) -> int:
        """Resolve the starting stage and run the state machine under the lock."""
        try:
            with self.lock_manager.acquire():
                self.logger.info("Starting Virtualizor server setup")
                result = asyncio.run(self._provision(stage, resume))
        except AlreadyRunningError as e:
            return e.exit_code
        except OSError as e:
            self.logger.error(f"Provisioning aborted by a filesystem error: {e}", exc_info=True)
            return ErrorKind.COLLABORATOR.exit_code
        except KeyboardInterrupt as e:
            self._report_interruption(str(e) or "keyboard interrupt")
            return ErrorKind.INTERRUPTED.exit_code

        self._log_result(result)
        return result.exit_code

    async def _provision(self, stage: Optional[StageEnum], resume: bool) -> RunResult:
        resolution = await self.resolver.resolve(stage, resume)
        await self.resolver.apply(resolution)
        return await self.executor.run(resolution.stage, resolution.stage_data)

    def _log_result(self, result: RunResult) -> None:
        if result.status == RunStatus.COMPLETED:
            self.logger.info("Server setup stage completed successfully")
        elif result.status == RunStatus.REBOOT_SCHEDULED:
            self.logger.info("Reboot scheduled. Setup will continue after restart.")
        else:
            self.logger.error(
                f"Setup failed at stage {result.last_stage.value} with exit code {result.exit_code}"
            )

    def _report_interruption(self, reason: str) -> None:
        state = self.state_store.load()
        stage = state.current_stage if state else (self.executor.current_stage or StageEnum.INIT)
        try:
            snapshot = asyncio.run(collect_snapshot(self.process_manager))
        except Exception as e:
            self.logger.warning(f"Could not capture host snapshot: {e}")
            snapshot = None
        log_failure_report(
            self.logger, stage, f"INTERRUPTED: {reason}", ErrorKind.INTERRUPTED, snapshot
        )


def _setup_logging(config: Config, verbose: bool) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    try:
        return setup_logger("provisioner", config.log_file, level=level)
    except OSError as e:
        logger = setup_logger("provisioner", None, level=level)
        logger.warning(f"Cannot write log file {config.log_file} ({e}), logging to console only")
        return logger


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = build_config(
            {
                "banner_text": args.banner_text,
                "zabbix_version": args.zabbix_version,
                "home_server": args.ssh_host,
            }
        )
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return ErrorKind.VALIDATION.exit_code

    logger = _setup_logging(config, args.verbose)
    app = Application(config, logger)

    if args.status:
        return app.show_status()
    if args.quick_status:
        return app.quick_status()
    if args.test:
        return app.test(args.stage, args.resume)
    if args.validate:
        return app.validate()

    if os.geteuid() != 0:
        logger.error("This script must be run as root")
        return ErrorKind.PRIVILEGE.exit_code

    if args.cleanup:
        return app.cleanup()

    signal.signal(signal.SIGTERM, _raise_interrupt)
    signal.signal(signal.SIGHUP, _raise_interrupt)
    logger.info(f"Execution mode: {'RESUME' if args.resume else 'PRODUCTION'}")
    try:
        return app.provision(args.stage, args.resume)
    except ProvisioningError as e:
        logger.error(str(e))
        return e.exit_code


if __name__ == "__main__":
    sys.exit(main())
