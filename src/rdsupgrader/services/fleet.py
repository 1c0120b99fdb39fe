"""Concurrent upgrade runs over every tagged PostgreSQL instance."""

import os
import re
import signal
import sys
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from rdsupgrader.constants import SUPPORTED_ENGINE, TIMESTAMP_FORMAT
from rdsupgrader.errors import UpgraderError

SUMMARY_INCLUDE = re.compile(r"INFO|ERROR|IMPORTANT|WARN")
SUMMARY_EXCLUDE = re.compile(r"vacuuming|pages|scanned|analyzing", re.IGNORECASE)

STATUS_SUCCESS = "SUCCESS"
STATUS_FAILED = "FAILED"


class FleetService:
    """Starts one orchestrator process per instance and collects the outcome.

    Children run independently: a failing instance does not stop the others.
    The master log receives a filtered summary of every instance log once all
    children have exited.
    """

    def __init__(
        self,
        rds_api,
        command_runner,
        log_shipping_service,
        logger,
        console,
        logs_dir: str,
        python_executable: str = sys.executable,
        signal_module=signal,
    ):
        self.rds_api = rds_api
        self.command_runner = command_runner
        self.log_shipping_service = log_shipping_service
        self.logger = logger
        self.console = console
        self.logs_dir = logs_dir
        self.python_executable = python_executable
        self.signal_module = signal_module
        self.master_log: Optional[str] = None
        self.processes: Dict[str, object] = {}

    def _log(self, source: str, message: str, log_file: str):
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        with open(log_file, "a", encoding="utf-8") as file_obj:
            file_obj.write(f"[{timestamp}] [{source}] {message}\n")
        self.logger.info("[%s] %s", source, message)

    def _master(self, message: str):
        self._log("MASTER", message, self.master_log)

    def child_command(
        self,
        instance_id: str,
        target_version: str,
        phase: str,
        log_file: str,
        child_options: Sequence[str] = (),
    ) -> List[str]:
        return [
            self.python_executable,
            "-m",
            "rdsupgrader",
            instance_id,
            target_version,
            phase,
            "--logs-dir",
            self.logs_dir,
            "--log-file",
            log_file,
            *child_options,
        ]

    @staticmethod
    def summarize(log_file: str) -> List[str]:
        with open(log_file, "r", encoding="utf-8", errors="replace") as file_obj:
            return [
                line.rstrip("\n")
                for line in file_obj
                if SUMMARY_INCLUDE.search(line) and not SUMMARY_EXCLUDE.search(line)
            ]

    def _handle_signal(self, signum, frame):
        raise KeyboardInterrupt(f"signal {signum}")

    def _install_signal_handlers(self):
        previous = {}
        for signum in (self.signal_module.SIGINT, self.signal_module.SIGTERM):
            previous[signum] = self.signal_module.signal(signum, self._handle_signal)
        return previous

    def _restore_signal_handlers(self, previous):
        for signum, handler in previous.items():
            self.signal_module.signal(signum, handler)

    def _cleanup(self):
        self._master("Cleaning up background processes...")
        for process in self.processes.values():
            self.command_runner.terminate(process, grace_seconds=0)

    def run(
        self,
        tag_key: str,
        tag_value: str,
        target_version: str,
        phase: str,
        child_options: Sequence[str] = (),
        log_bucket: Optional[str] = None,
    ) -> int:
        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        os.makedirs(self.logs_dir, exist_ok=True)
        self.master_log = os.path.join(self.logs_dir, f"{phase}-master-{timestamp}.log")
        self.processes = {}

        instances = self.rds_api.list_instances_by_tag(SUPPORTED_ENGINE, tag_key, tag_value)
        list_file = os.path.join(self.logs_dir, f"{phase}-instance_list.txt")
        with open(list_file, "w", encoding="utf-8") as file_obj:
            file_obj.writelines(f"{instance_id}\n" for instance_id in instances)
        self._master(f"Found instances to upgrade: {' '.join(instances)}")

        if not instances:
            self.console.print(f"[yellow]No PostgreSQL instances tagged {tag_key}={tag_value}.[/yellow]")
            return 0

        instance_logs: Dict[str, str] = {}
        failed: List[str] = []
        previous_handlers = self._install_signal_handlers()
        try:
            for instance_id in instances:
                instance_dir = os.path.join(self.logs_dir, instance_id)
                os.makedirs(instance_dir, exist_ok=True)
                instance_log = os.path.join(instance_dir, f"{phase}-{timestamp}.log")
                instance_logs[instance_id] = instance_log

                self._log(instance_id, "Starting upgrade process", instance_log)
                cmd = self.child_command(instance_id, target_version, phase, instance_log, child_options)
                output_path = os.path.join(instance_dir, f"{phase}-{timestamp}.out")
                try:
                    process = self.command_runner.spawn(cmd, output_path)
                except UpgraderError as exc:
                    self._log(instance_id, f"{phase} failed: {exc}", instance_log)
                    self._write_status(instance_dir, phase, STATUS_FAILED)
                    failed.append(instance_id)
                    continue

                self.processes[instance_id] = process
                self._master(f"Started upgrade process for {instance_id} with PID {process.pid}")

            self._master(f"Upgrade initiated for {len(self.processes)} instances")

            for instance_id, process in self.processes.items():
                return_code = self.command_runner.wait(process)
                instance_dir = os.path.join(self.logs_dir, instance_id)
                if return_code == 0:
                    self._log(instance_id, f"{phase} completed.", instance_logs[instance_id])
                    self._write_status(instance_dir, phase, STATUS_SUCCESS)
                else:
                    self._log(instance_id, f"{phase} failed", instance_logs[instance_id])
                    self._write_status(instance_dir, phase, STATUS_FAILED)
                    failed.append(instance_id)
        except KeyboardInterrupt:
            self.console.print("[bold red]Fleet run interrupted.[/bold red]")
            self._cleanup()
            return 1
        finally:
            self._restore_signal_handlers(previous_handlers)

        for instance_id in instances:
            self._write_summary(instance_id, instance_logs[instance_id])

        if failed:
            self._master(f"ERROR: Some {phase} tasks failed. Failed instances: {' '.join(failed)}")
            exit_code = 1
        else:
            self._master(f"INFO: All {phase} tasks completed.")
            exit_code = 0

        if log_bucket:
            self._ship_logs(log_bucket)

        return exit_code

    def _write_status(self, instance_dir: str, phase: str, status: str):
        with open(os.path.join(instance_dir, f"{phase}-status"), "w", encoding="utf-8") as file_obj:
            file_obj.write(f"{status}\n")

    def _write_summary(self, instance_id: str, instance_log: str):
        if not os.path.exists(instance_log):
            self._master("")
            self._master(f"WARNING: Log file not found for {instance_id}: {instance_log}")
            self._master("")
            return

        self._master("")
        self._master(f"===== Log summary for instance: {instance_id} =====")
        with open(self.master_log, "a", encoding="utf-8") as file_obj:
            for line in self.summarize(instance_log):
                file_obj.write(f"{line}\n")
        self._master(f"===== End of log summary for instance: {instance_id} =====")
        self._master("")

    def _ship_logs(self, log_bucket: str):
        prefix = f"logs/{datetime.now().strftime('%Y-%m-%d')}"
        try:
            self.log_shipping_service.upload_directory(self.logs_dir, log_bucket, prefix=prefix)
        except UpgraderError as exc:
            self.logger.error("Could not upload fleet logs: %s", exc)
