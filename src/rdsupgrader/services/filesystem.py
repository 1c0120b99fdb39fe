"""Filesystem helpers for RDS Upgrader."""

import json
import logging
import os
import sys
from typing import Any

from rich.console import Console

from rdsupgrader.constants import DIR_MODE, FILE_MODE
from rdsupgrader.models import RunContext


class FileSystemService:
    """Encapsulates the per-instance log directory and its files."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        if sys.platform == "win32":
            return

        try:
            os.chmod(path, mode)
        except Exception as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def prepare_log_dir(self, logs_dir: str, instance_id: str) -> str:
        path = os.path.join(logs_dir, instance_id)
        os.makedirs(path, exist_ok=True)
        self.set_permissions(path, DIR_MODE)
        return path

    @staticmethod
    def run_file(run_context: RunContext, label: str, suffix: str = ".out") -> str:
        file_name = f"{run_context.instance_id}-{label}-{run_context.timestamp}{suffix}"
        return os.path.join(run_context.log_dir, file_name)

    def write_json(self, path: str, payload: Any):
        with open(path, "w", encoding="utf-8") as file_obj:
            json.dump(payload, file_obj, indent=2, sort_keys=True, default=str)
            file_obj.write("\n")
        self.set_permissions(path, FILE_MODE)
