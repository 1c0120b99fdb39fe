"""Subprocess execution service for the fleet driver."""

import subprocess
from typing import List, Optional

from rdsupgrader.errors import UpgraderError


class CommandRunner:
    """Starts, waits for and stops child processes with consistent error handling."""

    def __init__(self, logger, popen=subprocess.Popen):
        self.logger = logger
        self.popen = popen

    def spawn(self, cmd: List[str], output_path: str):
        """Start ``cmd`` in the background with stdout and stderr sent to ``output_path``."""
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        output = open(output_path, "w", encoding="utf-8")
        try:
            return self.popen(
                cmd,
                stdout=output,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except FileNotFoundError as exc:
            raise UpgraderError(
                f"Required command not found: {cmd[0]}. Please install it and try again."
            ) from exc
        except OSError as exc:
            raise UpgraderError(f"Failed to execute command: {cmd_str}. {exc}") from exc
        finally:
            # the child keeps its own copy of the descriptor
            output.close()

    def wait(self, process, timeout: Optional[float] = None) -> int:
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            raise UpgraderError(f"Process {process.pid} did not finish within {timeout}s.") from exc

    def terminate(self, process, grace_seconds: float = 10.0):
        if process.poll() is not None:
            return

        self.logger.warning("Terminating process %s", process.pid)
        process.terminate()
        try:
            process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self.logger.warning("Process %s ignored SIGTERM; killing it.", process.pid)
            process.kill()
            process.wait()
