"""Polling wait for RDS instance state transitions."""

import time
from datetime import datetime, timezone
from typing import Callable, Optional

from rdsupgrader.constants import (
    AVAILABLE_STATUS,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    TERMINAL_FAILURE_STATUSES,
)
from rdsupgrader.errors import ProviderCallError, WaitTimeoutError
from rdsupgrader.errors_catalog import actionable_error


class InstanceWaiter:
    """Blocks until a DB instance reports the 'available' status.

    The first poll happens after ``initial_delay`` so the modification that was
    just requested has time to move the instance out of 'available'. Without
    ``max_attempts`` or ``timeout_seconds`` the wait is unbounded.
    """

    def __init__(
        self,
        rds_api,
        logger,
        console,
        initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_attempts: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.rds_api = rds_api
        self.logger = logger
        self.console = console
        self.initial_delay = initial_delay
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self.clock = clock

    def wait_until_available(self, instance_id: str) -> int:
        """Wait for the instance and return the number of status polls issued."""
        started = self.clock()
        self.console.print(f"[yellow]Waiting for {instance_id} to become available...[/yellow]")
        self.sleep(self.initial_delay)

        polls = 0
        while True:
            status = self.rds_api.get_status(instance_id)
            polls += 1
            self.logger.info(
                "Wait-DBInstance %s status = %s - %s",
                instance_id,
                status,
                datetime.now(timezone.utc).isoformat(timespec="seconds"),
            )

            if status == AVAILABLE_STATUS:
                self.console.print(f"[green]{instance_id} is available.[/green]")
                return polls

            if status in TERMINAL_FAILURE_STATUSES:
                raise ProviderCallError(
                    f"DB instance {instance_id} entered terminal status '{status}'.",
                    operation="describe_db_instances",
                    code=status,
                )

            self._check_bounds(instance_id, polls, started)
            self.sleep(self.poll_interval)

    def _check_bounds(self, instance_id: str, polls: int, started: float):
        if self.max_attempts is not None and polls >= self.max_attempts:
            raise WaitTimeoutError(
                actionable_error(
                    "wait_timeout",
                    instance_id=instance_id,
                    elapsed=f"{polls} status checks",
                ),
                operation="describe_db_instances",
            )

        if self.timeout_seconds is not None:
            elapsed = self.clock() - started
            if elapsed >= self.timeout_seconds:
                raise WaitTimeoutError(
                    actionable_error(
                        "wait_timeout",
                        instance_id=instance_id,
                        elapsed=f"{elapsed:.0f}s",
                    ),
                    operation="describe_db_instances",
                )
