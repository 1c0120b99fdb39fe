"""Pending maintenance handling ahead of the engine version change."""

from rdsupgrader.constants import MAINTENANCE_ACTION, MAINTENANCE_OPT_IN
from rdsupgrader.errors import ProviderCallError
from rdsupgrader.models import TargetInstance


class MaintenanceService:
    """Applies queued system-update actions so restarts are not stacked."""

    BENIGN_MESSAGE_MARKERS = ("no pending", "not pending")

    def __init__(self, rds_api, waiter, logger, console):
        self.rds_api = rds_api
        self.waiter = waiter
        self.logger = logger
        self.console = console

    def is_benign_race(self, exc: ProviderCallError) -> bool:
        message = (exc.provider_message or str(exc)).lower()
        return any(marker in message for marker in self.BENIGN_MESSAGE_MARKERS)

    def apply_pending(self, instance: TargetInstance) -> bool:
        """Apply a pending system-update; return True when an apply call was made."""
        self.logger.info("DB instance ARN = %s", instance.arn)
        actions = self.rds_api.pending_maintenance_actions(instance.arn)
        for action in actions:
            self.logger.info(
                "Pending maintenance: %s (%s)",
                action.get("Action"),
                action.get("Description", ""),
            )

        if not any(action.get("Action") == MAINTENANCE_ACTION for action in actions):
            self.logger.info("No pending %s action for %s.", MAINTENANCE_ACTION, instance.identifier)
            return False

        self.console.print(f"[blue]Applying pending {MAINTENANCE_ACTION} on {instance.identifier}...[/blue]")
        try:
            self.rds_api.apply_pending_maintenance(
                instance.arn,
                action=MAINTENANCE_ACTION,
                opt_in_type=MAINTENANCE_OPT_IN,
            )
        except ProviderCallError as exc:
            if not self.is_benign_race(exc):
                raise
            self.logger.info("No pending %s action to apply: %s", MAINTENANCE_ACTION, exc.provider_message)

        self.waiter.wait_until_available(instance.identifier)
        self.logger.info("Pending maintenance applied for %s.", instance.identifier)
        return True
