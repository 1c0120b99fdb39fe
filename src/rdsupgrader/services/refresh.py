"""Extension and statistics refresh after the engine version change."""

from rdsupgrader.models import TargetInstance
from rdsupgrader.services.database import MaintenanceCommand


class PostUpgradeRefresher:
    """Runs credential-dependent database maintenance.

    Missing credentials only produce a warning here: skipping ANALYZE or a
    vacuum leaves the instance usable, unlike the replication slot check.
    """

    def __init__(self, database_service, credential_service, logger, console):
        self.database_service = database_service
        self.credential_service = credential_service
        self.logger = logger
        self.console = console

    def run_command(self, instance: TargetInstance, command: MaintenanceCommand, log_path: str) -> bool:
        credentials = self.credential_service.resolve(instance)
        if credentials is None:
            self.logger.warning("DB credentials NOT found. %s will NOT run.", command.value)
            return False

        self.database_service.run_maintenance(instance, credentials, command, log_path)
        return True

    def refresh_extensions(self, instance: TargetInstance, log_path: str) -> bool:
        credentials = self.credential_service.resolve(instance)
        if credentials is None:
            self.logger.warning("DB credentials NOT found. Extensions will NOT be updated.")
            return False

        self.console.print(f"[blue]Updating extensions on {instance.identifier}...[/blue]")
        self.database_service.update_extensions(instance, credentials, log_path)
        self.logger.info("Extension update finished; output in %s", log_path)
        return True

    def rebuild_statistics(self, instance: TargetInstance, log_path: str) -> bool:
        return self.run_command(instance, MaintenanceCommand.ANALYZE, log_path)
