"""Engine version change, snapshots and log export for RDS Upgrader."""

from rdsupgrader.constants import LOG_EXPORT_TYPES
from rdsupgrader.errors import PostConditionError
from rdsupgrader.errors_catalog import actionable_error
from rdsupgrader.models import TargetInstance, UpgradeScope


class UpgradeStepService:
    """Issues the modify calls that change the instance and verifies the result."""

    def __init__(self, rds_api, waiter, filesystem_service, logger, console):
        self.rds_api = rds_api
        self.waiter = waiter
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console

    def backup_configuration(self, instance_id: str, path: str) -> str:
        description = self.rds_api.describe_instance_raw(instance_id)
        self.filesystem_service.write_json(path, {"DBInstances": [description]})
        self.logger.info("Saved current configuration of %s to %s", instance_id, path)
        return path

    @staticmethod
    def snapshot_name(instance_id: str, scope: UpgradeScope, target_version: str, timestamp: str) -> str:
        name = f"{instance_id}-backup-pre-{scope.value}-upgrade-{target_version}-{timestamp}"
        return name.replace(".", "-")

    def create_snapshot(
        self,
        instance: TargetInstance,
        scope: UpgradeScope,
        target_version: str,
        timestamp: str,
    ) -> str:
        snapshot_id = self.snapshot_name(instance.identifier, scope, target_version, timestamp)
        self.console.print(f"[blue]Creating DB snapshot {snapshot_id}...[/blue]")
        self.rds_api.create_snapshot(instance.identifier, snapshot_id)
        self.waiter.wait_until_available(instance.identifier)
        self.logger.info("DB snapshot %s created.", snapshot_id)
        return snapshot_id

    def enable_log_exports(self, instance_id: str) -> bool:
        description = self.rds_api.describe_instance_raw(instance_id)
        enabled = set(description.get("EnabledCloudwatchLogsExports") or [])
        missing = [log_type for log_type in LOG_EXPORT_TYPES if log_type not in enabled]
        if not missing:
            self.logger.info("CloudWatch log exports already enabled for %s.", instance_id)
            return False

        self.logger.info("Enabling CloudWatch log exports %s for %s", missing, instance_id)
        self.rds_api.modify_instance(
            instance_id,
            CloudwatchLogsExportConfiguration={"EnableLogTypes": missing},
            ApplyImmediately=True,
        )
        self.waiter.wait_until_available(instance_id)
        return True

    def execute(self, instance: TargetInstance, parameter_group: str, target_version: str):
        self.console.print(
            f"[bold blue]Upgrading {instance.identifier} from {instance.engine_version} "
            f"to {target_version}...[/bold blue]"
        )
        self.logger.info(
            "modify-db-instance %s parameter-group=%s engine-version=%s "
            "allow-major-version-upgrade apply-immediately",
            instance.identifier,
            parameter_group,
            target_version,
        )
        self.rds_api.modify_instance(
            instance.identifier,
            DBParameterGroupName=parameter_group,
            EngineVersion=target_version,
            AllowMajorVersionUpgrade=True,
            ApplyImmediately=True,
        )
        self.waiter.wait_until_available(instance.identifier)
        self.verify(instance.identifier, target_version)

    def verify(self, instance_id: str, target_version: str) -> TargetInstance:
        refreshed = self.rds_api.describe_instance(instance_id)
        if refreshed.engine_version != target_version:
            raise PostConditionError(
                actionable_error(
                    "version_mismatch",
                    instance_id=instance_id,
                    actual_version=refreshed.engine_version,
                    target_version=target_version,
                )
            )
        self.console.print(f"[green]{instance_id} is now running {target_version}.[/green]")
        return refreshed
