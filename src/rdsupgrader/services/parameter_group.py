"""DB parameter group lifecycle for major version upgrades."""

from typing import List, Sequence, Tuple

from rdsupgrader.constants import (
    PARAMETER_BATCH_LIMIT,
    REPLICATION_TIMEOUT_PARAMETERS,
    SECURITY_LOGGING_PARAMETERS,
)
from rdsupgrader.models import ParameterGroupRef, TargetInstance

Parameter = Tuple[str, str, str]


class ParameterGroupService:
    """Ensures a parameter group bound to the target engine family exists."""

    def __init__(self, rds_api, logger, console, tuning_enabled: bool = False):
        self.rds_api = rds_api
        self.logger = logger
        self.console = console
        self.tuning_enabled = tuning_enabled

    @staticmethod
    def group_name(engine: str, family: int, instance_id: str) -> str:
        return f"rds-param-group-{engine}{family}-{instance_id}"

    @staticmethod
    def group_family(engine: str, family: int) -> str:
        return f"{engine}{family}"

    def ensure(self, instance: TargetInstance, target_family: int) -> ParameterGroupRef:
        name = self.group_name(instance.engine, target_family, instance.identifier)
        family = self.group_family(instance.engine, target_family)
        self.logger.info("DB parameter group for the upgrade: %s", name)
        self.logger.info("Current DB parameter group: %s", instance.parameter_group)

        existing = self.rds_api.describe_parameter_group(name)
        if existing is not None:
            self.logger.info("DB parameter group %s exists already; reusing it.", name)
            return existing

        self.console.print(f"[blue]Creating DB parameter group {name} ({family})...[/blue]")
        created = self.rds_api.create_parameter_group(
            name=name,
            family=family,
            description=f"{family} DB parameter group for {instance.identifier} database",
        )
        self.logger.info("Created DB parameter group %s", created.name)

        if self.tuning_enabled:
            self.apply_tuning(created.name)

        return created

    def apply_tuning(self, name: str):
        self.logger.info("Applying security and logging parameters to %s", name)
        self.apply_parameters(name, SECURITY_LOGGING_PARAMETERS)
        self.logger.info("Applying replication and timeout parameters to %s", name)
        self.apply_parameters(name, REPLICATION_TIMEOUT_PARAMETERS)

    def apply_parameters(self, name: str, parameters: Sequence[Parameter]):
        for batch in self.batches(parameters):
            self.rds_api.modify_parameter_group(name, batch)
            self.logger.info("Updated %s parameter(s) in %s", len(batch), name)

    @staticmethod
    def batches(parameters: Sequence[Parameter]) -> List[List[Parameter]]:
        items = list(parameters)
        return [
            items[index:index + PARAMETER_BATCH_LIMIT]
            for index in range(0, len(items), PARAMETER_BATCH_LIMIT)
        ]
