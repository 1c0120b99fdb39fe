"""Input and precondition validation helpers for RDS Upgrader."""

from typing import Sequence

from rdsupgrader.constants import AVAILABLE_STATUS, SUPPORTED_ENGINE
from rdsupgrader.errors import PreconditionError, UsageError
from rdsupgrader.errors_catalog import actionable_error
from rdsupgrader.models import RunMode, TargetInstance, UpgradeRequest


class ValidationService:
    """Validates command line arguments and the starting state of the instance."""

    EXPECTED_ARGUMENTS = 3

    def __init__(self, version_classifier):
        self.version_classifier = version_classifier

    def build_request(self, arguments: Sequence[str]) -> UpgradeRequest:
        if len(arguments) != self.EXPECTED_ARGUMENTS:
            raise UsageError(
                actionable_error(
                    "usage",
                    detail=f"Incorrect syntax; three parameters expected, got {len(arguments)}.",
                )
            )

        instance_id, target_version, phase = (value.strip() for value in arguments)
        if not instance_id:
            raise UsageError(actionable_error("usage", detail="The DB instance identifier is empty."))

        if not self.version_classifier.is_valid(target_version):
            raise UsageError(
                actionable_error(
                    "usage",
                    detail=f"Invalid target version '{target_version}'; expected a dotted number such as 15.6.",
                )
            )

        try:
            mode = RunMode(phase.upper())
        except ValueError as exc:
            raise UsageError(
                actionable_error(
                    "usage",
                    detail=f"Invalid 3rd parameter '{phase}'. Expected value PREUPGRADE|UPGRADE.",
                )
            ) from exc

        return UpgradeRequest(instance_id=instance_id, target_version=target_version, mode=mode)

    def ensure_ready(self, instance: TargetInstance):
        if instance.status != AVAILABLE_STATUS:
            raise PreconditionError(
                actionable_error(
                    "instance_not_available",
                    instance_id=instance.identifier,
                    status=instance.status or "<unknown>",
                )
            )

        if instance.engine != SUPPORTED_ENGINE:
            raise PreconditionError(
                actionable_error(
                    "engine_not_supported",
                    instance_id=instance.identifier,
                    engine=instance.engine or "<unknown>",
                )
            )

        if not self.version_classifier.is_valid(instance.engine_version):
            raise PreconditionError(
                f"Cannot parse the engine version '{instance.engine_version}' of {instance.identifier}."
            )
