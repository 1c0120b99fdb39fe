"""Logical replication slot checks ahead of major version upgrades."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List

from rdsupgrader.errors import PreconditionError
from rdsupgrader.errors_catalog import actionable_error
from rdsupgrader.models import ReplicationSlot, TargetInstance


class SlotGuardOutcome(Enum):
    NONE_FOUND = "none_found"
    FOUND_REPORT_ONLY = "found_report_only"
    FOUND_AUTO_DROP = "found_auto_drop"


@dataclass(frozen=True)
class SlotGuardResult:
    outcome: SlotGuardOutcome
    slots: List[ReplicationSlot] = field(default_factory=list)

    @property
    def blocks_major_upgrade(self) -> bool:
        return self.outcome is SlotGuardOutcome.FOUND_REPORT_ONLY


class ReplicationSlotGuard:
    """Inspects and optionally drops logical replication slots.

    A major engine upgrade cannot run while logical slots exist. In report
    mode the slots are left alone and the result tells the caller to halt; in
    drop mode every slot is dropped and the count must reach zero.
    """

    def __init__(self, database_service, credential_service, logger, console, secret_tag_key: str):
        self.database_service = database_service
        self.credential_service = credential_service
        self.logger = logger
        self.console = console
        self.secret_tag_key = secret_tag_key

    def _credentials(self, instance: TargetInstance):
        credentials = self.credential_service.resolve(instance)
        if credentials is None:
            raise PreconditionError(
                actionable_error(
                    "credentials_unavailable",
                    instance_id=instance.identifier,
                    secret_tag_key=self.secret_tag_key,
                )
            )
        return credentials

    def check(self, instance: TargetInstance, log_path: str, auto_drop: bool = False) -> SlotGuardResult:
        slots = self.database_service.replication_slots(
            instance,
            self._credentials(instance),
            log_path=log_path,
        )
        self.logger.info("Replication slot count on %s = %s", instance.identifier, len(slots))

        if not slots:
            return SlotGuardResult(SlotGuardOutcome.NONE_FOUND)

        for slot in slots:
            self.logger.warning(
                "Replication slot %s (plugin=%s, type=%s, active=%s)",
                slot.name,
                slot.plugin,
                slot.slot_type,
                slot.active,
            )

        if not auto_drop:
            self.console.print(
                f"[yellow]{len(slots)} replication slot(s) found on {instance.identifier}; "
                "leaving them in place.[/yellow]"
            )
            return SlotGuardResult(SlotGuardOutcome.FOUND_REPORT_ONLY, slots)

        for slot in slots:
            self.logger.info("Dropping replication slot %s", slot.name)
            self.database_service.drop_replication_slot(
                instance,
                self._credentials(instance),
                slot.name,
                log_path=log_path,
            )

        remaining = self.database_service.replication_slots(
            instance,
            self._credentials(instance),
            log_path=log_path,
        )
        self.logger.info("Replication slot count [AFTER DROP] = %s", len(remaining))
        if remaining:
            raise PreconditionError(
                actionable_error(
                    "replication_slots_remaining",
                    count=str(len(remaining)),
                    instance_id=instance.identifier,
                    log_file=log_path,
                )
            )

        self.console.print(f"[green]Dropped {len(slots)} replication slot(s).[/green]")
        return SlotGuardResult(SlotGuardOutcome.FOUND_AUTO_DROP, slots)

    @staticmethod
    def halt_message(instance: TargetInstance, result: SlotGuardResult) -> str:
        return actionable_error(
            "replication_slots_present",
            count=str(len(result.slots)),
            instance_id=instance.identifier,
            slots=", ".join(slot.name for slot in result.slots),
        )
