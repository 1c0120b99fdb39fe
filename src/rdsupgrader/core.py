import logging
import os
import time
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import boto3
import psycopg
from botocore.exceptions import BotoCoreError
from rich.console import Console

from .constants import TIMESTAMP_FORMAT
from .errors import PreconditionError, ProviderCallError, UpgraderError
from .models import (
    RunContext,
    RunMode,
    TargetInstance,
    UpgradeRequest,
    UpgradeScope,
    UpgradeSettings,
)
from .services.credentials import CredentialService
from .services.database import DatabaseService, MaintenanceCommand
from .services.filesystem import FileSystemService
from .services.log_shipping import LogShippingService
from .services.maintenance import MaintenanceService
from .services.manifest import ManifestService
from .services.notification import NotificationService
from .services.parameter_group import ParameterGroupService
from .services.rds_api import RdsApiService
from .services.refresh import PostUpgradeRefresher
from .services.replication import ReplicationSlotGuard
from .services.upgrade_step import UpgradeStepService
from .services.validation import ValidationService
from .services.versioning import VersionClassifier
from .services.waiter import InstanceWaiter

console = Console()
logger = logging.getLogger("rdsupgrader")

RUN_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def build_session(settings: UpgradeSettings):
    return boto3.Session(profile_name=settings.profile, region_name=settings.region)


class RdsUpgrader:
    NOTIFICATION_SUBJECTS = {
        RunMode.PRE_UPGRADE: "RDS PostgreSQL DB Pre-Upgrade Tasks",
        RunMode.UPGRADE: "RDS PostgreSQL DB Upgrade",
    }

    def __init__(
        self,
        request: UpgradeRequest,
        settings: Optional[UpgradeSettings] = None,
        session=None,
        connect=psycopg.connect,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.request = request
        self.settings = settings or UpgradeSettings()
        self.session = session if session is not None else build_session(self.settings)

        self.run_context = self._build_run_context()
        self.manifest_file = os.path.join(
            self.run_context.log_dir,
            f"{request.instance_id}-run-manifest-{self.run_context.timestamp}.json",
        )
        self.run_log_file = os.path.join(
            self.run_context.log_dir,
            f"{request.instance_id}-{request.mode.value.lower()}-{self.run_context.timestamp}.log",
        )
        self.manifest_service = ManifestService(manifest_file=self.manifest_file, logger=logger)
        self.current_step_name: Optional[str] = None
        self._previous_log_level: Optional[int] = None

        self.rds_api = RdsApiService(self._client("rds"), logger=logger)
        self.filesystem_service = FileSystemService(logger=logger, console=console)
        self.version_classifier = VersionClassifier(logger=logger)
        self.validation_service = ValidationService(self.version_classifier)
        self.waiter = InstanceWaiter(
            self.rds_api,
            logger=logger,
            console=console,
            initial_delay=self.settings.initial_delay_seconds,
            poll_interval=self.settings.poll_interval_seconds,
            max_attempts=self.settings.max_wait_attempts,
            timeout_seconds=(
                self.settings.wait_timeout_minutes * 60
                if self.settings.wait_timeout_minutes is not None
                else None
            ),
            sleep=sleep,
            clock=clock,
        )
        self.parameter_group_service = ParameterGroupService(
            self.rds_api,
            logger=logger,
            console=console,
            tuning_enabled=self.settings.parameter_tuning_enabled,
        )
        self.credential_service = CredentialService(
            self.rds_api,
            self._client("secretsmanager"),
            logger=logger,
            secret_tag_key=self.settings.secret_tag_key,
        )
        self.database_service = DatabaseService(
            logger=logger,
            console=console,
            connect=connect,
            connect_timeout=self.settings.connect_timeout,
        )
        self.slot_guard = ReplicationSlotGuard(
            self.database_service,
            self.credential_service,
            logger=logger,
            console=console,
            secret_tag_key=self.settings.secret_tag_key,
        )
        self.maintenance_service = MaintenanceService(self.rds_api, self.waiter, logger=logger, console=console)
        self.upgrade_step_service = UpgradeStepService(
            self.rds_api,
            self.waiter,
            self.filesystem_service,
            logger=logger,
            console=console,
        )
        self.refresher = PostUpgradeRefresher(
            self.database_service,
            self.credential_service,
            logger=logger,
            console=console,
        )
        self.log_shipping_service = (
            LogShippingService(self._client("s3"), logger=logger) if self.settings.log_bucket else None
        )
        self.notification_service = (
            NotificationService(self._client("sns"), logger=logger)
            if self.settings.notification_topic_arn
            else None
        )

    def _client(self, service_name: str):
        try:
            return self.session.client(service_name)
        except BotoCoreError as exc:
            raise ProviderCallError(
                f"Could not create the {service_name} client: {exc}",
                operation="client",
            ) from exc

    def _build_run_context(self) -> RunContext:
        return RunContext(
            run_id=uuid.uuid4().hex[:10],
            timestamp=datetime.now().strftime(TIMESTAMP_FORMAT),
            instance_id=self.request.instance_id,
            log_dir=os.path.join(self.settings.logs_dir, self.request.instance_id),
        )

    def _build_manifest_metadata(self) -> Dict[str, Any]:
        return {
            "instance_id": self.request.instance_id,
            "target_version": self.request.target_version,
            "phase": self.request.mode.value,
            "snapshot_enabled": self.settings.snapshot_enabled,
            "parameter_tuning_enabled": self.settings.parameter_tuning_enabled,
            "auto_drop_replication_slots": self.settings.auto_drop_replication_slots,
            "log_bucket": self.settings.log_bucket,
            "notification_topic_arn": self.settings.notification_topic_arn,
        }

    def _run_step(self, name: str, callback, *args, **kwargs):
        self.manifest_service.step_started(name)
        self.current_step_name = name

        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            self.manifest_service.step_finished(name, "failed", error=str(exc))
            raise

        self.manifest_service.step_finished(name, "success")
        self.current_step_name = None
        return result

    def _run_file(self, label: str, suffix: str = ".out") -> str:
        return self.filesystem_service.run_file(self.run_context, label, suffix)

    def _attach_run_log(self) -> logging.Handler:
        # Library use without logging configured leaves the logger at WARNING.
        if logger.getEffectiveLevel() > logging.INFO:
            self._previous_log_level = logger.level
            logger.setLevel(logging.INFO)

        handler = logging.FileHandler(self.run_log_file)
        handler.setLevel(logging.DEBUG if logger.isEnabledFor(logging.DEBUG) else logging.INFO)
        handler.setFormatter(logging.Formatter(RUN_LOG_FORMAT))
        logger.addHandler(handler)
        return handler

    def _detach_run_log(self, handler: logging.Handler):
        logger.removeHandler(handler)
        handler.close()
        if self._previous_log_level is not None:
            logger.setLevel(self._previous_log_level)
            self._previous_log_level = None

    def check_instance(self) -> TargetInstance:
        instance = self.rds_api.describe_instance(self.request.instance_id)
        logger.info(
            "DB instance %s: engine=%s version=%s status=%s parameter group=%s",
            instance.identifier,
            instance.engine,
            instance.engine_version,
            instance.status,
            instance.parameter_group,
        )
        self.validation_service.ensure_ready(instance)
        self.manifest_service.set_versions(
            current=instance.engine_version,
            target=self.request.target_version,
        )
        return instance

    def classify_scope(self, instance: TargetInstance) -> Optional[UpgradeScope]:
        scope = self.version_classifier.classify(instance.engine_version, self.request.target_version)
        if scope is None:
            return None

        valid_targets = self.rds_api.valid_upgrade_targets(instance.engine, instance.engine_version)
        self.version_classifier.validate_target(
            instance.engine,
            instance.engine_version,
            self.request.target_version,
            valid_targets,
        )
        self.manifest_service.set_scope(scope.value)
        console.print(f"[bold blue]Upgrade scope: {scope.value.upper()}[/bold blue]")
        logger.info("UPGRADE_SCOPE = %s", scope.value)
        return scope

    def _target_family(self) -> int:
        return self.version_classifier.family(self.request.target_version)

    def create_snapshot(self, instance: TargetInstance, scope: UpgradeScope) -> Optional[str]:
        if not self.settings.snapshot_enabled:
            logger.info("DB snapshot disabled; skipping.")
            return None

        snapshot_id = self.upgrade_step_service.create_snapshot(
            instance,
            scope,
            self.request.target_version,
            self.run_context.timestamp,
        )
        self.manifest_service.add_artifact("snapshot", snapshot_id)
        return snapshot_id

    def inspect_replication_slots(self, instance: TargetInstance, auto_drop: bool):
        log_path = self._run_file("db-repl_slot")
        self.manifest_service.add_artifact("replication_slot_log", log_path)
        return self.slot_guard.check(instance, log_path, auto_drop=auto_drop)

    def run_pre_upgrade(self, instance: TargetInstance, scope: UpgradeScope):
        if scope is UpgradeScope.MAJOR:
            self._run_step(
                "ensure_parameter_group",
                self.parameter_group_service.ensure,
                instance,
                self._target_family(),
            )
            result = self._run_step(
                "inspect_replication_slots",
                self.inspect_replication_slots,
                instance,
                False,
            )
            if result.slots:
                logger.warning(self.slot_guard.halt_message(instance, result))

        freeze_log = self._run_file("vacuum-freeze")
        if self._run_step(
            "vacuum_freeze",
            self.refresher.run_command,
            instance,
            MaintenanceCommand.FREEZE,
            freeze_log,
        ):
            self.manifest_service.add_artifact("vacuum_freeze_log", freeze_log)
        self._run_step("create_snapshot", self.create_snapshot, instance, scope)

    def run_upgrade(self, instance: TargetInstance, scope: UpgradeScope):
        parameter_group = instance.parameter_group

        if scope is UpgradeScope.MINOR:
            logger.info("Reusing current DB parameter group %s.", parameter_group)
            self._run_step("create_snapshot", self.create_snapshot, instance, scope)
        else:
            group = self._run_step(
                "ensure_parameter_group",
                self.parameter_group_service.ensure,
                instance,
                self._target_family(),
            )
            parameter_group = group.name
            result = self._run_step(
                "guard_replication_slots",
                self.inspect_replication_slots,
                instance,
                self.settings.auto_drop_replication_slots,
            )
            if result.blocks_major_upgrade:
                raise PreconditionError(self.slot_guard.halt_message(instance, result))

        self._run_step("enable_log_exports", self.upgrade_step_service.enable_log_exports, instance.identifier)
        self._run_step("apply_pending_maintenance", self.maintenance_service.apply_pending, instance)

        config_backup = self._run_file(
            f"{instance.engine}{self.version_classifier.family(instance.engine_version)}",
            suffix=".txt",
        )
        self._run_step(
            "backup_configuration",
            self.upgrade_step_service.backup_configuration,
            instance.identifier,
            config_backup,
        )
        self.manifest_service.add_artifact("configuration_backup", config_backup)

        self._run_step(
            "execute_upgrade",
            self.upgrade_step_service.execute,
            instance,
            parameter_group,
            self.request.target_version,
        )
        self.manifest_service.set_versions(
            current=instance.engine_version,
            target=self.request.target_version,
            final=self.request.target_version,
        )

        extension_log = self._run_file("extension-update")
        if self._run_step("refresh_extensions", self.refresher.refresh_extensions, instance, extension_log):
            self.manifest_service.add_artifact("extension_update_log", extension_log)

        analyze_log = self._run_file("db-analyze")
        if self._run_step("analyze", self.refresher.rebuild_statistics, instance, analyze_log):
            self.manifest_service.add_artifact("analyze_log", analyze_log)

        unfreeze_log = self._run_file("vacuum-unfreeze")
        if self._run_step(
            "vacuum_unfreeze",
            self.refresher.run_command,
            instance,
            MaintenanceCommand.UNFREEZE,
            unfreeze_log,
        ):
            self.manifest_service.add_artifact("vacuum_unfreeze_log", unfreeze_log)

    def run(self) -> int:
        exit_code = 1
        manifest_status = "failed"
        manifest_error: Optional[str] = None
        error_kind: Optional[str] = None
        outcome = "Failed"
        run_handler: Optional[logging.Handler] = None

        try:
            self.filesystem_service.prepare_log_dir(self.settings.logs_dir, self.request.instance_id)
            run_handler = self._attach_run_log()
            logger.info(
                "BEGIN - %s [%s] target %s",
                self.NOTIFICATION_SUBJECTS[self.request.mode],
                self.request.instance_id,
                self.request.target_version,
            )
            self.manifest_service.start_run(
                run_id=self.run_context.run_id,
                metadata=self._build_manifest_metadata(),
            )
            self.manifest_service.add_artifact("run_log", self.run_log_file)

            instance = self._run_step("check_instance_available", self.check_instance)
            scope = self._run_step("classify_scope", self.classify_scope, instance)

            if scope is None:
                console.print("[green]No upgrade required.[/green]")
                manifest_status = "noop"
                outcome = "No-op"
                exit_code = 0
                return exit_code

            if self.request.mode is RunMode.PRE_UPGRADE:
                self.run_pre_upgrade(instance, scope)
            else:
                self.run_upgrade(instance, scope)

            console.print(f"[bold green]{self.request.mode.value} finished for {instance.identifier}.[/bold green]")
            manifest_status = "success"
            outcome = "Completed"
            exit_code = 0
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            manifest_status = "aborted"
            manifest_error = "Operation cancelled by user."
            error_kind = "aborted"
            exit_code = 1
            return exit_code
        except UpgraderError as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error("ERROR: %s", exc)
            manifest_status = "failed"
            manifest_error = str(exc)
            error_kind = exc.kind
            exit_code = 1
            return exit_code
        except Exception as exc:
            console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            manifest_status = "failed"
            manifest_error = str(exc)
            error_kind = "unexpected"
            exit_code = 1
            return exit_code
        finally:
            self.finalize(manifest_status, manifest_error, error_kind, outcome, run_handler)

    def finalize(
        self,
        status: str,
        error: Optional[str],
        error_kind: Optional[str],
        outcome: str,
        run_handler: Optional[logging.Handler] = None,
    ):
        """Write the manifest, close the run log, ship logs and notify.

        Nothing here may change the exit code of the run.
        """
        self.manifest_service.finalize(status, error=error, error_kind=error_kind)
        logger.info(
            "END - %s [%s] - %s",
            self.NOTIFICATION_SUBJECTS[self.request.mode],
            self.request.instance_id,
            outcome,
        )

        if run_handler is not None:
            self._detach_run_log(run_handler)

        log_location = self.run_context.log_dir
        if self.log_shipping_service is not None:
            try:
                log_location = self.log_shipping_service.upload_directory(
                    self.run_context.log_dir,
                    self.settings.log_bucket,
                    prefix=self.request.instance_id,
                )
            except (UpgraderError, OSError) as exc:
                logger.error("Could not copy logs to S3: %s", exc)

        if self.notification_service is not None:
            subject = f"{self.NOTIFICATION_SUBJECTS[self.request.mode]} [{self.request.instance_id}] - {outcome}"
            try:
                self.notification_service.publish(
                    self.settings.notification_topic_arn,
                    subject,
                    self._notification_message(outcome, error, log_location),
                )
            except UpgraderError as exc:
                logger.error("Could not send notification: %s", exc)

    def _notification_message(self, outcome: str, error: Optional[str], log_location: str) -> str:
        manifest = self.manifest_service.manifest
        lines = [
            f"DB instance: {self.request.instance_id}",
            f"Phase: {self.request.mode.value}",
            f"Target version: {self.request.target_version}",
            f"Current version: {manifest['versions']['current'] or '<unknown>'}",
            f"Scope: {manifest['scope'] or '<none>'}",
            f"Outcome: {outcome}",
            f"Run id: {self.run_context.run_id}",
            f"Logs: {log_location}",
        ]
        if error:
            lines.append(f"Error: {error}")
        return "\n".join(lines)
