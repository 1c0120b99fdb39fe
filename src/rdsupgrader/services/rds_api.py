"""Typed wrapper around the boto3 RDS client."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from rdsupgrader.errors import ProviderCallError
from rdsupgrader.models import ParameterGroupRef, TargetInstance


class RdsApiService:
    """Issues RDS control plane calls and converts failures into ProviderCallError."""

    PARAMETER_GROUP_NOT_FOUND = "DBParameterGroupNotFound"

    def __init__(self, client, logger):
        self.client = client
        self.logger = logger

    def _call(self, operation: str, **kwargs) -> Dict[str, Any]:
        self.logger.debug("RDS %s %s", operation, kwargs)
        try:
            return getattr(self.client, operation)(**kwargs)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code", "Unknown")
            message = error.get("Message", str(exc))
            raise ProviderCallError(
                f"RDS call {operation} failed ({code}): {message}",
                operation=operation,
                code=code,
                provider_message=message,
            ) from exc
        except BotoCoreError as exc:
            raise ProviderCallError(
                f"RDS call {operation} failed: {exc}",
                operation=operation,
            ) from exc

    def describe_instance_raw(self, instance_id: str) -> Dict[str, Any]:
        response = self._call("describe_db_instances", DBInstanceIdentifier=instance_id)
        instances = response.get("DBInstances") or []
        if not instances:
            raise ProviderCallError(
                f"DB instance not found: {instance_id}",
                operation="describe_db_instances",
                code="DBInstanceNotFound",
            )
        return instances[0]

    def describe_instance(self, instance_id: str) -> TargetInstance:
        return TargetInstance.from_description(self.describe_instance_raw(instance_id))

    def get_status(self, instance_id: str) -> str:
        return self.describe_instance_raw(instance_id).get("DBInstanceStatus", "")

    def valid_upgrade_targets(self, engine: str, engine_version: str) -> List[str]:
        response = self._call(
            "describe_db_engine_versions",
            Engine=engine,
            EngineVersion=engine_version,
        )
        targets: List[str] = []
        for version_info in response.get("DBEngineVersions", []):
            for upgrade_target in version_info.get("ValidUpgradeTarget", []):
                target = upgrade_target.get("EngineVersion")
                if target and target not in targets:
                    targets.append(target)
        return targets

    def describe_parameter_group(self, name: str) -> Optional[ParameterGroupRef]:
        try:
            response = self._call("describe_db_parameter_groups", DBParameterGroupName=name)
        except ProviderCallError as exc:
            if exc.code == self.PARAMETER_GROUP_NOT_FOUND:
                return None
            raise

        groups = response.get("DBParameterGroups") or []
        if not groups:
            return None
        return ParameterGroupRef(
            name=groups[0]["DBParameterGroupName"],
            family=groups[0].get("DBParameterGroupFamily", ""),
        )

    def create_parameter_group(self, name: str, family: str, description: str) -> ParameterGroupRef:
        response = self._call(
            "create_db_parameter_group",
            DBParameterGroupName=name,
            DBParameterGroupFamily=family,
            Description=description,
            Tags=[{"Key": "Name", "Value": name}],
        )
        group = response.get("DBParameterGroup") or {}
        return ParameterGroupRef(
            name=group.get("DBParameterGroupName", name),
            family=group.get("DBParameterGroupFamily", family),
        )

    def modify_parameter_group(self, name: str, parameters: Sequence[Tuple[str, str, str]]):
        self._call(
            "modify_db_parameter_group",
            DBParameterGroupName=name,
            Parameters=[
                {
                    "ParameterName": parameter_name,
                    "ParameterValue": value,
                    "ApplyMethod": apply_method,
                }
                for parameter_name, value, apply_method in parameters
            ],
        )

    def modify_instance(self, instance_id: str, **kwargs) -> Dict[str, Any]:
        response = self._call("modify_db_instance", DBInstanceIdentifier=instance_id, **kwargs)
        return response.get("DBInstance") or {}

    def create_snapshot(self, instance_id: str, snapshot_id: str) -> Dict[str, Any]:
        response = self._call(
            "create_db_snapshot",
            DBInstanceIdentifier=instance_id,
            DBSnapshotIdentifier=snapshot_id,
        )
        return response.get("DBSnapshot") or {}

    def pending_maintenance_actions(self, arn: str) -> List[Dict[str, Any]]:
        response = self._call("describe_pending_maintenance_actions", ResourceIdentifier=arn)
        actions: List[Dict[str, Any]] = []
        for resource in response.get("PendingMaintenanceActions", []):
            actions.extend(resource.get("PendingMaintenanceActionDetails", []))
        return actions

    def apply_pending_maintenance(self, arn: str, action: str, opt_in_type: str) -> Dict[str, Any]:
        return self._call(
            "apply_pending_maintenance_action",
            ResourceIdentifier=arn,
            ApplyAction=action,
            OptInType=opt_in_type,
        )

    def list_tags(self, arn: str) -> Dict[str, str]:
        response = self._call("list_tags_for_resource", ResourceName=arn)
        return {tag["Key"]: tag.get("Value", "") for tag in response.get("TagList", [])}

    def list_instances_by_tag(self, engine: str, tag_key: str, tag_value: str) -> List[str]:
        try:
            paginator = self.client.get_paginator("describe_db_instances")
            pages = list(paginator.paginate(Filters=[{"Name": "engine", "Values": [engine]}]))
        except ClientError as exc:
            error = exc.response.get("Error", {})
            raise ProviderCallError(
                f"RDS call describe_db_instances failed ({error.get('Code')}): {error.get('Message')}",
                operation="describe_db_instances",
                code=error.get("Code"),
                provider_message=error.get("Message"),
            ) from exc

        identifiers: List[str] = []
        for page in pages:
            for instance in page.get("DBInstances", []):
                tags = instance.get("TagList", [])
                if any(tag.get("Key") == tag_key and tag.get("Value") == tag_value for tag in tags):
                    identifiers.append(instance["DBInstanceIdentifier"])
        return identifiers
