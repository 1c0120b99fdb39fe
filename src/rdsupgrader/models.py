"""Shared domain models for RDS Upgrader."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_INITIAL_DELAY_SECONDS,
    DEFAULT_LOGS_DIR,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_SECRET_TAG_KEY,
)


class RunMode(Enum):
    PRE_UPGRADE = "PREUPGRADE"
    UPGRADE = "UPGRADE"


class UpgradeScope(Enum):
    MINOR = "minor"
    MAJOR = "major"


@dataclass(frozen=True)
class UpgradeRequest:
    """Validated command line input for one orchestration run."""

    instance_id: str
    target_version: str
    mode: RunMode


@dataclass(frozen=True)
class TargetInstance:
    """Snapshot of a DB instance as described by the RDS control plane."""

    identifier: str
    arn: str
    engine: str
    engine_version: str
    status: str
    parameter_group: Optional[str]
    host: Optional[str]
    port: Optional[int]
    db_name: Optional[str]
    master_username: Optional[str]
    master_secret_arn: Optional[str]

    @classmethod
    def from_description(cls, description: Dict[str, Any]) -> "TargetInstance":
        endpoint = description.get("Endpoint") or {}
        parameter_groups = description.get("DBParameterGroups") or []
        master_secret = description.get("MasterUserSecret") or {}
        return cls(
            identifier=description["DBInstanceIdentifier"],
            arn=description.get("DBInstanceArn", ""),
            engine=description.get("Engine", ""),
            engine_version=description.get("EngineVersion", ""),
            status=description.get("DBInstanceStatus", ""),
            parameter_group=(
                parameter_groups[0].get("DBParameterGroupName") if parameter_groups else None
            ),
            host=endpoint.get("Address"),
            port=endpoint.get("Port"),
            db_name=description.get("DBName"),
            master_username=description.get("MasterUsername"),
            master_secret_arn=master_secret.get("SecretArn"),
        )


@dataclass(frozen=True)
class ParameterGroupRef:
    name: str
    family: str


@dataclass(frozen=True)
class ReplicationSlot:
    name: str
    plugin: Optional[str]
    slot_type: str
    active: bool


@dataclass(frozen=True)
class CredentialBundle:
    """Database login resolved from Secrets Manager, kept in memory only."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class RunContext:
    """Runtime identifiers isolated per execution."""

    run_id: str
    timestamp: str
    instance_id: str
    log_dir: str


@dataclass
class UpgradeSettings:
    """Explicit run configuration resolved from CLI options, YAML and environment."""

    region: Optional[str] = None
    profile: Optional[str] = None
    logs_dir: str = DEFAULT_LOGS_DIR
    log_bucket: Optional[str] = None
    notification_topic_arn: Optional[str] = None
    snapshot_enabled: bool = True
    parameter_tuning_enabled: bool = False
    auto_drop_replication_slots: bool = False
    secret_tag_key: str = DEFAULT_SECRET_TAG_KEY
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_wait_attempts: Optional[int] = None
    wait_timeout_minutes: Optional[float] = None
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT
