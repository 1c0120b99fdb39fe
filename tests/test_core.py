import json
import logging

import pytest
from botocore.exceptions import ClientError

from rdsupgrader.core import RdsUpgrader
from rdsupgrader.models import RunMode, UpgradeRequest, UpgradeSettings
from rdsupgrader.services.database import EXTENSION_UPDATE_SQL, REPLICATION_SLOTS_SQL

MUTATING_CALLS = {
    "create_db_parameter_group",
    "modify_db_parameter_group",
    "modify_db_instance",
    "create_db_snapshot",
    "apply_pending_maintenance_action",
}


class FakeRdsClient:
    def __init__(
        self,
        version="14.12",
        status="available",
        valid_targets=("14.13", "14.15", "16.3"),
        pending_actions=(),
        apply_version=True,
        existing_groups=(),
        fail_calls=None,
    ):
        self.instance = {
            "DBInstanceIdentifier": "db-1",
            "DBInstanceArn": "arn:aws:rds:us-east-1:123456789012:db:db-1",
            "Engine": "postgres",
            "EngineVersion": version,
            "DBInstanceStatus": status,
            "DBParameterGroups": [{"DBParameterGroupName": "default.postgres14"}],
            "Endpoint": {"Address": "db-1.example", "Port": 5432},
            "DBName": "app",
            "MasterUsername": "admin",
            "EnabledCloudwatchLogsExports": [],
        }
        self.valid_targets = list(valid_targets)
        self.pending_actions = list(pending_actions)
        self.apply_version = apply_version
        self.parameter_groups = {name: "postgres16" for name in existing_groups}
        self.fail_calls = dict(fail_calls or {})
        self.calls = []

    @property
    def mutating_calls(self):
        return [name for name, _kwargs in self.calls if name in MUTATING_CALLS]

    def kwargs_for(self, name):
        return [kwargs for call_name, kwargs in self.calls if call_name == name]

    def _fail_if_requested(self, name):
        if self.fail_calls.get(name) == len(self.kwargs_for(name)):
            raise ClientError(
                {"Error": {"Code": "InvalidParameterValue", "Message": f"{name} rejected"}},
                name,
            )

    def describe_db_instances(self, **kwargs):
        self.calls.append(("describe_db_instances", kwargs))
        return {"DBInstances": [dict(self.instance)]}

    def describe_db_engine_versions(self, **kwargs):
        self.calls.append(("describe_db_engine_versions", kwargs))
        return {
            "DBEngineVersions": [
                {"ValidUpgradeTarget": [{"EngineVersion": target} for target in self.valid_targets]}
            ]
        }

    def describe_db_parameter_groups(self, **kwargs):
        self.calls.append(("describe_db_parameter_groups", kwargs))
        name = kwargs["DBParameterGroupName"]
        if name not in self.parameter_groups:
            raise ClientError(
                {"Error": {"Code": "DBParameterGroupNotFound", "Message": "not found"}},
                "DescribeDBParameterGroups",
            )
        return {
            "DBParameterGroups": [
                {"DBParameterGroupName": name, "DBParameterGroupFamily": self.parameter_groups[name]}
            ]
        }

    def create_db_parameter_group(self, **kwargs):
        self.calls.append(("create_db_parameter_group", kwargs))
        self._fail_if_requested("create_db_parameter_group")
        self.parameter_groups[kwargs["DBParameterGroupName"]] = kwargs["DBParameterGroupFamily"]
        return {
            "DBParameterGroup": {
                "DBParameterGroupName": kwargs["DBParameterGroupName"],
                "DBParameterGroupFamily": kwargs["DBParameterGroupFamily"],
            }
        }

    def modify_db_parameter_group(self, **kwargs):
        self.calls.append(("modify_db_parameter_group", kwargs))
        self._fail_if_requested("modify_db_parameter_group")
        return {}

    def modify_db_instance(self, **kwargs):
        self.calls.append(("modify_db_instance", kwargs))
        if "EngineVersion" in kwargs and self.apply_version:
            self.instance["EngineVersion"] = kwargs["EngineVersion"]
        if "CloudwatchLogsExportConfiguration" in kwargs:
            enabled = kwargs["CloudwatchLogsExportConfiguration"]["EnableLogTypes"]
            self.instance["EnabledCloudwatchLogsExports"] = enabled
        return {"DBInstance": dict(self.instance)}

    def create_db_snapshot(self, **kwargs):
        self.calls.append(("create_db_snapshot", kwargs))
        return {"DBSnapshot": {"DBSnapshotIdentifier": kwargs["DBSnapshotIdentifier"]}}

    def describe_pending_maintenance_actions(self, **kwargs):
        self.calls.append(("describe_pending_maintenance_actions", kwargs))
        return {
            "PendingMaintenanceActions": [
                {"PendingMaintenanceActionDetails": [{"Action": action} for action in self.pending_actions]}
            ]
        }

    def apply_pending_maintenance_action(self, **kwargs):
        self.calls.append(("apply_pending_maintenance_action", kwargs))
        return {}

    def list_tags_for_resource(self, **kwargs):
        self.calls.append(("list_tags_for_resource", kwargs))
        return {"TagList": [{"Key": "rds-upgrader:secret", "Value": "db-1-secret"}]}


class FakeSecretsClient:
    def __init__(self, available=True):
        self.available = available

    def get_secret_value(self, SecretId):
        if not self.available:
            raise ClientError(
                {"Error": {"Code": "ResourceNotFoundException", "Message": "missing"}},
                "GetSecretValue",
            )
        return {"SecretString": json.dumps({"username": "admin", "password": "pw"})}


class FakeS3Client:
    def __init__(self):
        self.uploads = []

    def upload_file(self, filename, bucket, key):
        self.uploads.append((bucket, key))


class FakeSnsClient:
    def __init__(self):
        self.published = []

    def publish(self, **kwargs):
        self.published.append(kwargs)
        return {"MessageId": "msg-1"}


class FakeSession:
    def __init__(self, rds, secrets=None):
        self.clients = {
            "rds": rds,
            "secretsmanager": secrets or FakeSecretsClient(),
            "s3": FakeS3Client(),
            "sns": FakeSnsClient(),
        }

    def client(self, name):
        return self.clients[name]


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchall(self):
        return self.rows


class FakeDatabase:
    """Shared state behind every fake psycopg connection of a test."""

    def __init__(self, slots=()):
        self.slots = list(slots)
        self.executed = []

    def connect(self, **kwargs):
        return FakeConnection(self)


class FakeConnection:
    def __init__(self, database):
        self.database = database

    def add_notice_handler(self, handler):
        return None

    def execute(self, sql, params=None):
        self.database.executed.append(sql)
        if sql == REPLICATION_SLOTS_SQL:
            return FakeCursor([(name, "pgoutput", "logical", False) for name in self.database.slots])
        if params:
            self.database.slots = [name for name in self.database.slots if name != params[0]]
        return FakeCursor([])

    def close(self):
        return None


def build_upgrader(tmp_path, rds, request, database=None, secrets=None, **settings_kwargs):
    settings = UpgradeSettings(
        logs_dir=str(tmp_path / "logs"),
        initial_delay_seconds=0,
        poll_interval_seconds=0,
        **settings_kwargs,
    )
    session = FakeSession(rds, secrets)
    database = database or FakeDatabase()
    upgrader = RdsUpgrader(
        request=request,
        settings=settings,
        session=session,
        connect=database.connect,
        sleep=lambda _seconds: None,
    )
    return upgrader, session, database


def read_manifest(upgrader):
    with open(upgrader.manifest_file, encoding="utf-8") as file_obj:
        return json.load(file_obj)


def test_minor_upgrade_takes_snapshot_and_reuses_parameter_group(tmp_path):
    rds = FakeRdsClient(version="14.12")
    request = UpgradeRequest("db-1", "14.15", RunMode.UPGRADE)
    upgrader, _session, database = build_upgrader(tmp_path, rds, request)

    assert upgrader.run() == 0

    assert rds.kwargs_for("describe_db_parameter_groups") == []
    assert len(rds.kwargs_for("create_db_snapshot")) == 1
    upgrade_call = [kwargs for kwargs in rds.kwargs_for("modify_db_instance") if "EngineVersion" in kwargs][0]
    assert upgrade_call["DBParameterGroupName"] == "default.postgres14"
    assert upgrade_call["EngineVersion"] == "14.15"
    assert REPLICATION_SLOTS_SQL not in database.executed
    assert EXTENSION_UPDATE_SQL in database.executed
    assert database.executed.index("ANALYZE VERBOSE") < database.executed.index("VACUUM VERBOSE")

    manifest = read_manifest(upgrader)
    assert manifest["status"] == "success"
    assert manifest["scope"] == "minor"
    assert manifest["versions"]["final"] == "14.15"
    backup_name = f"db-1-postgres14-{upgrader.run_context.timestamp}.txt"
    assert (tmp_path / "logs" / "db-1" / backup_name).exists()


def test_major_pre_upgrade_creates_group_reports_slots_and_never_upgrades(tmp_path):
    rds = FakeRdsClient(version="14.12")
    request = UpgradeRequest("db-1", "16.3", RunMode.PRE_UPGRADE)
    database = FakeDatabase(slots=["orders_sub"])
    upgrader, _session, database = build_upgrader(tmp_path, rds, request, database=database)

    assert upgrader.run() == 0

    created = rds.kwargs_for("create_db_parameter_group")
    assert created[0]["DBParameterGroupFamily"] == "postgres16"
    assert created[0]["DBParameterGroupName"] == "rds-param-group-postgres16-db-1"
    assert REPLICATION_SLOTS_SQL in database.executed
    assert database.slots == ["orders_sub"]
    assert "VACUUM (FREEZE, VERBOSE)" in database.executed
    assert len(rds.kwargs_for("create_db_snapshot")) == 1
    assert rds.kwargs_for("modify_db_instance") == []
    assert read_manifest(upgrader)["scope"] == "major"


def test_same_version_is_noop_without_mutating_calls(tmp_path):
    rds = FakeRdsClient(version="15.6", valid_targets=())
    request = UpgradeRequest("db-1", "15.6", RunMode.UPGRADE)
    upgrader, _session, database = build_upgrader(tmp_path, rds, request)

    assert upgrader.run() == 0

    assert rds.mutating_calls == []
    assert database.executed == []
    assert read_manifest(upgrader)["status"] == "noop"


@pytest.mark.parametrize("mode", [RunMode.PRE_UPGRADE, RunMode.UPGRADE])
def test_older_target_is_noop(tmp_path, mode):
    rds = FakeRdsClient(version="15.6")
    upgrader, _session, _database = build_upgrader(tmp_path, rds, UpgradeRequest("db-1", "15.4", mode))

    assert upgrader.run() == 0
    assert rds.mutating_calls == []


def test_invalid_target_fails_before_any_step(tmp_path):
    rds = FakeRdsClient(version="14.12", valid_targets=("14.13", "15.7"))
    request = UpgradeRequest("db-1", "16.3", RunMode.UPGRADE)
    upgrader, _session, database = build_upgrader(tmp_path, rds, request)

    assert upgrader.run() == 1

    assert rds.mutating_calls == []
    assert database.executed == []
    manifest = read_manifest(upgrader)
    assert manifest["error_kind"] == "precondition"
    assert manifest["steps"][-1]["name"] == "classify_scope"
    assert manifest["steps"][-1]["status"] == "failed"


def test_instance_not_available_fails(tmp_path):
    rds = FakeRdsClient(status="modifying")
    upgrader, _session, _database = build_upgrader(
        tmp_path, rds, UpgradeRequest("db-1", "14.15", RunMode.UPGRADE)
    )

    assert upgrader.run() == 1
    assert rds.mutating_calls == []
    assert read_manifest(upgrader)["error_kind"] == "precondition"


def test_major_upgrade_halts_on_replication_slots_before_version_change(tmp_path):
    rds = FakeRdsClient(version="14.12")
    database = FakeDatabase(slots=["orders_sub"])
    upgrader, _session, database = build_upgrader(
        tmp_path, rds, UpgradeRequest("db-1", "16.3", RunMode.UPGRADE), database=database
    )

    assert upgrader.run() == 1

    assert rds.kwargs_for("modify_db_instance") == []
    assert database.slots == ["orders_sub"]
    assert "orders_sub" in read_manifest(upgrader)["error"]


def test_major_upgrade_drops_slots_when_enabled(tmp_path):
    rds = FakeRdsClient(version="14.12", existing_groups=["rds-param-group-postgres16-db-1"])
    database = FakeDatabase(slots=["orders_sub"])
    upgrader, _session, database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "16.3", RunMode.UPGRADE),
        database=database,
        auto_drop_replication_slots=True,
    )

    assert upgrader.run() == 0

    assert database.slots == []
    assert rds.kwargs_for("create_db_parameter_group") == []
    upgrade_call = [kwargs for kwargs in rds.kwargs_for("modify_db_instance") if "EngineVersion" in kwargs][0]
    assert upgrade_call["DBParameterGroupName"] == "rds-param-group-postgres16-db-1"
    assert upgrade_call["AllowMajorVersionUpgrade"] is True


def test_major_upgrade_fails_without_credentials_for_slot_check(tmp_path):
    rds = FakeRdsClient(version="14.12")
    upgrader, _session, _database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "16.3", RunMode.UPGRADE),
        secrets=FakeSecretsClient(available=False),
    )

    assert upgrader.run() == 1
    assert rds.kwargs_for("modify_db_instance") == []


def test_version_mismatch_after_upgrade_is_fatal(tmp_path):
    rds = FakeRdsClient(version="14.12", apply_version=False)
    upgrader, _session, database = build_upgrader(
        tmp_path, rds, UpgradeRequest("db-1", "14.15", RunMode.UPGRADE)
    )

    assert upgrader.run() == 1

    assert read_manifest(upgrader)["error_kind"] == "postcondition"
    assert "ANALYZE VERBOSE" not in database.executed


def test_pending_maintenance_is_applied_before_upgrade(tmp_path):
    rds = FakeRdsClient(version="14.12", pending_actions=["system-update"])
    upgrader, _session, _database = build_upgrader(
        tmp_path, rds, UpgradeRequest("db-1", "14.15", RunMode.UPGRADE), snapshot_enabled=False
    )

    assert upgrader.run() == 0

    names = [name for name, _kwargs in rds.calls]
    upgrade_position = next(
        index
        for index, (name, kwargs) in enumerate(rds.calls)
        if name == "modify_db_instance" and "EngineVersion" in kwargs
    )
    assert names.index("apply_pending_maintenance_action") < upgrade_position
    assert rds.kwargs_for("create_db_snapshot") == []


def test_finalize_ships_logs_and_notifies_on_failure(tmp_path):
    rds = FakeRdsClient(status="stopped")
    upgrader, session, _database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "14.15", RunMode.UPGRADE),
        log_bucket="patch-logs/rds",
        notification_topic_arn="arn:aws:sns:us-east-1:123456789012:patching",
    )

    assert upgrader.run() == 1

    uploads = session.clients["s3"].uploads
    assert uploads
    assert all(bucket == "patch-logs" and key.startswith("rds/db-1/") for bucket, key in uploads)
    published = session.clients["sns"].published[0]
    assert published["Subject"] == "RDS PostgreSQL DB Upgrade [db-1] - Failed"
    assert "status 'stopped'" in published["Message"]


def test_finalize_notifies_on_noop(tmp_path):
    rds = FakeRdsClient(version="15.6")
    upgrader, session, _database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "15.6", RunMode.PRE_UPGRADE),
        notification_topic_arn="arn:aws:sns:us-east-1:123456789012:patching",
    )

    assert upgrader.run() == 0
    assert session.clients["sns"].published[0]["Subject"] == "RDS PostgreSQL DB Pre-Upgrade Tasks [db-1] - No-op"


def test_finalize_failure_does_not_change_exit_code(tmp_path):
    rds = FakeRdsClient(version="15.6")
    upgrader, session, _database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "15.6", RunMode.UPGRADE),
        notification_topic_arn="arn:aws:sns:us-east-1:123456789012:patching",
    )

    def failing_publish(**_kwargs):
        raise ClientError({"Error": {"Code": "AuthorizationError", "Message": "denied"}}, "Publish")

    session.clients["sns"].publish = failing_publish

    assert upgrader.run() == 0


def test_run_log_is_written_per_instance(tmp_path):
    root_logger = logging.getLogger()
    package_logger = logging.getLogger("rdsupgrader")
    saved_levels = (root_logger.level, package_logger.level)
    root_logger.setLevel(logging.WARNING)
    package_logger.setLevel(logging.NOTSET)

    rds = FakeRdsClient(version="15.6")
    upgrader, _session, _database = build_upgrader(
        tmp_path, rds, UpgradeRequest("db-1", "15.6", RunMode.UPGRADE)
    )

    try:
        assert upgrader.run() == 0
        restored_level = package_logger.level
    finally:
        root_logger.setLevel(saved_levels[0])
        package_logger.setLevel(saved_levels[1])

    assert upgrader.run_log_file.startswith(str(tmp_path / "logs" / "db-1"))
    assert upgrader.run_log_file.endswith(".log")
    with open(upgrader.run_log_file, encoding="utf-8") as file_obj:
        content = file_obj.read()
    assert "[INFO] BEGIN - RDS PostgreSQL DB Upgrade [db-1] target 15.6" in content
    assert "[INFO] END - RDS PostgreSQL DB Upgrade [db-1] - No-op" in content
    assert restored_level == logging.NOTSET


@pytest.mark.parametrize(
    "fail_calls",
    [
        {"create_db_parameter_group": 1},
        {"modify_db_parameter_group": 2},
    ],
)
def test_parameter_group_failure_stops_major_upgrade(tmp_path, fail_calls):
    rds = FakeRdsClient(version="14.12", fail_calls=fail_calls)
    upgrader, _session, database = build_upgrader(
        tmp_path,
        rds,
        UpgradeRequest("db-1", "16.3", RunMode.UPGRADE),
        parameter_tuning_enabled=True,
    )

    assert upgrader.run() == 1

    manifest = read_manifest(upgrader)
    assert manifest["error_kind"] == "provider"
    assert manifest["steps"][-1]["name"] == "ensure_parameter_group"
    assert manifest["steps"][-1]["status"] == "failed"
    assert rds.kwargs_for("modify_db_instance") == []
    assert database.executed == []
