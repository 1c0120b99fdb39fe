"""Actionable error catalog for RDS Upgrader."""

from typing import Dict

_ERROR_MESSAGES: Dict[str, Dict[str, str]] = {
    "usage": {
        "what": "{detail}",
        "next": "Run `rdsupgrader INSTANCE_ID TARGET_VERSION PREUPGRADE|UPGRADE`, "
        "for example `rdsupgrader my-db 15.6 PREUPGRADE`.",
    },
    "instance_not_available": {
        "what": "DB instance {instance_id} is in status '{status}', not 'available'.",
        "next": "Wait until the instance is available or check the identifier, then retry.",
    },
    "engine_not_supported": {
        "what": "DB instance {instance_id} runs engine '{engine}'; only PostgreSQL is supported.",
        "next": "Check the instance identifier.",
    },
    "invalid_upgrade_target": {
        "what": "Version {target_version} is not a valid upgrade target for {engine} {current_version}.",
        "next": "Pick one of: {valid_targets}.",
    },
    "credentials_unavailable": {
        "what": "Database credentials for {instance_id} could not be resolved.",
        "next": "Tag the instance with '{secret_tag_key}' or enable a managed master user secret.",
    },
    "replication_slots_present": {
        "what": "{count} logical replication slot(s) exist on {instance_id}: {slots}.",
        "next": "Drop the slots after stopping their consumers, or rerun with `--auto-drop-slots`.",
    },
    "replication_slots_remaining": {
        "what": "{count} replication slot(s) remain on {instance_id} after dropping.",
        "next": "Inspect {log_file}; active slots must be released by their consumers first.",
    },
    "version_mismatch": {
        "what": "Upgrade call succeeded but {instance_id} reports version {actual_version} "
        "instead of {target_version}.",
        "next": "Check the RDS events and the upgrade log in CloudWatch before retrying.",
    },
    "wait_timeout": {
        "what": "DB instance {instance_id} was not available after {elapsed}.",
        "next": "Check the instance in the RDS console; the modification may still be running.",
    },
}


def actionable_error(code: str, **kwargs: str) -> str:
    if code not in _ERROR_MESSAGES:
        raise KeyError(f"Unknown error catalog key: {code}")

    template = _ERROR_MESSAGES[code]
    what = template["what"].format(**kwargs)
    next_step = template["next"].format(**kwargs)
    return f"{what} Suggested action: {next_step}"
