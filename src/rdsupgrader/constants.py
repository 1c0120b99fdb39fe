"""Shared constants for RDS Upgrader."""

DIR_MODE = 0o750
FILE_MODE = 0o640

TIMESTAMP_FORMAT = "%Y%m%d-%H-%M-%S"

SUPPORTED_ENGINE = "postgres"
AVAILABLE_STATUS = "available"
TERMINAL_FAILURE_STATUSES = frozenset(
    {
        "failed",
        "incompatible-parameters",
        "incompatible-restore",
        "restore-error",
        "storage-full",
        "inaccessible-encryption-credentials",
    }
)

DEFAULT_INITIAL_DELAY_SECONDS = 90.0
DEFAULT_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_LOGS_DIR = "./logs"
DEFAULT_SECRET_TAG_KEY = "rds-upgrader:secret"
DEFAULT_CONNECT_TIMEOUT = 10

LOG_EXPORT_TYPES = ("postgresql", "upgrade")

MAINTENANCE_ACTION = "system-update"
MAINTENANCE_OPT_IN = "immediate"

# modify_db_parameter_group accepts at most 20 parameters per call
PARAMETER_BATCH_LIMIT = 20

SECURITY_LOGGING_PARAMETERS = (
    ("authentication_timeout", "300", "immediate"),
    ("backslash_quote", "safe_encoding", "immediate"),
    ("client_min_messages", "notice", "immediate"),
    ("escape_string_warning", "1", "immediate"),
    ("log_connections", "1", "immediate"),
    ("log_disconnections", "1", "immediate"),
    ("log_duration", "1", "immediate"),
    ("log_min_duration_statement", "1000", "immediate"),
    ("log_min_error_statement", "info", "immediate"),
    ("log_min_messages", "info", "immediate"),
    ("log_statement", "all", "immediate"),
    ("standard_conforming_strings", "1", "immediate"),
    ("rds.force_ssl", "0", "immediate"),
    ("rds.log_retention_period", "4320", "immediate"),
)

REPLICATION_TIMEOUT_PARAMETERS = (
    ("rds.logical_replication", "1", "pending-reboot"),
    ("shared_preload_libraries", "pg_stat_statements", "pending-reboot"),
    ("tcp_keepalives_count", "0", "immediate"),
    ("tcp_keepalives_idle", "0", "immediate"),
    ("tcp_keepalives_interval", "0", "immediate"),
    ("wal_receiver_timeout", "0", "immediate"),
    ("wal_sender_timeout", "0", "immediate"),
    ("idle_in_transaction_session_timeout", "0", "immediate"),
    ("checkpoint_warning", "0", "immediate"),
    ("statement_timeout", "0", "immediate"),
)
