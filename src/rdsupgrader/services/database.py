"""Administrative SQL against the upgraded PostgreSQL instance."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional, Sequence

import psycopg

from rdsupgrader.errors import DatabaseOperationError
from rdsupgrader.models import CredentialBundle, ReplicationSlot, TargetInstance


class MaintenanceCommand(Enum):
    ANALYZE = "ANALYZE VERBOSE"
    FREEZE = "VACUUM (FREEZE, VERBOSE)"
    UNFREEZE = "VACUUM VERBOSE"


EXTENSION_UPDATE_SQL = """
DO $$
DECLARE
    rec RECORD;
    extensions_updated BOOLEAN := FALSE;
BEGIN
    FOR rec IN
        SELECT e.extname, e.extversion, a.default_version AS newest_version
        FROM pg_extension e
        JOIN pg_available_extensions a ON a.name = e.extname
    LOOP
        IF rec.newest_version IS NULL OR rec.newest_version = rec.extversion THEN
            CONTINUE;
        END IF;

        IF NOT EXISTS (
            SELECT 1
            FROM pg_extension_update_paths(rec.extname) p
            WHERE p.source = rec.extversion
              AND p.target = rec.newest_version
              AND p.path IS NOT NULL
        ) THEN
            RAISE NOTICE 'Skipped extension %: no update path from % to %',
                rec.extname, rec.extversion, rec.newest_version;
        ELSE
            EXECUTE 'ALTER EXTENSION ' || quote_ident(rec.extname)
                || ' UPDATE TO ' || quote_literal(rec.newest_version);
            RAISE NOTICE 'Updated extension % from % to %',
                rec.extname, rec.extversion, rec.newest_version;
            extensions_updated := TRUE;
        END IF;
    END LOOP;

    IF NOT extensions_updated THEN
        RAISE NOTICE 'No extensions were updated.';
    END IF;
END$$;
"""

REPLICATION_SLOTS_SQL = (
    "SELECT slot_name, plugin, slot_type, active "
    "FROM pg_replication_slots "
    "WHERE slot_type = 'logical' "
    "ORDER BY slot_name"
)

DROP_REPLICATION_SLOT_SQL = "SELECT pg_drop_replication_slot(%s)"


class DatabaseService:
    """Runs maintenance statements over a direct psycopg connection.

    Every call opens its own autocommit connection, since VACUUM cannot run
    inside a transaction block. Server notices (VERBOSE output, RAISE NOTICE)
    are appended to the given log file.
    """

    def __init__(self, logger, console, connect=psycopg.connect, connect_timeout: int = 10):
        self.logger = logger
        self.console = console
        self.connect = connect
        self.connect_timeout = connect_timeout

    def _open(self, instance: TargetInstance, credentials: CredentialBundle):
        try:
            return self.connect(
                host=instance.host,
                port=instance.port,
                dbname=instance.db_name or "postgres",
                user=credentials.username,
                password=credentials.password,
                connect_timeout=self.connect_timeout,
                autocommit=True,
            )
        except psycopg.Error as exc:
            raise DatabaseOperationError(
                f"Failed to connect to {instance.identifier} at {instance.host}:{instance.port}: {exc}"
            ) from exc

    def execute(
        self,
        instance: TargetInstance,
        credentials: CredentialBundle,
        sql: str,
        params: Optional[Sequence[Any]] = None,
        log_path: Optional[str] = None,
        fetch: bool = False,
        echo_notices: bool = False,
    ) -> List[tuple]:
        notices: List[str] = []

        def collect_notice(diagnostic):
            notices.append(f"{diagnostic.severity}: {diagnostic.message_primary}")

        rows: List[tuple] = []
        conn = self._open(instance, credentials)
        try:
            conn.add_notice_handler(collect_notice)
            self.logger.debug("SQL on %s: %s", instance.identifier, sql.strip())
            cursor = conn.execute(sql, params)
            if fetch:
                rows = list(cursor.fetchall())
        except psycopg.Error as exc:
            self._write_log(log_path, sql, notices, rows, error=str(exc))
            raise DatabaseOperationError(
                f"SQL failed on {instance.identifier}: {exc}"
            ) from exc
        finally:
            conn.close()

        for notice in notices:
            if echo_notices:
                self.logger.info(notice)
            else:
                self.logger.debug(notice)
        self._write_log(log_path, sql, notices, rows)
        return rows

    def run_maintenance(
        self,
        instance: TargetInstance,
        credentials: CredentialBundle,
        command: MaintenanceCommand,
        log_path: str,
    ):
        self.console.print(f"[blue]Running {command.value} on {instance.identifier}...[/blue]")
        self.execute(instance, credentials, command.value, log_path=log_path)
        self.logger.info("%s completed on %s; output in %s", command.value, instance.identifier, log_path)

    def update_extensions(
        self,
        instance: TargetInstance,
        credentials: CredentialBundle,
        log_path: str,
    ):
        self.execute(instance, credentials, EXTENSION_UPDATE_SQL, log_path=log_path, echo_notices=True)

    def replication_slots(
        self,
        instance: TargetInstance,
        credentials: CredentialBundle,
        log_path: Optional[str] = None,
    ) -> List[ReplicationSlot]:
        rows = self.execute(
            instance,
            credentials,
            REPLICATION_SLOTS_SQL,
            log_path=log_path,
            fetch=True,
        )
        return [
            ReplicationSlot(name=row[0], plugin=row[1], slot_type=row[2], active=bool(row[3]))
            for row in rows
        ]

    def drop_replication_slot(
        self,
        instance: TargetInstance,
        credentials: CredentialBundle,
        slot_name: str,
        log_path: Optional[str] = None,
    ):
        self.execute(
            instance,
            credentials,
            DROP_REPLICATION_SLOT_SQL,
            params=(slot_name,),
            log_path=log_path,
            fetch=True,
        )

    @staticmethod
    def _write_log(
        log_path: Optional[str],
        sql: str,
        notices: List[str],
        rows: List[tuple],
        error: Optional[str] = None,
    ):
        if not log_path:
            return

        timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with open(log_path, "a", encoding="utf-8") as file_obj:
            file_obj.write(f"-- {timestamp}\n{sql.strip()}\n")
            for notice in notices:
                file_obj.write(f"{notice}\n")
            for row in rows:
                file_obj.write(" | ".join("" if value is None else str(value) for value in row) + "\n")
            if error:
                file_obj.write(f"ERROR: {error}\n")
            file_obj.write("\n")
