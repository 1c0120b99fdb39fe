import logging
import os

import click
from botocore.exceptions import BotoCoreError
from rich.logging import RichHandler

from .core import RdsUpgrader, build_session, console
from .constants import DEFAULT_LOGS_DIR
from .errors import UpgraderError, UsageError
from .models import UpgradeSettings
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.fleet import FleetService
from .services.log_shipping import LogShippingService
from .services.rds_api import RdsApiService
from .services.validation import ValidationService
from .services.versioning import VersionClassifier

DEFAULT_CONFIG_FILE = ".rdsupgrader.yml"
LOG_BUCKET_ENV = "RDSUPGRADER_LOG_BUCKET"
NOTIFY_TOPIC_ENV = "RDSUPGRADER_NOTIFY_TOPIC_ARN"


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


class UpgraderCommand(click.Command):
    """Command whose parse errors exit with 1 like every other fatal error."""

    def make_context(self, info_name, args, parent=None, **extra):
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            exc.exit_code = 1
            raise


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def _load_config(config):
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        return config_loader.load(resolved_config)
    except UpgraderError as exc:
        raise click.ClickException(str(exc)) from exc


def _configure_logging(verbose: bool, log_file):
    logger = logging.getLogger("rdsupgrader")
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)
    return logger


def _optional_float(value):
    return None if value is None else float(value)


def _optional_int(value):
    return None if value is None else int(value)


def build_settings(config_values, **cli_values) -> UpgradeSettings:
    """Merge CLI values, YAML values and defaults into UpgradeSettings."""
    defaults = UpgradeSettings()

    def resolve(key, default):
        return _resolve_option(cli_values.get(key), config_values, key, default=default)

    return UpgradeSettings(
        region=resolve("region", defaults.region),
        profile=resolve("profile", defaults.profile),
        logs_dir=str(resolve("logs_dir", defaults.logs_dir)),
        log_bucket=resolve("log_bucket", defaults.log_bucket) or None,
        notification_topic_arn=resolve("notification_topic_arn", defaults.notification_topic_arn) or None,
        snapshot_enabled=bool(resolve("snapshot_enabled", defaults.snapshot_enabled)),
        parameter_tuning_enabled=bool(
            resolve("parameter_tuning_enabled", defaults.parameter_tuning_enabled)
        ),
        auto_drop_replication_slots=bool(
            resolve("auto_drop_replication_slots", defaults.auto_drop_replication_slots)
        ),
        secret_tag_key=str(resolve("secret_tag_key", defaults.secret_tag_key)),
        initial_delay_seconds=float(resolve("initial_delay_seconds", defaults.initial_delay_seconds)),
        poll_interval_seconds=float(resolve("poll_interval_seconds", defaults.poll_interval_seconds)),
        max_wait_attempts=_optional_int(resolve("max_wait_attempts", defaults.max_wait_attempts)),
        wait_timeout_minutes=_optional_float(
            resolve("wait_timeout_minutes", defaults.wait_timeout_minutes)
        ),
        connect_timeout=int(resolve("connect_timeout", defaults.connect_timeout)),
    )


@click.command(cls=UpgraderCommand)
@click.argument("arguments", nargs=-1)
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.option("--region", required=False, help="AWS region of the DB instance.")
@click.option("--profile", required=False, help="AWS named profile to use.")
@click.option(
    "--logs-dir",
    required=False,
    type=click.Path(),
    help=f"Directory for per-instance run logs (default: {DEFAULT_LOGS_DIR}).",
)
@click.option(
    "--log-bucket",
    required=False,
    envvar=LOG_BUCKET_ENV,
    help="S3 bucket (optionally bucket/prefix) receiving the run logs.",
)
@click.option(
    "--notify-topic-arn",
    "notification_topic_arn",
    required=False,
    envvar=NOTIFY_TOPIC_ENV,
    help="SNS topic ARN for the completion notification.",
)
@click.option(
    "--snapshot/--no-snapshot",
    "snapshot_enabled",
    default=None,
    help="Take a manual DB snapshot before the upgrade (default: on).",
)
@click.option(
    "--tune-parameters",
    "parameter_tuning_enabled",
    is_flag=True,
    default=None,
    help="Apply the security, logging and replication parameter sets to a newly created parameter group.",
)
@click.option(
    "--auto-drop-slots",
    "auto_drop_replication_slots",
    is_flag=True,
    default=None,
    help="Drop logical replication slots before a major version upgrade.",
)
@click.option(
    "--secret-tag-key",
    required=False,
    help="Instance tag holding the Secrets Manager secret id for database credentials.",
)
@click.option(
    "--initial-delay-seconds",
    required=False,
    type=float,
    default=None,
    help="Delay before the first status check after a modification (default: 90).",
)
@click.option(
    "--poll-interval-seconds",
    required=False,
    type=float,
    default=None,
    help="Delay between status checks (default: 60).",
)
@click.option(
    "--max-wait-attempts",
    required=False,
    type=int,
    default=None,
    help="Give up waiting after this many status checks (default: unbounded).",
)
@click.option(
    "--wait-timeout-minutes",
    required=False,
    type=float,
    default=None,
    help="Give up waiting after this many minutes (default: unbounded).",
)
@click.option(
    "--connect-timeout",
    required=False,
    type=int,
    default=None,
    help="Database connection timeout in seconds (default: 10).",
)
def main(
    arguments,
    config,
    verbose,
    log_file,
    region,
    profile,
    logs_dir,
    log_bucket,
    notification_topic_arn,
    snapshot_enabled,
    parameter_tuning_enabled,
    auto_drop_replication_slots,
    secret_tag_key,
    initial_delay_seconds,
    poll_interval_seconds,
    max_wait_attempts,
    wait_timeout_minutes,
    connect_timeout,
):
    """Upgrade an RDS PostgreSQL instance.

    \b
    Usage: rdsupgrader INSTANCE_ID TARGET_VERSION PREUPGRADE|UPGRADE
    Example: rdsupgrader rds-psql-patch-test-1 15.6 PREUPGRADE

    PREUPGRADE runs the preparation tasks (parameter group, replication slot
    report, VACUUM FREEZE, snapshot) without changing the engine version.
    UPGRADE changes the engine version and refreshes extensions and statistics.
    """
    try:
        request = ValidationService(VersionClassifier(logging.getLogger("rdsupgrader"))).build_request(
            arguments
        )
    except UsageError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        click.echo(click.get_current_context().get_usage(), err=True)
        raise SystemExit(1) from exc

    config_values = _load_config(config)

    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    log_file = _resolve_option(log_file, config_values, "log_file")
    logger = _configure_logging(verbose, log_file)

    settings = build_settings(
        config_values,
        region=region,
        profile=profile,
        logs_dir=logs_dir,
        log_bucket=log_bucket,
        notification_topic_arn=notification_topic_arn,
        snapshot_enabled=snapshot_enabled,
        parameter_tuning_enabled=parameter_tuning_enabled,
        auto_drop_replication_slots=auto_drop_replication_slots,
        secret_tag_key=secret_tag_key,
        initial_delay_seconds=initial_delay_seconds,
        poll_interval_seconds=poll_interval_seconds,
        max_wait_attempts=max_wait_attempts,
        wait_timeout_minutes=wait_timeout_minutes,
        connect_timeout=connect_timeout,
    )
    logger.info("Input parameter 1: %s", request.instance_id)
    logger.info("Input parameter 2: %s", request.target_version)
    logger.info("Input parameter 3: %s", request.mode.value)

    try:
        upgrader = RdsUpgrader(request=request, settings=settings)
    except (UpgraderError, BotoCoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(upgrader.run())


@click.command(cls=UpgraderCommand)
@click.argument("target_version")
@click.argument("phase", type=click.Choice(["PREUPGRADE", "UPGRADE"], case_sensitive=False))
@click.option("--tag-key", required=True, help="Tag key selecting the instances to upgrade.")
@click.option("--tag-value", required=True, help="Tag value selecting the instances to upgrade.")
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file passed to every instance run. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--region", required=False, help="AWS region of the DB instances.")
@click.option("--profile", required=False, help="AWS named profile to use.")
@click.option(
    "--logs-dir",
    required=False,
    type=click.Path(),
    help=f"Root directory for the master log and per-instance logs (default: {DEFAULT_LOGS_DIR}).",
)
@click.option(
    "--log-bucket",
    required=False,
    envvar=LOG_BUCKET_ENV,
    help="S3 bucket receiving the logs directory under logs/YYYY-MM-DD/.",
)
def fleet(target_version, phase, tag_key, tag_value, config, verbose, region, profile, logs_dir, log_bucket):
    """Run the upgrade concurrently on every tagged RDS PostgreSQL instance."""
    config_values = _load_config(config)
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    logger = _configure_logging(verbose, None)

    settings = build_settings(
        config_values,
        region=region,
        profile=profile,
        logs_dir=logs_dir,
        log_bucket=log_bucket,
    )
    phase = phase.upper()

    child_options = []
    if config:
        child_options += ["--config", config]
    if region:
        child_options += ["--region", region]
    if profile:
        child_options += ["--profile", profile]
    if settings.log_bucket:
        child_options += ["--log-bucket", settings.log_bucket]
    if verbose:
        child_options.append("--verbose")

    try:
        session = build_session(settings)
        fleet_service = FleetService(
            RdsApiService(session.client("rds"), logger=logger),
            CommandRunner(logger=logger),
            LogShippingService(session.client("s3"), logger=logger) if settings.log_bucket else None,
            logger=logger,
            console=console,
            logs_dir=settings.logs_dir,
        )
        exit_code = fleet_service.run(
            tag_key,
            tag_value,
            target_version,
            phase,
            child_options=child_options,
            log_bucket=settings.log_bucket,
        )
    except (UpgraderError, BotoCoreError) as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
