"""
Command-line interface for crm_sync.

Provides CLI commands for authorization, synchronization and status checking
of CRM case data pulled into the local store.

Usage:
    # Show help
    crm-sync --help

    # Authorize once
    crm-sync auth-url --redirect-uri http://localhost:8080/callback
    crm-sync authorize <code> --redirect-uri http://localhost:8080/callback

    # Check status
    crm-sync token-status
    crm-sync status

    # Run synchronization
    crm-sync sync
    crm-sync sync --entity matters --full
"""

import sys
import threading
from pathlib import Path
from typing import Any, Optional

import click

from crm_sync import __version__
from crm_sync.api.crm_api import DEFAULT_BASE_URL, CRMClient
from crm_sync.auth.token_manager import (
    DEFAULT_AUTHORIZE_URL,
    DEFAULT_PROVIDER,
    DEFAULT_TOKEN_URL,
    AuthenticationRequired,
    TokenManager,
    TokenRefreshError,
)
from crm_sync.cli.formatters import (
    format_run_line,
    show_entity_status,
    show_run_details,
    show_run_summary,
    show_token_status,
)
from crm_sync.config.generator import save_config_file
from crm_sync.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
    resolve_client_credentials,
)
from crm_sync.config.mapping_config import MappingConfigError, load_mapping_config
from crm_sync.storage.db import StoreError, SyncDatabase
from crm_sync.sync.engine import SyncEngine, SyncRun, SyncRunStatus, SyncStrategy
from crm_sync.sync.mapper import FieldMapper
from crm_sync.sync.mapping import EntityType
from crm_sync.sync.matcher import DEFAULT_NAME_MATCH_THRESHOLD, NameMatcher
from crm_sync.utils import resolve_config_dir
from crm_sync.utils.logging import (
    cleanup_old_logs,
    get_logger,
    setup_logging,
    setup_matching_logger,
)
from crm_sync.utils.paths import resolve_db_path

# Values accepted by --entity
ENTITY_CHOICES = ("all", "contacts", "matters", "exchanges", "tasks")


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


# =============================================================================
# Component wiring
# =============================================================================


def open_database(config_dir: Path, config: dict[str, Any]) -> SyncDatabase:
    """Open and initialize the sync database named by the configuration."""
    db_path = resolve_db_path(config_dir, config.get("db_path"))
    db_path.parent.mkdir(parents=True, exist_ok=True)
    database = SyncDatabase(str(db_path))
    database.initialize()
    return database


def create_token_manager(database: SyncDatabase, config: dict[str, Any]) -> TokenManager:
    """Create the token manager from configuration and environment."""
    client_id, client_secret = resolve_client_credentials(config)
    return TokenManager(
        database,
        client_id=client_id,
        client_secret=client_secret,
        token_url=config.get("token_url", DEFAULT_TOKEN_URL),
        authorize_url=config.get("authorize_url", DEFAULT_AUTHORIZE_URL),
        provider=config.get("provider", DEFAULT_PROVIDER),
        refresh_margin=config.get("token_refresh_margin", 60),
    )


def create_engine(
    config_dir: Path,
    config: dict[str, Any],
    database: SyncDatabase,
    token_manager: TokenManager,
) -> SyncEngine:
    """
    Create the sync engine with its CRM client, mapper and matcher.

    Raises:
        MappingConfigError: If field_mappings.json is invalid
    """
    client_kwargs: dict[str, Any] = {
        "base_url": config.get("crm_base_url", DEFAULT_BASE_URL),
    }
    option_map = {
        "api_page_size": "page_size",
        "api_max_retries": "max_retries",
        "api_initial_retry_delay": "initial_retry_delay",
        "api_max_retry_delay": "max_retry_delay",
        "api_min_request_interval": "min_request_interval",
        "api_timeout": "timeout",
    }
    for config_key, kwarg in option_map.items():
        if config_key in config:
            client_kwargs[kwarg] = config[config_key]
    client = CRMClient(token_manager, **client_kwargs)

    mapping_config = load_mapping_config(config_dir)
    mapper = FieldMapper(
        custom_fields=mapping_config.custom_fields(), version=mapping_config.version
    )

    secondary_match = config.get("secondary_match", True)
    matcher = None
    if secondary_match:
        matcher = NameMatcher(
            database,
            threshold=config.get("name_match_threshold", DEFAULT_NAME_MATCH_THRESHOLD),
        )

    return SyncEngine(
        database=database,
        client=client,
        mapper=mapper,
        matcher=matcher,
        secondary_match=secondary_match,
    )


def _open_database(ctx: click.Context) -> SyncDatabase:
    try:
        return open_database(ctx.obj["config_dir"], ctx.obj["config"])
    except (StoreError, OSError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


def _redirect_uri(option: str | None, config: dict[str, Any]) -> str:
    redirect_uri = option or config.get("redirect_uri")
    if not redirect_uri:
        click.echo(
            click.style(
                "Error: No redirect URI. Pass --redirect-uri or set redirect_uri "
                "in config.yaml.",
                fg="red",
            ),
            err=True,
        )
        sys.exit(1)
    return redirect_uri


def _entity_types(entity: str) -> list[EntityType]:
    if entity == "all":
        return list(EntityType)
    return [EntityType.parse(entity)]


@click.group()
@click.version_option(version=__version__, prog_name="crm-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CRM_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.crm-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CRM_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    CRM case data sync.

    Pulls contacts, matters (exchanges) and tasks from the practice-management
    CRM into the local case database, keeping an audit log of every run.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Keep the CLI usable (init-config in particular) with a broken file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config

    # CLI flag wins over the config file
    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = None
    if config.get("log_dir"):
        log_dir = Path(config["log_dir"]).expanduser()
    ctx.obj["log_dir"] = log_dir

    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Authorization Commands
# =============================================================================


@cli.command("auth-url")
@click.option(
    "--redirect-uri",
    "-r",
    default=None,
    help="Redirect URI registered with the CRM (default: redirect_uri from config).",
)
@click.option("--state", default=None, help="State value echoed back on redirect.")
@click.pass_context
def auth_url_command(
    ctx: click.Context, redirect_uri: str | None, state: str | None
) -> None:
    """
    Print the URL to visit to authorize this application.

    After approving access the CRM redirects to the redirect URI with a
    ``code`` parameter; pass that code to ``crm-sync authorize``.

    Example:

        crm-sync auth-url --redirect-uri http://localhost:8080/callback
    """
    config = ctx.obj["config"]
    uri = _redirect_uri(redirect_uri, config)

    client_id, _ = resolve_client_credentials(config)
    if not client_id:
        click.echo(
            click.style("Error: OAuth client id is not configured.", fg="red"),
            err=True,
        )
        click.echo(
            "Set CRM_SYNC_CLIENT_ID or client_id in config.yaml.", err=True
        )
        sys.exit(1)

    database = _open_database(ctx)
    try:
        manager = create_token_manager(database, config)
        click.echo("Open this URL in a browser to authorize crm-sync:\n")
        click.echo(manager.authorization_url(uri, state=state))
        click.echo("\nThen run: crm-sync authorize <code>")
    finally:
        database.close()


@cli.command("authorize")
@click.argument("code")
@click.option(
    "--redirect-uri",
    "-r",
    default=None,
    help="Redirect URI used for auth-url (default: redirect_uri from config).",
)
@click.pass_context
def authorize_command(ctx: click.Context, code: str, redirect_uri: str | None) -> None:
    """
    Exchange an authorization code for access and refresh tokens.

    Example:

        crm-sync authorize 4f3c2a... --redirect-uri http://localhost:8080/callback
    """
    logger = get_logger(__name__)
    config = ctx.obj["config"]
    uri = _redirect_uri(redirect_uri, config)

    database = _open_database(ctx)
    try:
        manager = create_token_manager(database, config)
        credential = manager.exchange_code(code, uri)
        click.echo(click.style("Authorization successful!", fg="green"))
        click.echo(f"Token expires at {credential.expires_at.isoformat()}")
        logger.info(f"Authorized {manager.provider}")

    except AuthenticationRequired as e:
        logger.error(f"Authorization rejected: {e}")
        click.echo(click.style(f"Authorization failed: {e}", fg="red"), err=True)
        sys.exit(1)

    except TokenRefreshError as e:
        logger.error(f"Token exchange failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    finally:
        database.close()


@cli.command("token-status")
@click.pass_context
def token_status_command(ctx: click.Context) -> None:
    """
    Show the state of the stored OAuth token.

    Example:

        crm-sync token-status
    """
    config = ctx.obj["config"]

    database = _open_database(ctx)

    try:
        manager = create_token_manager(database, config)
        status = manager.token_status()
        show_token_status(status, manager.provider)
        if status["status"] in ("no_token", "expired") and not status.get(
            "has_refresh_token"
        ):
            click.echo("\nRun 'crm-sync auth-url' to authorize.")
    finally:
        database.close()


@cli.command("revoke")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def revoke_command(ctx: click.Context, yes: bool) -> None:
    """
    Deactivate the stored OAuth token.

    Syncs will fail with an authorization error until crm-sync is
    authorized again.
    """
    config = ctx.obj["config"]

    if not yes:
        click.confirm("Deactivate the stored CRM token?", abort=True)

    database = _open_database(ctx)
    try:
        manager = create_token_manager(database, config)
        count = manager.revoke()
    finally:
        database.close()

    if count:
        click.echo(click.style("Token deactivated.", fg="green"))
    else:
        click.echo("No active token to deactivate.")


# =============================================================================
# Init Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.

    Examples:

        # Create config file (fails if already exists)
        crm-sync init-config

        # Overwrite existing config file
        crm-sync init-config --force
    """
    logger = get_logger(__name__)
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo(f"\nLocation: {config_file}")
        click.echo("\nNext steps:")
        click.echo("1. Set CRM_SYNC_CLIENT_ID and CRM_SYNC_CLIENT_SECRET")
        click.echo("2. Run 'crm-sync auth-url' to authorize")
        logger.info(f"Created configuration file: {config_file}")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        logger.error(f"Failed to create configuration file: {error}")
        sys.exit(1)


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@click.option(
    "--entity",
    "-e",
    type=click.Choice(ENTITY_CHOICES, case_sensitive=False),
    default="all",
    help="Entity type to sync (default: all).",
)
@click.option(
    "--full", is_flag=True, help="Fetch every record (ignore the last successful run)."
)
@click.option(
    "--sequential",
    is_flag=True,
    help="Sync entity types one after another instead of in parallel.",
)
@click.pass_context
def sync_command(ctx: click.Context, entity: str, full: bool, sequential: bool) -> None:
    """
    Pull CRM records into the local database.

    Incremental by default: only records modified since the last completed
    run of each entity type are fetched. Entity types that never completed a
    run are synced in full.

    Examples:

        # Incremental sync of everything
        crm-sync sync

        # Full resync of matters only
        crm-sync sync --entity matters --full
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]
    config = ctx.obj["config"]
    verbose = ctx.obj["verbose"]

    effective_full = full or config.get("full", False)
    parallel = not sequential and config.get("parallel", True)
    strategy = SyncStrategy.FULL if effective_full else SyncStrategy.INCREMENTAL
    types = _entity_types(entity.lower())

    database = _open_database(ctx)

    try:
        token_manager = create_token_manager(database, config)
        if token_manager.get_active_credential() is None:
            click.echo(
                click.style("Error: crm-sync is not authorized.", fg="red"), err=True
            )
            click.echo("Run: crm-sync auth-url", err=True)
            sys.exit(1)

        engine = create_engine(config_dir, config, database, token_manager)
        setup_matching_logger()

        if verbose:
            click.echo("Sync configuration:")
            click.echo(f"  Database: {database.db_path}")
            click.echo(f"  Entity types: {', '.join(et.value for et in types)}")
            click.echo(f"  Strategy: {strategy.value}")
            click.echo(f"  Parallel: {parallel and len(types) > 1}")
            click.echo()

        runs: dict[EntityType, Optional[SyncRun]]
        if len(types) == 1:
            run_id = engine.trigger_sync(types[0], strategy, triggered_by="cli")
            row = database.get_sync_run(run_id) if run_id is not None else None
            runs = {types[0]: SyncRun.from_dict(row) if row else None}
        else:
            runs = engine.run_many(
                types, strategy=strategy, parallel=parallel, triggered_by="cli"
            )

    except MappingConfigError as e:
        click.echo(click.style(f"Error: Field mapping error: {e}", fg="red"), err=True)
        sys.exit(1)

    finally:
        database.close()

    click.echo("=" * 50)
    failed = False
    for entity_type, run in runs.items():
        if run is None:
            click.echo(
                click.style(
                    f"{entity_type.value}: not started (already running)", fg="yellow"
                )
            )
            failed = True
            continue
        show_run_summary(run)
        if run.status is SyncRunStatus.FAILED:
            failed = True
    click.echo("=" * 50)

    if failed:
        logger.error("One or more sync runs did not complete")
        click.echo(click.style("\nSync finished with errors.", fg="red"), err=True)
        sys.exit(1)

    click.echo(click.style("\nSync completed successfully!", fg="green"))


# =============================================================================
# Status Commands
# =============================================================================


@cli.command("status")
@click.option(
    "--limit", "-n", default=10, show_default=True, help="Number of recent runs to list."
)
@click.pass_context
def status_command(ctx: click.Context, limit: int) -> None:
    """
    Show token state, per-entity sync state and recent runs.

    Example:

        crm-sync status --limit 20
    """
    config_dir = ctx.obj["config_dir"]
    config = ctx.obj["config"]

    database = _open_database(ctx)

    try:
        token_manager = create_token_manager(database, config)
        engine = create_engine(config_dir, config, database, token_manager)

        click.echo("=== CRM Sync Status ===\n")
        click.echo(f"Configuration directory: {config_dir}")
        click.echo(f"Database: {database.db_path}\n")

        show_token_status(token_manager.token_status(), token_manager.provider)
        click.echo()

        show_entity_status(engine.get_status())

        recent = database.get_recent_sync_runs(limit=limit)
        click.echo(f"\nRecent runs ({len(recent)}):")
        if not recent:
            click.echo("  No sync runs recorded yet.")
        for run in recent:
            click.echo(f"  {format_run_line(run)}")

    except (StoreError, MappingConfigError) as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    finally:
        database.close()


@cli.command("show-run")
@click.argument("run_id", type=int)
@click.pass_context
def show_run_command(ctx: click.Context, run_id: int) -> None:
    """
    Show one sync run with its per-record details.

    Example:

        crm-sync show-run 42
    """
    database = _open_database(ctx)
    try:
        run = database.get_sync_run(run_id)
        if run is None:
            click.echo(click.style(f"Error: Sync run {run_id} not found.", fg="red"), err=True)
            sys.exit(1)
        show_run_details(run, database.get_sync_run_details(run_id))
    finally:
        database.close()


# =============================================================================
# Daemon Commands
# =============================================================================


def _pid_file(config: dict[str, Any]) -> Path:
    from crm_sync.daemon import DEFAULT_PID_FILE

    if config.get("daemon_pid_file"):
        return Path(config["daemon_pid_file"]).expanduser()
    return DEFAULT_PID_FILE


@cli.group("daemon")
@click.pass_context
def daemon_group(ctx: click.Context) -> None:
    """
    Manage the background synchronization daemon.

    The daemon runs incremental syncs at a short interval and full syncs at
    a long one.

    Examples:

        # Start daemon (Ctrl+C or 'crm-sync daemon stop' to stop)
        crm-sync daemon start

        # Check daemon status
        crm-sync daemon status

        # Stop running daemon
        crm-sync daemon stop
    """
    pass


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help="Incremental sync interval (e.g. '30s', '15m', '1h'). Default: config or 15m.",
)
@click.option(
    "--full-interval",
    default=None,
    help="Full sync interval (e.g. '12h', '1d'). Default: config or 1d.",
)
@click.option(
    "--no-initial-sync",
    is_flag=True,
    help="Skip the initial full sync on daemon startup.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context,
    interval: str | None,
    full_interval: str | None,
    no_initial_sync: bool,
) -> None:
    """
    Start the synchronization daemon in the foreground.

    The daemon will:
    - Run a full sync on startup (unless --no-initial-sync)
    - Run incremental syncs at the interval and full syncs at the full interval
    - Stop on SIGTERM/SIGINT, cancelling a running sync at its next page
    - Write a PID file for daemon management

    Examples:

        crm-sync -v daemon start
        crm-sync daemon start --interval 30m --full-interval 12h
    """
    logger = get_logger(__name__)
    config_dir = ctx.obj["config_dir"]
    config = ctx.obj["config"]
    verbose = ctx.obj["verbose"]

    from crm_sync.daemon import (
        DaemonAlreadyRunningError,
        DaemonError,
        DaemonScheduler,
        parse_interval,
    )

    interval_str = interval or config.get("daemon_interval", "15m")
    full_interval_str = full_interval or config.get("daemon_full_sync_interval", "1d")
    try:
        interval_seconds = parse_interval(interval_str)
        full_interval_seconds = parse_interval(full_interval_str)
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    pid_file = _pid_file(config)
    parallel = config.get("parallel", True)

    click.echo(
        f"Starting daemon (incremental every {interval_str}, "
        f"full every {full_interval_str}); Ctrl+C to stop"
    )
    if verbose:
        click.echo(f"  Config directory: {config_dir}")
        click.echo(f"  PID file: {pid_file}")
        click.echo(f"  Initial sync: {'No' if no_initial_sync else 'Yes'}")

    database = _open_database(ctx)
    try:
        token_manager = create_token_manager(database, config)
        engine = create_engine(config_dir, config, database, token_manager)
    except MappingConfigError as e:
        database.close()
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    def sync_callback(full: bool, cancel_event: threading.Event) -> bool:
        """Run one scheduled sync of every entity type."""
        setup_matching_logger()
        strategy = SyncStrategy.FULL if full else SyncStrategy.INCREMENTAL
        runs = engine.run_many(
            strategy=strategy,
            parallel=parallel,
            cancel_event=cancel_event,
            triggered_by="daemon",
        )
        ok = True
        for entity_type, run in runs.items():
            if run is None:
                logger.warning(f"{entity_type.value} sync did not start")
                ok = False
            elif run.status is SyncRunStatus.FAILED:
                ok = False
        return ok

    try:
        scheduler = DaemonScheduler(
            interval=interval_seconds,
            full_sync_interval=full_interval_seconds,
            pid_file=pid_file,
            run_immediately=not no_initial_sync,
        )
        scheduler.set_sync_callback(sync_callback)

        logger.info(
            f"Daemon starting (interval={interval_seconds}s, "
            f"full_interval={full_interval_seconds}s)"
        )
        scheduler.run()

        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))

    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'crm-sync daemon stop' to stop the running daemon.")
        sys.exit(1)

    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        click.echo(click.style(f"Daemon error: {e}", fg="red"), err=True)
        sys.exit(1)

    finally:
        database.close()


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """
    Stop the running synchronization daemon.

    Sends SIGTERM; a sync in progress stops at its next page boundary and
    is recorded as cancelled.
    """
    logger = get_logger(__name__)

    from crm_sync.daemon import DaemonScheduler

    pid_file = _pid_file(ctx.obj["config"])
    pid = DaemonScheduler.get_running_pid(pid_file)

    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(f"Stopping daemon (PID: {pid})...")

    if DaemonScheduler.stop_running_daemon(pid_file):
        click.echo(click.style("Stop signal sent successfully.", fg="green"))
        logger.info(f"Sent stop signal to daemon (PID: {pid})")
    else:
        click.echo(
            click.style("Failed to send stop signal to daemon.", fg="red"), err=True
        )
        sys.exit(1)


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """
    Show whether the synchronization daemon is running.
    """
    from crm_sync.daemon import DaemonScheduler, PIDFileManager

    pid_file = _pid_file(ctx.obj["config"])

    click.echo("=== Daemon Status ===\n")

    pid = DaemonScheduler.get_running_pid(pid_file)

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        stale_pid = PIDFileManager(pid_file).read()
        if stale_pid is not None:
            click.echo(f"Stale PID file exists (PID: {stale_pid})")
            click.echo("It will be cleaned up on next daemon start.")
        else:
            click.echo("No daemon is currently running.")

    if ctx.obj["verbose"]:
        click.echo(f"\nPID file: {pid_file}")


if __name__ == "__main__":
    cli()
