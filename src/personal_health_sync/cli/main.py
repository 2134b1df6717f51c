"""
Command-line interface for Personal Health Sync.

Provides commands for queueing mutations, draining the sync queue (also as a
scheduled background delivery agent), and managing local encryption.
"""

import json
from typing import Any, NoReturn

import typer

from personal_health_sync.domain.sync import SyncEvent
from personal_health_sync.infrastructure.platform.connectivity import ManualConnectivityMonitor
from personal_health_sync.runtime import HealthSyncRuntime
from personal_health_sync.utils.exceptions import (
    LockedError,
    PersonalHealthSyncError,
    WrongPassphraseError,
)
from personal_health_sync.utils.hashing import generate_passphrase
from personal_health_sync.utils.logging_config import get_logger, setup_logging
from personal_health_sync.utils.parameters import ParameterLoader
from personal_health_sync.utils.timezone_utils import format_millis, is_valid_timezone

app = typer.Typer(help="Personal Health Sync - Offline-first sync and local encryption")
encryption_app = typer.Typer(help="Manage encryption of locally stored records")
app.add_typer(encryption_app, name="encryption")

logger = get_logger(__name__)

CONFIG_OPTION = typer.Option("config/config.yaml", help="Path to configuration file")
PASSPHRASE_OPTION = typer.Option(
    None, envvar="PHS_PASSPHRASE", help="Passphrase to unlock encrypted records"
)


def init_config(config_path: str = "config/config.yaml") -> ParameterLoader:
    """
    Initialize configuration and logging.

    Args:
        config_path: Path to configuration file.

    Returns:
        Parameter loader instance.
    """
    param_loader = ParameterLoader(config_path)
    setup_logging(param_loader.get_logging_config(), "personal_health_sync")
    return param_loader


def init_runtime(
    config_path: str,
    passphrase: str | None = None,
    offline: bool = False,
    foreground: bool = True,
) -> HealthSyncRuntime:
    """
    Build the runtime for one command and unlock it if asked to.

    Args:
        config_path: Path to configuration file.
        passphrase: Optional passphrase to unlock encrypted records with.
        offline: Force connectivity off for this invocation.
        foreground: False when running as the background delivery agent.

    Returns:
        Wired runtime.
    """
    param_loader = init_config(config_path)
    connectivity = ManualConnectivityMonitor(online=False) if offline else None
    runtime = HealthSyncRuntime.build(
        param_loader.config, connectivity=connectivity, foreground=foreground
    )
    if passphrase and runtime.key_manager.is_enabled():
        runtime.key_manager.unlock(passphrase)
    return runtime


def fail(message: str, error: Exception) -> NoReturn:
    """Log and print an error, then exit with status 1."""
    logger.error(f"{message}: {error}")
    if isinstance(error, WrongPassphraseError):
        typer.echo("Error: wrong password", err=True)
    elif isinstance(error, LockedError):
        typer.echo("Error: data is encrypted, please unlock first", err=True)
    else:
        typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(code=1) from error


def echo_event(event: SyncEvent) -> None:
    """Print sync events as they are published."""
    if event.type == "sync-complete":
        typer.echo(
            f"Synced {len(event.synced)}, abandoned {len(event.failed)}, "
            f"remaining {event.remaining}"
        )
        for item in event.failed:
            typer.echo(f"  ! gave up on {item.id} after {item.retry_count} attempts")
    elif event.type == "queued":
        typer.echo(f"Queued {event.item.id} for background sync")
    elif event.type == "sync-error":
        typer.echo(f"Sync aborted: {event.message}", err=True)
    elif event.type == "background-sync-complete":
        typer.echo(f"Background sync delivered {event.synced_count} items")


@app.command()
def status(
    config_path: str = CONFIG_OPTION,
    timezone: str = typer.Option("UTC", help="Timezone for displayed timestamps"),
) -> None:
    """
    Show connectivity, queue and encryption status.
    """
    if not is_valid_timezone(timezone):
        typer.echo(f"Error: unknown timezone {timezone}", err=True)
        raise typer.Exit(code=1)

    try:
        runtime = init_runtime(config_path)
        try:
            runtime.queue.load_from_storage()
            sync_status = runtime.engine.get_status()
            crypto_status = runtime.key_manager.get_status()
            pending_runs = runtime.bridge.pending_runs()
        finally:
            runtime.close()

        typer.echo(f"Online: {sync_status.online}")
        typer.echo(f"Queued items: {sync_status.queue_length}")
        for item in sync_status.queue:
            typer.echo(
                f"  - {item.id} [{item.kind}] queued {format_millis(item.enqueued_at, timezone)}"
                f" retries={item.retry_count}{' offline' if item.offline_origin else ''}"
            )
        typer.echo(f"Deferred runs: {', '.join(pending_runs) if pending_runs else 'none'}")
        typer.echo(
            f"Encryption: available={crypto_status.available} "
            f"enabled={crypto_status.enabled} unlocked={crypto_status.unlocked}"
        )

    except PersonalHealthSyncError as e:
        fail("Status failed", e)


@app.command()
def queue(
    kind: str = typer.Argument(..., help="Mutation kind, e.g. measurement"),
    data: str = typer.Argument(..., help="Mutation data as a JSON object"),
    config_path: str = CONFIG_OPTION,
    offline: bool = typer.Option(False, help="Treat this invocation as offline"),
    passphrase: str | None = PASSPHRASE_OPTION,
) -> None:
    """
    Queue a mutation and sync immediately when online.
    """
    try:
        payload: Any = json.loads(data)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: data is not valid JSON: {e}", err=True)
        raise typer.Exit(code=1) from e
    if not isinstance(payload, dict):
        typer.echo("Error: data must be a JSON object", err=True)
        raise typer.Exit(code=1)

    try:
        runtime = init_runtime(config_path, passphrase=passphrase, offline=offline)
        try:
            runtime.engine.add_listener(echo_event)
            item_id = runtime.engine.queue_data(kind, payload)
        finally:
            runtime.close()

        typer.echo(item_id)

    except PersonalHealthSyncError as e:
        fail("Queue failed", e)


@app.command()
def sync(
    config_path: str = CONFIG_OPTION,
    passphrase: str | None = PASSPHRASE_OPTION,
) -> None:
    """
    Drain the sync queue now, in the foreground.
    """
    try:
        runtime = init_runtime(config_path, passphrase=passphrase)
        try:
            runtime.engine.add_listener(echo_event)
            result = runtime.start()
        finally:
            runtime.close()

        if result is None:
            typer.echo("Nothing synced (offline or sync failed)")

    except PersonalHealthSyncError as e:
        fail("Sync failed", e)


@app.command()
def flush(
    config_path: str = CONFIG_OPTION,
    force: bool = typer.Option(False, help="Drain even if no deferred run is registered"),
    passphrase: str | None = PASSPHRASE_OPTION,
) -> None:
    """
    Run as the background delivery agent.

    Intended to be invoked by a scheduler. Drains the queue when a deferred
    run has been registered and leaves a notice for the foreground app.
    """
    try:
        runtime = init_runtime(config_path, passphrase=passphrase, foreground=False)
        try:
            result = runtime.background_agent().run_pending(force=force)
        finally:
            runtime.close()

        if result is None:
            typer.echo("No background sync performed")
        else:
            typer.echo(f"Background sync: {len(result.synced)} synced, {result.remaining} remaining")

    except PersonalHealthSyncError as e:
        fail("Background sync failed", e)


@app.command("retry-failed")
def retry_failed(
    config_path: str = CONFIG_OPTION,
    passphrase: str | None = PASSPHRASE_OPTION,
) -> None:
    """
    Reset retry counters of failed items and sync again.
    """
    try:
        runtime = init_runtime(config_path, passphrase=passphrase)
        try:
            runtime.engine.add_listener(echo_event)
            runtime.engine.retry_failed()
        finally:
            runtime.close()

    except PersonalHealthSyncError as e:
        fail("Retry failed", e)


@app.command("clear-queue")
def clear_queue(
    config_path: str = CONFIG_OPTION,
    yes: bool = typer.Option(False, "--yes", help="Do not ask for confirmation"),
) -> None:
    """
    Discard every pending item. Use with caution.
    """
    if not yes:
        typer.confirm("Discard all pending sync items?", abort=True)

    try:
        runtime = init_runtime(config_path)
        try:
            runtime.engine.clear_queue()
        finally:
            runtime.close()

        typer.echo("Sync queue cleared")

    except PersonalHealthSyncError as e:
        fail("Clear queue failed", e)


@app.command("show-record")
def show_record(
    name: str = typer.Argument(..., help="Record name, e.g. measurements"),
    config_path: str = CONFIG_OPTION,
    passphrase: str | None = PASSPHRASE_OPTION,
) -> None:
    """
    Print a stored record, decrypting it if necessary.
    """
    try:
        runtime = init_runtime(config_path, passphrase=passphrase)
        try:
            value = runtime.record_store.load(name)
        finally:
            runtime.close()

        typer.echo(json.dumps(value, indent=2, ensure_ascii=False))

    except (PersonalHealthSyncError, ValueError) as e:
        fail("Show record failed", e)


@app.command("generate-passphrase")
def generate_passphrase_command(
    length: int = typer.Option(16, min=8, help="Number of characters"),
) -> None:
    """
    Print a random passphrase.
    """
    typer.echo(generate_passphrase(length))


@encryption_app.command("status")
def encryption_status(config_path: str = CONFIG_OPTION) -> None:
    """
    Show whether encryption is available and enabled.
    """
    try:
        runtime = init_runtime(config_path)
        try:
            current = runtime.key_manager.get_status()
        finally:
            runtime.close()

        typer.echo(f"Available: {current.available}")
        typer.echo(f"Enabled: {current.enabled}")

    except PersonalHealthSyncError as e:
        fail("Encryption status failed", e)


@encryption_app.command("enable")
def encryption_enable(
    config_path: str = CONFIG_OPTION,
    passphrase: str = typer.Option(
        ..., prompt=True, hide_input=True, confirmation_prompt=True, help="New passphrase"
    ),
) -> None:
    """
    Enable encryption and encrypt existing records.
    """
    try:
        runtime = init_runtime(config_path)
        try:
            migrated = runtime.key_manager.enable_encryption(passphrase)
        finally:
            runtime.close()

        typer.echo(f"Encryption enabled, {len(migrated)} records encrypted")

    except PersonalHealthSyncError as e:
        fail("Enabling encryption failed", e)


@encryption_app.command("disable")
def encryption_disable(
    config_path: str = CONFIG_OPTION,
    passphrase: str = typer.Option(..., prompt=True, hide_input=True, help="Current passphrase"),
) -> None:
    """
    Decrypt all records and disable encryption.
    """
    try:
        runtime = init_runtime(config_path)
        try:
            restored = runtime.key_manager.disable_encryption(passphrase)
        finally:
            runtime.close()

        typer.echo(f"Encryption disabled, {len(restored)} records decrypted")

    except PersonalHealthSyncError as e:
        fail("Disabling encryption failed", e)


@encryption_app.command("verify")
def encryption_verify(
    config_path: str = CONFIG_OPTION,
    passphrase: str = typer.Option(..., prompt=True, hide_input=True, help="Passphrase to check"),
) -> None:
    """
    Check a passphrase without unlocking anything.
    """
    try:
        runtime = init_runtime(config_path)
        try:
            valid = runtime.key_manager.verify_password(passphrase)
        finally:
            runtime.close()

    except PersonalHealthSyncError as e:
        fail("Verification failed", e)

    if not valid:
        typer.echo("Passphrase does not match", err=True)
        raise typer.Exit(code=1)
    typer.echo("Passphrase is correct")


if __name__ == "__main__":
    app()
