"""
dbbackup command line entry point.
"""

import sys
from pathlib import Path

import typer

from dbbackup import configure_logging
from dbbackup.config import RunConfig, load_config, read_secret
from dbbackup.exceptions import ConfigError, MissingSecretError, VerificationError
from dbbackup.backup.encryption import AesGcmEncryptor, GpgEncryptor
from dbbackup.backup.executor import EXIT_FAILURE, prune_backups, run_backup
from dbbackup.backup.verification import verify_archive


app = typer.Typer(
    name="db-backup",
    help="Back up every non-system MariaDB/MySQL database into one verified archive.",
    add_completion=False,
)


def _load_config() -> RunConfig:
    try:
        return load_config()
    except ConfigError as e:
        typer.echo(f"[ERROR] {e}", err=True)
        raise typer.Exit(e.exit_code)


def _confirm(config: RunConfig, yes: bool) -> bool:
    # Unattended runs (cron, scheduler, pipes) never prompt
    if yes or config.assume_yes or not sys.stdin.isatty():
        return True
    typer.echo("DISCLAIMER: This tool is provided AS IS, without warranty. Use at your own risk.")
    typer.echo(f"Target backup directory: {config.backup_root}")
    return typer.confirm("Do you understand and want to continue?", default=False)


def _run(yes: bool, verbose: bool):
    config = _load_config()
    if not _confirm(config, yes):
        typer.echo("Aborted by user.")
        raise typer.Exit(0)

    config.backup_root.mkdir(parents=True, exist_ok=True)
    configure_logging(str(config.log_file), verbose)
    report = run_backup(config)
    raise typer.Exit(report.exit_code)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt (same as YES=1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run a backup when no command is given."""
    ctx.obj = {'yes': yes, 'verbose': verbose}
    if ctx.invoked_subcommand is None:
        _run(yes, verbose)


@app.command()
def run(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt (same as YES=1)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Run one backup now."""
    options = ctx.obj or {}
    _run(yes or options.get('yes', False), verbose or options.get('verbose', False))


@app.command()
def prune(ctx: typer.Context):
    """Delete archives and run directories older than DB_BACKUP_KEEP_DAYS."""
    config = _load_config()
    config.backup_root.mkdir(parents=True, exist_ok=True)
    configure_logging(str(config.log_file), (ctx.obj or {}).get('verbose', False))

    summary = prune_backups(config)
    if summary is not None:
        typer.echo(
            f"Deleted {len(summary['archives_deleted'])} archive(s) and "
            f"{len(summary['directories_deleted'])} run directory(ies)"
        )


@app.command()
def verify(
    archive: Path = typer.Argument(..., exists=True, dir_okay=False, help="Archive to verify"),
):
    """Verify that an existing archive decrypts and lists cleanly."""
    config = _load_config()
    configure_logging(None, False)

    encryptor = None
    if archive.suffix in ('.gpg', '.enc'):
        passphrase = config.passphrase or read_secret(config.passphrase_file)
        if not passphrase:
            error = MissingSecretError(config.passphrase_file)
            typer.echo(f"[ERROR] {error}", err=True)
            raise typer.Exit(error.exit_code)
        if archive.suffix == '.gpg':
            encryptor = GpgEncryptor(passphrase)
        else:
            encryptor = AesGcmEncryptor(passphrase)

    try:
        members = verify_archive(archive, encryptor)
    except VerificationError as e:
        typer.echo(f"FAILED: {e}", err=True)
        raise typer.Exit(EXIT_FAILURE)

    dumps = [name for name in members if name.endswith('.sql.gz')]
    typer.echo(f"OK: {archive} ({len(dumps)} dump(s))")
    for name in dumps:
        typer.echo(f"  {name}")


@app.command()
def schedule(ctx: typer.Context):
    """Run backups on DB_BACKUP_SCHEDULE until interrupted."""
    from dbbackup.scheduler import start_scheduler

    config = _load_config()
    config.backup_root.mkdir(parents=True, exist_ok=True)
    configure_logging(str(config.log_file), (ctx.obj or {}).get('verbose', False))
    try:
        start_scheduler(config)
    except ConfigError as e:
        typer.echo(f"[ERROR] {e}", err=True)
        raise typer.Exit(e.exit_code)

