"""Operator commands: schema setup, development reset, token issuance, serving."""

import sys
from dataclasses import replace

import click

from vaultsync import __version__
from vaultsync.auth import TokenAuthenticator, resolve_secret
from vaultsync.config import Settings
from vaultsync.errors import VaultSyncError
from vaultsync.logging_config import setup_logging
from vaultsync.main import run
from vaultsync.store import VaultStore


@click.group()
@click.version_option(__version__, prog_name="vaultsync")
@click.option("--database-url", envvar="DATABASE_URL", default=None, help="Overrides DATABASE_URL.")
@click.pass_context
def main(ctx, database_url):
    """VaultSync server administration."""
    try:
        settings = Settings.from_env()
    except VaultSyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    setup_logging(settings.log_level, structured=settings.log_json)
    ctx.obj = {"settings": settings, "database_url": database_url or settings.database_url}


def _store(ctx) -> VaultStore:
    settings = ctx.obj["settings"]
    return VaultStore.from_url(ctx.obj["database_url"], lock_timeout=settings.lock_timeout_seconds)


@main.command("init-db")
@click.pass_context
def init_db(ctx):
    """Create the vault table if it does not exist."""
    try:
        with _store(ctx):
            pass
    except VaultSyncError as exc:
        click.echo(f"Error initializing database: {exc}", err=True)
        sys.exit(1)
    click.echo("Database initialized: vaults")


@main.command("reset-db")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def reset_db(ctx, yes):
    """Drop and recreate all tables. Development only."""
    if not yes:
        click.confirm("This deletes every stored vault. Continue?", abort=True)
    store = _store(ctx)
    try:
        store.reset()
    finally:
        store.close()
    click.echo("Database reset complete.")


@main.command("issue-token")
@click.argument("user_id")
@click.argument("device_id")
@click.pass_context
def issue_token(ctx, user_id, device_id):
    """Print a bearer token for USER_ID on DEVICE_ID."""
    settings = ctx.obj["settings"]
    try:
        authenticator = TokenAuthenticator(
            resolve_secret(settings.secret_key, settings.secret_key_file),
            ttl_days=settings.token_ttl_days,
        )
    except VaultSyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(authenticator.issue_token(user_id, device_id))


@main.command("serve")
@click.option("--host", default=None)
@click.option("--port", default=None, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Run the HTTP API with uvicorn."""
    settings = ctx.obj["settings"]
    settings = replace(
        settings,
        database_url=ctx.obj["database_url"],
        host=host or settings.host,
        port=port or settings.port,
    )
    run(settings)


if __name__ == "__main__":
    main()
