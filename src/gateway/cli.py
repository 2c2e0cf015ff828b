"""
Admin CLI for license provisioning.

Mints unused license keys into the licenses collection and revokes keys.
"""

import asyncio
import logging
import sys
from typing import List, Optional

import typer
from pymongo.errors import DuplicateKeyError
from rich.console import Console
from rich.table import Table

from gateway.settings import Settings, configure_logging
from state.licenses import LicenseStore, generate_key, is_valid_key_format, normalize_key
from state.mongo import close_mongo, init_mongo

logger = logging.getLogger(__name__)

app = typer.Typer(help="Trade Journal Gateway license administration.")
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

MAX_KEYS_PER_RUN = 10000


async def provision_keys(store: LicenseStore, count: int) -> List[str]:
    """Insert ``count`` new unused keys and return them in creation order."""
    created: List[str] = []
    while len(created) < count:
        key = generate_key()
        try:
            await store.create(key)
        except DuplicateKeyError:
            logger.info("Generated key already exists; drawing another")
            continue
        created.append(key)
    return created


async def revoke_key(store: LicenseStore, raw_key: str) -> bool:
    key = normalize_key(raw_key)
    if not is_valid_key_format(key):
        return False
    return await store.revoke(key)


async def _with_store(mongodb_uri: Optional[str], action):
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    client, db = await init_mongo(mongodb_uri or settings.mongodb_uri)
    try:
        return await action(LicenseStore(db=db))
    finally:
        await close_mongo(client)


@app.command()
def generate(
    count: int = typer.Option(10, "--count", "-n", min=1, max=MAX_KEYS_PER_RUN, help="Number of keys to mint"),
    mongodb_uri: Optional[str] = typer.Option(None, "--mongodb-uri", help="Overrides MONGODB_URI"),
):
    """Mint unused license keys and print them."""
    try:
        keys = asyncio.run(_with_store(mongodb_uri, lambda store: provision_keys(store, count)))
    except Exception as e:
        console.print(f"[red]Error generating keys:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"{len(keys)} new license key(s)")
    table.add_column("Key")
    table.add_column("Status")
    for key in keys:
        table.add_row(key, "unused")
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def revoke(
    key: str = typer.Argument(..., help="License key to revoke"),
    mongodb_uri: Optional[str] = typer.Option(None, "--mongodb-uri", help="Overrides MONGODB_URI"),
):
    """Revoke a license key."""
    try:
        revoked = asyncio.run(_with_store(mongodb_uri, lambda store: revoke_key(store, key)))
    except Exception as e:
        console.print(f"[red]Error revoking key:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not revoked:
        console.print(f"[yellow]No license to revoke for {normalize_key(key)}[/]")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Revoked {normalize_key(key)}")
    sys.exit(EXIT_CODE_OK)


if __name__ == "__main__":
    app()
