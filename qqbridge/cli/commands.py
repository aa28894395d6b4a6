"""CLI commands for qqbridge."""

import sys

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from qqbridge import __logo__, __version__

app = typer.Typer(
    name="qqbridge",
    help=f"{__logo__} qqbridge - Matrix <-> QQ puppeting bridge",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} qqbridge v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """qqbridge - Matrix <-> QQ puppeting bridge."""
    pass


def _setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


def _open_store():
    from qqbridge.config.loader import load_config
    from qqbridge.storage.bridge_store import BridgeStore

    config = load_config()
    _setup_logging(config.logging.level)
    return config, BridgeStore(config.database.resolved_path)


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard():
    """Write a default configuration to ~/.qqbridge/config.json."""
    from qqbridge.config.loader import get_config_path, save_config
    from qqbridge.config.schema import Config

    config_path = get_config_path()

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} qqbridge is ready!")
    console.print("\nNext steps:")
    console.print("  1. Set [cyan]homeserver.address[/cyan] and [cyan]homeserver.domain[/cyan]")
    console.print("  2. Fill in [cyan]appservice.asToken[/cyan] and [cyan]appservice.hsToken[/cyan]")
    console.print("     from your appservice registration file")


# ============================================================================
# Inspection
# ============================================================================


@app.command()
def portals(
    receiver: str = typer.Option(None, "--receiver", "-r", help="Only private chats of this QQ account"),
):
    """List bridged chats."""
    from qqbridge.core.identity import UID

    _, store = _open_store()
    try:
        records = store.find_private_chats(UID.user(receiver)) if receiver else store.get_all_portals()
    finally:
        store.close()

    if not records:
        console.print("No portals.")
        return

    table = Table(title="Portals")
    table.add_column("QQ chat", style="cyan")
    table.add_column("Receiver")
    table.add_column("Name")
    table.add_column("Room")
    table.add_column("Encrypted")
    table.add_column("Last sync")

    for record in records:
        kind = "group" if record.key.is_group else "private"
        receiver_text = "" if record.key.is_group else record.key.receiver.value
        room = record.mxid or "[dim]no room[/dim]"
        encrypted = "[green]yes[/green]" if record.encrypted else "[dim]no[/dim]"
        last_sync = record.last_sync.strftime("%Y-%m-%d %H:%M") if record.last_sync else ""
        table.add_row(f"{record.key.uid.value} ({kind})", receiver_text, record.name, room, encrypted, last_sync)

    console.print(table)


@app.command()
def puppets():
    """List QQ ghost users."""
    _, store = _open_store()
    try:
        records = store.get_all_puppets()
    finally:
        store.close()

    if not records:
        console.print("No puppets.")
        return

    table = Table(title="Puppets")
    table.add_column("UIN", style="cyan")
    table.add_column("Display name")
    table.add_column("Quality")
    table.add_column("Avatar")
    table.add_column("Double puppet")

    for record in records:
        avatar = "[green]✓[/green]" if record.avatar_set else "[dim]-[/dim]"
        table.add_row(
            record.uid.value,
            record.displayname,
            record.name_quality.name.lower(),
            avatar,
            record.custom_mxid or "",
        )

    console.print(table)


@app.command()
def users():
    """List Matrix users and the QQ accounts they are logged in with."""
    _, store = _open_store()
    try:
        records = store.get_all_users()
    finally:
        store.close()

    if not records:
        console.print("No users.")
        return

    table = Table(title="Users")
    table.add_column("Matrix ID", style="cyan")
    table.add_column("QQ")
    table.add_column("Management room")
    for record in records:
        table.add_row(record.mxid, record.uin or "[dim]not logged in[/dim]", record.management_room or "")
    console.print(table)


@app.command()
def status():
    """Show qqbridge status."""
    from qqbridge.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()
    db_path = config.database.resolved_path

    console.print(f"{__logo__} qqbridge Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"Database: {db_path} {'[green]✓[/green]' if db_path.exists() else '[dim]not created[/dim]'}")
    console.print(f"Homeserver: {config.homeserver.address} ({config.homeserver.domain})")
    console.print(f"Bot: {config.bot_mxid}")
    has_tokens = bool(config.appservice.as_token and config.appservice.hs_token)
    console.print(f"Appservice tokens: {'[green]✓[/green]' if has_tokens else '[dim]not set[/dim]'}")


if __name__ == "__main__":
    app()
