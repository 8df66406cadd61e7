"""Collect command: pull a raw tenant snapshot for offline correlation."""

import logging
import time
import webbrowser
from datetime import datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..config import CLIENT_ID
from ..exceptions import AuthContextError
from ..snapshot import SNAPSHOT_KEYS, save_snapshot

console = Console()


def get_connector():
    from ..connectors.microsoft import MicrosoftConnector
    return MicrosoftConnector(client_id=CLIENT_ID)


def sign_in(connector, yes: bool = False):
    """Brief the user, run the device code flow, exit on failure."""
    console.print()
    console.print(Panel(
        "[bold]Authentication Context Inventory[/bold]\n\n"
        "This will:\n"
        "  1. Open a browser window for you to sign in with your admin account\n"
        "  2. Read policies, labels, groups and sites from your tenant [dim](read-only)[/dim]\n\n"
        "[bold]Permissions requested[/bold] [dim](delegated, read-only)[/dim]:\n"
        "  - Policy.Read.All                        — Conditional Access, contexts\n"
        "  - RoleManagement.Read.Directory          — PIM role policies\n"
        "  - RoleManagementPolicy.Read.AzureADGroup — PIM for Groups\n"
        "  - Group.Read.All, Sites.Read.All         — groups and sites\n"
        "  - InformationProtectionPolicy.Read       — sensitivity labels",
        border_style="blue",
    ))
    console.print()

    if not yes and not click.confirm("Proceed?", default=True):
        console.print("[dim]Cancelled.[/dim]")
        raise SystemExit(0)

    try:
        connector.authenticate(callback=_display_device_code)
    except PermissionError as e:
        _display_auth_error(str(e))
        raise SystemExit(1)

    console.print("[green]Signed in successfully.[/green]\n")


def run_collection(connector):
    """Collect the snapshot, exit when nothing at all could be read."""
    try:
        with console.status("[bold blue]Reading tenant configuration..."):
            snapshot, metadata = connector.collect()
    except AuthContextError as e:
        console.print(f"[red]Collection failed:[/red] {e}")
        raise SystemExit(1)

    if metadata.get("status") == "failed":
        console.print("[red]Collection failed.[/red] Could not query any APIs.")
        display_metadata(metadata)
        raise SystemExit(1)
    return snapshot, metadata


@click.command("collect")
@click.option("-o", "--output", "output_path", default=None,
              help="Snapshot file to write (default: authctx-snapshot-<date>.json)")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
@click.option("-V", "--verbose", is_flag=True, help="Log each collection layer")
def collect_command(output_path, yes, verbose):
    """Collect a raw tenant snapshot.

    Signs you in via browser device-code flow and saves every collection the
    inventory needs to a JSON file. Feed it back with
    [bold]authctx inventory --input[/bold] to correlate offline.

    \b
    Examples:
      authctx collect                       # Default file name
      authctx collect -o contoso.json       # Explicit file
    """
    if verbose:
        logging.getLogger("authctx_cli").setLevel(logging.INFO)

    connector = get_connector()
    sign_in(connector, yes=yes)
    snapshot, metadata = run_collection(connector)

    if output_path is None:
        output_path = f"authctx-snapshot-{datetime.now().strftime('%Y-%m-%d')}.json"

    try:
        saved = save_snapshot(snapshot, output_path)
    except AuthContextError as e:
        console.print(f"[red]{e}[/red]")
        raise SystemExit(1)

    _display_collection_counts(snapshot)
    display_metadata(metadata)
    console.print(f"\n[green]Snapshot saved:[/green] {saved}")


# ── Display helpers ───────────────────────────────────────────────────────


def _display_collection_counts(snapshot):
    table = Table(title="Collections", show_header=True, header_style="bold")
    table.add_column("Collection")
    table.add_column("Items", justify="right")
    for key, attr in SNAPSHOT_KEYS.items():
        items = getattr(snapshot, attr)
        table.add_row(key, "[yellow]unavailable[/yellow]" if items is None else str(len(items)))
    console.print()
    console.print(table)


def _display_device_code(flow: dict):
    """Show sign-in instructions and auto-open browser."""
    url = flow.get("verification_uri", "https://microsoft.com/devicelogin")
    code = flow.get("user_code", "???")

    console.print(Panel(
        "Copy the code below, then sign in with your admin account\n"
        "in the browser window that will open.\n\n"
        f"  URL:   [bold blue]{url}[/bold blue]\n\n"
        f"  Code:  [bold yellow]{code}[/bold yellow]",
        title="Sign In",
        border_style="yellow",
        padding=(1, 2),
    ))

    for remaining in range(5, 0, -1):
        console.print(f"  Opening browser in {remaining}s — copy the code above...", end="\r")
        time.sleep(1)
    console.print(" " * 60, end="\r")

    try:
        webbrowser.open(url)
        console.print("[green]Browser opened.[/green] Paste the code and sign in.")
    except webbrowser.Error:
        console.print("Could not open browser automatically. Visit the URL above.")

    console.print("[dim]Waiting for sign-in...[/dim]\n")


def _display_auth_error(error_msg: str):
    """Show actionable guidance for authentication failures."""
    console.print("\n[red]Authentication failed.[/red]\n")

    if "AADSTS65001" in error_msg:
        console.print(Panel(
            "[bold]Permission consent required[/bold]\n\n"
            "An administrator must approve the requested read-only permissions.\n"
            "When the sign-in page appears, click [bold]Accept[/bold].\n\n"
            "Then run [bold]authctx collect[/bold] again.",
            border_style="yellow",
            padding=(1, 2),
        ))
    elif "AADSTS530003" in error_msg:
        console.print(Panel(
            "[bold]Blocked by Conditional Access[/bold]\n\n"
            "Your tenant's Conditional Access policies are blocking\n"
            "the device code sign-in. Sign in from a compliant device\n"
            "or ask an administrator to allow device code flow.",
            border_style="yellow",
            padding=(1, 2),
        ))
    elif "expired" in error_msg.lower() or "cancel" in error_msg.lower():
        console.print("Sign-in was cancelled or timed out.")
    else:
        console.print(f"[dim]{error_msg}[/dim]\n")
        console.print("Set [bold]AUTHCTX_CLIENT_ID[/bold] to use your own app registration.")


def display_metadata(metadata: dict):
    """Show API query status footer."""
    console.print()
    apis_queried = metadata.get("apis_queried", [])
    apis_failed = metadata.get("apis_failed", [])
    permissions_missing = metadata.get("permissions_missing", [])

    if apis_queried:
        console.print(f"[dim]APIs queried: {', '.join(apis_queried)}[/dim]")
    if apis_failed:
        console.print(f"[yellow]APIs failed: {', '.join(apis_failed)}[/yellow]")
    if permissions_missing:
        console.print(Panel(
            "[bold]Some permissions are missing.[/bold]\n\n"
            "The scan completed but couldn't access all data.\n"
            "Ask your administrator to grant consent for:\n\n"
            + "\n".join(f"  [red]x[/red] {p}" for p in permissions_missing),
            border_style="yellow",
            padding=(1, 2),
        ))
