"""Inventory command: correlate authentication contexts across domains."""

import json
import logging

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ..exceptions import APIError, NotAuthenticatedError, SnapshotError
from ..models import COLUMNS, Domain, RelationKind
from ..pipeline import build_inventory
from ..snapshot import load_snapshot, save_snapshot

console = Console()

RELATION_STYLES = {
    RelationKind.DIRECT.value: "[green]Direct[/green]",
    RelationKind.INHERITED_VIA_LABEL.value: "[cyan]InheritedViaLabel[/cyan]",
    RelationKind.INHERITED_VIA_GUESS.value: "[yellow]InheritedViaGuess[/yellow]",
}

DOMAIN_CHOICES = [d.value for d in Domain]


@click.command("inventory")
@click.option("-i", "--input", "input_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Correlate a snapshot written by 'authctx collect' instead of the live tenant")
@click.option("--resolve", is_flag=True,
              help="With --input: sign in to resolve names and confirm guessed sites")
@click.option("--domain", "domains", multiple=True, type=click.Choice(DOMAIN_CHOICES, case_sensitive=False),
              help="Only show these domains (repeatable)")
@click.option("--save-snapshot", "snapshot_path", default=None,
              help="Live mode: also write the collected snapshot to this file")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.option("--report", "report_path", is_flag=False, flag_value="auto", default=None,
              help="Export as HTML report (optionally pass a filename)")
@click.option("-y", "--yes", is_flag=True, help="Skip confirmation prompt")
@click.option("-V", "--verbose", is_flag=True, help="Log diagnostics as they are recorded")
def inventory_command(input_path, resolve, domains, snapshot_path, as_json, report_path, yes, verbose):
    """Show where authentication contexts are enforced.

    Joins Conditional Access, PIM (directory, groups, Azure resources),
    protected actions, sensitivity labels, groups and sites into one table
    per domain.

    \b
    Examples:
      authctx inventory                          # Live tenant
      authctx inventory -i snapshot.json         # Offline
      authctx inventory -i snapshot.json --resolve
      authctx inventory --domain Sites --report  # HTML report
      authctx inventory -i snapshot.json --json  # Raw JSON output
    """
    from .collect import display_metadata, get_connector, run_collection, sign_in

    if verbose:
        logging.getLogger("authctx_cli").setLevel(logging.INFO)

    connector = None
    metadata = None
    try:
        if input_path:
            snapshot = load_snapshot(input_path)
            if resolve:
                connector = get_connector()
                sign_in(connector, yes=yes)
        else:
            connector = get_connector()
            sign_in(connector, yes=yes)
            snapshot, metadata = run_collection(connector)
            if snapshot_path:
                saved = save_snapshot(snapshot, snapshot_path)
                console.print(f"[dim]Snapshot saved: {saved}[/dim]")

        if as_json:
            result = build_inventory(
                snapshot,
                lookup=connector,
                site_confirmer=connector.confirm_site if connector else None,
            )
        else:
            with console.status("[bold blue]Correlating..."):
                result = build_inventory(
                    snapshot,
                    lookup=connector,
                    site_confirmer=connector.confirm_site if connector else None,
                )
    except SnapshotError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)
    except NotAuthenticatedError:
        console.print("[red]Not authenticated.[/red] Sign-in did not complete.")
        raise SystemExit(1)
    except APIError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1)

    selected = _selected_domains(domains)

    if as_json:
        data = result.to_dict()
        data["domains"] = {k: v for k, v in data["domains"].items() if k in {d.value for d in selected}}
        print(json.dumps(data, indent=2, default=str))
        return

    for domain in selected:
        _display_domain(domain, result.rows[domain])

    _display_markers(result.markers)
    _display_diagnostics(result)
    if metadata:
        display_metadata(metadata)

    if report_path is not None:
        _export_inventory_report(result, selected, report_path)


def _selected_domains(domains) -> list:
    if not domains:
        return list(Domain)
    wanted = {d.lower() for d in domains}
    return [d for d in Domain if d.value.lower() in wanted]


# ── Display helpers ───────────────────────────────────────────────────────


def _display_domain(domain: Domain, rows: list):
    table = Table(title=domain.value, title_justify="left")
    table.add_column("Scope", width=7)
    table.add_column("Entity", max_width=40)
    table.add_column("Entity ID", style="dim", max_width=24, overflow="ellipsis")
    table.add_column("Authentication Context", max_width=30)
    table.add_column("Context ID", style="dim", no_wrap=True)
    table.add_column("Relation", no_wrap=True)
    table.add_column("Detail", max_width=40)

    for row in rows:
        if row.is_placeholder:
            table.add_row("[dim]-[/dim]", f"[dim]{row.entity_name}[/dim]", "", "", "", "", "")
            continue
        table.add_row(
            row.scope,
            escape(row.entity_name),
            escape(row.entity_id),
            escape(row.marker_name),
            escape(row.marker_id),
            RELATION_STYLES.get(row.relation, row.relation),
            escape(row.detail) if row.detail else "[dim]-[/dim]",
        )

    console.print()
    console.print(table)


def _display_markers(markers: list):
    if not markers:
        return
    table = Table(title="Authentication Contexts", title_justify="left")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("References", justify="right")
    table.add_column("Used In")

    for m in markers:
        status = m["Status"]
        if status == "available":
            status = "[green]available[/green]"
        elif status in ("unavailable", "not in catalogue"):
            status = f"[yellow]{status}[/yellow]"
        table.add_row(escape(m["ID"]), escape(m["Name"]), status, m["References"], escape(m["Used In"]))

    console.print()
    console.print(table)


def _display_diagnostics(result):
    counts = result.diagnostics.counts()
    console.print()
    console.print(f"[bold]{result.reference_count()}[/bold] reference(s) across "
                  f"{sum(1 for rows in result.rows.values() if not rows[0].is_placeholder)} domain(s).")
    if result.unavailable:
        console.print(f"[yellow]No data collected for: {', '.join(result.unavailable)}[/yellow]")
    if counts:
        summary = ", ".join(f"{kind} ({n})" for kind, n in sorted(counts.items()))
        console.print(f"[dim]Diagnostics: {summary}. Use -V for details.[/dim]")


# ── Report export ─────────────────────────────────────────────────────────


def _export_inventory_report(result, domains: list, report_path):
    """Export the inventory as an HTML report."""
    from ..report_builder import ReportBuilder, _esc, relation_badge

    rb = ReportBuilder("Authentication Context Inventory",
                       f"{result.reference_count()} references, {len(result.markers)} contexts")

    rb.add_kv("Summary", {
        "References": result.reference_count(),
        "Authentication Contexts": len(result.markers),
        "Domains Without Data": len(result.unavailable),
        "Diagnostics": len(result.diagnostics),
    })

    if result.unavailable:
        rb.add_status(f"No data collected for: {', '.join(result.unavailable)}", "warning")

    columns = list(COLUMNS[1:])
    for domain in domains:
        rows, classes = [], []
        for row in result.rows[domain]:
            cells = [_esc(c) for c in row.cells()[1:]]
            cells[5] = relation_badge(row.relation)
            rows.append(cells)
            classes.append("placeholder" if row.is_placeholder else "")
        rb.add_table(domain.value, columns, rows, col_styles={2: "mono", 4: "mono"}, row_classes=classes)

    if result.markers:
        marker_cols = ["ID", "Name", "Status", "References", "Used In"]
        rb.add_table(
            "Authentication Contexts",
            marker_cols,
            [[_esc(m[c]) for c in marker_cols] for m in result.markers],
            col_styles={0: "mono"},
        )

    counts = result.diagnostics.counts()
    if counts:
        items = "".join(f"<li>{_esc(kind)}: {n}</li>" for kind, n in sorted(counts.items()))
        rb.add_panel("Diagnostics", f"<ul>{items}</ul>")

    saved = rb.save(None if report_path == "auto" else report_path)
    console.print(f"\n[green]Report saved:[/green] {saved}")
