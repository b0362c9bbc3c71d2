import typer
from typing import List, Optional
from rich.table import Table
from dev.utils import api_request, console, print_success, print_info

app = typer.Typer(help="Manage the mods of a connection")

BASE = "/api/server/mods"
ConnectionOption = typer.Option(None, "--connection", "-c", help="Connection ID (default connection if omitted)")

@app.command("list")
def list_mods(connection: Optional[str] = ConnectionOption):
    """List mods in load order with their compatibility"""
    mods = api_request("GET", f"{BASE}/", connection)
    if not mods:
        print_info("No mods installed.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Workshop ID")
    table.add_column("Version")
    table.add_column("Enabled", justify="center")
    table.add_column("Compatible", justify="center")

    for m in mods:
        compatible = {True: "[green]yes[/green]", False: "[red]no[/red]"}.get(m.get("compatible"), "?")
        table.add_row(
            str(m["load_order"]), m["id"], m["name"], m["source"], m.get("version") or "-",
            "✔" if m["enabled"] else "✖", compatible,
        )
    console.print(table)

@app.command("add")
def add_mod(
    source: str = typer.Argument(..., help="Workshop ID"),
    name: str = typer.Argument(..., help="Display name"),
    version: Optional[str] = typer.Option(None, help="Mod version"),
    game_version: Optional[str] = typer.Option(None, "--game-version", help="Minimum game version, e.g. 1.2.0"),
    disabled: bool = typer.Option(False, "--disabled", help="Add without enabling"),
    connection: Optional[str] = ConnectionOption,
):
    """Add a mod at the end of the load order"""
    mod = api_request("POST", f"{BASE}/", connection, json={
        "source": source,
        "name": name,
        "version": version,
        "game_version": game_version,
        "enabled": not disabled,
    })
    print_success(f"Mod '{mod['name']}' added at position {mod['load_order']}")

@app.command("toggle")
def toggle_mod(mod_id: str = typer.Argument(...), connection: Optional[str] = ConnectionOption):
    """Enable or disable a mod"""
    mod = api_request("POST", f"{BASE}/{mod_id}/toggle", connection)
    print_success(f"Mod '{mod['name']}' is now {'enabled' if mod['enabled'] else 'disabled'}")

@app.command("remove")
def remove_mod(mod_id: str = typer.Argument(...), connection: Optional[str] = ConnectionOption):
    """Remove a mod"""
    mod = api_request("DELETE", f"{BASE}/{mod_id}", connection)
    print_success(f"Mod '{mod['name']}' removed")

@app.command("reorder")
def reorder_mods(
    mod_ids: List[str] = typer.Argument(..., help="Every mod ID in the new load order"),
    connection: Optional[str] = ConnectionOption,
):
    """Set the complete load order"""
    mods = api_request("PUT", f"{BASE}/reorder", connection, json={"mod_ids": mod_ids})
    for m in mods:
        console.print(f"{m['load_order']:>3}  {m['name']}")
    print_success("Load order updated")

@app.command("sync")
def sync_mods(
    mod_id: Optional[str] = typer.Argument(None, help="Mod ID (every mod if omitted)"),
    connection: Optional[str] = ConnectionOption,
):
    """Refresh name, version and game version from the workshop"""
    if mod_id:
        mod = api_request("POST", f"{BASE}/{mod_id}/sync", connection)
        print_success(f"Mod '{mod['name']}' synced: version {mod.get('version') or '-'}, game {mod.get('game_version') or '-'}")
        return

    report = api_request("POST", f"{BASE}/sync-all", connection)
    for result in report["results"]:
        if result["success"]:
            console.print(f"[green]✔[/green] {result['name']}")
        else:
            console.print(f"[red]✖[/red] {result['name']}: {result['error']}")
    print_info(f"{report['synced']} synced, {report['failed']} failed")
