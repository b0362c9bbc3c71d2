import typer
from typing import Optional
from rich.table import Table
from dev.utils import api_request, console, print_header, print_success, print_error, print_info

app = typer.Typer(help="Manage server connections (local installs and SSH hosts)")

BASE = "/api/server/connections"

@app.command("list")
def list_connections():
    """List all connections, default first"""
    connections = api_request("GET", f"{BASE}/")
    if not connections:
        print_info("No connections configured. Add one with 'connections add'.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Install Path")
    table.add_column("Default", justify="center")

    for c in connections:
        target = f"{c['username']}@{c['host']}:{c['port']}" if c["type"] == "remote" else "localhost"
        table.add_row(c["id"], c["name"], c["type"], target, c["install_path"], "★" if c["is_default"] else "")
    console.print(table)

@app.command("add")
def add_connection(
    name: str = typer.Argument(..., help="Unique connection name"),
    install_path: str = typer.Option(..., "--path", help="Server installation directory"),
    host: Optional[str] = typer.Option(None, help="SSH host (makes this a remote connection)"),
    port: int = typer.Option(22, help="SSH port"),
    username: Optional[str] = typer.Option(None, help="SSH user"),
    password: Optional[str] = typer.Option(None, help="SSH password"),
    key_file: Optional[str] = typer.Option(None, "--key-file", help="Private key file for SSH"),
    steamcmd_path: Optional[str] = typer.Option(None, "--steamcmd", help="SteamCMD directory"),
):
    """Add a local or remote connection"""
    payload = {
        "name": name,
        "type": "remote" if host else "local",
        "install_path": install_path,
        "host": host,
        "port": port,
        "username": username,
        "password": password,
        "steamcmd_path": steamcmd_path,
    }
    if key_file:
        with open(key_file, "r") as f:
            payload["private_key"] = f.read()

    connection = api_request("POST", f"{BASE}/", json=payload)
    suffix = " (default)" if connection["is_default"] else ""
    print_success(f"Connection '{connection['name']}' added{suffix}: {connection['id']}")

@app.command("test")
def test_connection(connection_id: str = typer.Argument(..., help="Connection ID")):
    """Check that the host and install path are reachable"""
    print_header("Testing Connection")
    result = api_request("POST", f"{BASE}/{connection_id}/test")
    if result["success"]:
        print_success(result["message"])
    else:
        print_error(result["message"])
    for key, value in result.get("details", {}).items():
        console.print(f"  [dim]{key}[/dim]: {value}")
    if not result["success"]:
        raise typer.Exit(code=1)

@app.command("default")
def set_default(connection_id: str = typer.Argument(..., help="Connection ID")):
    """Make a connection the default target"""
    connection = api_request("POST", f"{BASE}/{connection_id}/default")
    print_success(f"'{connection['name']}' is now the default connection")

@app.command("remove")
def remove_connection(
    connection_id: str = typer.Argument(..., help="Connection ID"),
    force: bool = typer.Option(False, "--force", help="Stop a running server first"),
):
    """Remove a connection with its mods and configuration"""
    if not typer.confirm(f"Remove connection {connection_id}?"):
        raise typer.Abort()
    connection = api_request("DELETE", f"{BASE}/{connection_id}", params={"force": force})
    print_success(f"Connection '{connection['name']}' removed")
