import typer
import time
from typing import Optional
from rich.panel import Panel
from rich.table import Table
from rich.progress import Progress, BarColumn, TextColumn
from dev.utils import api_request, console, print_header, print_success, print_error, print_info

app = typer.Typer(help="Control the game server of a connection")

ConnectionOption = typer.Option(None, "--connection", "-c", help="Connection ID (default connection if omitted)")

SEVERITY_STYLES = {
    "error": "bold red",
    "warning": "yellow",
    "script": "cyan",
    "backend": "magenta",
    "info": "white",
}

@app.command("status")
def status(connection: Optional[str] = ConnectionOption):
    """Show the server state and resource usage"""
    s = api_request("GET", "/api/server/status", connection)
    color = {"RUNNING": "green", "ERROR": "red", "STOPPED": "yellow"}.get(s["state"], "cyan")
    console.print(Panel(
        f"[bold]State:[/bold] [{color}]{s['state']}[/{color}]\n"
        f"[bold]Installed:[/bold] {s['is_installed']}   [bold]Version:[/bold] {s.get('version') or '-'}\n"
        f"[bold]Players:[/bold] {s['players']}/{s['max_players']}   [bold]Map:[/bold] {s.get('map') or s.get('mission') or '-'}\n"
        f"[bold]CPU:[/bold] {s['cpu']:.1f}%   [bold]RAM:[/bold] {s['memory']:.0f} MB   [bold]Uptime:[/bold] {s['uptime']}s\n"
        f"[bold]PID:[/bold] {s.get('pid') or '-'}   [bold]RCON:[/bold] {'on' if s['rcon_enabled'] else 'off'}",
        title="Server Status",
        border_style="blue"
    ))

def _action(action: str, connection: Optional[str]):
    print_header(f"{action.capitalize()} server")
    result = api_request("POST", f"/api/server/{action}", connection)
    print_success(f"{result['message']} ({result['state']})")

@app.command("start")
def start(connection: Optional[str] = ConnectionOption):
    """Start the server and wait until it is healthy"""
    _action("start", connection)

@app.command("stop")
def stop(connection: Optional[str] = ConnectionOption):
    """Stop the server (SIGTERM, then SIGKILL after the grace period)"""
    _action("stop", connection)

@app.command("restart")
def restart(connection: Optional[str] = ConnectionOption):
    """Restart a running server"""
    _action("restart", connection)

@app.command("reset")
def reset(connection: Optional[str] = ConnectionOption):
    """Clear the ERROR state after fixing its cause"""
    _action("reset", connection)

@app.command("install")
def install(
    connection: Optional[str] = ConnectionOption,
    follow: bool = typer.Option(True, help="Follow progress until the install finishes"),
):
    """Install or update the server through SteamCMD"""
    progress = api_request("POST", "/api/server/install", connection)
    if not follow:
        print_info(f"Installation started: {progress['message']}")
        return

    with Progress(TextColumn("[cyan]{task.description}"), BarColumn(), TextColumn("{task.percentage:>5.1f}%")) as bar:
        task = bar.add_task(progress["message"], total=100)
        while progress and progress["status"] not in ("complete", "error"):
            bar.update(task, completed=progress["progress"], description=progress["message"])
            time.sleep(1)
            progress = api_request("GET", "/api/server/install/progress", connection)
        if progress:
            bar.update(task, completed=progress["progress"], description=progress["message"])

    if progress is None:
        print_info("Installation finished, check 'control status'.")
    elif progress["status"] == "error":
        print_error(progress["message"])
        raise typer.Exit(code=1)
    else:
        print_success(progress["message"])

@app.command("command")
def send_command(
    command: str = typer.Argument(..., help="Console command, e.g. '#players'"),
    connection: Optional[str] = ConnectionOption,
):
    """Send a console command over RCON"""
    result = api_request("POST", "/api/server/command", connection, json={"command": command})
    console.print(result["response"] or "[dim](no output)[/dim]")

@app.command("players")
def list_players(connection: Optional[str] = ConnectionOption):
    """List online players"""
    players = api_request("GET", "/api/server/players", connection)
    if not players:
        print_info("No players online.")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Player #", justify="right")
    table.add_column("Source")
    for p in players:
        number = p.get("player_id") if p.get("player_id") is not None else p.get("connection_id")
        table.add_row(p["id"], p["name"], "-" if number is None else str(number), p["source"])
    console.print(table)

@app.command("kick")
def kick_player(
    player: str = typer.Argument(..., help="Player ID from 'players', or the numeric player number"),
    reason: Optional[str] = typer.Option(None, help="Reason recorded in the audit log"),
    connection: Optional[str] = ConnectionOption,
):
    """Kick an online player over RCON"""
    kicked = api_request("POST", f"/api/server/players/{player}/kick", connection, json={"reason": reason})
    print_success(f"Kicked {kicked['name']}")

@app.command("console")
def show_console(
    lines: int = typer.Option(50, help="Number of lines"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Keep polling for new lines"),
    connection: Optional[str] = ConnectionOption,
):
    """Show the live console buffer"""
    since = None
    try:
        while True:
            params = {"lines": lines}
            if since is not None:
                params["since"] = since
            for line in api_request("GET", "/api/server/console", connection, params=params):
                style = SEVERITY_STYLES.get(line["severity"], "white")
                console.print(line["text"], style=style, markup=False, highlight=False)
                since = line["seq"]
            if not follow:
                break
            time.sleep(1)
    except KeyboardInterrupt:
        pass
