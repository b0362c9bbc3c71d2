import typer
import sys
import os
import importlib.util
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

# Initialize Typer and Console
app = typer.Typer(help="Reforger Server Manager CLI Tool")
console = Console()

# --- Dynamic Loader ---
def load_commands():
    """
    Dynamically load commands from the 'dev' directory.
    """
    dev_dir = os.path.join(os.path.dirname(__file__), "dev")
    if not os.path.exists(dev_dir):
        os.makedirs(dev_dir)
        return

    for filename in os.listdir(dev_dir):
        if filename.endswith(".py") and filename != "__init__.py" and filename != "utils.py":
            module_name = filename[:-3]
            file_path = os.path.join(dev_dir, filename)
            
            try:
                spec = importlib.util.spec_from_file_location(f"dev.{module_name}", file_path)
                if spec and spec.loader:
                    module = importlib.util.module_from_spec(spec)
                    sys.modules[f"dev.{module_name}"] = module
                    spec.loader.exec_module(module)
                    
                    if hasattr(module, "app"):
                        # Add the module's Typer app as a sub-command group
                        app.add_typer(module.app, name=module_name)
            except Exception as e:
                console.print(f"[red]Failed to load module {module_name}: {e}[/red]")

# Load commands immediately
load_commands()

# --- Interactive Menu ---

@app.callback(invoke_without_command=True)
def main_interactive(ctx: typer.Context):
    """
    Main entry point. Launches interactive menu if no command is provided.
    """
    if ctx.invoked_subcommand is None:
        show_menu()

MENU = [
    # (key, category, action, description, sub-command)
    ("1", "Server", "Run (Dev)", "Start the API with auto-reload", "server run"),
    ("2", "Database", "Initialize", "Create tables + stamp migrations", "database init-db"),
    ("3", "Database", "Migrate", "Apply pending migrations", "database migrate"),
    ("4", "Connections", "List", "Show configured hosts", "connections list"),
    ("5", "Control", "Status", "State of the default server", "control status"),
    ("6", "Control", "Start", "Start the default server", "control start"),
    ("7", "Control", "Stop", "Stop the default server", "control stop"),
    ("8", "Control", "Console", "Last console lines", "control console"),
    ("9", "Mods", "List", "Mods of the default server", "mods list"),
]

def show_menu():
    while True:
        console.clear()

        # Header
        console.print(Panel.fit(
            "[bold white]Reforger Server Manager CLI[/bold white]\n[cyan]Manage connections, servers, mods and the database.[/cyan]",
            title="Welcome",
            border_style="blue"
        ))

        # Options Table
        table = Table(show_header=True, header_style="bold magenta", expand=True)
        table.add_column("No.", style="dim", width=4, justify="center")
        table.add_column("Category", style="cyan", width=12)
        table.add_column("Action", style="white")
        table.add_column("Description", style="dim")

        for key, category, action, description, _ in MENU:
            table.add_row(key, category, action, description)
        table.add_row("0", "Exit", "Quit", "Close the CLI")

        console.print(table)
        console.print("\n")

        choices = [entry[0] for entry in MENU] + ["0"]
        choice = Prompt.ask("Select an option", choices=choices, default="5")

        if choice == "0":
            console.print("[bold]Goodbye![/bold]")
            sys.exit(0)

        command = next(entry[4] for entry in MENU if entry[0] == choice)
        os.system(f"{sys.executable} mine.py {command}")
        input("\nPress Enter to continue...")

if __name__ == "__main__":
    app()
