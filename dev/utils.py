import typer
import os
import re
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.theme import Theme
from app import settings

# Custom theme for the CLI
custom_theme = Theme({
    "info": "dim cyan",
    "warning": "magenta",
    "error": "bold red",
    "success": "bold green",
    "header": "bold white on blue",
})

console = Console(theme=custom_theme)

def print_header(text: str):
    """Prints a styled header panel."""
    console.print(Panel(f"[bold white]{text}[/bold white]", style="blue", expand=False))

def print_success(text: str):
    """Prints a success message."""
    console.print(f"[success]✔ {text}[/success]")

def print_error(text: str):
    """Prints an error message."""
    console.print(f"[error]✖ {text}[/error]")

def print_info(text: str):
    """Prints an info message."""
    console.print(f"[info]ℹ {text}[/info]")

def print_warning(text: str):
    """Prints a warning message."""
    console.print(f"[warning]⚠ {text}[/warning]")

def update_env_variable(key: str, value: str):
    """
    Updates or adds a key-value pair in the .env file.
    Preserves existing comments and structure.
    """
    env_path = os.path.join(os.getcwd(), ".env")

    if not os.path.exists(env_path):
        with open(env_path, "w") as f:
            f.write(f"{key}={value}\n")
        print_success(f"Created .env: {key}=...")
        return

    with open(env_path, "r") as f:
        content = f.read()

    # Matches "KEY=value" or "KEY = value"
    pattern = re.compile(rf"^{key}\s*=\s*.*$", re.MULTILINE)

    if pattern.search(content):
        new_content = pattern.sub(lambda _: f"{key}={value}", content)
    else:
        if content and not content.endswith("\n"):
            content += "\n"
        new_content = content + f"{key}={value}\n"

    with open(env_path, "w") as f:
        f.write(new_content)

    print_success(f"Updated .env: {key}=...")

def api_request(method: str, path: str, connection: str = None, **kwargs):
    """
    Calls the running manager API and returns the decoded JSON body.
    Error bodies ({"error", "message", "details"}) are printed and exit with code 1.
    """
    headers = {}
    if settings.API_TOKEN:
        headers["Authorization"] = f"Bearer {settings.API_TOKEN}"
    params = kwargs.pop("params", {}) or {}
    if connection:
        params["connection_id"] = connection

    try:
        response = httpx.request(
            method,
            f"{settings.API_URL.rstrip('/')}{path}",
            headers=headers,
            params=params,
            timeout=kwargs.pop("timeout", settings.START_TIMEOUT + settings.STOP_GRACE),
            **kwargs
        )
    except httpx.HTTPError as e:
        print_error(f"Could not reach the API at {settings.API_URL}: {e}")
        raise typer.Exit(code=1)

    if response.status_code >= 400:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        kind = body.get("error") or f"HTTP {response.status_code}"
        message = body.get("message") or body.get("detail") or response.reason_phrase
        print_error(f"{kind}: {message}")
        fields = (body.get("details") or {}).get("fields") if isinstance(body.get("details"), dict) else None
        for field, problem in (fields or {}).items():
            console.print(f"  [error]{field}[/error]: {problem}")
        raise typer.Exit(code=1)

    if not response.content:
        return None
    return response.json()
