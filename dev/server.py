import typer
import uvicorn
from app import settings
from dev.utils import print_header, print_success, update_env_variable

app = typer.Typer(help="API server commands")

@app.command("run")
def run_server(
    host: str = typer.Option("127.0.0.1", help="Host to bind"),
    port: int = typer.Option(settings.PORT, help="Port to bind"),
    reload: bool = typer.Option(True, help="Enable auto-reload (Dev mode)"),
    prod: bool = typer.Option(False, "--prod", help="Production mode (disables reload, changes logging)")
):
    """
    Start the Reforger Server Manager API
    """
    if prod:
        reload = False
        print_header("Starting Server in PRODUCTION mode")
    else:
        print_header("Starting Server in DEVELOPMENT mode")

    # We use websockets library explicitly as per previous fixes
    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        ws="websockets",
        log_level="info"
    )

@app.command("token")
def issue_token(
    username: str = typer.Argument("cli", help="Subject of the token"),
    minutes: int = typer.Option(settings.ACCESS_TOKEN_EXPIRE_MINUTES, help="Lifetime in minutes"),
    save: bool = typer.Option(False, "--save", help="Store it as API_TOKEN in .env")
):
    """Issue an admin token signed with SECRET_KEY for CLI/API access"""
    from app.services.auth_service import create_access_token

    token = create_access_token({"sub": username, "is_admin": True}, expires_minutes=minutes)
    if save:
        update_env_variable("API_TOKEN", token)
    else:
        print_success("Token issued:")
        print(token)
