import typer
import sys
import os

# Add parent directory to sys.path to allow imports from project root when running standalone
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from database.migrate import run_migrations, rollback_migration, show_current, create_database
from dev.utils import console, print_header, print_success, print_error, print_info, print_warning

app = typer.Typer(help="Database management commands")

@app.command("migrate")
def migrate_cmd():
    """Apply pending migrations"""
    print_header("Applying Migrations")
    if run_migrations():
        print_success("Done.")
    else:
        print_error("Failed.")
        raise typer.Exit(code=1)

@app.command("rollback")
def rollback_cmd():
    """Rollback the last migration"""
    print_header("Rolling Back")
    if rollback_migration():
        print_success("Done.")
    else:
        print_error("Failed.")
        raise typer.Exit(code=1)

@app.command("status")
def status_cmd():
    """Show migration status"""
    print_header("Migration Status")
    show_current()

@app.command("init-db")
def init_db_cmd():
    """Initialize database (Create tables + Stamp Head). Use this if DB is empty/broken."""
    print_header("Initializing Database")
    if create_database():
        print_success("Database initialized.")
    else:
        print_error("Initialization failed.")
        raise typer.Exit(code=1)

@app.command("info")
def info_cmd():
    """Show the database in use and the row count of each manager table"""
    from sqlalchemy import func, inspect, select
    from database.connection import engine
    from database.models import Base

    print_header("Database")
    print_info(f"URL: {engine.url.render_as_string(hide_password=True)}")
    existing = set(inspect(engine).get_table_names())
    missing = 0
    with engine.connect() as conn:
        for table in Base.metadata.sorted_tables:
            if table.name not in existing:
                print_warning(f"{table.name}: missing")
                missing += 1
                continue
            count = conn.execute(select(func.count()).select_from(table)).scalar()
            console.print(f"  {table.name}: {count}")
    if missing:
        print_error("Schema incomplete, run 'database init-db' or 'database migrate'.")
        raise typer.Exit(code=1)
