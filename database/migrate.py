"""
Migration Runner
Creates the manager's tables and drives Alembic for schema upgrades.
"""
import sys
import os
import subprocess

# Add the project root to the Python path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)


def _alembic(*args):
    return subprocess.run(
        [sys.executable, "-m", "alembic", *args],
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True
    )


def create_database():
    """Create database tables if they don't exist and stamp alembic head"""
    print("[INIT] Creating tables via SQLAlchemy...")
    try:
        # Import here so the engine is only built when needed
        from database.connection import engine
        from database.models import Base

        Base.metadata.create_all(bind=engine)
    except Exception as e:
        print(f"[INIT] Error creating tables: {e}")
        return False

    print("[INIT] Stamping Alembic head...")
    result = _alembic("stamp", "head")
    if result.returncode != 0:
        print("[INIT] Stamping failed ✗")
        print(result.stderr)
        return False
    print("[INIT] Database initialized ✓")
    return True


def run_migrations():
    """Run all pending migrations"""
    result = _alembic("upgrade", "head")
    if result.returncode != 0:
        print("[MIGRATE] Migration failed ✗")
        print(result.stderr)
        return False
    print(result.stdout)
    print("[MIGRATE] Migrations completed successfully ✓")
    return True


def rollback_migration():
    """Rollback the last migration"""
    result = _alembic("downgrade", "-1")
    if result.returncode != 0:
        print("[MIGRATE] Rollback failed ✗")
        print(result.stderr)
        return False
    print(result.stdout)
    print("[MIGRATE] Rollback completed successfully ✓")
    return True


def show_current():
    """Show current migration status"""
    result = _alembic("current")
    print(result.stdout)
    if result.stderr:
        print(result.stderr)


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else "run"

    commands = {
        "init": create_database,
        "run": run_migrations,
        "rollback": rollback_migration,
        "status": show_current,
    }

    if command in commands:
        commands[command]()
    else:
        print(f"Unknown command: {command}. Use one of: {', '.join(commands)}")
