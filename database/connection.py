import os
import logging
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import URL, make_url
from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("database.connection")

# DB_ENGINE -> SQLAlchemy driver. The drivers ship as the "postgres" and "mysql" extras.
DRIVERS = {
    "postgresql": "postgresql+psycopg2",
    "mysql": "mysql+pymysql",
}

# Server connections, mods and config documents are small; a short pool is plenty
POOL_OPTIONS = {
    "pool_pre_ping": True,
    "pool_size": int(os.getenv("DB_POOL_SIZE", 5)),
    "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 5)),
}


def sqlite_path(db_name: str = None) -> str:
    """Absolute path of the SQLite file under DB_DIR (database/instance by default)."""
    db_name = db_name or os.getenv("DB_NAME", "reforger_manager.db")
    instance_dir = os.getenv("DB_DIR") or os.path.join(os.path.dirname(os.path.abspath(__file__)), "instance")
    if not os.path.isdir(instance_dir):
        os.makedirs(instance_dir, exist_ok=True)
        logger.info(f"Created SQLite instance directory: {instance_dir}")
    return os.path.join(instance_dir, db_name)


def get_connection_url() -> URL:
    """
    Database URL from the environment.
    DATABASE_URL wins when set, otherwise it is assembled from DB_ENGINE and the DB_* parts.
    """
    explicit = os.getenv("DATABASE_URL")
    if explicit:
        return make_url(explicit)

    engine_type = os.getenv("DB_ENGINE", "sqlite").lower()
    if engine_type == "sqlite":
        return URL.create("sqlite", database=sqlite_path())

    if engine_type not in DRIVERS:
        raise ValueError(f"Unsupported DB_ENGINE '{engine_type}', use sqlite, postgresql or mysql")
    return URL.create(
        drivername=DRIVERS[engine_type],
        username=os.getenv("DB_USER"),
        password=os.getenv("DB_PASSWORD"),
        host=os.getenv("DB_HOST"),
        port=int(os.getenv("DB_PORT")) if os.getenv("DB_PORT") else None,
        database=os.getenv("DB_NAME"),
    )


def _enable_sqlite_constraints(engine: Engine):
    # Removing a connection relies on ON DELETE CASCADE for its mods and config
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()


def create_app_engine(url=None) -> Engine:
    url = make_url(url) if url is not None else get_connection_url()
    kwargs = {"echo": os.getenv("DB_ECHO", "False").lower() == "true"}

    if url.get_backend_name() == "sqlite":
        # The API, the status poller and the CLI share the file
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs.update(POOL_OPTIONS)
        if url.get_backend_name() == "mysql":
            kwargs["pool_recycle"] = 3600

    engine = create_engine(url, **kwargs)
    if url.get_backend_name() == "sqlite":
        _enable_sqlite_constraints(engine)
    logger.debug(f"Database engine ready: {url.render_as_string(hide_password=True)}")
    return engine


engine = create_app_engine()

SessionLocal = scoped_session(sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine))


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
