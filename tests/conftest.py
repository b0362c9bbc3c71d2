"""
Shared fixtures.

The game-server services only touch the host through an Executor, so the
whole lifecycle runs against ``FakeExecutor``: an in-memory filesystem
plus scripted processes that exit when told to.
"""
import asyncio
import posixpath
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app import settings
from app.exceptions import ServerTimeoutError
from app.services.gameserver.executor import (
    CommandResult,
    DirEntry,
    Executor,
    ProcessHandle,
    ProcessInfo,
)
from app.services.gameserver.service import GameServerService
from app.services.gameserver.supervisor import ProcessSupervisor
from database.models import Base
from database.repositories import ConfigRepository, ConnectionRepository, ModRepository
from database.schemas import ConnectionCreate

INSTALL_PATH = "/srv/reforger"
BINARY = f"{INSTALL_PATH}/ArmaReforgerServer"


# ==============================================================================
# Fakes
# ==============================================================================

class FakeProcess(ProcessHandle):
    """Scripted server process. Lines are fed with ``emit``, ``exit`` ends it."""

    def __init__(self, pid, argv, lines=(), ignore_term=False, unkillable=False):
        super().__init__(pid, argv)
        self.output: asyncio.Queue = asyncio.Queue()
        for line in lines:
            self.output.put_nowait(line)
        self.ignore_term = ignore_term
        self.unkillable = unkillable
        self.signals: List[str] = []
        self._returncode: Optional[int] = None
        self._exited = asyncio.Event()

    def emit(self, line: str):
        self.output.put_nowait(line)

    def exit(self, code: int = 0):
        if self._returncode is not None:
            return
        self._returncode = code
        self.output.put_nowait(None)
        self._exited.set()

    async def readline(self):
        return await self.output.get()

    async def wait(self):
        await self._exited.wait()
        return self._returncode

    @property
    def returncode(self):
        return self._returncode

    async def terminate(self):
        self.signals.append("TERM")
        if not self.ignore_term:
            self.exit(0)

    async def kill(self):
        self.signals.append("KILL")
        if not self.unkillable:
            self.exit(-9)


class FakeExecutor(Executor):
    platform = "linux"

    def __init__(self):
        self.files: Dict[str, str] = {}
        self.dirs = {"/"}
        self.mtimes: Dict[str, float] = {}
        self.executables = set()

        self.commands = []
        self.run_results: Dict[str, CommandResult] = {}
        self.stream_lines: List[str] = []
        self.stream_exit_code = 0
        self.stream_gate: Optional[asyncio.Event] = None
        self.on_stream = None

        self.processes: List[FakeProcess] = []
        self.process_options = {}
        self.on_spawn = None
        self.spawn_error: Optional[Exception] = None
        self.alive_pids = set()
        self.terminated = []
        self.check_delay = 0.0

        self.downloads = []
        self.extracted = []
        self.closed = False
        self._next_pid = 4000

    # --- helpers for tests ---

    def _add_parents(self, path: str):
        parent = posixpath.dirname(path)
        while parent and parent not in self.dirs:
            self.dirs.add(parent)
            parent = posixpath.dirname(parent)

    def add_dir(self, path: str, mtime: float = 0.0):
        self.dirs.add(path)
        self.mtimes[path] = mtime
        self._add_parents(path)

    def add_file(self, path: str, content: str = "", executable: bool = False):
        self.files[path] = content
        self._add_parents(path)
        if executable:
            self.executables.add(path)

    def install_server(self):
        self.add_file(BINARY, executable=True)

    # --- commands ---

    async def run(self, command, timeout=None, cwd=None):
        text = command if isinstance(command, str) else " ".join(command)
        self.commands.append(text)
        if text.startswith("chmod +x "):
            self.executables.add(text[len("chmod +x "):])
        for prefix, result in self.run_results.items():
            if text.startswith(prefix):
                return result
        return CommandResult(exit_code=0, stdout="ok\n")

    async def stream(self, command, on_line, cwd=None):
        self.commands.append(command if isinstance(command, str) else " ".join(command))
        if self.stream_gate is not None:
            await self.stream_gate.wait()
        for line in self.stream_lines:
            on_line(line)
        if self.on_stream is not None:
            self.on_stream()
        return self.stream_exit_code

    async def spawn(self, argv, cwd=None):
        if self.spawn_error is not None:
            raise self.spawn_error
        self._next_pid += 1
        process = FakeProcess(self._next_pid, argv, **self.process_options)
        self.processes.append(process)
        if self.on_spawn is not None:
            self.on_spawn(process)
        return process

    # --- processes ---

    async def is_pid_alive(self, pid):
        if pid in self.alive_pids:
            return True
        return any(p.pid == pid and p.is_alive() for p in self.processes)

    async def terminate_pid(self, pid, force=False):
        self.terminated.append((pid, force))
        self.alive_pids.discard(pid)

    async def process_info(self, pid):
        if not await self.is_pid_alive(pid):
            return None
        return ProcessInfo(pid=pid, cpu=12.5, memory_mb=2048.0, uptime=60)

    # --- files ---

    async def path_exists(self, path):
        return path in self.files or path in self.dirs

    async def is_dir(self, path):
        if self.check_delay:
            await asyncio.sleep(self.check_delay)
        return path in self.dirs

    async def is_executable(self, path):
        return path in self.executables or path in self.dirs

    async def list_dir(self, path):
        if path not in self.dirs:
            raise FileNotFoundError(path)
        entries = [
            DirEntry(name=posixpath.basename(d), is_dir=True, mtime=self.mtimes.get(d, 0.0))
            for d in self.dirs
            if d != path and posixpath.dirname(d) == path
        ]
        entries += [
            DirEntry(name=posixpath.basename(f), is_dir=False, size=len(content))
            for f, content in self.files.items()
            if posixpath.dirname(f) == path
        ]
        return entries

    async def makedirs(self, path):
        self.dirs.add(path)
        self._add_parents(path)

    async def read_text(self, path):
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write_text(self, path, content):
        self.add_file(path, content)

    async def remove(self, path):
        self.files.pop(path, None)

    async def head(self, path, max_lines):
        return (await self.read_text(path)).splitlines()[:max_lines]

    async def tail(self, path, max_lines):
        return (await self.read_text(path)).splitlines()[-max_lines:]

    async def download(self, url, destination):
        self.downloads.append((url, destination))
        self.add_file(destination, "archive")

    async def extract(self, archive, destination):
        self.extracted.append((archive, destination))
        self.add_file(self.join(destination, "steamcmd.sh"), executable=True)

    async def close(self):
        self.closed = True


class FakeRconClient:
    def __init__(self, host, port, password, timeout, on_message=None, responses=None, hang=False):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.on_message = on_message
        self.responses = responses or {}
        self.hang = hang
        self.connected = False
        self.closed = False
        self.commands = []

    async def connect(self):
        self.connected = True

    async def command(self, text):
        self.commands.append(text)
        if self.hang:
            raise ServerTimeoutError("RCON command timed out", {"command": text})
        return self.responses.get(text, f"ok: {text}")

    def close(self):
        self.closed = True


class FakeRconFactory:
    def __init__(self):
        self.clients: List[FakeRconClient] = []
        self.responses: Dict[str, str] = {}
        self.hang = False

    def __call__(self, **kwargs):
        client = FakeRconClient(responses=self.responses, hang=self.hang, **kwargs)
        self.clients.append(client)
        return client


async def wait_until(predicate, timeout: float = 2.0):
    """Polls ``predicate`` until it holds; fails the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ==============================================================================
# Fixtures
# ==============================================================================

@pytest.fixture
def session_factory():
    """Fresh in-memory database per test, shared by every session."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def connection_repo(session_factory):
    return ConnectionRepository(session_factory)


@pytest.fixture
def mod_repo(session_factory):
    return ModRepository(session_factory)


@pytest.fixture
def config_repo(session_factory):
    return ConfigRepository(session_factory)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def rcon_factory():
    return FakeRconFactory()


@pytest.fixture
def query():
    """A2S query that never answers, so status and players fall back to the console log."""
    async def unreachable(host, port, timeout=2.0):
        raise OSError("unreachable")

    return unreachable


@pytest.fixture
def fast_timeouts(monkeypatch):
    """Shrinks every lifecycle timeout so tests finish quickly."""
    monkeypatch.setattr(settings, "START_TIMEOUT", 1.0)
    monkeypatch.setattr(settings, "START_HEALTH_GRACE", 0.0)
    monkeypatch.setattr(settings, "STOP_GRACE", 0.2)
    monkeypatch.setattr(settings, "KILL_TIMEOUT", 0.2)
    monkeypatch.setattr(settings, "INSTALL_PROGRESS_TTL", 60.0)
    monkeypatch.setattr(settings, "CONNECTION_TEST_TIMEOUT", 1.0)
    monkeypatch.setattr(ProcessSupervisor, "health_check_interval", 0.01)
    monkeypatch.setattr(ProcessSupervisor, "watch_interval", 0.05)


@pytest.fixture
def service(session_factory, executor, rcon_factory, query, fast_timeouts):
    """Service wired to the fakes. Every connection shares the same executor."""
    return GameServerService(
        session_factory=session_factory,
        executor_factory=lambda connection: executor,
        rcon_client_factory=rcon_factory,
        query=query,
        player_query=query,
        poll_interval=0,
    )


@pytest.fixture
def connection(service):
    return service.registry.add(ConnectionCreate(name="main", type="local", install_path=INSTALL_PATH))


@pytest.fixture
def ready_lines():
    return ["12:00:00.000 ENGINE       : Game successfully created"]
