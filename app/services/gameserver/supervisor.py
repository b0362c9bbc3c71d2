"""
Process supervisor.

Owns the lifecycle state machine of one game server installation and the
resources of its running process. Lifecycle operations are serialized by
one lock per supervisor; different connections never wait on each other.
"""
import asyncio
import contextlib
import json
import logging
import time
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from app import settings
from app.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    NotRunningError,
    ServerManagerError,
    ServerProcessError,
    ServerTimeoutError,
    ValidationError,
)
from app.services.gameserver import events
from app.services.gameserver.bercon import BERconClient
from app.services.gameserver.config import ConfigManager, from_server_json
from app.services.gameserver.console import ConsoleBuffer
from app.services.gameserver.events import EventBus
from app.services.gameserver.executor import Executor, ProcessHandle
from app.services.gameserver.layout import ServerLayout
from app.services.gameserver.logs import VERSION_PATTERN, LogStreamer
from app.services.gameserver.mods import ModManager
from app.services.gameserver.query import query_info, query_players
from app.services.gameserver.rcon import RconRelay
from app.services.gameserver.steamcmd import InstallPipeline
from database.schemas import InstallProgress, ModCreate, OnlinePlayer, ProcessStatus, ServerConfig

logger = logging.getLogger(__name__)

# Lines the server prints once it accepts players
READY_MARKERS = (
    "Game successfully created",
    "Server registered",
    "Entered online game state",
)


class ServerState(str, Enum):
    NOT_INSTALLED = "NOT_INSTALLED"
    INSTALLING = "INSTALLING"
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    RESTARTING = "RESTARTING"
    ERROR = "ERROR"


# Every state may also move to ERROR
TRANSITIONS: Dict[ServerState, Set[ServerState]] = {
    ServerState.NOT_INSTALLED: {ServerState.INSTALLING},
    ServerState.INSTALLING: {ServerState.STOPPED},
    ServerState.STOPPED: {ServerState.STARTING, ServerState.INSTALLING},
    ServerState.STARTING: {ServerState.RUNNING, ServerState.STOPPING},
    ServerState.RUNNING: {ServerState.STOPPING, ServerState.RESTARTING},
    ServerState.STOPPING: {ServerState.STOPPED},
    ServerState.RESTARTING: {ServerState.RUNNING},
    ServerState.ERROR: {ServerState.INSTALLING, ServerState.STOPPED},
}


def can_transition(current: ServerState, target: ServerState) -> bool:
    return target == ServerState.ERROR or target in TRANSITIONS[current]


class ProcessResources:
    """Everything tied to one server process, released in reverse order of acquisition."""

    def __init__(self, handle: Optional[ProcessHandle] = None, pid: Optional[int] = None):
        self.stack = contextlib.AsyncExitStack()
        self.handle = handle
        self.pid = pid if pid is not None else (handle.pid if handle else None)
        self.started = time.monotonic()
        self.ready = False
        self.expected_exit = False
        self.exited = False
        self.exit_code: Optional[int] = None
        self.tasks = []
        self.closed = False

    def is_alive(self) -> bool:
        if self.exited:
            return False
        if self.handle is not None:
            return self.handle.is_alive()
        return True

    def returncode(self) -> Optional[int]:
        if self.exit_code is None and self.handle is not None:
            return self.handle.returncode
        return self.exit_code

    def uptime(self) -> float:
        return time.monotonic() - self.started

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.stack.aclose()


class ProcessSupervisor:
    health_check_interval = 0.5
    watch_interval = 5.0

    def __init__(
        self,
        connection,
        executor: Executor,
        configs: ConfigManager,
        mods: ModManager,
        bus: EventBus,
        rcon_client_factory=BERconClient,
        query=query_info,
        player_query=query_players,
    ):
        self.connection = connection
        self.connection_id = connection.id
        self.executor = executor
        self.layout = ServerLayout(executor, connection.install_path)
        self.configs = configs
        self.mods = mods
        self.bus = bus
        self.query = query
        self.player_query = player_query

        self.console = ConsoleBuffer(settings.CONSOLE_BUFFER_LINES)
        self.logs = LogStreamer(self.connection_id, executor, connection.install_path, bus, self.console)
        self.installer = InstallPipeline(
            self.connection_id,
            executor,
            connection.install_path,
            steamcmd_path=connection.steamcmd_path,
            bus=bus,
            configure=self._configure_after_install,
        )
        self.rcon = RconRelay(self, client_factory=rcon_client_factory)

        self.state = ServerState.NOT_INSTALLED
        self.resources: Optional[ProcessResources] = None
        self.applied_config: Optional[ServerConfig] = None
        self.version: Optional[str] = None
        self.last_error: Optional[str] = None
        self.install_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    # --- State machine ---

    def _transition(self, target: ServerState, message: str = ""):
        if not can_transition(self.state, target):
            raise InvalidStateError(
                f"Cannot go from {self.state.value} to {target.value}", self.state.value
            )
        previous = self.state
        self.state = target
        if target == ServerState.ERROR:
            self.last_error = message
            logger.error(f"[{self.connection.name}] {previous.value} -> ERROR: {message}")
        else:
            logger.info(f"[{self.connection.name}] {previous.value} -> {target.value} {message}".rstrip())
        self.bus.publish(self.connection_id, events.STATUS, {
            "state": target.value,
            "previous": previous.value,
            "message": message,
        })

    def is_running(self) -> bool:
        return self.state == ServerState.RUNNING

    def effective_config(self) -> ServerConfig:
        """Configuration the running process was started with, else the stored one."""
        if self.applied_config is not None:
            return self.applied_config
        return self.configs.load(self.connection_id)

    def register_cleanup(self, callback: Callable[[], None]):
        """Runs ``callback`` when the current server process is torn down."""
        resources = self.resources
        if resources is None or resources.closed:
            raise NotRunningError("Server is not running", {"state": self.state.value})
        resources.stack.callback(callback)

    # --- Startup recovery ---

    async def initialize(self):
        """Derives the initial state from what is on disk and in the process table."""
        try:
            await self._import_existing_config()
            pid = await self._read_pid()
            if pid is not None and await self.executor.is_pid_alive(pid):
                resources = ProcessResources(pid=pid)
                resources.stack.push_async_callback(self.executor.remove, self.layout.pid_file)
                self._watch(resources)
                self.resources = resources
                self.state = ServerState.RUNNING
                logger.info(f"Recovered running server {self.connection.name} (PID {pid})")
            else:
                if pid is not None:
                    await self.executor.remove(self.layout.pid_file)
                installed = await self.executor.path_exists(self.layout.binary)
                self.state = ServerState.STOPPED if installed else ServerState.NOT_INSTALLED
            self.version = await self.logs.detect_game_version()
        except Exception as e:
            logger.warning(f"Could not inspect {self.connection.name}: {e}")
        self.bus.publish(self.connection_id, events.STATUS, {
            "state": self.state.value,
            "previous": None,
            "message": "initialized",
        })
        return self.state

    async def _read_pid(self) -> Optional[int]:
        if not await self.executor.path_exists(self.layout.pid_file):
            return None
        try:
            return int((await self.executor.read_text(self.layout.pid_file)).strip())
        except ValueError:
            return None

    async def _import_existing_config(self):
        """Adopts a server.json found on disk when nothing is stored yet."""
        if self.configs.exists(self.connection_id):
            return
        if not await self.executor.path_exists(self.layout.config_file):
            return
        try:
            document = json.loads(await self.executor.read_text(self.layout.config_file))
            config, mods = from_server_json(document)
            self.configs.save(self.connection_id, config)
            if not self.mods.list(self.connection_id):
                for mod in mods:
                    self.mods.add(self.connection_id, ModCreate(**mod))
            logger.info(f"Imported existing server.json for {self.connection.name}")
        except (ValueError, ServerManagerError) as e:
            logger.warning(f"Ignoring unreadable server.json for {self.connection.name}: {e}")

    async def _configure_after_install(self):
        await self._import_existing_config()
        if not await self.executor.path_exists(self.layout.config_file):
            await self._write_config(self.configs.load(self.connection_id))

    async def _write_config(self, config: ServerConfig):
        mods = self.mods.list_enabled(self.connection_id)
        await self.executor.write_text(self.layout.config_file, ConfigManager.render(config, mods))

    # --- Install ---

    async def install(self, wait: bool = True) -> InstallProgress:
        async with self._lock:
            if self.state == ServerState.INSTALLING or self.installer.running:
                raise ConflictError("An installation is already in progress")
            if self.state not in (ServerState.NOT_INSTALLED, ServerState.STOPPED, ServerState.ERROR):
                raise InvalidStateError(f"Cannot install while the server is {self.state.value}", self.state.value)
            snapshot = self.installer.begin()
            self._transition(ServerState.INSTALLING, "Installation started")
            self.install_task = asyncio.create_task(self._run_install())
        if wait:
            return await asyncio.shield(self.install_task)
        return snapshot

    async def _run_install(self) -> InstallProgress:
        result = await self.installer.run()
        async with self._lock:
            if result.status == "complete":
                self._transition(ServerState.STOPPED, "Installation complete")
            else:
                self._transition(ServerState.ERROR, result.message)
        return result

    # --- Start / stop / restart ---

    async def start(self) -> ServerState:
        async with self._lock:
            if self.state == ServerState.INSTALLING:
                raise ConflictError("Cannot start while an installation is in progress")
            if self.state != ServerState.STOPPED:
                raise InvalidStateError(f"Cannot start while the server is {self.state.value}", self.state.value)
            self._transition(ServerState.STARTING)
            resources = await self._launch_or_fail()
        return await self._promote_when_healthy(resources, ServerState.STARTING)

    async def stop(self) -> ServerState:
        async with self._lock:
            if self.state not in (ServerState.RUNNING, ServerState.STARTING):
                raise InvalidStateError(f"Cannot stop while the server is {self.state.value}", self.state.value)
            self._transition(ServerState.STOPPING)
            await self._stop_or_fail()
            self._transition(ServerState.STOPPED)
            return self.state

    async def restart(self) -> ServerState:
        async with self._lock:
            if self.state != ServerState.RUNNING:
                raise InvalidStateError(f"Cannot restart while the server is {self.state.value}", self.state.value)
            self._transition(ServerState.RESTARTING)
            await self._stop_or_fail("Restart aborted, stop failed: ")
            resources = await self._launch_or_fail()
        return await self._promote_when_healthy(resources, ServerState.RESTARTING)

    async def reset(self) -> ServerState:
        """Manual recovery from ERROR once the operator has looked at the cause."""
        async with self._lock:
            if self.state != ServerState.ERROR:
                raise InvalidStateError(f"Reset is only possible from ERROR, not {self.state.value}", self.state.value)
            if self.resources is not None:
                await self._stop_process(self.resources)
            if not await self.executor.path_exists(self.layout.binary):
                raise InvalidStateError("Server is not installed, run an install instead", self.state.value)
            self.last_error = None
            self._transition(ServerState.STOPPED, "Reset by operator")
            return self.state

    async def _stop_or_fail(self, prefix: str = ""):
        """Stops the current process; any failure leaves the server in ERROR. Lock must be held."""
        try:
            await self._stop_process(self.resources)
        except Exception as e:
            error = e if isinstance(e, ServerManagerError) else ServerProcessError(f"Failed to stop server: {e}")
            self._transition(ServerState.ERROR, f"{prefix}{error.message}")
            if error is e:
                raise
            raise error from e

    async def _launch_or_fail(self) -> ProcessResources:
        """Spawns the server within START_TIMEOUT. Must be called with the lock held."""
        try:
            return await asyncio.wait_for(
                self._launch(self.configs.load(self.connection_id)),
                timeout=settings.START_TIMEOUT,
            )
        except asyncio.TimeoutError:
            message = f"Server launch did not complete within {settings.START_TIMEOUT}s"
            self._transition(ServerState.ERROR, message)
            raise ServerTimeoutError(message)
        except Exception as e:
            self._transition(ServerState.ERROR, f"Failed to launch server: {e}")
            if isinstance(e, ServerManagerError):
                raise
            raise ServerProcessError(f"Failed to launch server: {e}")

    async def _launch(self, config: ServerConfig) -> ProcessResources:
        if not await self.executor.path_exists(self.layout.binary):
            raise ServerProcessError("Server binary not found, reinstall the server")
        await self.executor.makedirs(self.layout.profile_dir)
        await self._write_config(config)

        handle = await self.executor.spawn(self.layout.launch_command(), cwd=self.layout.install_path)
        resources = ProcessResources(handle=handle)
        self.resources = resources
        try:
            resources.stack.push_async_callback(self._kill_if_alive, resources)
            await self.executor.write_text(self.layout.pid_file, str(handle.pid))
            resources.stack.push_async_callback(self.executor.remove, self.layout.pid_file)
            pump = asyncio.create_task(self._pump(resources))
            resources.tasks.append(pump)
            resources.stack.push_async_callback(self._finish_task, pump)
        except BaseException:
            await self._teardown(resources)
            raise
        self.applied_config = config
        self.logs.push(f"MANAGER     : Started {self.layout.binary_name} (PID {handle.pid})")
        return resources

    async def _promote_when_healthy(self, resources: ProcessResources, from_state: ServerState) -> ServerState:
        try:
            await asyncio.wait_for(self._await_healthy(resources, from_state), timeout=settings.START_TIMEOUT)
        except asyncio.TimeoutError:
            await self._fail_start(resources, from_state, f"Server did not become healthy within {settings.START_TIMEOUT}s")
            raise ServerTimeoutError(f"Server did not become healthy within {settings.START_TIMEOUT}s")
        except ServerProcessError as e:
            await self._fail_start(resources, from_state, e.message)
            raise

        async with self._lock:
            if self.resources is not resources or self.state != from_state:
                raise ConflictError("Start was interrupted", {"state": self.state.value})
            self._transition(ServerState.RUNNING, f"PID {resources.pid}")
            return self.state

    async def _await_healthy(self, resources: ProcessResources, from_state: ServerState):
        grace = settings.START_HEALTH_GRACE
        while True:
            if self.resources is not resources or self.state != from_state:
                return
            if not resources.is_alive():
                raise ServerProcessError(f"Server exited during startup (exit code {resources.returncode()})")
            if resources.ready:
                return
            if grace > 0 and resources.uptime() >= grace:
                return
            await asyncio.sleep(self.health_check_interval)

    async def _fail_start(self, resources: ProcessResources, from_state: ServerState, message: str):
        async with self._lock:
            if self.resources is resources and self.state == from_state:
                resources.expected_exit = True
                await self._teardown(resources)
                self._transition(ServerState.ERROR, message)

    async def _stop_process(self, resources: Optional[ProcessResources]):
        """SIGTERM, grace period, SIGKILL. Raises ServerTimeoutError if the process survives."""
        if resources is None:
            return
        resources.expected_exit = True
        if resources.is_alive():
            await self._signal(resources, force=False)
            if not await self._wait_exit(resources, settings.STOP_GRACE):
                logger.warning(f"{self.connection.name} did not stop within {settings.STOP_GRACE}s, killing")
                await self._signal(resources, force=True)
                if not await self._wait_exit(resources, settings.KILL_TIMEOUT):
                    raise ServerTimeoutError(f"Server process {resources.pid} did not exit after SIGKILL")
        await self._teardown(resources)

    async def _signal(self, resources: ProcessResources, force: bool):
        if resources.handle is not None:
            if force:
                await resources.handle.kill()
            else:
                await resources.handle.terminate()
        elif resources.pid is not None:
            await self.executor.terminate_pid(resources.pid, force=force)

    async def _wait_exit(self, resources: ProcessResources, timeout: float) -> bool:
        if resources.handle is not None:
            try:
                await asyncio.wait_for(resources.handle.wait(), timeout=timeout)
                return True
            except asyncio.TimeoutError:
                return False
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if not await self.executor.is_pid_alive(resources.pid):
                resources.exited = True
                return True
            await asyncio.sleep(self.health_check_interval)
        return False

    async def _kill_if_alive(self, resources: ProcessResources):
        if resources.is_alive() and resources.pid is not None:
            logger.warning(f"Killing leftover server process {resources.pid}")
            await self._signal(resources, force=True)

    async def _finish_task(self, task: asyncio.Task):
        if task is asyncio.current_task() or task.done():
            return
        try:
            # Let the output pump drain the last lines first
            await asyncio.wait_for(asyncio.shield(task), timeout=1)
        except asyncio.TimeoutError:
            task.cancel()
        except Exception as e:
            logger.debug(f"Background task ended with {e}")

    async def _teardown(self, resources: ProcessResources):
        try:
            await resources.close()
        finally:
            if self.resources is resources:
                self.resources = None
                self.applied_config = None

    # --- Output pump and exit watch ---

    async def _pump(self, resources: ProcessResources):
        handle = resources.handle
        while True:
            line = await handle.readline()
            if line is None:
                break
            self.logs.push(line)
            if not resources.ready and any(marker in line for marker in READY_MARKERS):
                resources.ready = True
            if self.version is None:
                match = VERSION_PATTERN.search(line)
                if match:
                    self.version = match.group(1)
        resources.exit_code = await handle.wait()
        resources.exited = True
        await self._on_exit(resources)

    def _watch(self, resources: ProcessResources):
        """Polls a recovered process that we have no pipe to."""
        async def watch():
            while not resources.closed:
                await asyncio.sleep(self.watch_interval)
                try:
                    alive = await self.executor.is_pid_alive(resources.pid)
                except Exception as e:
                    logger.debug(f"PID check for {resources.pid} failed: {e}")
                    continue
                if not alive:
                    resources.exited = True
                    await self._on_exit(resources)
                    return

        task = asyncio.create_task(watch())
        resources.tasks.append(task)
        resources.stack.push_async_callback(self._finish_task, task)

    async def _on_exit(self, resources: ProcessResources):
        if resources.expected_exit or self.resources is not resources:
            return
        if self.state != ServerState.RUNNING:
            # Startup failures are reported by the health check
            return
        message = f"Server exited unexpectedly (exit code {resources.returncode()})"
        self.logs.push(f"MANAGER  (E): {message}")
        await self._teardown(resources)
        self._transition(ServerState.ERROR, message)

    # --- Status ---

    async def status(self) -> ProcessStatus:
        """Snapshot of the server. Never raises; unknown values keep their defaults."""
        status = ProcessStatus(state=self.state.value, version=self.version)
        try:
            config = self.effective_config()
            status.max_players = config.max_players
            status.rcon_enabled = config.rcon_enabled
            status.mission = config.scenario_id.split("/")[-1].replace(".conf", "") or None
            await asyncio.wait_for(self._fill_status(status, config), timeout=settings.CONNECTION_TEST_TIMEOUT)
        except Exception as e:
            logger.debug(f"Status of {self.connection.name} incomplete: {e}")
        return status

    async def _fill_status(self, status: ProcessStatus, config: ServerConfig):
        status.is_installed = await self.executor.path_exists(self.layout.binary)

        resources = self.resources
        if resources is None or resources.pid is None or not resources.is_alive():
            return
        info = await self.executor.process_info(resources.pid)
        if info is None:
            return
        status.is_online = True
        status.pid = info.pid
        status.cpu = info.cpu
        status.memory = info.memory_mb
        status.uptime = info.uptime

        if self.state != ServerState.RUNNING:
            return
        players = None
        if config.a2s_enabled:
            host = self._a2s_host(config)
            try:
                server_info = await self.query(host, config.a2s_port, timeout=settings.QUERY_TIMEOUT)
                players = server_info.players
                status.max_players = server_info.max_players or status.max_players
                status.map = server_info.map or None
            except (OSError, ValueError, asyncio.TimeoutError) as e:
                logger.debug(f"A2S query of {self.connection.name} failed: {e}")
        if players is None:
            players = await self.logs.players_from_log()
        status.players = players

    # --- Players ---

    def _a2s_host(self, config: ServerConfig) -> str:
        return config.a2s_address or ("127.0.0.1" if self.connection.type == "local" else self.connection.host)

    async def players(self) -> List[OnlinePlayer]:
        """Online players. Only the console log carries the ids a kick needs, A2S is the fallback for names."""
        if not self.is_running():
            return []
        try:
            players = await self.logs.online_players_from_log()
        except (OSError, ServerManagerError) as e:
            logger.debug(f"Reading players of {self.connection.name} from the console log failed: {e}")
            players = []
        if players:
            return players

        config = self.effective_config()
        if not config.a2s_enabled:
            return []
        try:
            found = await self.player_query(self._a2s_host(config), config.a2s_port, timeout=settings.QUERY_TIMEOUT)
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            logger.debug(f"A2S player query of {self.connection.name} failed: {e}")
            return []
        return [
            OnlinePlayer(id=f"a2s_{index}", name=p.name, score=p.score, duration=p.duration, source="a2s")
            for index, p in enumerate(found)
        ]

    async def kick(self, player: str) -> OnlinePlayer:
        """Kicks an online player by the id ``players()`` reported, or by the server's numeric PlayerId."""
        if not self.is_running():
            raise NotRunningError("Server is not running", {"state": self.state.value})
        online = await self.players()
        target = next((p for p in online if p.id == player), None)
        if target is None and player.isdigit():
            number = int(player)
            target = next((p for p in online if number in (p.player_id, p.connection_id)), None)
            if target is None:
                target = OnlinePlayer(id=player, name=player, player_id=number)
        if target is None:
            raise NotFoundError(f"Player {player} is not online")

        number = target.player_id if target.player_id is not None else target.connection_id
        if number is None:
            raise ValidationError(
                f"Player {target.name} cannot be kicked",
                {"player": "The server has not reported a player id for this player yet"},
            )
        await self.rcon.send_command(f"#kick {number}")
        logger.info(f"[{self.connection.name}] Kicked {target.name} (player {number})")
        return target

    # --- Shutdown ---

    async def close(self):
        """Detaches from the connection. A running server keeps running and is recovered from its PID file."""
        if self.install_task is not None and not self.install_task.done():
            self.install_task.cancel()
        resources = self.resources
        if resources is not None:
            resources.expected_exit = True
            for task in resources.tasks:
                task.cancel()
        self.rcon.close_pool()
