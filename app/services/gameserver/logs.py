import logging
import re
from typing import AsyncIterator, Callable, Dict, List, Optional

from app import settings
from app.exceptions import NotFoundError, ValidationError
from app.services.gameserver import events
from app.services.gameserver.console import ConsoleBuffer, infer_severity
from app.services.gameserver.events import EventBus, Subscription
from app.services.gameserver.executor import DirEntry, Executor
from app.services.gameserver.layout import ServerLayout
from database.schemas import LogLine, OnlinePlayer

logger = logging.getLogger(__name__)

VERSION_PATTERN = re.compile(r"version\s*(\d+\.\d+\.\d+\.\d+)", re.IGNORECASE)
PLAYER_CONNECTED = re.compile(r"Player connected:\s*connectionID=(\d+)", re.IGNORECASE)
PLAYER_DISCONNECTED = re.compile(r"Player disconnected:\s*connectionID=(\d+)", re.IGNORECASE)
PLAYER_CONNECTING = re.compile(r"###\s*Connecting player:\s*connectionID=(\d+),\s*Name=([^,]+?)\s*(?:,|$)", re.IGNORECASE)
PLAYER_UPDATING = re.compile(r"###\s*Updating player:\s*PlayerId=(\d+),\s*Name=([^,]+),.*?IdentityId=([0-9a-f-]+)", re.IGNORECASE)

LogObserver = Callable[[List[LogLine]], object]


def _check_name(value: str, field: str):
    if not value or "/" in value or "\\" in value or value in (".", "..") or ".." in value:
        raise ValidationError(f"Invalid {field} '{value}'", {field: "Must be a plain name"})


def count_players(lines: List[str]) -> int:
    """Players still connected according to connect/disconnect lines."""
    active = set()
    for line in lines:
        match = PLAYER_CONNECTED.search(line)
        if match:
            active.add(match.group(1))
            continue
        match = PLAYER_DISCONNECTED.search(line)
        if match:
            active.discard(match.group(1))
    return len(active)


def online_players(lines: List[str]) -> List[OnlinePlayer]:
    """
    Players still connected, with the ids the server printed for them.

    A connection is opened by "Player connected", named by "### Connecting
    player" and gets its PlayerId and IdentityId from "### Updating player".
    The PlayerId normally equals the connectionID; when it does not, the
    update belongs to the newest open connection. Connections that never
    reported a name are not listed.
    """
    active: Dict[int, OnlinePlayer] = {}
    for line in lines:
        match = PLAYER_CONNECTED.search(line)
        if match:
            connection_id = int(match.group(1))
            active[connection_id] = OnlinePlayer(id=f"conn_{connection_id}", name="", connection_id=connection_id)
            continue
        match = PLAYER_DISCONNECTED.search(line)
        if match:
            active.pop(int(match.group(1)), None)
            continue
        match = PLAYER_CONNECTING.search(line)
        if match:
            player = active.get(int(match.group(1)))
            if player is not None:
                player.name = match.group(2).strip()
            continue
        match = PLAYER_UPDATING.search(line)
        if match and active:
            player_id = int(match.group(1))
            player = active.get(player_id) or active[max(active)]
            player.player_id = player_id
            player.name = match.group(2).strip()
            player.id = match.group(3)
    return [p for p in active.values() if p.name]


class LogStreamer:
    """Historical log files on disk plus the live console of one server."""

    def __init__(self, connection_id: str, executor: Executor, install_path: str, bus: EventBus, console: ConsoleBuffer):
        self.connection_id = connection_id
        self.executor = executor
        self.layout = ServerLayout(executor, install_path)
        self.bus = bus
        self.console = console

    # --- Log files ---

    async def _directories(self) -> List[DirEntry]:
        logs_dir = self.layout.logs_dir
        if not await self.executor.is_dir(logs_dir):
            return []
        entries = [e for e in await self.executor.list_dir(logs_dir) if e.is_dir]
        # Directory names carry a sortable timestamp, used to break mtime ties
        return sorted(entries, key=lambda e: (e.mtime, e.name), reverse=True)

    async def iter_log_directories(self) -> AsyncIterator[str]:
        for entry in await self._directories():
            yield entry.name

    async def list_log_directories(self) -> List[str]:
        return [entry.name for entry in await self._directories()]

    async def list_log_files(self, directory: str) -> List[str]:
        _check_name(directory, "directory")
        path = self.executor.join(self.layout.logs_dir, directory)
        if not await self.executor.is_dir(path):
            raise NotFoundError(f"Log directory '{directory}' not found")
        return sorted(e.name for e in await self.executor.list_dir(path) if not e.is_dir and e.name.endswith(".log"))

    async def read_log_file(self, directory: str, file_name: str, max_lines: int = 500) -> List[LogLine]:
        _check_name(directory, "directory")
        _check_name(file_name, "file")
        max_lines = max(1, min(int(max_lines), settings.LOG_MAX_LINES))
        path = self.executor.join(self.layout.logs_dir, directory, file_name)
        if not await self.executor.path_exists(path):
            raise NotFoundError(f"Log file '{directory}/{file_name}' not found")
        try:
            lines = await self.executor.tail(path, max_lines)
        except FileNotFoundError:
            raise NotFoundError(f"Log file '{directory}/{file_name}' not found")
        return [
            LogLine(seq=i + 1, text=text, severity=infer_severity(text))
            for i, text in enumerate(lines)
            if text.strip()
        ]

    async def latest_console_log(self) -> Optional[str]:
        directories = await self.list_log_directories()
        if not directories:
            return None
        path = self.executor.join(self.layout.logs_dir, directories[0], "console.log")
        return path if await self.executor.path_exists(path) else None

    async def detect_game_version(self) -> Optional[str]:
        path = await self.latest_console_log()
        if path is None:
            return None
        for line in await self.executor.head(path, 200):
            match = VERSION_PATTERN.search(line)
            if match:
                logger.info(f"Detected server version {match.group(1)} for {self.connection_id}")
                return match.group(1)
        return None

    async def players_from_log(self) -> int:
        path = await self.latest_console_log()
        if path is None:
            return 0
        return count_players(await self.executor.tail(path, 1000))

    async def online_players_from_log(self) -> List[OnlinePlayer]:
        path = await self.latest_console_log()
        if path is None:
            return []
        return online_players(await self.executor.tail(path, 1000))

    # --- Live console ---

    def tail_console(self, max_lines: Optional[int] = None, since: Optional[int] = None) -> List[LogLine]:
        if max_lines is None:
            max_lines = settings.CONSOLE_TAIL_LINES
        return self.console.tail(max_lines, since=since)

    def push(self, text: str) -> LogLine:
        """Appends one console line and notifies subscribers."""
        line = self.console.append(text)
        self.bus.publish(self.connection_id, events.CONSOLE, line)
        return line

    def subscribe(self, observer: LogObserver) -> Subscription:
        def deliver(batch):
            return observer([event.data for event in batch])

        return self.bus.subscribe(self.connection_id, deliver, kinds={events.CONSOLE})

    def unsubscribe(self, subscription: Subscription):
        self.bus.unsubscribe(subscription)
