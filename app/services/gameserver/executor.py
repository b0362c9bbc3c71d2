"""
Executor interface.

Everything the game-server services do to the host machine goes through an
Executor: running commands, spawning the server binary, inspecting
processes and touching files. ``LocalExecutor`` works on this machine,
``SSHExecutor`` on a remote host over SSH/SFTP.
"""
import abc
import posixpath
import ntpath
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Union


@dataclass
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class ProcessInfo:
    pid: int
    cpu: float = 0.0
    memory_mb: float = 0.0
    uptime: int = 0


@dataclass
class DirEntry:
    name: str
    is_dir: bool
    mtime: float = 0.0
    size: int = 0


class ProcessHandle(abc.ABC):
    """A long-lived process spawned by an executor."""

    def __init__(self, pid: int, argv: Optional[List[str]] = None):
        self.pid = pid
        self.argv = list(argv or [])

    @abc.abstractmethod
    async def readline(self) -> Optional[str]:
        """Next line of combined stdout/stderr, ``None`` at end of stream."""

    @abc.abstractmethod
    async def wait(self) -> int:
        pass

    @property
    @abc.abstractmethod
    def returncode(self) -> Optional[int]:
        pass

    @abc.abstractmethod
    async def terminate(self) -> None:
        pass

    @abc.abstractmethod
    async def kill(self) -> None:
        pass

    def is_alive(self) -> bool:
        return self.returncode is None


LineCallback = Callable[[str], None]
Command = Union[str, Sequence[str]]


class Executor(abc.ABC):
    platform = "linux"

    def join(self, *parts: str) -> str:
        if self.platform == "win32":
            return ntpath.join(*parts)
        return posixpath.join(*parts)

    def basename(self, path: str) -> str:
        if self.platform == "win32":
            return ntpath.basename(path)
        return posixpath.basename(path)

    # --- Commands ---

    @abc.abstractmethod
    async def run(self, command: Command, timeout: Optional[float] = None, cwd: Optional[str] = None) -> CommandResult:
        """Runs a command to completion. Raises ServerTimeoutError after ``timeout``."""

    @abc.abstractmethod
    async def stream(self, command: Command, on_line: LineCallback, cwd: Optional[str] = None) -> int:
        """Runs a command, calling ``on_line`` for each output line. Returns the exit code."""

    @abc.abstractmethod
    async def spawn(self, argv: List[str], cwd: Optional[str] = None) -> ProcessHandle:
        pass

    # --- Processes ---

    @abc.abstractmethod
    async def is_pid_alive(self, pid: int) -> bool:
        pass

    @abc.abstractmethod
    async def terminate_pid(self, pid: int, force: bool = False) -> None:
        pass

    @abc.abstractmethod
    async def process_info(self, pid: int) -> Optional[ProcessInfo]:
        pass

    # --- Files ---

    @abc.abstractmethod
    async def path_exists(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    async def is_dir(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    async def is_executable(self, path: str) -> bool:
        pass

    @abc.abstractmethod
    async def list_dir(self, path: str) -> List[DirEntry]:
        pass

    @abc.abstractmethod
    async def makedirs(self, path: str) -> None:
        pass

    @abc.abstractmethod
    async def read_text(self, path: str) -> str:
        pass

    @abc.abstractmethod
    async def write_text(self, path: str, content: str) -> None:
        pass

    @abc.abstractmethod
    async def remove(self, path: str) -> None:
        pass

    @abc.abstractmethod
    async def head(self, path: str, max_lines: int) -> List[str]:
        pass

    @abc.abstractmethod
    async def tail(self, path: str, max_lines: int) -> List[str]:
        """Last ``max_lines`` lines of a file without reading the whole file."""

    @abc.abstractmethod
    async def download(self, url: str, destination: str) -> None:
        pass

    @abc.abstractmethod
    async def extract(self, archive: str, destination: str) -> None:
        pass

    async def close(self) -> None:
        pass
