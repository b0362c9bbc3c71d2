import asyncio
import logging
import shlex
from typing import List, Optional

import asyncssh

from app import settings
from app.exceptions import ServerTimeoutError
from app.services.gameserver.executor import (
    Command,
    CommandResult,
    DirEntry,
    Executor,
    LineCallback,
    ProcessHandle,
    ProcessInfo,
)

logger = logging.getLogger(__name__)


def _quote_command(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(part) for part in command)


class RemoteProcessHandle(ProcessHandle):
    def __init__(self, executor: "SSHExecutor", process: asyncssh.SSHClientProcess, pid: int, argv: List[str]):
        super().__init__(pid, argv)
        self.executor = executor
        self.process = process
        self._returncode: Optional[int] = None

    async def readline(self) -> Optional[str]:
        line = await self.process.stdout.readline()
        if not line:
            return None
        return line.rstrip("\r\n")

    async def wait(self) -> int:
        result = await self.process.wait(check=False)
        self._returncode = result.exit_status if result.exit_status is not None else -1
        return self._returncode

    @property
    def returncode(self) -> Optional[int]:
        if self._returncode is None and self.process.exit_status is not None:
            self._returncode = self.process.exit_status
        return self._returncode

    async def terminate(self) -> None:
        await self.executor.terminate_pid(self.pid)

    async def kill(self) -> None:
        await self.executor.terminate_pid(self.pid, force=True)


class SSHExecutor(Executor):
    """Runs everything on a remote host over a single SSH connection."""

    platform = "linux"

    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        connect_timeout: float = 10,
        command_timeout: Optional[float] = None,
    ):
        self.host = host
        self.port = port or 22
        self.username = username
        self.password = password
        self.private_key = private_key
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout or settings.COMMAND_TIMEOUT
        self.conn: Optional[asyncssh.SSHClientConnection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> asyncssh.SSHClientConnection:
        async with self._lock:
            if self.conn is not None:
                return self.conn
            kwargs = {
                "host": self.host,
                "port": self.port,
                "username": self.username,
                "known_hosts": None,
            }
            if self.private_key:
                kwargs["client_keys"] = [asyncssh.import_private_key(self.private_key)]
            if self.password:
                kwargs["password"] = self.password
            try:
                self.conn = await asyncio.wait_for(asyncssh.connect(**kwargs), timeout=self.connect_timeout)
            except asyncio.TimeoutError:
                raise ServerTimeoutError(f"SSH connection to {self.host}:{self.port} timed out")
            logger.info(f"[SSH] Connected to {self.username}@{self.host}:{self.port}")
            return self.conn

    async def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            try:
                await self.conn.wait_closed()
            except asyncssh.Error as e:
                logger.warning(f"[SSH] Error while closing connection to {self.host}: {e}")
            self.conn = None

    # --- Commands ---

    async def run(self, command: Command, timeout: Optional[float] = None, cwd: Optional[str] = None) -> CommandResult:
        conn = await self.connect()
        cmd = _quote_command(command)
        if cwd:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        try:
            try:
                result = await asyncio.wait_for(conn.run(cmd, check=False), timeout=timeout)
            except (asyncssh.ConnectionLost, asyncssh.DisconnectError, asyncssh.ChannelOpenError) as e:
                logger.warning(f"[SSH] Connection error, reconnecting to {self.host}: {e}")
                self.conn = None
                conn = await self.connect()
                result = await asyncio.wait_for(conn.run(cmd, check=False), timeout=timeout)
        except asyncio.TimeoutError:
            raise ServerTimeoutError(f"Remote command timed out after {timeout}s", {"command": cmd})
        return CommandResult(
            exit_code=result.exit_status if result.exit_status is not None else -1,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    async def stream(self, command: Command, on_line: LineCallback, cwd: Optional[str] = None) -> int:
        conn = await self.connect()
        cmd = _quote_command(command)
        if cwd:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        process = await conn.create_process(cmd, stderr=asyncssh.STDOUT)
        async for line in process.stdout:
            line = line.rstrip("\r\n")
            if line:
                on_line(line)
        result = await process.wait(check=False)
        return result.exit_status if result.exit_status is not None else -1

    async def spawn(self, argv: List[str], cwd: Optional[str] = None) -> ProcessHandle:
        conn = await self.connect()
        # The shell reports its PID and then becomes the server process
        cmd = f"echo $$; exec {_quote_command(argv)} 2>&1"
        if cwd:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        process = await conn.create_process(cmd)
        try:
            first = await asyncio.wait_for(process.stdout.readline(), timeout=self.command_timeout)
        except asyncio.TimeoutError:
            process.close()
            raise ServerTimeoutError(f"Remote server on {self.host} did not report its PID")
        try:
            pid = int(first.strip())
        except ValueError:
            process.close()
            raise RuntimeError(f"Could not determine remote PID, got {first!r}")
        logger.info(f"[SSH] Spawned {argv[0]} on {self.host} with PID {pid}")
        return RemoteProcessHandle(self, process, pid, argv)

    # --- Processes ---

    async def is_pid_alive(self, pid: int) -> bool:
        result = await self.run(f"kill -0 {int(pid)}", timeout=self.connect_timeout)
        return result.ok

    async def terminate_pid(self, pid: int, force: bool = False) -> None:
        sig = "KILL" if force else "TERM"
        await self.run(f"kill -{sig} {int(pid)}", timeout=self.connect_timeout)

    async def process_info(self, pid: int) -> Optional[ProcessInfo]:
        result = await self.run(f"ps -o %cpu=,rss=,etimes= -p {int(pid)}", timeout=self.connect_timeout)
        if not result.ok or not result.stdout.strip():
            return None
        try:
            cpu, rss, etimes = result.stdout.split()[:3]
            return ProcessInfo(pid=pid, cpu=float(cpu), memory_mb=round(int(rss) / 1024, 1), uptime=int(etimes))
        except ValueError:
            logger.warning(f"[SSH] Unexpected ps output for {pid}: {result.stdout!r}")
            return None

    # --- Files ---

    async def _bounded(self, coro, what: str):
        try:
            return await asyncio.wait_for(coro, timeout=self.command_timeout)
        except asyncio.TimeoutError:
            raise ServerTimeoutError(f"SFTP {what} on {self.host} timed out after {self.command_timeout}s")

    async def path_exists(self, path: str) -> bool:
        conn = await self.connect()

        async def exists():
            async with conn.start_sftp_client() as sftp:
                return await sftp.exists(path)

        return await self._bounded(exists(), f"stat of {path}")

    async def is_dir(self, path: str) -> bool:
        conn = await self.connect()

        async def isdir():
            async with conn.start_sftp_client() as sftp:
                return await sftp.isdir(path)

        return await self._bounded(isdir(), f"stat of {path}")

    async def is_executable(self, path: str) -> bool:
        result = await self.run(f"test -x {shlex.quote(path)}", timeout=self.connect_timeout)
        return result.ok

    async def list_dir(self, path: str) -> List[DirEntry]:
        conn = await self.connect()

        async def scandir():
            entries = []
            async with conn.start_sftp_client() as sftp:
                async for entry in sftp.scandir(path):
                    if entry.filename in (".", ".."):
                        continue
                    attrs = entry.attrs
                    entries.append(DirEntry(
                        name=entry.filename,
                        is_dir=attrs.type == asyncssh.FILEXFER_TYPE_DIRECTORY,
                        mtime=attrs.mtime or 0,
                        size=attrs.size or 0,
                    ))
            return entries

        return await self._bounded(scandir(), f"listing of {path}")

    async def makedirs(self, path: str) -> None:
        conn = await self.connect()

        async def makedirs():
            async with conn.start_sftp_client() as sftp:
                await sftp.makedirs(path, exist_ok=True)

        await self._bounded(makedirs(), f"mkdir of {path}")

    async def read_text(self, path: str) -> str:
        conn = await self.connect()

        async def read():
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(path, "rb") as f:
                    return await f.read()

        content = await self._bounded(read(), f"read of {path}")
        return content.decode("utf-8", errors="replace")

    async def write_text(self, path: str, content: str) -> None:
        conn = await self.connect()

        async def write():
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(path, "wb") as f:
                    await f.write(content.encode("utf-8"))

        await self._bounded(write(), f"write of {path}")

    async def remove(self, path: str) -> None:
        conn = await self.connect()

        async def remove():
            async with conn.start_sftp_client() as sftp:
                if await sftp.exists(path):
                    await sftp.remove(path)

        await self._bounded(remove(), f"removal of {path}")

    async def head(self, path: str, max_lines: int) -> List[str]:
        result = await self.run(f"head -n {int(max_lines)} -- {shlex.quote(path)}", timeout=self.connect_timeout)
        if not result.ok:
            raise FileNotFoundError(path)
        return result.stdout.splitlines()

    async def tail(self, path: str, max_lines: int) -> List[str]:
        result = await self.run(f"tail -n {int(max_lines)} -- {shlex.quote(path)}", timeout=self.connect_timeout)
        if not result.ok:
            raise FileNotFoundError(path)
        return result.stdout.splitlines()

    async def download(self, url: str, destination: str) -> None:
        result = await self.run(f"curl -fsSL -o {shlex.quote(destination)} {shlex.quote(url)}")
        if not result.ok:
            raise RuntimeError(f"Download of {url} failed: {result.stderr.strip()}")

    async def extract(self, archive: str, destination: str) -> None:
        await self.makedirs(destination)
        result = await self.run(f"tar -xzf {shlex.quote(archive)} -C {shlex.quote(destination)}")
        if not result.ok:
            raise RuntimeError(f"Extracting {archive} failed: {result.stderr.strip()}")
