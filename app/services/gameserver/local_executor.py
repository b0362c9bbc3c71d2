import asyncio
import logging
import os
import shlex
import subprocess
import sys
import tarfile
import time
import zipfile
from typing import Dict, List, Optional

import aiofiles
import aiofiles.os
import httpx
import psutil

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

# Output lines of the game server can be very long (script stack traces)
STREAM_LIMIT = 1024 * 1024
TAIL_BLOCK_SIZE = 8192


def _decode(data: bytes) -> str:
    return data.decode("utf-8", errors="replace").rstrip("\r\n")


class LocalProcessHandle(ProcessHandle):
    def __init__(self, process: asyncio.subprocess.Process, argv: List[str]):
        super().__init__(process.pid, argv)
        self.process = process

    async def readline(self) -> Optional[str]:
        if self.process.stdout is None:
            return None
        data = await self.process.stdout.readline()
        if not data:
            return None
        return _decode(data)

    async def wait(self) -> int:
        return await self.process.wait()

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    async def terminate(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    async def kill(self) -> None:
        if self.process.returncode is None:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class LocalExecutor(Executor):
    """Runs everything on this machine."""

    def __init__(self):
        self.platform = "win32" if sys.platform == "win32" else "linux"
        # psutil needs the same Process object between calls for cpu_percent
        self._ps_cache: Dict[int, psutil.Process] = {}

    # --- Commands ---

    async def _create(self, command: Command, cwd: Optional[str]):
        if isinstance(command, str):
            return await asyncio.create_subprocess_shell(
                command,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        return await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

    async def run(self, command: Command, timeout: Optional[float] = None, cwd: Optional[str] = None) -> CommandResult:
        process = await self._create(command, cwd)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ServerTimeoutError(f"Command timed out after {timeout}s", {"command": _describe(command)})
        return CommandResult(
            exit_code=process.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def stream(self, command: Command, on_line: LineCallback, cwd: Optional[str] = None) -> int:
        if isinstance(command, str):
            command = shlex.split(command, posix=self.platform != "win32")
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            limit=STREAM_LIMIT,
        )
        while True:
            data = await process.stdout.readline()
            if not data:
                break
            line = _decode(data)
            if line:
                on_line(line)
        return await process.wait()

    async def spawn(self, argv: List[str], cwd: Optional[str] = None) -> ProcessHandle:
        kwargs = {}
        if self.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            # Own session so signals aimed at the manager do not hit the server
            kwargs["start_new_session"] = True
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            limit=STREAM_LIMIT,
            **kwargs,
        )
        logger.info(f"Spawned {argv[0]} with PID {process.pid}")
        return LocalProcessHandle(process, argv)

    # --- Processes ---

    def _ps(self, pid: int) -> psutil.Process:
        proc = self._ps_cache.get(pid)
        if proc is None or not proc.is_running():
            proc = psutil.Process(pid)
            self._ps_cache[pid] = proc
        return proc

    async def is_pid_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return False

    async def terminate_pid(self, pid: int, force: bool = False) -> None:
        try:
            proc = psutil.Process(pid)
            if force:
                proc.kill()
            else:
                proc.terminate()
        except psutil.NoSuchProcess:
            logger.info(f"Process {pid} already gone")

    async def process_info(self, pid: int) -> Optional[ProcessInfo]:
        try:
            proc = self._ps(pid)
            with proc.oneshot():
                cpu = proc.cpu_percent()
                mem = proc.memory_info().rss / (1024 * 1024)
                uptime = int(time.time() - proc.create_time())
            return ProcessInfo(pid=pid, cpu=cpu, memory_mb=round(mem, 1), uptime=uptime)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            self._ps_cache.pop(pid, None)
            return None

    # --- Files ---

    async def path_exists(self, path: str) -> bool:
        return await aiofiles.os.path.exists(path)

    async def is_dir(self, path: str) -> bool:
        return await aiofiles.os.path.isdir(path)

    async def is_executable(self, path: str) -> bool:
        return await aiofiles.os.path.exists(path) and os.access(path, os.X_OK)

    async def list_dir(self, path: str) -> List[DirEntry]:
        entries = []
        for name in await aiofiles.os.listdir(path):
            full = os.path.join(path, name)
            try:
                st = await aiofiles.os.stat(full)
            except FileNotFoundError:
                continue
            entries.append(DirEntry(
                name=name,
                is_dir=os.path.isdir(full),
                mtime=st.st_mtime,
                size=st.st_size,
            ))
        return entries

    async def makedirs(self, path: str) -> None:
        await aiofiles.os.makedirs(path, exist_ok=True)

    async def read_text(self, path: str) -> str:
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            return await f.read()

    async def write_text(self, path: str, content: str) -> None:
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(content)

    async def remove(self, path: str) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass

    async def head(self, path: str, max_lines: int) -> List[str]:
        lines = []
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            async for line in f:
                lines.append(line.rstrip("\r\n"))
                if len(lines) >= max_lines:
                    break
        return lines

    async def tail(self, path: str, max_lines: int) -> List[str]:
        if max_lines <= 0:
            return []
        async with aiofiles.open(path, "rb") as f:
            await f.seek(0, os.SEEK_END)
            position = await f.tell()
            data = b""
            # Read blocks backwards until there are enough newlines
            while position > 0 and data.count(b"\n") <= max_lines:
                step = min(TAIL_BLOCK_SIZE, position)
                position -= step
                await f.seek(position)
                data = await f.read(step) + data
        lines = data.decode("utf-8", errors="replace").splitlines()
        return lines[-max_lines:]

    async def download(self, url: str, destination: str) -> None:
        async with httpx.AsyncClient(follow_redirects=True) as client:
            async with client.stream("GET", url) as resp:
                resp.raise_for_status()
                async with aiofiles.open(destination, "wb") as f:
                    async for chunk in resp.aiter_bytes():
                        await f.write(chunk)

    async def extract(self, archive: str, destination: str) -> None:
        await asyncio.to_thread(_extract_archive, archive, destination)


def _extract_archive(archive: str, destination: str):
    os.makedirs(destination, exist_ok=True)
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as zf:
            zf.extractall(destination)
    else:
        with tarfile.open(archive, "r:*") as tf:
            tf.extractall(destination, filter="data")


def _describe(command: Command) -> str:
    if isinstance(command, str):
        return command
    return " ".join(shlex.quote(part) for part in command)
