import asyncio
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.exceptions import ServerTimeoutError
from app.services.gameserver.connections import make_executor
from app.services.gameserver.local_executor import LocalExecutor
from app.services.gameserver.ssh_executor import SSHExecutor


def run_result(exit_status=0, stdout="", stderr=""):
    return SimpleNamespace(exit_status=exit_status, stdout=stdout, stderr=stderr)


@pytest.fixture
def ssh():
    """SSHExecutor with an already open, mocked connection."""
    executor = SSHExecutor(host="example.org", username="arma", password="pw", connect_timeout=1)
    executor.conn = MagicMock()
    executor.conn.run = AsyncMock(return_value=run_result(stdout="ok\n"))
    return executor


def test_make_executor_picks_transport():
    remote = SimpleNamespace(type="remote", host="example.org", username="arma", port=2222, password="pw", private_key=None)
    local = SimpleNamespace(type="local")

    ssh_executor = make_executor(remote)
    assert isinstance(ssh_executor, SSHExecutor)
    assert ssh_executor.port == 2222
    assert isinstance(make_executor(local), LocalExecutor)


# ==============================================================================
# SSH
# ==============================================================================

@pytest.mark.asyncio
async def test_ssh_run_quotes_arguments(ssh):
    result = await ssh.run(["ls", "/srv/my server"], cwd="/srv")

    assert result.ok
    ssh.conn.run.assert_awaited_once_with("cd /srv && ls '/srv/my server'", check=False)


@pytest.mark.asyncio
async def test_ssh_process_info_parses_ps(ssh):
    ssh.conn.run.return_value = run_result(stdout=" 12.5 2097152 3600\n")

    info = await ssh.process_info(4242)

    assert (info.cpu, info.memory_mb, info.uptime) == (12.5, 2048.0, 3600)


@pytest.mark.asyncio
async def test_ssh_process_info_of_dead_process(ssh):
    ssh.conn.run.return_value = run_result(exit_status=1)

    assert await ssh.process_info(4242) is None
    assert not await ssh.is_pid_alive(4242)


@pytest.mark.asyncio
async def test_ssh_terminate_sends_signal(ssh):
    await ssh.terminate_pid(4242, force=True)

    ssh.conn.run.assert_awaited_once_with("kill -KILL 4242", check=False)


@pytest.mark.asyncio
async def test_ssh_tail_of_missing_file(ssh):
    ssh.conn.run.return_value = run_result(exit_status=1, stderr="No such file")

    with pytest.raises(FileNotFoundError):
        await ssh.tail("/srv/missing.log", 10)


class StalledSFTP:
    async def __aenter__(self):
        await asyncio.Event().wait()

    async def __aexit__(self, *exc):
        return False


@pytest.mark.asyncio
async def test_ssh_file_operations_are_bounded(ssh):
    ssh.command_timeout = 0.1
    ssh.conn.start_sftp_client = MagicMock(return_value=StalledSFTP())

    with pytest.raises(ServerTimeoutError):
        await ssh.write_text("/srv/reforger/server.pid", "4242")
    with pytest.raises(ServerTimeoutError):
        await ssh.path_exists("/srv/reforger/ArmaReforgerServer")


@pytest.mark.asyncio
async def test_ssh_spawn_without_pid_times_out(ssh):
    ssh.command_timeout = 0.1
    process = MagicMock()

    async def silent():
        await asyncio.Event().wait()

    process.stdout.readline = silent
    ssh.conn.create_process = AsyncMock(return_value=process)

    with pytest.raises(ServerTimeoutError):
        await ssh.spawn(["./ArmaReforgerServer"], cwd="/srv/reforger")
    process.close.assert_called_once()


# ==============================================================================
# Local
# ==============================================================================

@pytest.mark.asyncio
async def test_local_files(tmp_path):
    executor = LocalExecutor()
    path = str(tmp_path / "server.json")

    await executor.write_text(path, "{}\n")

    assert await executor.path_exists(path)
    assert await executor.read_text(path) == "{}\n"
    await executor.remove(path)
    await executor.remove(path)
    assert not await executor.path_exists(path)


@pytest.mark.asyncio
async def test_local_tail_reads_last_lines(tmp_path):
    path = tmp_path / "console.log"
    path.write_text("".join(f"line {i}\n" for i in range(5000)))

    lines = await LocalExecutor().tail(str(path), 3)

    assert lines == ["line 4997", "line 4998", "line 4999"]


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
async def test_local_run_and_timeout():
    executor = LocalExecutor()

    result = await executor.run("echo hello")
    assert result.stdout.strip() == "hello"

    with pytest.raises(ServerTimeoutError):
        await executor.run(["sleep", "5"], timeout=0.1)


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell")
async def test_local_spawn_streams_output():
    executor = LocalExecutor()

    handle = await executor.spawn(["sh", "-c", "echo first; echo second"])

    assert await handle.readline() == "first"
    assert await handle.readline() == "second"
    assert await handle.readline() is None
    assert await handle.wait() == 0
    assert not handle.is_alive()
