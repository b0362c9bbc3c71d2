import asyncio

import pytest

from app.services.gameserver.steamcmd import InstallPipeline, ProgressTracker, handle_steamcmd_line

from tests.conftest import BINARY, INSTALL_PATH


def feed(lines):
    tracker = ProgressTracker("c1")
    outcome = {"success": False, "error": None}
    for line in lines:
        handle_steamcmd_line(tracker, line, outcome)
    return tracker, outcome


def test_download_progress_is_scaled():
    tracker, _ = feed([" Update state (0x61) downloading, progress: 50.00 (1 / 2)"])

    assert tracker.current.status == "downloading"
    assert tracker.current.progress == 45.0


def test_progress_never_goes_backwards():
    tracker, _ = feed([
        " Update state (0x61) downloading, progress: 80.00 (8 / 10)",
        " Update state (0x5) verifying install, progress: 10.00 (1 / 10)",
    ])

    assert tracker.current.progress == 72.0
    assert tracker.current.message.startswith("Verifying")


def test_commit_phase_maps_to_extracting():
    tracker, _ = feed([" Update state (0x101) committing, progress: 50.00 (1 / 2)"])

    assert tracker.current.status == "extracting"
    assert tracker.current.progress == 92.5


def test_success_and_error_markers():
    _, outcome = feed(["Success! App '1874900' fully installed."])
    assert outcome["success"]

    _, outcome = feed(["ERROR! Failed to install app '1874900' (Disk write failure)"])
    assert outcome["error"] == "Failed to install app '1874900' (Disk write failure)"


def test_failure_keeps_last_progress():
    tracker, _ = feed([" Update state (0x61) downloading, progress: 40.00 (4 / 10)"])

    tracker.fail("Installation failed")

    assert tracker.current.status == "error"
    assert tracker.current.progress == 36.0


# ==============================================================================
# Pipeline
# ==============================================================================

@pytest.fixture
def pipeline(executor):
    return InstallPipeline("c1", executor, INSTALL_PATH, steamcmd_path="/opt/steamcmd", retention=60)


@pytest.mark.asyncio
async def test_missing_steamcmd_is_bootstrapped(pipeline, executor):
    executor.stream_lines = ["Success! App '1874900' fully installed."]
    executor.on_stream = executor.install_server

    result = await pipeline.run()

    assert result.status == "complete"
    assert executor.downloads[0][1] == "/opt/steamcmd/steamcmd_linux.tar.gz"
    assert executor.extracted == [("/opt/steamcmd/steamcmd_linux.tar.gz", "/opt/steamcmd")]
    assert "/opt/steamcmd/steamcmd.sh +quit" in executor.commands
    assert any("+app_update 1874900 validate" in c for c in executor.commands)


@pytest.mark.asyncio
async def test_missing_binary_fails_validation(pipeline, executor):
    executor.add_file("/opt/steamcmd/steamcmd.sh", executable=True)
    executor.stream_lines = ["Success! App '1874900' fully installed."]

    result = await pipeline.run()

    assert result.status == "error"
    assert "not found" in result.message
    assert not pipeline.running


@pytest.mark.asyncio
async def test_non_executable_binary_is_fixed(pipeline, executor):
    executor.add_file("/opt/steamcmd/steamcmd.sh", executable=True)
    executor.stream_lines = ["Success! App '1874900' fully installed."]
    executor.on_stream = lambda: executor.add_file(BINARY)

    result = await pipeline.run()

    assert result.status == "complete"
    assert f"chmod +x {BINARY}" in executor.commands


@pytest.mark.asyncio
async def test_progress_is_cleared_after_retention(executor):
    pipeline = InstallPipeline("c1", executor, INSTALL_PATH, steamcmd_path="/opt/steamcmd", retention=0.05)
    executor.add_file("/opt/steamcmd/steamcmd.sh", executable=True)
    executor.stream_exit_code = 8

    result = await pipeline.run()
    assert result.status == "error"
    assert pipeline.progress.status == "error"

    await asyncio.sleep(0.1)
    assert pipeline.progress is None


@pytest.mark.asyncio
async def test_new_run_is_not_cleared_by_old_timer(executor):
    pipeline = InstallPipeline("c1", executor, INSTALL_PATH, steamcmd_path="/opt/steamcmd", retention=0.05)
    executor.add_file("/opt/steamcmd/steamcmd.sh", executable=True)
    executor.stream_exit_code = 8
    await pipeline.run()

    executor.stream_gate = asyncio.Event()
    pipeline.begin()
    run = asyncio.create_task(pipeline.run())
    await asyncio.sleep(0.1)

    assert pipeline.progress is not None
    executor.stream_gate.set()
    await run
