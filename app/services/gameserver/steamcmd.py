"""
SteamCMD install pipeline.

Downloads (or updates) the dedicated server through SteamCMD and reports
progress through the phases downloading, extracting, configuring,
validating and complete. Progress never goes backwards within a run; a
failure keeps the last value and stops the pipeline. Partially installed
files are left in place, SteamCMD resumes from them on the next run.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from app import settings
from app.exceptions import ConflictError
from app.services.gameserver import events
from app.services.gameserver.events import EventBus
from app.services.gameserver.executor import Executor
from app.services.gameserver.layout import ServerLayout
from database.schemas import InstallProgress

logger = logging.getLogger(__name__)

UPDATE_STATE = re.compile(r"Update state \(0x[0-9a-fA-F]+\) ([\w ]+?), progress: ([\d.]+)")
SUCCESS_MARKER = re.compile(r"Success! App '(\d+)' fully installed")
ERROR_MARKER = re.compile(r"ERROR! (.+)")

DOWNLOAD_SHARE = 90.0
EXTRACT_END = 95.0
CONFIGURE_AT = 95.0
VALIDATE_AT = 98.0

ConfigureHook = Callable[[], Awaitable[None]]


class ProgressTracker:
    """Holds the progress of one install run and publishes every change."""

    def __init__(self, connection_id: str, bus: Optional[EventBus] = None):
        self.connection_id = connection_id
        self.bus = bus
        self.current = InstallProgress(status="downloading", progress=0.0, message="Preparing installation")

    def update(self, status: str, progress: float, message: str) -> InstallProgress:
        progress = max(self.current.progress, min(float(progress), 100.0))
        if (status, progress, message) == (self.current.status, self.current.progress, self.current.message):
            return self.current
        self.current = InstallProgress(
            status=status,
            progress=round(progress, 1),
            message=message,
            started_at=self.current.started_at,
            updated_at=datetime.now(timezone.utc),
        )
        if self.bus is not None:
            self.bus.publish(self.connection_id, events.INSTALL_PROGRESS, self.current.model_copy())
        return self.current

    def fail(self, message: str) -> InstallProgress:
        return self.update("error", self.current.progress, message)

    def snapshot(self) -> InstallProgress:
        return self.current.model_copy()


class InstallPipeline:
    def __init__(
        self,
        connection_id: str,
        executor: Executor,
        install_path: str,
        steamcmd_path: Optional[str] = None,
        bus: Optional[EventBus] = None,
        configure: Optional[ConfigureHook] = None,
        retention: Optional[float] = None,
    ):
        self.connection_id = connection_id
        self.executor = executor
        self.layout = ServerLayout(executor, install_path)
        self.steamcmd_path = steamcmd_path or settings.STEAMCMD_PATH
        self.bus = bus
        self.configure = configure
        self.retention = settings.INSTALL_PROGRESS_TTL if retention is None else retention

        self.tracker: Optional[ProgressTracker] = None
        self.running = False
        self._run_id = 0
        self._clear_handle: Optional[asyncio.TimerHandle] = None

    @property
    def progress(self) -> Optional[InstallProgress]:
        """Snapshot of the current or recently finished run, ``None`` once cleared."""
        return self.tracker.snapshot() if self.tracker else None

    @property
    def steamcmd_executable(self) -> str:
        name = "steamcmd.exe" if self.executor.platform == "win32" else "steamcmd.sh"
        return self.executor.join(self.steamcmd_path, name)

    def begin(self) -> InstallProgress:
        """Claims the pipeline for a new run. Raises ConflictError while one is active."""
        if self.running:
            raise ConflictError("An installation is already in progress", {"connection_id": self.connection_id})
        self.running = True
        self._run_id += 1
        if self._clear_handle is not None:
            self._clear_handle.cancel()
            self._clear_handle = None
        self.tracker = ProgressTracker(self.connection_id, self.bus)
        return self.tracker.snapshot()

    async def run(self) -> InstallProgress:
        if not self.running:
            self.begin()
        tracker = self.tracker
        run_id = self._run_id
        try:
            await self._install(tracker)
            tracker.update("complete", 100, "Server installed successfully")
            logger.info(f"Install finished for {self.connection_id}")
        except asyncio.CancelledError:
            tracker.fail("Installation interrupted")
            raise
        except Exception as e:
            logger.error(f"Install failed for {self.connection_id}: {e}")
            tracker.fail(f"Installation failed: {e}")
        finally:
            self.running = False
            self._schedule_clear(run_id)
        return tracker.snapshot()

    def _schedule_clear(self, run_id: int):
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(self.retention, self._clear, run_id)

    def _clear(self, run_id: int):
        if run_id == self._run_id and not self.running:
            self.tracker = None
            self._clear_handle = None

    # --- Phases ---

    async def _install(self, tracker: ProgressTracker):
        await self.executor.makedirs(self.layout.install_path)

        if not await self.executor.path_exists(self.steamcmd_executable):
            await self._bootstrap_steamcmd(tracker)

        tracker.update("downloading", 0, "Starting server download")
        await self._run_steamcmd(tracker)

        tracker.update("configuring", CONFIGURE_AT, "Preparing profile and configuration")
        await self.executor.makedirs(self.layout.logs_dir)
        if self.configure is not None:
            await self.configure()

        tracker.update("validating", VALIDATE_AT, "Validating installation")
        if not await self.executor.path_exists(self.layout.binary):
            raise RuntimeError("Server files not found after installation")
        if self.executor.platform != "win32" and not await self.executor.is_executable(self.layout.binary):
            await self.executor.run(["chmod", "+x", self.layout.binary], timeout=settings.COMMAND_TIMEOUT)

    async def _bootstrap_steamcmd(self, tracker: ProgressTracker):
        logger.info(f"SteamCMD not found at {self.steamcmd_path}, installing")
        windows = self.executor.platform == "win32"
        url = settings.STEAMCMD_URL_WINDOWS if windows else settings.STEAMCMD_URL_LINUX
        archive = self.executor.join(self.steamcmd_path, "steamcmd.zip" if windows else "steamcmd_linux.tar.gz")

        tracker.update("downloading", 0, "Downloading SteamCMD")
        await self.executor.makedirs(self.steamcmd_path)
        await self.executor.download(url, archive)

        tracker.update("downloading", 1, "Unpacking SteamCMD")
        await self.executor.extract(archive, self.steamcmd_path)
        await self.executor.remove(archive)
        if not windows:
            await self.executor.run(["chmod", "+x", self.steamcmd_executable], timeout=settings.COMMAND_TIMEOUT)

        # First run self-updates SteamCMD
        tracker.update("downloading", 2, "Initializing SteamCMD")
        result = await self.executor.run([self.steamcmd_executable, "+quit"], timeout=300)
        # SteamCMD exits with 7 after a self-update
        if result.exit_code not in (0, 7):
            raise RuntimeError(f"SteamCMD initialization failed (exit code {result.exit_code})")

    async def _run_steamcmd(self, tracker: ProgressTracker):
        argv = [
            self.steamcmd_executable,
            "+force_install_dir", self.layout.install_path,
            "+login", "anonymous",
            "+app_update", settings.STEAM_APP_ID, "validate",
            "+quit",
        ]
        outcome = {"success": False, "error": None}

        def on_line(line: str):
            logger.debug(f"[steamcmd] {line}")
            handle_steamcmd_line(tracker, line, outcome)

        exit_code = await self.executor.stream(argv, on_line)
        if outcome["success"]:
            return
        if outcome["error"]:
            raise RuntimeError(f"SteamCMD: {outcome['error']}")
        if exit_code != 0:
            raise RuntimeError(f"SteamCMD exited with code {exit_code}")


def handle_steamcmd_line(tracker: ProgressTracker, line: str, outcome: dict):
    """Maps one line of SteamCMD output onto the tracker."""
    match = UPDATE_STATE.search(line)
    if match:
        state = match.group(1).strip().lower()
        pct = min(float(match.group(2)), 100.0)
        if state == "committing":
            tracker.update("extracting", DOWNLOAD_SHARE + pct * (EXTRACT_END - DOWNLOAD_SHARE) / 100, f"Extracting files: {pct:.1f}%")
        elif state.startswith("verifying"):
            tracker.update("downloading", pct * DOWNLOAD_SHARE / 100, f"Verifying files: {pct:.1f}%")
        else:
            tracker.update("downloading", pct * DOWNLOAD_SHARE / 100, f"Downloading: {pct:.1f}%")
        return

    if SUCCESS_MARKER.search(line):
        outcome["success"] = True
        tracker.update("extracting", EXTRACT_END, "SteamCMD finished")
        return

    match = ERROR_MARKER.search(line)
    if match:
        outcome["error"] = match.group(1).strip()
