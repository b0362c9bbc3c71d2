from app.services.gameserver.executor import Executor

SERVER_BINARY_LINUX = "ArmaReforgerServer"
SERVER_BINARY_WINDOWS = "ArmaReforgerServer.exe"


class ServerLayout:
    """Where things live inside one installation directory."""

    def __init__(self, executor: Executor, install_path: str):
        self.executor = executor
        self.install_path = install_path

    @property
    def binary_name(self) -> str:
        return SERVER_BINARY_WINDOWS if self.executor.platform == "win32" else SERVER_BINARY_LINUX

    @property
    def binary(self) -> str:
        return self.executor.join(self.install_path, self.binary_name)

    @property
    def config_file(self) -> str:
        return self.executor.join(self.install_path, "server.json")

    @property
    def profile_dir(self) -> str:
        return self.executor.join(self.install_path, "profile")

    @property
    def logs_dir(self) -> str:
        # profile/logs/logs_YYYY-MM-DD_HH-MM-SS/console.log
        return self.executor.join(self.install_path, "profile", "logs")

    @property
    def pid_file(self) -> str:
        return self.executor.join(self.install_path, "server.pid")

    def launch_command(self):
        return [
            self.binary,
            "-config", self.config_file,
            "-profile", self.profile_dir,
            "-logStats", "10000",
        ]
