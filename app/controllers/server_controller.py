from typing import Any, Dict, List, Optional
from app.services.gameserver.service import game_server_service
from app.services.gameserver.config import parse_config
from database.schemas import (
    CommandResponse,
    InstallProgress,
    LogLine,
    OnlinePlayer,
    ProcessStatus,
    ServerConfigResponse,
)


class ServerController:
    def __init__(self, service=None):
        self.service = service or game_server_service

    async def get_status(self, connection_id: Optional[str] = None) -> ProcessStatus:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.status()

    # --- Lifecycle ---

    async def install(self, connection_id: Optional[str] = None, wait: bool = False) -> InstallProgress:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.install(wait=wait)

    async def get_install_progress(self, connection_id: Optional[str] = None) -> Optional[InstallProgress]:
        supervisor = await self.service.supervisor(connection_id)
        return supervisor.installer.progress

    async def start(self, connection_id: Optional[str] = None):
        supervisor = await self.service.supervisor(connection_id)
        state = await supervisor.start()
        return {"state": state.value, "message": "Server started"}

    async def stop(self, connection_id: Optional[str] = None):
        supervisor = await self.service.supervisor(connection_id)
        state = await supervisor.stop()
        return {"state": state.value, "message": "Server stopped"}

    async def restart(self, connection_id: Optional[str] = None):
        supervisor = await self.service.supervisor(connection_id)
        state = await supervisor.restart()
        return {"state": state.value, "message": "Server restarted"}

    async def reset(self, connection_id: Optional[str] = None):
        supervisor = await self.service.supervisor(connection_id)
        state = await supervisor.reset()
        return {"state": state.value, "message": "Server reset"}

    # --- Configuration ---

    def get_config(self, connection_id: Optional[str] = None) -> ServerConfigResponse:
        connection = self.service.get_connection(connection_id)
        configs = self.service.configs
        return ServerConfigResponse(
            version=configs.version(connection.id),
            config=configs.load(connection.id),
        )

    def save_config(self, data: Dict[str, Any], connection_id: Optional[str] = None) -> ServerConfigResponse:
        connection = self.service.get_connection(connection_id)
        configs = self.service.configs
        # Takes effect at the next start, a running process keeps its applied config
        config = configs.save(connection.id, parse_config(data))
        return ServerConfigResponse(version=configs.version(connection.id), config=config)

    def patch_config(self, changes: Dict[str, Any], connection_id: Optional[str] = None) -> ServerConfigResponse:
        connection = self.service.get_connection(connection_id)
        configs = self.service.configs
        config = configs.patch(connection.id, changes)
        return ServerConfigResponse(version=configs.version(connection.id), config=config)

    # --- RCON ---

    async def send_command(self, command: str, connection_id: Optional[str] = None) -> CommandResponse:
        supervisor = await self.service.supervisor(connection_id)
        response = await supervisor.rcon.send_command(command)
        return CommandResponse(command=command.strip(), response=response)

    # --- Players ---

    async def list_players(self, connection_id: Optional[str] = None) -> List[OnlinePlayer]:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.players()

    async def kick_player(self, player_id: str, connection_id: Optional[str] = None) -> OnlinePlayer:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.kick(player_id)

    # --- Logs / console ---

    async def list_log_directories(self, connection_id: Optional[str] = None) -> List[str]:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.logs.list_log_directories()

    async def list_log_files(self, directory: str, connection_id: Optional[str] = None) -> List[str]:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.logs.list_log_files(directory)

    async def read_log_file(self, directory: str, file_name: str, max_lines: int = 500, connection_id: Optional[str] = None) -> List[LogLine]:
        supervisor = await self.service.supervisor(connection_id)
        return await supervisor.logs.read_log_file(directory, file_name, max_lines)

    async def get_console(self, lines: Optional[int] = None, since: Optional[int] = None, connection_id: Optional[str] = None) -> List[LogLine]:
        supervisor = await self.service.supervisor(connection_id)
        return supervisor.logs.tail_console(lines, since=since)
