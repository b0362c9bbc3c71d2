from typing import List, Optional
from app.services.gameserver.service import game_server_service
from database.schemas import ConnectionCreate, ConnectionResponse, ConnectionTestResult


class ConnectionController:
    def __init__(self, service=None):
        self.service = service or game_server_service

    def list_connections(self) -> List[ConnectionResponse]:
        return [ConnectionResponse.model_validate(c) for c in self.service.list_connections()]

    def get_connection(self, connection_id: Optional[str] = None) -> ConnectionResponse:
        return ConnectionResponse.model_validate(self.service.get_connection(connection_id))

    async def add_connection(self, definition: ConnectionCreate) -> ConnectionResponse:
        connection = await self.service.add_connection(definition)
        return ConnectionResponse.model_validate(connection)

    async def test_connection(self, connection_id: str) -> ConnectionTestResult:
        return await self.service.test_connection(connection_id)

    def set_default(self, connection_id: str) -> ConnectionResponse:
        return ConnectionResponse.model_validate(self.service.set_default(connection_id))

    async def remove_connection(self, connection_id: str, force: bool = False) -> ConnectionResponse:
        connection = await self.service.remove_connection(connection_id, force=force)
        return ConnectionResponse.model_validate(connection)
