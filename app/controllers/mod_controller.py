from typing import List, Optional
from app.exceptions import NotFoundError
from app.services.gameserver.service import game_server_service
from database.schemas import ModCreate, ModResponse, ModSyncReport, ModUpdate


class ModController:
    def __init__(self, service=None):
        self.service = service or game_server_service

    def _owned(self, connection_id: str, mod_id: str):
        mod = self.service.mods.get(mod_id)
        if mod.connection_id != connection_id:
            raise NotFoundError(f"Mod {mod_id} not found")
        return mod

    async def list_mods(self, connection_id: Optional[str] = None) -> List[ModResponse]:
        connection = self.service.get_connection(connection_id)
        version = await self.service.server_version(connection.id)
        return self.service.mods.compatibility_report(connection.id, version)

    def add_mod(self, definition: ModCreate, connection_id: Optional[str] = None) -> ModResponse:
        connection = self.service.get_connection(connection_id)
        return ModResponse.model_validate(self.service.mods.add(connection.id, definition))

    def update_mod(self, mod_id: str, changes: ModUpdate, connection_id: Optional[str] = None) -> ModResponse:
        connection = self.service.get_connection(connection_id)
        self._owned(connection.id, mod_id)
        return ModResponse.model_validate(self.service.mods.update(mod_id, changes))

    def toggle_mod(self, mod_id: str, connection_id: Optional[str] = None) -> ModResponse:
        connection = self.service.get_connection(connection_id)
        self._owned(connection.id, mod_id)
        return ModResponse.model_validate(self.service.mods.toggle(mod_id))

    def remove_mod(self, mod_id: str, connection_id: Optional[str] = None) -> ModResponse:
        connection = self.service.get_connection(connection_id)
        self._owned(connection.id, mod_id)
        return ModResponse.model_validate(self.service.mods.remove(mod_id))

    def reorder_mods(self, mod_ids: List[str], connection_id: Optional[str] = None) -> List[ModResponse]:
        connection = self.service.get_connection(connection_id)
        return [ModResponse.model_validate(m) for m in self.service.mods.reorder(connection.id, mod_ids)]

    async def sync_mod(self, mod_id: str, connection_id: Optional[str] = None) -> ModResponse:
        connection = self.service.get_connection(connection_id)
        self._owned(connection.id, mod_id)
        return ModResponse.model_validate(await self.service.mods.sync(mod_id))

    async def sync_all(self, connection_id: Optional[str] = None) -> ModSyncReport:
        connection = self.service.get_connection(connection_id)
        return await self.service.mods.sync_all(connection.id)
