"""
Game server service.

Wires the per-connection components together and keeps one supervisor per
connection for the lifetime of the API process. Routes and controllers
only talk to this object.
"""
import asyncio
import logging
from typing import Dict, List, Optional

from app import settings
from app.exceptions import ServerManagerError
from app.services.gameserver import events
from app.services.gameserver.bercon import BERconClient
from app.services.gameserver.config import ConfigManager
from app.services.gameserver.connections import ConnectionRegistry, make_executor
from app.services.gameserver.events import EventBus
from app.services.gameserver.mods import ModManager
from app.services.gameserver.query import query_info, query_players
from app.services.gameserver.supervisor import ProcessSupervisor
from app.services.gameserver.workshop import WorkshopClient
from database.models import ServerConnection
from database.repositories import ConfigRepository, ConnectionRepository, ModRepository
from database.schemas import ConnectionCreate

logger = logging.getLogger(__name__)


class GameServerService:
    def __init__(
        self,
        session_factory=None,
        executor_factory=make_executor,
        rcon_client_factory=BERconClient,
        query=query_info,
        player_query=query_players,
        poll_interval: Optional[float] = None,
        workshop: Optional[WorkshopClient] = None,
    ):
        self.session_factory = session_factory
        self.executor_factory = executor_factory
        self.rcon_client_factory = rcon_client_factory
        self.query = query
        self.player_query = player_query
        self.poll_interval = settings.STATUS_POLL_INTERVAL if poll_interval is None else poll_interval
        self.workshop = workshop

        self.bus = EventBus()
        self.supervisors: Dict[str, ProcessSupervisor] = {}
        self._poller: Optional[asyncio.Task] = None
        self._registry: Optional[ConnectionRegistry] = None
        self._configs: Optional[ConfigManager] = None
        self._mods: Optional[ModManager] = None

    def _factory(self):
        if self.session_factory is None:
            # Deferred so importing this module never opens the database
            from database.connection import SessionLocal
            self.session_factory = SessionLocal
        return self.session_factory

    @property
    def registry(self) -> ConnectionRegistry:
        if self._registry is None:
            self._registry = ConnectionRegistry(ConnectionRepository(self._factory()), self.executor_factory)
        return self._registry

    @property
    def configs(self) -> ConfigManager:
        if self._configs is None:
            self._configs = ConfigManager(ConfigRepository(self._factory()))
        return self._configs

    @property
    def mods(self) -> ModManager:
        if self._mods is None:
            self._mods = ModManager(ModRepository(self._factory()), self.workshop)
        return self._mods

    # --- Lifecycle of the service itself ---

    async def initialize(self, start_poller: bool = True):
        """Rehydrates a supervisor for every stored connection."""
        for connection in self.registry.list():
            try:
                await self._create_supervisor(connection)
            except Exception as e:
                logger.error(f"Could not load connection {connection.name}: {e}")
        if start_poller and self.poll_interval > 0 and self._poller is None:
            self._poller = asyncio.create_task(self._poll_status())
        logger.info(f"Loaded {len(self.supervisors)} server connection(s)")

    async def shutdown(self):
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None
        for supervisor in list(self.supervisors.values()):
            await supervisor.close()
        self.supervisors.clear()
        await self.registry.close()

    async def _create_supervisor(self, connection: ServerConnection) -> ProcessSupervisor:
        supervisor = ProcessSupervisor(
            connection,
            self.registry.executor(connection),
            self.configs,
            self.mods,
            self.bus,
            rcon_client_factory=self.rcon_client_factory,
            query=self.query,
            player_query=self.player_query,
        )
        self.supervisors[connection.id] = supervisor
        await supervisor.initialize()
        return supervisor

    async def _poll_status(self):
        while True:
            await asyncio.sleep(self.poll_interval)
            for connection_id, supervisor in list(self.supervisors.items()):
                if self.bus.subscriber_count(connection_id) == 0:
                    continue
                status = await supervisor.status()
                self.bus.publish(connection_id, events.STATUS_UPDATE, status)

    # --- Connections ---

    def list_connections(self) -> List[ServerConnection]:
        return self.registry.list()

    def get_connection(self, connection_id: Optional[str] = None) -> ServerConnection:
        return self.registry.resolve(connection_id)

    async def add_connection(self, definition: ConnectionCreate) -> ServerConnection:
        connection = self.registry.add(definition)
        await self._create_supervisor(connection)
        return connection

    async def test_connection(self, connection_id: Optional[str] = None):
        connection = self.registry.resolve(connection_id)
        return await self.registry.test(connection.id)

    def set_default(self, connection_id: str) -> ServerConnection:
        return self.registry.set_default(connection_id)

    async def remove_connection(self, connection_id: str, force: bool = False) -> ServerConnection:
        supervisor = self.supervisors.get(connection_id)
        connection = await self.registry.remove(connection_id, force=force, supervisor=supervisor)
        self.supervisors.pop(connection_id, None)
        self.bus.close_connection(connection_id)
        return connection

    # --- Per-connection access ---

    async def supervisor(self, connection_id: Optional[str] = None) -> ProcessSupervisor:
        connection = self.registry.resolve(connection_id)
        supervisor = self.supervisors.get(connection.id)
        if supervisor is None:
            supervisor = await self._create_supervisor(connection)
        return supervisor

    async def server_version(self, connection_id: Optional[str] = None) -> Optional[str]:
        supervisor = await self.supervisor(connection_id)
        if supervisor.version is None:
            try:
                supervisor.version = await supervisor.logs.detect_game_version()
            except (OSError, ServerManagerError) as e:
                logger.debug(f"Version detection failed: {e}")
        return supervisor.version


game_server_service = GameServerService()
