import logging
from typing import Callable, List, Optional

from app import settings
from app.exceptions import (
    CommandRejectedError,
    DisabledError,
    NotRunningError,
    ResourceExhaustedError,
    ServerTimeoutError,
    ValidationError,
)
from app.services.gameserver.bercon import BERconClient

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., BERconClient]


def command_token(text: str) -> str:
    """Leading word of a command, lower-cased and without the '#' prefix."""
    parts = text.strip().split()
    if not parts:
        return ""
    return parts[0].lstrip("#").lower()


def check_command_allowed(text: str, blacklist: List[str], whitelist: List[str]) -> str:
    """Returns the command token, raising CommandRejectedError when the lists forbid it."""
    token = command_token(text)
    if not token:
        raise ValidationError("Command must not be empty", {"command": "Command is required"})
    blocked = {command_token(c) for c in blacklist if command_token(c)}
    allowed = {command_token(c) for c in whitelist if command_token(c)}
    if token in blocked:
        raise CommandRejectedError(token, "command is blacklisted")
    if allowed and token not in allowed:
        raise CommandRejectedError(token, "command is not whitelisted")
    return token


class RconPool:
    """At most ``max_clients`` logged-in clients for one server process.

    Acquiring beyond the limit fails immediately instead of waiting.
    """

    def __init__(
        self,
        host: str,
        port: int,
        password: str,
        max_clients: int,
        timeout: float,
        client_factory: ClientFactory = BERconClient,
        on_message: Optional[Callable[[str], None]] = None,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.max_clients = max_clients
        self.timeout = timeout
        self.client_factory = client_factory
        self.on_message = on_message
        self.idle: List[BERconClient] = []
        self.busy = 0
        self.closed = False

    @property
    def size(self) -> int:
        return self.busy + len(self.idle)

    async def acquire(self) -> BERconClient:
        while self.idle:
            client = self.idle.pop()
            if not client.closed:
                self.busy += 1
                return client
        if self.size >= self.max_clients:
            raise ResourceExhaustedError(
                f"All {self.max_clients} RCON clients are busy",
                {"max_clients": self.max_clients},
            )
        # Reserve the slot before connecting so concurrent callers see it
        self.busy += 1
        try:
            client = self.client_factory(
                host=self.host,
                port=self.port,
                password=self.password,
                timeout=self.timeout,
                on_message=self.on_message,
            )
            await client.connect()
        except BaseException:
            self.busy -= 1
            raise
        return client

    def release(self, client: BERconClient):
        self.busy -= 1
        if self.closed or client.closed:
            client.close()
            return
        self.idle.append(client)

    def close(self):
        self.closed = True
        for client in self.idle:
            client.close()
        self.idle.clear()


class RconRelay:
    """Sends console commands to a running server over RCON."""

    def __init__(self, supervisor, client_factory: ClientFactory = BERconClient, timeout: Optional[float] = None):
        self.supervisor = supervisor
        self.client_factory = client_factory
        self.timeout = settings.RCON_TIMEOUT if timeout is None else timeout
        self.pool: Optional[RconPool] = None

    def _host(self, config) -> str:
        if config.rcon_address and config.rcon_address != "0.0.0.0":
            return config.rcon_address
        connection = self.supervisor.connection
        if connection.type == "remote" and connection.host:
            return connection.host
        return "127.0.0.1"

    def _get_pool(self, config) -> RconPool:
        if self.pool is None or self.pool.closed:
            self.pool = RconPool(
                host=self._host(config),
                port=config.rcon_port,
                password=config.rcon_password,
                max_clients=config.rcon_max_clients,
                timeout=self.timeout,
                client_factory=self.client_factory,
                on_message=self._on_server_message,
            )
            # Pool lives exactly as long as the current server process
            self.supervisor.register_cleanup(self.close_pool)
        return self.pool

    def close_pool(self):
        if self.pool is not None:
            self.pool.close()
            self.pool = None

    def _on_server_message(self, text: str):
        self.supervisor.logs.push(f"RCON        : {text}")

    async def send_command(self, text: str) -> str:
        config = self.supervisor.effective_config()
        if not config.rcon_enabled:
            raise DisabledError("RCON is disabled for this server")
        if not self.supervisor.is_running():
            raise NotRunningError("Server is not running", {"state": self.supervisor.state.value})
        check_command_allowed(text, config.rcon_blacklist, config.rcon_whitelist)

        pool = self._get_pool(config)
        client = await pool.acquire()
        try:
            response = await client.command(text.strip())
        except ServerTimeoutError:
            # The reply may still arrive later, do not reuse this client
            client.close()
            raise
        finally:
            pool.release(client)
        logger.info(f"[RCON] {self.supervisor.connection_id}: {text.strip()}")
        return response
