import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import asyncssh

from app import settings
from app.exceptions import ConflictError, NotFoundError, ServerTimeoutError, ValidationError
from app.services.gameserver.executor import Executor
from app.services.gameserver.layout import ServerLayout
from app.services.gameserver.local_executor import LocalExecutor
from app.services.gameserver.ssh_executor import SSHExecutor
from database.models import ServerConnection
from database.repositories import ConnectionRepository
from database.schemas import ConnectionCreate, ConnectionTestResult

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ("local", "remote")
# Supervisor states that mean a process is (or may be) alive
ONLINE_STATES = ("STARTING", "RUNNING", "STOPPING", "RESTARTING")


def make_executor(connection) -> Executor:
    if connection.type == "remote":
        return SSHExecutor(
            host=connection.host,
            username=connection.username,
            port=connection.port or 22,
            password=connection.password,
            private_key=connection.private_key,
            connect_timeout=settings.CONNECTION_TEST_TIMEOUT,
        )
    return LocalExecutor()


def validate_connection(definition: ConnectionCreate) -> Dict[str, str]:
    """Every problem with a connection definition, keyed by field."""
    errors = {}
    name = (definition.name or "").strip()
    if not name:
        errors["name"] = "Name is required"
    elif len(name) > 100:
        errors["name"] = "Name must be at most 100 characters"
    if definition.type not in CONNECTION_TYPES:
        errors["type"] = f"Type must be one of {', '.join(CONNECTION_TYPES)}"
    if not (definition.install_path or "").strip():
        errors["install_path"] = "Install path is required"

    if definition.type == "remote":
        if not (definition.host or "").strip():
            errors["host"] = "Host is required for remote connections"
        if not (definition.username or "").strip():
            errors["username"] = "Username is required for remote connections"
        if not definition.password and not definition.private_key:
            errors["password"] = "Password or private key is required for remote connections"
        if definition.port is not None and not 1 <= definition.port <= 65535:
            errors["port"] = "Port must be between 1 and 65535"
    return errors


class ConnectionRegistry:
    """Persisted connections plus the executor each of them uses."""

    def __init__(self, repository: ConnectionRepository, executor_factory: Callable[[Any], Executor] = make_executor):
        self.repository = repository
        self.executor_factory = executor_factory
        self.executors: Dict[str, Executor] = {}

    def list(self) -> List[ServerConnection]:
        return self.repository.list()

    def get(self, connection_id: str) -> ServerConnection:
        connection = self.repository.get(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection '{connection_id}' not found")
        return connection

    def resolve(self, connection_id: Optional[str] = None) -> ServerConnection:
        """The given connection, or the default one when no id is passed."""
        if connection_id:
            return self.get(connection_id)
        connection = self.repository.get_default()
        if connection is None:
            raise NotFoundError("No server connection configured")
        return connection

    def add(self, definition: ConnectionCreate) -> ServerConnection:
        errors = validate_connection(definition)
        name = (definition.name or "").strip()
        if name and "name" not in errors and self.repository.get_by_name(name) is not None:
            errors["name"] = f"A connection named '{name}' already exists"
        if errors:
            raise ValidationError(f"Invalid connection ({len(errors)} errors)", errors)

        data = definition.model_dump()
        data["name"] = name
        data["install_path"] = definition.install_path.strip()
        if definition.type == "local":
            for field in ("host", "username", "password", "private_key"):
                data[field] = None
        connection = self.repository.create(data)
        logger.info(f"Added {connection.type} connection {connection.name} ({connection.id})")
        return connection

    def set_default(self, connection_id: str) -> ServerConnection:
        connection = self.repository.set_default(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection '{connection_id}' not found")
        logger.info(f"Default connection is now {connection.name}")
        return connection

    def executor(self, connection) -> Executor:
        executor = self.executors.get(connection.id)
        if executor is None:
            executor = self.executor_factory(connection)
            self.executors[connection.id] = executor
        return executor

    async def test(self, connection_id: str) -> ConnectionTestResult:
        """Reachability check. Uses its own executor so live sessions are untouched."""
        connection = self.get(connection_id)
        executor = self.executor_factory(connection)
        try:
            return await asyncio.wait_for(
                self._check(connection, executor), timeout=settings.CONNECTION_TEST_TIMEOUT
            )
        except (asyncio.TimeoutError, ServerTimeoutError):
            raise ServerTimeoutError(
                f"Connection test for '{connection.name}' timed out after {settings.CONNECTION_TEST_TIMEOUT}s",
                {"connection_id": connection.id},
            )
        finally:
            await executor.close()

    async def _check(self, connection, executor: Executor) -> ConnectionTestResult:
        details = {"type": connection.type, "install_path": connection.install_path}
        if connection.type == "remote":
            details["host"] = f"{connection.host}:{connection.port or 22}"
            try:
                result = await executor.run("echo ok", timeout=settings.CONNECTION_TEST_TIMEOUT)
            except (OSError, asyncssh.Error) as e:
                return ConnectionTestResult(success=False, message=f"SSH connection failed: {e}", details=details)
            if result.stdout.strip() != "ok":
                details["output"] = result.stdout.strip()
                return ConnectionTestResult(success=False, message="Unexpected response from remote host", details=details)

        path = connection.install_path
        if not await executor.is_dir(path):
            return ConnectionTestResult(success=False, message=f"Install path '{path}' does not exist", details=details)
        if not await executor.is_executable(path):
            return ConnectionTestResult(success=False, message=f"Install path '{path}' is not accessible", details=details)

        details["server_installed"] = await executor.path_exists(ServerLayout(executor, path).binary)
        return ConnectionTestResult(success=True, message="Connection successful", details=details)

    async def remove(self, connection_id: str, force: bool = False, supervisor=None) -> ServerConnection:
        """Deletes a connection with its mods and config.

        A server that is online blocks removal unless ``force`` is set, in
        which case it is stopped first.
        """
        connection = self.get(connection_id)
        if supervisor is not None:
            state = supervisor.state.value
            if state in ("INSTALLING", "STOPPING", "RESTARTING"):
                raise ConflictError(f"Cannot remove a connection while the server is {state}", {"state": state})
            if state in ONLINE_STATES:
                if not force:
                    raise ConflictError(
                        f"Server on '{connection.name}' is online, stop it first or force removal",
                        {"state": state},
                    )
                logger.warning(f"Force removing {connection.name}, stopping its server")
                await supervisor.stop()
            await supervisor.close()

        self.repository.delete(connection_id)
        executor = self.executors.pop(connection_id, None)
        if executor is not None:
            await executor.close()
        logger.info(f"Removed connection {connection.name} ({connection_id})")
        return connection

    async def close(self):
        for executor in self.executors.values():
            await executor.close()
        self.executors.clear()
