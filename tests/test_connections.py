import pytest

from app.exceptions import ConflictError, NotFoundError, ServerTimeoutError, ValidationError
from app.services.gameserver.connections import ConnectionRegistry, validate_connection
from app.services.gameserver.supervisor import ServerState
from database.schemas import ConnectionCreate, ModCreate

from tests.conftest import INSTALL_PATH


def local(name, path=INSTALL_PATH):
    return ConnectionCreate(name=name, type="local", install_path=path)


@pytest.fixture
def registry(connection_repo, executor):
    return ConnectionRegistry(connection_repo, executor_factory=lambda connection: executor)


# ==============================================================================
# Validation
# ==============================================================================

def test_remote_connection_reports_every_missing_field():
    errors = validate_connection(ConnectionCreate(name="", type="remote", install_path="", port=0))

    assert set(errors) == {"name", "install_path", "host", "username", "password", "port"}


def test_unknown_type_is_rejected():
    assert "type" in validate_connection(ConnectionCreate(name="x", type="docker", install_path="/srv"))


def test_duplicate_name_is_rejected(registry):
    registry.add(local("main"))

    with pytest.raises(ValidationError) as exc:
        registry.add(local("main", "/srv/other"))
    assert "name" in exc.value.errors


def test_local_connection_drops_ssh_fields(registry):
    connection = registry.add(ConnectionCreate(
        name="main", type="local", install_path=INSTALL_PATH, host="example.org", password="x",
    ))

    assert connection.host is None
    assert connection.password is None


# ==============================================================================
# Default connection
# ==============================================================================

def test_first_connection_becomes_default(registry):
    first = registry.add(local("first"))
    second = registry.add(local("second", "/srv/second"))

    assert first.is_default
    assert not second.is_default
    assert registry.resolve().id == first.id


def test_set_default_is_exclusive(registry):
    first = registry.add(local("first"))
    second = registry.add(local("second", "/srv/second"))

    registry.set_default(second.id)

    assert registry.resolve().id == second.id
    assert [c.is_default for c in registry.list()] == [True, False]
    assert registry.get(first.id).is_default is False


def test_resolve_without_connections(registry):
    with pytest.raises(NotFoundError):
        registry.resolve()
    with pytest.raises(NotFoundError):
        registry.get("missing")


@pytest.mark.asyncio
async def test_removing_default_promotes_oldest(registry):
    first = registry.add(local("first"))
    second = registry.add(local("second", "/srv/second"))
    registry.add(local("third", "/srv/third"))

    await registry.remove(first.id)

    assert registry.resolve().id == second.id


@pytest.mark.asyncio
async def test_remove_cascades_mods_and_config(service, connection, mod_repo, config_repo):
    service.mods.add(connection.id, ModCreate(name="A", source="AAA"))
    service.configs.save(connection.id, {"name": "Doomed"})

    await service.remove_connection(connection.id)

    assert mod_repo.list(connection.id) == []
    assert config_repo.get(connection.id) is None
    assert connection.id not in service.supervisors


# ==============================================================================
# Connection test
# ==============================================================================

@pytest.mark.asyncio
async def test_connection_test_reports_install_state(registry, executor):
    connection = registry.add(local("main"))
    executor.add_dir(INSTALL_PATH)

    result = await registry.test(connection.id)

    assert result.success
    assert result.details["server_installed"] is False
    assert executor.closed


@pytest.mark.asyncio
async def test_connection_test_missing_path(registry):
    connection = registry.add(local("main", "/nowhere"))

    result = await registry.test(connection.id)

    assert not result.success
    assert "/nowhere" in result.message


@pytest.mark.asyncio
async def test_remote_connection_test_checks_shell(registry, executor):
    connection = registry.add(ConnectionCreate(
        name="remote", type="remote", install_path=INSTALL_PATH, host="example.org", username="arma", password="pw",
    ))
    executor.add_dir(INSTALL_PATH)

    result = await registry.test(connection.id)

    assert result.success
    assert "echo ok" in executor.commands
    assert result.details["host"] == "example.org:22"


@pytest.mark.asyncio
async def test_connection_test_times_out(registry, executor, fast_timeouts):
    connection = registry.add(local("main"))
    executor.check_delay = 5

    with pytest.raises(ServerTimeoutError):
        await registry.test(connection.id)


# ==============================================================================
# Removal guards
# ==============================================================================

@pytest.mark.asyncio
async def test_remove_running_server_requires_force(service, connection, executor, ready_lines):
    executor.install_server()
    executor.process_options = {"lines": ready_lines}
    supervisor = await service.supervisor(connection.id)
    await supervisor.start()

    with pytest.raises(ConflictError):
        await service.remove_connection(connection.id)
    assert supervisor.state == ServerState.RUNNING

    await service.remove_connection(connection.id, force=True)

    assert supervisor.state == ServerState.STOPPED
    assert executor.processes[0].signals == ["TERM"]
    with pytest.raises(NotFoundError):
        service.get_connection(connection.id)


@pytest.mark.asyncio
async def test_remove_during_install_conflicts(service, connection):
    supervisor = await service.supervisor(connection.id)
    supervisor.state = ServerState.INSTALLING

    with pytest.raises(ConflictError):
        await service.remove_connection(connection.id, force=True)
