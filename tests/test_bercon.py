import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from rcon.exceptions import WrongPassword

from app.exceptions import ServerProcessError, ServerTimeoutError
from app.services.gameserver import bercon
from app.services.gameserver.bercon import BERconClient

from tests.conftest import wait_until


@pytest.fixture
def battleye():
    """Stands in for rcon.battleye.Client; ``battleye.return_value`` is the socket-level client."""
    client_class = MagicMock()
    client_class.return_value.run.return_value = "Players on server: 0"
    return client_class


@pytest.fixture
def client(battleye):
    messages = []
    c = BERconClient("127.0.0.1", 19999, "secret", timeout=0.5, on_message=messages.append, client_class=battleye)
    c.messages = messages
    yield c
    c.close()


@pytest.mark.asyncio
async def test_connect_logs_in(client, battleye):
    await client.connect()

    battleye.assert_called_once()
    args, kwargs = battleye.call_args
    assert args == ("127.0.0.1", 19999)
    assert kwargs["passwd"] == "secret"
    assert kwargs["timeout"] == 0.5
    battleye.return_value.connect.assert_called_once_with(login=True)
    assert not client.closed


@pytest.mark.asyncio
async def test_wrong_password_is_rejected(client, battleye):
    battleye.return_value.connect.side_effect = WrongPassword()

    with pytest.raises(ServerProcessError, match="password"):
        await client.connect()

    assert client.closed
    battleye.return_value.close.assert_called_once()


@pytest.mark.asyncio
async def test_login_timeout(client, battleye):
    battleye.return_value.connect.side_effect = TimeoutError()

    with pytest.raises(ServerTimeoutError):
        await client.connect()
    assert client.closed


@pytest.mark.asyncio
async def test_command_returns_reply(client, battleye):
    await client.connect()

    assert await client.command("#players") == "Players on server: 0"
    battleye.return_value.run.assert_called_once_with("#players")


@pytest.mark.asyncio
async def test_command_timeout(client, battleye):
    await client.connect()
    battleye.return_value.run.side_effect = TimeoutError()

    with pytest.raises(ServerTimeoutError) as excinfo:
        await client.command("#players")

    assert excinfo.value.details == {"command": "#players"}
    # A slow reply does not drop the connection
    assert not client.closed


@pytest.mark.asyncio
async def test_socket_error_closes_client(client, battleye):
    await client.connect()
    battleye.return_value.run.side_effect = ConnectionResetError("gone")

    with pytest.raises(ServerProcessError):
        await client.command("#players")

    assert client.closed
    with pytest.raises(ServerProcessError):
        await client.command("#players")


@pytest.mark.asyncio
async def test_server_messages_reach_the_event_loop(client, battleye):
    await client.connect()
    handler = battleye.call_args.kwargs["message_handler"]

    # The library calls the handler from the worker thread running a command
    await asyncio.to_thread(handler, SimpleNamespace(message="Player #1 John connected"))
    await wait_until(lambda: client.messages)

    assert client.messages == ["Player #1 John connected"]


@pytest.mark.asyncio
async def test_keepalive_sends_empty_command(client, battleye, monkeypatch):
    monkeypatch.setattr(bercon, "KEEPALIVE_INTERVAL", 0.01)

    await client.connect()
    await wait_until(lambda: battleye.return_value.run.call_count >= 1)

    battleye.return_value.run.assert_called_with("")
