import json

import pytest

from app.exceptions import ValidationError
from app.services.gameserver.config import (
    ConfigManager,
    from_server_json,
    parse_config,
    to_server_json,
    validate_config,
)
from database.schemas import ModCreate, ServerConfig


@pytest.fixture
def configs(config_repo):
    return ConfigManager(config_repo)


@pytest.fixture
def connection_id(connection_repo):
    return connection_repo.create({"name": "main", "type": "local", "install_path": "/srv/reforger"}).id


# ==============================================================================
# Validation
# ==============================================================================

def test_defaults_are_valid():
    assert validate_config(ServerConfig()) == {}


def test_every_violation_is_reported():
    config = ServerConfig(
        name="",
        bind_port=0,
        a2s_port=70000,
        max_players=500,
        rcon_enabled=True,
        rcon_password="",
        password="with space",
    )

    errors = validate_config(config)

    assert set(errors) == {"name", "bind_port", "a2s_port", "max_players", "rcon_password", "password"}


def test_rcon_password_rules():
    assert "rcon_password" in validate_config(ServerConfig(rcon_enabled=True, rcon_password="has space"))
    assert "rcon_password" in validate_config(ServerConfig(rcon_enabled=True, rcon_password="ab"))
    assert validate_config(ServerConfig(rcon_enabled=True, rcon_password="secret")) == {}
    # Password is only required while RCON is on
    assert validate_config(ServerConfig(rcon_enabled=False, rcon_password="")) == {}


def test_parse_reports_type_errors_per_field():
    with pytest.raises(ValidationError) as exc:
        parse_config({"max_players": "many", "unknown_key": 1})

    assert set(exc.value.errors) == {"max_players", "unknown_key"}


# ==============================================================================
# Storage
# ==============================================================================

def test_load_without_document_returns_defaults(configs, connection_id):
    assert configs.load(connection_id) == ServerConfig()
    assert configs.version(connection_id) == 0
    assert not configs.exists(connection_id)


def test_save_bumps_version(configs, connection_id):
    configs.save(connection_id, {"name": "First"})
    configs.save(connection_id, {"name": "Second"})

    assert configs.version(connection_id) == 2
    assert configs.load(connection_id).name == "Second"


def test_invalid_save_keeps_stored_document(configs, connection_id):
    configs.save(connection_id, {"name": "Good", "max_players": 32})

    with pytest.raises(ValidationError) as exc:
        configs.save(connection_id, {"name": "Bad", "max_players": 0})

    assert "max_players" in exc.value.errors
    assert configs.load(connection_id).name == "Good"
    assert configs.version(connection_id) == 1


def test_patch_merges_into_current(configs, connection_id):
    configs.save(connection_id, {"name": "Base", "max_players": 40})

    patched = configs.patch(connection_id, {"max_players": 20})

    assert patched.name == "Base"
    assert patched.max_players == 20


def test_loaded_config_is_a_copy(configs, connection_id):
    configs.save(connection_id, {"admins": ["76561198000000000"]})

    loaded = configs.load(connection_id)
    loaded.admins.append("changed")

    assert configs.load(connection_id).admins == ["76561198000000000"]


# ==============================================================================
# server.json
# ==============================================================================

class ModStub:
    def __init__(self, source, name, load_order, enabled=True, version=None):
        self.source = source
        self.name = name
        self.load_order = load_order
        self.enabled = enabled
        self.version = version


def test_server_json_layout():
    config = ServerConfig(name="Test", bind_port=2001, public_address="203.0.113.5", max_players=32)

    document = to_server_json(config)

    assert document["bindPort"] == 2001
    assert document["publicAddress"] == "203.0.113.5"
    assert document["game"]["name"] == "Test"
    assert document["game"]["maxPlayers"] == 32
    assert document["a2s"]["port"] == 17777
    assert "rcon" not in document


def test_server_json_rcon_block_only_when_enabled():
    document = to_server_json(ServerConfig(rcon_enabled=True, rcon_password="secret", rcon_blacklist=["#shutdown"]))

    assert document["rcon"]["password"] == "secret"
    assert document["rcon"]["blacklist"] == ["#shutdown"]


def test_server_json_lists_enabled_mods_in_order():
    mods = [
        ModStub("BBB", "B", 1),
        ModStub("CCC", "C", 2, enabled=False),
        ModStub("AAA", "A", 0, version="1.0.3"),
    ]

    document = to_server_json(ServerConfig(), mods)

    assert document["game"]["mods"] == [
        {"modId": "AAA", "name": "A", "version": "1.0.3"},
        {"modId": "BBB", "name": "B", "version": ""},
    ]


def test_render_is_readable_back():
    config = ServerConfig(name="Loop", max_players=16, rcon_enabled=True, rcon_password="secret", a2s_enabled=False)
    mods = [ModStub("AAA", "A", 0)]

    imported, imported_mods = from_server_json(json.loads(ConfigManager.render(config, mods)))

    assert imported.name == "Loop"
    assert imported.max_players == 16
    assert imported.rcon_enabled
    assert not imported.a2s_enabled
    assert imported_mods == [{"source": "AAA", "name": "A", "version": None}]
    # Mod entries are valid ModCreate input
    assert ModCreate(**imported_mods[0]).source == "AAA"
