import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from app.exceptions import ValidationError
from database.repositories import ConfigRepository
from database.schemas import ServerConfig

logger = logging.getLogger(__name__)

PORT_FIELDS = ("bind_port", "public_port", "a2s_port", "rcon_port")

# field -> (min, max)
RANGES = {
    "max_players": (1, 128),
    "rcon_max_clients": (1, 16),
    "server_max_view_distance": (500, 10000),
    "server_min_grass_distance": (0, 150),
    "network_view_distance": (500, 5000),
    "player_save_time": (0, 3600),
}

RCON_PERMISSIONS = ("monitor", "admin")


def _has_whitespace(value: str) -> bool:
    return any(c.isspace() for c in value)


def validate_config(config: ServerConfig) -> Dict[str, str]:
    """Returns every violated rule as ``{field: message}``; empty when valid."""
    errors = {}

    if not config.name.strip():
        errors["name"] = "Server name is required"
    elif len(config.name) > 100:
        errors["name"] = "Server name must be at most 100 characters"

    if not config.scenario_id.strip():
        errors["scenario_id"] = "Scenario id is required"

    for field in ("password", "admin_password"):
        if _has_whitespace(getattr(config, field)):
            errors[field] = "Must not contain whitespace"

    for i, admin in enumerate(config.admins):
        if not admin.strip() or _has_whitespace(admin):
            errors[f"admins.{i}"] = "Admin ids must be non-empty and contain no whitespace"

    for field in PORT_FIELDS:
        value = getattr(config, field)
        if not 1 <= value <= 65535:
            errors[field] = "Port must be between 1 and 65535"

    for field, (low, high) in RANGES.items():
        value = getattr(config, field)
        if not low <= value <= high:
            errors[field] = f"Must be between {low} and {high}"

    if config.ai_limit < -1:
        errors["ai_limit"] = "Must be -1 (unlimited) or a non-negative number"

    if config.rcon_permission not in RCON_PERMISSIONS:
        errors["rcon_permission"] = f"Must be one of {', '.join(RCON_PERMISSIONS)}"

    if config.rcon_enabled:
        password = config.rcon_password
        if not password:
            errors["rcon_password"] = "RCON password is required when RCON is enabled"
        elif _has_whitespace(password):
            errors["rcon_password"] = "RCON password must not contain whitespace"
        elif len(password) < 3:
            errors["rcon_password"] = "RCON password must be at least 3 characters"

    return errors


def parse_config(data: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
    """Coerces input into a ServerConfig, reporting type errors per field."""
    if isinstance(data, ServerConfig):
        return data
    try:
        return ServerConfig.model_validate(data)
    except PydanticValidationError as e:
        errors = {}
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "__root__"
            errors[field] = err["msg"]
        raise ValidationError("Invalid server configuration", errors)


def to_server_json(config: ServerConfig, mods: Iterable[Any] = ()) -> Dict[str, Any]:
    """Renders the game's server.json document. Only enabled mods are listed, in order."""
    document = {
        "bindAddress": config.bind_address or "0.0.0.0",
        "bindPort": config.bind_port,
        "publicAddress": config.public_address,
        "publicPort": config.public_port or config.bind_port,
    }
    if config.a2s_enabled:
        document["a2s"] = {
            "address": config.a2s_address or config.public_address,
            "port": config.a2s_port,
        }
    if config.rcon_enabled and config.rcon_password:
        document["rcon"] = {
            "address": config.rcon_address,
            "port": config.rcon_port,
            "password": config.rcon_password,
            "permission": config.rcon_permission,
            "blacklist": list(config.rcon_blacklist),
            "whitelist": list(config.rcon_whitelist),
            "maxClients": config.rcon_max_clients,
        }
    document["game"] = {
        "name": config.name,
        "password": config.password,
        "passwordAdmin": config.admin_password,
        "admins": list(config.admins),
        "scenarioId": config.scenario_id,
        "maxPlayers": config.max_players,
        "visible": config.visible,
        "crossPlatform": config.cross_platform,
        "supportedPlatforms": list(config.supported_platforms),
        "gameProperties": {
            "serverMaxViewDistance": config.server_max_view_distance,
            "serverMinGrassDistance": config.server_min_grass_distance,
            "networkViewDistance": config.network_view_distance,
            "disableThirdPerson": config.disable_third_person,
            "fastValidation": config.fast_validation,
            "battlEye": config.battleye,
            "VONDisableUI": config.von_disable_ui,
            "VONDisableDirectSpeechUI": config.von_disable_direct_speech_ui,
            "missionHeader": dict(config.mission_header),
        },
        "mods": [
            {"modId": m.source, "name": m.name, "version": m.version or ""}
            for m in sorted(mods, key=lambda m: m.load_order)
            if m.enabled
        ],
    }
    document["operating"] = {
        "lobbyPlayerSynchronise": config.lobby_player_synchronise,
        "playerSaveTime": config.player_save_time,
        "aiLimit": config.ai_limit,
    }
    return document


def from_server_json(document: Dict[str, Any]) -> Tuple[ServerConfig, List[Dict[str, str]]]:
    """Reads an existing server.json into a ServerConfig plus the listed mods."""
    defaults = ServerConfig()
    game = document.get("game") or {}
    props = game.get("gameProperties") or {}
    operating = document.get("operating") or {}
    a2s = document.get("a2s")
    rcon = document.get("rcon")

    config = ServerConfig(
        name=game.get("name") or defaults.name,
        password=game.get("password") or "",
        admin_password=game.get("passwordAdmin") or "",
        admins=game.get("admins") or [],
        scenario_id=game.get("scenarioId") or defaults.scenario_id,
        max_players=game.get("maxPlayers") or defaults.max_players,
        visible=game.get("visible", defaults.visible),
        cross_platform=game.get("crossPlatform", False),
        supported_platforms=game.get("supportedPlatforms") or [],
        bind_address=document.get("bindAddress") or defaults.bind_address,
        bind_port=document.get("bindPort") or defaults.bind_port,
        public_address=document.get("publicAddress") or "",
        public_port=document.get("publicPort") or document.get("bindPort") or defaults.public_port,
        a2s_enabled=bool(a2s),
        a2s_address=(a2s or {}).get("address") or "",
        a2s_port=(a2s or {}).get("port") or defaults.a2s_port,
        rcon_enabled=bool(rcon),
        rcon_address=(rcon or {}).get("address") or "",
        rcon_port=(rcon or {}).get("port") or defaults.rcon_port,
        rcon_password=(rcon or {}).get("password") or "",
        rcon_permission=(rcon or {}).get("permission") or defaults.rcon_permission,
        rcon_max_clients=(rcon or {}).get("maxClients") or defaults.rcon_max_clients,
        rcon_blacklist=(rcon or {}).get("blacklist") or [],
        rcon_whitelist=(rcon or {}).get("whitelist") or [],
        battleye=props.get("battlEye", defaults.battleye),
        server_max_view_distance=props.get("serverMaxViewDistance") or defaults.server_max_view_distance,
        server_min_grass_distance=props.get("serverMinGrassDistance", defaults.server_min_grass_distance),
        network_view_distance=props.get("networkViewDistance") or defaults.network_view_distance,
        disable_third_person=props.get("disableThirdPerson", defaults.disable_third_person),
        fast_validation=props.get("fastValidation", defaults.fast_validation),
        von_disable_ui=props.get("VONDisableUI", defaults.von_disable_ui),
        von_disable_direct_speech_ui=props.get("VONDisableDirectSpeechUI", defaults.von_disable_direct_speech_ui),
        mission_header=props.get("missionHeader") or {},
        lobby_player_synchronise=operating.get("lobbyPlayerSynchronise", defaults.lobby_player_synchronise),
        ai_limit=operating.get("aiLimit", defaults.ai_limit),
        player_save_time=operating.get("playerSaveTime", defaults.player_save_time),
    )
    mods = [
        {"source": m.get("modId"), "name": m.get("name") or m.get("modId"), "version": m.get("version") or None}
        for m in game.get("mods") or []
        if m.get("modId")
    ]
    return config, mods


class ConfigManager:
    """Loads, validates and stores the per-connection configuration document."""

    def __init__(self, repository: ConfigRepository):
        self.repository = repository

    def load(self, connection_id: str) -> ServerConfig:
        document = self.repository.get(connection_id)
        if document is None:
            return ServerConfig()
        try:
            return ServerConfig.model_validate(document)
        except PydanticValidationError as e:
            # A stored document from an older schema, fall back to defaults for bad fields
            logger.warning(f"Stored config for {connection_id} does not match the schema: {e}")
            merged = ServerConfig().model_dump()
            merged.update({k: v for k, v in document.items() if k in merged})
            return parse_config(merged)

    def version(self, connection_id: str) -> int:
        return self.repository.get_version(connection_id)

    def exists(self, connection_id: str) -> bool:
        return self.repository.get(connection_id) is not None

    def save(self, connection_id: str, data: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
        config = parse_config(data)
        errors = validate_config(config)
        if errors:
            raise ValidationError(f"Invalid server configuration ({len(errors)} errors)", errors)
        version = self.repository.save(connection_id, config.model_dump(mode="json"))
        logger.info(f"Saved config for {connection_id} (version {version})")
        return config.model_copy(deep=True)

    def patch(self, connection_id: str, changes: Dict[str, Any]) -> ServerConfig:
        current = self.load(connection_id).model_dump()
        current.update(changes)
        return self.save(connection_id, current)

    @staticmethod
    def render(config: ServerConfig, mods: Iterable[Any] = ()) -> str:
        return json.dumps(to_server_json(config, mods), indent=2)
