from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone


# --- Connections ---

class ConnectionCreate(BaseModel):
    name: str
    type: str = "local"
    install_path: str
    host: Optional[str] = None
    port: Optional[int] = 22
    username: Optional[str] = None
    password: Optional[str] = None
    private_key: Optional[str] = None
    steamcmd_path: Optional[str] = None

class ConnectionResponse(BaseModel):
    id: str
    name: str
    type: str
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    install_path: str
    steamcmd_path: Optional[str] = None
    is_default: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

class ConnectionTestResult(BaseModel):
    success: bool
    message: str
    details: Dict[str, Any] = {}


# --- Runtime snapshots ---

class ProcessStatus(BaseModel):
    state: str
    is_installed: bool = False
    is_online: bool = False
    players: int = 0
    max_players: int = 0
    cpu: float = 0.0
    memory: float = 0.0  # MB
    uptime: int = 0  # seconds
    version: Optional[str] = None
    map: Optional[str] = None
    mission: Optional[str] = None
    rcon_enabled: bool = False
    pid: Optional[int] = None
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class InstallProgress(BaseModel):
    status: str  # downloading, extracting, configuring, validating, complete, error
    progress: float = 0.0
    message: str = ""
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class LogLine(BaseModel):
    seq: int = 0
    text: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    severity: str = "info"  # error, warning, script, backend, info


# --- Players ---

class OnlinePlayer(BaseModel):
    id: str  # IdentityId, or conn_<connectionID> until the server reports it
    name: str
    player_id: Optional[int] = None
    connection_id: Optional[int] = None
    score: Optional[int] = None
    duration: Optional[float] = None  # seconds, A2S only
    source: str = "log"  # log, a2s

class KickRequest(BaseModel):
    reason: Optional[str] = None


# --- Mods ---

class ModCreate(BaseModel):
    name: str
    source: str
    version: Optional[str] = None
    game_version: Optional[str] = None
    enabled: bool = True

class ModUpdate(BaseModel):
    name: Optional[str] = None
    version: Optional[str] = None
    game_version: Optional[str] = None
    enabled: Optional[bool] = None

class ModResponse(BaseModel):
    id: str
    connection_id: str
    name: str
    source: str
    version: Optional[str] = None
    game_version: Optional[str] = None
    enabled: bool
    load_order: int
    compatible: Optional[bool] = None

    model_config = ConfigDict(from_attributes=True)

class ModReorder(BaseModel):
    mod_ids: List[str]

class ModSyncResult(BaseModel):
    id: str
    name: str
    success: bool
    error: Optional[str] = None

class ModSyncReport(BaseModel):
    synced: int = 0
    failed: int = 0
    results: List[ModSyncResult] = []


# --- Server configuration document ---

class ServerConfig(BaseModel):
    # Identity / access
    name: str = "Reforger Server"
    password: str = ""
    admin_password: str = ""
    admins: List[str] = []
    scenario_id: str = "{ECC61978EDCC2B5A}Missions/23_Campaign.conf"
    max_players: int = 64
    visible: bool = True
    cross_platform: bool = False
    supported_platforms: List[str] = []

    # Network
    bind_address: str = "0.0.0.0"
    bind_port: int = 2001
    public_address: str = ""
    public_port: int = 2001
    a2s_enabled: bool = True
    a2s_address: str = ""
    a2s_port: int = 17777

    # Remote console
    rcon_enabled: bool = False
    rcon_address: str = ""
    rcon_port: int = 19999
    rcon_password: str = ""
    rcon_permission: str = "monitor"
    rcon_max_clients: int = 4
    rcon_blacklist: List[str] = []
    rcon_whitelist: List[str] = []

    # Game properties
    battleye: bool = True
    server_max_view_distance: int = 2500
    server_min_grass_distance: int = 50
    network_view_distance: int = 1000
    disable_third_person: bool = False
    fast_validation: bool = True
    von_disable_ui: bool = False
    von_disable_direct_speech_ui: bool = False
    mission_header: Dict[str, Any] = {}

    # Operating
    lobby_player_synchronise: bool = False
    ai_limit: int = -1
    player_save_time: int = 120

    model_config = ConfigDict(extra="forbid")

class ServerConfigResponse(BaseModel):
    version: int
    config: ServerConfig


# --- Commands / audit ---

class CommandRequest(BaseModel):
    command: str

class CommandResponse(BaseModel):
    command: str
    response: str
