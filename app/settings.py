import os
import sys
from dotenv import load_dotenv

load_dotenv()

# API
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Auth (tokens are issued by the external auth layer, we only verify them)
SECRET_KEY = os.getenv("SECRET_KEY", "fallback_secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))

# SteamCMD / game
STEAM_APP_ID = os.getenv("STEAM_APP_ID", "1874900")
STEAMCMD_PATH = os.getenv("STEAMCMD_PATH", "C:\\steamcmd" if sys.platform == "win32" else "/opt/steamcmd")
STEAMCMD_URL_LINUX = os.getenv(
    "STEAMCMD_URL_LINUX",
    "https://steamcdn-a.akamaihd.net/client/installer/steamcmd_linux.tar.gz",
)
STEAMCMD_URL_WINDOWS = os.getenv(
    "STEAMCMD_URL_WINDOWS",
    "https://steamcdn-a.akamaihd.net/client/installer/steamcmd.zip",
)

# Timeouts (seconds)
START_TIMEOUT = float(os.getenv("START_TIMEOUT", "120"))
START_HEALTH_GRACE = float(os.getenv("START_HEALTH_GRACE", "10"))
STOP_GRACE = float(os.getenv("STOP_GRACE", "30"))
KILL_TIMEOUT = float(os.getenv("KILL_TIMEOUT", "10"))
RCON_TIMEOUT = float(os.getenv("RCON_TIMEOUT", "5"))
COMMAND_TIMEOUT = float(os.getenv("COMMAND_TIMEOUT", "30"))
CONNECTION_TEST_TIMEOUT = float(os.getenv("CONNECTION_TEST_TIMEOUT", "10"))
QUERY_TIMEOUT = float(os.getenv("QUERY_TIMEOUT", "2"))
INSTALL_PROGRESS_TTL = float(os.getenv("INSTALL_PROGRESS_TTL", "5"))
STATUS_POLL_INTERVAL = float(os.getenv("STATUS_POLL_INTERVAL", "10"))
EVENT_QUEUE_SIZE = int(os.getenv("EVENT_QUEUE_SIZE", "1000"))

# Logs / console
CONSOLE_BUFFER_LINES = int(os.getenv("CONSOLE_BUFFER_LINES", "1000"))
CONSOLE_TAIL_LINES = int(os.getenv("CONSOLE_TAIL_LINES", "200"))
LOG_MAX_LINES = int(os.getenv("LOG_MAX_LINES", "5000"))

# CLI -> API
API_URL = os.getenv("API_URL", f"http://127.0.0.1:{PORT}")
API_TOKEN = os.getenv("API_TOKEN", "")

# Workshop
WORKSHOP_URL = os.getenv("WORKSHOP_URL", "https://reforger.armaplatform.com/workshop")
WORKSHOP_TIMEOUT = float(os.getenv("WORKSHOP_TIMEOUT", "30"))
WORKSHOP_CACHE_TTL = float(os.getenv("WORKSHOP_CACHE_TTL", "600"))
