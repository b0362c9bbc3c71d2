# Export Base for Alembic migrations
from .base import Base

# Export all models
from .server_connection import ServerConnection
from .mod import Mod
from .server_config import ServerConfigDocument
from .bitacora import Bitacora
