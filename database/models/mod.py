from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from database.models.base import Base, utcnow
from database.models.server_connection import new_id


class Mod(Base):
    __tablename__ = "server_mods"
    __table_args__ = (
        UniqueConstraint("connection_id", "load_order"),
        UniqueConstraint("connection_id", "source"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    connection_id = Column(String(36), ForeignKey("server_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String, nullable=False)
    source = Column(String, nullable=False)  # Workshop id
    version = Column(String, nullable=True)
    game_version = Column(String, nullable=True)  # Minimum game version the mod needs
    enabled = Column(Boolean, default=True, nullable=False)
    load_order = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    connection = relationship("ServerConnection", back_populates="mods")
