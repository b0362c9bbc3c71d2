from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text
from sqlalchemy.orm import relationship
from database.models.base import Base, utcnow


class ServerConfigDocument(Base):
    """One versioned JSON configuration document per connection."""
    __tablename__ = "server_configs"

    connection_id = Column(String(36), ForeignKey("server_connections.id", ondelete="CASCADE"), primary_key=True)
    version = Column(Integer, default=1, nullable=False)
    document = Column(Text, nullable=False, default="{}")
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    connection = relationship("ServerConnection", back_populates="config")
