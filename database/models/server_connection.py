from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.orm import relationship
from database.models.base import Base, utcnow
import uuid


def new_id():
    return str(uuid.uuid4())


class ServerConnection(Base):
    __tablename__ = "server_connections"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), unique=True, index=True, nullable=False)
    type = Column(String(10), nullable=False, default="local")  # local, remote

    # SSH (remote only)
    host = Column(String, nullable=True)
    port = Column(Integer, default=22)
    username = Column(String, nullable=True)
    password = Column(String, nullable=True)
    private_key = Column(Text, nullable=True)

    install_path = Column(String, nullable=False)
    steamcmd_path = Column(String, nullable=True)

    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    mods = relationship(
        "Mod",
        back_populates="connection",
        cascade="all, delete-orphan",
        order_by="Mod.load_order",
    )
    config = relationship(
        "ServerConfigDocument",
        back_populates="connection",
        cascade="all, delete-orphan",
        uselist=False,
    )

    @property
    def is_remote(self):
        return self.type == "remote"
