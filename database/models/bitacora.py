from sqlalchemy import Column, Integer, String, DateTime, Text
from database.models.base import Base, utcnow

class Bitacora(Base):
    __tablename__ = "bitacora"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow)
    username = Column(String)
    action = Column(String)
    ip_address = Column(String)
    details = Column(Text)
    connection_id = Column(String(36), nullable=True, index=True)
    severity = Column(String, default="COMMON") # COMMON, CRITICAL
