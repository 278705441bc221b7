from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from ..database import Base


class AuditLog(Base):
    __tablename__ = "system_logs"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    action = Column(String(100), nullable=False)
    resource_type = Column(String(50))
    resource_id = Column(String(100))
    details = Column(Text)  # JSON
    origin = Column(String(45))
    created_at = Column(DateTime, server_default=func.now(), index=True)
