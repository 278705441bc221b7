from sqlalchemy import Column, DateTime, Integer, String, func
from sqlalchemy.orm import relationship
from ..database import Base


class User(Base):
    """
    A panel user. Every VM is owned by exactly one user.
    """
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    vms = relationship("VM", back_populates="owner", cascade="all, delete-orphan")
