import enum

from sqlalchemy import BigInteger, Column, DateTime, ForeignKey, Integer, String, func
from sqlalchemy.orm import relationship
from ..database import Base


class BackupStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Backup(Base):
    """
    A full, independent copy of a VM's primary image.
    ``completed`` and ``failed`` are final; ``pending`` only exists while the copy runs.
    """
    __tablename__ = "vm_backups"
    id = Column(Integer, primary_key=True, index=True)
    vm_pk = Column(Integer, ForeignKey("virtual_machines.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    path = Column(String(255), nullable=False)
    size_bytes = Column(BigInteger)
    status = Column(String(20), nullable=False, default=BackupStatus.PENDING.value)
    created_at = Column(DateTime, server_default=func.now())

    vm = relationship("VM", back_populates="backups")
