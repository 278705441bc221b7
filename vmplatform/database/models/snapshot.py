from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import relationship
from ..database import Base


class Snapshot(Base):
    """
    A named point-in-time marker inside a VM's primary image.
    Names are free text; ``snapshot_handle`` is the unique key passed to qemu-img.
    """
    __tablename__ = "vm_snapshots"
    id = Column(Integer, primary_key=True, index=True)
    vm_pk = Column(Integer, ForeignKey("virtual_machines.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    snapshot_handle = Column(String(100), unique=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    vm = relationship("VM", back_populates="snapshots")
