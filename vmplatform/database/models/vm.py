import enum

from sqlalchemy import (
    CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
)
from sqlalchemy.orm import relationship
from ..database import Base


class VMStatus(str, enum.Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


class VM(Base):
    """
    A virtual machine owned by a single user.

    ``vm_id`` is the opaque host-unique identifier used everywhere outside the
    database (directories, process names, API paths); ``id`` is the internal
    primary key and also seeds the VNC display index. ``pid`` holds the
    hypervisor process handle returned at launch, and ``lease_token`` /
    ``lease_expires_at`` implement the short per-VM mutual exclusion lease.
    """
    __tablename__ = "virtual_machines"
    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_vm_owner_name"),
        CheckConstraint("cpu_cores BETWEEN 1 AND 32", name="ck_vm_cpu_cores"),
        CheckConstraint("memory_gb BETWEEN 1 AND 128", name="ck_vm_memory_gb"),
        CheckConstraint("disk_size_gb BETWEEN 10 AND 2048", name="ck_vm_disk_size_gb"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vm_id = Column(String(100), unique=True, nullable=False, index=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default="")
    template = Column(String(100), nullable=False)
    cpu_cores = Column(Integer, nullable=False)
    memory_gb = Column(Integer, nullable=False)
    disk_size_gb = Column(Integer, nullable=False)

    network_type = Column(String(50), nullable=False, default="default")
    network_bridge = Column(String(50), nullable=False, default="vmbr0")
    ip_address = Column(String(45))
    vnc_display = Column(Integer)

    status = Column(String(20), nullable=False, default=VMStatus.STOPPED.value)
    pid = Column(Integer)
    lease_token = Column(String(64))
    lease_expires_at = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    owner = relationship("User", back_populates="vms")
    snapshots = relationship(
        "Snapshot", back_populates="vm", cascade="all, delete-orphan"
    )
    backups = relationship(
        "Backup", back_populates="vm", cascade="all, delete-orphan"
    )
