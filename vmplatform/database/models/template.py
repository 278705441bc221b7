from sqlalchemy import Column, DateTime, Integer, String, Text, func
from ..database import Base


class Template(Base):
    """
    A base OS definition a VM is created from (e.g. 'Ubuntu 22.04 LTS').
    ``image_source`` is an optional URL or local path the new disk is seeded from.
    """
    __tablename__ = "vm_templates"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), unique=True, nullable=False)
    os_type = Column(String(50), nullable=False)
    os_version = Column(String(50), nullable=False)
    min_cpu = Column(Integer, default=1)
    min_memory = Column(Integer, default=1)
    min_disk = Column(Integer, default=10)
    image_source = Column(String(255))
    description = Column(Text)
    created_at = Column(DateTime, server_default=func.now())
