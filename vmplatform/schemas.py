from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class VMCreateSpec(BaseModel):
    """Validated request to create a VM. Quantities are in cores / GiB."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    template: str = Field(min_length=1, max_length=100)
    cpu_cores: int = Field(ge=1, le=32)
    memory: int = Field(ge=1, le=128)
    disk_size: int = Field(ge=10, le=2048)
    network: str = "default"
    description: Optional[str] = ""

    @field_validator("description", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""


class LaunchProfile(BaseModel):
    """Everything the supervisor needs to start a hypervisor process."""
    vm_id: str
    cpu_cores: int
    memory_mb: int
    disk_path: str
    bridge: str
    mac_address: str
    vnc_display: int
