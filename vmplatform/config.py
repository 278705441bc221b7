from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Process-wide configuration, read from ``VMPLATFORM_*`` environment variables
    (or a local ``.env`` file).

    The hypervisor value may be ``auto``; it is resolved exactly once when the
    application is built and the resolved supervisor is injected everywhere.
    """
    model_config = SettingsConfigDict(
        env_prefix="VMPLATFORM_",
        env_file=".env",
        extra="ignore",
    )

    database_url: str = "sqlite:///vm_platform.db"
    base_dir: str = "/var/lib/vm-platform"

    # Hypervisor
    hypervisor: str = "auto"  # auto | qemu | libvirt
    libvirt_uri: str = "qemu:///system"
    qemu_binary: str = "qemu-system-x86_64"
    qemu_img_binary: str = "qemu-img"

    # Network / display
    network_bridge: str = "vmbr0"
    address_pool: str = "192.168.100.0/24"
    address_range_start: int = 10
    address_range_end: int = 254
    vnc_host: str = "127.0.0.1"
    vnc_base_port: int = 5900
    vnc_display_offset: int = 0

    # Timing
    restart_settle_seconds: float = 2.0
    stop_timeout_seconds: float = 10.0
    stop_poll_interval_seconds: float = 0.5
    command_timeout_seconds: float = 600.0
    download_timeout_seconds: float = 1800.0
    lease_ttl_seconds: int = 900
    cpu_sample_interval: float = 0.5

    log_level: str = "INFO"
    token_ttl_minutes: int = 60


settings = Settings()
