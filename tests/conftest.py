# tests/conftest.py
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vmplatform.config import Settings
from vmplatform.database import models
from vmplatform.database.database import Base, make_engine


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing every VM path into a temporary directory."""
    return Settings(
        database_url="sqlite://",
        base_dir=str(tmp_path),
        hypervisor="qemu",
        restart_settle_seconds=2.0,
        stop_timeout_seconds=10.0,
        stop_poll_interval_seconds=0.5,
        cpu_sample_interval=0.0,
    )


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_vm(**overrides) -> models.VM:
    """An unsaved VM record with sensible defaults."""
    values = dict(
        id=1,
        vm_id="vm_0123456789abc",
        owner_id=1,
        name="web-01",
        description="",
        template="Ubuntu 22.04 LTS",
        cpu_cores=2,
        memory_gb=2,
        disk_size_gb=20,
        network_type="default",
        network_bridge="vmbr0",
        ip_address="192.168.100.20",
        vnc_display=1,
        status=models.VMStatus.STOPPED.value,
        pid=None,
    )
    values.update(overrides)
    return models.VM(**values)


@pytest.fixture
def vm_factory():
    return make_vm
