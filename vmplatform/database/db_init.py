import logging

from .database import engine as default_engine, SessionLocal, Base
from .models import *
from vmplatform.services.identity_service import hash_password

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES = [
    ("Ubuntu 20.04 LTS", "Linux", "Ubuntu 20.04", 1, 1, 10,
     "https://cloud-images.ubuntu.com/focal/current/focal-server-cloudimg-amd64.img", "Ubuntu 20.04 LTS Server"),
    ("Ubuntu 22.04 LTS", "Linux", "Ubuntu 22.04", 1, 1, 10,
     "https://cloud-images.ubuntu.com/jammy/current/jammy-server-cloudimg-amd64.img", "Ubuntu 22.04 LTS Server"),
    ("Debian 11", "Linux", "Debian 11", 1, 1, 10,
     "https://cloud.debian.org/images/cloud/bullseye/latest/debian-11-generic-amd64.qcow2", "Debian 11 Bullseye"),
    ("Windows 10", "Windows", "Windows 10", 2, 4, 50, None, "Windows 10 Professional"),
    ("Windows Server 2019", "Windows", "Windows Server 2019", 2, 4, 50, None, "Windows Server 2019 Standard"),
]


def initialize_db(engine=None, session_factory=None):
    """
    Creates every table and inserts the default templates and admin user.
    Safe to run repeatedly: seeding is skipped once a user exists.
    """
    engine = engine or default_engine
    session_factory = session_factory or SessionLocal

    Base.metadata.create_all(bind=engine)
    logger.info("Tables created.")

    db = session_factory()
    try:
        if db.query(User).first():
            logger.info("Seed data already present, skipping.")
            return

        for name, os_type, os_version, min_cpu, min_memory, min_disk, source, description in DEFAULT_TEMPLATES:
            db.add(Template(
                name=name,
                os_type=os_type,
                os_version=os_version,
                min_cpu=min_cpu,
                min_memory=min_memory,
                min_disk=min_disk,
                image_source=source,
                description=description,
            ))

        db.add(User(username="admin", password_hash=hash_password("admin")))

        db.commit()
        logger.info("Default templates and admin user created (admin / admin).")

    except Exception:
        logger.exception("Database initialization failed.")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    initialize_db()
