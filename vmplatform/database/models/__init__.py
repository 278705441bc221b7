from .user import User
from .vm import VM, VMStatus
from .snapshot import Snapshot
from .backup import Backup, BackupStatus
from .template import Template
from .audit import AuditLog

__all__ = [
    "User", "VM", "VMStatus", "Snapshot", "Backup", "BackupStatus", "Template", "AuditLog",
]
