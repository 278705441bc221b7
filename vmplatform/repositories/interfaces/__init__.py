from .vm import IVMRepository
from .snapshot import ISnapshotRepository
from .backup import IBackupRepository
from .template import ITemplateRepository
from .audit import IAuditRepository
from .user import IUserRepository
