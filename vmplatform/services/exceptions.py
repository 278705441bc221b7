# vmplatform/services/exceptions.py

class PlatformError(Exception):
    """Base class of every error the core reports to its callers."""
    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


# --- Lookup / ownership ---
class VmNotFoundError(PlatformError):
    """No VM with the requested vm_id"""
    code = "not_found"

    def __init__(self, message: str = "VM not found"):
        super().__init__(message)


class SnapshotNotFoundError(PlatformError):
    """The snapshot handle does not belong to the VM"""
    code = "not_found"


class ForbiddenError(PlatformError):
    """The caller does not own the VM"""
    code = "forbidden"

    def __init__(self, message: str = "Access denied"):
        super().__init__(message)


# --- Validation ---
class VmValidationError(PlatformError):
    """Out-of-bounds resources, unknown template or action"""
    code = "validation_error"


class VmAlreadyExistsError(VmValidationError):
    """The owner already has a VM with this name"""


# --- On-disk state ---
class ConfigMissingError(PlatformError):
    """vm.conf (or the disk image) required by the operation is absent"""
    code = "config_missing"


# --- Hypervisor / image tooling ---
class LaunchFailedError(PlatformError):
    """The hypervisor process could not be started"""
    code = "launch_failed"

    def __init__(self, reason: str):
        super().__init__(f"Failed to start VM: {reason}")
        self.reason = reason


class TerminateFailedError(PlatformError):
    """The hypervisor process could not be signalled"""
    code = "terminate_failed"


class ImageOperationFailedError(PlatformError):
    """An image tool (qemu-img, download, copy) failed"""
    code = "image_operation_failed"

    def __init__(self, command, output: str):
        self.command = list(command) if isinstance(command, (list, tuple)) else [str(command)]
        self.output = (output or "").strip()
        super().__init__(f"Image operation failed ({' '.join(self.command)}): {self.output}")


class VmCreationError(PlatformError):
    """Unexpected failure while creating a VM (the partial VM has been rolled back)"""
    code = "creation_failed"


class ResourceExhaustedError(PlatformError):
    """No free address left in the configured pool"""
    code = "resource_exhausted"


# --- Concurrency / time ---
class VmBusyError(PlatformError):
    """Another operation currently holds the VM lease"""
    code = "busy"


class OperationTimedOutError(PlatformError):
    """An external command or wait exceeded its timeout"""
    code = "timed_out"


# --- Bulk ---
class PartialBulkFailureError(PlatformError):
    """At least one member of a bulk action failed"""
    code = "partial_bulk_failure"

    def __init__(self, result):
        super().__init__(result.message)
        self.result = result


# --- Identity ---
class UserNotFoundError(PlatformError):
    code = "not_found"


class UserCreationError(PlatformError):
    code = "validation_error"


class TokenInvalidError(PlatformError):
    """The token is missing, unknown or expired"""
    code = "unauthorized"


class AuthenticationError(PlatformError):
    """Invalid credentials"""
    code = "unauthorized"
