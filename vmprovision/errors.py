"""Error kinds raised by the provisioning run."""

from __future__ import annotations


class ProvisionError(RuntimeError):
    """Base class; ``state`` carries a diagnostic snapshot for the result log."""

    result = "FAIL_UNHANDLED"
    operation = "provision"

    def __init__(self, message: str, *, state: dict | None = None) -> None:
        super().__init__(message)
        self.state = state or {}


class ConfigurationError(ProvisionError):
    result = "FAIL_CONFIG"
    operation = "configuration"


class DeviceUnavailable(ProvisionError):
    result = "FAIL_DEVICE"
    operation = "find free nbd device"


class AttachError(ProvisionError):
    result = "FAIL_ATTACH"
    operation = "attach image"


class DetachError(ProvisionError):
    result = "FAIL_CLEANUP"
    operation = "detach image"


class MountError(ProvisionError):
    result = "FAIL_MOUNT"
    operation = "mount"


class UnmountError(ProvisionError):
    result = "FAIL_CLEANUP"
    operation = "unmount"

    def __init__(self, message: str, *, failed: list[str] | None = None, state: dict | None = None) -> None:
        super().__init__(message, state=state)
        self.failed = list(failed or [])


class FilesystemCreateError(ProvisionError):
    result = "FAIL_MKFS"
    operation = "create filesystem"


class PackageInstallError(ProvisionError):
    result = "FAIL_PACKAGES"
    operation = "install packages"


class BootConfigError(ProvisionError):
    result = "FAIL_BOOT"
    operation = "configure boot"


class ScriptError(ProvisionError):
    result = "FAIL_SCRIPT"
    operation = "run hook script"

    def __init__(self, message: str, *, returncode: int, state: dict | None = None) -> None:
        super().__init__(message, state=state)
        self.returncode = returncode


class RunInterrupted(ProvisionError):
    result = "FAIL_INTERRUPTED"
    operation = "interrupted"

    def __init__(self, signum: int) -> None:
        super().__init__(f"received signal {signum}", state={"signal": signum})
        self.signum = signum
