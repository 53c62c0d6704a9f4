# archcrypt/utils/exceptions.py

# --- Executor Exceptions ---

class ShellCommandError(Exception):
    """Base class for errors related to shell command execution."""

    def __init__(self, command: str, exit_code: int = -1, stdout: str = "", stderr: str = "", message: str = "Command execution failed."):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{message} (Command: '{command}', Exit Code: {exit_code})")


class CommandNotFoundError(ShellCommandError):
    """Raised when the executable specified in the command cannot be found."""

    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=127, stdout=stdout, stderr=stderr, message="Command not found.")


class CommandTimeoutError(ShellCommandError):
    """Raised when the command exceeds the execution timeout."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.timeout = timeout
        super().__init__(command, exit_code=124, stdout=stdout, stderr=stderr, message=f"Command timed out after {timeout} seconds.")


class InvalidCommandError(ShellCommandError):
    """Raised when the command string/list is invalid, empty, or improperly formatted."""

    def __init__(self, command: str, message: str):
        super().__init__(command, exit_code=-2, message=message)


class PermissionDeniedError(ShellCommandError):
    """Raised when command execution fails due to permissions."""
    def __init__(self, command: str, stdout: str = "", stderr: str = ""):
        super().__init__(command, exit_code=126, stdout=stdout, stderr=stderr, message="Permission denied.")


# --- Provisioning Stage Exceptions ---

class ProvisioningError(Exception):
    """
    Base class for a fatal failure of one provisioning stage.

    Every subclass names the stage it belongs to and the process exit code the
    CLI reports for it. The underlying cause (usually a ShellCommandError) is
    chained with ``raise ... from``.
    """
    stage = "provisioning"
    exit_code = 1

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"[{self.stage}] {message}")


class DeviceError(ProvisioningError):
    """Target device is missing, not a block device, or busy."""
    stage = "device"
    exit_code = 10


class PartitionError(ProvisioningError):
    """Partition table or partition creation failed."""
    stage = "partition"
    exit_code = 11


class CryptoError(ProvisioningError):
    """LUKS format/open failed, bad passphrase or illegal volume transition."""
    stage = "encryption"
    exit_code = 12


class VolumeError(ProvisioningError):
    """LVM creation/activation failed or the volume group is too small."""
    stage = "volumes"
    exit_code = 13

    def __init__(self, message: str, deficit: int = 0):
        self.deficit = deficit
        super().__init__(message)


class FilesystemError(ProvisioningError):
    """Filesystem format/mount failure or mount ordering violation."""
    stage = "filesystem"
    exit_code = 14


class PackageError(ProvisioningError):
    """Base system installation failed."""
    stage = "packages"
    exit_code = 15


class GuestConfigError(ProvisioningError):
    """Failure while configuring the new root (chroot stage)."""
    stage = "guest"
    exit_code = 16
