# archcrypt/__init__.py

# Exception imports
from .utils.exceptions import ShellCommandError
from .utils.exceptions import ProvisioningError
from .utils.exceptions import DeviceError
from .utils.exceptions import PartitionError
from .utils.exceptions import CryptoError
from .utils.exceptions import VolumeError
from .utils.exceptions import FilesystemError
from .utils.exceptions import PackageError
from .utils.exceptions import GuestConfigError

__all__ = [
    "ShellCommandError",
    "ProvisioningError",
    "DeviceError",
    "PartitionError",
    "CryptoError",
    "VolumeError",
    "FilesystemError",
    "PackageError",
    "GuestConfigError",
]

# Versioning
__version__ = "0.1.0"
