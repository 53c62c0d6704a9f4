from typing import List, Optional
from unittest.mock import MagicMock

import pytest

from archcrypt.config.models import ProvisioningConfig
from archcrypt.utils.executor import Executor
from archcrypt.utils.logger import RichAppLogger

# ======= Execute with: pytest tests/ ========


def strip_chroot(command: List[str]) -> List[str]:
    """Drops an 'arch-chroot <root>' prefix so commands can be matched on their program."""
    if command[:1] == ["arch-chroot"]:
        return command[2:]
    return command


class CommandRecorder:
    """
    Stands in for Executor.execute_command: records every command (and what
    was sent to stdin) and answers with canned results matched by prefix.
    """

    def __init__(self):
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self._responses = []

    def respond(self, prefix: List[str], stdout: str = "", exit_code: int = 0, error: Exception = None):
        self._responses.append((prefix, (exit_code, stdout, ""), error))

    def __call__(self, command, capture_output=True, timeout=None, check=True, input=None, cwd=None):
        self.commands.append(list(command))
        self.inputs.append(input)
        bare = strip_chroot(list(command))
        for prefix, result, error in reversed(self._responses):
            if bare[:len(prefix)] == prefix:
                if error is not None:
                    raise error
                return result
        return 0, "", ""

    def programs(self) -> List[str]:
        return [strip_chroot(c)[0] for c in self.commands]

    def find(self, prefix: List[str]) -> List[List[str]]:
        return [c for c in self.commands if strip_chroot(c)[:len(prefix)] == prefix]

    def index(self, prefix: List[str]) -> int:
        for i, c in enumerate(self.commands):
            if strip_chroot(c)[:len(prefix)] == prefix:
                return i
        raise ValueError(f"{prefix} was never run")


@pytest.fixture
def mock_rich_logger():
    """Provides a fully-mocked RichAppLogger instance for dependency injection."""
    mock_logger = MagicMock(spec=RichAppLogger)

    mock_context_manager = MagicMock()
    mock_context_manager.__enter__.return_value = None
    # __exit__ must return None, otherwise the mock swallows exceptions
    mock_context_manager.__exit__.return_value = None
    mock_logger.execution_step.return_value = mock_context_manager

    return mock_logger


@pytest.fixture
def recorder():
    return CommandRecorder()


@pytest.fixture
def mount_root():
    return "/mnt"


@pytest.fixture
def executor(mock_rich_logger, recorder, mount_root):
    """A real Executor whose low-level execution is replaced by the recorder."""
    exe = Executor(logger_instance=mock_rich_logger, default_timeout=5.0, chroot_path=mount_root)
    exe.execute_command = recorder
    return exe


@pytest.fixture
def make_config():
    def _make(**overrides) -> ProvisioningConfig:
        data = dict(
            hostname="arch-1",
            username="rcuser",
            password="user-secret",
            device="/dev/sdX",
            root_size="20G",
            swap_size="4G",
            luks_passphrase="luks-secret",
        )
        data.update(overrides)
        return ProvisioningConfig(**data)
    return _make
