# archcrypt/executors/crypt.py
import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel, SecretStr

from archcrypt.executors.disk import Partition
from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import CryptoError, ShellCommandError

LUKS_FORMAT_TIMEOUT = 600.0
LUKS_OPEN_TIMEOUT = 120.0

UUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# Placeholder UUID reported for dry runs, where blkid is never called
DRY_RUN_UUID = "00000000-0000-0000-0000-000000000000"


class VolumeState(str, Enum):
    UNFORMATTED = "unformatted"
    FORMATTED = "formatted"
    OPENED = "opened"
    CLOSED = "closed"


class EncryptedVolume(BaseModel):
    """The LUKS container on partition 3 and where it is in its lifecycle."""
    partition: Partition
    state: VolumeState = VolumeState.UNFORMATTED
    mapper_name: Optional[str] = None
    uuid: Optional[str] = None

    @property
    def mapper_path(self) -> str:
        if self.state != VolumeState.OPENED or not self.mapper_name:
            raise CryptoError(f"{self.partition.path} is not opened (state: {self.state.value})")
        return f"/dev/mapper/{self.mapper_name}"


class EncryptionStage:
    """
    Formats and opens the LUKS container.

    Passphrases are handed to cryptsetup on stdin (``--key-file=-``); they are
    never part of the command line and never logged.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    @staticmethod
    def _require_passphrase(passphrase: SecretStr) -> str:
        value = passphrase.get_secret_value()
        if not value:
            raise CryptoError("LUKS passphrase must not be empty")
        return value

    def format(self, partition: Partition, passphrase: SecretStr) -> EncryptedVolume:
        """Overwrites any existing LUKS header on ``partition`` and records its UUID."""
        secret = self._require_passphrase(passphrase)
        volume = EncryptedVolume(partition=partition)

        try:
            self.executor.run(
                description=f"Encrypting {partition.path} with LUKS",
                command=["cryptsetup", "--use-random", "-q", "luksFormat", "--key-file=-", partition.path],
                input=secret,
                timeout=LUKS_FORMAT_TIMEOUT,
            )
            volume.state = VolumeState.FORMATTED
            volume.uuid = self.read_uuid(partition)
        except ShellCommandError as e:
            raise CryptoError(f"LUKS format of {partition.path} failed: {e}") from e

        self.executor.logger.info(f"LUKS container {partition.path} has UUID {volume.uuid}")
        return volume

    def read_uuid(self, partition: Partition) -> str:
        if self.executor.dry_run:
            return DRY_RUN_UUID

        _, stdout, _ = self.executor.run(
            description=f"Reading UUID of {partition.path}",
            command=["blkid", "-s", "UUID", "-o", "value", partition.path],
        )
        uuid = stdout.strip()
        if not UUID_PATTERN.match(uuid):
            raise CryptoError(f"blkid reported no usable UUID for {partition.path}: '{uuid}'")
        return uuid

    def open(self, volume: EncryptedVolume, passphrase: SecretStr, mapper_name: str) -> EncryptedVolume:
        if volume.state != VolumeState.FORMATTED:
            raise CryptoError(f"Cannot open {volume.partition.path} in state '{volume.state.value}'")
        secret = self._require_passphrase(passphrase)

        try:
            self.executor.run(
                description=f"Opening LUKS volume {volume.partition.path} as {mapper_name}",
                command=["cryptsetup", "open", "--key-file=-", volume.partition.path, mapper_name],
                input=secret,
                timeout=LUKS_OPEN_TIMEOUT,
            )
        except ShellCommandError as e:
            # cryptsetup exits 2 for "No key available with this passphrase"
            reason = "wrong passphrase" if e.exit_code == 2 else "device busy or unusable"
            raise CryptoError(f"Opening {volume.partition.path} failed ({reason}): {e}") from e

        volume.state = VolumeState.OPENED
        volume.mapper_name = mapper_name
        return volume

    def close(self, volume: EncryptedVolume) -> EncryptedVolume:
        if volume.state != VolumeState.OPENED:
            raise CryptoError(f"Cannot close {volume.partition.path} in state '{volume.state.value}'")

        try:
            self.executor.run(
                description=f"Closing LUKS volume {volume.mapper_name}",
                command=["cryptsetup", "close", volume.mapper_name],
            )
        except ShellCommandError as e:
            raise CryptoError(f"Closing {volume.mapper_name} failed: {e}") from e

        volume.state = VolumeState.CLOSED
        return volume
