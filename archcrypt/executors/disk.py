# archcrypt/executors/disk.py
import os
import re
import stat
from typing import List, Tuple

from pydantic import BaseModel, field_validator

from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import DeviceError, FilesystemError, PartitionError, ShellCommandError

MKFS_TIMEOUT = 600.0

ESP_INDEX = 1
BOOT_INDEX = 2
LUKS_INDEX = 3


def partition_path(device: str, index: int) -> str:
    """
    Returns the kernel name of partition ``index`` on ``device``.
    Devices whose name ends in a digit (nvme0n1, mmcblk0) use a 'p' separator.
    """
    separator = "p" if re.search(r"\d$", device) else ""
    return f"{device}{separator}{index}"


def is_block_device(path: str) -> bool:
    try:
        return stat.S_ISBLK(os.stat(path).st_mode)
    except OSError:
        return False


class Partition(BaseModel):
    """A single GPT partition of the fixed layout."""
    index: int
    type: str
    start: str
    end: str
    flags: Tuple[str, ...] = ()
    path: str

    @property
    def is_boot_flagged(self) -> bool:
        return "boot" in self.flags


class PartitionLayout(BaseModel):
    """The fixed three-partition GPT layout: ESP, boot, LUKS container."""
    device: str
    partitions: List[Partition]

    @field_validator("partitions")
    @classmethod
    def _fixed_topology(cls, partitions: List[Partition]) -> List[Partition]:
        if len(partitions) != 3:
            raise ValueError(f"layout must have exactly 3 partitions, got {len(partitions)}")
        if [p.index for p in partitions] != [1, 2, 3]:
            raise ValueError("partition indices must be 1-based and contiguous")
        flagged = [p.index for p in partitions if p.is_boot_flagged]
        if flagged != [ESP_INDEX]:
            raise ValueError("the ESP (index 1) must be the only boot-flagged partition")
        return partitions

    @property
    def esp(self) -> Partition:
        return self.partitions[ESP_INDEX - 1]

    @property
    def boot(self) -> Partition:
        return self.partitions[BOOT_INDEX - 1]

    @property
    def luks(self) -> Partition:
        return self.partitions[LUKS_INDEX - 1]


class PartitionPlanner:
    """
    Computes and writes the GPT layout of the target device.

    Writing the table destroys anything already on the device. Failures are
    fatal: nothing is mounted or opened at this point, so there is nothing to
    roll back.
    """

    def __init__(self, executor: Executor):
        self.executor = executor

    @staticmethod
    def plan(device: str) -> PartitionLayout:
        return PartitionLayout(device=device, partitions=[
            Partition(index=ESP_INDEX, type="fat32", start="1MiB", end="101MiB",
                      flags=("boot", "esp"), path=partition_path(device, ESP_INDEX)),
            Partition(index=BOOT_INDEX, type="ext4", start="101MiB", end="613MiB",
                      path=partition_path(device, BOOT_INDEX)),
            Partition(index=LUKS_INDEX, type="ext4", start="613MiB", end="100%",
                      path=partition_path(device, LUKS_INDEX)),
        ])

    def apply(self, layout: PartitionLayout) -> PartitionLayout:
        """Writes a fresh GPT label and the three partitions of ``layout``."""
        device = layout.device
        try:
            self.executor.run(
                description=f"Creating GPT partition table on {device}",
                command=["parted", "-s", device, "mklabel", "gpt"],
            )
            for p in layout.partitions:
                self.executor.run(
                    description=f"Creating partition {p.index} ({p.start} - {p.end}) on {device}",
                    command=["parted", "-s", device, "mkpart", "primary", p.type, p.start, p.end],
                )
                # parted exposes the GPT boot flag as 'esp'
                if "esp" in p.flags:
                    self.executor.run(
                        description=f"Flagging partition {p.index} as EFI system partition",
                        command=["parted", "-s", device, "set", str(p.index), "esp", "on"],
                    )
            self.executor.run(
                description=f"Updating kernel partition table of {device}",
                command=["partprobe", device],
            )
        except ShellCommandError as e:
            raise PartitionError(f"Partitioning {device} failed: {e}") from e
        return layout

    def format(self, layout: PartitionLayout) -> None:
        """Creates the ESP (FAT32) and boot (ext4) filesystems. The LUKS partition is left to encryption."""
        try:
            self.executor.run(
                description=f"Formatting EFI system partition {layout.esp.path} as FAT32",
                command=["mkfs.fat", "-F32", layout.esp.path],
                timeout=MKFS_TIMEOUT,
            )
            self.executor.run(
                description=f"Formatting boot partition {layout.boot.path} as ext4",
                command=["mkfs.ext4", "-F", layout.boot.path],
                timeout=MKFS_TIMEOUT,
            )
        except ShellCommandError as e:
            raise FilesystemError(f"Formatting partitions on {layout.device} failed: {e}") from e


def check_device(executor: Executor, device: str) -> None:
    """
    Verifies the target is a real block device and that neither it nor any of
    its partitions is mounted.
    """
    if not is_block_device(device):
        raise DeviceError(f"{device} does not exist or is not a block device")

    try:
        _, stdout, _ = executor.run(
            description=f"Checking that {device} is not in use",
            command=["lsblk", "-nro", "MOUNTPOINT", device],
            dryrun=False,
        )
    except ShellCommandError as e:
        raise DeviceError(f"Could not inspect {device}: {e}") from e

    mountpoints = [line.strip() for line in stdout.splitlines() if line.strip()]
    if mountpoints:
        raise DeviceError(f"{device} is busy, mounted at: {', '.join(mountpoints)}")
