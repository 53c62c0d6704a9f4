# archcrypt/executors/lvm.py
from typing import List, Literal, Optional

from pydantic import BaseModel

from archcrypt.config.models import ProvisioningConfig, size_to_bytes
from archcrypt.executors.crypt import EncryptedVolume
from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import FilesystemError, ShellCommandError, VolumeError

LVM_TIMEOUT = 60.0
MKFS_TIMEOUT = 600.0

REMAINING = "100%FREE"


class SizeSpec(BaseModel):
    """Either an absolute size ('20G') or all remaining free space of the group."""
    absolute: Optional[str] = None

    @classmethod
    def of(cls, size: str) -> 'SizeSpec':
        size_to_bytes(size)
        return cls(absolute=size)

    @classmethod
    def remaining(cls) -> 'SizeSpec':
        return cls()

    @property
    def is_remaining(self) -> bool:
        return self.absolute is None

    @property
    def bytes(self) -> int:
        if self.is_remaining:
            raise ValueError("'remaining free space' has no size until the fixed volumes are allocated")
        return size_to_bytes(self.absolute)

    def lvcreate_args(self) -> List[str]:
        return ["-l", REMAINING] if self.is_remaining else ["-L", self.absolute]

    def __str__(self) -> str:
        return "<remaining>" if self.is_remaining else self.absolute


class LogicalVolume(BaseModel):
    name: str
    size: SizeSpec
    filesystem: Literal["swap", "ext4"]
    volume_group: str

    @property
    def path(self) -> str:
        return f"/dev/{self.volume_group}/{self.name}"


class VolumeGroup(BaseModel):
    """
    A volume group on one physical volume. Volumes are kept in creation order;
    at most one may take the remaining free space and it must come last.
    """
    name: str
    physical_volume: str
    volumes: List[LogicalVolume] = []

    def add(self, name: str, size: SizeSpec, filesystem: str) -> LogicalVolume:
        if any(v.name == name for v in self.volumes):
            raise VolumeError(f"Logical volume '{name}' already exists in {self.name}")
        if self.volumes and self.volumes[-1].size.is_remaining:
            raise VolumeError(f"Cannot add '{name}' after '{self.volumes[-1].name}', "
                              "which already takes the remaining free space")
        volume = LogicalVolume(name=name, size=size, filesystem=filesystem, volume_group=self.name)
        self.volumes.append(volume)
        return volume

    def get(self, name: str) -> LogicalVolume:
        for volume in self.volumes:
            if volume.name == name:
                return volume
        raise KeyError(name)

    @property
    def fixed_bytes(self) -> int:
        return sum(v.size.bytes for v in self.volumes if not v.size.is_remaining)


class VolumeManager:
    """
    Builds PV -> VG -> LVs on the opened LUKS mapper device and formats the LVs.

    ``group`` is set as soon as the volume group exists on disk, so a failed
    build can still be deactivated during teardown.
    """

    def __init__(self, executor: Executor):
        self.executor = executor
        self.group: Optional[VolumeGroup] = None

    @staticmethod
    def plan(config: ProvisioningConfig, physical_volume: str) -> VolumeGroup:
        group = VolumeGroup(name=config.volume_group, physical_volume=physical_volume)
        group.add("swap", SizeSpec.of(config.swap_size), "swap")
        group.add("root", SizeSpec.of(config.root_size), "ext4")
        group.add("home", SizeSpec.remaining(), "ext4")
        return group

    def build(self, volume: EncryptedVolume, config: ProvisioningConfig) -> VolumeGroup:
        group = self.plan(config, volume.mapper_path)
        pv = group.physical_volume

        try:
            self.executor.run(
                description=f"Creating physical volume on {pv}",
                command=["pvcreate", pv],
                timeout=LVM_TIMEOUT,
            )
            self.executor.run(
                description=f"Creating volume group {group.name}",
                command=["vgcreate", group.name, pv],
                timeout=LVM_TIMEOUT,
            )
            self.group = group

            self.check_capacity(group)

            for lv in group.volumes:
                self.executor.run(
                    description=f"Creating logical volume {lv.name} ({lv.size})",
                    command=["lvcreate"] + lv.size.lvcreate_args() + ["-n", lv.name, group.name],
                    timeout=LVM_TIMEOUT,
                )
        except ShellCommandError as e:
            raise VolumeError(f"Building volume group {group.name} failed: {e}") from e

        self.format(group)
        return group

    def free_bytes(self, group: VolumeGroup) -> int:
        _, stdout, _ = self.executor.run(
            description=f"Reading free space of {group.name}",
            command=["vgs", "--noheadings", "--units", "b", "--nosuffix", "-o", "vg_free", group.name],
            timeout=LVM_TIMEOUT,
        )
        try:
            return int(stdout.strip())
        except ValueError:
            raise VolumeError(f"Unexpected vgs output for {group.name}: '{stdout.strip()}'")

    def check_capacity(self, group: VolumeGroup) -> None:
        """
        Fails before any LV exists when the fixed-size volumes would leave
        nothing for the remaining-space volume.
        """
        if self.executor.dry_run:
            return

        free = self.free_bytes(group)
        required = group.fixed_bytes
        if required >= free:
            deficit = required - free
            fixed = ", ".join(f"{v.name}={v.size}" for v in group.volumes if not v.size.is_remaining)
            raise VolumeError(
                f"Volume group {group.name} has {free} bytes free but {fixed} need {required} bytes; "
                f"short by {deficit} bytes with nothing left for the remaining-space volume",
                deficit=deficit,
            )

    def format(self, group: VolumeGroup) -> None:
        for lv in group.volumes:
            command = ["mkswap", lv.path] if lv.filesystem == "swap" else ["mkfs.ext4", "-F", lv.path]
            try:
                self.executor.run(
                    description=f"Formatting {lv.path} as {lv.filesystem}",
                    command=command,
                    timeout=MKFS_TIMEOUT,
                )
            except ShellCommandError as e:
                raise FilesystemError(f"Formatting {lv.path} failed: {e}") from e

    def deactivate(self, group: VolumeGroup) -> None:
        try:
            self.executor.run(
                description=f"Deactivating volume group {group.name}",
                command=["vgchange", "-an", group.name],
                timeout=LVM_TIMEOUT,
            )
        except ShellCommandError as e:
            raise VolumeError(f"Deactivating {group.name} failed: {e}") from e
