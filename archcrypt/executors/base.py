# archcrypt/executors/base.py
import os
from typing import List, NamedTuple, Optional

from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import FilesystemError, PackageError, ShellCommandError

PACSTRAP_TIMEOUT = 3600.0

# Marvell firmware for common wireless controllers; both microcode packages so
# the install boots on Intel and AMD alike.
BASE_PACKAGES = [
    "base", "base-devel",
    "linux", "linux-headers",
    "linux-firmware", "linux-firmware-marvell",
    "intel-ucode", "amd-ucode",
    "mtools", "reflector", "dosfstools", "git",
]


class FstabEntry(NamedTuple):
    spec: str
    target: str
    fstype: str
    options: str


def parse_fstab(content: str) -> List[FstabEntry]:
    entries = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split()
        if len(fields) < 4:
            continue
        entries.append(FstabEntry(*fields[:4]))
    return entries


class BaseInstaller:
    """Installs the base package set into the mounted root and writes its fstab."""

    def __init__(self, executor: Executor, packages: Optional[List[str]] = None):
        self.executor = executor
        self.packages = list(packages or BASE_PACKAGES)

    def install(self, mount_root: str) -> None:
        try:
            self.executor.run(
                description=f"Installing base system into {mount_root} ({len(self.packages)} packages)",
                command=["pacstrap", "-K", mount_root] + self.packages,
                timeout=PACSTRAP_TIMEOUT,
            )
        except ShellCommandError as e:
            raise PackageError(f"pacstrap into {mount_root} failed: {e}") from e

    def generate_fstab(self, mount_root: str) -> List[FstabEntry]:
        """
        Scans the live mounts under ``mount_root`` (UUID keyed) and appends the
        result to the new system's /etc/fstab. Returns the generated entries.
        """
        fstab_path = os.path.join(mount_root, "etc", "fstab")
        try:
            _, stdout, _ = self.executor.run(
                description=f"Generating fstab for {mount_root}",
                command=["genfstab", "-U", mount_root],
            )
        except ShellCommandError as e:
            raise FilesystemError(f"genfstab for {mount_root} failed: {e}") from e

        if self.executor.dry_run:
            self.executor.logger.info(f"DRY RUN: not writing {fstab_path}")
            return []

        try:
            with open(fstab_path, "a", encoding="utf-8") as f:
                f.write(stdout if stdout.endswith("\n") else stdout + "\n")
        except OSError as e:
            raise FilesystemError(f"Writing {fstab_path} failed: {e}") from e

        entries = parse_fstab(stdout)
        self.executor.logger.info(f"fstab written with {len(entries)} entries")
        return entries
