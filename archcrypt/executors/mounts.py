# archcrypt/executors/mounts.py
import posixpath
from typing import List, Optional

from pydantic import BaseModel, model_validator

from archcrypt.executors.disk import PartitionLayout
from archcrypt.executors.lvm import VolumeGroup
from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import FilesystemError, ShellCommandError


class MountBinding(BaseModel):
    """Mount ``source`` at ``target``, a path inside the new system ('/', '/boot', ...)."""
    source: str
    target: str
    must_precreate_dir: bool = True
    options: Optional[str] = None


class MountPlan(BaseModel):
    """
    Mount order for the new root. The root binding comes first and is the only
    one that does not need a directory created under an already mounted root.
    """
    bindings: List[MountBinding]
    swap: Optional[str] = None

    @model_validator(mode="after")
    def _root_first(self) -> 'MountPlan':
        if not self.bindings or self.bindings[0].target != "/":
            raise ValueError("the root binding ('/') must be the first mount")
        if self.bindings[0].must_precreate_dir:
            raise ValueError("the root binding mounts onto the existing mount root")
        for binding in self.bindings[1:]:
            if binding.target == "/" or not binding.target.startswith("/"):
                raise ValueError(f"'{binding.target}' must be a subdirectory of '/'")
        return self

    @property
    def root(self) -> MountBinding:
        return self.bindings[0]


class MountPlanner:
    """
    Mounts the new system under ``mount_root`` and unmounts it again in
    reverse order. Everything successfully mounted is tracked, so
    ``unmount_all`` also serves as rollback after a partial run.
    """

    def __init__(self, executor: Executor, mount_root: str = "/mnt"):
        self.executor = executor
        self.mount_root = mount_root
        self.mounted: List[MountBinding] = []
        self.active_swap: Optional[str] = None

    @staticmethod
    def plan(layout: PartitionLayout, group: VolumeGroup) -> MountPlan:
        return MountPlan(
            bindings=[
                MountBinding(source=group.get("root").path, target="/", must_precreate_dir=False),
                MountBinding(source=layout.esp.path, target="/efi"),
                MountBinding(source=layout.boot.path, target="/boot"),
                MountBinding(source=group.get("home").path, target="/home"),
            ],
            swap=group.get("swap").path,
        )

    def host_path(self, target: str) -> str:
        """Translates a path of the new system into the host's view of it."""
        return posixpath.normpath(posixpath.join(self.mount_root, target.lstrip("/")))

    def is_backed(self, target: str) -> bool:
        """True when ``target`` lies on (or is) an already mounted filesystem of the new system."""
        mounted_targets = {b.target for b in self.mounted}
        path = posixpath.dirname(posixpath.normpath(target))
        while True:
            if path in mounted_targets:
                return True
            if path == "/":
                return False
            path = posixpath.dirname(path)

    def mount(self, binding: MountBinding) -> None:
        host_target = self.host_path(binding.target)

        if binding.target != "/" and not self.is_backed(binding.target):
            raise FilesystemError(
                f"Cannot mount {binding.source} at {binding.target}: its parent is not on a mounted filesystem yet"
            )

        command = ["mount"]
        if binding.options:
            command.extend(["-o", binding.options])
        command.extend([binding.source, host_target])

        try:
            if binding.must_precreate_dir:
                self.executor.run(
                    description=f"Creating mount point {host_target}",
                    command=["mkdir", "-p", host_target],
                )
            self.executor.run(
                description=f"Mounting {binding.source} to {host_target}",
                command=command,
            )
        except ShellCommandError as e:
            raise FilesystemError(f"Mounting {binding.source} at {host_target} failed: {e}") from e

        self.mounted.append(binding)

    def swapon(self, swap: str) -> None:
        try:
            self.executor.run(description=f"Activating swap on {swap}", command=["swapon", swap])
        except ShellCommandError as e:
            raise FilesystemError(f"Activating swap {swap} failed: {e}") from e
        self.active_swap = swap

    def execute(self, plan: MountPlan) -> MountPlan:
        for binding in plan.bindings:
            self.mount(binding)
        if plan.swap:
            self.swapon(plan.swap)
        return plan

    def unmount_all(self) -> None:
        """Swap off first, then unmount children before their parents (root last)."""
        if self.active_swap:
            try:
                self.executor.run(description=f"Deactivating swap on {self.active_swap}",
                                  command=["swapoff", self.active_swap])
            except ShellCommandError as e:
                raise FilesystemError(f"Deactivating swap {self.active_swap} failed: {e}") from e
            self.active_swap = None

        while self.mounted:
            binding = self.mounted[-1]
            host_target = self.host_path(binding.target)
            try:
                self.executor.run(description=f"Unmounting {host_target}", command=["umount", host_target])
            except ShellCommandError as e:
                raise FilesystemError(f"Unmounting {host_target} failed: {e}") from e
            self.mounted.pop()
