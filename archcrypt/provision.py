# archcrypt/provision.py
"""
Runs the provisioning stages in order and owns the failure policy.

Every stage is a physical precondition of the next one, so nothing is
recovered locally: the first ProvisioningError aborts the run. Before the
error propagates, whatever is still mounted, active or open is torn down
best-effort (swap off, unmount children before root, deactivate the volume
group, close the LUKS mapping) so the device can be retried.
After a successful run the same teardown runs; a step that fails there is
reported, the remaining steps still run and the run still succeeds.

A run is not idempotent. Running it again against the same device re-creates
the partition table and LUKS header and destroys whatever the previous run
installed.
"""
from typing import Callable, List, Optional

from pydantic import BaseModel

from archcrypt.config.models import ProvisioningConfig
from archcrypt.executors.base import BaseInstaller, FstabEntry
from archcrypt.executors.crypt import EncryptedVolume, EncryptionStage, VolumeState
from archcrypt.executors.disk import PartitionLayout, PartitionPlanner, check_device
from archcrypt.executors.guest import GuestConfigurer
from archcrypt.executors.lvm import VolumeGroup, VolumeManager
from archcrypt.executors.mounts import MountPlan, MountPlanner
from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import ProvisioningError, ShellCommandError


class ProvisioningResult(BaseModel):
    layout: PartitionLayout
    volume: EncryptedVolume
    group: VolumeGroup
    mount_plan: MountPlan
    fstab: List[FstabEntry]
    cmdline: str
    completed_stages: List[str]
    teardown_errors: List[str] = []


class Provisioner:
    """Drives PartitionPlanner -> EncryptionStage -> VolumeManager -> MountPlanner -> BaseInstaller -> GuestConfigurer."""

    def __init__(self,
                 executor: Executor,
                 config: ProvisioningConfig,
                 device_check: Callable[[Executor, str], None] = check_device):
        self.executor = executor
        self.logger = executor.logger
        self.config = config
        self.device_check = device_check

        self.partitioner = PartitionPlanner(executor)
        self.encryption = EncryptionStage(executor)
        self.volumes = VolumeManager(executor)
        self.mounts = MountPlanner(executor, mount_root=config.mount_root)
        self.installer = BaseInstaller(executor)
        self.guest = GuestConfigurer(executor, config)

        self.volume: Optional[EncryptedVolume] = None
        self.completed_stages: List[str] = []

    def _stage(self, title: str, func: Callable, *args):
        self.logger.section(title)
        result = func(*args)
        self.completed_stages.append(title)
        return result

    # --- Stages ---

    def preflight(self) -> None:
        self.device_check(self.executor, self.config.device)
        exit_code, _, _ = self.executor.run(
            description="Enabling network time synchronisation",
            command=["timedatectl", "set-ntp", "true"],
            check=False,
        )
        if exit_code != 0:
            self.logger.warning("Could not enable NTP; continuing with the current system clock.")

    def partition(self) -> PartitionLayout:
        layout = self.partitioner.plan(self.config.device)
        self.partitioner.apply(layout)
        self.partitioner.format(layout)
        return layout

    def encrypt(self, layout: PartitionLayout) -> EncryptedVolume:
        volume = self.encryption.format(layout.luks, self.config.luks_passphrase)
        self.volume = volume
        return self.encryption.open(volume, self.config.luks_passphrase, self.config.mapper_name)

    def build_volumes(self, volume: EncryptedVolume) -> VolumeGroup:
        return self.volumes.build(volume, self.config)

    def mount(self, layout: PartitionLayout, group: VolumeGroup) -> MountPlan:
        return self.mounts.execute(self.mounts.plan(layout, group))

    def install_base(self) -> List[FstabEntry]:
        self.installer.install(self.config.mount_root)
        return self.installer.generate_fstab(self.config.mount_root)

    def configure_guest(self, volume: EncryptedVolume, group: VolumeGroup) -> str:
        return self.guest.configure(volume.uuid, group.get("root").path)

    # --- Run ---

    def run(self) -> ProvisioningResult:
        self.logger.info(f"Provisioning {self.config.device} (dry run: {self.executor.dry_run})")
        try:
            self._stage("Preflight checks", self.preflight)
            layout = self._stage("Partitioning", self.partition)
            volume = self._stage("Encryption", self.encrypt, layout)
            group = self._stage("Logical volumes", self.build_volumes, volume)
            plan = self._stage("Mounting", self.mount, layout, group)
            fstab = self._stage("Base system", self.install_base)
            cmdline = self._stage("Guest configuration", self.configure_guest, volume, group)
        except ProvisioningError as e:
            self.logger.critical(f"Stage '{e.stage}' failed: {e.message}")
            if e.__cause__ is not None:
                self.logger.critical(f"Cause: {e.__cause__}")
            self.teardown()
            raise
        except Exception:
            self.logger.critical("Unexpected failure during provisioning; tearing down.", exc_info=True)
            self.teardown()
            raise

        self.logger.section("Teardown")
        teardown_errors = self.teardown()
        if teardown_errors:
            self.logger.critical(f"{self.config.device} is provisioned, but teardown left state behind: "
                                 f"{'; '.join(str(e) for e in teardown_errors)}")
        else:
            self.completed_stages.append("Teardown")
        self.logger.info(f"{self.config.device} is provisioned. Completed: {', '.join(self.completed_stages)}")

        return ProvisioningResult(
            layout=layout,
            volume=volume,
            group=group,
            mount_plan=plan,
            fstab=fstab,
            cmdline=cmdline,
            completed_stages=list(self.completed_stages),
            teardown_errors=[str(e) for e in teardown_errors],
        )

    def teardown(self) -> List[ProvisioningError]:
        """
        Returns the host to its pre-run state: swap off, unmount in reverse
        order, deactivate the volume group, close the LUKS mapping.
        A failing step is logged and the next one still runs; the failures are returned.
        """
        steps = [self._teardown_mounts]
        if self.volumes.group is not None:
            steps.append(lambda: self.volumes.deactivate(self.volumes.group))
        if self.volume is not None and self.volume.state == VolumeState.OPENED:
            steps.append(lambda: self.encryption.close(self.volume))

        errors = []
        for step in steps:
            try:
                step()
            except ProvisioningError as e:
                self.logger.warning(f"Teardown step failed, continuing: {e}")
                errors.append(e)
        return errors

    def _teardown_mounts(self) -> None:
        try:
            self.mounts.unmount_all()
        except ProvisioningError:
            # Lazy recursive unmount as last resort so the VG can still be deactivated
            if self.mounts.mounted:
                try:
                    self.executor.run(
                        description=f"Recursively unmounting {self.config.mount_root}",
                        command=["umount", "-R", "-l", self.config.mount_root],
                        check=False,
                    )
                except ShellCommandError as e:
                    self.logger.warning(f"Recursive unmount failed: {e}")
                self.mounts.mounted.clear()
            raise
