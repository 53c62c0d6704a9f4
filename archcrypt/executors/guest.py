# archcrypt/executors/guest.py
import os
import re
from typing import Iterable, List, Optional

from archcrypt.config.models import ProvisioningConfig
from archcrypt.utils.executor import Executor
from archcrypt.utils.exceptions import GuestConfigError, ShellCommandError

PACMAN_TIMEOUT = 1800.0
MKINITCPIO_TIMEOUT = 600.0

MKINITCPIO_CONF = "/etc/mkinitcpio.conf"
GRUB_DEFAULTS = "/etc/default/grub"
SUDOERS_FRAGMENT = "/etc/sudoers.d/wheel"
ADMIN_GROUP = "wheel"


class HookOrder:
    """
    Ordered mkinitcpio HOOKS.

    The root is only reachable through LUKS and then LVM, so ``encrypt`` and
    ``lvm2`` have to run after the block/keyboard/autodetect/microcode hooks
    and before ``filesystems``; ``fsck`` runs last. A wrong order still builds
    an image, it just cannot unlock its own root at boot.
    """

    TAIL = ("encrypt", "lvm2", "filesystems", "fsck")
    BEFORE_ENCRYPT = ("block", "keyboard", "autodetect", "microcode")
    # The busybox 'encrypt' hook reads cryptdevice=; systemd images use sd-encrypt and rd.luks
    UNSUPPORTED = ("systemd", "sd-encrypt")
    # Stock /etc/mkinitcpio.conf of current Arch
    DEFAULT = ("base", "udev", "autodetect", "microcode", "modconf", "kms",
               "keyboard", "keymap", "consolefont", "block", "filesystems", "fsck")

    def __init__(self, hooks: Iterable[str]):
        self.hooks: List[str] = list(hooks)

    @classmethod
    def build(cls, current: Optional[Iterable[str]] = None) -> 'HookOrder':
        """
        Rebuilds ``current`` (or the stock hook list) into a valid order.
        'block' and 'keyboard' go right before 'autodetect' so the image keeps
        working when moved to different hardware.
        """
        hooks = list(current) if current else list(cls.DEFAULT)

        unsupported = [h for h in hooks if h in cls.UNSUPPORTED]
        if unsupported:
            raise GuestConfigError(f"systemd-based initramfs hooks are not supported: {', '.join(unsupported)}")

        body: List[str] = []
        for hook in hooks:
            if hook not in body and hook not in cls.TAIL and hook not in ("block", "keyboard"):
                body.append(hook)

        if "base" not in body:
            body.insert(0, "base")
        if "udev" not in body:
            body.insert(body.index("base") + 1, "udev")
        if "autodetect" not in body:
            body.insert(body.index("udev") + 1, "autodetect")

        position = body.index("autodetect")
        body[position:position] = ["block", "keyboard"]

        if "microcode" not in body:
            body.insert(body.index("autodetect") + 1, "microcode")

        order = cls(body + list(cls.TAIL))
        order.validate()
        return order

    def validate(self) -> None:
        hooks = self.hooks
        if len(set(hooks)) != len(hooks):
            raise GuestConfigError(f"duplicate initramfs hooks: {hooks}")
        for hook in self.TAIL + self.BEFORE_ENCRYPT:
            if hook not in hooks:
                raise GuestConfigError(f"initramfs hook '{hook}' is missing: {hooks}")

        encrypt = hooks.index("encrypt")
        lvm2 = hooks.index("lvm2")
        filesystems = hooks.index("filesystems")

        late = [h for h in self.BEFORE_ENCRYPT if hooks.index(h) > encrypt]
        if late:
            raise GuestConfigError(f"hooks {late} must come before 'encrypt': {hooks}")
        if not encrypt < lvm2 < filesystems:
            raise GuestConfigError(f"'encrypt' and 'lvm2' must precede 'filesystems' in that order: {hooks}")
        if hooks[-1] != "fsck":
            raise GuestConfigError(f"'fsck' must be the last hook: {hooks}")

    def render(self) -> str:
        return f"HOOKS=({' '.join(self.hooks)})"

    _HOOKS_LINE = re.compile(r"^HOOKS=\(([^)]*)\)", re.MULTILINE)

    @classmethod
    def parse(cls, conf_text: str) -> Optional[List[str]]:
        """Returns the hooks of the active HOOKS=(...) line, or None."""
        match = cls._HOOKS_LINE.search(conf_text)
        if not match:
            return None
        return match.group(1).split()

    def apply(self, conf_text: str) -> str:
        if self._HOOKS_LINE.search(conf_text):
            return self._HOOKS_LINE.sub(lambda _: self.render(), conf_text, count=1)
        return conf_text.rstrip("\n") + "\n" + self.render() + "\n"

    def __eq__(self, other) -> bool:
        return isinstance(other, HookOrder) and self.hooks == other.hooks

    def __repr__(self) -> str:
        return f"HookOrder({self.hooks})"


class BootConfigTemplate:
    """
    The GRUB kernel command line binding the LUKS container to the boot-time
    unlock prompt and naming the root LV.
    """

    KEY = "GRUB_CMDLINE_LINUX"
    TEMPLATE = "cryptdevice=UUID={uuid}:{mapper} root={root}"

    def __init__(self, mapper_name: str, root_path: str):
        self.mapper_name = mapper_name
        self.root_path = root_path
        self._line = re.compile(rf"^{self.KEY}=.*$", re.MULTILINE)

    def render(self, uuid: str) -> str:
        if not uuid:
            raise GuestConfigError("the LUKS partition UUID is required for the kernel command line")
        return self.TEMPLATE.format(uuid=uuid, mapper=self.mapper_name, root=self.root_path)

    def apply(self, grub_defaults: str, uuid: str) -> str:
        """Replaces the GRUB_CMDLINE_LINUX line of ``grub_defaults`` (appending it when absent)."""
        line = f'{self.KEY}="{self.render(uuid)}"'
        if self._line.search(grub_defaults):
            return self._line.sub(lambda _: line, grub_defaults, count=1)
        return grub_defaults.rstrip("\n") + "\n" + line + "\n"


class GuestConfigurer:
    """
    Configures the new system from inside its root. Commands run through
    ``arch-chroot``; files are written through the host's view of the mount.
    Every step is mandatory: the first failure aborts with GuestConfigError.
    """

    def __init__(self, executor: Executor, config: ProvisioningConfig):
        if os.path.normpath(executor.chroot_path) != os.path.normpath(config.mount_root):
            raise ValueError(f"Executor chroots into {executor.chroot_path}, but the new root is mounted at "
                             f"{config.mount_root}")
        self.executor = executor
        self.config = config
        self.mount_root = config.mount_root

    # --- Helpers ---

    def host_path(self, guest_path: str) -> str:
        return os.path.join(self.mount_root, guest_path.lstrip("/"))

    def _chroot(self, description: str, command: List[str], **kwargs):
        try:
            return self.executor.run(description=description, command=command, chroot=True, **kwargs)
        except ShellCommandError as e:
            raise GuestConfigError(f"{description} failed: {e}") from e

    def _install(self, *packages: str) -> None:
        self._chroot(f"Installing {', '.join(packages)}",
                     ["pacman", "-S", "--noconfirm", "--needed"] + list(packages),
                     timeout=PACMAN_TIMEOUT)

    def _read(self, guest_path: str, default: Optional[str] = None) -> str:
        host = self.host_path(guest_path)
        try:
            with open(host, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            if self.executor.dry_run and default is not None:
                return default
            raise GuestConfigError(f"Reading {guest_path} failed: {e}") from e

    def _write(self, guest_path: str, content: str, mode: int = 0o644) -> None:
        host = self.host_path(guest_path)
        if self.executor.dry_run:
            self.executor.logger.info(f"DRY RUN: not writing {guest_path}")
            return
        try:
            os.makedirs(os.path.dirname(host), exist_ok=True)
            with open(host, "w", encoding="utf-8") as f:
                f.write(content)
            os.chmod(host, mode)
        except OSError as e:
            raise GuestConfigError(f"Writing {guest_path} failed: {e}") from e
        self.executor.logger.debug(f"Wrote {guest_path}")

    # --- Steps ---

    def set_timezone(self) -> None:
        self._chroot(f"Setting timezone to {self.config.timezone}",
                     ["ln", "-sf", f"/usr/share/zoneinfo/{self.config.timezone}", "/etc/localtime"])
        self._chroot("Synchronising hardware clock", ["hwclock", "--systohc"])

    def set_locale(self) -> None:
        locale = self.config.locale
        charset = locale.split(".", 1)[1]
        self._write("/etc/locale.gen", f"{locale} {charset}\n")
        self._chroot(f"Generating locale {locale}", ["locale-gen"])
        self._write("/etc/locale.conf", f"LANG={locale}\n")

    def set_hostname(self) -> None:
        self._write("/etc/hostname", f"{self.config.hostname}\n")

    def create_user(self) -> None:
        username = self.config.username
        self._chroot(f"Creating user {username}",
                     ["useradd", "-m", "-G", ADMIN_GROUP, "--shell", "/bin/bash", username])
        # stdin only: keeps the password off argv and out of the logs
        self._chroot(f"Setting password for {username}", ["chpasswd"],
                     input=f"{username}:{self.config.password.get_secret_value()}\n")
        self._write(SUDOERS_FRAGMENT, f"%{ADMIN_GROUP} ALL=(ALL) ALL\n", mode=0o440)

    def configure_initramfs(self) -> HookOrder:
        self._install("lvm2")
        conf = self._read(MKINITCPIO_CONF, default=HookOrder(HookOrder.DEFAULT).render() + "\n")
        order = HookOrder.build(HookOrder.parse(conf))
        self.executor.logger.info(f"Initramfs hooks: {' '.join(order.hooks)}")
        self._write(MKINITCPIO_CONF, order.apply(conf))
        self._chroot("Regenerating initramfs images", ["mkinitcpio", "-P"], timeout=MKINITCPIO_TIMEOUT)
        return order

    def install_bootloader(self, luks_uuid: str, root_path: str) -> str:
        self._install("grub", "efibootmgr")
        self._chroot("Installing GRUB to the ESP",
                     ["grub-install", "--target=x86_64-efi", "--efi-directory=/efi", "--bootloader-id=GRUB"])

        template = BootConfigTemplate(self.config.mapper_name, root_path)
        cmdline = template.render(luks_uuid)
        defaults = self._read(GRUB_DEFAULTS, default=f'{BootConfigTemplate.KEY}=""\n')
        self._write(GRUB_DEFAULTS, template.apply(defaults, luks_uuid))
        self.executor.logger.info(f"Kernel command line: {cmdline}")

        self._chroot("Generating GRUB configuration", ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"])
        return cmdline

    def enable_network(self) -> None:
        self._install("networkmanager")
        self._chroot("Enabling NetworkManager", ["systemctl", "enable", "NetworkManager"])

    def configure(self, luks_uuid: str, root_path: str) -> str:
        """Runs every guest step in order and returns the generated kernel command line."""
        self.set_timezone()
        self.set_locale()
        self.set_hostname()
        self.create_user()
        self.configure_initramfs()
        cmdline = self.install_bootloader(luks_uuid, root_path)
        self.enable_network()
        return cmdline
