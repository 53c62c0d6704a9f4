import pytest

from archcrypt.executors.base import BASE_PACKAGES, BaseInstaller, FstabEntry, parse_fstab
from archcrypt.utils.exceptions import FilesystemError, PackageError, ShellCommandError

# ======= Execute with: pytest tests/test_installer.py ========

GENFSTAB_OUTPUT = """\
# /dev/mapper/vg0-root
UUID=1111aaaa-0000-4000-8000-000000000001\t/         \text4      \trw,relatime\t0 1

# /dev/sdX1
UUID=ABCD-1234      \t/efi      \tvfat      \trw,relatime,fmask=0022\t0 2

# /dev/sdX2
UUID=2222bbbb-0000-4000-8000-000000000002\t/boot     \text4      \trw,relatime\t0 2

# /dev/mapper/vg0-home
UUID=3333cccc-0000-4000-8000-000000000003\t/home     \text4      \trw,relatime\t0 2

# /dev/mapper/vg0-swap
UUID=4444dddd-0000-4000-8000-000000000004\tnone      \tswap      \tdefaults  \t0 0
"""


def test_install_runs_pacstrap(executor, recorder):
    BaseInstaller(executor).install("/mnt")

    assert recorder.commands == [["pacstrap", "-K", "/mnt"] + BASE_PACKAGES]
    assert {"base", "linux", "linux-firmware", "intel-ucode", "amd-ucode"} <= set(BASE_PACKAGES)


def test_install_custom_packages(executor, recorder):
    BaseInstaller(executor, packages=["base", "linux"]).install("/mnt")
    assert recorder.commands == [["pacstrap", "-K", "/mnt", "base", "linux"]]


def test_install_failure_is_package_error(executor, recorder):
    recorder.respond(["pacstrap"], error=ShellCommandError(command="pacstrap", exit_code=1,
                                                           stderr="error: failed retrieving file"))
    with pytest.raises(PackageError) as excinfo:
        BaseInstaller(executor).install("/mnt")
    assert excinfo.value.exit_code == 15


def test_parse_fstab():
    entries = parse_fstab(GENFSTAB_OUTPUT)

    assert [e.target for e in entries] == ["/", "/efi", "/boot", "/home", "none"]
    assert entries[0] == FstabEntry("UUID=1111aaaa-0000-4000-8000-000000000001", "/", "ext4", "rw,relatime")
    assert [e for e in entries if e.fstype != "swap"] == entries[:4]


def test_parse_fstab_skips_comments_and_short_lines():
    assert parse_fstab("# comment\n\nbroken line\n") == []


def test_generate_fstab_appends_to_new_root(executor, recorder, tmp_path):
    (tmp_path / "etc").mkdir()
    fstab = tmp_path / "etc" / "fstab"
    fstab.write_text("# Static information about the filesystems.\n", encoding="utf-8")
    recorder.respond(["genfstab"], stdout=GENFSTAB_OUTPUT)

    entries = BaseInstaller(executor).generate_fstab(str(tmp_path))

    assert recorder.commands == [["genfstab", "-U", str(tmp_path)]]
    content = fstab.read_text(encoding="utf-8")
    assert content.startswith("# Static information")
    assert content.endswith(GENFSTAB_OUTPUT)
    assert len([e for e in entries if e.fstype != "swap"]) == 4


def test_generate_fstab_failure(executor, recorder, tmp_path):
    recorder.respond(["genfstab"], error=ShellCommandError(command="genfstab", exit_code=1))
    with pytest.raises(FilesystemError):
        BaseInstaller(executor).generate_fstab(str(tmp_path))


def test_generate_fstab_unwritable(executor, recorder, tmp_path):
    recorder.respond(["genfstab"], stdout=GENFSTAB_OUTPUT)
    # no etc/ under the root
    with pytest.raises(FilesystemError, match="Writing"):
        BaseInstaller(executor).generate_fstab(str(tmp_path))


def test_generate_fstab_dry_run_writes_nothing(executor, recorder, tmp_path):
    executor.dry_run = True
    assert BaseInstaller(executor).generate_fstab(str(tmp_path)) == []
    assert not (tmp_path / "etc").exists()
