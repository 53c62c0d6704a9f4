import pytest

from archcrypt.executors.crypt import EncryptedVolume, VolumeState
from archcrypt.executors.disk import PartitionPlanner
from archcrypt.executors.lvm import SizeSpec, VolumeGroup, VolumeManager
from archcrypt.utils.exceptions import CryptoError, FilesystemError, ShellCommandError, VolumeError

# ======= Execute with: pytest tests/test_volumes.py ========

GIB = 1024 ** 3


@pytest.fixture
def opened_volume():
    return EncryptedVolume(
        partition=PartitionPlanner.plan("/dev/sdX").luks,
        state=VolumeState.OPENED,
        mapper_name="cryptlvm",
        uuid="3f9a1c2e-7b4d-4e8f-9a0b-1c2d3e4f5a6b",
    )


# --- SizeSpec / VolumeGroup ---

def test_size_spec():
    fixed = SizeSpec.of("20G")
    assert fixed.lvcreate_args() == ["-L", "20G"]
    assert fixed.bytes == 20 * GIB
    assert str(fixed) == "20G"

    rest = SizeSpec.remaining()
    assert rest.is_remaining
    assert rest.lvcreate_args() == ["-l", "100%FREE"]
    with pytest.raises(ValueError):
        rest.bytes


def test_size_spec_rejects_bad_size():
    with pytest.raises(ValueError):
        SizeSpec.of("20GB")


def test_plan_order_and_paths(make_config):
    group = VolumeManager.plan(make_config(), "/dev/mapper/cryptlvm")

    assert [v.name for v in group.volumes] == ["swap", "root", "home"]
    assert [v.filesystem for v in group.volumes] == ["swap", "ext4", "ext4"]
    assert group.get("root").path == "/dev/vg0/root"
    assert group.get("home").size.is_remaining
    assert group.fixed_bytes == 24 * GIB


def test_remaining_volume_must_be_last():
    group = VolumeGroup(name="vg0", physical_volume="/dev/mapper/cryptlvm")
    group.add("home", SizeSpec.remaining(), "ext4")
    with pytest.raises(VolumeError, match="remaining"):
        group.add("root", SizeSpec.of("20G"), "ext4")


def test_duplicate_volume_names_are_rejected():
    group = VolumeGroup(name="vg0", physical_volume="/dev/mapper/cryptlvm")
    group.add("root", SizeSpec.of("20G"), "ext4")
    with pytest.raises(VolumeError, match="already exists"):
        group.add("root", SizeSpec.of("10G"), "ext4")


def test_get_unknown_volume():
    with pytest.raises(KeyError):
        VolumeGroup(name="vg0", physical_volume="/dev/mapper/cryptlvm").get("var")


# --- VolumeManager.build ---

def test_build_runs_lvm_in_order(executor, recorder, make_config, opened_volume):
    recorder.respond(["vgs"], stdout=f"  {100 * GIB}\n")
    manager = VolumeManager(executor)

    group = manager.build(opened_volume, make_config())

    assert recorder.commands == [
        ["pvcreate", "/dev/mapper/cryptlvm"],
        ["vgcreate", "vg0", "/dev/mapper/cryptlvm"],
        ["vgs", "--noheadings", "--units", "b", "--nosuffix", "-o", "vg_free", "vg0"],
        ["lvcreate", "-L", "4G", "-n", "swap", "vg0"],
        ["lvcreate", "-L", "20G", "-n", "root", "vg0"],
        ["lvcreate", "-l", "100%FREE", "-n", "home", "vg0"],
        ["mkswap", "/dev/vg0/swap"],
        ["mkfs.ext4", "-F", "/dev/vg0/root"],
        ["mkfs.ext4", "-F", "/dev/vg0/home"],
    ]
    assert manager.group is group


def test_build_requires_opened_volume(executor, recorder, make_config, opened_volume):
    opened_volume.state = VolumeState.FORMATTED
    with pytest.raises(CryptoError):
        VolumeManager(executor).build(opened_volume, make_config())
    assert recorder.commands == []


@pytest.mark.parametrize("free_gib", [10, 24])
def test_build_fails_when_group_is_too_small(executor, recorder, make_config, opened_volume, free_gib):
    recorder.respond(["vgs"], stdout=f"{free_gib * GIB}\n")
    manager = VolumeManager(executor)

    with pytest.raises(VolumeError) as excinfo:
        manager.build(opened_volume, make_config(root_size="20G", swap_size="4G"))

    assert excinfo.value.deficit == (24 - free_gib) * GIB
    assert excinfo.value.exit_code == 13
    assert not recorder.find(["lvcreate"])
    # the group exists on disk and must still be deactivated by teardown
    assert manager.group is not None


def test_build_lvcreate_failure(executor, recorder, make_config, opened_volume):
    recorder.respond(["vgs"], stdout=f"{100 * GIB}\n")
    recorder.respond(["lvcreate", "-L", "20G"], error=ShellCommandError(command="lvcreate", exit_code=5))

    with pytest.raises(VolumeError):
        VolumeManager(executor).build(opened_volume, make_config())
    assert not recorder.find(["lvcreate", "-l"])
    assert not recorder.find(["mkswap"])


def test_build_pvcreate_failure_leaves_no_group(executor, recorder, make_config, opened_volume):
    recorder.respond(["pvcreate"], error=ShellCommandError(command="pvcreate", exit_code=5))
    manager = VolumeManager(executor)

    with pytest.raises(VolumeError):
        manager.build(opened_volume, make_config())
    assert manager.group is None


def test_unexpected_vgs_output(executor, recorder, make_config, opened_volume):
    recorder.respond(["vgs"], stdout="n/a")
    with pytest.raises(VolumeError, match="vgs"):
        VolumeManager(executor).build(opened_volume, make_config())


def test_mkfs_failure_is_filesystem_error(executor, recorder, make_config, opened_volume):
    recorder.respond(["vgs"], stdout=f"{100 * GIB}\n")
    recorder.respond(["mkfs.ext4"], error=ShellCommandError(command="mkfs.ext4", exit_code=1))

    with pytest.raises(FilesystemError):
        VolumeManager(executor).build(opened_volume, make_config())


def test_dry_run_skips_capacity_check(executor, recorder, make_config, opened_volume):
    executor.dry_run = True
    group = VolumeManager(executor).build(opened_volume, make_config())
    assert [v.name for v in group.volumes] == ["swap", "root", "home"]
    assert recorder.commands == []


def test_deactivate(executor, recorder, make_config):
    group = VolumeManager.plan(make_config(), "/dev/mapper/cryptlvm")
    VolumeManager(executor).deactivate(group)
    assert recorder.commands == [["vgchange", "-an", "vg0"]]
