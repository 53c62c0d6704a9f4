from unittest.mock import patch

import pytest
from pydantic import ValidationError

from archcrypt.executors.disk import (
    Partition, PartitionLayout, PartitionPlanner, check_device, partition_path,
)
from archcrypt.utils.exceptions import DeviceError, FilesystemError, PartitionError, ShellCommandError

# ======= Execute with: pytest tests/test_partitioning.py ========


@pytest.mark.parametrize("device, index, expected", [
    ("/dev/sda", 3, "/dev/sda3"),
    ("/dev/vda", 1, "/dev/vda1"),
    ("/dev/nvme0n1", 2, "/dev/nvme0n1p2"),
    ("/dev/mmcblk0", 1, "/dev/mmcblk0p1"),
])
def test_partition_path(device, index, expected):
    assert partition_path(device, index) == expected


def test_plan_layout():
    layout = PartitionPlanner.plan("/dev/sda")

    assert [p.index for p in layout.partitions] == [1, 2, 3]
    assert [p.path for p in layout.partitions] == ["/dev/sda1", "/dev/sda2", "/dev/sda3"]
    assert [p.type for p in layout.partitions] == ["fat32", "ext4", "ext4"]
    assert (layout.esp.start, layout.esp.end) == ("1MiB", "101MiB")
    assert (layout.boot.start, layout.boot.end) == ("101MiB", "613MiB")
    assert (layout.luks.start, layout.luks.end) == ("613MiB", "100%")
    assert [p.index for p in layout.partitions if p.is_boot_flagged] == [1]


def test_plan_partitions_are_contiguous():
    layout = PartitionPlanner.plan("/dev/nvme0n1")
    for prev, nxt in zip(layout.partitions, layout.partitions[1:]):
        assert prev.end == nxt.start
    assert layout.luks.path == "/dev/nvme0n1p3"


def _partition(index, flags=()):
    return Partition(index=index, type="ext4", start="1MiB", end="2MiB", flags=flags, path=f"/dev/sda{index}")


@pytest.mark.parametrize("partitions", [
    [_partition(1, ("boot", "esp")), _partition(2)],
    [_partition(1, ("boot", "esp")), _partition(2), _partition(3), _partition(4)],
    [_partition(1, ("boot", "esp")), _partition(3), _partition(2)],
    [_partition(1), _partition(2, ("boot",)), _partition(3)],
    [_partition(1, ("boot", "esp")), _partition(2, ("boot",)), _partition(3)],
])
def test_layout_rejects_invalid_topology(partitions):
    with pytest.raises(ValidationError):
        PartitionLayout(device="/dev/sda", partitions=partitions)


def test_apply_runs_parted_in_order(executor, recorder):
    layout = PartitionPlanner.plan("/dev/sdX")
    PartitionPlanner(executor).apply(layout)

    assert recorder.commands == [
        ["parted", "-s", "/dev/sdX", "mklabel", "gpt"],
        ["parted", "-s", "/dev/sdX", "mkpart", "primary", "fat32", "1MiB", "101MiB"],
        ["parted", "-s", "/dev/sdX", "set", "1", "esp", "on"],
        ["parted", "-s", "/dev/sdX", "mkpart", "primary", "ext4", "101MiB", "613MiB"],
        ["parted", "-s", "/dev/sdX", "mkpart", "primary", "ext4", "613MiB", "100%"],
        ["partprobe", "/dev/sdX"],
    ]


def test_apply_failure_raises_partition_error(executor, recorder):
    recorder.respond(["parted", "-s", "/dev/sdX", "mklabel"],
                     error=ShellCommandError(command="parted", exit_code=1, stderr="Error: Partition(s) in use"))

    with pytest.raises(PartitionError) as excinfo:
        PartitionPlanner(executor).apply(PartitionPlanner.plan("/dev/sdX"))

    assert excinfo.value.exit_code == 11
    assert isinstance(excinfo.value.__cause__, ShellCommandError)
    assert recorder.programs() == ["parted"]


def test_format_esp_and_boot_only(executor, recorder):
    PartitionPlanner(executor).format(PartitionPlanner.plan("/dev/sdX"))

    assert recorder.commands == [
        ["mkfs.fat", "-F32", "/dev/sdX1"],
        ["mkfs.ext4", "-F", "/dev/sdX2"],
    ]
    assert not recorder.find(["mkfs.ext4", "-F", "/dev/sdX3"])


def test_format_failure_raises_filesystem_error(executor, recorder):
    recorder.respond(["mkfs.fat"], error=ShellCommandError(command="mkfs.fat", exit_code=1))

    with pytest.raises(FilesystemError):
        PartitionPlanner(executor).format(PartitionPlanner.plan("/dev/sdX"))


def test_dry_run_apply_executes_nothing(executor, recorder):
    executor.dry_run = True
    PartitionPlanner(executor).apply(PartitionPlanner.plan("/dev/sdX"))
    assert recorder.commands == []


# --- check_device ---

@patch("archcrypt.executors.disk.is_block_device", return_value=False)
def test_check_device_missing(mock_is_block, executor, recorder):
    with pytest.raises(DeviceError) as excinfo:
        check_device(executor, "/dev/sdX")
    assert excinfo.value.exit_code == 10
    assert recorder.commands == []


@patch("archcrypt.executors.disk.is_block_device", return_value=True)
def test_check_device_idle(mock_is_block, executor, recorder):
    recorder.respond(["lsblk"], stdout="\n\n\n")
    check_device(executor, "/dev/sdX")
    assert recorder.commands == [["lsblk", "-nro", "MOUNTPOINT", "/dev/sdX"]]


@patch("archcrypt.executors.disk.is_block_device", return_value=True)
def test_check_device_busy(mock_is_block, executor, recorder):
    recorder.respond(["lsblk"], stdout="\n/run/media/usb\n\n")
    with pytest.raises(DeviceError, match="busy"):
        check_device(executor, "/dev/sdX")


@patch("archcrypt.executors.disk.is_block_device", return_value=True)
def test_check_device_probes_even_in_dry_run(mock_is_block, executor, recorder):
    executor.dry_run = True
    recorder.respond(["lsblk"], stdout="/\n")
    with pytest.raises(DeviceError):
        check_device(executor, "/dev/sdX")


@patch("archcrypt.executors.disk.is_block_device", return_value=True)
def test_check_device_lsblk_failure(mock_is_block, executor, recorder):
    recorder.respond(["lsblk"], error=ShellCommandError(command="lsblk", exit_code=32))
    with pytest.raises(DeviceError):
        check_device(executor, "/dev/sdX")
