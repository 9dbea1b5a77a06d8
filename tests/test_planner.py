import pytest

from zfs_installer.disk.planner import (
    EFI_PARTITION,
    ROOT_PARTITION,
    TAIL_PARTITION,
    PartitionPlanner,
)
from zfs_installer.exceptions import InstallerError

DISK_MIB = 100_000


def test_layout_from_smallest_disk() -> None:
    layout = PartitionPlanner("2048M").plan([DISK_MIB * 2, DISK_MIB])

    # 100000 - 2 (gaps) - 512 (EFI) - 2048 (boot) - 12288 (temporary volume)
    assert layout.root_mib == 85150
    regions = layout.regions
    assert [region.number for region in regions] == [1, 2, 3, 4]
    assert regions[0].start_mib == 1
    assert regions[-1].end_mib == DISK_MIB - 1
    for previous, current in zip(regions, regions[1:]):
        assert current.start_mib == previous.end_mib


def test_sgdisk_arguments() -> None:
    regions = PartitionPlanner("512M").plan([DISK_MIB]).regions
    assert regions[EFI_PARTITION - 1].sgdisk_arguments() == "-n1:1M:+512M -t1:EF00"
    assert regions[ROOT_PARTITION - 1].sgdisk_arguments().endswith("-t3:BF01")
    assert regions[TAIL_PARTITION - 1].sgdisk_arguments().endswith("-t4:8300")


def test_reclaim_without_free_tail() -> None:
    layout = PartitionPlanner("2048M", free_tail_space_gib=0).plan([DISK_MIB])

    assert layout.needs_reclaim
    assert layout.reclaimed_root_mib == 85150 + 12288
    assert layout.reclaimed_root_end_mib == DISK_MIB - 1


def test_reclaim_with_small_free_tail() -> None:
    layout = PartitionPlanner("2048M", free_tail_space_gib=5).plan([DISK_MIB])

    assert layout.needs_reclaim
    assert layout.reserved_tail_mib == 12288
    assert layout.reclaimed_root_mib == 85150 + 12288 - 5120
    # The requested free space is left at the end of the disk
    assert layout.reclaimed_root_end_mib == DISK_MIB - 1 - 5120


def test_no_reclaim_with_large_free_tail() -> None:
    layout = PartitionPlanner("2G", free_tail_space_gib=20).plan([DISK_MIB])

    assert not layout.needs_reclaim
    assert layout.reserved_tail_mib == 20 * 1024
    assert layout.reclaimed_root_mib == layout.root_mib


def test_disk_too_small() -> None:
    with pytest.raises(InstallerError):
        PartitionPlanner("2048M").plan([10_000])


def test_no_disks() -> None:
    with pytest.raises(ValueError):
        PartitionPlanner("2048M").plan([])


def test_invalid_boot_size() -> None:
    with pytest.raises(ValueError):
        PartitionPlanner("2T")
