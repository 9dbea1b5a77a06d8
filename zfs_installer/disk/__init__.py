from __future__ import annotations

from pathlib import Path

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.disk.planner import (
    BOOT_PARTITION,
    EFI_PARTITION,
    ROOT_PARTITION,
    TAIL_PARTITION,
    PartitionLayout,
    PartitionPlanner,
)
from zfs_installer.dispatch import step
from zfs_installer.utils import udev_settle, wait_for_path

MIB = 1024 * 1024


def partition_path(disk: Path, number: int) -> Path:
    return Path(f"{disk}-part{number}")


class DiskManager:
    """Destructive operations on the selected disks"""

    def __init__(self, disks: list[Path]):
        self.disks = disks

    @staticmethod
    def disk_size_mib(disk: Path) -> int:
        return int(SysCommand(f"blockdev --getsize64 {disk}").decode().strip()) // MIB

    def disk_sizes_mib(self) -> list[int]:
        return [self.disk_size_mib(disk) for disk in self.disks]

    @staticmethod
    def clear_disk(disk: Path) -> None:
        """Removes ZFS labels from existing partitions and wipes all signatures"""
        for partition in sorted(disk.parent.glob(f"{disk.name}-part*")):
            try:
                SysCommand(f"zpool labelclear -f {partition}")
            except SysCallError as e:
                # Most partitions don't carry a ZFS label
                debug(f"No ZFS label cleared on {partition}: {e!s}")

        SysCommand(f"wipefs --all {disk}")

    @staticmethod
    def create_partitions(disk: Path, layout: PartitionLayout) -> None:
        debug(f"Creating partitions on {disk}")
        for region in layout.regions:
            SysCommand(f"sgdisk {region.sgdisk_arguments()} {disk}")

    @staticmethod
    def format_efi_partition(disk: Path) -> None:
        SysCommand(f"mkfs.fat -F 32 -n EFI {partition_path(disk, EFI_PARTITION)}")

    def partition(self, layout: PartitionLayout) -> None:
        try:
            for disk in self.disks:
                self.clear_disk(disk)
                self.create_partitions(disk, layout)

            udev_settle()
            for disk in self.disks:
                for number in (EFI_PARTITION, BOOT_PARTITION, ROOT_PARTITION, TAIL_PARTITION):
                    wait_for_path(partition_path(disk, number))

            for disk in self.disks:
                self.format_efi_partition(disk)
        except SysCallError as e:
            error(f"Failed to partition the disks: {e!s}")
            raise

        info(f"Partitioned {len(self.disks)} disk(s)")

    def remove_tail_partitions(self, layout: PartitionLayout) -> None:
        """Removes the tail partition and grows the root partition up to the reclaimed end"""
        for disk in self.disks:
            SysCommand(f"parted -s {disk} rm {TAIL_PARTITION}")
            SysCommand(f"parted -s {disk} unit MiB resizepart {ROOT_PARTITION} -- {layout.reclaimed_root_end_mib}MiB")
        udev_settle()

    def wipe_tail_partitions(self) -> None:
        for disk in self.disks:
            SysCommand(f"wipefs --all {partition_path(disk, TAIL_PARTITION)}")


@step("setup_partitions")
def setup_partitions(ctx: InstallContext) -> None:
    config = ctx.run_config
    manager = DiskManager(config.selected_disks)
    planner = PartitionPlanner(config.boot_partition_size, config.free_tail_space)

    layout = planner.plan(manager.disk_sizes_mib())
    debug(f"Partition layout: {layout}")
    manager.partition(layout)
    ctx.layout = layout
