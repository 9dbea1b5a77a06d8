"""
Partition planning.

Every selected disk gets the same four partitions: EFI system partition, boot
pool, root pool and a tail partition reserving the space needed while the OS
is transplanted. Sizes are absolute and derived from the smallest disk, so
the pool vdevs are identical across disks.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from zfs_installer.exceptions import InstallerError
from zfs_installer.shared import EFI_SYSTEM_PARTITION_SIZE_MIB, TEMPORARY_VOLUME_SIZE_GIB
from zfs_installer.utils import parse_size_mib

EFI_PARTITION_TYPE = "EF00"
ZFS_PARTITION_TYPE = "BF01"
LINUX_PARTITION_TYPE = "8300"

# Alignment gap before the first partition, plus room for the backup GPT
LEADING_GAP_MIB = 1
TRAILING_GAP_MIB = 1

EFI_PARTITION = 1
BOOT_PARTITION = 2
ROOT_PARTITION = 3
TAIL_PARTITION = 4


@dataclass(frozen=True)
class PartitionRegion:
    number: int
    type_code: str
    start_mib: int
    size_mib: int

    @property
    def end_mib(self) -> int:
        return self.start_mib + self.size_mib

    def sgdisk_arguments(self) -> str:
        return f"-n{self.number}:{self.start_mib}M:+{self.size_mib}M -t{self.number}:{self.type_code}"


@dataclass(frozen=True)
class PartitionLayout:
    efi_mib: int
    boot_mib: int
    root_mib: int
    # Reserved while transplanting: max(free tail, temporary volume size)
    reserved_tail_mib: int
    # What the user wants left unpartitioned at the end of each disk
    free_tail_mib: int

    @property
    def regions(self) -> list[PartitionRegion]:
        efi = PartitionRegion(EFI_PARTITION, EFI_PARTITION_TYPE, LEADING_GAP_MIB, self.efi_mib)
        boot = PartitionRegion(BOOT_PARTITION, ZFS_PARTITION_TYPE, efi.end_mib, self.boot_mib)
        root = PartitionRegion(ROOT_PARTITION, ZFS_PARTITION_TYPE, boot.end_mib, self.root_mib)
        tail = PartitionRegion(TAIL_PARTITION, LINUX_PARTITION_TYPE, root.end_mib, self.reserved_tail_mib)
        return [efi, boot, root, tail]

    @property
    def needs_reclaim(self) -> bool:
        """Whether the tail partition is removed and the root partition grown"""
        return self.free_tail_mib < self.reserved_tail_mib

    @property
    def reclaimed_root_mib(self) -> int:
        if not self.needs_reclaim:
            return self.root_mib
        return self.root_mib + self.reserved_tail_mib - self.free_tail_mib

    @property
    def reclaimed_root_end_mib(self) -> int:
        return LEADING_GAP_MIB + self.efi_mib + self.boot_mib + self.reclaimed_root_mib


class PartitionPlanner:
    def __init__(
        self,
        boot_partition_size: str,
        free_tail_space_gib: int = 0,
        temporary_volume_size_gib: int = TEMPORARY_VOLUME_SIZE_GIB,
        efi_size_mib: int = EFI_SYSTEM_PARTITION_SIZE_MIB,
    ) -> None:
        self.boot_mib = parse_size_mib(boot_partition_size)
        self.free_tail_mib = free_tail_space_gib * 1024
        self.reserved_tail_mib = max(free_tail_space_gib, temporary_volume_size_gib) * 1024
        self.efi_mib = efi_size_mib

    @staticmethod
    def usable_mib(disk_size_mib: int) -> int:
        return disk_size_mib - LEADING_GAP_MIB - TRAILING_GAP_MIB

    def plan(self, disk_sizes_mib: Iterable[int]) -> PartitionLayout:
        sizes = list(disk_sizes_mib)
        if not sizes:
            raise ValueError("Cannot plan partitions without disks")

        usable = self.usable_mib(min(sizes))
        root_mib = usable - self.efi_mib - self.boot_mib - self.reserved_tail_mib
        if root_mib <= 0:
            raise InstallerError(f"The smallest selected disk is too small ({min(sizes)} MiB) for the requested layout")

        return PartitionLayout(
            efi_mib=self.efi_mib,
            boot_mib=self.boot_mib,
            root_mib=root_mib,
            reserved_tail_mib=self.reserved_tail_mib,
            free_tail_mib=self.free_tail_mib,
        )
