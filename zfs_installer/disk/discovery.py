"""
Disk discovery.

Candidates are the stable `/dev/disk/by-id` identifiers of whole disks on the
usual buses; optical drives and disks hosting a mounted filesystem (typically
the live medium) are filtered out. Nothing here modifies the system.
"""

from __future__ import annotations

import re
from pathlib import Path

from archinstall import debug, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand
from pydantic import BaseModel

from zfs_installer.exceptions import NoSuitableDisksError

BY_ID_DIR = Path("/dev/disk/by-id")
CANDIDATE_PATTERN = re.compile(r"^(ata|nvme|scsi|mmc)-.+")
PARTITION_PATTERN = re.compile(r"-part\d+$")

NO_DISKS_MESSAGE = """No suitable disks have been found!

If you're running inside a VMWare virtual machine, you need to add set `disk.EnableUUID = "TRUE"` in the .vmx configuration file."""


class DiskRef(BaseModel):
    by_id: Path
    device_name: str
    suitable: bool = True

    @property
    def device(self) -> Path:
        return Path("/dev") / self.device_name

    def __str__(self) -> str:
        return str(self.by_id)


def candidate_disk_ids(by_id_dir: Path = BY_ID_DIR) -> list[Path]:
    """Whole-disk by-id entries on the supported buses, sorted"""
    return sorted(path for path in by_id_dir.iterdir() if CANDIDATE_PATTERN.match(path.name) and not PARTITION_PATTERN.search(path.name))


def device_properties(device: Path) -> dict[str, str]:
    output = SysCommand(f"udevadm info --query=property {device}").decode()
    properties: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            properties[key.strip()] = value.strip()
    return properties


def mounted_parent_devices() -> set[str]:
    """Kernel names of the disks that back a currently mounted filesystem.

    Each source is walked up through all of its ancestors, so a disk mounted
    without a partition table or one under a device-mapper stack is caught too.
    """
    sources = [line.split()[0] for line in SysCommand("df").decode().splitlines()[1:] if line.strip()]
    disks: set[str] = set()

    for source in sources:
        if not source.startswith("/dev/"):
            continue
        try:
            ancestry = SysCommand(f"lsblk -lnso NAME,TYPE {source}").decode()
        except SysCallError:
            # Not a block device
            continue
        for line in ancestry.splitlines():
            fields = line.split()
            if len(fields) == 2 and fields[1] == "disk":
                disks.add(fields[0])

    return disks


def enumerate_disks(by_id_dir: Path = BY_ID_DIR) -> list[DiskRef]:
    """All candidate disks, each flagged as suitable or not"""
    # /dev/disk/by-id may be stale, e.g. in freshly cloned VMs
    SysCommand("udevadm trigger")

    mounted = mounted_parent_devices()
    disks: list[DiskRef] = []

    for disk_id in candidate_disk_ids(by_id_dir):
        device = disk_id.resolve()
        is_optical = device_properties(device).get("ID_TYPE") == "cd"
        is_mounted = device.name in mounted
        if is_optical or is_mounted:
            debug(f"Excluding {disk_id} (optical: {is_optical}, mounted: {is_mounted})")
        disks.append(DiskRef(by_id=disk_id, device_name=device.name, suitable=not (is_optical or is_mounted)))

    return disks


def find_suitable_disks(by_id_dir: Path = BY_ID_DIR) -> list[DiskRef]:
    suitable = [disk for disk in enumerate_disks(by_id_dir) if disk.suitable]
    if not suitable:
        raise NoSuitableDisksError(NO_DISKS_MESSAGE)

    info(f"Suitable disks: {', '.join(str(disk) for disk in suitable)}")
    return suitable
