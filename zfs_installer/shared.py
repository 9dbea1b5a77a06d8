from __future__ import annotations

from enum import Enum
from pathlib import Path


class RaidType(Enum):
    """Pool redundancy topology, shared by the boot and the root pool."""

    NONE = "none"
    MIRROR = "mirror"
    RAIDZ = "raidz"
    RAIDZ2 = "raidz2"
    RAIDZ3 = "raidz3"

    @property
    def vdev_keyword(self) -> str | None:
        """Keyword passed to `zpool create`; striping has none."""
        return None if self is RaidType.NONE else self.value

    @classmethod
    def parse(cls, raw: str) -> RaidType:
        value = raw.strip().lower()
        if value in ("", "none", "stripe", "striping"):
            return cls.NONE
        if value == "raidz1":
            return cls.RAIDZ
        return cls(value)


class InvokeMode(Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"


# Scratch mountpoint of the pools during the installation (pool altroot)
ZFS_MOUNT_DIR = Path("/mnt")
# Where the OS installers leave the installed system
INSTALLED_OS_MOUNT_DIR = Path("/target")

BPOOL_NAME = "bpool"
EFI_SYSTEM_PARTITION_SIZE_MIB = 512
DEFAULT_BOOT_PARTITION_SIZE = "2048M"
TEMPORARY_VOLUME_SIZE_GIB = 12
UDEVADM_SETTLE_TIMEOUT = 10

ZFS_PPA = "ppa:jonathonf/zfs"
# Preseeds the zfs-dkms license note, which otherwise stops apt with a dialog
ZFS_DKMS_LICENSE_SELECTION = "zfs-dkms zfs-dkms/note-incompatible-licenses note true"
