from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, ClassVar

from archinstall import debug, info
from archinstall.lib.general import SysCommand

from zfs_installer.utils import is_mountpoint

if TYPE_CHECKING:
    from zfs_installer.context import InstallContext
    from zfs_installer.transplant import TemporaryVolume


class TargetPreparation(Enum):
    """How the temporary volume is handed to the installer"""

    # A single Linux partition, formatted by the installer
    PARTITION = "partition"
    # A ready ext4 filesystem on the whole volume
    FORMAT = "format"
    # An untouched block device, partitioned by the installer
    RAW = "raw"


class OSInstaller(ABC):
    """Installs the operating system on the temporary volume."""

    name: ClassVar[str]
    preparation: ClassVar[TargetPreparation]
    # Swap files some installers leave on the target
    swap_files: ClassVar[tuple[str, ...]] = ("swapfile",)

    def __init__(self, ctx: InstallContext) -> None:
        self.ctx = ctx

    @abstractmethod
    def install(self, volume: TemporaryVolume) -> Path:
        """Run the installation; returns the directory holding the installed system."""

    def finalize(self, volume: TemporaryVolume, target: Path) -> None:
        """Leave the installed system mounted at `target`, without swap files."""
        SysCommand("swapoff -a")

        # Installers don't reliably leave the target mounted
        if not is_mountpoint(target):
            target.mkdir(parents=True, exist_ok=True)
            SysCommand(f"mount {volume.install_device} {target}")
            info(f"Remounted {volume.install_device} at {target}")

        for swap_file in self.swap_files:
            path = target / swap_file
            if path.exists():
                debug(f"Removing {path}")
                path.unlink()
