from __future__ import annotations

from abc import ABC, abstractmethod

from zfs_installer.jail import Jail


class InitramfsHandler(ABC):
    """Abstract base class for initramfs handlers."""

    def __init__(self, jail: Jail) -> None:
        self.jail: Jail = jail

    @abstractmethod
    def configure(self) -> None:
        """Configure the initramfs system inside the jail."""

    @abstractmethod
    def generate_initramfs(self) -> bool:
        """Regenerate the initramfs of the installed kernels inside the jail."""

    @abstractmethod
    def install_packages(self) -> list[str]:
        """Return required packages for this initramfs implementation."""
