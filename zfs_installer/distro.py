"""
Distribution detection and the up-front prerequisite gate.

The resolved profile parameterizes every step dispatch; the prerequisite check
runs exactly once, before anything destructive happens.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from archinstall import debug, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.config import MIN_PASSPHRASE_LENGTH
from zfs_installer.exceptions import PrerequisiteError

# Linux Mint reports "Linuxmint" from v20 onwards, which conveniently keeps the
# v19 and v20 specific steps apart.
SUPPORTED_DISTRIBUTIONS: dict[str, tuple[str, ...]] = {
    "Ubuntu": ("18.04", "20.04"),
    "UbuntuServer": ("18.04", "20.04"),
    "LinuxMint": ("19.1", "19.2", "19.3"),
    "Linuxmint": ("20", "20.1"),
    "elementary": ("5.1",),
    "Debian": ("10",),
}

EFI_FIRMWARE_DIR = Path("/sys/firmware/efi")
SERVER_MARKER_PACKAGE = "ubuntu-server"


@dataclass(frozen=True)
class DistroProfile:
    """Canonical distribution identifier and version.

    `id` is not necessarily what `lsb_release` reports: Ubuntu Server reports
    "Ubuntu" but needs its own installer and package handling.
    """

    id: str
    version: str

    def is_supported(self, table: Mapping[str, tuple[str, ...]] = SUPPORTED_DISTRIBUTIONS) -> bool:
        return self.version in table.get(self.id, ())

    def __str__(self) -> str:
        return f"{self.id} {self.version}"


def is_package_installed(package: str) -> bool:
    try:
        output = SysCommand(f"dpkg -s {package}").decode()
    except SysCallError:
        return False
    return "Status: install ok installed" in output.splitlines()


def resolve_distribution() -> DistroProfile:
    distro_id = SysCommand("lsb_release --id --short").decode().strip()

    if distro_id == "Ubuntu" and is_package_installed(SERVER_MARKER_PACKAGE):
        debug(f"{SERVER_MARKER_PACKAGE} is installed; treating the distribution as UbuntuServer")
        distro_id = "UbuntuServer"

    version = SysCommand("lsb_release --release --short").decode().strip()
    profile = DistroProfile(distro_id, version)
    info(f"Detected distribution: {profile}")
    return profile


def check_prerequisites(
    profile: DistroProfile,
    preset: Mapping[str, Any],
    efi_firmware_dir: Path = EFI_FIRMWARE_DIR,
    table: Mapping[str, tuple[str, ...]] = SUPPORTED_DISTRIBUTIONS,
) -> None:
    """Fail fast on anything that makes the installation impossible.

    Args:
        profile: The resolved distribution
        preset: RunConfig values preset via environment/replay file
    """
    script = preset.get("os_installation_script")
    passphrase = preset.get("passphrase")

    if not efi_firmware_dir.is_dir():
        raise PrerequisiteError("System firmware directory not found; make sure to boot in EFI mode!")
    if os.geteuid() != 0:
        raise PrerequisiteError("This installer must be run with administrative privileges!")
    if script and not os.access(script, os.X_OK):
        raise PrerequisiteError("The custom O/S installation script provided doesn't exist or is not executable!")
    if profile.id not in table:
        raise PrerequisiteError(f"This Linux distribution ({profile.id}) is not supported!")
    if not profile.is_supported(table):
        supported = " ".join(table[profile.id])
        raise PrerequisiteError(f"This Linux distribution version ({profile.version}) is not supported; supported versions: {supported}")
    # As of Jun/2021, the PPA breaks the Ubuntu Server installation.
    if preset.get("use_ppa") and profile.id == "UbuntuServer":
        raise PrerequisiteError("The PPA is not (currently) supported on Ubuntu Server!")
    if passphrase is not None and 0 < len(passphrase.get_secret_value()) < MIN_PASSPHRASE_LENGTH:
        raise PrerequisiteError(f"The passphrase provided is too short; at least {MIN_PASSPHRASE_LENGTH} chars required.")

    debug("Prerequisites satisfied")
