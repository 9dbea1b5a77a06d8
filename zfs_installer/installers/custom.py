from __future__ import annotations

import shlex
from pathlib import Path
from typing import TYPE_CHECKING

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.exceptions import InstallerScriptError
from zfs_installer.installers.base import OSInstaller, TargetPreparation

if TYPE_CHECKING:
    from zfs_installer.context import InstallContext
    from zfs_installer.transplant import TemporaryVolume


def reported_mountpoint(output: str, default: Path) -> Path:
    """The script reports the directory to copy as the last non-empty line of its output"""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return default

    mountpoint = Path(lines[-1])
    if not mountpoint.is_absolute():
        raise InstallerScriptError(f"The installation script must print an absolute mountpoint as its last line; got: {lines[-1]}")
    return mountpoint


class CustomScriptInstaller(OSInstaller):
    """Runs an operator supplied installation script.

    The script receives the temporary volume device (formatted as ext4) and the
    relevant mount directories through the environment. When it prints
    nothing, the installed system is expected at the conventional installer
    target; when it reports the root pool mount directory, it has installed
    straight into the pool and nothing is copied.
    """

    name = "custom script"
    preparation = TargetPreparation.FORMAT

    def __init__(self, ctx: InstallContext, script: Path) -> None:
        super().__init__(ctx)
        self.script = script

    def environment(self, volume: TemporaryVolume) -> dict[str, str]:
        return {
            "ZFS_TEMP_VOLUME_DEVICE": str(volume.install_device),
            "ZFS_INSTALL_MOUNT_DIR": str(self.ctx.installed_os_dir),
            "ZFS_ROOT_POOL_MOUNT_DIR": str(self.ctx.zfs_mount_dir),
        }

    def install(self, volume: TemporaryVolume) -> Path:
        assignments = " ".join(f"{name}={shlex.quote(value)}" for name, value in self.environment(volume).items())
        info(f"Running the installation script {self.script}")

        try:
            output = SysCommand(f"env {assignments} {shlex.quote(str(self.script))}", peek_output=True).decode()
        except SysCallError as e:
            error(f"The installation script failed: {e!s}")
            raise InstallerScriptError(f"The installation script {self.script} failed") from e

        mountpoint = reported_mountpoint(output, self.ctx.installed_os_dir)
        debug(f"Installation script reported mountpoint: {mountpoint}")
        return mountpoint

    def finalize(self, volume: TemporaryVolume, target: Path) -> None:
        # The script owns its mounts; the tree may as well be a plain directory
        SysCommand("swapoff -a")
        for swap_file in self.swap_files:
            (target / swap_file).unlink(missing_ok=True)
