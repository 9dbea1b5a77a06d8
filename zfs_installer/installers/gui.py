"""
The distributions' own installers.

Ubiquity and Calamares are graphical, and run on the live session display;
Subiquity can't be started from here, so the operator runs it on another
terminal while this one waits.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from archinstall import debug, info, warn
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.dispatch import step
from zfs_installer.installers.base import OSInstaller, TargetPreparation
from zfs_installer.transplant import TemporaryVolume
from zfs_installer.zfs.secret import SecretRelay

DISPLAY = ":0"
INTERFACE_PATTERN = re.compile(r"^\d+: ([^:@\s]+)")

UBIQUITY_INSTRUCTIONS = """The Ubuntu GUI installer will now be launched.

Proceed with the configuration as usual, then, at the partitioning stage:

- check `Something Else` -> `Continue`
- select `{device}` -> `Change`
  - set `Use as:` to `Ext4`
  - check `Format the partition:`
  - set `Mount point` to `/` -> `OK` -> `Continue`
- `Install Now` -> `Continue`
- at the end, choose `Continue Testing`
"""

CALAMARES_INSTRUCTIONS = """The Debian GUI installer will now be launched.

Proceed with the configuration as usual, then, at the partitioning stage:

- check `Manual partitioning` -> `Next`
- click on `{device}` in the filesystems panel -> `Edit`
  - click on `Format`
  - set `Mount Point` to `/` -> `OK`
- `Next`
- follow through the installation (ignore the EFI partition warning)
- at the end, uncheck `Restart now`, and click `Done`
"""

SUBIQUITY_INSTRUCTIONS = """You'll now need to run the Ubuntu Server installer (Subiquity).

Switch back to the original terminal (Ctrl+Alt+F1), then proceed with the configuration as usual.

When the update option is presented, choose to update Subiquity to the latest version.

At the partitioning stage:

- select `Custom storage layout` -> `Done`
- select `{device}` -> `Edit`
  - set `Format:` to `ext4` (mountpoint will be automatically selected)
  - click `Save`
- click `Done` -> `Continue` (ignore warning)
- follow through the installation, until the end (after the updates are applied)
- switch back to this terminal (Ctrl+Alt+F2), and continue

Do not continue in this terminal now!

You can switch anytime to this terminal, and back, in order to read the instructions.
"""


def allow_display_access() -> None:
    """The live session display is restricted to its owner; open it up for the installer run as root"""
    sudo_user = os.environ.get("SUDO_USER")
    if not sudo_user:
        warn("SUDO_USER is not set; not granting display access")
        return
    SysCommand(f"sudo -u {sudo_user} env DISPLAY={DISPLAY} xhost +")


class UbiquityInstaller(OSInstaller):
    name = "Ubiquity"
    preparation = TargetPreparation.PARTITION

    def install(self, volume: TemporaryVolume) -> Path:
        if not self.ctx.run_config.no_info_messages:
            self.ctx.prompts.message(UBIQUITY_INSTRUCTIONS.format(device=volume.install_device))

        allow_display_access()
        SysCommand(f"env DISPLAY={DISPLAY} ubiquity --no-bootloader")
        return self.ctx.installed_os_dir


class CalamaresInstaller(OSInstaller):
    name = "Calamares"
    preparation = TargetPreparation.FORMAT

    def install(self, volume: TemporaryVolume) -> Path:
        if not self.ctx.run_config.no_info_messages:
            self.ctx.prompts.message(CALAMARES_INSTRUCTIONS.format(device=volume.install_device))

        allow_display_access()
        SysCommand(f"env DISPLAY={DISPLAY} calamares")
        return self.ctx.installed_os_dir

    def finalize(self, volume: TemporaryVolume, target: Path) -> None:
        super().finalize(volume, target)
        self.set_root_password(target)
        self.configure_network_interfaces(target)

    def set_root_password(self, target: Path) -> None:
        password = self.ctx.run_config.root_password
        if password is None:
            warn("No root password provided; the root account is left untouched")
            return

        with SecretRelay(password, prefix="root:") as relay:
            SysCommand(relay.redirect(f"chroot {target} chpasswd"))
        info("Root password set")

    @staticmethod
    def configure_network_interfaces(target: Path) -> None:
        """Calamares leaves the interfaces unconfigured; set them all to DHCP"""
        interfaces_dir = target / "etc/network/interfaces.d"
        interfaces_dir.mkdir(parents=True, exist_ok=True)

        for line in SysCommand("ip -o link show").decode().splitlines():
            match = INTERFACE_PATTERN.match(line)
            if not match or match.group(1) == "lo":
                continue
            interface = match.group(1)
            (interfaces_dir / interface).write_text(f"auto {interface}\niface {interface} inet dhcp\n")
            debug(f"Configured {interface} for DHCP")


class SubiquityInstaller(OSInstaller):
    name = "Subiquity"
    preparation = TargetPreparation.RAW
    swap_files = ("swap.img",)

    def install(self, volume: TemporaryVolume) -> Path:
        # Always shown: the operator has to act on another terminal
        self.ctx.prompts.message(SUBIQUITY_INSTRUCTIONS.format(device=volume.device))
        return self.ctx.installed_os_dir


@step("select_os_installer")
def select_os_installer(ctx: InstallContext) -> OSInstaller:
    return UbiquityInstaller(ctx)


@step("select_os_installer", distro="Debian")
def select_os_installer_debian(ctx: InstallContext) -> OSInstaller:
    return CalamaresInstaller(ctx)


@step("select_os_installer", distro="UbuntuServer")
def select_os_installer_ubuntu_server(ctx: InstallContext) -> OSInstaller:
    return SubiquityInstaller(ctx)
