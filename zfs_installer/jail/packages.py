"""ZFS and bootloader packages inside the jail, per distribution."""

from __future__ import annotations

from archinstall import info

from zfs_installer.context import InstallContext
from zfs_installer.dispatch import step
from zfs_installer.initramfs import InitramfsToolsHandler
from zfs_installer.jail import Jail, jail_for
from zfs_installer.shared import ZFS_DKMS_LICENSE_SELECTION, ZFS_PPA

BOOTLOADER_PACKAGES = ("grub-efi-amd64-signed", "shim-signed")
# On the Ubuntu live sessions the tools are present, but not as installed packages
ZFS_USERSPACE_PACKAGES = ("libzfs2linux", "zfs-zed", "zfsutils-linux")

DEBIAN_SOURCES = """deb http://deb.debian.org/debian buster main contrib
deb-src http://deb.debian.org/debian buster main contrib"""

DEBIAN_BACKPORTS_SOURCES = """deb http://deb.debian.org/debian buster-backports main contrib
deb-src http://deb.debian.org/debian buster-backports main contrib"""

DEBIAN_ZFS_PIN = """Package: libnvpair1linux libuutil1linux libzfs2linux libzpool2linux zfs-dkms zfs-initramfs zfs-test zfsutils-linux zfsutils-linux-dev zfs-zed
Pin: release n=buster-backports
Pin-Priority: 990
"""


def accept_zfs_dkms_license(jail: Jail) -> None:
    jail.execute(f"echo '{ZFS_DKMS_LICENSE_SELECTION}' | debconf-set-selections")


@step("install_jail_zfs_packages")
def install_jail_zfs_packages(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    initramfs_packages = InitramfsToolsHandler(jail).install_packages()

    if ctx.use_ppa:
        jail.execute(f"add-apt-repository --yes {ZFS_PPA}", peek_output=True)
        jail.apt_update()
        accept_zfs_dkms_license(jail)
        # libelf-dev enables CONFIG_STACK_VALIDATION for the module build
        jail.apt_install("libelf-dev", *initramfs_packages, "zfs-dkms")
    else:
        jail.apt_install(*ZFS_USERSPACE_PACKAGES, *initramfs_packages)

    jail.apt_install(*BOOTLOADER_PACKAGES)
    info("ZFS packages installed in the jail")


@step("install_jail_zfs_packages", distro="Debian")
def install_jail_zfs_packages_debian(ctx: InstallContext) -> None:
    jail = jail_for(ctx)

    jail.append_line("/etc/apt/sources.list", DEBIAN_SOURCES)
    jail.append_line("/etc/apt/sources.list.d/buster-backports.list", DEBIAN_BACKPORTS_SOURCES)
    jail.path("/etc/apt/preferences.d").mkdir(parents=True, exist_ok=True)
    jail.path("/etc/apt/preferences.d/90_zfs").write_text(DEBIAN_ZFS_PIN)

    jail.apt_update()
    accept_zfs_dkms_license(jail)
    jail.apt_install("rsync", *InitramfsToolsHandler(jail).install_packages(), "zfs-dkms", *BOOTLOADER_PACKAGES)
    info("ZFS packages installed in the jail")


@step("install_jail_zfs_packages", distro="elementary")
def install_jail_zfs_packages_elementary(ctx: InstallContext) -> None:
    # Provides add-apt-repository
    jail_for(ctx).apt_install("software-properties-common")
    ctx.invoke_generic("install_jail_zfs_packages")


@step("install_jail_zfs_packages", distro="UbuntuServer")
def install_jail_zfs_packages_ubuntu_server(ctx: InstallContext) -> None:
    if ctx.use_ppa:
        ctx.invoke_generic("install_jail_zfs_packages")
        return

    jail = jail_for(ctx)
    jail.apt_install("zfsutils-linux", *InitramfsToolsHandler(jail).install_packages(), *BOOTLOADER_PACKAGES)
    info("ZFS packages installed in the jail")
