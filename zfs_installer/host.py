"""
Package steps on the live environment.

After `set_zfs_ppa_requirement` the apt indexes are up to date on every
distribution; later steps rely on it.
"""

from __future__ import annotations

import re
from pathlib import Path

from archinstall import debug, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.dispatch import step
from zfs_installer.shared import ZFS_DKMS_LICENSE_SELECTION, ZFS_PPA

# Native encryption needs ZFS 0.8
MINIMUM_ZFS_VERSION = (0, 8)
APT_SOURCES = Path("/etc/apt/sources.list")

DEBIAN_HOST_SOURCES = """deb http://deb.debian.org/debian buster contrib
deb http://deb.debian.org/debian buster-backports main contrib
"""


def packaged_zfs_version(apt_show_output: str) -> tuple[int, int] | None:
    match = re.search(r"^Version: (\d+)\.(\d+)", apt_show_output, re.MULTILINE)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def requires_ppa(apt_show_output: str, forced: bool = False) -> bool:
    """The PPA is used when forced, or when the distribution doesn't package ZFS 0.8+"""
    version = packaged_zfs_version(apt_show_output)
    return forced or version is None or version < MINIMUM_ZFS_VERSION


def apt_install(*packages: str, options: str = "") -> None:
    SysCommand(f"apt install --yes {options + ' ' if options else ''}{' '.join(packages)}", peek_output=True)


def apt_update() -> None:
    SysCommand("apt update", peek_output=True)


def accept_zfs_dkms_license() -> None:
    SysCommand(f"bash -c \"echo '{ZFS_DKMS_LICENSE_SELECTION}' | debconf-set-selections\"")


def record_zfs_version(ctx: InstallContext) -> None:
    try:
        version = SysCommand("zfs --version").decode()
    except SysCallError as e:
        version = f"zfs --version failed: {e!s}"
    (ctx.log_dir / "updated_module_versions.log").write_text(version)


def reload_zfs_module() -> None:
    SysCommand("systemctl stop zfs-zed")
    SysCommand("modprobe -r zfs")
    SysCommand("modprobe zfs")
    SysCommand("systemctl start zfs-zed")


@step("set_zfs_ppa_requirement")
def set_zfs_ppa_requirement(ctx: InstallContext) -> None:
    apt_update()

    try:
        apt_show = SysCommand("apt show zfsutils-linux").decode()
    except SysCallError:
        apt_show = ""

    ctx.use_ppa = requires_ppa(apt_show, forced=ctx.run_config.use_ppa)
    info(f"ZFS PPA required: {ctx.use_ppa}")


@step("set_zfs_ppa_requirement", distro="Debian")
def set_zfs_ppa_requirement_debian(ctx: InstallContext) -> None:
    # ZFS comes from the backports
    apt_update()


@step("set_zfs_ppa_requirement", distro="Linuxmint")
def set_zfs_ppa_requirement_linuxmint(ctx: InstallContext) -> None:
    # The CDROM repository is enabled, and breaks `apt update`
    content = APT_SOURCES.read_text()
    APT_SOURCES.write_text(re.sub(r"^(deb cdrom)", r"# \1", content, flags=re.MULTILINE))
    ctx.invoke_generic("set_zfs_ppa_requirement")


@step("install_host_packages")
def install_host_packages(ctx: InstallContext) -> None:
    if ctx.use_ppa and not ctx.run_config.skip_live_zfs_module_install:
        SysCommand(f"add-apt-repository --yes {ZFS_PPA}", peek_output=True)
        apt_update()
        accept_zfs_dkms_license()
        # libelf-dev enables CONFIG_STACK_VALIDATION for the module build
        apt_install("libelf-dev", "zfs-dkms")
        reload_zfs_module()

    apt_install("efibootmgr")
    record_zfs_version(ctx)


@step("install_host_packages", distro="Debian")
def install_host_packages_debian(ctx: InstallContext) -> None:
    if not ctx.run_config.skip_live_zfs_module_install:
        accept_zfs_dkms_license()
        with APT_SOURCES.open("a") as f:
            f.write(DEBIAN_HOST_SOURCES)
        apt_update()
        apt_install("zfs-dkms", options="-t buster-backports")
        SysCommand("modprobe zfs")

    apt_install("efibootmgr")
    record_zfs_version(ctx)


@step("install_host_packages", distro="Linuxmint")
def install_host_packages_linuxmint(ctx: InstallContext) -> None:
    # Unlike Ubuntu, the live session doesn't ship the tools
    apt_install("zfsutils-linux")
    ctx.invoke_generic("install_host_packages")


@step("install_host_packages", distro="elementary")
def install_host_packages_elementary(ctx: InstallContext) -> None:
    if not ctx.run_config.skip_live_zfs_module_install:
        apt_update()
        apt_install("software-properties-common")
    ctx.invoke_generic("install_host_packages")


def make_kernel_modules_writable() -> None:
    """On Ubuntu Server /lib/modules is a read-only SquashFS mount; replace it with a writable copy"""
    SysCommand("cp -R /lib/modules /tmp/")
    SysCommand("systemctl stop systemd-udevd*")
    SysCommand("umount /lib/modules")
    SysCommand("rm -r /lib/modules")
    SysCommand("ln -s /tmp/modules /lib")
    SysCommand("systemctl start --all systemd-udevd*")


@step("install_host_packages", distro="UbuntuServer")
def install_host_packages_ubuntu_server(ctx: InstallContext) -> None:
    if not ctx.use_ppa:
        apt_install("zfsutils-linux", "efibootmgr")
        record_zfs_version(ctx)
    elif not ctx.run_config.skip_live_zfs_module_install:
        make_kernel_modules_writable()
        apt_update()
        kernel_release = SysCommand("uname -r").decode().strip()
        # The headers of the running kernel are not installed by default
        apt_install(f"linux-headers-{kernel_release}")
        ctx.invoke_generic("install_host_packages")
    else:
        debug("Skipping the live ZFS module installation")
        apt_install("efibootmgr")
