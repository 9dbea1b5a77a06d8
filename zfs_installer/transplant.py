"""
OS transplant.

The distribution installer can't target ZFS, so it installs on a temporary
volume carved from the root pool; the result is copied into the root pool,
the volume is destroyed and the space reserved at the end of each disk is
reclaimed.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.disk import DiskManager, partition_path
from zfs_installer.disk.planner import ROOT_PARTITION
from zfs_installer.dispatch import step
from zfs_installer.installers.base import OSInstaller, TargetPreparation
from zfs_installer.installers.custom import CustomScriptInstaller
from zfs_installer.shared import TEMPORARY_VOLUME_SIZE_GIB
from zfs_installer.utils import is_mountpoint, udev_settle, wait_for_path
from zfs_installer.zfs import ZFSPool

TEMPORARY_VOLUME_NAME = "os-temp"
RSYNC_EXCLUDES = ("/run", "/swapfile", "/swap.img")
RESOLVER_STUB = Path("run/systemd/resolve/stub-resolv.conf")


@dataclass
class TemporaryVolume:
    pool: str
    preparation: TargetPreparation
    size_gib: int = TEMPORARY_VOLUME_SIZE_GIB
    name: str = TEMPORARY_VOLUME_NAME

    @property
    def dataset(self) -> str:
        return f"{self.pool}/{self.name}"

    @property
    def zvol_path(self) -> Path:
        return Path("/dev/zvol") / self.dataset

    @property
    def device(self) -> Path:
        """Kernel block device (e.g. /dev/zd0)"""
        return self.zvol_path.resolve()

    @property
    def install_device(self) -> Path:
        """Block device holding the installed filesystem"""
        if self.preparation is TargetPreparation.PARTITION:
            return Path(f"{self.device}p1")
        if self.preparation is TargetPreparation.RAW:
            # Subiquity creates an ESP first
            return Path(f"{self.device}p2")
        return self.device

    def create(self) -> None:
        debug(f"Creating temporary volume {self.dataset} ({self.size_gib} GiB)")
        SysCommand(f"zfs create -V {self.size_gib}G {self.dataset}")
        wait_for_path(self.zvol_path)
        self.prepare()
        info(f"Temporary volume ready: {self.install_device}")

    def prepare(self) -> None:
        if self.preparation is TargetPreparation.PARTITION:
            SysCommand(f"sgdisk -n1:0:0 -t1:8300 {self.device}")
            udev_settle()
            wait_for_path(self.install_device)
        elif self.preparation is TargetPreparation.FORMAT:
            SysCommand(f"mkfs.ext4 -F {self.device}")

    def destroy(self) -> None:
        SysCommand(f"zfs destroy {self.dataset}")
        debug(f"Destroyed temporary volume {self.dataset}")


def choose_installer(ctx: InstallContext) -> OSInstaller:
    script = ctx.run_config.os_installation_script
    if script is not None:
        return CustomScriptInstaller(ctx, script)
    return ctx.invoke("select_os_installer")


def mounts_below(directory: Path) -> list[Path]:
    """Mountpoints nested in a directory, deepest first"""
    prefix = str(directory).rstrip("/") + "/"
    mountpoints = []
    for line in SysCommand("mount").decode().splitlines():
        fields = line.split()
        if len(fields) > 2 and fields[2].startswith(prefix):
            mountpoints.append(Path(fields[2]))
    return sorted(mountpoints, key=lambda path: len(path.parts), reverse=True)


def copy_installed_system(source: Path, destination: Path) -> None:
    excludes = " ".join(f"--exclude={path}" for path in RSYNC_EXCLUDES)
    info(f"Copying the installed system from {source} to {destination}")
    try:
        SysCommand(f"rsync -aXH {excludes} --info=progress2 --no-inc-recursive --human-readable {source}/ {destination}", peek_output=True)
    except SysCallError as e:
        error(f"Failed to copy the installed system: {e!s}")
        raise


def recreate_resolver_stub(root: Path) -> None:
    """`/etc/resolv.conf` links into /run, which is not copied; the jail needs the target to exist"""
    stub = root / RESOLVER_STUB
    stub.parent.mkdir(parents=True, exist_ok=True)
    stub.touch()


@step("install_operating_system")
def install_operating_system(ctx: InstallContext) -> None:
    installer = choose_installer(ctx)
    volume = TemporaryVolume(ctx.run_config.rpool_name, installer.preparation)
    volume.create()
    ctx.temporary_volume = volume

    info(f"Installing the operating system with {installer.name}")
    source = installer.install(volume)
    installer.finalize(volume, source)
    ctx.installed_os_source = source


@step("sync_os_to_root_pool")
def sync_os_to_root_pool(ctx: InstallContext) -> None:
    source = ctx.installed_os_source or ctx.installed_os_dir

    if source == ctx.zfs_mount_dir:
        info("The system has been installed straight into the root pool; nothing to copy")
    else:
        # Some installers leave e.g. /boot/efi and /cdrom mounted under the target
        for mountpoint in mounts_below(source):
            SysCommand(f"umount {mountpoint}")

        copy_installed_system(source, ctx.zfs_mount_dir)
        recreate_resolver_stub(ctx.zfs_mount_dir)

        if is_mountpoint(source):
            SysCommand(f"umount {source}")

    if ctx.temporary_volume is not None:
        ctx.temporary_volume.destroy()
        ctx.temporary_volume = None


@step("reclaim_temporary_space")
def reclaim_temporary_space(ctx: InstallContext) -> None:
    config = ctx.run_config
    if ctx.layout is None:
        raise RuntimeError("The partition layout is not available")

    manager = DiskManager(config.selected_disks)

    if not ctx.layout.needs_reclaim:
        debug("The tail space is kept; wiping the temporary partitions")
        manager.wipe_tail_partitions()
        return

    ZFSPool.export_all()
    manager.remove_tail_partitions(ctx.layout)

    ZFSPool.import_pool(config.rpool_name, ctx.zfs_mount_dir, ctx.passphrase_relay)
    ZFSPool.import_pool(config.bpool_name, ctx.zfs_mount_dir)

    for disk in config.selected_disks:
        ZFSPool.online_expand(config.rpool_name, partition_path(disk, ROOT_PARTITION))

    info(f"Root pool partitions grown to {ctx.layout.reclaimed_root_mib} MiB")
