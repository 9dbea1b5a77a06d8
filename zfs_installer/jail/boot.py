"""
Boot configuration of the installed system: EFI partitions, GRUB, boot pool
import, initramfs, ZED cache and the remaining fstab settings.
"""

from __future__ import annotations

import re
import shlex
import time
from pathlib import Path

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.disk import partition_path
from zfs_installer.disk.planner import EFI_PARTITION
from zfs_installer.dispatch import step
from zfs_installer.exceptions import InstallerError, ZedCacheTimeoutError
from zfs_installer.initramfs import InitramfsToolsHandler
from zfs_installer.jail import Jail, jail_for
from zfs_installer.utils import modify_zfs_cache_mountpoints

GRUB_DEFAULTS = "/etc/default/grub"
EFI_MOUNT_DIR = "/boot/efi"
EFI_LOADER = r"\EFI\ubuntu\grubx64.efi"
EFI_MOUNT_OPTIONS = "nofail,x-systemd.device-timeout=1"

ZFS_LIST_CACHE_DIR = "/etc/zfs/zfs-list.cache"
ZEDLET = "history_event-zfs-list-cacher.sh"
ZEDLET_SOURCE_DIR = "/usr/lib/zfs-linux/zed.d"
ZED_CACHE_TIMEOUT = 5.0

BPOOL_IMPORT_UNIT = """[Unit]
DefaultDependencies=no
Before=zfs-import-scan.service
Before=zfs-import-cache.service

[Service]
Type=oneshot
RemainAfterExit=yes
ExecStartPre=/bin/sh -c '[ -f /etc/zfs/zpool.cache ] && mv /etc/zfs/zpool.cache /etc/zfs/preboot_zpool.cache || true'
ExecStart=/sbin/zpool import -N -o cachefile=none {pool}
ExecStartPost=/bin/sh -c '[ -f /etc/zfs/preboot_zpool.cache ] && mv /etc/zfs/preboot_zpool.cache /etc/zfs/zpool.cache || true'

[Install]
WantedBy=zfs-import.target
"""

TRIM_SERVICE = """[Unit]
Description=zpool trim on %i
Documentation=man:zpool-trim(8)
Requires=zfs.target
After=zfs.target
ConditionPathIsDirectory=/sys/module/zfs

[Service]
Nice=19
IOSchedulingClass=idle
KillSignal=SIGINT
ExecStart=/sbin/zpool trim -w %i
"""

TRIM_TIMER = """[Unit]
Description=Weekly zpool trim on %i

[Timer]
OnCalendar=weekly
AccuracySec=1h
Persistent=true

[Install]
WantedBy=multi-user.target
"""


def bpool_import_unit_name(pool: str) -> str:
    return f"zfs-import-{pool}.service"


def render_bpool_import_unit(pool: str) -> str:
    """Imports the boot pool ahead of the standard import units, without touching the pool cache"""
    return BPOOL_IMPORT_UNIT.format(pool=pool)


def _edit_kernel_cmdline(line: str, prepend: str, remove: tuple[str, ...] = ()) -> str:
    match = re.match(r'^(\w+)="(.*)"\s*$', line)
    if not match:
        return line
    parameters = [p for p in match.group(2).split() if p not in remove]
    if prepend not in parameters:
        parameters.insert(0, prepend)
    return f'{match.group(1)}="{" ".join(parameters)}"'


def patch_grub_defaults(content: str, rpool_name: str) -> str:
    """Root pool on the kernel command line, and a visible text mode boot.

    Text mode is required for the passphrase prompt; behind the splash screen
    the boot fails with a confusing permission error instead.
    """
    lines: list[str] = []
    for line in content.splitlines():
        if line.startswith("GRUB_CMDLINE_LINUX_DEFAULT="):
            line = _edit_kernel_cmdline(line, "init_on_alloc=0", remove=("quiet", "splash"))
        elif line.startswith("GRUB_CMDLINE_LINUX="):
            line = _edit_kernel_cmdline(line, f"root=ZFS={rpool_name}")
        elif line.startswith(("GRUB_TIMEOUT_STYLE=hidden", "GRUB_HIDDEN_")):
            line = f"#{line}"
        elif line.strip() == "GRUB_TIMEOUT=0":
            line = "GRUB_TIMEOUT=5"
        elif line.strip() == "#GRUB_TERMINAL=console":
            line = "GRUB_TERMINAL=console"
        lines.append(line)

    for setting in ("GRUB_DISABLE_OS_PROBER=true", "GRUB_RECORDFAIL_TIMEOUT=5"):
        if setting not in lines:
            lines.append(setting)

    return "\n".join(lines) + "\n"


def partition_uuid(partition: Path) -> str:
    return SysCommand(f"blkid -s PARTUUID -o value {partition}").decode().strip()


def efi_fstab_entry(partition: Path, mountpoint: str) -> str:
    return f"PARTUUID={partition_uuid(partition)} {mountpoint} vfat {EFI_MOUNT_OPTIONS} 0 1"


@step("prepare_efi_partition")
def prepare_efi_partition(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    first_disk = ctx.run_config.selected_disks[0]

    # Replaces the installer's fstab, which refers to the temporary volume
    jail.path("/etc/fstab").write_text(efi_fstab_entry(partition_path(first_disk, EFI_PARTITION), EFI_MOUNT_DIR) + "\n")
    jail.execute(f"mkdir -p {EFI_MOUNT_DIR} && mount {EFI_MOUNT_DIR}")

    try:
        jail.execute("grub-install", peek_output=True)
    except SysCallError as e:
        error(f"Failed to install GRUB: {e!s}")
        raise


@step("configure_and_update_grub")
def configure_and_update_grub(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    defaults = jail.path(GRUB_DEFAULTS)
    defaults.write_text(patch_grub_defaults(defaults.read_text(), ctx.run_config.rpool_name))
    debug(f"Patched {GRUB_DEFAULTS}")

    jail.execute("update-grub", peek_output=True)
    info("GRUB configured")


@step("sync_efi_partitions")
def sync_efi_partitions(ctx: InstallContext) -> None:
    """Mirrors the EFI partition to the other disks, so that any of them can boot"""
    jail = jail_for(ctx)

    for index, disk in enumerate(ctx.run_config.selected_disks[1:], start=2):
        mountpoint = f"{EFI_MOUNT_DIR}{index}"
        jail.append_fstab(efi_fstab_entry(partition_path(disk, EFI_PARTITION), mountpoint))
        jail.execute(f"mkdir -p {mountpoint} && mount {mountpoint}")
        jail.execute(f"rsync --archive --delete {EFI_MOUNT_DIR}/ {mountpoint}")

        SysCommand(f"efibootmgr --create --disk {disk} --label ubuntu-{index} --loader {shlex.quote(EFI_LOADER)}")
        jail.execute(f"umount {mountpoint}")
        debug(f"Synced EFI partition of {disk}")

    jail.execute(f"umount {EFI_MOUNT_DIR}")


@step("configure_boot_pool_import")
def configure_boot_pool_import(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    pool = ctx.run_config.bpool_name
    unit = bpool_import_unit_name(pool)

    jail.path(f"/etc/systemd/system/{unit}").write_text(render_bpool_import_unit(pool))
    jail.execute(f"systemctl enable {unit}")

    jail.execute(f"zfs set mountpoint=legacy {pool}")
    jail.append_fstab(f"{pool} /boot zfs nodev,relatime,x-systemd.requires={unit} 0 0")
    info(f"Boot pool import configured ({unit})")


@step("update_initramfs")
def update_initramfs(ctx: InstallContext) -> None:
    handler = InitramfsToolsHandler(jail_for(ctx))
    if not handler.generate_initramfs():
        raise InstallerError("Failed to regenerate the initramfs")


def wait_for_non_empty(path: Path, timeout_seconds: float = ZED_CACHE_TIMEOUT, poll_interval: float = 0.25) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if path.exists() and path.stat().st_size > 0:
            return True
        time.sleep(poll_interval)
    return False


def _stop_zed(jail: Jail) -> None:
    try:
        jail.execute("pkill zed")
    except SysCallError as e:
        debug(f"ZED was not running: {e!s}")


@step("update_zed_cache", distro="Debian")
def update_zed_cache_debian(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    rpool = ctx.run_config.rpool_name

    cache_file = jail.path(f"{ZFS_LIST_CACHE_DIR}/{rpool}")
    cache_file.parent.mkdir(parents=True, exist_ok=True)
    cache_file.touch()

    # Debian may ship the link already
    zedlet = jail.path(f"/etc/zfs/zed.d/{ZEDLET}")
    if not zedlet.is_symlink() and not zedlet.exists():
        zedlet.parent.mkdir(parents=True, exist_ok=True)
        zedlet.symlink_to(f"{ZEDLET_SOURCE_DIR}/{ZEDLET}")

    # Required by the zedlet, but missing
    jail.path("/run/lock").mkdir(parents=True, exist_ok=True)

    jail.execute("setsid zed -F > /dev/null 2>&1 < /dev/null &")
    try:
        if cache_file.stat().st_size == 0:
            # Any property change makes ZED write the cache
            jail.execute(f"zfs set canmount=noauto {rpool}")
        if not wait_for_non_empty(cache_file):
            raise ZedCacheTimeoutError("The ZFS cache hasn't been updated by ZED!")
    finally:
        _stop_zed(jail)

    content = cache_file.read_text()
    cache_file.write_text(modify_zfs_cache_mountpoints(content, ctx.zfs_mount_dir, ctx.installed_os_dir) + "\n")
    info(f"ZED cache populated for {rpool}")


@step("configure_trim_timer")
def configure_trim_timer(ctx: InstallContext) -> None:
    config = ctx.run_config
    if not config.trim_timer:
        debug("Periodic trim not requested")
        return

    jail = jail_for(ctx)
    jail.path("/etc/systemd/system/zfs-trim@.service").write_text(TRIM_SERVICE)
    jail.path("/etc/systemd/system/zfs-trim@.timer").write_text(TRIM_TIMER)

    for pool in (config.bpool_name, config.rpool_name):
        jail.execute(f"systemctl enable zfs-trim@{pool}.timer")
    info("Weekly trim enabled")


@step("configure_remaining_settings")
def configure_remaining_settings(ctx: InstallContext) -> None:
    config = ctx.run_config
    jail = jail_for(ctx)

    if config.swap_size > 0:
        jail.append_fstab(f"/dev/zvol/{config.rpool_name}/swap none swap discard 0 0")

    InitramfsToolsHandler(jail).configure()
