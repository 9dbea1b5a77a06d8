from __future__ import annotations

import os
import shlex
from collections.abc import Sequence
from pathlib import Path

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand
from pydantic import BaseModel, Field, SecretStr

from zfs_installer.config import DEFAULT_RAIDZ_THRESHOLDS
from zfs_installer.context import InstallContext
from zfs_installer.disk import partition_path
from zfs_installer.disk.planner import BOOT_PARTITION, ROOT_PARTITION
from zfs_installer.dispatch import step
from zfs_installer.shared import ZFS_MOUNT_DIR, RaidType
from zfs_installer.utils import wait_for_path
from zfs_installer.zfs.secret import SecretRelay

# Properties the installer sets itself; user supplied values are discarded
FORCED_PROPERTIES = frozenset({"mountpoint", "encryption", "keylocation", "keyformat"})

SWAP_VOLUME_OPTIONS = [
    "-o", "compression=zle",
    "-o", "logbias=throughput",
    "-o", "sync=always",
    "-o", "primarycache=metadata",
    "-o", "secondarycache=none",
    "-o", "com.sun:auto-snapshot=false",
]


class RaidPolicy:
    """Chooses the pool topology from the number of disks"""

    def __init__(self, thresholds: Sequence[tuple[int, RaidType]] = DEFAULT_RAIDZ_THRESHOLDS):
        self.thresholds = sorted(thresholds, key=lambda t: t[0], reverse=True)

    def choose(self, disk_count: int) -> RaidType:
        if disk_count < 1:
            raise ValueError("At least one disk is required")
        if disk_count == 1:
            return RaidType.NONE
        if disk_count == 2:
            return RaidType.MIRROR
        for minimum, raid_type in self.thresholds:
            if disk_count >= minimum:
                return raid_type
        return RaidType.MIRROR

    def resolve(self, override: RaidType | None, disk_count: int) -> RaidType:
        if override is not None:
            return override
        return self.choose(disk_count)


class EncryptionConfig(BaseModel):
    passphrase: SecretStr
    cipher: str = Field(default="aes-256-gcm")
    keyformat: str = Field(default="passphrase")
    keylocation: str = Field(default="prompt")

    def create_options(self) -> list[str]:
        return ["-O", f"encryption={self.cipher}", "-O", f"keylocation={self.keylocation}", "-O", f"keyformat={self.keyformat}"]


def _property_name(assignment: str) -> str:
    return assignment.split("=", 1)[0].strip()


def sanitize_create_options(options: Sequence[str]) -> list[str]:
    """Drops user options that clash with the mount/encryption settings the installer forces"""
    sanitized: list[str] = []
    tokens = iter(options)

    for token in tokens:
        if token in ("-o", "-O"):
            assignment = next(tokens, "")
            if _property_name(assignment) in FORCED_PROPERTIES:
                warn(f"Ignoring pool create option: {token} {assignment}")
                continue
            sanitized += [token, assignment]
        elif token.startswith(("-o", "-O")) and "=" in token:
            if _property_name(token[2:]) in FORCED_PROPERTIES:
                warn(f"Ignoring pool create option: {token}")
                continue
            sanitized.append(token)
        elif token in ("-R", "-m"):
            warn(f"Ignoring pool create option: {token} {next(tokens, '')}")
        elif token == "-f":
            continue
        else:
            sanitized.append(token)

    return sanitized


class PoolSpec(BaseModel):
    name: str
    vdevs: list[Path]
    raid_type: RaidType
    create_options: list[str] = Field(default_factory=list)
    mountpoint: str
    altroot: Path = ZFS_MOUNT_DIR
    encryption: EncryptionConfig | None = None

    def create_command(self) -> str:
        arguments = ["zpool", "create"]
        if self.encryption is not None:
            arguments += self.encryption.create_options()
        arguments += sanitize_create_options(self.create_options)
        arguments += ["-O", f"mountpoint={self.mountpoint}", "-R", str(self.altroot), "-f", self.name]
        if self.raid_type.vdev_keyword:
            arguments.append(self.raid_type.vdev_keyword)
        arguments += [str(vdev) for vdev in self.vdevs]
        return shlex.join(arguments)


class ZFSPool:
    """Handles ZFS pool operations"""

    @staticmethod
    def create(spec: PoolSpec, relay: SecretRelay | None = None) -> None:
        debug(f"Creating ZFS pool {spec.name} ({spec.raid_type.value}) on {', '.join(str(v) for v in spec.vdevs)}")
        command = spec.create_command()
        if spec.encryption is not None:
            if relay is None:
                raise ValueError(f"Pool {spec.name} is encrypted, but no passphrase relay was provided")
            command = relay.redirect(command)

        try:
            SysCommand(command)
            info(f"Created pool {spec.name}")
        except SysCallError as e:
            error(f"Failed to create pool {spec.name}: {e!s}")
            raise

    @staticmethod
    def export_all() -> None:
        debug("Exporting all pools")
        os.sync()
        SysCommand("zpool export -a")

    @staticmethod
    def import_pool(name: str, altroot: Path = ZFS_MOUNT_DIR, relay: SecretRelay | None = None) -> None:
        """Imports a pool; with a relay, the encryption key is loaded from it"""
        debug(f"Importing pool {name} to {altroot}")
        try:
            if relay is None:
                SysCommand(f"zpool import -R {altroot} {name}")
            else:
                SysCommand(relay.redirect(f"zpool import -l -R {altroot} {name}"))
            info(f"Imported pool {name}")
        except SysCallError as e:
            error(f"Failed to import pool {name}: {e!s}")
            raise

    @staticmethod
    def online_expand(name: str, device: Path) -> None:
        SysCommand(f"zpool online -e {name} {device}")


def build_pool_specs(ctx: InstallContext) -> tuple[PoolSpec, PoolSpec]:
    """Root and boot pool specs; both share the same topology"""
    config = ctx.run_config
    raid_type = RaidPolicy(config.raidz_thresholds).resolve(config.raid_type, len(config.selected_disks))
    encryption = EncryptionConfig(passphrase=config.passphrase) if config.passphrase is not None else None

    rpool = PoolSpec(
        name=config.rpool_name,
        vdevs=[partition_path(disk, ROOT_PARTITION) for disk in config.selected_disks],
        raid_type=raid_type,
        create_options=config.rpool_create_options,
        mountpoint="/",
        altroot=ctx.zfs_mount_dir,
        encryption=encryption,
    )
    bpool = PoolSpec(
        name=config.bpool_name,
        vdevs=[partition_path(disk, BOOT_PARTITION) for disk in config.selected_disks],
        raid_type=raid_type,
        create_options=config.bpool_create_options,
        mountpoint="/boot",
        altroot=ctx.zfs_mount_dir,
    )
    return rpool, bpool


@step("create_pools")
def create_pools(ctx: InstallContext) -> None:
    rpool, bpool = build_pool_specs(ctx)
    info(f"Pool topology: {rpool.raid_type.value}")

    if rpool.encryption is not None and ctx.passphrase_relay is None:
        ctx.passphrase_relay = SecretRelay(rpool.encryption.passphrase)

    # The root pool goes first, so that the boot pool is mounted inside it
    ZFSPool.create(rpool, ctx.passphrase_relay)
    ZFSPool.create(bpool)


@step("create_swap_volume")
def create_swap_volume(ctx: InstallContext) -> None:
    config = ctx.run_config
    if config.swap_size == 0:
        debug("No swap requested")
        return

    volume = f"{config.rpool_name}/swap"
    page_size = os.sysconf("SC_PAGE_SIZE")
    options = shlex.join(SWAP_VOLUME_OPTIONS)

    try:
        SysCommand(f"zfs create -V {config.swap_size}G -b {page_size} {options} {volume}")
        wait_for_path(Path(f"/dev/zvol/{volume}"))
        SysCommand(f"mkswap -f /dev/zvol/{volume}")
        info(f"Created {config.swap_size} GiB swap volume {volume}")
    except SysCallError as e:
        error(f"Failed to create the swap volume: {e!s}")
        raise
