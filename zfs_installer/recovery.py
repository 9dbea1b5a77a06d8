from __future__ import annotations

import time
from pathlib import Path
from types import TracebackType

from archinstall import debug, error, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.utils import is_mountpoint
from zfs_installer.zfs import ZFSPool

# Unmounted in this order
JAIL_VIRTUAL_FILESYSTEMS = ("dev", "sys", "proc")
MAX_UNMOUNT_WAIT = 5.0


class ExitHandler:
    """Leaves the system in a re-runnable state, whatever the outcome of the run.

    On exit the jail's virtual filesystems are unmounted and all the pools are
    exported; on failure the configuration of the run is printed as shell
    exports, so that it can be replayed. Cleanup failures are logged and never
    replace the original exception.
    """

    def __init__(self, ctx: InstallContext, max_unmount_wait: float = MAX_UNMOUNT_WAIT, poll_interval: float = 0.5) -> None:
        self.ctx = ctx
        self.max_unmount_wait = max_unmount_wait
        self.poll_interval = poll_interval

    def __enter__(self) -> ExitHandler:
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: TracebackType | None) -> bool:
        self.cleanup()
        if exc_type is not None:
            self.print_replay_exports()
        return False

    def cleanup(self) -> None:
        for action in (self.unmount_virtual_filesystems, self.export_pools, self.close_relay):
            try:
                action()
            except (SysCallError, OSError) as e:
                error(f"Cleanup step {action.__name__} failed: {e!s}")

    def _virtual_filesystem_paths(self) -> list[Path]:
        return [self.ctx.zfs_mount_dir / name for name in JAIL_VIRTUAL_FILESYSTEMS]

    def unmount_virtual_filesystems(self) -> None:
        mounted = [path for path in self._virtual_filesystem_paths() if is_mountpoint(path)]
        if not mounted:
            return

        for path in mounted:
            SysCommand(f"umount --recursive --force --lazy {path}")

        # Lazy unmounts of recursive binds don't always go through at the first attempt
        deadline = time.monotonic() + self.max_unmount_wait
        while time.monotonic() < deadline and any(is_mountpoint(path) for path in mounted):
            time.sleep(self.poll_interval)

        for path in mounted:
            if is_mountpoint(path):
                warn(f"Re-issuing umount for {path}")
                SysCommand(f"umount --recursive --force --lazy {path}")

    @staticmethod
    def export_pools() -> None:
        ZFSPool.export_all()

    def close_relay(self) -> None:
        if self.ctx.passphrase_relay is not None:
            self.ctx.passphrase_relay.close()
            self.ctx.passphrase_relay = None

    def print_replay_exports(self) -> None:
        if self.ctx.config is None:
            debug("No configuration to replay")
            return
        info("The installation failed. In order to replay it, export the following variables:\n")
        info(self.ctx.config.to_exports())
