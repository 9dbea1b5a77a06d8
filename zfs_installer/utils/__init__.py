import re
import time
from pathlib import Path
from typing import List

from archinstall import debug, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.shared import UDEVADM_SETTLE_TIMEOUT


def modify_zfs_cache_mountpoints(content: str, *mountpoints: Path) -> str:
    """Rewrite the mountpoint column of a zfs-list.cache file to be root-relative

    Args:
        content: Tab-separated ZFS cache content
        mountpoints: Temporary mountpoint prefixes to strip (e.g. /mnt, /target)

    Returns:
        Modified cache content with correct final mountpoints
    """

    def process_mountpoint(path: str, prefix: str) -> str:
        if path == prefix:
            return '/'
        if path.startswith(prefix + '/'):
            return '/' + path[len(prefix) + 1:]
        return path

    prefixes = [str(mountpoint).rstrip('/') for mountpoint in mountpoints]
    lines = content.splitlines()
    modified_lines: List[str] = []

    for line in lines:
        fields = line.split('\t')
        if len(fields) > 1:
            for prefix in prefixes:
                rewritten = process_mountpoint(fields[1], prefix)
                if rewritten != fields[1]:
                    fields[1] = rewritten
                    break
        modified_lines.append('\t'.join(fields))

    return '\n'.join(modified_lines)


def parse_size_mib(size: str) -> int:
    """Convert a size with `M`/`G` suffix (e.g. "2048M", "3G") to MiB"""
    match = re.fullmatch(r"(\d+)([MmGg])", size.strip())
    if not match:
        raise ValueError(f"Invalid size (expected an integer with M or G suffix): {size}")
    value = int(match.group(1))
    return value * 1024 if match.group(2).upper() == "G" else value


def wait_for_path(path: Path, timeout_seconds: float = 10.0, poll_interval: float = 0.25) -> bool:
    """Wait until a device node or symlink exists.

    Device node creation is racy on some virtualization platforms, so the wait
    is best-effort: on timeout a warning is logged and False is returned, and
    the caller proceeds anyway.
    """
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if path.exists():
            return True
        time.sleep(poll_interval)
    warn(f"Device path did not appear within {timeout_seconds}s, proceeding anyway: {path}")
    return False


def udev_settle(timeout: int = UDEVADM_SETTLE_TIMEOUT) -> None:
    """Wait for the udev event queue; the exit code is not reliable, so failures are not fatal"""
    try:
        SysCommand(f"udevadm settle --timeout {timeout}")
    except SysCallError as e:
        debug(f"udevadm settle did not complete cleanly: {e!s}")


def is_mountpoint(path: Path) -> bool:
    try:
        SysCommand(f"mountpoint -q {path}")
    except SysCallError:
        return False
    return True
