"""
Diagnostic logs, written to the log directory for bug reports.

The command trace itself is kept by archinstall (every SysCommand is logged);
at exit it is copied next to the other logs.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from archinstall import debug, info, warn
from archinstall.lib.exceptions import SysCallError
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.disk.discovery import BY_ID_DIR, PARTITION_PATTERN, device_properties
from zfs_installer.dispatch import step

DEFAULT_LOG_DIR = Path(tempfile.gettempdir()) / "zfs-installer"
ARCHINSTALL_LOG_DIR = Path("/var/log/archinstall")
ARCHINSTALL_LOG_FILES = ("install.log", "cmd_history.txt")

OS_INFORMATION_LOG = "os_information.log"
RUNNING_PROCESSES_LOG = "running_processes.log"
DISKS_LOG = "disks.log"


def prepare_log_dir(log_dir: Path) -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    debug(f"Logging to {log_dir}")
    return log_dir


def desktop_environment() -> str | None:
    """XDG_CURRENT_DESKTOP of the parent process, so that `sudo -E` is not required"""
    try:
        environ = Path(f"/proc/{os.getppid()}/environ").read_bytes()
    except OSError:
        return None
    for entry in environ.split(b"\0"):
        if entry.startswith(b"XDG_CURRENT_DESKTOP="):
            return entry.decode(errors="replace")
    return None


def describe_disks(by_id_dir: Path = BY_ID_DIR) -> str:
    entries = sorted(by_id_dir.iterdir())
    sections = [f"{entry.name} -> {os.readlink(entry)}" for entry in entries if entry.is_symlink()]

    for entry in entries:
        if PARTITION_PATTERN.search(entry.name):
            continue
        try:
            properties = device_properties(entry.resolve())
        except SysCallError as e:
            properties = {"ERROR": str(e)}
        listing = "\n".join(f"{key}={value}" for key, value in properties.items())
        sections.append(f"\n## DEVICE: {entry} ################################\n\n{listing}\n")

    return "\n".join(sections) + "\n"


@step("store_os_distro_information")
def store_os_distro_information(ctx: InstallContext) -> None:
    content = SysCommand("lsb_release --all").decode()
    desktop = desktop_environment()
    if desktop:
        content = f"{content.rstrip()}\n{desktop}\n"
    (ctx.log_dir / OS_INFORMATION_LOG).write_text(content)


@step("store_os_distro_information", distro="Debian")
def store_os_distro_information_debian(ctx: InstallContext) -> None:
    ctx.invoke_generic("store_os_distro_information")
    debian_version = Path("/etc/debian_version").read_text().strip()
    with (ctx.log_dir / OS_INFORMATION_LOG).open("a") as f:
        f.write(f"DEBIAN_VERSION={debian_version}\n")


@step("store_running_processes")
def store_running_processes(ctx: InstallContext) -> None:
    # The simplest way of finding out the desktop environment
    (ctx.log_dir / RUNNING_PROCESSES_LOG).write_text(SysCommand("ps ax --forest").decode())


@step("save_disks_log")
def save_disks_log(ctx: InstallContext) -> None:
    (ctx.log_dir / DISKS_LOG).write_text(describe_disks())


def collect_command_trace(log_dir: Path, source_dir: Path = ARCHINSTALL_LOG_DIR) -> None:
    for name in ARCHINSTALL_LOG_FILES:
        source = source_dir / name
        if not source.exists():
            continue
        try:
            SysCommand(f"cp {source} {log_dir / name}")
        except SysCallError as e:
            warn(f"Failed to copy {source}: {e!s}")
    info(f"Logs are available in {log_dir}")
