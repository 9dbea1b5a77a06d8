from __future__ import annotations

import shlex
from pathlib import Path

from archinstall import debug, info
from archinstall.lib.general import SysCommand

from zfs_installer.context import InstallContext
from zfs_installer.dispatch import step

VIRTUAL_FILESYSTEMS = ("proc", "sys", "dev")
FALLBACK_NAMESERVER = "8.8.8.8"


class Jail:
    """The installed system, mounted at the pools' altroot, as a chroot"""

    def __init__(self, root: Path):
        self.root = root

    def path(self, path: str | Path) -> Path:
        """Host path of a path inside the jail"""
        return self.root / str(path).lstrip("/")

    def execute(self, command: str, peek_output: bool = False) -> str:
        return SysCommand(f"chroot {self.root} bash -c {shlex.quote(command)}", peek_output=peek_output).decode()

    def apt_install(self, *packages: str) -> None:
        debug(f"Installing in the jail: {' '.join(packages)}")
        self.execute(f"apt install --yes {' '.join(packages)}", peek_output=True)

    def apt_update(self) -> None:
        self.execute("apt update", peek_output=True)

    def append_line(self, path: str | Path, line: str) -> None:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a") as f:
            f.write(f"{line}\n")

    def append_fstab(self, line: str) -> None:
        self.append_line("/etc/fstab", line)

    def bind_virtual_filesystems(self) -> None:
        for name in VIRTUAL_FILESYSTEMS:
            SysCommand(f"mount --rbind /{name} {self.path(name)}")

    def add_nameserver(self, nameserver: str = FALLBACK_NAMESERVER) -> None:
        # resolv.conf is usually a symlink into /run; the stub has been recreated by the transplant
        self.execute(f"echo 'nameserver {nameserver}' >> /etc/resolv.conf")


def jail_for(ctx: InstallContext) -> Jail:
    return Jail(ctx.zfs_mount_dir)


@step("prepare_jail")
def prepare_jail(ctx: InstallContext) -> None:
    jail = jail_for(ctx)
    jail.bind_virtual_filesystems()
    jail.add_nameserver()
    info(f"Jail ready at {jail.root}")
