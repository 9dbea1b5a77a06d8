from __future__ import annotations

from archinstall import error, info
from archinstall.lib.exceptions import SysCallError

from .base import InitramfsHandler

RESUME_CONFIG = "/etc/initramfs-tools/conf.d/resume"


class InitramfsToolsHandler(InitramfsHandler):
    def install_packages(self) -> list[str]:
        return ["zfs-initramfs"]

    def configure(self) -> None:
        # The swap device is a zvol, which can't be resumed from
        resume_conf = self.jail.path(RESUME_CONFIG)
        resume_conf.parent.mkdir(parents=True, exist_ok=True)
        resume_conf.write_text("RESUME=none\n")

    def generate_initramfs(self) -> bool:
        # Also picks up the keyboard layout, needed to type the passphrase at boot
        try:
            self.jail.execute("update-initramfs -u", peek_output=True)
        except SysCallError as e:
            error(f"Failed to regenerate the initramfs: {e!s}")
            return False
        info("Initramfs regenerated")
        return True
