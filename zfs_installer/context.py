from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from zfs_installer.dispatch import StepRegistry, get_step_registry
from zfs_installer.shared import INSTALLED_OS_MOUNT_DIR, ZFS_MOUNT_DIR, InvokeMode

if TYPE_CHECKING:
    from zfs_installer.config import RunConfig
    from zfs_installer.disk.discovery import DiskRef
    from zfs_installer.disk.planner import PartitionLayout
    from zfs_installer.distro import DistroProfile
    from zfs_installer.menu import PromptProvider
    from zfs_installer.transplant import TemporaryVolume
    from zfs_installer.zfs.secret import SecretRelay


@dataclass
class InstallContext:
    """State threaded through every provisioning step.

    The run configuration is frozen once the questions have been answered;
    everything else is the small amount of state the steps hand to each other.
    """

    distro: DistroProfile
    prompts: PromptProvider
    log_dir: Path
    registry: StepRegistry = field(default_factory=get_step_registry)
    zfs_mount_dir: Path = ZFS_MOUNT_DIR
    installed_os_dir: Path = INSTALLED_OS_MOUNT_DIR
    # Values preset via replay file and environment; never prompted for
    preset: dict[str, Any] = field(default_factory=dict)
    config: RunConfig | None = None
    suitable_disks: list[DiskRef] = field(default_factory=list)
    layout: PartitionLayout | None = None
    use_ppa: bool = False
    temporary_volume: TemporaryVolume | None = None
    # Directory the installed system is copied from
    installed_os_source: Path | None = None
    passphrase_relay: SecretRelay | None = None

    @property
    def run_config(self) -> RunConfig:
        if self.config is None:
            raise RuntimeError("The run configuration has not been frozen yet")
        return self.config

    def invoke(self, step: str, mode: InvokeMode = InvokeMode.REQUIRED) -> Any:
        return self.registry.invoke(step, self, mode)

    def invoke_generic(self, step: str) -> Any:
        return self.registry.invoke_generic(step, self)
