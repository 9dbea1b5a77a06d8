"""
The questions asked before anything is touched.

Values preset through the environment or a replay file are never asked for;
everything else is prompted, validated, and frozen into the RunConfig.
"""

from __future__ import annotations

import os
import re
import shlex
from pathlib import Path
from typing import Any

from archinstall import debug, info
from pydantic import SecretStr

from zfs_installer.config import (
    DEFAULT_BPOOL_CREATE_OPTIONS,
    DEFAULT_RPOOL_CREATE_OPTIONS,
    MIN_PASSPHRASE_LENGTH,
    POOL_NAME_PATTERN,
    RunConfig,
    coerce_raidz_thresholds,
)
from zfs_installer.context import InstallContext
from zfs_installer.dispatch import step
from zfs_installer.menu.prompts import PromptProvider
from zfs_installer.shared import DEFAULT_BOOT_PARTITION_SIZE, TEMPORARY_VOLUME_SIZE_GIB, InvokeMode, RaidType
from zfs_installer.zfs import RaidPolicy

# Leaves out some RAM, which can be occupied/shared
MEMORY_WARNING_LIMIT_MIB = 3584 - 128

INTRO_BANNER = """Hello!

This installer will prepare the ZFS pools on the system, install the operating system, and configure the boot.

In order to stop the procedure, hit Esc during dialogs, or Ctrl+C while any operation is running.
"""

EXIT_BANNER = """The system has been successfully prepared and installed.

You now need to perform a hard reset, then enjoy your ZFS system :-)"""

MEMORY_WARNING = """WARNING! In some cases, the ZFS modules require compilation.

On systems with relatively little RAM and many hardware threads, the procedure may crash during the compilation (e.g. 3 GB/16 threads).

In such cases, the module building may fail abruptly, either without visible errors (leaving "process killed" messages in the syslog), or with package installation errors (leaving odd errors in the module's `make.log`)."""

TAIL_SPACE_HEADER = f"""Enter the space in GiB to leave at the end of each disk (0 for none).

If the tail space is less than the space required for the temporary O/S installation, it will be reclaimed after it.

WATCH OUT! In rare cases, the reclamation may cause an error; if this happens, set the tail space to {TEMPORARY_VOLUME_SIZE_GIB} gigabytes. It's still possible to reclaim the space after the ZFS installation is over."""


def _info_messages_enabled(ctx: InstallContext) -> bool:
    return not ctx.preset.get("no_info_messages", False)


def display_intro_banner(ctx: InstallContext) -> None:
    if _info_messages_enabled(ctx):
        ctx.prompts.message(INTRO_BANNER)


def system_memory_mib() -> int:
    return os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES") // (1024 * 1024)


def check_system_memory(ctx: InstallContext, memory_mib: int | None = None) -> None:
    memory_mib = system_memory_mib() if memory_mib is None else memory_mib
    debug(f"System memory: {memory_mib} MiB")
    if memory_mib < MEMORY_WARNING_LIMIT_MIB and _info_messages_enabled(ctx):
        ctx.prompts.message(MEMORY_WARNING)


def display_exit_banner(ctx: InstallContext) -> None:
    if ctx.config is not None and not ctx.config.no_info_messages:
        ctx.prompts.message(EXIT_BANNER)
    else:
        info(EXIT_BANNER)


def _ask_validated(prompts: PromptProvider, title: str, header: str, default: str, pattern: str, invalid: str) -> str:
    message = ""
    while True:
        answer = prompts.ask_text(title, f"{message}{header}", default=default).strip()
        if re.match(pattern, answer):
            return answer
        message = f"{invalid} "


def select_disks(ctx: InstallContext) -> list[Path]:
    options = [(f"{disk.by_id} ({disk.device_name})", disk.by_id) for disk in sorted(ctx.suitable_disks, key=lambda d: d.device_name)]
    # A single candidate is selected upfront
    preselected = [disk.by_id for disk in ctx.suitable_disks] if len(ctx.suitable_disks) == 1 else []
    header = "Select the ZFS devices.\n\nDevices with mounted partitions, cdroms, and removable devices are not displayed!"

    while True:
        selected = ctx.prompts.select_many(header, options, preselected=preselected)
        if selected:
            return [Path(disk) for disk in selected]


def select_raid_type(ctx: InstallContext, disk_count: int) -> RaidType | None:
    """None leaves the choice to the disk count heuristic"""
    if disk_count < 2:
        return None

    thresholds = ctx.preset.get("raidz_thresholds")
    policy = RaidPolicy(coerce_raidz_thresholds(thresholds)) if thresholds else RaidPolicy()

    options: list[tuple[str, Any]] = [("Striping array", RaidType.NONE), ("Mirroring", RaidType.MIRROR), ("RAIDZ1", RaidType.RAIDZ)]
    if disk_count >= 3:
        options.append(("RAIDZ2", RaidType.RAIDZ2))
    if disk_count >= 4:
        options.append(("RAIDZ3", RaidType.RAIDZ3))

    return ctx.prompts.select_one("Select the pools RAID type.", options, default=policy.choose(disk_count))


def _ask_confirmed_secret(prompts: PromptProvider, title: str, header: str, allow_blank: bool, min_length: int = 1) -> SecretStr | None:
    message = ""
    while True:
        secret = prompts.ask_secret(title, f"{message}{header}")
        if allow_blank and not secret.get_secret_value():
            return None

        repeat = prompts.ask_secret(title, "Please repeat it:")
        if len(secret.get_secret_value()) >= min_length and secret.get_secret_value() == repeat.get_secret_value():
            return secret
        message = "Empty, too short, or not matching! "


@step("ask_root_password", distro="Debian")
def ask_root_password_debian(ctx: InstallContext) -> SecretStr | None:
    # Calamares doesn't set it
    return _ask_confirmed_secret(ctx.prompts, "Root password", "Please enter the root account password (can't be empty):", allow_blank=False)


def ask_passphrase(ctx: InstallContext) -> SecretStr | None:
    header = f"Please enter the passphrase ({MIN_PASSPHRASE_LENGTH} chars min.):\n\nLeave blank to keep encryption disabled."
    return _ask_confirmed_secret(ctx.prompts, "Encryption passphrase", header, allow_blank=True, min_length=MIN_PASSPHRASE_LENGTH)


def ask_boot_partition_size(ctx: InstallContext) -> str:
    return _ask_validated(
        ctx.prompts,
        "Boot partition size",
        "Enter the boot partition size.\n\nSupported formats: '512M', '3G'",
        DEFAULT_BOOT_PARTITION_SIZE,
        r"^\d+[MGmg]$",
        "Invalid boot partition size!",
    )


def ask_swap_size(ctx: InstallContext) -> int:
    return int(_ask_validated(ctx.prompts, "Swap size", "Enter the swap size in GiB (0 for no swap):", "2", r"^\d+$", "Invalid swap size!"))


def ask_free_tail_space(ctx: InstallContext) -> int:
    return int(_ask_validated(ctx.prompts, "Tail space", TAIL_SPACE_HEADER, "0", r"^\d+$", "Invalid size!"))


def ask_rpool_name(ctx: InstallContext) -> str:
    return _ask_validated(ctx.prompts, "Root pool name", "Insert the name for the root pool", "rpool", POOL_NAME_PATTERN, "Invalid pool name!")


def ask_create_options(ctx: InstallContext, pool: str, defaults: list[str], forced: str) -> list[str]:
    header = f"Insert the create options for the {pool} pool\n\nThe {forced} options are automatically added, and must not be specified."
    return shlex.split(ctx.prompts.ask_text(f"{pool.capitalize()} pool options", header, default=" ".join(defaults)))


def ask_questions(ctx: InstallContext) -> RunConfig:
    """Prompt for every value that is not preset, then freeze the configuration"""
    preset = ctx.preset
    answers: dict[str, Any] = {}

    if "selected_disks" not in preset:
        answers["selected_disks"] = select_disks(ctx)
    disk_count = len(preset.get("selected_disks", answers.get("selected_disks", [])))

    if "raid_type" not in preset:
        answers["raid_type"] = select_raid_type(ctx, disk_count)
    if "root_password" not in preset:
        answers["root_password"] = ctx.invoke("ask_root_password", InvokeMode.OPTIONAL)
    if "passphrase" not in preset:
        answers["passphrase"] = ask_passphrase(ctx)
    if "boot_partition_size" not in preset:
        answers["boot_partition_size"] = ask_boot_partition_size(ctx)
    if "swap_size" not in preset:
        answers["swap_size"] = ask_swap_size(ctx)
    if "free_tail_space" not in preset:
        answers["free_tail_space"] = ask_free_tail_space(ctx)
    if "rpool_name" not in preset:
        answers["rpool_name"] = ask_rpool_name(ctx)
    if "bpool_create_options" not in preset:
        answers["bpool_create_options"] = ask_create_options(ctx, "boot", DEFAULT_BPOOL_CREATE_OPTIONS, "mount-related")
    if "rpool_create_options" not in preset:
        answers["rpool_create_options"] = ask_create_options(ctx, "root", DEFAULT_RPOOL_CREATE_OPTIONS, "encryption/mount-related")

    config = RunConfig(**{**answers, **preset})
    debug(f"Run configuration: {config!r}")
    return config
