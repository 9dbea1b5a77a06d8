import argparse
import os
import sys
from pathlib import Path

from archinstall import debug, error, info
from archinstall.lib.exceptions import SysCallError
from pydantic import ValidationError

# Step modules register their implementations on import
from zfs_installer import diagnostics, host, jail, transplant  # noqa: F401
from zfs_installer.config import config_from_environment, load_replay_configuration, save_replay_configuration
from zfs_installer.context import InstallContext
from zfs_installer.diagnostics import DEFAULT_LOG_DIR, collect_command_trace, prepare_log_dir
from zfs_installer.disk.discovery import find_suitable_disks
from zfs_installer.distro import check_prerequisites, resolve_distribution
from zfs_installer.exceptions import InstallerError
from zfs_installer.installers import gui  # noqa: F401
from zfs_installer.jail import boot, packages  # noqa: F401
from zfs_installer.menu import TuiPrompts, ask_questions, check_system_memory, display_exit_banner, display_intro_banner
from zfs_installer.recovery import ExitHandler
from zfs_installer.shared import InvokeMode

PREPARATION_STEPS = ("set_zfs_ppa_requirement", "install_host_packages")

# Everything from here on touches the disks
INSTALLATION_STEPS: tuple[tuple[str, InvokeMode], ...] = (
    ("setup_partitions", InvokeMode.REQUIRED),
    ("create_pools", InvokeMode.REQUIRED),
    ("create_swap_volume", InvokeMode.REQUIRED),
    ("install_operating_system", InvokeMode.REQUIRED),
    ("sync_os_to_root_pool", InvokeMode.REQUIRED),
    ("reclaim_temporary_space", InvokeMode.REQUIRED),
    ("prepare_jail", InvokeMode.REQUIRED),
    ("install_jail_zfs_packages", InvokeMode.REQUIRED),
    ("prepare_efi_partition", InvokeMode.REQUIRED),
    ("configure_and_update_grub", InvokeMode.REQUIRED),
    ("sync_efi_partitions", InvokeMode.REQUIRED),
    ("configure_boot_pool_import", InvokeMode.REQUIRED),
    ("update_initramfs", InvokeMode.REQUIRED),
    ("update_zed_cache", InvokeMode.OPTIONAL),
    ("configure_trim_timer", InvokeMode.REQUIRED),
    ("configure_remaining_settings", InvokeMode.REQUIRED),
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zfs-installer",
        description="Install a Debian/Ubuntu distribution with root on ZFS, from the live environment.",
        epilog="All the options can be preset via ZFS_* environment variables; see the replay exports printed on failure.",
    )
    parser.add_argument("--config", type=Path, help="JSON replay file written by a previous run (the environment takes precedence)")
    parser.add_argument("--log-dir", type=Path, default=DEFAULT_LOG_DIR, help=f"Directory for the diagnostic logs (default: {DEFAULT_LOG_DIR})")
    parser.add_argument("arguments", nargs="*", help=argparse.SUPPRESS)
    return parser


def load_preset(config_path: Path | None) -> dict:
    preset = load_replay_configuration(config_path) if config_path else {}
    preset.update(config_from_environment(os.environ))
    debug(f"Preset values: {sorted(preset)}")
    return preset


def run_pipeline(ctx: InstallContext) -> None:
    ctx.invoke("store_os_distro_information")
    ctx.invoke("store_running_processes")
    check_prerequisites(ctx.distro, ctx.preset)
    display_intro_banner(ctx)
    check_system_memory(ctx)
    ctx.invoke("save_disks_log")

    ctx.suitable_disks = find_suitable_disks()
    ctx.config = ask_questions(ctx)
    save_replay_configuration(ctx.config, ctx.log_dir)

    # From here on, any failure prints the replay exports
    with ExitHandler(ctx):
        for name in PREPARATION_STEPS:
            ctx.invoke(name)
        for name, mode in INSTALLATION_STEPS:
            ctx.invoke(name, mode)

    display_exit_banner(ctx)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.arguments:
        parser.print_help()
        return 0

    log_dir = prepare_log_dir(args.log_dir)

    try:
        ctx = InstallContext(
            distro=resolve_distribution(),
            prompts=TuiPrompts(),
            log_dir=log_dir,
            preset=load_preset(args.config),
        )
        run_pipeline(ctx)
    except (InstallerError, SysCallError, ValidationError) as e:
        error(f"Installation failed: {e!s}")
        debug(f"Full error details: {e!r}")
        return 1
    finally:
        collect_command_trace(log_dir)

    info("Installation completed successfully")
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
