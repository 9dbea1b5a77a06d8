import shlex
from pathlib import Path
from unittest.mock import Mock, patch

from pydantic import SecretStr

from zfs_installer.disk.planner import PartitionPlanner
from zfs_installer.installers.custom import CustomScriptInstaller
from zfs_installer.shared import RaidType
from zfs_installer.transplant import choose_installer
from zfs_installer.zfs import PoolSpec, build_pool_specs, create_swap_volume, sanitize_create_options

DISK_A = Path("/dev/disk/by-id/ata-VBOX_HARDDISK_VB0001")
DISK_B = Path("/dev/disk/by-id/ata-VBOX_HARDDISK_VB0002")
DISK_C = Path("/dev/disk/by-id/nvme-Samsung_SSD_970_S001")


class TestSanitizeCreateOptions:
    def test_forced_properties_dropped(self) -> None:
        options = ["-o", "ashift=12", "-O", "mountpoint=/", "-O", "encryption=on", "-O", "compression=lz4"]
        assert sanitize_create_options(options) == ["-o", "ashift=12", "-O", "compression=lz4"]

    def test_joined_form(self) -> None:
        assert sanitize_create_options(["-Okeyformat=raw", "-Oxattr=sa"]) == ["-Oxattr=sa"]

    def test_altroot_and_force(self) -> None:
        assert sanitize_create_options(["-R", "/target", "-f", "-m", "/x", "-o", "autotrim=on"]) == ["-o", "autotrim=on"]


class TestCreateCommand:
    def test_mirror(self) -> None:
        spec = PoolSpec(
            name="bpool",
            vdevs=[Path("/dev/disk/by-id/ata-A-part2"), Path("/dev/disk/by-id/ata-B-part2")],
            raid_type=RaidType.MIRROR,
            create_options=["-o", "ashift=12"],
            mountpoint="/boot",
        )
        assert shlex.split(spec.create_command()) == [
            "zpool", "create",
            "-o", "ashift=12",
            "-O", "mountpoint=/boot",
            "-R", "/mnt",
            "-f", "bpool",
            "mirror", "/dev/disk/by-id/ata-A-part2", "/dev/disk/by-id/ata-B-part2",
        ]

    def test_single_disk_has_no_keyword(self) -> None:
        spec = PoolSpec(name="rpool", vdevs=[Path("/dev/disk/by-id/ata-A-part3")], raid_type=RaidType.NONE, mountpoint="/")
        assert spec.create_command().endswith("-f rpool /dev/disk/by-id/ata-A-part3")


class TestScenarios:
    def test_single_disk_plain(self, make_context) -> None:
        ctx = make_context(selected_disks=[DISK_A], swap_size=0, free_tail_space=0)
        rpool, bpool = build_pool_specs(ctx)

        assert rpool.raid_type is RaidType.NONE
        assert bpool.raid_type is RaidType.NONE
        assert rpool.encryption is None
        assert rpool.vdevs == [Path(f"{DISK_A}-part3")]
        assert bpool.vdevs == [Path(f"{DISK_A}-part2")]
        # The tail partition is removed, leaving EFI, boot and root
        assert PartitionPlanner("2048M", free_tail_space_gib=0).plan([100_000]).needs_reclaim

        with patch("zfs_installer.zfs.SysCommand") as mock_syscmd:
            create_swap_volume(ctx)
        mock_syscmd.assert_not_called()

    @patch("zfs_installer.zfs.wait_for_path")
    @patch("zfs_installer.zfs.SysCommand")
    def test_three_disks_raidz(self, mock_syscmd: Mock, _mock_wait: Mock, make_context) -> None:
        ctx = make_context(selected_disks=[DISK_A, DISK_B, DISK_C], swap_size=2)
        rpool, bpool = build_pool_specs(ctx)

        assert rpool.raid_type is RaidType.RAIDZ
        assert bpool.raid_type is RaidType.RAIDZ
        assert " raidz " in rpool.create_command()
        assert " raidz " in bpool.create_command()

        create_swap_volume(ctx)
        commands = [call[0][0] for call in mock_syscmd.call_args_list]
        assert commands[0].startswith("zfs create -V 2G -b ")
        assert commands[0].endswith(" rpool/swap")
        assert commands[1] == "mkswap -f /dev/zvol/rpool/swap"

    def test_encryption_on_root_pool_only(self, make_context) -> None:
        ctx = make_context(selected_disks=[DISK_A], passphrase=SecretStr("12345678"))
        rpool, bpool = build_pool_specs(ctx)

        rpool_command = rpool.create_command()
        assert "encryption=aes-256-gcm" in rpool_command
        assert "keyformat=passphrase" in rpool_command
        assert "12345678" not in rpool_command
        assert bpool.encryption is None
        assert "encryption" not in bpool.create_command()

    def test_custom_script_replaces_installer(self, make_context) -> None:
        registry = Mock()
        ctx = make_context(registry=registry, selected_disks=[DISK_A], os_installation_script=Path("/root/install.sh"))

        installer = choose_installer(ctx)

        assert isinstance(installer, CustomScriptInstaller)
        assert installer.script == Path("/root/install.sh")
        registry.invoke.assert_not_called()

    def test_raid_override(self, make_context) -> None:
        ctx = make_context(selected_disks=[DISK_A, DISK_B, DISK_C], raid_type="mirror")
        rpool, bpool = build_pool_specs(ctx)
        assert rpool.raid_type is bpool.raid_type is RaidType.MIRROR
