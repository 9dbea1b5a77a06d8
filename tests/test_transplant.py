from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from archinstall.lib.exceptions import SysCallError
from pydantic import SecretStr

from zfs_installer.disk.planner import PartitionPlanner
from zfs_installer.exceptions import InstallerScriptError
from zfs_installer.installers.base import TargetPreparation
from zfs_installer.installers.custom import CustomScriptInstaller, reported_mountpoint
from zfs_installer.transplant import TemporaryVolume, mounts_below, reclaim_temporary_space, sync_os_to_root_pool

DISK = Path("/dev/disk/by-id/ata-A")

MOUNT_OUTPUT = """/dev/zd0p1 on /target type ext4 (rw,relatime)
/dev/sda1 on /target/boot/efi type vfat (rw,relatime)
/dev/sr0 on /target/cdrom type iso9660 (ro,relatime)
/dev/sr0 on /cdrom type iso9660 (ro,relatime)
proc on /target-other/proc type proc (rw,nosuid)
"""


class TestReportedMountpoint:
    def test_last_line(self) -> None:
        output = "Installing...\nDone\n/srv/installed\n\n"
        assert reported_mountpoint(output, Path("/target")) == Path("/srv/installed")

    def test_silent_script(self) -> None:
        assert reported_mountpoint("", Path("/target")) == Path("/target")
        assert reported_mountpoint("\n  \n", Path("/target")) == Path("/target")

    def test_relative_path(self) -> None:
        with pytest.raises(InstallerScriptError):
            reported_mountpoint("all done", Path("/target"))


class TestTemporaryVolume:
    def test_install_device(self) -> None:
        volume = TemporaryVolume("rpool", TargetPreparation.FORMAT)
        assert volume.dataset == "rpool/os-temp"
        assert volume.zvol_path == Path("/dev/zvol/rpool/os-temp")
        # Ubiquity gets a partition, Subiquity creates its own ESP first
        assert str(TemporaryVolume("rpool", TargetPreparation.PARTITION).install_device).endswith("p1")
        assert str(TemporaryVolume("rpool", TargetPreparation.RAW).install_device).endswith("p2")

    @patch("zfs_installer.transplant.wait_for_path")
    @patch("zfs_installer.transplant.SysCommand")
    def test_create_formatted(self, mock_syscmd: Mock, _mock_wait: Mock) -> None:
        volume = TemporaryVolume("rpool", TargetPreparation.FORMAT)
        volume.create()

        commands = [call[0][0] for call in mock_syscmd.call_args_list]
        assert commands[0] == "zfs create -V 12G rpool/os-temp"
        assert commands[1].startswith("mkfs.ext4 -F ")


class TestCustomScriptInstaller:
    @pytest.fixture
    def installer(self, make_context) -> CustomScriptInstaller:
        ctx = make_context(selected_disks=[DISK], os_installation_script=Path("/root/install.sh"))
        return CustomScriptInstaller(ctx, Path("/root/install.sh"))

    def test_environment(self, installer: CustomScriptInstaller) -> None:
        volume = Mock(install_device=Path("/dev/zd0"))
        assert installer.environment(volume) == {
            "ZFS_TEMP_VOLUME_DEVICE": "/dev/zd0",
            "ZFS_INSTALL_MOUNT_DIR": "/target",
            "ZFS_ROOT_POOL_MOUNT_DIR": "/mnt",
        }

    @patch("zfs_installer.installers.custom.SysCommand")
    def test_install(self, mock_syscmd: Mock, installer: CustomScriptInstaller) -> None:
        mock_syscmd.return_value.decode.return_value = "debootstrap done\n/mnt\n"

        target = installer.install(Mock(install_device=Path("/dev/zd0")))

        assert target == Path("/mnt")
        command = mock_syscmd.call_args[0][0]
        assert command == "env ZFS_TEMP_VOLUME_DEVICE=/dev/zd0 ZFS_INSTALL_MOUNT_DIR=/target ZFS_ROOT_POOL_MOUNT_DIR=/mnt /root/install.sh"

    @patch("zfs_installer.installers.custom.SysCommand", side_effect=SysCallError("exit 2", 2))
    def test_failing_script(self, _mock_syscmd: Mock, installer: CustomScriptInstaller) -> None:
        with pytest.raises(InstallerScriptError):
            installer.install(Mock(install_device=Path("/dev/zd0")))


class TestSyncToRootPool:
    @patch("zfs_installer.transplant.SysCommand")
    def test_mounts_below(self, mock_syscmd: Mock) -> None:
        mock_syscmd.return_value.decode.return_value = MOUNT_OUTPUT
        assert mounts_below(Path("/target")) == [Path("/target/boot/efi"), Path("/target/cdrom")]

    @patch("zfs_installer.transplant.SysCommand")
    def test_installed_in_place(self, mock_syscmd: Mock, make_context) -> None:
        ctx = make_context(selected_disks=[DISK])
        ctx.installed_os_source = ctx.zfs_mount_dir
        volume = Mock()
        ctx.temporary_volume = volume

        sync_os_to_root_pool(ctx)

        mock_syscmd.assert_not_called()
        volume.destroy.assert_called_once()
        assert ctx.temporary_volume is None

    @patch("zfs_installer.transplant.is_mountpoint", return_value=True)
    @patch("zfs_installer.transplant.mounts_below", return_value=[Path("/target/boot/efi")])
    @patch("zfs_installer.transplant.SysCommand")
    def test_copy(self, mock_syscmd: Mock, _mock_mounts: Mock, _mock_mountpoint: Mock, make_context, tmp_path: Path) -> None:
        ctx = make_context(selected_disks=[DISK])
        ctx.zfs_mount_dir = tmp_path
        ctx.installed_os_source = Path("/target")

        sync_os_to_root_pool(ctx)

        commands = [call[0][0] for call in mock_syscmd.call_args_list]
        assert commands[0] == "umount /target/boot/efi"
        assert commands[1].startswith("rsync -aXH --exclude=/run --exclude=/swapfile --exclude=/swap.img ")
        assert commands[1].endswith(f" /target/ {tmp_path}")
        assert commands[2] == "umount /target"
        assert (tmp_path / "run/systemd/resolve/stub-resolv.conf").exists()


@patch("zfs_installer.disk.udev_settle")
class TestReclaimTemporarySpace:
    DISK_B = Path("/dev/disk/by-id/ata-B")

    @pytest.fixture
    def ctx(self, make_context):
        ctx = make_context(selected_disks=[DISK, self.DISK_B], passphrase=SecretStr("12345678"))
        relay = Mock()
        relay.redirect.side_effect = lambda command: f"<relay> {command}"
        ctx.passphrase_relay = relay
        return ctx

    def run_reclaim(self, ctx) -> list[str]:
        mock_syscmd = Mock()
        with patch("zfs_installer.zfs.SysCommand", mock_syscmd), patch("zfs_installer.disk.SysCommand", mock_syscmd):
            reclaim_temporary_space(ctx)
        return [call[0][0] for call in mock_syscmd.call_args_list]

    def test_tail_reclaimed(self, mock_settle: Mock, ctx) -> None:
        ctx.layout = PartitionPlanner("2048M").plan([100_000])
        root_end = ctx.layout.reclaimed_root_end_mib
        altroot = ctx.zfs_mount_dir

        commands = self.run_reclaim(ctx)

        assert commands == [
            "zpool export -a",
            f"parted -s {DISK} rm 4",
            f"parted -s {DISK} unit MiB resizepart 3 -- {root_end}MiB",
            f"parted -s {self.DISK_B} rm 4",
            f"parted -s {self.DISK_B} unit MiB resizepart 3 -- {root_end}MiB",
            f"<relay> zpool import -l -R {altroot} rpool",
            f"zpool import -R {altroot} bpool",
            f"zpool online -e rpool {DISK}-part3",
            f"zpool online -e rpool {self.DISK_B}-part3",
        ]
        assert root_end == 100_000 - 1
        mock_settle.assert_called_once()

    def test_large_free_tail_is_wiped(self, mock_settle: Mock, ctx) -> None:
        ctx.layout = PartitionPlanner("2048M", free_tail_space_gib=20).plan([100_000])

        commands = self.run_reclaim(ctx)

        assert commands == [f"wipefs --all {DISK}-part4", f"wipefs --all {self.DISK_B}-part4"]
        mock_settle.assert_not_called()
