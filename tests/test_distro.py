from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from archinstall.lib.exceptions import SysCallError
from pydantic import SecretStr

from zfs_installer.distro import DistroProfile, check_prerequisites, resolve_distribution
from zfs_installer.exceptions import PrerequisiteError


@pytest.fixture
def efi_dir(tmp_path: Path) -> Path:
    efi = tmp_path / "efi"
    efi.mkdir()
    return efi


def lsb_release(distro_id: str, release: str, server_installed: bool = False):
    def fake(cmd: str, *args, **kwargs) -> Mock:
        result = Mock()
        if cmd == "lsb_release --id --short":
            result.decode.return_value = f"{distro_id}\n"
        elif cmd == "lsb_release --release --short":
            result.decode.return_value = f"{release}\n"
        elif cmd.startswith("dpkg -s"):
            if not server_installed:
                raise SysCallError("package 'ubuntu-server' is not installed", 1)
            result.decode.return_value = "Package: ubuntu-server\nStatus: install ok installed\n"
        return result

    return fake


class TestResolveDistribution:
    @patch("zfs_installer.distro.SysCommand", side_effect=lsb_release("Ubuntu", "20.04"))
    def test_ubuntu(self, mock_syscmd: Mock) -> None:
        assert resolve_distribution() == DistroProfile("Ubuntu", "20.04")

    @patch("zfs_installer.distro.SysCommand", side_effect=lsb_release("Ubuntu", "20.04", server_installed=True))
    def test_ubuntu_server(self, mock_syscmd: Mock) -> None:
        assert resolve_distribution() == DistroProfile("UbuntuServer", "20.04")

    @patch("zfs_installer.distro.SysCommand", side_effect=lsb_release("Debian", "10"))
    def test_debian(self, mock_syscmd: Mock) -> None:
        profile = resolve_distribution()
        assert profile.id == "Debian"
        assert profile.is_supported()


@patch("zfs_installer.distro.os.geteuid", return_value=0)
class TestPrerequisites:
    def test_supported(self, _mock_euid: Mock, efi_dir: Path) -> None:
        check_prerequisites(DistroProfile("Linuxmint", "20"), {}, efi_firmware_dir=efi_dir)

    def test_bios_boot(self, _mock_euid: Mock, tmp_path: Path) -> None:
        with pytest.raises(PrerequisiteError, match="EFI"):
            check_prerequisites(DistroProfile("Ubuntu", "20.04"), {}, efi_firmware_dir=tmp_path / "missing")

    def test_not_root(self, mock_euid: Mock, efi_dir: Path) -> None:
        mock_euid.return_value = 1000
        with pytest.raises(PrerequisiteError, match="administrative"):
            check_prerequisites(DistroProfile("Ubuntu", "20.04"), {}, efi_firmware_dir=efi_dir)

    def test_unsupported_distribution(self, _mock_euid: Mock, efi_dir: Path) -> None:
        with pytest.raises(PrerequisiteError, match="Fedora"):
            check_prerequisites(DistroProfile("Fedora", "33"), {}, efi_firmware_dir=efi_dir)

    def test_unsupported_version(self, _mock_euid: Mock, efi_dir: Path) -> None:
        with pytest.raises(PrerequisiteError, match="20.04"):
            check_prerequisites(DistroProfile("Ubuntu", "20.10"), {}, efi_firmware_dir=efi_dir)

    def test_ppa_on_ubuntu_server(self, _mock_euid: Mock, efi_dir: Path) -> None:
        with pytest.raises(PrerequisiteError, match="PPA"):
            check_prerequisites(DistroProfile("UbuntuServer", "20.04"), {"use_ppa": True}, efi_firmware_dir=efi_dir)

    def test_short_passphrase(self, _mock_euid: Mock, efi_dir: Path) -> None:
        with pytest.raises(PrerequisiteError, match="too short"):
            check_prerequisites(DistroProfile("Ubuntu", "20.04"), {"passphrase": SecretStr("1234")}, efi_firmware_dir=efi_dir)

    def test_blank_passphrase(self, _mock_euid: Mock, efi_dir: Path) -> None:
        check_prerequisites(DistroProfile("Ubuntu", "20.04"), {"passphrase": None}, efi_firmware_dir=efi_dir)

    def test_script_not_executable(self, _mock_euid: Mock, efi_dir: Path, tmp_path: Path) -> None:
        script = tmp_path / "install.sh"
        script.write_text("#!/bin/sh\n")
        with pytest.raises(PrerequisiteError, match="script"):
            check_prerequisites(DistroProfile("Ubuntu", "20.04"), {"os_installation_script": script}, efi_firmware_dir=efi_dir)

        script.chmod(0o755)
        check_prerequisites(DistroProfile("Ubuntu", "20.04"), {"os_installation_script": script}, efi_firmware_dir=efi_dir)
