import json
from pathlib import Path

import pytest
from pydantic import SecretStr, ValidationError

from zfs_installer.config import (
    DEFAULT_RPOOL_CREATE_OPTIONS,
    RunConfig,
    coerce_raidz_thresholds,
    config_from_environment,
    load_replay_configuration,
    save_replay_configuration,
)
from zfs_installer.shared import RaidType

DISKS = [Path("/dev/disk/by-id/ata-A"), Path("/dev/disk/by-id/ata-B")]


class TestEnvironment:
    def test_values_parsed(self) -> None:
        values = config_from_environment(
            {
                "ZFS_SELECTED_DISKS": "/dev/disk/by-id/ata-A,/dev/disk/by-id/ata-B",
                "ZFS_SWAP_SIZE": "4",
                "ZFS_USE_PPA": "1",
                "ZFS_NO_INFO_MESSAGES": "0",
                "ZFS_RPOOL_CREATE_OPTIONS": "-o ashift=13 -O compression=zstd",
                "HOME": "/root",
            }
        )

        assert values == {
            "selected_disks": DISKS,
            "swap_size": "4",
            "use_ppa": True,
            "no_info_messages": False,
            "rpool_create_options": "-o ashift=13 -O compression=zstd",
        }
        config = RunConfig(**values)
        assert config.swap_size == 4
        assert config.rpool_create_options == ["-o", "ashift=13", "-O", "compression=zstd"]

    def test_blank_values(self) -> None:
        values = config_from_environment({"ZFS_PASSPHRASE": "", "ZFS_POOLS_RAID_TYPE": "", "ZFS_RPOOL_NAME": ""})

        # Blank passphrase and raid type are answers; a blank pool name is not
        assert values == {"passphrase": None, "raid_type": ""}
        config = RunConfig(selected_disks=DISKS, **values)
        assert not config.encrypted
        assert config.raid_type is RaidType.NONE
        assert config.rpool_name == "rpool"

    def test_secret_wrapped(self) -> None:
        values = config_from_environment({"ZFS_PASSPHRASE": "12345678"})
        assert isinstance(values["passphrase"], SecretStr)

    def test_thresholds(self) -> None:
        config = RunConfig(selected_disks=DISKS, **config_from_environment({"ZFS_RAIDZ_THRESHOLDS": "raidz:4,raidz2:8"}))
        assert config.raidz_thresholds == [(8, RaidType.RAIDZ2), (4, RaidType.RAIDZ)]


class TestValidation:
    def test_defaults(self) -> None:
        config = RunConfig(selected_disks=DISKS)
        assert config.boot_partition_size == "2048M"
        assert config.bpool_name == "bpool"
        assert config.rpool_create_options == DEFAULT_RPOOL_CREATE_OPTIONS
        assert config.required_tail_space == 12

    def test_required_tail_space(self) -> None:
        assert RunConfig(selected_disks=DISKS, free_tail_space=20).required_tail_space == 20

    @pytest.mark.parametrize(
        "values",
        [
            {"selected_disks": []},
            {"selected_disks": [DISKS[0], DISKS[0]]},
            {"selected_disks": DISKS, "boot_partition_size": "2T"},
            {"selected_disks": DISKS, "rpool_name": "1pool"},
            {"selected_disks": DISKS, "passphrase": SecretStr("short")},
            {"selected_disks": DISKS, "swap_size": -1},
            {"selected_disks": DISKS, "raid_type": "raidz9"},
        ],
    )
    def test_invalid(self, values: dict) -> None:
        with pytest.raises(ValidationError):
            RunConfig(**values)

    def test_frozen(self) -> None:
        config = RunConfig(selected_disks=DISKS)
        with pytest.raises(ValidationError):
            config.swap_size = 8


class TestReplay:
    def test_exports(self) -> None:
        config = RunConfig(selected_disks=DISKS, raid_type="mirror", swap_size=0, rpool_name="tank")
        exports = config.to_exports().splitlines()

        assert "export ZFS_SELECTED_DISKS=/dev/disk/by-id/ata-A,/dev/disk/by-id/ata-B" in exports
        assert "export ZFS_POOLS_RAID_TYPE=mirror" in exports
        assert "export ZFS_RPOOL_NAME=tank" in exports
        assert "export ZFS_NO_INFO_MESSAGES=1" in exports
        assert not any("ZFS_PASSPHRASE" in line for line in exports)

    def test_exports_parse_back(self) -> None:
        config = RunConfig(selected_disks=DISKS, raid_type="none", free_tail_space=3, no_info_messages=True)
        environ = {}
        for line in config.to_exports().splitlines():
            name, _, value = line.removeprefix("export ").partition("=")
            environ[name] = value.strip("'")

        assert RunConfig(**config_from_environment(environ)) == config

    def test_replay_file(self, tmp_path: Path) -> None:
        config = RunConfig(selected_disks=DISKS, passphrase=SecretStr("12345678"), swap_size=6)

        config_file = save_replay_configuration(config, tmp_path / "logs")

        assert config_file.name == "run_config.json"
        assert "12345678" not in config_file.read_text()
        assert json.loads(config_file.read_text())["zfs_installer"]["schema_version"] == 1

        values = load_replay_configuration(config_file)
        assert "schema_version" not in values
        restored = RunConfig(**values)
        assert restored.swap_size == 6
        assert restored.selected_disks == DISKS
        assert not restored.encrypted

    def test_replay_file_thresholds(self, tmp_path: Path) -> None:
        config = RunConfig(selected_disks=DISKS, raidz_thresholds="raidz2:5,raidz:3")

        values = load_replay_configuration(save_replay_configuration(config, tmp_path))

        assert isinstance(values["raidz_thresholds"][0], list)
        assert coerce_raidz_thresholds(values["raidz_thresholds"]) == [(5, RaidType.RAIDZ2), (3, RaidType.RAIDZ)]
        assert RunConfig(**values).raidz_thresholds == config.raidz_thresholds

    def test_missing_replay_file(self, tmp_path: Path) -> None:
        assert load_replay_configuration(tmp_path / "missing.json") == {}
