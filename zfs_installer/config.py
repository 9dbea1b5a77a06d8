from __future__ import annotations

import json
import re
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, TypeAdapter, field_validator

from zfs_installer.shared import BPOOL_NAME, DEFAULT_BOOT_PARTITION_SIZE, TEMPORARY_VOLUME_SIZE_GIB, RaidType

REPLAY_CONFIG_KEY = "zfs_installer"

DEFAULT_BPOOL_CREATE_OPTIONS = ["-o", "ashift=12", "-o", "autotrim=on", "-O", "devices=off"]
DEFAULT_RPOOL_CREATE_OPTIONS = [
    "-o", "ashift=12",
    "-o", "autotrim=on",
    "-O", "acltype=posixacl",
    "-O", "compression=lz4",
    "-O", "dnodesize=auto",
    "-O", "normalization=formD",
    "-O", "relatime=on",
    "-O", "xattr=sa",
    "-O", "devices=off",
]
# (minimum disk count, raid type), checked in order; below the last entry the
# pools are mirrored (2 disks) or plain (1 disk).
DEFAULT_RAIDZ_THRESHOLDS: list[tuple[int, RaidType]] = [(11, RaidType.RAIDZ3), (6, RaidType.RAIDZ2), (3, RaidType.RAIDZ)]

POOL_NAME_PATTERN = r"^[a-z][a-zA-Z_:.-]+$"
MIN_PASSPHRASE_LENGTH = 8

# RunConfig field -> environment variable
ENVIRONMENT_VARIABLES: dict[str, str] = {
    "selected_disks": "ZFS_SELECTED_DISKS",
    "boot_partition_size": "ZFS_BOOT_PARTITION_SIZE",
    "passphrase": "ZFS_PASSPHRASE",
    "root_password": "ZFS_DEBIAN_ROOT_PASSWORD",
    "bpool_name": "ZFS_BPOOL_NAME",
    "rpool_name": "ZFS_RPOOL_NAME",
    "bpool_create_options": "ZFS_BPOOL_CREATE_OPTIONS",
    "rpool_create_options": "ZFS_RPOOL_CREATE_OPTIONS",
    "raid_type": "ZFS_POOLS_RAID_TYPE",
    "no_info_messages": "ZFS_NO_INFO_MESSAGES",
    "swap_size": "ZFS_SWAP_SIZE",
    "free_tail_space": "ZFS_FREE_TAIL_SPACE",
    "os_installation_script": "ZFS_OS_INSTALLATION_SCRIPT",
    "skip_live_zfs_module_install": "ZFS_SKIP_LIVE_ZFS_MODULE_INSTALL",
    "use_ppa": "ZFS_USE_PPA",
    "trim_timer": "ZFS_TRIM_TIMER",
    "raidz_thresholds": "ZFS_RAIDZ_THRESHOLDS",
}

SECRET_FIELDS = frozenset({"passphrase", "root_password"})
FLAG_FIELDS = frozenset({"no_info_messages", "skip_live_zfs_module_install", "use_ppa", "trim_timer"})
# Variables where "set but blank" carries a meaning of its own
BLANK_IS_VALUE = frozenset({"passphrase", "raid_type"})


def parse_raidz_thresholds(raw: str) -> list[tuple[int, RaidType]]:
    """Parse "raidz3:11,raidz2:6,raidz:3" into a descending threshold table."""
    thresholds: list[tuple[int, RaidType]] = []
    for entry in filter(None, (part.strip() for part in raw.split(","))):
        name, _, count = entry.partition(":")
        if not count.isdigit():
            raise ValueError(f"Invalid RAIDZ threshold entry: {entry}")
        thresholds.append((int(count), RaidType.parse(name)))
    return sorted(thresholds, key=lambda t: t[0], reverse=True)


_THRESHOLDS_ADAPTER = TypeAdapter(list[tuple[int, RaidType]])


def coerce_raidz_thresholds(value: Any) -> list[tuple[int, RaidType]]:
    """Threshold table from its environment string or its JSON form ([[11, "raidz3"], ...])"""
    if isinstance(value, str):
        return parse_raidz_thresholds(value)
    return sorted(_THRESHOLDS_ADAPTER.validate_python(value), key=lambda t: t[0], reverse=True)


class RunConfig(BaseModel):
    """All the choices of one provisioning run.

    Built once from defaults, the replay file, the environment and the prompts;
    frozen before the first destructive step. Secrets are `SecretStr` so they
    never leak through repr, logging or serialization.
    """

    model_config = ConfigDict(frozen=True)

    selected_disks: list[Path]
    boot_partition_size: str = DEFAULT_BOOT_PARTITION_SIZE
    passphrase: SecretStr | None = None
    root_password: SecretStr | None = None
    bpool_name: str = BPOOL_NAME
    rpool_name: str = "rpool"
    bpool_create_options: list[str] = Field(default_factory=lambda: list(DEFAULT_BPOOL_CREATE_OPTIONS))
    rpool_create_options: list[str] = Field(default_factory=lambda: list(DEFAULT_RPOOL_CREATE_OPTIONS))
    # None means "derive from the disk count"
    raid_type: RaidType | None = None
    no_info_messages: bool = False
    swap_size: int = Field(default=2, ge=0)  # GiB
    free_tail_space: int = Field(default=0, ge=0)  # GiB
    os_installation_script: Path | None = None
    skip_live_zfs_module_install: bool = False
    use_ppa: bool = False
    trim_timer: bool = False
    raidz_thresholds: list[tuple[int, RaidType]] = Field(default_factory=lambda: list(DEFAULT_RAIDZ_THRESHOLDS))

    # noinspection PyMethodParameters
    @field_validator("selected_disks")
    def _validate_selected_disks(cls, v: list[Path]) -> list[Path]:
        if not v:
            raise ValueError("At least one disk must be selected")
        if len(set(v)) != len(v):
            raise ValueError("The same disk has been selected more than once")
        return v

    # noinspection PyMethodParameters
    @field_validator("boot_partition_size")
    def _validate_boot_partition_size(cls, v: str) -> str:
        if not re.fullmatch(r"\d+[MGmg]", v):
            raise ValueError(f"Invalid boot partition size: {v} (supported formats: '512M', '3G')")
        return v

    # noinspection PyMethodParameters
    @field_validator("bpool_name", "rpool_name")
    def _validate_pool_name(cls, v: str) -> str:
        if not re.match(POOL_NAME_PATTERN, v):
            raise ValueError(f"Invalid pool name: {v}")
        return v

    # noinspection PyMethodParameters
    @field_validator("passphrase")
    def _validate_passphrase(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None or not v.get_secret_value():
            return None
        if len(v.get_secret_value()) < MIN_PASSPHRASE_LENGTH:
            raise ValueError(f"The passphrase is too short; at least {MIN_PASSPHRASE_LENGTH} chars required")
        return v

    # noinspection PyMethodParameters
    @field_validator("root_password")
    def _validate_root_password(cls, v: SecretStr | None) -> SecretStr | None:
        if v is None or not v.get_secret_value():
            return None
        return v

    # noinspection PyMethodParameters
    @field_validator("bpool_create_options", "rpool_create_options", mode="before")
    def _split_create_options(cls, v: Any) -> Any:
        if isinstance(v, str):
            return shlex.split(v)
        return v

    # noinspection PyMethodParameters
    @field_validator("raid_type", mode="before")
    def _parse_raid_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return RaidType.parse(v)
        return v

    # noinspection PyMethodParameters
    @field_validator("raidz_thresholds", mode="before")
    def _parse_raidz_thresholds(cls, v: Any) -> Any:
        return coerce_raidz_thresholds(v)

    @property
    def encrypted(self) -> bool:
        return self.passphrase is not None

    @property
    def required_tail_space(self) -> int:
        """GiB reserved at the end of each disk before the OS is transplanted"""
        return max(self.free_tail_space, TEMPORARY_VOLUME_SIZE_GIB)

    def to_json(self) -> dict[str, Any]:
        """Non-secret fields, for the replay file"""
        return self.model_dump(mode="json", exclude=set(SECRET_FIELDS), exclude_none=True)

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> RunConfig:
        return cls.model_validate(data)

    def to_exports(self) -> str:
        """Shell exports reproducing this run, with the secrets left out"""
        values: dict[str, str] = {
            "selected_disks": ",".join(str(disk) for disk in self.selected_disks),
            "boot_partition_size": self.boot_partition_size,
            "bpool_name": self.bpool_name,
            "rpool_name": self.rpool_name,
            "bpool_create_options": " ".join(self.bpool_create_options),
            "rpool_create_options": " ".join(self.rpool_create_options),
            "no_info_messages": "1",
            "swap_size": str(self.swap_size),
            "free_tail_space": str(self.free_tail_space),
            "use_ppa": "1" if self.use_ppa else "",
            "trim_timer": "1" if self.trim_timer else "",
            "raidz_thresholds": ",".join(f"{raid.value}:{count}" for count, raid in self.raidz_thresholds),
        }
        if self.raid_type is not None:
            values["raid_type"] = "" if self.raid_type is RaidType.NONE else self.raid_type.value
        if self.os_installation_script is not None:
            values["os_installation_script"] = str(self.os_installation_script)
        if self.skip_live_zfs_module_install:
            values["skip_live_zfs_module_install"] = "1"

        lines = [f"export {ENVIRONMENT_VARIABLES[field]}={shlex.quote(value)}" for field, value in values.items()]
        if self.encrypted:
            lines.append(f"# {ENVIRONMENT_VARIABLES['passphrase']} is not printed; export it manually")
        if self.root_password is not None:
            lines.append(f"# {ENVIRONMENT_VARIABLES['root_password']} is not printed; export it manually")
        return "\n".join(lines)


def config_from_environment(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect the RunConfig values preset in the environment.

    Only variables that are set (and non-blank, except where blank is
    meaningful) are returned, so the caller can prompt for the rest.
    """
    values: dict[str, Any] = {}
    for field, variable in ENVIRONMENT_VARIABLES.items():
        if variable not in environ:
            continue
        raw = environ[variable]
        if raw == "" and field not in BLANK_IS_VALUE:
            continue
        if field == "selected_disks":
            values[field] = [Path(disk) for disk in raw.split(",") if disk]
        elif field in FLAG_FIELDS:
            values[field] = raw == "1"
        elif field in SECRET_FIELDS:
            values[field] = SecretStr(raw) if raw else None
        else:
            values[field] = raw
    return values


def save_replay_configuration(config: RunConfig, dest_path: Path) -> Path:
    """Write the non-secret configuration as JSON; returns the written file."""
    data = {REPLAY_CONFIG_KEY: {"schema_version": 1, **config.to_json()}}
    dest_path.mkdir(parents=True, exist_ok=True)
    config_file = dest_path / "run_config.json"
    config_file.write_text(json.dumps(data, indent=4, sort_keys=True))
    return config_file


def load_replay_configuration(config_path: Path) -> dict[str, Any]:
    """Return the RunConfig values stored in a replay file (empty if missing)."""
    data = json.loads(config_path.read_text()) if config_path.exists() else {}
    values = dict(data.get(REPLAY_CONFIG_KEY, {}))
    values.pop("schema_version", None)
    return values
