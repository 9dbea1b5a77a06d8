from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest

from zfs_installer.config import RunConfig
from zfs_installer.context import InstallContext
from zfs_installer.dispatch import StepRegistry
from zfs_installer.distro import DistroProfile


@pytest.fixture
def make_context(tmp_path: Path):
    def factory(distro: str = "Ubuntu", version: str = "20.04", registry: Any = None, **config: Any) -> InstallContext:
        ctx = InstallContext(
            distro=DistroProfile(distro, version),
            prompts=Mock(),
            log_dir=tmp_path,
            registry=registry if registry is not None else StepRegistry(),
        )
        if config:
            ctx.config = RunConfig(**config)
        return ctx

    return factory
