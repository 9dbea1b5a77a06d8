"""
Step dispatcher (variant invoker).

Every provisioning step is registered under a name, either generically or for a
single distribution. Invoking a step resolves, in order: the implementation
for the running distribution, the generic implementation, then a no-op for
optional steps or a fatal error for required ones.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from archinstall import debug, info, warn

from zfs_installer.exceptions import MissingStepError
from zfs_installer.shared import InvokeMode

if TYPE_CHECKING:
    from zfs_installer.context import InstallContext

StepFunction = Callable[["InstallContext"], Any]


class ResolutionKind(Enum):
    DISTRO = "distro"
    GENERIC = "generic"
    NOOP = "noop"
    MISSING = "missing"


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    step: str
    distro: str
    function: StepFunction | None = None

    @property
    def display_name(self) -> str:
        return f"{self.step}_{self.distro}" if self.kind is ResolutionKind.DISTRO else self.step


class StepRegistry:
    """Registry mapping (step, distribution) to implementations."""

    def __init__(self) -> None:
        self._generic: dict[str, StepFunction] = {}
        self._variants: dict[tuple[str, str], StepFunction] = {}

    def register(self, step: str, distro: str | None = None) -> Callable[[StepFunction], StepFunction]:
        """Decorator registering a generic (distro=None) or distribution specific step."""

        def decorator(function: StepFunction) -> StepFunction:
            if distro is None:
                if step in self._generic:
                    warn(f"Overriding existing step: {step}")
                self._generic[step] = function
            else:
                if (step, distro) in self._variants:
                    warn(f"Overriding existing step: {step} ({distro})")
                self._variants[(step, distro)] = function
            return function

        return decorator

    def resolve(self, step: str, distro: str, mode: InvokeMode = InvokeMode.REQUIRED) -> Resolution:
        if (step, distro) in self._variants:
            return Resolution(ResolutionKind.DISTRO, step, distro, self._variants[(step, distro)])
        if step in self._generic:
            return Resolution(ResolutionKind.GENERIC, step, distro, self._generic[step])
        if mode is InvokeMode.OPTIONAL:
            return Resolution(ResolutionKind.NOOP, step, distro)
        return Resolution(ResolutionKind.MISSING, step, distro)

    def invoke(self, step: str, ctx: InstallContext, mode: InvokeMode = InvokeMode.REQUIRED) -> Any:
        resolution = self.resolve(step, ctx.distro.id, mode)

        if resolution.kind is ResolutionKind.MISSING:
            raise MissingStepError(step, ctx.distro.id)
        if resolution.function is None:
            debug(f"Optional step {step} has no implementation for {ctx.distro.id}, skipping")
            return None

        _print_step_header(resolution.display_name)
        return resolution.function(ctx)

    def invoke_generic(self, step: str, ctx: InstallContext) -> Any:
        """Run the generic implementation; used by variants that extend it."""
        if step not in self._generic:
            raise MissingStepError(step, "generic")
        _print_step_header(step)
        return self._generic[step](ctx)

    def has_step(self, step: str) -> bool:
        return step in self._generic or any(name == step for name, _ in self._variants)


def _print_step_header(name: str) -> None:
    separator = "#" * 79
    info(f"\n{separator}\n# {name}\n{separator}")


_registry = StepRegistry()


def get_step_registry() -> StepRegistry:
    return _registry


def step(name: str, distro: str | None = None) -> Callable[[StepFunction], StepFunction]:
    """Register a step on the default registry."""
    return _registry.register(name, distro)
