class InstallerError(Exception):
    """Base class for every fatal condition raised by the installer."""


class PrerequisiteError(InstallerError):
    pass


class MissingStepError(InstallerError):
    def __init__(self, step: str, distro: str) -> None:
        super().__init__(f"No implementation found for required step '{step}' (distribution: {distro})")
        self.step = step
        self.distro = distro


class NoSuitableDisksError(InstallerError):
    pass


class ZedCacheTimeoutError(InstallerError):
    pass


class InstallerScriptError(InstallerError):
    pass
