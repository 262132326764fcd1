class InstallError(Exception):
    """
    Base class for failures that end an installation task
    """

    pass


class BaseVersionNotFoundError(InstallError):
    """
    Raised when the requested base version is missing from the version manifest
    """

    def __init__(self, version: str) -> None:
        super().__init__(f"Version {version} not found in manifest")
        self.version = version


class LoaderInstallError(InstallError):
    """
    Raised when a loader installer reports a failure
    """

    pass


class InstallerExitError(Exception):
    """
    Raised when an external installer process exits with a non-zero code
    """

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"Installer exited with code {exit_code}")
        self.exit_code = exit_code


class RegistryFetchError(Exception):
    """
    Raised when a registry request fails or returns an unexpected payload
    """

    def __init__(self, url: str, message: str, status: int | None = None) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status = status


class InstanceNotFoundError(Exception):
    pass


class InvalidInstanceConfigError(Exception):
    """
    Raised when trying to read an incorrectly formatted instance.json
    """

    pass


class InstallAbortedError(Exception):
    """
    Raised inside the installation pipeline when its task has been aborted
    """

    pass
