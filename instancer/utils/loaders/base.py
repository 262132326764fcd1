import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from instancer.controllers.task_registry import InstallTask
from instancer.models.install_state import LoaderInstallResult
from instancer.utils.constants import LoaderFamily
from instancer.utils.exception import LoaderInstallError
from instancer.utils.files import write_json_atomic
from instancer.utils.progress_reporter import PhaseProgress
from instancer.utils.registry.client import RegistryClient


class LoaderInstaller(ABC):
    """
    Installs one loader family into an instance folder.

    Implementations never raise for expected failures; they return
    ``LoaderInstallResult.failed(...)`` and let the pipeline decide what is fatal.
    """

    family: LoaderFamily
    display_name: str

    def __init__(self, client: RegistryClient) -> None:
        self.client = client

    @abstractmethod
    async def install(
        self,
        target_dir: Path,
        base_version: str,
        requested_loader_version: Optional[str],
        *,
        task: Optional[InstallTask] = None,
        progress: Optional[PhaseProgress] = None,
    ) -> LoaderInstallResult:
        """
        Install the loader for ``base_version`` into ``target_dir``.

        :param target_dir: The instance folder
        :param base_version: Base game version, e.g. ``1.20.1``
        :param requested_loader_version: Loader version to install, or None for the newest
        :param task: Cancellation token of the running install, if any
        :param progress: Phase-local progress handle, if any
        :return: The loader version and version descriptor id, or the failure
        """
        raise NotImplementedError

    async def resolve_loader_version(
        self, base_version: str, requested_loader_version: Optional[str]
    ) -> str:
        if requested_loader_version:
            return requested_loader_version
        versions = await self.client.get_loader_versions(self.family, base_version)
        if not versions:
            raise LoaderInstallError(
                f"No {self.display_name} loader available for {base_version}"
            )
        return versions[0]

    @staticmethod
    def descriptor_path(target_dir: Path, version_id: str) -> Path:
        return target_dir / "versions" / version_id / f"{version_id}.json"

    async def write_descriptor(
        self, target_dir: Path, version_id: str, descriptor: dict[str, Any]
    ) -> Path:
        path = self.descriptor_path(target_dir, version_id)
        await asyncio.to_thread(write_json_atomic, path, descriptor)
        return path


class NullProgress:
    """Stand-in used when an installer is driven without a reporter."""

    def update(self, local_percent: Optional[float], status: Optional[str] = None) -> None:
        pass

    def log(self, line: str) -> None:
        logger.debug(line)
