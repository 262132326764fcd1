"""
Loaders whose meta service hands out a ready-made version descriptor.

Installing one of these is a metadata fetch and a file write, no external process.
"""

from pathlib import Path
from typing import Optional

from loguru import logger

from instancer.controllers.task_registry import InstallTask
from instancer.models.install_state import LoaderInstallResult
from instancer.utils.constants import LoaderFamily
from instancer.utils.exception import LoaderInstallError, RegistryFetchError
from instancer.utils.loaders.base import LoaderInstaller, NullProgress
from instancer.utils.progress_reporter import PhaseProgress


class MetadataLoaderInstaller(LoaderInstaller):
    def version_id(self, base_version: str, loader_version: str) -> str:
        return f"{self.family.value}-loader-{loader_version}-{base_version}"

    async def install(
        self,
        target_dir: Path,
        base_version: str,
        requested_loader_version: Optional[str],
        *,
        task: Optional[InstallTask] = None,
        progress: Optional[PhaseProgress] = None,
    ) -> LoaderInstallResult:
        progress = progress or NullProgress()
        try:
            progress.update(5, f"Resolving {self.display_name} loader version")
            loader_version = await self.resolve_loader_version(
                base_version, requested_loader_version
            )
            progress.log(f"Using {self.display_name} loader {loader_version}")

            progress.update(30, f"Fetching {self.display_name} profile")
            profile = await self.client.get_loader_profile(
                self.family, base_version, loader_version
            )
            if task is not None and task.aborted:
                return LoaderInstallResult.failed(
                    f"{self.display_name} install aborted", cancelled=True
                )

            version_id = self.version_id(base_version, loader_version)
            path = await self.write_descriptor(target_dir, version_id, profile)
            progress.update(100, f"{self.display_name} profile saved")
            logger.info(f"Installed {self.display_name} {loader_version} as {path}")
            return LoaderInstallResult.ok(loader_version, version_id)
        except (LoaderInstallError, RegistryFetchError, OSError) as e:
            progress.log(f"{self.display_name} install failed: {e}")
            return LoaderInstallResult.failed(str(e))


class FabricLoaderInstaller(MetadataLoaderInstaller):
    family = LoaderFamily.FABRIC
    display_name = "Fabric"


class QuiltLoaderInstaller(MetadataLoaderInstaller):
    family = LoaderFamily.QUILT
    display_name = "Quilt"
