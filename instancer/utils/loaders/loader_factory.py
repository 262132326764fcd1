from pathlib import Path
from typing import Optional

from instancer.utils.constants import LoaderFamily
from instancer.utils.loaders.base import LoaderInstaller
from instancer.utils.loaders.installer_loaders import (
    ForgeLoaderInstaller,
    InstallerLoaderInstaller,
    NeoForgeLoaderInstaller,
)
from instancer.utils.loaders.metadata_loaders import (
    FabricLoaderInstaller,
    QuiltLoaderInstaller,
)
from instancer.utils.registry.client import RegistryClient

LOADER_INSTALLERS: dict[LoaderFamily, type[LoaderInstaller]] = {
    LoaderFamily.FABRIC: FabricLoaderInstaller,
    LoaderFamily.QUILT: QuiltLoaderInstaller,
    LoaderFamily.FORGE: ForgeLoaderInstaller,
    LoaderFamily.NEOFORGE: NeoForgeLoaderInstaller,
}


def get_loader_installer(
    family: LoaderFamily,
    client: RegistryClient,
    java_path: str = "java",
    scratch_dir: Optional[Path] = None,
) -> LoaderInstaller:
    """
    Build the installer for a loader family.

    :raises ValueError: For vanilla, which has no loader to install
    """
    installer_cls = LOADER_INSTALLERS.get(family)
    if installer_cls is None:
        raise ValueError(f"No loader installer for {family.value}")
    if issubclass(installer_cls, InstallerLoaderInstaller):
        return installer_cls(client, java_path=java_path, scratch_dir=scratch_dir)
    return installer_cls(client)
