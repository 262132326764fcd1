"""
Typed payloads returned by the content registries.

Only the fields the installer needs are declared; msgspec ignores the rest.
"""

from typing import Optional

import msgspec


class ManifestVersion(msgspec.Struct):
    id: str
    url: str
    type: str = "release"


class VersionManifest(msgspec.Struct):
    versions: list[ManifestVersion]
    latest: dict[str, str] = msgspec.field(default_factory=dict)

    def find(self, version: str) -> Optional[ManifestVersion]:
        for entry in self.versions:
            if entry.id == version:
                return entry
        return None


class LoaderVersionInfo(msgspec.Struct):
    version: str
    stable: bool = False


class LoaderVersionEntry(msgspec.Struct):
    """One element of the Fabric/Quilt "loader versions for game version" listing."""

    loader: LoaderVersionInfo


class RegistryFile(msgspec.Struct):
    url: str
    filename: str
    primary: bool = False
    size: int = 0
    hashes: dict[str, str] = msgspec.field(default_factory=dict)


class RegistryVersion(msgspec.Struct):
    id: str
    project_id: str
    version_number: str = ""
    files: list[RegistryFile] = msgspec.field(default_factory=list)
    loaders: list[str] = msgspec.field(default_factory=list)
    game_versions: list[str] = msgspec.field(default_factory=list)

    @property
    def primary_file(self) -> Optional[RegistryFile]:
        """The file flagged primary, or the first file when none is flagged."""
        for file in self.files:
            if file.primary:
                return file
        return self.files[0] if self.files else None


class RegistryProject(msgspec.Struct):
    id: str
    title: str = ""
    slug: str = ""
    icon_url: Optional[str] = None
    project_type: str = "mod"
