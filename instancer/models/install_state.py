"""
State models for installation and migration tasks.

This module defines the plain data carried between the installation pipeline and
its collaborators: fingerprinted content items, migration candidates produced by the
compatibility resolver and the uniform result shape returned by loader installers.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from instancer.utils.constants import ContentKind


class InstallOutcome(Enum):
    """Terminal outcome of one pipeline run."""

    READY = "ready"  # All phases completed
    ERROR = "error"  # A fatal phase failed
    STOPPED = "stopped"  # The task was aborted, nothing terminal was written


class ModAction(Enum):
    """What migration analysis decided to do with an installed mod."""

    KEEP = "keep"  # The installed file already is the compatible version
    REPLACE = "replace"  # A different compatible file was found
    REMOVE = "remove"  # No compatible version, or the lookup failed


@dataclass
class ContentItem:
    """
    An add-on file installed into an instance.

    Identified by filename and byte size, a cheap fingerprint that is checked
    before committing to hashing the whole file. Registry metadata is optional
    and filled from the shared content lookup cache.
    """

    filename: str
    size: int
    kind: ContentKind = ContentKind.MOD
    enabled: bool = True

    title: Optional[str] = None
    icon: Optional[str] = None
    version: Optional[str] = None
    project_id: Optional[str] = None
    version_id: Optional[str] = None
    sha1: Optional[str] = None

    @property
    def fingerprint(self) -> str:
        return fingerprint_key(self.filename, self.size)

    @classmethod
    def from_path(cls, path: Path, kind: ContentKind = ContentKind.MOD) -> "ContentItem":
        return cls(
            filename=path.name,
            size=path.stat().st_size,
            kind=kind,
            enabled=not path.name.endswith(".disabled"),
        )


def fingerprint_key(filename: str, size: int) -> str:
    """Weak content key, matches the format used by existing mod_cache.json files."""
    return f"{filename}-{size}"


@dataclass(frozen=True)
class MigrationCandidate:
    """A compatible replacement for an installed mod, queued for download."""

    old_filename: str
    new_filename: str
    url: str
    project_id: str
    version_number: str


@dataclass(frozen=True)
class ContentUpdate:
    """A newer version of installed content, compatible with the instance as it is."""

    filename: str
    current_version: Optional[str]
    candidate: MigrationCandidate

    @property
    def new_version(self) -> str:
        return self.candidate.version_number


@dataclass
class LoaderInstallResult:
    """
    Result shared by every loader installer.

    On success ``loader_version`` and ``version_id`` are set. On failure ``error``
    describes what went wrong; ``cancelled`` marks failures caused by an abort or an
    externally killed installer process rather than a real error.
    """

    success: bool
    loader_version: Optional[str] = None
    version_id: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False

    @classmethod
    def ok(cls, loader_version: str, version_id: str) -> "LoaderInstallResult":
        return cls(success=True, loader_version=loader_version, version_id=version_id)

    @classmethod
    def failed(cls, error: str, cancelled: bool = False) -> "LoaderInstallResult":
        return cls(success=False, error=error, cancelled=cancelled)
