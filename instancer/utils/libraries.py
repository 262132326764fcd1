"""
Resolution of the library artifacts a version descriptor needs.

Descriptors written by loaders usually inherit from the base game descriptor through
``inheritsFrom``; libraries of the whole chain are collected, child first, and filtered
by the OS rules they carry.
"""

import platform
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from instancer.utils.constants import MINECRAFT_LIBRARIES_URL
from instancer.utils.files import read_json

_MAX_INHERITANCE_DEPTH = 10


def current_os_name() -> str:
    """Operating system name as used in descriptor rules."""
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "osx"
    return "linux"


def current_arch_bits() -> str:
    return "64" if sys.maxsize > 2**32 else "32"


def rules_allow(rules: Optional[list[dict[str, Any]]], os_name: Optional[str] = None) -> bool:
    """
    Evaluate a descriptor ``rules`` list against the running OS.

    No rules means allowed. Otherwise the last matching rule decides, and a matching
    ``disallow`` wins outright.
    """
    if not rules:
        return True
    os_name = os_name or current_os_name()
    allowed = False
    for rule in rules:
        rule_os = rule.get("os")
        if rule_os is not None:
            if rule_os.get("name") not in (None, os_name):
                continue
            if rule_os.get("arch") not in (None, platform.machine().lower()):
                continue
        if rule.get("features"):
            # Feature rules concern launch arguments, never a library we must fetch
            continue
        action = rule.get("action")
        if action == "disallow":
            return False
        if action == "allow":
            allowed = True
    return allowed


def maven_path(coordinate: str, extension: str = "jar") -> str:
    """
    Translate ``group:artifact:version[:classifier]`` into a repository-relative path.

    Example: ``net.fabricmc:intermediary:1.20.1`` becomes
    ``net/fabricmc/intermediary/1.20.1/intermediary-1.20.1.jar``.
    """
    if "@" in coordinate:
        coordinate, extension = coordinate.split("@", 1)
    parts = coordinate.split(":")
    if len(parts) < 3:
        raise ValueError(f"Invalid maven coordinate: {coordinate}")
    group, artifact, version = parts[0], parts[1], parts[2]
    classifier = f"-{parts[3]}" if len(parts) > 3 else ""
    return f"{group.replace('.', '/')}/{artifact}/{version}/{artifact}-{version}{classifier}.{extension}"


@dataclass(frozen=True)
class LibraryArtifact:
    path: str  # relative to the libraries folder
    url: str
    sha1: Optional[str] = None


def load_descriptor_chain(versions_dir: Path, version_id: str) -> list[dict[str, Any]]:
    """
    Read a version descriptor and every descriptor it inherits from, child first.

    Missing parents end the chain with a warning; the base game descriptor is
    normally already on disk by the time this runs.
    """
    chain: list[dict[str, Any]] = []
    seen: set[str] = set()
    current: Optional[str] = version_id
    while current is not None and current not in seen:
        if len(chain) >= _MAX_INHERITANCE_DEPTH:
            logger.warning(f"Descriptor inheritance of {version_id} is too deep, stopping")
            break
        seen.add(current)
        path = versions_dir / current / f"{current}.json"
        if not path.exists():
            if chain:
                logger.warning(f"Parent descriptor {current} is missing from {versions_dir}")
                break
            raise FileNotFoundError(path)
        descriptor = read_json(path)
        chain.append(descriptor)
        current = descriptor.get("inheritsFrom")
    return chain


def collect_library_artifacts(
    chain: list[dict[str, Any]], os_name: Optional[str] = None
) -> list[LibraryArtifact]:
    """
    Flatten the libraries of a descriptor chain into downloadable artifacts.

    Handles explicit ``downloads.artifact`` entries, legacy ``natives`` classifiers and
    bare maven coordinates. A bare coordinate without a repository ``url`` (legacy
    installer profiles) is fetched from the game's own library repository. Artifacts
    with an empty URL (built locally by an installer) are skipped. Duplicate paths keep
    their first occurrence.
    """
    os_name = os_name or current_os_name()
    artifacts: dict[str, LibraryArtifact] = {}

    def add(artifact: LibraryArtifact) -> None:
        if artifact.url and artifact.path not in artifacts:
            artifacts[artifact.path] = artifact

    for descriptor in chain:
        for library in descriptor.get("libraries") or []:
            if not rules_allow(library.get("rules"), os_name):
                continue
            name = library.get("name", "")
            downloads = library.get("downloads") or {}

            artifact = downloads.get("artifact")
            if artifact and artifact.get("path"):
                add(LibraryArtifact(artifact["path"], artifact.get("url", ""), artifact.get("sha1")))

            natives = library.get("natives")
            if natives and os_name in natives:
                classifier = natives[os_name].replace("${arch}", current_arch_bits())
                native = (downloads.get("classifiers") or {}).get(classifier)
                if native and native.get("path"):
                    add(LibraryArtifact(native["path"], native.get("url", ""), native.get("sha1")))

            if not downloads and name:
                if library.get("clientreq") is False:
                    # Legacy server-only entry
                    continue
                coordinate = name
                if natives:
                    if os_name not in natives:
                        continue
                    classifier = natives[os_name].replace("${arch}", current_arch_bits())
                    coordinate = f"{name}:{classifier}"
                repo_url = library.get("url") or MINECRAFT_LIBRARIES_URL
                if not repo_url.endswith("/"):
                    repo_url += "/"
                try:
                    path = maven_path(coordinate)
                except ValueError as e:
                    logger.warning(str(e))
                    continue
                add(LibraryArtifact(path, f"{repo_url}{path}", library.get("sha1")))

    return list(artifacts.values())
