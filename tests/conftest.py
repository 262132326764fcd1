import hashlib
import sys
from pathlib import Path
from typing import Any, Generator, Optional

import pytest
from PySide6.QtCore import QCoreApplication

from instancer.controllers.task_registry import TaskRegistry
from instancer.models.registry import (
    ManifestVersion,
    RegistryFile,
    RegistryProject,
    RegistryVersion,
    VersionManifest,
)
from instancer.models.settings import Settings
from instancer.utils.app_info import AppInfo
from instancer.utils.constants import LoaderFamily
from instancer.utils.content_cache import ContentLookupCache
from instancer.utils.event_bus import EventBus
from instancer.utils.exception import RegistryFetchError
from instancer.utils.registry.client import RegistryClient


@pytest.fixture(autouse=True)
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the application storage at a per-test folder."""
    root = tmp_path / "data"
    monkeypatch.setenv("INSTANCER_DATA_DIR", str(root))
    monkeypatch.setattr(AppInfo, "_instance", None)
    return root


@pytest.fixture(scope="function")
def qapp() -> Generator[QCoreApplication, None, None]:
    """Create a QCoreApplication instance for signal tests."""
    app = QCoreApplication.instance()
    if app is None:
        app = QCoreApplication([])
    yield app


class EventRecorder:
    """Collects everything published on the EventBus while connected."""

    def __init__(self) -> None:
        self.progress: list[tuple[str, int, str]] = []
        self.statuses: list[tuple[str, str, str]] = []
        self.lines: list[tuple[str, str]] = []
        self.settings_changes = 0

    def on_progress(self, name: str, percent: int, status: str) -> None:
        self.progress.append((name, percent, status))

    def on_status(self, name: str, status: str, error: str) -> None:
        self.statuses.append((name, status, error))

    def on_line(self, name: str, line: str) -> None:
        self.lines.append((name, line))

    def on_settings(self) -> None:
        self.settings_changes += 1

    def percents(self, name: str) -> list[int]:
        return [percent for n, percent, _ in self.progress if n == name]


@pytest.fixture
def events(qapp: QCoreApplication) -> Generator[EventRecorder, None, None]:
    recorder = EventRecorder()
    bus = EventBus()
    bus.install_progress.connect(recorder.on_progress)
    bus.instance_status.connect(recorder.on_status)
    bus.install_log.connect(recorder.on_line)
    bus.settings_have_changed.connect(recorder.on_settings)
    yield recorder
    bus.install_progress.disconnect(recorder.on_progress)
    bus.instance_status.disconnect(recorder.on_status)
    bus.install_log.disconnect(recorder.on_line)
    bus.settings_have_changed.disconnect(recorder.on_settings)


class FakeRegistryClient(RegistryClient):
    """
    In-memory registry. URLs map to bytes for downloads; metadata lives in dicts.

    Every download is recorded in ``downloads`` so tests can assert on redundancy.
    """

    def __init__(self) -> None:
        super().__init__()
        self.files: dict[str, bytes] = {}
        self.downloads: list[str] = []
        self.manifest_requests = 0
        self.manifest = VersionManifest(versions=[])
        self.loader_versions: dict[LoaderFamily, list[str]] = {}
        self.profiles: dict[tuple[LoaderFamily, str, str], dict[str, Any]] = {}
        self.versions_by_hash: dict[str, RegistryVersion] = {}
        self.project_versions: dict[str, list[RegistryVersion]] = {}
        self.projects: dict[str, RegistryProject] = {}
        self.failing_hashes: set[str] = set()

    # Helpers for test setup

    def add_base_version(self, version: str, client_jar: bytes = b"client") -> None:
        descriptor_url = f"https://meta.test/{version}.json"
        jar_url = f"https://meta.test/{version}-client.jar"
        descriptor = (
            '{"id": "%s", "downloads": {"client": {"url": "%s"}}, "libraries": []}'
            % (version, jar_url)
        )
        self.manifest.versions.append(ManifestVersion(id=version, url=descriptor_url))
        self.files[descriptor_url] = descriptor.encode()
        self.files[jar_url] = client_jar

    def add_project_version(
        self,
        project_id: str,
        version_id: str,
        filename: str,
        content: bytes,
        loaders: list[str],
        game_versions: list[str],
        version_number: str = "1.0.0",
    ) -> RegistryVersion:
        url = f"https://cdn.test/{project_id}/{version_id}/{filename}"
        self.files[url] = content
        version = RegistryVersion(
            id=version_id,
            project_id=project_id,
            version_number=version_number,
            files=[
                RegistryFile(
                    url=url,
                    filename=filename,
                    primary=True,
                    size=len(content),
                    hashes={"sha1": hashlib.sha1(content).hexdigest()},
                )
            ],
            loaders=loaders,
            game_versions=game_versions,
        )
        self.project_versions.setdefault(project_id, []).append(version)
        self.versions_by_hash[hashlib.sha1(content).hexdigest()] = version
        return version

    # RegistryClient overrides

    async def close(self) -> None:
        pass

    async def download_file(self, url: str, dest: Path) -> Path:
        if url not in self.files:
            raise RegistryFetchError(url, "HTTP 404 Not Found", 404)
        self.downloads.append(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(self.files[url])
        return dest

    async def get_version_manifest(self) -> VersionManifest:
        self.manifest_requests += 1
        return self.manifest

    async def get_loader_versions(self, family: LoaderFamily, base_version: str) -> list[str]:
        return list(self.loader_versions.get(family, []))

    async def get_loader_profile(
        self, family: LoaderFamily, base_version: str, loader_version: str
    ) -> dict[str, Any]:
        key = (family, base_version, loader_version)
        if key not in self.profiles:
            raise RegistryFetchError(f"https://meta.test/{family.value}", "HTTP 404", 404)
        return self.profiles[key]

    async def get_version_from_hash(self, sha1: str) -> Optional[RegistryVersion]:
        if sha1 in self.failing_hashes:
            raise RegistryFetchError("https://api.test/version_file", "HTTP 503", 503)
        return self.versions_by_hash.get(sha1)

    async def get_project_versions(
        self,
        project_id: str,
        loaders: Optional[list[str]] = None,
        game_versions: Optional[list[str]] = None,
    ) -> list[RegistryVersion]:
        return [
            version
            for version in self.project_versions.get(project_id, [])
            if (not loaders or set(loaders) & set(version.loaders))
            and (not game_versions or set(game_versions) & set(version.game_versions))
        ]

    async def get_project(self, project_id: str) -> RegistryProject:
        if project_id not in self.projects:
            raise RegistryFetchError(f"https://api.test/project/{project_id}", "HTTP 404", 404)
        return self.projects[project_id]


@pytest.fixture
def fake_client() -> FakeRegistryClient:
    return FakeRegistryClient()


@pytest.fixture
def settings(data_dir: Path, qapp: QCoreApplication) -> Settings:
    settings = Settings(data_dir / "settings.json")
    settings.instances_folder = str(data_dir / "instances")
    settings.content_cache_file = str(data_dir / "mod_cache.json")
    settings.auto_install_fabric_api = False
    return settings


@pytest.fixture
def content_cache(settings: Settings) -> ContentLookupCache:
    return ContentLookupCache(settings.content_cache_path)


@pytest.fixture
def task_registry() -> TaskRegistry:
    return TaskRegistry()


@pytest.fixture
def fake_java(tmp_path: Path) -> Path:
    """
    A stand-in for the ``java`` executable.

    It runs a shell snippet chosen by the ``FAKE_JAVA_SCRIPT`` environment variable so
    each test decides how the installer behaves.
    """
    if sys.platform.startswith("win"):
        pytest.skip("fake java needs a POSIX shell")
    script = tmp_path / "java"
    script.write_text('#!/bin/sh\neval "$FAKE_JAVA_SCRIPT"\n')
    script.chmod(0o755)
    return script
