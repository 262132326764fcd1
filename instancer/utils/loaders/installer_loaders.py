"""
Loaders that ship an executable installer archive.

The installer is downloaded, run headlessly with Java against the instance folder and
then opened again as a zip to pull out the version descriptor it embeds. The running
process is attached to the install task so an abort kills it straight away.
"""

import asyncio
import os
import tempfile
from abc import abstractmethod
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

from loguru import logger

from instancer.controllers.task_registry import InstallTask, kill_process_tree
from instancer.models.install_state import LoaderInstallResult
from instancer.utils.constants import (
    FORGE_MAVEN,
    INSTALLER_DESCRIPTOR_ENTRIES,
    LAUNCHER_PROFILES_STUB,
    NEOFORGE_MAVEN,
    LoaderFamily,
)
from instancer.utils.exception import (
    InstallerExitError,
    LoaderInstallError,
    RegistryFetchError,
)
from instancer.utils.files import read_descriptor_from_archive, write_json_atomic
from instancer.utils.loaders.base import LoaderInstaller, NullProgress
from instancer.utils.progress_reporter import PhaseProgress
from instancer.utils.registry.client import RegistryClient

# Installer output that is worth surfacing as a status line
_STATUS_HINTS = {
    "Downloading": "Downloading libraries",
    "Extracting": "Extracting files",
    "Processor": "Running post-processors",
    "Patching": "Patching client",
}

# Longest installer output line we accept
_STREAM_LIMIT = 1024 * 1024


class InstallerLoaderInstaller(LoaderInstaller):
    def __init__(
        self,
        client: RegistryClient,
        java_path: str = "java",
        scratch_dir: Optional[Path] = None,
    ) -> None:
        super().__init__(client)
        self.java_path = java_path
        self.scratch_dir = scratch_dir or Path(tempfile.gettempdir())

    @abstractmethod
    def installer_url(self, base_version: str, loader_version: str) -> str:
        raise NotImplementedError

    def command(self, installer: Path, target_dir: Path) -> list[str]:
        return [self.java_path, "-jar", str(installer), "--installClient", str(target_dir)]

    @staticmethod
    def ensure_launcher_profiles(target_dir: Path) -> None:
        """Write the minimal launcher profile file the installers insist on, if missing."""
        path = target_dir / "launcher_profiles.json"
        if not path.exists():
            write_json_atomic(path, LAUNCHER_PROFILES_STUB)

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
        name = self.display_name
        scratch: Optional[Path] = None
        try:
            progress.update(5, f"Resolving {name} version")
            loader_version = await self.resolve_loader_version(
                base_version, requested_loader_version
            )
            url = self.installer_url(base_version, loader_version)
            scratch = self.scratch_dir / f"{uuid4().hex}-{url.rsplit('/', 1)[-1]}"

            progress.update(10, f"Downloading {name} installer")
            progress.log(f"Downloading {name} installer from {url}")
            try:
                await self.client.download_file(url, scratch)
            except RegistryFetchError as e:
                raise LoaderInstallError(
                    f"Failed to download {name} installer: {e}"
                ) from e
            if task is not None and task.aborted:
                return LoaderInstallResult.failed(f"{name} install aborted", cancelled=True)

            await asyncio.to_thread(self.ensure_launcher_profiles, target_dir)

            progress.update(30, f"Running {name} installer")
            exit_code = await self.run_installer(scratch, target_dir, task, progress)
            if (task is not None and task.aborted) or exit_code < 0:
                return LoaderInstallResult.failed(
                    f"{name} installer was terminated", cancelled=True
                )
            if exit_code != 0:
                raise InstallerExitError(exit_code)

            progress.update(80, "Extracting version profile")
            descriptor: Optional[dict[str, Any]] = await asyncio.to_thread(
                read_descriptor_from_archive, scratch, INSTALLER_DESCRIPTOR_ENTRIES
            )
            if not descriptor:
                raise LoaderInstallError(
                    f"Could not find a version descriptor in the {name} installer"
                )
            version_id = descriptor["id"]
            await self.write_descriptor(target_dir, version_id, descriptor)

            progress.update(100, f"{name} installation finished")
            logger.info(f"Installed {name} {loader_version} into {target_dir} as {version_id}")
            return LoaderInstallResult.ok(loader_version, version_id)
        except InstallerExitError as e:
            progress.log(f"{name} installation failed: {e}")
            return LoaderInstallResult.failed(f"{name} installation failed: {e}")
        except (LoaderInstallError, RegistryFetchError, OSError) as e:
            progress.log(f"{name} installation failed: {e}")
            return LoaderInstallResult.failed(str(e))
        finally:
            if scratch is not None:
                try:
                    scratch.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning(f"Could not remove installer {scratch}: {e}")

    async def run_installer(
        self,
        installer: Path,
        target_dir: Path,
        task: Optional[InstallTask],
        progress: Any,
    ) -> int:
        """
        Run the installer and stream its output into the install log.

        :return: The process exit code, negative when killed by a signal
        """
        command = self.command(installer, target_dir)
        logger.debug(f"Spawning installer: {' '.join(command)}")
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=os.fspath(target_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=_STREAM_LIMIT,
        )
        if task is not None:
            task.attach_process(process)
        pumps = [
            asyncio.create_task(self._pump(process.stdout, progress, "[Installer]")),
            asyncio.create_task(self._pump(process.stderr, progress, "[Installer ERROR]")),
        ]
        try:
            await asyncio.gather(*pumps)
            return await process.wait()
        except BaseException:
            # Cancelled, or the output could not be read: the installer must not outlive us
            if kill_process_tree(process):
                logger.warning(f"Killed {self.display_name} installer (pid {process.pid})")
            for pump in pumps:
                pump.cancel()
            await asyncio.gather(*pumps, return_exceptions=True)
            # Drain what is left so the pipes close and the exit status is collected
            await process.communicate()
            raise
        finally:
            if task is not None:
                task.detach_process()

    @staticmethod
    async def _pump(
        stream: Optional[asyncio.StreamReader], progress: Any, prefix: str
    ) -> None:
        if stream is None:
            return
        last_hint = None
        async for raw in stream:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            progress.log(f"{prefix}: {line}")
            for marker, hint in _STATUS_HINTS.items():
                if marker in line:
                    if hint != last_hint:
                        progress.update(None, hint)
                        last_hint = hint
                    break


class ForgeLoaderInstaller(InstallerLoaderInstaller):
    family = LoaderFamily.FORGE
    display_name = "Forge"

    @staticmethod
    def full_version(base_version: str, loader_version: str) -> str:
        """Forge artifacts are versioned ``<base>-<forge>``, e.g. ``1.20.1-47.2.0``."""
        if loader_version.startswith(f"{base_version}-"):
            return loader_version
        return f"{base_version}-{loader_version}"

    def installer_url(self, base_version: str, loader_version: str) -> str:
        full = self.full_version(base_version, loader_version)
        return f"{FORGE_MAVEN}/{full}/forge-{full}-installer.jar"


class NeoForgeLoaderInstaller(InstallerLoaderInstaller):
    family = LoaderFamily.NEOFORGE
    display_name = "NeoForge"

    def installer_url(self, base_version: str, loader_version: str) -> str:
        return f"{NEOFORGE_MAVEN}/{loader_version}/neoforge-{loader_version}-installer.jar"
