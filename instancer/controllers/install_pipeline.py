"""
Background installation and migration pipeline.

One run takes an instance from its persisted config to a launchable folder through a
fixed, linear sequence of phases:

    1. migration analysis (migrations only)
    2. base game download
    3. loader install
    4. library sync
    5. migrated content install
    6. optimization content install
    7. auto-install content install
    8. completion

Only base version lookup and loader installation are fatal. Everything else is
per-item and logged. Every phase boundary and every per-item loop checks the task's
aborted flag; an aborted run ends quietly with ``InstallOutcome.STOPPED`` and writes
no terminal status, leaving that to whoever cancelled it.
"""

import asyncio
from pathlib import Path
from typing import Optional

import msgspec
from loguru import logger

from instancer.controllers.task_registry import InstallTask, TaskRegistry
from instancer.models.install_state import InstallOutcome, MigrationCandidate, ModAction
from instancer.models.instance import (
    InstanceConfig,
    update_instance_config,
    write_instance_config,
)
from instancer.models.settings import Settings
from instancer.utils.constants import (
    FABRIC_API_PROJECT_ID,
    INSTALL_LOG_FILE,
    OPTIMIZATION_FALLBACKS,
    OPTIMIZATION_MODS,
    ContentKind,
    InstanceStatus,
    LoaderFamily,
)
from instancer.utils.content_cache import ContentCacheEntry, ContentLookupCache
from instancer.utils.event_bus import EventBus
from instancer.utils.exception import (
    BaseVersionNotFoundError,
    InstallAbortedError,
    InstallError,
    InstanceNotFoundError,
    InvalidInstanceConfigError,
    LoaderInstallError,
    RegistryFetchError,
)
from instancer.utils.files import read_json
from instancer.utils.libraries import collect_library_artifacts, load_descriptor_chain
from instancer.utils.loaders.loader_factory import get_loader_installer
from instancer.utils.mod_resolver import ModCompatibilityResolver
from instancer.utils.progress_reporter import Phase, ProgressReporter
from instancer.utils.registry.client import RegistryClient


class InstallPipeline:
    """
    Drives installation tasks for any number of instances on one event loop.

    Collaborators are injected: the task registry owning the one-task-per-instance
    rule, the registry client, the settings and the shared content cache.
    """

    def __init__(
        self,
        registry: TaskRegistry,
        client: RegistryClient,
        settings: Settings,
        cache: ContentLookupCache,
    ) -> None:
        self.registry = registry
        self.client = client
        self.settings = settings
        self.cache = cache
        self.resolver = ModCompatibilityResolver(client, cache)
        self._reporters: dict[str, ProgressReporter] = {}

    def instance_dir(self, instance_name: str) -> Path:
        return self.settings.instances_path / instance_name

    def recent_log_lines(self, instance_name: str) -> list[str]:
        """In-memory tail of the latest run's install log for ``instance_name``."""
        reporter = self._reporters.get(instance_name)
        return reporter.recent_lines if reporter else []

    def start_install(
        self,
        instance_name: str,
        config: InstanceConfig,
        clean: bool = False,
        migration: bool = False,
    ) -> "asyncio.Task[InstallOutcome]":
        """
        Claim the task slot for ``instance_name`` and run the pipeline in the background.

        The slot is claimed before this returns, so a previous task for the same
        instance is already aborted when the caller gets the handle back.

        :param instance_name: The instance folder name
        :param config: Config to install; written to disk with status ``installing``
        :param clean: Re-download base files and libraries even when present
        :param migration: Run migration analysis on the installed mods first
        :return: The asyncio task resolving to the run's outcome
        """
        task = self.registry.acquire(instance_name)
        return asyncio.create_task(
            self._run(task, config, clean, migration),
            name=f"install:{instance_name}",
        )

    async def install(
        self,
        instance_name: str,
        config: InstanceConfig,
        clean: bool = False,
        migration: bool = False,
    ) -> InstallOutcome:
        """Run the pipeline for ``instance_name`` to its end."""
        return await self.start_install(instance_name, config, clean, migration)

    async def _run(
        self,
        task: InstallTask,
        config: InstanceConfig,
        clean: bool,
        migration: bool,
    ) -> InstallOutcome:
        name = task.instance_name
        instance_dir = self.instance_dir(name)
        reporter = ProgressReporter(
            name,
            instance_dir / INSTALL_LOG_FILE,
            task,
            buffer_size=self.settings.log_buffer_size,
        )
        self._reporters[name] = reporter
        logger.info(f"Starting {'migration' if migration else 'install'} of {name}: clean={clean}")

        outcome = InstallOutcome.READY
        error: Optional[str] = None
        try:
            try:
                # Preempted or deleted before the loop got to us
                self._check_aborted(task)
                config = msgspec.structs.replace(
                    config, name=name, status=InstanceStatus.INSTALLING, error=None
                )
                write_instance_config(instance_dir, config)
                EventBus().instance_status.emit(name, InstanceStatus.INSTALLING.value, "")
                reporter.start(migration)

                candidates: list[MigrationCandidate] = []
                if migration:
                    self._check_aborted(task)
                    candidates = await self._analyze_migration(task, reporter, instance_dir, config)

                self._check_aborted(task)
                await self._download_base(reporter, instance_dir, config, clean)

                self._check_aborted(task)
                if config.loader.is_modded:
                    config = await self._install_loader(task, reporter, instance_dir, config)

                self._check_aborted(task)
                await self._sync_libraries(task, reporter, instance_dir, config, clean)

                self._check_aborted(task)
                if candidates:
                    await self._install_migrated(task, reporter, instance_dir, candidates)

                self._check_aborted(task)
                if self.settings.install_optimization_mods and config.loader.is_modded:
                    await self._install_optimization(task, reporter, instance_dir, config)

                self._check_aborted(task)
                if self.settings.auto_install_mods and config.loader.is_modded:
                    await self._auto_install(task, reporter, instance_dir, config)

                self._check_aborted(task)
            except InstallAbortedError:
                outcome = InstallOutcome.STOPPED
            except InstallError as e:
                logger.error(f"Install of {name} failed: {e}")
                outcome, error = InstallOutcome.ERROR, str(e)
            except Exception as e:
                logger.exception(f"Unexpected error while installing {name}")
                outcome, error = InstallOutcome.ERROR, str(e) or e.__class__.__name__

            if outcome is InstallOutcome.STOPPED or task.aborted:
                logger.info(f"Install task for {name} was aborted")
                return InstallOutcome.STOPPED

            self._complete(reporter, instance_dir, outcome, error)
            return outcome
        except asyncio.CancelledError:
            # Event loop shutdown; do not leave an installer process behind
            task.abort()
            raise
        finally:
            await self.cache.save()
            self.registry.release(name, task)

    @staticmethod
    def _check_aborted(task: InstallTask) -> None:
        if task.aborted:
            raise InstallAbortedError(task.instance_name)

    def _complete(
        self,
        reporter: ProgressReporter,
        instance_dir: Path,
        outcome: InstallOutcome,
        error: Optional[str],
    ) -> None:
        name = reporter.instance_name
        status = InstanceStatus.READY if outcome is InstallOutcome.READY else InstanceStatus.ERROR
        if error:
            reporter.log(f"Error: {error}")
        try:
            update_instance_config(instance_dir, status=status, error=error)
        except (InstanceNotFoundError, InvalidInstanceConfigError, OSError) as e:
            logger.error(f"Failed to persist final status of {name}: {e}")
        reporter.complete(outcome is InstallOutcome.READY)
        EventBus().instance_status.emit(name, status.value, error or "")
        logger.info(f"Install of {name} finished with status {status.value}")

    # Phase 1

    async def _analyze_migration(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
    ) -> list[MigrationCandidate]:
        progress = reporter.phase(Phase.MIGRATION_ANALYSIS)
        progress.update(0, "Analyzing current mods for migration")
        mods_dir = instance_dir / ContentKind.MOD.value
        if not mods_dir.is_dir():
            return []

        jars = sorted(p for p in mods_dir.iterdir() if p.is_file() and p.suffix == ".jar")
        candidates: list[MigrationCandidate] = []
        for index, jar in enumerate(jars):
            self._check_aborted(task)
            progress.update(index / len(jars) * 100, f"Checking compatibility: {jar.name}")
            try:
                action, candidate = await self.resolver.classify(
                    jar, config.loader, config.version
                )
                if action is ModAction.KEEP:
                    progress.log(f"{jar.name} is already compatible")
                    continue
                if action is ModAction.REPLACE and candidate is not None:
                    candidates.append(candidate)
                    progress.log(
                        f"Found compatible version for {jar.name}: {candidate.version_number}"
                    )
                else:
                    progress.log(
                        f"No compatible version found for {jar.name} on "
                        f"{config.loader.value} {config.version}. Mod will be removed."
                    )
                jar.unlink(missing_ok=True)
            except OSError as e:
                progress.log(f"Failed to process {jar.name}: {e}")
        progress.update(100)
        return candidates

    # Phase 2

    async def _download_base(
        self,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
        clean: bool,
    ) -> None:
        progress = reporter.phase(Phase.BASE_DOWNLOAD)
        version = config.version
        version_dir = instance_dir / "versions" / version
        descriptor_path = version_dir / f"{version}.json"
        jar_path = version_dir / f"{version}.jar"

        progress.update(0, f"Downloading Minecraft {version} base files")
        if not clean and descriptor_path.is_file() and jar_path.is_file():
            progress.log(f"Base files for {version} already present")
            progress.update(100)
            return

        try:
            manifest = await self.client.get_version_manifest()
        except RegistryFetchError as e:
            progress.log(f"Warning: could not fetch version manifest: {e}")
            return

        entry = manifest.find(version)
        if entry is None:
            raise BaseVersionNotFoundError(version)

        try:
            if clean or not descriptor_path.is_file():
                await self.client.download_file(entry.url, descriptor_path)
            progress.update(30)
            if clean or not jar_path.is_file():
                descriptor = await asyncio.to_thread(read_json, descriptor_path)
                client_url = descriptor["downloads"]["client"]["url"]
                await self.client.download_file(client_url, jar_path)
            progress.update(100)
        except (RegistryFetchError, OSError, KeyError, TypeError, msgspec.DecodeError) as e:
            progress.log(f"Warning: base game files check/download: {e}")

    # Phase 3

    async def _install_loader(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
    ) -> InstanceConfig:
        progress = reporter.phase(Phase.LOADER_INSTALL)
        progress.update(0, f"Installing {config.loader.value} loader")
        installer = get_loader_installer(
            config.loader,
            self.client,
            java_path=self.settings.java_path,
        )
        result = await installer.install(
            instance_dir,
            config.version,
            config.loader_version,
            task=task,
            progress=progress,
        )
        if result.cancelled:
            raise InstallAbortedError(task.instance_name)
        self._check_aborted(task)
        if not result.success:
            raise LoaderInstallError(
                result.error or f"{config.loader.value} installation failed"
            )

        config = update_instance_config(
            instance_dir,
            loader_version=result.loader_version,
            version_id=result.version_id,
        )
        progress.log(f"Loader installed: {result.version_id}")

        if config.loader is LoaderFamily.FABRIC and self.settings.auto_install_fabric_api:
            progress.update(90, "Auto-installing Fabric API")
            try:
                filename = await self.install_project(
                    FABRIC_API_PROJECT_ID,
                    config.loader,
                    config.version,
                    instance_dir / ContentKind.MOD.value,
                )
                if filename:
                    progress.log(f"Fabric API installed: {filename}")
                else:
                    progress.log(f"No Fabric API build available for {config.version}")
            except (RegistryFetchError, OSError) as e:
                progress.log(f"Warning: failed to auto-install Fabric API: {e}")
        progress.update(100)
        return config

    # Phase 4

    async def _sync_libraries(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
        clean: bool,
    ) -> None:
        progress = reporter.phase(Phase.LIBRARY_SYNC)
        progress.update(0, "Syncing libraries")
        try:
            chain = await asyncio.to_thread(
                load_descriptor_chain,
                instance_dir / "versions",
                config.resolved_version_id,
            )
        except (OSError, msgspec.DecodeError) as e:
            progress.log(f"Library sync warning: {e}")
            return

        artifacts = collect_library_artifacts(chain)
        libraries_dir = instance_dir / "libraries"
        fetched = 0
        for index, artifact in enumerate(artifacts, start=1):
            self._check_aborted(task)
            dest = libraries_dir / artifact.path
            if clean or not dest.is_file():
                try:
                    await self.client.download_file(artifact.url, dest)
                    fetched += 1
                except (RegistryFetchError, OSError) as e:
                    progress.log(f"Failed to download library {artifact.path}: {e}")
            progress.update(index / len(artifacts) * 100)
        progress.log(f"Libraries synced: {fetched} downloaded, {len(artifacts) - fetched} present")

    # Phase 5

    async def _install_migrated(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        candidates: list[MigrationCandidate],
    ) -> None:
        progress = reporter.phase(Phase.MIGRATED_CONTENT)
        progress.update(0, f"Installing {len(candidates)} migrated mods")
        mods_dir = instance_dir / ContentKind.MOD.value
        for index, candidate in enumerate(candidates, start=1):
            self._check_aborted(task)
            dest = mods_dir / candidate.new_filename
            progress.log(f"Downloading migrated mod: {candidate.new_filename}")
            try:
                await self.client.download_file(candidate.url, dest)
                self.cache.record(
                    dest.name,
                    dest.stat().st_size,
                    ContentCacheEntry(
                        project_id=candidate.project_id,
                        version=candidate.version_number,
                    ),
                )
            except (RegistryFetchError, OSError) as e:
                progress.log(f"Failed to download {candidate.new_filename}: {e}")
            progress.update(index / len(candidates) * 100)

    # Phase 6

    async def _install_optimization(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
    ) -> None:
        progress = reporter.phase(Phase.OPTIMIZATION_CONTENT)
        progress.update(0, "Installing optimization mods")
        mods_dir = instance_dir / ContentKind.MOD.value
        projects = OPTIMIZATION_MODS.get(config.loader, [])
        for index, project in enumerate(projects, start=1):
            self._check_aborted(task)
            for option in [project, *OPTIMIZATION_FALLBACKS.get(project, [])]:
                try:
                    filename = await self.install_project(
                        option, config.loader, config.version, mods_dir
                    )
                except (RegistryFetchError, OSError) as e:
                    progress.log(f"Could not install {option}: {e}")
                    continue
                if filename:
                    progress.log(f"Optimization mod installed: {filename}")
                    break
                progress.log(f"{option} is not available for {config.loader.value} {config.version}")
            progress.update(index / len(projects) * 100)

    # Phase 7

    async def _auto_install(
        self,
        task: InstallTask,
        reporter: ProgressReporter,
        instance_dir: Path,
        config: InstanceConfig,
    ) -> None:
        progress = reporter.phase(Phase.AUTO_INSTALL_CONTENT)
        projects = list(self.settings.auto_install_mods)
        progress.update(0, f"Auto-installing {len(projects)} mods")
        mods_dir = instance_dir / ContentKind.MOD.value
        installed = skipped = 0
        for index, project in enumerate(projects, start=1):
            self._check_aborted(task)
            try:
                filename = await self.install_project(
                    project, config.loader, config.version, mods_dir
                )
            except (RegistryFetchError, OSError) as e:
                progress.log(f"Could not install {project}: {e}")
                filename = None
            if filename:
                installed += 1
            else:
                skipped += 1
            progress.update(index / len(projects) * 100)
        progress.log(f"Auto-install finished: {installed} installed, {skipped} skipped")

    async def install_project(
        self,
        project_id: str,
        loader: LoaderFamily,
        base_version: str,
        mods_dir: Path,
    ) -> Optional[str]:
        """
        Install the newest version of a registry project that supports (loader, base version).

        An already present file of the same name counts as installed.

        :param project_id: Registry project id or slug
        :return: The installed filename, or None when no compatible version exists
        :raises RegistryFetchError: When the registry cannot be queried or the download fails
        """
        versions = await self.client.get_project_versions(
            project_id, loaders=[loader.value], game_versions=[base_version]
        )
        if not versions:
            return None
        best = versions[0]
        primary = best.primary_file
        if primary is None:
            return None

        dest = mods_dir / primary.filename
        if not dest.is_file():
            await self.client.download_file(primary.url, dest)
        self.cache.record(
            primary.filename,
            dest.stat().st_size,
            ContentCacheEntry(
                sha1=primary.hashes.get("sha1"),
                project_id=best.project_id,
                version_id=best.id,
                version=best.version_number,
            ),
        )
        return primary.filename
