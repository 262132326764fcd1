import asyncio
import shutil
from pathlib import Path
from typing import Optional

import msgspec
from loguru import logger
from PySide6.QtCore import QObject

from instancer.controllers.install_pipeline import InstallPipeline
from instancer.controllers.task_registry import TaskRegistry
from instancer.models.install_state import (
    ContentItem,
    ContentUpdate,
    InstallOutcome,
    ModAction,
)
from instancer.models.instance import (
    InstanceConfig,
    config_path,
    read_instance_config,
    update_instance_config,
    write_instance_config,
)
from instancer.models.settings import Settings
from instancer.utils.constants import (
    COPYABLE_SETTINGS_FILES,
    INSTALL_LOG_FILE,
    INSTANCE_CONFIG_FILE,
    ContentKind,
    InstanceStatus,
    LoaderFamily,
)
from instancer.utils.content_cache import ContentCacheEntry, ContentLookupCache
from instancer.utils.event_bus import EventBus
from instancer.utils.exception import (
    InstanceNotFoundError,
    InvalidInstanceConfigError,
    RegistryFetchError,
)
from instancer.utils.files import remove_path, rmtree
from instancer.utils.mod_resolver import ModCompatibilityResolver
from instancer.utils.registry.client import RegistryClient

_DELETE_ATTEMPTS = 5
_DELETE_RETRY_DELAY = 1.0

_CONTENT_SUFFIXES = {
    ContentKind.MOD: (".jar", ".jar.disabled"),
    ContentKind.RESOURCE_PACK: (".zip", ".zip.disabled"),
    ContentKind.SHADER_PACK: (".zip", ".zip.disabled"),
}


class InstanceController(QObject):
    """
    Entry points that create, reinstall, migrate and delete instances.

    Every request that changes installed files goes through the install pipeline, which
    claims the instance's task slot; this class only prepares the folder and config.
    """

    def __init__(
        self,
        settings: Settings,
        client: RegistryClient,
        cache: ContentLookupCache,
        registry: Optional[TaskRegistry] = None,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.client = client
        self.cache = cache
        self.registry = registry or TaskRegistry()
        self.pipeline = InstallPipeline(self.registry, client, settings, cache)
        self.resolver = ModCompatibilityResolver(client, cache)

    @property
    def instances_path(self) -> Path:
        return self.settings.instances_path

    def instance_dir(self, name: str) -> Path:
        return self.instances_path / name

    def unique_name(self, name: str) -> str:
        """Return ``name``, or ``name (n)`` with the lowest free ``n`` if the folder is taken."""
        name = name.strip()
        if not self.instance_dir(name).exists():
            return name
        counter = 1
        while self.instance_dir(f"{name} ({counter})").exists():
            counter += 1
        return f"{name} ({counter})"

    def list_instances(self) -> list[InstanceConfig]:
        """Configs of every instance folder holding a readable ``instance.json``, by name."""
        instances: list[InstanceConfig] = []
        if not self.instances_path.is_dir():
            return instances
        for folder in sorted(self.instances_path.iterdir()):
            if not (folder / INSTANCE_CONFIG_FILE).is_file():
                continue
            try:
                instances.append(read_instance_config(folder))
            except InvalidInstanceConfigError as e:
                logger.error(f"Failed to read instance config for {folder.name}: {e}")
        return instances

    def get_instance(self, name: str) -> InstanceConfig:
        return read_instance_config(self.instance_dir(name))

    def create_instance(
        self,
        name: str,
        version: str,
        loader: "LoaderFamily | str | None" = None,
        loader_version: Optional[str] = None,
        icon: Optional[str] = None,
    ) -> "tuple[str, asyncio.Task[InstallOutcome]]":
        """
        Create an instance folder and start installing it.

        Must be called from a running event loop.

        :param name: Requested name; suffixed with `` (n)`` when already taken
        :param version: Base game version
        :param loader: Loader family, vanilla when empty
        :param loader_version: Loader version, newest when empty
        :param icon: Optional icon reference stored in the config
        :return: The final instance name and the running install task
        """
        final_name = self.unique_name(name)
        instance_dir = self.instance_dir(final_name)
        instance_dir.mkdir(parents=True)

        self._copy_game_settings(instance_dir)

        config = InstanceConfig(
            name=final_name,
            version=version,
            loader=LoaderFamily.parse(loader),
            loader_version=loader_version,
            version_id=version,
            icon=icon,
        )
        write_instance_config(instance_dir, config)
        logger.info(f"Created instance {final_name} ({config.loader.value} {version})")
        return final_name, self.pipeline.start_install(final_name, config)

    def _copy_game_settings(self, instance_dir: Path) -> None:
        source_name = self.settings.copy_settings_source_instance
        if not self.settings.copy_settings_enabled or not source_name:
            return
        source_dir = self.instance_dir(source_name)
        if not source_dir.is_dir():
            logger.warning(f"Settings source instance {source_name} does not exist")
            return
        for filename in COPYABLE_SETTINGS_FILES:
            source = source_dir / filename
            if source.is_file():
                try:
                    shutil.copy2(source, instance_dir / filename)
                    logger.debug(f"Copied {filename} from {source_name}")
                except OSError as e:
                    logger.warning(f"Failed to copy {filename} from {source_name}: {e}")

    def reinstall(self, name: str, hard: bool = False) -> "asyncio.Task[InstallOutcome]":
        """
        Reinstall an instance with its current versions.

        A hard reinstall wipes everything in the folder except ``instance.json`` and
        re-downloads all files.
        """
        instance_dir = self.instance_dir(name)
        config = read_instance_config(instance_dir)
        if hard:
            # Stop a running install before pulling files from under it
            self.registry.abort(name)
            logger.info(f"Hard reinstall of {name}: wiping instance folder")
            for entry in instance_dir.iterdir():
                if entry.name == INSTANCE_CONFIG_FILE:
                    continue
                remove_path(entry)
        return self.pipeline.start_install(name, config, clean=hard)

    def migrate(
        self,
        name: str,
        version: Optional[str] = None,
        loader: "LoaderFamily | str | None" = None,
        loader_version: Optional[str] = None,
    ) -> "asyncio.Task[InstallOutcome]":
        """
        Move an instance to another base version and/or loader.

        Installed mods are checked against the new target; compatible versions replace
        them and the rest are removed.
        """
        config = read_instance_config(self.instance_dir(name))
        changes: dict = {"status": InstanceStatus.INSTALLING, "error": None}
        if version is not None:
            changes["version"] = version
        if loader is not None:
            changes["loader"] = LoaderFamily.parse(loader)
        if version is not None or loader is not None or loader_version is not None:
            # A loader version only makes sense for the target it was picked for
            changes["loader_version"] = loader_version
            changes["version_id"] = None
        config = msgspec.structs.replace(config, **changes)
        logger.info(
            f"Migrating {name} to {config.loader.value} {config.version} "
            f"({config.loader_version or 'latest loader'})"
        )
        return self.pipeline.start_install(name, config, migration=True)

    async def delete_instance(self, name: str) -> bool:
        """
        Abort any install running for ``name`` and remove its folder.

        Deletion is retried a few times since an aborted installer may still hold
        file handles for a moment.

        :return: True if the folder existed
        """
        if self.registry.abort(name):
            logger.info(f"Aborted installation of {name} before deletion")
            self.registry.release(name)

        instance_dir = self.instance_dir(name)
        if not instance_dir.exists():
            return False

        for attempt in range(1, _DELETE_ATTEMPTS + 1):
            try:
                await asyncio.to_thread(rmtree, instance_dir)
                break
            except OSError as e:
                if attempt == _DELETE_ATTEMPTS:
                    raise
                logger.warning(
                    f"Deleting {name} failed (attempt {attempt}), retrying: {e}"
                )
                await asyncio.sleep(_DELETE_RETRY_DELAY)

        logger.info(f"Deleted instance {name}")
        EventBus().instance_status.emit(name, InstanceStatus.DELETED.value, "")
        return True

    def abort(self, name: str) -> bool:
        """
        Abort the running install of ``name`` and mark the instance stopped.

        The pipeline writes nothing once aborted, so the stopped status is written here.

        :return: False if no install was running
        """
        if not self.registry.is_active(name):
            return False
        self.registry.abort(name)
        try:
            update_instance_config(
                self.instance_dir(name), status=InstanceStatus.STOPPED, error=None
            )
        except (InstanceNotFoundError, InvalidInstanceConfigError, OSError) as e:
            logger.warning(f"Could not mark {name} as stopped: {e}")
        EventBus().instance_status.emit(name, InstanceStatus.STOPPED.value, "")
        return True

    def abort_all(self) -> list[str]:
        """Abort every running install. Returns the names that were stopped."""
        return [name for name in self.registry.active_names() if self.abort(name)]

    async def check_updates(
        self, name: str, kind: ContentKind = ContentKind.MOD
    ) -> list[ContentUpdate]:
        """
        Find newer registry versions of installed content.

        Candidates must support the instance's current base version and, for mods, its
        loader. Files the registry does not know are skipped.
        """
        config = self.get_instance(name)
        content_dir = self.instance_dir(name) / kind.value
        if not content_dir.is_dir():
            return []

        loader = config.loader if kind is ContentKind.MOD else None
        updates: list[ContentUpdate] = []
        for path in sorted(content_dir.iterdir()):
            if not path.is_file() or not path.name.lower().endswith(_CONTENT_SUFFIXES[kind]):
                continue
            try:
                action, candidate = await self.resolver.classify(path, loader, config.version)
            except OSError as e:
                logger.warning(f"Could not check {path.name} for updates: {e}")
                continue
            if action is not ModAction.REPLACE or candidate is None:
                continue
            entry = self.cache.lookup(path.name, path.stat().st_size)
            updates.append(
                ContentUpdate(
                    filename=path.name,
                    current_version=entry.version if entry else None,
                    candidate=candidate,
                )
            )

        await self.cache.save()
        logger.info(f"{name}: {len(updates)} update(s) available for {kind.value}")
        return updates

    async def list_content(
        self, name: str, kind: ContentKind = ContentKind.MOD
    ) -> list[ContentItem]:
        """
        List installed content of one kind, enriched with registry metadata.

        Metadata comes from the shared lookup cache; files it does not know are
        identified by hash on the registry once and cached for next time.
        """
        content_dir = self.instance_dir(name) / kind.value
        if not content_dir.is_dir():
            if not self.instance_dir(name).is_dir():
                raise InstanceNotFoundError(name)
            return []

        items: list[ContentItem] = []
        for path in sorted(content_dir.iterdir()):
            is_pack_folder = path.is_dir() and kind is not ContentKind.MOD
            if not is_pack_folder and not path.name.lower().endswith(_CONTENT_SUFFIXES[kind]):
                continue
            if path.is_dir():
                items.append(ContentItem(filename=path.name, size=0, kind=kind))
                continue
            item = ContentItem.from_path(path, kind)
            await self._enrich(path, item)
            items.append(item)

        await self.cache.save()
        return items

    async def _enrich(self, path: Path, item: ContentItem) -> None:
        entry = self.cache.lookup(item.filename, item.size)
        if entry is None or entry.project_id is None or entry.title is None:
            try:
                sha1 = await self.resolver.file_hash(path)
                version = await self.client.get_version_from_hash(sha1)
                if version is not None:
                    project = await self.client.get_project(version.project_id)
                    entry = self.cache.record(
                        item.filename,
                        item.size,
                        ContentCacheEntry(
                            sha1=sha1,
                            project_id=version.project_id,
                            version_id=version.id,
                            title=project.title,
                            icon=project.icon_url,
                            version=version.version_number,
                        ),
                    )
                else:
                    entry = self.cache.lookup(item.filename, item.size)
            except (RegistryFetchError, OSError) as e:
                logger.debug(f"No registry metadata for {item.filename}: {e}")
        if entry is None:
            return
        item.sha1 = entry.sha1
        item.project_id = entry.project_id
        item.version_id = entry.version_id
        item.title = entry.title
        item.icon = entry.icon
        item.version = entry.version

    def read_install_log(self, name: str) -> str:
        """Full ``install.log`` transcript of an instance, empty if none was written."""
        log_path = self.instance_dir(name) / INSTALL_LOG_FILE
        if not config_path(self.instance_dir(name)).exists():
            raise InstanceNotFoundError(name)
        try:
            return log_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def recent_install_log(self, name: str) -> list[str]:
        return self.pipeline.recent_log_lines(name)

    async def loader_versions(
        self, loader: "LoaderFamily | str", base_version: str
    ) -> list[str]:
        """Loader versions available for ``base_version``, newest first."""
        family = LoaderFamily.parse(loader)
        if not family.is_modded:
            return []
        return await self.client.get_loader_versions(family, base_version)
