import asyncio
from pathlib import Path
from typing import Optional

from loguru import logger

from instancer.models.install_state import MigrationCandidate, ModAction
from instancer.utils.constants import LoaderFamily
from instancer.utils.content_cache import ContentCacheEntry, ContentLookupCache
from instancer.utils.exception import RegistryFetchError
from instancer.utils.files import sha1_of
from instancer.utils.registry.client import RegistryClient


class ModCompatibilityResolver:
    """
    Decides what happens to an installed mod when its instance moves to another
    base version or loader.

    The mod is identified by hash on the registry, then the first version of the owning
    project that supports the target (loader, base version) pair is chosen, trusting the
    registry's newest-first ordering. Lookup failures of any kind count as "no compatible
    version", so the caller removes the file either way.
    """

    def __init__(self, client: RegistryClient, cache: ContentLookupCache) -> None:
        self.client = client
        self.cache = cache

    async def file_hash(self, path: Path) -> str:
        """SHA-1 of an installed file, served from the cache when the fingerprint is known."""
        size = path.stat().st_size
        cached = self.cache.lookup(path.name, size)
        if cached is not None and cached.sha1:
            return cached.sha1
        sha1 = await asyncio.to_thread(sha1_of, path)
        self.cache.record(path.name, size, ContentCacheEntry(sha1=sha1))
        return sha1

    async def classify(
        self, path: Path, target_loader: Optional[LoaderFamily], target_base_version: str
    ) -> tuple[ModAction, Optional[MigrationCandidate]]:
        """
        Resolve one installed mod against the target configuration.

        :param target_loader: Loader the file must support; None for resource and shader
                              packs, which are loader independent
        :return: ``(KEEP, None)`` when the installed file already is the resolved one,
                 ``(REPLACE, candidate)`` when a different compatible file exists,
                 ``(REMOVE, None)`` otherwise
        """
        sha1 = await self.file_hash(path)
        try:
            current = await self.client.get_version_from_hash(sha1)
            if current is None:
                logger.debug(f"{path.name} is unknown to the registry")
                return ModAction.REMOVE, None

            self.cache.record(
                path.name,
                path.stat().st_size,
                ContentCacheEntry(
                    sha1=sha1,
                    project_id=current.project_id,
                    version_id=current.id,
                    version=current.version_number,
                ),
            )

            versions = await self.client.get_project_versions(
                current.project_id,
                loaders=[target_loader.value] if target_loader is not None else None,
                game_versions=[target_base_version],
            )
        except RegistryFetchError as e:
            logger.debug(f"Registry lookup for {path.name} failed: {e}")
            return ModAction.REMOVE, None

        if not versions:
            return ModAction.REMOVE, None

        best = versions[0]
        primary = best.primary_file
        if primary is None:
            return ModAction.REMOVE, None

        if primary.hashes.get("sha1") == sha1 or (
            best.id == current.id and primary.filename == path.name
        ):
            return ModAction.KEEP, None

        return ModAction.REPLACE, MigrationCandidate(
            old_filename=path.name,
            new_filename=primary.filename,
            url=primary.url,
            project_id=best.project_id,
            version_number=best.version_number,
        )

    async def resolve(
        self, path: Path, target_loader: LoaderFamily, target_base_version: str
    ) -> Optional[MigrationCandidate]:
        """Return a replacement download for ``path``, or None if there is nothing to download."""
        _, candidate = await self.classify(path, target_loader, target_base_version)
        return candidate
