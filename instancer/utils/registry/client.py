"""
Async client for the registries an installation talks to: the Mojang version manifest,
the Fabric/Quilt meta services, the Forge/NeoForge maven repositories and Modrinth.

Every request goes through the retry decorator and a client-level timeout. Failures
surface as :class:`RegistryFetchError` so callers only ever handle one error type.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Optional, Type, TypeVar
from uuid import uuid4

import aiohttp
import msgspec
from loguru import logger
from lxml import etree

from instancer.models.registry import (
    LoaderVersionEntry,
    RegistryProject,
    RegistryVersion,
    VersionManifest,
)
from instancer.utils.constants import (
    DEFAULT_REQUEST_TIMEOUT,
    DOWNLOAD_CHUNK_SIZE,
    FABRIC_META,
    FORGE_MAVEN,
    FORGE_PROMOTIONS_URL,
    MODRINTH_API,
    MOJANG_VERSION_MANIFEST_URL,
    NEOFORGE_MAVEN,
    QUILT_META,
    USER_AGENT,
    LoaderFamily,
)
from instancer.utils.exception import RegistryFetchError
from instancer.utils.registry.retry import RegistryRetryConfig, retry_registry_call

T = TypeVar("T")

_META_URLS = {
    LoaderFamily.FABRIC: FABRIC_META,
    LoaderFamily.QUILT: QUILT_META,
}


class RegistryClient:
    """
    Stateless request/response wrapper around the external registries.

    The underlying ``aiohttp.ClientSession`` is created lazily on first use so the
    client can be constructed outside of a running event loop. Use it as an async
    context manager, or call :meth:`close` when done.
    """

    def __init__(
        self,
        timeout: int = DEFAULT_REQUEST_TIMEOUT,
        retry_config: Optional[RegistryRetryConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.timeout = timeout
        self.retry_config = retry_config or RegistryRetryConfig()
        self._session = session
        self._owns_session = session is None
        self._read = retry_registry_call(self.retry_config)(self._read_once)
        self._stream_to = retry_registry_call(self.retry_config)(self._stream_to_once)

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    # Transport

    async def _read_once(self, url: str, params: Optional[dict[str, str]] = None) -> bytes:
        async with self._get_session().get(url, params=params) as response:
            response.raise_for_status()
            return await response.read()

    async def _stream_to_once(self, url: str, scratch: Path) -> None:
        async with self._get_session().get(url) as response:
            response.raise_for_status()
            with open(scratch, "wb") as out:
                async for chunk in response.content.iter_chunked(DOWNLOAD_CHUNK_SIZE):
                    out.write(chunk)

    async def get_bytes(self, url: str, params: Optional[dict[str, str]] = None) -> bytes:
        """
        Fetch a URL and return the raw body.

        :raises RegistryFetchError: On HTTP errors, timeouts or connection failures
        """
        try:
            return await self._read(url, params)
        except aiohttp.ClientResponseError as e:
            raise RegistryFetchError(url, f"HTTP {e.status} {e.message}", e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryFetchError(url, str(e) or e.__class__.__name__) from e

    async def get_json(
        self,
        url: str,
        type: Type[T] = Any,  # type: ignore[assignment]
        params: Optional[dict[str, str]] = None,
    ) -> T:
        data = await self.get_bytes(url, params)
        try:
            return msgspec.json.decode(data, type=type)
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            raise RegistryFetchError(url, f"Unexpected response payload: {e}") from e

    async def download_file(self, url: str, dest: Path) -> Path:
        """
        Download ``url`` to ``dest``.

        The body is streamed to a unique scratch file next to the destination and renamed
        into place, so readers never see a partial file and two concurrent writers of the
        same destination simply overwrite each other.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        scratch = dest.with_name(f".{dest.name}.{uuid4().hex}.part")
        try:
            await self._stream_to(url, scratch)
            os.replace(scratch, dest)
        except aiohttp.ClientResponseError as e:
            raise RegistryFetchError(url, f"HTTP {e.status} {e.message}", e.status) from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RegistryFetchError(url, str(e) or e.__class__.__name__) from e
        finally:
            scratch.unlink(missing_ok=True)
        logger.debug(f"Downloaded {url} -> {dest}")
        return dest

    # Base game

    async def get_version_manifest(self) -> VersionManifest:
        return await self.get_json(MOJANG_VERSION_MANIFEST_URL, VersionManifest)

    # Loaders

    async def get_loader_versions(
        self, family: LoaderFamily, base_version: str
    ) -> list[str]:
        """
        List loader versions available for a base version, newest first.

        Fabric and Quilt are asked directly. Forge and NeoForge versions come from the
        maven metadata and are filtered by base version; Forge falls back to the
        promotions listing if the metadata yields nothing.
        """
        if family in _META_URLS:
            entries = await self.get_json(
                f"{_META_URLS[family]}/versions/loader/{base_version}",
                list[LoaderVersionEntry],
            )
            return [entry.loader.version for entry in entries]

        if family is LoaderFamily.FORGE:
            versions = await self.get_maven_versions(f"{FORGE_MAVEN}/maven-metadata.xml")
            prefix = f"{base_version}-"
            filtered = [v[len(prefix) :] for v in versions if v.startswith(prefix)]
            if filtered:
                return filtered
            promotions = await self.get_json(FORGE_PROMOTIONS_URL, dict[str, Any])
            promos: dict[str, str] = promotions.get("promos", {})
            return [value for key, value in promos.items() if key.startswith(prefix)]

        if family is LoaderFamily.NEOFORGE:
            versions = await self.get_maven_versions(
                f"{NEOFORGE_MAVEN}/maven-metadata.xml"
            )
            # 1.20.1 era used "1.20.1-47.1.3", later releases encode 1.20.4 as "20.4.x"
            short = base_version[2:] if base_version.startswith("1.") else base_version
            return [
                v
                for v in versions
                if v.startswith(f"{base_version}-") or v.startswith(f"{short}.")
            ]

        return []

    async def get_loader_profile(
        self, family: LoaderFamily, base_version: str, loader_version: str
    ) -> dict[str, Any]:
        """Fetch a ready-made version descriptor from the Fabric or Quilt meta service."""
        if family not in _META_URLS:
            raise ValueError(f"{family.value} does not publish loader profiles")
        return await self.get_json(
            f"{_META_URLS[family]}/versions/loader/{base_version}/{loader_version}/profile/json",
            dict[str, Any],
        )

    async def get_maven_versions(self, metadata_url: str) -> list[str]:
        """Parse ``maven-metadata.xml`` and return its versions, newest first."""
        data = await self.get_bytes(metadata_url)
        try:
            root = etree.fromstring(data)
        except etree.XMLSyntaxError as e:
            raise RegistryFetchError(metadata_url, f"Invalid maven metadata: {e}") from e
        versions = [
            node.text.strip()
            for node in root.iterfind("./versioning/versions/version")
            if node.text
        ]
        versions.reverse()
        return versions

    # Content (Modrinth)

    async def get_version_from_hash(self, sha1: str) -> Optional[RegistryVersion]:
        """Look up the registry version owning a file hash. None when unknown."""
        try:
            return await self.get_json(
                f"{MODRINTH_API}/version_file/{sha1}",
                RegistryVersion,
                params={"algorithm": "sha1"},
            )
        except RegistryFetchError as e:
            if e.status == 404:
                return None
            raise

    async def get_project_versions(
        self,
        project_id: str,
        loaders: Optional[list[str]] = None,
        game_versions: Optional[list[str]] = None,
    ) -> list[RegistryVersion]:
        """Versions of a project compatible with the given loaders and game versions, in registry order."""
        params: dict[str, str] = {}
        if loaders:
            params["loaders"] = json.dumps(loaders)
        if game_versions:
            params["game_versions"] = json.dumps(game_versions)
        return await self.get_json(
            f"{MODRINTH_API}/project/{project_id}/version",
            list[RegistryVersion],
            params=params,
        )

    async def get_project(self, project_id: str) -> RegistryProject:
        return await self.get_json(f"{MODRINTH_API}/project/{project_id}", RegistryProject)
