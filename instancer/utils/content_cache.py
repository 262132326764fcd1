"""
Shared content lookup cache.

Maps the cheap fingerprint of an installed file (filename and size) to what the
registry knows about it. The SHA-1 is only computed when the fingerprint misses and
is then stored on the entry, which doubles as a second index from hash to entry.

The file is shared by every instance and by concurrently running tasks. Saving
re-reads the file and merges our changes into it, entries being append-only and
idempotent, so the last writer wins without losing other writers' entries.
"""

import asyncio
from pathlib import Path
from threading import RLock
from typing import Optional

import msgspec
from loguru import logger

from instancer.models.install_state import fingerprint_key
from instancer.utils.files import write_json_atomic


class ContentCacheEntry(msgspec.Struct, rename="camel", omit_defaults=True):
    sha1: Optional[str] = msgspec.field(default=None, name="hash")
    project_id: Optional[str] = None
    version_id: Optional[str] = None
    title: Optional[str] = None
    icon: Optional[str] = None
    version: Optional[str] = None

    def merged_with(self, newer: "ContentCacheEntry") -> "ContentCacheEntry":
        """Overlay the fields ``newer`` knows about onto this entry."""
        changes = {
            field: value
            for field in self.__struct_fields__
            if (value := getattr(newer, field)) is not None
        }
        return msgspec.structs.replace(self, **changes)


_cache_decoder = msgspec.json.Decoder(dict[str, ContentCacheEntry])


class ContentLookupCache:
    """
    Two-level cache: fingerprint -> entry, promoted to hash -> entry on first hash.

    Thread-safe for the in-memory maps; disk writes are serialized within the process.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = RLock()
        self._entries: dict[str, ContentCacheEntry] = {}
        self._by_hash: dict[str, str] = {}
        self._dirty: set[str] = set()
        self._loaded = False

    def load(self) -> None:
        with self._lock:
            self._entries = self._read_disk()
            self._by_hash = {
                entry.sha1: key for key, entry in self._entries.items() if entry.sha1
            }
            self._loaded = True

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def _read_disk(self) -> dict[str, ContentCacheEntry]:
        try:
            return _cache_decoder.decode(self.path.read_bytes())
        except FileNotFoundError:
            return {}
        except (msgspec.DecodeError, msgspec.ValidationError) as e:
            logger.warning(f"Ignoring unreadable content cache {self.path}: {e}")
            return {}

    def lookup(self, filename: str, size: int) -> Optional[ContentCacheEntry]:
        with self._lock:
            self._ensure_loaded()
            return self._entries.get(fingerprint_key(filename, size))

    def lookup_hash(self, sha1: str) -> Optional[ContentCacheEntry]:
        with self._lock:
            self._ensure_loaded()
            key = self._by_hash.get(sha1)
            return self._entries.get(key) if key is not None else None

    def record(self, filename: str, size: int, entry: ContentCacheEntry) -> ContentCacheEntry:
        """Merge ``entry`` into the cache under the file's fingerprint and return the result."""
        key = fingerprint_key(filename, size)
        with self._lock:
            self._ensure_loaded()
            existing = self._entries.get(key)
            merged = existing.merged_with(entry) if existing else entry
            self._entries[key] = merged
            if merged.sha1:
                self._by_hash[merged.sha1] = key
            self._dirty.add(key)
            return merged

    def _merge_and_write(self) -> int:
        with self._lock:
            if not self._dirty:
                return 0
            on_disk = self._read_disk()
            for key in self._dirty:
                ours = self._entries[key]
                on_disk[key] = on_disk[key].merged_with(ours) if key in on_disk else ours
            write_json_atomic(self.path, on_disk)
            written = len(self._dirty)
            self._dirty.clear()
            # Pick up entries other writers added meanwhile
            self._entries = on_disk
            self._by_hash = {e.sha1: k for k, e in on_disk.items() if e.sha1}
            return written

    async def save(self) -> None:
        """Merge pending entries into the file on disk without blocking the event loop."""
        try:
            written = await asyncio.to_thread(self._merge_and_write)
        except OSError as e:
            logger.warning(f"Failed to save content cache {self.path}: {e}")
            return
        if written:
            logger.debug(f"Saved {written} content cache entries to {self.path}")
