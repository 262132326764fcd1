import hashlib
import os
import shutil
import stat
import sys
import zipfile
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

import msgspec
from loguru import logger

_HASH_CHUNK_SIZE = 1024 * 1024


def sha1_of(path: Path) -> str:
    """
    Compute the SHA-1 of a file, reading it in chunks.

    Blocking; call through ``asyncio.to_thread`` from coroutines.
    """
    digest = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_json_atomic(path: Path, data: Any, indent: int = 2) -> None:
    """Encode ``data`` as JSON and move it over ``path`` in one rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    scratch = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    try:
        scratch.write_bytes(msgspec.json.format(msgspec.json.encode(data), indent=indent))
        os.replace(scratch, path)
    finally:
        scratch.unlink(missing_ok=True)


def read_json(path: Path) -> Any:
    return msgspec.json.decode(path.read_bytes())


def read_descriptor_from_archive(
    archive_path: Path, entry_names: list[str]
) -> Optional[dict[str, Any]]:
    """
    Extract an embedded version descriptor from an installer archive.

    Entries are tried in order. ``install_profile.json`` style entries wrap the
    descriptor in a ``versionInfo`` key; a bare install profile without it is skipped.

    :param archive_path: Path to the installer archive
    :param entry_names: Candidate entry names, most preferred first
    :return: The descriptor dict, or None if no entry carried one
    """
    with zipfile.ZipFile(archive_path) as archive:
        names = set(archive.namelist())
        for entry_name in entry_names:
            if entry_name not in names:
                continue
            data = msgspec.json.decode(archive.read(entry_name))
            if not isinstance(data, dict):
                continue
            if "versionInfo" in data:
                return data["versionInfo"]
            if "id" in data:
                return data
            logger.debug(f"{entry_name} in {archive_path.name} carries no version descriptor")
    return None


def attempt_chmod(func: Callable[..., Any], path: str, exc: BaseException) -> None:
    """``shutil.rmtree`` error handler that clears read-only bits and retries once."""
    if isinstance(exc, PermissionError):
        os.chmod(path, stat.S_IRWXU)
        func(path)
    else:
        raise exc


def rmtree(path: Path) -> None:
    """Remove a directory tree, clearing read-only flags that would otherwise block deletion."""
    if not path.exists():
        return

    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=attempt_chmod)
    else:
        shutil.rmtree(path, onerror=lambda func, p, info: attempt_chmod(func, p, info[1]))


def remove_path(path: Path) -> None:
    """Delete a file or directory if it exists."""
    if path.is_dir() and not path.is_symlink():
        rmtree(path)
    else:
        path.unlink(missing_ok=True)
