import os
from pathlib import Path
from time import time
from typing import Any
from uuid import uuid4

import msgspec

from instancer.utils.constants import (
    INSTANCE_CONFIG_FILE,
    InstanceStatus,
    LoaderFamily,
)
from instancer.utils.exception import InstanceNotFoundError, InvalidInstanceConfigError


def _now_ms() -> int:
    return int(time() * 1000)


class InstanceConfig(msgspec.Struct, rename="camel"):
    """
    Data model for a game instance, persisted as ``instance.json`` in the instance folder.

    Pure data class with no side effects on attribute mutation.
    Only the installation pipeline writes ``status``, ``loader_version``, ``version_id``
    and ``error``; the launch side owns ``playtime`` and ``last_played``.
    """

    name: str
    version: str
    loader: LoaderFamily = LoaderFamily.VANILLA
    loader_version: str | None = None
    version_id: str | None = None
    status: InstanceStatus = InstanceStatus.INSTALLING
    error: str | None = None
    icon: str | None = None
    created: int = msgspec.field(default_factory=_now_ms)
    playtime: int = 0
    last_played: int | None = None

    @property
    def resolved_version_id(self) -> str:
        """The descriptor id to launch, falling back to the base version."""
        return self.version_id or self.version


def config_path(instance_dir: Path) -> Path:
    return instance_dir / INSTANCE_CONFIG_FILE


def read_instance_config(instance_dir: Path) -> InstanceConfig:
    """
    Read ``instance.json`` from an instance folder.

    :param instance_dir: The instance folder
    :return: The decoded InstanceConfig
    :raises InstanceNotFoundError: If the folder has no instance.json
    :raises InvalidInstanceConfigError: If the file cannot be decoded
    """
    path = config_path(instance_dir)
    try:
        data = path.read_bytes()
    except FileNotFoundError as e:
        raise InstanceNotFoundError(f"Instance config missing: {path}") from e
    try:
        return msgspec.json.decode(data, type=InstanceConfig)
    except (msgspec.DecodeError, msgspec.ValidationError) as e:
        raise InvalidInstanceConfigError(f"{path}: {e}") from e


def write_instance_config(instance_dir: Path, config: InstanceConfig) -> None:
    """
    Write ``instance.json`` atomically. Concurrent writers never observe a torn file,
    the last completed write wins.
    """
    instance_dir.mkdir(parents=True, exist_ok=True)
    path = config_path(instance_dir)
    scratch = path.with_name(f".{path.name}.{uuid4().hex}.tmp")
    scratch.write_bytes(msgspec.json.format(msgspec.json.encode(config), indent=4))
    os.replace(scratch, path)


def update_instance_config(instance_dir: Path, **changes: Any) -> InstanceConfig:
    """
    Read-modify-write helper for ``instance.json``.

    :param instance_dir: The instance folder
    :param changes: Attribute names and their new values
    :return: The updated config as written to disk
    """
    config = read_instance_config(instance_dir)
    updated = msgspec.structs.replace(config, **changes)
    write_instance_config(instance_dir, updated)
    return updated
