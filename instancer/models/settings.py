import json
from pathlib import Path
from typing import Any

from loguru import logger
from PySide6.QtCore import QObject

from instancer.utils.app_info import AppInfo
from instancer.utils.constants import DEFAULT_REQUEST_TIMEOUT
from instancer.utils.event_bus import EventBus

# QObject exposes these through __dict__ on some PySide6 builds
_QT_ATTRIBUTES = frozenset({"destroyed", "objectNameChanged"})


class Settings(QObject):
    """
    User settings persisted as ``settings.json``.

    Every public attribute is a setting. Assigning a different value emits
    ``EventBus().settings_have_changed``; nothing is written until ``save()``.
    Debug logging is stored as a ``DEBUG`` marker file next to the settings file so the
    logger can be configured before settings are loaded.
    """

    def __init__(self, settings_file: Path | None = None) -> None:
        super().__init__()

        self._settings_file = settings_file or AppInfo().app_settings_file
        self._debug_file = self._settings_file.parent / "DEBUG"

        # Paths
        self.instances_folder: str = str(AppInfo().instances_folder)
        self.content_cache_file: str = str(AppInfo().content_cache_file)

        # Java used to run installer-driven loaders
        self.java_path: str = "java"

        # Network
        self.request_timeout: int = DEFAULT_REQUEST_TIMEOUT
        self.max_retries: int = 3

        # Content installed after the loader
        self.auto_install_fabric_api: bool = True
        self.install_optimization_mods: bool = False
        self.auto_install_mods: list[str] = []

        # New instances
        self.copy_settings_enabled: bool = False
        self.copy_settings_source_instance: str = ""

        # Number of recent install log lines kept in memory per task
        self.log_buffer_size: int = 500

        # Advanced
        self.debug_logging_enabled: bool = False

    def __setattr__(self, key: str, value: Any) -> None:
        if key.startswith("_"):
            super().__setattr__(key, value)
            return
        changed = not hasattr(self, key) or getattr(self, key) != value
        super().__setattr__(key, value)
        if changed:
            EventBus().settings_have_changed.emit()

    @property
    def instances_path(self) -> Path:
        return Path(self.instances_folder)

    @property
    def content_cache_path(self) -> Path:
        return Path(self.content_cache_file)

    def load(self) -> None:
        """
        Read ``settings.json``, writing the defaults when it does not exist yet.

        :raises json.JSONDecodeError: If the file exists but is not valid JSON
        """
        self.debug_logging_enabled = self._debug_file.is_file()

        try:
            text = self._settings_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"No settings file found, writing defaults to {self._settings_file}")
            self.save()
            return

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.error(f"Settings file is not valid JSON: {self._settings_file}")
            raise
        self._apply(data)

    def save(self) -> None:
        self._settings_file.parent.mkdir(parents=True, exist_ok=True)
        if self.debug_logging_enabled:
            self._debug_file.touch(exist_ok=True)
        else:
            self._debug_file.unlink(missing_ok=True)

        self._settings_file.write_text(
            json.dumps(self.as_dict(), indent=4), encoding="utf-8"
        )

    def _apply(self, data: dict[str, Any]) -> None:
        known = self.as_dict()
        for key, value in data.items():
            if key not in known:
                logger.debug(f"Ignoring unknown settings key: {key}")
                continue
            setattr(self, key, value)

    def as_dict(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.__dict__.items()
            if not key.startswith("_") and key not in _QT_ATTRIBUTES
        }
