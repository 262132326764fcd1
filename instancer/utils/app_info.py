import os
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

from platformdirs import PlatformDirs

DATA_DIR_ENV = "INSTANCER_DATA_DIR"


class AppInfo:
    """
    Singleton holding the application name, version and the folders it stores data in.

    Folders follow platform conventions through `platformdirs`. Setting
    ``INSTANCER_DATA_DIR`` puts everything, logs included, under one folder instead,
    which portable setups and the test suite rely on.

    Examples:
        >>> AppInfo().instances_folder
        >>> AppInfo().user_log_folder / f"{AppInfo().app_name}.log"
    """

    _instance: "None | AppInfo" = None

    def __new__(cls) -> "AppInfo":
        if not cls._instance:
            cls._instance = super(AppInfo, cls).__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if getattr(self, "_is_initialized", False):
            return

        self._app_name = "Instancer"
        try:
            self._app_version = version("instancer")
        except PackageNotFoundError:
            # Running from a source checkout
            self._app_version = "0.0.0+dev"

        root, logs = self._resolve_roots()
        self._app_storage_folder: Path = root
        self._user_log_folder: Path = logs
        self._instances_folder: Path = root / "instances"
        self._settings_file: Path = root / "settings.json"
        self._content_cache_file: Path = root / "mod_cache.json"

        for folder in (self._app_storage_folder, self._user_log_folder, self._instances_folder):
            folder.mkdir(parents=True, exist_ok=True)

        self._is_initialized: bool = True

    def _resolve_roots(self) -> tuple[Path, Path]:
        """Storage folder and log folder, honouring the data dir override."""
        override = os.environ.get(DATA_DIR_ENV)
        if override:
            return Path(override), Path(override) / "logs"
        dirs = PlatformDirs(appname=self._app_name, appauthor=False)
        return Path(dirs.user_data_dir), Path(dirs.user_log_dir)

    @property
    def app_name(self) -> str:
        return self._app_name

    @property
    def app_version(self) -> str:
        return self._app_version

    @property
    def app_storage_folder(self) -> Path:
        """Root of everything Instancer writes: settings, cache and, by default, instances."""
        return self._app_storage_folder

    @property
    def app_settings_file(self) -> Path:
        return self._settings_file

    @property
    def instances_folder(self) -> Path:
        """Default parent folder of the instance folders; the settings may point elsewhere."""
        return self._instances_folder

    @property
    def content_cache_file(self) -> Path:
        """
        The content lookup cache shared by all instances.

        May or may not exist.
        """
        return self._content_cache_file

    @property
    def user_log_folder(self) -> Path:
        return self._user_log_folder
