from typing import Self

from PySide6.QtCore import QObject, Signal


class EventBus(QObject):
    """
    Process-wide signal hub; every ``EventBus()`` call returns the same object.

    Installation tasks publish progress, log lines and terminal status here so any
    frontend (the CLI, a GUI shell) can follow them without the pipeline knowing who
    listens. Slots living on the emitting thread are called synchronously, so no
    running Qt event loop is needed, only a ``QCoreApplication``.

    Examples:
        >>> EventBus().install_progress.connect(on_progress)
        >>> EventBus().install_progress.emit("Survival", 42, "Syncing libraries")
    """

    _instance: None | Self = None

    install_progress = Signal(str, int, str)  # instance name, percent, status text
    install_log = Signal(str, str)  # instance name, log line
    instance_status = Signal(str, str, str)  # instance name, status, error ("" if none)

    settings_have_changed = Signal()

    def __new__(cls) -> "EventBus":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        if getattr(self, "_ready", False):
            return
        super().__init__()
        self._ready = True
