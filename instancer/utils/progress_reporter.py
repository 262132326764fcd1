"""
Progress reporting for installation tasks.

Each pipeline phase owns a fixed span of the global percentage. Phase-local progress
(0-100) is rescaled into that span, and the reported value never goes backwards and
never reaches 100 before the task completes.

Log lines go to three places: the instance's append-only ``install.log``, a bounded
in-memory ring buffer for frontends that attach late, and the EventBus.
"""

from collections import deque
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from loguru import logger

from instancer.controllers.task_registry import InstallTask
from instancer.utils.event_bus import EventBus


class Phase(Enum):
    """Pipeline phases with their (start, end) share of the global percentage."""

    MIGRATION_ANALYSIS = (0, 10)
    BASE_DOWNLOAD = (10, 20)
    LOADER_INSTALL = (20, 40)
    LIBRARY_SYNC = (40, 70)
    MIGRATED_CONTENT = (70, 80)
    OPTIMIZATION_CONTENT = (80, 90)
    AUTO_INSTALL_CONTENT = (90, 99)
    COMPLETION = (100, 100)

    @property
    def start(self) -> int:
        return self.value[0]

    @property
    def end(self) -> int:
        return self.value[1]


class PhaseProgress:
    """Handle given to phase code and loader installers to report within their own span."""

    def __init__(self, reporter: "ProgressReporter", phase: Phase) -> None:
        self.reporter = reporter
        self.phase = phase

    def update(self, local_percent: Optional[float], status: Optional[str] = None) -> None:
        if local_percent is None:
            self.reporter.report(None, status)
            return
        local_percent = max(0.0, min(100.0, local_percent))
        span = self.phase.end - self.phase.start
        self.reporter.report(round(self.phase.start + span * local_percent / 100), status)

    def log(self, line: str) -> None:
        self.reporter.log(line)


class ProgressReporter:
    def __init__(
        self,
        instance_name: str,
        log_path: Path,
        task: InstallTask,
        buffer_size: int = 500,
    ) -> None:
        self.instance_name = instance_name
        self.log_path = log_path
        self.task = task
        self.percent = 0
        self._lines: deque[str] = deque(maxlen=buffer_size)
        self._completed = False

    @property
    def recent_lines(self) -> list[str]:
        return list(self._lines)

    def start(self, migration: bool) -> None:
        """Write the transcript header for a new run."""
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        kind = "Migration" if migration else "Installation"
        with open(self.log_path, "a", encoding="utf-8") as f:
            f.write(f"\n--- {kind} Started: {datetime.now():%Y-%m-%d %H:%M:%S} ---\n")

    def log(self, line: str) -> None:
        """Append a timestamped line. Silent once the task has been aborted."""
        if self.task.aborted:
            return
        formatted = f"[{datetime.now():%H:%M:%S}] {line}"
        self._lines.append(formatted)
        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(formatted + "\n")
        except OSError as e:
            logger.warning(f"Could not write to {self.log_path}: {e}")
        logger.debug(f"[{self.instance_name}] {line}")
        EventBus().install_log.emit(self.instance_name, line)

    def report(self, percent: Optional[int], status: Optional[str] = None) -> None:
        """
        Publish progress. ``None`` keeps the current percentage and only updates the status.

        Values below the current percentage are raised to it; anything before completion
        is capped at 99.
        """
        if self.task.aborted or self._completed:
            return
        if percent is not None:
            self.percent = max(self.percent, min(int(percent), 99))
        if status:
            self.log(f"Status: {status}")
        EventBus().install_progress.emit(self.instance_name, self.percent, status or "")

    def phase(self, phase: Phase) -> PhaseProgress:
        return PhaseProgress(self, phase)

    def complete(self, success: bool) -> None:
        """Emit the final 100% event. Further reports are ignored."""
        if self.task.aborted or self._completed:
            return
        status = "Completed" if success else "Failed"
        self.log(f"Status: {status}")
        self.percent = 100
        self._completed = True
        EventBus().install_progress.emit(self.instance_name, 100, status)
