"""
Registry of in-flight installation tasks.

Guarantees at most one live task per instance name. A new request for a name aborts
the previous task before handing out a fresh one; it does not wait for the old task
to notice, so everything a task writes must be safe to interleave with its successor.
"""

import asyncio
from datetime import datetime
from threading import RLock
from typing import Optional

import psutil
from loguru import logger


def kill_process_tree(process: asyncio.subprocess.Process) -> bool:
    """
    Force-kill ``process`` and everything it spawned.

    :return: False if the process had already exited
    """
    if process.returncode is not None:
        return False

    pid = process.pid
    try:
        for child in psutil.Process(pid).children(recursive=True):
            try:
                child.kill()
            except psutil.NoSuchProcess:
                # Process might have already terminated
                pass
    except psutil.NoSuchProcess:
        pass
    except psutil.Error as e:
        logger.warning(f"Could not enumerate children of installer process {pid}: {e}")

    try:
        process.kill()
    except ProcessLookupError:
        return False
    return True


class InstallTask:
    """
    Cancellation token for one pipeline run.

    The aborted flag only ever goes from False to True. At most one external process can
    be attached at a time; aborting force-kills it (and anything it spawned) immediately,
    whatever the pipeline is doing at that moment.
    """

    def __init__(self, instance_name: str) -> None:
        self.instance_name = instance_name
        self.created_at = datetime.now()
        self._aborted = False
        self._process: Optional[asyncio.subprocess.Process] = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    def attach_process(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        if self._aborted:
            # Aborted between spawn and attach
            self._kill_process()

    def detach_process(self) -> None:
        self._process = None

    def abort(self) -> None:
        """Set the aborted flag and kill the attached process. Idempotent, never blocks."""
        if not self._aborted:
            logger.info(f"Aborting install task for {self.instance_name}")
        self._aborted = True
        self._kill_process()

    def _kill_process(self) -> None:
        if self._process is not None and kill_process_tree(self._process):
            logger.debug(f"Killed installer process for {self.instance_name}")

    def __repr__(self) -> str:
        return f"InstallTask({self.instance_name!r}, aborted={self._aborted})"


class TaskRegistry:
    """
    Maps instance names to their single active InstallTask.

    Injected into the pipeline and into whatever issues install requests; there is no
    module-level instance.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._tasks: dict[str, InstallTask] = {}

    def acquire(self, instance_name: str) -> InstallTask:
        """
        Register a new task for ``instance_name``, aborting any task still holding the slot.

        :param instance_name: The instance to install
        :return: The new task, which now exclusively owns the slot
        """
        with self._lock:
            previous = self._tasks.get(instance_name)
            if previous is not None and not previous.aborted:
                logger.info(f"Preempting running install task for {instance_name}")
                previous.abort()
            task = InstallTask(instance_name)
            self._tasks[instance_name] = task
            return task

    def abort(self, instance_name: str) -> bool:
        """
        Abort the task for ``instance_name`` if there is one.

        :return: True if a task was found
        """
        with self._lock:
            task = self._tasks.get(instance_name)
        if task is None:
            return False
        task.abort()
        return True

    def release(self, instance_name: str, task: Optional[InstallTask] = None) -> None:
        """
        Remove the entry for ``instance_name``.

        When ``task`` is given the entry is only removed if it still belongs to that task,
        so a preempted task finishing late cannot evict its successor.
        """
        with self._lock:
            current = self._tasks.get(instance_name)
            if current is None:
                return
            if task is not None and current is not task:
                logger.debug(f"Not releasing {instance_name}: slot owned by a newer task")
                return
            del self._tasks[instance_name]

    def get(self, instance_name: str) -> Optional[InstallTask]:
        with self._lock:
            return self._tasks.get(instance_name)

    def is_active(self, instance_name: str) -> bool:
        task = self.get(instance_name)
        return task is not None and not task.aborted

    def active_names(self) -> list[str]:
        with self._lock:
            return [name for name, task in self._tasks.items() if not task.aborted]
