"""Resource usage sampling for supervised process trees."""

from typing import final

import psutil

from ._models import ResourceSample

_MIB = 1024 * 1024


@final
class ResourceSampler:
    """Samples memory and CPU usage of a process and its descendants.

    psutil computes CPU percentages between two calls on the same Process
    object, so objects are cached per PID. The first sample of a process
    therefore reports 0% CPU.
    """

    __slots__ = ("_processes",)

    def __init__(self) -> None:
        self._processes: dict[int, psutil.Process] = {}

    def _process(self, pid: int) -> psutil.Process:
        process = self._processes.get(pid)
        if process is None or not process.is_running():
            process = psutil.Process(pid)
            self._processes[pid] = process
        return process

    def sample(self, pid: int, *, include_children: bool = True) -> ResourceSample | None:
        """Sample a process tree.

        Args:
            pid: Root process ID.
            include_children: Add usage of all descendants.

        Returns:
            The sample, or None if the process is gone or unreadable.
        """
        try:
            root = self._process(pid)
            tree = [root]
            if include_children:
                tree.extend(self._process(child.pid) for child in root.children(recursive=True))

            memory = 0
            cpu = 0.0
            for process in tree:
                try:
                    with process.oneshot():
                        memory += process.memory_info().rss
                        cpu += process.cpu_percent(interval=None)
                except (psutil.NoSuchProcess, psutil.ZombieProcess):
                    # Children may exit between listing and sampling
                    continue
        except psutil.Error:
            _ = self._processes.pop(pid, None)
            return None
        finally:
            self._prune()

        return ResourceSample(memory_mb=memory / _MIB, cpu_percent=cpu)

    def _prune(self) -> None:
        gone = [pid for pid, process in self._processes.items() if not process.is_running()]
        for pid in gone:
            del self._processes[pid]

    def forget(self, pid: int) -> None:
        """Drop cached state for a process that is no longer supervised."""
        _ = self._processes.pop(pid, None)
