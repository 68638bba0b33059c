from __future__ import annotations

from typing import TYPE_CHECKING, Iterator, Optional

if TYPE_CHECKING:
    from keeper.process import WorkerProcessHandle


class ChildRegistry:
    """Live children of a supervisor, indexed by pid and by pipe descriptor.

    Both indexes are updated together on every ``add``/``remove``, so a pid
    maps to exactly one pipe and a pipe to exactly one pid at all times.
    """

    def __init__(self) -> None:
        self._handles: dict[int, WorkerProcessHandle] = {}
        self._pipe_to_pid: dict[int, int] = {}
        self._pid_to_pipe: dict[int, int] = {}

    def add(self, handle: WorkerProcessHandle) -> None:
        pid = handle.pid
        fileno = handle.fileno

        if pid is None or fileno is None:
            raise ValueError(f"{handle!r} has not been spawned")
        if pid in self._handles:
            raise ValueError(f"PID {pid} is already registered")
        if fileno in self._pipe_to_pid:
            raise ValueError(
                f"Pipe {fileno} is already registered to PID {self._pipe_to_pid[fileno]}"
            )

        self._handles[pid] = handle
        self._pipe_to_pid[fileno] = pid
        self._pid_to_pipe[pid] = fileno

    def remove(self, pid: int) -> Optional[WorkerProcessHandle]:
        """Drop ``pid`` from both indexes and return its handle, if tracked"""
        handle = self._handles.pop(pid, None)
        fileno = self._pid_to_pipe.pop(pid, None)
        if fileno is not None:
            self._pipe_to_pid.pop(fileno, None)

        return handle

    def get(self, pid: int) -> Optional[WorkerProcessHandle]:
        return self._handles.get(pid)

    def pid_for_pipe(self, fileno: int) -> Optional[int]:
        return self._pipe_to_pid.get(fileno)

    def pipe_for_pid(self, pid: int) -> Optional[int]:
        return self._pid_to_pipe.get(pid)

    def handle_for_pipe(self, fileno: int) -> Optional[WorkerProcessHandle]:
        pid = self._pipe_to_pid.get(fileno)
        return None if pid is None else self._handles.get(pid)

    def pids(self) -> list[int]:
        return list(self._handles)

    def handles(self) -> list[WorkerProcessHandle]:
        """Snapshot of tracked handles, safe to iterate while mutating"""
        return list(self._handles.values())

    def pipes(self) -> list[int]:
        return list(self._pipe_to_pid)

    def clear(self) -> None:
        self._handles.clear()
        self._pipe_to_pid.clear()
        self._pid_to_pipe.clear()

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, pid: object) -> bool:
        return pid in self._handles

    def __iter__(self) -> Iterator[WorkerProcessHandle]:
        return iter(self.handles())

    def __repr__(self) -> str:
        return f"<ChildRegistry pids={sorted(self._handles)}>"
