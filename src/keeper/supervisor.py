"""Master process that keeps a fixed set of worker processes running.

Follows the prefork model: the master acquires the PID file, optionally
daemonizes, forks one child per bootstrap entry and then sleeps in an asyncio
event loop. Everything afterwards is driven by signals:

- SIGTERM / SIGINT: stop every worker, exit once all of them are reaped
- SIGCHLD: reap exited workers, respawn the ones that were meant to come back
- SIGUSR1 (reopen): restart every worker, e.g. after log rotation
- SIGUSR2 (reload): forward SIGUSR1 to every worker so it refreshes in place

Usage:
    supervisor = Supervisor(container)
    supervisor.configure(
        pid_file="/run/my-app/master.pid",
        process_name="my-app",
        bootstrap=["my_app.workers.Mailer", "my_app.workers.Indexer"],
    )
    supervisor.start()
    supervisor.serve()
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from typing import Any, Callable, Iterable, Optional, Type, Union

from keeper.exceptions import (
    AlreadyRunning,
    ConfigurationError,
    InvalidOperationError,
    SingletonConflict,
)
from keeper.process import BaseWorker, WorkerProcessHandle
from keeper.registry import ChildRegistry
from keeper.singleton import SingletonGuard
from keeper.utils import convert_str_to_bool, fqn
from keeper.utils.importlib import load_class
from keeper.utils.system import (
    daemonize,
    resolve_group,
    resolve_user,
    send_signal,
    set_process_title,
    wait_for_exit,
)

logger = logging.getLogger(__name__)

WorkerType = Union[str, Type[BaseWorker]]
IOCallback = Callable[["Supervisor", WorkerProcessHandle], None]

_SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class Supervisor:
    """Spawns, tracks and restarts worker processes under a PID file lock.

    Only one Supervisor may run per PID file. The Supervisor handles:

    - Arbitrating ownership of the PID file, optionally evicting an older
      instance
    - Detaching from the terminal when running as a daemon
    - Spawning one worker process per bootstrap entry
    - Reaping workers and respawning them after a reopen or a SIGKILL
    - Draining workers on shutdown before releasing the PID file
    """

    def __init__(self, container: Any = None) -> None:
        """Initialize the Supervisor.

        Args:
            container: Dependency container handed to every worker. The
                Supervisor never looks inside it.
        """
        self.container = {} if container is None else container

        self.process_id: Optional[int] = None
        self.process_name: Optional[str] = None
        self.pid_file: Optional[str] = None
        self.daemon: bool = False

        self.user: Optional[str] = None
        self.user_id: Optional[int] = None
        self.group: Optional[str] = None
        self.group_id: Optional[int] = None

        self.bootstrap: list[Type[BaseWorker]] = []

        # Forced takeover: how many times to evict, and how long to wait for
        #   the evicted instance to exit each time
        self.force_attempts: int = 3
        self.force_grace_period: float = 5.0
        self.force_poll_interval: float = 0.1

        # Last signal that changes how worker exits are treated
        self.signal: Optional[int] = None
        self.running: bool = False
        self.exit_code: int = 0

        self.guard: Optional[SingletonGuard] = None
        self.registry = ChildRegistry()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

        self._reopening: set[int] = set()
        self._io_callback: Optional[IOCallback] = None

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_daemon(self, daemon: Union[bool, str] = False) -> Supervisor:
        self.daemon = convert_str_to_bool(daemon)
        return self

    def set_pid_file(self, path: str) -> Supervisor:
        if self.running:
            raise InvalidOperationError("Cannot move the PID file of a running master")

        self.pid_file = path
        self.guard = None
        return self

    def set_process_name(self, process_name: Optional[str]) -> Supervisor:
        self.process_name = process_name
        return self

    def set_user(self, user: Optional[str]) -> Supervisor:
        self.user_id = resolve_user(user) if user else None
        self.user = user
        return self

    def set_group(self, group: Optional[str]) -> Supervisor:
        self.group_id = resolve_group(group) if group else None
        self.group = group
        return self

    def set_bootstrap(self, bootstrap: Iterable[WorkerType]) -> Supervisor:
        self.bootstrap = [self._resolve_worker(entry) for entry in bootstrap]
        return self

    def set_io_callback(self, callback: Optional[IOCallback]) -> Supervisor:
        """Callback run in the master when a worker's pipe becomes readable.

        Called as ``callback(supervisor, handle)``. By default, incoming data
        is read and discarded.
        """
        self._io_callback = callback
        return self

    def configure(
        self,
        daemon: Union[bool, str, None] = None,
        pid_file: Optional[str] = None,
        process_name: Optional[str] = None,
        user: Optional[str] = None,
        group: Optional[str] = None,
        bootstrap: Optional[Iterable[WorkerType]] = None,
    ) -> Supervisor:
        """Apply several settings at once. Arguments left as None are untouched."""
        return self.set_config(
            {
                "daemon": daemon,
                "pid_file": pid_file,
                "process_name": process_name,
                "user": user,
                "group": group,
                "bootstrap": bootstrap,
            }
        )

    def set_config(self, config: dict) -> Supervisor:
        """Apply a configuration mapping, as produced by ``keeper.config.Config``"""
        if config.get("pid_file") is not None:
            self.set_pid_file(config["pid_file"])

        if config.get("daemon") is not None:
            self.set_daemon(config["daemon"])

        if config.get("process_name") is not None:
            self.set_process_name(config["process_name"])

        if config.get("group") is not None:
            self.set_group(config["group"])

        if config.get("user") is not None:
            self.set_user(config["user"])

        if config.get("bootstrap") is not None:
            self.set_bootstrap(config["bootstrap"])

        if config.get("force_attempts") is not None:
            self.force_attempts = int(config["force_attempts"])

        if config.get("force_grace_period") is not None:
            self.force_grace_period = float(config["force_grace_period"])

        return self

    @staticmethod
    def _resolve_worker(entry: WorkerType) -> Type[BaseWorker]:
        return load_class(entry, BaseWorker)

    def _get_guard(self) -> SingletonGuard:
        if not self.pid_file:
            raise ConfigurationError("`pid_file` is not configured")

        if self.guard is None:
            self.guard = SingletonGuard(self.pid_file)

        return self.guard

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, force: bool = False, block: bool = False) -> int:
        """Become the running instance and spawn all workers.

        Args:
            force: Terminate an instance that already holds the PID file.
            block: With ``force``, wait on the PID file lock itself until the
                old instance lets go, with no timeout.

        Returns:
            The pid of this (possibly daemonized) process.

        Raises:
            AlreadyRunning: Another instance holds the PID file.
            PidFileError: The PID file cannot be created or opened.
        """
        if self.running:
            raise InvalidOperationError("Supervisor is already running")

        guard = self._get_guard()
        self._acquire(guard, force=force, block=block)

        try:
            if self.daemon:
                daemonize()

            self.process_id = os.getpid()
            guard.refresh_payload(self.process_id)
        except Exception:
            guard.release()
            raise

        self._start_manager()

        return self.process_id

    def _acquire(self, guard: SingletonGuard, force: bool, block: bool) -> None:
        if force and block:
            try:
                guard.ensure_singleton(evict=True)
            except SingletonConflict as exc:
                raise AlreadyRunning(exc.pid, exc.args[0]) from exc
            return

        running_pid = None
        for attempt in range(self.force_attempts + 1):
            try:
                guard.ensure_singleton()
                return
            except SingletonConflict as exc:
                running_pid = exc.pid
                if not force:
                    raise AlreadyRunning(
                        running_pid,
                        f"Have running instance (PID: {running_pid}). Nothing to do.",
                    ) from exc
                if attempt == self.force_attempts:
                    break

            logger.warning(
                f"Terminating running instance (PID: {running_pid}), "
                f"attempt {attempt + 1} of {self.force_attempts}"
            )
            if running_pid is None:
                # The holder has not written its pid yet
                time.sleep(self.force_poll_interval)
            elif send_signal(running_pid, signal.SIGTERM) and not wait_for_exit(
                running_pid, self.force_grace_period, self.force_poll_interval
            ):
                logger.warning(
                    f"Instance (PID: {running_pid}) still alive after "
                    f"{self.force_grace_period}s"
                )

        raise AlreadyRunning(
            running_pid,
            f"Running instance (PID: {running_pid}) did not exit after "
            f"{self.force_attempts} takeover attempts",
        )

    def _start_manager(self) -> None:
        """Install signal handlers and spawn the bootstrap workers"""
        self.loop = asyncio.new_event_loop()
        self.loop.set_exception_handler(self._handle_exception)

        if self.process_name:
            set_process_title(self.process_name)

        self._install_signal_handlers()
        self.running = True

        logger.info(
            f"Starting Keeper master (PID {self.process_id}) "
            f"with {len(self.bootstrap)} worker(s)"
        )

        try:
            for worker_cls in self.bootstrap:
                self._spawn_worker(worker_cls)
        except Exception:
            logger.exception("Failed to spawn bootstrap workers, aborting start")
            for handle in self.registry.handles():
                self._signal_worker(handle, signal.SIGTERM)
            self.terminate()
            self.loop.close()
            raise

    def serve(self) -> int:
        """Block in the event loop until the master terminates"""
        if not self.running:
            raise InvalidOperationError("Supervisor has not been started")

        asyncio.set_event_loop(self.loop)
        try:
            logger.info("Keeper master is running...")
            self.loop.run_forever()
        finally:
            self.loop.close()
            logger.info("Keeper master has stopped.")

        return self.exit_code

    def terminate(self) -> None:
        """Release the PID file and leave the event loop.

        Reached once every worker has been reaped after a shutdown signal, or
        directly when a shutdown signal arrives with no workers left.
        """
        if self.loop is not None and not self.loop.is_closed():
            self._cleanup_signal_handlers()
            for fileno in self.registry.pipes():
                self.loop.remove_reader(fileno)

        if self.guard is not None:
            self.guard.release()

        self.running = False
        logger.info("Keeper master terminated, PID file released")

        if self.loop is not None and self.loop.is_running():
            self.loop.stop()

    # ------------------------------------------------------------------
    # Out-of-band control of the running instance
    # ------------------------------------------------------------------

    def stop(self) -> Optional[int]:
        """Ask the running instance to shut down. Does not wait for it.

        Returns the pid that was signalled, or None if nothing was running.
        """
        return self._signal_master(signal.SIGTERM)

    def reopen(self) -> Optional[int]:
        """Ask the running instance to restart all of its workers"""
        return self._signal_master(signal.SIGUSR1)

    def reload(self) -> Optional[int]:
        """Ask the running instance to tell its workers to reload"""
        return self._signal_master(signal.SIGUSR2)

    def get_pid(self) -> Optional[int]:
        """Pid of the running instance.

        Outside the running instance, this is a best-effort read of the PID
        file that does not check whether the recorded process still holds it.
        """
        if self.running:
            return self.process_id

        if self.pid_file:
            return self._get_guard().read_pid()

        return None

    def _signal_master(self, signum: int) -> Optional[int]:
        pid = self._get_guard().running_pid()
        if pid is None:
            logger.debug(f"No running instance holds {self.pid_file}")
            return None

        if not send_signal(pid, signum):
            return None

        logger.info(f"Sent {signal.Signals(signum).name} to PID {pid}")
        return pid

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _spawn_worker(self, worker_cls: Type[BaseWorker]) -> WorkerProcessHandle:
        handle = WorkerProcessHandle(self, worker_cls)
        handle.spawn()

        self.registry.add(handle)
        self.loop.add_reader(handle.fileno, self._on_pipe_readable, handle.fileno)

        logger.info(f"Started worker {fqn(worker_cls)} (PID {handle.pid})")
        return handle

    def _signal_worker(self, handle: WorkerProcessHandle, signum: int) -> None:
        try:
            handle.kill(signum)
        except ProcessLookupError:
            logger.debug(f"Worker PID {handle.pid} already exited")

    def _reap(self, handle: WorkerProcessHandle) -> Optional[WorkerProcessHandle]:
        """Forget an exited worker, and respawn it if its exit was expected"""
        pid = handle.pid
        exitcode = handle.exitcode

        self.registry.remove(pid)
        self._remove_reader(handle.fileno)
        handle.close()

        reopening = pid in self._reopening
        self._reopening.discard(pid)

        if exitcode < 0:
            outcome = f"was killed by {signal.Signals(-exitcode).name}"
        else:
            outcome = f"exited with code {exitcode}"

        killed = exitcode == -signal.SIGKILL
        if (reopening or killed) and not self._shutting_down:
            logger.info(f"Worker {fqn(handle.worker_cls)} (PID {pid}) {outcome}, respawning")
            try:
                return self._spawn_worker(handle.worker_cls)
            except Exception as exc:
                # The registry stays one worker short until the next reopen
                logger.exception(f"Failed to respawn {fqn(handle.worker_cls)}: {exc}")
                return None

        logger.info(f"Worker {fqn(handle.worker_cls)} (PID {pid}) {outcome}")
        return None

    @property
    def _shutting_down(self) -> bool:
        return self.signal in _SHUTDOWN_SIGNALS

    # ------------------------------------------------------------------
    # Event loop plumbing
    # ------------------------------------------------------------------

    def _signal_handlers(self) -> dict[int, Callable[[int], None]]:
        return {
            signal.SIGTERM: self._on_terminating,
            signal.SIGINT: self._on_terminating,
            signal.SIGCHLD: self._on_child_exit,
            signal.SIGUSR1: self._on_reopen,
            signal.SIGUSR2: self._on_reload,
        }

    def _install_signal_handlers(self) -> None:
        for signum, handler in self._signal_handlers().items():
            self.loop.add_signal_handler(signum, handler, signum)

    def _cleanup_signal_handlers(self) -> None:
        for signum in self._signal_handlers():
            try:
                self.loop.remove_signal_handler(signum)
            except (OSError, ValueError, RuntimeError):
                pass  # Ignore errors during cleanup

    def _remove_reader(self, fileno: Optional[int]) -> None:
        if fileno is not None and self.loop is not None and not self.loop.is_closed():
            self.loop.remove_reader(fileno)

    def _on_pipe_readable(self, fileno: int) -> None:
        handle = self.registry.handle_for_pipe(fileno)
        if handle is None:
            self._remove_reader(fileno)
            return

        callback = self._io_callback or self._discard_pipe_data
        callback(self, handle)

    @staticmethod
    def _discard_pipe_data(supervisor: Supervisor, handle: WorkerProcessHandle) -> None:
        try:
            data = os.read(handle.fileno, 65536)
        except BlockingIOError:
            return
        except OSError:
            data = b""

        if not data:
            # The worker closed its end; wait for SIGCHLD to reap it
            supervisor._remove_reader(handle.fileno)

    def _handle_exception(self, loop, context) -> None:
        exc = context.get("exception")
        if exc is not None:
            logger.error(f"Caught exception: {exc}", exc_info=exc)
        else:
            logger.error(f"Caught exception: {context['message']}")

    # ------------------------------------------------------------------
    # Signal handlers
    # ------------------------------------------------------------------

    def _on_terminating(self, signum: int = signal.SIGTERM) -> None:
        sig_name = signal.Signals(signum).name

        if not self.registry:
            logger.info(f"Received {sig_name}, no workers left")
            self.terminate()
            return

        logger.info(f"Received {sig_name}, stopping {len(self.registry)} worker(s)...")
        self.signal = signum
        self._reopening.clear()

        # Workers are trusted to exit on SIGTERM; there is no escalation to
        #   SIGKILL, so one stuck worker keeps the master waiting.
        for handle in self.registry.handles():
            self._signal_worker(handle, signal.SIGTERM)

    def _on_child_exit(self, signum: int = signal.SIGCHLD) -> None:
        respawned: set[int] = set()

        # Exits can pile up while handlers run, drain until none remain
        while True:
            exited = [
                handle
                for handle in self.registry.handles()
                if handle.pid not in respawned and handle.exitcode is not None
            ]
            if not exited:
                break

            for handle in exited:
                replacement = self._reap(handle)
                if replacement is not None:
                    respawned.add(replacement.pid)

        if self._shutting_down and not self.registry:
            self.terminate()

    def _on_reopen(self, signum: int = signal.SIGUSR1) -> None:
        if self._shutting_down:
            logger.info("Received SIGUSR1 while shutting down, ignoring")
            return

        logger.info(f"Received SIGUSR1, restarting {len(self.registry)} worker(s)...")
        self.signal = signum

        for handle in self.registry.handles():
            self._reopening.add(handle.pid)
            self._signal_worker(handle, signal.SIGTERM)

    def _on_reload(self, signum: int = signal.SIGUSR2) -> None:
        logger.info(f"Received SIGUSR2, reloading {len(self.registry)} worker(s)...")

        for handle in self.registry.handles():
            self._signal_worker(handle, signal.SIGUSR1)
