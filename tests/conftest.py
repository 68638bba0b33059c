"""Module to setup fixtures and other required artifacts for tests

    isort:skip_file
"""

import itertools
from unittest.mock import MagicMock

import pytest

from keeper.process import WorkerProcessHandle
from keeper.supervisor import Supervisor


def pytest_addoption(parser):
    """Additional options for running tests with pytest"""
    parser.addoption(
        "--slow", action="store_true", default=False, help="Run slow tests"
    )


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: forks real worker processes, run with --slow"
    )


def pytest_collection_modifyitems(config, items):
    """Configure special markers on tests, so as to control execution"""
    if config.getoption("--slow"):
        # --slow given in cli: do not skip slow tests
        return

    skip_slow = pytest.mark.skip(reason="need --slow option to run")
    for item in items:
        if "slow" in item.keywords:
            item.add_marker(skip_slow)


@pytest.fixture
def pid_file(tmp_path):
    return str(tmp_path / "run" / "keeper.pid")


@pytest.fixture
def mock_loop():
    """Stand-in for the master's event loop, records readers and handlers"""
    loop = MagicMock()
    loop.is_closed.return_value = False
    loop.is_running.return_value = False
    return loop


@pytest.fixture
def fake_spawn(monkeypatch):
    """Replace forking with bookkeeping only.

    Each spawned handle gets a unique fake pid and pipe descriptor, and a
    mock process whose ``exitcode`` tests can set to simulate an exit.
    """
    pids = itertools.count(20001)

    def _spawn(handle):
        handle.pid = next(pids)
        handle.fileno = handle.pid + 10000
        handle.pipe = MagicMock(closed=False)
        handle.process = MagicMock(pid=handle.pid, exitcode=None)
        return handle.pid

    monkeypatch.setattr(WorkerProcessHandle, "spawn", _spawn)
    return _spawn


@pytest.fixture
def supervisor(pid_file, mock_loop, monkeypatch):
    """A configured Supervisor whose event loop is a mock"""
    monkeypatch.setattr(
        "keeper.supervisor.asyncio.new_event_loop", lambda: mock_loop
    )
    monkeypatch.setattr("keeper.supervisor.set_process_title", MagicMock())

    supervisor = Supervisor(container={"service": "shared"})
    supervisor.set_pid_file(pid_file)

    yield supervisor

    if supervisor.guard is not None:
        supervisor.guard.release()


@pytest.fixture
def holder(pid_file):
    """Another instance holding the PID file, recorded as PID 424242"""
    from tests.support.holder import LockHolder

    lock_holder = LockHolder(pid_file).acquire()

    yield lock_holder

    lock_holder.release()
