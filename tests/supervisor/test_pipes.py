import os

import pytest

from keeper.process import WorkerProcessHandle
from tests.support.workers import Mailer


@pytest.fixture
def pipe_handle(supervisor, mock_loop):
    """A registered handle whose master end is a real pipe"""
    read_fd, write_fd = os.pipe()

    supervisor.loop = mock_loop
    handle = WorkerProcessHandle(supervisor, Mailer)
    handle.pid = 31337
    handle.fileno = read_fd
    supervisor.registry.add(handle)

    yield handle, write_fd

    for fd in (read_fd, write_fd):
        try:
            os.close(fd)
        except OSError:
            pass


def test_incoming_data_is_discarded(supervisor, mock_loop, pipe_handle):
    handle, write_fd = pipe_handle
    os.write(write_fd, b"status: ok")

    supervisor._on_pipe_readable(handle.fileno)

    mock_loop.remove_reader.assert_not_called()


def test_closed_pipe_stops_watching(supervisor, mock_loop, pipe_handle):
    handle, write_fd = pipe_handle
    os.close(write_fd)

    supervisor._on_pipe_readable(handle.fileno)

    mock_loop.remove_reader.assert_called_once_with(handle.fileno)
    # Reaping is left to SIGCHLD
    assert handle.pid in supervisor.registry


def test_io_callback_receives_handle(supervisor, mock_loop, pipe_handle, mocker):
    handle, write_fd = pipe_handle
    callback = mocker.MagicMock()
    supervisor.set_io_callback(callback)
    os.write(write_fd, b"status: ok")

    supervisor._on_pipe_readable(handle.fileno)

    callback.assert_called_once_with(supervisor, handle)
    assert os.read(handle.fileno, 1024) == b"status: ok"


def test_unknown_pipe_stops_watching(supervisor, mock_loop):
    supervisor.loop = mock_loop

    supervisor._on_pipe_readable(999)

    mock_loop.remove_reader.assert_called_once_with(999)
