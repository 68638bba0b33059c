import pickle

import pytest

from keeper.exceptions import (
    AlreadyRunning,
    ConfigurationError,
    KeeperException,
    PidFileError,
    SingletonConflict,
)


def test_pickling_of_exceptions():
    exc = ConfigurationError("foo")

    pickled_exc = pickle.dumps(exc)
    unpickled_exc = pickle.loads(pickled_exc)

    assert exc.args[0] == unpickled_exc.args[0]


def test_pickling_of_singleton_conflict():
    exc = AlreadyRunning(1234)

    unpickled_exc = pickle.loads(pickle.dumps(exc))

    assert isinstance(unpickled_exc, AlreadyRunning)
    assert unpickled_exc.pid == 1234
    assert unpickled_exc.args[0] == exc.args[0]


class TestKeeperException:
    @pytest.fixture
    def exception_instance(self):
        return KeeperException("An error occurred")

    def test_exception_initialization(self, exception_instance):
        assert exception_instance.args[0] == "An error occurred"
        assert exception_instance.extra_info is None

    def test_exception_with_extra_info(self):
        exception_instance = KeeperException(
            "An error occurred", extra_info="Extra info"
        )
        assert exception_instance.extra_info == "Extra info"

    def test_exception_no_args(self):
        exception_instance = KeeperException()
        assert exception_instance.args == ()


class TestExitCodes:
    def test_pid_file_errors_exit_with_1(self):
        assert PidFileError("Cannot open").exit_code == 1

    def test_configuration_errors_exit_with_1(self):
        assert ConfigurationError("Unknown user").exit_code == 1

    def test_conflicts_exit_with_2(self):
        assert SingletonConflict(10).exit_code == 2
        assert AlreadyRunning(10).exit_code == 2


class TestSingletonConflict:
    def test_default_message_names_the_pid(self):
        exc = SingletonConflict(4321)

        assert exc.pid == 4321
        assert str(exc) == "Have running instance (PID: 4321)"

    def test_custom_message(self):
        exc = AlreadyRunning(4321, "Nothing to do.")

        assert exc.pid == 4321
        assert str(exc) == "Nothing to do."
        assert isinstance(exc, SingletonConflict)

    def test_unknown_pid(self):
        assert SingletonConflict(None).pid is None
