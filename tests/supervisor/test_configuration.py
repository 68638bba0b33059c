import grp
import os
import pwd

import pytest

from keeper.config import Config
from keeper.exceptions import ConfigurationError, InvalidOperationError
from keeper.singleton import SingletonGuard
from keeper.supervisor import Supervisor
from tests.support.workers import Indexer, Mailer


class TestDefaults:
    def test_fresh_supervisor(self):
        supervisor = Supervisor()

        assert supervisor.container == {}
        assert supervisor.pid_file is None
        assert supervisor.daemon is False
        assert supervisor.process_name is None
        assert supervisor.user_id is None
        assert supervisor.group_id is None
        assert supervisor.bootstrap == []
        assert supervisor.running is False
        assert supervisor.signal is None
        assert len(supervisor.registry) == 0

    def test_container_is_kept_as_is(self):
        container = object()

        assert Supervisor(container).container is container


class TestSetters:
    @pytest.mark.parametrize(
        "value, expected",
        [(True, True), (False, False), ("true", True), ("True", True), ("false", False), ("1", False)],
    )
    def test_daemon_is_normalized(self, value, expected):
        assert Supervisor().set_daemon(value).daemon is expected

    def test_setters_chain(self, pid_file):
        supervisor = (
            Supervisor()
            .set_pid_file(pid_file)
            .set_process_name("billing")
            .set_daemon(False)
        )

        assert supervisor.pid_file == pid_file
        assert supervisor.process_name == "billing"

    def test_user_is_resolved_to_uid(self):
        name = pwd.getpwuid(os.getuid()).pw_name

        supervisor = Supervisor().set_user(name)

        assert supervisor.user == name
        assert supervisor.user_id == os.getuid()

    def test_group_is_resolved_to_gid(self):
        name = grp.getgrgid(os.getgid()).gr_name

        supervisor = Supervisor().set_group(name)

        assert supervisor.group == name
        assert supervisor.group_id == os.getgid()

    def test_unknown_user_fails_fast(self):
        with pytest.raises(ConfigurationError):
            Supervisor().set_user("keeper-no-such-user")

    def test_unknown_group_fails_fast(self):
        with pytest.raises(ConfigurationError):
            Supervisor().set_group("keeper-no-such-group")

    def test_clearing_user(self):
        name = pwd.getpwuid(os.getuid()).pw_name
        supervisor = Supervisor().set_user(name)

        supervisor.set_user(None)

        assert supervisor.user_id is None


class TestBootstrap:
    def test_classes_and_strings(self):
        supervisor = Supervisor().set_bootstrap(
            [Mailer, "tests.support.workers.Indexer"]
        )

        assert supervisor.bootstrap == [Mailer, Indexer]

    def test_duplicates_spawn_separate_workers(self):
        supervisor = Supervisor().set_bootstrap([Mailer, Mailer])

        assert supervisor.bootstrap == [Mailer, Mailer]

    def test_unknown_worker(self):
        with pytest.raises(ConfigurationError) as exc:
            Supervisor().set_bootstrap(["tests.support.workers.Postman"])

        assert "tests.support.workers.Postman" in str(exc.value)

    def test_not_a_worker(self):
        with pytest.raises(ConfigurationError) as exc:
            Supervisor().set_bootstrap(["tests.support.workers.NotAWorker"])

        assert "is not a subclass of BaseWorker" in str(exc.value)

    def test_instances_are_rejected(self):
        with pytest.raises(ConfigurationError):
            Supervisor().set_bootstrap([Mailer()])


class TestConfigure:
    def test_configure_applies_given_settings(self, pid_file):
        supervisor = Supervisor().configure(
            daemon="true",
            pid_file=pid_file,
            process_name="billing",
            bootstrap=["tests.support.workers.Mailer"],
        )

        assert supervisor.daemon is True
        assert supervisor.pid_file == pid_file
        assert supervisor.process_name == "billing"
        assert supervisor.bootstrap == [Mailer]

    def test_none_leaves_settings_untouched(self, pid_file):
        supervisor = Supervisor().configure(pid_file=pid_file, process_name="billing")

        supervisor.configure(daemon=True)

        assert supervisor.pid_file == pid_file
        assert supervisor.process_name == "billing"

    def test_set_config_from_loaded_config(self, pid_file):
        config = Config.load_from_dict(
            {
                "pid_file": pid_file,
                "bootstrap": ["tests.support.workers.Indexer"],
                "force_attempts": 5,
                "force_grace_period": 0.5,
            }
        )

        supervisor = Supervisor(container=config).set_config(config)

        assert supervisor.pid_file == pid_file
        assert supervisor.bootstrap == [Indexer]
        assert supervisor.daemon is False
        assert supervisor.force_attempts == 5
        assert supervisor.force_grace_period == 0.5


class TestPidFile:
    def test_guard_is_created_lazily(self, pid_file):
        supervisor = Supervisor().set_pid_file(pid_file)

        assert supervisor.guard is None
        assert isinstance(supervisor._get_guard(), SingletonGuard)
        assert supervisor._get_guard() is supervisor.guard

    def test_moving_pid_file_resets_guard(self, pid_file, tmp_path):
        supervisor = Supervisor().set_pid_file(pid_file)
        supervisor._get_guard()

        supervisor.set_pid_file(str(tmp_path / "other.pid"))

        assert supervisor.guard is None

    def test_missing_pid_file(self):
        with pytest.raises(ConfigurationError):
            Supervisor()._get_guard()

    def test_cannot_move_pid_file_while_running(self, supervisor, fake_spawn, tmp_path):
        supervisor.start()

        with pytest.raises(InvalidOperationError):
            supervisor.set_pid_file(str(tmp_path / "other.pid"))
