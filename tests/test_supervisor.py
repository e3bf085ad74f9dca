"""
Tests for the PID-file process supervisor

These spawn real short-lived Python processes in place of the server.
"""

import os
import sys
import time

import psutil
import pytest

from webdisk import supervisor
from webdisk.models import DaemonHandle
from webdisk.supervisor import (
    PidFile,
    ProcessLifecycleError,
    daemon_command,
    daemon_status,
    is_alive,
    log_file_for,
    pid_file_for,
    run_foreground,
    start_daemon,
    stop_daemon,
)

SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)", "webdisk"]
CRASHER = [sys.executable, "-c", "import sys; print('boom'); sys.exit(3)"]
STUBBORN = [
    sys.executable, "-c",
    "import signal, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(60)\n",
]


def wait_for(predicate, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture()
def config_path(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("port: 8080\n", encoding="utf-8")
    return path


@pytest.fixture()
def spawned():
    """Pids to kill after the test, whatever happened"""
    pids = []
    yield pids
    for pid in pids:
        try:
            proc = psutil.Process(pid)
            proc.kill()
            proc.wait(timeout=5)
        except psutil.Error:
            pass


class TestPidFile:

    def test_write_and_read(self, tmp_path):
        pid_file = PidFile(tmp_path / "webdisk.pid")
        pid_file.write(1234, 1700000000.25)

        handle = pid_file.read()

        assert handle == DaemonHandle(1234, pid_file.path, 1700000000.25)

    def test_pid_only_file(self, tmp_path):
        path = tmp_path / "webdisk.pid"
        path.write_text("4321\n")
        assert PidFile(path).read().create_time is None

    @pytest.mark.parametrize("content", ["", "abc\n", "-5\n", "12\nnot-a-time\n"])
    def test_malformed(self, tmp_path, content):
        path = tmp_path / "webdisk.pid"
        path.write_text(content)
        assert PidFile(path).read() is None

    def test_missing(self, tmp_path):
        assert PidFile(tmp_path / "webdisk.pid").read() is None

    def test_locations_follow_config(self, config_path):
        assert pid_file_for(config_path) == config_path.parent.resolve() / "webdisk.pid"
        assert log_file_for(config_path) == config_path.parent.resolve() / "webdisk.log"

    def test_daemon_command_runs_module(self, config_path):
        command = daemon_command(config_path)
        assert command[:3] == [sys.executable, "-m", "webdisk"]
        assert command[-3:] == ["--config", str(config_path.resolve()), "run"]

    def test_acquire_accepts_own_pid(self, tmp_path):
        pid_file = PidFile(tmp_path / "webdisk.pid")
        pid_file.write(os.getpid(), supervisor.process_create_time(os.getpid()))

        handle = pid_file.acquire(os.getpid())

        assert handle.pid == os.getpid()

    def test_release_only_own_pid(self, tmp_path):
        pid_file = PidFile(tmp_path / "webdisk.pid")
        pid_file.write(999999)

        pid_file.release(os.getpid())
        assert pid_file.path.exists()

        pid_file.release(999999)
        assert not pid_file.path.exists()


class TestIsAlive:

    def test_current_process(self, tmp_path):
        pid = os.getpid()
        handle = DaemonHandle(pid, tmp_path / "x.pid", supervisor.process_create_time(pid))
        assert is_alive(handle)

    def test_create_time_mismatch_is_stale(self, tmp_path):
        handle = DaemonHandle(os.getpid(), tmp_path / "x.pid", 1.0)
        assert not is_alive(handle)

    def test_exited_process(self, tmp_path):
        proc = psutil.Popen([sys.executable, "-c", "pass"])
        proc.wait(timeout=10)
        assert not is_alive(DaemonHandle(proc.pid, tmp_path / "x.pid", None))

    def test_cmdline_fallback(self, tmp_path, spawned):
        proc = psutil.Popen(SLEEPER)
        spawned.append(proc.pid)
        assert is_alive(DaemonHandle(proc.pid, tmp_path / "x.pid", None))


class TestDaemonLifecycle:

    def test_start_status_stop(self, config_path, spawned):
        handle = start_daemon(config_path, command=SLEEPER)
        spawned.append(handle.pid)

        assert pid_file_for(config_path).exists()
        assert daemon_status(config_path).pid == handle.pid

        forced = stop_daemon(config_path)

        assert forced is False
        assert not pid_file_for(config_path).exists()
        assert gone(handle.pid)
        assert daemon_status(config_path) is None

    def test_second_start_is_refused(self, config_path, spawned):
        handle = start_daemon(config_path, command=SLEEPER)
        spawned.append(handle.pid)
        before = pid_file_for(config_path).read_text()

        with pytest.raises(ProcessLifecycleError, match="already running"):
            start_daemon(config_path, command=SLEEPER)

        assert pid_file_for(config_path).read_text() == before

    def test_stale_pid_file_is_replaced(self, config_path, spawned):
        PidFile(pid_file_for(config_path)).write(os.getpid(), 1.0)

        handle = start_daemon(config_path, command=SLEEPER)
        spawned.append(handle.pid)

        assert PidFile(pid_file_for(config_path)).read().pid == handle.pid

    def test_immediate_crash(self, config_path):
        with pytest.raises(ProcessLifecycleError, match="webdisk.log"):
            start_daemon(config_path, command=CRASHER)

        assert not pid_file_for(config_path).exists()
        assert "boom" in log_file_for(config_path).read_text()

    def test_stop_when_not_running(self, config_path):
        with pytest.raises(ProcessLifecycleError, match="not running"):
            stop_daemon(config_path)
        assert not pid_file_for(config_path).exists()

    def test_stop_with_stale_file(self, config_path):
        PidFile(pid_file_for(config_path)).write(os.getpid(), 1.0)

        with pytest.raises(ProcessLifecycleError, match="not running"):
            stop_daemon(config_path)

        assert not pid_file_for(config_path).exists()

    def test_stop_with_malformed_file(self, config_path):
        pid_file_for(config_path).write_text("garbage\n")

        with pytest.raises(ProcessLifecycleError):
            stop_daemon(config_path)

        assert not pid_file_for(config_path).exists()

    @pytest.mark.skipif(os.name == "nt", reason="SIGTERM cannot be ignored on Windows")
    def test_stop_escalates_to_kill(self, config_path, spawned, monkeypatch):
        monkeypatch.setattr(supervisor, "STOP_TIMEOUT", 0.5)
        handle = start_daemon(config_path, command=STUBBORN)
        spawned.append(handle.pid)
        assert wait_for(lambda: "ready" in log_file_for(config_path).read_text())

        forced = stop_daemon(config_path)

        assert forced is True
        assert gone(handle.pid)
        assert not pid_file_for(config_path).exists()


class TestRunForeground:

    def test_holds_pid_file_while_serving(self, config_path):
        seen = {}

        def serve():
            seen["handle"] = PidFile(pid_file_for(config_path)).read()

        run_foreground(config_path, serve)

        assert seen["handle"].pid == os.getpid()
        assert not pid_file_for(config_path).exists()

    def test_releases_on_error(self, config_path):
        def serve():
            raise RuntimeError("bind failed")

        with pytest.raises(RuntimeError):
            run_foreground(config_path, serve)

        assert not pid_file_for(config_path).exists()

    def test_refuses_when_another_server_runs(self, config_path, spawned):
        handle = start_daemon(config_path, command=SLEEPER)
        spawned.append(handle.pid)
        called = []

        with pytest.raises(ProcessLifecycleError, match="already running"):
            run_foreground(config_path, lambda: called.append(True))

        assert called == []
        assert PidFile(pid_file_for(config_path)).read().pid == handle.pid
