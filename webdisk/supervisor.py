"""
Single-instance process supervisor for webdisk

A PID file next to the configuration file records the serving process.
The first line holds the pid, the second the process creation time as
reported by psutil, so a recycled pid is not mistaken for a live server.
"""

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import psutil

from .models import DaemonHandle
from .utils import atomic_write_text

logger = logging.getLogger(__name__)

PID_FILE_NAME = "webdisk.pid"
LOG_FILE_NAME = "webdisk.log"

STOP_TIMEOUT = 3.0
START_GRACE = 0.5
CREATE_TIME_TOLERANCE = 1.0

PathLike = Union[str, Path]


class ProcessLifecycleError(Exception):
    """Raised when the server process cannot be started, found or stopped"""
    pass


def pid_file_for(config_path: PathLike) -> Path:
    """PID file belonging to a configuration file"""
    return Path(config_path).resolve().parent / PID_FILE_NAME


def log_file_for(config_path: PathLike) -> Path:
    """Daemon output log belonging to a configuration file"""
    return Path(config_path).resolve().parent / LOG_FILE_NAME


def daemon_command(config_path: PathLike) -> List[str]:
    """Command line that runs the server in the foreground"""
    return [sys.executable, "-m", "webdisk", "--config", str(Path(config_path).resolve()), "run"]


def process_create_time(pid: int) -> Optional[float]:
    try:
        return psutil.Process(pid).create_time()
    except psutil.Error:
        return None


def is_alive(handle: DaemonHandle) -> bool:
    """
    Check whether the process recorded in a handle is still our server

    The process must exist, must not be a zombie, and its creation time must
    match the recorded one. Handles without a creation time fall back to
    looking for the package name in the command line. A process we are not
    allowed to inspect counts as stale.
    """
    try:
        proc = psutil.Process(handle.pid)
        if proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if handle.create_time is not None:
            return abs(proc.create_time() - handle.create_time) <= CREATE_TIME_TOLERANCE
        return any("webdisk" in part for part in proc.cmdline())
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return False
    except psutil.AccessDenied:
        logger.warning(f"Cannot verify identity of pid {handle.pid}, treating PID file as stale")
        return False


class PidFile:
    """PID file guarding a single server instance"""

    def __init__(self, path: PathLike):
        self.path = Path(path)

    def read(self) -> Optional[DaemonHandle]:
        """Parse the PID file; None when it is absent or unreadable"""
        try:
            lines = self.path.read_text(encoding="utf-8").split()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Failed to read PID file {self.path}: {e}")
            return None

        try:
            pid = int(lines[0])
            create_time = float(lines[1]) if len(lines) > 1 else None
        except (IndexError, ValueError):
            logger.warning(f"Ignoring malformed PID file {self.path}")
            return None

        if pid <= 0:
            return None
        return DaemonHandle(pid=pid, pid_file_path=self.path, create_time=create_time)

    def write(self, pid: int, create_time: Optional[float] = None) -> DaemonHandle:
        """Atomically record a pid (and its creation time)"""
        content = f"{pid}\n"
        if create_time is not None:
            content += f"{create_time!r}\n"
        self.path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write_text(self.path, content)
        return DaemonHandle(pid=pid, pid_file_path=self.path, create_time=create_time)

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove PID file {self.path}: {e}")

    def live_handle(self) -> Optional[DaemonHandle]:
        """
        Return the handle of a live holder

        A stale file is removed as a side effect.
        """
        handle = self.read()
        if handle is not None and is_alive(handle):
            return handle

        if self.path.exists():
            logger.info(f"Removing stale PID file {self.path}")
            self.remove()
        return None

    def acquire(self, pid: int) -> DaemonHandle:
        """
        Claim the PID file for a process

        A file that already names this pid is accepted, which is how a
        daemon child takes over the file written by its parent.

        Raises:
            ProcessLifecycleError: If another live process holds the file
        """
        handle = self.live_handle()
        if handle is not None and handle.pid != pid:
            raise ProcessLifecycleError(f"webdisk is already running (pid {handle.pid})")

        try:
            return self.write(pid, process_create_time(pid))
        except OSError as e:
            raise ProcessLifecycleError(f"Failed to write PID file {self.path}: {e}")

    def release(self, pid: int) -> None:
        """Remove the PID file if it still names this pid"""
        handle = self.read()
        if handle is not None and handle.pid == pid:
            self.remove()


def _detach_options() -> dict:
    if os.name == "nt":
        return {"creationflags": subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"start_new_session": True}


def start_daemon(config_path: PathLike, command: Optional[Sequence[str]] = None) -> DaemonHandle:
    """
    Start the server as a detached background process

    Args:
        config_path: Configuration file the server will run with
        command: Override of the spawned command line (tests)

    Returns:
        Handle of the started process

    Raises:
        ProcessLifecycleError: If a server is already running, the process
            could not be spawned, or it exited during the grace period
    """
    config_path = Path(config_path).resolve()
    pid_file = PidFile(pid_file_for(config_path))

    running = pid_file.live_handle()
    if running is not None:
        raise ProcessLifecycleError(f"webdisk is already running (pid {running.pid})")

    log_path = log_file_for(config_path)
    argv = list(command) if command else daemon_command(config_path)

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_file:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                cwd=os.getcwd(),
                **_detach_options(),
            )
    except OSError as e:
        raise ProcessLifecycleError(f"Failed to start webdisk: {e}")

    try:
        handle = pid_file.write(process.pid, process_create_time(process.pid))
    except OSError as e:
        process.kill()
        process.wait()
        raise ProcessLifecycleError(f"Failed to write PID file {pid_file.path}: {e}")

    try:
        returncode = process.wait(timeout=START_GRACE)
    except subprocess.TimeoutExpired:
        logger.info(f"webdisk started in background (pid {process.pid})")
        return handle

    pid_file.remove()
    raise ProcessLifecycleError(
        f"webdisk exited during startup with code {returncode}, see {log_path}"
    )


def _terminate(pid: int) -> bool:
    try:
        proc = psutil.Process(pid)
        proc.terminate()
        try:
            proc.wait(timeout=STOP_TIMEOUT)
            return False
        except psutil.TimeoutExpired:
            logger.warning(f"webdisk (pid {pid}) did not exit within {STOP_TIMEOUT:g}s, killing it")
            proc.kill()
            proc.wait(timeout=STOP_TIMEOUT)
            return True
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        raise ProcessLifecycleError(f"Not permitted to signal pid {pid}: {e}")
    except psutil.TimeoutExpired:
        raise ProcessLifecycleError(f"webdisk (pid {pid}) survived kill")


def stop_daemon(config_path: PathLike) -> bool:
    """
    Stop the running server

    Sends a termination request, waits up to STOP_TIMEOUT seconds and then
    kills the process. The PID file is removed on every outcome.

    Returns:
        True if the process had to be killed

    Raises:
        ProcessLifecycleError: If no live server holds the PID file, or it
            could not be signalled
    """
    pid_file = PidFile(pid_file_for(config_path))
    handle = pid_file.read()

    try:
        if handle is None:
            raise ProcessLifecycleError("webdisk is not running")
        if not is_alive(handle):
            raise ProcessLifecycleError(
                f"webdisk is not running (removed stale PID file for pid {handle.pid})"
            )

        forced = _terminate(handle.pid)
        logger.info(f"webdisk (pid {handle.pid}) stopped")
        return forced
    finally:
        pid_file.remove()


def daemon_status(config_path: PathLike) -> Optional[DaemonHandle]:
    """Return the handle of the running server, or None"""
    return PidFile(pid_file_for(config_path)).live_handle()


def run_foreground(config_path: PathLike, serve: Callable[[], None]) -> None:
    """
    Serve in this process while holding the PID file

    Raises:
        ProcessLifecycleError: If another server holds the PID file
    """
    pid_file = PidFile(pid_file_for(config_path))
    pid = os.getpid()
    pid_file.acquire(pid)
    try:
        serve()
    finally:
        pid_file.release(pid)
