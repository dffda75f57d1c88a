#!/usr/bin/env -S python3 -B -u
"""
Process Instance - handle on one externally executed server process

A ProcessInstance owns at most one OS process at a time. It can start the
process, stop it (SIGTERM, then SIGKILL after a bounded wait), restart it,
and wait for it to accept TCP connections on its bind address and port.

None of the lifecycle operations raise on OS-level failures. They log the
system error and return False, so callers can treat a failure as either a
test error or an expected outcome of failure injection.

Instances are owned resources: close() (also called from the context
manager exit and from __del__) force-stops a process that is still running
and never raises.
"""

import os
import signal
import socket
import subprocess
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import psutil

from sitesim.core.exceptions import ProcessStateError, PortValidationError
from sitesim.core.models import ProcessState, ReadinessPolicy
from sitesim.core.structured_logging import get_logger


@dataclass
class LaunchSpec:
    """What to execute for one start of a process."""
    argv: List[str]
    stdout_path: Optional[str] = None
    stderr_path: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None


class ProcessInstance:
    """Controls one real instance of an external server process."""

    def __init__(self, ip: str, port: int,
                 readiness: Optional[ReadinessPolicy] = None,
                 stop_timeout: float = 10.0,
                 verbose_level: int = 0):
        """
        Args:
            ip: Address the process binds to
            port: Port the process listens on
            readiness: Cadence of the readiness probe
            stop_timeout: Seconds to wait after SIGTERM before SIGKILL
            verbose_level: Verbosity level (0-3)
        """
        if not isinstance(port, int) or not 1 <= port <= 65535:
            raise PortValidationError(port)

        self._ip = ip
        self._port = port
        self.readiness = readiness or ReadinessPolicy()
        self.stop_timeout = stop_timeout
        self.verbose_level = verbose_level
        self.logger = get_logger(__name__, verbose_level)

        self._process: Optional[subprocess.Popen] = None
        self._state = ProcessState.CREATED

    @property
    def ip(self) -> str:
        return self._ip

    @property
    def port(self) -> int:
        return self._port

    @property
    def name(self) -> str:
        return f"process@{self._ip}:{self._port}"

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int:
        """OS process id. Only valid while the process is running."""
        if self._state != ProcessState.RUNNING or self._process is None:
            raise ProcessStateError(self.name, self._state.value, "read the process id")
        return self._process.pid

    def launch_spec(self) -> LaunchSpec:
        """Command this instance runs. Supplied by the service role."""
        raise NotImplementedError

    def prepare_start(self) -> None:
        """Hook run before every start."""

    def is_running(self) -> bool:
        """Whether the owned process exists and has not exited."""
        if self._process is None:
            return False
        return self._process.poll() is None

    def start(self) -> bool:
        """
        Start this instance.

        Returns:
            True if the process was spawned. False if it is already running
            or the OS refused to execute it.
        """
        if self.is_running():
            self.logger.warning(f"{self.name} is already running", pid=self._process.pid)
            return False

        self.prepare_start()
        spec = self.launch_spec()

        env = os.environ.copy()
        env.update(spec.env)

        stdout = stderr = None
        try:
            stdout = self._open_output(spec.stdout_path)
            stderr = self._open_output(spec.stderr_path)
            process = subprocess.Popen(
                spec.argv,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                env=env,
                cwd=spec.cwd,
            )
        except OSError as e:
            self.logger.error(f"Failed to start {self.name}: {e.strerror or e}",
                              command=" ".join(spec.argv))
            self.logger.log_command_execution(spec.argv, instance=self.name, success=False)
            self._state = ProcessState.FAILED
            return False
        finally:
            for handle in (stdout, stderr):
                if handle not in (None, subprocess.DEVNULL):
                    handle.close()

        self._process = process
        self._state = ProcessState.RUNNING
        self.logger.log_command_execution(spec.argv, instance=self.name, success=True)
        self.logger.log_process_event(self.name, "started", pid=process.pid)
        return True

    def _open_output(self, path: Optional[str]):
        if path:
            return open(path, 'a')
        if self.verbose_level >= 2:
            return None
        return subprocess.DEVNULL

    def stop(self) -> bool:
        """
        Stop this instance and wait for the OS to confirm it has gone.

        Returns:
            True if a running process was terminated. False if there was no
            process to stop.
        """
        if self._process is None or self._state != ProcessState.RUNNING:
            self.logger.warning(f"No process to stop for {self.name}", state=self._state.value)
            return False

        process = self._process
        returncode = process.poll()
        if returncode is not None:
            self.logger.warning(f"{self.name} had already exited", returncode=returncode)
            self._process = None
            self._state = ProcessState.STOPPED
            return False

        try:
            children = psutil.Process(process.pid).children(recursive=True)
        except psutil.Error:
            children = []

        try:
            process.send_signal(signal.SIGTERM)
        except ProcessLookupError as e:
            self.logger.error(f"Failed to signal {self.name}: {e.strerror or e}")
            self._process = None
            self._state = ProcessState.STOPPED
            return False

        try:
            returncode = process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"{self.name} ignored SIGTERM for {self.stop_timeout}s, sending SIGKILL",
                                pid=process.pid)
            process.kill()
            returncode = process.wait()

        self._reap_children(children)

        self._process = None
        self._state = ProcessState.STOPPED
        self.logger.log_process_event(self.name, "stopped", returncode=returncode)
        return True

    def _reap_children(self, children: List[psutil.Process]) -> None:
        """Terminate descendants left behind by a wrapper command."""
        alive = [child for child in children if child.is_running()]
        if not alive:
            return
        for child in alive:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass
        _, still_alive = psutil.wait_procs(alive, timeout=self.stop_timeout)
        for child in still_alive:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass

    def restart(self) -> bool:
        """Stop then start. start() is not attempted if stop() fails."""
        return self.stop() and self.start()

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the instance to come up by connecting to its port.

        Sleeps briefly first to give the process a chance to start
        listening, then retries at a fixed interval.

        Args:
            timeout: Seconds to keep retrying. Defaults to the policy's
                     attempt count.

        Returns:
            Whether a TCP connection was accepted
        """
        policy = self.readiness
        attempts = policy.attempts_for(timeout)

        time.sleep(policy.initial_delay)

        with self.logger.timer(f"readiness poll of {self.name}"):
            for attempt in range(1, attempts + 1):
                try:
                    with socket.create_connection((self._ip, self._port), timeout=policy.interval):
                        self.logger.debug(f"{self.name} is accepting connections", attempt=attempt)
                        return True
                except OSError as e:
                    self.logger.trace(f"Connect to {self.name} failed", attempt=attempt, error=str(e))
                    if attempt < attempts:
                        time.sleep(policy.interval)

        self.logger.warning(f"{self.name} did not come up", attempts=attempts)
        return False

    def close(self) -> None:
        """
        Force-stop the process if it is still running. Never raises.

        Safe to call more than once, and again after a later start().
        """
        try:
            if self.is_running():
                self.stop()
        except Exception as e:
            self.logger.debug(f"Ignoring error while closing {self.name}: {e}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} {self._state.value}>"


def _runs_binary(proc: psutil.Process, binary: str) -> bool:
    """Whether ``proc`` was started from ``binary``, compared by base name."""
    wanted = os.path.basename(binary)
    if proc.name() == wanted:
        return True
    cmdline = proc.cmdline()
    return bool(cmdline) and os.path.basename(cmdline[0]) == wanted


def terminate_pidfile_process(pid_file: str, timeout: float = 10.0,
                              binary: Optional[str] = None) -> bool:
    """
    Terminate a process left behind by an earlier run, as named by its pid file.

    The pid file is removed afterwards. A missing or unreadable pid file,
    or a pid that no longer exists, is not an error. When ``binary`` is
    given, a process running anything else holds a reused pid and is
    left alone.

    Returns:
        True if a live process was terminated
    """
    logger = get_logger(__name__)
    try:
        with open(pid_file, 'r') as f:
            pid = int(f.read().strip())
        if pid <= 0:
            raise ValueError(f"not a process id: {pid}")
    except FileNotFoundError:
        return False
    except (OSError, ValueError) as e:
        logger.debug(f"Ignoring unreadable pid file {pid_file}: {e}")
        _unlink_quietly(pid_file)
        return False

    terminated = False
    try:
        if pid != os.getpid():
            proc = psutil.Process(pid)
            if binary and not _runs_binary(proc, binary):
                logger.warning(f"Pid {pid} from {pid_file} now belongs to another program",
                               process=proc.name())
            else:
                proc.terminate()
                try:
                    proc.wait(timeout=timeout)
                except psutil.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=timeout)
                terminated = True
                logger.info(f"Terminated stale process from {pid_file}", pid=pid)
    except psutil.NoSuchProcess:
        logger.debug(f"Stale pid {pid} from {pid_file} has already exited")
    except (psutil.AccessDenied, psutil.TimeoutExpired, ValueError) as e:
        logger.warning(f"Could not terminate stale pid {pid} from {pid_file}: {e}")

    _unlink_quietly(pid_file)
    return terminated


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except OSError:
        pass
