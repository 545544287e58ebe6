"""SSH dynamic port forwarding (SOCKS) as a background process."""

import os
import signal
import socket
import subprocess
import time
from pathlib import Path

from .errors import LocalIOError
from .retry import RetryPolicy, Sleep, poll
from .utils import debug, log, run_cmd

SSH_OPTIONS = [
    "ExitOnForwardFailure=yes",
    "StrictHostKeyChecking=no",
    "UserKnownHostsFile=/dev/null",
    "ServerAliveInterval=60",
    "ServerAliveCountMax=3",
    "LogLevel=ERROR",
]


def build_ssh_command(host: str, key_file: str | Path, local_port: int, user: str) -> list[str]:
    cmd = ["ssh", "-N", "-D", f"127.0.0.1:{local_port}"]
    for opt in SSH_OPTIONS:
        cmd += ["-o", opt]
    cmd += ["-i", str(key_file), f"{user}@{host}"]
    return cmd


def port_accepts_connections(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


class SSHTunnel:
    """Starts, probes and stops the ssh process that serves the SOCKS port."""

    READY_POLL = RetryPolicy(attempts=30, delay=1)

    def __init__(self, sleep: Sleep = time.sleep):
        self.sleep = sleep
        self._process: subprocess.Popen | None = None

    def start(self, host: str, key_file: str | Path, local_port: int, user: str) -> int:
        """Launch ssh -D in its own session so it outlives this process.

        :return: PID of the ssh process
        :raises LocalIOError: If the key file or ssh executable is unusable
        """
        log(f"Starting SSH tunnel to {user}@{host} on port {local_port}")
        try:
            # ssh refuses keys readable by others
            os.chmod(key_file, 0o600)
        except OSError as e:
            raise LocalIOError(f"Could not set permissions on key file '{key_file}': {e}") from e

        try:
            self._process = subprocess.Popen(
                build_ssh_command(host, key_file, local_port, user),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise LocalIOError(f"Failed to start SSH process: {e}") from e

        log(f"SSH tunnel started with PID: {self._process.pid}")
        return self._process.pid

    def wait_ready(self, local_port: int) -> None:
        """Wait until the forwarded port accepts TCP connections.

        :raises LocalIOError: If the ssh process exits before the port is ready
        :raises WaitTimeoutError: If the port is not ready within READY_POLL
        """
        log(f"Waiting for SSH tunnel to be ready (up to {self.READY_POLL.budget:g}s)...")

        def ready() -> bool | None:
            if self._process is not None and self._process.poll() is not None:
                raise LocalIOError(
                    f"SSH process exited with code {self._process.returncode} "
                    "before the tunnel was ready"
                )
            return True if port_accepts_connections(local_port) else None

        poll(ready, self.READY_POLL, sleep=self.sleep, what=f"SSH tunnel on port {local_port}")
        log("SSH tunnel is ready")

    def find_by_port(self, port: int) -> int | None:
        """PID of the process listening on a local TCP port, if any.

        :raises LocalIOError: If lsof cannot be run
        """
        output = run_cmd("lsof", "-nP", f"-iTCP:{port}", "-sTCP:LISTEN", "-t", check=False)
        for line in output.splitlines():
            line = line.strip()
            if line.isdigit():
                return int(line)
        return None

    def stop(self, pid: int) -> None:
        """Send SIGTERM; never SIGKILL.

        :raises LocalIOError: If the process does not exist or cannot be signalled
        """
        log(f"Stopping SSH tunnel (PID: {pid})")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError as e:
            raise LocalIOError(f"No SSH process with PID {pid}") from e
        except PermissionError as e:
            raise LocalIOError(f"Not permitted to signal PID {pid}") from e
        log("SSH tunnel stopped")

    def stop_by_port(self, port: int) -> bool:
        """:return: True if a process was found and signalled"""
        pid = self.find_by_port(port)
        if pid is None:
            debug(f"No SSH process found on port {port}")
            return False
        self.stop(pid)
        return True
