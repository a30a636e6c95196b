"""
Sandbox Process Platform
========================

The process API the lifecycle code runs against, plus a local
implementation backed by subprocess and `ps`.

Any platform client (remote sandbox SDK, test fake) only needs to
provide the SandboxClient / SandboxProcess protocols.
"""

import asyncio
import logging
import os
import signal
import subprocess
import tempfile
from pathlib import Path
from typing import Protocol

from ..schemas import ProcessLogs, ProcessRecord, ProcessStatus

logger = logging.getLogger(__name__)

# Interval between port checks while waiting for readiness
PORT_POLL_INTERVAL = 0.5

# Time a killed process gets to exit after SIGTERM before SIGKILL
KILL_TIMEOUT_SECONDS = 5.0


class SandboxProcess(Protocol):
    """A process running inside the sandbox."""
    id: str
    command: str

    @property
    def status(self) -> ProcessStatus: ...

    async def kill(self) -> None: ...

    async def wait_for_port(self, port: int, mode: str = "tcp", timeout_ms: int | None = None) -> None: ...

    async def get_logs(self) -> ProcessLogs: ...


class SandboxClient(Protocol):
    """Process management API of the sandbox."""

    async def list_processes(self) -> list[SandboxProcess]: ...

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> SandboxProcess: ...


def to_record(process: SandboxProcess) -> ProcessRecord:
    """Snapshot a process as a ProcessRecord."""
    return ProcessRecord(id=str(process.id), command=process.command, status=process.status)


async def port_is_open(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """Check whether something accepts TCP connections on host:port."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class LocalProcess:
    """
    A process on the local machine.

    Processes started through LocalSandbox carry their Popen handle and
    log files; processes found through `ps` only have a pid.
    """

    def __init__(
        self,
        pid: int,
        command: str,
        popen: subprocess.Popen | None = None,
        stdout_path: Path | None = None,
        stderr_path: Path | None = None,
    ):
        self.pid = pid
        self.id = str(pid)
        self.command = command
        self._popen = popen
        self._stdout_path = stdout_path
        self._stderr_path = stderr_path
        self._ready = False
        self._killed = False

    @property
    def exit_code(self) -> int | None:
        return self._popen.poll() if self._popen is not None else None

    @property
    def status(self) -> ProcessStatus:
        if self._killed:
            return "killed"
        if self._popen is None:
            return "running"
        code = self._popen.poll()
        if code is None:
            return "running" if self._ready else "starting"
        return "completed" if code == 0 else "exited"

    async def kill(self) -> None:
        """
        Terminate the process.

        Processes we started are killed as a whole group (SIGTERM, then
        SIGKILL). Their log files are removed once the process is
        reaped. Foreign processes only get SIGTERM; PermissionError
        propagates to the caller.
        """
        if self._popen is None:
            try:
                os.kill(self.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            self._killed = True
            return

        if self._popen.poll() is not None:
            self._killed = True
            self._discard_logs()
            return

        try:
            os.killpg(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            await asyncio.to_thread(self._popen.wait)
            self._killed = True
            self._discard_logs()
            return

        try:
            await asyncio.to_thread(self._popen.wait, KILL_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {self.id} ignored SIGTERM, sending SIGKILL")
            try:
                os.killpg(self.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            await asyncio.to_thread(self._popen.wait)
        self._killed = True
        self._discard_logs()

    async def wait_for_port(self, port: int, mode: str = "tcp", timeout_ms: int | None = None) -> None:
        """
        Block until the port accepts connections.

        Raises:
            ValueError: For modes other than "tcp"
            RuntimeError: If the process exits first
            asyncio.TimeoutError: If timeout_ms elapses
        """
        if mode != "tcp":
            raise ValueError(f"Unsupported wait mode: {mode}")

        async def _poll() -> None:
            while True:
                code = self.exit_code
                if code is not None:
                    raise RuntimeError(
                        f"Process {self.id} exited with code {code} before port {port} was ready"
                    )
                if await port_is_open(port):
                    self._ready = True
                    return
                await asyncio.sleep(PORT_POLL_INTERVAL)

        timeout = timeout_ms / 1000 if timeout_ms is not None else None
        await asyncio.wait_for(_poll(), timeout=timeout)

    async def get_logs(self) -> ProcessLogs:
        """Read everything the process has written so far."""
        return ProcessLogs(
            stdout=self._read_log(self._stdout_path),
            stderr=self._read_log(self._stderr_path),
        )

    def _discard_logs(self) -> None:
        """Remove the log files of a reaped process."""
        for path in (self._stdout_path, self._stderr_path):
            if path is None:
                continue
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not remove log file {path}: {e}")

    @staticmethod
    def _read_log(path: Path | None) -> str:
        if path is None or not path.exists():
            return ""
        return path.read_text(encoding="utf-8", errors="replace")


class LocalSandbox:
    """SandboxClient running processes on the local machine."""

    def __init__(self, log_dir: Path | None = None):
        self.log_dir = Path(log_dir or tempfile.gettempdir())
        self._started: dict[int, LocalProcess] = {}

    async def list_processes(self) -> list[LocalProcess]:
        """
        List processes visible to `ps`.

        Raises:
            RuntimeError: If ps fails
        """
        result = await asyncio.to_thread(
            subprocess.run,
            ["ps", "-eo", "pid=,args="],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"ps failed: {result.stderr.strip() or result.returncode}")

        own_pid = os.getpid()
        processes = []
        for line in result.stdout.splitlines():
            parts = line.strip().split(None, 1)
            if len(parts) != 2 or not parts[0].isdigit():
                continue
            pid = int(parts[0])
            if pid == own_pid:
                continue
            known = self._started.get(pid)
            processes.append(known or LocalProcess(pid, parts[1]))
        return processes

    async def start_process(self, command: str, env: dict[str, str] | None = None) -> LocalProcess:
        """
        Start a shell command in its own session.

        The process outlives the caller's event loop, so a launched
        gateway keeps running after the orchestrator exits.
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        stdout_fd, stdout_name = tempfile.mkstemp(dir=self.log_dir, prefix="proc-", suffix=".out")
        stderr_fd, stderr_name = tempfile.mkstemp(dir=self.log_dir, prefix="proc-", suffix=".err")

        proc_env = os.environ.copy()
        if env:
            proc_env.update(env)

        try:
            popen = subprocess.Popen(
                command,
                shell=True,
                stdin=subprocess.DEVNULL,
                stdout=stdout_fd,
                stderr=stderr_fd,
                env=proc_env,
                start_new_session=True,
            )
        finally:
            os.close(stdout_fd)
            os.close(stderr_fd)

        process = LocalProcess(
            popen.pid,
            command,
            popen=popen,
            stdout_path=Path(stdout_name),
            stderr_path=Path(stderr_name),
        )
        self._started[popen.pid] = process
        logger.debug(f"Started local process {popen.pid}: {command}")
        return process
