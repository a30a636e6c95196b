"""
Gateway Launcher
================

Starts the gateway process and waits until its port accepts TCP
connections. A failed start is reported with the process's stderr.
"""

import asyncio
import logging

from ..config import GATEWAY_PORT, READINESS_OVERHEAD_SECONDS, STARTUP_TIMEOUT_MS
from ..exceptions import GatewaySpawnError, GatewayStartupError
from ..schemas import ProcessLogs
from .sandbox import SandboxClient, SandboxProcess

logger = logging.getLogger(__name__)


async def capture_logs(process: SandboxProcess) -> ProcessLogs:
    """Fetch stdout/stderr of a process (errors propagate)."""
    return await process.get_logs()


async def wait_until_ready(
    process: SandboxProcess,
    port: int = GATEWAY_PORT,
    timeout_ms: int = STARTUP_TIMEOUT_MS,
    overhead_seconds: float = READINESS_OVERHEAD_SECONDS,
    log: logging.Logger = logger,
) -> None:
    """
    Block until the process listens on port, or fail after the timeout.

    The platform's own wait is given timeout_ms; the deadline enforced here
    is timeout_ms plus a small overhead so a platform that ignores its
    timeout still can't hang startup.

    Raises:
        GatewayStartupError: Wait failed, with captured stderr embedded
        Exception: The original wait error if logs can't be captured
    """
    log.info(f"[Gateway] Waiting for gateway to be ready on port {port}")
    try:
        await asyncio.wait_for(
            process.wait_for_port(port, mode="tcp", timeout_ms=timeout_ms),
            timeout=timeout_ms / 1000 + overhead_seconds,
        )
    except Exception as wait_error:
        log.error(f"[Gateway] wait_for_port failed: {wait_error!r}")
        try:
            logs = await capture_logs(process)
        except Exception as log_error:
            log.error(f"[Gateway] Failed to get logs: {log_error}")
            raise wait_error
        log.error(f"[Gateway] startup failed. Stderr: {logs.stderr}")
        log.error(f"[Gateway] startup failed. Stdout: {logs.stdout}")
        raise GatewayStartupError(
            f"Gateway failed to start. Stderr: {logs.stderr or '(empty)'}",
            stdout=logs.stdout,
            stderr=logs.stderr,
        ) from wait_error

    log.info("[Gateway] Gateway is ready!")
    try:
        logs = await capture_logs(process)
    except Exception as e:
        log.warning(f"[Gateway] Could not fetch logs after startup: {e}")
        return
    if logs.stdout:
        log.info(f"[Gateway] stdout: {logs.stdout}")
    if logs.stderr:
        log.info(f"[Gateway] stderr: {logs.stderr}")


async def launch_gateway(
    sandbox: SandboxClient,
    command: str,
    env: dict[str, str],
    port: int = GATEWAY_PORT,
    timeout_ms: int = STARTUP_TIMEOUT_MS,
    log: logging.Logger = logger,
) -> SandboxProcess:
    """
    Start the gateway and wait for readiness.

    Args:
        sandbox: Sandbox process API
        command: Launch command
        env: Environment for the process (only passed when non-empty)

    Returns:
        The running process

    Raises:
        GatewaySpawnError: The sandbox refused to start the process
        GatewayStartupError: The process never opened the port
    """
    log.info(f"Starting process with command: {command}")
    log.info(f"Environment vars being passed: {sorted(env)}")
    try:
        process = await sandbox.start_process(command, env=env or None)
    except Exception as e:
        log.error(f"Failed to start process: {e}")
        raise GatewaySpawnError(f"Failed to start {command}: {e}") from e

    log.info(f"Process started with id: {process.id}, status: {process.status}")
    await wait_until_ready(process, port, timeout_ms, READINESS_OVERHEAD_SECONDS, log=log)
    return process
