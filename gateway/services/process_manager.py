"""
Gateway Process Manager
=======================

Finds gateway instances left over from earlier starts and removes them
before a new launch, so only one gateway ever holds the port.
"""

import asyncio
import logging

from ..config import GATEWAY_BINARY, KILL_GRACE_SECONDS, LAUNCH_COMMAND
from .sandbox import SandboxClient, SandboxProcess

logger = logging.getLogger(__name__)

# Command fragments identifying a long-running gateway instance.
# The supervisor also hosts the crash fallback listener, so matching it
# covers degraded instances as well.
GATEWAY_SIGNATURES = (
    LAUNCH_COMMAND,
    "start-moltbot.sh",
    "gateway.services.supervisor",
    f"{GATEWAY_BINARY} gateway",
)

# Short-lived CLI invocations sharing the binary name
CLI_EXCLUSIONS = (
    f"{GATEWAY_BINARY} devices",
    f"{GATEWAY_BINARY} --version",
    f"{GATEWAY_BINARY} -v",
    f"{GATEWAY_BINARY} --help",
    f"{GATEWAY_BINARY} help",
)


def is_gateway_command(command: str) -> bool:
    """Check if a command line belongs to a gateway instance."""
    if any(excluded in command for excluded in CLI_EXCLUSIONS):
        return False
    return any(signature in command for signature in GATEWAY_SIGNATURES)


async def find_gateway_processes(
    sandbox: SandboxClient,
    log: logging.Logger = logger,
) -> list[SandboxProcess]:
    """
    List every gateway process in the sandbox, whatever its status.

    A failing process listing is logged and treated as empty.
    """
    try:
        processes = await sandbox.list_processes()
    except Exception as e:
        log.warning(f"Could not list processes: {e}")
        return []
    return [p for p in processes if is_gateway_command(p.command)]


async def find_existing_gateway_process(
    sandbox: SandboxClient,
    log: logging.Logger = logger,
) -> SandboxProcess | None:
    """Return the first gateway process that is running or starting."""
    for process in await find_gateway_processes(sandbox, log):
        if process.status in ("running", "starting"):
            return process
    return None


async def kill_processes(
    processes: list[SandboxProcess],
    log: logging.Logger = logger,
) -> int:
    """
    Kill each process, logging (not raising) individual failures.

    Returns:
        Number of processes killed successfully
    """
    killed = 0
    for process in processes:
        log.info(f"Killing process {process.id} (status: {process.status})...")
        try:
            await process.kill()
            killed += 1
        except Exception as e:
            log.warning(f"Failed to kill process {process.id}: {e}")
    return killed


async def reconcile_gateway_processes(
    sandbox: SandboxClient,
    grace_seconds: float = KILL_GRACE_SECONDS,
    log: logging.Logger = logger,
) -> int:
    """
    Eliminate all existing gateway processes before a launch.

    Every match is killed, including half-started ones that may already
    hold the port. When anything was found, waits grace_seconds for the
    sandbox to release the port. This is a fixed delay, not a wait for
    exit: a process that survives shows up as a launch failure later.

    Returns:
        Number of matching processes found
    """
    existing = await find_gateway_processes(sandbox, log)
    if not existing:
        return 0

    log.info(f"Found {len(existing)} existing gateway processes. Cleaning up...")
    killed = await kill_processes(existing, log)
    if killed < len(existing):
        log.warning(f"Only {killed}/{len(existing)} processes killed, continuing anyway")

    await asyncio.sleep(grace_seconds)
    return len(existing)
