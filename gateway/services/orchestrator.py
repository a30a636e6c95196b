"""
Gateway Orchestrator
====================

Ensures exactly one gateway runs in the sandbox:

1. Kill every existing gateway process (running, starting or degraded)
2. Map the sandbox secrets onto the gateway environment
3. Launch the supervisor and wait for the gateway port
"""

import argparse
import asyncio
import logging
import sys

from ..config import GATEWAY_PORT, KILL_GRACE_SECONDS, LAUNCH_COMMAND, get_startup_timeout_ms, setup_logging
from ..exceptions import GatewayError
from ..schemas import SandboxSecrets
from .env_builder import build_env_vars
from .launcher import launch_gateway
from .process_manager import reconcile_gateway_processes
from .sandbox import LocalSandbox, SandboxClient, SandboxProcess

logger = logging.getLogger(__name__)


async def ensure_gateway(
    sandbox: SandboxClient,
    secrets: SandboxSecrets,
    command: str = LAUNCH_COMMAND,
    port: int = GATEWAY_PORT,
    timeout_ms: int | None = None,
    grace_seconds: float = KILL_GRACE_SECONDS,
    log: logging.Logger = logger,
) -> SandboxProcess:
    """
    Replace any existing gateway with a fresh one and wait until it's ready.

    Args:
        sandbox: Sandbox process API
        secrets: Settings supplied to the sandbox
        command: Launch command for the supervisor
        timeout_ms: Readiness timeout (defaults to the configured one)
        grace_seconds: Delay after killing old instances

    Returns:
        The running gateway process

    Raises:
        GatewaySpawnError: The process could not be started
        GatewayStartupError: The gateway never became ready
    """
    await reconcile_gateway_processes(sandbox, grace_seconds, log)

    log.info("Starting new gateway...")
    env_vars = build_env_vars(secrets)
    return await launch_gateway(
        sandbox,
        command,
        env_vars,
        port=port,
        timeout_ms=timeout_ms if timeout_ms is not None else get_startup_timeout_ms(),
        log=log,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point for moltbot-gateway (local sandbox)."""
    parser = argparse.ArgumentParser(
        prog="moltbot-gateway",
        description="Replace any running gateway with a fresh instance.",
    )
    parser.add_argument("--command", default=LAUNCH_COMMAND, help="Launch command")
    parser.add_argument("--port", type=int, default=GATEWAY_PORT, help="Gateway port")
    parser.add_argument("--timeout-ms", type=int, default=None, help="Readiness timeout")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    secrets = SandboxSecrets.from_environ()
    try:
        process = asyncio.run(ensure_gateway(
            LocalSandbox(),
            secrets,
            command=args.command,
            port=args.port,
            timeout_ms=args.timeout_ms,
        ))
    except GatewayError as e:
        logger.error(f"Gateway start failed: {e}")
        return 1

    logger.info(f"Gateway running (process {process.id})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
