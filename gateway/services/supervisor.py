"""
Gateway Supervisor
==================

The launch command run inside the sandbox (`start-moltbot`). It:

1. Restores config and skills from the backup mount if newer
2. Rebuilds the gateway config from the environment
3. Starts `clawdbot gateway`, teeing its output to the log file
4. On exit, serves a crash report on the gateway port until stopped
"""

import argparse
import asyncio
import codecs
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Mapping

from ..config import (
    CONFIG_FILE_NAME,
    DEFAULT_BIND_MODE,
    GATEWAY_BINARY,
    GATEWAY_PORT,
    NODE_OPTIONS,
    STALE_LOCK_FILES,
    get_backup_dir,
    get_config_dir,
    get_log_file,
    get_skills_dir,
    get_template_file,
    setup_logging,
)
from ..exceptions import GatewayError
from .backup_restore import restore_from_backup
from .config_synthesizer import synthesize_config
from .crash_fallback import CrashFallbackListener
from .sandbox import port_is_open

logger = logging.getLogger(__name__)

# Exit code reported when the gateway binary can't be executed
EXEC_FAILED_EXIT_CODE = 127

# Read size for teeing gateway output
OUTPUT_CHUNK_SIZE = 65536


class GatewaySupervisor:
    """
    Runs one gateway instance and keeps the port answering after a crash.

    States: preparing -> running -> degraded (crash listener) -> stopped.
    request_stop() ends whichever state is active.
    """

    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        port: int = GATEWAY_PORT,
        config_dir: Path | None = None,
        config_file: Path | None = None,
        template_file: Path | None = None,
        backup_dir: Path | None = None,
        skills_dir: Path | None = None,
        log_file: Path | None = None,
        log: logging.Logger = logger,
    ):
        self.env = dict(os.environ if env is None else env)
        self.port = port
        self.config_dir = config_dir or get_config_dir()
        self.config_file = config_file or (self.config_dir / CONFIG_FILE_NAME)
        self.template_file = template_file or get_template_file()
        self.backup_dir = backup_dir or get_backup_dir()
        self.skills_dir = skills_dir or get_skills_dir()
        self.log_file = log_file or get_log_file()
        self.log = log

        self.stop_event = asyncio.Event()
        self.exit_code: int | None = None
        self._gateway_proc: asyncio.subprocess.Process | None = None
        self._fallback: CrashFallbackListener | None = None

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def prepare(self) -> dict:
        """
        Restore from backup, then rebuild the config.

        Raises:
            ConfigWriteError: If the config can't be written
        """
        self.log.info(f"Config directory: {self.config_dir}")
        self.log.info(f"Backup directory: {self.backup_dir}")
        self.config_dir.mkdir(parents=True, exist_ok=True)

        restore_from_backup(self.backup_dir, self.config_dir, self.skills_dir, self.log)
        config = synthesize_config(self.config_file, self.env, self.template_file, log=self.log)
        self.remove_stale_locks()
        return config

    def remove_stale_locks(self) -> None:
        """Delete lock files a crashed gateway may have left behind."""
        for lock_file in [*STALE_LOCK_FILES, self.config_dir / "gateway.lock"]:
            try:
                lock_file.unlink(missing_ok=True)
            except OSError as e:
                self.log.warning(f"Could not remove stale lock {lock_file}: {e}")

    def build_command(self) -> list[str]:
        """Command line for the gateway CLI."""
        bind_mode = self.env.get("CLAWDBOT_BIND_MODE") or DEFAULT_BIND_MODE
        cmd = [
            GATEWAY_BINARY, "gateway",
            "--port", str(self.port),
            "--verbose",
            "--allow-unconfigured",
            "--bind", bind_mode,
        ]
        token = self.env.get("CLAWDBOT_GATEWAY_TOKEN")
        if token:
            cmd.extend(["--token", token])
        return cmd

    def build_process_env(self) -> dict[str, str]:
        """Environment for the gateway process."""
        env = dict(self.env)
        env["NODE_OPTIONS"] = NODE_OPTIONS
        return env

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def _pump_output(self, stream: asyncio.StreamReader) -> None:
        """
        Copy gateway output to stdout and the log file.

        Reads fixed-size chunks, so arbitrarily long lines are passed
        through unchanged.
        """
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a", encoding="utf-8") as f:
            while True:
                chunk = await stream.read(OUTPUT_CHUNK_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    f.write(text)
                    f.flush()
                    sys.stdout.write(text)
                    sys.stdout.flush()
                if not chunk:
                    return

    async def _drain_output(self, stream: asyncio.StreamReader) -> None:
        """Discard remaining output so the gateway never blocks on a full pipe."""
        try:
            while await stream.read(OUTPUT_CHUNK_SIZE):
                pass
        except Exception as e:
            self.log.warning(f"Could not drain gateway output: {e}")

    async def run_gateway(self) -> int:
        """Run the gateway CLI to completion and return its exit code."""
        cmd = self.build_command()
        if self.env.get("CLAWDBOT_GATEWAY_TOKEN"):
            self.log.info("Starting gateway with token auth...")
        else:
            self.log.info("Starting gateway with device pairing (no token)...")
        bind_mode = self.env.get("CLAWDBOT_BIND_MODE") or DEFAULT_BIND_MODE
        self.log.info(f"Dev mode: {self.env.get('CLAWDBOT_DEV_MODE', 'false')}, Bind mode: {bind_mode}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                env=self.build_process_env(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self.log.error(f"Could not execute {GATEWAY_BINARY}: {e}")
            return EXEC_FAILED_EXIT_CODE

        self._gateway_proc = proc
        try:
            await self._pump_output(proc.stdout)
        except Exception as e:
            self.log.error(f"Gateway output capture failed, discarding further output: {e}")
            await self._drain_output(proc.stdout)
        return await proc.wait()

    async def enter_degraded(self, exit_code: int) -> None:
        """Serve the crash report until a stop is requested."""
        self.log.error("=" * 47)
        self.log.error(f"CRASH DETECTED: {GATEWAY_BINARY} exited with code {exit_code}")
        self.log.error(f"Starting fallback listener on {self.port} to keep the sandbox inspectable...")
        self.log.error("=" * 47)
        self._fallback = CrashFallbackListener(exit_code, self.log_file, self.port, log=self.log)
        await self._fallback.serve(self.stop_event)

    def request_stop(self) -> None:
        """Stop the gateway or the crash listener, whichever is running."""
        self.log.info("Stop requested")
        self.stop_event.set()
        if self._gateway_proc is not None and self._gateway_proc.returncode is None:
            self._gateway_proc.terminate()
        if self._fallback is not None:
            self._fallback.stop()

    async def run(self) -> int:
        """
        Full supervisor lifecycle.

        Returns:
            Exit code of the gateway

        Raises:
            ConfigWriteError: Startup aborted before launching the gateway
        """
        self.prepare()

        if await port_is_open(self.port):
            self.log.warning(f"Port {self.port} is still in use, the gateway may fail to bind")

        self.log.info(f"Gateway will be available on port {self.port}")
        self.exit_code = await self.run_gateway()

        if self.stop_event.is_set():
            self.log.info(f"Gateway stopped (exit code {self.exit_code})")
            return self.exit_code

        await self.enter_degraded(self.exit_code)
        return self.exit_code

    async def run_with_signals(self) -> int:
        """Run with SIGTERM/SIGINT wired to request_stop()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)
        try:
            return await self.run()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)


def main(argv: list[str] | None = None) -> int:
    """Entry point for start-moltbot."""
    parser = argparse.ArgumentParser(
        prog="start-moltbot",
        description="Restore, configure and run the gateway inside the sandbox.",
    )
    parser.add_argument("--port", type=int, default=GATEWAY_PORT, help="Gateway port")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    setup_logging(args.verbose, get_log_file())
    supervisor = GatewaySupervisor(port=args.port)
    try:
        return asyncio.run(supervisor.run_with_signals())
    except GatewayError as e:
        logger.error(f"Gateway startup aborted: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
