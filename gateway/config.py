"""
Gateway Settings
================

Ports, timeouts, commands and filesystem locations used by the gateway
lifecycle. Paths can be overridden through MOLTBOT_* environment variables
so tests and local runs don't touch /root.
"""

import logging
import os
import sys
from pathlib import Path

# Port shared by the gateway and the crash fallback listener
GATEWAY_PORT = 18789

# Readiness wait for a cold start (the gateway installs plugins on first boot)
STARTUP_TIMEOUT_MS = 180_000

# Extra slack on top of the platform's own port-wait timeout
READINESS_OVERHEAD_SECONDS = 5.0

# Time given to the sandbox to release the port after killing old instances
KILL_GRACE_SECONDS = 2.0

# Canonical launch command (console script of gateway.services.supervisor)
LAUNCH_COMMAND = "start-moltbot"

# Gateway CLI binary started by the supervisor
GATEWAY_BINARY = "clawdbot"

# Default bind mode when CLAWDBOT_BIND_MODE is not provided
DEFAULT_BIND_MODE = "lan"

# Keep Node below the sandbox memory limit (exit code 137 otherwise)
NODE_OPTIONS = "--max-old-space-size=512"

# Internal sandbox network range trusted as a reverse proxy
TRUSTED_PROXIES = ["10.1.0.0"]

# Agent workspace written into a fresh config skeleton
AGENT_WORKSPACE = "/root/clawd"

CONFIG_FILE_NAME = "clawdbot.json"
SYNC_MARKER_NAME = ".last-sync"

# Lock files left behind by a gateway that didn't shut down cleanly
STALE_LOCK_FILES = [Path("/tmp/clawdbot-gateway.lock")]


def get_config_dir() -> Path:
    """Get the live gateway config directory."""
    return Path(os.getenv("MOLTBOT_CONFIG_DIR", "/root/.clawdbot"))


def get_config_file() -> Path:
    """Get the gateway config file path."""
    return get_config_dir() / CONFIG_FILE_NAME


def get_template_file() -> Path:
    """Get the config template used when no config exists yet."""
    return Path(os.getenv(
        "MOLTBOT_TEMPLATE_FILE",
        "/root/.clawdbot-templates/moltbot.json.template",
    ))


def get_backup_dir() -> Path:
    """Get the mount point of the remote backup."""
    return Path(os.getenv("MOLTBOT_BACKUP_DIR", "/data/moltbot"))


def get_skills_dir() -> Path:
    """Get the skills directory restored independently of the config."""
    return Path(os.getenv("MOLTBOT_SKILLS_DIR", "/root/clawd/skills"))


def get_log_file() -> Path:
    """Get the supervisor log file (tailed by the crash listener)."""
    return Path(os.getenv("MOLTBOT_LOG_FILE", "/tmp/moltbot.log"))


def get_startup_timeout_ms() -> int:
    """Get the readiness timeout, honoring MOLTBOT_STARTUP_TIMEOUT_MS."""
    raw = os.getenv("MOLTBOT_STARTUP_TIMEOUT_MS", "").strip()
    if raw.isdigit():
        return int(raw)
    return STARTUP_TIMEOUT_MS


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Configure root logging for the CLI entry points."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
