"""
Gateway Services
================

Lifecycle services: discovery, environment, restore, config, launch and
crash fallback.
"""

from .env_builder import build_env_vars
from .orchestrator import ensure_gateway
from .providers import classify_provider, select_provider
from .sandbox import LocalSandbox, SandboxClient, SandboxProcess
from .supervisor import GatewaySupervisor

__all__ = [
    "build_env_vars",
    "ensure_gateway",
    "classify_provider",
    "select_provider",
    "LocalSandbox",
    "SandboxClient",
    "SandboxProcess",
    "GatewaySupervisor",
]
