"""
Moltbot Sandbox Gateway
=======================

Keeps a single gateway process alive inside a sandbox: restores config
from backup, reconciles provider settings from secrets, replaces stale
instances and falls back to a diagnostic listener on crash.
"""

__version__ = "0.1.0"
