"""
Pytest Configuration and Fixtures
=================================

Shared fixtures for the gateway test suite: isolated sandbox directories,
a fake sandbox process platform and sample secrets.
"""

import asyncio
import json
import os
import shutil
import tempfile
from pathlib import Path

import pytest

# Add project root to path for imports
import sys
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from gateway.schemas import ProcessLogs, SandboxSecrets


# =============================================================================
# Environment Setup
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Point every MOLTBOT_* path at a throwaway directory."""
    original_env = os.environ.copy()

    test_data_dir = tempfile.mkdtemp(prefix="moltbot_test_")
    os.environ["MOLTBOT_CONFIG_DIR"] = str(Path(test_data_dir) / "config")
    os.environ["MOLTBOT_TEMPLATE_FILE"] = str(Path(test_data_dir) / "templates" / "moltbot.json.template")
    os.environ["MOLTBOT_BACKUP_DIR"] = str(Path(test_data_dir) / "backup")
    os.environ["MOLTBOT_SKILLS_DIR"] = str(Path(test_data_dir) / "skills")
    os.environ["MOLTBOT_LOG_FILE"] = str(Path(test_data_dir) / "moltbot.log")

    yield test_data_dir

    # Cleanup
    os.environ.clear()
    os.environ.update(original_env)
    if Path(test_data_dir).exists():
        shutil.rmtree(test_data_dir, ignore_errors=True)


# =============================================================================
# Filesystem Fixtures
# =============================================================================

@pytest.fixture
def sandbox_dirs(tmp_path: Path) -> dict[str, Path]:
    """Config, backup, skills and template locations under tmp_path."""
    dirs = {
        "config": tmp_path / "config",
        "backup": tmp_path / "backup",
        "skills": tmp_path / "skills",
        "template": tmp_path / "templates" / "moltbot.json.template",
        "log": tmp_path / "moltbot.log",
    }
    dirs["config"].mkdir()
    return dirs


@pytest.fixture
def write_backup(sandbox_dirs):
    """Factory fixture populating the backup mount."""
    def _write(
        last_sync: str | None = "2024-01-02T00:00:00Z",
        config: dict | None = None,
        legacy: bool = False,
        skills: dict[str, str] | None = None,
    ) -> Path:
        backup = sandbox_dirs["backup"]
        backup.mkdir(parents=True, exist_ok=True)
        if last_sync is not None:
            (backup / ".last-sync").write_text(last_sync)
        if config is not None:
            target = backup if legacy else backup / "clawdbot"
            target.mkdir(parents=True, exist_ok=True)
            (target / "clawdbot.json").write_text(json.dumps(config))
        if skills:
            skills_dir = backup / "skills"
            skills_dir.mkdir(parents=True, exist_ok=True)
            for name, content in skills.items():
                (skills_dir / name).write_text(content)
        return backup
    return _write


# =============================================================================
# Fake Sandbox Platform
# =============================================================================

class FakeProcess:
    """In-memory SandboxProcess with scriptable behaviour."""

    def __init__(
        self,
        id: str,
        command: str,
        status: str = "running",
        logs: ProcessLogs | None = None,
        kill_error: Exception | None = None,
        wait_error: Exception | None = None,
        logs_error: Exception | None = None,
        never_ready: bool = False,
        times_out: bool = False,
    ):
        self.id = id
        self.command = command
        self.status = status
        self.logs = logs or ProcessLogs()
        self.kill_error = kill_error
        self.wait_error = wait_error
        self.logs_error = logs_error
        self.never_ready = never_ready
        self.times_out = times_out
        self.kill_calls = 0
        self.wait_calls: list[tuple] = []
        self.bound_port: int | None = None

    async def kill(self) -> None:
        self.kill_calls += 1
        if self.kill_error:
            raise self.kill_error
        self.status = "killed"

    async def wait_for_port(self, port: int, mode: str = "tcp", timeout_ms: int | None = None) -> None:
        self.wait_calls.append((port, mode, timeout_ms))
        if self.never_ready:
            await asyncio.sleep(3600)
        if self.times_out:
            await asyncio.sleep(timeout_ms / 1000)
            raise asyncio.TimeoutError()
        if self.wait_error:
            raise self.wait_error
        self.status = "running"
        self.bound_port = port

    async def get_logs(self) -> ProcessLogs:
        if self.logs_error:
            raise self.logs_error
        return self.logs


class FakeSandbox:
    """In-memory SandboxClient recording every call."""

    def __init__(
        self,
        processes: list[FakeProcess] | None = None,
        list_error: Exception | None = None,
        start_error: Exception | None = None,
        next_process: FakeProcess | None = None,
    ):
        self.processes = list(processes or [])
        self.list_error = list_error
        self.start_error = start_error
        self.next_process = next_process
        self.start_calls: list[tuple[str, dict | None]] = []
        self.events: list[str] = []

    async def list_processes(self) -> list[FakeProcess]:
        self.events.append("list")
        if self.list_error:
            raise self.list_error
        return list(self.processes)

    async def start_process(self, command: str, env: dict | None = None) -> FakeProcess:
        self.events.append("start")
        self.start_calls.append((command, env))
        if self.start_error:
            raise self.start_error
        process = self.next_process or FakeProcess(
            id=f"proc-{len(self.processes) + 1}",
            command=command,
            status="starting",
        )
        self.processes.append(process)
        return process

    def running(self) -> list[FakeProcess]:
        return [p for p in self.processes if p.status == "running"]


@pytest.fixture
def fake_process():
    """FakeProcess class, for building scripted processes."""
    return FakeProcess


@pytest.fixture
def fake_sandbox():
    """FakeSandbox class, for building scripted sandboxes."""
    return FakeSandbox


# =============================================================================
# Secrets Fixtures
# =============================================================================

@pytest.fixture
def anthropic_secrets() -> SandboxSecrets:
    """Secrets for a direct Anthropic setup with a gateway token."""
    return SandboxSecrets.from_environ({
        "ANTHROPIC_API_KEY": "sk-ant-test",
        "MOLTBOT_GATEWAY_TOKEN": "gw-token",
    })


@pytest.fixture
def gemini_gateway_env() -> dict[str, str]:
    """Gateway environment routing Gemini through the OpenAI-compatible path."""
    return {
        "AI_GATEWAY_BASE_URL": "https://gateway.ai.cloudflare.com/v1/acct/gw/openai",
        "OPENAI_BASE_URL": "https://gateway.ai.cloudflare.com/v1/acct/gw/openai",
        "OPENAI_API_KEY": "gateway-key",
        "CF_AI_GATEWAY_MODEL": "google/gemini-3-flash",
    }
