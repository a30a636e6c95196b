"""
Supervisor Unit Tests
=====================

Tests for the in-sandbox supervisor:
- Preparation (restore, config, stale locks)
- Gateway command line and environment
- Lifecycle transitions (stop vs crash)
"""

import asyncio
import json

import pytest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from gateway.exceptions import ConfigWriteError
from gateway.services.supervisor import EXEC_FAILED_EXIT_CODE, GatewaySupervisor, main


@pytest.fixture
def make_supervisor(sandbox_dirs):
    """Factory for supervisors rooted in sandbox_dirs."""
    def _make(env: dict | None = None, **kwargs) -> GatewaySupervisor:
        return GatewaySupervisor(
            env=env or {},
            config_dir=sandbox_dirs["config"],
            template_file=sandbox_dirs["template"],
            backup_dir=sandbox_dirs["backup"],
            skills_dir=sandbox_dirs["skills"],
            log_file=sandbox_dirs["log"],
            **kwargs,
        )
    return _make


# =============================================================================
# Preparation
# =============================================================================

class TestPrepare:
    """Tests for GatewaySupervisor.prepare."""

    @pytest.mark.unit
    def test_writes_config(self, make_supervisor, sandbox_dirs):
        supervisor = make_supervisor({"CLAWDBOT_GATEWAY_TOKEN": "tok"})

        config = supervisor.prepare()

        written = json.loads((sandbox_dirs["config"] / "clawdbot.json").read_text())
        assert written == config
        assert written["gateway"]["auth"]["token"] == "tok"

    @pytest.mark.unit
    def test_restores_before_synthesis(self, make_supervisor, sandbox_dirs, write_backup):
        """Test the restored config is the base for synthesis."""
        write_backup(config={"tools": {"restored": True}})
        supervisor = make_supervisor()

        config = supervisor.prepare()

        assert config["tools"] == {"restored": True}
        assert config["gateway"]["port"] == 18789

    @pytest.mark.unit
    def test_removes_stale_locks(self, make_supervisor, sandbox_dirs, tmp_path):
        stale = tmp_path / "clawdbot-gateway.lock"
        stale.write_text("123")
        local_lock = sandbox_dirs["config"] / "gateway.lock"
        local_lock.write_text("456")
        supervisor = make_supervisor()

        with patch("gateway.services.supervisor.STALE_LOCK_FILES", [stale]):
            supervisor.prepare()

        assert not stale.exists()
        assert not local_lock.exists()

    @pytest.mark.unit
    def test_config_write_failure_aborts(self, make_supervisor):
        supervisor = make_supervisor()
        with patch(
            "gateway.services.supervisor.synthesize_config",
            side_effect=ConfigWriteError("disk full"),
        ):
            with pytest.raises(ConfigWriteError):
                supervisor.prepare()


class TestBuildCommand:
    """Tests for the gateway command line."""

    @pytest.mark.unit
    def test_defaults(self, make_supervisor):
        cmd = make_supervisor().build_command()
        assert cmd == [
            "clawdbot", "gateway",
            "--port", "18789",
            "--verbose",
            "--allow-unconfigured",
            "--bind", "lan",
        ]

    @pytest.mark.unit
    def test_token_and_bind_mode(self, make_supervisor):
        cmd = make_supervisor({
            "CLAWDBOT_GATEWAY_TOKEN": "tok",
            "CLAWDBOT_BIND_MODE": "loopback",
        }).build_command()
        assert cmd[cmd.index("--bind") + 1] == "loopback"
        assert cmd[-2:] == ["--token", "tok"]

    @pytest.mark.unit
    def test_process_env_limits_node_heap(self, make_supervisor):
        env = make_supervisor({"A": "1"}).build_process_env()
        assert env["A"] == "1"
        assert env["NODE_OPTIONS"] == "--max-old-space-size=512"


# =============================================================================
# Lifecycle
# =============================================================================

class TestRunGateway:
    """Tests for running the gateway binary."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_output_teed_to_log(self, make_supervisor, sandbox_dirs):
        supervisor = make_supervisor()
        script = "print('gateway booting'); raise SystemExit(3)"

        with patch.object(supervisor, "build_command", return_value=[sys.executable, "-c", script]):
            exit_code = await supervisor.run_gateway()

        assert exit_code == 3
        assert "gateway booting" in sandbox_dirs["log"].read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_long_unterminated_line(self, make_supervisor, sandbox_dirs):
        """Test output far beyond the stream buffer limit is teed whole."""
        supervisor = make_supervisor()
        script = "import sys; sys.stdout.write('x' * 200000); sys.stdout.flush(); raise SystemExit(4)"

        with patch.object(supervisor, "build_command", return_value=[sys.executable, "-c", script]):
            exit_code = await supervisor.run_gateway()

        assert exit_code == 4
        assert "x" * 200000 in sandbox_dirs["log"].read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_failure_still_reports_exit_code(self, make_supervisor):
        """Test a broken output tee doesn't lose the gateway's exit code."""
        supervisor = make_supervisor()
        script = "print('y' * 1000); raise SystemExit(5)"

        with patch.object(supervisor, "build_command", return_value=[sys.executable, "-c", script]), \
             patch.object(supervisor, "_pump_output", side_effect=ValueError("chunk too long")):
            exit_code = await supervisor.run_gateway()

        assert exit_code == 5

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_binary(self, make_supervisor):
        supervisor = make_supervisor()
        with patch.object(supervisor, "build_command", return_value=["/nonexistent/clawdbot", "gateway"]):
            exit_code = await supervisor.run_gateway()
        assert exit_code == EXEC_FAILED_EXIT_CODE


class TestRun:
    """Tests for the supervisor state machine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_crash_enters_degraded(self, make_supervisor):
        supervisor = make_supervisor()

        with patch("gateway.services.supervisor.port_is_open", new_callable=AsyncMock, return_value=False), \
             patch.object(supervisor, "run_gateway", new_callable=AsyncMock, return_value=1), \
             patch.object(supervisor, "enter_degraded", new_callable=AsyncMock) as degraded:
            exit_code = await supervisor.run()

        assert exit_code == 1
        assert supervisor.exit_code == 1
        degraded.assert_awaited_once_with(1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_oversized_output_line_reaches_degraded(self, make_supervisor, sandbox_dirs):
        """Test a gateway printing a 100 KB line crashes into the degraded state normally."""
        supervisor = make_supervisor()
        script = "print('x' * 100000); raise SystemExit(3)"

        with patch("gateway.services.supervisor.port_is_open", new_callable=AsyncMock, return_value=False), \
             patch.object(supervisor, "build_command", return_value=[sys.executable, "-c", script]), \
             patch.object(supervisor, "enter_degraded", new_callable=AsyncMock) as degraded:
            exit_code = await supervisor.run()

        assert exit_code == 3
        degraded.assert_awaited_once_with(3)
        assert "x" * 100000 in sandbox_dirs["log"].read_text()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_requested_stop_skips_degraded(self, make_supervisor):
        supervisor = make_supervisor()

        async def stopped_gateway():
            supervisor.request_stop()
            return 143

        with patch("gateway.services.supervisor.port_is_open", new_callable=AsyncMock, return_value=False), \
             patch.object(supervisor, "run_gateway", side_effect=stopped_gateway), \
             patch.object(supervisor, "enter_degraded", new_callable=AsyncMock) as degraded:
            exit_code = await supervisor.run()

        assert exit_code == 143
        degraded.assert_not_awaited()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_busy_port_only_warns(self, make_supervisor):
        supervisor = make_supervisor()

        with patch("gateway.services.supervisor.port_is_open", new_callable=AsyncMock, return_value=True), \
             patch.object(supervisor, "run_gateway", new_callable=AsyncMock, return_value=0), \
             patch.object(supervisor, "enter_degraded", new_callable=AsyncMock):
            assert await supervisor.run() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_degraded_until_stop(self, make_supervisor, sandbox_dirs):
        """Test the crash listener runs until request_stop()."""
        sandbox_dirs["log"].write_text("fatal: out of memory\n")
        supervisor = make_supervisor(port=0)

        task = asyncio.create_task(supervisor.enter_degraded(137))
        await asyncio.sleep(0.2)
        assert not task.done()

        supervisor.request_stop()
        await asyncio.wait_for(task, timeout=10)


class TestMain:
    """Tests for the start-moltbot entry point."""

    @pytest.mark.unit
    def test_startup_error_returns_1(self):
        with patch("gateway.services.supervisor.setup_logging"), \
             patch.object(GatewaySupervisor, "run_with_signals", side_effect=ConfigWriteError("ro fs")):
            assert main([]) == 1
