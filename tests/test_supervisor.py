"""Unit tests for DnsmasqSupervisor.

The daemon is stood in for by short-lived Python children whose command line
carries a unique marker, so the process-table scan only ever matches them.
"""

import subprocess
import sys
import time
import uuid
from pathlib import Path
from typing import List, Optional
from unittest.mock import MagicMock, patch

import psutil
import pytest

from autohosts.cli import (
    DnsmasqSupervisor,
    ErrorKind,
    ProcessStatus,
    Settings,
    SettingsStore,
)

SLEEPER = "import sys, time; print('daemon args:', sys.argv[1:], flush=True); time.sleep(60)"
CRASHER = "import sys; sys.exit(3)"
STUBBORN = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="relies on POSIX signals")

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def make_supervisor(tmp_path: Path):
    """Factory for supervisors whose daemon is `python -c <script> <marker>`."""
    supervisors: List[DnsmasqSupervisor] = []

    def _make(script: str = SLEEPER, marker: Optional[str] = None) -> DnsmasqSupervisor:
        marker = marker or f"autohosts-test-daemon-{uuid.uuid4().hex}"
        settings_store = SettingsStore(
            str(tmp_path / "settings.yaml"),
            defaults=Settings(hosts_file_path=str(tmp_path / "extra_hosts.conf")),
        )
        supervisor = DnsmasqSupervisor(
            settings_store=settings_store,
            binary=sys.executable,
            extra_args=["-c", script, marker],
            log_path=str(tmp_path / "dnsmasq.log"),
            process_name=marker,
            settle_seconds=0.3,
        )
        supervisors.append(supervisor)
        return supervisor

    yield _make

    for supervisor in supervisors:
        pid = supervisor.find_daemon_pid()
        if pid is not None:
            try:
                psutil.Process(pid).kill()
            except psutil.NoSuchProcess:
                pass
        if supervisor._process is not None:
            supervisor._process.kill()
            supervisor._process.wait(timeout=5)


def spawn_marked_process(marker: str) -> subprocess.Popen:
    return subprocess.Popen([sys.executable, "-c", SLEEPER, marker], stdout=subprocess.DEVNULL)


# =============================================================================
# Status
# =============================================================================


class TestStatus:
    """Tests for deriving status from the process table."""

    def test_status_stopped_when_nothing_runs(self, make_supervisor) -> None:
        status = make_supervisor().get_status()

        assert status == ProcessStatus(is_running=False)

    def test_status_finds_process_not_spawned_by_supervisor(self, make_supervisor) -> None:
        marker = f"autohosts-test-daemon-{uuid.uuid4().hex}"
        proc = spawn_marked_process(marker)
        try:
            supervisor = make_supervisor(marker=marker)

            status = supervisor.get_status()

            assert status.is_running is True
            assert status.pid == proc.pid
            assert status.start_time is not None
            assert status.command == marker
        finally:
            proc.kill()
            proc.wait(timeout=5)

    def test_status_discards_stale_handle(self, make_supervisor) -> None:
        """A spawned child that died behind our back is reported as stopped."""
        supervisor = make_supervisor()
        started = supervisor.start()
        assert started.success is True

        psutil.Process(started.pid).kill()
        supervisor._process.wait(timeout=5)

        assert supervisor.get_status().is_running is False
        assert supervisor._process is None

    def test_status_collapses_introspection_failure_to_stopped(self, make_supervisor) -> None:
        supervisor = make_supervisor()

        with patch("autohosts.cli.psutil.process_iter", side_effect=psutil.AccessDenied()):
            status = supervisor.get_status()

        assert status.is_running is False

    def test_status_reports_port_when_bound(self, make_supervisor) -> None:
        marker = f"autohosts-test-daemon-{uuid.uuid4().hex}"
        proc = spawn_marked_process(marker)
        connection = MagicMock()
        connection.laddr.port = 53
        try:
            supervisor = make_supervisor(marker=marker)

            with patch("autohosts.cli.psutil.net_connections", return_value=[connection]):
                status = supervisor.get_status()

            assert status.port == 53
        finally:
            proc.kill()
            proc.wait(timeout=5)

    def test_status_omits_port_when_socket_tables_unreadable(self, make_supervisor) -> None:
        marker = f"autohosts-test-daemon-{uuid.uuid4().hex}"
        proc = spawn_marked_process(marker)
        try:
            supervisor = make_supervisor(marker=marker)

            with patch(
                "autohosts.cli.psutil.net_connections", side_effect=psutil.AccessDenied()
            ):
                status = supervisor.get_status()

            assert status.is_running is True
            assert status.port is None
        finally:
            proc.kill()
            proc.wait(timeout=5)


# =============================================================================
# Start
# =============================================================================


class TestStart:
    """Tests for launching the daemon."""

    def test_start_then_status_running(self, make_supervisor) -> None:
        supervisor = make_supervisor()

        result = supervisor.start()

        assert result.success is True
        assert result.pid is not None
        assert psutil.pid_exists(result.pid)
        status = supervisor.get_status()
        assert status.is_running is True
        assert status.pid == result.pid

    def test_start_passes_hosts_file_and_logs_output(self, make_supervisor, tmp_path: Path) -> None:
        supervisor = make_supervisor()

        supervisor.start()

        logs = supervisor.get_logs()
        assert "daemon args:" in logs
        assert f"--addn-hosts={tmp_path / 'extra_hosts.conf'}" in logs

    def test_start_uses_current_hosts_path_setting(self, make_supervisor, tmp_path: Path) -> None:
        supervisor = make_supervisor()
        new_path = tmp_path / "moved" / "hosts.conf"
        supervisor.settings_store.set_hosts_file_path(str(new_path))

        supervisor.start()

        assert f"--addn-hosts={new_path}" in supervisor.get_logs()

    def test_start_when_running_is_rejected(self, make_supervisor) -> None:
        supervisor = make_supervisor()
        first = supervisor.start()

        second = supervisor.start()

        assert second.success is False
        assert second.kind is ErrorKind.ALREADY_RUNNING
        assert second.pid == first.pid

    def test_start_failure_when_process_exits_immediately(self, make_supervisor) -> None:
        supervisor = make_supervisor(script=CRASHER)

        result = supervisor.start()

        assert result.success is False
        assert result.kind is ErrorKind.NOT_FOUND
        assert supervisor._process is None
        assert supervisor.get_status().is_running is False

    def test_start_missing_binary(self, tmp_path: Path) -> None:
        supervisor = DnsmasqSupervisor(
            settings_store=SettingsStore(str(tmp_path / "settings.yaml")),
            binary=str(tmp_path / "no-such-dnsmasq"),
            log_path=str(tmp_path / "dnsmasq.log"),
            settle_seconds=0.0,
        )

        result = supervisor.start()

        assert result.success is False
        assert result.kind is ErrorKind.NOT_FOUND

    def test_concurrent_control_is_rejected(self, make_supervisor) -> None:
        supervisor = make_supervisor()

        supervisor._control_lock.acquire()
        try:
            result = supervisor.start()
        finally:
            supervisor._control_lock.release()

        assert result.kind is ErrorKind.BUSY
        assert supervisor.get_status().is_running is False


# =============================================================================
# Stop
# =============================================================================


class TestStop:
    """Tests for stopping the daemon."""

    def test_stop_when_not_running(self, make_supervisor) -> None:
        result = make_supervisor().stop()

        assert result.success is False
        assert result.kind is ErrorKind.NOT_RUNNING

    def test_stop_spawned_daemon(self, make_supervisor) -> None:
        supervisor = make_supervisor()
        started = supervisor.start()

        result = supervisor.stop()

        assert result.success is True
        assert result.pid == started.pid
        assert supervisor.get_status().is_running is False

    def test_stop_discovered_daemon(self, make_supervisor) -> None:
        marker = f"autohosts-test-daemon-{uuid.uuid4().hex}"
        proc = spawn_marked_process(marker)
        try:
            supervisor = make_supervisor(marker=marker)

            result = supervisor.stop()

            assert result.success is True
            assert supervisor.get_status().is_running is False
        finally:
            if proc.poll() is None:
                proc.kill()
            proc.wait(timeout=5)

    @posix_only
    def test_stop_escalates_when_sigterm_ignored(self, make_supervisor) -> None:
        supervisor = make_supervisor(script=STUBBORN)
        assert supervisor.start().success is True

        result = supervisor.stop()

        assert result.success is True
        assert result.message == "DNSMasq force stopped"
        assert supervisor.get_status().is_running is False

    def test_stop_permission_denied(self, make_supervisor) -> None:
        supervisor = make_supervisor()
        running = ProcessStatus(is_running=True, pid=424242)

        with patch.object(supervisor, "get_status", return_value=running), patch(
            "autohosts.cli.psutil.Process", side_effect=psutil.AccessDenied(pid=424242)
        ):
            result = supervisor.stop()

        assert result.success is False
        assert result.kind is ErrorKind.PERMISSION_DENIED


# =============================================================================
# Restart
# =============================================================================


class TestRestart:
    """Tests for restarting the daemon."""

    def test_restart_when_stopped_starts_daemon(self, make_supervisor) -> None:
        supervisor = make_supervisor()

        result = supervisor.restart()

        assert result.success is True
        assert supervisor.get_status().is_running is True

    def test_restart_replaces_running_daemon(self, make_supervisor) -> None:
        supervisor = make_supervisor()
        first = supervisor.start()

        result = supervisor.restart()

        assert result.success is True
        assert result.pid != first.pid
        assert supervisor.get_status().pid == result.pid

    def test_restart_aborts_on_stop_failure(self, make_supervisor) -> None:
        supervisor = make_supervisor()
        running = ProcessStatus(is_running=True, pid=424242)

        with patch.object(supervisor, "get_status", return_value=running), patch(
            "autohosts.cli.psutil.Process", side_effect=psutil.AccessDenied(pid=424242)
        ), patch.object(supervisor, "_start") as mock_start:
            result = supervisor.restart()

        assert result.success is False
        assert result.kind is ErrorKind.PERMISSION_DENIED
        mock_start.assert_not_called()


# =============================================================================
# Logs
# =============================================================================


def test_get_logs_without_log_file(make_supervisor) -> None:
    assert make_supervisor().get_logs() == "No logs available"


def test_get_logs_appends_across_starts(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()
    supervisor.stop()
    time.sleep(0.1)
    supervisor.start()

    assert supervisor.get_logs().count("daemon args:") == 2
