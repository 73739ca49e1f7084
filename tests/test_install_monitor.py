"""
Tests for the install monitor in backend/monitoring/install_monitor.py.
"""

import asyncio
import threading
from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from backend.monitoring.install_monitor import InstallMonitor, MonitorThresholds, probe_port
from backend.persistence.models import InstallStatus


@pytest.fixture
def port_probe():
    return AsyncMock(return_value=False)


@pytest.fixture
def monitor(state_machine, port_probe):
    return InstallMonitor(
        state_machine, MonitorThresholds(poll_interval=0.01), port_probe=port_probe
    )


def test_thresholds_from_config():
    thresholds = MonitorThresholds.from_config(
        {
            "poll_interval": 5,
            "stall_timeout_minutes": 2,
            "running_dwell_minutes": 1,
            "manual_review_minutes": 10,
            "supervision_window_minutes": 20,
            "rdp_port": 3390,
            "rdp_probe_timeout": 2,
        }
    )
    assert thresholds.poll_interval == 5
    assert thresholds.stall_timeout == timedelta(minutes=2)
    assert thresholds.running_dwell == timedelta(minutes=1)
    assert thresholds.manual_review_after == timedelta(minutes=10)
    assert thresholds.supervision_window == timedelta(minutes=20)
    assert thresholds.rdp_port == 3390


def test_threshold_defaults():
    thresholds = MonitorThresholds.from_config({})
    assert thresholds.stall_timeout == timedelta(minutes=3)
    assert thresholds.running_dwell == timedelta(minutes=4)
    assert thresholds.manual_review_after == timedelta(minutes=15)
    assert thresholds.supervision_window == timedelta(minutes=30)
    assert thresholds.rdp_port == 3389
    assert thresholds.rdp_probe_timeout == 5


class TestCheckInstall:
    @pytest.mark.asyncio
    async def test_fresh_pending_is_left_alone(self, monitor, make_install):
        record = make_install(created_minutes_ago=1)
        assert await monitor.check_install(record.id) == InstallStatus.PENDING

    @pytest.mark.asyncio
    async def test_stalled_pending_fails_with_refund(
        self, monitor, make_install, test_user, quota_of, record_of
    ):
        record = make_install(created_minutes_ago=4)

        assert await monitor.check_install(record.id) == InstallStatus.FAILED

        stored = record_of(record.id)
        assert "No progress from the installer within 3 minutes" in stored.status_message
        assert stored.quota_refunded is True
        assert quota_of(test_user.id) == 2

    @pytest.mark.asyncio
    async def test_stalled_preparing_fails(self, monitor, make_install):
        record = make_install(status=InstallStatus.PREPARING, created_minutes_ago=10, updated_minutes_ago=3)
        assert await monitor.check_install(record.id) == InstallStatus.FAILED

    @pytest.mark.asyncio
    async def test_preparing_with_recent_progress_survives(self, monitor, make_install):
        record = make_install(
            status=InstallStatus.PREPARING, created_minutes_ago=10, updated_minutes_ago=1
        )
        assert await monitor.check_install(record.id) == InstallStatus.PREPARING

    @pytest.mark.asyncio
    async def test_running_inside_dwell_is_not_probed(self, monitor, make_install, port_probe):
        record = make_install(status=InstallStatus.RUNNING, created_minutes_ago=5, updated_minutes_ago=2)

        assert await monitor.check_install(record.id) == InstallStatus.RUNNING
        port_probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_running_completes_when_rdp_answers(
        self, monitor, make_install, port_probe, record_of, test_user, quota_of
    ):
        port_probe.return_value = True
        record = make_install(status=InstallStatus.RUNNING, created_minutes_ago=8, updated_minutes_ago=5)

        assert await monitor.check_install(record.id) == InstallStatus.COMPLETED

        port_probe.assert_awaited_once_with("203.0.113.10", 3389, 5)
        stored = record_of(record.id)
        assert stored.completed_at is not None
        assert quota_of(test_user.id) == 1

    @pytest.mark.asyncio
    async def test_running_unreachable_waits(self, monitor, make_install):
        record = make_install(status=InstallStatus.RUNNING, created_minutes_ago=8, updated_minutes_ago=5)
        assert await monitor.check_install(record.id) == InstallStatus.RUNNING

    @pytest.mark.asyncio
    async def test_running_past_review_threshold_goes_to_manual_review(
        self, monitor, make_install, test_user, quota_of
    ):
        record = make_install(
            status=InstallStatus.RUNNING, created_minutes_ago=20, updated_minutes_ago=16
        )

        assert await monitor.check_install(record.id) == InstallStatus.MANUAL_REVIEW
        assert quota_of(test_user.id) == 1

    @pytest.mark.asyncio
    async def test_window_expiry_probes_running_once_more(self, monitor, make_install, port_probe):
        port_probe.return_value = True
        record = make_install(
            status=InstallStatus.RUNNING, created_minutes_ago=31, updated_minutes_ago=1
        )
        assert await monitor.check_install(record.id) == InstallStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_window_expiry_without_rdp_goes_to_manual_review(self, monitor, make_install):
        record = make_install(
            status=InstallStatus.RUNNING, created_minutes_ago=31, updated_minutes_ago=1
        )
        assert await monitor.check_install(record.id) == InstallStatus.MANUAL_REVIEW

    @pytest.mark.asyncio
    async def test_terminal_record_reported_as_is(self, monitor, make_install, port_probe):
        record = make_install(status=InstallStatus.CANCELLED, created_minutes_ago=60)
        assert await monitor.check_install(record.id) == InstallStatus.CANCELLED
        port_probe.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_record(self, monitor):
        assert await monitor.check_install(9999) is None

    @pytest.mark.asyncio
    async def test_probes_do_not_stack(self, state_machine, make_install):
        release = asyncio.Event()
        calls = []

        async def slow_probe(ip, port, timeout):
            calls.append(ip)
            await release.wait()
            return False

        monitor = InstallMonitor(state_machine, MonitorThresholds(), port_probe=slow_probe)
        record = make_install(status=InstallStatus.RUNNING, created_minutes_ago=8, updated_minutes_ago=5)

        first = asyncio.create_task(monitor.check_install(record.id))
        for _ in range(200):
            if calls:
                break
            await asyncio.sleep(0.01)
        second = await monitor.check_install(record.id)
        release.set()
        await first

        assert second == InstallStatus.RUNNING
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_slow_notification_does_not_block_other_installs(
        self, monitor, make_install, notifier
    ):
        entered = threading.Event()
        release = threading.Event()

        def slow_delivery(*args):
            entered.set()
            release.wait(5)

        notifier.notify_install_status.side_effect = slow_delivery
        stalled = make_install(ip="203.0.113.1", created_minutes_ago=10)
        fresh = make_install(ip="203.0.113.2", created_minutes_ago=1)

        slow = asyncio.create_task(monitor.check_install(stalled.id))
        try:
            loop = asyncio.get_running_loop()
            assert await loop.run_in_executor(None, entered.wait, 2)

            status = await asyncio.wait_for(monitor.check_install(fresh.id), timeout=1)

            assert status == InstallStatus.PENDING
            assert not slow.done()
        finally:
            release.set()
        assert await slow == InstallStatus.FAILED


class TestTasks:
    @pytest.mark.asyncio
    async def test_task_finishes_on_terminal_status(self, monitor, make_install, port_probe):
        port_probe.return_value = True
        record = make_install(status=InstallStatus.RUNNING, created_minutes_ago=8, updated_minutes_ago=5)

        task = monitor.start_monitoring(record.id)
        await asyncio.wait_for(task, timeout=2)

        assert not monitor.is_monitoring(record.id)
        assert record.id not in monitor.tasks

    @pytest.mark.asyncio
    async def test_start_monitoring_is_idempotent(self, monitor, make_install):
        record = make_install(created_minutes_ago=0)

        first = monitor.start_monitoring(record.id)
        second = monitor.start_monitoring(record.id)

        assert first is second
        await monitor.stop()
        assert monitor.tasks == {}

    @pytest.mark.asyncio
    async def test_errors_do_not_kill_the_task(self):
        state_machine = Mock()
        state_machine.get.side_effect = [RuntimeError("db down"), None]
        monitor = InstallMonitor(
            state_machine, MonitorThresholds(poll_interval=0.01), port_probe=AsyncMock()
        )

        task = monitor.start_monitoring(1)
        await asyncio.wait_for(task, timeout=2)

        assert state_machine.get.call_count == 2


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_applies_overdue_transitions(
        self, monitor, make_install, record_of, notifier, test_user, quota_of
    ):
        stale = make_install(ip="203.0.113.1", created_minutes_ago=10)
        review = make_install(
            ip="203.0.113.2", status=InstallStatus.RUNNING, created_minutes_ago=25, updated_minutes_ago=20
        )
        fresh = make_install(ip="203.0.113.3", created_minutes_ago=1)
        done = make_install(ip="203.0.113.4", status=InstallStatus.COMPLETED)

        resumed = await monitor.resume()

        assert resumed == 1
        assert record_of(stale.id).status == InstallStatus.FAILED
        assert record_of(review.id).status == InstallStatus.MANUAL_REVIEW
        assert record_of(fresh.id).status == InstallStatus.PENDING
        assert record_of(done.id).status == InstallStatus.COMPLETED
        assert monitor.is_monitoring(fresh.id)
        assert not monitor.is_monitoring(stale.id)
        assert quota_of(test_user.id) == 2

        resumed_notices = [
            c for c in notifier.notify_install_status.call_args_list
            if c[0][3] == "Monitoring resumed after a service restart"
        ]
        assert {c[0][0] for c in resumed_notices} == {stale.id, review.id, fresh.id}

        await monitor.stop()

    @pytest.mark.asyncio
    async def test_resume_with_nothing_to_do(self, monitor):
        assert await monitor.resume() == 0


@pytest.mark.asyncio
async def test_probe_port_closed_port():
    # Port 9 on localhost is almost never listening
    assert await probe_port("127.0.0.1", 9, 0.5) is False


@pytest.mark.asyncio
async def test_probe_port_open_port():
    server = await asyncio.start_server(lambda r, w: w.close(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await probe_port("127.0.0.1", port, 1) is True
    finally:
        server.close()
        await server.wait_closed()
