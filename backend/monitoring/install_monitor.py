"""
Install monitoring service.

One asyncio task per in-flight install polls its record and applies the
time boxes: stalled pending/preparing installs fail (with refund), running
installs complete once RDP answers after the dwell floor, and installs that
never answer go to manual review. On startup ``resume`` rebuilds the tasks
from the store; thresholds are measured from the persisted timestamps, so an
install that crossed one while the process was down is moved at once.
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Optional, Set

from backend.persistence.models import InstallStatus, utcnow
from backend.utils.verbosity_logger import sanitize_log

logger = logging.getLogger(__name__)

PortProbe = Callable[[str, int, float], Awaitable[bool]]


@dataclass
class MonitorThresholds:
    """Time boxes applied to in-flight installs."""

    poll_interval: float = 15
    stall_timeout: timedelta = timedelta(minutes=3)
    running_dwell: timedelta = timedelta(minutes=4)
    manual_review_after: timedelta = timedelta(minutes=15)
    supervision_window: timedelta = timedelta(minutes=30)
    rdp_port: int = 3389
    rdp_probe_timeout: float = 5

    @classmethod
    def from_config(cls, monitoring_config) -> "MonitorThresholds":
        return cls(
            poll_interval=monitoring_config.get("poll_interval", 15),
            stall_timeout=timedelta(
                minutes=monitoring_config.get("stall_timeout_minutes", 3)
            ),
            running_dwell=timedelta(
                minutes=monitoring_config.get("running_dwell_minutes", 4)
            ),
            manual_review_after=timedelta(
                minutes=monitoring_config.get("manual_review_minutes", 15)
            ),
            supervision_window=timedelta(
                minutes=monitoring_config.get("supervision_window_minutes", 30)
            ),
            rdp_port=monitoring_config.get("rdp_port", 3389),
            rdp_probe_timeout=monitoring_config.get("rdp_probe_timeout", 5),
        )


async def probe_port(ip: str, port: int, timeout: float) -> bool:
    """True when a TCP connection to ip:port succeeds within ``timeout`` seconds."""
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(ip, port), timeout=timeout
        )
    except (asyncio.TimeoutError, OSError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


class InstallMonitor:
    """Owns one supervision task per install id."""

    def __init__(
        self,
        state_machine,
        thresholds: Optional[MonitorThresholds] = None,
        port_probe: PortProbe = probe_port,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.state_machine = state_machine
        self.thresholds = thresholds or MonitorThresholds()
        self.port_probe = port_probe
        self.clock = clock
        self.tasks: Dict[int, asyncio.Task] = {}
        self._probing: Set[int] = set()

    async def _offload(self, func, *args, **kwargs):
        # Store access and notification channels (SMTP) block; keep them off the loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    def is_monitoring(self, install_id: int) -> bool:
        task = self.tasks.get(install_id)
        return task is not None and not task.done()

    def start_monitoring(self, install_id: int) -> Optional[asyncio.Task]:
        """Spawn the supervision task for ``install_id`` unless one is already running."""
        if self.is_monitoring(install_id):
            return self.tasks[install_id]
        task = asyncio.create_task(self._watch(install_id))
        self.tasks[install_id] = task
        logger.info("Monitoring started for install %s", install_id)
        return task

    async def _probe_rdp(self, install_id: int, ip: str) -> Optional[bool]:
        # None means a probe for this install is already in flight
        if install_id in self._probing:
            return None
        self._probing.add(install_id)
        try:
            return await self.port_probe(
                ip, self.thresholds.rdp_port, self.thresholds.rdp_probe_timeout
            )
        finally:
            self._probing.discard(install_id)

    async def check_install(self, install_id: int) -> Optional[str]:
        """
        Evaluate one install against the time boxes and apply any due
        transition. Returns the record's status afterwards (None if it is gone).
        """
        record = await self._offload(self.state_machine.get, install_id)
        if record is None:
            return None
        if record.status not in InstallStatus.ACTIVE:
            return record.status

        now = self.clock()
        in_status = now - record.updated_at
        elapsed = now - record.created_at
        limits = self.thresholds

        if record.status in (InstallStatus.PENDING, InstallStatus.PREPARING):
            if in_status >= limits.stall_timeout:
                minutes = int(limits.stall_timeout.total_seconds() // 60)
                return await self._apply(
                    install_id,
                    record.status,
                    InstallStatus.FAILED,
                    f"No progress from the installer within {minutes} minutes, "
                    "quota refunded",
                )
            if elapsed >= limits.supervision_window:
                return await self._apply(
                    install_id,
                    record.status,
                    InstallStatus.FAILED,
                    "Installation did not start within the supervision window, "
                    "quota refunded",
                )
            return record.status

        window_expired = elapsed >= limits.supervision_window
        if in_status >= limits.running_dwell or window_expired:
            reachable = await self._probe_rdp(install_id, record.ip)
            if reachable:
                return await self._apply(
                    install_id,
                    record.status,
                    InstallStatus.COMPLETED,
                    f"Windows installation completed, RDP is reachable at "
                    f"{record.ip}:{limits.rdp_port}",
                )
            if reachable is not None and (
                in_status >= limits.manual_review_after or window_expired
            ):
                logger.warning(
                    "Install %s: RDP on %s still unreachable, flagging for review",
                    install_id,
                    sanitize_log(record.ip),
                )
                return await self._apply(
                    install_id, record.status, InstallStatus.MANUAL_REVIEW, None
                )
        return record.status

    async def _apply(self, install_id, current, target, message) -> str:
        result = await self._offload(
            self.state_machine.transition, install_id, target, message=message
        )
        if result.changed:
            return target
        # Lost a race with another writer; report what the store says now
        record = await self._offload(self.state_machine.get, install_id)
        return record.status if record is not None else current

    async def _watch(self, install_id: int):
        try:
            while True:
                try:
                    status = await self.check_install(install_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:  # pylint: disable=broad-exception-caught
                    logger.error("Error checking install %s: %s", install_id, e)
                    status = InstallStatus.PENDING
                if status not in InstallStatus.ACTIVE:
                    logger.info(
                        "Monitoring finished for install %s (status %s)", install_id, status
                    )
                    return
                await asyncio.sleep(self.thresholds.poll_interval)
        finally:
            if self.tasks.get(install_id) is asyncio.current_task():
                del self.tasks[install_id]

    async def resume(self) -> int:
        """
        Pick up every unfinished install after a restart. Overdue records are
        transitioned before any task is spawned. Returns the number of
        installs still being monitored.
        """
        records = await self._offload(self.state_machine.list_by_status, InstallStatus.ACTIVE)
        resumed = 0
        for record in records:
            await self._offload(self.state_machine.notify_resumed, record)
            try:
                status = await self.check_install(record.id)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Error resuming install %s: %s", record.id, e)
                status = record.status
            if status in InstallStatus.ACTIVE:
                self.start_monitoring(record.id)
                resumed += 1
        logger.info(
            "Resumed monitoring for %d of %d unfinished installs", resumed, len(records)
        )
        return resumed

    async def stop(self):
        """Cancel every supervision task."""
        tasks = list(self.tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.tasks.clear()
        logger.info("Install monitor stopped (%d tasks cancelled)", len(tasks))
