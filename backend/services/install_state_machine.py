"""
Install state machine - the only writer of ``install_data.status``.

Manages the lifecycle:
    pending → preparing → running → completed | manual_review
    pending | preparing | running → failed
    pending → cancelled

Every transition is a compare-and-set on the current status, so a
re-delivered signal (a second download hit, a duplicate progress report,
two monitor ticks) changes nothing, refunds nothing and notifies nobody.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from backend.persistence.models import InstallRecord, InstallStatus, utcnow
from backend.utils.verbosity_logger import sanitize_log

logger = logging.getLogger("backend.services.install_state_machine")

ALLOWED_SOURCES = {
    InstallStatus.PREPARING: (InstallStatus.PENDING,),
    InstallStatus.RUNNING: (InstallStatus.PENDING, InstallStatus.PREPARING),
    InstallStatus.COMPLETED: (InstallStatus.RUNNING,),
    InstallStatus.MANUAL_REVIEW: (InstallStatus.RUNNING,),
    InstallStatus.FAILED: (
        InstallStatus.PENDING,
        InstallStatus.PREPARING,
        InstallStatus.RUNNING,
    ),
    InstallStatus.CANCELLED: (InstallStatus.PENDING,),
}

# Quota goes back only while the installer never reached the image download
REFUND_SOURCES = {
    InstallStatus.FAILED: (InstallStatus.PENDING, InstallStatus.PREPARING),
    InstallStatus.CANCELLED: (InstallStatus.PENDING,),
}

DEFAULT_MESSAGES = {
    InstallStatus.PREPARING: "Preparing the VPS for Windows installation",
    InstallStatus.RUNNING: "Windows image download started, installation in progress",
    InstallStatus.COMPLETED: "Windows installation completed, RDP is reachable",
    InstallStatus.FAILED: "Windows installation failed",
    InstallStatus.MANUAL_REVIEW: (
        "Installation is taking longer than expected and has been flagged "
        "for manual review"
    ),
    InstallStatus.CANCELLED: "Installation cancelled, quota refunded",
}

PREPARING_STEPS = ("script_start", "system_update", "install_deps")
RUNNING_STEPS = (
    "download_start",
    "download_complete",
    "extract_start",
    "extract_complete",
    "install_start",
    "install_complete",
    "reboot_start",
)


class InstallNotFoundError(Exception):
    """Exception raised when an install record does not exist or is not the caller's."""


class InvalidTransitionError(Exception):
    """Exception raised when a user-requested transition is not allowed."""


@dataclass
class TransitionResult:
    changed: bool
    previous: Optional[str] = None
    refunded: bool = False


def can_transition(current: str, target: str) -> bool:
    return current != target and current in ALLOWED_SOURCES.get(target, ())


def should_refund(previous: str, target: str) -> bool:
    return previous in REFUND_SOURCES.get(target, ())


class InstallStateMachine:
    """Applies status transitions, refunds and notifications for install records."""

    def __init__(self, session_factory, ledger, notifier=None, download_config=None):
        self.session_factory = session_factory
        self.ledger = ledger
        self.notifier = notifier
        download_config = download_config or {}
        self.preparing_agents = [
            a.lower() for a in download_config.get("preparing_agents", ["curl"])
        ]
        self.running_agents = [
            a.lower() for a in download_config.get("running_agents", ["wget"])
        ]

    def get(self, install_id: int) -> Optional[InstallRecord]:
        db = self.session_factory()
        try:
            return db.query(InstallRecord).filter(InstallRecord.id == install_id).first()
        finally:
            db.close()

    def list_by_status(self, statuses) -> List[InstallRecord]:
        db = self.session_factory()
        try:
            return (
                db.query(InstallRecord)
                .filter(InstallRecord.status.in_(statuses))
                .order_by(InstallRecord.id)
                .all()
            )
        finally:
            db.close()

    def transition(
        self,
        install_id: int,
        target: str,
        message: Optional[str] = None,
        step: Optional[str] = None,
    ) -> TransitionResult:
        """
        Move a record to ``target`` if its current status allows it.

        Raises InstallNotFoundError for an unknown id; a disallowed or
        repeated transition returns ``changed=False``.
        """
        message = message or DEFAULT_MESSAGES.get(target, target)
        db = self.session_factory()
        try:
            record = db.query(InstallRecord).filter(InstallRecord.id == install_id).first()
            if record is None:
                raise InstallNotFoundError(f"Install {install_id} not found")

            previous = record.status
            if not can_transition(previous, target):
                logger.debug(
                    "Install %s: ignoring transition %s -> %s", install_id, previous, target
                )
                return TransitionResult(changed=False, previous=previous)

            now = utcnow()
            values = {
                InstallRecord.status: target,
                InstallRecord.status_message: message,
                InstallRecord.updated_at: now,
            }
            if step:
                values[InstallRecord.last_step] = step
            if target == InstallStatus.COMPLETED:
                values[InstallRecord.completed_at] = now

            updated = (
                db.query(InstallRecord)
                .filter(InstallRecord.id == install_id, InstallRecord.status == previous)
                .update(values, synchronize_session=False)
            )
            if not updated:
                # Another task moved the record first
                db.rollback()
                return TransitionResult(changed=False, previous=previous)

            refunded = False
            if should_refund(previous, target):
                refunded = self.ledger.refund_for_install(db, install_id, record.user_id)
            db.commit()

            user_id, ip, win_ver = record.user_id, record.ip, record.win_ver
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Install %s: transition to %s failed: %s", install_id, target, e)
            raise
        finally:
            db.close()

        logger.info(
            "Install %s: %s -> %s%s", install_id, previous, target, " (refunded)" if refunded else ""
        )
        self._notify(install_id, user_id, target, message, ip, win_ver)
        return TransitionResult(changed=True, previous=previous, refunded=refunded)

    def _notify(self, install_id, user_id, status, message, ip, win_ver):
        if self.notifier is None:
            return
        self.notifier.notify_install_status(install_id, user_id, status, message, ip, win_ver)

    def notify_resumed(self, record: InstallRecord):
        """Tell the owner that supervision of an unfinished install continues after a restart."""
        self._notify(
            record.id,
            record.user_id,
            record.status,
            "Monitoring resumed after a service restart",
            record.ip,
            record.win_ver,
        )

    def touch(self, install_id: int, step: Optional[str] = None, message: Optional[str] = None) -> bool:
        """Record a progress signal without a status change; refreshes ``updated_at``."""
        db = self.session_factory()
        try:
            values = {InstallRecord.updated_at: utcnow()}
            if step:
                values[InstallRecord.last_step] = step
            if message:
                values[InstallRecord.status_message] = message
            updated = (
                db.query(InstallRecord)
                .filter(
                    InstallRecord.id == install_id,
                    InstallRecord.status.in_(InstallStatus.ACTIVE),
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
            return bool(updated)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def handle_download_access(self, install_id: int, user_agent: str) -> TransitionResult:
        """
        A signed download was fetched. The small config fetch (curl) marks
        ``preparing``; the image fetch (wget) marks ``running``.
        """
        agent = (user_agent or "").lower()
        if any(name in agent for name in self.running_agents):
            return self.transition(
                install_id, InstallStatus.RUNNING, step="image_download"
            )
        if any(name in agent for name in self.preparing_agents):
            return self.transition(
                install_id, InstallStatus.PREPARING, step="config_download"
            )
        logger.info(
            "Install %s: download by unrecognised agent %s",
            install_id,
            sanitize_log(user_agent),
        )
        return TransitionResult(changed=False)

    def handle_progress(
        self, install_id: int, step: str, status: str, message: Optional[str] = None
    ) -> TransitionResult:
        """Apply a progress report posted by the installer script."""
        step = (step or "").strip()
        message = (message or "").strip()[:500] or None
        if (status or "").lower() == InstallStatus.FAILED:
            return self.transition(
                install_id,
                InstallStatus.FAILED,
                message=message or f"Installer reported failure at step {step}",
                step=step,
            )

        if step in RUNNING_STEPS:
            target = InstallStatus.RUNNING
        elif step in PREPARING_STEPS:
            target = InstallStatus.PREPARING
        else:
            target = None

        if target is not None:
            result = self.transition(install_id, target, message=message, step=step)
            if result.changed:
                return result
        # Same-status reports still count as a progress signal for the stall timer
        self.touch(install_id, step=step, message=message)
        return TransitionResult(changed=False)

    def cancel(self, install_id: int, user_id: int) -> TransitionResult:
        """User cancellation; only the owner may cancel and only while pending."""
        record = self.get(install_id)
        if record is None or record.user_id != user_id:
            raise InstallNotFoundError(f"Install {install_id} not found")
        if record.status != InstallStatus.PENDING:
            raise InvalidTransitionError(
                f"Only pending installations can be cancelled (current status: {record.status})"
            )
        result = self.transition(install_id, InstallStatus.CANCELLED)
        if not result.changed:
            raise InvalidTransitionError(
                "Installation has already progressed and can no longer be cancelled"
            )
        return result
