"""
Single entry point for emitting notifications.

Delivery is fire-and-forget: a failing subscriber or channel is logged and
never propagates to the caller, so a status transition is never rolled back
because a notification could not be sent.
"""

import logging
from typing import List, Optional

from backend.notifications.events import (
    InstallStatusUpdate,
    Notification,
    NotificationType,
    QuotaAdded,
)
from backend.notifications.registry import NotificationRegistry
from backend.persistence.models import User

logger = logging.getLogger(__name__)

EMAIL_STATUSES = ("completed", "failed", "manual_review")


class EmailChannel:
    """Mails terminal install outcomes and quota top-ups to the user's address."""

    def __init__(self, session_factory, email_service):
        self.session_factory = session_factory
        self.email_service = email_service

    def _email_for(self, user_id: int) -> Optional[str]:
        db = self.session_factory()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            return user.email if user else None
        finally:
            db.close()

    def send(self, event: Notification) -> None:
        if not self.email_service.is_enabled():
            return
        if isinstance(event, InstallStatusUpdate):
            if event.status not in EMAIL_STATUSES:
                return
            address = self._email_for(event.user_id)
            if address:
                self.email_service.send_install_outcome(
                    address, event.status, event.ip, event.win_version, event.message
                )
        elif isinstance(event, QuotaAdded):
            address = self._email_for(event.user_id)
            if address:
                self.email_service.send_quota_added(
                    address, event.amount, event.new_balance
                )


class NotificationDispatcher:
    """Publishes events to the registry and any extra channels."""

    def __init__(self, registry: NotificationRegistry, channels: Optional[List] = None):
        self.registry = registry
        self.channels = list(channels or [])

    def notify(self, event: Notification) -> int:
        """Deliver ``event``; returns how many real-time subscribers received it."""
        delivered = 0
        try:
            delivered = self.registry.publish(event.user_id, event.to_dict())
        except Exception as e:  # pylint: disable=broad-exception-caught
            logger.error("Failed to publish %s notification: %s", event.notification_type, e)

        for channel in self.channels:
            try:
                channel.send(event)
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error(
                    "Notification channel %s failed for %s: %s",
                    type(channel).__name__,
                    event.notification_type,
                    e,
                )

        if event.notification_type == NotificationType.INSTALL_STATUS_UPDATE:
            logger.info(
                "Install %s status %s notified to user %s (%d live)",
                event.install_id,
                event.status,
                event.user_id,
                delivered,
            )
        return delivered

    def notify_install_status(
        self,
        install_id: int,
        user_id: int,
        status: str,
        message: str,
        ip: Optional[str] = None,
        win_version: Optional[str] = None,
    ) -> int:
        return self.notify(
            InstallStatusUpdate(install_id, user_id, status, message, ip, win_version)
        )

    def notify_quota_added(
        self, user_id: int, amount: int, new_balance: int, reason: Optional[str] = None
    ) -> int:
        return self.notify(QuotaAdded(user_id, amount, new_balance, reason))
