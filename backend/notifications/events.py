"""
Notification payloads delivered to dashboards and other channels.
Each event type has a fixed payload shape; ``to_dict`` is the wire form.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class NotificationType(str, Enum):
    """Tags of the notification variants."""

    INSTALL_STATUS_UPDATE = "install_status_update"
    QUOTA_ADDED = "quota_added"
    TELEGRAM_CONNECTED = "telegram_connected"
    SYSTEM_ALERT = "system_alert"


class Notification:
    """Base notification class; ``user_id`` selects the recipient."""

    def __init__(self, notification_type: NotificationType, user_id: int):
        self.notification_type = notification_type
        self.user_id = user_id
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def payload(self) -> Dict[str, Any]:
        return {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert notification to dictionary for JSON serialization."""
        return {
            "type": self.notification_type.value,
            "timestamp": self.timestamp,
            **self.payload(),
        }


class InstallStatusUpdate(Notification):
    """An install record changed status (or was picked up again after a restart)."""

    def __init__(
        self,
        install_id: int,
        user_id: int,
        status: str,
        message: str,
        ip: Optional[str] = None,
        win_version: Optional[str] = None,
    ):
        super().__init__(NotificationType.INSTALL_STATUS_UPDATE, user_id)
        self.install_id = install_id
        self.status = status
        self.message = message
        self.ip = ip
        self.win_version = win_version

    def payload(self) -> Dict[str, Any]:
        return {
            "installId": self.install_id,
            "status": self.status,
            "message": self.message,
            "ip": self.ip,
            "winVersion": self.win_version,
        }


class QuotaAdded(Notification):
    """Credits were added to a user's balance."""

    def __init__(
        self, user_id: int, amount: int, new_balance: int, reason: Optional[str] = None
    ):
        super().__init__(NotificationType.QUOTA_ADDED, user_id)
        self.amount = amount
        self.new_balance = new_balance
        self.reason = reason

    def payload(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "newBalance": self.new_balance,
            "reason": self.reason,
            "message": f"{self.amount} install quota added to your account",
        }


class TelegramConnected(Notification):
    """A Telegram account was linked to the user."""

    def __init__(self, user_id: int, telegram_username: Optional[str] = None):
        super().__init__(NotificationType.TELEGRAM_CONNECTED, user_id)
        self.telegram_username = telegram_username

    def payload(self) -> Dict[str, Any]:
        return {
            "telegramUsername": self.telegram_username,
            "message": "Telegram account connected",
        }


class SystemAlert(Notification):
    """Free-form operational message for one user."""

    def __init__(self, user_id: int, title: str, message: str, level: str = "info"):
        super().__init__(NotificationType.SYSTEM_ALERT, user_id)
        self.title = title
        self.message = message
        self.level = level

    def payload(self) -> Dict[str, Any]:
        return {"title": self.title, "message": self.message, "level": self.level}
