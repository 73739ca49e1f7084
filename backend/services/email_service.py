"""
Email service for sending install and quota notifications via SMTP.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

from backend.config import config

logger = logging.getLogger(__name__)

OUTCOME_SUBJECTS = {
    "completed": "Windows installation completed",
    "failed": "Windows installation failed",
    "manual_review": "Windows installation needs review",
}

OUTCOME_BODIES = {
    "completed": (
        "Your Windows installation on {ip} ({win_version}) has finished.\n\n"
        "You can now connect with Remote Desktop to {ip}:3389 using the RDP "
        "password you chose.\n"
    ),
    "failed": (
        "Your Windows installation on {ip} ({win_version}) did not complete.\n\n"
        "Reason: {message}\n\n"
        "If the install failed before the installer started, your quota has "
        "been returned to your account.\n"
    ),
    "manual_review": (
        "We could not confirm that Windows on {ip} ({win_version}) is reachable "
        "over Remote Desktop yet.\n\n"
        "The installation has been flagged for manual review; no action is "
        "required from you.\n"
    ),
}


class EmailService:
    """Service for sending emails via SMTP."""

    def __init__(self):
        self.email_config = config.get_email_config()
        self.smtp_config = config.get_smtp_config()

    def is_enabled(self) -> bool:
        """Check if email service is enabled."""
        return config.is_email_enabled()

    def send_email(
        self,
        to_addresses: List[str],
        subject: str,
        body: str,
        html_body: Optional[str] = None,
    ) -> bool:
        """
        Send an email via SMTP.

        Returns:
            True if email was sent successfully, False otherwise
        """
        if not self.is_enabled():
            logger.debug("Email service is disabled")
            return False

        if not to_addresses:
            logger.error("No recipient addresses provided")
            return False

        sender_address = self.email_config["from_address"]
        sender_name = self.email_config["from_name"]

        subject_prefix = self.email_config.get("templates", {}).get(
            "subject_prefix", ""
        )
        if subject_prefix and not subject.startswith(subject_prefix):
            subject = f"{subject_prefix} {subject}"

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{sender_name} <{sender_address}>"
        msg["To"] = ", ".join(to_addresses)
        msg.attach(MIMEText(body, "plain"))
        if html_body:
            msg.attach(MIMEText(html_body, "html"))

        smtp = self.smtp_config
        try:
            if smtp["use_ssl"]:
                server = smtplib.SMTP_SSL(smtp["host"], smtp["port"], timeout=smtp["timeout"])
            else:
                server = smtplib.SMTP(smtp["host"], smtp["port"], timeout=smtp["timeout"])

            try:
                if smtp["use_tls"] and not smtp["use_ssl"]:
                    server.starttls()
                if smtp["username"] and smtp["password"]:
                    server.login(smtp["username"], smtp["password"])
                server.send_message(msg, sender_address, to_addresses)
                logger.info("Email sent successfully to %s", ", ".join(to_addresses))
                return True
            finally:
                server.quit()
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Failed to send email: %s", e)
            return False

    def send_install_outcome(
        self,
        to_address: str,
        status: str,
        ip: str,
        win_version: str,
        message: str = "",
    ) -> bool:
        """Mail the user about a completed, failed or manual-review install."""
        if status not in OUTCOME_SUBJECTS:
            return False
        body = OUTCOME_BODIES[status].format(
            ip=ip, win_version=win_version or "Windows", message=message or "unknown"
        )
        return self.send_email([to_address], OUTCOME_SUBJECTS[status], body)

    def send_quota_added(self, to_address: str, amount: int, new_balance: int) -> bool:
        body = (
            f"{amount} install quota has been added to your account.\n\n"
            f"Your balance is now {new_balance}.\n"
        )
        return self.send_email([to_address], "Install quota added", body)


# Global email service instance
email_service = EmailService()
