"""
Core models for RDPForge - users, the Windows image catalog and install records.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from backend.persistence.db import Base


def utcnow():
    """Naive UTC timestamp, the form every DateTime column here stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class InstallStatus:
    """Install record status enumeration."""

    PENDING = "pending"
    PREPARING = "preparing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    MANUAL_REVIEW = "manual_review"
    CANCELLED = "cancelled"

    # Statuses the monitor still supervises and that block a second install on the same IP
    ACTIVE = (PENDING, PREPARING, RUNNING)
    TERMINAL = (COMPLETED, FAILED, CANCELLED)
    ALL = (PENDING, PREPARING, RUNNING, COMPLETED, FAILED, MANUAL_REVIEW, CANCELLED)


class AuthType:
    """Credential kind used to reach the target over SSH."""

    PASSWORD = "password"
    SSH_KEY = "ssh_key"

    ALL = (PASSWORD, SSH_KEY)


class User(Base):
    """
    This class holds the object mapping for the users table. ``quota`` is the
    number of installs the user may still start.
    """

    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), nullable=True)
    quota = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', quota={self.quota})>"


class WindowsVersion(Base):
    """
    Catalog of installable Windows images, addressed by slug.
    """

    __tablename__ = "windows_versions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f"<WindowsVersion(slug='{self.slug}', active={self.is_active})>"


class InstallRecord(Base):
    """
    One provisioning attempt. Only one of ``passwd_vps``/``ssh_key`` is stored,
    matching ``auth_type``. ``updated_at`` is refreshed on every status change
    and drives the monitor's time boxes.
    """

    __tablename__ = "install_data"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    ip = Column(String(45), nullable=False, index=True)
    ssh_port = Column(Integer, nullable=False, default=22)
    auth_type = Column(String(20), nullable=False, default=AuthType.PASSWORD)
    passwd_vps = Column(Text, nullable=True)
    ssh_key = Column(Text, nullable=True)
    win_ver = Column(String(100), nullable=False)
    passwd_rdp = Column(Text, nullable=False)
    status = Column(
        String(20), nullable=False, default=InstallStatus.PENDING, index=True
    )
    status_message = Column(Text, nullable=True)
    last_step = Column(String(50), nullable=True)
    region = Column(String(20), nullable=True)
    quota_refunded = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    def is_active(self) -> bool:
        return self.status in InstallStatus.ACTIVE

    def to_dict(self):
        """Public view of the record; credentials are never included."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "ip": self.ip,
            "ssh_port": self.ssh_port,
            "auth_type": self.auth_type,
            "win_ver": self.win_ver,
            "status": self.status,
            "status_message": self.status_message,
            "last_step": self.last_step,
            "region": self.region,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }

    def __repr__(self):
        return f"<InstallRecord(id={self.id}, ip='{self.ip}', status='{self.status}', user_id={self.user_id})>"


Index("idx_install_data_ip_status", InstallRecord.ip, InstallRecord.status)
