"""
Pytest configuration and shared fixtures for RDPForge server tests.
"""

import os
import tempfile
import uuid
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from backend.persistence.db import Base
from backend.persistence.models import (
    AuthType,
    InstallRecord,
    InstallStatus,
    User,
    WindowsVersion,
    utcnow,
)

TEST_JWT_SECRET = "test-jwt-secret-for-rdpforge-unit-tests-0123456789"
TEST_DOWNLOAD_SECRET = "test-download-secret-for-rdpforge-0123456789"
TEST_PUBLIC_URL = "https://api.rdpforge.test"
TEST_DECOY = "c3RvcmUuYXJjaGl2ZS5taXJyb3IuY2FjaGUuZ3o"

TEST_DOWNLOAD_CONFIG = {
    "signature_ttl_seconds": 360,
    "decoy_segment": TEST_DECOY,
    "regions": {
        "asia": "https://asia-files.example.com",
        "australia": "https://au-files.example.com",
        "global": "https://global-files.example.com",
    },
    "default_region": "global",
    "allowed_user_agents": ["curl", "wget"],
    "blocked_user_agents": "bot|crawler|spider|scraper|facebook|twitter|linkedin",
    "preparing_agents": ["curl"],
    "running_agents": ["wget"],
    "allowed_extension": ".gz",
}


@pytest.fixture(autouse=True)
def jwt_secret():
    """Sign and verify tokens with a fixed secret regardless of the local config."""
    with patch("backend.auth.auth_handler.JWT_SECRET", TEST_JWT_SECRET):
        yield TEST_JWT_SECRET


@pytest.fixture(scope="function")
def engine():
    """Create test database engine with fresh schema for each test."""
    test_db_fd, test_db_file = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex}.db")
    os.close(test_db_fd)  # Close the file descriptor, we only need the path
    test_engine = create_engine(
        f"sqlite:///{test_db_file}", connect_args={"check_same_thread": False}
    )

    # Enter test mode to prevent production database access
    from backend.persistence.db import enter_test_mode, exit_test_mode

    enter_test_mode(test_engine)
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    test_engine.dispose()
    exit_test_mode()
    try:
        if os.path.exists(test_db_file):
            os.unlink(test_db_file)
    except OSError:
        pass


@pytest.fixture(scope="function")
def session_factory(engine):
    """Session factory bound to the test engine, as the services expect."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def test_user(db_session):
    """A user with one install credit."""
    user = User(username="alice", email="alice@example.com", quota=1)
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def windows_versions(db_session):
    versions = [
        WindowsVersion(name="Windows 11 Pro", slug="win11-pro"),
        WindowsVersion(name="Windows Server 2022", slug="winserver-2022"),
        WindowsVersion(name="Windows 7", slug="win7", is_active=False),
    ]
    db_session.add_all(versions)
    db_session.commit()
    return versions


@pytest.fixture
def make_install(db_session, test_user):
    """Factory inserting an install record with timestamps relative to now."""

    def _make(
        status=InstallStatus.PENDING,
        ip="203.0.113.10",
        user=None,
        created_minutes_ago=0,
        updated_minutes_ago=None,
        quota_refunded=False,
    ):
        now = utcnow()
        if updated_minutes_ago is None:
            updated_minutes_ago = created_minutes_ago
        record = InstallRecord(
            user_id=(user or test_user).id,
            ip=ip,
            ssh_port=22,
            auth_type=AuthType.PASSWORD,
            passwd_vps="Secret123!",
            win_ver="win11-pro",
            passwd_rdp="Rdp#2024",
            status=status,
            region="global",
            quota_refunded=quota_refunded,
            created_at=now - timedelta(minutes=created_minutes_ago),
            updated_at=now - timedelta(minutes=updated_minutes_ago),
        )
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record

    return _make


@pytest.fixture
def quota_of(session_factory):
    """Read a user's current balance through a fresh session."""

    def _quota(user_id):
        db = session_factory()
        try:
            return db.query(User.quota).filter(User.id == user_id).scalar()
        finally:
            db.close()

    return _quota


@pytest.fixture
def record_of(session_factory):
    def _record(install_id):
        db = session_factory()
        try:
            return db.query(InstallRecord).filter(InstallRecord.id == install_id).first()
        finally:
            db.close()

    return _record


@pytest.fixture
def notifier():
    """Mock notification dispatcher."""
    return Mock()


@pytest.fixture
def ledger(session_factory, notifier):
    from backend.services.quota_ledger import QuotaLedger

    return QuotaLedger(session_factory, notifier=notifier)


@pytest.fixture
def state_machine(session_factory, ledger, notifier):
    from backend.services.install_state_machine import InstallStateMachine

    return InstallStateMachine(
        session_factory, ledger, notifier=notifier, download_config=TEST_DOWNLOAD_CONFIG
    )


@pytest.fixture
def signer():
    from backend.services.signed_url import SignedUrlIssuer

    return SignedUrlIssuer(
        secret=TEST_DOWNLOAD_SECRET,
        public_url=TEST_PUBLIC_URL,
        decoy_segment=TEST_DECOY,
        ttl_seconds=360,
    )
