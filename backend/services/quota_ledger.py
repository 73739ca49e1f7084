"""
Per-user install credits.

Debits and credits are single conditional UPDATE statements, serialized per
user by an in-process lock, so the balance never goes below zero through
this path. Refunds tied to an install flip ``install_data.quota_refunded``
in the same transaction, making them idempotent.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from backend.persistence.models import InstallRecord, User, utcnow

logger = logging.getLogger(__name__)


class QuotaLedger:
    """Quota reservations, refunds and top-ups against the ``users`` table."""

    def __init__(self, session_factory, notifier=None):
        self.session_factory = session_factory
        self.notifier = notifier
        self._locks: Dict[int, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def lock_for(self, user_id: int) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def user_lock(self, user_id: int):
        """Hold the user's ledger lock across a caller-managed transaction."""
        with self.lock_for(user_id):
            yield

    @contextmanager
    def _session(self, db):
        if db is not None:
            yield db, False
            return
        own = self.session_factory()
        try:
            yield own, True
        finally:
            own.close()

    def available(self, user_id: int, db=None) -> int:
        with self._session(db) as (session, _owned):
            user = session.query(User).filter(User.id == user_id).first()
            return user.quota if user else 0

    def reserve(self, user_id: int, amount: int = 1, db=None) -> bool:
        """
        Debit ``amount`` credits if the balance allows it.

        With ``db`` the caller owns the transaction and must commit;
        otherwise the debit is committed immediately.
        """
        if amount <= 0:
            raise ValueError("amount must be positive")
        with self.lock_for(user_id), self._session(db) as (session, owned):
            updated = (
                session.query(User)
                .filter(User.id == user_id, User.quota >= amount)
                .update(
                    {User.quota: User.quota - amount, User.updated_at: utcnow()},
                    synchronize_session=False,
                )
            )
            if owned:
                if updated:
                    session.commit()
                else:
                    session.rollback()
            if not updated:
                logger.info("Quota reservation refused for user %s", user_id)
            return bool(updated)

    def refund(self, user_id: int, amount: int = 1, db=None) -> None:
        if amount <= 0:
            raise ValueError("amount must be positive")
        with self.lock_for(user_id), self._session(db) as (session, owned):
            session.query(User).filter(User.id == user_id).update(
                {User.quota: User.quota + amount, User.updated_at: utcnow()},
                synchronize_session=False,
            )
            if owned:
                session.commit()
        logger.info("Refunded %d quota to user %s", amount, user_id)

    def refund_for_install(self, db, install_id: int, user_id: int) -> bool:
        """
        Credit back the quota spent on an install, at most once.

        Runs inside the caller's transaction; returns False when the install
        was already refunded.
        """
        with self.lock_for(user_id):
            flipped = (
                db.query(InstallRecord)
                .filter(
                    InstallRecord.id == install_id,
                    InstallRecord.quota_refunded.is_(False),
                )
                .update({InstallRecord.quota_refunded: True}, synchronize_session=False)
            )
            if not flipped:
                return False
            self.refund(user_id, 1, db=db)
            return True

    def add(self, user_id: int, amount: int, reason: Optional[str] = None) -> int:
        """Top up a user's balance and announce it; returns the new balance."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        with self.lock_for(user_id), self._session(None) as (session, _owned):
            updated = (
                session.query(User)
                .filter(User.id == user_id)
                .update(
                    {User.quota: User.quota + amount, User.updated_at: utcnow()},
                    synchronize_session=False,
                )
            )
            if not updated:
                session.rollback()
                raise ValueError(f"Unknown user {user_id}")
            session.commit()
            balance = session.query(User.quota).filter(User.id == user_id).scalar()

        logger.info("Added %d quota to user %s (%s)", amount, user_id, reason or "manual")
        if self.notifier is not None:
            self.notifier.notify_quota_added(user_id, amount, balance, reason)
        return balance
