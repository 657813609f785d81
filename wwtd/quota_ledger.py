# wwtd/quota_ledger.py

import asyncio
import logging
import threading
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from wwtd.entities import SubscriptionState, User, UserRow, from_db_time, to_db_time
from wwtd.errors import NotFound, QuotaExceeded, Unauthenticated
from wwtd.listeners import ListenerHub

logger = logging.getLogger("wwtd_core")


def may_proceed(user: User) -> bool:
    """Admission rule: subscribers always pass, everyone else needs a positive balance."""
    return bool(user.is_subscribed) or user.available_tokens > 0


class QuotaLedger:
    """
    Per-user token balance and subscription override.

    Writers are debit() and set_entitlement(). Reads used for admission are
    always fresh point reads; the cache only backs cached() for display.
    The debit is read-then-clamped-write, which is safe only under one
    writer per user.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        missing_balance_default: int = 10000,
        user_hub: Optional[ListenerHub] = None,
    ):
        self.session_factory = session_factory
        self.missing_balance_default = int(missing_balance_default)
        self.user_hub = user_hub
        self._lock = threading.Lock()
        self._cache: Dict[str, User] = {}

    # -----------------------
    # Cache
    # -----------------------

    def cached(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._cache.get(str(user_id))

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def _remember(self, user: User) -> User:
        with self._lock:
            self._cache[user.id] = user
        return user

    def _publish(self, user: User) -> None:
        if self.user_hub is not None:
            self.user_hub.publish(user.id, user)

    # -----------------------
    # Sync DB work (runs in a worker thread)
    # -----------------------

    def _load_row(self, session: Session, user_id: str) -> UserRow:
        if not user_id:
            raise Unauthenticated("User ID is empty.")
        row = session.get(UserRow, str(user_id))
        if row is None:
            raise NotFound(f"User not found: {user_id}")
        return row

    def _read_user_sync(self, user_id: str) -> User:
        session: Session = self.session_factory()
        try:
            return User.from_row(self._load_row(session, user_id))
        finally:
            session.close()

    def _debit_sync(self, user_id: str, amount: int) -> User:
        session: Session = self.session_factory()
        try:
            row = self._load_row(session, user_id)
            if row.available_tokens is None:
                logger.info("User %s has no available_tokens field. Initializing it.", user_id)
                row.available_tokens = max(self.missing_balance_default - amount, 0)
            else:
                row.available_tokens = max(int(row.available_tokens) - amount, 0)
            session.commit()
            return User.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _set_entitlement_sync(
        self,
        user_id: str,
        is_subscribed: bool,
        expiration_date: Optional[datetime],
        plan_id: Optional[str],
    ) -> Optional[User]:
        session: Session = self.session_factory()
        try:
            row = self._load_row(session, user_id)
            unchanged = (
                bool(row.is_subscribed) == bool(is_subscribed)
                and from_db_time(row.subscription_expires_at) == from_db_time(to_db_time(expiration_date))
                and row.subscription_plan == plan_id
            )
            if unchanged:
                return None
            row.is_subscribed = bool(is_subscribed)
            row.subscription_expires_at = to_db_time(expiration_date)
            row.subscription_plan = plan_id
            session.commit()
            return User.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -----------------------
    # Public API
    # -----------------------

    async def get_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self._read_user_sync, user_id)
        return self._remember(user)

    async def get_balance(self, user_id: str) -> int:
        user = await self.get_user(user_id)
        return user.available_tokens

    async def get_subscription(self, user_id: str) -> SubscriptionState:
        user = await self.get_user(user_id)
        return SubscriptionState(
            is_subscribed=user.is_subscribed,
            expiration_date=user.subscription_expires_at,
            plan_id=user.subscription_plan,
        )

    async def admit(self, user_id: str) -> User:
        """
        Fresh point read + admission rule. Raises QuotaExceeded when denied.
        """
        user = await self.get_user(user_id)
        if not may_proceed(user):
            logger.info("Admission denied for user %s (balance=%d, subscribed=%s)",
                        user_id, user.available_tokens, user.is_subscribed)
            raise QuotaExceeded("No tokens left and no active subscription.")
        return user

    async def debit(self, user_id: str, amount: int) -> int:
        amount = int(amount)
        if amount < 0:
            raise ValueError(f"debit amount must be >= 0, got {amount}")
        user = await asyncio.to_thread(self._debit_sync, user_id, amount)
        logger.debug("Debited %d tokens from user %s -> balance %d", amount, user_id, user.available_tokens)
        self._remember(user)
        self._publish(user)
        return user.available_tokens

    async def set_entitlement(
        self,
        user_id: str,
        is_subscribed: bool,
        expiration_date: Optional[datetime] = None,
        plan_id: Optional[str] = None,
    ) -> bool:
        """
        Upsert subscription fields. Returns False (and writes nothing) when
        all three fields already match.
        """
        user = await asyncio.to_thread(
            self._set_entitlement_sync, user_id, is_subscribed, expiration_date, plan_id
        )
        if user is None:
            logger.debug("Entitlement for user %s unchanged, skipping write", user_id)
            return False
        logger.info("Updated subscription status for user %s to %s (plan=%s, expires=%s)",
                    user_id, is_subscribed, plan_id, expiration_date)
        self._remember(user)
        self._publish(user)
        return True
