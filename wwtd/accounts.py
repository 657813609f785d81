# wwtd/accounts.py

import asyncio
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy.orm import Session, sessionmaker

from wwtd.entities import User, UserRow
from wwtd.errors import NotFound, Unauthenticated
from wwtd.listeners import ListenerHandle, ListenerHub

logger = logging.getLogger("wwtd_core")

# (blob_path, data) -> public URL
Uploader = Callable[[str, bytes], str]
UserCallback = Callable[[Optional[User]], None]


class AccountService:
    """
    User document lifecycle: creation on first sign-in, profile edits,
    profile photo upload and account deletion.
    Writes are pushed to watch_user() listeners through the shared user hub
    (the same hub the QuotaLedger publishes balance changes on).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        initial_tokens: int = 100000,
        user_hub: Optional[ListenerHub] = None,
        thread_hub: Optional[ListenerHub] = None,
        uploader: Optional[Uploader] = None,
    ):
        self.session_factory = session_factory
        self.initial_tokens = int(initial_tokens)
        self.user_hub = user_hub or ListenerHub("users")
        self.thread_hub = thread_hub
        self.uploader = uploader

    # -----------------------
    # Sync DB work
    # -----------------------

    def _create_sync(self, user_id: str, email: str, name: str) -> Tuple[User, bool]:
        session: Session = self.session_factory()
        try:
            row = session.get(UserRow, user_id)
            if row is not None:
                return User.from_row(row), False
            row = UserRow(
                id=user_id,
                email=email or "",
                name=name or "",
                profile_photo="",
                available_tokens=self.initial_tokens,
                is_subscribed=False,
            )
            session.add(row)
            session.commit()
            return User.from_row(row), True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get_sync(self, user_id: str) -> User:
        session: Session = self.session_factory()
        try:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFound(f"User not found: {user_id}")
            return User.from_row(row)
        finally:
            session.close()

    def _update_sync(self, user_id: str, **fields) -> User:
        session: Session = self.session_factory()
        try:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFound(f"User not found: {user_id}")
            for key, value in fields.items():
                setattr(row, key, value)
            session.commit()
            return User.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _delete_sync(self, user_id: str) -> None:
        session: Session = self.session_factory()
        try:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFound(f"User not found: {user_id}")
            session.delete(row)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -----------------------
    # Public API
    # -----------------------

    @staticmethod
    def _require(user_id: str) -> str:
        if not user_id:
            raise Unauthenticated("User ID is empty.")
        return str(user_id)

    async def create_account(self, user_id: str, email: str = "", name: str = "") -> User:
        """Creates the user document once; an existing document is returned untouched."""
        user_id = self._require(user_id)
        user, created = await asyncio.to_thread(self._create_sync, user_id, email, name)
        if created:
            logger.info("User document created for %s with %d tokens", user_id, user.available_tokens)
            self.user_hub.publish(user_id, user)
        else:
            logger.debug("User document already exists for %s", user_id)
        return user

    async def get_user(self, user_id: str) -> User:
        return await asyncio.to_thread(self._get_sync, self._require(user_id))

    async def update_profile(self, user_id: str, *, name: Optional[str] = None, email: Optional[str] = None) -> User:
        user_id = self._require(user_id)
        fields = {}
        if name is not None:
            fields["name"] = name
        if email is not None:
            fields["email"] = email
        if not fields:
            return await self.get_user(user_id)
        user = await asyncio.to_thread(self._update_sync, user_id, **fields)
        logger.debug("Profile updated for %s: %s", user_id, sorted(fields))
        self.user_hub.publish(user_id, user)
        return user

    async def update_profile_photo(self, user_id: str, image_bytes: bytes) -> User:
        user_id = self._require(user_id)
        if self.uploader is None:
            raise RuntimeError("No profile photo uploader configured")
        # fail before uploading anything for an unknown user
        await self.get_user(user_id)
        url = await asyncio.to_thread(self.uploader, f"profile_photos/{user_id}.jpg", image_bytes)
        user = await asyncio.to_thread(self._update_sync, user_id, profile_photo=url)
        logger.info("Profile photo updated for %s", user_id)
        self.user_hub.publish(user_id, user)
        return user

    async def delete_account(self, user_id: str) -> None:
        """Removes the user document together with every thread and message."""
        user_id = self._require(user_id)
        await asyncio.to_thread(self._delete_sync, user_id)
        logger.info("Account %s deleted", user_id)
        self.user_hub.publish(user_id, None)
        if self.thread_hub is not None:
            self.thread_hub.publish(user_id, [])

    async def watch_user(self, user_id: str, on_update: UserCallback) -> ListenerHandle:
        """
        Live user document: current snapshot first (when the document exists),
        then one push per write. A deleted account pushes None.
        """
        user_id = self._require(user_id)
        handle = self.user_hub.add(user_id, on_update)
        try:
            user = await self.get_user(user_id)
        except NotFound:
            logger.debug("No user document yet for %s", user_id)
            return handle
        if not handle.cancelled:
            try:
                on_update(user)
            except Exception:
                logger.exception("Initial user delivery failed for %s", user_id)
        return handle
