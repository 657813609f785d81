# wwtd/thread_store.py

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from wwtd.entities import (
    STATUS_ACTIVE,
    STATUS_DELETED,
    ConversationThread,
    Message,
    MessageRow,
    MessageThreadRow,
    UserRow,
    to_db_time,
    utcnow,
)
from wwtd.errors import NotFound, Unauthenticated
from wwtd.listeners import ListenerHandle, ListenerHub

logger = logging.getLogger("wwtd_core")

ThreadsCallback = Callable[[List[ConversationThread]], None]


class ThreadStore:
    """
    users/{userID}/messageThreads/{threadID}/messages/{messageID}

    Threads are never physically removed from here: soft_delete() flips the
    status and keeps the messages. Messages are append-only.
    """

    def __init__(self, session_factory: sessionmaker, *, hub: Optional[ListenerHub] = None):
        self.session_factory = session_factory
        self.hub = hub or ListenerHub("threads")
        # bumped on every change to a user's thread list
        self._versions: Dict[str, int] = {}

    # -----------------------
    # Sync DB work (runs in a worker thread)
    # -----------------------

    def _create_thread_sync(self, user_id: str, preview_message: str, model: str) -> str:
        session: Session = self.session_factory()
        try:
            if session.get(UserRow, user_id) is None:
                raise NotFound(f"User not found: {user_id}")
            thread_id = str(uuid4())
            session.add(
                MessageThreadRow(
                    id=thread_id,
                    user_id=user_id,
                    date_created=to_db_time(utcnow()),
                    preview_message=preview_message,
                    model=model,
                    status=STATUS_ACTIVE,
                )
            )
            session.commit()
            return thread_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _append_message_sync(self, thread_id: str, message: Message) -> str:
        session: Session = self.session_factory()
        try:
            if session.get(MessageThreadRow, thread_id) is None:
                raise NotFound(f"Thread not found: {thread_id}")
            message_id = message.id or str(uuid4())
            session.add(
                MessageRow(
                    id=message_id,
                    thread_id=thread_id,
                    role=message.role,
                    content=message.content,
                    timestamp=to_db_time(message.timestamp),
                )
            )
            session.commit()
            return message_id
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _active_threads_sync(self, user_id: str) -> List[ConversationThread]:
        session: Session = self.session_factory()
        try:
            rows = (
                session.query(MessageThreadRow)
                .filter(MessageThreadRow.user_id == str(user_id))
                .filter(MessageThreadRow.status == STATUS_ACTIVE)
                .order_by(MessageThreadRow.date_created.desc())
                .all()
            )
            return [ConversationThread.from_row(r) for r in rows]
        finally:
            session.close()

    def _soft_delete_sync(self, thread_id: str) -> Tuple[str, bool]:
        """Returns (owner user_id, changed)."""
        session: Session = self.session_factory()
        try:
            row = session.get(MessageThreadRow, thread_id)
            if row is None:
                raise NotFound(f"Thread not found: {thread_id}")
            if row.status == STATUS_DELETED:
                return row.user_id, False
            row.status = STATUS_DELETED
            session.commit()
            return row.user_id, True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _fetch_messages_sync(self, thread_id: str) -> List[Message]:
        session: Session = self.session_factory()
        try:
            if session.get(MessageThreadRow, thread_id) is None:
                raise NotFound(f"Thread not found: {thread_id}")
            rows = (
                session.query(MessageRow)
                .filter(MessageRow.thread_id == thread_id)
                .order_by(MessageRow.timestamp.asc())
                .all()
            )
            return [Message.from_row(r) for r in rows]
        finally:
            session.close()

    def _thread_sync(self, thread_id: str) -> ConversationThread:
        session: Session = self.session_factory()
        try:
            row = session.get(MessageThreadRow, thread_id)
            if row is None:
                raise NotFound(f"Thread not found: {thread_id}")
            return ConversationThread.from_row(row)
        finally:
            session.close()

    # -----------------------
    # Public API
    # -----------------------

    async def create_thread(self, user_id: str, preview_message: str, model: str) -> str:
        if not user_id:
            raise Unauthenticated("User ID is empty.")
        thread_id = await asyncio.to_thread(self._create_thread_sync, str(user_id), preview_message, model)
        logger.debug("Message thread %s created for user %s", thread_id, user_id)
        await self._notify(str(user_id))
        return thread_id

    async def append_message(self, thread_id: str, message: Message) -> str:
        message_id = await asyncio.to_thread(self._append_message_sync, str(thread_id), message)
        logger.debug("Message %s (%s) saved to thread %s", message_id, message.role, thread_id)
        return message_id

    async def get_thread(self, thread_id: str) -> ConversationThread:
        return await asyncio.to_thread(self._thread_sync, str(thread_id))

    async def snapshot_threads(self, user_id: str) -> List[ConversationThread]:
        """One-shot read of what list_threads() pushes."""
        return await asyncio.to_thread(self._active_threads_sync, str(user_id))

    async def list_threads(self, user_id: str, on_update: ThreadsCallback) -> ListenerHandle:
        """
        Live list of the user's active threads, newest first.
        The current list is pushed immediately, then again after every
        change to the user's threads, until the handle is cancelled.
        """
        if not user_id:
            raise Unauthenticated("User ID is empty.")
        user_id = str(user_id)
        version = self._versions.get(user_id, 0)
        threads = await self.snapshot_threads(user_id)
        handle = self.hub.add(user_id, on_update)
        try:
            on_update(threads)
        except Exception:
            logger.exception("Initial thread list delivery failed for user %s", user_id)
        if self._versions.get(user_id, 0) != version:
            # changed while the initial list was being read
            await self._notify(user_id)
        return handle

    async def soft_delete(self, thread_id: str) -> None:
        user_id, changed = await asyncio.to_thread(self._soft_delete_sync, str(thread_id))
        if not changed:
            logger.debug("Thread %s already deleted, nothing to do", thread_id)
            return
        logger.debug("Thread %s status updated to deleted", thread_id)
        await self._notify(user_id)

    async def fetch_messages(self, thread_id: str) -> List[Message]:
        return await asyncio.to_thread(self._fetch_messages_sync, str(thread_id))

    async def _notify(self, user_id: str) -> None:
        self._versions[user_id] = self._versions.get(user_id, 0) + 1
        if not self.hub.has_listeners(user_id):
            return
        threads = await self.snapshot_threads(user_id)
        self.hub.publish(user_id, threads)
