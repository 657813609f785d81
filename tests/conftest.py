from datetime import datetime

import pytest

from wwtd.entities import MessageThreadRow, UserRow, to_db_time
from wwtd.gc_connection import build_session_factory, create_db_engine
from wwtd.listeners import ListenerHub
from wwtd.quota_ledger import QuotaLedger
from wwtd.thread_store import ThreadStore


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    factory = build_session_factory(engine)
    yield factory
    engine.dispose()


@pytest.fixture
def make_user(session_factory):
    def _make(user_id="u1", *, tokens=100000, subscribed=False, email="", name="", plan=None):
        session = session_factory()
        try:
            session.add(UserRow(
                id=user_id,
                email=email,
                name=name,
                profile_photo="",
                available_tokens=tokens,
                is_subscribed=subscribed,
                subscription_plan=plan,
            ))
            session.commit()
        finally:
            session.close()
        return user_id

    return _make


@pytest.fixture
def make_thread(session_factory):
    def _make(thread_id, user_id="u1", *, created: datetime, preview="preview", status="active"):
        session = session_factory()
        try:
            session.add(MessageThreadRow(
                id=thread_id,
                user_id=user_id,
                date_created=to_db_time(created),
                preview_message=preview,
                model="gpt-4o-2024-05-13",
                status=status,
            ))
            session.commit()
        finally:
            session.close()
        return thread_id

    return _make


@pytest.fixture
def user_hub():
    return ListenerHub("users")


@pytest.fixture
def ledger(session_factory, user_hub):
    return QuotaLedger(session_factory, missing_balance_default=10000, user_hub=user_hub)


@pytest.fixture
def thread_store(session_factory):
    return ThreadStore(session_factory)


@pytest.fixture
def set_tokens(session_factory):
    def _set(user_id, tokens):
        session = session_factory()
        try:
            session.get(UserRow, user_id).available_tokens = tokens
            session.commit()
        finally:
            session.close()

    return _set
