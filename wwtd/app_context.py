# wwtd/app_context.py

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import sessionmaker

from wwtd.accounts import AccountService, Uploader
from wwtd.conversation import ConversationController
from wwtd.entities import User
from wwtd.entitlement import BillingCollaborator, EntitlementReconciler, ReceiptValidatorLike
from wwtd.gc_connection import GCConnection
from wwtd.listeners import ListenerHandle, ListenerHub
from wwtd.llm_client import ChatLlmClient, CompletionCapability
from wwtd.quota_ledger import QuotaLedger
from wwtd.receipt_validator import ReceiptValidator
from wwtd.settings import Settings
from wwtd.thread_store import ThreadStore

logger = logging.getLogger("wwtd_core")

_SESSION_KEY = "session"


class AuthSession:
    """
    Holds the opaque id of the signed-in user. Listeners get the new id on
    sign-in and None on sign-out.
    """

    def __init__(self):
        self._user_id = ""
        self._hub = ListenerHub("auth")

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def signed_in(self) -> bool:
        return bool(self._user_id)

    def current_user_id(self) -> str:
        return self._user_id

    def add_listener(self, callback: Callable[[Optional[str]], None]) -> ListenerHandle:
        return self._hub.add(_SESSION_KEY, callback)

    def sign_in(self, user_id: str) -> None:
        if not user_id:
            raise ValueError("sign_in requires a user id")
        self._user_id = str(user_id)
        logger.info("Signed in as %s", user_id)
        self._hub.publish(_SESSION_KEY, self._user_id)

    def sign_out(self) -> None:
        if not self._user_id:
            return
        logger.info("Signed out %s", self._user_id)
        self._user_id = ""
        self._hub.publish(_SESSION_KEY, None)

    def close(self) -> None:
        self._hub.clear()


@dataclass
class AppContext:
    settings: Settings
    session_factory: sessionmaker
    user_hub: ListenerHub
    thread_hub: ListenerHub
    auth: AuthSession
    ledger: QuotaLedger
    threads: ThreadStore
    accounts: AccountService
    entitlement: EntitlementReconciler
    conversation: ConversationController

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        billing: BillingCollaborator,
        completion: Optional[CompletionCapability] = None,
        validator: Optional[ReceiptValidatorLike] = None,
        uploader: Optional[Uploader] = None,
        session_factory: Optional[sessionmaker] = None,
    ) -> "AppContext":
        gc: Optional[GCConnection] = None
        if session_factory is None or uploader is None:
            gc = GCConnection(settings)
        if session_factory is None:
            session_factory = gc.build_db_session_factory()
        if uploader is None:
            uploader = gc.upload_to_gcs
        if completion is None:
            completion = ChatLlmClient(
                vertex_project=settings.project_id,
                vertex_region=settings.region,
                timeout=settings.completion_timeout,
                retries=settings.completion_retries,
            )
        if validator is None:
            validator = ReceiptValidator(
                settings.receipt_validation_url,
                shared_secret=settings.receipt_shared_secret,
                timeout_sec=settings.receipt_timeout,
            )

        auth = AuthSession()
        user_hub = ListenerHub("users")
        thread_hub = ListenerHub("threads")

        ledger = QuotaLedger(
            session_factory,
            missing_balance_default=settings.missing_balance_default,
            user_hub=user_hub,
        )
        threads = ThreadStore(session_factory, hub=thread_hub)
        accounts = AccountService(
            session_factory,
            initial_tokens=settings.initial_tokens,
            user_hub=user_hub,
            thread_hub=thread_hub,
            uploader=uploader,
        )
        entitlement = EntitlementReconciler(
            ledger,
            billing,
            validator,
            user_id_provider=auth.current_user_id,
            product_ids=settings.subscription_product_ids,
            purchase_timeout=settings.purchase_timeout,
        )
        billing.set_transaction_observer(entitlement.handle_transactions)
        conversation = ConversationController(
            ledger,
            threads,
            completion,
            user_id_provider=auth.current_user_id,
            model=settings.default_model,
            system_prompt=settings.system_prompt,
            preview_length=settings.preview_length,
            include_history=settings.include_history,
            completion_timeout=settings.completion_timeout,
        )

        ctx = cls(
            settings=settings,
            session_factory=session_factory,
            user_hub=user_hub,
            thread_hub=thread_hub,
            auth=auth,
            ledger=ledger,
            threads=threads,
            accounts=accounts,
            entitlement=entitlement,
            conversation=conversation,
        )
        auth.add_listener(ctx._on_auth_change)
        return ctx

    def _on_auth_change(self, user_id: Optional[str]) -> None:
        if user_id:
            return
        self.conversation.reset()
        self.entitlement.reset()
        self.ledger.clear_cache()
        logger.debug("Session state cleared after sign-out")

    async def sign_in(self, user_id: str, *, email: str = "", name: str = "") -> User:
        """Sign in and make sure the user document exists."""
        self.auth.sign_in(user_id)
        await self.accounts.create_account(user_id, email=email, name=name)
        return await self.ledger.get_user(user_id)

    def sign_out(self) -> None:
        self.auth.sign_out()

    async def delete_account(self) -> None:
        user_id = self.auth.user_id
        await self.accounts.delete_account(user_id)
        self.sign_out()

    def close(self) -> None:
        self.conversation.reset()
        self.user_hub.clear()
        self.thread_hub.clear()
        self.auth.close()
