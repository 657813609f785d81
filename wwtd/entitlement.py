# wwtd/entitlement.py

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable, List, Optional, Protocol, Tuple

from wwtd.entities import SubscriptionState
from wwtd.errors import Busy, CoreError, Unauthenticated, UpstreamFailure
from wwtd.quota_ledger import QuotaLedger
from wwtd.receipt_validator import ActiveSubscription, ReceiptEntry, select_active_subscription

logger = logging.getLogger("wwtd_core")


class PurchaseState(str, Enum):
    IDLE = "idle"
    PURCHASING = "purchasing"
    VERIFYING = "verifying"
    ENTITLED = "entitled"
    FAILED = "failed"


class TransactionState(str, Enum):
    PURCHASING = "purchasing"
    PURCHASED = "purchased"
    RESTORED = "restored"
    FAILED = "failed"
    DEFERRED = "deferred"


@dataclass(frozen=True)
class Product:
    product_id: str
    display_price: str = ""
    title: str = ""


@dataclass(frozen=True)
class ProductsResponse:
    products: List[Product] = field(default_factory=list)
    invalid_product_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class Transaction:
    transaction_id: str
    product_id: str
    state: TransactionState
    error: Optional[str] = None


@dataclass(frozen=True)
class PurchaseOutcome:
    status: str                 # "ok" | "error"
    action: str                 # "purchased" | "restored" | "revoked" | "validated" | "unchanged" | "failed"
    message: str = ""
    product_id: Optional[str] = None
    subscription: Optional[SubscriptionState] = None
    error_code: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


TransactionObserver = Callable[[List[Transaction]], Awaitable[None]]


class BillingCollaborator(Protocol):
    async def fetch_products(self, product_ids: Iterable[str]) -> ProductsResponse: ...

    def can_make_payments(self) -> bool: ...

    async def add_payment(self, product_id: str) -> None: ...

    async def finish_transaction(self, transaction: Transaction) -> None: ...

    async def restore_completed_transactions(self) -> List[Transaction]: ...

    async def read_receipt(self) -> Optional[str]: ...

    def set_transaction_observer(self, observer: TransactionObserver) -> None: ...


class ReceiptValidatorLike(Protocol):
    async def validate(self, receipt_b64: str) -> List[ReceiptEntry]: ...


def _failed(message: str, *, code: str, product_id: Optional[str] = None) -> PurchaseOutcome:
    return PurchaseOutcome(status="error", action="failed", message=message, product_id=product_id, error_code=code)


class EntitlementReconciler:
    """
    Purchase lifecycle: idle -> purchasing -> verifying -> entitled, or
    purchasing -> failed -> idle. Restore and launch-time receipt checks
    enter at verifying; restore always ends at idle. Any failure after
    verifying starts returns to idle so the next purchase can proceed.

    The billing collaborator pushes transaction updates into
    handle_transactions(); every transaction it reports is acknowledged
    exactly once, whatever the outcome.
    """

    def __init__(
        self,
        ledger: QuotaLedger,
        billing: BillingCollaborator,
        validator: ReceiptValidatorLike,
        *,
        user_id_provider: Callable[[], str],
        product_ids: Iterable[str] = ("monthly_unlimited", "yearly_unlimited"),
        purchase_timeout: Optional[float] = 300.0,
        max_finished: int = 1024,
    ):
        self.ledger = ledger
        self.billing = billing
        self.validator = validator
        self.user_id_provider = user_id_provider
        self.product_ids: Tuple[str, ...] = tuple(product_ids)
        self.purchase_timeout = purchase_timeout
        self.max_finished = max_finished

        self.state = PurchaseState.IDLE
        self.products: List[Product] = []
        self.product_price: Optional[str] = None
        self.transaction_error: Optional[str] = None
        self.subscription = SubscriptionState(is_subscribed=False)

        # transaction ids whose finish_transaction() returned, oldest first
        self._finished: "OrderedDict[str, None]" = OrderedDict()
        self._pending: Optional[Tuple[str, asyncio.Future]] = None

    # -----------------------
    # helpers
    # -----------------------

    def _set_state(self, state: PurchaseState) -> None:
        if state != self.state:
            logger.debug("Purchase state %s -> %s", self.state.value, state.value)
        self.state = state

    async def _acknowledge(self, tx: Transaction) -> bool:
        """
        Finish the transaction with the billing collaborator.

        Returns False when it was already finished earlier. A failed finish
        is logged and not remembered, so a redelivery retries it.
        """
        if tx.transaction_id in self._finished:
            logger.debug("Transaction %s already finished, skipping", tx.transaction_id)
            return False
        try:
            await self.billing.finish_transaction(tx)
        except Exception:
            logger.exception("Error finishing transaction %s, will retry on redelivery", tx.transaction_id)
            return True
        self._finished[tx.transaction_id] = None
        while len(self._finished) > self.max_finished:
            self._finished.popitem(last=False)
        return True

    def _as_core_error(self, source: str, exc: Exception) -> CoreError:
        if isinstance(exc, CoreError):
            return exc
        return UpstreamFailure.wrap(source, exc)

    def _resolve_pending(self, outcome: PurchaseOutcome) -> None:
        if self._pending is None:
            return
        _, future = self._pending
        if not future.done():
            future.set_result(outcome)

    async def _active_from_receipt(self) -> Optional[ActiveSubscription]:
        receipt = await self.billing.read_receipt()
        if not receipt:
            logger.info("No receipt found.")
            return None
        entries = await self.validator.validate(receipt)
        return select_active_subscription(entries, self.product_ids)

    async def _write_entitlement(
        self,
        is_subscribed: bool,
        expiration_date: Optional[datetime] = None,
        plan_id: Optional[str] = None,
    ) -> SubscriptionState:
        self.subscription = SubscriptionState(
            is_subscribed=is_subscribed,
            expiration_date=expiration_date,
            plan_id=plan_id,
        )
        user_id = self.user_id_provider()
        if not user_id:
            logger.warning("No signed-in user, subscription status kept locally only")
            return self.subscription
        await self.ledger.set_entitlement(user_id, is_subscribed, expiration_date, plan_id)
        return self.subscription

    async def _entitle_after_transaction(self, product_id: str) -> SubscriptionState:
        """
        The billing collaborator accepted payment, so the user is entitled
        even when the receipt can't be validated right now.
        """
        self._set_state(PurchaseState.VERIFYING)
        active = None
        try:
            active = await self._active_from_receipt()
        except CoreError as e:
            logger.warning("Receipt validation after transaction failed: %s", e.message)
        except Exception:
            logger.exception("Error reading receipt after transaction for %s", product_id)

        if active is not None:
            sub = await self._write_entitlement(True, active.expires_at, active.product_id)
        else:
            sub = await self._write_entitlement(True, None, product_id)
        self._set_state(PurchaseState.ENTITLED)
        return sub

    # -----------------------
    # catalog
    # -----------------------

    async def load_products(self) -> List[Product]:
        try:
            response = await self.billing.fetch_products(self.product_ids)
        except Exception as e:
            raise UpstreamFailure.wrap("product lookup", e)

        self.products = list(response.products)
        if self.products:
            self.product_price = self.products[0].display_price
        else:
            logger.info("No products found or product not matched.")
        for invalid in response.invalid_product_ids:
            logger.warning("Invalid product identifier: %s", invalid)
        return self.products

    def product(self, product_id: str) -> Optional[Product]:
        return next((p for p in self.products if p.product_id == product_id), None)

    # -----------------------
    # purchase
    # -----------------------

    async def start_purchase(self, product_id: str) -> PurchaseOutcome:
        if self.state in (PurchaseState.PURCHASING, PurchaseState.VERIFYING):
            return _failed("A purchase is already in progress.", code=Busy.code, product_id=product_id)

        if self.product(product_id) is None:
            logger.info("Product %s is not loaded, cannot initiate payment.", product_id)
            return _failed("Product not available.", code="product_unavailable", product_id=product_id)

        if not self.billing.can_make_payments():
            return _failed("Payments are not allowed on this device.", code="payments_disabled", product_id=product_id)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending = (product_id, future)
        self.transaction_error = None
        self._set_state(PurchaseState.PURCHASING)
        try:
            try:
                await self.billing.add_payment(product_id)
            except Exception as e:
                err = UpstreamFailure.wrap("payment", e)
                self._set_state(PurchaseState.IDLE)
                return _failed(err.message, code=err.code, product_id=product_id)
            logger.info("Added payment for product %s to the payment queue.", product_id)

            try:
                return await asyncio.wait_for(asyncio.shield(future), timeout=self.purchase_timeout)
            except asyncio.TimeoutError:
                logger.warning("Purchase of %s timed out waiting for the billing collaborator", product_id)
                self._set_state(PurchaseState.IDLE)
                return _failed("Purchase timed out.", code=UpstreamFailure.code, product_id=product_id)
        finally:
            self._pending = None

    async def handle_transactions(self, transactions: Iterable[Transaction]) -> None:
        """Transaction observer entry point for the billing collaborator."""
        for tx in transactions:
            if tx.state in (TransactionState.PURCHASED, TransactionState.RESTORED):
                if not await self._acknowledge(tx):
                    continue
                try:
                    sub = await self._entitle_after_transaction(tx.product_id)
                except Exception as e:
                    logger.exception("Error recording entitlement for transaction %s", tx.transaction_id)
                    err = self._as_core_error("entitlement", e)
                    self.transaction_error = err.message
                    self._set_state(PurchaseState.IDLE)
                    self._resolve_pending(_failed(err.message, code=err.code, product_id=tx.product_id))
                    continue
                self._resolve_pending(PurchaseOutcome(
                    status="ok",
                    action="purchased" if tx.state == TransactionState.PURCHASED else "restored",
                    product_id=sub.plan_id or tx.product_id,
                    subscription=sub,
                ))

            elif tx.state == TransactionState.FAILED:
                if not await self._acknowledge(tx):
                    continue
                self.transaction_error = tx.error or "Transaction failed."
                self._set_state(PurchaseState.FAILED)
                logger.info("Transaction %s for %s failed: %s", tx.transaction_id, tx.product_id, self.transaction_error)
                self._resolve_pending(_failed(
                    self.transaction_error,
                    code=UpstreamFailure.code,
                    product_id=tx.product_id,
                ))
                self._set_state(PurchaseState.IDLE)

            else:
                logger.debug("Transaction %s in state %s, waiting", tx.transaction_id, tx.state.value)

    # -----------------------
    # restore / re-validation
    # -----------------------

    async def restore_purchases(self) -> PurchaseOutcome:
        logger.info("Restoring purchases...")
        try:
            transactions = await self.billing.restore_completed_transactions()
        except Exception as e:
            logger.warning("Restore transactions failed with error: %s", e)
            err = UpstreamFailure.wrap("restore", e)
            return _failed(err.message, code=err.code)

        try:
            if not transactions:
                sub = await self._write_entitlement(False)
                return PurchaseOutcome(status="ok", action="revoked", message="No purchases to restore.", subscription=sub)

            for tx in transactions:
                await self._acknowledge(tx)
            sub = await self._entitle_after_transaction(transactions[-1].product_id)
            return PurchaseOutcome(status="ok", action="restored", product_id=sub.plan_id, subscription=sub)
        except Exception as e:
            logger.exception("Error recording restored entitlement")
            err = self._as_core_error("restore", e)
            return _failed(err.message, code=err.code)
        finally:
            self._set_state(PurchaseState.IDLE)

    async def revalidate_receipt(self) -> PurchaseOutcome:
        """
        Launch-time check. Only an active entry changes anything; an absent
        receipt or only expired entries leave entitlement as it is.
        """
        previous = self.state
        self._set_state(PurchaseState.VERIFYING)
        try:
            if not self.user_id_provider():
                raise Unauthenticated("User ID is empty.")
            active = await self._active_from_receipt()
        except CoreError as e:
            self._set_state(previous)
            return _failed(e.message, code=e.code)
        except Exception as e:
            logger.exception("Error re-validating receipt")
            self._set_state(previous)
            err = UpstreamFailure.wrap("receipt", e)
            return _failed(err.message, code=err.code)

        if active is None:
            self._set_state(previous)
            return PurchaseOutcome(status="ok", action="unchanged", subscription=self.subscription)

        try:
            sub = await self._write_entitlement(True, active.expires_at, active.product_id)
        except Exception as e:
            logger.exception("Error recording re-validated entitlement")
            self._set_state(previous)
            err = self._as_core_error("entitlement", e)
            return _failed(err.message, code=err.code, product_id=active.product_id)
        self._set_state(PurchaseState.ENTITLED)
        return PurchaseOutcome(status="ok", action="validated", product_id=active.product_id, subscription=sub)

    def reset(self) -> None:
        """Sign-out: forget per-user state, fail any waiting purchase."""
        self._resolve_pending(_failed("Signed out.", code=Unauthenticated.code))
        self.subscription = SubscriptionState(is_subscribed=False)
        self.transaction_error = None
        self._set_state(PurchaseState.IDLE)
