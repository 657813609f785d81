import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from wwtd.entitlement import Product, ProductsResponse, Transaction, TransactionState
from wwtd.llm_client import Completion
from wwtd.receipt_validator import ReceiptEntry


def ms_from_now(**delta) -> str:
    when = datetime.now(timezone.utc) + timedelta(**delta)
    return str(int(when.timestamp() * 1000))


class FakeCompletion:
    def __init__(self, text: str = "Hi there", total_tokens: Optional[int] = 10, error: Optional[Exception] = None):
        self.text = text
        self.total_tokens = total_tokens
        self.error = error
        self.calls = []
        # when set, complete() blocks until the event is set
        self.gate: Optional[asyncio.Event] = None
        self.started = asyncio.Event()

    async def complete(self, turns, model):
        self.calls.append((list(turns), model))
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return Completion(text=self.text, total_tokens=self.total_tokens, model=model)


class FakeBilling:
    def __init__(self, products: Optional[List[Product]] = None):
        self.products = products if products is not None else [
            Product("monthly_unlimited", "$4.99"),
            Product("yearly_unlimited", "$49.99"),
        ]
        self.invalid_ids: List[str] = []
        self.can_pay = True
        self.receipt: Optional[str] = "cmVjZWlwdA=="
        self.restored: List[Transaction] = []
        self.restore_error: Optional[Exception] = None
        # transactions delivered to the observer when add_payment() is called
        self.on_payment: List[Transaction] = []
        self.finished: List[str] = []
        # raised, one per call, by the next finish_transaction() calls
        self.finish_errors: List[Exception] = []
        self.receipt_error: Optional[Exception] = None
        self.payments: List[str] = []
        self.observer = None

    def set_transaction_observer(self, observer):
        self.observer = observer

    async def fetch_products(self, product_ids):
        wanted = set(product_ids)
        return ProductsResponse(
            products=[p for p in self.products if p.product_id in wanted],
            invalid_product_ids=list(self.invalid_ids),
        )

    def can_make_payments(self) -> bool:
        return self.can_pay

    async def add_payment(self, product_id: str) -> None:
        self.payments.append(product_id)
        if self.on_payment and self.observer is not None:
            txs = list(self.on_payment)
            asyncio.get_running_loop().call_soon(lambda: asyncio.ensure_future(self.observer(txs)))

    async def finish_transaction(self, transaction: Transaction) -> None:
        if self.finish_errors:
            raise self.finish_errors.pop(0)
        self.finished.append(transaction.transaction_id)

    async def restore_completed_transactions(self) -> List[Transaction]:
        if self.restore_error is not None:
            raise self.restore_error
        return list(self.restored)

    async def read_receipt(self) -> Optional[str]:
        if self.receipt_error is not None:
            raise self.receipt_error
        return self.receipt


class FakeValidator:
    def __init__(self, entries: Optional[List[dict]] = None, error: Optional[Exception] = None):
        self.entries = entries or []
        self.error = error
        self.calls: List[str] = []

    async def validate(self, receipt_b64: str) -> List[ReceiptEntry]:
        self.calls.append(receipt_b64)
        if self.error is not None:
            raise self.error
        return [ReceiptEntry(**e) for e in self.entries]


def purchased(tx_id: str, product_id: str = "monthly_unlimited") -> Transaction:
    return Transaction(tx_id, product_id, TransactionState.PURCHASED)


def restored(tx_id: str, product_id: str = "monthly_unlimited") -> Transaction:
    return Transaction(tx_id, product_id, TransactionState.RESTORED)


def failed(tx_id: str, product_id: str = "monthly_unlimited", error: str = "Payment declined") -> Transaction:
    return Transaction(tx_id, product_id, TransactionState.FAILED, error=error)
