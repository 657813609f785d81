import asyncio

import pytest

from wwtd.entitlement import EntitlementReconciler, PurchaseState
from wwtd.errors import UpstreamFailure

from tests.helpers import FakeBilling, FakeValidator, failed, ms_from_now, purchased, restored


def _reconciler(ledger, billing, validator, *, user_id="u1", purchase_timeout=5.0):
    reconciler = EntitlementReconciler(
        ledger,
        billing,
        validator,
        user_id_provider=lambda: user_id,
        product_ids=("monthly_unlimited", "yearly_unlimited"),
        purchase_timeout=purchase_timeout,
    )
    billing.set_transaction_observer(reconciler.handle_transactions)
    return reconciler


@pytest.mark.asyncio
async def test_load_products_exposes_price(ledger):
    billing = FakeBilling()
    billing.invalid_ids = ["legacy_plan"]
    reconciler = _reconciler(ledger, billing, FakeValidator())

    products = await reconciler.load_products()

    assert [p.product_id for p in products] == ["monthly_unlimited", "yearly_unlimited"]
    assert reconciler.product_price == "$4.99"


@pytest.mark.asyncio
async def test_purchase_validates_receipt_and_entitles(ledger, make_user):
    make_user("u1", tokens=0)
    billing = FakeBilling()
    billing.on_payment = [purchased("t1")]
    validator = FakeValidator([{"product_id": "monthly_unlimited", "expires_date_ms": ms_from_now(days=30)}])
    reconciler = _reconciler(ledger, billing, validator)
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("monthly_unlimited")

    assert outcome.ok
    assert outcome.action == "purchased"
    assert reconciler.state == PurchaseState.ENTITLED
    assert billing.finished == ["t1"]
    sub = await ledger.get_subscription("u1")
    assert sub.is_subscribed is True
    assert sub.plan_id == "monthly_unlimited"
    assert sub.expiration_date is not None
    # subscribers are admitted with no tokens
    await ledger.admit("u1")


@pytest.mark.asyncio
async def test_purchase_entitles_even_if_validation_fails(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.on_payment = [purchased("t1", "yearly_unlimited")]
    validator = FakeValidator(error=UpstreamFailure("receipt validation: 503"))
    reconciler = _reconciler(ledger, billing, validator)
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("yearly_unlimited")

    assert outcome.ok
    sub = await ledger.get_subscription("u1")
    assert sub.is_subscribed is True
    assert sub.plan_id == "yearly_unlimited"
    assert sub.expiration_date is None


@pytest.mark.asyncio
async def test_each_transaction_is_finished_once(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    validator = FakeValidator()
    reconciler = _reconciler(ledger, billing, validator)

    await reconciler.handle_transactions([purchased("t1"), purchased("t1")])
    await reconciler.handle_transactions([purchased("t1"), failed("t2"), failed("t2")])

    assert billing.finished == ["t1", "t2"]
    assert len(validator.calls) == 1


@pytest.mark.asyncio
async def test_failed_transaction_returns_to_idle(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.on_payment = [failed("t9", error="Payment declined")]
    reconciler = _reconciler(ledger, billing, FakeValidator())
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("monthly_unlimited")

    assert not outcome.ok
    assert outcome.error_code == "upstream_failure"
    assert outcome.message == "Payment declined"
    assert reconciler.transaction_error == "Payment declined"
    assert reconciler.state == PurchaseState.IDLE
    assert billing.finished == ["t9"]
    assert (await ledger.get_subscription("u1")).is_subscribed is False


@pytest.mark.asyncio
async def test_unknown_product_is_not_purchasable(ledger):
    billing = FakeBilling()
    reconciler = _reconciler(ledger, billing, FakeValidator())
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("lifetime_unlimited")

    assert outcome.message == "Product not available."
    assert billing.payments == []


@pytest.mark.asyncio
async def test_payments_disabled(ledger):
    billing = FakeBilling()
    billing.can_pay = False
    reconciler = _reconciler(ledger, billing, FakeValidator())
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("monthly_unlimited")

    assert outcome.message == "Payments are not allowed on this device."
    assert reconciler.state == PurchaseState.IDLE


@pytest.mark.asyncio
async def test_purchase_times_out_without_transaction(ledger):
    billing = FakeBilling()
    reconciler = _reconciler(ledger, billing, FakeValidator(), purchase_timeout=0.05)
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("monthly_unlimited")

    assert not outcome.ok
    assert outcome.error_code == "upstream_failure"
    assert reconciler.state == PurchaseState.IDLE
    assert billing.payments == ["monthly_unlimited"]


@pytest.mark.asyncio
async def test_reset_releases_waiting_purchase(ledger):
    billing = FakeBilling()
    reconciler = _reconciler(ledger, billing, FakeValidator(), purchase_timeout=None)
    await reconciler.load_products()

    task = asyncio.ensure_future(reconciler.start_purchase("monthly_unlimited"))
    await asyncio.sleep(0)
    assert reconciler.state == PurchaseState.PURCHASING

    reconciler.reset()
    outcome = await asyncio.wait_for(task, timeout=1)

    assert outcome.error_code == "unauthenticated"
    assert reconciler.state == PurchaseState.IDLE


@pytest.mark.asyncio
async def test_restore_with_no_transactions_revokes(ledger, make_user):
    make_user("u1", subscribed=True, plan="monthly_unlimited")
    billing = FakeBilling()
    reconciler = _reconciler(ledger, billing, FakeValidator())

    outcome = await reconciler.restore_purchases()

    assert outcome.ok
    assert outcome.action == "revoked"
    assert (await ledger.get_subscription("u1")).is_subscribed is False


@pytest.mark.asyncio
async def test_restore_with_transactions_entitles(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.restored = [restored("r1", "monthly_unlimited"), restored("r2", "yearly_unlimited")]
    reconciler = _reconciler(ledger, billing, FakeValidator())

    outcome = await reconciler.restore_purchases()

    assert outcome.action == "restored"
    assert reconciler.state == PurchaseState.IDLE
    assert billing.finished == ["r1", "r2"]
    sub = await ledger.get_subscription("u1")
    assert sub.is_subscribed is True
    assert sub.plan_id == "yearly_unlimited"


@pytest.mark.asyncio
async def test_restore_failure_keeps_entitlement(ledger, make_user):
    make_user("u1", subscribed=True, plan="monthly_unlimited")
    billing = FakeBilling()
    billing.restore_error = RuntimeError("store unavailable")
    reconciler = _reconciler(ledger, billing, FakeValidator())

    outcome = await reconciler.restore_purchases()

    assert not outcome.ok
    assert outcome.error_code == "upstream_failure"
    assert (await ledger.get_subscription("u1")).is_subscribed is True


@pytest.mark.asyncio
async def test_revalidate_picks_latest_active_plan(ledger, make_user):
    make_user("u1")
    validator = FakeValidator([
        {"product_id": "monthly_unlimited", "expires_date_ms": ms_from_now(days=20)},
        {"product_id": "yearly_unlimited", "expires_date_ms": ms_from_now(days=300)},
    ])
    reconciler = _reconciler(ledger, FakeBilling(), validator)

    outcome = await reconciler.revalidate_receipt()

    assert outcome.action == "validated"
    assert reconciler.state == PurchaseState.ENTITLED
    sub = await ledger.get_subscription("u1")
    assert sub.plan_id == "yearly_unlimited"


@pytest.mark.asyncio
async def test_revalidate_without_active_entry_changes_nothing(ledger, make_user):
    make_user("u1", subscribed=True, plan="monthly_unlimited")
    validator = FakeValidator([{"product_id": "monthly_unlimited", "expires_date_ms": ms_from_now(days=-1)}])
    reconciler = _reconciler(ledger, FakeBilling(), validator)

    outcome = await reconciler.revalidate_receipt()

    assert outcome.action == "unchanged"
    assert reconciler.state == PurchaseState.IDLE
    sub = await ledger.get_subscription("u1")
    assert sub.is_subscribed is True
    assert sub.plan_id == "monthly_unlimited"


@pytest.mark.asyncio
async def test_revalidate_without_receipt_or_user(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.receipt = None
    validator = FakeValidator()

    outcome = await _reconciler(ledger, billing, validator).revalidate_receipt()
    assert outcome.action == "unchanged"
    assert validator.calls == []

    outcome = await _reconciler(ledger, FakeBilling(), validator, user_id="").revalidate_receipt()
    assert outcome.error_code == "unauthenticated"


@pytest.mark.asyncio
async def test_receipt_read_error_on_revalidate_returns_to_idle(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.receipt_error = RuntimeError("keychain unavailable")
    billing.on_payment = [purchased("t1")]
    reconciler = _reconciler(ledger, billing, FakeValidator())
    await reconciler.load_products()

    outcome = await reconciler.revalidate_receipt()

    assert not outcome.ok
    assert outcome.error_code == "upstream_failure"
    assert "keychain unavailable" in outcome.message
    assert reconciler.state == PurchaseState.IDLE

    # not stuck in verifying: the next purchase goes through
    purchase = await reconciler.start_purchase("monthly_unlimited")
    assert purchase.ok
    assert (await ledger.get_subscription("u1")).is_subscribed is True


@pytest.mark.asyncio
async def test_revalidate_for_missing_user_fails_without_entitling(ledger):
    validator = FakeValidator([{"product_id": "monthly_unlimited", "expires_date_ms": ms_from_now(days=30)}])
    reconciler = _reconciler(ledger, FakeBilling(), validator, user_id="ghost")

    outcome = await reconciler.revalidate_receipt()

    assert not outcome.ok
    assert outcome.error_code == "not_found"
    assert reconciler.state == PurchaseState.IDLE


@pytest.mark.asyncio
async def test_restore_for_missing_user_returns_to_idle(ledger):
    billing = FakeBilling()
    billing.restored = [restored("r1")]
    reconciler = _reconciler(ledger, billing, FakeValidator(), user_id="ghost")

    outcome = await reconciler.restore_purchases()

    assert not outcome.ok
    assert outcome.error_code == "not_found"
    assert reconciler.state == PurchaseState.IDLE
    assert billing.finished == ["r1"]


@pytest.mark.asyncio
async def test_purchase_with_failed_ledger_write_returns_to_idle(ledger):
    billing = FakeBilling()
    billing.on_payment = [purchased("t1")]
    reconciler = _reconciler(ledger, billing, FakeValidator(), user_id="ghost", purchase_timeout=0.1)
    await reconciler.load_products()

    outcome = await reconciler.start_purchase("monthly_unlimited")

    assert not outcome.ok
    assert outcome.error_code == "not_found"
    assert reconciler.state == PurchaseState.IDLE
    assert reconciler.transaction_error is not None

    again = await reconciler.start_purchase("monthly_unlimited")
    assert again.error_code != "busy"


@pytest.mark.asyncio
async def test_failed_finish_is_retried_on_redelivery(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    billing.finish_errors = [RuntimeError("store connection lost")]
    reconciler = _reconciler(ledger, billing, FakeValidator())

    await reconciler.handle_transactions([purchased("t1")])

    # entitled even though the acknowledgement failed
    assert billing.finished == []
    assert (await ledger.get_subscription("u1")).is_subscribed is True
    assert reconciler.state == PurchaseState.ENTITLED

    await reconciler.handle_transactions([purchased("t1")])
    await reconciler.handle_transactions([purchased("t1")])

    assert billing.finished == ["t1"]
    assert (await ledger.get_subscription("u1")).plan_id == "monthly_unlimited"


@pytest.mark.asyncio
async def test_finished_ids_are_bounded(ledger, make_user):
    make_user("u1")
    billing = FakeBilling()
    reconciler = EntitlementReconciler(
        ledger,
        billing,
        FakeValidator(),
        user_id_provider=lambda: "u1",
        max_finished=2,
    )

    await reconciler.handle_transactions([failed("t1"), failed("t2"), failed("t3")])
    await reconciler.handle_transactions([failed("t3"), failed("t2")])

    assert billing.finished == ["t1", "t2", "t3"]

    # only the most recent ids are remembered
    await reconciler.handle_transactions([failed("t1")])
    assert billing.finished == ["t1", "t2", "t3", "t1"]
