from datetime import timedelta

import pytest

import orders as orders_module
from auth import Identity
from compensation import CompensationLog
from conftest import CUSTOMER_PHONE, FakeGateway, age_order, customer, rudraksha
from database import DocumentStore, utcnow
from errors import GatewayError, InvalidTransition, PermissionDenied, ValidationFailed
from orders import OrderService, can_transition
from schemas import Discount
from services import DiscountService, NotificationService, UserService


def _pay(orders, order):
    sig = FakeGateway.signature_for(order["razorpay_order_id"], "pay_1")
    return orders.confirm_payment(order["razorpay_order_id"], "pay_1", sig)


def test_create_order_prices_and_persists_pending_order(orders, store, gateway, identity):
    result = orders.create_order([rudraksha()], customer(), identity)

    assert result["subtotal"] == 900
    assert result["shipping_cost"] == 99
    assert result["total"] == 999
    assert gateway.created[0]["amount"] == 99900
    assert result["amount"] == 99900

    order = orders.get(result["order_id"])
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["razorpay_order_id"] == result["razorpay_order_id"]
    assert order["order_number"].startswith("RUD")
    assert order["items"][0]["total_price"] == 900
    assert [h["status"] for h in order["status_history"]] == ["pending"]


def test_free_shipping_at_threshold(orders, identity):
    result = orders.create_order([rudraksha(price=999, discount=0, quantity=1)], customer(), identity)
    assert result["shipping_cost"] == 0
    assert result["total"] == 999


def test_create_order_links_user_and_dedups_address(orders, store, identity):
    first = orders.create_order([rudraksha()], customer(), identity)
    second = orders.create_order([rudraksha(quantity=1)], customer(), identity)

    user = UserService(store).get(CUSTOMER_PHONE)
    assert user["name"] == "Asha Verma"
    assert len(user["addresses"]) == 1
    assert user["addresses"][0]["full_address"] == "12 Temple Road, Varanasi, Uttar Pradesh - 221001"
    assert user["order_ids"] == [first["order_id"], second["order_id"]]


def test_guest_checkout_skips_back_reference(orders, store):
    result = orders.create_order([rudraksha()], customer(phone="+91 99999 00000"), None)

    order = orders.get(result["order_id"])
    assert order["user_id"].startswith("guest_")
    guest_user = UserService(store).get("+919999900000")
    assert guest_user is not None
    assert guest_user["order_ids"] == []


def test_gateway_failure_aborts_checkout(orders, store, gateway, identity):
    gateway.fail = True
    with pytest.raises(GatewayError):
        orders.create_order([rudraksha()], customer(), identity)
    assert store.count("orders") == 0


def test_empty_cart_is_rejected(orders, identity):
    with pytest.raises(ValidationFailed):
        orders.create_order([], customer(), identity)


class FlakyOrderStore(DocumentStore):
    def __init__(self, database):
        super().__init__(database)
        self.orders_down = True

    def create(self, collection, data, doc_id=None):
        if collection == "orders" and self.orders_down:
            raise RuntimeError("write timed out")
        return super().create(collection, data, doc_id)


def test_persistence_failure_falls_back_to_local_id_and_replays(store, gateway, identity):
    flaky = FlakyOrderStore(store.db)
    result = OrderService(flaky, gateway).create_order([rudraksha()], customer(), identity)

    assert result["order_id"].startswith("local_")
    assert result["razorpay_order_id"] == "order_1"
    log = CompensationLog(flaky)
    assert [e["kind"] for e in log.open_entries()] == ["order_insert"]

    flaky.orders_down = False
    assert log.replay() == {"resolved": 1, "failed": 0}
    order = store.get_by_id("orders", result["order_id"])
    assert order["razorpay_order_id"] == "order_1"
    assert log.open_entries() == []
    assert result["order_id"] in UserService(store).get(CUSTOMER_PHONE)["order_ids"]


def test_replay_keeps_failing_entries_open(store, gateway, identity):
    flaky = FlakyOrderStore(store.db)
    OrderService(flaky, gateway).create_order([rudraksha()], customer(), identity)
    log = CompensationLog(flaky)
    assert log.replay() == {"resolved": 0, "failed": 1}
    assert log.open_entries()[0]["attempts"] == 1


class FlakyUserStore(DocumentStore):
    def __init__(self, database):
        super().__init__(database)
        self.users_down = True

    def update(self, collection, doc_id, data, expect=None, push=None):
        if collection == "users" and self.users_down:
            raise RuntimeError("users write rejected")
        return super().update(collection, doc_id, data, expect, push)


def test_user_write_failures_are_replayed(store, gateway, identity):
    flaky = FlakyUserStore(store.db)
    result = OrderService(flaky, gateway).create_order([rudraksha()], customer(), identity)

    assert store.get_by_id("orders", result["order_id"]) is not None
    log = CompensationLog(flaky)
    assert sorted(e["kind"] for e in log.open_entries()) == ["user_order_ref", "user_upsert"]

    flaky.users_down = False
    assert log.replay() == {"resolved": 2, "failed": 0}
    user = UserService(store).get(CUSTOMER_PHONE)
    assert len(user["addresses"]) == 1
    assert user["order_ids"] == [result["order_id"]]


# ----------------------- Payment confirmation -----------------------
def test_confirm_payment_completes_and_starts_processing(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    order = _pay(orders, orders.get(created["order_id"]))

    assert order["payment_status"] == "completed"
    assert order["status"] == "processing"
    assert order["paid_at"] is not None
    assert order["razorpay_payment_id"] == "pay_1"
    assert [h["status"] for h in order["status_history"]] == ["pending", "processing"]


def test_confirm_payment_rejects_bad_signature(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    with pytest.raises(ValidationFailed):
        orders.confirm_payment(created["razorpay_order_id"], "pay_1", "forged")
    assert orders.get(created["order_id"])["payment_status"] == "pending"


def test_confirm_payment_is_idempotent(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    _pay(orders, orders.get(created["order_id"]))
    again = _pay(orders, orders.get(created["order_id"]))
    assert again["payment_status"] == "completed"
    assert len(again["status_history"]) == 2


def test_completed_payment_is_never_reverted(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    _pay(orders, orders.get(created["order_id"]))

    result = orders.cancel_payment(created["razorpay_order_id"], "changed my mind")
    assert result["changed"] is False
    orders.handle_webhook_event({
        "event": "payment.failed",
        "payload": {"payment": {"entity": {"id": "pay_2", "order_id": created["razorpay_order_id"]}}},
    })
    orders.sweep_abandoned(now=utcnow() + timedelta(days=30))
    assert orders.get(created["order_id"])["payment_status"] == "completed"


def test_cancel_payment_marks_pending_as_failed(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    result = orders.cancel_payment(created["razorpay_order_id"], None)
    assert result["changed"] is True
    order = result["order"]
    assert order["payment_status"] == "failed"
    assert order["cancellation_reason"] == "Payment cancelled by user"
    assert order["status"] == "pending"


def test_webhook_capture_confirms_payment(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    outcome = orders.handle_webhook_event({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_9", "order_id": created["razorpay_order_id"]}}},
    })
    assert outcome == "captured"
    order = orders.get(created["order_id"])
    assert order["payment_status"] == "completed"
    assert order["razorpay_payment_id"] == "pay_9"


def test_webhook_ignores_unknown_events_and_orders(orders):
    assert orders.handle_webhook_event({"event": "refund.created"}) == "ignored"
    assert orders.handle_webhook_event({
        "event": "payment.captured",
        "payload": {"payment": {"entity": {"id": "pay_1", "order_id": "order_missing"}}},
    }) == "ignored"


# ----------------------- Retry -----------------------
def _failed_order(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    orders.cancel_payment(created["razorpay_order_id"])
    return orders.get(created["order_id"])


def test_retry_replaces_only_gateway_order_id(orders, identity):
    before = _failed_order(orders, identity)
    result = orders.retry_payment(before["id"], identity)
    after = orders.get(before["id"])

    assert result["razorpay_order_id"] == "order_2"
    assert after["razorpay_order_id"] == "order_2"
    for field in ("items", "subtotal", "shipping_cost", "total", "status", "payment_status", "status_history"):
        assert after[field] == before[field]
    assert result["amount"] == 99900


def test_retry_then_pay_completes_order(orders, identity):
    failed = _failed_order(orders, identity)
    orders.retry_payment(failed["id"], identity)
    order = _pay(orders, orders.get(failed["id"]))
    assert order["payment_status"] == "completed"


def test_retry_rejected_for_completed_payment(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    _pay(orders, orders.get(created["order_id"]))
    with pytest.raises(ValidationFailed):
        orders.retry_payment(created["order_id"], identity)


def test_retry_rejected_for_cancelled_order(orders, identity):
    failed = _failed_order(orders, identity)
    orders.update_status(failed["id"], "cancelled")
    with pytest.raises(ValidationFailed):
        orders.retry_payment(failed["id"], identity)


def test_retry_rejected_for_other_user(orders, identity):
    failed = _failed_order(orders, identity)
    with pytest.raises(PermissionDenied):
        orders.retry_payment(failed["id"], Identity("+910000000000"))


def test_guest_can_retry_with_matching_phone(orders):
    created = orders.create_order([rudraksha()], customer(), None)
    orders.cancel_payment(created["razorpay_order_id"])
    result = orders.retry_payment(created["order_id"], Identity(CUSTOMER_PHONE))
    assert result["razorpay_order_id"] == "order_2"


# ----------------------- Admin transitions -----------------------
def test_transition_rules():
    assert can_transition("pending", "processing")
    assert can_transition("pending", "shipped")
    assert not can_transition("shipped", "packed")
    assert not can_transition("packed", "packed")
    for status in ("pending", "processing", "packed", "shipped"):
        assert can_transition(status, "cancelled")
    assert not can_transition("delivered", "cancelled")
    for status in ("pending", "processing", "delivered", "cancelled"):
        assert not can_transition("cancelled", status)


def test_status_updates_append_history(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    order = _pay(orders, orders.get(created["order_id"]))
    for status in ("packed", "shipped", "delivered"):
        order = orders.update_status(order["id"], status, updated_by="admin")

    assert [h["status"] for h in order["status_history"]] == ["pending", "processing", "packed", "shipped", "delivered"]
    assert order["status_history"][-1]["updated_by"] == "admin"
    assert order["delivered_at"] is not None

    with pytest.raises(InvalidTransition):
        orders.update_status(order["id"], "cancelled")
    assert len(orders.get(order["id"])["status_history"]) == 5


def test_backward_transition_rejected(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    orders.update_status(created["order_id"], "shipped")
    with pytest.raises(InvalidTransition):
        orders.update_status(created["order_id"], "processing")


def test_unknown_status_rejected(orders, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    with pytest.raises(ValidationFailed):
        orders.update_status(created["order_id"], "teleported")


def test_processing_backfills_paid_at(orders, store, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    store.update("orders", created["order_id"], {"payment_status": "completed"})
    order = orders.update_status(created["order_id"], "processing")
    assert order["paid_at"] is not None


def test_status_update_creates_notification(orders, store, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    orders.update_status(created["order_id"], "processing")
    notes = NotificationService(store).list(user_id=CUSTOMER_PHONE)
    assert len(notes) == 1
    assert notes[0]["data"]["status"] == "processing"


def test_notification_failure_does_not_roll_back(orders, identity, monkeypatch):
    created = orders.create_order([rudraksha()], customer(), identity)

    def boom(self, notification):
        raise RuntimeError("notification store down")

    monkeypatch.setattr(NotificationService, "create", boom)
    order = orders.update_status(created["order_id"], "processing")
    assert order["status"] == "processing"


# ----------------------- Abandonment sweep -----------------------
def test_sweep_expires_and_cancels_stale_orders(orders, store, identity):
    stale_pending = orders.create_order([rudraksha()], customer(), identity)["order_id"]
    stale_failed = orders.create_order([rudraksha()], customer(), identity)
    recent = orders.create_order([rudraksha()], customer(), identity)["order_id"]
    orders.cancel_payment(stale_failed["razorpay_order_id"])
    age_order(store, stale_pending, 8)
    age_order(store, stale_failed["order_id"], 15)
    age_order(store, recent, 6)

    assert orders.sweep_abandoned() == {"payments_failed": 1, "orders_cancelled": 1}

    assert orders.get(stale_pending)["payment_status"] == "failed"
    assert orders.get(stale_pending)["status"] == "pending"
    cancelled = orders.get(stale_failed["order_id"])
    assert cancelled["status"] == "cancelled"
    assert cancelled["status_history"][-1]["updated_by"] == "system"
    untouched = orders.get(recent)
    assert (untouched["status"], untouched["payment_status"]) == ("pending", "pending")

    assert orders.sweep_abandoned() == {"payments_failed": 0, "orders_cancelled": 0}


def test_sweep_leaves_paid_orders_alone(orders, store, identity):
    created = orders.create_order([rudraksha()], customer(), identity)
    _pay(orders, orders.get(created["order_id"]))
    age_order(store, created["order_id"], 20)
    assert orders.sweep_abandoned() == {"payments_failed": 0, "orders_cancelled": 0}


def test_stats(orders, identity):
    paid = orders.create_order([rudraksha()], customer(), identity)
    orders.create_order([rudraksha(quantity=1)], customer(), identity)
    _pay(orders, orders.get(paid["order_id"]))

    stats = orders.stats()
    assert stats["total_orders"] == 2
    assert stats["pending_orders"] == 1
    assert stats["completed_orders"] == 1
    assert stats["total_revenue"] == 999


# ----------------------- Order numbers -----------------------
def test_order_numbers_differ_within_one_millisecond(orders, identity, monkeypatch):
    monkeypatch.setattr(orders_module, "_millis", lambda: 1718000000123)
    first = orders.create_order([rudraksha()], customer(), identity)["order_number"]
    second = orders.create_order([rudraksha()], customer(), identity)["order_number"]
    assert first.startswith("RUD00000123")
    assert first != second


def test_duplicate_order_number_is_redrawn(orders, identity, monkeypatch):
    numbers = iter(["RUD1", "RUD1", "RUD2"])
    monkeypatch.setattr(orders_module, "generate_order_number", lambda: next(numbers))
    assert orders.create_order([rudraksha()], customer(), identity)["order_number"] == "RUD1"
    assert orders.create_order([rudraksha()], customer(), identity)["order_number"] == "RUD2"


def test_order_number_allocation_gives_up(orders, identity, monkeypatch):
    taken = orders.create_order([rudraksha()], customer(), identity)["order_number"]
    monkeypatch.setattr(orders_module, "generate_order_number", lambda: taken)
    with pytest.raises(InvalidTransition):
        orders.create_order([rudraksha()], customer(), identity)


# ----------------------- Discounts at checkout -----------------------
def _festival_code(store, **overrides):
    data = {"code": "DIWALI10", "amount": 10, "expiry": utcnow() + timedelta(days=3), "usage_limit": 5}
    data.update(overrides)
    DiscountService(store).create(Discount(**data))


def test_discount_code_reduces_total_before_shipping(orders, store, gateway, identity):
    _festival_code(store)
    result = orders.create_order([rudraksha(quantity=3)], customer(), identity, discount_code="diwali10")

    # 1350 - 135 = 1215 stays above the free shipping threshold.
    assert result["subtotal"] == 1350
    assert result["discount_amount"] == 135
    assert result["shipping_cost"] == 0
    assert result["total"] == 1215
    assert gateway.created[0]["amount"] == 121500

    order = orders.get(result["order_id"])
    assert order["discount_code"] == "DIWALI10"
    assert order["discount_amount"] == 135


def test_discount_can_bring_shipping_back(orders, store, identity):
    _festival_code(store, code="FLAT100", type="fixed", amount=100)
    result = orders.create_order([rudraksha(quantity=3, discount=0, price=350)], customer(), identity,
                                 discount_code="FLAT100")
    assert result["subtotal"] == 1050
    assert result["shipping_cost"] == 99
    assert result["total"] == 1049


def test_invalid_discount_code_aborts_checkout(orders, store, gateway, identity):
    _festival_code(store, code="OLD", expiry=utcnow() - timedelta(days=1))
    with pytest.raises(ValidationFailed, match="expired"):
        orders.create_order([rudraksha()], customer(), identity, discount_code="OLD")
    with pytest.raises(ValidationFailed, match="not found"):
        orders.create_order([rudraksha()], customer(), identity, discount_code="NOPE")
    assert gateway.created == []


def test_discount_is_counted_only_once_paid(orders, store, identity):
    _festival_code(store)
    created = orders.create_order([rudraksha()], customer(), identity, discount_code="DIWALI10")
    assert DiscountService(store).get_by_code("DIWALI10")["used_count"] == 0

    _pay(orders, orders.get(created["order_id"]))
    _pay(orders, orders.get(created["order_id"]))
    assert DiscountService(store).get_by_code("DIWALI10")["used_count"] == 1


def test_exhausted_code_does_not_fail_payment(orders, store, identity):
    _festival_code(store, usage_limit=1)
    created = orders.create_order([rudraksha()], customer(), identity, discount_code="DIWALI10")
    DiscountService(store).redeem("DIWALI10")

    paid = _pay(orders, orders.get(created["order_id"]))
    assert paid["payment_status"] == "completed"
