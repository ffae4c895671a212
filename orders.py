"""
Order lifecycle and payment reconciliation.

An order carries two statuses. ``status`` is the fulfilment state and only
moves forward (pending -> processing -> packed -> shipped -> delivered), with
``cancelled`` reachable from anything but delivered and final once set.
``payment_status`` goes pending -> completed | failed, failed -> completed on a
successful retry, and never leaves completed. Every payment write is made
conditional on the status it was read with, so a concurrent writer cannot
revert a completed payment.
"""
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import config
from auth import Identity
from compensation import ORDER_INSERT, USER_ORDER_REF, USER_UPSERT, CompensationLog
from database import DocumentStore, utcnow
from errors import InvalidTransition, NotFound, PermissionDenied, ValidationFailed
from payments import PaymentGateway
from pricing import calculate_totals, line_total, subtotal_of, to_minor_units
from schemas import (
    CustomerInfo,
    LineItem,
    Notification,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    StatusHistoryEntry,
)
from services import DiscountService, NotificationService, UserService, normalize_phone

logger = logging.getLogger(__name__)

COLLECTION = "orders"
ORDER_NUMBER_ATTEMPTS = 5

FULFILMENT_SEQUENCE = [
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.PACKED,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]
CANCELLABLE = [s.value for s in FULFILMENT_SEQUENCE if s != OrderStatus.DELIVERED]


def can_transition(current: str, new: str) -> bool:
    current, new = OrderStatus(current), OrderStatus(new)
    if current == OrderStatus.CANCELLED:
        return False
    if new == OrderStatus.CANCELLED:
        return current != OrderStatus.DELIVERED
    return FULFILMENT_SEQUENCE.index(new) > FULFILMENT_SEQUENCE.index(current)


def _millis() -> int:
    return int(time.time() * 1000)


def generate_order_number() -> str:
    return f"{config.ORDER_NUMBER_PREFIX}{str(_millis())[-8:]}{uuid.uuid4().hex[:4].upper()}"


def generate_guest_id() -> str:
    return f"guest_{_millis()}_{uuid.uuid4().hex[:9]}"


def _history(status: OrderStatus, at: datetime, updated_by: str) -> Dict[str, Any]:
    return StatusHistoryEntry(status=status, timestamp=at, updated_by=updated_by).model_dump()


class OrderService:
    def __init__(self, store: DocumentStore, gateway: Optional[PaymentGateway] = None):
        self.store = store
        self.gateway = gateway
        self.users = UserService(store)
        self.compensations = CompensationLog(store)

    # ----------------------- Reads -----------------------
    def get(self, order_id: str) -> Dict[str, Any]:
        order = self.store.get_by_id(COLLECTION, order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def get_by_number(self, order_number: str) -> Dict[str, Any]:
        found = self.store.get_all(COLLECTION, where=("order_number", "==", order_number), limit=1)
        if not found:
            raise NotFound("Order not found")
        return found[0]

    def get_by_razorpay_order_id(self, razorpay_order_id: str) -> Dict[str, Any]:
        found = self.store.get_all(COLLECTION, where=("razorpay_order_id", "==", razorpay_order_id), limit=1)
        if not found:
            raise NotFound("Order not found")
        return found[0]

    def orders_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        return self.store.get_all(COLLECTION, where=("user_id", "==", user_id), order_by=("order_date", "desc"))

    def list_orders(self, status: Optional[str] = None, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        page, limit = max(page, 1), max(limit, 1)
        where = ("status", "==", status) if status and status != "all" else None
        clauses = [("where", where)] if where else []
        clauses += [("order_by", ("order_date", "desc")), ("limit", limit)]
        orders = self.store.query(COLLECTION, clauses, skip=(page - 1) * limit)
        total = self.store.count(COLLECTION, where)
        return {
            "orders": orders,
            "pagination": {"page": page, "limit": limit, "total": total, "pages": -(-total // limit)},
        }

    def stats(self) -> Dict[str, Any]:
        orders = self.store.get_all(COLLECTION)
        paid = [o for o in orders if o.get("payment_status") == PaymentStatus.COMPLETED]
        return {
            "total_orders": len(orders),
            "pending_orders": sum(1 for o in orders if o.get("status") == OrderStatus.PENDING),
            "completed_orders": sum(
                1 for o in orders
                if o.get("status") == OrderStatus.DELIVERED or o.get("payment_status") == PaymentStatus.COMPLETED
            ),
            "total_revenue": round(sum(o.get("total", 0) for o in paid), 2),
        }

    # ----------------------- Checkout -----------------------
    def _new_order_number(self) -> str:
        for _ in range(ORDER_NUMBER_ATTEMPTS):
            number = generate_order_number()
            if not self.store.get_all(COLLECTION, where=("order_number", "==", number), limit=1):
                return number
        raise InvalidTransition("Could not allocate an order number, try again")

    def create_order(self, items: List[LineItem], customer: CustomerInfo, identity: Optional[Identity] = None,
                     discount_code: Optional[str] = None) -> Dict[str, Any]:
        """Create the gateway order, then the pending domain order.

        Gateway failures abort. Any write failing after the gateway order
        exists is recorded in the compensation log and checkout carries on.
        """
        if not items:
            raise ValidationFailed("Cart is empty")
        discount = 0.0
        if discount_code:
            quote = DiscountService(self.store).calculate(discount_code, subtotal_of(items))
            if not quote["valid"]:
                raise ValidationFailed(quote["error"])
            discount_code, discount = quote["code"], quote["discount_amount"]
        totals = calculate_totals(items, discount)
        user_id = identity.user_id if identity else generate_guest_id()
        order_number = self._new_order_number()

        gateway_order = self.gateway.create_order(
            to_minor_units(totals.total),
            receipt=f"receipt_{_millis()}_{user_id}",
            notes={
                "customer_name": customer.name,
                "customer_phone": customer.phone,
                "customer_email": customer.email or "",
                "order_number": order_number,
            },
        )

        phone = identity.phone_number if identity else normalize_phone(customer.phone)
        self._record_customer(phone, customer)

        now = utcnow()
        order = Order(
            user_id=user_id,
            order_number=order_number,
            customer_info=customer,
            items=[
                OrderItem(
                    product_id=i.product_id,
                    variant_id=i.variant_id,
                    name=i.name,
                    quantity=i.quantity,
                    price=i.price,
                    discount=i.discount,
                    total_price=line_total(i.price, i.discount, i.quantity),
                )
                for i in items
            ],
            subtotal=totals.subtotal,
            discount_code=discount_code or None,
            discount_amount=totals.discount,
            shipping_cost=totals.shipping_cost,
            total=totals.total,
            razorpay_order_id=gateway_order["id"],
            status_history=[StatusHistoryEntry(status=OrderStatus.PENDING, timestamp=now, updated_by="customer")],
            order_date=now,
        )
        document = order.model_dump()
        try:
            order_id = self.store.create(COLLECTION, document)
            logger.info("Order %s (%s) created for %s", order_number, order_id, user_id)
        except Exception as e:
            order_id = f"local_{_millis()}_{uuid.uuid4().hex[:6]}"
            logger.error("Persisting order %s failed, continuing with %s: %s", order_number, order_id, e)
            self.compensations.record(ORDER_INSERT, {"order_id": order_id, "document": document}, e)

        if identity:
            try:
                self.users.add_order(identity.phone_number, order_id)
            except Exception as e:
                self.compensations.record(USER_ORDER_REF, {"phone_number": identity.phone_number, "order_id": order_id}, e)

        return {
            "order_id": order_id,
            "order_number": order_number,
            "razorpay_order_id": gateway_order["id"],
            "amount": gateway_order["amount"],
            "currency": gateway_order["currency"],
            "key_id": self.gateway.key_id,
            "subtotal": totals.subtotal,
            "discount_amount": totals.discount,
            "shipping_cost": totals.shipping_cost,
            "total": totals.total,
        }

    def _record_customer(self, phone: str, customer: CustomerInfo) -> None:
        address = {"address": customer.address, "city": customer.city, "state": customer.state, "pincode": customer.pincode}
        try:
            self.users.upsert(phone, name=customer.name, email=customer.email)
            self.users.add_address(phone, **address)
        except Exception as e:
            payload = {"phone_number": phone, "name": customer.name, "email": customer.email, "address": address}
            self.compensations.record(USER_UPSERT, payload, e)

    def retry_payment(self, order_id: str, identity: Identity) -> Dict[str, Any]:
        """New gateway order for a failed payment; only razorpay_order_id changes."""
        order = self.get(order_id)
        if order["payment_status"] != PaymentStatus.FAILED:
            raise ValidationFailed("Can only retry failed payments")
        if order["status"] == OrderStatus.CANCELLED:
            raise ValidationFailed("Cannot retry cancelled order")
        customer_phone = normalize_phone(order["customer_info"]["phone"])
        if not identity.owns(order["user_id"]) and identity.phone_number != customer_phone:
            raise PermissionDenied("You do not have permission to retry this order")

        gateway_order = self.gateway.create_order(
            to_minor_units(order["total"]),
            receipt=f"retry_{_millis()}_{order['order_number']}",
            notes={"is_retry": "true", "original_order_number": order["order_number"]},
        )
        if not self.store.update(COLLECTION, order_id, {"razorpay_order_id": gateway_order["id"]},
                                 expect={"payment_status": PaymentStatus.FAILED.value}):
            raise InvalidTransition("Order payment state changed, retry aborted")
        logger.info("Order %s retried with gateway order %s", order["order_number"], gateway_order["id"])
        return {
            "order_id": order_id,
            "order_number": order["order_number"],
            "razorpay_order_id": gateway_order["id"],
            "amount": gateway_order["amount"],
            "currency": gateway_order["currency"],
            "key_id": self.gateway.key_id,
            "subtotal": order["subtotal"],
            "discount_amount": order.get("discount_amount", 0),
            "shipping_cost": order["shipping_cost"],
            "total": order["total"],
        }

    # ----------------------- Payment callbacks -----------------------
    def confirm_payment(self, razorpay_order_id: str, payment_id: str, signature: str) -> Dict[str, Any]:
        if not self.gateway.verify_payment_signature(razorpay_order_id, payment_id, signature):
            raise ValidationFailed("Invalid payment signature")
        order = self.get_by_razorpay_order_id(razorpay_order_id)
        return self._mark_paid(order, payment_id, signature, updated_by="payment")

    def _mark_paid(self, order: Dict[str, Any], payment_id: str, signature: Optional[str], updated_by: str) -> Dict[str, Any]:
        if order["payment_status"] == PaymentStatus.COMPLETED:
            return order
        now = utcnow()
        changes = {
            "payment_status": PaymentStatus.COMPLETED.value,
            "paid_at": now,
            "razorpay_payment_id": payment_id,
        }
        if signature:
            changes["razorpay_signature"] = signature
        push = None
        if order["status"] == OrderStatus.PENDING:
            changes["status"] = OrderStatus.PROCESSING.value
            push = {"status_history": _history(OrderStatus.PROCESSING, now, updated_by)}
        expect = {"payment_status": order["payment_status"], "status": order["status"]}
        if not self.store.update(COLLECTION, order["id"], changes, expect=expect, push=push):
            current = self.get(order["id"])
            if current["payment_status"] == PaymentStatus.COMPLETED:
                return current
            raise InvalidTransition("Order changed while confirming payment")
        logger.info("Payment %s completed for order %s", payment_id, order["order_number"])
        if order.get("discount_code"):
            self._redeem_discount(order)
        return self.get(order["id"])

    def _redeem_discount(self, order: Dict[str, Any]) -> None:
        # The order is already paid; a code that ran out in the meantime is only logged.
        try:
            DiscountService(self.store).redeem(order["discount_code"])
        except Exception:
            logger.warning("Could not count discount %s for order %s", order["discount_code"],
                           order["order_number"], exc_info=True)

    def _fail_payment(self, order: Dict[str, Any], reason: str) -> bool:
        if order["payment_status"] != PaymentStatus.PENDING:
            return False
        changed = self.store.update(
            COLLECTION, order["id"],
            {"payment_status": PaymentStatus.FAILED.value, "cancellation_reason": reason},
            expect={"payment_status": PaymentStatus.PENDING.value},
        )
        if changed:
            logger.info("Payment failed for order %s: %s", order["order_number"], reason)
        return changed

    def cancel_payment(self, razorpay_order_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
        order = self.get_by_razorpay_order_id(razorpay_order_id)
        changed = self._fail_payment(order, reason or "Payment cancelled by user")
        return {"changed": changed, "order": self.get(order["id"])}

    def handle_webhook_event(self, event: Dict[str, Any]) -> str:
        name = event.get("event")
        payment = (event.get("payload") or {}).get("payment", {}).get("entity", {})
        razorpay_order_id = payment.get("order_id")
        if name not in ("payment.captured", "payment.failed") or not razorpay_order_id:
            return "ignored"
        try:
            order = self.get_by_razorpay_order_id(razorpay_order_id)
        except NotFound:
            logger.warning("Webhook %s for unknown gateway order %s", name, razorpay_order_id)
            return "ignored"
        if name == "payment.captured":
            self._mark_paid(order, payment.get("id"), None, updated_by="webhook")
            return "captured"
        self._fail_payment(order, payment.get("error_description") or "Payment failed")
        return "failed"

    # ----------------------- Fulfilment -----------------------
    def update_status(self, order_id: str, new_status: str, updated_by: str = "admin",
                      reason: Optional[str] = None) -> Dict[str, Any]:
        try:
            new = OrderStatus(new_status)
        except ValueError:
            raise ValidationFailed(f"Unknown status: {new_status}")
        order = self.get(order_id)
        current = order["status"]
        if not can_transition(current, new):
            raise InvalidTransition(f"Cannot move order from {current} to {new.value}")

        now = utcnow()
        changes: Dict[str, Any] = {"status": new.value}
        if new == OrderStatus.DELIVERED:
            changes["delivered_at"] = now
        if new == OrderStatus.PROCESSING and order["payment_status"] == PaymentStatus.COMPLETED and not order.get("paid_at"):
            changes["paid_at"] = now
        if new == OrderStatus.CANCELLED and reason:
            changes["cancellation_reason"] = reason
        if not self.store.update(COLLECTION, order_id, changes, expect={"status": current},
                                 push={"status_history": _history(new, now, updated_by)}):
            raise InvalidTransition("Order changed concurrently, reload and retry")
        logger.info("Order %s: %s -> %s by %s", order["order_number"], current, new.value, updated_by)
        self._notify(order, new)
        return self.get(order_id)

    def _notify(self, order: Dict[str, Any], status: OrderStatus) -> None:
        try:
            NotificationService(self.store).create(Notification(
                user_id=order["user_id"],
                title=f"Order {order['order_number']} is {status.value}",
                message=f"Your order {order['order_number']} is now {status.value}.",
                type="order",
                data={"order_id": order["id"], "order_number": order["order_number"], "status": status.value},
            ))
        except Exception:
            logger.warning("Notification for order %s failed", order["order_number"], exc_info=True)

    # ----------------------- Maintenance -----------------------
    def sweep_abandoned(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Expire stale pending payments, then cancel long-failed orders. Safe to rerun."""
        now = now or utcnow()
        payments_failed = 0
        stale_pending = self.store.query(COLLECTION, [
            ("where", ("payment_status", "==", PaymentStatus.PENDING.value)),
            ("where", ("order_date", "<", now - config.PENDING_PAYMENT_EXPIRY)),
        ])
        for order in stale_pending:
            if self._fail_payment(order, "Payment not completed in time"):
                payments_failed += 1

        orders_cancelled = 0
        stale_failed = self.store.query(COLLECTION, [
            ("where", ("payment_status", "==", PaymentStatus.FAILED.value)),
            ("where", ("status", "in", CANCELLABLE)),
            ("where", ("order_date", "<", now - config.FAILED_PAYMENT_CANCEL_AFTER)),
        ])
        for order in stale_failed:
            changed = self.store.update(
                COLLECTION, order["id"],
                {"status": OrderStatus.CANCELLED.value, "cancellation_reason": "Payment not completed"},
                expect={"status": order["status"], "payment_status": PaymentStatus.FAILED.value},
                push={"status_history": _history(OrderStatus.CANCELLED, now, "system")},
            )
            if changed:
                orders_cancelled += 1

        if payments_failed or orders_cancelled:
            logger.info("Sweep: %d payments expired, %d orders cancelled", payments_failed, orders_cancelled)
        return {"payments_failed": payments_failed, "orders_cancelled": orders_cancelled}
