from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import Identity, create_session_token, get_identity_verifier
from database import DocumentStore, get_store, utcnow
from errors import AuthenticationRequired, GatewayError
from orders import OrderService
from payments import get_gateway
from schemas import CustomerInfo, LineItem

CUSTOMER_PHONE = "+919876543210"
ADMIN_PHONE = "+911111111111"


class FakeGateway:
    key_id = "rzp_test_key"

    def __init__(self):
        self.created = []
        self.fail = False

    def create_order(self, amount, receipt, notes=None):
        if self.fail:
            raise GatewayError("Failed to create payment order: gateway down")
        order = {"id": f"order_{len(self.created) + 1}", "amount": amount, "currency": "INR"}
        self.created.append({**order, "receipt": receipt, "notes": notes})
        return order

    @staticmethod
    def signature_for(order_id, payment_id):
        return f"sig:{order_id}:{payment_id}"

    def verify_payment_signature(self, order_id, payment_id, signature):
        return signature == self.signature_for(order_id, payment_id)

    def verify_webhook_signature(self, body, signature):
        return signature == "valid-webhook"


class FakeVerifier:
    """Treats the id token itself as the verified phone number."""

    def verify(self, id_token):
        if not id_token.startswith("+"):
            raise AuthenticationRequired("Invalid identity token")
        return id_token


@pytest.fixture
def store():
    return DocumentStore(mongomock.MongoClient().db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def orders(store, gateway):
    return OrderService(store, gateway)


@pytest.fixture
def client(store, gateway):
    main.app.dependency_overrides[get_store] = lambda: store
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    main.app.dependency_overrides[get_identity_verifier] = lambda: FakeVerifier()
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def bearer(phone=CUSTOMER_PHONE):
    return {"Authorization": f"Bearer {create_session_token(phone)}"}


@pytest.fixture
def admin_headers(store):
    store.create("users", {"phone_number": ADMIN_PHONE, "name": "Admin", "is_admin": True}, doc_id=ADMIN_PHONE)
    return bearer(ADMIN_PHONE)


def customer(phone=CUSTOMER_PHONE, **overrides):
    data = {
        "name": "Asha Verma",
        "phone": phone,
        "email": "asha@example.com",
        "address": "12 Temple Road",
        "city": "Varanasi",
        "state": "Uttar Pradesh",
        "pincode": "221001",
    }
    data.update(overrides)
    return CustomerInfo(**data)


def rudraksha(price=500.0, discount=10.0, quantity=2, variant_id="v-regular"):
    return LineItem(
        product_id="p-rudraksha",
        variant_id=variant_id,
        name="Five Mukhi Rudraksha",
        price=price,
        discount=discount,
        quantity=quantity,
    )


def age_order(store, order_id, days):
    store.update("orders", order_id, {"order_date": utcnow() - timedelta(days=days)})


@pytest.fixture
def identity():
    return Identity(CUSTOMER_PHONE)
