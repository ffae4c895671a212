import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

import config
import database
from auth import (
    Identity,
    clear_session_cookie,
    create_session_token,
    get_current_identity,
    get_identity_verifier,
    get_optional_identity,
    require_admin,
    require_complete_profile,
    set_session_cookie,
)
from cart import CartStore, MongoCartStorage
from database import DocumentStore, get_store
from errors import AuthenticationRequired, NotFound, PermissionDenied, StoreError, ValidationFailed
from orders import OrderService
from payments import PaymentGateway, get_gateway
from schemas import Banner, Category, CustomerInfo, Discount, LineItem, Product, Variant
from services import (
    BannerService,
    CategoryService,
    DiscountService,
    NotificationService,
    ProductService,
    UserService,
    VariantService,
    WishlistService,
    normalize_phone,
)
from tasks import periodic_maintenance, run_maintenance

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("store")


@asynccontextmanager
async def lifespan(app: FastAPI):
    task = None
    if database.db is not None and config.SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(periodic_maintenance(get_store(), config.SWEEP_INTERVAL_SECONDS))
    yield
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="Rudra Spiritual Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----------------------- Utils -----------------------
def ok(data=None, **extra):
    return {"success": True, "data": data, **extra}


def _fail(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"success": False, "error": error, **extra}))


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return _fail(exc.status_code, exc.message, **exc.extra)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _fail(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
    return _fail(400, "Missing or invalid fields", details=details)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _fail(500, "Internal server error", details=str(exc))


def get_order_service(store: DocumentStore = Depends(get_store)) -> OrderService:
    return OrderService(store)


def get_payment_service(store: DocumentStore = Depends(get_store), gateway: PaymentGateway = Depends(get_gateway)) -> OrderService:
    return OrderService(store, gateway)


def _changes(body: BaseModel) -> dict:
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No fields to update")
    return changes


# ----------------------- Models -----------------------
class VerifyOtpBody(BaseModel):
    id_token: str
    phone_number: str


class ProfileBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    next: Optional[str] = None


class CreateOrderBody(BaseModel):
    items: List[LineItem] = Field(..., min_length=1)
    customer_info: CustomerInfo
    discount_code: Optional[str] = None


class RetryOrderBody(BaseModel):
    order_id: str


class VerifyPaymentBody(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class CancelPaymentBody(BaseModel):
    razorpay_order_id: str
    reason: Optional[str] = None


class StatusUpdateBody(BaseModel):
    id: str
    status: str
    reason: Optional[str] = None


class CategoryUpdateBody(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    icon_url: Optional[str] = None


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    spiritual_meaning: Optional[str] = None
    deity: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    status: Optional[str] = None


class VariantUpdateBody(BaseModel):
    label: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    inventory: Optional[int] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    is_default: Optional[bool] = None


class BannerUpdateBody(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    category_link: Optional[str] = None
    alt_text: Optional[str] = None
    is_active: Optional[bool] = None
    order: Optional[int] = None


class BannerReorderBody(BaseModel):
    positions: Dict[str, int]


class CartQuantityBody(BaseModel):
    quantity: int


class AddressBody(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=3)


class WishlistBody(BaseModel):
    product_id: str


class DiscountCheckBody(BaseModel):
    code: str = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)


class DiscountUpdateBody(BaseModel):
    code: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    amount: Optional[float] = Field(None, gt=0)
    expiry: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Rudra Spiritual Store API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "payment_gateway": "✅ Set" if config.RAZORPAY_KEY_ID else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if database.db is not None:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/api/auth/verify-otp")
def verify_otp(body: VerifyOtpBody, response: Response, store: DocumentStore = Depends(get_store),
               verifier=Depends(get_identity_verifier)):
    phone = normalize_phone(body.phone_number)
    verified_phone = verifier.verify(body.id_token)
    if verified_phone != phone:
        raise AuthenticationRequired("Phone number does not match the verified identity")
    user = UserService(store).upsert(phone)
    token = create_session_token(phone)
    set_session_cookie(response, token)
    logger.info("Session issued for %s", phone)
    return ok({"token": token, "user": user, "profile_complete": UserService.is_profile_complete(user)})


@app.get("/api/auth/me")
def me(identity: Identity = Depends(get_current_identity), store: DocumentStore = Depends(get_store)):
    user = UserService(store).get(identity.phone_number)
    if not user:
        raise NotFound("User not found")
    return ok({"user": user, "profile_complete": UserService.is_profile_complete(user)})


@app.post("/api/auth/logout")
def logout(response: Response):
    clear_session_cookie(response)
    return ok()


@app.put("/api/profile")
def complete_profile(body: ProfileBody, identity: Identity = Depends(get_current_identity),
                     store: DocumentStore = Depends(get_store)):
    users = UserService(store)
    users.upsert(identity.phone_number)
    user = users.update_profile(identity.phone_number, {"name": body.name, "email": body.email})
    if body.address and body.city and body.state and body.pincode:
        users.add_address(identity.phone_number, body.address, body.city, body.state, body.pincode)
        user = users.get(identity.phone_number)
    # Only same-site paths are replayed.
    redirect = body.next if body.next and body.next.startswith("/") and not body.next.startswith("//") else "/"
    return ok({"user": user, "profile_complete": UserService.is_profile_complete(user), "redirect": redirect})


@app.get("/api/profile/addresses")
def list_addresses(identity: Identity = Depends(get_current_identity), store: DocumentStore = Depends(get_store)):
    user = UserService(store).get(identity.phone_number)
    return ok(user.get("addresses", []) if user else [])


@app.post("/api/profile/addresses")
def add_address(body: AddressBody, identity: Identity = Depends(get_current_identity),
                store: DocumentStore = Depends(get_store)):
    users = UserService(store)
    users.upsert(identity.phone_number)
    added = users.add_address(identity.phone_number, body.address, body.city, body.state, body.pincode)
    return ok(users.get(identity.phone_number)["addresses"], added=added)


@app.delete("/api/profile/addresses/{address_id}")
def remove_address(address_id: str, identity: Identity = Depends(get_current_identity),
                   store: DocumentStore = Depends(get_store)):
    return ok(UserService(store).remove_address(identity.phone_number, address_id))


@app.post("/api/profile/addresses/{address_id}/default")
def set_default_address(address_id: str, identity: Identity = Depends(get_current_identity),
                        store: DocumentStore = Depends(get_store)):
    return ok(UserService(store).set_default_address(identity.phone_number, address_id))


# ----------------------- Wishlist -----------------------
@app.get("/api/wishlist")
def get_wishlist(identity: Identity = Depends(get_current_identity), store: DocumentStore = Depends(get_store)):
    return ok(WishlistService(store).list(identity.phone_number))


@app.post("/api/wishlist")
def add_to_wishlist(body: WishlistBody, identity: Identity = Depends(get_current_identity),
                    store: DocumentStore = Depends(get_store)):
    return ok(WishlistService(store).add(identity.phone_number, body.product_id))


@app.delete("/api/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, identity: Identity = Depends(get_current_identity),
                         store: DocumentStore = Depends(get_store)):
    return ok(WishlistService(store).remove(identity.phone_number, product_id))


@app.delete("/api/wishlist")
def clear_wishlist(identity: Identity = Depends(get_current_identity), store: DocumentStore = Depends(get_store)):
    WishlistService(store).clear(identity.phone_number)
    return ok([])


# ----------------------- Discounts -----------------------
@app.post("/api/discounts/validate")
def check_discount(body: DiscountCheckBody, store: DocumentStore = Depends(get_store)):
    return ok(DiscountService(store).calculate(body.code, body.subtotal))


# ----------------------- Catalog -----------------------
@app.get("/api/categories")
def list_categories(store: DocumentStore = Depends(get_store)):
    return ok(CategoryService(store).list())


@app.get("/api/products")
def list_products(category: Optional[str] = None, q: Optional[str] = None,
                  limit: int = Query(50, ge=1, le=100), store: DocumentStore = Depends(get_store)):
    products = ProductService(store)
    items = products.search(q)[:limit] if q else products.list(category=category, limit=limit)
    return ok(products.with_variants(items))


@app.get("/api/products/{id_or_slug}")
def get_product(id_or_slug: str, store: DocumentStore = Depends(get_store)):
    products = ProductService(store)
    return ok(products.with_variants([products.find(id_or_slug)])[0])


@app.get("/api/banners")
def list_banners(store: DocumentStore = Depends(get_store)):
    return ok(BannerService(store).list(active_only=True))


# ----------------------- Cart -----------------------
def _cart(session_id: str, store: DocumentStore) -> CartStore:
    return CartStore(MongoCartStorage(store), session_id)


@app.get("/api/cart")
def get_cart(session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    return ok(_cart(session_id, store).summary())


@app.post("/api/cart/items")
def add_cart_item(item: LineItem, session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.add_item(item)
    return ok(cart.summary())


@app.patch("/api/cart/items/{line_id}")
def update_cart_item(line_id: str, body: CartQuantityBody, session_id: str = Query(...),
                     store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.update_quantity(line_id, body.quantity)
    return ok(cart.summary())


@app.delete("/api/cart/items/{line_id}")
def remove_cart_item(line_id: str, session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.remove_item(line_id)
    return ok(cart.summary())


@app.delete("/api/cart")
def clear_cart(session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.clear()
    return ok(cart.summary())


@app.post("/api/cart/freeze")
def freeze_cart(session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.freeze()
    return ok(cart.summary())


@app.post("/api/cart/unfreeze")
def unfreeze_cart(session_id: str = Query(...), store: DocumentStore = Depends(get_store)):
    cart = _cart(session_id, store)
    cart.unfreeze()
    return ok(cart.summary())


# ----------------------- Payment -----------------------
@app.post("/api/payment/create-order")
def create_order(body: CreateOrderBody, identity: Optional[Identity] = Depends(get_optional_identity),
                 orders: OrderService = Depends(get_payment_service)):
    return ok(orders.create_order(body.items, body.customer_info, identity, body.discount_code))


@app.post("/api/payment/retry-order")
def retry_order(body: RetryOrderBody, identity: Identity = Depends(get_current_identity),
                orders: OrderService = Depends(get_payment_service)):
    return ok(orders.retry_payment(body.order_id, identity))


@app.post("/api/payment/verify")
def verify_payment(body: VerifyPaymentBody, orders: OrderService = Depends(get_payment_service)):
    order = orders.confirm_payment(body.razorpay_order_id, body.razorpay_payment_id, body.razorpay_signature)
    return ok({"order_id": order["id"], "order_number": order["order_number"],
               "status": order["status"], "payment_status": order["payment_status"]},
              message="Payment verified successfully")


@app.post("/api/payment/cancel")
def cancel_payment(body: CancelPaymentBody, orders: OrderService = Depends(get_order_service)):
    result = orders.cancel_payment(body.razorpay_order_id, body.reason)
    order = result["order"]
    message = "Payment cancelled successfully" if result["changed"] else "Payment status already updated"
    return ok({"order_id": order["id"], "order_number": order["order_number"],
               "payment_status": order["payment_status"]}, message=message)


@app.post("/api/webhooks/razorpay")
async def razorpay_webhook(request: Request, store: DocumentStore = Depends(get_store),
                           gateway: PaymentGateway = Depends(get_gateway)):
    body = (await request.body()).decode()
    signature = request.headers.get("x-razorpay-signature", "")
    if not signature or not gateway.verify_webhook_signature(body, signature):
        raise ValidationFailed("Invalid signature")
    event = await request.json()
    outcome = await run_in_threadpool(OrderService(store, gateway).handle_webhook_event, event)
    return ok({"outcome": outcome})


# ----------------------- Orders -----------------------
@app.get("/api/orders/by-user")
def orders_by_user(identity: Identity = Depends(require_complete_profile),
                   orders: OrderService = Depends(get_order_service)):
    found = orders.orders_for_user(identity.user_id)
    return ok(found, total=len(found))


@app.get("/api/orders/{order_number}")
def order_detail(order_number: str, identity: Identity = Depends(require_complete_profile),
                 orders: OrderService = Depends(get_order_service)):
    order = orders.get_by_number(order_number)
    if not identity.owns(order["user_id"]):
        raise PermissionDenied("Not allowed")
    return ok(order)


# ----------------------- Admin: catalog -----------------------
@app.get("/api/admin/categories")
def admin_list_categories(admin: Identity = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    return ok(CategoryService(store).list_with_product_count())


@app.post("/api/admin/categories")
def admin_create_category(body: Category, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    return ok({"id": CategoryService(store).create(body)})


@app.put("/api/admin/categories/{category_id}")
def admin_update_category(category_id: str, body: CategoryUpdateBody, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    return ok(CategoryService(store).update(category_id, _changes(body)))


@app.delete("/api/admin/categories/{category_id}")
def admin_delete_category(category_id: str, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    CategoryService(store).delete(category_id)
    return ok()


@app.get("/api/admin/products")
def admin_list_products(admin: Identity = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    products = ProductService(store)
    return ok(products.with_variants(products.list(active_only=False)))


@app.post("/api/admin/products")
def admin_create_product(body: Product, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    return ok({"id": ProductService(store).create(body)})


@app.put("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdateBody, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    return ok(ProductService(store).update(product_id, _changes(body)))


@app.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    ProductService(store).delete(product_id)
    return ok()


@app.get("/api/admin/variants")
def admin_list_variants(product_id: str = Query(...), admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    return ok(VariantService(store).for_product(product_id))


@app.post("/api/admin/variants")
def admin_create_variant(body: Variant, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    ProductService(store).get(body.product_id)
    return ok({"id": VariantService(store).create(body)})


@app.put("/api/admin/variants/{variant_id}")
def admin_update_variant(variant_id: str, body: VariantUpdateBody, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    return ok(VariantService(store).update(variant_id, _changes(body)))


@app.delete("/api/admin/variants/{variant_id}")
def admin_delete_variant(variant_id: str, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    VariantService(store).delete(variant_id)
    return ok()


@app.get("/api/admin/banners")
def admin_list_banners(admin: Identity = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    return ok(BannerService(store).list())


@app.post("/api/admin/banners")
def admin_create_banner(body: Banner, admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    return ok({"id": BannerService(store).create(body)})


@app.post("/api/admin/banners/reorder")
def admin_reorder_banners(body: BannerReorderBody, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    banners = BannerService(store)
    banners.reorder(body.positions)
    return ok(banners.list())


@app.post("/api/admin/banners/{banner_id}/toggle")
def admin_toggle_banner(banner_id: str, admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    return ok(BannerService(store).toggle(banner_id))


@app.put("/api/admin/banners/{banner_id}")
def admin_update_banner(banner_id: str, body: BannerUpdateBody, admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    return ok(BannerService(store).update(banner_id, _changes(body)))


@app.delete("/api/admin/banners/{banner_id}")
def admin_delete_banner(banner_id: str, admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    BannerService(store).delete(banner_id)
    return ok()


# ----------------------- Admin: discounts -----------------------
@app.get("/api/admin/discounts")
def admin_list_discounts(active: bool = False, admin: Identity = Depends(require_admin),
                         store: DocumentStore = Depends(get_store)):
    return ok(DiscountService(store).list(active_only=active))


@app.post("/api/admin/discounts")
def admin_create_discount(body: Discount, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    return ok({"id": DiscountService(store).create(body)})


@app.put("/api/admin/discounts/{discount_id}")
def admin_update_discount(discount_id: str, body: DiscountUpdateBody, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    return ok(DiscountService(store).update(discount_id, _changes(body)))


@app.delete("/api/admin/discounts/{discount_id}")
def admin_delete_discount(discount_id: str, admin: Identity = Depends(require_admin),
                          store: DocumentStore = Depends(get_store)):
    DiscountService(store).delete(discount_id)
    return ok()


# ----------------------- Admin: orders -----------------------
@app.get("/api/admin/orders")
def admin_list_orders(status: Optional[str] = None, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      admin: Identity = Depends(require_admin), orders: OrderService = Depends(get_order_service)):
    return ok(orders.list_orders(status, page, limit))


@app.get("/api/admin/orders/{order_id}")
def admin_get_order(order_id: str, admin: Identity = Depends(require_admin),
                    orders: OrderService = Depends(get_order_service)):
    return ok(orders.get(order_id))


@app.put("/api/admin/orders")
def admin_update_order_status(body: StatusUpdateBody, admin: Identity = Depends(require_admin),
                              orders: OrderService = Depends(get_order_service)):
    order = orders.update_status(body.id, body.status, updated_by=admin.phone_number, reason=body.reason)
    return ok(order, message="Order status updated successfully")


@app.post("/api/admin/maintenance")
def admin_run_maintenance(admin: Identity = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    return ok(run_maintenance(store))


# ----------------------- Admin: dashboard -----------------------
@app.get("/api/admin/dashboard")
def admin_dashboard(admin: Identity = Depends(require_admin), store: DocumentStore = Depends(get_store)):
    stats = OrderService(store).stats()
    stats["total_products"] = store.count("products")
    stats["total_customers"] = store.count("users")
    return ok(stats)


@app.get("/api/admin/notifications")
def admin_notifications(limit: int = Query(100, ge=1, le=500), admin: Identity = Depends(require_admin),
                        store: DocumentStore = Depends(get_store)):
    notifications = NotificationService(store)
    return ok(notifications.list(limit=limit), unread=notifications.unread_count())


@app.post("/api/admin/notifications/{notification_id}/read")
def admin_mark_notification_read(notification_id: str, admin: Identity = Depends(require_admin),
                                 store: DocumentStore = Depends(get_store)):
    NotificationService(store).mark_read(notification_id)
    return ok()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
