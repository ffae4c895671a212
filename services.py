"""
Domain services for the catalog, users, wishlists, discounts and notifications.

Each service maps one collection onto the DocumentStore and adds the entity
specific defaults. Orders live in orders.py.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from database import DocumentStore, utcnow
from errors import InvalidTransition, NotFound, ValidationFailed
from pricing import discount_value
from schemas import Address, Banner, Category, Discount, Notification, Product, User, Variant, WishlistItem, naive_utc

logger = logging.getLogger(__name__)


def _require(doc: Optional[Dict[str, Any]], what: str) -> Dict[str, Any]:
    if not doc:
        raise NotFound(f"{what} not found")
    return doc


# ----------------------- Categories -----------------------
class CategoryService:
    collection = "categories"

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, category: Category) -> str:
        if self.get_by_slug(category.slug):
            raise ValidationFailed(f"Category slug already exists: {category.slug}")
        return self.store.create(self.collection, category)

    def get(self, category_id: str) -> Dict[str, Any]:
        return _require(self.store.get_by_id(self.collection, category_id), "Category")

    def get_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        found = self.store.get_all(self.collection, where=("slug", "==", slug), limit=1)
        return found[0] if found else None

    def list(self) -> List[Dict[str, Any]]:
        return self.store.get_all(self.collection, order_by=("name", "asc"))

    def list_with_product_count(self) -> List[Dict[str, Any]]:
        categories = self.list()
        for c in categories:
            c["product_count"] = self.store.count("products", ("category", "==", c["slug"]))
        return categories

    def update(self, category_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.store.update(self.collection, category_id, changes):
            raise NotFound("Category not found")
        return self.get(category_id)

    def delete(self, category_id: str) -> None:
        if not self.store.delete(self.collection, category_id):
            raise NotFound("Category not found")


# ----------------------- Variants -----------------------
class VariantService:
    collection = "variants"

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, variant: Variant) -> str:
        if self.sku_exists(variant.sku):
            raise ValidationFailed(f"SKU already exists: {variant.sku}")
        return self.store.create(self.collection, variant)

    def get(self, variant_id: str) -> Dict[str, Any]:
        return _require(self.store.get_by_id(self.collection, variant_id), "Variant")

    def for_product(self, product_id: str) -> List[Dict[str, Any]]:
        return self.store.get_all(self.collection, where=("product_id", "==", product_id), order_by=("price", "asc"))

    def for_products(self, product_ids: Iterable[str]) -> Dict[str, List[Dict[str, Any]]]:
        """One batched query for many products, grouped by product id."""
        ids = list(product_ids)
        grouped: Dict[str, List[Dict[str, Any]]] = {pid: [] for pid in ids}
        if not ids:
            return grouped
        rows = self.store.query(self.collection, [
            ("where", ("product_id", "in", ids)),
            ("order_by", ("price", "asc")),
        ])
        for v in rows:
            grouped.setdefault(v["product_id"], []).append(v)
        return grouped

    def update(self, variant_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if "sku" in changes and self.sku_exists(changes["sku"], exclude_id=variant_id):
            raise ValidationFailed(f"SKU already exists: {changes['sku']}")
        if not self.store.update(self.collection, variant_id, changes):
            raise NotFound("Variant not found")
        return self.get(variant_id)

    def delete(self, variant_id: str) -> None:
        if not self.store.delete(self.collection, variant_id):
            raise NotFound("Variant not found")

    def sku_exists(self, sku: str, exclude_id: Optional[str] = None) -> bool:
        matches = self.store.get_all(self.collection, where=("sku", "==", sku))
        return any(v["id"] != exclude_id for v in matches)

    @staticmethod
    def effective_default(variants: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not variants:
            return None
        for v in variants:
            if v.get("is_default"):
                return v
        for v in variants:
            if v.get("inventory", 0) > 0:
                return v
        return variants[0]

    @staticmethod
    def synthesize_default(product: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": f"{product['id']}-default",
            "product_id": product["id"],
            "label": "Regular",
            "price": product.get("price", 0),
            "sku": f"{product.get('slug', product['id'])}-default",
            "inventory": 0,
            "discount": 0,
            "is_default": True,
        }


# ----------------------- Products -----------------------
class ProductService:
    collection = "products"

    def __init__(self, store: DocumentStore):
        self.store = store
        self.variants = VariantService(store)

    def create(self, product: Product) -> str:
        if self.get_by_slug(product.slug):
            raise ValidationFailed(f"Product slug already exists: {product.slug}")
        category = CategoryService(self.store).get_by_slug(product.category)
        if not category:
            raise ValidationFailed(f"Unknown category: {product.category}")
        data = product.model_dump()
        data["category_name"] = category["name"]
        return self.store.create(self.collection, data)

    def get(self, product_id: str) -> Dict[str, Any]:
        return _require(self.store.get_by_id(self.collection, product_id), "Product")

    def get_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        found = self.store.get_all(self.collection, where=("slug", "==", slug), limit=1)
        return found[0] if found else None

    def find(self, id_or_slug: str) -> Dict[str, Any]:
        product = self.store.get_by_id(self.collection, id_or_slug) or self.get_by_slug(id_or_slug)
        return _require(product, "Product")

    def list(self, category: Optional[str] = None, active_only: bool = True, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        clauses = []
        if active_only:
            clauses.append(("where", ("status", "==", "active")))
        if category:
            clauses.append(("where", ("category", "==", category)))
        clauses.append(("order_by", ("created_at", "desc")))
        if limit:
            clauses.append(("limit", limit))
        return self.store.query(self.collection, clauses)

    def search(self, q: str) -> List[Dict[str, Any]]:
        needle = q.lower()
        fields = ("name", "description", "deity", "spiritual_meaning")
        return [p for p in self.list() if any(needle in str(p.get(f, "")).lower() for f in fields)]

    def with_variants(self, products: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Attach variants and the effective default; degrade to a synthesized default."""
        try:
            grouped = self.variants.for_products(p["id"] for p in products)
        except Exception:
            logger.warning("Variant lookup failed, using synthesized defaults", exc_info=True)
            grouped = {}
        enriched = []
        for p in products:
            variants = grouped.get(p["id"]) or [VariantService.synthesize_default(p)]
            enriched.append({**p, "variants": variants, "default_variant": VariantService.effective_default(variants)})
        return enriched

    def update(self, product_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if "category" in changes:
            category = CategoryService(self.store).get_by_slug(changes["category"])
            if not category:
                raise ValidationFailed(f"Unknown category: {changes['category']}")
            changes = {**changes, "category_name": category["name"]}
        if not self.store.update(self.collection, product_id, changes):
            raise NotFound("Product not found")
        return self.get(product_id)

    def delete(self, product_id: str) -> None:
        product = self.get(product_id)
        for v in self.variants.for_product(product_id):
            self.variants.delete(v["id"])
        self.store.delete(self.collection, product_id)
        if product.get("images"):
            logger.info("Product %s deleted; images left for storage cleanup: %s", product_id, product["images"])


# ----------------------- Banners -----------------------
class BannerService:
    collection = "banners"

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, banner: Banner) -> str:
        return self.store.create(self.collection, banner)

    def get(self, banner_id: str) -> Dict[str, Any]:
        return _require(self.store.get_by_id(self.collection, banner_id), "Banner")

    def list(self, active_only: bool = False) -> List[Dict[str, Any]]:
        where = ("is_active", "==", True) if active_only else None
        return self.store.get_all(self.collection, where=where, order_by=("order", "asc"))

    def update(self, banner_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.store.update(self.collection, banner_id, changes):
            raise NotFound("Banner not found")
        return self.get(banner_id)

    def toggle(self, banner_id: str) -> Dict[str, Any]:
        banner = self.get(banner_id)
        return self.update(banner_id, {"is_active": not banner.get("is_active", True)})

    def reorder(self, positions: Dict[str, int]) -> None:
        for banner_id, order in positions.items():
            self.update(banner_id, {"order": order})

    def delete(self, banner_id: str) -> None:
        if not self.store.delete(self.collection, banner_id):
            raise NotFound("Banner not found")


# ----------------------- Users -----------------------
def normalize_phone(phone: str) -> str:
    return "".join(ch for ch in phone.strip() if ch.isdigit() or ch == "+")


def compose_address(address: str, city: str, state: str, pincode: str) -> str:
    return f"{address}, {city}, {state} - {pincode}"


class UserService:
    """Users are keyed by phone number, which is also their document id."""

    collection = "users"

    def __init__(self, store: DocumentStore):
        self.store = store

    def get(self, phone_number: str) -> Optional[Dict[str, Any]]:
        return self.store.get_by_id(self.collection, phone_number)

    def upsert(self, phone_number: str, **fields) -> Dict[str, Any]:
        """Create the user if missing; only fill profile fields that are empty."""
        existing = self.get(phone_number)
        if existing is None:
            user = User(phone_number=phone_number, **{k: v for k, v in fields.items() if v})
            self.store.create(self.collection, user, doc_id=phone_number)
            logger.info("Created user %s", phone_number)
            return self.get(phone_number)
        missing = {k: v for k, v in fields.items() if v and not existing.get(k)}
        if missing:
            self.store.update(self.collection, phone_number, missing)
            existing.update(missing)
        return existing

    def add_address(self, phone_number: str, address: str, city: str, state: str, pincode: str) -> bool:
        """Attach an address unless an identical composed address exists. Returns True if added."""
        user = self.get(phone_number)
        if user is None:
            raise NotFound("User not found")
        full = compose_address(address, city, state, pincode)
        existing = user.get("addresses", [])
        if any(a.get("full_address") == full for a in existing):
            return False
        entry = Address(address=address, city=city, state=state, pincode=pincode, full_address=full,
                        is_default=not existing)
        self.store.update(self.collection, phone_number, {}, push={"addresses": entry.model_dump()})
        return True

    def _addresses(self, phone_number: str, address_id: str) -> List[Dict[str, Any]]:
        user = _require(self.get(phone_number), "User")
        addresses = user.get("addresses", [])
        if not any(a.get("id") == address_id for a in addresses):
            raise NotFound("Address not found")
        return addresses

    def remove_address(self, phone_number: str, address_id: str) -> List[Dict[str, Any]]:
        """Drop one address; the first remaining one inherits the default flag."""
        addresses = self._addresses(phone_number, address_id)
        remaining = [a for a in addresses if a.get("id") != address_id]
        if remaining and not any(a.get("is_default") for a in remaining):
            remaining[0]["is_default"] = True
        self.store.update(self.collection, phone_number, {"addresses": remaining})
        return remaining

    def set_default_address(self, phone_number: str, address_id: str) -> List[Dict[str, Any]]:
        addresses = self._addresses(phone_number, address_id)
        for a in addresses:
            a["is_default"] = a.get("id") == address_id
        self.store.update(self.collection, phone_number, {"addresses": addresses})
        return addresses

    def add_order(self, phone_number: str, order_id: str) -> None:
        if not self.store.update(self.collection, phone_number, {}, push={"order_ids": order_id}):
            raise NotFound("User not found")

    def update_profile(self, phone_number: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.store.update(self.collection, phone_number, changes):
            raise NotFound("User not found")
        return self.get(phone_number)

    @staticmethod
    def is_profile_complete(user: Optional[Dict[str, Any]]) -> bool:
        return bool(user and user.get("name") and user.get("email"))


# ----------------------- Notifications -----------------------
class NotificationService:
    collection = "notifications"

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, notification: Notification) -> str:
        notification_id = self.store.create(self.collection, notification)
        logger.debug("Notification %s created: %s", notification_id, notification.title)
        return notification_id

    def list(self, user_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        where = ("user_id", "==", user_id) if user_id else None
        return self.store.get_all(self.collection, where=where, order_by=("created_at", "desc"), limit=limit)

    def unread_count(self, user_id: Optional[str] = None) -> int:
        clauses = [("where", ("is_read", "==", False))]
        if user_id:
            clauses.append(("where", ("user_id", "==", user_id)))
        return len(self.store.query(self.collection, clauses))

    def mark_read(self, notification_id: str) -> None:
        if not self.store.update(self.collection, notification_id, {"is_read": True}):
            raise NotFound("Notification not found")


# ----------------------- Wishlist -----------------------
class WishlistService:
    """Favourites are kept on the user document as product snapshots."""

    def __init__(self, store: DocumentStore):
        self.store = store
        self.users = UserService(store)

    def list(self, phone_number: str) -> List[Dict[str, Any]]:
        user = self.users.get(phone_number)
        return user.get("wishlist", []) if user else []

    def contains(self, phone_number: str, product_id: str) -> bool:
        return any(i["product_id"] == product_id for i in self.list(phone_number))

    def add(self, phone_number: str, product_id: str) -> List[Dict[str, Any]]:
        products = ProductService(self.store)
        product = products.with_variants([products.get(product_id)])[0]
        self.users.upsert(phone_number)
        if not self.contains(phone_number, product_id):
            default = product["default_variant"]
            item = WishlistItem(
                product_id=product_id,
                name=product["name"],
                deity=product.get("deity", ""),
                category_name=product.get("category_name", ""),
                price=default.get("price", product.get("price", 0)),
                image=(product.get("images") or [None])[0],
                added_at=utcnow(),
            )
            self.store.update(UserService.collection, phone_number, {}, push={"wishlist": item.model_dump()})
        return self.list(phone_number)

    def remove(self, phone_number: str, product_id: str) -> List[Dict[str, Any]]:
        remaining = [i for i in self.list(phone_number) if i["product_id"] != product_id]
        self.store.update(UserService.collection, phone_number, {"wishlist": remaining})
        return remaining

    def clear(self, phone_number: str) -> None:
        self.store.update(UserService.collection, phone_number, {"wishlist": []})


# ----------------------- Discounts -----------------------
class DiscountService:
    collection = "discounts"

    def __init__(self, store: DocumentStore):
        self.store = store

    def create(self, discount: Discount) -> str:
        if self.get_by_code(discount.code):
            raise ValidationFailed(f"Discount code already exists: {discount.code}")
        return self.store.create(self.collection, discount)

    def get(self, discount_id: str) -> Dict[str, Any]:
        return _require(self.store.get_by_id(self.collection, discount_id), "Discount")

    def get_by_code(self, code: str) -> Optional[Dict[str, Any]]:
        found = self.store.get_all(self.collection, where=("code", "==", code.strip().upper()), limit=1)
        return found[0] if found else None

    def list(self, active_only: bool = False, now=None) -> List[Dict[str, Any]]:
        if not active_only:
            return self.store.get_all(self.collection, order_by=("created_at", "desc"))
        rows = self.store.get_all(self.collection, where=("expiry", ">", now or utcnow()), order_by=("expiry", "asc"))
        return [d for d in rows if d["used_count"] < d["usage_limit"]]

    def update(self, discount_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        if "expiry" in changes:
            changes = {**changes, "expiry": naive_utc(changes["expiry"])}
        if "code" in changes:
            changes = {**changes, "code": changes["code"].strip().upper()}
            other = self.get_by_code(changes["code"])
            if other and other["id"] != discount_id:
                raise ValidationFailed(f"Discount code already exists: {changes['code']}")
        if not self.store.update(self.collection, discount_id, changes):
            raise NotFound("Discount not found")
        return self.get(discount_id)

    def delete(self, discount_id: str) -> None:
        if not self.store.delete(self.collection, discount_id):
            raise NotFound("Discount not found")

    def validate(self, code: str, now=None) -> Dict[str, Any]:
        discount = self.get_by_code(code)
        if not discount:
            return {"valid": False, "error": "Discount code not found"}
        if discount["expiry"] < (now or utcnow()):
            return {"valid": False, "error": "Discount code has expired"}
        if discount["used_count"] >= discount["usage_limit"]:
            return {"valid": False, "error": "Discount code usage limit reached"}
        return {"valid": True, "discount": discount}

    def calculate(self, code: str, subtotal: float, now=None) -> Dict[str, Any]:
        result = self.validate(code, now)
        if not result["valid"]:
            return {"valid": False, "error": result["error"], "discount_amount": 0.0, "final_amount": subtotal}
        d = result["discount"]
        amount = discount_value(d["type"], d["amount"], subtotal)
        return {"valid": True, "code": d["code"], "discount_amount": amount,
                "final_amount": round(max(subtotal - amount, 0), 2)}

    def redeem(self, code: str) -> Dict[str, Any]:
        """Count one use. The write is conditional on the count that was read."""
        discount = self.get_by_code(code)
        if not discount:
            raise NotFound("Discount code not found")
        used = discount["used_count"]
        if used >= discount["usage_limit"]:
            raise ValidationFailed("Discount code usage limit reached")
        if not self.store.update(self.collection, discount["id"], {"used_count": used + 1},
                                 expect={"used_count": used}):
            raise InvalidTransition("Discount code was used concurrently")
        logger.info("Discount %s used (%d/%d)", discount["code"], used + 1, discount["usage_limit"])
        return self.get(discount["id"])
