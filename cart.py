"""
Cart state container.

A cart is a list of line items plus a ``frozen`` flag that is set while a
payment is in flight. Totals are derived on read and never stored. State is
persisted through a storage adapter and observers are told about every change.
"""
import logging
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from database import DocumentStore
from errors import CartFrozen, NotFound
from pricing import calculate_totals, line_total
from schemas import LineItem

logger = logging.getLogger(__name__)


class CartState(BaseModel):
    items: List[LineItem] = []
    frozen: bool = False


class MemoryCartStorage:
    def __init__(self):
        self._data: Dict[str, dict] = {}

    def load(self, key: str) -> Optional[dict]:
        return self._data.get(key)

    def save(self, key: str, state: dict) -> None:
        self._data[key] = state


class MongoCartStorage:
    collection = "carts"

    def __init__(self, store: DocumentStore):
        self.store = store

    def load(self, key: str) -> Optional[dict]:
        return self.store.get_by_id(self.collection, key)

    def save(self, key: str, state: dict) -> None:
        if not self.store.update(self.collection, key, state):
            self.store.create(self.collection, state, doc_id=key)


Listener = Callable[[CartState], None]


class CartStore:
    def __init__(self, storage, key: str):
        self.storage = storage
        self.key = key
        raw = storage.load(key)
        self.state = CartState(**{k: raw[k] for k in ("items", "frozen") if k in raw}) if raw else CartState()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self) -> None:
        self.storage.save(self.key, self.state.model_dump())
        for listener in list(self._listeners):
            listener(self.state)

    def _check_unfrozen(self) -> None:
        if self.state.frozen:
            raise CartFrozen("Cart is locked while a payment is in progress")

    # ----------------------- Actions -----------------------
    def add_item(self, item: LineItem) -> LineItem:
        self._check_unfrozen()
        for existing in self.state.items:
            if existing.product_id == item.product_id and existing.variant_id == item.variant_id:
                existing.quantity += item.quantity
                self._commit()
                return existing
        line = item.model_copy()
        self.state.items.append(line)
        self._commit()
        return line

    def remove_item(self, line_id: str) -> None:
        self._check_unfrozen()
        remaining = [i for i in self.state.items if i.line_id != line_id]
        if len(remaining) == len(self.state.items):
            raise NotFound("Cart item not found")
        self.state.items = remaining
        self._commit()

    def update_quantity(self, line_id: str, quantity: int) -> None:
        if quantity <= 0:
            self.remove_item(line_id)
            return
        self._check_unfrozen()
        for i in self.state.items:
            if i.line_id == line_id:
                i.quantity = quantity
                self._commit()
                return
        raise NotFound("Cart item not found")

    def clear(self) -> None:
        self._check_unfrozen()
        self.state.items = []
        self._commit()

    def freeze(self) -> None:
        self.state.frozen = True
        self._commit()
        logger.debug("Cart %s frozen for payment", self.key)

    def unfreeze(self) -> None:
        self.state.frozen = False
        self._commit()

    # ----------------------- Derived values -----------------------
    @property
    def items(self) -> List[LineItem]:
        return list(self.state.items)

    @property
    def total_items(self) -> int:
        return sum(i.quantity for i in self.state.items)

    @property
    def total_price(self) -> float:
        return round(sum(line_total(i.price, i.discount, i.quantity) for i in self.state.items), 2)

    @property
    def discount_amount(self) -> float:
        return round(sum(i.price * i.discount / 100 * i.quantity for i in self.state.items), 2)

    def summary(self) -> dict:
        totals = calculate_totals(self.state.items) if self.state.items else None
        return {
            "items": [{**i.model_dump(), "line_id": i.line_id} for i in self.state.items],
            "frozen": self.state.frozen,
            "total_items": self.total_items,
            "total_price": self.total_price,
            "discount_amount": self.discount_amount,
            "shipping_cost": totals.shipping_cost if totals else 0.0,
            "total": totals.total if totals else 0.0,
        }
