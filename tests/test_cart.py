import pytest

from cart import CartStore, MemoryCartStorage, MongoCartStorage
from conftest import rudraksha
from errors import CartFrozen, NotFound


@pytest.fixture
def cart():
    return CartStore(MemoryCartStorage(), "session-1")


def test_add_merges_same_product_and_variant(cart):
    cart.add_item(rudraksha(quantity=1))
    cart.add_item(rudraksha(quantity=2))
    cart.add_item(rudraksha(quantity=1, variant_id="v-large"))

    assert len(cart.items) == 2
    assert cart.items[0].quantity == 3
    assert cart.total_items == 4


def test_derived_totals(cart):
    cart.add_item(rudraksha(price=500, discount=10, quantity=2))
    assert cart.total_price == 900
    assert cart.discount_amount == 100

    summary = cart.summary()
    assert summary["shipping_cost"] == 99
    assert summary["total"] == 999
    assert summary["items"][0]["line_id"] == "p-rudraksha-v-regular"


def test_empty_cart_summary(cart):
    summary = cart.summary()
    assert summary["items"] == []
    assert summary["total_items"] == 0
    assert summary["shipping_cost"] == 0
    assert summary["total"] == 0


def test_update_quantity_and_remove(cart):
    cart.add_item(rudraksha(quantity=1))
    cart.update_quantity("p-rudraksha-v-regular", 5)
    assert cart.total_items == 5

    cart.update_quantity("p-rudraksha-v-regular", 0)
    assert cart.items == []

    with pytest.raises(NotFound):
        cart.remove_item("p-rudraksha-v-regular")


def test_frozen_cart_rejects_mutations(cart):
    cart.add_item(rudraksha(quantity=1))
    cart.freeze()

    with pytest.raises(CartFrozen):
        cart.add_item(rudraksha(quantity=1))
    with pytest.raises(CartFrozen):
        cart.update_quantity("p-rudraksha-v-regular", 3)
    with pytest.raises(CartFrozen):
        cart.clear()
    assert cart.total_items == 1

    cart.unfreeze()
    cart.clear()
    assert cart.items == []


def test_subscribers_see_every_change(cart):
    seen = []
    unsubscribe = cart.subscribe(lambda state: seen.append(sum(i.quantity for i in state.items)))

    cart.add_item(rudraksha(quantity=1))
    cart.add_item(rudraksha(quantity=2))
    unsubscribe()
    cart.clear()

    assert seen == [1, 3]


def test_state_survives_reload_from_mongo(store):
    storage = MongoCartStorage(store)
    first = CartStore(storage, "session-2")
    first.add_item(rudraksha(quantity=2))
    first.freeze()

    reloaded = CartStore(storage, "session-2")
    assert reloaded.total_items == 2
    assert reloaded.state.frozen is True
    assert reloaded.items[0].variant_id == "v-regular"
