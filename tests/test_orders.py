from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import permutations

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import orders
from conftest import SHIPPING
from errors import CreationError, NotFoundError, ResolutionError, ValidationError


def test_create_item_stores_quantity_and_product_only(db, make_product):
    pid = make_product(10)
    item_id = orders.create_item(db, 3, str(pid))
    item = db["orderitem"].find_one({"_id": item_id})
    assert item["quantity"] == 3
    assert item["product"] == pid
    assert "price" not in item


@pytest.mark.parametrize("quantity", [None, "abc", 0, -1, True, 1.5])
def test_create_item_rejects_bad_quantity(db, make_product, quantity):
    with pytest.raises(ValidationError):
        orders.create_item(db, quantity, make_product(10))
    assert db["orderitem"].count_documents({}) == 0


def test_create_item_rejects_malformed_product_id(db):
    with pytest.raises(ValidationError):
        orders.create_item(db, 1, "not-an-id")


def test_delete_item_twice_is_a_no_op(db, make_product):
    item_id = orders.create_item(db, 1, make_product(10))
    assert orders.delete_item(db, item_id) is True
    assert orders.delete_item(db, item_id) is False


def test_order_total_is_independent_of_item_order(db, make_product):
    items = [
        orders.create_item(db, 2, make_product(10)),
        orders.create_item(db, 1, make_product(5)),
        orders.create_item(db, 3, make_product(0.1)),
    ]
    for perm in permutations(items):
        assert orders.compute_order_total(db, perm) == Decimal("25.30")


def test_order_total_avoids_float_drift(db, make_product):
    items = [orders.create_item(db, 1, make_product(0.1)), orders.create_item(db, 1, make_product(0.2))]
    assert orders.compute_order_total(db, items) == Decimal("0.30")


def test_order_total_of_nothing_is_zero(db):
    assert orders.compute_order_total(db, []) == 0


def test_order_total_fails_when_product_is_gone(db, make_product):
    pid = make_product(10)
    items = [orders.create_item(db, 1, make_product(5)), orders.create_item(db, 1, pid)]
    db["product"].delete_one({"_id": pid})
    with pytest.raises(ResolutionError):
        orders.compute_order_total(db, items)


def test_place_order(db, make_product, customer):
    a, b = make_product(10, "A"), make_product(5, "B")
    order = orders.place_order(db, [{"quantity": 2, "product": str(a)}, {"quantity": 1, "product": str(b)}],
                               SHIPPING, str(customer))
    assert order["total_price"] == 25
    assert len(order["order_items"]) == 2
    assert order["status"] == "Pending"
    assert order["user"] == customer
    assert order["city"] == "Springfield"
    assert isinstance(order["date_ordered"], datetime)
    products = [db["orderitem"].find_one({"_id": i})["product"] for i in order["order_items"]]
    assert products == [a, b]


def test_place_order_without_items(db, customer):
    order = orders.place_order(db, [], SHIPPING, customer)
    assert order["total_price"] == 0
    assert order["order_items"] == []


def test_place_order_rolls_back_items_on_unknown_product(db, make_product, customer):
    items = [{"quantity": 1, "product": make_product(10)}, {"quantity": 1, "product": ObjectId()}]
    with pytest.raises(CreationError) as excinfo:
        orders.place_order(db, items, SHIPPING, customer)
    assert isinstance(excinfo.value.__cause__, ResolutionError)
    assert db["orderitem"].count_documents({}) == 0
    assert db["order"].count_documents({}) == 0


def test_place_order_rolls_back_items_on_bad_item(db, make_product, customer):
    items = [{"quantity": 1, "product": make_product(10)}, {"quantity": "lots", "product": make_product(5)}]
    with pytest.raises(CreationError):
        orders.place_order(db, items, SHIPPING, customer)
    assert db["orderitem"].count_documents({}) == 0


def test_place_order_rolls_back_items_on_missing_shipping_field(db, make_product, customer):
    shipping = {k: v for k, v in SHIPPING.items() if k != "city"}
    with pytest.raises(CreationError):
        orders.place_order(db, [{"quantity": 1, "product": make_product(10)}], shipping, customer)
    assert db["orderitem"].count_documents({}) == 0
    assert db["order"].count_documents({}) == 0


def test_place_order_rolls_back_items_when_order_write_fails(db, make_product, customer, monkeypatch):
    real_create = orders.create_document

    def failing_create(database, collection_name, data):
        if collection_name == "order":
            raise PyMongoError("write failed")
        return real_create(database, collection_name, data)

    monkeypatch.setattr(orders, "create_document", failing_create)
    with pytest.raises(CreationError):
        orders.place_order(db, [{"quantity": 1, "product": make_product(10)}], SHIPPING, customer)
    assert db["orderitem"].count_documents({}) == 0


def test_total_is_a_snapshot(db, make_product, customer):
    pid = make_product(10)
    order = orders.place_order(db, [{"quantity": 2, "product": pid}], SHIPPING, customer)
    db["product"].update_one({"_id": pid}, {"$set": {"price": 99}})
    assert orders.get_order(db, order["_id"])["total_price"] == 20


def test_get_order_expands_user_items_products_and_categories(db, make_product, customer, category):
    pid = make_product(10, "Phone")
    order = orders.place_order(db, [{"quantity": 1, "product": pid}], SHIPPING, customer)
    fetched = orders.get_order(db, str(order["_id"]))
    assert set(fetched["user"]) == {"_id", "name", "email"}
    assert fetched["user"]["email"] == "jane@example.com"
    [item] = fetched["order_items"]
    assert item["quantity"] == 1
    assert item["product"]["name"] == "Phone"
    assert item["product"]["category"]["_id"] == category
    assert item["product"]["category"]["name"] == "Mobiles"


def test_get_order_with_deleted_user_and_category(db, make_product, customer, category):
    order = orders.place_order(db, [{"quantity": 1, "product": make_product(10)}], SHIPPING, customer)
    db["user"].delete_one({"_id": customer})
    db["category"].delete_one({"_id": category})
    fetched = orders.get_order(db, order["_id"])
    assert fetched["user"] is None
    assert fetched["order_items"][0]["product"]["category"] is None


def test_get_order_not_found(db):
    with pytest.raises(NotFoundError):
        orders.get_order(db, ObjectId())


def test_get_order_with_malformed_id(db):
    with pytest.raises(ValidationError):
        orders.get_order(db, "123")


def _place_at(db, make_product, user, when, price=10):
    order = orders.place_order(db, [{"quantity": 1, "product": make_product(price)}], SHIPPING, user)
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"date_ordered": when}})
    return order["_id"]


def test_list_orders_newest_first_with_user_only(db, make_product, customer):
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    old = _place_at(db, make_product, customer, now - timedelta(days=2))
    new = _place_at(db, make_product, customer, now)
    mid = _place_at(db, make_product, customer, now - timedelta(days=1))
    listed = orders.list_orders(db)
    assert [o["_id"] for o in listed] == [new, mid, old]
    assert listed[0]["user"]["name"] == "Jane"
    assert isinstance(listed[0]["order_items"][0], ObjectId)


def test_list_orders_for_user(db, make_product, customer, admin):
    now = datetime(2024, 5, 1, tzinfo=timezone.utc)
    first = _place_at(db, make_product, customer, now - timedelta(hours=1))
    second = _place_at(db, make_product, customer, now)
    _place_at(db, make_product, admin, now)
    listed = orders.list_orders_for_user(db, str(customer))
    assert [o["_id"] for o in listed] == [second, first]
    assert listed[0]["order_items"][0]["product"]["category"]["name"] == "Mobiles"


def test_update_status_touches_only_status(db, make_product, customer):
    order = orders.place_order(db, [{"quantity": 1, "product": make_product(10)}], SHIPPING, customer)
    before = db["order"].find_one({"_id": order["_id"]})
    updated = orders.update_status(db, str(order["_id"]), "Shipped")
    assert updated["status"] == "Shipped"
    after = db["order"].find_one({"_id": order["_id"]})
    assert {k: v for k, v in after.items() if k != "status"} == {k: v for k, v in before.items() if k != "status"}


def test_update_status_accepts_any_status(db, make_product, customer):
    order = orders.place_order(db, [], SHIPPING, customer)
    orders.update_status(db, order["_id"], "Delivered")
    assert orders.update_status(db, order["_id"], "Pending")["status"] == "Pending"


def test_update_status_errors(db, make_product, customer):
    order = orders.place_order(db, [], SHIPPING, customer)
    with pytest.raises(ValidationError):
        orders.update_status(db, order["_id"], "  ")
    with pytest.raises(NotFoundError):
        orders.update_status(db, ObjectId(), "Shipped")


def test_delete_order_cascades_to_items(db, make_product, customer):
    order = orders.place_order(db, [{"quantity": 1, "product": make_product(10)},
                                    {"quantity": 2, "product": make_product(5)}], SHIPPING, customer)
    report = orders.delete_order(db, str(order["_id"]))
    assert report.deleted_items == [str(i) for i in order["order_items"]]
    assert report.missing_items == [] and report.failed_items == []
    with pytest.raises(NotFoundError):
        orders.get_order(db, order["_id"])
    for item_id in order["order_items"]:
        assert db["orderitem"].find_one({"_id": item_id}) is None


def test_delete_order_reports_item_outcomes(db, make_product, customer, monkeypatch):
    order = orders.place_order(db, [{"quantity": 1, "product": make_product(1)} for _ in range(3)],
                               SHIPPING, customer)
    gone, broken, fine = order["order_items"]
    db["orderitem"].delete_one({"_id": gone})
    real_delete = orders.delete_item

    def flaky_delete(database, item_id):
        if item_id == broken:
            raise PyMongoError("boom")
        return real_delete(database, item_id)

    monkeypatch.setattr(orders, "delete_item", flaky_delete)
    report = orders.delete_order(db, order["_id"])
    assert report.deleted_items == [str(fine)]
    assert report.missing_items == [str(gone)]
    assert report.failed_items == [str(broken)]
    assert db["order"].count_documents({}) == 0


def test_delete_order_not_found(db):
    with pytest.raises(NotFoundError):
        orders.delete_order(db, ObjectId())


def test_total_sales_and_count(db, make_product, customer):
    assert orders.total_sales(db) == Decimal("0.00")
    assert orders.order_count(db) == 0
    for price in (10, 5.5, 0.1, 0.2):
        orders.place_order(db, [{"quantity": 1, "product": make_product(price)}], SHIPPING, customer)
    assert orders.total_sales(db) == Decimal("15.80")
    assert orders.order_count(db) == 4


def test_order_total_keeps_sub_cent_prices_exact(db, make_product):
    item = orders.create_item(db, 1, make_product(0.005))
    assert orders.compute_order_total(db, [item]) == Decimal("0.005")
    items = [orders.create_item(db, 3, make_product(0.005)), item]
    assert orders.compute_order_total(db, items) == Decimal("0.02")


def test_update_status_stores_value_as_given(db, customer):
    order = orders.place_order(db, [], SHIPPING, customer)
    assert orders.update_status(db, order["_id"], "Shipped ")["status"] == "Shipped "
    assert db["order"].find_one({"_id": order["_id"]})["status"] == "Shipped "


def test_product_price_limited_to_cents(category):
    from pydantic import ValidationError as PydanticValidationError
    from schemas import Product

    assert Product(name="A", description="d", category=category, count_in_stock=1, price=19.99).price == 19.99
    with pytest.raises(PydanticValidationError):
        Product(name="A", description="d", category=category, count_in_stock=1, price=0.005)
