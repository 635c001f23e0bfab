"""Tests for the order workflow."""

import pytest

import orders
from errors import ConflictError, ForbiddenError, InsufficientStockError, NotFoundError


def stock_of(db, product):
    return db["product"].find_one({"_id": product["_id"]})["stock"]


def line(product, quantity):
    return {"product": str(product["_id"]), "quantity": quantity}


class TestPricing:
    def test_flat_shipping_below_threshold(self):
        prices = orders.calculate_prices(200)
        assert prices == {
            "items_price": 200,
            "shipping_price": 50,
            "tax_price": 36.0,
            "total_price": 286.0,
        }

    def test_free_shipping_at_threshold(self):
        prices = orders.calculate_prices(500)
        assert prices["shipping_price"] == 0
        assert prices["total_price"] == 590.0

    def test_order_number_format(self):
        number = orders.generate_order_number()
        assert number.startswith("ORD-")
        assert len(number.split("-")[2]) == 6


class TestCreateOrder:
    def test_snapshots_prices_and_decrements_stock(self, db, customer, make_product, shipping_address):
        product = make_product(price=100, stock=5)

        order = orders.create_order(db, customer[0], [line(product, 2)], shipping_address, "razorpay")

        assert order["items_price"] == 200
        assert order["items"][0]["name"] == "Widget"
        assert order["items"][0]["price"] == 100
        assert order["items"][0]["image"] == "https://img.example.com/widget.png"
        assert order["status"] == "pending"
        assert [e["status"] for e in order["status_history"]] == ["pending"]
        assert order["payment_status"] == "pending"
        assert order["is_paid"] is False
        assert stock_of(db, product) == 3

    def test_items_price_is_sum_of_snapshots(self, db, customer, make_product, shipping_address):
        a = make_product(name="Lamp", price=19.99, stock=10)
        b = make_product(name="Desk", price=250.0, stock=2)

        order = orders.create_order(
            db, customer[0], [line(a, 3), line(b, 1)], shipping_address, "cod"
        )

        expected = round(sum(i["price"] * i["quantity"] for i in order["items"]), 2)
        assert order["items_price"] == expected == 309.97

    def test_later_price_change_does_not_touch_order(self, db, customer, make_product, shipping_address):
        product = make_product(price=100, stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")

        db["product"].update_one({"_id": product["_id"]}, {"$set": {"price": 999}})

        stored = orders.get_order(db, order["_id"])
        assert stored["items"][0]["price"] == 100
        assert stored["items_price"] == 100

    def test_unknown_product(self, db, customer, shipping_address):
        with pytest.raises(NotFoundError):
            orders.create_order(
                db, customer[0], [{"product": "0" * 24, "quantity": 1}], shipping_address, "cod"
            )

    def test_insufficient_stock_mutates_nothing(self, db, customer, make_product, shipping_address):
        product = make_product(stock=1)

        with pytest.raises(InsufficientStockError):
            orders.create_order(db, customer[0], [line(product, 2)], shipping_address, "cod")

        assert stock_of(db, product) == 1
        assert db["order"].count_documents({}) == 0

    def test_failed_reservation_releases_earlier_items(self, db, customer, make_product, shipping_address, monkeypatch):
        a = make_product(name="Lamp", stock=5)
        b = make_product(name="Desk", stock=5)
        real_reserve = orders.reserve_stock

        def reserve(database, product_id, quantity):
            if product_id == b["_id"]:
                # someone else bought the desks after our pre-check
                database["product"].update_one({"_id": b["_id"]}, {"$set": {"stock": 0}})
            return real_reserve(database, product_id, quantity)

        monkeypatch.setattr(orders, "reserve_stock", reserve)

        with pytest.raises(InsufficientStockError):
            orders.create_order(db, customer[0], [line(a, 2), line(b, 1)], shipping_address, "cod")

        assert stock_of(db, a) == 5
        assert db["order"].count_documents({}) == 0

    def test_failed_insert_releases_stock(self, db, customer, make_product, shipping_address, monkeypatch):
        product = make_product(stock=5)

        def broken_insert(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(orders, "create_document", broken_insert)

        with pytest.raises(RuntimeError):
            orders.create_order(db, customer[0], [line(product, 3)], shipping_address, "cod")

        assert stock_of(db, product) == 5

    def test_duplicate_lines_cannot_oversell(self, db, customer, make_product, shipping_address):
        product = make_product(stock=1)

        with pytest.raises(InsufficientStockError):
            orders.create_order(
                db, customer[0], [line(product, 1), line(product, 1)], shipping_address, "cod"
            )

        assert stock_of(db, product) == 1


class TestStockRace:
    def test_reservation_is_conditional(self, db, make_product):
        product = make_product(stock=1)

        assert orders.reserve_stock(db, product["_id"], 1) is True
        assert orders.reserve_stock(db, product["_id"], 1) is False
        assert stock_of(db, product) == 0

    def test_last_unit_sold_once(self, db, make_user, make_product, shipping_address):
        product = make_product(stock=1)
        first, _ = make_user()
        second, _ = make_user()

        orders.create_order(db, first, [line(product, 1)], shipping_address, "cod")
        with pytest.raises(InsufficientStockError):
            orders.create_order(db, second, [line(product, 1)], shipping_address, "cod")

        assert stock_of(db, product) == 0
        assert db["order"].count_documents({}) == 1

    def test_interleaved_orders_for_last_unit(self, db, monkeypatch, make_user, make_product, shipping_address):
        product = make_product(stock=1)
        first, _ = make_user()
        second, _ = make_user()
        reserve = orders.reserve_stock
        placed = []

        def reserve_after_competitor(db_, product_id, quantity):
            # both callers have passed the stock check; the other one reserves first
            if not placed:
                placed.append(None)
                placed[0] = orders.create_order(db, second, [line(product, 1)], shipping_address, "cod")
            return reserve(db_, product_id, quantity)

        monkeypatch.setattr(orders, "reserve_stock", reserve_after_competitor)

        with pytest.raises(InsufficientStockError):
            orders.create_order(db, first, [line(product, 1)], shipping_address, "cod")

        assert placed[0]["user"] == str(second["_id"])
        assert stock_of(db, product) == 0
        assert db["order"].count_documents({}) == 1


class TestCancelOrder:
    def test_cancel_restores_stock(self, db, customer, make_product, shipping_address):
        product = make_product(price=100, stock=5)
        order = orders.create_order(db, customer[0], [line(product, 2)], shipping_address, "cod")
        assert stock_of(db, product) == 3

        cancelled = orders.cancel_order(db, order["_id"], customer[0])

        assert stock_of(db, product) == 5
        assert cancelled["status"] == "cancelled"
        history = cancelled["status_history"]
        assert [e["status"] for e in history] == ["pending", "cancelled"]
        assert history[0]["note"] == "Order placed successfully"

    def test_cancel_confirmed_order(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        orders.update_status(db, order["_id"], "confirmed")

        orders.cancel_order(db, order["_id"], customer[0])

        assert stock_of(db, product) == 5

    def test_cannot_cancel_shipped(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        orders.update_status(db, order["_id"], "confirmed")
        orders.update_status(db, order["_id"], "shipped")

        with pytest.raises(ConflictError):
            orders.cancel_order(db, order["_id"], customer[0])

        assert stock_of(db, product) == 4
        assert orders.get_order(db, order["_id"])["status"] == "shipped"

    def test_second_cancel_does_not_restore_twice(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 2)], shipping_address, "cod")
        orders.cancel_order(db, order["_id"], customer[0])

        with pytest.raises(ConflictError):
            orders.cancel_order(db, order["_id"], customer[0])

        assert stock_of(db, product) == 5

    def test_only_owner_can_cancel(self, db, customer, make_user, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        stranger, _ = make_user()

        with pytest.raises(ForbiddenError):
            orders.cancel_order(db, order["_id"], stranger)

        assert stock_of(db, product) == 4


class TestUpdateStatus:
    def test_walks_the_happy_path(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")

        orders.update_status(db, order["_id"], "confirmed", "Stock checked")
        orders.update_status(db, order["_id"], "shipped", tracking_number="TRK123")
        final = orders.update_status(db, order["_id"], "delivered")

        assert final["status"] == "delivered"
        assert final["tracking_number"] == "TRK123"
        assert [e["status"] for e in final["status_history"]] == [
            "pending", "confirmed", "shipped", "delivered",
        ]
        assert final["status_history"][1]["note"] == "Stock checked"

    @pytest.mark.parametrize("target", ["shipped", "delivered", "pending"])
    def test_rejects_illegal_moves_from_pending(self, db, customer, make_product, shipping_address, target):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")

        with pytest.raises(ConflictError):
            orders.update_status(db, order["_id"], target)

        assert len(orders.get_order(db, order["_id"])["status_history"]) == 1

    def test_delivered_is_terminal(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        for status in ("confirmed", "shipped", "delivered"):
            orders.update_status(db, order["_id"], status)

        with pytest.raises(ConflictError):
            orders.update_status(db, order["_id"], "cancelled")

    def test_admin_cancel_restores_stock(self, db, customer, make_product, shipping_address):
        product = make_product(stock=5)
        order = orders.create_order(db, customer[0], [line(product, 2)], shipping_address, "cod")

        cancelled = orders.update_status(db, order["_id"], "cancelled", "Address unreachable")

        assert stock_of(db, product) == 5
        assert cancelled["status_history"][-1]["note"] == "Address unreachable"


class TestListOrders:
    def test_user_sees_only_own_orders(self, db, customer, make_user, make_product, shipping_address):
        product = make_product(stock=10)
        other, _ = make_user()
        orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")
        orders.create_order(db, other, [line(product, 1)], shipping_address, "cod")

        docs, pagination = orders.list_user_orders(db, customer[0], page=1, limit=1)

        assert len(docs) == 1
        assert pagination == {"current_page": 1, "total_pages": 2, "total_items": 2, "items_per_page": 1}

    def test_admin_search_by_recipient(self, db, customer, make_product, shipping_address):
        product = make_product(stock=10)
        orders.create_order(db, customer[0], [line(product, 1)], shipping_address, "cod")

        docs, _ = orders.list_all_orders(db, search="asha")
        assert len(docs) == 1
        docs, _ = orders.list_all_orders(db, search="nobody")
        assert docs == []
