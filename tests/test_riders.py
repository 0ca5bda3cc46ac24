import mongomock
import pytest
from pymongo.errors import AutoReconnect

import config
import orders
import riders
import wallet
from conftest import PlaceOrder, actor, drain, items, listen, make_rider
from database import create_document, to_object_id
from errors import Conflict, NotFound, Unauthorized, ValidationError
from schemas import GeoPoint, Restaurant, User


def fetch(db, collection, _id):
    return db[collection].find_one({"_id": to_object_id(_id)})


class TestAcceptOrder:
    def test_first_rider_gets_the_order(self, db, relay, rider_a, place):
        oid = place()
        pool = listen(relay, "riders")

        rider = riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])

        assert rider["current_order_id"] == oid
        order = fetch(db, "order", oid)
        assert order["rider_id"] == rider_a["id"]
        assert order["status"] == "Accepted"
        assigned = [m for m in drain(pool) if m["event"] == "riderAssigned"]
        assert assigned and assigned[-1]["data"]["riderId"] == rider_a["id"]

    def test_second_rider_loses(self, db, relay, rider_a, rider_b, place):
        oid = place()
        riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])

        with pytest.raises(Conflict, match="another rider"):
            riders.accept_order(db, relay, rider_b["id"], oid, rider_b["actor"])

        assert fetch(db, "order", oid)["rider_id"] == rider_a["id"]
        assert fetch(db, "rider", rider_b["id"])["current_order_id"] is None

    def test_accepting_twice_is_harmless(self, db, relay, rider_a, place):
        oid = place()
        riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        rider = riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert rider["current_order_id"] == oid

    def test_kitchen_status_kept(self, db, relay, restaurant, rider_a, place):
        oid = place()
        orders.update_order_status(db, relay, oid, "Preparing", restaurant["actor"])
        riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert fetch(db, "order", oid)["status"] == "Preparing"

    def test_busy_rider(self, db, relay, rider_a, place):
        first, second = place(), place()
        riders.accept_order(db, relay, rider_a["id"], first, rider_a["actor"])
        with pytest.raises(Conflict, match="active order"):
            riders.accept_order(db, relay, rider_a["id"], second, rider_a["actor"])
        assert fetch(db, "order", second)["rider_id"] is None

    def test_stale_finished_order_is_cleared(self, db, relay, admin, rider_a, place):
        old, new = place(), place()
        orders.cancel_order(db, relay, old, admin)
        db["rider"].update_one({"_id": to_object_id(rider_a["id"])}, {"$set": {"current_order_id": old}})

        rider = riders.accept_order(db, relay, rider_a["id"], new, rider_a["actor"])
        assert rider["current_order_id"] == new

    def test_offline_rider(self, db, relay, place):
        offline = make_rider(db, "Rider C", "c@example.com", online=False)
        with pytest.raises(Conflict, match="offline"):
            riders.accept_order(db, relay, offline["id"], place(), offline["actor"])

    def test_unapproved_rider(self, db, relay, place):
        pending = make_rider(db, "Rider D", "d@example.com", approved=False)
        with pytest.raises(Unauthorized):
            riders.accept_order(db, relay, pending["id"], place(), pending["actor"])

    def test_cannot_act_for_another_rider(self, db, relay, rider_a, rider_b, place):
        with pytest.raises(Unauthorized):
            riders.accept_order(db, relay, rider_a["id"], place(), rider_b["actor"])

    def test_unknown_order_releases_rider(self, db, relay, rider_a):
        with pytest.raises(NotFound):
            riders.accept_order(db, relay, rider_a["id"], "0123456789ab0123456789ab", rider_a["actor"])
        assert fetch(db, "rider", rider_a["id"])["current_order_id"] is None

    def test_cancelled_order(self, db, relay, customer, rider_a, place):
        oid = place()
        orders.cancel_order(db, relay, oid, customer)
        with pytest.raises(Conflict, match="no longer be accepted"):
            riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert fetch(db, "rider", rider_a["id"])["current_order_id"] is None

    def test_failed_order_write_releases_rider(self, db, relay, rider_a, place, monkeypatch):
        oid = place()
        real = mongomock.Collection.find_one_and_update
        calls = []

        def drop_first_order_write(self, *args, **kwargs):
            if self.name == "order" and not calls:
                calls.append(1)
                raise AutoReconnect("connection reset")
            return real(self, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "find_one_and_update", drop_first_order_write)
        with pytest.raises(AutoReconnect):
            riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert fetch(db, "rider", rider_a["id"])["current_order_id"] is None

        rider = riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert rider["current_order_id"] == oid

    def test_leftover_claim_on_unheld_order_is_cleared(self, db, relay, rider_a, rider_b, place):
        unheld, taken, new = place(), place(), place()
        riders.accept_order(db, relay, rider_b["id"], taken, rider_b["actor"])

        for leftover in (unheld, taken):
            db["rider"].update_one({"_id": to_object_id(rider_a["id"])}, {"$set": {"current_order_id": leftover}})
            rider = riders.accept_order(db, relay, rider_a["id"], new, rider_a["actor"])
            assert rider["current_order_id"] == new
            db["order"].update_one({"_id": to_object_id(new)}, {"$set": {"rider_id": None}})
            db["rider"].update_one({"_id": to_object_id(rider_a["id"])}, {"$set": {"current_order_id": None}})

    def test_claim_replaced_midway_undoes_order_claim(self, db, relay, rider_a, place, monkeypatch):
        oid = place()
        real = mongomock.Collection.find_one_and_update

        def replace_claim_first(self, *args, **kwargs):
            if self.name == "order":
                db["rider"].update_one({"_id": to_object_id(rider_a["id"])},
                                       {"$set": {"current_order_id": "another-order"}})
            return real(self, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "find_one_and_update", replace_claim_first)
        with pytest.raises(Conflict, match="active order"):
            riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        assert fetch(db, "order", oid)["rider_id"] is None


class TestAvailableOrders:
    def test_lists_unassigned_nearby(self, db, relay, rider_a, rider_b, place):
        taken, free = place(), place()
        riders.accept_order(db, relay, rider_b["id"], taken, rider_b["actor"])

        rows = riders.list_available_orders(db, rider_a["id"], rider_a["actor"])

        assert [r["id"] for r in rows] == [free]
        assert rows[0]["restaurant"]["name"] == "Karahi House"
        assert rows[0]["distance_km"] < 1
        assert rows[0]["net_rider_earning"] > 0

    def test_rejected_orders_hidden(self, db, rider_a, rider_b, place):
        oid = place()
        riders.reject_order(db, rider_a["id"], oid, rider_a["actor"])
        assert riders.list_available_orders(db, rider_a["id"], rider_a["actor"]) == []
        assert len(riders.list_available_orders(db, rider_b["id"], rider_b["actor"])) == 1

    def test_far_restaurants_filtered(self, db, relay, customer, rider_a, place):
        owner = create_document(db, "user", User(name="Far", email="far@example.com", role="restaurant"))
        far = create_document(db, "restaurant", Restaurant(name="Margalla Grill", owner_user_id=owner,
                                                           location=GeoPoint(lat=33.6844, lng=73.0479)))
        orders.create_order(db, relay, customer, PlaceOrder(far, items(), delivery_fee=0, tax=0))
        near = place()

        rows = riders.list_available_orders(db, rider_a["id"], rider_a["actor"])
        assert [r["id"] for r in rows] == [near]
        wide = riders.list_available_orders(db, rider_a["id"], rider_a["actor"], radius_km=500)
        assert [r["id"] for r in wide][0] == near
        assert len(wide) == 2

    def test_no_position_lists_everything(self, db, place):
        nowhere = make_rider(db, "Rider E", "e@example.com")
        place()
        rows = riders.list_available_orders(db, nowhere["id"], nowhere["actor"])
        assert len(rows) == 1
        assert rows[0]["distance_km"] is None


class TestProfile:
    def test_register_once(self, db):
        uid = create_document(db, "user", User(name="New", email="new@example.com", role="rider"))
        who = actor(uid, "rider")
        rider = riders.register_rider(db, who, "New Rider", city="Lahore")
        assert rider["verification_status"] == "not_started"
        with pytest.raises(Conflict):
            riders.register_rider(db, who, "New Rider")

    def test_customers_cannot_register(self, db, customer):
        with pytest.raises(Unauthorized):
            riders.register_rider(db, customer, "Nope")

    def test_verification_flow(self, db, admin):
        rider = make_rider(db, "Rider F", "f@example.com", approved=False, online=False)
        with pytest.raises(Unauthorized):
            riders.set_online(db, rider["id"], True, rider["actor"])

        riders.submit_for_verification(db, rider["id"], rider["actor"])
        riders.review_rider(db, rider["id"], "approved", admin)
        assert riders.set_online(db, rider["id"], True, rider["actor"])["is_online"] is True

        rejected = riders.review_rider(db, rider["id"], "rejected", admin)
        assert rejected["is_online"] is False

    def test_only_admin_reviews(self, db, rider_a):
        with pytest.raises(Unauthorized):
            riders.review_rider(db, rider_a["id"], "approved", rider_a["actor"])

    def test_location_pushed_to_order_watchers(self, db, relay, customer, rider_a, place):
        oid = place()
        riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        watcher = listen(relay, f"user-{customer['sub']}")

        riders.update_location(db, relay, rider_a["id"], 31.53, 74.36, rider_a["actor"], order_id=oid)

        events = drain(watcher)
        assert events[-1]["event"] == "riderLocationUpdate"
        assert events[-1]["data"]["location"] == {"lat": 31.53, "lng": 74.36}
        assert fetch(db, "rider", rider_a["id"])["current_location"] == {"lat": 31.53, "lng": 74.36}


class TestMoney:
    def test_cashout_needs_bank_details(self, db, relay, rider_a):
        db["rider"].update_one({"_id": to_object_id(rider_a["id"])}, {"$set": {"wallet_balance": 900}})
        with pytest.raises(ValidationError, match="bank details"):
            riders.cashout(db, relay, rider_a["id"], rider_a["actor"])

    def test_cashout_minimum(self, db, relay, rider_a):
        riders.update_bank_details(db, rider_a["id"], rider_a["actor"], "HBL", "0011223344", "Rider A")
        db["rider"].update_one({"_id": to_object_id(rider_a["id"])},
                               {"$set": {"wallet_balance": config.MIN_CASHOUT_AMOUNT - 1}})
        with pytest.raises(ValidationError, match="Minimum"):
            riders.cashout(db, relay, rider_a["id"], rider_a["actor"])

    def test_cashout_moves_whole_balance(self, db, relay, rider_a):
        riders.update_bank_details(db, rider_a["id"], rider_a["actor"], "HBL", "0011223344", "Rider A")
        db["rider"].update_one({"_id": to_object_id(rider_a["id"])}, {"$set": {"wallet_balance": 900}})

        payout = riders.cashout(db, relay, rider_a["id"], rider_a["actor"])

        assert payout["amount"] == 900
        assert payout["status"] == "pending"
        assert fetch(db, "rider", rider_a["id"])["wallet_balance"] == 0
        [entry] = riders.list_transactions(db, rider_a["id"], rider_a["actor"])
        assert entry["event_type"] == wallet.PAYOUT
        assert entry["reference"] == f"payout-{payout['_id']}"

    def test_cod_settlement(self, db, relay, admin, rider_a, place):
        oid = place(items=items(500))
        riders.accept_order(db, relay, rider_a["id"], oid, rider_a["actor"])
        for status in ("Arrived", "Picked Up", "ArrivedAtCustomer", "Delivered"):
            orders.update_order_status(db, relay, oid, status, rider_a["actor"])

        result = riders.settle_cod(db, relay, rider_a["id"], 500, "slip-1", admin)
        again = riders.settle_cod(db, relay, rider_a["id"], 500, "slip-1", admin)

        assert result["rider"]["cod_balance"] == 0
        assert again["entry"] is None
        assert db["cod_ledger"].find_one({"order_id": oid})["status"] == "paid"
        with pytest.raises(Conflict, match="Insufficient"):
            riders.settle_cod(db, relay, rider_a["id"], 100, "slip-2", admin)

    def test_settlement_admin_only(self, db, relay, rider_a):
        with pytest.raises(Unauthorized):
            riders.settle_cod(db, relay, rider_a["id"], 100, "slip-1", rider_a["actor"])
