"""
Rider profiles, the available-orders view and order assignment.

Assignment is two conditional writes: the rider is claimed only while it
holds no order, then the order is claimed only while it has no rider. The
first rider to land the order write wins; everyone else gets a Conflict.
"""

import logging
from typing import List, Optional

from bson import ObjectId
from pymongo import ReturnDocument

import config
import order_flow
import pricing
import wallet
from database import create_document, now_utc, serialize, to_object_id
from errors import Conflict, InvalidTransition, NotFound, Unauthorized, ValidationError
from orders import load_order
from relay import RIDER_ASSIGNED, RIDER_LOCATION_UPDATE, RIDERS_CHANNEL, order_channel, restaurant_channel, \
    user_channel
from schemas import BankDetails, Payout, Rider

logger = logging.getLogger(__name__)


def load_rider(db, rider_id: str) -> dict:
    rider = db["rider"].find_one({"_id": to_object_id(rider_id)})
    if not rider:
        raise NotFound("Rider not found")
    return rider


def own_rider(db, rider_id: str, actor: dict) -> dict:
    rider = load_rider(db, rider_id)
    if actor.get("role") == "admin":
        return rider
    if actor.get("role") != "rider" or rider["user_id"] != actor.get("sub"):
        raise Unauthorized("Not authorized for this rider")
    return rider


# ---------------------- Profile ----------------------

def register_rider(db, actor: dict, full_name: str, vehicle_type: str = "Bike", city: Optional[str] = None) -> dict:
    if actor.get("role") != "rider":
        raise Unauthorized("Only rider accounts can register as riders")
    if db["rider"].find_one({"user_id": actor["sub"]}):
        raise Conflict("Rider profile already exists")
    model = Rider(user_id=actor["sub"], full_name=full_name, vehicle_type=vehicle_type, city=city)
    rid = create_document(db, "rider", model)
    logger.info("Rider %s registered for user %s", rid, actor["sub"])
    return load_rider(db, rid)


def get_rider(db, rider_id: str, actor: dict) -> dict:
    return own_rider(db, rider_id, actor)


def submit_for_verification(db, rider_id: str, actor: dict) -> dict:
    rider = own_rider(db, rider_id, actor)
    if rider.get("verification_status") == "approved":
        raise InvalidTransition("Rider is already approved")
    return db["rider"].find_one_and_update(
        {"_id": rider["_id"]},
        {"$set": {"verification_status": "pending", "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )


def review_rider(db, rider_id: str, status: str, actor: dict) -> dict:
    if actor.get("role") != "admin":
        raise Unauthorized("Only admins can review riders")
    if status not in ("approved", "rejected"):
        raise ValidationError("Verification status must be approved or rejected")
    rider = load_rider(db, rider_id)
    updates = {"verification_status": status, "updated_at": now_utc()}
    if status == "rejected":
        updates["is_online"] = False
    logger.info("Rider %s verification -> %s", rider_id, status)
    return db["rider"].find_one_and_update({"_id": rider["_id"]}, {"$set": updates},
                                           return_document=ReturnDocument.AFTER)


def set_online(db, rider_id: str, is_online: bool, actor: dict) -> dict:
    rider = own_rider(db, rider_id, actor)
    if is_online and rider.get("verification_status") != "approved":
        raise Unauthorized("Rider is not approved for deliveries")
    return db["rider"].find_one_and_update(
        {"_id": rider["_id"]},
        {"$set": {"is_online": bool(is_online), "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )


def update_bank_details(db, rider_id: str, actor: dict, bank_name: str, account_number: str,
                        account_title: str) -> dict:
    rider = own_rider(db, rider_id, actor)
    details = BankDetails(bank_name=bank_name, account_number=account_number, account_title=account_title)
    db["rider"].update_one({"_id": rider["_id"]},
                           {"$set": {"bank_details": details.model_dump(), "updated_at": now_utc()}})
    return details.model_dump()


def update_location(db, relay, rider_id: str, lat: float, lng: float, actor: dict,
                    order_id: Optional[str] = None) -> dict:
    rider = own_rider(db, rider_id, actor)
    location = {"lat": lat, "lng": lng}
    db["rider"].update_one({"_id": rider["_id"]}, {"$set": {"current_location": location, "updated_at": now_utc()}})
    if order_id:
        order = load_order(db, order_id)
        if order.get("rider_id") != rider_id:
            raise Unauthorized("Only the assigned rider can share location for this order")
        if not order_flow.is_terminal(order["status"]):
            db["order"].update_one({"_id": order["_id"]}, {"$set": {"rider_location": location}})
            data = {"orderId": order_id, "location": location}
            relay.fan_out([order_channel(order_id), user_channel(order["customer_id"]),
                           restaurant_channel(order["restaurant_id"])], RIDER_LOCATION_UPDATE, data)
    return {"message": "Location updated", "location": location}


# ---------------------- Assignment ----------------------

def list_available_orders(db, rider_id: str, actor: dict, lat: Optional[float] = None, lng: Optional[float] = None,
                          radius_km: Optional[float] = None, limit: int = 20) -> List[dict]:
    """Unassigned kitchen-stage orders near the rider, nearest first."""
    rider = own_rider(db, rider_id, actor)
    if lat is not None and lng is not None:
        position = {"lat": lat, "lng": lng}
    else:
        position = rider.get("current_location")
    has_position = pricing.as_point(position) is not None
    radius = radius_km if radius_km is not None else config.RIDER_SEARCH_RADIUS_KM

    orders = db["order"].find({
        "rider_id": None,
        "status": {"$in": list(order_flow.ASSIGNABLE_STATUSES)},
        "rejected_by": {"$ne": rider_id},
    }).sort("created_at", 1).limit(100)

    restaurants = {}
    rows = []
    for order in orders:
        rid = order["restaurant_id"]
        if rid not in restaurants:
            restaurants[rid] = db["restaurant"].find_one({"_id": to_object_id(rid)}) or {}
        restaurant = restaurants[rid]
        away = None
        if has_position and pricing.as_point(restaurant.get("location")) is not None:
            away = pricing.distance_km(position, restaurant.get("location"))
            if away > radius:
                continue
        trip = order.get("distance_km") or config.DEFAULT_DISTANCE_KM
        rows.append({
            "id": str(order["_id"]),
            "order_number": order.get("order_number"),
            "status": order["status"],
            "restaurant": {
                "id": rid,
                "name": restaurant.get("name", "Restaurant"),
                "address": restaurant.get("address"),
                "location": restaurant.get("location"),
            },
            "delivery_address": order.get("shipping_address"),
            "distance_km": away,
            "delivery_distance_km": trip,
            "net_rider_earning": pricing.calculate_rider_earning(trip)["net_earning"],
            "total": order.get("total"),
            "payment_method": order.get("payment_method"),
            "created_at": order.get("created_at"),
        })
    rows.sort(key=lambda r: (r["distance_km"] is None, r["distance_km"] or 0))
    return rows[:limit]


def _clear_stale_order(db, rider: dict) -> None:
    current = rider.get("current_order_id")
    if not current:
        return
    held = db["order"].find_one({"_id": to_object_id(current)}, {"status": 1, "rider_id": 1})
    # a pointer to an order this rider never got is a leftover claim
    if held and not order_flow.is_terminal(held["status"]) and held.get("rider_id") == str(rider["_id"]):
        raise Conflict("Rider already has an active order")
    db["rider"].update_one({"_id": rider["_id"], "current_order_id": current}, {"$set": {"current_order_id": None}})


def _release_claim(db, rider: dict, order_id: str) -> None:
    db["rider"].update_one({"_id": rider["_id"], "current_order_id": order_id}, {"$set": {"current_order_id": None}})


def accept_order(db, relay, rider_id: str, order_id: str, actor: dict) -> dict:
    rider = own_rider(db, rider_id, actor)
    if rider.get("verification_status") != "approved":
        raise Unauthorized("Rider is not approved for deliveries")
    if not rider.get("is_online"):
        raise Conflict("Rider is offline")
    order_oid = to_object_id(order_id)

    if rider.get("current_order_id") == order_id:
        held = db["order"].find_one({"_id": order_oid}, {"rider_id": 1})
        if held and held.get("rider_id") == rider_id:
            return rider
    _clear_stale_order(db, rider)

    now = now_utc()
    claimed = db["rider"].update_one(
        {"_id": rider["_id"], "current_order_id": None},
        {"$set": {"current_order_id": order_id, "updated_at": now}},
    )
    if claimed.matched_count == 0:
        raise Conflict("Rider already has an active order")

    try:
        order = db["order"].find_one_and_update(
            {"_id": order_oid, "rider_id": None, "status": {"$in": list(order_flow.ASSIGNABLE_STATUSES)}},
            {"$set": {"rider_id": rider_id, "rider_accepted_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
    except Exception:
        _release_claim(db, rider, order_id)
        raise
    if order is None:
        _release_claim(db, rider, order_id)
        existing = db["order"].find_one({"_id": order_oid}, {"rider_id": 1, "status": 1})
        if existing is None:
            raise NotFound("Order not found")
        if existing.get("rider_id"):
            logger.warning("Rider %s lost order %s to rider %s", rider_id, order_id, existing["rider_id"])
            raise Conflict("Order already assigned to another rider")
        raise Conflict(f"Order is {existing['status']} and can no longer be accepted")
    if not db["rider"].find_one({"_id": rider["_id"], "current_order_id": order_id}, {"_id": 1}):
        # another accept by the same rider replaced this claim meanwhile
        db["order"].update_one({"_id": order_oid, "rider_id": rider_id},
                               {"$set": {"rider_id": None, "rider_accepted_at": None}})
        raise Conflict("Rider already has an active order")

    if order["status"] == order_flow.PENDING:
        moved = db["order"].find_one_and_update(
            {"_id": order_oid, "status": order_flow.PENDING},
            {"$set": {"status": order_flow.ACCEPTED, "status_changed_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        order = moved or order
    logger.info("Rider %s accepted order %s", rider_id, order_id)

    rider_info = {"id": rider_id, "name": rider.get("full_name"), "vehicleType": rider.get("vehicle_type")}
    relay.order_updated(order, RIDER_ASSIGNED, extra={"rider": rider_info})
    relay.publish(RIDERS_CHANNEL, RIDER_ASSIGNED, {"orderId": order_id, "riderId": rider_id})
    return load_rider(db, rider_id)


def reject_order(db, rider_id: str, order_id: str, actor: dict) -> dict:
    """Hide an order from this rider's available view."""
    own_rider(db, rider_id, actor)
    res = db["order"].update_one({"_id": to_object_id(order_id)}, {"$addToSet": {"rejected_by": rider_id}})
    if res.matched_count == 0:
        raise NotFound("Order not found")
    return {"message": "Order rejected"}


# ---------------------- Money ----------------------

def list_transactions(db, rider_id: str, actor: dict, limit: int = 50, skip: int = 0) -> List[dict]:
    own_rider(db, rider_id, actor)
    return wallet.list_entries(db, "rider", rider_id, limit=limit, skip=skip)


def cashout(db, relay, rider_id: str, actor: dict) -> dict:
    rider = own_rider(db, rider_id, actor)
    if not (rider.get("bank_details") or {}).get("account_number"):
        raise ValidationError("Please add bank details first")
    amount = pricing.money(rider.get("wallet_balance", 0))
    if amount < config.MIN_CASHOUT_AMOUNT:
        raise ValidationError(f"Minimum cashout amount is Rs. {config.MIN_CASHOUT_AMOUNT:.0f}")

    payout_oid = ObjectId()
    entry = wallet.record_entry(db, rider_id, wallet.PAYOUT, amount, reference=f"payout-{payout_oid}",
                                description=f"Cashout request of Rs. {amount:.0f}")
    create_document(db, "payout", Payout(rider_id=rider_id, amount=amount), _id=payout_oid)
    relay.wallet_updated(entry)
    logger.info("Rider %s requested cashout of %.2f", rider_id, amount)
    return db["payout"].find_one({"_id": payout_oid})


def settle_cod(db, relay, rider_id: str, amount: float, reference: str, actor: dict) -> dict:
    """Admin records cash handed over by a rider."""
    if actor.get("role") != "admin":
        raise Unauthorized("Only admins can settle rider cash")
    load_rider(db, rider_id)
    if amount <= 0:
        raise ValidationError("Settlement amount must be positive")
    entry = wallet.record_entry(db, rider_id, wallet.CASH_DEPOSIT, amount, reference=f"cod-settlement-{reference}",
                                description="Cash deposited with the platform")
    rider = load_rider(db, rider_id)
    if rider.get("cod_balance", 0) <= 0:
        db["cod_ledger"].update_many({"rider_id": rider_id, "status": "pending"},
                                     {"$set": {"status": "paid", "settled_at": now_utc()}})
    if entry:
        relay.wallet_updated(entry)
    return {"rider": serialize(rider), "entry": serialize(entry)}
