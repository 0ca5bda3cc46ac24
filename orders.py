"""
Order lifecycle: checkout, status transitions and their side effects.

A transition is validated against order_flow, then written with a single
compare-and-set on the status that was read, so two concurrent requests can
never both apply. Delivery settlement and rider release run after the write
and are safe to repeat.
"""

import logging
import random
import time
from typing import List, Optional

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument

import config
import order_flow
import pricing
import wallet
from database import create_document, now_utc, to_object_id
from errors import Conflict, InvalidTransition, NotFound, Unauthorized, ValidationError
from order_flow import CANCELLED, DELIVERED, PENDING
from relay import NEW_ORDER, NEW_ORDER_AVAILABLE, RIDERS_CHANNEL, order_payload, restaurant_channel
from schemas import CODLedger, Order

logger = logging.getLogger(__name__)


def new_order_number() -> str:
    stamp = str(int(time.time() * 1000))[-4:]
    return f"FS-{stamp}{random.randint(0, 999):03d}"


def load_order(db, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id)})
    if not order:
        raise NotFound("Order not found")
    return order


def restaurant_for_owner(db, user_id: str) -> Optional[dict]:
    return db["restaurant"].find_one({"owner_user_id": user_id})


def rider_for_user(db, user_id: str) -> Optional[dict]:
    return db["rider"].find_one({"user_id": user_id})


def can_view(db, order: dict, actor: dict) -> bool:
    role = actor.get("role")
    if role == "admin":
        return True
    if role == "customer":
        return order["customer_id"] == actor.get("sub")
    if role == "restaurant":
        restaurant = restaurant_for_owner(db, actor.get("sub"))
        return bool(restaurant) and str(restaurant["_id"]) == order["restaurant_id"]
    if role == "rider":
        if not order.get("rider_id"):
            return True
        rider = rider_for_user(db, actor.get("sub"))
        return bool(rider) and str(rider["_id"]) == order["rider_id"]
    return False


def get_order(db, order_id: str, actor: dict) -> dict:
    order = load_order(db, order_id)
    if not can_view(db, order, actor):
        raise Unauthorized("Not authorized to view this order")
    return order


def list_orders_for_actor(db, actor: dict, limit: int = 50) -> List[dict]:
    role = actor.get("role")
    if role == "customer":
        filt = {"customer_id": actor.get("sub")}
    elif role == "restaurant":
        restaurant = restaurant_for_owner(db, actor.get("sub"))
        if not restaurant:
            raise NotFound("Restaurant not found")
        filt = {"restaurant_id": str(restaurant["_id"])}
    elif role == "rider":
        rider = rider_for_user(db, actor.get("sub"))
        if not rider:
            raise NotFound("Rider profile not found")
        filt = {"rider_id": str(rider["_id"])}
    elif role == "admin":
        filt = {}
    else:
        raise Unauthorized("Unknown role")
    return list(db["order"].find(filt).sort("created_at", DESCENDING).limit(limit))


# ---------------------- Checkout ----------------------

def create_order(db, relay, actor: dict, body) -> dict:
    """Place an order from a checkout submission and announce it."""
    if actor.get("role") != "customer":
        raise Unauthorized("Only customers can place orders")
    restaurant = db["restaurant"].find_one({"_id": to_object_id(body.restaurant_id)})
    if not restaurant:
        raise NotFound("Restaurant not found")
    if not body.items:
        raise ValidationError("Order must contain at least one item")
    if not (body.shipping_address or "").strip():
        raise ValidationError("Delivery address is required")

    delivery_location = body.delivery_location.model_dump() if body.delivery_location else None
    subtotal = pricing.items_subtotal(body.items)
    if body.distance_km is not None:
        km = body.distance_km
    else:
        km = pricing.distance_km(restaurant.get("location"), delivery_location)
    delivery_fee = body.delivery_fee if body.delivery_fee is not None else pricing.calculate_delivery_fee(km)
    tax = body.tax if body.tax is not None else pricing.money(subtotal * config.TAX_RATE)
    charges = subtotal + delivery_fee + tax + body.service_fee
    if body.discount > charges:
        raise ValidationError("Discount cannot exceed the order charges")
    total = pricing.order_total(subtotal, delivery_fee, tax, body.service_fee, body.discount)

    order_oid = ObjectId()
    paid_from_wallet = body.payment_method == "wallet"
    now = now_utc()
    model = Order(
        order_number=new_order_number(),
        customer_id=actor["sub"],
        restaurant_id=str(restaurant["_id"]),
        items=body.items,
        subtotal=subtotal,
        delivery_fee=delivery_fee,
        tax=tax,
        service_fee=body.service_fee,
        discount=body.discount,
        total=total,
        commission_rate=config.COMMISSION_RATE,
        distance_km=km,
        payment_method=body.payment_method,
        payment_status="paid" if paid_from_wallet else "pending",
        status=PENDING,
        shipping_address=body.shipping_address,
        delivery_location=body.delivery_location,
        delivery_instructions=body.delivery_instructions,
        cutlery=body.cutlery,
        status_changed_at=now,
    )
    debit = None
    if paid_from_wallet:
        debit = wallet.record_entry(db, actor["sub"], wallet.ORDER_PAYMENT, total, order_id=str(order_oid),
                                    description="Order paid from wallet")
    try:
        create_document(db, "order", model, _id=order_oid)
    except Exception:
        if debit:
            logger.warning("Order insert failed, returning %.2f to customer %s", total, actor["sub"])
            wallet.record_entry(db, actor["sub"], wallet.REFUND, total, order_id=str(order_oid),
                                description="Checkout failed, payment returned")
        raise
    order = db["order"].find_one({"_id": order_oid})
    logger.info("Order %s placed for restaurant %s, total %.2f", order["order_number"],
                order["restaurant_id"], total)

    if debit:
        relay.wallet_updated(debit)
    payload = order_payload(order)
    relay.publish(restaurant_channel(order["restaurant_id"]), NEW_ORDER, payload)
    relay.publish(RIDERS_CHANNEL, NEW_ORDER_AVAILABLE, {
        **payload,
        "restaurant": {
            "id": str(restaurant["_id"]),
            "name": restaurant.get("name"),
            "address": restaurant.get("address"),
            "location": restaurant.get("location"),
        },
        "deliveryAddress": order["shipping_address"],
        "distanceKm": km,
        "earnings": pricing.calculate_rider_earning(km)["net_earning"],
    })
    return order


# ---------------------- Status transitions ----------------------

def authorize_transition(db, order: dict, target: str, actor: dict) -> None:
    role = actor.get("role")
    if target not in order_flow.ORDER_STATUSES:
        raise InvalidTransition(f"Unknown order status '{target}'")
    if target in order_flow.RIDER_STATUSES and not order.get("rider_id"):
        raise InvalidTransition("Order has no rider assigned")
    if role == "admin":
        return
    if role not in order_flow.roles_for(target):
        raise Unauthorized(f"A {role} cannot set an order to {target}")
    if role == "restaurant":
        restaurant = restaurant_for_owner(db, actor.get("sub"))
        if not restaurant or str(restaurant["_id"]) != order["restaurant_id"]:
            raise Unauthorized("Not authorized to update this order")
    elif role == "rider":
        rider = rider_for_user(db, actor.get("sub"))
        if not rider or str(rider["_id"]) != order.get("rider_id"):
            raise Unauthorized("Only the assigned rider can update this order")
    elif role == "customer":
        if order["customer_id"] != actor.get("sub"):
            raise Unauthorized("Not authorized to update this order")
        if order["status"] != PENDING:
            raise InvalidTransition("Order can no longer be cancelled by the customer")


def _delivery_financials(db, order: dict, distance_km: Optional[float]) -> dict:
    km = distance_km if distance_km is not None else order.get("distance_km")
    if km is None:
        restaurant = db["restaurant"].find_one({"_id": to_object_id(order["restaurant_id"])}) or {}
        km = pricing.distance_km(restaurant.get("location"), order.get("delivery_location"))
    earning = pricing.calculate_rider_earning(km)
    out = {
        "distance_km": km,
        "rider_earning": earning["gross_earning"],
        "platform_fee": earning["platform_fee"],
        "net_rider_earning": earning["net_earning"],
    }
    if order.get("payment_method") == "cod":
        out["payment_status"] = "paid"
    return out


def update_order_status(db, relay, order_id: str, target: str, actor: dict, distance_km: Optional[float] = None,
                        cancellation_reason: Optional[str] = None, prep_time: Optional[int] = None) -> dict:
    order = load_order(db, order_id)
    authorize_transition(db, order, target, actor)
    if not order_flow.check_transition(order["status"], target):
        # Already there. A repeated Delivered finishes any settlement a
        # failed earlier attempt left behind; ledger keys stop double credits.
        if target == DELIVERED:
            settle_delivery(db, relay, order)
        return order

    now = now_utc()
    updates = {"status": target, "status_changed_at": now, "updated_at": now}
    if prep_time is not None:
        updates["prep_time"] = prep_time
    if order_flow.STATUS_STEPS.get(target) == order_flow.PICKUP_STEP and not order.get("picked_up_at"):
        updates["picked_up_at"] = now
    if target == CANCELLED:
        updates["cancelled_at"] = now
        if cancellation_reason:
            updates["cancellation_reason"] = cancellation_reason
    elif target == DELIVERED:
        updates.update(_delivery_financials(db, order, distance_km))
        updates["delivered_at"] = now

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": order["status"]},
        {"$set": updates},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        logger.warning("Order %s changed while moving %s -> %s", order_id, order["status"], target)
        raise Conflict("Order was updated by someone else, refresh and retry")
    logger.info("Order %s: %s -> %s by %s", order_id, order["status"], target, actor.get("role"))

    if target == DELIVERED:
        settle_delivery(db, relay, updated)
    elif target == CANCELLED:
        release_rider(db, updated, cancelled=True)
    relay.order_updated(updated)
    return updated


def cancel_order(db, relay, order_id: str, actor: dict, reason: Optional[str] = None) -> dict:
    return update_order_status(db, relay, order_id, CANCELLED, actor, cancellation_reason=reason)


def complete_order(db, relay, order_id: str, actor: dict, distance_km: Optional[float] = None) -> dict:
    return update_order_status(db, relay, order_id, DELIVERED, actor, distance_km=distance_km)


# ---------------------- Side effects ----------------------

def release_rider(db, order: dict, cancelled: bool = False) -> bool:
    """Clear the rider's active order if it still points at this order."""
    rider_id = order.get("rider_id")
    if not rider_id:
        return False
    counter = "stats.cancelled_deliveries" if cancelled else "stats.completed_deliveries"
    res = db["rider"].update_one(
        {"_id": to_object_id(rider_id), "current_order_id": str(order["_id"])},
        {"$set": {"current_order_id": None, "updated_at": now_utc()}, "$inc": {counter: 1}},
    )
    return res.modified_count > 0


def settle_delivery(db, relay, order: dict) -> List[dict]:
    """Credit everyone owed money for a delivered order. Safe to call again."""
    order_id = str(order["_id"])
    rider_id = order.get("rider_id")
    label = order.get("order_number") or order_id
    entries = []
    if rider_id:
        entries.append(wallet.record_entry(db, rider_id, wallet.DELIVERY_EARNING, order.get("net_rider_earning", 0),
                                           order_id=order_id, description=f"Delivery earning for {label}"))
    if order.get("payment_method") == "cod":
        total, rate = order["total"], order["commission_rate"]
        restaurant_id = order["restaurant_id"]
        entries.append(wallet.record_entry(db, restaurant_id, wallet.COD_SALE, pricing.restaurant_share(total, rate),
                                           order_id=order_id, description=f"Cash sale {label}"))
        entries.append(wallet.record_entry(db, restaurant_id, wallet.COMMISSION, pricing.commission(total, rate),
                                           order_id=order_id, description=f"Platform commission on {label}"))
        if rider_id:
            entries.append(wallet.record_entry(db, rider_id, wallet.CASH_COLLECTED, total, order_id=order_id,
                                               description=f"Cash collected for {label}"))
            cod = CODLedger(
                order_id=order_id,
                rider_id=rider_id,
                cod_collected=total,
                rider_earning=order.get("net_rider_earning", 0),
                admin_balance=pricing.money(total - order.get("net_rider_earning", 0)),
            ).model_dump(exclude={"order_id"})
            cod["created_at"] = now_utc()
            db["cod_ledger"].update_one({"order_id": order_id}, {"$setOnInsert": cod}, upsert=True)
    release_rider(db, order)

    recorded = [e for e in entries if e]
    for entry in recorded:
        relay.wallet_updated(entry)
    return recorded


def refund_order(db, relay, order_id: str, actor: dict) -> dict:
    """Return the paid amount of a cancelled order to the customer's wallet."""
    if actor.get("role") != "admin":
        raise Unauthorized("Only admins can refund orders")
    order = load_order(db, order_id)
    if order["status"] != CANCELLED:
        raise InvalidTransition("Only cancelled orders can be refunded")
    if order.get("payment_status") == "refunded":
        return order
    if order.get("payment_status") != "paid":
        raise InvalidTransition("Order has not been paid")

    entry = wallet.record_entry(db, order["customer_id"], wallet.REFUND, order["total"], order_id=str(order["_id"]),
                                description=f"Refund for {order.get('order_number')}")
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": "paid"},
        {"$set": {"payment_status": "refunded", "updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    ) or load_order(db, order_id)
    if entry:
        relay.wallet_updated(entry)
    relay.order_updated(updated)
    return updated
