"""
Wallet/ledger updates for riders, restaurants and customers.

Every financial movement is an append-only ledger entry with a unique key
built from (event, entity, order or reference). Re-applying the same
movement finds the key already taken and changes nothing, so a retried
"Delivered" never credits twice. The cached balance on the owning document
is moved with $inc right after the entry is written.
"""

import logging
from typing import Dict, List, Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import now_utc, to_object_id
from errors import Conflict, NotFound, ValidationError
from pricing import money
from schemas import LedgerEntry

logger = logging.getLogger(__name__)

DELIVERY_EARNING = "delivery_earning"
CASH_COLLECTED = "cash_collected"
CASH_DEPOSIT = "cash_deposit"
PAYOUT = "payout"
COD_SALE = "cod_sale"
COMMISSION = "commission"
ORDER_PAYMENT = "order_payment"
REFUND = "refund"

# event -> (entity type, direction, balance fields moved, guarded field)
EVENT_TYPES: Dict[str, tuple] = {
    DELIVERY_EARNING: ("rider", "credit", ("wallet_balance", "earnings_total"), None),
    CASH_COLLECTED: ("rider", "credit", ("cod_balance",), None),
    CASH_DEPOSIT: ("rider", "debit", ("cod_balance",), "cod_balance"),
    PAYOUT: ("rider", "debit", ("wallet_balance",), "wallet_balance"),
    COD_SALE: ("restaurant", "credit", ("available_balance", "total_earnings"), None),
    COMMISSION: ("restaurant", "credit", ("total_commission_collected",), None),
    ORDER_PAYMENT: ("customer", "debit", ("wallet_balance",), "wallet_balance"),
    REFUND: ("customer", "credit", ("wallet_balance",), None),
}

BALANCE_FIELD = {
    "rider": "wallet_balance",
    "restaurant": "available_balance",
    "customer": "wallet_balance",
}


def ledger_key(event_type: str, entity_type: str, entity_id: str, scope: str) -> str:
    return f"{event_type}:{entity_type}:{entity_id}:{scope}"


def _move_balance(db, entity_type: str, entity_id: str, inc: Dict[str, float],
                  guard: Optional[tuple] = None) -> Optional[dict]:
    if entity_type == "restaurant":
        return db["restaurant_wallet"].find_one_and_update(
            {"restaurant_id": entity_id},
            {"$inc": inc, "$set": {"updated_at": now_utc()}, "$setOnInsert": {"created_at": now_utc()}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
    collection = "rider" if entity_type == "rider" else "user"
    filt = {"_id": to_object_id(entity_id)}
    if guard:
        field, amount = guard
        filt[field] = {"$gte": amount}
    return db[collection].find_one_and_update(
        filt,
        {"$inc": inc, "$set": {"updated_at": now_utc()}},
        return_document=ReturnDocument.AFTER,
    )


def record_entry(db, entity_id: str, event_type: str, amount: float, order_id: Optional[str] = None,
                 reference: Optional[str] = None, description: str = '') -> Optional[dict]:
    """Append a ledger entry and move the entity's cached balance.

    Returns the stored entry, or None when the same movement was already
    recorded. Guarded debits raise Conflict when the balance cannot cover them.
    """
    if event_type not in EVENT_TYPES:
        raise ValidationError(f"Unknown ledger event '{event_type}'")
    scope = order_id or reference
    if not scope:
        raise ValidationError("A ledger entry needs an order or a reference")
    amount = money(amount)
    if amount < 0:
        raise ValidationError("Ledger amounts must not be negative")

    entity_type, direction, fields, guarded = EVENT_TYPES[event_type]
    key = ledger_key(event_type, entity_type, entity_id, scope)
    if db["ledger"].find_one({"key": key}, {"_id": 1}):
        logger.info("Ledger entry %s already recorded, skipping", key)
        return None

    entry = LedgerEntry(
        key=key,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        amount=amount,
        direction=direction,
        order_id=order_id,
        reference=reference,
        description=description,
    ).model_dump()
    entry["created_at"] = now_utc()
    try:
        db["ledger"].insert_one(entry)
    except DuplicateKeyError:
        logger.info("Ledger entry %s recorded concurrently, skipping", key)
        return None

    sign = 1 if direction == "credit" else -1
    inc = {field: sign * amount for field in fields}
    guard = (guarded, amount) if guarded else None
    owner = _move_balance(db, entity_type, entity_id, inc, guard)
    if owner is None:
        db["ledger"].delete_one({"_id": entry["_id"]})
        if guard:
            raise Conflict("Insufficient balance")
        raise NotFound(f"{entity_type.capitalize()} not found")

    entry["balance_after"] = owner.get(BALANCE_FIELD[entity_type], 0)
    db["ledger"].update_one({"_id": entry["_id"]}, {"$set": {"balance_after": entry["balance_after"]}})
    logger.info("Ledger %s %s %.2f for %s %s", event_type, direction, amount, entity_type, entity_id)
    return entry


def list_entries(db, entity_type: str, entity_id: str, limit: int = 50, skip: int = 0) -> List[dict]:
    cursor = (
        db["ledger"]
        .find({"entity_type": entity_type, "entity_id": entity_id})
        .sort("created_at", DESCENDING)
        .skip(skip)
        .limit(limit)
    )
    return list(cursor)
