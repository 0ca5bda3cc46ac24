import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from jose.exceptions import JWTError
from pydantic import BaseModel, ConfigDict, EmailStr, Field

import database
import orders
import riders
from config import DATABASE_NAME, DATABASE_URL, JWT_ALG, JWT_SECRET, LOG_LEVEL, PORT, TOKEN_EXPIRE_MIN
from database import create_document, ensure_indexes, get_db, serialize, to_object_id
from errors import DeliveryError
from relay import EventRelay, RIDERS_CHANNEL, get_relay
from schemas import GeoPoint, OrderItem, PaymentMethod, Restaurant, User

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("delivery")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


app = FastAPI(title="Delivery Orders API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DeliveryError)
async def delivery_error_handler(request: Request, exc: DeliveryError):
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


# ---------------------- Auth & JWT ----------------------
class DemoAuthBody(BaseModel):
    email: EmailStr
    name: str = Field(...)
    role: str = Field('customer', pattern="^(customer|restaurant|rider)$")
    restaurant_location: Optional[GeoPoint] = None


def create_jwt(payload: Dict[str, Any]) -> str:
    now = datetime.now(timezone.utc)
    exp = now + timedelta(minutes=TOKEN_EXPIRE_MIN)
    to_encode = {"exp": exp, "iat": now, **payload}
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def decode_jwt(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")


bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user(creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> Dict[str, Any]:
    if not creds:
        raise HTTPException(status_code=401, detail="Authorization required")
    return decode_jwt(creds.credentials)


@app.post("/auth/demo")
def demo_auth(body: DemoAuthBody, db=Depends(get_db)):
    """Simple, working auth for demo. Creates/returns a user and a JWT."""
    user = db["user"].find_one({"email": body.email})
    if not user:
        create_document(db, "user", User(name=body.name, email=body.email, role=body.role))
        user = db["user"].find_one({"email": body.email})
        logger.info("Created demo %s account %s", body.role, body.email)
    role = user.get("role", "customer")

    # a restaurant user gets a restaurant on first login (single-restaurant setup)
    if role == 'restaurant':
        owner_id = str(user.get("_id"))
        if not db["restaurant"].find_one({"owner_user_id": owner_id}):
            create_document(db, "restaurant", Restaurant(name=f"{body.name}'s Kitchen", owner_user_id=owner_id,
                                                         location=body.restaurant_location))

    token = create_jwt({
        "sub": str(user.get("_id")),
        "email": user.get("email"),
        "name": user.get("name"),
        "role": role,
    })
    return {"token": token, "user": {"id": str(user.get("_id")), "email": user.get("email"), "name": user.get("name"), "role": role}}


# ---------------------- Orders ----------------------
class PlaceOrderBody(BaseModel):
    restaurant_id: str
    items: List[OrderItem]
    shipping_address: str
    delivery_location: Optional[GeoPoint] = None
    delivery_instructions: Optional[str] = None
    cutlery: bool = False
    payment_method: PaymentMethod = 'cod'
    distance_km: Optional[float] = Field(None, ge=0)
    delivery_fee: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)
    service_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)


class UpdateOrderStatusBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: str
    distance_km: Optional[float] = Field(None, alias="distanceKm", ge=0)
    cancellation_reason: Optional[str] = Field(None, alias="cancellationReason")
    prep_time: Optional[int] = Field(None, alias="prepTime", ge=0)


class CancelOrderBody(BaseModel):
    reason: Optional[str] = None


class CompleteOrderBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    distance_km: Optional[float] = Field(None, alias="distanceKm", ge=0)


@app.post("/orders", status_code=201)
def place_order(body: PlaceOrderBody, user=Depends(get_current_user), db=Depends(get_db),
                relay: EventRelay = Depends(get_relay)):
    return serialize(orders.create_order(db, relay, user, body))


@app.get("/orders")
def list_orders(user=Depends(get_current_user), db=Depends(get_db)):
    return [serialize(o) for o in orders.list_orders_for_actor(db, user)]


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(orders.get_order(db, order_id, user))


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, body: UpdateOrderStatusBody, user=Depends(get_current_user),
                        db=Depends(get_db), relay: EventRelay = Depends(get_relay)):
    order = orders.update_order_status(db, relay, order_id, body.status, user, distance_km=body.distance_km,
                                       cancellation_reason=body.cancellation_reason, prep_time=body.prep_time)
    return serialize(order)


@app.patch("/orders/{order_id}/cancel")
def cancel_order(order_id: str, body: Optional[CancelOrderBody] = None, user=Depends(get_current_user),
                 db=Depends(get_db), relay: EventRelay = Depends(get_relay)):
    reason = body.reason if body else None
    order = orders.cancel_order(db, relay, order_id, user, reason=reason)
    return {"message": "Order cancelled successfully", "order": serialize(order)}


@app.post("/orders/{order_id}/complete")
def complete_order(order_id: str, body: Optional[CompleteOrderBody] = None, user=Depends(get_current_user),
                   db=Depends(get_db), relay: EventRelay = Depends(get_relay)):
    distance = body.distance_km if body else None
    return serialize(orders.complete_order(db, relay, order_id, user, distance_km=distance))


@app.post("/orders/{order_id}/refund")
def refund_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db),
                 relay: EventRelay = Depends(get_relay)):
    return serialize(orders.refund_order(db, relay, order_id, user))


# ---------------------- Riders ----------------------
class RegisterRiderBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(..., alias="fullName")
    vehicle_type: str = Field('Bike', alias="vehicleType", pattern="^(Bike|Car)$")
    city: Optional[str] = None


class RiderStatusBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_online: bool = Field(..., alias="isOnline")


class RiderLocationBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lat: float
    lng: float
    order_id: Optional[str] = Field(None, alias="orderId")


class RiderOrderBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="orderId")


class BankDetailsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bank_name: str = Field(..., alias="bankName")
    account_number: str = Field(..., alias="accountNumber")
    account_title: str = Field(..., alias="accountTitle")


@app.post("/riders/register", status_code=201)
def register_rider(body: RegisterRiderBody, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(riders.register_rider(db, user, body.full_name, body.vehicle_type, body.city))


@app.get("/riders/{rider_id}")
def get_rider(rider_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(riders.get_rider(db, rider_id, user))


@app.put("/riders/{rider_id}/submit-verification")
def submit_for_verification(rider_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(riders.submit_for_verification(db, rider_id, user))


@app.put("/riders/{rider_id}/status")
def update_rider_status(rider_id: str, body: RiderStatusBody, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(riders.set_online(db, rider_id, body.is_online, user))


@app.put("/riders/{rider_id}/location")
def update_rider_location(rider_id: str, body: RiderLocationBody, user=Depends(get_current_user),
                          db=Depends(get_db), relay: EventRelay = Depends(get_relay)):
    return riders.update_location(db, relay, rider_id, body.lat, body.lng, user, order_id=body.order_id)


@app.get("/riders/{rider_id}/available-orders")
def available_orders(rider_id: str, lat: Optional[float] = None, lng: Optional[float] = None,
                     radius_km: Optional[float] = Query(None, alias="radiusKm"), user=Depends(get_current_user), db=Depends(get_db)):
    return riders.list_available_orders(db, rider_id, user, lat=lat, lng=lng, radius_km=radius_km)


@app.post("/riders/{rider_id}/accept-order")
def accept_order(rider_id: str, body: RiderOrderBody, user=Depends(get_current_user), db=Depends(get_db),
                 relay: EventRelay = Depends(get_relay)):
    return serialize(riders.accept_order(db, relay, rider_id, body.order_id, user))


@app.post("/riders/{rider_id}/reject-order")
def reject_order(rider_id: str, body: RiderOrderBody, user=Depends(get_current_user), db=Depends(get_db)):
    return riders.reject_order(db, rider_id, body.order_id, user)


@app.put("/riders/{rider_id}/bank-details")
def update_bank_details(rider_id: str, body: BankDetailsBody, user=Depends(get_current_user), db=Depends(get_db)):
    return riders.update_bank_details(db, rider_id, user, body.bank_name, body.account_number, body.account_title)


@app.post("/riders/{rider_id}/cashout")
def cashout(rider_id: str, user=Depends(get_current_user), db=Depends(get_db),
            relay: EventRelay = Depends(get_relay)):
    payout = riders.cashout(db, relay, rider_id, user)
    return {"message": "Cashout request submitted", "payout": serialize(payout)}


@app.get("/riders/{rider_id}/transactions")
def rider_transactions(rider_id: str, limit: int = 50, skip: int = 0, user=Depends(get_current_user),
                       db=Depends(get_db)):
    return [serialize(t) for t in riders.list_transactions(db, rider_id, user, limit=limit, skip=skip)]


# ---------------------- Admin ----------------------
class ReviewRiderBody(BaseModel):
    status: str = Field(..., pattern="^(approved|rejected)$")


class CODSettlementBody(BaseModel):
    amount: float = Field(..., gt=0)
    reference: str


@app.put("/admin/riders/{rider_id}/verification")
def review_rider(rider_id: str, body: ReviewRiderBody, user=Depends(get_current_user), db=Depends(get_db)):
    return serialize(riders.review_rider(db, rider_id, body.status, user))


@app.post("/admin/riders/{rider_id}/cod-settlement")
def settle_cod(rider_id: str, body: CODSettlementBody, user=Depends(get_current_user), db=Depends(get_db),
               relay: EventRelay = Depends(get_relay)):
    return riders.settle_cod(db, relay, rider_id, body.amount, body.reference, user)


# ---------------------- Real-time stream ----------------------
def can_watch(db, claims: Dict[str, Any], channel: str) -> bool:
    role, sub = claims.get("role"), claims.get("sub")
    if role == "admin":
        return True
    if channel == f"user-{sub}":
        return True
    if channel == RIDERS_CHANNEL:
        return role == "rider"
    kind, _, ident = channel.partition("-")
    if not ident:
        return False
    if kind == "rider" and role == "rider":
        rider = db["rider"].find_one({"user_id": sub})
        return bool(rider) and str(rider["_id"]) == ident
    if kind == "restaurant" and role == "restaurant":
        restaurant = db["restaurant"].find_one({"owner_user_id": sub})
        return bool(restaurant) and str(restaurant["_id"]) == ident
    if kind == "order":
        order = db["order"].find_one({"_id": to_object_id(ident)})
        return bool(order) and orders.can_view(db, order, claims)
    return False


@app.get("/events/stream")
async def stream_events(channels: str, token: Optional[str] = None, db=Depends(get_db),
                        relay: EventRelay = Depends(get_relay)):
    """Server-Sent Events stream of order, rider, restaurant and user channels.
    Token is provided via query for auth (SSE doesn't send headers easily).
    Events are hints only; clients re-fetch the order after each one.
    """
    if not token:
        raise HTTPException(status_code=401, detail="Authorization required")
    claims = decode_jwt(token)
    wanted = [c.strip() for c in channels.split(",") if c.strip()]
    denied = [c for c in wanted if not can_watch(db, claims, c)]
    if not wanted or denied:
        raise HTTPException(status_code=403, detail=f"Not allowed to watch: {', '.join(denied) or 'nothing'}")
    queue = relay.subscribe(wanted)

    async def event_gen():
        try:
            yield f"data: {json.dumps({'type': 'ping', 'ts': datetime.now(timezone.utc).isoformat()})}\n\n"
            while True:
                message = await queue.get()
                yield f"event: {message['event']}\ndata: {json.dumps(message)}\n\n"
        except asyncio.CancelledError:
            pass
        finally:
            relay.unsubscribe(queue)

    return StreamingResponse(event_gen(), media_type="text/event-stream")


# ---------------------- Misc ----------------------
@app.get("/")
def read_root():
    return {"message": "Delivery Orders API"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if DATABASE_URL else "❌ Not Set",
        "database_name": DATABASE_NAME or "❌ Not Set",
        "collections": []
    }
    if database.db is not None:
        try:
            response["collections"] = database.db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    return jsonable_encoder(response)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
