"""
Database Schemas for the Delivery Orders API

Each Pydantic model maps to a MongoDB collection (lowercased class name unless noted)
- User -> user
- Restaurant -> restaurant
- restaurant_wallet -> upserted by wallet.py on the first credit
- Rider -> rider
- Order -> order
- LedgerEntry -> ledger
- CODLedger -> cod_ledger
- Payout -> payout
- OrderEvent -> pushed over the event relay only (not persisted)
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal['customer', 'restaurant', 'rider', 'admin']
PaymentMethod = Literal['cod', 'card', 'wallet']
PaymentStatus = Literal['pending', 'paid', 'refunded']
VerificationStatus = Literal['not_started', 'pending', 'approved', 'rejected']
EntityType = Literal['rider', 'restaurant', 'customer']


class GeoPoint(BaseModel):
    lat: float
    lng: float


class User(BaseModel):
    """Account of any role. wallet_balance is only used by customers."""
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    role: Role = Field('customer')
    avatar_url: Optional[str] = None
    wallet_balance: float = 0.0
    is_active: bool = True


class Restaurant(BaseModel):
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None
    owner_user_id: Optional[str] = Field(None, description="Links to user._id (restaurant role)")
    location: Optional[GeoPoint] = None


class BankDetails(BaseModel):
    bank_name: str = ''
    account_number: str = ''
    account_title: str = ''


class RiderStats(BaseModel):
    completed_deliveries: int = 0
    cancelled_deliveries: int = 0


class Rider(BaseModel):
    """Rider profile. current_order_id is a back-reference to the one active order."""
    user_id: str
    full_name: str
    vehicle_type: Literal['Bike', 'Car'] = 'Bike'
    city: Optional[str] = None
    verification_status: VerificationStatus = 'not_started'
    is_online: bool = False
    current_location: Optional[GeoPoint] = None
    current_order_id: Optional[str] = None
    wallet_balance: float = 0.0
    cod_balance: float = 0.0
    earnings_total: float = 0.0
    stats: RiderStats = Field(default_factory=RiderStats)
    bank_details: BankDetails = Field(default_factory=BankDetails)


class AddOn(BaseModel):
    name: str
    price: float = Field(0, ge=0)


class OrderItem(BaseModel):
    dish_id: str
    name: str
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0)
    variant: Optional[str] = None
    add_ons: List[AddOn] = Field(default_factory=list)


class Order(BaseModel):
    order_number: str
    customer_id: str
    restaurant_id: str
    rider_id: Optional[str] = None
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    service_fee: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    commission_rate: float = Field(..., ge=0, le=1)
    distance_km: Optional[float] = None
    rider_earning: float = 0.0
    platform_fee: float = 0.0
    net_rider_earning: float = 0.0
    payment_method: PaymentMethod = 'cod'
    payment_status: PaymentStatus = 'pending'
    status: str = 'Pending'
    shipping_address: str
    delivery_location: Optional[GeoPoint] = None
    delivery_instructions: Optional[str] = None
    cutlery: bool = False
    rejected_by: List[str] = Field(default_factory=list)
    status_changed_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    """Append-only financial movement. key makes each movement unique."""
    key: str
    entity_type: EntityType
    entity_id: str
    event_type: str
    amount: float = Field(..., ge=0)
    direction: Literal['credit', 'debit']
    order_id: Optional[str] = None
    reference: Optional[str] = None
    description: str = ''
    balance_after: Optional[float] = None


class CODLedger(BaseModel):
    order_id: str
    rider_id: str
    cod_collected: float
    rider_earning: float
    admin_balance: float
    status: Literal['pending', 'paid'] = 'pending'
    settled_at: Optional[datetime] = None


class Payout(BaseModel):
    rider_id: str
    amount: float
    status: Literal['pending', 'paid'] = 'pending'


class OrderEvent(BaseModel):
    channel: str
    event: Literal['orderStatusUpdate', 'riderAssigned', 'newOrderAvailable', 'wallet_updated',
                   'newOrder', 'riderLocationUpdate']
    data: Dict[str, Any] = Field(default_factory=dict)
    ts: datetime
