"""
Order status state machine.

Statuses are grouped into logical steps. An order may stay in its step
(re-setting or correcting to a sibling status) or move exactly one step
forward. Cancelled is reachable from any non-terminal status; Delivered and
Cancelled are never left.
"""

from typing import Dict, FrozenSet

from errors import InvalidTransition

PENDING = "Pending"
ACCEPTED = "Accepted"
CONFIRMED = "Confirmed"
PREPARING = "Preparing"
READY = "Ready"
READY_FOR_PICKUP = "Ready for Pickup"
ARRIVED = "Arrived"
PICKED_UP = "Picked Up"
ON_THE_WAY = "OnTheWay"
ARRIVED_AT_CUSTOMER = "ArrivedAtCustomer"
DELIVERED = "Delivered"
CANCELLED = "Cancelled"

ORDER_STATUSES = (
    PENDING, ACCEPTED, CONFIRMED, PREPARING, READY, READY_FOR_PICKUP, ARRIVED,
    PICKED_UP, ON_THE_WAY, ARRIVED_AT_CUSTOMER, DELIVERED, CANCELLED,
)

TERMINAL_STATUSES = frozenset({DELIVERED, CANCELLED})

STATUS_STEPS: Dict[str, int] = {
    PENDING: 0,
    ACCEPTED: 1,
    CONFIRMED: 1,
    PREPARING: 1,
    READY: 2,
    READY_FOR_PICKUP: 2,
    ARRIVED: 2,
    PICKED_UP: 3,
    ON_THE_WAY: 3,
    ARRIVED_AT_CUSTOMER: 4,
    DELIVERED: 5,
}

# Roles allowed to request each target status; admin may request any.
STATUS_ROLES: Dict[str, FrozenSet[str]] = {
    ACCEPTED: frozenset({"restaurant"}),
    CONFIRMED: frozenset({"restaurant"}),
    PREPARING: frozenset({"restaurant"}),
    READY: frozenset({"restaurant"}),
    READY_FOR_PICKUP: frozenset({"restaurant"}),
    ARRIVED: frozenset({"rider"}),
    PICKED_UP: frozenset({"rider"}),
    ON_THE_WAY: frozenset({"rider"}),
    ARRIVED_AT_CUSTOMER: frozenset({"rider"}),
    DELIVERED: frozenset({"rider"}),
    CANCELLED: frozenset({"restaurant", "customer"}),
}

# Statuses that only make sense once a rider holds the order.
RIDER_STATUSES = frozenset({ARRIVED, PICKED_UP, ON_THE_WAY, ARRIVED_AT_CUSTOMER, DELIVERED})

# An order can be claimed by a rider while it is still in the kitchen.
ASSIGNABLE_STATUSES = (PENDING, ACCEPTED, CONFIRMED, PREPARING, READY, READY_FOR_PICKUP)

PICKUP_STEP = STATUS_STEPS[PICKED_UP]


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def roles_for(status: str) -> FrozenSet[str]:
    return STATUS_ROLES.get(status, frozenset()) | {"admin"}


def check_transition(current: str, target: str) -> bool:
    """Validate current -> target.

    Returns False when the order is already in `target` (nothing to write),
    True when the change should be applied. Raises InvalidTransition otherwise.
    """
    if target not in ORDER_STATUSES:
        raise InvalidTransition(f"Unknown order status '{target}'")
    if target == current:
        return False
    if is_terminal(current):
        raise InvalidTransition(f"Order is already {current}")
    if target == CANCELLED:
        return True
    if target == PENDING:
        raise InvalidTransition("Order cannot be moved back to Pending")
    step, target_step = STATUS_STEPS[current], STATUS_STEPS[target]
    if target_step < step:
        raise InvalidTransition(f"Cannot move order back from {current} to {target}")
    if target_step > step + 1:
        raise InvalidTransition(f"Cannot skip ahead from {current} to {target}")
    return True
