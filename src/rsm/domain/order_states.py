from __future__ import annotations

from rsm.domain.errors import InvalidTransitionError
from rsm.domain.models import OrderState

ALLOWED_TRANSITIONS: dict[OrderState, frozenset[OrderState]] = {
    OrderState.RECEIVED: frozenset({OrderState.ACCEPTED, OrderState.CANCELED}),
    OrderState.ACCEPTED: frozenset({OrderState.DELIVERED, OrderState.CANCELED}),
    OrderState.DELIVERED: frozenset(),
    OrderState.CANCELED: frozenset(),
}

PENDING_STATES = (OrderState.RECEIVED, OrderState.ACCEPTED)


def can_transition(current: OrderState, target: OrderState) -> bool:
    return OrderState(target) in ALLOWED_TRANSITIONS[OrderState(current)]


def ensure_transition(order_id: int, current: OrderState, target: OrderState) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(order_id, OrderState(current).value, OrderState(target).value)
