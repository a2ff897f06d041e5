"""
Checkout payment state machine.

``PaymentState`` and ``PaymentEvent`` are closed sets of frozen dataclasses,
each tagged with a ``type``. :func:`apply_event` is pure: it never performs I/O
and never raises for an inapplicable event, it reports the event as invalid
and returns the current state unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, FrozenSet, Optional, Type, Union

from .orders import IntentStatus, Order, OrderMode, PayParams, TokenAmount, _to_decimal

__all__ = [
    "ErrorOccurred",
    "EventType",
    "Failed",
    "HydrateOrder",
    "Idle",
    "OrderHydrated",
    "OrderLoaded",
    "OrderRefreshed",
    "PayEthereumSource",
    "PaySolanaSource",
    "PaySource",
    "PayStellarSource",
    "PaymentBounced",
    "PaymentCompleted",
    "PaymentEvent",
    "PaymentStarted",
    "PaymentState",
    "PaymentUnpaid",
    "PaymentVerified",
    "Preview",
    "PreviewGenerated",
    "Reset",
    "SetChosenUsd",
    "SetPayId",
    "SetPayParams",
    "StateType",
    "TERMINAL_STATE_TYPES",
    "TransitionResult",
    "Unhydrated",
    "apply_event",
    "order_of",
]


class StateType(str, Enum):
    IDLE = "idle"
    PREVIEW = "preview"
    UNHYDRATED = "unhydrated"
    PAYMENT_UNPAID = "payment_unpaid"
    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_BOUNCED = "payment_bounced"
    ERROR = "error"


class EventType(str, Enum):
    SET_PAY_PARAMS = "set_pay_params"
    SET_PAY_ID = "set_pay_id"
    HYDRATE_ORDER = "hydrate_order"
    PAY_SOURCE = "pay_source"
    PAY_ETHEREUM_SOURCE = "pay_ethereum_source"
    PAY_SOLANA_SOURCE = "pay_solana_source"
    PAY_STELLAR_SOURCE = "pay_stellar_source"
    ORDER_LOADED = "order_loaded"
    ORDER_REFRESHED = "order_refreshed"
    ORDER_HYDRATED = "order_hydrated"
    PAYMENT_VERIFIED = "payment_verified"
    PREVIEW_GENERATED = "preview_generated"
    SET_CHOSEN_USD = "set_chosen_usd"
    RESET = "reset"
    ERROR = "error"


# --------------------------------------------------------------------------
# States
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class Idle:
    type = StateType.IDLE


@dataclass(frozen=True)
class Preview:
    order: Order
    pay_params: PayParams
    type = StateType.PREVIEW


@dataclass(frozen=True)
class Unhydrated:
    order: Order
    type = StateType.UNHYDRATED


@dataclass(frozen=True)
class PaymentUnpaid:
    order: Order
    type = StateType.PAYMENT_UNPAID


@dataclass(frozen=True)
class PaymentStarted:
    order: Order
    type = StateType.PAYMENT_STARTED


@dataclass(frozen=True)
class PaymentCompleted:
    order: Order
    type = StateType.PAYMENT_COMPLETED

    def __post_init__(self) -> None:
        if not self.order.dest_tx_hash:
            raise ValueError("payment_completed requires a destination tx hash")


@dataclass(frozen=True)
class PaymentBounced:
    order: Order
    type = StateType.PAYMENT_BOUNCED

    def __post_init__(self) -> None:
        if not self.order.dest_tx_hash:
            raise ValueError("payment_bounced requires a destination tx hash")


@dataclass(frozen=True)
class Failed:
    message: str
    order: Optional[Order] = None
    type = StateType.ERROR


PaymentState = Union[
    Idle,
    Preview,
    Unhydrated,
    PaymentUnpaid,
    PaymentStarted,
    PaymentCompleted,
    PaymentBounced,
    Failed,
]

TERMINAL_STATE_TYPES: FrozenSet[StateType] = frozenset(
    {StateType.PAYMENT_COMPLETED, StateType.PAYMENT_BOUNCED}
)

# Progress of an order through the flow; refreshes may only move forward.
_STATE_RANK = {
    StateType.UNHYDRATED: 0,
    StateType.PAYMENT_UNPAID: 1,
    StateType.PAYMENT_STARTED: 2,
    StateType.PAYMENT_COMPLETED: 3,
    StateType.PAYMENT_BOUNCED: 3,
}


def order_of(state: PaymentState) -> Optional[Order]:
    """Return the order carried by ``state``, if any."""
    return getattr(state, "order", None)


# --------------------------------------------------------------------------
# Events
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class SetPayParams:
    pay_params: PayParams
    type = EventType.SET_PAY_PARAMS


@dataclass(frozen=True)
class SetPayId:
    pay_id: str
    type = EventType.SET_PAY_ID


@dataclass(frozen=True)
class HydrateOrder:
    refund_address: Optional[str] = None
    type = EventType.HYDRATE_ORDER


@dataclass(frozen=True)
class PaySource:
    type = EventType.PAY_SOURCE


@dataclass(frozen=True)
class PayEthereumSource:
    payment_tx_hash: str
    source_chain_id: int
    payer_address: str
    source_token: str
    source_amount: int
    type = EventType.PAY_ETHEREUM_SOURCE


@dataclass(frozen=True)
class PaySolanaSource:
    payment_tx_hash: str
    source_token: str
    type = EventType.PAY_SOLANA_SOURCE


@dataclass(frozen=True)
class PayStellarSource:
    payment_tx_hash: str
    source_token: str
    payment_id: Optional[str] = None
    type = EventType.PAY_STELLAR_SOURCE


@dataclass(frozen=True)
class OrderLoaded:
    order: Order
    type = EventType.ORDER_LOADED


@dataclass(frozen=True)
class OrderRefreshed:
    order: Order
    type = EventType.ORDER_REFRESHED


@dataclass(frozen=True)
class OrderHydrated:
    order: Order
    type = EventType.ORDER_HYDRATED


@dataclass(frozen=True)
class PaymentVerified:
    order: Order
    type = EventType.PAYMENT_VERIFIED


@dataclass(frozen=True)
class PreviewGenerated:
    order: Order
    pay_params: PayParams
    type = EventType.PREVIEW_GENERATED


@dataclass(frozen=True)
class SetChosenUsd:
    usd: Decimal
    type = EventType.SET_CHOSEN_USD


@dataclass(frozen=True)
class Reset:
    type = EventType.RESET


@dataclass(frozen=True)
class ErrorOccurred:
    message: str
    order: Optional[Order] = None
    type = EventType.ERROR


PaymentEvent = Union[
    SetPayParams,
    SetPayId,
    HydrateOrder,
    PaySource,
    PayEthereumSource,
    PaySolanaSource,
    PayStellarSource,
    OrderLoaded,
    OrderRefreshed,
    OrderHydrated,
    PaymentVerified,
    PreviewGenerated,
    SetChosenUsd,
    Reset,
    ErrorOccurred,
]

SOURCE_PAYMENT_EVENTS = (PayEthereumSource, PaySolanaSource, PayStellarSource)


# --------------------------------------------------------------------------
# Transitions
# --------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionResult:
    """
    Result of applying an event.

    ``state`` is the current state when ``valid`` is false, so callers can
    always adopt it.
    """

    state: PaymentState
    valid: bool
    reason: Optional[str] = None


def _accept(state: PaymentState) -> TransitionResult:
    return TransitionResult(state=state, valid=True)


def _reject(state: PaymentState, event: PaymentEvent, detail: str = "") -> TransitionResult:
    reason = f"invalid event {event.type.value} on state {state.type.value}"
    if detail:
        reason = f"{reason}: {detail}"
    return TransitionResult(state=state, valid=False, reason=reason)


def _state_for_order(order: Order) -> PaymentState:
    """The state an order's own fields imply, ignoring where we came from."""
    if not order.is_hydrated:
        return Unhydrated(order=order)
    status = order.intent_status
    if status.is_terminal and order.dest_tx_hash:
        if status is IntentStatus.COMPLETED:
            return PaymentCompleted(order=order)
        return PaymentBounced(order=order)
    if status is IntentStatus.UNPAID:
        return PaymentUnpaid(order=order)
    return PaymentStarted(order=order)


def _advance(current: PaymentState, order: Order, floor: Optional[StateType] = None) -> PaymentState:
    """
    Move ``current`` forward to whatever ``order`` implies, never backward.

    ``floor`` raises the minimum state reached, e.g. a verified source payment
    is at least ``payment_started``.
    """
    if current.type in TERMINAL_STATE_TYPES:
        return replace(current, order=order)

    target = _state_for_order(order)
    if floor is not None and _STATE_RANK[target.type] < _STATE_RANK[floor]:
        target = PaymentStarted(order=order)
    if _STATE_RANK[target.type] < _STATE_RANK.get(current.type, -1):
        return replace(current, order=order)
    return target


def _refined(current: PaymentState, order: Order) -> Optional[Order]:
    known = order_of(current)
    if known is None:
        return order
    if known.id != order.id:
        return None
    return known.refine(order)


def _on_set_pay_params(state: PaymentState, event: SetPayParams) -> TransitionResult:
    return _accept(Idle())


def _on_set_pay_id(state: PaymentState, event: SetPayId) -> TransitionResult:
    return _accept(Idle())


def _on_reset(state: PaymentState, event: Reset) -> TransitionResult:
    return _accept(Idle())


def _on_error(state: PaymentState, event: ErrorOccurred) -> TransitionResult:
    return _accept(Failed(message=event.message, order=event.order))


def _on_preview_generated(state: PaymentState, event: PreviewGenerated) -> TransitionResult:
    if not isinstance(state, Idle):
        return _reject(state, event)
    return _accept(Preview(order=event.order, pay_params=event.pay_params))


def _on_order_loaded(state: PaymentState, event: OrderLoaded) -> TransitionResult:
    if not isinstance(state, Idle):
        return _reject(state, event)
    return _accept(_state_for_order(event.order))


def _on_hydrate_order(state: PaymentState, event: HydrateOrder) -> TransitionResult:
    if not isinstance(state, (Preview, Unhydrated)):
        return _reject(state, event)
    return _accept(state)


def _on_order_hydrated(state: PaymentState, event: OrderHydrated) -> TransitionResult:
    if not isinstance(state, (Preview, Unhydrated)):
        return _reject(state, event)
    if not event.order.is_hydrated:
        return _reject(state, event, "order has no intent address")
    if isinstance(state, Unhydrated) and state.order.id != event.order.id:
        return _reject(state, event, f"order {event.order.id} does not match {state.order.id}")
    return _accept(_advance(state, event.order))


def _on_pay_source(state: PaymentState, event: PaySource) -> TransitionResult:
    if not isinstance(state, PaymentUnpaid):
        return _reject(state, event)
    return _accept(state)


def _on_source_payment(
    state: PaymentState,
    event: Union[PayEthereumSource, PaySolanaSource, PayStellarSource],
) -> TransitionResult:
    # payment_started is accepted so a re-routed payment can attach a new source.
    if not isinstance(state, (PaymentUnpaid, PaymentStarted)):
        return _reject(state, event)
    return _accept(state)


def _on_payment_verified(state: PaymentState, event: PaymentVerified) -> TransitionResult:
    if not isinstance(state, (PaymentUnpaid, PaymentStarted)):
        return _reject(state, event)
    order = _refined(state, event.order)
    if order is None:
        return _reject(state, event, "order id mismatch")
    return _accept(_advance(state, order, floor=StateType.PAYMENT_STARTED))


def _on_order_refreshed(state: PaymentState, event: OrderRefreshed) -> TransitionResult:
    if not isinstance(
        state, (PaymentUnpaid, PaymentStarted, PaymentCompleted, PaymentBounced)
    ):
        return _reject(state, event)
    order = _refined(state, event.order)
    if order is None:
        return _reject(state, event, "order id mismatch")
    return _accept(_advance(state, order))


def _on_set_chosen_usd(state: PaymentState, event: SetChosenUsd) -> TransitionResult:
    if not isinstance(state, Preview) or state.order.mode is not OrderMode.CHOOSE_AMOUNT:
        return _reject(state, event)
    try:
        usd = _to_decimal(event.usd, "usd")
    except ValueError as exc:
        return _reject(state, event, str(exc))
    if usd < 0:
        return _reject(state, event, "usd must not be negative")
    token = state.order.dest_final_call_token_amount.token
    try:
        amount = TokenAmount.for_usd(token, usd)
    except ValueError as exc:
        return _reject(state, event, str(exc))
    order = replace(state.order, dest_final_call_token_amount=amount)
    return _accept(replace(state, order=order))


_HANDLERS: Dict[Type, Callable[..., TransitionResult]] = {
    SetPayParams: _on_set_pay_params,
    SetPayId: _on_set_pay_id,
    HydrateOrder: _on_hydrate_order,
    PaySource: _on_pay_source,
    PayEthereumSource: _on_source_payment,
    PaySolanaSource: _on_source_payment,
    PayStellarSource: _on_source_payment,
    OrderLoaded: _on_order_loaded,
    OrderRefreshed: _on_order_refreshed,
    OrderHydrated: _on_order_hydrated,
    PaymentVerified: _on_payment_verified,
    PreviewGenerated: _on_preview_generated,
    SetChosenUsd: _on_set_chosen_usd,
    Reset: _on_reset,
    ErrorOccurred: _on_error,
}

_missing = set(EventType) - {event_cls.type for event_cls in _HANDLERS}
if _missing:  # pragma: no cover
    raise RuntimeError(f"No transition handler for events: {sorted(e.value for e in _missing)}")


def apply_event(state: PaymentState, event: PaymentEvent) -> TransitionResult:
    """Compute the state that follows ``state`` when ``event`` is dispatched."""
    try:
        handler = _HANDLERS[type(event)]
    except KeyError as exc:
        raise TypeError(f"Unknown payment event {event!r}") from exc
    return handler(state, event)
