"""
Milestone notifications for host applications.

A milestone fires at most once per ``(type, order_id)`` pair, no matter how
many state transitions, polls or push messages report it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from .fsm import PaymentStarted, StateType, order_of
from .orders import Order
from .store import PaymentStore, Transition

__all__ = [
    "MilestoneType",
    "PaymentEventNotifier",
    "PaymentMilestone",
    "attach_milestone_notifier",
]


class MilestoneType(str, Enum):
    PAYMENT_STARTED = "payment_started"
    PAYMENT_COMPLETED = "payment_completed"
    PAYMENT_BOUNCED = "payment_bounced"
    PAYOUT_COMPLETED = "payout_completed"


@dataclass(frozen=True)
class PaymentMilestone:
    type: MilestoneType
    payment_id: str
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    order: Optional[Order] = None


Callback = Callable[[Any], None]


class PaymentEventNotifier:
    """Delivers each milestone to its subscribers once per order."""

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._callbacks: Dict[MilestoneType, List[Callback]] = {}
        self._emitted: Set[Tuple[MilestoneType, str]] = set()
        self._log = logger or logging.getLogger(__name__)

    def subscribe(self, event_type: MilestoneType | str, callback: Callback) -> Callable[[], None]:
        milestone = MilestoneType(event_type)
        self._callbacks.setdefault(milestone, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._callbacks.get(milestone, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def emit(
        self,
        event_type: MilestoneType | str,
        order_id: Any,
        payload: Any = None,
    ) -> bool:
        """
        Notify subscribers of ``event_type`` for ``order_id``.

        Returns ``True`` when callbacks ran and ``False`` when the emit was a
        duplicate or carried no order id.
        """
        milestone = MilestoneType(event_type)
        if order_id is None or order_id == "":
            self._log.debug("[EVENTS] dropping %s without an order id", milestone.value)
            return False

        key = (milestone, str(order_id))
        if key in self._emitted:
            self._log.debug("[EVENTS] %s already emitted for %s", milestone.value, order_id)
            return False
        self._emitted.add(key)

        for callback in list(self._callbacks.get(milestone, [])):
            try:
                callback(payload)
            except Exception:  # noqa: BLE001
                self._log.exception("[EVENTS] %s callback failed", milestone.value)
        return True

    def reset(self, order_id: Any = None) -> None:
        """Forget emitted milestones, for one order or for all of them."""
        if order_id is None:
            self._emitted.clear()
            return
        wanted = str(order_id)
        self._emitted = {key for key in self._emitted if key[1] != wanted}


_STATE_MILESTONES = {
    StateType.PAYMENT_STARTED: MilestoneType.PAYMENT_STARTED,
    StateType.PAYMENT_COMPLETED: MilestoneType.PAYMENT_COMPLETED,
    StateType.PAYMENT_BOUNCED: MilestoneType.PAYMENT_BOUNCED,
}


def _milestone(milestone: MilestoneType, order: Order, tx_hash: Optional[str]) -> PaymentMilestone:
    chain_id: Optional[int]
    if milestone is MilestoneType.PAYMENT_STARTED:
        chain_id = order.source.chain_id if order.source else None
    else:
        chain_id = order.dest_final_call_token_amount.token.chain_id
    return PaymentMilestone(
        type=milestone,
        payment_id=order.payment_id,
        chain_id=chain_id,
        tx_hash=tx_hash,
        order=order,
    )


def attach_milestone_notifier(
    store: PaymentStore, notifier: PaymentEventNotifier
) -> Callable[[], None]:
    """Emit milestones from ``store`` transitions. Returns the unsubscribe hook."""

    def on_transition(transition: Transition) -> None:
        if not transition.valid:
            return
        prev_order = order_of(transition.prev)
        order = order_of(transition.next)

        if prev_order is not None and (order is None or order.id != prev_order.id):
            notifier.reset(prev_order.id)
        if order is None:
            return

        state = transition.next
        milestone = _STATE_MILESTONES.get(state.type)
        if milestone is not None:
            if isinstance(state, PaymentStarted):
                tx_hash = order.source.tx_hash if order.source else None
            else:
                tx_hash = order.dest_tx_hash
            notifier.emit(milestone, order.id, _milestone(milestone, order, tx_hash))

        if state.type is StateType.PAYMENT_COMPLETED and order.payout_tx_hash:
            notifier.emit(
                MilestoneType.PAYOUT_COMPLETED,
                order.id,
                _milestone(MilestoneType.PAYOUT_COMPLETED, order, order.payout_tx_hash),
            )

    return store.subscribe(on_transition)
