"""
Subscribable holder for the current :data:`PaymentState`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional

from .fsm import Failed, Idle, PaymentEvent, PaymentState, StateType, apply_event
from .orders import Order

__all__ = [
    "EventRejectedError",
    "PaymentFailedError",
    "PaymentStore",
    "Transition",
    "dispatch_and_wait",
    "wait_for_payment_state",
]


@dataclass(frozen=True)
class Transition:
    """What a listener sees for every dispatched event, applied or not."""

    prev: PaymentState
    next: PaymentState
    event: PaymentEvent
    valid: bool = True
    reason: Optional[str] = None


Listener = Callable[[Transition], None]


class PaymentFailedError(RuntimeError):
    """Raised to callers waiting on a payment flow that ended in ``error``."""

    def __init__(self, message: str, order: Optional[Order] = None) -> None:
        super().__init__(message)
        self.order = order


class EventRejectedError(RuntimeError):
    """Raised to a caller whose event the state machine refused."""

    def __init__(self, event: PaymentEvent, state: PaymentState, reason: Optional[str] = None) -> None:
        super().__init__(reason or f"{event.type.value} is not allowed in state {state.type.value}")
        self.event = event
        self.state = state


class PaymentStore:
    """
    Single source of truth for one checkout's payment state.

    ``dispatch`` applies events synchronously. Events dispatched by a listener
    while a transition is being delivered are queued and applied once every
    listener has seen the current transition.
    """

    def __init__(
        self,
        initial: Optional[PaymentState] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._state: PaymentState = initial if initial is not None else Idle()
        self._listeners: List[Listener] = []
        self._queue: Deque[PaymentEvent] = deque()
        self._dispatching = False
        self._log = logger or logging.getLogger(__name__)

    def get_state(self) -> PaymentState:
        return self._state

    @property
    def state(self) -> PaymentState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def dispatch(self, event: PaymentEvent) -> None:
        self._queue.append(event)
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._queue:
                self._apply(self._queue.popleft())
        finally:
            self._dispatching = False

    def _apply(self, event: PaymentEvent) -> None:
        prev = self._state
        result = apply_event(prev, event)
        if result.valid:
            self._state = result.state
            self._log.debug(
                "[STORE] %s: %s -> %s", event.type.value, prev.type.value, result.state.type.value
            )
        else:
            self._log.warning("[STORE] %s; ignoring", result.reason)

        transition = Transition(
            prev=prev, next=self._state, event=event, valid=result.valid, reason=result.reason
        )
        # Snapshot so listeners added or removed mid-pass take effect next time.
        for listener in list(self._listeners):
            try:
                listener(transition)
            except Exception:  # noqa: BLE001
                self._log.exception(
                    "[STORE] listener failed handling %s", event.type.value
                )


async def wait_for_payment_state(
    store: PaymentStore,
    *state_types: StateType | str,
    timeout_seconds: Optional[float] = None,
) -> PaymentState:
    """
    Wait until ``store`` enters one of ``state_types`` and return that state.

    Raises :class:`PaymentFailedError` if the store lands in ``error`` first.
    """
    wanted = {StateType(value) for value in state_types}
    loop = asyncio.get_running_loop()
    future: asyncio.Future[PaymentState] = loop.create_future()

    def check(state: PaymentState) -> None:
        if future.done():
            return
        if state.type in wanted:
            future.set_result(state)
        elif isinstance(state, Failed):
            future.set_exception(PaymentFailedError(state.message, state.order))

    check(store.get_state())
    unsubscribe = store.subscribe(lambda transition: check(transition.next))
    try:
        return await asyncio.wait_for(future, timeout_seconds)
    finally:
        unsubscribe()


async def dispatch_and_wait(
    store: PaymentStore,
    event: PaymentEvent,
    until: Callable[[Transition], bool],
    *,
    timeout_seconds: Optional[float] = None,
) -> PaymentState:
    """
    Dispatch ``event`` and wait for the first accepted transition, starting
    with the event's own, that satisfies ``until``.

    Raises :class:`EventRejectedError` if the store refuses ``event``, and
    :class:`PaymentFailedError` if the store then lands in ``error`` or is
    reset by another event.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[PaymentState] = loop.create_future()
    accepted = False

    def check(transition: Transition) -> None:
        nonlocal accepted
        if future.done():
            return
        if transition.event is event:
            if not transition.valid:
                future.set_exception(EventRejectedError(event, transition.next, transition.reason))
                return
            accepted = True
        elif not accepted or not transition.valid:
            return

        state = transition.next
        if until(transition):
            future.set_result(state)
        elif isinstance(state, Failed):
            future.set_exception(PaymentFailedError(state.message, state.order))
        elif isinstance(state, Idle) and transition.event is not event:
            future.set_exception(
                PaymentFailedError(f"checkout was reset before {event.type.value} completed")
            )

    unsubscribe = store.subscribe(check)
    try:
        store.dispatch(event)
        return await asyncio.wait_for(future, timeout_seconds)
    finally:
        unsubscribe()
