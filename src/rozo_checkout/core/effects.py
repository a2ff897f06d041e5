"""
Asynchronous side effects of checkout state transitions.

The coordinator subscribes to a :class:`PaymentStore` and, for every accepted
event, performs the API call the event asks for and dispatches the outcome
back into the store. Independently of events, entering ``payment_unpaid`` or
``payment_started`` starts a poller that watches the order until the state
moves on, and orders routed through the payment rail additionally listen on
its push channel.

Every result is checked against the store before it is applied: an answer to
a superseded request, or for an order the store no longer holds, is logged
and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Set, Tuple

from .config import PollingSettings
from .fsm import (
    SOURCE_PAYMENT_EVENTS,
    ErrorOccurred,
    HydrateOrder,
    OrderHydrated,
    OrderLoaded,
    OrderRefreshed,
    PaymentEvent,
    PaymentState,
    PaySource,
    PaymentVerified,
    Preview,
    PreviewGenerated,
    Reset,
    SetPayId,
    SetPayParams,
    StateType,
    TERMINAL_STATE_TYPES,
    Unhydrated,
    order_of,
)
from .orders import BASE_CHAIN_ID, BASE_USDC_ADDRESS, IntentStatus, Order
from .polling import PollHandle, start_polling
from .push import NullPushClient, PushClient, PushStatusUpdate, PushStatusWatcher
from .store import PaymentStore, Transition

__all__ = [
    "EffectsCoordinator",
    "PollerAlreadyRunning",
    "PollerRegistry",
    "PollerType",
    "attach_payment_effects",
]


class PollerType(str, Enum):
    FIND_SOURCE_PAYMENT = "find_source_payment"
    REFRESH_ORDER = "refresh_order"


class PollerAlreadyRunning(RuntimeError):
    """Raised when a second poller is registered for a live key."""


PollerKey = Tuple[PollerType, int]
EffectKey = Tuple[Any, ...]


class PollerRegistry:
    """Live pollers of one coordinator, keyed by type and order id."""

    def __init__(self) -> None:
        self._pollers: Dict[PollerKey, PollHandle] = {}

    def register(self, poller_type: PollerType, order_id: int, handle: PollHandle) -> None:
        key = (poller_type, order_id)
        existing = self._pollers.get(key)
        if existing is not None and not existing.stopped:
            raise PollerAlreadyRunning(f"{poller_type.value}:{order_id} is already polling")
        self._pollers[key] = handle

    def is_running(self, poller_type: PollerType, order_id: int) -> bool:
        handle = self._pollers.get((poller_type, order_id))
        return handle is not None and not handle.stopped

    def stop(self, poller_type: PollerType, order_id: int) -> bool:
        handle = self._pollers.pop((poller_type, order_id), None)
        if handle is None:
            return False
        handle.stop()
        return True

    def stop_order(self, order_id: int) -> None:
        for poller_type, key_order_id in list(self._pollers):
            if key_order_id == order_id:
                self.stop(poller_type, key_order_id)

    def stop_all(self) -> None:
        for poller_type, order_id in list(self._pollers):
            self.stop(poller_type, order_id)

    def keys(self) -> Iterator[PollerKey]:
        return iter([key for key, handle in self._pollers.items() if not handle.stopped])

    def __len__(self) -> int:
        return sum(1 for handle in self._pollers.values() if not handle.stopped)


_POLLED_STATES = {
    StateType.PAYMENT_UNPAID: PollerType.FIND_SOURCE_PAYMENT,
    StateType.PAYMENT_STARTED: PollerType.REFRESH_ORDER,
}

_PUSH_STATES = frozenset({StateType.PAYMENT_UNPAID, StateType.PAYMENT_STARTED})

_STOP_ALL_STATES = TERMINAL_STATE_TYPES | {StateType.ERROR, StateType.IDLE}


def _order_id(state: PaymentState) -> Optional[int]:
    order = order_of(state)
    return order.id if order is not None else None


class EffectsCoordinator:
    def __init__(
        self,
        store: PaymentStore,
        api: Any,
        logger: Optional[logging.Logger] = None,
        *,
        settings: Optional[PollingSettings] = None,
        push: Optional[PushClient] = None,
    ) -> None:
        self.store = store
        self.api = api
        self.settings = settings or PollingSettings()
        self.pollers = PollerRegistry()
        self._push = push or NullPushClient()
        self._log = logger or logging.getLogger(__name__)
        self._watcher: Optional[PushStatusWatcher] = None
        self._in_flight: Dict[EffectKey, asyncio.Task[None]] = {}
        self._tasks: Set[asyncio.Task[None]] = set()
        self._generation = 0
        self._active = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> Callable[[], None]:
        """Start reacting to store transitions. Returns the teardown function."""
        if self._active:
            return self.teardown
        self._active = True
        self._unsubscribe = self.store.subscribe(self._on_transition)
        # Resume watching an order the store already holds.
        self._enter_state(self.store.get_state())
        return self.teardown

    def teardown(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.pollers.stop_all()
        self._stop_push()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._in_flight.clear()
        self._log.debug("[EFFECTS] torn down")

    @property
    def active(self) -> bool:
        return self._active

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def drain(self) -> None:
        """Wait for the event-driven effects currently running."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Transition handling
    # ------------------------------------------------------------------

    def _on_transition(self, transition: Transition) -> None:
        if not self._active or not transition.valid:
            return
        prev, next_state = transition.prev, transition.next
        if prev.type is not next_state.type or _order_id(prev) != _order_id(next_state):
            self._leave_state(prev, next_state)
            self._enter_state(next_state)
        self._run_event_effects(prev, transition.event)

    def _leave_state(self, prev: PaymentState, next_state: PaymentState) -> None:
        prev_id = _order_id(prev)
        poller_type = _POLLED_STATES.get(prev.type)
        if poller_type is not None and prev_id is not None:
            self.pollers.stop(poller_type, prev_id)

        if next_state.type in _STOP_ALL_STATES:
            for order_id in {prev_id, _order_id(next_state)}:
                if order_id is not None:
                    self.pollers.stop_order(order_id)

    def _enter_state(self, state: PaymentState) -> None:
        order = order_of(state)
        poller_type = _POLLED_STATES.get(state.type)
        if poller_type is not None and order is not None:
            self._start_poller(poller_type, order.id)
        self._sync_push(state)

    def _run_event_effects(self, prev: PaymentState, event: PaymentEvent) -> None:
        if isinstance(event, SetPayParams):
            key = ("set_pay_params", event.pay_params.cache_key())
            if self._restart(key):
                self._spawn(key, lambda gen: self._preview_order(gen, event))
        elif isinstance(event, SetPayId):
            key = ("set_pay_id", event.pay_id)
            if self._restart(key):
                self._spawn(key, lambda gen: self._load_order(gen, event))
        elif isinstance(event, Reset):
            self._supersede()
        elif isinstance(event, HydrateOrder):
            if isinstance(prev, Preview):
                key = ("hydrate_order", prev.order.id, event.refund_address)
                self._spawn(key, lambda gen: self._hydrate_preview(gen, prev, event))
            elif isinstance(prev, Unhydrated):
                key = ("hydrate_order", prev.order.id, event.refund_address)
                self._spawn(key, lambda gen: self._hydrate_existing(gen, prev, event))
        elif isinstance(event, PaySource):
            order = order_of(prev)
            if order is not None:
                self._spawn(("pay_source", order.id), lambda gen: self._find_payment(gen, order))
        elif isinstance(event, SOURCE_PAYMENT_EVENTS):
            order = order_of(prev)
            if order is not None:
                key = (event.type.value, order.id, event)
                self._spawn(key, lambda gen: self._submit_source(gen, order, event))

    # ------------------------------------------------------------------
    # Task bookkeeping
    # ------------------------------------------------------------------

    def _supersede(self) -> None:
        """Make every pending request stale; their results will be dropped."""
        self._generation += 1
        self._in_flight.clear()

    def _restart(self, key: EffectKey) -> bool:
        """
        Supersede pending work for a new checkout request, unless the very
        same request is already in flight, in which case its answer stands.
        """
        if key in self._in_flight:
            self._log.debug("[EFFECTS] %s already in flight; skipping", key[0])
            return False
        self._supersede()
        return True

    def _spawn(self, key: EffectKey, factory: Callable[[int], Awaitable[None]]) -> None:
        if key in self._in_flight:
            self._log.debug("[EFFECTS] %s already in flight; skipping", key[0])
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(factory(self._generation), name=f"effect:{key[0]}")
        self._in_flight[key] = task
        self._tasks.add(task)

        def done(finished: asyncio.Task[None]) -> None:
            self._tasks.discard(finished)
            if self._in_flight.get(key) is finished:
                del self._in_flight[key]
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                self._log.error("[EFFECTS] %s failed: %s", key[0], exc, exc_info=exc)

        task.add_done_callback(done)

    def _is_current(self, generation: int, order_id: Optional[int] = None) -> bool:
        if not self._active or generation != self._generation:
            return False
        if order_id is None:
            return True
        return _order_id(self.store.get_state()) == order_id

    def _fail(self, generation: int, message: str, order: Optional[Order]) -> None:
        order_id = order.id if order is not None else None
        if not self._is_current(generation, order_id):
            self._log.info("[EFFECTS] dropping stale failure: %s", message)
            return
        if order is not None:
            current = order_of(self.store.get_state())
            if current is not None and current.id == order.id:
                order = current
            if self.store.get_state().type in TERMINAL_STATE_TYPES:
                self._log.warning("[EFFECTS] ignoring failure on settled order %s: %s", order.id, message)
                return
        self._log.error("[EFFECTS] %s", message)
        self.store.dispatch(ErrorOccurred(message=message, order=order))

    def _dispatch_if_current(self, generation: int, event: PaymentEvent, order_id: Optional[int] = None) -> None:
        if not self._is_current(generation, order_id):
            self._log.info("[EFFECTS] dropping stale %s result", event.type.value)
            return
        self.store.dispatch(event)

    # ------------------------------------------------------------------
    # Event-driven effects
    # ------------------------------------------------------------------

    async def _preview_order(self, generation: int, event: SetPayParams) -> None:
        pay_params = event.pay_params
        try:
            pay_params.validate()
            order = await self.api.preview_order(pay_params)
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), None)
            return
        self._dispatch_if_current(generation, PreviewGenerated(order=order, pay_params=pay_params))

    async def _load_order(self, generation: int, event: SetPayId) -> None:
        try:
            order = await self.api.get_order(event.pay_id)
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), None)
            return
        self._dispatch_if_current(generation, OrderLoaded(order=order))

    async def _hydrate_preview(self, generation: int, prev: Preview, event: HydrateOrder) -> None:
        order = prev.order
        pay_params = prev.pay_params
        external_id = order.external_id
        to_address: Optional[str] = None
        try:
            if pay_params.to_stellar_address:
                payment = await self.api.create_payment(
                    order,
                    stellar_address=pay_params.to_stellar_address,
                    app_id=pay_params.app_id,
                )
                external_id = payment.id
                token = order.dest_final_call_token_amount.token
                # Base USDC is paid into the rail's deposit address, which forwards to Stellar.
                if (
                    token.chain_id == BASE_CHAIN_ID
                    and token.address.lower() == BASE_USDC_ADDRESS.lower()
                    and payment.destination_address
                ):
                    to_address = payment.destination_address
                self._log.info("[EFFECTS] routing payment %s created for order %s", payment.id, order.id)

            hydrated = await self.api.create_order(
                order,
                external_id=external_id,
                to_address=to_address,
                refund_address=event.refund_address or order.refund_addr,
            )
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), order)
            return
        self._dispatch_if_current(generation, OrderHydrated(order=hydrated), order.id)

    async def _hydrate_existing(self, generation: int, prev: Unhydrated, event: HydrateOrder) -> None:
        order = prev.order
        try:
            hydrated = await self.api.hydrate_order(order.id, event.refund_address)
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), order)
            return
        self._dispatch_if_current(generation, OrderHydrated(order=hydrated), order.id)

    async def _find_payment(self, generation: int, order: Order) -> None:
        try:
            found = await self.api.find_order_payments(order.id)
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), order)
            return
        self._dispatch_if_current(generation, OrderRefreshed(order=found), order.id)

    async def _search_reported_payment(self, generation: int, order: Order) -> None:
        """One-off search after a push pay-in; the find poller covers failures."""
        try:
            found = await self.api.find_order_payments(order.id)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("[EFFECTS] payment search for order %s failed: %s", order.id, exc)
            return
        self._dispatch_if_current(generation, OrderRefreshed(order=found), order.id)

    async def _submit_source(self, generation: int, order: Order, event: Any) -> None:
        try:
            verified = await self.api.process_source_payment(order.id, event)
        except Exception as exc:  # noqa: BLE001
            self._fail(generation, str(exc), order)
            return
        self._dispatch_if_current(generation, PaymentVerified(order=verified), order.id)

    # ------------------------------------------------------------------
    # Pollers
    # ------------------------------------------------------------------

    def _start_poller(self, poller_type: PollerType, order_id: int) -> None:
        if self.pollers.is_running(poller_type, order_id):
            self._log.debug("[EFFECTS] %s:%s already polling", poller_type.value, order_id)
            return

        if poller_type is PollerType.FIND_SOURCE_PAYMENT:
            interval = self.settings.find_payment_interval_seconds
            fetch = self.api.find_order_payments
            governing = StateType.PAYMENT_UNPAID
        else:
            interval = self.settings.refresh_order_interval_seconds
            fetch = self.api.get_order
            governing = StateType.PAYMENT_STARTED

        def on_result(order: Order) -> None:
            state = self.store.get_state()
            if not self._active or state.type is not governing or _order_id(state) != order_id:
                self._log.debug(
                    "[EFFECTS] %s:%s result arrived in %s; stopping",
                    poller_type.value,
                    order_id,
                    state.type.value,
                )
                self.pollers.stop(poller_type, order_id)
                return
            self.store.dispatch(OrderRefreshed(order=order))

        def on_error(exc: BaseException) -> None:
            self._log.warning("[EFFECTS] %s:%s poll failed: %s", poller_type.value, order_id, exc)

        handle = start_polling(
            key=f"{poller_type.value}:{order_id}",
            interval_seconds=interval,
            poll_fn=lambda: fetch(order_id),
            on_result=on_result,
            on_error=on_error,
        )
        self.pollers.register(poller_type, order_id, handle)

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def _sync_push(self, state: PaymentState) -> None:
        order = order_of(state)
        wanted: Optional[str] = None
        if state.type in _PUSH_STATES and order is not None and order.external_id:
            wanted = order.external_id

        if self._watcher is not None and self._watcher.payment_id != wanted:
            self._stop_push()
        # A watcher whose grace period lapsed stays in place so it is not re-opened.
        if wanted is not None and self._watcher is None:
            watcher = PushStatusWatcher(
                self._push,
                wanted,
                self._on_push_update,
                grace_seconds=self.settings.push_grace_seconds,
                logger=self._log,
            )
            self._watcher = watcher
            watcher.start()

    def _stop_push(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher is not None:
            watcher.stop()

    def _on_push_update(self, update: PushStatusUpdate) -> None:
        state = self.store.get_state()
        order = order_of(state)
        if (
            not self._active
            or order is None
            or state.type not in _PUSH_STATES
            or order.external_id != update.payment_id
        ):
            self._log.debug("[EFFECTS] ignoring push update for %s", update.payment_id)
            return

        if update.is_payout_completed and update.destination_txhash:
            changes: Dict[str, Any] = {"payout_tx_hash": update.destination_txhash}
            if not order.dest_tx_hash:
                changes["dest_fast_finish_tx_hash"] = update.destination_txhash
                changes["intent_status"] = IntentStatus.COMPLETED
            self._log.info("[EFFECTS] payout completed for %s via push", update.payment_id)
            self.store.dispatch(OrderRefreshed(order=replace(order, **changes)))
        elif update.source_txhash:
            self._log.info("[EFFECTS] pay-in %s seen via push", update.source_txhash)
            key = ("push_find_payment", order.id, update.source_txhash)
            self._spawn(key, lambda gen: self._search_reported_payment(gen, order))


def attach_payment_effects(
    store: PaymentStore,
    api: Any,
    logger: Optional[logging.Logger] = None,
    *,
    settings: Optional[PollingSettings] = None,
    push: Optional[PushClient] = None,
) -> Callable[[], None]:
    """Attach a new :class:`EffectsCoordinator` to ``store``; returns its teardown."""
    coordinator = EffectsCoordinator(store, api, logger, settings=settings, push=push)
    return coordinator.attach()
