"""
Public, high-level checkout session API.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, List, Mapping, Optional

import requests

from .core.client import AsyncOrderApi, OrderApi, OrderApiClient
from .core.config import CheckoutConfig, CheckoutParameters, PollingSettings, load_checkout_config
from .core.effects import EffectsCoordinator
from .core.events import MilestoneType, PaymentEventNotifier, attach_milestone_notifier
from .core.fsm import (
    Failed,
    HydrateOrder,
    OrderRefreshed,
    PayEthereumSource,
    PaySolanaSource,
    PaySource,
    PayStellarSource,
    PaymentEvent,
    PaymentState,
    PaymentVerified,
    Reset,
    SetChosenUsd,
    SetPayId,
    SetPayParams,
    StateType,
    order_of,
)
from .core.orders import IntentStatus, Order, PayParams
from .core.push import PushClient
from .core.store import PaymentStore, Transition, dispatch_and_wait, wait_for_payment_state

__all__ = ["Checkout", "create_checkout"]

_LOADED_STATES = (
    StateType.UNHYDRATED,
    StateType.PAYMENT_UNPAID,
    StateType.PAYMENT_STARTED,
    StateType.PAYMENT_COMPLETED,
    StateType.PAYMENT_BOUNCED,
)

_PAID_STATES = (
    StateType.PAYMENT_STARTED,
    StateType.PAYMENT_COMPLETED,
    StateType.PAYMENT_BOUNCED,
)

_COMPLETABLE_STATES = (
    StateType.PAYMENT_UNPAID,
    StateType.PAYMENT_STARTED,
    StateType.PAYMENT_COMPLETED,
)


def _entered(*state_types: StateType) -> Callable[[Transition], bool]:
    return lambda transition: transition.next.type in state_types


def _source_verified(transition: Transition) -> bool:
    # Settling through the pollers first also answers a source submission.
    return isinstance(transition.event, PaymentVerified) or transition.next.type in (
        StateType.PAYMENT_COMPLETED,
        StateType.PAYMENT_BOUNCED,
    )


class Checkout:
    """
    One checkout session: a store, its milestone notifier and its effects.

    Must be used from a running event loop. The ``async`` methods dispatch an
    event and wait until the store reaches the state that answers it. They
    raise :class:`~rozo_checkout.core.store.EventRejectedError` when the event
    does not apply to the current state and
    :class:`~rozo_checkout.core.store.PaymentFailedError` if the flow fails.
    """

    def __init__(
        self,
        api: OrderApi,
        *,
        settings: Optional[PollingSettings] = None,
        push: Optional[PushClient] = None,
        logger: Optional[logging.Logger] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.api = api
        self.timeout_seconds = timeout_seconds
        self.store = PaymentStore(logger=logger)
        self.notifier = PaymentEventNotifier(logger=logger)
        self.effects = EffectsCoordinator(self.store, api, logger, settings=settings, push=push)
        self._teardowns: List[Callable[[], None]] = [
            attach_milestone_notifier(self.store, self.notifier),
            self.effects.attach(),
        ]
        self._closed = False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def state(self) -> PaymentState:
        return self.store.get_state()

    @property
    def order(self) -> Optional[Order]:
        return order_of(self.store.get_state())

    @property
    def error_message(self) -> Optional[str]:
        state = self.store.get_state()
        return state.message if isinstance(state, Failed) else None

    def subscribe(self, listener: Callable[[Transition], None]) -> Callable[[], None]:
        return self.store.subscribe(listener)

    def on(self, milestone: MilestoneType | str, callback: Callable[[Any], None]) -> Callable[[], None]:
        """Register ``callback`` for a milestone; it runs once per order."""
        return self.notifier.subscribe(milestone, callback)

    async def wait_for(self, *state_types: StateType | str) -> PaymentState:
        return await wait_for_payment_state(
            self.store, *state_types, timeout_seconds=self.timeout_seconds
        )

    # ------------------------------------------------------------------
    # Flow
    # ------------------------------------------------------------------

    async def _submit(self, event: PaymentEvent, until: Callable[[Transition], bool]) -> PaymentState:
        return await dispatch_and_wait(
            self.store, event, until, timeout_seconds=self.timeout_seconds
        )

    async def create_preview_order(self, pay_params: PayParams) -> PaymentState:
        return await self._submit(SetPayParams(pay_params=pay_params), _entered(StateType.PREVIEW))

    async def set_pay_id(self, pay_id: str | int) -> PaymentState:
        # An existing order may be at any stage.
        return await self._submit(SetPayId(pay_id=str(pay_id)), _entered(*_LOADED_STATES))

    async def hydrate_order(self, refund_address: Optional[str] = None) -> PaymentState:
        return await self._submit(
            HydrateOrder(refund_address=refund_address),
            _entered(StateType.PAYMENT_UNPAID, *_PAID_STATES),
        )

    def pay_source(self) -> None:
        self.store.dispatch(PaySource())

    async def pay_ethereum_source(
        self,
        *,
        payment_tx_hash: str,
        source_chain_id: int,
        payer_address: str,
        source_token: str,
        source_amount: int,
    ) -> PaymentState:
        event = PayEthereumSource(
            payment_tx_hash=payment_tx_hash,
            source_chain_id=source_chain_id,
            payer_address=payer_address,
            source_token=source_token,
            source_amount=source_amount,
        )
        return await self._submit(event, _source_verified)

    async def pay_solana_source(self, *, payment_tx_hash: str, source_token: str) -> PaymentState:
        event = PaySolanaSource(payment_tx_hash=payment_tx_hash, source_token=source_token)
        return await self._submit(event, _source_verified)

    async def pay_stellar_source(
        self,
        *,
        payment_tx_hash: str,
        source_token: str,
        payment_id: Optional[str] = None,
    ) -> PaymentState:
        if self.order is None:
            raise RuntimeError("Cannot submit Stellar payment: no active order")
        event = PayStellarSource(
            payment_tx_hash=payment_tx_hash,
            source_token=source_token,
            payment_id=payment_id,
        )
        return await self._submit(event, _source_verified)

    async def mark_payment_completed(
        self, tx_hash: str, payment_id: Optional[str] = None
    ) -> PaymentState:
        """
        Record a destination transaction observed outside the order API, such
        as a payout reported by the routing rail.
        """
        state = self.store.get_state()
        order = order_of(state)
        if order is None:
            raise RuntimeError("Cannot complete payment: no active order")
        if state.type not in _COMPLETABLE_STATES:
            raise RuntimeError(f"Cannot complete payment in state {state.type.value}")
        completed = replace(
            order,
            external_id=payment_id or order.external_id,
            dest_fast_finish_tx_hash=tx_hash,
            intent_status=IntentStatus.COMPLETED,
        )
        return await self._submit(
            OrderRefreshed(order=completed), _entered(StateType.PAYMENT_COMPLETED)
        )

    def set_chosen_usd(self, usd: Decimal | str | int) -> None:
        self.store.dispatch(SetChosenUsd(usd=Decimal(str(usd))))

    def reset(self) -> None:
        self.store.dispatch(Reset())

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for teardown in reversed(self._teardowns):
            teardown()
        close_api = getattr(self.api, "close", None)
        if callable(close_api):
            close_api()

    async def __aenter__(self) -> "Checkout":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()


def create_checkout(
    *,
    config: Optional[CheckoutConfig] = None,
    api: Optional[OrderApi] = None,
    session: Optional[requests.Session] = None,
    push: Optional[PushClient] = None,
    logger: Optional[logging.Logger] = None,
    timeout_seconds: Optional[float] = None,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **config_values: Any,
) -> Checkout:
    """
    Construct a :class:`Checkout`.

    Callers can either supply a ready-made :class:`CheckoutConfig` or let the
    helper assemble one from environment data and keyword arguments (the
    :class:`CheckoutParameters` field names). ``api`` replaces the HTTP client.
    """
    if config is not None:
        extras = (overrides, base, parameters, *config_values.values())
        if any(item is not None and item != {} for item in extras):
            raise ValueError(
                "Provide either a pre-built CheckoutConfig or individual parameters, not both."
            )
        cfg = config
    else:
        cfg = load_checkout_config(
            env_file=env_file,
            overrides=overrides,
            base=base,
            parameters=parameters,
            **config_values,
        )

    if api is None:
        api = AsyncOrderApi(OrderApiClient(cfg, session=session))
    return Checkout(
        api,
        settings=cfg.polling,
        push=push,
        logger=logger,
        timeout_seconds=timeout_seconds,
    )
