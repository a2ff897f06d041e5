from decimal import Decimal

import pytest

from conftest import make_order, make_pay_params
from rozo_checkout.core import fsm
from rozo_checkout.core.fsm import (
    ErrorOccurred,
    EventType,
    Failed,
    HydrateOrder,
    Idle,
    OrderHydrated,
    OrderLoaded,
    OrderRefreshed,
    PayEthereumSource,
    PaySource,
    PaymentBounced,
    PaymentCompleted,
    PaymentStarted,
    PaymentUnpaid,
    PaymentVerified,
    Preview,
    PreviewGenerated,
    Reset,
    SetChosenUsd,
    SetPayId,
    SetPayParams,
    StateType,
    Unhydrated,
    apply_event,
)

PREVIEW_ORDER = make_order(intent_addr=None)
UNPAID_ORDER = make_order()
STARTED_ORDER = make_order(status="payment_started", source_hash="0xabc")
COMPLETED_ORDER = make_order(status="payment_completed", dest_claim="0xdef")

STATES = [
    Idle(),
    Preview(order=PREVIEW_ORDER, pay_params=make_pay_params()),
    Unhydrated(order=PREVIEW_ORDER),
    PaymentUnpaid(order=UNPAID_ORDER),
    PaymentStarted(order=STARTED_ORDER),
    PaymentCompleted(order=COMPLETED_ORDER),
    PaymentBounced(order=make_order(status="payment_bounced", dest_claim="0xdef")),
    Failed(message="boom"),
]

EVENTS = [
    HydrateOrder(),
    PaySource(),
    PayEthereumSource(
        payment_tx_hash="0xabc",
        source_chain_id=8453,
        payer_address="0x0",
        source_token="0x0",
        source_amount=1,
    ),
    OrderLoaded(order=UNPAID_ORDER),
    OrderRefreshed(order=STARTED_ORDER),
    OrderHydrated(order=UNPAID_ORDER),
    PaymentVerified(order=STARTED_ORDER),
    PreviewGenerated(order=PREVIEW_ORDER, pay_params=make_pay_params()),
    SetChosenUsd(usd=Decimal(5)),
]


def test_every_event_type_has_a_handler():
    assert {cls.type for cls in fsm._HANDLERS} == set(EventType)


@pytest.mark.parametrize("state", STATES, ids=lambda s: s.type.value)
@pytest.mark.parametrize("event", EVENTS, ids=lambda e: e.type.value)
def test_invalid_events_leave_state_untouched(state, event):
    result = apply_event(state, event)
    if not result.valid:
        assert result.state is state
        assert result.reason.startswith(f"invalid event {event.type.value} on state {state.type.value}")


@pytest.mark.parametrize("state", STATES, ids=lambda s: s.type.value)
def test_reset_and_new_params_always_return_to_idle(state):
    for event in (Reset(), SetPayParams(pay_params=make_pay_params()), SetPayId(pay_id="42")):
        result = apply_event(state, event)
        assert result.valid
        assert result.state == Idle()


def test_error_is_accepted_anywhere():
    result = apply_event(PaymentUnpaid(order=UNPAID_ORDER), ErrorOccurred("bad", UNPAID_ORDER))
    assert result.valid
    assert result.state.type is StateType.ERROR
    assert result.state.order == UNPAID_ORDER


def test_preview_then_hydration_reaches_unpaid():
    params = make_pay_params()
    state = apply_event(Idle(), PreviewGenerated(order=PREVIEW_ORDER, pay_params=params)).state
    assert isinstance(state, Preview)

    assert apply_event(state, HydrateOrder()).state is state

    rejected = apply_event(state, OrderHydrated(order=PREVIEW_ORDER))
    assert not rejected.valid

    state = apply_event(state, OrderHydrated(order=UNPAID_ORDER)).state
    assert isinstance(state, PaymentUnpaid)


def test_unhydrated_rejects_hydration_of_another_order():
    state = Unhydrated(order=PREVIEW_ORDER)
    result = apply_event(state, OrderHydrated(order=make_order(99)))
    assert not result.valid
    assert result.state is state


def test_order_loaded_picks_state_from_order():
    assert apply_event(Idle(), OrderLoaded(order=PREVIEW_ORDER)).state.type is StateType.UNHYDRATED
    assert apply_event(Idle(), OrderLoaded(order=UNPAID_ORDER)).state.type is StateType.PAYMENT_UNPAID
    assert apply_event(Idle(), OrderLoaded(order=STARTED_ORDER)).state.type is StateType.PAYMENT_STARTED
    assert apply_event(Idle(), OrderLoaded(order=COMPLETED_ORDER)).state.type is StateType.PAYMENT_COMPLETED
    bounced = make_order(status="payment_bounced", dest_claim="0xdef")
    assert apply_event(Idle(), OrderLoaded(order=bounced)).state.type is StateType.PAYMENT_BOUNCED


def test_completed_status_without_hash_is_not_terminal():
    order = make_order(status="payment_completed")
    state = apply_event(PaymentStarted(order=STARTED_ORDER), OrderRefreshed(order=order)).state
    assert state.type is StateType.PAYMENT_STARTED


def test_verified_payment_is_at_least_started():
    result = apply_event(PaymentUnpaid(order=UNPAID_ORDER), PaymentVerified(order=UNPAID_ORDER))
    assert result.state.type is StateType.PAYMENT_STARTED


def test_refresh_never_moves_backward():
    state = PaymentStarted(order=STARTED_ORDER)
    result = apply_event(state, OrderRefreshed(order=make_order(status="payment_unpaid")))
    assert result.valid
    assert result.state.type is StateType.PAYMENT_STARTED
    assert result.state.order.source.tx_hash == "0xabc"


def test_terminal_state_stays_terminal_on_refresh():
    state = PaymentCompleted(order=COMPLETED_ORDER)
    result = apply_event(state, OrderRefreshed(order=make_order(payout="0xpayout")))
    assert result.state.type is StateType.PAYMENT_COMPLETED
    assert result.state.order.payout_tx_hash == "0xpayout"
    assert result.state.order.dest_tx_hash == "0xdef"


def test_refresh_for_other_order_is_rejected():
    state = PaymentUnpaid(order=UNPAID_ORDER)
    result = apply_event(state, OrderRefreshed(order=make_order(7)))
    assert not result.valid
    assert "mismatch" in result.reason


def test_source_payment_accepted_while_started():
    event = EVENTS[2]
    assert apply_event(PaymentStarted(order=STARTED_ORDER), event).valid
    assert not apply_event(PaymentCompleted(order=COMPLETED_ORDER), event).valid


def test_set_chosen_usd_only_for_choose_amount_previews():
    sale = Preview(order=PREVIEW_ORDER, pay_params=make_pay_params())
    assert not apply_event(sale, SetChosenUsd(usd=Decimal(5))).valid

    editable = Preview(
        order=make_order(intent_addr=None, mode="choose_amount", amount=0, usd="0"),
        pay_params=make_pay_params(to_units=None),
    )
    result = apply_event(editable, SetChosenUsd(usd=Decimal("12.5")))
    assert result.valid
    amount = result.state.order.dest_final_call_token_amount
    assert amount.amount == 12_500_000
    assert amount.usd == Decimal("12.5")

    assert not apply_event(editable, SetChosenUsd(usd=Decimal(-1))).valid


def test_set_chosen_usd_float_keeps_its_decimal_value():
    editable = Preview(
        order=make_order(intent_addr=None, mode="choose_amount", amount=0, usd="0"),
        pay_params=make_pay_params(to_units=None),
    )
    result = apply_event(editable, SetChosenUsd(usd=9.99))

    amount = result.state.order.dest_final_call_token_amount
    assert amount.usd == Decimal("9.99")
    assert amount.amount == 9_990_000
    assert not apply_event(editable, SetChosenUsd(usd="lots")).valid


def test_completed_state_requires_destination_hash():
    with pytest.raises(ValueError):
        PaymentCompleted(order=UNPAID_ORDER)
