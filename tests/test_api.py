import asyncio
from decimal import Decimal

import pytest

from conftest import INTENT_ADDRESS, PAYER_ADDRESS, make_order, make_pay_params
from rozo_checkout import Checkout, create_checkout
from rozo_checkout.core.config import CheckoutConfig
from rozo_checkout.core.events import MilestoneType
from rozo_checkout.core.fsm import StateType
from rozo_checkout.core.orders import BASE_USDC_ADDRESS
from rozo_checkout.core.store import EventRejectedError, PaymentFailedError


@pytest.mark.asyncio
async def test_preview_hydrate_pay_and_complete(fake_api, fast_settings):
    fake_api.preview = make_order(intent_addr=None)
    fake_api.created = make_order()
    fake_api.found[42] = make_order()
    fake_api.verified = make_order(status="payment_started", source_hash="0xabc")
    fake_api.orders[42] = make_order(
        status="payment_completed", source_hash="0xabc", dest_claim="0xdef"
    )

    async with Checkout(fake_api, settings=fast_settings, timeout_seconds=2) as checkout:
        completed = []
        checkout.on(MilestoneType.PAYMENT_COMPLETED, completed.append)

        state = await checkout.create_preview_order(make_pay_params())
        assert state.type is StateType.PREVIEW
        assert state.order.dest_final_call_token_amount.usd == Decimal(10)

        state = await checkout.hydrate_order()
        assert state.type is StateType.PAYMENT_UNPAID
        assert state.order.intent_addr == INTENT_ADDRESS

        state = await checkout.pay_ethereum_source(
            payment_tx_hash="0xabc",
            source_chain_id=8453,
            payer_address=PAYER_ADDRESS,
            source_token=BASE_USDC_ADDRESS,
            source_amount=10_000_000,
        )
        assert state.type is StateType.PAYMENT_STARTED

        state = await checkout.wait_for(StateType.PAYMENT_COMPLETED)
        assert state.order.dest_tx_hash == "0xdef"
        assert [milestone.tx_hash for milestone in completed] == ["0xdef"]
        assert len(checkout.effects.pollers) == 0

    assert not checkout.effects.active


@pytest.mark.asyncio
async def test_loading_a_bounced_order(fake_api, fast_settings):
    fake_api.orders[42] = make_order(status="payment_bounced", dest_fast="0xrefund")
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)
    bounced = []
    checkout.on(MilestoneType.PAYMENT_BOUNCED, bounced.append)

    state = await checkout.set_pay_id(42)

    assert state.type is StateType.PAYMENT_BOUNCED
    assert fake_api.calls[0] == ("get_order", ("42",))
    assert [milestone.tx_hash for milestone in bounced] == ["0xrefund"]
    assert len(checkout.effects.pollers) == 0
    checkout.close()


@pytest.mark.asyncio
async def test_failed_preview_raises(fake_api, fast_settings):
    fake_api.errors["preview_order"] = RuntimeError("preview unavailable")
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)

    with pytest.raises(PaymentFailedError, match="preview unavailable"):
        await checkout.create_preview_order(make_pay_params())

    assert checkout.state.type is StateType.ERROR
    assert checkout.error_message == "preview unavailable"
    checkout.close()


@pytest.mark.asyncio
async def test_mark_payment_completed(fake_api, fast_settings):
    fake_api.orders[42] = make_order(external_id="pay_1")
    fake_api.found[42] = make_order(external_id="pay_1")
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)
    await checkout.set_pay_id(42)

    state = await checkout.mark_payment_completed("0xpayout")

    assert state.type is StateType.PAYMENT_COMPLETED
    assert state.order.dest_tx_hash == "0xpayout"
    assert state.order.external_id == "pay_1"
    assert len(checkout.effects.pollers) == 0
    checkout.close()


@pytest.mark.asyncio
async def test_mark_payment_completed_requires_an_order(fake_api):
    checkout = Checkout(fake_api)
    with pytest.raises(RuntimeError, match="no active order"):
        await checkout.mark_payment_completed("0xpayout")
    with pytest.raises(RuntimeError, match="no active order"):
        await checkout.pay_stellar_source(payment_tx_hash="abc", source_token="USDC")
    checkout.close()


@pytest.mark.asyncio
async def test_choose_amount_preview(fake_api, fast_settings):
    fake_api.preview = make_order(intent_addr=None, mode="choose_amount")
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)
    await checkout.create_preview_order(make_pay_params())

    checkout.set_chosen_usd("2.5")

    assert checkout.order.dest_final_call_token_amount.amount == 2_500_000
    checkout.reset()
    assert checkout.state.type is StateType.IDLE
    assert checkout.order is None
    checkout.close()


@pytest.mark.asyncio
async def test_create_checkout_rejects_config_with_parameters(fake_api):
    config = CheckoutConfig(app_id="app")
    with pytest.raises(ValueError, match="not both"):
        create_checkout(config=config, api=fake_api, app_id="other")

    checkout = create_checkout(config=config, api=fake_api)
    assert checkout.effects.settings == config.polling
    checkout.close()


@pytest.mark.asyncio
async def test_create_checkout_from_environment(fake_api):
    checkout = create_checkout(
        api=fake_api,
        env_file=None,
        base={"ROZO_APP_ID": "app", "ROZO_REFRESH_ORDER_INTERVAL_SECONDS": "0.5"},
    )
    assert checkout.effects.settings.refresh_order_interval_seconds == 0.5
    checkout.close()


@pytest.mark.asyncio
async def test_steps_out_of_order_are_rejected_at_once(fake_api, fast_settings):
    fake_api.preview = make_order(intent_addr=None)
    checkout = Checkout(fake_api, settings=fast_settings)

    with pytest.raises(EventRejectedError, match="hydrate_order"):
        await checkout.hydrate_order()

    await checkout.create_preview_order(make_pay_params())
    with pytest.raises(EventRejectedError, match="pay_ethereum_source"):
        await checkout.pay_ethereum_source(
            payment_tx_hash="0xabc",
            source_chain_id=8453,
            payer_address=PAYER_ADDRESS,
            source_token=BASE_USDC_ADDRESS,
            source_amount=10_000_000,
        )
    assert checkout.state.type is StateType.PREVIEW
    assert fake_api.count("process_source_payment") == 0
    checkout.close()


@pytest.mark.asyncio
async def test_resubmitted_source_waits_for_verification(fake_api, fast_settings):
    started = make_order(status="payment_started", source_hash="0xold")
    fake_api.orders[42] = started
    fake_api.verified = make_order(status="payment_started", source_hash="0xnew")
    fake_api.gates["process_source_payment"] = asyncio.Event()
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)
    await checkout.set_pay_id(42)

    submit = asyncio.create_task(
        checkout.pay_solana_source(payment_tx_hash="0xnew", source_token="USDC")
    )
    await asyncio.sleep(0.03)
    assert not submit.done()

    fake_api.gates["process_source_payment"].set()
    state = await submit
    assert state.type is StateType.PAYMENT_STARTED
    assert state.order.source.tx_hash == "0xnew"
    checkout.close()


@pytest.mark.asyncio
async def test_resubmitted_source_reports_verification_failure(fake_api, fast_settings):
    fake_api.orders[42] = make_order(status="payment_started", source_hash="0xold")
    fake_api.errors["process_source_payment"] = RuntimeError("rejected by server")
    checkout = Checkout(fake_api, settings=fast_settings, timeout_seconds=2)
    await checkout.set_pay_id(42)

    with pytest.raises(PaymentFailedError, match="rejected by server"):
        await checkout.pay_solana_source(payment_tx_hash="0xnew", source_token="USDC")

    assert checkout.state.type is StateType.ERROR
    checkout.close()
