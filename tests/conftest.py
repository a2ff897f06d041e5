import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from rozo_checkout.core.config import PollingSettings
from rozo_checkout.core.orders import BASE_USDC_ADDRESS, ExternalPayment, Order, PayParams

DEST_ADDRESS = "0x742d35Cc6634C0532925a3b844Bc9e7595f0bEb0"
INTENT_ADDRESS = "0x1111111111111111111111111111111111111111"
PAYER_ADDRESS = "0x2222222222222222222222222222222222222222"


def order_payload(
    order_id: int = 42,
    *,
    status: str = "payment_unpaid",
    intent_addr: Optional[str] = INTENT_ADDRESS,
    external_id: Optional[str] = None,
    mode: str = "sale",
    amount: int = 10_000_000,
    usd: str = "10",
    source_hash: Optional[str] = None,
    dest_fast: Optional[str] = None,
    dest_claim: Optional[str] = None,
    payout: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": str(order_id),
        "mode": mode,
        "intentStatus": status,
        "destFinalCallTokenAmount": {
            "token": {
                "chainId": 8453,
                "token": BASE_USDC_ADDRESS,
                "symbol": "USDC",
                "decimals": 6,
                "usd": 1,
            },
            "amount": str(amount),
            "usd": usd,
        },
        "destFinalCall": {"to": DEST_ADDRESS, "data": "0x"},
        "intentAddr": intent_addr,
        "externalId": external_id,
        "metadata": {"intent": "Pay"},
        "sourceInitiateTxHash": source_hash,
        "destFastFinishTxHash": dest_fast,
        "destClaimTxHash": dest_claim,
        "payoutTransactionHash": payout,
    }


def make_order(order_id: int = 42, **fields: Any) -> Order:
    return Order.from_response(order_payload(order_id, **fields))


def make_pay_params(**fields: Any) -> PayParams:
    values: Dict[str, Any] = {
        "app_id": "app",
        "to_chain": 8453,
        "to_token": BASE_USDC_ADDRESS,
        "to_address": DEST_ADDRESS,
        "to_units": "10",
    }
    values.update(fields)
    return PayParams(**values)


class FakeOrderApi:
    """
    In-memory stand-in for the async order API.

    Results are plain values or callables taking the call's arguments. A
    method listed in ``gates`` waits for that event before answering.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Tuple[Any, ...]]] = []
        self.preview: Any = None
        self.orders: Dict[int, Any] = {}
        self.found: Dict[int, Any] = {}
        self.created: Any = None
        self.hydrated: Any = None
        self.verified: Any = None
        self.payment: Any = None
        self.errors: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)

    async def _call(self, name: str, result: Any, *args: Any) -> Any:
        self.calls.append((name, args))
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if name in self.errors:
            raise self.errors[name]
        if callable(result):
            return result(*args)
        if result is None:
            raise LookupError(f"no fake result for {name}{args}")
        return result

    async def preview_order(self, pay_params: PayParams) -> Order:
        return await self._call("preview_order", self.preview, pay_params)

    async def get_order(self, order_id: Any) -> Order:
        return await self._call("get_order", self.orders.get(int(order_id)), order_id)

    async def create_order(
        self,
        order: Order,
        *,
        external_id: Optional[str] = None,
        to_address: Optional[str] = None,
        refund_address: Optional[str] = None,
    ) -> Order:
        return await self._call(
            "create_order", self.created, order, external_id, to_address, refund_address
        )

    async def hydrate_order(self, order_id: int, refund_address: Optional[str] = None) -> Order:
        return await self._call("hydrate_order", self.hydrated, order_id, refund_address)

    async def find_order_payments(self, order_id: int) -> Order:
        return await self._call("find_order_payments", self.found.get(order_id), order_id)

    async def process_source_payment(self, order_id: int, event: Any) -> Order:
        return await self._call("process_source_payment", self.verified, order_id, event)

    async def create_payment(
        self, order: Order, *, stellar_address: str, app_id: Optional[str] = None
    ) -> ExternalPayment:
        return await self._call("create_payment", self.payment, order, stellar_address, app_id)

    async def get_payment(self, payment_id: str) -> ExternalPayment:
        return await self._call("get_payment", self.payment, payment_id)


class FakeChannel:
    def __init__(self, name: str) -> None:
        self.name = name
        self.bindings: Dict[str, List[Callable[[Any], None]]] = {}
        self.unsubscribed = False

    def bind(self, event: str, callback: Callable[[Any], None]) -> None:
        self.bindings.setdefault(event, []).append(callback)

    def unbind(self, event: str, callback: Optional[Callable[[Any], None]] = None) -> None:
        if callback is None:
            self.bindings.pop(event, None)
        elif callback in self.bindings.get(event, []):
            self.bindings[event].remove(callback)

    def unsubscribe(self) -> None:
        self.unsubscribed = True

    def send(self, event: str, data: Any) -> None:
        for callback in list(self.bindings.get(event, [])):
            callback(data)


class FakePushClient:
    def __init__(self) -> None:
        self.channels: Dict[str, FakeChannel] = {}

    def subscribe(self, channel_name: str) -> FakeChannel:
        channel = FakeChannel(channel_name)
        self.channels[channel_name] = channel
        return channel


@pytest.fixture
def fake_api() -> FakeOrderApi:
    return FakeOrderApi()


@pytest.fixture
def fake_push() -> FakePushClient:
    return FakePushClient()


@pytest.fixture
def fast_settings() -> PollingSettings:
    return PollingSettings(
        find_payment_interval_seconds=0.01,
        refresh_order_interval_seconds=0.01,
        push_grace_seconds=0,
    )
