"""
Order, token and payment-parameter types shared by the checkout state machine.

Amounts are held as integer minor units and USD values as :class:`Decimal`, so
comparisons such as "received < required" never go through binary floats.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

__all__ = [
    "BASE_CHAIN_ID",
    "BASE_USDC_ADDRESS",
    "SOLANA_CHAIN_ID",
    "STELLAR_CHAIN_ID",
    "STELLAR_USDC_ISSUER",
    "ExternalPayment",
    "IntentStatus",
    "Order",
    "OrderMismatchError",
    "OrderMode",
    "PayParams",
    "PaymentStatus",
    "SourcePayment",
    "Token",
    "TokenAmount",
    "format_units",
    "parse_units",
]

BASE_CHAIN_ID = 8453
BASE_USDC_ADDRESS = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
SOLANA_CHAIN_ID = 900
STELLAR_CHAIN_ID = 1500
STELLAR_USDC_ISSUER = "GA5ZSEJYB37JRC5AVCIA5MOP4RHTM335X2KGX3IHOJAPP5RE34K4KZVN"


class OrderMismatchError(ValueError):
    """Raised when an order is refined with data belonging to another order."""


class IntentStatus(str, Enum):
    UNPAID = "payment_unpaid"
    STARTED = "payment_started"
    COMPLETED = "payment_completed"
    BOUNCED = "payment_bounced"

    @property
    def rank(self) -> int:
        return _INTENT_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (IntentStatus.COMPLETED, IntentStatus.BOUNCED)


_INTENT_RANK = {
    IntentStatus.UNPAID: 0,
    IntentStatus.STARTED: 1,
    IntentStatus.COMPLETED: 2,
    IntentStatus.BOUNCED: 2,
}


class OrderMode(str, Enum):
    SALE = "sale"
    CHOOSE_AMOUNT = "choose_amount"
    HYDRATED = "hydrated"


class PaymentStatus(str, Enum):
    """Statuses reported by the payment-routing rail and its push channel."""

    UNPAID = "payment_unpaid"
    STARTED = "payment_started"
    PAYIN_COMPLETED = "payment_payin_completed"
    PAYOUT_COMPLETED = "payment_payout_completed"
    COMPLETED = "payment_completed"
    BOUNCED = "payment_bounced"
    EXPIRED = "payment_expired"
    REFUNDED = "payment_refunded"


def _to_decimal(value: Any, field_name: str) -> Decimal:
    if isinstance(value, float):
        value = repr(value)
    try:
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be a decimal number, got {value!r}") from exc


def parse_units(text: str | int | Decimal, decimals: int) -> int:
    """
    Convert a human-readable amount (``"10.5"``) into integer minor units.

    Raises :class:`ValueError` when the amount has more precision than the
    token supports.
    """
    amount = _to_decimal(text, "amount")
    scaled = amount * (Decimal(10) ** decimals)
    integral = scaled.to_integral_value()
    if integral != scaled:
        raise ValueError(f"Amount {amount} cannot be represented with {decimals} decimals")
    return int(integral)


def format_units(amount: int, decimals: int) -> str:
    """Inverse of :func:`parse_units`; trailing zeros are dropped."""
    value = Decimal(int(amount)).scaleb(-decimals)
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True)
class Token:
    chain_id: int
    address: str
    symbol: str
    decimals: int
    usd: Decimal = Decimal(1)

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "Token":
        return cls(
            chain_id=int(payload["chainId"]),
            address=str(payload["token"]),
            symbol=str(payload.get("symbol", "")),
            decimals=int(payload["decimals"]),
            usd=_to_decimal(payload.get("usd", 1), "token.usd"),
        )


@dataclass(frozen=True)
class TokenAmount:
    token: Token
    amount: int
    usd: Decimal

    @property
    def units(self) -> str:
        return format_units(self.amount, self.token.decimals)

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "TokenAmount":
        return cls(
            token=Token.from_response(payload["token"]),
            amount=int(payload["amount"]),
            usd=_to_decimal(payload.get("usd", 0), "usd"),
        )

    @classmethod
    def for_usd(cls, token: Token, usd: Decimal) -> "TokenAmount":
        """Amount of ``token`` worth ``usd``, rounded down to a whole minor unit."""
        if token.usd <= 0:
            raise ValueError(f"Token {token.symbol} has no USD price")
        scaled = usd / token.usd * (Decimal(10) ** token.decimals)
        return cls(token=token, amount=int(scaled.to_integral_value(rounding=ROUND_FLOOR)), usd=usd)


@dataclass(frozen=True)
class SourcePayment:
    tx_hash: str
    chain_id: Optional[int] = None
    token: Optional[str] = None
    amount: Optional[int] = None
    payer_address: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> Optional["SourcePayment"]:
        tx_hash = _optional_str(
            payload.get("sourceInitiateTxHash") or payload.get("sourceStartTxHash")
        )
        if tx_hash is None:
            return None
        token_amount = payload.get("sourceTokenAmount") or {}
        token = token_amount.get("token") or {}
        chain_id = payload.get("sourceChainId", token.get("chainId"))
        amount = token_amount.get("amount", payload.get("sourceAmount"))
        return cls(
            tx_hash=tx_hash,
            chain_id=int(chain_id) if chain_id is not None else None,
            token=_optional_str(token.get("token") or payload.get("sourceToken")),
            amount=int(amount) if amount is not None else None,
            payer_address=_optional_str(payload.get("sourceFulfillerAddr")),
        )


@dataclass(frozen=True)
class Order:
    """
    A checkout order in any of its shapes.

    Preview orders have no ``intent_addr``; hydrated orders do. Orders loaded
    by id may be either, and their ``intent_status`` is authoritative.
    """

    id: int
    mode: OrderMode
    intent_status: IntentStatus
    dest_final_call_token_amount: TokenAmount
    dest_address: str
    dest_call_data: str = "0x"
    intent_addr: Optional[str] = None
    external_id: Optional[str] = None
    refund_addr: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    user_metadata: Optional[Mapping[str, Any]] = None
    source: Optional[SourcePayment] = None
    dest_fast_finish_tx_hash: Optional[str] = None
    dest_claim_tx_hash: Optional[str] = None
    payout_tx_hash: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def is_hydrated(self) -> bool:
        return self.intent_addr is not None

    @property
    def dest_tx_hash(self) -> Optional[str]:
        return self.dest_fast_finish_tx_hash or self.dest_claim_tx_hash

    @property
    def payment_id(self) -> str:
        """Identifier shown to host code: the routing-rail id when there is one."""
        return self.external_id or str(self.id)

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "Order":
        if "order" in payload and isinstance(payload["order"], Mapping):
            payload = payload["order"]
        dest_call = payload.get("destFinalCall") or {}
        mode = payload.get("mode", OrderMode.SALE.value)
        status = payload.get("intentStatus", IntentStatus.UNPAID.value)
        return cls(
            id=int(payload["id"]),
            mode=OrderMode(mode),
            intent_status=IntentStatus(status),
            dest_final_call_token_amount=TokenAmount.from_response(
                payload["destFinalCallTokenAmount"]
            ),
            dest_address=str(dest_call.get("to", "")),
            dest_call_data=str(dest_call.get("data") or "0x"),
            intent_addr=_optional_str(payload.get("intentAddr")),
            external_id=_optional_str(payload.get("externalId")),
            refund_addr=_optional_str(payload.get("refundAddr")),
            metadata=dict(payload.get("metadata") or {}),
            user_metadata=payload.get("userMetadata"),
            source=SourcePayment.from_response(payload),
            dest_fast_finish_tx_hash=_optional_str(payload.get("destFastFinishTxHash")),
            dest_claim_tx_hash=_optional_str(payload.get("destClaimTxHash")),
            payout_tx_hash=_optional_str(payload.get("payoutTransactionHash")),
            raw=dict(payload),
        )

    def refine(self, fetched: "Order") -> "Order":
        """
        Merge a freshly fetched copy of this order into it.

        Fields are only added or updated; a value already known is never
        replaced by ``None`` and the intent status never moves backward.
        """
        if fetched.id != self.id:
            raise OrderMismatchError(f"Order {fetched.id} cannot refine order {self.id}")

        status = fetched.intent_status
        if self.intent_status.is_terminal or status.rank < self.intent_status.rank:
            status = self.intent_status

        return replace(
            fetched,
            intent_status=status,
            intent_addr=fetched.intent_addr or self.intent_addr,
            external_id=fetched.external_id or self.external_id,
            refund_addr=fetched.refund_addr or self.refund_addr,
            source=fetched.source or self.source,
            dest_fast_finish_tx_hash=fetched.dest_fast_finish_tx_hash
            or self.dest_fast_finish_tx_hash,
            dest_claim_tx_hash=fetched.dest_claim_tx_hash or self.dest_claim_tx_hash,
            payout_tx_hash=fetched.payout_tx_hash or self.payout_tx_hash,
        )


@dataclass(frozen=True)
class PayParams:
    """
    Parameters a host application supplies to start a new checkout.

    ``to_units`` is ``None`` for deposit flow, where the payer picks the amount.
    """

    app_id: str
    to_chain: int
    to_token: str
    to_address: str
    to_units: Optional[str] = None
    to_call_data: Optional[str] = None
    to_stellar_address: Optional[str] = None
    intent: Optional[str] = None
    external_id: Optional[str] = None
    metadata: Optional[Mapping[str, Any]] = None
    refund_address: Optional[str] = None
    payment_options: Tuple[str, ...] = ()
    preferred_chains: Tuple[int, ...] = ()
    preferred_tokens: Tuple[Mapping[str, Any], ...] = ()
    evm_chains: Tuple[int, ...] = ()

    @property
    def is_deposit_flow(self) -> bool:
        return self.to_units is None

    def validate(self) -> None:
        if not self.app_id:
            raise ValueError("PayParams: app_id required")
        if self.is_deposit_flow and self.external_id is not None:
            raise ValueError("PayParams: external_id unsupported in deposit mode")
        if self.to_units is not None:
            amount = _to_decimal(self.to_units, "to_units")
            if amount < 0:
                raise ValueError("PayParams: to_units must not be negative")

    def cache_key(self) -> Tuple[Any, ...]:
        """Hashable identity of the request, used to spot duplicate submissions."""
        return (
            self.app_id,
            self.to_chain,
            self.to_token,
            self.to_address,
            self.to_units,
            self.to_call_data,
            self.to_stellar_address,
            self.intent,
            self.external_id,
            _freeze(self.metadata),
            self.refund_address,
            self.payment_options,
            self.preferred_chains,
            _freeze(self.preferred_tokens),
            self.evm_chains,
        )


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((str(key), _freeze(item)) for key, item in value.items()))
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


@dataclass(frozen=True)
class ExternalPayment:
    id: str
    status: Optional[PaymentStatus]
    destination_address: Optional[str]
    destination_tx_hash: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "ExternalPayment":
        if "data" in payload and isinstance(payload["data"], Mapping):
            payload = payload["data"]
        if not payload.get("id"):
            raise ValueError(f"Payment creation failed: {dict(payload)}")
        destination = payload.get("destination") or {}
        status = payload.get("status")
        try:
            parsed_status: Optional[PaymentStatus] = PaymentStatus(status)
        except ValueError:
            parsed_status = None
        return cls(
            id=str(payload["id"]),
            status=parsed_status,
            destination_address=_optional_str(
                destination.get("destinationAddress") or destination.get("receiverAddress")
            ),
            destination_tx_hash=_optional_str(destination.get("txHash")),
            raw=dict(payload),
        )

