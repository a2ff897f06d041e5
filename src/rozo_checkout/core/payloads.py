"""
Helpers for constructing the JSON bodies sent to the order and payment APIs.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Union

from eth_utils import is_hex_address, to_checksum_address, to_hex
from hexbytes import HexBytes

from .fsm import PayEthereumSource, PaySolanaSource, PayStellarSource
from .orders import (
    STELLAR_CHAIN_ID,
    STELLAR_USDC_ISSUER,
    Order,
    OrderMode,
    PayParams,
)

__all__ = [
    "build_create_order_request",
    "build_hydrate_request",
    "build_payout_payment_request",
    "build_preview_request",
    "build_source_payment_request",
    "normalize_address",
    "normalize_tx_hash",
]

SourcePaymentEvent = Union[PayEthereumSource, PaySolanaSource, PayStellarSource]


def normalize_address(address: str) -> str:
    """
    Checksum EVM addresses; Solana and Stellar addresses pass through untouched.
    """
    value = address.strip()
    if is_hex_address(value):
        return to_checksum_address(value)
    return value


def normalize_tx_hash(tx_hash: str) -> str:
    """Return an EVM transaction hash as lowercase ``0x``-prefixed hex."""
    value = tx_hash.strip()
    try:
        return to_hex(HexBytes(value))
    except ValueError as exc:
        raise ValueError(f"Transaction hash {tx_hash!r} is not hex encoded") from exc


def _optional_address(address: Optional[str]) -> Optional[str]:
    return normalize_address(address) if address else None


def _prune(body: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in body.items() if value is not None}


def build_preview_request(pay_params: PayParams) -> Dict[str, Any]:
    # Deposit flow previews with a zero amount; the payer edits it later.
    to_units = pay_params.to_units if pay_params.to_units is not None else "0"
    return _prune(
        {
            "appId": pay_params.app_id,
            "toChain": pay_params.to_chain,
            "toToken": normalize_address(pay_params.to_token),
            "toUnits": to_units,
            "toAddress": normalize_address(pay_params.to_address),
            "toCallData": pay_params.to_call_data,
            "isAmountEditable": pay_params.is_deposit_flow,
            "metadata": {
                "intent": pay_params.intent or "Pay",
                "items": [],
                "payer": {
                    "paymentOptions": list(pay_params.payment_options),
                    "preferredChains": list(pay_params.preferred_chains),
                    "preferredTokens": [dict(token) for token in pay_params.preferred_tokens],
                    "evmChains": list(pay_params.evm_chains),
                },
            },
            "externalId": pay_params.external_id,
            "userMetadata": dict(pay_params.metadata) if pay_params.metadata else None,
            "refundAddress": _optional_address(pay_params.refund_address),
        }
    )


def build_create_order_request(
    order: Order,
    *,
    app_id: str,
    external_id: Optional[str] = None,
    to_address: Optional[str] = None,
    refund_address: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Body that turns a preview order into a hydrated one.

    ``to_address`` replaces the order's destination, e.g. with a routing-rail
    deposit address; ``refund_address`` wins over the order's own.
    """
    amount = order.dest_final_call_token_amount
    payment_input = _prune(
        {
            "id": str(order.id),
            "toChain": amount.token.chain_id,
            "toToken": normalize_address(amount.token.address),
            "toUnits": amount.units,
            "toAddress": normalize_address(to_address or order.dest_address),
            "toCallData": order.dest_call_data,
            "isAmountEditable": order.mode is OrderMode.CHOOSE_AMOUNT,
            "metadata": dict(order.metadata),
            "userMetadata": dict(order.user_metadata) if order.user_metadata else None,
            "externalId": external_id or order.external_id,
        }
    )
    return _prune(
        {
            "appId": app_id,
            "paymentInput": payment_input,
            "refundAddress": _optional_address(refund_address or order.refund_addr),
        }
    )


def build_hydrate_request(order_id: int, refund_address: Optional[str] = None) -> Dict[str, Any]:
    return _prune({"id": str(order_id), "refundAddress": _optional_address(refund_address)})


def build_source_payment_request(order_id: int, event: SourcePaymentEvent) -> Dict[str, Any]:
    """Body reporting a submitted source transaction for ``order_id``."""
    if isinstance(event, PayEthereumSource):
        return {
            "orderId": str(order_id),
            "sourceInitiateTxHash": normalize_tx_hash(event.payment_tx_hash),
            "sourceChainId": event.source_chain_id,
            "sourceFulfillerAddr": normalize_address(event.payer_address),
            "sourceToken": normalize_address(event.source_token),
            "sourceAmount": str(event.source_amount),
        }
    if isinstance(event, PaySolanaSource):
        return {
            "orderId": str(order_id),
            "startIntentTxHash": event.payment_tx_hash,
            "token": event.source_token,
        }
    if isinstance(event, PayStellarSource):
        return _prune(
            {
                "orderId": str(order_id),
                "startIntentTxHash": event.payment_tx_hash,
                "token": event.source_token,
                "sourceChainId": STELLAR_CHAIN_ID,
                "paymentId": event.payment_id,
            }
        )
    raise TypeError(f"Unsupported source payment event {event!r}")


def build_payout_payment_request(
    order: Order,
    *,
    app_id: str,
    stellar_address: str,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Routing-rail payment that pays the order's amount out as Stellar USDC.
    """
    amount = order.dest_final_call_token_amount
    units = amount.units
    merged_metadata: Dict[str, Any] = {"daimoOrderId": str(order.id)}
    merged_metadata.update(order.metadata)
    if metadata:
        merged_metadata.update(metadata)
    return {
        "appId": app_id,
        "display": {
            "intent": str(order.metadata.get("intent", "")),
            "paymentValue": units,
            "currency": "USD",
        },
        "preferredChain": str(amount.token.chain_id),
        "preferredToken": "USDC",
        "destination": {
            "destinationAddress": stellar_address,
            "chainId": str(STELLAR_CHAIN_ID),
            "amountUnits": units,
            "tokenSymbol": "USDC_XLM",
            "tokenAddress": STELLAR_USDC_ISSUER,
        },
        "externalId": order.external_id or "",
        "metadata": merged_metadata,
    }
