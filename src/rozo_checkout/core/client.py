"""
HTTP client for the order and payment-routing APIs.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Union

import requests

from .config import CheckoutConfig
from .fsm import PayEthereumSource, PaySolanaSource, PayStellarSource
from .orders import ExternalPayment, Order, PayParams
from .payloads import (
    build_create_order_request,
    build_hydrate_request,
    build_payout_payment_request,
    build_preview_request,
    build_source_payment_request,
)

__all__ = [
    "ApiError",
    "AsyncOrderApi",
    "OrderApi",
    "OrderApiClient",
]

SourcePaymentEvent = Union[PayEthereumSource, PaySolanaSource, PayStellarSource]


class ApiError(RuntimeError):
    """Raised for failed or undecodable API responses."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.url = url


def _decode(response: requests.Response, url: str) -> Dict[str, Any]:
    if response.status_code >= 400:
        raise ApiError(
            f"API responded with {response.status_code}: {response.text}",
            status_code=response.status_code,
            url=url,
        )
    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError) as exc:
        raise ApiError(
            f"Failed to parse JSON from {url}: {response.text}",
            status_code=response.status_code,
            url=url,
        ) from exc
    if not isinstance(payload, Mapping):
        raise ApiError(f"Expected a JSON object from {url}, got {type(payload).__name__}", url=url)
    error = payload.get("error")
    if error and not payload.get("data") and not payload.get("id"):
        message = error.get("message") if isinstance(error, Mapping) else error
        raise ApiError(f"API error from {url}: {message}", status_code=response.status_code, url=url)
    return dict(payload)


def _post_json(
    session: requests.Session,
    config: CheckoutConfig,
    path: str,
    body: Dict[str, Any],
) -> Dict[str, Any]:
    url = config.endpoint(path)
    response = session.post(
        url, json=body, headers=config.headers(), timeout=config.request_timeout_seconds
    )
    return _decode(response, url)


def _get_json(
    session: requests.Session,
    config: CheckoutConfig,
    path: str,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    url = config.endpoint(path)
    response = session.get(
        url, params=params, headers=config.headers(), timeout=config.request_timeout_seconds
    )
    return _decode(response, url)


def _hydrated(payload: Mapping[str, Any]) -> Order:
    return Order.from_response(payload.get("hydratedOrder") or payload)


class OrderApiClient:
    """
    Blocking wrapper around the order endpoints.

    Every method returns parsed domain objects and raises :class:`ApiError`
    on transport-level failures.
    """

    def __init__(
        self,
        config: CheckoutConfig,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config
        self.session = session or requests.Session()

    def preview_order(self, pay_params: PayParams) -> Order:
        logging.info("Requesting order preview for chain %s", pay_params.to_chain)
        payload = _post_json(
            self.session, self.config, "previewOrder", build_preview_request(pay_params)
        )
        return Order.from_response(payload)

    def get_order(self, order_id: Union[int, str]) -> Order:
        payload = _get_json(self.session, self.config, "getOrder", {"id": str(order_id)})
        return Order.from_response(payload)

    def create_order(
        self,
        order: Order,
        *,
        external_id: Optional[str] = None,
        to_address: Optional[str] = None,
        refund_address: Optional[str] = None,
    ) -> Order:
        logging.info("Creating hydrated order from preview %s", order.id)
        body = build_create_order_request(
            order,
            app_id=self.config.app_id,
            external_id=external_id,
            to_address=to_address,
            refund_address=refund_address,
        )
        return _hydrated(_post_json(self.session, self.config, "createOrder", body))

    def hydrate_order(self, order_id: int, refund_address: Optional[str] = None) -> Order:
        logging.info("Hydrating order %s", order_id)
        body = build_hydrate_request(order_id, refund_address)
        return _hydrated(_post_json(self.session, self.config, "hydrateOrder", body))

    def find_order_payments(self, order_id: int) -> Order:
        payload = _get_json(
            self.session, self.config, "findOrderPayments", {"orderId": str(order_id)}
        )
        return Order.from_response(payload)

    def process_source_payment(self, order_id: int, event: SourcePaymentEvent) -> Order:
        logging.info("Reporting %s for order %s", event.type.value, order_id)
        body = build_source_payment_request(order_id, event)
        return Order.from_response(
            _post_json(self.session, self.config, "processSourcePayment", body)
        )

    def create_payment(
        self,
        order: Order,
        *,
        stellar_address: str,
        app_id: Optional[str] = None,
    ) -> ExternalPayment:
        logging.info("Creating routing payment for order %s", order.id)
        body = build_payout_payment_request(
            order, app_id=app_id or self.config.app_id, stellar_address=stellar_address
        )
        return ExternalPayment.from_response(
            _post_json(self.session, self.config, "payment-api", body)
        )

    def get_payment(self, payment_id: str) -> ExternalPayment:
        return ExternalPayment.from_response(
            _get_json(self.session, self.config, f"payment-api/{payment_id}")
        )

    def close(self) -> None:
        self.session.close()


class OrderApi(Protocol):
    """The asynchronous surface the effects coordinator talks to."""

    async def preview_order(self, pay_params: PayParams) -> Order: ...

    async def get_order(self, order_id: Union[int, str]) -> Order: ...

    async def create_order(
        self,
        order: Order,
        *,
        external_id: Optional[str] = None,
        to_address: Optional[str] = None,
        refund_address: Optional[str] = None,
    ) -> Order: ...

    async def hydrate_order(self, order_id: int, refund_address: Optional[str] = None) -> Order: ...

    async def find_order_payments(self, order_id: int) -> Order: ...

    async def process_source_payment(self, order_id: int, event: SourcePaymentEvent) -> Order: ...

    async def create_payment(
        self, order: Order, *, stellar_address: str, app_id: Optional[str] = None
    ) -> ExternalPayment: ...

    async def get_payment(self, payment_id: str) -> ExternalPayment: ...


class AsyncOrderApi:
    """Runs :class:`OrderApiClient` calls in worker threads."""

    def __init__(self, client: OrderApiClient) -> None:
        self.client = client

    async def preview_order(self, pay_params: PayParams) -> Order:
        return await asyncio.to_thread(self.client.preview_order, pay_params)

    async def get_order(self, order_id: Union[int, str]) -> Order:
        return await asyncio.to_thread(self.client.get_order, order_id)

    async def create_order(
        self,
        order: Order,
        *,
        external_id: Optional[str] = None,
        to_address: Optional[str] = None,
        refund_address: Optional[str] = None,
    ) -> Order:
        return await asyncio.to_thread(
            self.client.create_order,
            order,
            external_id=external_id,
            to_address=to_address,
            refund_address=refund_address,
        )

    async def hydrate_order(self, order_id: int, refund_address: Optional[str] = None) -> Order:
        return await asyncio.to_thread(self.client.hydrate_order, order_id, refund_address)

    async def find_order_payments(self, order_id: int) -> Order:
        return await asyncio.to_thread(self.client.find_order_payments, order_id)

    async def process_source_payment(self, order_id: int, event: SourcePaymentEvent) -> Order:
        return await asyncio.to_thread(self.client.process_source_payment, order_id, event)

    async def create_payment(
        self, order: Order, *, stellar_address: str, app_id: Optional[str] = None
    ) -> ExternalPayment:
        return await asyncio.to_thread(
            self.client.create_payment, order, stellar_address=stellar_address, app_id=app_id
        )

    async def get_payment(self, payment_id: str) -> ExternalPayment:
        return await asyncio.to_thread(self.client.get_payment, payment_id)

    def close(self) -> None:
        self.client.close()
