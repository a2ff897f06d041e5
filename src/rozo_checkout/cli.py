"""
Command-line interface for exercising a checkout session.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Iterable, Optional, Sequence, Tuple

import requests

from .api import Checkout, create_checkout
from .core.config import CheckoutConfig, ConfigError, load_checkout_config
from .core.events import MilestoneType, PaymentMilestone
from .core.fsm import PaymentState, StateType, order_of
from .core.orders import PayParams
from .core.store import PaymentFailedError

_TERMINAL = (StateType.PAYMENT_COMPLETED, StateType.PAYMENT_BOUNCED)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )


def _env_override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Override key must not be empty")
    return key, val


def _collect_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, value in pairs:
        overrides[key] = value
    return overrides


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rozo-checkout",
        description="Preview, hydrate or watch a single checkout order",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to the .env file containing ROZO_* settings (default: .env)",
    )
    parser.add_argument(
        "--set",
        action="append",
        type=_env_override,
        metavar="KEY=VALUE",
        default=None,
        help="Override an environment variable without editing the .env file",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--pay-id", help="Load an existing order by id")
    source.add_argument(
        "--to-address",
        help="Destination address; previews a new order together with --to-chain/--to-token",
    )
    parser.add_argument("--to-chain", type=int, help="Destination chain id (e.g. 8453)")
    parser.add_argument("--to-token", help="Destination token address")
    parser.add_argument(
        "--to-units",
        help="Amount in token units (e.g. 10.5); omit for a deposit order",
    )
    parser.add_argument("--to-stellar-address", help="Pay the order out to this Stellar account")
    parser.add_argument("--intent", help="Verb shown to the payer (default: Pay)")
    parser.add_argument("--refund-address", help="Refund address used when hydrating")
    parser.add_argument(
        "--hydrate",
        action="store_true",
        help="Finalize the order so it can accept a payment",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Wait until the order is completed or bounced",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for each step (default: no limit)",
    )
    return parser


def _pay_params(args: argparse.Namespace, config: CheckoutConfig) -> PayParams:
    if args.to_chain is None or not args.to_token:
        raise ValueError("--to-address requires --to-chain and --to-token")
    return PayParams(
        app_id=config.app_id,
        to_chain=args.to_chain,
        to_token=args.to_token,
        to_address=args.to_address,
        to_units=args.to_units,
        to_stellar_address=args.to_stellar_address,
        intent=args.intent,
    )


def _describe(state: PaymentState) -> None:
    order = order_of(state)
    if order is None:
        logging.info("Checkout is %s", state.type.value)
        return
    amount = order.dest_final_call_token_amount
    logging.info(
        "Order %s is %s: %s %s on chain %s",
        order.payment_id,
        state.type.value,
        amount.units,
        amount.token.symbol,
        amount.token.chain_id,
    )
    if order.intent_addr:
        logging.info("Deposit address: %s", order.intent_addr)
    if order.dest_tx_hash:
        logging.info("Destination transaction: %s", order.dest_tx_hash)


def _log_milestone(milestone: PaymentMilestone) -> None:
    logging.info(
        "Milestone %s for %s (tx %s)",
        milestone.type.value,
        milestone.payment_id,
        milestone.tx_hash,
    )


async def _run(checkout: Checkout, args: argparse.Namespace, config: CheckoutConfig) -> int:
    for milestone in MilestoneType:
        checkout.on(milestone, _log_milestone)

    try:
        if args.pay_id:
            state = await checkout.set_pay_id(args.pay_id)
        else:
            state = await checkout.create_preview_order(_pay_params(args, config))
        _describe(state)

        if args.hydrate and state.type in (StateType.PREVIEW, StateType.UNHYDRATED):
            state = await checkout.hydrate_order(args.refund_address)
            _describe(state)

        if args.watch and state.type not in _TERMINAL:
            if state.type in (StateType.PREVIEW, StateType.UNHYDRATED):
                logging.error("Order must be hydrated before it can be watched; pass --hydrate")
                return 1
            logging.info("Waiting for the order to settle")
            state = await checkout.wait_for(*_TERMINAL)
            _describe(state)
    except PaymentFailedError as exc:
        logging.error("Checkout failed: %s", exc)
        return 1
    except asyncio.TimeoutError:
        logging.error("Timed out after %ss in state %s", args.timeout, checkout.state.type.value)
        return 1
    finally:
        checkout.close()

    if state.type is StateType.PAYMENT_BOUNCED:
        logging.error("Payment bounced")
        return 1
    return 0


def run_cli(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)
    overrides = _collect_overrides(args.set or ())

    try:
        config = load_checkout_config(env_file=args.env_file, overrides=overrides)
        if args.to_address:
            _pay_params(args, config)
    except (ConfigError, ValueError) as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    logging.debug("Using API at %s", config.api_url)

    async def main() -> int:
        checkout = create_checkout(
            config=config,
            session=requests.Session(),
            timeout_seconds=args.timeout,
        )
        return await _run(checkout, args, config)

    return asyncio.run(main())


def main(argv: Optional[Sequence[str]] = None) -> None:
    sys.exit(run_cli(argv))
