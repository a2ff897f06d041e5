"""
Minimal script that uses the public API to create a checkout and wait for it.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Iterable, Tuple

from rozo_checkout import (
    ConfigError,
    MilestoneType,
    PayParams,
    PaymentFailedError,
    StateType,
    create_checkout,
    load_checkout_config,
)


def _override(value: str) -> Tuple[str, str]:
    if "=" not in value:
        raise argparse.ArgumentTypeError("Overrides must look like KEY=VALUE")
    key, val = value.split("=", 1)
    return key.strip(), val


def _build_overrides(pairs: Iterable[Tuple[str, str]]) -> dict[str, str]:
    return {key: value for key, value in pairs}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a USDC checkout on Base and wait for payment")
    parser.add_argument("--env-file", default=".env", help="Path to the .env file containing ROZO_* settings")
    parser.add_argument("--set", action="append", type=_override, metavar="KEY=VALUE", default=None)
    parser.add_argument("--log-level", default="INFO", help="Python logging level (default: INFO)")
    parser.add_argument("--to-address", required=True, help="Address that receives the USDC")
    parser.add_argument("--amount", default="1", help="USDC amount (default: 1)")
    parser.add_argument("--app-id", help="Override ROZO_APP_ID")
    return parser.parse_args()


async def run(args: argparse.Namespace) -> int:
    try:
        config = load_checkout_config(
            env_file=args.env_file,
            overrides=_build_overrides(args.set or ()),
            app_id=args.app_id,
        )
    except ConfigError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    async with create_checkout(config=config) as checkout:
        checkout.on(
            MilestoneType.PAYMENT_COMPLETED,
            lambda milestone: logging.info("Paid! destination tx %s", milestone.tx_hash),
        )
        try:
            await checkout.create_preview_order(
                PayParams(
                    app_id=config.app_id,
                    to_chain=8453,
                    to_token="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
                    to_address=args.to_address,
                    to_units=args.amount,
                )
            )
            state = await checkout.hydrate_order()
            logging.info("Send %s USDC on Base to %s", args.amount, state.order.intent_addr)
            await checkout.wait_for(StateType.PAYMENT_COMPLETED, StateType.PAYMENT_BOUNCED)
        except PaymentFailedError as exc:
            logging.error("Checkout failed: %s", exc)
            return 1
    return 0


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
