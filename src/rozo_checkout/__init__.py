"""
Public facade for the rozo checkout package.

The module re-exports the pieces integrators need so they can
``from rozo_checkout import ...`` without navigating the package.
"""

from .api import Checkout, create_checkout
from .core import (
    ApiError,
    AsyncOrderApi,
    CheckoutConfig,
    CheckoutParameters,
    ConfigError,
    EventRejectedError,
    IntentStatus,
    MilestoneType,
    NullPushClient,
    Order,
    OrderApiClient,
    PayParams,
    PaymentFailedError,
    PaymentMilestone,
    PaymentStatus,
    StateType,
    build_environment,
    load_checkout_config,
    load_env_file,
)

__all__ = (
    "ApiError",
    "AsyncOrderApi",
    "Checkout",
    "CheckoutConfig",
    "CheckoutParameters",
    "ConfigError",
    "EventRejectedError",
    "IntentStatus",
    "MilestoneType",
    "NullPushClient",
    "Order",
    "OrderApiClient",
    "PayParams",
    "PaymentFailedError",
    "PaymentMilestone",
    "PaymentStatus",
    "StateType",
    "build_environment",
    "create_checkout",
    "load_checkout_config",
    "load_env_file",
)
