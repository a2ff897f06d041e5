"""
Core primitives that implement the checkout payment lifecycle.
"""

from .client import ApiError, AsyncOrderApi, OrderApi, OrderApiClient
from .config import (
    CheckoutConfig,
    CheckoutParameters,
    ConfigError,
    PollingSettings,
    load_checkout_config,
)
from .effects import (
    EffectsCoordinator,
    PollerAlreadyRunning,
    PollerRegistry,
    PollerType,
    attach_payment_effects,
)
from .environment import CheckoutEnvironment, build_environment, load_env_file
from .events import (
    MilestoneType,
    PaymentEventNotifier,
    PaymentMilestone,
    attach_milestone_notifier,
)
from .fsm import PaymentState, StateType, apply_event
from .orders import (
    ExternalPayment,
    IntentStatus,
    Order,
    OrderMismatchError,
    PayParams,
    PaymentStatus,
    Token,
    TokenAmount,
)
from .polling import PollHandle, start_polling
from .push import NullPushClient, PushStatusUpdate, PushStatusWatcher
from .store import (
    EventRejectedError,
    PaymentFailedError,
    PaymentStore,
    Transition,
    dispatch_and_wait,
    wait_for_payment_state,
)

__all__ = [
    "ApiError",
    "AsyncOrderApi",
    "CheckoutConfig",
    "CheckoutEnvironment",
    "CheckoutParameters",
    "ConfigError",
    "EffectsCoordinator",
    "EventRejectedError",
    "ExternalPayment",
    "IntentStatus",
    "MilestoneType",
    "NullPushClient",
    "Order",
    "OrderApi",
    "OrderApiClient",
    "OrderMismatchError",
    "PayParams",
    "PaymentEventNotifier",
    "PaymentFailedError",
    "PaymentMilestone",
    "PaymentState",
    "PaymentStatus",
    "PaymentStore",
    "PollHandle",
    "PollerAlreadyRunning",
    "PollerRegistry",
    "PollerType",
    "PollingSettings",
    "PushStatusUpdate",
    "PushStatusWatcher",
    "StateType",
    "Token",
    "TokenAmount",
    "Transition",
    "apply_event",
    "attach_milestone_notifier",
    "attach_payment_effects",
    "build_environment",
    "dispatch_and_wait",
    "load_checkout_config",
    "load_env_file",
    "start_polling",
    "wait_for_payment_state",
]
