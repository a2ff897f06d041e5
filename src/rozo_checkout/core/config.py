"""
Configuration objects and helpers for checkout sessions.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

from .environment import build_environment

__all__ = [
    "DEFAULT_API_URL",
    "CheckoutConfig",
    "CheckoutParameters",
    "ConfigError",
    "PollingSettings",
    "load_checkout_config",
]

DEFAULT_API_URL = "https://intentapiv4.rozo.ai/functions/v1"

_PARAMETER_TO_ENV_KEY = {
    "api_url": "ROZO_API_URL",
    "api_token": "ROZO_API_TOKEN",
    "app_id": "ROZO_APP_ID",
    "request_timeout_seconds": "ROZO_REQUEST_TIMEOUT_SECONDS",
    "find_payment_interval_seconds": "ROZO_FIND_PAYMENT_INTERVAL_SECONDS",
    "refresh_order_interval_seconds": "ROZO_REFRESH_ORDER_INTERVAL_SECONDS",
    "push_grace_seconds": "ROZO_PUSH_GRACE_SECONDS",
}


class ConfigError(Exception):
    """Raised when the supplied configuration is invalid."""


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class CheckoutParameters:
    """
    Explicit parameter bundle for :func:`load_checkout_config`.

    Every field maps onto one ``ROZO_*`` key and wins over the environment.
    """

    api_url: Optional[str] = None
    api_token: Optional[str] = None
    app_id: Optional[str] = None
    request_timeout_seconds: Optional[float | str] = None
    find_payment_interval_seconds: Optional[float | str] = None
    refresh_order_interval_seconds: Optional[float | str] = None
    push_grace_seconds: Optional[float | str] = None

    def as_overrides(self) -> Dict[str, str]:
        overrides: Dict[str, str] = {}
        for field_name, env_key in _PARAMETER_TO_ENV_KEY.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            overrides[env_key] = _stringify(value)
        return overrides


def _collect_parameter_overrides(
    parameters: Optional[CheckoutParameters],
    explicit: Mapping[str, Any],
) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    if parameters is not None:
        overrides.update(parameters.as_overrides())

    for key, value in explicit.items():
        if value is None:
            continue
        try:
            env_key = _PARAMETER_TO_ENV_KEY[key]
        except KeyError as exc:
            raise TypeError(f"Unknown checkout parameter '{key}'") from exc
        overrides[env_key] = _stringify(value)
    return overrides


def _seconds(values: Mapping[str, str], key: str, default: str, *, allow_zero: bool = False) -> float:
    raw = values.get(key) or default
    try:
        seconds = Decimal(raw.strip())
    except InvalidOperation as exc:
        raise ConfigError(f"{key} must be a number of seconds, got '{raw}'") from exc
    if seconds < 0 or (seconds == 0 and not allow_zero):
        raise ConfigError(f"{key} must be greater than zero")
    return float(seconds)


@dataclass(frozen=True)
class PollingSettings:
    """Timings used by the effects coordinator."""

    find_payment_interval_seconds: float = 1.0
    refresh_order_interval_seconds: float = 0.3
    push_grace_seconds: float = 30.0


@dataclass(frozen=True)
class CheckoutConfig:
    app_id: str
    api_url: str = DEFAULT_API_URL
    api_token: Optional[str] = None
    request_timeout_seconds: float = 30.0
    find_payment_interval_seconds: float = 1.0
    refresh_order_interval_seconds: float = 0.3
    push_grace_seconds: float = 30.0

    @property
    def polling(self) -> PollingSettings:
        return PollingSettings(
            find_payment_interval_seconds=self.find_payment_interval_seconds,
            refresh_order_interval_seconds=self.refresh_order_interval_seconds,
            push_grace_seconds=self.push_grace_seconds,
        )

    def endpoint(self, path: str) -> str:
        return f"{self.api_url}/{path.lstrip('/')}"

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> "CheckoutConfig":
        app_id = (values.get("ROZO_APP_ID") or "").strip()
        if not app_id:
            raise ConfigError("ROZO_APP_ID must be provided")

        api_url = (values.get("ROZO_API_URL") or DEFAULT_API_URL).strip().rstrip("/")
        if not api_url.startswith(("http://", "https://")):
            raise ConfigError(f"ROZO_API_URL must be an http(s) URL, got '{api_url}'")

        api_token = (values.get("ROZO_API_TOKEN") or "").strip() or None

        return cls(
            app_id=app_id,
            api_url=api_url,
            api_token=api_token,
            request_timeout_seconds=_seconds(values, "ROZO_REQUEST_TIMEOUT_SECONDS", "30"),
            find_payment_interval_seconds=_seconds(
                values, "ROZO_FIND_PAYMENT_INTERVAL_SECONDS", "1"
            ),
            refresh_order_interval_seconds=_seconds(
                values, "ROZO_REFRESH_ORDER_INTERVAL_SECONDS", "0.3"
            ),
            push_grace_seconds=_seconds(
                values, "ROZO_PUSH_GRACE_SECONDS", "30", allow_zero=True
            ),
        )

    @classmethod
    def from_env(
        cls,
        *,
        env_file: Optional[str] = ".env",
        overrides: Optional[Mapping[str, str]] = None,
        base: Optional[Mapping[str, str]] = None,
        parameters: Optional[CheckoutParameters] = None,
        api_url: Optional[str] = None,
        api_token: Optional[str] = None,
        app_id: Optional[str] = None,
        request_timeout_seconds: Optional[float | str] = None,
        find_payment_interval_seconds: Optional[float | str] = None,
        refresh_order_interval_seconds: Optional[float | str] = None,
        push_grace_seconds: Optional[float | str] = None,
    ) -> "CheckoutConfig":
        parameter_overrides = _collect_parameter_overrides(
            parameters,
            {
                "api_url": api_url,
                "api_token": api_token,
                "app_id": app_id,
                "request_timeout_seconds": request_timeout_seconds,
                "find_payment_interval_seconds": find_payment_interval_seconds,
                "refresh_order_interval_seconds": refresh_order_interval_seconds,
                "push_grace_seconds": push_grace_seconds,
            },
        )
        merged_overrides = dict(overrides or {})
        merged_overrides.update(parameter_overrides)

        environment = build_environment(
            env_file=env_file,
            base=base,
            overrides=merged_overrides,
        )
        return cls.from_mapping(environment.variables)


def load_checkout_config(
    *,
    env_file: Optional[str] = ".env",
    overrides: Optional[Mapping[str, str]] = None,
    base: Optional[Mapping[str, str]] = None,
    parameters: Optional[CheckoutParameters] = None,
    **kwargs: Any,
) -> CheckoutConfig:
    """
    Convenience wrapper around :meth:`CheckoutConfig.from_env`.

    Keyword arguments are the :class:`CheckoutParameters` field names.
    """
    return CheckoutConfig.from_env(
        env_file=env_file,
        overrides=overrides,
        base=base,
        parameters=parameters,
        **kwargs,
    )
