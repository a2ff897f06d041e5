"""
Optional real-time payment status channel.

Any client exposing ``subscribe(channel_name)`` and returning a channel with
``bind``/``unbind``/``unsubscribe`` can be plugged in (a Pusher client, for
instance). :class:`NullPushClient` stands in when none is configured, in which
case status updates come from polling alone.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from .orders import PaymentStatus

__all__ = [
    "NullPushClient",
    "PushChannel",
    "PushClient",
    "PushStatusUpdate",
    "PushStatusWatcher",
    "STATUS_UPDATE_EVENT",
    "channel_name",
]

STATUS_UPDATE_EVENT = "status-update"


class PushChannel(Protocol):
    def bind(self, event: str, callback: Callable[[Any], None]) -> None: ...

    def unbind(self, event: str, callback: Optional[Callable[[Any], None]] = None) -> None: ...

    def unsubscribe(self) -> None: ...


class PushClient(Protocol):
    def subscribe(self, channel_name: str) -> PushChannel: ...


class _NullChannel:
    def bind(self, event: str, callback: Callable[[Any], None]) -> None:
        pass

    def unbind(self, event: str, callback: Optional[Callable[[Any], None]] = None) -> None:
        pass

    def unsubscribe(self) -> None:
        pass


class NullPushClient:
    """Push client used when no real-time channel is available."""

    def subscribe(self, channel_name: str) -> PushChannel:
        return _NullChannel()


def channel_name(payment_id: str) -> str:
    return f"payments-{payment_id}"


@dataclass(frozen=True)
class PushStatusUpdate:
    payment_id: str
    status: str
    source_txhash: Optional[str] = None
    destination_txhash: Optional[str] = None

    @property
    def is_payout_completed(self) -> bool:
        return self.status == PaymentStatus.PAYOUT_COMPLETED.value

    @classmethod
    def from_message(cls, data: Any) -> Optional["PushStatusUpdate"]:
        """Parse a channel message; returns ``None`` for malformed payloads."""
        if not isinstance(data, Mapping):
            return None
        payment_id = data.get("payment_id")
        status = data.get("status")
        if not payment_id or not status:
            return None
        return cls(
            payment_id=str(payment_id),
            status=str(status),
            source_txhash=data.get("source_txhash") or None,
            destination_txhash=data.get("destination_txhash") or None,
        )


class PushStatusWatcher:
    """
    Listens to one payment's status channel until stopped.

    If nothing arrives within ``grace_seconds`` of subscribing, the watcher
    unsubscribes on its own and polling carries on alone.
    """

    def __init__(
        self,
        client: PushClient,
        payment_id: str,
        on_update: Callable[[PushStatusUpdate], None],
        *,
        grace_seconds: float,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.payment_id = payment_id
        self._client = client
        self._on_update = on_update
        self._grace_seconds = grace_seconds
        self._log = logger or logging.getLogger(__name__)
        self._channel: Optional[PushChannel] = None
        self._grace_timer: Optional[asyncio.TimerHandle] = None
        self._received = False
        self.active = False

    def start(self) -> bool:
        """Subscribe to the channel. Returns ``False`` if the client failed."""
        name = channel_name(self.payment_id)
        self.active = True
        try:
            channel = self._client.subscribe(name)
            channel.bind(STATUS_UPDATE_EVENT, self._handle)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("[PUSH] could not subscribe to %s: %s", name, exc)
            self.active = False
            return False

        self._channel = channel
        if self._grace_seconds > 0:
            loop = asyncio.get_running_loop()
            self._grace_timer = loop.call_later(self._grace_seconds, self._grace_expired)
        self._log.info("[PUSH] listening for status updates on %s", name)
        return True

    def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None

        channel, self._channel = self._channel, None
        if channel is None:
            return
        try:
            channel.unbind(STATUS_UPDATE_EVENT, self._handle)
            channel.unsubscribe()
        except Exception as exc:  # noqa: BLE001
            self._log.warning("[PUSH] error during channel cleanup: %s", exc)
        else:
            self._log.info("[PUSH] unsubscribed from %s", channel_name(self.payment_id))

    def _grace_expired(self) -> None:
        self._grace_timer = None
        if self.active and not self._received:
            self._log.info(
                "[PUSH] no data on %s after %ss; relying on polling",
                channel_name(self.payment_id),
                self._grace_seconds,
            )
            self.stop()

    def _handle(self, data: Any) -> None:
        if not self.active:
            return
        update = PushStatusUpdate.from_message(data)
        if update is None:
            self._log.warning("[PUSH] invalid status update payload: %r", data)
            return
        self._received = True
        self._log.debug("[PUSH] status update %s for %s", update.status, update.payment_id)
        self._on_update(update)
