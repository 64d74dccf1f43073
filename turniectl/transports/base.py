"""Transport interfaces and the events a transport reports back."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, Union

from turniectl.core.model import Characteristic, PeripheralRef


@dataclass(frozen=True)
class AdapterStateChanged:
    powered_on: bool
    reason: str | None = None


@dataclass(frozen=True)
class AdvertisementSeen:
    peripheral: PeripheralRef


@dataclass(frozen=True)
class LinkConnected:
    identifier: str


@dataclass(frozen=True)
class ServicesDiscovered:
    identifier: str
    services: tuple[str, ...]
    error: Exception | None = None


@dataclass(frozen=True)
class CharacteristicsDiscovered:
    identifier: str
    service_id: str
    characteristics: tuple[Characteristic, ...]
    error: Exception | None = None


@dataclass(frozen=True)
class ValueUpdated:
    channel: Characteristic
    data: bytes
    error: Exception | None = None


@dataclass(frozen=True)
class ConnectFailed:
    identifier: str
    error: Exception | None = None


@dataclass(frozen=True)
class LinkDisconnected:
    identifier: str
    error: Exception | None = None


TransportEvent = Union[
    AdapterStateChanged,
    AdvertisementSeen,
    LinkConnected,
    ServicesDiscovered,
    CharacteristicsDiscovered,
    ValueUpdated,
    ConnectFailed,
    LinkDisconnected,
]

EventSink = Callable[[TransportEvent], None]


class TransportAdapter(Protocol):
    """Request side of a BLE stack.

    Every method except ``write`` and ``close`` is a fire-and-forget request;
    outcomes arrive later as events on the bound sink, in the order the stack
    produced them.
    """

    def bind(self, sink: EventSink) -> None:
        ...

    def start(self) -> None:
        """Begin reporting adapter state."""

    async def close(self) -> None:
        ...

    def resolve(self, identifier: str) -> PeripheralRef | None:
        """Return a peripheral the stack can connect to without scanning."""

    def start_scan(self, service_filter: str) -> None:
        ...

    def stop_scan(self) -> None:
        ...

    def connect(self, identifier: str) -> None:
        ...

    def disconnect(self, identifier: str) -> None:
        ...

    def discover_services(self, identifier: str) -> None:
        ...

    def discover_characteristics(self, identifier: str, service_id: str) -> None:
        ...

    async def write(self, channel: Characteristic, data: bytes, *, with_response: bool = True) -> None:
        ...

    def set_notify(self, channel: Characteristic, enabled: bool) -> None:
        ...
