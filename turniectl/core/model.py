"""Core data models used across the controller, session, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

NO_DEVICE_NAME = "No Device"
UNKNOWN_DEVICE_NAME = "Unknown"


@dataclass(frozen=True)
class TransferSpec:
    chunk_size: int = 100
    chunk_interval_s: float = 0.03
    write_with_response: bool = True


@dataclass(frozen=True)
class ImageSpec:
    width: int = 8
    height: int = 8

    @property
    def byte_length(self) -> int:
        return 3 * self.width * self.height


@dataclass(frozen=True)
class DeviceProfile:
    id: str
    name: str
    service_uuid: str
    write_char_uuid: str
    notify_char_uuid: str
    auto_connect_timeout_s: float = 10.0
    transfer: TransferSpec = field(default_factory=TransferSpec)
    image: ImageSpec = field(default_factory=ImageSpec)
    text_slot: str = "p001"
    image_slot: str = "p002"
    request_command: str = "GET_DATA"


@dataclass(frozen=True)
class PeripheralRef:
    identifier: str
    name: str | None = None
    rssi: int | None = None

    @property
    def display_name(self) -> str:
        return self.name or UNKNOWN_DEVICE_NAME


@dataclass(frozen=True)
class BondedDevice:
    identifier: str
    display_name: str


@dataclass(frozen=True)
class Characteristic:
    peripheral: str
    uuid: str
    handle: int | None = None
    properties: tuple[str, ...] = ()


@dataclass(frozen=True)
class ActiveSession:
    peripheral: PeripheralRef
    write_channel: Characteristic
    notify_channel: Characteristic


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Scanning:
    pass


@dataclass(frozen=True)
class Connecting:
    target: PeripheralRef


@dataclass(frozen=True)
class AutoConnecting:
    target: BondedDevice
    deadline: float


@dataclass(frozen=True)
class Connected:
    session: ActiveSession


@dataclass(frozen=True)
class Disconnected:
    last_known: BondedDevice | None


ConnectionState = Union[Idle, Scanning, Connecting, AutoConnecting, Connected, Disconnected]


class ErrorKind(str, Enum):
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    DISCOVERY_TIMEOUT = "discovery_timeout"
    LINK_FAILURE = "link_failure"
    LINK_LOST = "link_lost"


@dataclass(frozen=True)
class LastError:
    kind: ErrorKind
    message: str


class PayloadKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class TextPayload:
    text: str
    slot: str = "p001"

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.TEXT


@dataclass(frozen=True)
class ImagePayload:
    """Row-major RGB pixels, three bytes per pixel."""

    pixels: bytes
    slot: str = "p002"

    @property
    def kind(self) -> PayloadKind:
        return PayloadKind.IMAGE


OutboundPayload = Union[TextPayload, ImagePayload]


@dataclass(frozen=True)
class Chunk:
    index: int
    data: bytes


@dataclass(frozen=True)
class SessionSnapshot:
    state: ConnectionState
    device_name: str
    discovered: tuple[PeripheralRef, ...]
    has_previous_device: bool
    last_received_text: str
    bluetooth_ready: bool
    last_error: LastError | None

    @property
    def connected(self) -> bool:
        return isinstance(self.state, Connected)

    @property
    def scanning(self) -> bool:
        return isinstance(self.state, Scanning)

    @property
    def auto_connecting(self) -> bool:
        return isinstance(self.state, AutoConnecting)
