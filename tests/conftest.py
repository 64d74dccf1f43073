from __future__ import annotations

from collections.abc import Callable

import pytest

from turniectl.core.device_store import MemoryDeviceStore
from turniectl.core.errors import TransportSendError
from turniectl.core.model import BondedDevice, Characteristic, DeviceProfile, PeripheralRef
from turniectl.transports.base import (
    AdapterStateChanged,
    AdvertisementSeen,
    CharacteristicsDiscovered,
    EventSink,
    LinkConnected,
    ServicesDiscovered,
    TransportEvent,
    ValueUpdated,
)

SERVICE_UUID = "12345678-1234-1234-1234-1234567890ab"
WRITE_UUID = "abcd1234-5678-90ab-cdef-1234567890ab"
NOTIFY_UUID = "abcd1234-5678-90ab-cdef-1234567890ac"
DEVICE_ID = "6F1C2A4E-0D5B-4B8A-9E2F-3C7D1A0B9E11"
DEVICE_NAME = "turnie-01"


def make_profile(**overrides) -> DeviceProfile:
    values = dict(
        id="turnie",
        name="turnie",
        service_uuid=SERVICE_UUID,
        write_char_uuid=WRITE_UUID,
        notify_char_uuid=NOTIFY_UUID,
    )
    values.update(overrides)
    return DeviceProfile(**values)


def channels(identifier: str = DEVICE_ID) -> tuple[Characteristic, Characteristic]:
    return (
        Characteristic(peripheral=identifier, uuid=WRITE_UUID, handle=11, properties=("write",)),
        Characteristic(peripheral=identifier, uuid=NOTIFY_UUID, handle=13, properties=("notify",)),
    )


class FakeTransport:
    """Records requests. With ``auto_respond`` it also plays a healthy peripheral."""

    def __init__(
        self,
        *,
        known: dict[str, PeripheralRef] | None = None,
        auto_respond: bool = False,
        advertisements: tuple[PeripheralRef, ...] = (),
        reply: bytes = b"",
    ) -> None:
        self.calls: list[tuple] = []
        self.writes: list[tuple[Characteristic, bytes, bool]] = []
        self.known = dict(known or {})
        self.auto_respond = auto_respond
        self.advertisements = advertisements
        self.reply = reply
        self.fail_writes_after: int | None = None
        self.closed = False
        self._sink: EventSink | None = None

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    def emit(self, event: TransportEvent) -> None:
        assert self._sink is not None
        self._sink(event)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def start(self) -> None:
        self.calls.append(("start",))
        if self.auto_respond:
            self.emit(AdapterStateChanged(powered_on=True))

    async def close(self) -> None:
        self.closed = True

    def resolve(self, identifier: str) -> PeripheralRef | None:
        self.calls.append(("resolve", identifier))
        return self.known.get(identifier)

    def start_scan(self, service_filter: str) -> None:
        self.calls.append(("start_scan", service_filter))
        if self.auto_respond:
            for ref in self.advertisements:
                self.emit(AdvertisementSeen(ref))

    def stop_scan(self) -> None:
        self.calls.append(("stop_scan",))

    def connect(self, identifier: str) -> None:
        self.calls.append(("connect", identifier))
        if self.auto_respond:
            self.emit(LinkConnected(identifier))

    def disconnect(self, identifier: str) -> None:
        self.calls.append(("disconnect", identifier))

    def discover_services(self, identifier: str) -> None:
        self.calls.append(("discover_services", identifier))
        if self.auto_respond:
            self.emit(ServicesDiscovered(identifier, (SERVICE_UUID,)))

    def discover_characteristics(self, identifier: str, service_id: str) -> None:
        self.calls.append(("discover_characteristics", identifier, service_id))
        if self.auto_respond:
            self.emit(CharacteristicsDiscovered(identifier, service_id, channels(identifier)))

    async def write(self, channel: Characteristic, data: bytes, *, with_response: bool = True) -> None:
        if self.fail_writes_after is not None and len(self.writes) >= self.fail_writes_after:
            raise TransportSendError("link dropped")
        self.writes.append((channel, data, with_response))
        if self.auto_respond and self.reply and data == b"GET_DATA":
            _, notify = channels(channel.peripheral)
            for line in self.reply.split(b"\n"):
                self.emit(ValueUpdated(notify, line))

    def set_notify(self, channel: Characteristic, enabled: bool) -> None:
        self.calls.append(("set_notify", channel.uuid, enabled))


class _Timer:
    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Simulated monotonic clock that also acts as the controller's scheduler."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.timers: list[_Timer] = []

    def __call__(self) -> float:
        return self.now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        timer = _Timer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    def pending(self) -> list[_Timer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float) -> None:
        self.now += seconds
        for timer in sorted(self.pending(), key=lambda t: t.when):
            if timer.when <= self.now:
                timer.cancelled = True
                timer.callback()


@pytest.fixture
def profile() -> DeviceProfile:
    return make_profile()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bonded() -> BondedDevice:
    return BondedDevice(identifier=DEVICE_ID, display_name=DEVICE_NAME)


@pytest.fixture
def bonded_store(bonded: BondedDevice) -> MemoryDeviceStore:
    return MemoryDeviceStore(bonded)
