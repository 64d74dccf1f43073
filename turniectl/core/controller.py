"""Connection lifecycle state machine.

All transport events and user intents are posted to one queue and handled
one at a time by a single consumer task. Handlers never await, so every
snapshot handed to listeners is fully formed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from turniectl.core.device_store import DeviceStore
from turniectl.core.errors import DeviceStoreError
from turniectl.core.model import (
    NO_DEVICE_NAME,
    UNKNOWN_DEVICE_NAME,
    ActiveSession,
    AutoConnecting,
    BondedDevice,
    Connected,
    Connecting,
    ConnectionState,
    DeviceProfile,
    Disconnected,
    ErrorKind,
    Idle,
    LastError,
    PeripheralRef,
    Scanning,
    SessionSnapshot,
)
from turniectl.transports.base import (
    AdapterStateChanged,
    AdvertisementSeen,
    CharacteristicsDiscovered,
    ConnectFailed,
    LinkConnected,
    LinkDisconnected,
    ServicesDiscovered,
    TransportAdapter,
    ValueUpdated,
)

LOGGER = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]
SnapshotListener = Callable[[SessionSnapshot], None]


@dataclass(frozen=True)
class ScanRequested:
    pass


@dataclass(frozen=True)
class ScanStopRequested:
    pass


@dataclass(frozen=True)
class ConnectRequested:
    target: PeripheralRef


@dataclass(frozen=True)
class ReconnectRequested:
    pass


@dataclass(frozen=True)
class DisconnectRequested:
    pass


@dataclass(frozen=True)
class ReceivedTextCleared:
    pass


@dataclass(frozen=True)
class DeadlineElapsed:
    generation: int


class ConnectionController:
    def __init__(
        self,
        transport: TransportAdapter,
        store: DeviceStore,
        profile: DeviceProfile,
        *,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._transport = transport
        self._store = store
        self._profile = profile
        self._clock = clock
        self._scheduler = scheduler

        self._state: ConnectionState = Idle()
        self._bonded = store.load()
        self._device_name = self._bonded.display_name if self._bonded else NO_DEVICE_NAME
        self._discovered: list[PeripheralRef] = []
        self._received_text = ""
        self._last_error: LastError | None = None
        self._powered = False
        self._auto_connect = True
        self._scan_outstanding = False
        # Peripheral we asked the transport to connect to and have not released.
        self._link: str | None = None
        self._auto_target: PeripheralRef | None = None
        self._timer: TimerHandle | None = None
        self._timer_generation = 0

        self._listeners: list[SnapshotListener] = []
        self._published: SessionSnapshot | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[Any] | None = None
        self._task: asyncio.Task[None] | None = None

        self._handlers: dict[type, Callable[[Any], None]] = {
            AdapterStateChanged: self._on_adapter_state,
            AdvertisementSeen: self._on_advertisement,
            LinkConnected: self._on_link_connected,
            ServicesDiscovered: self._on_services_discovered,
            CharacteristicsDiscovered: self._on_characteristics_discovered,
            ValueUpdated: self._on_value_updated,
            ConnectFailed: self._on_connect_failed,
            LinkDisconnected: self._on_link_disconnected,
            ScanRequested: self._on_scan_requested,
            ScanStopRequested: self._on_scan_stop_requested,
            ConnectRequested: self._on_connect_requested,
            ReconnectRequested: self._on_reconnect_requested,
            DisconnectRequested: self._on_disconnect_requested,
            ReceivedTextCleared: self._on_received_text_cleared,
            DeadlineElapsed: self._on_deadline,
        }
        transport.bind(self.post)

    # lifecycle

    async def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._task = self._loop.create_task(self._consume(self._queue))
        self._published = self.snapshot()
        self._transport.start()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._cancel_deadline()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        await self._transport.close()

    def post(self, event: Any) -> None:
        """Queue ``event`` for the controller; safe to call from any thread."""
        if self._loop is None or self._queue is None:
            raise RuntimeError("Controller has not been started")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._queue.put_nowait(event)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def settle(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self, queue: asyncio.Queue[Any]) -> None:
        while True:
            event = await queue.get()
            try:
                self.handle(event)
            except Exception:
                LOGGER.exception("Failed to handle %r", event)
            finally:
                queue.task_done()

    def handle(self, event: Any) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            LOGGER.warning("Ignoring unknown event %r", event)
            return
        handler(event)
        self._publish()

    # read side

    @property
    def state(self) -> ConnectionState:
        return self._state

    def active_session(self) -> ActiveSession | None:
        if isinstance(self._state, Connected):
            return self._state.session
        return None

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self._state,
            device_name=self._device_name,
            discovered=tuple(self._discovered),
            has_previous_device=self._bonded is not None,
            last_received_text=self._received_text,
            bluetooth_ready=self._powered,
            last_error=self._last_error,
        )

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _publish(self) -> None:
        snapshot = self.snapshot()
        if snapshot == self._published:
            return
        self._published = snapshot
        for listener in list(self._listeners):
            listener(snapshot)

    # helpers

    def _arm_deadline(self, timeout_s: float) -> None:
        self._cancel_deadline()
        generation = self._timer_generation

        def _fire() -> None:
            self.post(DeadlineElapsed(generation))

        if self._scheduler is not None:
            self._timer = self._scheduler(timeout_s, _fire)
        elif self._loop is not None:
            self._timer = self._loop.call_later(timeout_s, _fire)
        else:
            raise RuntimeError("Controller has not been started")

    def _cancel_deadline(self) -> None:
        self._timer_generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _stop_scan(self) -> None:
        if self._scan_outstanding:
            self._transport.stop_scan()
            self._scan_outstanding = False
        self._discovered.clear()

    def _cancel_outstanding(self) -> None:
        self._cancel_deadline()
        self._stop_scan()

    def _release_link(self) -> None:
        if self._link is not None:
            self._transport.disconnect(self._link)
            self._link = None
        self._auto_target = None

    def _enter_disconnected(self) -> None:
        self._state = Disconnected(last_known=self._bonded)
        self._device_name = self._bonded.display_name if self._bonded else NO_DEVICE_NAME

    def _resting_state(self) -> None:
        if self._bonded is None:
            self._state = Idle()
        else:
            self._enter_disconnected()

    def _require_power(self, action: str) -> bool:
        if self._powered:
            return True
        LOGGER.warning("Bluetooth is not powered on; cannot %s", action)
        self._last_error = LastError(ErrorKind.TRANSPORT_UNAVAILABLE, "Bluetooth is not powered on")
        return False

    def _negotiating(self, identifier: str) -> Connecting | None:
        state = self._state
        if isinstance(state, Connecting) and state.target.identifier == identifier == self._link:
            return state
        return None

    def _fail_link(self, message: str, *, release: bool = True) -> None:
        LOGGER.warning("Connection failed: %s", message)
        self._cancel_outstanding()
        if release:
            self._release_link()
        else:
            self._link = None
            self._auto_target = None
        self._last_error = LastError(ErrorKind.LINK_FAILURE, message)
        self._enter_disconnected()

    def _begin_auto_connect(self, bonded: BondedDevice) -> None:
        self._cancel_outstanding()
        self._release_link()
        self._auto_connect = True
        self._last_error = None
        timeout_s = self._profile.auto_connect_timeout_s
        self._state = AutoConnecting(target=bonded, deadline=self._clock() + timeout_s)
        self._device_name = bonded.display_name
        self._arm_deadline(timeout_s)
        LOGGER.info("Attempting auto-connect to last device: %s", bonded.display_name)

        ref = self._transport.resolve(bonded.identifier)
        if ref is not None:
            self._connect_auto_target(ref)
        else:
            LOGGER.info("Last device not found, scanning")
            self._transport.start_scan(self._profile.service_uuid)
            self._scan_outstanding = True

    def _connect_auto_target(self, ref: PeripheralRef) -> None:
        self._auto_target = ref
        self._link = ref.identifier
        if ref.name:
            self._device_name = ref.name
        self._transport.connect(ref.identifier)

    def _remember(self, device: BondedDevice) -> None:
        if device == self._bonded:
            return
        self._bonded = device
        try:
            self._store.save(device)
        except DeviceStoreError as exc:
            LOGGER.error("Could not persist bonded device: %s", exc)

    # transport events

    def _on_adapter_state(self, event: AdapterStateChanged) -> None:
        self._powered = event.powered_on
        if not event.powered_on:
            LOGGER.warning("Bluetooth is not available: %s", event.reason or "powered off")
            self._last_error = LastError(
                ErrorKind.TRANSPORT_UNAVAILABLE, event.reason or "Bluetooth is not available"
            )
            if not isinstance(self._state, Idle):
                self._cancel_outstanding()
                self._release_link()
                self._enter_disconnected()
            return

        LOGGER.info("Bluetooth is ready")
        if self._last_error is not None and self._last_error.kind is ErrorKind.TRANSPORT_UNAVAILABLE:
            self._last_error = None
        if self._auto_connect and self._bonded is not None and isinstance(self._state, (Idle, Disconnected)):
            self._begin_auto_connect(self._bonded)

    def _on_advertisement(self, event: AdvertisementSeen) -> None:
        ref = event.peripheral
        state = self._state
        if isinstance(state, AutoConnecting):
            if self._auto_connect and self._link is None and ref.identifier == state.target.identifier:
                LOGGER.info("Found last connected device: %s", ref.name or state.target.display_name)
                self._stop_scan()
                self._connect_auto_target(ref)
            return
        if not isinstance(state, Scanning):
            return
        if any(known.identifier == ref.identifier for known in self._discovered):
            return
        self._discovered.append(ref)
        LOGGER.info("Found device: %s RSSI: %s", ref.display_name, ref.rssi)

    def _on_link_connected(self, event: LinkConnected) -> None:
        if event.identifier != self._link:
            LOGGER.debug("Ignoring stale connect from %s", event.identifier)
            return
        state = self._state
        if isinstance(state, AutoConnecting):
            self._cancel_deadline()
            target = self._auto_target or PeripheralRef(identifier=state.target.identifier)
            if target.name is None:
                target = PeripheralRef(target.identifier, state.target.display_name, target.rssi)
            self._auto_target = None
            self._state = Connecting(target)
        elif not isinstance(state, Connecting):
            LOGGER.debug("Ignoring connect from %s while %s", event.identifier, type(state).__name__)
            return
        LOGGER.info("Connected to %s", self._device_name)
        self._transport.discover_services(event.identifier)

    def _on_services_discovered(self, event: ServicesDiscovered) -> None:
        if self._negotiating(event.identifier) is None:
            return
        if event.error is not None:
            self._fail_link(f"Error discovering services: {event.error}")
            return
        wanted = self._profile.service_uuid.lower()
        if not any(service.lower() == wanted for service in event.services):
            self._fail_link(f"Service {wanted} not found on {event.identifier}")
            return
        self._transport.discover_characteristics(event.identifier, self._profile.service_uuid)

    def _on_characteristics_discovered(self, event: CharacteristicsDiscovered) -> None:
        state = self._negotiating(event.identifier)
        if state is None:
            return
        if event.error is not None:
            self._fail_link(f"Error discovering characteristics: {event.error}")
            return

        write_channel = notify_channel = None
        for characteristic in event.characteristics:
            uuid = characteristic.uuid.lower()
            if uuid == self._profile.write_char_uuid:
                write_channel = characteristic
            elif uuid == self._profile.notify_char_uuid:
                notify_channel = characteristic
        if write_channel is None or notify_channel is None:
            self._fail_link(f"Required characteristics missing on {event.identifier}")
            return

        target = state.target
        if target.name:
            name = target.name
        elif self._bonded is not None and self._bonded.identifier == target.identifier:
            name = self._bonded.display_name
        else:
            name = UNKNOWN_DEVICE_NAME
        self._state = Connected(ActiveSession(target, write_channel, notify_channel))
        self._device_name = name
        self._last_error = None
        self._remember(BondedDevice(identifier=target.identifier, display_name=name))
        self._transport.set_notify(notify_channel, True)
        LOGGER.info("Ready to send to %s", name)

    def _on_value_updated(self, event: ValueUpdated) -> None:
        session = self.active_session()
        if session is None or event.channel != session.notify_channel:
            return
        if event.error is not None:
            LOGGER.warning("Error receiving data: %s", event.error)
            return
        try:
            text = event.data.decode("utf-8")
        except UnicodeDecodeError:
            LOGGER.warning("Dropping non UTF-8 notification (%d bytes)", len(event.data))
            return
        self._received_text += text + "\n"

    def _on_connect_failed(self, event: ConnectFailed) -> None:
        if event.identifier != self._link:
            return
        self._fail_link(str(event.error) if event.error else "connect failed", release=False)

    def _on_link_disconnected(self, event: LinkDisconnected) -> None:
        if event.identifier != self._link:
            LOGGER.debug("Ignoring disconnect from released link %s", event.identifier)
            return
        was_connected = isinstance(self._state, Connected)
        self._link = None
        self._auto_target = None
        self._cancel_outstanding()
        message = str(event.error) if event.error else f"{event.identifier} disconnected"
        kind = ErrorKind.LINK_LOST if was_connected else ErrorKind.LINK_FAILURE
        LOGGER.warning("Disconnected from %s: %s", self._device_name, message)
        self._last_error = LastError(kind, message)
        self._enter_disconnected()

    # intents

    def _on_scan_requested(self, _: ScanRequested) -> None:
        if not self._require_power("scan"):
            return
        if isinstance(self._state, (Connecting, Connected)):
            LOGGER.warning("Ignoring scan request while %s", type(self._state).__name__.lower())
            return
        self._cancel_outstanding()
        self._release_link()
        self._auto_connect = False
        self._last_error = None
        self._state = Scanning()
        self._transport.start_scan(self._profile.service_uuid)
        self._scan_outstanding = True
        LOGGER.info("Started scanning for %s", self._profile.name)

    def _on_scan_stop_requested(self, _: ScanStopRequested) -> None:
        state = self._state
        if isinstance(state, AutoConnecting):
            self._cancel_outstanding()
            self._release_link()
            self._enter_disconnected()
        elif isinstance(state, Scanning):
            self._stop_scan()
            self._resting_state()
        else:
            return
        LOGGER.info("Stopped scanning")

    def _on_connect_requested(self, event: ConnectRequested) -> None:
        if not self._require_power("connect"):
            return
        session = self.active_session()
        if session is not None and session.peripheral.identifier == event.target.identifier:
            LOGGER.debug("Already connected to %s", event.target.identifier)
            return
        self._cancel_outstanding()
        self._release_link()
        self._auto_connect = False
        self._last_error = None
        self._state = Connecting(event.target)
        self._link = event.target.identifier
        self._device_name = event.target.display_name
        self._transport.connect(event.target.identifier)
        LOGGER.info("Connecting to: %s", self._device_name)

    def _on_reconnect_requested(self, _: ReconnectRequested) -> None:
        if self._bonded is None:
            LOGGER.info("No previous device to reconnect")
            return
        if not self._require_power("reconnect"):
            return
        LOGGER.info("Manual reconnect triggered")
        self._begin_auto_connect(self._bonded)

    def _on_disconnect_requested(self, _: DisconnectRequested) -> None:
        if self._link is None or not isinstance(self._state, (Connecting, Connected)):
            LOGGER.debug("Disconnect requested with no active link")
            return
        self._release_link()
        self._last_error = None
        self._enter_disconnected()

    def _on_received_text_cleared(self, _: ReceivedTextCleared) -> None:
        self._received_text = ""

    def _on_deadline(self, event: DeadlineElapsed) -> None:
        if event.generation != self._timer_generation or not isinstance(self._state, AutoConnecting):
            LOGGER.debug("Ignoring stale auto-connect deadline")
            return
        self._timer = None
        LOGGER.warning("Auto-connect timed out")
        self._cancel_outstanding()
        self._release_link()
        self._last_error = LastError(ErrorKind.DISCOVERY_TIMEOUT, "Auto-connect timed out")
        self._enter_disconnected()
