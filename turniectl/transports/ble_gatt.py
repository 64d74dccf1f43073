"""BLE GATT transport implementation backed by bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from turniectl.core.errors import TransportConnectError, TransportError, TransportSendError, TransportTimeoutError
from turniectl.core.model import Characteristic, PeripheralRef
from turniectl.transports.base import (
    AdapterStateChanged,
    AdvertisementSeen,
    CharacteristicsDiscovered,
    ConnectFailed,
    EventSink,
    LinkConnected,
    LinkDisconnected,
    ServicesDiscovered,
    TransportEvent,
    ValueUpdated,
)

LOGGER = logging.getLogger(__name__)


class BleakTransport:
    """Adapts bleak's coroutine API to fire-and-forget requests plus events.

    At start a short probe scan checks that an adapter is powered and fills
    the device cache that ``resolve`` answers from.
    """

    def __init__(
        self,
        *,
        connect_timeout_s: float = 10.0,
        probe_s: float = 1.0,
        scanner_factory: Callable[..., Any] = BleakScanner,
        client_factory: Callable[..., Any] = BleakClient,
    ) -> None:
        self.connect_timeout_s = connect_timeout_s
        self.probe_s = probe_s
        self._scanner_factory = scanner_factory
        self._client_factory = client_factory
        self._sink: EventSink | None = None
        self._devices: dict[str, Any] = {}
        self._seen: dict[str, PeripheralRef] = {}
        self._clients: dict[str, Any] = {}
        self._connecting: dict[str, asyncio.Task[None]] = {}
        self._requested_disconnect: set[str] = set()
        self._scanner: Any = None
        self._scanning = False
        self._scan_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    def _emit(self, event: TransportEvent) -> None:
        if self._sink is None:
            LOGGER.debug("Dropping %r: no sink bound", event)
            return
        self._sink(event)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start(self) -> None:
        self._spawn(self._probe())

    async def _probe(self) -> None:
        async with self._scan_lock:
            scanner = self._scanner_factory(detection_callback=self._on_detection)
            try:
                await scanner.start()
                await asyncio.sleep(self.probe_s)
                await scanner.stop()
            except (BleakError, OSError) as exc:
                LOGGER.warning("Bluetooth adapter unavailable: %s", exc)
                self._emit(AdapterStateChanged(powered_on=False, reason=str(exc)))
                return
        self._emit(AdapterStateChanged(powered_on=True))

    async def close(self) -> None:
        await self._stop_scan()
        for task in list(self._connecting.values()):
            task.cancel()
        for identifier in list(self._clients):
            self.disconnect(identifier)
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    def resolve(self, identifier: str) -> PeripheralRef | None:
        return self._seen.get(identifier)

    def _on_detection(self, device: Any, advertisement_data: Any) -> None:
        ref = PeripheralRef(
            identifier=device.address,
            name=device.name or getattr(advertisement_data, "local_name", None),
            rssi=getattr(advertisement_data, "rssi", None),
        )
        self._devices[ref.identifier] = device
        self._seen[ref.identifier] = ref
        if self._scanning:
            self._emit(AdvertisementSeen(ref))

    def start_scan(self, service_filter: str) -> None:
        self._scanning = True
        self._spawn(self._start_scan(service_filter))

    async def _start_scan(self, service_filter: str) -> None:
        async with self._scan_lock:
            if self._scanner is not None or not self._scanning:
                return
            scanner = self._scanner_factory(
                detection_callback=self._on_detection,
                service_uuids=[service_filter],
            )
            try:
                await scanner.start()
            except (BleakError, OSError) as exc:
                self._scanning = False
                LOGGER.error("BLE scan failed to start: %s", exc)
                self._emit(AdapterStateChanged(powered_on=False, reason=str(exc)))
                return
            self._scanner = scanner
            LOGGER.debug("Scanning for service %s", service_filter)

    def stop_scan(self) -> None:
        self._scanning = False
        self._spawn(self._stop_scan())

    async def _stop_scan(self) -> None:
        async with self._scan_lock:
            self._scanning = False
            scanner, self._scanner = self._scanner, None
            if scanner is None:
                return
            try:
                await scanner.stop()
            except (BleakError, OSError) as exc:
                LOGGER.warning("BLE scan failed to stop cleanly: %s", exc)

    def connect(self, identifier: str) -> None:
        if identifier in self._connecting or identifier in self._clients:
            LOGGER.debug("Connect to %s already in progress", identifier)
            return
        self._requested_disconnect.discard(identifier)
        self._connecting[identifier] = self._spawn(self._connect(identifier))

    async def _connect(self, identifier: str) -> None:
        client = self._client_factory(
            self._devices.get(identifier, identifier),
            disconnected_callback=lambda _client: self._on_client_disconnected(identifier),
            timeout=self.connect_timeout_s,
        )
        try:
            await client.connect()
        except asyncio.CancelledError:
            await self._safe_disconnect(client)
            raise
        except asyncio.TimeoutError:
            error = TransportTimeoutError(f"BLE connect to {identifier} timed out after {self.connect_timeout_s:g}s")
            self._emit(ConnectFailed(identifier, error))
            return
        except (BleakError, OSError) as exc:
            self._emit(ConnectFailed(identifier, TransportConnectError(f"BLE connect failed for {identifier}: {exc}")))
            return
        finally:
            self._connecting.pop(identifier, None)

        self._clients[identifier] = client
        self._emit(LinkConnected(identifier))

    def _on_client_disconnected(self, identifier: str) -> None:
        if self._clients.pop(identifier, None) is None:
            return
        if identifier in self._requested_disconnect:
            self._requested_disconnect.discard(identifier)
            self._emit(LinkDisconnected(identifier))
        else:
            LOGGER.warning("Device %s disconnected unexpectedly", identifier)
            self._emit(LinkDisconnected(identifier, TransportConnectError(f"Link to {identifier} lost")))

    def disconnect(self, identifier: str) -> None:
        task = self._connecting.pop(identifier, None)
        if task is not None:
            task.cancel()
        client = self._clients.get(identifier)
        if client is not None:
            self._requested_disconnect.add(identifier)
            self._spawn(self._safe_disconnect(client))

    async def _safe_disconnect(self, client: Any) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as exc:
            LOGGER.warning("BLE disconnect failed: %s", exc)

    def discover_services(self, identifier: str) -> None:
        client = self._clients.get(identifier)
        if client is None:
            self._emit(ServicesDiscovered(identifier, (), TransportConnectError(f"{identifier} is not connected")))
            return
        services = tuple(service.uuid.lower() for service in client.services)
        self._emit(ServicesDiscovered(identifier, services))

    def discover_characteristics(self, identifier: str, service_id: str) -> None:
        client = self._clients.get(identifier)
        if client is None:
            self._emit(
                CharacteristicsDiscovered(
                    identifier, service_id, (), TransportConnectError(f"{identifier} is not connected")
                )
            )
            return
        service = client.services.get_service(service_id)
        if service is None:
            self._emit(
                CharacteristicsDiscovered(
                    identifier, service_id, (), TransportConnectError(f"Service {service_id} not found on {identifier}")
                )
            )
            return
        characteristics = tuple(
            Characteristic(
                peripheral=identifier,
                uuid=char.uuid.lower(),
                handle=char.handle,
                properties=tuple(char.properties),
            )
            for char in service.characteristics
        )
        self._emit(CharacteristicsDiscovered(identifier, service_id, characteristics))

    def set_notify(self, channel: Characteristic, enabled: bool) -> None:
        self._spawn(self._set_notify(channel, enabled))

    async def _set_notify(self, channel: Characteristic, enabled: bool) -> None:
        client = self._clients.get(channel.peripheral)
        if client is None:
            return

        def _notify_handler(_: Any, data: bytearray) -> None:
            self._emit(ValueUpdated(channel, bytes(data)))

        try:
            if enabled:
                await client.start_notify(channel.uuid, _notify_handler)
                LOGGER.debug("Subscribed to %s", channel.uuid)
            else:
                await client.stop_notify(channel.uuid)
        except (BleakError, OSError) as exc:
            self._emit(ValueUpdated(channel, b"", TransportError(f"Notify setup failed on {channel.uuid}: {exc}")))

    async def write(self, channel: Characteristic, data: bytes, *, with_response: bool = True) -> None:
        client = self._clients.get(channel.peripheral)
        if client is None or not client.is_connected:
            raise TransportSendError(f"{channel.peripheral} is not connected")
        try:
            await client.write_gatt_char(channel.uuid, data, response=with_response)
        except (BleakError, OSError) as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc
