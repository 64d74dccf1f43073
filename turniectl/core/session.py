"""Session facade used by the CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from turniectl.core import encoder
from turniectl.core.controller import (
    ConnectionController,
    ConnectRequested,
    DisconnectRequested,
    ReceivedTextCleared,
    ReconnectRequested,
    ScanRequested,
    ScanStopRequested,
    Scheduler,
)
from turniectl.core.device_store import DeviceStore
from turniectl.core.errors import TransferNotReadyError
from turniectl.core.model import (
    Chunk,
    ConnectionState,
    DeviceProfile,
    ImagePayload,
    LastError,
    OutboundPayload,
    PeripheralRef,
    SessionSnapshot,
    TextPayload,
)
from turniectl.transports.base import TransportAdapter

LOGGER = logging.getLogger(__name__)


class Session:
    """Observable view of one controller plus the intents a UI can issue.

    Intents return once the controller has processed them; transport work
    they start (scans, connects) completes later and shows up in snapshots.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        store: DeviceStore,
        profile: DeviceProfile,
        *,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        load_warnings: tuple[str, ...] = (),
    ) -> None:
        self.profile = profile
        self.load_warnings = load_warnings
        self._transport = transport
        self._sleep = sleep
        # Chunks carry no header, so one frame must finish before the next starts.
        self._send_lock = asyncio.Lock()
        self._controller = ConnectionController(
            transport,
            store,
            profile,
            clock=clock,
            scheduler=scheduler,
        )

    async def start(self) -> None:
        await self._controller.start()

    async def close(self) -> None:
        await self._controller.stop()

    async def __aenter__(self) -> Session:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._controller.snapshot()

    @property
    def state(self) -> ConnectionState:
        return self.snapshot.state

    @property
    def connected(self) -> bool:
        return self.snapshot.connected

    @property
    def scanning(self) -> bool:
        return self.snapshot.scanning

    @property
    def auto_connecting(self) -> bool:
        return self.snapshot.auto_connecting

    @property
    def device_name(self) -> str:
        return self.snapshot.device_name

    @property
    def discovered(self) -> tuple[PeripheralRef, ...]:
        return self.snapshot.discovered

    @property
    def has_previous_device(self) -> bool:
        return self.snapshot.has_previous_device

    @property
    def last_received_text(self) -> str:
        return self.snapshot.last_received_text

    @property
    def bluetooth_ready(self) -> bool:
        return self.snapshot.bluetooth_ready

    @property
    def last_error(self) -> LastError | None:
        return self.snapshot.last_error

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        return self._controller.add_listener(callback)

    async def wait_for(self, predicate: Callable[[SessionSnapshot], bool], timeout_s: float) -> bool:
        if predicate(self.snapshot):
            return True
        matched = asyncio.Event()

        def _check(snapshot: SessionSnapshot) -> None:
            if predicate(snapshot):
                matched.set()

        unsubscribe = self.subscribe(_check)
        try:
            await asyncio.wait_for(matched.wait(), timeout_s)
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()
        return True

    async def _submit(self, intent: object) -> None:
        self._controller.post(intent)
        await self._controller.settle()

    async def start_scan(self) -> None:
        await self._submit(ScanRequested())

    async def stop_scan(self) -> None:
        await self._submit(ScanStopRequested())

    async def connect(self, peripheral: PeripheralRef) -> None:
        await self._submit(ConnectRequested(peripheral))

    async def connect_to(self, peripheral: PeripheralRef) -> None:
        await self.connect(peripheral)

    async def reconnect_last(self) -> None:
        await self._submit(ReconnectRequested())

    async def disconnect(self) -> None:
        await self._submit(DisconnectRequested())

    async def _write_chunks(self, chunks: list[Chunk]) -> int:
        session = self._controller.active_session()
        transfer = self.profile.transfer
        return await encoder.send(
            chunks,
            session.write_channel if session else None,
            self._transport.write,
            interval_s=transfer.chunk_interval_s,
            with_response=transfer.write_with_response,
            sleep=self._sleep,
        )

    async def send(self, payload: OutboundPayload) -> int:
        chunks = encoder.encode(payload, chunk_size=self.profile.transfer.chunk_size)
        async with self._send_lock:
            return await self._write_chunks(chunks)

    async def send_text(self, text: str) -> int:
        return await self.send(TextPayload(text=text, slot=self.profile.text_slot))

    async def send_image(self, pixels: bytes) -> int:
        return await self.send(ImagePayload(pixels=bytes(pixels), slot=self.profile.image_slot))

    async def request_stored_data(self) -> None:
        """Ask the peripheral to stream back its stored content.

        Text received earlier is kept when the request is rejected.
        """
        command = Chunk(index=0, data=self.profile.request_command.encode("utf-8"))
        async with self._send_lock:
            if self._controller.active_session() is None:
                raise TransferNotReadyError("Not connected or write characteristic not ready")
            await self._submit(ReceivedTextCleared())
            await self._write_chunks([command])
        LOGGER.info("Requested stored data from %s", self.device_name)
