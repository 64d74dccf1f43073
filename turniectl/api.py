"""Stable public API for building tooling on top of turniectl.

This module is the supported integration surface for third-party callers
(GUI/TUI/services/scripts). Avoid importing from internal modules unless
intentionally depending on non-stable internals.
"""

from __future__ import annotations

from pathlib import Path

from turniectl.core.device_store import DeviceStore, FileDeviceStore, MemoryDeviceStore
from turniectl.core.encoder import assemble, encode
from turniectl.core.errors import (
    DeviceSelectionError,
    DeviceStoreError,
    EncodeEmptyError,
    EncodeError,
    ProfileLoadError,
    ProfileResolutionError,
    ProfileValidationError,
    TransferError,
    TransferInterruptedError,
    TransferNotReadyError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    TransportUnavailableError,
    TurnieError,
)
from turniectl.core.model import (
    AutoConnecting,
    BondedDevice,
    Connected,
    Connecting,
    DeviceProfile,
    Disconnected,
    ErrorKind,
    Idle,
    ImagePayload,
    LastError,
    PeripheralRef,
    Scanning,
    SessionSnapshot,
    TextPayload,
)
from turniectl.core.profile_loader import load_profiles
from turniectl.core.session import Session
from turniectl.transports.base import TransportAdapter
from turniectl.transports.ble_gatt import BleakTransport

__all__ = [
    "TurnieError",
    "DeviceSelectionError",
    "DeviceStoreError",
    "EncodeError",
    "EncodeEmptyError",
    "ProfileLoadError",
    "ProfileResolutionError",
    "ProfileValidationError",
    "TransferError",
    "TransferInterruptedError",
    "TransferNotReadyError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "TransportUnavailableError",
    "AutoConnecting",
    "BondedDevice",
    "Connected",
    "Connecting",
    "DeviceProfile",
    "Disconnected",
    "ErrorKind",
    "Idle",
    "ImagePayload",
    "LastError",
    "PeripheralRef",
    "Scanning",
    "SessionSnapshot",
    "TextPayload",
    "DeviceStore",
    "FileDeviceStore",
    "MemoryDeviceStore",
    "BleakTransport",
    "TransportAdapter",
    "Session",
    "assemble",
    "create_session",
    "encode",
]


def create_session(
    *,
    profile_id: str | None = None,
    transport: TransportAdapter | None = None,
    store: DeviceStore | None = None,
    store_path: Path | None = None,
) -> Session:
    """Build a session for a packaged or user profile.

    Defaults to the bleak transport and the on-disk bonded device record.
    """
    loaded = load_profiles()
    profile = loaded.get(profile_id)
    return Session(
        transport or BleakTransport(connect_timeout_s=profile.auto_connect_timeout_s),
        store or FileDeviceStore(store_path),
        profile,
        load_warnings=loaded.warnings,
    )
