"""Durable record of the last bonded peripheral."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

import yaml

from turniectl.core.errors import DeviceStoreError
from turniectl.core.model import UNKNOWN_DEVICE_NAME, BondedDevice

LAST_UUID_KEY = "last_connected_device_uuid"
LAST_NAME_KEY = "last_connected_device_name"
LOGGER = logging.getLogger(__name__)


class DeviceStore(Protocol):
    def load(self) -> BondedDevice | None:
        """Return the bonded device record, if one was saved."""

    def save(self, device: BondedDevice) -> None:
        """Overwrite the bonded device record."""


def default_store_path() -> Path:
    xdg_state = Path(os.environ.get("XDG_STATE_HOME", Path.home() / ".local/state"))
    return xdg_state / "turniectl/device.yaml"


class FileDeviceStore:
    """Keeps the two record entries in a small YAML file."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or default_store_path()

    def load(self) -> BondedDevice | None:
        if not self.path.exists():
            return None
        try:
            content = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DeviceStoreError(f"Could not read device record {self.path}: {exc}") from exc
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as exc:
            raise DeviceStoreError(f"Invalid YAML in device record {self.path}: {exc}") from exc

        if doc is None:
            return None
        if not isinstance(doc, dict):
            raise DeviceStoreError(f"Device record {self.path} must contain a mapping at root")

        identifier = doc.get(LAST_UUID_KEY)
        if not isinstance(identifier, str) or not identifier.strip():
            return None
        name = doc.get(LAST_NAME_KEY)
        if not isinstance(name, str) or not name:
            name = UNKNOWN_DEVICE_NAME
        return BondedDevice(identifier=identifier.strip(), display_name=name)

    def save(self, device: BondedDevice) -> None:
        doc = {LAST_UUID_KEY: device.identifier, LAST_NAME_KEY: device.display_name}
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(yaml.safe_dump(doc, sort_keys=True), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise DeviceStoreError(f"Could not write device record {self.path}: {exc}") from exc
        LOGGER.debug("Saved bonded device %s to %s", device.identifier, self.path)


class MemoryDeviceStore:
    def __init__(self, device: BondedDevice | None = None) -> None:
        self.device = device
        self.saves = 0

    def load(self) -> BondedDevice | None:
        return self.device

    def save(self, device: BondedDevice) -> None:
        self.device = device
        self.saves += 1
