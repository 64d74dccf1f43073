"""Domain-specific errors for turniectl."""


class TurnieError(Exception):
    """Base error for turniectl."""


class ProfileValidationError(TurnieError):
    """Raised when a profile file does not conform to schema or semantics."""


class ProfileLoadError(TurnieError):
    """Raised when loading profile sources fails."""


class ProfileResolutionError(TurnieError):
    """Raised when a requested profile id is not known."""


class DeviceSelectionError(TurnieError):
    """Raised when no target peripheral can be chosen."""


class DeviceStoreError(TurnieError):
    """Raised when the bonded device record cannot be read or written."""


class TransportError(TurnieError):
    """Base transport error."""


class TransportUnavailableError(TransportError):
    """Raised when the Bluetooth adapter is powered off or missing."""


class TransportConnectError(TransportError):
    """Raised on BLE connect and discovery failures."""


class TransportSendError(TransportError):
    """Raised when a characteristic write fails."""


class TransportTimeoutError(TransportError):
    """Raised when the peripheral does not answer a connect in time."""


class EncodeError(TurnieError):
    """Raised when a payload cannot be turned into a frame."""


class EncodeEmptyError(EncodeError):
    """Raised for zero-length payloads."""


class TransferError(TurnieError):
    """Base error for chunked transfers."""


class TransferNotReadyError(TransferError):
    """Raised when sending without an active session."""


class TransferInterruptedError(TransferError):
    """Raised when a chunk write fails part way through a transfer."""
