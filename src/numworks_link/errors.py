"""
Exception hierarchy for NumWorks Link.

Every failure raised by the library derives from NumworksLinkError so front
ends can present "not a supported device" conditions without crashing.
"""

from typing import Optional


class NumworksLinkError(Exception):
    """Base exception for all library errors"""
    pass


class DfuTransportError(NumworksLinkError):
    """USB/DFU transport failure (raised by transport implementations)"""
    pass


class TransportOpenFailed(DfuTransportError):
    """The DFU interface could not be opened"""
    pass


class DescriptorReadFailed(DfuTransportError):
    """The configuration descriptor could not be read from the device"""
    pass


class DescriptorUnavailable(NumworksLinkError):
    """No usable DFU functional descriptor (negotiation falls back to defaults)"""
    pass


class NotRecognized(NumworksLinkError):
    """Platform metadata magic mismatch: not a calculator, or erased flash"""
    pass


class UnknownModel(NumworksLinkError):
    """Memory layout matches no known hardware model"""

    def __init__(self, message: str, internal_size: int = 0, external_size: int = 0):
        self.internal_size = internal_size
        self.external_size = external_size
        super().__init__(message)


class StorageTooLarge(NumworksLinkError):
    """Encoded storage does not fit the device-reported storage region"""

    def __init__(self, encoded_size: int, region_size: int):
        self.encoded_size = encoded_size
        self.region_size = region_size
        super().__init__(
            f"Storage image is {encoded_size} bytes but the device region "
            f"holds only {region_size} bytes"
        )


class SessionInvalidated(NumworksLinkError):
    """Operation attempted on a session whose device has disconnected"""
    pass


class NotConnected(NumworksLinkError):
    """No active session"""
    pass


class SessionBusy(NumworksLinkError):
    """A session is already active; connections are never interleaved"""
    pass


class DeviceNotFound(NumworksLinkError):
    """No attached DFU interface matched the device filter"""
    pass


class UnsupportedOperation(NumworksLinkError):
    """The link profile does not offer the requested operation"""

    def __init__(self, operation: str, profile: Optional[str] = None):
        self.operation = operation
        self.profile = profile
        where = f" in {profile} mode" if profile else ""
        super().__init__(f"Operation '{operation}' is not available{where}")
