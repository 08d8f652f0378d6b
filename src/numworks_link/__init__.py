"""
NumWorks Link - driverless DFU access to NumWorks calculators

Session bring-up, model identification, platform info decoding and
autoconnect on top of a USB DFU transport.
"""

__version__ = "0.1.0"

from numworks_link.core.link import CalculatorLink, DisconnectEvent
from numworks_link.core.session import Session, negotiate_session
from numworks_link.models import ModelTag, get_profile, identify_model
from numworks_link.protocol import PlatformMetadata, decode_platform_info

__all__ = [
    "CalculatorLink",
    "DisconnectEvent",
    "Session",
    "negotiate_session",
    "ModelTag",
    "get_profile",
    "identify_model",
    "PlatformMetadata",
    "decode_platform_info",
    "__version__",
]
