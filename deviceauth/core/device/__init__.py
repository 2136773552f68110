"""
Device fingerprinting and identity.
"""

from deviceauth.core.device.hardware_fingerprint import (
    DeviceFingerprint,
    FingerprintCollector,
    HardwareReader,
    get_device_descriptor,
    get_hardware_reader,
)
from deviceauth.core.device.identity import (
    DeviceIdentity,
    IdentityManager,
    MigrationIntent,
    derive_uid,
)

__all__ = [
    "DeviceFingerprint",
    "DeviceIdentity",
    "FingerprintCollector",
    "HardwareReader",
    "IdentityManager",
    "MigrationIntent",
    "derive_uid",
    "get_device_descriptor",
    "get_hardware_reader",
]
