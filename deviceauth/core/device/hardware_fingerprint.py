"""
Hardware Fingerprinting
=======================

Collects hardware identifiers and combines them into an ordered,
deterministic fingerprint string from which the device UID is derived.

Properties:
- Fixed source priority: board UUID, board serial, baseboard, BIOS, CPU,
  disk, OS
- Placeholder values ("unknown", "Default string", nil GUID, ...) are dropped
- A failing read only makes that attribute unavailable; collect() never raises
- With no usable attribute at all, a random identifier is generated once and
  persisted so the fingerprint stays stable on that machine

Platform readers:
- Windows: WMIC queries
- Linux: DMI sysfs, /proc/cpuinfo, lsblk, machine-id
- macOS: ioreg, system_profiler

WARNING:
- Hardware upgrades and some virtual machines change the fingerprint; the
  identity layer handles this through UID migration
"""

from __future__ import annotations

import logging
import platform
import re
import subprocess
import sys
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Final, List, Optional, Tuple

from deviceauth.db.kv_store import KeyValueStore, RANDOM_DEVICE_ID, StoreError


NIL_GUID: Final[str] = "00000000-0000-0000-0000-000000000000"

# Values vendors ship instead of a real identifier
SENTINEL_VALUES: Final[frozenset[str]] = frozenset({
    "unknown",
    "Default string",
    "To be filled by O.E.M.",
})

FINGERPRINT_SEPARATOR: Final[str] = "|"

_SUBPROCESS_TIMEOUT: Final[int] = 5

logger = logging.getLogger(__name__)


class FingerprintSource(Enum):
    """Fingerprint sources; declaration order is the priority order."""
    BOARD_UUID = "board_uuid"
    BOARD_SERIAL = "board_serial"
    BASEBOARD = "baseboard"
    BIOS = "bios"
    CPU = "cpu"
    DISK = "disk"
    OS = "os"
    RANDOM = "random"

    @property
    def tag(self) -> str:
        return self.value


def is_valid_sample(value: object) -> bool:
    """Return True when value is a usable hardware identifier."""
    if not isinstance(value, str):
        return False
    trimmed = value.strip()
    if not trimmed or trimmed in SENTINEL_VALUES:
        return False
    return trimmed.lower() != NIL_GUID


@dataclass(frozen=True, slots=True)
class HardwareSample:
    """One validated attribute read from the host."""
    source: FingerprintSource
    value: str

    @property
    def tag(self) -> str:
        return self.source.tag

    def render(self) -> str:
        return f"{self.tag}:{self.value}"


@dataclass(frozen=True, slots=True)
class DeviceFingerprint:
    """
    Ordered, filtered combination of hardware samples.

    Attributes:
        samples: Valid samples in priority order
    """
    samples: Tuple[HardwareSample, ...]

    @property
    def value(self) -> str:
        """Composite string, e.g. ``board_uuid:ABC|cpu:BFEBFBFF000906EA``."""
        return FINGERPRINT_SEPARATOR.join(sample.render() for sample in self.samples)

    @property
    def source_count(self) -> int:
        return len(self.samples)

    @property
    def sources(self) -> Tuple[FingerprintSource, ...]:
        return tuple(sample.source for sample in self.samples)

    @property
    def is_random_fallback(self) -> bool:
        return self.sources == (FingerprintSource.RANDOM,)

    def __repr__(self) -> str:
        """Representation without raw identifiers."""
        return f"DeviceFingerprint(sources={[s.tag for s in self.sources]})"


class HardwareReader:
    """
    Reads raw hardware attributes. Every method returns None when the
    attribute is not available on this platform.

    Subclasses override the readers their OS supports.
    """

    def system_uuid(self) -> Optional[str]:
        return None

    def system_serial(self) -> Optional[str]:
        return None

    def baseboard_manufacturer(self) -> Optional[str]:
        return None

    def baseboard_model(self) -> Optional[str]:
        return None

    def baseboard_serial(self) -> Optional[str]:
        return None

    def bios_serial(self) -> Optional[str]:
        return None

    def cpu_serial(self) -> Optional[str]:
        return None

    def disk_serial(self) -> Optional[str]:
        return None

    def os_serial(self) -> Optional[str]:
        return None

    @staticmethod
    def _run(args: List[str], timeout: int = _SUBPROCESS_TIMEOUT) -> Optional[str]:
        """Run a command and return stdout, or None on non-zero exit."""
        result = subprocess.run(
            args,
            capture_output=True,
            text=True,
            timeout=timeout,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        if result.returncode != 0:
            return None
        return result.stdout

    @staticmethod
    def _read_file(path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8", errors="replace").strip()


class WindowsHardwareReader(HardwareReader):
    """WMIC-based reader."""

    def _wmic(self, alias: str, prop: str) -> Optional[str]:
        output = self._run(["wmic", alias, "get", prop])
        if output is None:
            return None
        lines = [line.strip() for line in output.splitlines() if line.strip()]
        # First line is the column header
        if len(lines) > 1 and lines[1] != prop:
            return lines[1]
        return None

    def system_uuid(self) -> Optional[str]:
        return self._wmic("csproduct", "UUID")

    def system_serial(self) -> Optional[str]:
        return self._wmic("csproduct", "IdentifyingNumber")

    def baseboard_manufacturer(self) -> Optional[str]:
        return self._wmic("baseboard", "Manufacturer")

    def baseboard_model(self) -> Optional[str]:
        return self._wmic("baseboard", "Product")

    def baseboard_serial(self) -> Optional[str]:
        return self._wmic("baseboard", "SerialNumber")

    def bios_serial(self) -> Optional[str]:
        return self._wmic("bios", "SerialNumber")

    def cpu_serial(self) -> Optional[str]:
        return self._wmic("cpu", "ProcessorId")

    def disk_serial(self) -> Optional[str]:
        return self._wmic("diskdrive", "SerialNumber")

    def os_serial(self) -> Optional[str]:
        return self._wmic("os", "SerialNumber")


class LinuxHardwareReader(HardwareReader):
    """DMI sysfs reader. Several DMI files are root-only; those read as unavailable."""

    _DMI: Final[Path] = Path("/sys/class/dmi/id")

    def _dmi(self, name: str) -> Optional[str]:
        try:
            return self._read_file(self._DMI / name)
        except PermissionError:
            return None

    def system_uuid(self) -> Optional[str]:
        return self._dmi("product_uuid")

    def system_serial(self) -> Optional[str]:
        return self._dmi("product_serial")

    def baseboard_manufacturer(self) -> Optional[str]:
        return self._dmi("board_vendor")

    def baseboard_model(self) -> Optional[str]:
        return self._dmi("board_name")

    def baseboard_serial(self) -> Optional[str]:
        return self._dmi("board_serial")

    def cpu_serial(self) -> Optional[str]:
        cpuinfo = self._read_file(Path("/proc/cpuinfo"))
        if not cpuinfo:
            return None
        for line in cpuinfo.splitlines():
            key, _, value = line.partition(":")
            if key.strip().lower() == "serial":
                return value.strip()
        return None

    def disk_serial(self) -> Optional[str]:
        output = self._run(["lsblk", "-d", "-n", "-o", "SERIAL"])
        if output:
            for line in output.splitlines():
                if line.strip():
                    return line.strip()
        for serial_path in sorted(Path("/sys/block").glob("*/device/serial")):
            serial = self._read_file(serial_path)
            if serial:
                return serial
        return None

    def os_serial(self) -> Optional[str]:
        for path in (Path("/etc/machine-id"), Path("/var/lib/dbus/machine-id")):
            machine_id = self._read_file(path)
            if machine_id:
                return machine_id
        return None


class MacHardwareReader(HardwareReader):
    """ioreg / system_profiler reader."""

    def _platform_property(self, name: str) -> Optional[str]:
        output = self._run(["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"])
        if output is None:
            return None
        match = re.search(rf'"{name}"\s*=\s*"([^"]+)"', output)
        return match.group(1) if match else None

    def system_uuid(self) -> Optional[str]:
        return self._platform_property("IOPlatformUUID")

    def system_serial(self) -> Optional[str]:
        return self._platform_property("IOPlatformSerialNumber")

    def disk_serial(self) -> Optional[str]:
        for data_type in ("SPNVMeDataType", "SPSerialATADataType"):
            output = self._run(["system_profiler", data_type], timeout=10)
            if output:
                match = re.search(r"Serial Number:\s*(\S+)", output)
                if match:
                    return match.group(1)
        return None


def get_hardware_reader() -> HardwareReader:
    """Return the reader for the running OS."""
    system = platform.system().lower()
    if system == "windows":
        return WindowsHardwareReader()
    if system == "darwin":
        return MacHardwareReader()
    if system == "linux":
        return LinuxHardwareReader()
    return HardwareReader()


class FingerprintCollector:
    """
    Builds the DeviceFingerprint for this machine.

    Usage:
        collector = FingerprintCollector(store)
        fingerprint = collector.collect()
        fingerprint.value   # "board_uuid:...|disk:..."

    The store is only touched in the zero-sample path, to read or persist
    the random fallback identifier.
    """

    __slots__ = ("_store", "_reader")

    def __init__(self, store: KeyValueStore, reader: Optional[HardwareReader] = None) -> None:
        """
        Initialize the collector.

        Args:
            store: Persistent store holding the random fallback identifier
            reader: Hardware reader (defaults to the one for this OS)
        """
        self._store = store
        self._reader = reader or get_hardware_reader()

    def collect(self) -> DeviceFingerprint:
        """
        Collect the fingerprint. Never raises.

        Returns:
            DeviceFingerprint with at least one sample
        """
        samples: List[HardwareSample] = []

        def add(source: FingerprintSource, value: Optional[str], rendered: Optional[str] = None) -> None:
            if is_valid_sample(value):
                samples.append(HardwareSample(source, (rendered or value).strip()))
                logger.debug("Fingerprint source %s available", source.tag)
            else:
                logger.debug("Fingerprint source %s unavailable", source.tag)

        add(FingerprintSource.BOARD_UUID, self._read("system_uuid"))
        add(FingerprintSource.BOARD_SERIAL, self._read("system_serial"))

        # Baseboard is judged on its serial but contributes manufacturer-model-serial
        board_serial = self._read("baseboard_serial")
        if is_valid_sample(board_serial):
            manufacturer = self._read("baseboard_manufacturer") or ""
            model = self._read("baseboard_model") or ""
            add(FingerprintSource.BASEBOARD, board_serial, f"{manufacturer}-{model}-{board_serial.strip()}")
        else:
            add(FingerprintSource.BASEBOARD, None)

        add(FingerprintSource.BIOS, self._read("bios_serial"))
        add(FingerprintSource.CPU, self._read("cpu_serial"))
        add(FingerprintSource.DISK, self._read("disk_serial"))
        add(FingerprintSource.OS, self._read("os_serial"))

        if not samples:
            logger.warning("No hardware identifiers available, using persisted random device id")
            samples.append(HardwareSample(FingerprintSource.RANDOM, self._random_device_id()))

        return DeviceFingerprint(samples=tuple(samples))

    def _read(self, attribute: str) -> Optional[str]:
        """Read one attribute; any failure means unavailable."""
        reader: Callable[[], Optional[str]] = getattr(self._reader, attribute)
        try:
            value = reader()
        except Exception as e:
            logger.debug("Reading %s failed: %s", attribute, e)
            return None
        return value.strip() if isinstance(value, str) else None

    def _random_device_id(self) -> str:
        try:
            random_id = self._store.get(RANDOM_DEVICE_ID)
        except StoreError as e:
            logger.warning("Random device id could not be read: %s", e)
            random_id = None
        if isinstance(random_id, str) and random_id:
            return random_id

        random_id = str(uuid.uuid4())
        try:
            self._store.set(RANDOM_DEVICE_ID, random_id)
            logger.info("Generated new random device id")
        except StoreError as e:
            logger.warning("Random device id could not be persisted: %s", e)
        return random_id


_OS_NAMES: Final[Dict[str, str]] = {"win32": "Windows", "darwin": "macOS"}


def get_device_descriptor() -> Dict[str, str]:
    """
    Describe the host for the authenticate call.

    Returns:
        {"platform": "win32"|"darwin"|"linux", "os": "Windows"|"macOS"|"Linux",
         "version": OS release string}
    """
    plat = sys.platform
    if plat.startswith("linux"):
        plat = "linux"

    if plat == "win32":
        version = platform.version()
    elif plat == "darwin":
        version = platform.mac_ver()[0] or platform.release()
    else:
        version = platform.release()

    return {
        "platform": plat,
        "os": _OS_NAMES.get(plat, "Linux"),
        "version": version,
    }
