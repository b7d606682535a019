"""
Host platform adapter interface and the platform-independent device rules.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from ..console import confirm_interactive, format_size
from ..errors import DeviceRejected, PlatformFailure
from ..runner import command_available, run_command
from ..settings import GIB, Settings

logger = logging.getLogger(__name__)

LINUX = 'linux'
WSL = 'wsl'
WINDOWS = 'windows'

MIN_DEVICE_BYTES = GIB
MAX_DEVICE_BYTES = 2048 * GIB

SYSTEM_MOUNTPOINTS = ('/', '/boot', '/boot/efi', '/home', '[SWAP]')
SYSTEM_DRIVE_LETTER = 'C:'

Diagnostic = Tuple[str, bool, str]


@dataclass
class TargetDevice:
    """A block device that may receive install media"""

    platform_id: str
    path: str
    size_bytes: int
    model: str = ''
    serial: str = ''
    removable: bool = False
    is_system_or_boot: bool = False
    platform: str = LINUX
    bus: str = ''
    vendor: str = ''
    mountpoints: List[str] = field(default_factory=list)

    def describe(self) -> str:
        model = self.model or 'unknown model'
        serial = self.serial or 'no serial'
        return f"{self.path} ({model}, {serial}, {format_size(self.size_bytes)})"

    def to_dict(self) -> Dict[str, object]:
        return {
            'platform_id': self.platform_id,
            'path': self.path,
            'size_bytes': self.size_bytes,
            'size': format_size(self.size_bytes),
            'model': self.model,
            'vendor': self.vendor,
            'serial': self.serial,
            'removable': self.removable,
            'is_system_or_boot': self.is_system_or_boot,
            'platform': self.platform,
            'bus': self.bus,
            'mountpoints': list(self.mountpoints),
        }


@dataclass(frozen=True)
class PartitionHandle:
    device: str
    path: str
    name: str
    number: Optional[int] = None


class DeviceState(str, Enum):
    IDLE = 'idle'
    OFFLINE = 'offline'
    RAW_MOUNTED = 'raw_mounted'
    IMAGE_WRITTEN = 'image_written'
    PARTITIONED = 'partitioned'
    FORMATTED = 'formatted'
    SEEDED = 'seeded'
    ONLINE = 'online'


DEVICE_STATE_ORDER = list(DeviceState)


class DeviceStateTracker:
    """Per-device state machine; forward only, except back into online"""

    def __init__(self):
        self.state = DeviceState.IDLE
        self.history = [DeviceState.IDLE]

    def advance(self, target: DeviceState) -> None:
        if target != DeviceState.ONLINE and \
                DEVICE_STATE_ORDER.index(target) <= DEVICE_STATE_ORDER.index(self.state):
            raise ValueError(f"illegal device transition {self.state.value} -> {target.value}")
        if self.state == DeviceState.ONLINE:
            raise ValueError('device is already back online')
        logger.debug(f"Device state {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)


def in_size_band(size_bytes: int) -> bool:
    return MIN_DEVICE_BYTES <= size_bytes <= MAX_DEVICE_BYTES


def system_mounts(device: TargetDevice) -> List[str]:
    found = []
    for mountpoint in device.mountpoints:
        if mountpoint in SYSTEM_MOUNTPOINTS or mountpoint.rstrip('\\').upper() == SYSTEM_DRIVE_LETTER:
            found.append(mountpoint)
    return found


def check_device(device: TargetDevice) -> None:
    """Reject devices that hold system data or fall outside the size band"""
    mounted = system_mounts(device)
    if mounted:
        raise DeviceRejected(
            'system_partition',
            f"{device.path} holds system mounts ({', '.join(mounted)})",
        )
    if device.is_system_or_boot:
        raise DeviceRejected('system_or_boot', f"{device.path} is a system or boot disk")
    if not in_size_band(device.size_bytes):
        raise DeviceRejected(
            'size_out_of_range',
            f"{device.path} is {format_size(device.size_bytes)}; devices must be between 1 GiB and 2 TiB",
        )


def dedupe_devices(devices: Iterable[TargetDevice]) -> List[TargetDevice]:
    """Collapse records sharing a serial, preferring the one with a model"""
    result = []
    by_serial = {}
    for device in devices:
        if not device.serial:
            result.append(device)
            continue
        index = by_serial.get(device.serial)
        if index is None:
            by_serial[device.serial] = len(result)
            result.append(device)
        elif not result[index].model and device.model:
            result[index] = device
    return result


def partition_path(block_path: str, number: int) -> str:
    """/dev/sdb + 2 -> /dev/sdb2, /dev/nvme0n1 + 2 -> /dev/nvme0n1p2"""
    if re.search(r'\d$', block_path):
        return f"{block_path}p{number}"
    return f"{block_path}{number}"


class HostAdapter(ABC):
    """Device operations of one host platform"""

    platform = ''
    required_tools: Tuple[str, ...] = ()
    writes_media = True

    def __init__(self, settings: Optional[Settings] = None):
        self.command_timeout = settings.command_timeout if settings else 30
        self.write_timeout = settings.write_timeout if settings else 30 * 60

    @abstractmethod
    def enumerate_devices(self) -> List[TargetDevice]:
        """Removable devices within the size band"""

    @abstractmethod
    def describe_device(self, selector: str) -> TargetDevice:
        """Resolve an explicit selector without the removable filter"""

    def validate_device(self, device: TargetDevice) -> None:
        check_device(device)

    @abstractmethod
    def acquire(self, device: TargetDevice) -> str:
        """Take exclusive control of the device; returns the block path to write"""

    @abstractmethod
    def release(self, device: TargetDevice) -> None:
        """Undo whatever acquire and later steps left attached"""

    @abstractmethod
    def raw_write(self, image_path: Path, device: TargetDevice) -> None:
        pass

    @abstractmethod
    def append_partition(self, device: TargetDevice, name: str, size_mib: int) -> PartitionHandle:
        pass

    @abstractmethod
    def format_fat32(self, partition: PartitionHandle, label: str) -> None:
        pass

    @abstractmethod
    def mount(self, partition: PartitionHandle, mount_dir: Path) -> Path:
        pass

    @abstractmethod
    def unmount(self, mount_point: Path) -> None:
        pass

    @abstractmethod
    def format_device(self, device: TargetDevice, label: str) -> None:
        """Replace everything on the device with a single FAT32 partition"""

    def copy_files(self, files: List[Path], mount_point: Path) -> None:
        for path in files:
            run_command(['cp', str(path), str(mount_point / path.name)], 'copy',
                        timeout=self.command_timeout, privileged=True)
        run_command(['sync'], 'copy', timeout=self.command_timeout)

    def list_files(self, mount_point: Path) -> List[Tuple[str, int]]:
        """Names and sizes of the regular files at the top of a mounted partition"""
        try:
            entries = sorted(mount_point.iterdir())
            return [(entry.name, entry.stat().st_size) for entry in entries if entry.is_file()]
        except OSError as e:
            raise PlatformFailure('copy', f"cannot list {mount_point}: {e}")

    def convert_path(self, path: str) -> str:
        """Map an operator supplied path onto this host's filesystem"""
        return path

    def confirm_interactive(self, prompt: str) -> bool:
        return confirm_interactive(prompt)

    def diagnostics(self) -> List[Diagnostic]:
        return [(f"command {tool}", command_available(tool), '') for tool in self.required_tools]
