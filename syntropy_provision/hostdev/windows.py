"""
Native Windows adapter.

Listing, validation and whole-device formatting work through PowerShell.
Writing install media needs raw block access that only WSL or Linux provide,
so every media-writing operation raises Unsupported.
"""

from pathlib import Path
from typing import List, Tuple

from ..errors import Unsupported
from .base import WINDOWS, HostAdapter, PartitionHandle, TargetDevice
from .powershell import PowerShellDisks

UNSUPPORTED_MESSAGE = 'writing install media is not supported on native Windows'


class WindowsAdapter(PowerShellDisks, HostAdapter):
    platform = WINDOWS
    required_tools = ('powershell.exe',)
    writes_media = False

    def acquire(self, device: TargetDevice) -> str:
        raise Unsupported('offline', UNSUPPORTED_MESSAGE)

    def release(self, device: TargetDevice) -> None:
        return None

    def raw_write(self, image_path: Path, device: TargetDevice) -> None:
        raise Unsupported('write', UNSUPPORTED_MESSAGE)

    def append_partition(self, device: TargetDevice, name: str, size_mib: int) -> PartitionHandle:
        raise Unsupported('partition', UNSUPPORTED_MESSAGE)

    def format_fat32(self, partition: PartitionHandle, label: str) -> None:
        raise Unsupported('format', UNSUPPORTED_MESSAGE)

    def mount(self, partition: PartitionHandle, mount_dir: Path) -> Path:
        raise Unsupported('mount', UNSUPPORTED_MESSAGE)

    def unmount(self, mount_point: Path) -> None:
        raise Unsupported('unmount', UNSUPPORTED_MESSAGE)

    def copy_files(self, files: List[Path], mount_point: Path) -> None:
        raise Unsupported('copy', UNSUPPORTED_MESSAGE)

    def list_files(self, mount_point: Path) -> List[Tuple[str, int]]:
        raise Unsupported('copy', UNSUPPORTED_MESSAGE)
