"""Host platform adapters for Linux, WSL and Windows"""

import os
from typing import Optional

from ..settings import Settings
from .base import (
    LINUX,
    WINDOWS,
    WSL,
    DeviceState,
    DeviceStateTracker,
    HostAdapter,
    PartitionHandle,
    TargetDevice,
    check_device,
)


def detect_platform(proc_root: str = '/proc') -> str:
    if os.name == 'nt':
        return WINDOWS
    if os.path.exists(os.path.join(proc_root, 'sys/fs/binfmt_misc/WSLInterop')):
        return WSL
    try:
        with open(os.path.join(proc_root, 'version'), 'r') as f:
            if 'microsoft' in f.read().lower():
                return WSL
    except OSError:
        pass
    return LINUX


def get_adapter(platform: Optional[str] = None, settings: Optional[Settings] = None) -> HostAdapter:
    platform = platform or detect_platform()
    if platform == WINDOWS:
        from .windows import WindowsAdapter
        return WindowsAdapter(settings)
    if platform == WSL:
        from .wsl import WslAdapter
        return WslAdapter(settings)
    from .linux import LinuxAdapter
    return LinuxAdapter(settings)


__all__ = [
    'LINUX',
    'WSL',
    'WINDOWS',
    'DeviceState',
    'DeviceStateTracker',
    'HostAdapter',
    'PartitionHandle',
    'TargetDevice',
    'check_device',
    'detect_platform',
    'get_adapter',
]
