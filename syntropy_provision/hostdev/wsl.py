"""
WSL adapter.

Disks are listed and toggled offline on the Windows side through PowerShell,
then attached raw into the WSL kernel with `wsl.exe --mount --bare`. The block
node that appears is found by comparing /dev before and after the mount, and
from then on the Linux tools do the writing.
"""

import glob
import logging
import os
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from ..errors import PlatformFailure
from ..runner import run_command
from .base import WSL, Diagnostic, TargetDevice
from .linux import LinuxAdapter
from .powershell import PowerShellDisks

logger = logging.getLogger(__name__)

BLOCK_NODE_PATTERNS = ('/dev/sd?', '/dev/hd?', '/dev/nvme?n?')
ATTACH_ATTEMPTS = 10
WSL_INTEROP = '/proc/sys/fs/binfmt_misc/WSLInterop'


def windows_to_wsl_path(path: str) -> str:
    """C:\\Users\\op\\x.iso -> /mnt/c/Users/op/x.iso"""
    match = re.match(r'^([A-Za-z]):[\\/]?(.*)$', path)
    if not match:
        return path
    drive, rest = match.groups()
    return f"/mnt/{drive.lower()}/{rest.replace(chr(92), '/').lstrip('/')}"


@dataclass
class Attachment:
    offline: bool = False
    mounted: bool = False
    block: Optional[str] = None


class WslAdapter(PowerShellDisks, LinuxAdapter):
    platform = WSL
    required_tools = LinuxAdapter.required_tools + ('powershell.exe', 'wsl.exe', 'wslpath')

    def __init__(self, settings=None):
        super().__init__(settings)
        self._attached: Dict[str, Attachment] = {}

    def block_nodes(self) -> Set[str]:
        nodes = set()
        for pattern in BLOCK_NODE_PATTERNS:
            nodes.update(glob.glob(pattern))
        return nodes

    def block_path(self, device: TargetDevice) -> str:
        attachment = self._attached.get(device.platform_id)
        if attachment is None or attachment.block is None:
            raise PlatformFailure('mount', f"{device.path} is not attached to WSL")
        return attachment.block

    def acquire(self, device: TargetDevice) -> str:
        attachment = Attachment()
        self._attached[device.platform_id] = attachment
        before = self.block_nodes()

        self.set_offline(device, True)
        attachment.offline = True

        run_command(['wsl.exe', '--mount', device.path, '--bare'], 'mount', timeout=self.command_timeout)
        attachment.mounted = True

        for attempt in range(ATTACH_ATTEMPTS):
            appeared = sorted(self.block_nodes() - before)
            if len(appeared) == 1:
                attachment.block = appeared[0]
                logger.info(f"{device.path} attached to WSL as {attachment.block}")
                return attachment.block
            if len(appeared) > 1:
                raise PlatformFailure('mount', f"several block devices appeared at once: {', '.join(appeared)}")
            time.sleep(1)

        raise PlatformFailure('mount', f"no block device appeared after attaching {device.path}")

    def release(self, device: TargetDevice) -> None:
        attachment = self._attached.pop(device.platform_id, None)
        if attachment is None:
            return

        failures: List[PlatformFailure] = []
        if attachment.block:
            try:
                self._unmount_all(attachment.block, 'unmount')
                run_command(['sync'], 'unmount', timeout=self.command_timeout)
            except PlatformFailure as e:
                failures.append(e)
        if attachment.mounted:
            try:
                run_command(['wsl.exe', '--unmount', device.path], 'unmount', timeout=self.command_timeout)
            except PlatformFailure as e:
                failures.append(e)
        if attachment.offline:
            try:
                self.set_offline(device, False)
            except PlatformFailure as e:
                failures.append(e)

        for failure in failures[1:]:
            logger.error(f"Release of {device.path} also failed: {failure}")
        if failures:
            raise failures[0]
        logger.info(f"{device.path} detached from WSL and back online")

    def convert_path(self, path: str) -> str:
        if path.startswith('/'):
            return path
        try:
            result = run_command(['wslpath', '-u', path], 'enumerate', timeout=self.command_timeout)
            converted = result.stdout.strip()
            if converted:
                return converted
        except PlatformFailure as e:
            logger.debug(f"wslpath failed for {path}: {e}")
        return windows_to_wsl_path(path)

    def diagnostics(self) -> List[Diagnostic]:
        checks = super().diagnostics()
        checks.append(('WSL interop', os.path.exists(WSL_INTEROP), WSL_INTEROP))
        return checks
