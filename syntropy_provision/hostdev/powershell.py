"""
Disk queries and whole-device formatting through PowerShell storage cmdlets.

Shared by the WSL and native Windows adapters.
"""

import json
import logging
import re
from typing import Dict, List

from ..errors import NoDevice, PlatformFailure
from ..runner import run_command
from ..settings import GIB
from .base import TargetDevice, dedupe_devices, in_size_band

logger = logging.getLogger(__name__)

SCSI_MAX_BYTES = 500 * GIB

CANDIDATE_FILTER = (
    "$_.BusType -eq 'USB' -or "
    "($_.BusType -eq 'SCSI' -and $_.Size -lt 500GB -and $_.Size -gt 1GB)"
)

DISK_SELECT = """ForEach-Object {
    $disk = $_
    $parts = @(Get-Partition -DiskNumber $disk.Number -ErrorAction SilentlyContinue)
    [PSCustomObject]@{
        Number = $disk.Number
        FriendlyName = $disk.FriendlyName
        Size = $disk.Size
        SerialNumber = $disk.SerialNumber
        BusType = [string]$disk.BusType
        Model = $disk.Model
        IsSystem = [bool]($disk.IsSystem -or $disk.IsBoot -or ($parts | Where-Object { $_.IsSystem -or $_.IsBoot }))
        DriveLetters = @($parts | Where-Object { [string]$_.DriveLetter -match '^[A-Za-z]$' } | ForEach-Object { [string]$_.DriveLetter })
    }
} | ConvertTo-Json -Compress"""

LIST_DISKS_SCRIPT = "Get-Disk | Where-Object { %s } | %s" % (CANDIDATE_FILTER, DISK_SELECT)

DRIVE_PATTERN = re.compile(r'^(?:\\\\\.\\)?PHYSICALDRIVE(\d+)$', re.IGNORECASE)


def physical_drive(number: int) -> str:
    return f"\\\\.\\PHYSICALDRIVE{number}"


def disk_number(selector: str) -> int:
    match = DRIVE_PATTERN.match(selector.strip())
    if not match:
        raise NoDevice(f"{selector} is not a PHYSICALDRIVE handle")
    return int(match.group(1))


def parse_disks(output: str) -> List[Dict[str, object]]:
    """ConvertTo-Json emits a bare object for one disk and an array for several"""
    text = output.strip()
    if not text:
        return []
    data = json.loads(text)
    if isinstance(data, dict):
        return [data]
    return list(data)


def disk_to_device(disk: Dict[str, object], platform: str) -> TargetDevice:
    number = int(disk['Number'])
    size = int(disk.get('Size') or 0)
    bus = str(disk.get('BusType') or '')
    letters = disk.get('DriveLetters') or []
    if isinstance(letters, str):
        letters = [letters]

    return TargetDevice(
        platform_id=str(number),
        path=physical_drive(number),
        size_bytes=size,
        model=(disk.get('FriendlyName') or disk.get('Model') or '').strip(),
        serial=(disk.get('SerialNumber') or '').strip(),
        removable=bus.upper() == 'USB' or (bus.upper() == 'SCSI' and GIB < size < SCSI_MAX_BYTES),
        is_system_or_boot=bool(disk.get('IsSystem')),
        platform=platform,
        bus=bus,
        mountpoints=[f"{letter.upper()}:" for letter in letters],
    )


class PowerShellDisks:
    """Mixin: Get-Disk enumeration, Set-Disk offline toggling and Clear-Disk formatting"""

    powershell = 'powershell.exe'

    def run_powershell(self, script: str, subphase: str, timeout=None, check: bool = True):
        return run_command(
            [self.powershell, '-NoProfile', '-NonInteractive', '-ExecutionPolicy', 'Bypass', '-Command', script],
            subphase,
            timeout=timeout or self.command_timeout,
            check=check,
        )

    def _query_disks(self, script: str) -> List[TargetDevice]:
        result = self.run_powershell(script, 'enumerate')
        try:
            disks = parse_disks(result.stdout)
        except ValueError as e:
            raise PlatformFailure('enumerate', f"cannot parse Get-Disk output: {e}")
        return [disk_to_device(disk, self.platform) for disk in disks]

    def enumerate_devices(self) -> List[TargetDevice]:
        devices = [d for d in self._query_disks(LIST_DISKS_SCRIPT) if in_size_band(d.size_bytes)]
        devices = dedupe_devices(devices)
        logger.info(f"Found {len(devices)} candidate disk(s): {[d.path for d in devices]}")
        return devices

    def describe_device(self, selector: str) -> TargetDevice:
        number = disk_number(selector)
        script = "Get-Disk -Number %d -ErrorAction SilentlyContinue | %s" % (number, DISK_SELECT)
        devices = self._query_disks(script)
        if not devices:
            raise NoDevice(f"disk {number} does not exist")
        return devices[0]

    def set_offline(self, device: TargetDevice, offline: bool) -> None:
        number = disk_number(device.path)
        flag = '$true' if offline else '$false'
        self.run_powershell(
            f"Set-Disk -Number {number} -IsOffline {flag} -ErrorAction Stop",
            'offline' if offline else 'online',
        )

    def format_device(self, device: TargetDevice, label: str) -> None:
        number = disk_number(device.path)
        script = '; '.join([
            "$ErrorActionPreference = 'Stop'",
            f"Clear-Disk -Number {number} -RemoveData -RemoveOEM -Confirm:$false",
            f"Initialize-Disk -Number {number} -PartitionStyle MBR -ErrorAction SilentlyContinue",
            f"New-Partition -DiskNumber {number} -UseMaximumSize -AssignDriveLetter | "
            f"Format-Volume -FileSystem FAT32 -NewFileSystemLabel '{label}' -Confirm:$false | Out-Null",
        ])
        self.run_powershell(script, 'format', timeout=max(self.command_timeout, 300))
        logger.info(f"Formatted disk {number} as FAT32 ({label})")
