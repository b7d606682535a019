"""
Linux block device adapter.

Devices are listed with lsblk (JSON, sizes in bytes), falling back to reading
/sys/block directly when lsblk is missing or its output cannot be parsed.
All writes go through dd, sgdisk, mkfs.vfat and parted run with sudo when the
process is not root.
"""

import glob
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import NoDevice, PlatformFailure
from ..runner import command_available, run_command
from .base import (
    LINUX,
    SYSTEM_MOUNTPOINTS,
    Diagnostic,
    HostAdapter,
    PartitionHandle,
    TargetDevice,
    dedupe_devices,
    in_size_band,
    partition_path,
)

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = 'NAME,PATH,TYPE,SIZE,MODEL,VENDOR,SERIAL,RM,TRAN,HOTPLUG,MOUNTPOINT'
SYSFS_PATTERNS = ('sd*', 'nvme*', 'mmcblk*')
SECTOR_SIZE = 512
PARTITION_SETTLE_ATTEMPTS = 5


def _flag(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip() in ('1', 'true', 'True')


def _text(value) -> str:
    return (value or '').strip() if isinstance(value, str) else ''


def _collect_mountpoints(node: Dict[str, object]) -> List[str]:
    mountpoints = []
    for key in ('mountpoint', 'mountpoints'):
        value = node.get(key)
        if isinstance(value, str) and value:
            mountpoints.append(value)
        elif isinstance(value, list):
            mountpoints.extend(mp for mp in value if mp)
    for child in node.get('children') or []:
        mountpoints.extend(_collect_mountpoints(child))
    return mountpoints


def parse_lsblk(output: str) -> List[TargetDevice]:
    """Every disk in `lsblk -J -b` output, with the mountpoints of its partitions"""
    data = json.loads(output)
    devices = []
    for node in data.get('blockdevices', []):
        if node.get('type') != 'disk':
            continue
        transport = _text(node.get('tran')).lower()
        mountpoints = sorted(set(_collect_mountpoints(node)))
        devices.append(TargetDevice(
            platform_id=node['name'],
            path=node.get('path') or f"/dev/{node['name']}",
            size_bytes=int(node.get('size') or 0),
            model=_text(node.get('model')),
            vendor=_text(node.get('vendor')),
            serial=_text(node.get('serial')),
            removable=_flag(node.get('rm')) or transport == 'usb' or _flag(node.get('hotplug')),
            is_system_or_boot=any(mp in SYSTEM_MOUNTPOINTS for mp in mountpoints),
            platform=LINUX,
            bus=transport,
            mountpoints=mountpoints,
        ))
    return devices


def find_partition(output: str, name: str) -> Optional[PartitionHandle]:
    """Locate a partition by its GPT name in `lsblk -J -o NAME,PATH,PARTLABEL,PARTN` output"""
    data = json.loads(output)
    for disk in data.get('blockdevices', []):
        for child in disk.get('children') or []:
            if child.get('partlabel') == name:
                number = child.get('partn')
                if number is None:
                    match = re.search(r'(\d+)$', child['name'])
                    number = int(match.group(1)) if match else None
                return PartitionHandle(
                    device=disk.get('path') or f"/dev/{disk['name']}",
                    path=child.get('path') or f"/dev/{child['name']}",
                    name=name,
                    number=int(number) if number is not None else None,
                )
    return None


def on_device(source: str, block: str) -> bool:
    """True when source is block itself or one of its partitions"""
    suffix = r'p\d+$' if re.search(r'\d$', block) else r'\d+$'
    return source == block or re.match(re.escape(block) + suffix, source) is not None


def read_mounts(proc_mounts: str = '/proc/mounts') -> Dict[str, List[str]]:
    """Map of source device to its mountpoints"""
    mounts = {}
    try:
        with open(proc_mounts, 'r') as f:
            for line in f:
                fields = line.split()
                if len(fields) >= 2 and fields[0].startswith('/dev/'):
                    # /proc/mounts escapes spaces as \040
                    mountpoint = fields[1].replace('\\040', ' ')
                    mounts.setdefault(fields[0], []).append(mountpoint)
    except OSError as e:
        logger.warning(f"Cannot read {proc_mounts}: {e}")
    return mounts


def read_swaps(proc_swaps: str = '/proc/swaps') -> List[str]:
    try:
        with open(proc_swaps, 'r') as f:
            return [line.split()[0] for line in f.readlines()[1:] if line.strip()]
    except OSError:
        return []


def usb_attached(block_dir: str) -> bool:
    """True when the resolved sysfs path runs through a USB host controller"""
    return any(part.startswith('usb') for part in os.path.realpath(block_dir).split(os.sep))


class LinuxAdapter(HostAdapter):
    platform = LINUX
    required_tools = ('lsblk', 'dd', 'sgdisk', 'partprobe', 'mkfs.vfat', 'parted', 'mount', 'umount', 'sync')

    sys_block = '/sys/block'
    proc_mounts = '/proc/mounts'
    proc_swaps = '/proc/swaps'

    def _lsblk(self, *targets: str) -> List[TargetDevice]:
        result = run_command(['lsblk', '-J', '-b', '-o', LSBLK_COLUMNS] + list(targets),
                             'enumerate', timeout=self.command_timeout)
        return parse_lsblk(result.stdout)

    def _read_sysfs(self, block_dir: str) -> TargetDevice:
        name = os.path.basename(block_dir)

        def read(relative: str) -> str:
            try:
                with open(os.path.join(block_dir, relative), 'r') as f:
                    return f.read().strip()
            except OSError:
                return ''

        sectors = read('size')
        path = f"/dev/{name}"
        mounts = read_mounts(self.proc_mounts)
        mountpoints = sorted({mp for source, mps in mounts.items() if on_device(source, path) for mp in mps})
        if any(on_device(swap, path) for swap in read_swaps(self.proc_swaps)):
            mountpoints.append('[SWAP]')
        usb = usb_attached(block_dir)

        return TargetDevice(
            platform_id=name,
            path=path,
            size_bytes=int(sectors) * SECTOR_SIZE if sectors.isdigit() else 0,
            model=read('device/model'),
            vendor=read('device/vendor'),
            serial=read('device/serial'),
            removable=read('removable') == '1' or usb,
            is_system_or_boot=any(mp in SYSTEM_MOUNTPOINTS for mp in mountpoints),
            platform=LINUX,
            bus='usb' if usb else '',
            mountpoints=mountpoints,
        )

    def _sysfs_devices(self) -> List[TargetDevice]:
        devices = []
        for pattern in SYSFS_PATTERNS:
            for block_dir in sorted(glob.glob(os.path.join(self.sys_block, pattern))):
                devices.append(self._read_sysfs(block_dir))
        return devices

    def _all_disks(self) -> List[TargetDevice]:
        try:
            return self._lsblk()
        except (PlatformFailure, ValueError) as e:
            logger.warning(f"lsblk unavailable ({e}), reading {self.sys_block}")
            return self._sysfs_devices()

    def enumerate_devices(self) -> List[TargetDevice]:
        devices = [d for d in self._all_disks() if d.removable and in_size_band(d.size_bytes)]
        devices = dedupe_devices(devices)
        logger.info(f"Found {len(devices)} candidate device(s): {[d.path for d in devices]}")
        return devices

    def describe_device(self, selector: str) -> TargetDevice:
        if not self._node_exists(selector):
            raise NoDevice(f"device {selector} does not exist")
        try:
            devices = self._lsblk(selector)
        except (PlatformFailure, ValueError) as e:
            logger.warning(f"lsblk unavailable ({e}), reading {self.sys_block}")
            block_dir = os.path.join(self.sys_block, os.path.basename(os.path.realpath(selector)))
            if not os.path.isdir(block_dir):
                raise NoDevice(f"{selector} is not a whole disk")
            devices = [self._read_sysfs(block_dir)]
        if not devices:
            raise NoDevice(f"{selector} is not a whole disk")
        return devices[0]

    def block_path(self, device: TargetDevice) -> str:
        return device.path

    def _node_exists(self, path: str) -> bool:
        return os.path.exists(path)

    def _unmount_all(self, block: str, subphase: str) -> None:
        for source, mountpoints in read_mounts(self.proc_mounts).items():
            if not on_device(source, block):
                continue
            for mountpoint in mountpoints:
                logger.info(f"Unmounting {source} from {mountpoint}")
                run_command(['umount', mountpoint], subphase, timeout=self.command_timeout, privileged=True)

    def acquire(self, device: TargetDevice) -> str:
        block = self.block_path(device)
        self._unmount_all(block, 'offline')
        return block

    def release(self, device: TargetDevice) -> None:
        block = self.block_path(device)
        self._unmount_all(block, 'unmount')
        run_command(['sync'], 'online', timeout=self.command_timeout)

    def raw_write(self, image_path: Path, device: TargetDevice) -> None:
        block = self.block_path(device)
        logger.info(f"Writing {image_path} to {block}")
        run_command(
            ['dd', f"if={image_path}", f"of={block}", 'bs=4M', 'conv=fsync', 'oflag=sync', 'status=none'],
            'write', timeout=self.write_timeout, privileged=True,
        )
        run_command(['sync'], 'write', timeout=self.write_timeout)

    def _settle(self, block: str, subphase: str) -> None:
        run_command(['partprobe', block], subphase, timeout=self.command_timeout,
                    check=False, privileged=True)

    def append_partition(self, device: TargetDevice, name: str, size_mib: int) -> PartitionHandle:
        block = self.block_path(device)
        run_command(['sgdisk', '-e', block], 'partition', timeout=self.command_timeout, privileged=True)
        run_command(
            ['sgdisk', '-n', f"0:0:+{size_mib}MiB", '-t', '0:0700', '-c', f"0:{name}", block],
            'partition', timeout=self.command_timeout, privileged=True,
        )

        for attempt in range(PARTITION_SETTLE_ATTEMPTS):
            self._settle(block, 'partition')
            result = run_command(['lsblk', '-J', '-o', 'NAME,PATH,PARTLABEL,PARTN', block],
                                 'partition', timeout=self.command_timeout)
            try:
                partition = find_partition(result.stdout, name)
            except ValueError as e:
                raise PlatformFailure('partition', f"cannot parse lsblk output: {e}")
            if partition is not None and self._node_exists(partition.path):
                logger.info(f"Partition {name} is {partition.path}")
                return partition
            time.sleep(1)

        raise PlatformFailure('partition', f"partition {name} did not appear on {block}")

    def format_fat32(self, partition: PartitionHandle, label: str) -> None:
        run_command(['mkfs.vfat', '-F', '32', '-n', label, partition.path], 'format',
                    timeout=self.command_timeout, privileged=True)

    def mount(self, partition: PartitionHandle, mount_dir: Path) -> Path:
        mount_dir.mkdir(parents=True, exist_ok=True)
        run_command(['mount', partition.path, str(mount_dir)], 'mount',
                    timeout=self.command_timeout, privileged=True)
        return mount_dir

    def unmount(self, mount_point: Path) -> None:
        run_command(['umount', str(mount_point)], 'unmount', timeout=self.command_timeout, privileged=True)
        run_command(['sync'], 'unmount', timeout=self.command_timeout)

    def format_device(self, device: TargetDevice, label: str) -> None:
        block = self.block_path(device)
        self._unmount_all(block, 'offline')
        run_command(['parted', '-s', block, 'mklabel', 'gpt'], 'partition',
                    timeout=self.command_timeout, privileged=True)
        run_command(['parted', '-s', block, 'mkpart', 'primary', 'fat32', '1MiB', '100%'], 'partition',
                    timeout=self.command_timeout, privileged=True)
        self._settle(block, 'partition')

        partition = partition_path(block, 1)
        for attempt in range(PARTITION_SETTLE_ATTEMPTS):
            if self._node_exists(partition):
                break
            time.sleep(1)
        else:
            raise PlatformFailure('partition', f"partition {partition} was not created")

        run_command(['mkfs.vfat', '-F', '32', '-n', label, partition], 'format',
                    timeout=self.command_timeout, privileged=True)
        run_command(['sync'], 'format', timeout=self.command_timeout)
        logger.info(f"Formatted {block} as FAT32 ({label})")

    def diagnostics(self) -> List[Diagnostic]:
        checks = super().diagnostics()
        if hasattr(os, 'geteuid') and os.geteuid() == 0:
            checks.append(('privileges', True, 'running as root'))
        elif command_available('sudo'):
            result = run_command(['sudo', '-n', 'true'], 'debug', timeout=self.command_timeout, check=False)
            checks.append(('privileges', result.returncode == 0,
                           'passwordless sudo' if result.returncode == 0 else 'sudo requires a password'))
        else:
            checks.append(('privileges', False, 'not root and sudo is not installed'))
        return checks
