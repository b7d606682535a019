import json

import pytest

from syntropy_provision.errors import NoDevice, PlatformFailure
from syntropy_provision.hostdev import linux
from syntropy_provision.hostdev.base import GIB, PartitionHandle
from syntropy_provision.hostdev.linux import LinuxAdapter, find_partition, on_device, parse_lsblk, read_mounts

from conftest import FakeRunner, make_device

LSBLK_OUTPUT = json.dumps({'blockdevices': [
    {
        'name': 'sda', 'path': '/dev/sda', 'type': 'disk', 'size': 512 * GIB,
        'model': 'Samsung SSD', 'vendor': 'ATA', 'serial': 'S1', 'rm': False,
        'tran': 'sata', 'hotplug': False, 'mountpoint': None,
        'children': [
            {'name': 'sda1', 'path': '/dev/sda1', 'type': 'part', 'mountpoint': '/boot/efi'},
            {'name': 'sda2', 'path': '/dev/sda2', 'type': 'part', 'mountpoint': '/'},
        ],
    },
    {
        'name': 'sdb', 'path': '/dev/sdb', 'type': 'disk', 'size': 16 * GIB,
        'model': 'Cruzer Blade ', 'vendor': 'SanDisk', 'serial': 'U1', 'rm': True,
        'tran': 'usb', 'hotplug': True, 'mountpoint': None,
        'children': [
            {'name': 'sdb1', 'path': '/dev/sdb1', 'type': 'part', 'mountpoint': '/media/usb'},
        ],
    },
    {
        'name': 'sdc', 'path': '/dev/sdc', 'type': 'disk', 'size': 512 * 1024 ** 2,
        'model': 'Tiny', 'serial': 'U2', 'rm': '1', 'tran': 'usb', 'mountpoint': None,
    },
    {'name': 'loop0', 'path': '/dev/loop0', 'type': 'loop', 'size': 4 * GIB},
]})

PARTITIONS_OUTPUT = json.dumps({'blockdevices': [
    {
        'name': 'sdb', 'path': '/dev/sdb',
        'children': [
            {'name': 'sdb1', 'path': '/dev/sdb1', 'partlabel': 'ISO9660', 'partn': 1},
            {'name': 'sdb2', 'path': '/dev/sdb2', 'partlabel': 'Appended2', 'partn': 2},
            {'name': 'sdb3', 'path': '/dev/sdb3', 'partlabel': 'CIDATA', 'partn': 3},
        ],
    },
]})


@pytest.fixture
def runner(monkeypatch):
    fake = FakeRunner(outputs={'lsblk': LSBLK_OUTPUT})
    monkeypatch.setattr(linux, 'run_command', fake)
    monkeypatch.setattr(linux.time, 'sleep', lambda seconds: None)
    return fake


@pytest.fixture
def adapter(tmp_path, monkeypatch):
    mounts = tmp_path / 'mounts'
    mounts.write_text(
        '/dev/sda2 / ext4 rw 0 0\n'
        '/dev/sdb1 /media/my\\040usb vfat rw 0 0\n'
        'tmpfs /run tmpfs rw 0 0\n'
    )
    adapter = LinuxAdapter()
    adapter.proc_mounts = str(mounts)
    adapter.proc_swaps = str(tmp_path / 'swaps')
    adapter.sys_block = str(tmp_path / 'block')
    monkeypatch.setattr(adapter, '_node_exists', lambda path: True)
    return adapter


def test_parse_lsblk():
    devices = {d.path: d for d in parse_lsblk(LSBLK_OUTPUT)}

    assert set(devices) == {'/dev/sda', '/dev/sdb', '/dev/sdc'}
    assert devices['/dev/sda'].is_system_or_boot
    assert not devices['/dev/sda'].removable
    assert devices['/dev/sda'].mountpoints == ['/', '/boot/efi']
    assert devices['/dev/sdb'].removable
    assert devices['/dev/sdb'].model == 'Cruzer Blade'
    assert devices['/dev/sdb'].size_bytes == 16 * GIB
    assert devices['/dev/sdc'].removable


def test_find_partition_by_name():
    partition = find_partition(PARTITIONS_OUTPUT, 'CIDATA')
    assert partition == PartitionHandle(device='/dev/sdb', path='/dev/sdb3', name='CIDATA', number=3)
    assert find_partition(PARTITIONS_OUTPUT, 'MISSING') is None


@pytest.mark.parametrize('source, block, expected', [
    ('/dev/sdb', '/dev/sdb', True),
    ('/dev/sdb1', '/dev/sdb', True),
    ('/dev/sdb12', '/dev/sdb', True),
    ('/dev/sdba1', '/dev/sdb', False),
    ('/dev/nvme0n1p2', '/dev/nvme0n1', True),
    ('/dev/nvme0n10', '/dev/nvme0n1', False),
    ('/dev/mmcblk0p1', '/dev/mmcblk0', True),
    ('/dev/sdc1', '/dev/sdb', False),
])
def test_on_device(source, block, expected):
    assert on_device(source, block) is expected


def test_read_mounts_unescapes_spaces(adapter):
    mounts = read_mounts(adapter.proc_mounts)
    assert mounts['/dev/sdb1'] == ['/media/my usb']
    assert 'tmpfs' not in mounts


def test_enumerate_filters_fixed_and_small_disks(adapter, runner):
    assert [d.path for d in adapter.enumerate_devices()] == ['/dev/sdb']


def test_enumerate_falls_back_to_sysfs(adapter, runner, tmp_path):
    runner.failures.add('lsblk')
    disk = tmp_path / 'block' / 'sdb'
    (disk / 'device').mkdir(parents=True)
    (disk / 'size').write_text(str(8 * GIB // 512))
    (disk / 'removable').write_text('1')
    (disk / 'device' / 'model').write_text('Flash Disk  \n')
    fixed = tmp_path / 'block' / 'sda'
    fixed.mkdir()
    (fixed / 'size').write_text(str(512 * GIB // 512))
    (fixed / 'removable').write_text('0')

    devices = adapter.enumerate_devices()
    assert [d.path for d in devices] == ['/dev/sdb']
    assert devices[0].model == 'Flash Disk'
    assert devices[0].size_bytes == 8 * GIB
    assert devices[0].mountpoints == ['/media/my usb']


def test_sysfs_fallback_keeps_usb_disks_not_marked_removable(adapter, runner, tmp_path):
    runner.failures.add('lsblk')
    real = tmp_path / 'devices' / 'pci0000:00' / '0000:00:14.0' / 'usb2' / '2-1' / 'host6' / 'block' / 'sdd'
    (real / 'device').mkdir(parents=True)
    (real / 'size').write_text(str(64 * GIB // 512))
    (real / 'removable').write_text('0')
    (real / 'device' / 'model').write_text('Portable SSD\n')
    (tmp_path / 'block').mkdir()
    (tmp_path / 'block' / 'sdd').symlink_to(real)

    devices = adapter.enumerate_devices()
    assert [d.path for d in devices] == ['/dev/sdd']
    assert devices[0].removable
    assert devices[0].bus == 'usb'
    assert devices[0].model == 'Portable SSD'


def test_describe_missing_device(adapter, runner, monkeypatch):
    monkeypatch.setattr(adapter, '_node_exists', lambda path: False)
    with pytest.raises(NoDevice):
        adapter.describe_device('/dev/sdz')


def test_acquire_unmounts_partitions(adapter, runner):
    assert adapter.acquire(make_device()) == '/dev/sdb'
    assert runner.commands == [(['umount', '/media/my usb'], 'offline', True)]


def test_raw_write_uses_dd(adapter, runner, tmp_path):
    adapter.raw_write(tmp_path / 'ubuntu.iso', make_device())

    command, subphase, privileged = runner.commands[0]
    assert command[0] == 'dd'
    assert f"if={tmp_path / 'ubuntu.iso'}" in command
    assert 'of=/dev/sdb' in command
    assert subphase == 'write'
    assert privileged
    assert runner.names()[-1] == 'sync'


def test_append_partition_finds_partition_by_name(adapter, runner):
    runner.outputs['lsblk'] = PARTITIONS_OUTPUT
    partition = adapter.append_partition(make_device(), 'CIDATA', 128)

    assert partition.path == '/dev/sdb3'
    assert runner.commands[0][0] == ['sgdisk', '-e', '/dev/sdb']
    assert runner.commands[1][0] == ['sgdisk', '-n', '0:0:+128MiB', '-t', '0:0700', '-c', '0:CIDATA', '/dev/sdb']


def test_append_partition_gives_up(adapter, runner):
    runner.outputs['lsblk'] = json.dumps({'blockdevices': [{'name': 'sdb', 'children': []}]})

    with pytest.raises(PlatformFailure) as excinfo:
        adapter.append_partition(make_device(), 'CIDATA', 128)
    assert excinfo.value.subphase == 'partition'
    assert runner.names().count('partprobe') == linux.PARTITION_SETTLE_ATTEMPTS


def test_format_fat32_label(adapter, runner):
    partition = PartitionHandle(device='/dev/sdb', path='/dev/sdb3', name='CIDATA', number=3)
    adapter.format_fat32(partition, 'CIDATA')
    assert runner.commands == [(['mkfs.vfat', '-F', '32', '-n', 'CIDATA', '/dev/sdb3'], 'format', True)]


def test_format_device(adapter, runner):
    adapter.format_device(make_device(path='/dev/nvme1n1'), 'BACKUP')

    commands = [command for command, _, _ in runner.commands]
    assert ['parted', '-s', '/dev/nvme1n1', 'mklabel', 'gpt'] in commands
    assert ['mkfs.vfat', '-F', '32', '-n', 'BACKUP', '/dev/nvme1n1p1'] in commands


def test_release_is_idempotent(adapter, runner):
    device = make_device()
    adapter.release(device)
    adapter.release(device)
    assert runner.names().count('sync') == 2
