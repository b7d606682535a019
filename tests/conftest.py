import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import requests

from syntropy_provision.errors import NoDevice, PlatformFailure
from syntropy_provision.hostdev.base import GIB, HostAdapter, PartitionHandle, TargetDevice
from syntropy_provision.identity import IdentityManager
from syntropy_provision.iso_cache import MIN_IMAGE_BYTES, RELEASES
from syntropy_provision.keystore import KeyStore
from syntropy_provision.settings import Settings


def make_device(path='/dev/sdb', size_bytes=8 * GIB, model='SanDisk Ultra', serial='AA01',
                platform='linux', **kwargs) -> TargetDevice:
    return TargetDevice(
        platform_id=path.rsplit('/', 1)[-1],
        path=path,
        size_bytes=size_bytes,
        model=model,
        serial=serial,
        removable=True,
        platform=platform,
        bus='usb',
        **kwargs,
    )


def make_sparse_file(path: Path, size: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.truncate(size)
    return path


class FakeRunner:
    """Stands in for run_command, answering by the first word of the command"""

    def __init__(self, outputs=None, failures=()):
        self.outputs = outputs or {}
        self.failures = set(failures)
        self.commands = []

    def __call__(self, command, subphase, timeout=None, check=True, privileged=False, input_text=None):
        self.commands.append((list(command), subphase, privileged))
        if command[0] in self.failures:
            raise PlatformFailure(subphase, f"'{command[0]}' failed")
        return subprocess.CompletedProcess(command, 0, stdout=self.outputs.get(command[0], ''), stderr='')

    def names(self):
        return [command[0] for command, _, _ in self.commands]


class FakeResponse:
    def __init__(self, chunks, status_code=200, length=None, error=None):
        self.chunks = chunks
        self.status_code = status_code
        self.ok = status_code < 400
        self.headers = {} if length is None else {'Content-Length': str(length)}
        self.error = error

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def iter_content(self, chunk_size=1):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def fake_session(head_status=None, response=None):
    """Session whose HEAD answers per URL and whose GET yields response"""
    head_status = head_status or {}
    session = MagicMock(spec=requests.Session)

    def head(url, **kwargs):
        status = head_status.get(url)
        if status is None:
            raise requests.ConnectionError(f"cannot reach {url}")
        return FakeResponse([], status_code=status)

    session.head.side_effect = head
    session.get.return_value = response
    return session


class FakeAdapter(HostAdapter):
    """In-memory host adapter recording every call"""

    platform = 'linux'

    def __init__(self, devices=None, extra=None, confirm=True, fail_on=None, platform='linux'):
        super().__init__(None)
        self.platform = platform
        self.devices = list(devices or [])
        self.extra = list(extra or [])
        self.confirm = confirm
        self.fail_on = dict(fail_on or {})
        self.calls = []
        self.prompts = []
        self.placed = {}
        self.state = 'online'

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        failure = self.fail_on.get(name)
        if failure is not None:
            raise failure

    def call_names(self):
        return [call[0] for call in self.calls]

    def enumerate_devices(self):
        self._call('enumerate_devices')
        return list(self.devices)

    def describe_device(self, selector):
        self._call('describe_device', selector)
        for device in self.devices + self.extra:
            if device.path == selector:
                return device
        raise NoDevice(f"device {selector} does not exist")

    def acquire(self, device):
        self._call('acquire', device.path)
        self.state = 'offline'
        return device.path

    def release(self, device):
        self._call('release', device.path)
        self.state = 'online'

    def raw_write(self, image_path, device):
        assert not device.is_system_or_boot
        self._call('raw_write', str(image_path), device.path)

    def append_partition(self, device, name, size_mib):
        self._call('append_partition', device.path, name, size_mib)
        return PartitionHandle(device=device.path, path=f"{device.path}2", name=name, number=2)

    def format_fat32(self, partition, label):
        self._call('format_fat32', partition.path, label)

    def mount(self, partition, mount_dir):
        self._call('mount', partition.path)
        mount_dir.mkdir(parents=True, exist_ok=True)
        return mount_dir

    def copy_files(self, files, mount_point):
        self._call('copy_files', [f.name for f in files])
        for path in files:
            shutil.copy(path, mount_point / path.name)
            self.placed[path.name] = path.read_text(encoding='utf-8')

    def list_files(self, mount_point):
        self._call('list_files', str(mount_point))
        return super().list_files(mount_point)

    def unmount(self, mount_point):
        self._call('unmount', str(mount_point))

    def format_device(self, device, label):
        self._call('format_device', device.path, label)

    def confirm_interactive(self, prompt):
        self.prompts.append(prompt)
        return self.confirm


@pytest.fixture
def settings(tmp_path):
    return Settings(
        state_root=tmp_path / '.syntropy',
        operator='tester',
        tls_ca_key_bits=1024,
        tls_node_key_bits=1024,
    )


@pytest.fixture
def manager(settings):
    return IdentityManager(KeyStore(settings.keys_dir), settings.locks_dir, 1024, 1024)


@pytest.fixture
def identity(manager):
    return manager.ensure_identity('node-01')


@pytest.fixture
def cached_iso(settings):
    """A sparse file standing in for a downloaded ISO"""
    path = settings.cache_dir / 'iso' / RELEASES[0].filename
    return make_sparse_file(path, MIN_IMAGE_BYTES + 1)


@pytest.fixture
def usb_device():
    return make_device()
