"""
Node provisioning pipeline.

Turns a provisioning intent into a bootable USB device: identity, install
image, seed, device selection, then the destructive phases (acquire, write,
partition, seed placement, release) and finally the node record.

Phases up to RenderSeed touch nothing but the operator's state directories and
stop as soon as cancellation is requested. The destructive phases check for
cancellation only between subphases, never retry, and always end with exactly
one ReleaseDevice.
"""

import logging
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .console import format_size, write_info, write_phase, write_success, write_warning
from .errors import (
    AmbiguousDevice,
    Canceled,
    IdentityFailure,
    NoDevice,
    PlatformFailure,
    ProvisionError,
    RenderFailure,
    Unsupported,
)
from .hostdev.base import DeviceState, DeviceStateTracker, HostAdapter, TargetDevice, system_mounts
from .identity import Identity, IdentityManager, write_tls_bundle
from .intent import ProvisionIntent, ensure_valid
from .iso_cache import InstallImage, IsoCache
from .keystore import KeyStore
from .locks import LockBusy, file_lock, lock_name
from .records import NodeRecord, NodeRecordWriter
from .seed import build_seed_context, render_seed, write_seed
from .settings import Settings

logger = logging.getLogger(__name__)

PHASES = [
    'ValidateIntent',
    'ResolveIdentity',
    'ResolveImage',
    'ResolveDevice',
    'RenderSeed',
    'AcquireDevice',
    'WriteImage',
    'AppendSeedPartition',
    'PlaceSeed',
    'ReleaseDevice',
    'RecordNode',
]

# NoCloud finds its seed by this exact filesystem label
CIDATA = 'CIDATA'


class CancelToken(threading.Event):
    """Set from the SIGINT handler; checked by the pipeline at safe points"""

    def check(self, subphase: Optional[str] = None) -> None:
        if self.is_set():
            raise Canceled('operation interrupted by operator', subphase=subphase)


@dataclass
class ProvisioningSession:
    session_id: str
    intent: ProvisionIntent
    work_dir: Path
    started_at: datetime
    phase: str = ''
    chosen_device: Optional[TargetDevice] = None
    chosen_image: Optional[InstallImage] = None
    identity_snapshot: Dict[str, str] = field(default_factory=dict)
    device_state: DeviceStateTracker = field(default_factory=DeviceStateTracker)
    record_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)


class ProvisioningPipeline:
    """Runs one "create node" operation against a host adapter"""

    def __init__(
        self,
        settings: Settings,
        adapter: HostAdapter,
        identity_manager: Optional[IdentityManager] = None,
        iso_cache: Optional[IsoCache] = None,
        record_writer: Optional[NodeRecordWriter] = None,
        cancel: Optional[CancelToken] = None,
        keep_work_dir: bool = False,
        clock: Callable[[], int] = time.time_ns,
    ):
        self.settings = settings
        self.adapter = adapter
        self.identity_manager = identity_manager or IdentityManager(
            KeyStore(settings.keys_dir),
            settings.locks_dir,
            settings.tls_ca_key_bits,
            settings.tls_node_key_bits,
        )
        self.iso_cache = iso_cache
        self.record_writer = record_writer or NodeRecordWriter(settings.nodes_dir, settings.locks_dir)
        self.cancel = cancel or CancelToken()
        self.keep_work_dir = keep_work_dir
        self.clock = clock

    def _enter(self, session: Optional[ProvisioningSession], name: str, check_cancel: bool = True) -> None:
        index = PHASES.index(name) + 1
        if session is not None:
            session.phase = name
        write_phase(index, len(PHASES), name)
        logger.info(f"Phase {index}/{len(PHASES)}: {name}")
        if check_cancel:
            self.cancel.check()

    def _new_session(self, intent: ProvisionIntent) -> ProvisioningSession:
        session_id = uuid.uuid4().hex[:12]
        base = Path(intent.work_dir).expanduser() if intent.work_dir else self.settings.work_root
        stamp = datetime.now().strftime('%Y%m%d-%H%M%S')
        work_dir = base / f"usb-{stamp}-{session_id}"
        try:
            work_dir.mkdir(parents=True, exist_ok=False)
            work_dir.chmod(0o700)
        except OSError as e:
            raise PlatformFailure('workdir', f"cannot create work directory {work_dir}: {e}",
                                  suggestion='Check free space and permissions, or pass --work-dir.')
        logger.info(f"Session {session_id} working in {work_dir}")
        return ProvisioningSession(
            session_id=session_id,
            intent=intent,
            work_dir=work_dir,
            started_at=datetime.now(timezone.utc),
        )

    def run(self, intent: ProvisionIntent) -> ProvisioningSession:
        self._enter(None, 'ValidateIntent')
        intent = ensure_valid(intent)
        if not self.adapter.writes_media:
            raise Unsupported('offline', f"writing install media is not supported on {self.adapter.platform}")

        session = self._new_session(intent)
        try:
            self._execute(session)
        except ProvisionError as e:
            logger.error(f"Provisioning {intent.node_name} failed in {session.phase}: {e}")
            write_warning(f"Work directory retained for inspection: {session.work_dir}")
            raise

        if self.keep_work_dir:
            write_info(f"Work directory kept at {session.work_dir}")
        else:
            shutil.rmtree(session.work_dir, ignore_errors=True)
            logger.debug(f"Removed work directory {session.work_dir}")
        return session

    def _execute(self, session: ProvisioningSession) -> None:
        intent = session.intent

        self._enter(session, 'ResolveIdentity')
        identity = self.identity_manager.ensure_identity(intent.node_name, intent.owner_key_ref)
        session.identity_snapshot = identity.fingerprints()
        try:
            write_tls_bundle(identity.tls, session.work_dir / 'certs')
        except OSError as e:
            raise IdentityFailure(f"cannot write the TLS bundle: {e}", subphase='certs')
        if identity.reused:
            write_info(f"Reusing existing keys for {intent.node_name}")

        self._enter(session, 'ResolveImage')
        session.chosen_image = self.resolve_image(intent)
        write_info(f"Install image: {session.chosen_image.path} ({format_size(session.chosen_image.size_bytes)})")

        self._enter(session, 'ResolveDevice')
        device = self.resolve_device(intent)
        session.chosen_device = device
        write_info(f"Target device: {device.describe()}")

        self._enter(session, 'RenderSeed')
        context = build_seed_context(intent, identity, self.settings, clock=self.clock)
        bundle = render_seed(context)
        try:
            seed_files = write_seed(bundle, session.work_dir / 'cloud-init')
        except OSError as e:
            raise RenderFailure(f"cannot write the seed files: {e}", subphase='seed',
                                suggestion='Check free space and permissions of the work directory.')

        if not intent.force:
            prompt = (
                f"ALL DATA on {device.path} will be erased "
                f"(model: {device.model or 'unknown'}, serial: {device.serial or 'unknown'}, "
                f"size: {format_size(device.size_bytes)})"
            )
            if not self.adapter.confirm_interactive(prompt):
                raise Canceled('operator declined to erase the device', subphase='confirm')

        lock_path = self.settings.locks_dir / f"device-{lock_name(device.path)}.lock"
        try:
            with file_lock(lock_path, blocking=False):
                self._write_media(session, device, seed_files)
        except LockBusy:
            raise PlatformFailure('offline', f"{device.path} is in use by another provisioning session")

        self._record(session, identity, context['created_at'])
        write_success(f"Node {intent.node_name} provisioned on {device.path}")

    def resolve_image(self, intent: ProvisionIntent) -> InstallImage:
        cache = self.iso_cache
        if cache is None:
            cache_dir = Path(intent.cache_dir).expanduser() if intent.cache_dir else self.settings.cache_dir
            cache = IsoCache(cache_dir, download_timeout=self.settings.download_timeout)
        explicit = Path(self.adapter.convert_path(intent.iso_path)) if intent.iso_path else None
        return cache.ensure_image(explicit, cancel=self.cancel)

    def resolve_device(self, intent: ProvisionIntent) -> TargetDevice:
        if intent.auto_detect:
            candidates = [
                d for d in self.adapter.enumerate_devices()
                if not d.is_system_or_boot and not system_mounts(d)
            ]
            if not candidates:
                raise NoDevice('no removable device between 1 GiB and 2 TiB was found')
            if len(candidates) > 1:
                raise AmbiguousDevice(candidates)
            device = candidates[0]
        else:
            device = self.adapter.describe_device(intent.device_selector)
        self.adapter.validate_device(device)
        return device

    def _write_media(self, session: ProvisioningSession, device: TargetDevice, seed_files: List[Path]) -> None:
        self._enter(session, 'AcquireDevice')
        tracker = session.device_state
        primary = None
        try:
            self.adapter.acquire(device)
            tracker.advance(DeviceState.OFFLINE)
            tracker.advance(DeviceState.RAW_MOUNTED)

            self._enter(session, 'WriteImage', check_cancel=False)
            self.cancel.check('write')
            self.adapter.raw_write(session.chosen_image.path, device)
            tracker.advance(DeviceState.IMAGE_WRITTEN)

            self._enter(session, 'AppendSeedPartition', check_cancel=False)
            self.cancel.check('partition')
            partition = self.adapter.append_partition(device, CIDATA, self.settings.cidata_size_mib)
            tracker.advance(DeviceState.PARTITIONED)
            self.cancel.check('format')
            self.adapter.format_fat32(partition, CIDATA)
            tracker.advance(DeviceState.FORMATTED)

            self._enter(session, 'PlaceSeed', check_cancel=False)
            self.cancel.check('mount')
            self._place_seed(session, partition, seed_files)
            tracker.advance(DeviceState.SEEDED)
        except Exception as e:
            primary = e
            raise
        finally:
            self._release(session, device, primary)

    def _place_seed(self, session: ProvisioningSession, partition, seed_files: List[Path]) -> None:
        mount_point = self.adapter.mount(partition, session.work_dir / 'cidata-mount')
        try:
            self.adapter.copy_files(seed_files, mount_point)
            self._audit_seed(mount_point, seed_files)
        except ProvisionError:
            try:
                self.adapter.unmount(mount_point)
            except ProvisionError as e:
                logger.error(f"Unmounting {mount_point} after a failed copy also failed: {e}")
            raise
        self.adapter.unmount(mount_point)

    def _audit_seed(self, mount_point: Path, seed_files: List[Path]) -> None:
        listing = self.adapter.list_files(mount_point)
        write_info(f"Seed partition contents ({mount_point}):")
        for name, size in listing:
            write_info(f"  {name:<16} {size:>8} bytes")
            logger.info(f"Seed partition holds {name} ({size} bytes)")
        present = {name for name, _ in listing}
        missing = [path.name for path in seed_files if path.name not in present]
        if missing:
            raise PlatformFailure('copy', f"seed files missing from {mount_point}: {', '.join(missing)}")

    def _release(self, session: ProvisioningSession, device: TargetDevice, primary: Optional[Exception]) -> None:
        self._enter(session, 'ReleaseDevice', check_cancel=False)
        try:
            self.adapter.release(device)
        except ProvisionError as e:
            if primary is None:
                raise
            logger.error(f"Releasing {device.path} failed after an earlier error: {e}")
            if isinstance(primary, ProvisionError):
                primary.release_error = e
            return
        session.device_state.advance(DeviceState.ONLINE)

    def _record(self, session: ProvisioningSession, identity: Identity, created_at: str) -> None:
        self._enter(session, 'RecordNode', check_cancel=False)
        intent = session.intent
        record = NodeRecord(
            name=intent.node_name,
            description=intent.description,
            created_at=created_at,
            created_by=intent.created_by,
            fingerprints=identity.fingerprints(),
            paths={'identity_dir': str(self.settings.keys_dir)},
        )
        try:
            session.record_path = self.record_writer.write(record, overwrite=identity.reused)
        except (ProvisionError, OSError) as e:
            message = f"Media is ready but the node record was not written: {e}"
            session.warnings.append(message)
            logger.warning(message)
            write_warning(message)
