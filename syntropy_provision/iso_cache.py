"""
Ubuntu Server install image cache.

Images live in <cache>/iso/ under fixed file names. A cached image is only
trusted when it is larger than 500 MiB; anything smaller is a leftover from an
interrupted or bad download and is removed.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, NamedTuple, Optional

import requests

from .errors import (
    Canceled,
    DownloadTruncated,
    ImageUnavailable,
    IOFailed,
    NoCandidateReachable,
    OperationTimeout,
)
from .locks import file_lock
from .settings import MIB

logger = logging.getLogger(__name__)

MIN_IMAGE_BYTES = 500 * MIB
CHUNK_SIZE = MIB
PROBE_TIMEOUT = 10


class IsoRelease(NamedTuple):
    version: str
    url: str
    filename: str


# Newest first
RELEASES = [
    IsoRelease(
        '24.04',
        'https://releases.ubuntu.com/24.04/ubuntu-24.04-live-server-amd64.iso',
        'ubuntu-24.04-server.iso',
    ),
    IsoRelease(
        '22.04.5',
        'https://releases.ubuntu.com/22.04.5/ubuntu-22.04.5-live-server-amd64.iso',
        'ubuntu-22.04.5-server-amd64.iso',
    ),
    IsoRelease(
        '22.04',
        'https://releases.ubuntu.com/22.04/ubuntu-22.04.4-live-server-amd64.iso',
        'ubuntu-22.04-server.iso',
    ),
    IsoRelease(
        '20.04',
        'https://releases.ubuntu.com/20.04/ubuntu-20.04.6-live-server-amd64.iso',
        'ubuntu-20.04-server.iso',
    ),
]


@dataclass(frozen=True)
class InstallImage:
    path: Path
    size_bytes: int
    source_url: str
    verified_at: datetime


def image_size(path: Path) -> Optional[int]:
    """Size of a usable image at path, or None when missing or too small"""
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return None
    return size if size > MIN_IMAGE_BYTES else None


def _image(path: Path, size: int, source_url: str) -> InstallImage:
    return InstallImage(
        path=path,
        size_bytes=size,
        source_url=source_url,
        verified_at=datetime.now(timezone.utc),
    )


class IsoCache:
    """Resolves an install image from an explicit path, the cache or the network"""

    def __init__(self, cache_dir: Path, download_timeout: float = 30 * 60,
                 releases: Optional[List[IsoRelease]] = None, session: Optional[requests.Session] = None):
        self.iso_dir = Path(cache_dir) / 'iso'
        self.download_timeout = download_timeout
        self.releases = list(RELEASES if releases is None else releases)
        self.session = session or requests.Session()

    def ensure_image(self, explicit_path: Optional[Path] = None,
                     cancel: Optional[threading.Event] = None) -> InstallImage:
        if explicit_path is not None:
            return self.use_explicit(Path(explicit_path))

        self.iso_dir.mkdir(parents=True, exist_ok=True)
        with file_lock(self.iso_dir / '.lock'):
            cached = self.find_cached()
            if cached is not None:
                return cached
            release = self.probe()
            return self.download(release, cancel)

    def use_explicit(self, path: Path) -> InstallImage:
        if not path.is_file():
            raise IOFailed(f"ISO file not found: {path}")
        size = image_size(path)
        if size is None:
            raise ImageUnavailable(
                f"{path} is {path.stat().st_size} bytes; an install image must be larger than 500 MiB"
            )
        logger.info(f"Using operator supplied ISO {path} ({size} bytes)")
        return _image(path, size, path.resolve().as_uri())

    def find_cached(self) -> Optional[InstallImage]:
        """Reuse the newest valid cached image, removing invalid ones"""
        for release in self.releases:
            path = self.iso_dir / release.filename
            if not path.exists():
                continue
            size = image_size(path)
            if size is not None:
                logger.info(f"Using cached ISO {path} ({size} bytes)")
                return _image(path, size, release.url)
            logger.warning(f"Removing invalid cached ISO {path}")
            try:
                path.unlink()
            except OSError as e:
                raise IOFailed(f"cannot remove invalid cached ISO {path}: {e}")
        return None

    def probe(self) -> IsoRelease:
        """First release (in rank order) whose URL answers a HEAD request"""
        for release in self.releases:
            try:
                response = self.session.head(release.url, allow_redirects=True, timeout=PROBE_TIMEOUT)
            except requests.RequestException as e:
                logger.debug(f"Probe failed for {release.url}: {e}")
                continue
            if response.ok:
                logger.info(f"Ubuntu {release.version} is reachable at {release.url}")
                return release
            logger.debug(f"Probe of {release.url} returned HTTP {response.status_code}")
        raise NoCandidateReachable('none of the Ubuntu Server release URLs is reachable')

    def download(self, release: IsoRelease, cancel: Optional[threading.Event] = None) -> InstallImage:
        target = self.iso_dir / release.filename
        tmp = target.with_name(target.name + '.tmp')
        deadline = time.monotonic() + self.download_timeout
        logger.info(f"Downloading {release.url} to {target}")

        try:
            received, expected = self._stream(release.url, tmp, deadline, cancel)
            if expected is not None and received != expected:
                raise DownloadTruncated(f"received {received} of {expected} bytes from {release.url}")
            if received <= MIN_IMAGE_BYTES:
                raise DownloadTruncated(f"{release.url} yielded only {received} bytes")
            os.replace(tmp, target)
        except BaseException:
            if tmp.exists():
                tmp.unlink()
            raise

        logger.info(f"Downloaded {target} ({received} bytes)")
        return _image(target, received, release.url)

    def _stream(self, url: str, tmp: Path, deadline: float, cancel: Optional[threading.Event]):
        received = 0
        try:
            with self.session.get(url, stream=True, timeout=PROBE_TIMEOUT) as response:
                response.raise_for_status()
                length = response.headers.get('Content-Length')
                expected = int(length) if length and length.isdigit() else None
                next_report = 10
                with open(tmp, 'wb') as f:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if cancel is not None and cancel.is_set():
                            raise Canceled('download interrupted by operator', subphase='download')
                        if time.monotonic() > deadline:
                            raise OperationTimeout('download', f"download exceeded {self.download_timeout}s")
                        f.write(chunk)
                        received += len(chunk)
                        if expected and received * 100 // expected >= next_report:
                            logger.info(f"Download progress: {next_report}%")
                            next_report += 10
                    f.flush()
                    os.fsync(f.fileno())
        except requests.RequestException as e:
            raise DownloadTruncated(f"download of {url} failed after {received} bytes: {e}")
        except OSError as e:
            raise IOFailed(f"cannot write {tmp}: {e}")
        return received, expected
