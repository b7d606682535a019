import threading

import pytest
import requests

from syntropy_provision import iso_cache
from syntropy_provision.errors import (
    Canceled,
    DownloadTruncated,
    ImageUnavailable,
    IOFailed,
    NoCandidateReachable,
)
from syntropy_provision.iso_cache import RELEASES, IsoCache, IsoRelease, image_size

from conftest import FakeResponse, fake_session, make_sparse_file

SMALL_LIMIT = 1024
RELEASE_A = IsoRelease('24.04', 'https://mirror.test/a.iso', 'a.iso')
RELEASE_B = IsoRelease('22.04', 'https://mirror.test/b.iso', 'b.iso')


@pytest.fixture
def small_images(monkeypatch):
    monkeypatch.setattr(iso_cache, 'MIN_IMAGE_BYTES', SMALL_LIMIT)


def test_explicit_image(tmp_path):
    path = make_sparse_file(tmp_path / 'custom.iso', iso_cache.MIN_IMAGE_BYTES + 1)
    image = IsoCache(tmp_path / 'cache').ensure_image(path)

    assert image.path == path
    assert image.size_bytes == iso_cache.MIN_IMAGE_BYTES + 1
    assert image.source_url.startswith('file://')


def test_explicit_image_missing(tmp_path):
    with pytest.raises(IOFailed):
        IsoCache(tmp_path / 'cache').ensure_image(tmp_path / 'absent.iso')


def test_explicit_image_too_small(tmp_path):
    path = make_sparse_file(tmp_path / 'custom.iso', iso_cache.MIN_IMAGE_BYTES)
    with pytest.raises(ImageUnavailable) as excinfo:
        IsoCache(tmp_path / 'cache').ensure_image(path)
    assert excinfo.value.exit_code == 5


def test_size_threshold_is_exclusive(tmp_path):
    exact = make_sparse_file(tmp_path / 'exact.iso', iso_cache.MIN_IMAGE_BYTES)
    above = make_sparse_file(tmp_path / 'above.iso', iso_cache.MIN_IMAGE_BYTES + 1)

    assert image_size(exact) is None
    assert image_size(above) == iso_cache.MIN_IMAGE_BYTES + 1
    assert image_size(tmp_path / 'absent.iso') is None


def test_cached_image_is_reused_without_network(settings, cached_iso):
    session = fake_session()
    image = IsoCache(settings.cache_dir, session=session).ensure_image()

    assert image.path == cached_iso
    assert image.source_url == RELEASES[0].url
    session.head.assert_not_called()
    session.get.assert_not_called()


def test_invalid_cached_image_is_removed(tmp_path, small_images):
    cache = IsoCache(tmp_path, releases=[RELEASE_A, RELEASE_B])
    stale = make_sparse_file(cache.iso_dir / 'a.iso', 10)
    good = make_sparse_file(cache.iso_dir / 'b.iso', SMALL_LIMIT + 1)

    image = cache.find_cached()
    assert image.path == good
    assert not stale.exists()


def test_probe_falls_back_to_next_release(tmp_path):
    session = fake_session(head_status={RELEASE_A.url: 404, RELEASE_B.url: 200})
    cache = IsoCache(tmp_path, releases=[RELEASE_A, RELEASE_B], session=session)

    assert cache.probe() == RELEASE_B
    assert session.head.call_count == 2


def test_probe_with_nothing_reachable(tmp_path):
    cache = IsoCache(tmp_path, releases=[RELEASE_A, RELEASE_B], session=fake_session())
    with pytest.raises(NoCandidateReachable) as excinfo:
        cache.ensure_image()
    assert excinfo.value.exit_code == 5


def test_download_success(tmp_path, small_images):
    payload = [b'x' * 600, b'y' * 600]
    session = fake_session(
        head_status={RELEASE_A.url: 200},
        response=FakeResponse(payload, length=1200),
    )
    cache = IsoCache(tmp_path, releases=[RELEASE_A], session=session)

    image = cache.ensure_image()
    assert image.path == cache.iso_dir / 'a.iso'
    assert image.size_bytes == 1200
    assert image.source_url == RELEASE_A.url
    assert not (cache.iso_dir / 'a.iso.tmp').exists()


def test_truncated_download_leaves_nothing_behind(tmp_path, small_images):
    session = fake_session(
        head_status={RELEASE_A.url: 200},
        response=FakeResponse([b'x' * 600, b'y' * 600], length=5000),
    )
    cache = IsoCache(tmp_path, releases=[RELEASE_A], session=session)

    with pytest.raises(DownloadTruncated):
        cache.ensure_image()
    assert list(cache.iso_dir.glob('a.iso*')) == []


def test_connection_drop_is_truncation(tmp_path, small_images):
    response = FakeResponse([b'x' * 600], error=requests.ConnectionError('reset by peer'))
    session = fake_session(head_status={RELEASE_A.url: 200}, response=response)
    cache = IsoCache(tmp_path, releases=[RELEASE_A], session=session)

    with pytest.raises(DownloadTruncated, match='after 600 bytes'):
        cache.ensure_image()
    assert not (cache.iso_dir / 'a.iso.tmp').exists()


def test_small_download_is_rejected(tmp_path, small_images):
    session = fake_session(head_status={RELEASE_A.url: 200}, response=FakeResponse([b'x' * 100], length=100))
    cache = IsoCache(tmp_path, releases=[RELEASE_A], session=session)

    with pytest.raises(DownloadTruncated, match='only 100 bytes'):
        cache.ensure_image()


def test_cancel_during_download(tmp_path, small_images):
    cancel = threading.Event()
    cancel.set()
    session = fake_session(head_status={RELEASE_A.url: 200}, response=FakeResponse([b'x' * 2000], length=2000))
    cache = IsoCache(tmp_path, releases=[RELEASE_A], session=session)

    with pytest.raises(Canceled) as excinfo:
        cache.ensure_image(cancel=cancel)
    assert excinfo.value.subphase == 'download'
    assert list(cache.iso_dir.glob('a.iso*')) == []
