"""Tests for verified base image fetching."""

import hashlib
from pathlib import Path
from typing import Any, List, Optional

import pytest
import requests

from dropkick.distro import (
    ChecksumMismatchError,
    ChecksumNotFoundError,
    UbuntuImageFetcher,
    find_checksum,
    parse_serial,
    sha256_file,
)
from dropkick.keys import SignatureVerificationError
from tests.conftest import FakeResponse, FakeSession

BASE_URL = "https://images.example.test/minimal/daily"
SERIAL = "20240110"
FILENAME = "jammy-minimal-cloudimg-amd64.img"
IMAGE = b"ubuntu image " * 5000
IMAGE_URL = f"{BASE_URL}/jammy/{SERIAL}/{FILENAME}"
SUMS_URL = f"{BASE_URL}/jammy/{SERIAL}/SHA256SUMS"
SIG_URL = f"{BASE_URL}/jammy/{SERIAL}/SHA256SUMS.gpg"


def _sums(content: bytes, filename: str = FILENAME) -> bytes:
    return (
        f"{hashlib.sha256(b'other').hexdigest()} *jammy-minimal-cloudimg-amd64.squashfs\n"
        f"{hashlib.sha256(content).hexdigest()} *{filename}\n"
    ).encode("utf-8")


class SignatureRecorder:

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.calls: List[Any] = []
        self.error = error

    def __call__(self, data: bytes, signature: bytes, keyring: Path, fingerprint: str) -> None:
        self.calls.append((data, signature, keyring, fingerprint))
        if self.error is not None:
            raise self.error


@pytest.fixture
def signature() -> SignatureRecorder:
    return SignatureRecorder()


@pytest.fixture
def fetcher(tmp_path: Path, session: FakeSession, signature: SignatureRecorder) -> UbuntuImageFetcher:
    session.routes[SUMS_URL] = FakeResponse(content=_sums(IMAGE))
    session.routes[SIG_URL] = FakeResponse(content=b"-----BEGIN PGP SIGNATURE-----")
    session.routes[IMAGE_URL] = FakeResponse(content=IMAGE, headers={"Content-Length": str(len(IMAGE))})
    return UbuntuImageFetcher(
        cache_dir=tmp_path / "cache",
        keyring=tmp_path / "keyring.gpg",
        session=session,
        base_url=BASE_URL,
        verify_signature=signature,
    )


def _leftovers(cache_dir: Path) -> List[str]:
    return sorted(p.name for p in cache_dir.iterdir() if p.name.startswith(".download-"))


class TestFindChecksum:

    def test_binary_marker(self) -> None:
        assert find_checksum(_sums(IMAGE).decode(), FILENAME) == hashlib.sha256(IMAGE).digest()

    def test_without_binary_marker(self) -> None:
        manifest = f"{hashlib.sha256(IMAGE).hexdigest()} {FILENAME}\n"
        assert find_checksum(manifest, FILENAME) == hashlib.sha256(IMAGE).digest()

    def test_exact_name_only(self) -> None:
        manifest = f"{hashlib.sha256(IMAGE).hexdigest()} *{FILENAME}.manifest\n"
        with pytest.raises(ChecksumNotFoundError):
            find_checksum(manifest, FILENAME)

    def test_bad_hex(self) -> None:
        with pytest.raises(ChecksumNotFoundError, match="hex decode"):
            find_checksum(f"zzzz *{FILENAME}\n", FILENAME)


class TestParseSerial:

    def test_serial_line(self) -> None:
        assert parse_serial("build_name=minimal\nserial=20240110\n") == "20240110"

    def test_missing(self) -> None:
        assert parse_serial("build_name=minimal\n") is None


class TestFetch:

    def test_downloads_and_caches(self, fetcher: UbuntuImageFetcher, session: FakeSession,
                                  signature: SignatureRecorder) -> None:
        path = fetcher.fetch(SERIAL)

        assert path == fetcher.cache_dir / f"ubuntu-jammy-amd64-{SERIAL}.img"
        assert path.read_bytes() == IMAGE
        assert session.urls().count(IMAGE_URL) == 1
        assert len(signature.calls) == 1
        data, sig, _, _ = signature.calls[0]
        assert data == _sums(IMAGE)
        assert sig.startswith(b"-----BEGIN PGP")
        assert _leftovers(fetcher.cache_dir) == []

    def test_cache_hit_skips_download(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        fetcher.cache_dir.mkdir(parents=True)
        fetcher.cache_path(SERIAL).write_bytes(IMAGE)

        path = fetcher.fetch(SERIAL)

        assert path.read_bytes() == IMAGE
        assert IMAGE_URL not in session.urls()

    def test_stale_cache_is_replaced_once(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        fetcher.cache_dir.mkdir(parents=True)
        fetcher.cache_path(SERIAL).write_bytes(b"corrupted")

        path = fetcher.fetch(SERIAL)

        assert path.read_bytes() == IMAGE
        assert session.urls().count(IMAGE_URL) == 1

    def test_checksum_mismatch_leaves_nothing_behind(self, fetcher: UbuntuImageFetcher,
                                                     session: FakeSession) -> None:
        session.routes[IMAGE_URL] = FakeResponse(content=b"tampered" * 100)

        with pytest.raises(ChecksumMismatchError):
            fetcher.fetch(SERIAL)

        assert not fetcher.cache_path(SERIAL).exists()
        assert _leftovers(fetcher.cache_dir) == []

    def test_bad_signature_trusts_no_checksum(self, fetcher: UbuntuImageFetcher, session: FakeSession,
                                              signature: SignatureRecorder) -> None:
        signature.error = SignatureVerificationError("bad signature")
        fetcher.cache_dir.mkdir(parents=True)
        fetcher.cache_path(SERIAL).write_bytes(IMAGE)

        with pytest.raises(SignatureVerificationError):
            fetcher.fetch(SERIAL)

        assert IMAGE_URL not in session.urls()

    def test_image_missing_from_manifest(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        session.routes[SUMS_URL] = FakeResponse(content=_sums(IMAGE, filename="other.img"))

        with pytest.raises(ChecksumNotFoundError):
            fetcher.fetch(SERIAL)
        assert IMAGE_URL not in session.urls()

    def test_current_serial_is_resolved(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        session.routes[f"{BASE_URL}/jammy/current/unpacked/build-info.txt"] = FakeResponse(
            content=f"build_name=minimal\nserial={SERIAL}\n".encode()
        )

        path = fetcher.fetch("current")

        assert path.name == f"ubuntu-jammy-amd64-{SERIAL}.img"
        assert sha256_file(path) == hashlib.sha256(IMAGE).digest()

    def test_http_error_propagates(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        session.routes[SUMS_URL] = FakeResponse(status_code=404)
        with pytest.raises(requests.HTTPError):
            fetcher.fetch(SERIAL)

    def test_failed_image_response_is_closed(self, fetcher: UbuntuImageFetcher, session: FakeSession) -> None:
        failed = FakeResponse(status_code=503)
        session.routes[IMAGE_URL] = failed

        with pytest.raises(requests.HTTPError):
            fetcher.fetch(SERIAL)

        assert failed.closed
