"""
Base image fetching

Download an Ubuntu minimal cloud image, verify the signed SHA256SUMS manifest
and the image checksum, and keep verified images in a local cache.
"""

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import tempfile
from typing import Any, Callable, Optional, Union

from cryptography.hazmat.primitives import hashes
import requests

from dropkick.keys import UBUNTU_CLOUD_IMAGE_FINGERPRINT, verify_detached_signature

logger = logging.getLogger(__name__)

UBUNTU_BASE_URL = "https://cloud-images.ubuntu.com/minimal/daily"
CHUNK_SIZE = 8192
REQUEST_TIMEOUT = 60


class ChecksumNotFoundError(RuntimeError):
    """Raised when the checksum manifest has no usable entry for the artifact."""


class ChecksumMismatchError(RuntimeError):
    """Raised when a downloaded artifact does not match its expected checksum."""


@dataclass(frozen=True)
class CachedArtifact:
    """A base image artifact and where its verified copy lives"""
    url: str
    expected_checksum: bytes
    local_path: Path


def sha256_file(path: Union[str, Path]) -> bytes:
    """Stream a file through SHA-256 and return the raw digest."""
    digest = hashes.Hash(hashes.SHA256())
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.finalize()


def find_checksum(manifest: str, filename: str) -> bytes:
    """
    Look up the digest for ``filename`` in a SHA256SUMS-style manifest.

    Lines look like ``<hex digest> *<filename>``; the ``*`` binary-mode
    marker is optional. Only exact filename matches count.

    Args:
        manifest: Manifest text
        filename: Artifact file name

    Returns:
        Raw digest bytes
    """
    for line in manifest.splitlines():
        digest, _, name = line.strip().partition(" ")
        name = name.strip()
        if name.startswith("*"):
            name = name[1:]
        if name != filename:
            continue
        try:
            return bytes.fromhex(digest)
        except ValueError:
            raise ChecksumNotFoundError(f"failed to hex decode checksum for {filename}")

    raise ChecksumNotFoundError(f"failed to find checksum for {filename} in SHA256SUMS")


def parse_serial(build_info: str) -> Optional[str]:
    """Return the value of the ``serial=`` line in a build-info.txt file."""
    for line in build_info.splitlines():
        if line.startswith("serial="):
            return line[len("serial="):].strip()
    return None


class UbuntuImageFetcher:
    """
    Fetch and cache verified Ubuntu cloud images.

    Args:
        cache_dir: Directory holding verified images
        keyring: Keyring containing the Ubuntu cloud image signing key
        session: requests session (one is created if omitted)
        version: Ubuntu release codename
        arch: Image architecture
        base_url: Root of the cloud image mirror
        fingerprint: Fingerprint the checksum manifest must be signed by
        verify_signature: Signature check, called with (data, signature, keyring, fingerprint)
    """

    def __init__(
        self,
        cache_dir: Union[str, Path],
        keyring: Union[str, Path],
        session: Optional[requests.Session] = None,
        version: str = "jammy",
        arch: str = "amd64",
        base_url: str = UBUNTU_BASE_URL,
        fingerprint: str = UBUNTU_CLOUD_IMAGE_FINGERPRINT,
        verify_signature: Callable[..., Any] = verify_detached_signature,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.keyring = Path(keyring)
        self.session = session or requests.Session()
        self.version = version
        self.arch = arch
        self.base_url = base_url.rstrip("/")
        self.fingerprint = fingerprint
        self.verify_signature = verify_signature

    @property
    def filename(self) -> str:
        return f"{self.version}-minimal-cloudimg-{self.arch}.img"

    def cache_path(self, serial: str) -> Path:
        return self.cache_dir / f"ubuntu-{self.version}-{self.arch}-{serial}.img"

    def _get(self, url: str, stream: bool = False) -> requests.Response:
        logger.debug(f"GET {url}")
        response = self.session.get(url, stream=stream, timeout=REQUEST_TIMEOUT)
        try:
            response.raise_for_status()
        except requests.HTTPError:
            response.close()
            raise
        return response

    def resolve_serial(self, serial: Optional[str] = None) -> str:
        """
        Resolve the image serial to fetch.

        Args:
            serial: Explicit serial, or None/"current" to look up the latest one

        Returns:
            Concrete serial string
        """
        if serial is not None and serial != "current":
            return serial

        url = f"{self.base_url}/{self.version}/current/unpacked/build-info.txt"
        resolved = parse_serial(self._get(url).text)
        if not resolved:
            raise ChecksumNotFoundError("no image serial found in current ubuntu image build info")
        return resolved

    def artifact(self, serial: str) -> CachedArtifact:
        """
        Fetch the signed checksum manifest for ``serial`` and describe the image.

        The manifest is untrusted until its detached signature verifies, so the
        signature check runs before any checksum is read from it.
        """
        base = f"{self.base_url}/{self.version}/{serial}"
        checksums = self._get(f"{base}/SHA256SUMS").content
        signature = self._get(f"{base}/SHA256SUMS.gpg").content

        self.verify_signature(checksums, signature, self.keyring, self.fingerprint)
        logger.info("✓ Verified signature of checksums file")

        expected = find_checksum(checksums.decode("utf-8"), self.filename)
        return CachedArtifact(
            url=f"{base}/{self.filename}",
            expected_checksum=expected,
            local_path=self.cache_path(serial),
        )

    def fetch(self, serial: Optional[str] = None) -> Path:
        """
        Return the path of a verified base image, downloading it if needed.

        Args:
            serial: Image serial; None or "current" resolves the latest build

        Returns:
            Path to the verified image in the cache directory
        """
        serial = self.resolve_serial(serial)
        logger.info(f"Ubuntu image version: {serial}")

        self.cache_dir.mkdir(parents=True, exist_ok=True)
        artifact = self.artifact(serial)

        if self.is_cached(artifact):
            return artifact.local_path

        self.download(artifact)
        return artifact.local_path

    def is_cached(self, artifact: CachedArtifact) -> bool:
        """
        Check the cache entry for ``artifact``, removing it if it is stale.

        Returns:
            True if a cached copy exists and matches the expected checksum
        """
        if not artifact.local_path.exists():
            return False

        logger.info(f"Verifying checksum of cached image {artifact.local_path}")
        if sha256_file(artifact.local_path) == artifact.expected_checksum:
            logger.info("✓ Cached image checksum matches")
            return True

        logger.warning("Cached image checksum mismatch, redownloading")
        artifact.local_path.unlink()
        return False

    def download(self, artifact: CachedArtifact) -> None:
        """
        Download ``artifact`` into the cache, verifying its checksum while streaming.

        The body is written to a temporary file in the cache directory and only
        renamed into place once the digest matches.
        """
        logger.info(f"Downloading {artifact.url}")
        response = self._get(artifact.url, stream=True)
        total = int(response.headers.get("Content-Length", 0) or 0)

        fd, temp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=".download-", suffix=".img")
        temp_path = Path(temp_name)
        try:
            digest = hashes.Hash(hashes.SHA256())
            received = 0
            next_report = 0
            with os.fdopen(fd, "wb") as f:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if not chunk:
                        continue
                    digest.update(chunk)
                    f.write(chunk)
                    received += len(chunk)
                    if total and received >= next_report:
                        logger.info(f"  downloaded {received * 100 // total}% ({received}/{total} bytes)")
                        next_report += max(total // 10, CHUNK_SIZE)

            if digest.finalize() != artifact.expected_checksum:
                raise ChecksumMismatchError(f"invalid checksum for downloaded image {artifact.url}")

            os.replace(temp_path, artifact.local_path)
            logger.info(f"✓ Image downloaded and verified: {artifact.local_path}")
        finally:
            if temp_path.exists():
                temp_path.unlink()
            response.close()
