"""
Trusted signing keys

Detached OpenPGP signatures are checked with gpgv against a keyring, and the
signature is only accepted when gpgv reports a valid signature made by the
pinned fingerprint. The trusted keyring is the one bundled as
``data/ubuntu-cloudimage-keyring.gpg``, falling back to the system copy from
Ubuntu's keyring package when the bundled file is absent.
"""

import logging
from pathlib import Path
import tempfile
from typing import List, Union

from dropkick import command
from dropkick.settings import DEFAULT_KEYRING

logger = logging.getLogger(__name__)

# Ubuntu Cloud Image Builder (Canonical Internal Cloud Image Builder)
# <ubuntu-cloudbuilder-noreply@canonical.com>
UBUNTU_CLOUD_IMAGE_FINGERPRINT = "D2EB44626FDDC30B513D5BB71A5D6C4C7DB87C81"

TRUSTED_KEYRING = DEFAULT_KEYRING


class SignatureVerificationError(RuntimeError):
    """Raised when a detached signature cannot be verified against the trusted key."""


def parse_valid_signers(status_output: str) -> List[str]:
    """
    Extract signer fingerprints from gpgv ``--status-fd`` output.

    A VALIDSIG line carries the signing key fingerprint as its first field
    and the primary key fingerprint as its last.

    Args:
        status_output: Text written by gpgv to the status file descriptor

    Returns:
        Upper-cased fingerprints (signing key and primary key) of every valid signature
    """
    signers = []
    for line in status_output.splitlines():
        fields = line.split()
        if len(fields) < 3 or fields[0] != "[GNUPG:]" or fields[1] != "VALIDSIG":
            continue
        signers.append(fields[2].upper())
        if len(fields) > 3:
            signers.append(fields[-1].upper())
    return signers


def verify_detached_signature(
    data: bytes,
    signature: bytes,
    keyring: Union[str, Path] = TRUSTED_KEYRING,
    fingerprint: str = UBUNTU_CLOUD_IMAGE_FINGERPRINT,
) -> None:
    """
    Verify a detached signature over ``data``.

    The signature may be ASCII-armored or binary; gpgv accepts both.

    Args:
        data: Signed bytes
        signature: Detached signature bytes
        keyring: Keyring file holding the trusted public key
        fingerprint: Fingerprint the signature must be made by

    Raises:
        SignatureVerificationError: If the signature is missing, invalid, or made by another key
    """
    if not signature.strip():
        raise SignatureVerificationError("signature was empty")

    keyring = Path(keyring).resolve()
    if not keyring.exists():
        raise SignatureVerificationError(f"trusted keyring not found: {keyring}")

    with tempfile.TemporaryDirectory(prefix="dropkick-gpgv-") as workdir:
        data_path = Path(workdir) / "data"
        signature_path = Path(workdir) / "data.sig"
        data_path.write_bytes(data)
        signature_path.write_bytes(signature)

        result = command.run(
            [
                "gpgv",
                "--status-fd", "1",
                "--keyring", str(keyring),
                str(signature_path),
                str(data_path),
            ],
            capture=True,
            check=False,
        )

    if result.returncode != 0:
        logger.error(f"gpgv rejected signature: {(result.stderr or '').strip()}")
        raise SignatureVerificationError(f"signature verification failed (gpgv exit {result.returncode})")

    signers = parse_valid_signers(result.stdout or "")
    if fingerprint.upper() not in signers:
        raise SignatureVerificationError(
            f"signature was not made by trusted key {fingerprint} (signers: {', '.join(signers) or 'none'})"
        )

    logger.info(f"✓ Signature verified with key {fingerprint}")
