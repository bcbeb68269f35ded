"""
Process-level settings read from the environment.
"""

from dataclasses import dataclass
from importlib import resources
import os
from pathlib import Path
from typing import Mapping, Optional

KEYRING_NAME = "ubuntu-cloudimage-keyring.gpg"
SYSTEM_KEYRING = Path("/usr/share/keyrings") / KEYRING_NAME


def packaged_keyring() -> Path:
    """Location of the Ubuntu cloud image keyring bundled with dropkick."""
    return Path(str(resources.files("dropkick") / "data" / KEYRING_NAME))


def _default_keyring() -> Path:
    packaged = packaged_keyring()
    if packaged.is_file():
        return packaged
    return SYSTEM_KEYRING


# Resolved once at import; DROPKICK_KEYRING overrides it per process.
DEFAULT_KEYRING = _default_keyring()


def default_cache_dir(environ: Mapping[str, str]) -> Path:
    """Resolve the base image cache directory."""
    if environ.get("DROPKICK_CACHE_DIR"):
        return Path(environ["DROPKICK_CACHE_DIR"])
    base = environ.get("XDG_CACHE_HOME")
    if base:
        return Path(base) / "dropkick" / "images"
    return Path.home() / ".cache" / "dropkick" / "images"


@dataclass(frozen=True)
class Settings:
    """Runtime settings shared by every command"""
    cache_dir: Path
    keyring: Path = DEFAULT_KEYRING
    use_sudo: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Recognized variables: DROPKICK_CACHE_DIR, XDG_CACHE_HOME,
        DROPKICK_KEYRING, DROPKICK_NO_SUDO, DROPKICK_LOG_LEVEL.

        Args:
            environ: Mapping to read from (defaults to os.environ)

        Returns:
            Settings instance
        """
        if environ is None:
            environ = os.environ

        return cls(
            cache_dir=default_cache_dir(environ),
            keyring=Path(environ.get("DROPKICK_KEYRING", DEFAULT_KEYRING)),
            use_sudo=environ.get("DROPKICK_NO_SUDO", "") not in ("1", "true", "yes"),
            log_level=environ.get("DROPKICK_LOG_LEVEL", "INFO").upper(),
        )
