"""
Build manifest

Everything the image builder needs to know about the service being embedded:
which binary, how to run it, and how the guest is configured. One versioned
structure; every field after ``hostname`` is optional with a documented
default.
"""

import argparse
from dataclasses import asdict, dataclass, field, fields
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

MANIFEST_VERSION = 1

# fields that steer the build itself and are not part of the builder input document
BUILD_ONLY_FIELDS = ("show_nix_trace", "flake_lock", "version")


class ManifestError(ValueError):
    """Raised when a manifest is missing required values or is malformed."""


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class Manifest:
    """
    Description of the image to build.

    Attributes:
        service_binary: Path to the service executable embedded in the image
        hostname: Hostname the service answers to (used for TLS certificates)
        bin_name: Name of the binary inside the image (default: file name of service_binary)
        package_name: Name used for image naming and tags (default: bin_name)
        package_version: Version used for tags (default: "0.0.0")
        port: Port the service listens on behind the reverse proxy (default: 8000)
        allow_login: Enable SSH login with keys from cloud-init (default: False)
        run_args: Extra command line arguments for the service (default: none)
        env_file: systemd EnvironmentFile for the service (default: none)
        nixpkgs: Extra packages installed alongside the service (default: none)
        test_cert: Use the Let's Encrypt staging environment (default: False)
        show_nix_trace: Pass --show-trace to the builder (default: False)
        flake_lock: Base lock file for the builder's inputs (default: none)
        version: Manifest schema version
    """
    service_binary: Path
    hostname: str
    bin_name: Optional[str] = None
    package_name: Optional[str] = None
    package_version: str = "0.0.0"
    port: int = 8000
    allow_login: bool = False
    run_args: Optional[str] = None
    env_file: Optional[Path] = None
    nixpkgs: List[str] = field(default_factory=list)
    test_cert: bool = False
    show_nix_trace: bool = False
    flake_lock: Optional[Path] = None
    version: int = MANIFEST_VERSION

    def __post_init__(self) -> None:
        self.service_binary = Path(self.service_binary)
        if self.env_file is not None:
            self.env_file = Path(self.env_file)
        if self.flake_lock is not None:
            self.flake_lock = Path(self.flake_lock)
        if self.bin_name is None:
            self.bin_name = self.service_binary.name
        if self.package_name is None:
            self.package_name = self.bin_name

    def validate(self) -> "Manifest":
        """
        Check the manifest for errors.

        Returns:
            self, for chaining

        Raises:
            ManifestError: If any value is invalid
        """
        if self.version != MANIFEST_VERSION:
            raise ManifestError(f"Unsupported manifest version {self.version} (expected {MANIFEST_VERSION})")
        if not self.service_binary.is_file():
            raise ManifestError(f"Service binary not found: {self.service_binary}")
        if not self.hostname or not self.hostname.strip():
            raise ManifestError("A hostname is required")
        if not 1 <= int(self.port) <= 65535:
            raise ManifestError(f"Port out of range: {self.port}")
        if self.env_file is not None and not self.env_file.is_file():
            raise ManifestError(f"Environment file not found: {self.env_file}")
        if self.flake_lock is not None and not self.flake_lock.is_file():
            raise ManifestError(f"Flake lock file not found: {self.flake_lock}")
        if not self.package_name:
            raise ManifestError("A package name is required")
        return self

    def input_document(self) -> Dict[str, Any]:
        """
        Render the JSON document passed to the image builder.

        Keys are camelCase; paths are absolute; build-only settings are left out.
        """
        document = {}
        for key, value in asdict(self).items():
            if key in BUILD_ONLY_FIELDS:
                continue
            if isinstance(value, Path):
                value = str(value.resolve())
            document[_camel_case(key)] = value
        document["package"] = {"name": self.package_name, "version": self.package_version}
        return document

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Manifest":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ManifestError(f"Unknown manifest keys: {', '.join(unknown)}")
        for required in ("service_binary", "hostname"):
            if not data.get(required):
                raise ManifestError(f"Manifest is missing required key '{required}'")
        try:
            return cls(**data)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Invalid manifest: {e}")

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Manifest":
        """
        Load a manifest from a JSON file.

        Relative paths inside the manifest are resolved against the file's directory.
        """
        path = Path(path)
        if not path.exists():
            raise ManifestError(f"Manifest file not found: {path}")
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ManifestError(f"Failed to parse manifest {path}: {e}")
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest {path} must contain a JSON object")

        for key in ("service_binary", "env_file", "flake_lock"):
            if data.get(key) and not Path(data[key]).is_absolute():
                data[key] = str(path.parent / data[key])

        return cls.from_dict(data)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Manifest":
        """Build a manifest from parsed command line arguments."""
        if getattr(args, "manifest", None):
            return cls.from_file(args.manifest)

        data = {
            "service_binary": args.service_binary,
            "hostname": args.hostname,
            "bin_name": args.bin_name,
            "package_name": args.package_name,
            "port": args.port,
            "allow_login": args.allow_login,
            "run_args": args.run_args,
            "env_file": args.env_file,
            "nixpkgs": args.nixpkgs or [],
            "test_cert": args.test_cert,
            "show_nix_trace": args.show_nix_trace,
            "flake_lock": args.flake_lock,
        }
        if args.package_version:
            data["package_version"] = args.package_version
        return cls.from_dict(data)
