"""
NixOS image builder

Render the builder inputs (flake, lock file, input document), run
``nix build``, and read build provenance back from the result.
"""

from dataclasses import dataclass, field
from importlib import resources
import json
import logging
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from dropkick import command
from dropkick.manifest import Manifest

logger = logging.getLogger(__name__)

# Inputs that are re-locked on every build instead of pinned, so images pick
# up current security backports and toolchain releases.
FORCE_REFRESH_INPUTS = ("nixpkgs", "rust-overlay")

FLAKE_OUTPUT = "nixosConfigurations.dropkick.config.system.build.dropkickImage"
STORE_HASH_LENGTH = 32


class BuildError(RuntimeError):
    """Raised when the image builder fails or produces inconsistent output."""


@dataclass(frozen=True)
class InputRevision:
    """Lock information for one upstream builder input"""
    last_modified: int
    rev: Optional[str] = None


@dataclass(frozen=True)
class BuildProvenance:
    """Identifying metadata of a finished build"""
    package_name: str
    package_version: str
    store_hash: str
    inputs: Mapping[str, InputRevision] = field(default_factory=dict)
    nixos_version: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", MappingProxyType(dict(self.inputs)))

    def __hash__(self) -> int:
        # the inputs proxy is not hashable itself
        return hash((
            self.package_name,
            self.package_version,
            self.store_hash,
            tuple(sorted(self.inputs.items())),
            self.nixos_version,
        ))


def flake_template_path() -> Path:
    return Path(str(resources.files("dropkick") / "data" / "flake.nix"))


def strip_refreshed_inputs(lock: Dict[str, Any], names: Sequence[str] = FORCE_REFRESH_INPUTS) -> Dict[str, Any]:
    """
    Remove inputs from a flake lock so nix locks them afresh.

    Both the input nodes and the root node's references to them are dropped.

    Args:
        lock: Parsed flake.lock
        names: Input names to drop

    Returns:
        The modified lock (the argument is modified in place)
    """
    nodes = lock.get("nodes", {})
    root_name = lock.get("root")
    if root_name not in nodes:
        raise BuildError("flake lock has no root node")

    for name in names:
        nodes.pop(name, None)
        nodes[root_name].get("inputs", {}).pop(name, None)
    return lock


def read_locked_inputs(lock: Dict[str, Any]) -> Dict[str, InputRevision]:
    """
    Collect lastModified/rev for every locked node of a flake lock.
    """
    inputs = {}
    for name, node in lock.get("nodes", {}).items():
        locked = node.get("locked")
        if not locked:
            continue
        inputs[name] = InputRevision(
            last_modified=int(locked.get("lastModified", 0)),
            rev=locked.get("rev"),
        )
    return inputs


def truncated_store_hash(result_path: Union[str, Path]) -> str:
    """
    Return the first 32 characters of a store path's name.

    Raises:
        BuildError: If the name is shorter than 32 characters
    """
    name = Path(result_path).name
    if len(name) < STORE_HASH_LENGTH:
        raise BuildError(f"failed to get truncated nix store hash for path {result_path}")
    return name[:STORE_HASH_LENGTH]


def read_version(result_path: Union[str, Path]) -> str:
    """Read the plain-text version marker from a build result."""
    marker = Path(result_path) / "version.txt"
    try:
        return marker.read_text().strip()
    except OSError as e:
        raise BuildError(f"failed to read {marker}: {e}")


class NixosBuilder:
    """
    Build a bootable ISO for a manifest with nix.

    Args:
        manifest: What to build
        workdir: Scratch directory for the flake and the result link
        nix: nix executable to run
    """

    def __init__(self, manifest: Manifest, workdir: Union[str, Path], nix: str = "nix") -> None:
        self.manifest = manifest
        self.workdir = Path(workdir)
        self.nix = nix

    @property
    def lock_path(self) -> Path:
        return self.workdir / "flake.lock"

    @property
    def result_link(self) -> Path:
        return self.workdir / "result"

    def prepare(self) -> None:
        """Write flake.nix, the refreshed flake.lock and input.json into the work directory."""
        self.workdir.mkdir(parents=True, exist_ok=True)
        (self.workdir / "flake.nix").write_text(flake_template_path().read_text())

        if self.manifest.flake_lock is not None:
            with open(self.manifest.flake_lock, "r") as f:
                lock = json.load(f)
            strip_refreshed_inputs(lock)
            self.lock_path.write_text(json.dumps(lock, indent=2))
            logger.info(f"Refreshing inputs on this build: {', '.join(FORCE_REFRESH_INPUTS)}")

        with open(self.workdir / "input.json", "w") as f:
            json.dump(self.manifest.input_document(), f, indent=2)

    def build_command(self) -> List[str]:
        argv = [
            self.nix,
            "--extra-experimental-features", "nix-command",
            "--extra-experimental-features", "flakes",
            "build",
            "--impure",
        ]
        if self.manifest.show_nix_trace:
            argv.append("--show-trace")
        argv.extend(["--out-link", str(self.result_link), f"path:{self.workdir}#{FLAKE_OUTPUT}"])
        return argv

    def build(self) -> Tuple[Path, BuildProvenance]:
        """
        Run the build.

        Returns:
            Tuple of (ISO path inside the result, build provenance)
        """
        self.prepare()

        logger.info("Building image (this may take a while)...")
        try:
            command.run(self.build_command(), cwd=self.workdir)
        except command.CommandError as e:
            raise BuildError(f"nix build failed: {e}")

        try:
            result_path = Path(os.readlink(self.result_link))
        except OSError as e:
            raise BuildError(f"failed to read result link {self.result_link}: {e}")

        store_hash = truncated_store_hash(result_path)
        nixos_version = read_version(result_path)

        inputs: Dict[str, InputRevision] = {}
        if self.lock_path.exists():
            with open(self.lock_path, "r") as f:
                inputs = read_locked_inputs(json.load(f))
        else:
            logger.warning("Builder did not write a flake lock; no input revisions recorded")

        iso_path = result_path / "iso" / "nixos.iso"
        if not iso_path.exists():
            raise BuildError(f"build result has no image at {iso_path}")

        provenance = BuildProvenance(
            package_name=self.manifest.package_name,
            package_version=self.manifest.package_version,
            store_hash=store_hash,
            inputs=inputs,
            nixos_version=nixos_version,
        )
        logger.info(f"✓ Built NixOS {nixos_version} image {result_path}")
        return iso_path, provenance
