"""
Image build orchestration

Build the NixOS ISO for a manifest, copy it out of the store, and append an
empty ext4 filesystem for /persist as a sparse tail.
"""

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import shutil
import tempfile
from typing import Optional, Union

from dropkick import command
from dropkick.manifest import Manifest
from dropkick.nix import BuildProvenance, NixosBuilder
from dropkick.sparse import sparse_copy

logger = logging.getLogger(__name__)

PERSIST_SIZE = "256M"
PERSIST_LABEL = "dropkick-persist"
PERSIST_UUID = "7c237b8a-bd81-4708-af04-e00802ecba2b"


@dataclass(frozen=True)
class BuildOutput:
    """A finished disk image and where it came from"""
    image: Path
    provenance: BuildProvenance


def make_persist_filesystem(path: Union[str, Path]) -> Path:
    """
    Create an empty ext4 filesystem image for /persist.

    The guest grows it to fill the rest of the disk on first boot.
    """
    path = Path(path)
    command.run(["truncate", "-s", PERSIST_SIZE, path])
    # -T default: avoid the "small" usage type
    command.run(["mke2fs", "-q", "-F", "-t", "ext4", "-T", "default", "-L", PERSIST_LABEL, "-U", PERSIST_UUID, path])
    return path


def append_filesystem(image: Union[str, Path], filesystem: Union[str, Path]) -> int:
    """
    Append ``filesystem`` to the end of ``image`` without writing its zero blocks.

    Returns:
        Final length of the image in bytes
    """
    with open(image, "r+b") as dest, open(filesystem, "rb") as src:
        dest.seek(0, os.SEEK_END)
        sparse_copy(src, dest)
        length = dest.tell()
    return length


def build(
    manifest: Manifest,
    workdir: Union[str, Path],
    builder: Optional[NixosBuilder] = None,
) -> BuildOutput:
    """
    Build a bootable disk image for ``manifest``.

    Args:
        manifest: What to build
        workdir: Directory that receives ``nixos.img`` (and the builder's scratch files)
        builder: Builder to use (a NixosBuilder in ``workdir/nix`` by default)

    Returns:
        BuildOutput with the image path and its provenance
    """
    manifest.validate()
    workdir = Path(workdir)
    builder = builder or NixosBuilder(manifest, workdir / "nix")

    iso_path, provenance = builder.build()

    final_image = workdir / "nixos.img"
    logger.info(f"Copying {iso_path} to {final_image}")
    with open(iso_path, "rb") as src, open(final_image, "wb") as dest:
        shutil.copyfileobj(src, dest)

    with tempfile.TemporaryDirectory(prefix="dropkick-persist-", dir=workdir) as scratch:
        persist = make_persist_filesystem(Path(scratch) / "ext4")
        length = append_filesystem(final_image, persist)

    logger.info(f"✓ Image ready: {final_image} ({length} bytes, store hash {provenance.store_hash})")
    return BuildOutput(image=final_image, provenance=provenance)
