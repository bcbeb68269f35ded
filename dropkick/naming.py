"""
Image names and provenance tags

Image names are derived only from build provenance, so publishing the same
build twice looks up the same name.
"""

import re
from typing import List, Tuple

from dropkick.nix import BuildProvenance

MAX_IMAGE_NAME_LENGTH = 128
OXIDE_NAME_LENGTH = 63
TAG_PREFIX = "dropkick:"


def image_name(provenance: BuildProvenance, max_length: int = MAX_IMAGE_NAME_LENGTH) -> str:
    """
    Compute ``<package name>-<store hash>`` bounded to ``max_length``.

    Only the package name is shortened; the store hash suffix always survives.

    Args:
        provenance: Build provenance
        max_length: Maximum length of the result

    Returns:
        Image name
    """
    suffix = f"-{provenance.store_hash}"
    if len(suffix) >= max_length:
        raise ValueError(f"Image name limit {max_length} leaves no room for suffix {suffix}")
    return provenance.package_name[: max_length - len(suffix)] + suffix


def oxide_image_name(provenance: BuildProvenance) -> str:
    """
    Image name restricted to what Oxide accepts: lowercase, no underscores, 63 characters.
    """
    package_name = re.sub(r"[^a-z0-9-]", "-", provenance.package_name.lower())
    sanitized = BuildProvenance(
        package_name=package_name,
        package_version=provenance.package_version,
        store_hash=provenance.store_hash.lower(),
        inputs=provenance.inputs,
        nixos_version=provenance.nixos_version,
    )
    return image_name(sanitized, max_length=OXIDE_NAME_LENGTH)[:OXIDE_NAME_LENGTH]


def oxide_resource_name(image: str, suffix: str) -> str:
    """Name for a resource derived from an Oxide image name, e.g. ``<image>-disk``."""
    return f"{image}-{suffix}"[:OXIDE_NAME_LENGTH]


def provenance_tags(provenance: BuildProvenance) -> List[Tuple[str, str]]:
    """
    Key/value tags describing a build.

    Returns:
        List of (key, value) pairs, keys prefixed with ``dropkick:``
    """
    tags = [
        ("package.name", provenance.package_name),
        ("package.version", provenance.package_version),
        ("store_hash", provenance.store_hash),
    ]
    if provenance.nixos_version:
        tags.append(("nixos.version", provenance.nixos_version))

    for name in sorted(provenance.inputs):
        revision = provenance.inputs[name]
        tags.append((f"flake.{name}.last_modified", str(revision.last_modified)))
        if revision.rev:
            tags.append((f"flake.{name}.rev", revision.rev))

    return [(f"{TAG_PREFIX}{key}", value) for key, value in tags]
