"""Tests for image build orchestration."""

import os
from pathlib import Path
from typing import List, Tuple

import pytest

from dropkick.build import PERSIST_LABEL, PERSIST_UUID, append_filesystem, build
from dropkick.manifest import Manifest, ManifestError
from dropkick.nix import BuildProvenance
from tests.conftest import RecordingRunner

PERSIST_BYTES = 64 * 1024


class FakeBuilder:

    def __init__(self, iso: Path, provenance: BuildProvenance) -> None:
        self.iso = iso
        self.provenance = provenance
        self.builds = 0

    def build(self) -> Tuple[Path, BuildProvenance]:
        self.builds += 1
        return self.iso, self.provenance


def _fake_mkfs(runner: RecordingRunner) -> None:
    def truncate(argv: List[str]) -> None:
        with open(argv[-1], "wb") as f:
            f.truncate(PERSIST_BYTES)

    def mke2fs(argv: List[str]) -> None:
        with open(argv[-1], "r+b") as f:
            f.seek(1024)
            f.write(b"superblock")

    runner.hooks["truncate"] = truncate
    runner.hooks["mke2fs"] = mke2fs


class TestAppendFilesystem:

    def test_appends_and_returns_length(self, tmp_path: Path) -> None:
        image = tmp_path / "nixos.img"
        image.write_bytes(b"ISO" * 1000)
        filesystem = tmp_path / "ext4"
        filesystem.write_bytes(bytes(8192) + b"data" + bytes(8192))

        length = append_filesystem(image, filesystem)

        assert length == 3000 + 8192 + 4 + 8192
        assert os.path.getsize(image) == length
        assert image.read_bytes() == b"ISO" * 1000 + filesystem.read_bytes()


class TestBuild:

    def test_build_appends_persist_filesystem(self, runner: RecordingRunner, tmp_path: Path,
                                              service_binary: Path, provenance: BuildProvenance) -> None:
        _fake_mkfs(runner)
        iso = tmp_path / "store" / "nixos.iso"
        iso.parent.mkdir()
        iso.write_bytes(b"\x01" * 5000)
        builder = FakeBuilder(iso, provenance)
        workdir = tmp_path / "work"
        workdir.mkdir()

        output = build(Manifest(service_binary=service_binary, hostname="h"), workdir, builder=builder)

        assert output.image == workdir / "nixos.img"
        assert output.provenance is provenance
        assert os.path.getsize(output.image) == 5000 + PERSIST_BYTES
        data = output.image.read_bytes()
        assert data[5000 + 1024:5000 + 1034] == b"superblock"

        mke2fs = runner.calls[1]
        assert runner.calls[0][:3] == ["truncate", "-s", "256M"]
        assert mke2fs[0] == "mke2fs"
        assert mke2fs[mke2fs.index("-L") + 1] == PERSIST_LABEL
        assert mke2fs[mke2fs.index("-U") + 1] == PERSIST_UUID
        assert mke2fs[mke2fs.index("-T") + 1] == "default"

        assert [p.name for p in workdir.iterdir()] == ["nixos.img"]

    def test_invalid_manifest_skips_build(self, runner: RecordingRunner, tmp_path: Path,
                                          provenance: BuildProvenance) -> None:
        builder = FakeBuilder(tmp_path / "nixos.iso", provenance)
        with pytest.raises(ManifestError):
            build(Manifest(service_binary=tmp_path / "missing", hostname="h"), tmp_path, builder=builder)
        assert builder.builds == 0
        assert runner.calls == []
