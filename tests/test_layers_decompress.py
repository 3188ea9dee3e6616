"""Tests for layers/decompress.py module.

Layers are built as small gzipped tarballs and staged into tmp_path.
"""

import io
import os
import tarfile
from pathlib import Path

import pytest
from conftest import write_layer

from whaledrive.errors import ExtractionError
from whaledrive.layers.decompress import extract_layer, stage_layers, staged_size
from whaledrive.layers.store import LayerStore


@pytest.fixture
def layer_store(tmp_path: Path) -> LayerStore:
    return LayerStore(tmp_path / "layers")


def add_layer(store: LayerStore, digest: str, entries: dict[str, bytes | None]) -> str:
    write_layer(store.path_for(digest), entries)
    return digest


class TestStageLayers:
    """Tests for ordered staging."""

    def test_later_layer_wins(self, layer_store: LayerStore, tmp_path: Path):
        """The top layer's version of a file should be the one staged."""
        one = add_layer(layer_store, "sha256:one", {"x": b"1"})
        two = add_layer(layer_store, "sha256:two", {"x": b"2"})

        forward = tmp_path / "forward"
        reverse = tmp_path / "reverse"
        stage_layers([one, two], layer_store, forward)
        stage_layers([two, one], layer_store, reverse)

        assert (forward / "x").read_bytes() == b"2"
        assert (reverse / "x").read_bytes() == b"1"

    def test_directories_merge(self, layer_store: LayerStore, tmp_path: Path):
        """Directories from different layers should merge."""
        one = add_layer(layer_store, "sha256:one", {"etc": None, "etc/a": b"a"})
        two = add_layer(layer_store, "sha256:two", {"etc": None, "etc/b": b"b"})

        staging = tmp_path / "rootfs"
        size = stage_layers([one, two], layer_store, staging)

        assert sorted(p.name for p in (staging / "etc").iterdir()) == ["a", "b"]
        assert size == 2

    def test_file_replaces_directory(self, layer_store: LayerStore, tmp_path: Path):
        """A file in an upper layer should replace a lower directory."""
        one = add_layer(layer_store, "sha256:one", {"opt": None, "opt/tool": b"bin"})
        two = add_layer(layer_store, "sha256:two", {"opt": b"file now"})

        staging = tmp_path / "rootfs"
        stage_layers([one, two], layer_store, staging)

        assert (staging / "opt").is_file()
        assert (staging / "opt").read_bytes() == b"file now"

    def test_whiteout_removes_lower_file(self, layer_store: LayerStore, tmp_path: Path):
        """A .wh. marker should delete the named entry below it."""
        one = add_layer(layer_store, "sha256:one", {"etc": None, "etc/a": b"a", "etc/b": b"b"})
        two = add_layer(layer_store, "sha256:two", {"etc/.wh.a": b""})

        staging = tmp_path / "rootfs"
        stage_layers([one, two], layer_store, staging)

        assert not (staging / "etc" / "a").exists()
        assert (staging / "etc" / "b").exists()
        assert not (staging / "etc" / ".wh.a").exists()

    def test_opaque_whiteout_clears_directory(self, layer_store: LayerStore, tmp_path: Path):
        """The opaque marker should hide everything below, keeping the layer's own entries."""
        one = add_layer(layer_store, "sha256:one", {"var": None, "var/old": b"old"})
        two = add_layer(
            layer_store,
            "sha256:two",
            {"var": None, "var/.wh..wh..opq": b"", "var/new": b"new"},
        )

        staging = tmp_path / "rootfs"
        stage_layers([one, two], layer_store, staging)

        assert sorted(p.name for p in (staging / "var").iterdir()) == ["new"]

    def test_missing_archive(self, layer_store: LayerStore, tmp_path: Path):
        """A layer that is not stored should raise ExtractionError."""
        with pytest.raises(ExtractionError, match="not found"):
            stage_layers(["sha256:absent"], layer_store, tmp_path / "rootfs")


class TestExtractLayer:
    """Tests for unsafe archive handling."""

    def test_rejects_path_traversal(self, tmp_path: Path):
        """Members escaping the staging directory should be refused."""
        archive = write_layer(tmp_path / "evil.tgz", {"../escape": b"x"})
        staging = tmp_path / "rootfs"
        staging.mkdir()

        with pytest.raises(ExtractionError, match="path traversal"):
            extract_layer(archive, staging)
        assert not (tmp_path / "escape").exists()

    def test_rejects_write_through_symlink(self, tmp_path: Path):
        """A member below a symlink pointing outside should be refused."""
        archive = tmp_path / "evil.tgz"
        with tarfile.open(archive, "w:gz") as tar:
            link = tarfile.TarInfo("out")
            link.type = tarfile.SYMTYPE
            link.linkname = str(tmp_path)
            tar.addfile(link)
            payload = tarfile.TarInfo("out/pwned")
            payload.size = 1
            tar.addfile(payload, io.BytesIO(b"x"))

        staging = tmp_path / "rootfs"
        staging.mkdir()

        with pytest.raises(ExtractionError):
            extract_layer(archive, staging)
        assert not (tmp_path / "pwned").exists()

    def test_absolute_names_are_relative_to_staging(self, tmp_path: Path):
        """Leading slashes should be stripped."""
        archive = write_layer(tmp_path / "abs.tgz", {"/etc/hostname": b"vm"})
        staging = tmp_path / "rootfs"
        staging.mkdir()

        extract_layer(archive, staging)

        assert (staging / "etc" / "hostname").read_bytes() == b"vm"

    def test_corrupt_archive(self, tmp_path: Path):
        """A corrupt archive should raise ExtractionError."""
        archive = tmp_path / "corrupt.tgz"
        archive.write_bytes(b"not a tarball")

        with pytest.raises(ExtractionError):
            extract_layer(archive, tmp_path)


class TestStagedSize:
    """Tests for staged_size."""

    def test_counts_regular_files_only(self, tmp_path: Path):
        """Symlinks should not be followed or counted."""
        (tmp_path / "a").write_bytes(b"12345")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"123")
        os.symlink(tmp_path / "a", tmp_path / "link")

        assert staged_size(tmp_path) == 8

    def test_empty_directory(self, tmp_path: Path):
        """An empty tree has size zero."""
        assert staged_size(tmp_path) == 0
