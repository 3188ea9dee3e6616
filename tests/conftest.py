"""Shared fixtures and fakes for whaledrive tests."""

from __future__ import annotations

import io
import json
import shutil
import tarfile
from pathlib import Path

import pytest

from whaledrive.config import Settings
from whaledrive.disk.commands import CommandResult
from whaledrive.errors import BlobDownloadError, ManifestError
from whaledrive.registry.models import (
    ImageConfig,
    ImageManifest,
    ImageReference,
    ManifestList,
)
from whaledrive.types import Digest

BOOTLOADER_LABEL = "org.whaledrive.bootloader"
LOOP_DEVICE = "/dev/loop7"


def write_layer(path: Path, entries: dict[str, bytes | None]) -> Path:
    """Write a gzipped tar layer.

    Args:
        path: Archive path.
        entries: Member name to file content; None creates a directory.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(layer_bytes(entries))
    return path


def layer_bytes(entries: dict[str, bytes | None]) -> bytes:
    """Build a gzipped tar layer in memory."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as tar:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            if content is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.size = len(content)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


class FakeRegistry:
    """In-memory registry serving one manifest list per image name."""

    def __init__(self) -> None:
        self.manifest_lists: dict[str, dict] = {}
        self.manifests: dict[Digest, dict] = {}
        self.configs: dict[Digest, dict] = {}
        self.blobs: dict[Digest, bytes] = {}
        self.downloads: list[Digest] = []
        self.config_fetches: list[Digest] = []

    def add_image(
        self,
        name: str,
        config_digest: Digest,
        layers: dict[Digest, bytes],
        platforms: tuple[tuple[str, str], ...] = (("linux", "amd64"),),
        labels: dict[str, str] | None = None,
    ) -> None:
        """Register an image whose manifests all share one config."""
        if labels is None:
            labels = {BOOTLOADER_LABEL: "/boot/mbr.bin"}
        entries = self.manifest_lists.setdefault(name, {"manifests": []})
        for os_name, arch in platforms:
            manifest_digest = f"sha256:manifest-{name}-{os_name}-{arch}-{config_digest}"
            entries["manifests"].append(
                {
                    "digest": manifest_digest,
                    "platform": {"os": os_name, "architecture": arch},
                }
            )
            self.manifests[manifest_digest] = {
                "config": {"digest": config_digest},
                "layers": [{"digest": d} for d in layers],
            }
        self.configs[config_digest] = {"config": {"Labels": labels}}
        self.blobs.update(layers)

    def get_manifest_list(self, ref: ImageReference) -> ManifestList:
        if ref.name not in self.manifest_lists:
            raise ManifestError(f"Error getting manifests: unknown image {ref.name}")
        return ManifestList.model_validate(self.manifest_lists[ref.name])

    def get_manifest(self, ref: ImageReference, digest: Digest) -> ImageManifest:
        return ImageManifest.model_validate(self.manifests[digest])

    def get_image_config(self, ref: ImageReference, digest: Digest) -> ImageConfig:
        self.config_fetches.append(digest)
        return ImageConfig.model_validate(self.configs[digest])

    def download_blob(self, ref: ImageReference, digest: Digest, dest: Path) -> int:
        if digest not in self.blobs:
            raise BlobDownloadError(f"HTTP error for {digest}: 404 Not Found")
        self.downloads.append(digest)
        dest.write_bytes(self.blobs[digest])
        return len(self.blobs[digest])

    def __enter__(self) -> FakeRegistry:
        return self

    def __exit__(self, *exc_info: object) -> None:
        pass


class FakeAssembler:
    """Records assembly requests and writes a placeholder image."""

    def __init__(self, size: int = 4096 * 10) -> None:
        self.size = size
        self.calls: list[dict] = []

    def __call__(self, layers, layer_store, bootloader_path, destination, **kwargs) -> int:
        self.calls.append(
            {
                "layers": list(layers),
                "bootloader_path": bootloader_path,
                "destination": destination,
            }
        )
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"\0" * 16)
        return self.size


class FakeRunner:
    """Command runner that records commands instead of executing them.

    Loop, mount and partition commands succeed with canned output; `cp -a`
    really copies so the bootloader can be read from the "mount point".
    Commands whose joined form starts with a prefix in `failures` exit 1.
    """

    def __init__(self, failures: tuple[str, ...] = ()) -> None:
        self.commands: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.failures = failures

    def run(self, args: list[str], input: str | None = None) -> CommandResult:
        self.commands.append(list(args))
        self.inputs.append(input)
        joined = " ".join(args)
        if any(joined.startswith(prefix) for prefix in self.failures):
            return CommandResult(args=list(args), returncode=1, stderr="boom")

        stdout = ""
        if args[:3] == ["losetup", "--find", "--show"]:
            stdout = f"{LOOP_DEVICE}\n"
        elif args[:2] == ["sfdisk", "--json"]:
            stdout = json.dumps(
                {
                    "partitiontable": {
                        "label": "dos",
                        "sectorsize": 512,
                        "partitions": [
                            {"node": f"{args[2]}1", "start": 2048, "size": 40960}
                        ],
                    }
                }
            )
        elif args[:2] == ["cp", "-a"]:
            source = Path(args[2].removesuffix("/."))
            target = Path(args[3].rstrip("/"))
            shutil.copytree(source, target, dirs_exist_ok=True, symlinks=True)
        elif args[0] == "umount" and Path(args[1]).is_dir():
            # What was "mounted" disappears with the unmount
            for child in Path(args[1]).iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        return CommandResult(args=list(args), returncode=0, stdout=stdout)

    @property
    def programs(self) -> list[str]:
        """First word of each command (with losetup flags distinguished)."""
        names = []
        for args in self.commands:
            if args[0] == "losetup":
                names.append(f"losetup {args[1]}")
            elif args[0] == "sfdisk" and "--json" in args:
                names.append("sfdisk --json")
            else:
                names.append(args[0])
        return names


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a temporary directory."""
    return Settings(base_path=tmp_path / "data", tmp_dir=None)


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def assembler() -> FakeAssembler:
    return FakeAssembler()
