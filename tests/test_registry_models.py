"""Tests for registry models and image reference parsing."""

import pytest

from whaledrive.errors import InvalidReferenceError
from whaledrive.registry.models import ImageConfig, ImageManifest, ImageReference, ManifestList
from whaledrive.types import Platform


class TestImageReference:
    """Tests for ImageReference.parse."""

    def test_name_and_tag(self):
        """Should split name and tag."""
        ref = ImageReference.parse("nginx:1.27")
        assert ref.name == "nginx"
        assert ref.tag == "1.27"

    def test_default_tag(self):
        """A reference without tag should default to latest."""
        ref = ImageReference.parse("nginx")
        assert ref.tag == "latest"
        assert str(ref) == "nginx:latest"

    def test_official_images_live_in_library(self):
        """Single-component names should map to library/."""
        assert ImageReference.parse("nginx").repository == "library/nginx"

    def test_namespaced_repository(self):
        """Namespaced names should be used as-is."""
        ref = ImageReference.parse("acme/bootable-app:v1")
        assert ref.name == "acme/bootable-app"
        assert ref.repository == "acme/bootable-app"
        assert ref.tag == "v1"

    @pytest.mark.parametrize(
        "reference",
        ["", "nginx:", ":latest", "Nginx", "nginx:bad tag", "ng//inx", "nginx:-x"],
    )
    def test_invalid_references(self, reference):
        """Malformed references should raise InvalidReferenceError."""
        with pytest.raises(InvalidReferenceError):
            ImageReference.parse(reference)


class TestManifestList:
    """Tests for ManifestList.find."""

    def test_find_matching_platform(self):
        """Should return the descriptor for the requested platform."""
        manifests = ManifestList.model_validate(
            {
                "schemaVersion": 2,
                "manifests": [
                    {
                        "digest": "sha256:arm",
                        "platform": {"os": "linux", "architecture": "arm64", "variant": "v8"},
                    },
                    {
                        "digest": "sha256:amd",
                        "platform": {"os": "linux", "architecture": "amd64"},
                    },
                ],
            }
        )

        found = manifests.find(Platform(os="linux", architecture="amd64"))
        assert found is not None
        assert found.digest == "sha256:amd"

    def test_variant_is_ignored_for_matching(self):
        """Extra platform fields should not affect matching."""
        manifests = ManifestList.model_validate(
            {
                "manifests": [
                    {
                        "digest": "sha256:arm",
                        "platform": {"os": "linux", "architecture": "arm64", "variant": "v8"},
                    }
                ]
            }
        )
        assert manifests.find(Platform(os="linux", architecture="arm64")) is not None

    def test_missing_platform(self):
        """Should return None when no descriptor matches."""
        manifests = ManifestList.model_validate({"manifests": []})
        assert manifests.find(Platform(os="linux", architecture="amd64")) is None


class TestImageManifest:
    """Tests for ImageManifest."""

    def test_layer_digests_keep_order(self):
        """Layer digests should be returned bottom to top."""
        manifest = ImageManifest.model_validate(
            {
                "config": {"digest": "sha256:cfg", "mediaType": "x"},
                "layers": [{"digest": "sha256:l1"}, {"digest": "sha256:l2"}],
            }
        )
        assert manifest.config.digest == "sha256:cfg"
        assert manifest.layer_digests == ["sha256:l1", "sha256:l2"]


class TestImageConfig:
    """Tests for ImageConfig labels."""

    def test_labels(self):
        """Labels should be read from config.Labels."""
        config = ImageConfig.model_validate(
            {"config": {"Labels": {"org.whaledrive.bootloader": "/boot/mbr.bin"}}}
        )
        assert config.labels == {"org.whaledrive.bootloader": "/boot/mbr.bin"}

    def test_null_labels(self):
        """Null or absent labels should read as empty."""
        assert ImageConfig.model_validate({"config": {"Labels": None}}).labels == {}
        assert ImageConfig.model_validate({}).labels == {}
