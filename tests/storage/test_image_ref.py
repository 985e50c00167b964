"""
Tests for image reference parsing.
"""
import pytest

from image_mounter.storage.image_ref import parse_image_ref

DIGEST = "sha256:" + "a" * 64


@pytest.mark.parametrize("name,registry,repository,tag,digest", [
    ("quay.io/org/app:v1", "quay.io", "org/app", "v1", None),
    ("quay.io/org/app", "quay.io", "org/app", "latest", None),
    ("alpine", "docker.io", "library/alpine", "latest", None),
    ("alpine:3.20", "docker.io", "library/alpine", "3.20", None),
    ("bitnami/redis:7", "docker.io", "bitnami/redis", "7", None),
    ("index.docker.io/library/busybox", "docker.io", "library/busybox", "latest", None),
    ("localhost:5000/app:dev", "localhost:5000", "app", "dev", None),
    ("localhost/app", "localhost", "app", "latest", None),
    (f"ghcr.io/org/app@{DIGEST}", "ghcr.io", "org/app", None, DIGEST),
    (f"ghcr.io/org/app:v2@{DIGEST}", "ghcr.io", "org/app", "v2", DIGEST),
])
def test_parse(name, registry, repository, tag, digest):
    ref = parse_image_ref(name)
    assert (ref.registry, ref.repository, ref.tag, ref.digest) == (registry, repository, tag, digest)
    assert ref.original == name


def test_reference_prefers_digest():
    assert parse_image_ref(f"ghcr.io/org/app:v2@{DIGEST}").reference == DIGEST
    assert parse_image_ref("ghcr.io/org/app:v2").reference == "v2"


def test_docker_hub_api_host():
    assert parse_image_ref("alpine").api_host == "registry-1.docker.io"
    assert parse_image_ref("quay.io/org/app").api_host == "quay.io"


def test_with_location_keeps_tag_or_digest():
    assert parse_image_ref("quay.io/org/app:v1").with_location("mirror:5000/org/app") == "mirror:5000/org/app:v1"
    assert (parse_image_ref(f"quay.io/org/app@{DIGEST}").with_location("mirror/org/app")
            == f"mirror/org/app@{DIGEST}")


def test_str_is_fully_qualified():
    assert str(parse_image_ref("alpine")) == "docker.io/library/alpine:latest"


@pytest.mark.parametrize("name", [
    "",
    " alpine",
    "Quay.io/Org/App",
    "quay.io/org/app:",
    "quay.io/org/app@sha256:short",
    "quay.io/org//app",
    "quay.io/org/app:bad tag",
])
def test_invalid_names(name):
    with pytest.raises(ValueError):
        parse_image_ref(name)
