"""
Tests for mirror resolution from registries.conf.
"""
import textwrap

import pytest

from image_mounter.mirrors import RegistriesConfResolver, StaticMirrorResolver

DIGEST = "sha256:" + "c" * 64


@pytest.fixture
def write_conf(tmp_path):
    path = tmp_path / "registries.conf"

    def write(content: str) -> RegistriesConfResolver:
        path.write_text(textwrap.dedent(content))
        return RegistriesConfResolver(path)

    return write


def test_missing_file_means_no_mirrors(tmp_path):
    resolver = RegistriesConfResolver(tmp_path / "absent.conf")
    assert resolver.get_all_references("quay.io/org/app:v1") == ["quay.io/org/app:v1"]


def test_unmatched_name_resolves_to_itself(write_conf):
    resolver = write_conf("""
        [[registry]]
        prefix = "quay.io/other"
        location = "quay.io/other"

        [[registry.mirror]]
        location = "mirror.local/other"
    """)
    assert resolver.get_all_references("quay.io/org/app:v1") == ["quay.io/org/app:v1"]


def test_mirrors_first_then_primary(write_conf):
    resolver = write_conf("""
        [[registry]]
        prefix = "quay.io/org"
        location = "quay.io/org"

        [[registry.mirror]]
        location = "mirror-a.local/org"

        [[registry.mirror]]
        location = "mirror-b.local:5000/cache/org"
    """)

    assert resolver.get_all_references("quay.io/org/app:v1") == [
        "mirror-a.local/org/app:v1",
        "mirror-b.local:5000/cache/org/app:v1",
        "quay.io/org/app:v1",
    ]


def test_longest_prefix_wins(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "quay.io"

        [[registry.mirror]]
        location = "generic.local"

        [[registry]]
        prefix = "quay.io/org/app"
        location = "quay.io/org/app"

        [[registry.mirror]]
        location = "specific.local/app"
    """)

    assert resolver.get_all_references("quay.io/org/app:v1") == [
        "specific.local/app:v1",
        "quay.io/org/app:v1",
    ]


def test_prefix_matches_whole_components(write_conf):
    resolver = write_conf("""
        [[registry]]
        prefix = "quay.io/org/app"

        [[registry.mirror]]
        location = "mirror.local/app"
    """)

    assert resolver.get_all_references("quay.io/org/application:v1") == ["quay.io/org/application:v1"]


def test_location_rewrite(write_conf):
    resolver = write_conf("""
        [[registry]]
        prefix = "example.com/foo"
        location = "internal.example.com/bar"
    """)

    assert resolver.get_all_references("example.com/foo/app:v1") == ["internal.example.com/bar/app:v1"]


def test_blocked_registry_only_uses_mirrors(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "docker.io"
        blocked = true

        [[registry.mirror]]
        location = "mirror.gcr.io"
    """)

    assert resolver.get_all_references("alpine:3.20") == ["mirror.gcr.io/library/alpine:3.20"]


def test_blocked_registry_without_mirrors(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "quay.io"
        blocked = true
    """)

    with pytest.raises(ValueError, match="blocked"):
        resolver.get_all_references("quay.io/org/app:v1")


def test_docker_hub_short_names(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "docker.io"

        [[registry.mirror]]
        location = "mirror.gcr.io"
    """)

    assert resolver.get_all_references("alpine") == ["mirror.gcr.io/library/alpine:latest", "alpine"]


def test_pull_from_mirror_modes(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "quay.io"

        [[registry.mirror]]
        location = "digests.local"
        pull-from-mirror = "digest-only"

        [[registry.mirror]]
        location = "tags.local"
        pull-from-mirror = "tag-only"
    """)

    assert resolver.get_all_references("quay.io/org/app:v1") == [
        "tags.local/org/app:v1",
        "quay.io/org/app:v1",
    ]
    assert resolver.get_all_references(f"quay.io/org/app@{DIGEST}") == [
        f"digests.local/org/app@{DIGEST}",
        f"quay.io/org/app@{DIGEST}",
    ]


def test_mirror_by_digest_only(write_conf):
    resolver = write_conf("""
        [[registry]]
        location = "quay.io"
        mirror-by-digest-only = true

        [[registry.mirror]]
        location = "mirror.local"
    """)

    assert resolver.get_all_references("quay.io/org/app:v1") == ["quay.io/org/app:v1"]
    assert resolver.get_all_references(f"quay.io/org/app@{DIGEST}")[0] == f"mirror.local/org/app@{DIGEST}"


def test_wildcard_prefix(write_conf):
    resolver = write_conf("""
        [[registry]]
        prefix = "*.example.com"

        [[registry.mirror]]
        location = "mirror.local"
    """)

    assert resolver.get_all_references("eu.example.com/org/app:v1") == [
        "mirror.local/org/app:v1",
        "eu.example.com/org/app:v1",
    ]
    assert resolver.get_all_references("example.org/org/app:v1") == ["example.org/org/app:v1"]


def test_config_is_reread(write_conf):
    resolver = write_conf("")
    assert resolver.get_all_references("quay.io/org/app:v1") == ["quay.io/org/app:v1"]

    write_conf("""
        [[registry]]
        location = "quay.io"

        [[registry.mirror]]
        location = "mirror.local"
    """)
    assert resolver.get_all_references("quay.io/org/app:v1")[0] == "mirror.local/org/app:v1"


@pytest.mark.parametrize("content", [
    "this is = = not toml",
    'registry = "not a table array"',
    """
    [[registry]]
    blocked = true
    """,
    """
    [[registry]]
    location = "quay.io"

    [[registry.mirror]]
    location = "m.local"
    pull-from-mirror = "sometimes"
    """,
])
def test_malformed_config(write_conf, content):
    resolver = write_conf(content)
    with pytest.raises(ValueError):
        resolver.get_all_references("quay.io/org/app:v1")


def test_malformed_name(tmp_path):
    with pytest.raises(ValueError):
        RegistriesConfResolver(tmp_path / "absent.conf").get_all_references("Not A Name")


def test_static_resolver():
    resolver = StaticMirrorResolver({"app:v1": ["m/app:v1", "app:v1"]})
    assert resolver.get_all_references("app:v1") == ["m/app:v1", "app:v1"]
    assert resolver.get_all_references("other:v1") == ["other:v1"]
