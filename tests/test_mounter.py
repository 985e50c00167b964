"""
Tests for mirror fallback in RemoteImageMounter and the mount_image entry point.
"""
from unittest.mock import Mock

import pytest

from image_mounter import mount_image
from image_mounter.context import CallContext
from image_mounter.errors import (
    AllMirrorsExhausted,
    DigestLookupFailure,
    PrepareFailure,
    ResolutionFailure,
    StreamFailure,
)
from image_mounter.mirrors import StaticMirrorResolver
from image_mounter.mounter import RemoteImageMounter, create_mounter
from image_mounter.runtime_types import SyncConfig
from image_mounter.storage.oci_errors import OciError, OciNotFound
from image_mounter.sync_engine import SyncEngine
from tests.fakes.fake_extractor import FailingExtractor

NAME = "quay.io/org/kmod:v1"
MIRROR_A = "mirror-a.example.com/org/kmod:v1"
MIRROR_B = "mirror-b.example.com/org/kmod:v1"


@pytest.fixture
def resolver():
    return StaticMirrorResolver({NAME: [MIRROR_A, MIRROR_B, NAME]})


def test_first_candidate_wins(engine, registry, resolver, cache, ctx, config):
    registry.add_image(MIRROR_A, {"a": b"from-a"})
    registry.add_image(MIRROR_B, {"a": b"from-b"})

    path = RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert path == cache.fs_path(MIRROR_A)
    assert registry.digest_calls == [MIRROR_A]


def test_falls_back_until_success(engine, registry, resolver, cache, ctx, config):
    registry.digest_errors[MIRROR_A] = OciError("connection refused")
    registry.add_image(MIRROR_B, {"a": b"b"})
    registry.export_errors[MIRROR_B] = OciError("blob fetch failed")
    registry.add_image(NAME, {"a": b"primary"})

    path = RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert path == cache.fs_path(NAME)
    assert (path / "a").read_bytes() == b"primary"
    assert registry.digest_calls == [MIRROR_A, MIRROR_B, NAME]


def test_stops_after_success(engine, registry, cache, ctx, config):
    resolver = StaticMirrorResolver({NAME: [MIRROR_A, NAME, MIRROR_B]})
    registry.digest_errors[MIRROR_A] = OciError("down")
    registry.add_image(NAME, {"a": b"a"})
    registry.add_image(MIRROR_B, {"a": b"b"})

    RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert MIRROR_B not in registry.digest_calls
    assert not cache.entry_path(MIRROR_B).exists()


def test_all_candidates_fail(registry, cache, ctx, config):
    resolver = StaticMirrorResolver({NAME: [MIRROR_A, MIRROR_B]})
    registry.add_image(MIRROR_A, {"a": b"a"})
    registry.add_image(MIRROR_B, {"a": b"b"})
    engine = SyncEngine(cache, registry, FailingExtractor(OSError("disk full")))

    with pytest.raises(AllMirrorsExhausted) as exc_info:
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    error = exc_info.value
    assert [candidate for candidate, _ in error.failures] == [MIRROR_A, MIRROR_B]
    assert all(isinstance(e, StreamFailure) for _, e in error.failures)
    assert MIRROR_A in str(error)
    assert MIRROR_B in str(error)
    assert cache.read_marker(MIRROR_A) is None
    assert cache.read_marker(MIRROR_B) is None


def test_missing_image_is_recoverable(engine, registry, ctx, config):
    resolver = StaticMirrorResolver({NAME: [MIRROR_A]})

    with pytest.raises(AllMirrorsExhausted) as exc_info:
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    (candidate, error), = exc_info.value.failures
    assert candidate == MIRROR_A
    assert isinstance(error, DigestLookupFailure)
    assert isinstance(error.__cause__, OciNotFound)


def test_pulled_digest_failure_falls_back(engine, registry, cache, ctx, config):
    resolver = StaticMirrorResolver({NAME: [MIRROR_A, NAME]})
    registry.add_image(MIRROR_A, {"a": b"a"})
    registry.handle_digest_errors[MIRROR_A] = RuntimeError("manifest gone")
    registry.add_image(NAME, {"a": b"primary"})

    path = RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert path == cache.fs_path(NAME)
    assert registry.digest_calls == [MIRROR_A, NAME]
    assert cache.read_marker(MIRROR_A) is None


def test_unsafe_candidate_name_falls_back(engine, registry, cache, ctx, config):
    unsafe = "mirror.example.com/x/../kmod:v1"
    resolver = StaticMirrorResolver({NAME: [unsafe, NAME]})
    registry.add_image(unsafe, {"a": b"escaped"})
    registry.add_image(NAME, {"a": b"primary"})

    path = RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert path == cache.fs_path(NAME)
    assert unsafe not in registry.digest_calls


def test_unsafe_only_candidate_is_reported(engine, registry, ctx, config):
    unsafe = "mirror.example.com/x/../kmod:v1"
    resolver = StaticMirrorResolver({NAME: [unsafe]})

    with pytest.raises(AllMirrorsExhausted) as exc_info:
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    (candidate, error), = exc_info.value.failures
    assert candidate == unsafe
    assert isinstance(error, PrepareFailure)
    assert isinstance(error.__cause__, ValueError)


def test_empty_candidate_list(engine, ctx, config):
    resolver = StaticMirrorResolver({NAME: []})

    with pytest.raises(AllMirrorsExhausted) as exc_info:
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert exc_info.value.failures == []
    assert "no candidates" in str(exc_info.value)


def test_resolution_failure(engine, registry, ctx, config):
    resolver = Mock()
    resolver.get_all_references.side_effect = ValueError("bad registries.conf")

    with pytest.raises(ResolutionFailure) as exc_info:
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert isinstance(exc_info.value.__cause__, ValueError)
    assert registry.digest_calls == []


def test_cancelled_context_stops_fallback(engine, registry, resolver, config):
    ctx = CallContext()
    ctx.cancel()

    with pytest.raises(AllMirrorsExhausted):
        RemoteImageMounter(resolver, engine).mount_image(ctx, NAME, config)

    assert registry.digest_calls == []


def test_mount_image_with_injected_mounter(engine, registry, resolver, cache, ctx):
    registry.add_image(MIRROR_A, {"a": b"a"})
    mounter = RemoteImageMounter(resolver, engine)

    path = mount_image(ctx, NAME, SyncConfig(), mounter=mounter)

    assert path == cache.fs_path(MIRROR_A)


def test_mount_image_derives_config_from_settings(settings, ctx):
    mounter = Mock()
    mounter.mount_image.return_value = "/somewhere"

    mount_image(ctx, NAME, mounter=mounter, settings=settings)

    mounter.mount_image.assert_called_once_with(ctx, NAME, SyncConfig.from_settings(settings))


def test_create_mounter_wires_settings(settings):
    resolver = StaticMirrorResolver()

    mounter = create_mounter(settings, resolver=resolver)

    assert mounter.resolver is resolver
    assert str(mounter.engine.cache.base_dir) == settings.base_dir
    assert mounter.engine.pipe_chunks == settings.pipe_chunks
