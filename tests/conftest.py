"""Root pytest configuration for image-mounter tests."""
import pytest

from image_mounter.cache_store import CacheStore
from image_mounter.context import CallContext
from image_mounter.extract import TarExtractor
from image_mounter.runtime_types import SyncConfig
from image_mounter.settings import Settings
from image_mounter.sync_engine import SyncEngine

from tests.fakes.fake_registry import FakeRegistry


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


# Set up test environment variables
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Keep tests independent of the host environment."""
    for var in (
        "IMAGE_MOUNTER_BASE_DIR",
        "IMAGE_MOUNTER_REGISTRIES_CONF",
        "IMAGE_MOUNTER_PLATFORM",
        "IMAGE_MOUNTER_INSECURE_PULL",
        "IMAGE_MOUNTER_HTTP_TIMEOUT",
        "IMAGE_MOUNTER_PIPE_CHUNKS",
    ):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path / "docker"))


# Standardized test fixtures
@pytest.fixture
def base_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def settings(base_dir, tmp_path):
    """Standard test settings."""
    return Settings(
        base_dir=str(base_dir),
        registries_conf=str(tmp_path / "registries.conf"),
        docker_config=str(tmp_path / "docker"),
    )


@pytest.fixture
def cache(base_dir):
    return CacheStore(base_dir)


@pytest.fixture
def registry():
    """Standard fake registry for testing."""
    return FakeRegistry()


@pytest.fixture
def extractor():
    return TarExtractor(skip_devices=True)


@pytest.fixture
def engine(cache, registry, extractor):
    """Sync engine wired to the fake registry and a real tar extractor."""
    return SyncEngine(cache, registry, extractor, pipe_chunks=4)


@pytest.fixture
def ctx():
    return CallContext(timeout=30)


@pytest.fixture
def config():
    return SyncConfig()
